"""
State Codec - lossless conversion between TripleHelixState and plain dicts.

Handles three input shapes:
- Current: tubes -> {"positions": [{"position": 0, "stitch_id": ...}, ...]}
- Position map: tubes -> {"positions": {"0": {"stitchId": ...}, ...}}
- Legacy: tubes -> {"stitches": [...], "currentStitchId": ...}

camelCase field names are accepted on input; output is always snake_case.
Skip numbers outside the progression are coerced to the nearest valid
value and reported as warnings.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.helix.errors import HelixError, HelixErrorKind, LoadResult
from src.helix.models import (
    DEFAULT_DISTRACTOR_LEVEL,
    DEFAULT_SKIP_NUMBER,
    TUBE_INDICES,
    VALID_SKIP_NUMBERS,
    CompletionRecord,
    PositionSlot,
    TripleHelixState,
    Tube,
    nearest_skip_number,
)
from src.helix.position_store import PositionStore

# Legacy stitches without a position sort after everything else
_LEGACY_UNPOSITIONED = 999


class MalformedStateError(ValueError):
    """Persisted state that cannot be decoded at all."""

    def __init__(self, error: HelixError):
        super().__init__(str(error))
        self.error = error


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# =============================================================================
# Records
# =============================================================================


class SlotRecord(BaseModel):
    """One persisted position row."""

    model_config = ConfigDict(extra="ignore")

    stitch_id: str = Field(validation_alias=_aliases("stitch_id", "stitchId", "id"))
    position: int = Field(ge=0)
    skip_number: int | None = Field(
        default=DEFAULT_SKIP_NUMBER, validation_alias=_aliases("skip_number", "skipNumber")
    )
    distractor_level: str | None = Field(
        default=DEFAULT_DISTRACTOR_LEVEL,
        validation_alias=_aliases("distractor_level", "distractorLevel"),
    )
    perfect_completions: int = Field(
        default=0, ge=0, validation_alias=_aliases("perfect_completions", "perfectCompletions")
    )
    last_completed: datetime | None = Field(
        default=None, validation_alias=_aliases("last_completed", "lastCompleted")
    )

    @field_validator("distractor_level", mode="before")
    @classmethod
    def _level_as_text(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class TubeRecord(BaseModel):
    """One persisted tube."""

    model_config = ConfigDict(extra="ignore")

    thread_id: str | None = Field(default=None, validation_alias=_aliases("thread_id", "threadId"))
    positions: list[SlotRecord] = Field(default_factory=list)

    @field_validator("positions", mode="before")
    @classmethod
    def _positions_from_map(cls, value: Any) -> Any:
        # {"0": {...}, "5": {...}} -> [{"position": 0, ...}, {"position": 5, ...}]
        if isinstance(value, dict):
            return [{**slot, "position": int(position)} for position, slot in value.items()]
        return value


class CompletionRecordModel(BaseModel):
    """One persisted completion attempt."""

    model_config = ConfigDict(extra="ignore")

    tube_index: int | None = Field(default=None, validation_alias=_aliases("tube_index", "tubeIndex"))
    stitch_id: str = Field(validation_alias=_aliases("stitch_id", "stitchId"))
    correct_count: int = Field(ge=0, validation_alias=_aliases("correct_count", "correctCount", "score"))
    total_count: int = Field(ge=0, validation_alias=_aliases("total_count", "totalCount", "totalQuestions"))
    perfect: bool | None = None
    stale: bool = False
    completed_at: datetime = Field(validation_alias=_aliases("completed_at", "completedAt", "timestamp"))


class StateRecord(BaseModel):
    """Complete persisted scheduler state."""

    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(default="anonymous", validation_alias=_aliases("user_id", "userId"))
    active_tube: int = Field(
        default=1, ge=1, le=3, validation_alias=_aliases("active_tube", "activeTubeNumber", "activeTube")
    )
    cycle_count: int = Field(default=0, ge=0, validation_alias=_aliases("cycle_count", "cycleCount"))
    tubes: dict[int, TubeRecord] = Field(default_factory=dict)
    completions: list[CompletionRecordModel] = Field(
        default_factory=list, validation_alias=_aliases("completions", "completedStitches")
    )
    updated_at: datetime | None = Field(
        default=None, validation_alias=_aliases("updated_at", "last_updated", "updatedAt")
    )

    @field_validator("tubes")
    @classmethod
    def _known_tubes(cls, value: dict[int, TubeRecord]) -> dict[int, TubeRecord]:
        unknown = set(value) - set(TUBE_INDICES)
        if unknown:
            raise ValueError(f"unknown tube numbers: {sorted(unknown)}")
        return value


# =============================================================================
# Legacy migration
# =============================================================================


def is_legacy_tube(tube: dict[str, Any]) -> bool:
    return isinstance(tube.get("stitches"), list) and "positions" not in tube


def migrate_legacy_tube(tube: dict[str, Any]) -> dict[str, Any]:
    """
    Convert a stitches-array tube into the positions form.

    The current stitch goes to position 0; the rest follow at 1..n in
    ascending order of their old positions.
    """
    stitches = sorted(
        tube.get("stitches", []),
        key=lambda s: s.get("position") if s.get("position") is not None else _LEGACY_UNPOSITIONED,
    )
    if not stitches:
        return {"thread_id": tube.get("threadId", tube.get("thread_id")), "positions": []}

    current_id = tube.get("currentStitchId") or stitches[0].get("id")
    current = next((s for s in stitches if s.get("id") == current_id), None)
    ordered = ([current] if current else []) + [s for s in stitches if s is not current]

    positions = [
        {
            "stitch_id": stitch["id"],
            "position": position,
            "skip_number": stitch.get("skipNumber") or DEFAULT_SKIP_NUMBER,
            "distractor_level": stitch.get("distractorLevel") or DEFAULT_DISTRACTOR_LEVEL,
        }
        for position, stitch in enumerate(ordered)
    ]
    logger.info(f"Migrated legacy tube ({len(positions)} stitches) to position form")
    return {"thread_id": tube.get("threadId", tube.get("thread_id")), "positions": positions}


# =============================================================================
# Decode / encode
# =============================================================================


def _migrate_legacy_tubes(data: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    raw_tubes = data.get("tubes") or {}
    if not isinstance(raw_tubes, dict):
        return data, False

    migrated = False
    tubes_input = {}
    for key, tube in raw_tubes.items():
        if isinstance(tube, dict) and is_legacy_tube(tube):
            tube = migrate_legacy_tube(tube)
            migrated = True
        tubes_input[key] = tube
    return {**data, "tubes": tubes_input}, migrated


def decode_state(data: dict[str, Any], user_id: str | None = None) -> LoadResult:
    """
    Decode a persisted state dict.

    Args:
        data: Parsed JSON (or equivalent) state
        user_id: Overrides the stored user id when given

    Returns:
        LoadResult with the state and any coercion warnings

    Raises:
        MalformedStateError: if the data cannot be interpreted as a state
    """
    if not isinstance(data, dict):
        raise MalformedStateError(
            HelixError(kind=HelixErrorKind.MALFORMED_STATE, message=f"Expected an object, got {type(data).__name__}")
        )

    try:
        data, migrated = _migrate_legacy_tubes(data)
        record = StateRecord.model_validate(data)
    except ValidationError as e:
        raise MalformedStateError(
            HelixError(kind=HelixErrorKind.MALFORMED_STATE, message=f"Invalid state: {e}")
        ) from e
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise MalformedStateError(
            HelixError(kind=HelixErrorKind.MALFORMED_STATE, message=f"Invalid legacy tube: {e!r}")
        ) from e

    warnings: list[HelixError] = []
    state = TripleHelixState(
        user_id=user_id or record.user_id,
        active_tube=record.active_tube,
        cycle_count=record.cycle_count,
        updated_at=_as_utc(record.updated_at),
    )

    for index in TUBE_INDICES:
        tube_record = record.tubes.get(index)
        if tube_record is None:
            continue
        entries = [(slot.position, _slot_from_record(index, slot, warnings)) for slot in tube_record.positions]
        state.tubes[index] = Tube(
            index=index,
            positions=PositionStore.from_entries(entries),
            thread_id=tube_record.thread_id,
        )

    state.completions = [
        CompletionRecord(
            tube_index=c.tube_index,
            stitch_id=c.stitch_id,
            correct_count=c.correct_count,
            total_count=c.total_count,
            perfect=c.perfect if c.perfect is not None else c.correct_count == c.total_count,
            stale=c.stale,
            completed_at=_as_utc(c.completed_at),
        )
        for c in record.completions
    ]

    for warning in warnings:
        logger.warning(f"Loading state for {state.user_id}: {warning}")
    return LoadResult(state=state, warnings=warnings, migrated_from_legacy=migrated)


def _slot_from_record(tube_index: int, record: SlotRecord, warnings: list[HelixError]) -> PositionSlot:
    skip = record.skip_number if record.skip_number is not None else DEFAULT_SKIP_NUMBER
    if skip not in VALID_SKIP_NUMBERS:
        coerced = nearest_skip_number(skip)
        warnings.append(
            HelixError(
                kind=HelixErrorKind.INVALID_SKIP_NUMBER,
                message=f"Skip number {skip} for {record.stitch_id} coerced to {coerced}",
                tube_index=tube_index,
                stitch_id=record.stitch_id,
                position=record.position,
            )
        )
        skip = coerced

    return PositionSlot(
        stitch_id=record.stitch_id,
        skip_number=skip,
        distractor_level=record.distractor_level or DEFAULT_DISTRACTOR_LEVEL,
        perfect_completions=record.perfect_completions,
        last_completed=_as_utc(record.last_completed),
    )


def encode_slot(position: int, slot: PositionSlot) -> dict[str, Any]:
    return SlotRecord(
        stitch_id=slot.stitch_id,
        position=position,
        skip_number=slot.skip_number,
        distractor_level=slot.distractor_level,
        perfect_completions=slot.perfect_completions,
        last_completed=slot.last_completed,
    ).model_dump(mode="json")


def encode_state(state: TripleHelixState) -> dict[str, Any]:
    """Encode a state into a JSON-ready dict with snake_case field names."""
    return {
        "user_id": state.user_id,
        "active_tube": state.active_tube,
        "cycle_count": state.cycle_count,
        "updated_at": state.updated_at.isoformat() if state.updated_at else None,
        "tubes": {
            str(index): {
                "thread_id": tube.thread_id,
                "positions": [encode_slot(position, slot) for position, slot in tube.positions.entries()],
            }
            for index, tube in sorted(state.tubes.items())
        },
        "completions": [
            CompletionRecordModel(
                tube_index=c.tube_index,
                stitch_id=c.stitch_id,
                correct_count=c.correct_count,
                total_count=c.total_count,
                perfect=c.perfect,
                stale=c.stale,
                completed_at=c.completed_at,
            ).model_dump(mode="json")
            for c in state.completions
        ],
    }
