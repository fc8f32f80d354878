"""
Triple-Helix Domain Models.

Plain dataclasses shared by the reorder engine, integrity validator,
tube cycler and persistence layer.

Design:
- PositionSlot: one occupied position in a tube
- Tube: one of the three queues, wrapping a PositionStore
- TripleHelixState: the three tubes plus the active tube pointer
- CompletionRecord: attempt history entry (no points, no scoring)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from src.helix.position_store import PositionStore

StitchRef = str

# Skip progression: 3 -> 5 -> 10 -> 25 -> 100 (terminal)
SKIP_PROGRESSION: dict[int, int] = {
    3: 5,
    5: 10,
    10: 25,
    25: 100,
    100: 100,
}
VALID_SKIP_NUMBERS: tuple[int, ...] = tuple(sorted(SKIP_PROGRESSION))
DEFAULT_SKIP_NUMBER = 3
MAX_SKIP_NUMBER = 100

DEFAULT_DISTRACTOR_LEVEL = "L1"

TUBE_INDICES: tuple[int, ...] = (1, 2, 3)


def utcnow() -> datetime:
    return datetime.now(UTC)


def next_skip_number(skip_number: int) -> int:
    """
    Advance a skip number one step along the progression.

    Args:
        skip_number: Current skip number (must be a valid progression value)

    Returns:
        The next value, 100 stays at 100
    """
    return SKIP_PROGRESSION[skip_number]


def nearest_skip_number(value: int) -> int:
    """
    Coerce an arbitrary integer onto the progression set.

    Equidistant values resolve to the smaller skip number so the stitch
    comes back sooner rather than later.
    """
    return min(VALID_SKIP_NUMBERS, key=lambda valid: (abs(valid - value), valid))


@dataclass
class PositionSlot:
    """A stitch sitting at one position of a tube."""

    stitch_id: StitchRef
    skip_number: int = DEFAULT_SKIP_NUMBER
    distractor_level: str = DEFAULT_DISTRACTOR_LEVEL
    perfect_completions: int = 0
    last_completed: datetime | None = None

    def copy(self) -> PositionSlot:
        return replace(self)


@dataclass
class Tube:
    """
    One of the three independent queues.

    Position 0 is the ready slot shown to the learner. Higher positions
    form the waiting room; gaps beyond the shift range are parked stitches.
    """

    index: int
    positions: PositionStore = field(default_factory=PositionStore)
    thread_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return len(self.positions) == 0

    @property
    def ready_slot(self) -> PositionSlot | None:
        return self.positions.get(0)

    def copy(self) -> Tube:
        return Tube(index=self.index, positions=self.positions.copy(), thread_id=self.thread_id)

    def summary(self) -> str:
        """Compact 'pos:stitch' listing for log lines."""
        return ", ".join(f"{pos}:{slot.stitch_id}" for pos, slot in self.positions.all())


@dataclass
class CompletionRecord:
    """A reported stitch completion, perfect or not."""

    tube_index: int | None
    stitch_id: StitchRef
    correct_count: int
    total_count: int
    perfect: bool
    stale: bool = False
    completed_at: datetime = field(default_factory=utcnow)


@dataclass
class TripleHelixState:
    """Complete scheduler state for one learner."""

    user_id: str
    tubes: dict[int, Tube] = field(
        default_factory=lambda: {index: Tube(index=index) for index in TUBE_INDICES}
    )
    active_tube: int = 1
    cycle_count: int = 0
    completions: list[CompletionRecord] = field(default_factory=list)
    updated_at: datetime | None = None

    def tube(self, index: int) -> Tube:
        return self.tubes[index]

    @property
    def active(self) -> Tube:
        return self.tubes[self.active_tube]

    def with_tube(self, tube: Tube) -> TripleHelixState:
        """Return a copy of the state with one tube replaced."""
        new_state = self.copy()
        new_state.tubes[tube.index] = tube
        return new_state

    def copy(self) -> TripleHelixState:
        return TripleHelixState(
            user_id=self.user_id,
            tubes={index: tube.copy() for index, tube in self.tubes.items()},
            active_tube=self.active_tube,
            cycle_count=self.cycle_count,
            completions=[replace(record) for record in self.completions],
            updated_at=self.updated_at,
        )
