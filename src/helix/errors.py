"""
Typed errors and operation results for the Triple-Helix scheduler.

Domain failures are returned to the caller inside result objects rather
than raised; the caller owns persistence and UX and decides whether to
retry, repair, or surface a message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.helix.models import PositionSlot, TripleHelixState, Tube


class HelixErrorKind(str, Enum):
    """Error categories reported by the scheduler."""

    STALE_COMPLETION = "stale_completion"  # position-0 stitch id mismatch
    EMPTY_TUBE = "empty_tube"  # tube has no slots at all
    MISSING_PREDECESSOR = "missing_predecessor"  # no way to refill position 0
    INVALID_SKIP_NUMBER = "invalid_skip_number"  # coerced on load
    INVALID_SCORE = "invalid_score"
    INVALID_TUBE = "invalid_tube"
    DUPLICATE_POSITION = "duplicate_position"
    MALFORMED_STATE = "malformed_state"

    @property
    def is_user_visible(self) -> bool:
        """Stale completions look like success to the learner."""
        return self is not HelixErrorKind.STALE_COMPLETION


@dataclass
class HelixError:
    """A single typed failure."""

    kind: HelixErrorKind
    message: str
    tube_index: int | None = None
    stitch_id: str | None = None
    position: int | None = None

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass
class ReorderResult:
    """Outcome of ReorderEngine.complete."""

    tube: Tube
    success: bool = True
    perfect: bool = False
    old_skip: int | None = None
    new_skip: int | None = None
    promoted_stitch_id: str | None = None
    needs_ready_item: bool = False
    error: HelixError | None = None


@dataclass
class RepairAction:
    """One corrective change made by the integrity validator."""

    action: str  # 'resolved_ready', 'relocated', 'dropped', 'provisioned', 'promoted'
    stitch_id: str
    from_position: int | None
    to_position: int | None

    def __str__(self) -> str:
        return f"{self.action} {self.stitch_id}: {self.from_position} -> {self.to_position}"


@dataclass
class RepairReport:
    """Outcome of IntegrityValidator.validate_and_repair."""

    tube: Tube
    actions: list[RepairAction] = field(default_factory=list)
    errors: list[HelixError] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.actions)

    @property
    def success(self) -> bool:
        return not any(e.kind is HelixErrorKind.MISSING_PREDECESSOR for e in self.errors)


@dataclass
class CycleResult:
    """Outcome of a tube rotation or selection."""

    state: TripleHelixState
    success: bool = True
    previous_tube: int | None = None
    wrapped: bool = False
    error: HelixError | None = None


@dataclass
class LoadResult:
    """A decoded state plus anything that had to be coerced on the way in."""

    state: TripleHelixState
    warnings: list[HelixError] = field(default_factory=list)
    migrated_from_legacy: bool = False


@dataclass
class CompletionResult:
    """Caller-facing outcome of TripleHelixScheduler.complete."""

    success: bool
    tube_index: int
    stitch_id: str
    perfect: bool = False
    stale: bool = False
    new_skip: int | None = None
    ready: PositionSlot | None = None
    active_tube: int | None = None
    repair: RepairReport | None = None
    error: HelixError | None = None
