"""
Integrity Validator - detect and repair tube invariant violations.

Checks, in order:
1. Zero ready slots   -> provision a new stitch, else promote the lowest waiting one
2. Multiple ready     -> keep the preferred (or smallest id) stitch at 0, relocate the rest
3. Duplicate position -> most recently completed slot wins, the other is dropped

Position gaps are tolerated (parked stitches) and never compacted.
Running the validator on an already-valid tube changes nothing.
"""

from __future__ import annotations

from datetime import UTC, datetime

from loguru import logger

from src.helix.content_provider import ContentProvider, ContentUnavailableError
from src.helix.errors import HelixError, HelixErrorKind, RepairAction, RepairReport
from src.helix.models import PositionSlot, Tube

_OLDEST = datetime.min.replace(tzinfo=UTC)


def _completed_at(slot: PositionSlot) -> datetime:
    if slot.last_completed is None:
        return _OLDEST
    if slot.last_completed.tzinfo is None:
        return slot.last_completed.replace(tzinfo=UTC)
    return slot.last_completed


def _more_recent(a: PositionSlot, b: PositionSlot) -> tuple[PositionSlot, PositionSlot]:
    """Order two slots as (winner, loser); ties go to the smaller stitch id."""
    a_at, b_at = _completed_at(a), _completed_at(b)
    if a_at != b_at:
        return (a, b) if a_at > b_at else (b, a)
    return (a, b) if a.stitch_id <= b.stitch_id else (b, a)


class IntegrityValidator:
    """
    Validates and self-heals a tube's position map.

    The zero/multiple ready-slot cases are the only places the scheduler
    repairs state on its own; everything else is reported.
    """

    def __init__(
        self,
        content_provider: ContentProvider | None = None,
        allow_promotion_fallback: bool = True,
    ):
        """
        Initialize validator.

        Args:
            content_provider: Source of new stitches when position 0 is empty
            allow_promotion_fallback: Promote the lowest waiting stitch when
                the provider cannot supply one
        """
        self.content_provider = content_provider
        self.allow_promotion_fallback = allow_promotion_fallback

    def validate_and_repair(
        self,
        tube: Tube,
        preferred_stitch_id: str | None = None,
    ) -> RepairReport:
        """
        Check a tube and return a repaired copy.

        Args:
            tube: Tube to check (not mutated)
            preferred_stitch_id: Stitch that should win a position-0 tie,
                normally the one promoted by the triggering completion

        Returns:
            RepairReport with the repaired tube, actions taken and errors
        """
        repaired = tube.copy()
        report = RepairReport(tube=repaired)

        if repaired.is_empty:
            return report

        # Collision rows count as present so the provider cannot hand them back
        known_ids = repaired.positions.stitch_ids()
        collisions = repaired.positions.collisions()
        repaired.positions.clear_collisions()

        if repaired.positions.get(0) is None:
            self._fill_ready_slot(repaired, report, known_ids)

        ready_collisions = [slot for position, slot in collisions if position == 0]
        if ready_collisions:
            self._resolve_ready_slots(repaired, ready_collisions, preferred_stitch_id, report)

        for position, slot in collisions:
            if position != 0:
                self._resolve_duplicate(repaired, position, slot, report)

        if report.changed:
            logger.warning(
                f"Repaired tube {tube.index}: {'; '.join(str(a) for a in report.actions)} "
                f"-> [{repaired.summary()}]"
            )
        return report

    def check(self, tube: Tube) -> list[str]:
        """List invariant violations without repairing anything."""
        problems = []
        if tube.is_empty:
            return problems
        if tube.positions.get(0) is None:
            problems.append("no ready slot at position 0")
        for position, slot in tube.positions.collisions():
            if position == 0:
                problems.append(f"extra ready slot {slot.stitch_id} at position 0")
            else:
                problems.append(f"duplicate slot {slot.stitch_id} at position {position}")
        return problems

    # ------------------------------------------------------------------
    # Zero ready slots
    # ------------------------------------------------------------------

    def _fill_ready_slot(self, tube: Tube, report: RepairReport, exclude: set[str]) -> None:
        stitch_id = self._request_stitch(tube, exclude)
        if stitch_id is not None:
            tube.positions.set(0, PositionSlot(stitch_id=stitch_id))
            report.actions.append(RepairAction("provisioned", stitch_id, None, 0))
            return

        if not self.allow_promotion_fallback:
            logger.error(f"Tube {tube.index} has no ready stitch and no way to provide one")
            report.errors.append(
                HelixError(
                    kind=HelixErrorKind.MISSING_PREDECESSOR,
                    message=f"Tube {tube.index} needs a ready stitch but none could be provided",
                    tube_index=tube.index,
                    position=0,
                )
            )
            return

        lowest, slot = tube.positions.all()[0]
        tube.positions.remove(lowest)
        tube.positions.set(0, slot)
        logger.warning(f"Tube {tube.index}: no new content, promoted {slot.stitch_id} from {lowest}")
        report.actions.append(RepairAction("promoted", slot.stitch_id, lowest, 0))

    def _request_stitch(self, tube: Tube, exclude: set[str]) -> str | None:
        if self.content_provider is None:
            return None

        try:
            stitch_id = self.content_provider.next_unused_stitch(tube.index, exclude)
        except ContentUnavailableError as e:
            logger.error(f"Content provider failed for tube {tube.index}: {e}")
            return None

        if stitch_id is not None and stitch_id in exclude:
            logger.error(f"Content provider returned {stitch_id} which is already in tube {tube.index}")
            return None
        return stitch_id

    # ------------------------------------------------------------------
    # Multiple ready slots
    # ------------------------------------------------------------------

    def _resolve_ready_slots(
        self,
        tube: Tube,
        extra: list[PositionSlot],
        preferred_stitch_id: str | None,
        report: RepairReport,
    ) -> None:
        candidates = [tube.positions.get(0), *extra]
        winner = next(
            (slot for slot in candidates if slot.stitch_id == preferred_stitch_id),
            min(candidates, key=lambda slot: slot.stitch_id),
        )
        losers = sorted((s for s in candidates if s is not winner), key=lambda slot: slot.stitch_id)

        tube.positions.set(0, winner)
        report.actions.append(RepairAction("resolved_ready", winner.stitch_id, 0, 0))
        for loser in losers:
            target = tube.positions.lowest_unused_positive()
            tube.positions.set(target, loser)
            report.actions.append(RepairAction("relocated", loser.stitch_id, 0, target))

    # ------------------------------------------------------------------
    # Duplicate positions
    # ------------------------------------------------------------------

    def _resolve_duplicate(
        self,
        tube: Tube,
        position: int,
        challenger: PositionSlot,
        report: RepairReport,
    ) -> None:
        current = tube.positions.get(position)
        if current is None:
            # The original holder moved away during an earlier repair
            tube.positions.set(position, challenger)
            return

        winner, loser = _more_recent(current, challenger)
        tube.positions.set(position, winner)

        report.actions.append(RepairAction("dropped", loser.stitch_id, position, None))
        report.errors.append(
            HelixError(
                kind=HelixErrorKind.DUPLICATE_POSITION,
                message=(
                    f"Position {position} held both {current.stitch_id} and "
                    f"{challenger.stitch_id}; kept {winner.stitch_id}"
                ),
                tube_index=tube.index,
                stitch_id=loser.stitch_id,
                position=position,
            )
        )
