"""
Reorder Engine - position reassignment after a stitch completion.

Implements the Triple-Helix requeue step:
1. A perfect pass advances the ready stitch's skip number (3 -> 5 -> 10 -> 25 -> 100)
2. Every stitch at positions 1..new_skip shifts down by exactly one
3. The completed stitch lands at position new_skip

The shift is what keeps a tube continuously available: the stitch that
was waiting at position 1 becomes the new ready stitch without a separate
promote step. If nothing was waiting at position 1 the engine leaves
position 0 empty and flags it; refilling is the integrity validator's job.

Imperfect passes leave positions untouched.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from loguru import logger

from src.helix.errors import HelixError, HelixErrorKind, ReorderResult
from src.helix.models import (
    SKIP_PROGRESSION,
    PositionSlot,
    Tube,
    nearest_skip_number,
    next_skip_number,
    utcnow,
)
from src.helix.position_store import PositionStore


class ReorderEngine:
    """
    Computes the new position assignment for one tube.

    Stateless: every call works on a copy of the supplied tube and returns
    the new tube inside a ReorderResult. The input is never mutated.
    """

    def complete(
        self,
        tube: Tube,
        stitch_id: str,
        correct_count: int,
        total_count: int,
        now: datetime | None = None,
    ) -> ReorderResult:
        """
        Apply one completed pass of the ready stitch.

        Args:
            tube: Current tube state
            stitch_id: Stitch the learner just finished
            correct_count: Questions answered correctly
            total_count: Questions in the stitch (must be > 0)
            now: Completion timestamp (defaults to current UTC time)

        Returns:
            ReorderResult with the new tube, or the unchanged tube and an error
        """
        if total_count <= 0 or not 0 <= correct_count <= total_count:
            return ReorderResult(
                tube=tube,
                success=False,
                error=HelixError(
                    kind=HelixErrorKind.INVALID_SCORE,
                    message=f"Score {correct_count}/{total_count} is not a valid result",
                    tube_index=tube.index,
                    stitch_id=stitch_id,
                ),
            )

        if tube.is_empty:
            return ReorderResult(
                tube=tube,
                success=False,
                error=HelixError(
                    kind=HelixErrorKind.EMPTY_TUBE,
                    message=f"Tube {tube.index} has no stitches",
                    tube_index=tube.index,
                    stitch_id=stitch_id,
                ),
            )

        ready = tube.positions.get(0)
        if ready is None or ready.stitch_id != stitch_id:
            actual = tube.positions.position_of(stitch_id)
            where = f"position {actual}" if actual is not None else "nowhere in the tube"
            logger.warning(
                f"Stale completion in tube {tube.index}: {stitch_id} is at {where}, "
                f"ready stitch is {ready.stitch_id if ready else None}"
            )
            return ReorderResult(
                tube=tube,
                success=False,
                error=HelixError(
                    kind=HelixErrorKind.STALE_COMPLETION,
                    message=f"Stitch {stitch_id} is not the ready stitch (found at {where})",
                    tube_index=tube.index,
                    stitch_id=stitch_id,
                    position=actual,
                ),
            )

        if correct_count < total_count:
            logger.info(
                f"Imperfect pass ({correct_count}/{total_count}) for {stitch_id} "
                f"in tube {tube.index} - positions unchanged"
            )
            return ReorderResult(tube=tube, perfect=False, old_skip=ready.skip_number)

        return self._requeue(tube, ready, now or utcnow())

    def _requeue(self, tube: Tube, ready: PositionSlot, now: datetime) -> ReorderResult:
        old_skip = ready.skip_number
        if old_skip not in SKIP_PROGRESSION:
            coerced = nearest_skip_number(old_skip)
            logger.warning(f"Ready stitch {ready.stitch_id} had skip {old_skip}, treating as {coerced}")
            old_skip = coerced
        new_skip = next_skip_number(old_skip)

        new_positions = PositionStore()
        promoted: str | None = None

        # Lowest first into a fresh map so no move overwrites a pending one
        for position, slot in tube.positions.all():
            if position == 0:
                continue
            if position <= new_skip:
                new_positions.set(position - 1, slot.copy())
                if position == 1:
                    promoted = slot.stitch_id
                logger.debug(f"Tube {tube.index}: {slot.stitch_id} {position} -> {position - 1}")
            else:
                new_positions.set(position, slot.copy())

        new_positions.set(
            new_skip,
            replace(
                ready,
                skip_number=new_skip,
                perfect_completions=ready.perfect_completions + 1,
                last_completed=now,
            ),
        )

        new_tube = Tube(index=tube.index, positions=new_positions, thread_id=tube.thread_id)
        needs_ready_item = new_positions.get(0) is None

        logger.info(
            f"Perfect pass for {ready.stitch_id} in tube {tube.index}: "
            f"skip {old_skip} -> {new_skip}, now [{new_tube.summary()}]"
        )
        if needs_ready_item:
            logger.info(f"Tube {tube.index} needs a new ready stitch (nothing waited at position 1)")

        return ReorderResult(
            tube=new_tube,
            perfect=True,
            old_skip=old_skip,
            new_skip=new_skip,
            promoted_stitch_id=promoted,
            needs_ready_item=needs_ready_item,
        )
