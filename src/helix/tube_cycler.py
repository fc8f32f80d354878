"""
Tube Cycle Controller.

Rotates the active tube 1 -> 2 -> 3 -> 1 so the three independent
queues are interleaved. Rotation never looks at tube contents.
"""

from __future__ import annotations

from loguru import logger

from src.helix.errors import CycleResult, HelixError, HelixErrorKind
from src.helix.models import TUBE_INDICES, TripleHelixState


class TubeCycleController:
    """Pure rotation over TripleHelixState values."""

    @staticmethod
    def next_tube(active_tube: int) -> int:
        return (active_tube % len(TUBE_INDICES)) + 1

    def advance(self, state: TripleHelixState) -> CycleResult:
        """
        Move to the next tube, wrapping 3 -> 1.

        A wrap completes one full cycle and increments cycle_count.
        """
        new_state = state.copy()
        previous = state.active_tube
        new_state.active_tube = self.next_tube(previous)
        wrapped = new_state.active_tube < previous
        if wrapped:
            new_state.cycle_count += 1

        logger.debug(f"Cycled from tube {previous} to tube {new_state.active_tube}")
        return CycleResult(state=new_state, previous_tube=previous, wrapped=wrapped)

    def select(self, state: TripleHelixState, tube_index: int) -> CycleResult:
        """Jump straight to a tube without counting a cycle."""
        if tube_index not in TUBE_INDICES:
            return CycleResult(
                state=state,
                success=False,
                previous_tube=state.active_tube,
                error=HelixError(
                    kind=HelixErrorKind.INVALID_TUBE,
                    message=f"Tube {tube_index} does not exist (expected 1-3)",
                    tube_index=tube_index,
                ),
            )

        new_state = state.copy()
        new_state.active_tube = tube_index
        logger.debug(f"Selected tube {tube_index} (was {state.active_tube})")
        return CycleResult(state=new_state, previous_tube=state.active_tube)
