"""
Triple-Helix Scheduler Service.

Caller-facing entry points. Coordinates the reorder engine, integrity
validator and tube cycler around a single load -> mutate -> save cycle.

Concurrency:
Each learner's state is a single-writer resource. Every operation holds
a per-user lock for the whole load/mutate/save cycle, which serialises
callers inside one process. Writers in other processes (another API
worker, another device hitting another host) must be serialised by the
caller, e.g. with a database row lock around the same cycle.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime

from loguru import logger

from src.helix.content_provider import ContentProvider, ContentUnavailableError
from src.helix.errors import (
    CompletionResult,
    CycleResult,
    HelixError,
    HelixErrorKind,
    RepairReport,
)
from src.helix.integrity import IntegrityValidator
from src.helix.models import (
    TUBE_INDICES,
    CompletionRecord,
    PositionSlot,
    TripleHelixState,
    utcnow,
)
from src.helix.reorder_engine import ReorderEngine
from src.helix.state_store import MemoryStateStore, StateStore
from src.helix.tube_cycler import TubeCycleController

_user_locks: dict[str, threading.Lock] = {}
_registry_lock = threading.Lock()


def user_lock(user_id: str) -> threading.Lock:
    """Get the process-wide lock guarding one learner's state."""
    with _registry_lock:
        return _user_locks.setdefault(user_id, threading.Lock())


class TripleHelixScheduler:
    """
    High-level scheduler for one learner.

    The apply_* methods are pure (state in, state out) and never touch the
    store; the public operations wrap them in the locked load/save cycle.
    """

    def __init__(
        self,
        user_id: str,
        store: StateStore | None = None,
        content_provider: ContentProvider | None = None,
        allow_promotion_fallback: bool = True,
        completion_history_limit: int = 500,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize scheduler.

        Args:
            user_id: Learner identifier
            store: Load/Save collaborator (in-memory when omitted)
            content_provider: Source of new stitches for empty ready slots
            allow_promotion_fallback: Promote a waiting stitch when no new content exists
            completion_history_limit: Completion records kept in state
            clock: Timestamp source
        """
        self.user_id = user_id
        self.store = store if store is not None else MemoryStateStore()
        self.content_provider = content_provider
        self.completion_history_limit = completion_history_limit
        self.clock = clock

        self.reorder_engine = ReorderEngine()
        self.validator = IntegrityValidator(content_provider, allow_promotion_fallback)
        self.cycler = TubeCycleController()

    # =========================================================================
    # State lifecycle
    # =========================================================================

    def initial_state(self) -> TripleHelixState:
        """Fresh state: each tube gets one ready stitch from the content provider."""
        state = TripleHelixState(user_id=self.user_id)
        if self.content_provider is None:
            logger.warning(f"No content provider; starting {self.user_id} with empty tubes")
            return state

        for index in TUBE_INDICES:
            try:
                stitch_id = self.content_provider.next_unused_stitch(index, set())
            except ContentUnavailableError as e:
                logger.error(f"Could not seed tube {index} for {self.user_id}: {e}")
                continue
            if stitch_id is not None:
                state.tubes[index].positions.set(0, PositionSlot(stitch_id=stitch_id))

        logger.info(f"Initialized helix state for {self.user_id}")
        return state

    def _load(self) -> tuple[TripleHelixState, bool]:
        """
        Load (or create) state and self-heal every tube.

        Returns:
            (state, dirty) where dirty means it differs from what is stored
        """
        loaded = self.store.load(self.user_id)
        if loaded is None:
            return self.initial_state(), True

        state = loaded.state
        dirty = bool(loaded.warnings) or loaded.migrated_from_legacy
        for index in TUBE_INDICES:
            report = self.validator.validate_and_repair(state.tubes[index])
            if report.changed:
                state.tubes[index] = report.tube
                dirty = True
        return state, dirty

    def _save(self, state: TripleHelixState) -> None:
        self.store.save(state)

    # =========================================================================
    # Pure operations
    # =========================================================================

    def apply_completion(
        self,
        state: TripleHelixState,
        tube_index: int,
        stitch_id: str,
        correct_count: int,
        total_count: int,
        advance: bool = False,
    ) -> tuple[TripleHelixState, CompletionResult]:
        """
        Apply one completion to a state value.

        Returns:
            (new_state, result). On failure new_state is the input state
            unless only an attempt record was added.
        """
        if tube_index not in TUBE_INDICES:
            return state, CompletionResult(
                success=False,
                tube_index=tube_index,
                stitch_id=stitch_id,
                error=HelixError(
                    kind=HelixErrorKind.INVALID_TUBE,
                    message=f"Tube {tube_index} does not exist (expected 1-3)",
                    tube_index=tube_index,
                ),
            )

        now = self.clock()
        reorder = self.reorder_engine.complete(
            state.tube(tube_index), stitch_id, correct_count, total_count, now=now
        )

        if reorder.error is not None:
            if reorder.error.kind is HelixErrorKind.STALE_COMPLETION:
                new_state = state.copy()
                self._record(new_state, tube_index, stitch_id, correct_count, total_count, now, stale=True)
                return new_state, CompletionResult(
                    success=False,
                    tube_index=tube_index,
                    stitch_id=stitch_id,
                    perfect=correct_count == total_count,
                    stale=True,
                    ready=new_state.tube(tube_index).ready_slot,
                    active_tube=new_state.active_tube,
                    error=reorder.error,
                )
            return state, CompletionResult(
                success=False,
                tube_index=tube_index,
                stitch_id=stitch_id,
                error=reorder.error,
            )

        repair: RepairReport | None = None
        new_state = state.with_tube(reorder.tube)
        if reorder.perfect:
            repair = self.validator.validate_and_repair(
                reorder.tube, preferred_stitch_id=reorder.promoted_stitch_id
            )
            missing = next(
                (e for e in repair.errors if e.kind is HelixErrorKind.MISSING_PREDECESSOR), None
            )
            if missing is not None:
                return state, CompletionResult(
                    success=False,
                    tube_index=tube_index,
                    stitch_id=stitch_id,
                    perfect=True,
                    new_skip=reorder.new_skip,
                    repair=repair,
                    error=missing,
                )
            new_state = state.with_tube(repair.tube)

        self._record(new_state, tube_index, stitch_id, correct_count, total_count, now)

        if advance:
            new_state = self.cycler.advance(new_state).state

        return new_state, CompletionResult(
            success=True,
            tube_index=tube_index,
            stitch_id=stitch_id,
            perfect=reorder.perfect,
            new_skip=reorder.new_skip,
            ready=new_state.tube(tube_index).ready_slot,
            active_tube=new_state.active_tube,
            repair=repair,
        )

    def _record(
        self,
        state: TripleHelixState,
        tube_index: int,
        stitch_id: str,
        correct_count: int,
        total_count: int,
        now: datetime,
        stale: bool = False,
    ) -> None:
        state.completions.append(
            CompletionRecord(
                tube_index=tube_index,
                stitch_id=stitch_id,
                correct_count=correct_count,
                total_count=total_count,
                perfect=correct_count == total_count,
                stale=stale,
                completed_at=now,
            )
        )
        overflow = len(state.completions) - self.completion_history_limit
        if overflow > 0:
            del state.completions[:overflow]

    # =========================================================================
    # Caller-facing operations
    # =========================================================================

    def complete(
        self,
        tube_index: int,
        stitch_id: str,
        correct_count: int,
        total_count: int,
        advance: bool = False,
    ) -> CompletionResult:
        """
        Report that the learner finished a stitch.

        Args:
            tube_index: Tube the stitch belongs to (1-3)
            stitch_id: Completed stitch
            correct_count: Questions answered correctly
            total_count: Questions in the stitch
            advance: Also rotate to the next tube on success

        Returns:
            CompletionResult. A stale completion comes back with stale=True;
            the learner's answer still counts, only positions are untouched.
        """
        with user_lock(self.user_id):
            state, dirty = self._load()
            new_state, result = self.apply_completion(
                state, tube_index, stitch_id, correct_count, total_count, advance=advance
            )
            if new_state is not state or dirty:
                self._save(new_state)

        if result.success:
            logger.info(
                f"{self.user_id}: completed {stitch_id} in tube {tube_index} "
                f"({correct_count}/{total_count}), ready now "
                f"{result.ready.stitch_id if result.ready else None}"
            )
        elif not result.stale:
            logger.warning(f"{self.user_id}: completion of {stitch_id} rejected: {result.error}")
        return result

    def advance_active_tube(self) -> CycleResult:
        """Rotate to the next tube (3 wraps to 1)."""
        with user_lock(self.user_id):
            state, _ = self._load()
            result = self.cycler.advance(state)
            self._save(result.state)
        logger.info(f"{self.user_id}: active tube {result.previous_tube} -> {result.state.active_tube}")
        return result

    def select_tube(self, tube_index: int) -> CycleResult:
        """Make a specific tube active."""
        with user_lock(self.user_id):
            state, dirty = self._load()
            result = self.cycler.select(state, tube_index)
            if result.success or dirty:
                self._save(result.state)
        return result

    def get_state(self) -> TripleHelixState:
        """Current (self-healed) state."""
        with user_lock(self.user_id):
            state, dirty = self._load()
            if dirty:
                self._save(state)
        return state

    def get_ready(self, tube_index: int) -> PositionSlot | None:
        """The stitch currently presented in a tube."""
        if tube_index not in TUBE_INDICES:
            logger.warning(f"get_ready called for unknown tube {tube_index}")
            return None
        return self.get_state().tube(tube_index).ready_slot

    def get_all_positions(self, tube_index: int) -> list[tuple[int, PositionSlot]]:
        """Every occupied position in a tube, ascending."""
        if tube_index not in TUBE_INDICES:
            logger.warning(f"get_all_positions called for unknown tube {tube_index}")
            return []
        return self.get_state().tube(tube_index).positions.all()

    def find_stitch(self, stitch_id: str) -> tuple[int, int] | None:
        """Locate a stitch as (tube_index, position)."""
        state = self.get_state()
        for index in TUBE_INDICES:
            position = state.tube(index).positions.position_of(stitch_id)
            if position is not None:
                return index, position
        return None

    def repair(self) -> dict[int, RepairReport]:
        """Run the integrity validator over every stored tube and save the result."""
        with user_lock(self.user_id):
            loaded = self.store.load(self.user_id)
            state = loaded.state if loaded else self.initial_state()
            reports = {}
            for index in TUBE_INDICES:
                report = self.validator.validate_and_repair(state.tubes[index])
                state.tubes[index] = report.tube
                reports[index] = report
            self._save(state)
        return reports

    def reset(self) -> TripleHelixState:
        """Discard stored state and start over."""
        with user_lock(self.user_id):
            self.store.delete(self.user_id)
            state = self.initial_state()
            self._save(state)
        logger.info(f"Reset helix state for {self.user_id}")
        return state
