"""
State persistence for the Triple-Helix scheduler.

Two interchangeable stores implement the Load/Save contract:
- JsonStateStore: one JSON file per learner in ~/.helix/state/
- SqlStateStore: SQLAlchemy tables (see src/db/models/helix.py)

Saves always write the whole state; there are no partial updates.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Protocol

from loguru import logger
from sqlalchemy import Engine, delete, select

from src.db.database import init_db, session_scope
from src.db.models import HelixCompletion, HelixTubePosition, HelixUserState
from src.helix.codec import MalformedStateError, decode_state, encode_state
from src.helix.errors import HelixError, HelixErrorKind, LoadResult
from src.helix.models import TUBE_INDICES, TripleHelixState, utcnow

# Default state directory
STATE_DIR = Path.home() / ".helix" / "state"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class StateStore(Protocol):
    """Load/Save collaborator for scheduler state."""

    def load(self, user_id: str) -> LoadResult | None: ...

    def save(self, state: TripleHelixState) -> None: ...

    def delete(self, user_id: str) -> bool: ...


class MemoryStateStore:
    """Process-local store; keeps encoded copies so callers never share state objects."""

    def __init__(self):
        self._documents: dict[str, dict[str, Any]] = {}

    def save(self, state: TripleHelixState) -> None:
        state.updated_at = utcnow()
        self._documents[state.user_id] = encode_state(state)

    def load(self, user_id: str) -> LoadResult | None:
        document = self._documents.get(user_id)
        if document is None:
            return None
        return decode_state(document, user_id=user_id)

    def delete(self, user_id: str) -> bool:
        return self._documents.pop(user_id, None) is not None


class JsonStateStore:
    """
    Stores each learner's state as {user_id}.json.

    Unsafe characters in user ids are replaced in the file name; the real
    id is kept inside the document.
    """

    def __init__(self, state_dir: Path | None = None):
        self.state_dir = state_dir or STATE_DIR
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, user_id: str) -> Path:
        return self.state_dir / f"{_UNSAFE_FILENAME_CHARS.sub('_', user_id)}.json"

    def save(self, state: TripleHelixState) -> None:
        """Save state to disk."""
        state.updated_at = utcnow()
        filepath = self._path(state.user_id)

        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(encode_state(state), f, indent=2)

        logger.debug(f"Saved helix state for {state.user_id} to {filepath}")

    def load(self, user_id: str) -> LoadResult | None:
        """Load a learner's state, or None if nothing was saved yet."""
        filepath = self._path(user_id)
        if not filepath.exists():
            return None

        try:
            with open(filepath, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise MalformedStateError(
                HelixError(kind=HelixErrorKind.MALFORMED_STATE, message=f"{filepath.name} is not valid JSON: {e}")
            ) from e

        return decode_state(data, user_id=user_id)

    def delete(self, user_id: str) -> bool:
        """Delete a learner's state file."""
        filepath = self._path(user_id)
        if filepath.exists():
            filepath.unlink()
            return True
        return False

    def list_users(self) -> list[str]:
        """User ids with a saved state, most recently saved first."""
        users = []
        for filepath in sorted(self.state_dir.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True):
            try:
                with open(filepath, encoding="utf-8") as f:
                    users.append(json.load(f).get("user_id", filepath.stem))
            except (json.JSONDecodeError, AttributeError):
                logger.warning(f"Skipping unreadable state file {filepath.name}")
        return users


class SqlStateStore:
    """
    Stores state in the helix_* tables.

    ``save`` replaces every row for the learner inside one transaction.
    """

    def __init__(self, engine: Engine | None = None, create_tables: bool = True):
        self.engine = engine
        if create_tables:
            init_db(engine)

    def save(self, state: TripleHelixState) -> None:
        state.updated_at = utcnow()
        thread_ids = {index: state.tubes[index].thread_id for index in TUBE_INDICES}

        with session_scope(self.engine) as session:
            session.execute(delete(HelixTubePosition).where(HelixTubePosition.user_id == state.user_id))
            session.execute(delete(HelixCompletion).where(HelixCompletion.user_id == state.user_id))

            header = session.get(HelixUserState, state.user_id)
            if header is None:
                header = HelixUserState(user_id=state.user_id)
                session.add(header)
            header.active_tube = state.active_tube
            header.cycle_count = state.cycle_count
            header.thread_id_1 = thread_ids[1]
            header.thread_id_2 = thread_ids[2]
            header.thread_id_3 = thread_ids[3]
            header.updated_at = state.updated_at
            session.flush()

            session.add_all(
                HelixTubePosition(
                    user_id=state.user_id,
                    tube_index=index,
                    position=position,
                    stitch_id=slot.stitch_id,
                    skip_number=slot.skip_number,
                    distractor_level=slot.distractor_level,
                    perfect_completions=slot.perfect_completions,
                    last_completed=slot.last_completed,
                )
                for index, tube in state.tubes.items()
                for position, slot in tube.positions.all()
            )
            session.add_all(
                HelixCompletion(
                    user_id=state.user_id,
                    tube_index=record.tube_index,
                    stitch_id=record.stitch_id,
                    correct_count=record.correct_count,
                    total_count=record.total_count,
                    perfect=record.perfect,
                    stale=record.stale,
                    completed_at=record.completed_at,
                )
                for record in state.completions
            )

        logger.debug(f"Saved helix state for {state.user_id} to database")

    def load(self, user_id: str) -> LoadResult | None:
        with session_scope(self.engine) as session:
            header = session.get(HelixUserState, user_id)
            if header is None:
                return None

            positions = session.scalars(
                select(HelixTubePosition)
                .where(HelixTubePosition.user_id == user_id)
                .order_by(HelixTubePosition.tube_index, HelixTubePosition.position)
            ).all()
            completions = session.scalars(
                select(HelixCompletion).where(HelixCompletion.user_id == user_id).order_by(HelixCompletion.id)
            ).all()

            data: dict[str, Any] = {
                "user_id": header.user_id,
                "active_tube": header.active_tube,
                "cycle_count": header.cycle_count,
                "updated_at": header.updated_at,
                "tubes": {
                    index: {
                        "thread_id": getattr(header, f"thread_id_{index}"),
                        "positions": [
                            {
                                "stitch_id": row.stitch_id,
                                "position": row.position,
                                "skip_number": row.skip_number,
                                "distractor_level": row.distractor_level,
                                "perfect_completions": row.perfect_completions,
                                "last_completed": row.last_completed,
                            }
                            for row in positions
                            if row.tube_index == index
                        ],
                    }
                    for index in TUBE_INDICES
                },
                "completions": [
                    {
                        "tube_index": row.tube_index,
                        "stitch_id": row.stitch_id,
                        "correct_count": row.correct_count,
                        "total_count": row.total_count,
                        "perfect": row.perfect,
                        "stale": row.stale,
                        "completed_at": row.completed_at,
                    }
                    for row in completions
                ],
            }

        return decode_state(data, user_id=user_id)

    def delete(self, user_id: str) -> bool:
        with session_scope(self.engine) as session:
            session.execute(delete(HelixTubePosition).where(HelixTubePosition.user_id == user_id))
            session.execute(delete(HelixCompletion).where(HelixCompletion.user_id == user_id))
            result = session.execute(delete(HelixUserState).where(HelixUserState.user_id == user_id))
            return result.rowcount > 0
