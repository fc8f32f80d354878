"""
Integration tests for the state stores.

JsonStateStore runs against a temporary directory, SqlStateStore against a
throwaway SQLite file. Both must satisfy the same whole-state Load/Save
contract.
"""

import json

import pytest
from sqlalchemy import create_engine, func, select

from src.db.database import session_scope
from src.db.models import HelixTubePosition
from src.helix.codec import MalformedStateError
from src.helix.content_provider import SequenceContentProvider
from src.helix.errors import HelixErrorKind
from src.helix.models import CompletionRecord, PositionSlot
from src.helix.scheduler import TripleHelixScheduler
from src.helix.state_store import JsonStateStore, SqlStateStore


@pytest.fixture
def json_store(tmp_path):
    return JsonStateStore(state_dir=tmp_path / "state")


@pytest.fixture
def sql_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'helix.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def sql_store(sql_engine):
    return SqlStateStore(engine=sql_engine)


@pytest.fixture(params=["json", "sql"])
def store(request):
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def rich_state(sample_state, fixed_now):
    sample_state.active_tube = 3
    sample_state.cycle_count = 2
    sample_state.tubes[2].thread_id = "thread-T2-004"
    sample_state.tubes[1].positions.set(
        25,
        PositionSlot("parked", skip_number=25, distractor_level="L2", perfect_completions=3, last_completed=fixed_now),
    )
    sample_state.completions.extend(
        [
            CompletionRecord(1, "stitch-T1-001", 5, 5, perfect=True, completed_at=fixed_now),
            CompletionRecord(2, "stitch-T2-003", 5, 5, perfect=True, stale=True, completed_at=fixed_now),
        ]
    )
    return sample_state


class TestStoreContract:
    def test_round_trip(self, store, rich_state, fixed_now):
        store.save(rich_state)

        loaded = store.load("learner-1")

        assert loaded.warnings == []
        state = loaded.state
        assert state.tubes == rich_state.tubes
        assert state.completions == rich_state.completions
        assert (state.active_tube, state.cycle_count) == (3, 2)
        assert state.tubes[1].positions.get(25).last_completed == fixed_now
        assert state.updated_at is not None

    def test_missing_user_loads_none(self, store):
        assert store.load("nobody") is None

    def test_save_replaces_previous_state(self, store, rich_state):
        store.save(rich_state)
        rich_state.tubes[1].positions.remove(25)
        rich_state.completions.clear()
        store.save(rich_state)

        state = store.load("learner-1").state
        assert state.tubes[1].positions.get(25) is None
        assert state.completions == []

    def test_delete(self, store, rich_state):
        store.save(rich_state)
        assert store.delete("learner-1") is True
        assert store.load("learner-1") is None
        assert store.delete("learner-1") is False

    def test_scheduler_end_to_end(self, store):
        scheduler = TripleHelixScheduler(
            user_id="learner-2",
            store=store,
            content_provider=SequenceContentProvider.generate(stitches_per_tube=5),
        )

        first = scheduler.complete(1, "stitch-T1-001", 4, 4, advance=True)
        second = scheduler.complete(2, "stitch-T2-001", 3, 4)

        assert first.success and second.success
        state = store.load("learner-2").state
        assert state.active_tube == 2
        assert state.tubes[1].positions.position_of("stitch-T1-001") == 5
        assert state.tubes[1].ready_slot.stitch_id == "stitch-T1-002"
        assert [record.perfect for record in state.completions] == [True, False]


class TestJsonStateStore:
    def test_writes_snake_case_json(self, json_store, rich_state):
        json_store.save(rich_state)

        document = json.loads((json_store.state_dir / "learner-1.json").read_text(encoding="utf-8"))

        assert document["user_id"] == "learner-1"
        assert document["tubes"]["2"]["thread_id"] == "thread-T2-004"

    def test_corrupt_file_raises(self, json_store):
        (json_store.state_dir / "broken.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(MalformedStateError) as exc_info:
            json_store.load("broken")
        assert exc_info.value.error.kind is HelixErrorKind.MALFORMED_STATE

    def test_unsafe_user_id_stays_inside_state_dir(self, json_store, rich_state):
        rich_state.user_id = "../escape/me"
        json_store.save(rich_state)

        files = list(json_store.state_dir.iterdir())
        assert [f.name for f in files] == [".._escape_me.json"]
        assert json_store.load("../escape/me").state.user_id == "../escape/me"

    def test_list_users(self, json_store, rich_state):
        json_store.save(rich_state)
        rich_state.user_id = "learner-9"
        json_store.save(rich_state)

        assert set(json_store.list_users()) == {"learner-1", "learner-9"}


class TestSqlStateStore:
    def test_one_row_per_position(self, sql_store, sql_engine, rich_state):
        sql_store.save(rich_state)
        sql_store.save(rich_state)

        with session_scope(sql_engine) as session:
            count = session.scalar(select(func.count()).select_from(HelixTubePosition))

        assert count == sum(len(tube.positions) for tube in rich_state.tubes.values())

    def test_users_are_isolated(self, sql_store, rich_state):
        sql_store.save(rich_state)
        rich_state.user_id = "learner-2"
        rich_state.tubes[3].positions.remove(0)
        sql_store.save(rich_state)

        assert sql_store.load("learner-1").state.tubes[3].ready_slot is not None
        assert sql_store.load("learner-2").state.tubes[3].ready_slot is None
