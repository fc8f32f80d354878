"""
Unit tests for IntegrityValidator.

Corrupted tubes are built with PositionStore.from_entries so that two
slots can share a position, the way a bad persisted row set would.
"""

from datetime import UTC, datetime, timedelta

import pytest

from src.helix.content_provider import ContentUnavailableError, SequenceContentProvider
from src.helix.errors import HelixErrorKind
from src.helix.integrity import IntegrityValidator
from src.helix.models import PositionSlot, Tube
from src.helix.position_store import PositionStore


def corrupted(entries, index=1):
    return Tube(
        index=index,
        positions=PositionStore.from_entries(
            [(position, slot if isinstance(slot, PositionSlot) else PositionSlot(slot)) for position, slot in entries]
        ),
    )


class RecordingProvider:
    def __init__(self, answer=None, error=None):
        self.answer = answer
        self.error = error
        self.calls = []

    def next_unused_stitch(self, tube_index, exclude):
        self.calls.append((tube_index, set(exclude)))
        if self.error:
            raise self.error
        return self.answer


class TestValidTubes:
    def test_valid_tube_is_untouched(self, abc_tube):
        report = IntegrityValidator().validate_and_repair(abc_tube)

        assert report.changed is False
        assert report.errors == []
        assert report.tube == abc_tube
        assert report.tube is not abc_tube

    def test_gaps_are_tolerated(self, tube_from, layout):
        tube = tube_from({0: "A", 4: "B", 90: "C"})
        report = IntegrityValidator().validate_and_repair(tube)
        assert not report.changed
        assert layout(report.tube) == {0: "A", 4: "B", 90: "C"}

    def test_empty_tube_is_left_alone(self, tube_from):
        provider = RecordingProvider(answer="Z")
        report = IntegrityValidator(provider).validate_and_repair(tube_from({}))

        assert not report.changed
        assert provider.calls == []


class TestZeroReadySlots:
    def test_provider_fills_position_zero(self, tube_from, layout):
        provider = RecordingProvider(answer="Z")

        report = IntegrityValidator(provider).validate_and_repair(tube_from({5: "A"}, index=2))

        assert layout(report.tube) == {0: "Z", 5: "A"}
        assert report.tube.positions.get(0).skip_number == 3
        assert provider.calls == [(2, {"A"})]
        assert report.actions[0].action == "provisioned"

    def test_sequence_provider_skips_ids_already_in_tube(self, tube_from, layout):
        provider = SequenceContentProvider({1: ["A", "B", "Z"]})
        report = IntegrityValidator(provider).validate_and_repair(tube_from({3: "B", 5: "A"}))
        assert layout(report.tube) == {0: "Z", 3: "B", 5: "A"}

    @pytest.mark.parametrize(
        "provider",
        [
            None,
            RecordingProvider(answer=None),
            RecordingProvider(error=ContentUnavailableError("down")),
            RecordingProvider(answer="A"),
        ],
        ids=["no-provider", "exhausted", "unavailable", "duplicate-id"],
    )
    def test_falls_back_to_promoting_lowest(self, provider, tube_from, layout):
        report = IntegrityValidator(provider).validate_and_repair(tube_from({2: "B", 5: "A"}))

        assert layout(report.tube) == {0: "B", 5: "A"}
        assert report.actions[0].action == "promoted"
        assert report.success is True

    def test_missing_predecessor_when_fallback_disabled(self, tube_from, layout):
        validator = IntegrityValidator(None, allow_promotion_fallback=False)

        report = validator.validate_and_repair(tube_from({5: "A"}))

        assert report.success is False
        assert report.errors[0].kind is HelixErrorKind.MISSING_PREDECESSOR
        assert layout(report.tube) == {5: "A"}


class TestMultipleReadySlots:
    def test_smallest_id_wins_and_loser_moves_to_one(self, layout):
        report = IntegrityValidator().validate_and_repair(corrupted([(0, "B"), (0, "A")]))

        assert layout(report.tube) == {0: "A", 1: "B"}
        assert report.tube.positions.collisions() == []

    def test_preferred_stitch_wins(self, layout):
        report = IntegrityValidator().validate_and_repair(
            corrupted([(0, "A"), (0, "B")]), preferred_stitch_id="B"
        )
        assert layout(report.tube) == {0: "B", 1: "A"}

    def test_losers_take_lowest_unused_positions_in_id_order(self, layout):
        tube = corrupted([(0, "C"), (0, "A"), (0, "B"), (1, "D"), (3, "E")])

        report = IntegrityValidator().validate_and_repair(tube)

        assert layout(report.tube) == {0: "A", 1: "D", 2: "B", 3: "E", 4: "C"}
        relocated = [(a.stitch_id, a.to_position) for a in report.actions if a.action == "relocated"]
        assert relocated == [("B", 2), ("C", 4)]

    def test_recency_does_not_decide_ready_slot(self, layout):
        # Only the preferred stitch or the smallest id wins position 0
        recent = PositionSlot("B", last_completed=datetime(2026, 10, 1, tzinfo=UTC))
        report = IntegrityValidator().validate_and_repair(corrupted([(0, "A"), (0, recent)]))

        assert layout(report.tube) == {0: "A", 1: "B"}


class TestDuplicatePositions:
    def test_more_recent_completion_wins(self, layout):
        old = datetime(2026, 1, 1, tzinfo=UTC)
        tube = corrupted([(0, "A"), (3, PositionSlot("B", last_completed=old)), (3, PositionSlot("C", last_completed=old + timedelta(days=1)))])

        report = IntegrityValidator().validate_and_repair(tube)

        assert layout(report.tube) == {0: "A", 3: "C"}
        assert report.errors[0].kind is HelixErrorKind.DUPLICATE_POSITION
        assert report.errors[0].stitch_id == "B"

    def test_never_completed_loses(self, layout):
        tube = corrupted([(0, "A"), (3, PositionSlot("B", last_completed=datetime(2026, 1, 1, tzinfo=UTC))), (3, "C")])
        assert layout(IntegrityValidator().validate_and_repair(tube).tube) == {0: "A", 3: "B"}

    def test_tie_goes_to_smaller_id(self, layout):
        tube = corrupted([(0, "A"), (3, "C"), (3, "B")])
        assert layout(IntegrityValidator().validate_and_repair(tube).tube) == {0: "A", 3: "B"}

    def test_provider_never_reuses_a_duplicate_row_for_ready_slot(self, layout):
        tube = corrupted([(3, "B"), (3, PositionSlot("C", last_completed=datetime(2026, 1, 1, tzinfo=UTC)))])
        validator = IntegrityValidator(SequenceContentProvider({1: ["C", "Z"]}))

        report = validator.validate_and_repair(tube)

        ids = [slot.stitch_id for _, slot in report.tube.positions.entries()]
        assert len(ids) == len(set(ids))
        assert layout(report.tube) == {0: "Z", 3: "C"}
        assert validator.validate_and_repair(report.tube).changed is False


class TestIdempotence:
    @pytest.mark.parametrize(
        "entries",
        [
            [(0, "A"), (1, "B")],
            [(0, "B"), (0, "A"), (0, "C")],
            [(2, "B"), (5, "A")],
            [(0, "A"), (4, "B"), (4, "C"), (0, "D")],
        ],
    )
    def test_repair_twice_equals_repair_once(self, entries):
        validator = IntegrityValidator(SequenceContentProvider({1: ["N1", "N2"]}))

        once = validator.validate_and_repair(corrupted(entries))
        twice = validator.validate_and_repair(once.tube)

        assert twice.tube == once.tube
        assert twice.changed is False

    def test_repaired_tube_has_exactly_one_ready_slot(self):
        report = IntegrityValidator().validate_and_repair(corrupted([(0, "B"), (0, "A"), (0, "C"), (2, "D")]))
        ready = [slot for position, slot in report.tube.positions.entries() if position == 0]
        assert len(ready) == 1


class TestCheck:
    def test_lists_problems_without_repairing(self):
        tube = corrupted([(0, "A"), (0, "B"), (2, "C"), (2, "D")])

        problems = IntegrityValidator().check(tube)

        assert problems == ["extra ready slot B at position 0", "duplicate slot D at position 2"]
        assert len(tube.positions.collisions()) == 2

    def test_reports_missing_ready_slot(self, tube_from):
        assert IntegrityValidator().check(tube_from({1: "A"})) == ["no ready slot at position 0"]
