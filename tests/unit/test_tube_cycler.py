"""Unit tests for TubeCycleController."""

import pytest

from src.helix.errors import HelixErrorKind
from src.helix.models import TripleHelixState
from src.helix.tube_cycler import TubeCycleController


@pytest.fixture
def cycler():
    return TubeCycleController()


class TestAdvance:
    def test_rotates_one_two_three_one(self, cycler):
        state = TripleHelixState(user_id="u")
        seen = []
        for _ in range(4):
            state = cycler.advance(state).state
            seen.append(state.active_tube)
        assert seen == [2, 3, 1, 2]

    def test_wrap_counts_a_cycle(self, cycler):
        result = cycler.advance(TripleHelixState(user_id="u", active_tube=3, cycle_count=4))

        assert result.wrapped is True
        assert result.previous_tube == 3
        assert result.state.active_tube == 1
        assert result.state.cycle_count == 5

    def test_non_wrapping_step_keeps_cycle_count(self, cycler):
        result = cycler.advance(TripleHelixState(user_id="u", active_tube=1))
        assert result.wrapped is False
        assert result.state.cycle_count == 0

    @pytest.mark.parametrize("start", [1, 2, 3])
    def test_three_advances_return_to_start(self, cycler, start):
        state = TripleHelixState(user_id="u", active_tube=start)
        for _ in range(3):
            state = cycler.advance(state).state
        assert state.active_tube == start

    @pytest.mark.parametrize("start", [1, 2, 3])
    @pytest.mark.parametrize("steps", [0, 1, 2, 5, 17])
    def test_n_advances_match_closed_form(self, cycler, start, steps):
        state = TripleHelixState(user_id="u", active_tube=start)
        for _ in range(steps):
            state = cycler.advance(state).state
        assert state.active_tube == ((start - 1 + steps) % 3) + 1

    def test_input_state_is_not_mutated(self, cycler, sample_state):
        cycler.advance(sample_state)
        assert sample_state.active_tube == 1

    def test_rotation_ignores_tube_contents(self, cycler):
        # All tubes empty: rotation still proceeds
        assert cycler.advance(TripleHelixState(user_id="u", active_tube=2)).state.active_tube == 3


class TestSelect:
    def test_select_jumps_without_counting_cycle(self, cycler):
        result = cycler.select(TripleHelixState(user_id="u", active_tube=3, cycle_count=2), 1)
        assert result.success is True
        assert result.state.active_tube == 1
        assert result.state.cycle_count == 2

    @pytest.mark.parametrize("tube", [0, 4, -1])
    def test_select_rejects_unknown_tube(self, cycler, tube):
        state = TripleHelixState(user_id="u")
        result = cycler.select(state, tube)
        assert result.success is False
        assert result.error.kind is HelixErrorKind.INVALID_TUBE
        assert result.state is state
