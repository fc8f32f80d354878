"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import pytest
import sys
from datetime import UTC, datetime
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.helix.models import PositionSlot, TripleHelixState, Tube  # noqa: E402
from src.helix.position_store import PositionStore  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (file system / database)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


def make_tube(layout: dict[int, str | PositionSlot], index: int = 1) -> Tube:
    """Build a tube from {position: stitch_id or PositionSlot}."""
    store = PositionStore()
    for position, slot in layout.items():
        store.set(position, slot if isinstance(slot, PositionSlot) else PositionSlot(stitch_id=slot))
    return Tube(index=index, positions=store)


def layout_of(tube: Tube) -> dict[int, str]:
    """Reduce a tube to {position: stitch_id}."""
    return {position: slot.stitch_id for position, slot in tube.positions.all()}


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def fixed_now():
    """A fixed completion timestamp."""
    return datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


@pytest.fixture
def abc_tube():
    """Tube {0: A, 1: B, 2: C}, all at skip 3."""
    return make_tube({0: "A", 1: "B", 2: "C"})


@pytest.fixture
def sample_state():
    """Provide a three-tube state with a few stitches per tube."""
    state = TripleHelixState(user_id="learner-1")
    for index in (1, 2, 3):
        state.tubes[index] = make_tube(
            {position: f"stitch-T{index}-{position + 1:03d}" for position in range(4)},
            index=index,
        )
    return state


@pytest.fixture
def tube_from():
    """Factory fixture: build a tube from {position: stitch_id or PositionSlot}."""
    return make_tube


@pytest.fixture
def layout():
    """Helper fixture: reduce a tube to {position: stitch_id}."""
    return layout_of
