"""
Triple-Helix Scheduler.

Serves stitches from three rotating tubes using position-based spaced
repetition:
- Reorder engine (skip progression and decrement-shift)
- Integrity validator (exactly one ready stitch per tube)
- Tube cycler (1 -> 2 -> 3 -> 1)
- Codec and state stores (JSON file, SQL database, in-memory)
"""

from src.helix.content_provider import (
    ContentProvider,
    ContentUnavailableError,
    HttpContentProvider,
    SequenceContentProvider,
)
from src.helix.errors import (
    CompletionResult,
    CycleResult,
    HelixError,
    HelixErrorKind,
    LoadResult,
    RepairReport,
    ReorderResult,
)
from src.helix.integrity import IntegrityValidator
from src.helix.models import (
    SKIP_PROGRESSION,
    PositionSlot,
    TripleHelixState,
    Tube,
)
from src.helix.position_store import PositionStore
from src.helix.reorder_engine import ReorderEngine
from src.helix.scheduler import TripleHelixScheduler
from src.helix.tube_cycler import TubeCycleController

__all__ = [
    # Core
    "PositionStore",
    "PositionSlot",
    "Tube",
    "TripleHelixState",
    "SKIP_PROGRESSION",
    "ReorderEngine",
    "IntegrityValidator",
    "TubeCycleController",
    "TripleHelixScheduler",
    # Results
    "HelixError",
    "HelixErrorKind",
    "ReorderResult",
    "RepairReport",
    "CycleResult",
    "CompletionResult",
    "LoadResult",
    # Content
    "ContentProvider",
    "ContentUnavailableError",
    "SequenceContentProvider",
    "HttpContentProvider",
]
