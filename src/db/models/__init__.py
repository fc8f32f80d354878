# SQLAlchemy models
from .base import Base
from .helix import (
    HelixCompletion,
    HelixTubePosition,
    HelixUserState,
)

__all__ = [
    "Base",
    "HelixUserState",
    "HelixTubePosition",
    "HelixCompletion",
]
