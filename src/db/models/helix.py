"""
Triple-Helix Persistence Models.

SQLAlchemy models for a learner's scheduler state:
- Per-user header (active tube, cycle count)
- One row per occupied tube position
- Completion attempt history
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class HelixUserState(Base):
    """Scheduler header row, one per learner."""

    __tablename__ = "helix_user_state"

    user_id: Mapped[str] = mapped_column(Text, primary_key=True)
    active_tube: Mapped[int] = mapped_column(Integer, default=1)
    cycle_count: Mapped[int] = mapped_column(Integer, default=0)
    thread_id_1: Mapped[str | None] = mapped_column(Text)
    thread_id_2: Mapped[str | None] = mapped_column(Text)
    thread_id_3: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    positions: Mapped[list[HelixTubePosition]] = relationship(
        back_populates="user_state", cascade="all, delete-orphan"
    )
    completions: Mapped[list[HelixCompletion]] = relationship(
        back_populates="user_state", cascade="all, delete-orphan", order_by="HelixCompletion.id"
    )

    def __repr__(self) -> str:
        return f"<HelixUserState user={self.user_id} active_tube={self.active_tube}>"


class HelixTubePosition(Base):
    """
    One occupied position in one tube.

    Unique on (user, tube, position): exactly one stitch per position.
    """

    __tablename__ = "helix_tube_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("helix_user_state.user_id", ondelete="CASCADE"), nullable=False
    )
    tube_index: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    stitch_id: Mapped[str] = mapped_column(Text, nullable=False)
    skip_number: Mapped[int] = mapped_column(Integer, default=3)
    distractor_level: Mapped[str] = mapped_column(Text, default="L1")
    perfect_completions: Mapped[int] = mapped_column(Integer, default=0)
    last_completed: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    user_state: Mapped[HelixUserState] = relationship(back_populates="positions")

    __table_args__ = (
        UniqueConstraint("user_id", "tube_index", "position", name="uq_helix_tube_position"),
        Index("idx_helix_positions_stitch", "user_id", "stitch_id"),
    )

    def __repr__(self) -> str:
        return f"<HelixTubePosition tube={self.tube_index} pos={self.position} stitch={self.stitch_id}>"


class HelixCompletion(Base):
    """A reported stitch completion."""

    __tablename__ = "helix_completions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("helix_user_state.user_id", ondelete="CASCADE"), nullable=False, index=True
    )
    tube_index: Mapped[int | None] = mapped_column(Integer)
    stitch_id: Mapped[str] = mapped_column(Text, nullable=False)
    correct_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total_count: Mapped[int] = mapped_column(Integer, nullable=False)
    perfect: Mapped[bool] = mapped_column(Boolean, default=False)
    stale: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    user_state: Mapped[HelixUserState] = relationship(back_populates="completions")
