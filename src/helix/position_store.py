"""
Position Store - one tube's position -> slot mapping.

A plain container: no validation, no ordering assumptions beyond
"iterate by numeric position". Corrupted input (two slots persisted at
the same position) is kept as collisions via ``place`` so the integrity
validator can see and repair it instead of it being silently overwritten.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.helix.models import PositionSlot


class PositionStore:
    """Mapping from non-negative integer position to PositionSlot."""

    def __init__(self, slots: dict[int, PositionSlot] | None = None):
        self._slots: dict[int, PositionSlot] = dict(slots or {})
        self._collisions: list[tuple[int, PositionSlot]] = []

    @classmethod
    def from_entries(cls, entries: list[tuple[int, PositionSlot]]) -> PositionStore:
        """Build a store from raw (position, slot) rows, keeping collisions."""
        store = cls()
        for position, slot in entries:
            store.place(position, slot)
        return store

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    def get(self, position: int) -> PositionSlot | None:
        return self._slots.get(position)

    def set(self, position: int, slot: PositionSlot) -> None:
        self._slots[position] = slot

    def remove(self, position: int) -> PositionSlot | None:
        return self._slots.pop(position, None)

    def all(self) -> list[tuple[int, PositionSlot]]:
        """All primary entries, ascending by position."""
        return sorted(self._slots.items(), key=lambda item: item[0])

    # ------------------------------------------------------------------
    # Collisions
    # ------------------------------------------------------------------

    def place(self, position: int, slot: PositionSlot) -> None:
        """Put a slot at a position without overwriting an existing one."""
        if position in self._slots:
            self._collisions.append((position, slot))
        else:
            self._slots[position] = slot

    def collisions(self) -> list[tuple[int, PositionSlot]]:
        return list(self._collisions)

    def clear_collisions(self) -> None:
        self._collisions.clear()

    def entries(self) -> list[tuple[int, PositionSlot]]:
        """Primary entries plus collisions, ascending by position."""
        return sorted([*self._slots.items(), *self._collisions], key=lambda item: item[0])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def stitch_ids(self) -> set[str]:
        return {slot.stitch_id for _, slot in self.entries()}

    def position_of(self, stitch_id: str) -> int | None:
        for position, slot in self.all():
            if slot.stitch_id == stitch_id:
                return position
        return None

    def max_position(self) -> int | None:
        return max(self._slots) if self._slots else None

    def lowest_unused_positive(self, reserved: set[int] | None = None) -> int:
        position = 1
        taken = set(self._slots) | (reserved or set())
        while position in taken:
            position += 1
        return position

    def copy(self) -> PositionStore:
        clone = PositionStore({position: slot.copy() for position, slot in self._slots.items()})
        clone._collisions = [(position, slot.copy()) for position, slot in self._collisions]
        return clone

    def __len__(self) -> int:
        return len(self._slots) + len(self._collisions)

    def __contains__(self, position: object) -> bool:
        return position in self._slots

    def __iter__(self) -> Iterator[tuple[int, PositionSlot]]:
        return iter(self.all())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PositionStore):
            return NotImplemented
        return self.all() == other.all() and sorted(
            self._collisions, key=lambda item: (item[0], item[1].stitch_id)
        ) == sorted(other._collisions, key=lambda item: (item[0], item[1].stitch_id))

    def __repr__(self) -> str:
        body = ", ".join(f"{pos}: {slot.stitch_id}" for pos, slot in self.all())
        extra = f" +{len(self._collisions)} collisions" if self._collisions else ""
        return f"<PositionStore {{{body}}}{extra}>"
