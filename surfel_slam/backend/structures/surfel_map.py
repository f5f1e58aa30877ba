"""
SurfelMap: slot arena of oriented surface elements.

Each surfel j in the map has:
- Geometry: position (3,), unit normal (3,), radius
- Appearance: color (3,) in [0, 1]
- Evidence: confidence (accumulated observation count, capped by fusion)
- Metadata: creation / last-update timestamps, consecutive unmatched count

Storage is struct-of-arrays indexed by slot. Removed slots go on a free list
and are reused; every removal bumps the slot's generation so a SurfelId
(slot, generation) issued before the removal never resolves again.

The map is mutated only by the fusion pipeline. Readers take a SurfelSnapshot,
an immutable copy of the live surfels, for the duration of one frame.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, NamedTuple, Optional

import numpy as np

from surfel_slam.common import constants
from surfel_slam.common.errors import (
    DegenerateSurfelError,
    MapCapacityError,
    StaleSurfelIdError,
    UnknownSurfelIdError,
)
from surfel_slam.backend.structures.bounding_sphere import BoundingSphere


_logger = logging.getLogger(__name__)


# =============================================================================
# Surfel Data Structures
# =============================================================================


class SurfelId(NamedTuple):
    """Stable surfel identifier. slot addresses storage, generation detects reuse."""
    slot: int
    generation: int


@dataclass
class Surfel:
    """
    Single surfel (value copy; editing it does not touch the map).

    Attributes:
        position: (3,) map-frame position
        normal: (3,) unit normal
        radius: Disk radius (meters)
        color: (3,) RGB in [0, 1]
        confidence: Accumulated evidence weight
        created_at: Creation time
        updated_at: Last fusion time
    """
    position: np.ndarray
    normal: np.ndarray
    radius: float
    color: np.ndarray
    confidence: float = 1.0
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass(frozen=True)
class SurfelSnapshot:
    """
    Immutable copy of the live surfels, in ascending slot order.

    row_of_slot maps a slot to its row here (-1 for dead slots) and covers
    every slot the map had when the snapshot was taken.
    """
    slots: np.ndarray         # (K,) int64
    generations: np.ndarray   # (K,) int64
    positions: np.ndarray     # (K, 3)
    normals: np.ndarray       # (K, 3)
    radii: np.ndarray         # (K,)
    colors: np.ndarray        # (K, 3)
    confidences: np.ndarray   # (K,)
    created_at: np.ndarray    # (K,)
    updated_at: np.ndarray    # (K,)
    row_of_slot: np.ndarray   # (capacity,) int64

    def __len__(self) -> int:
        return int(self.slots.shape[0])

    def is_empty(self) -> bool:
        return self.slots.shape[0] == 0

    def ids(self) -> List[SurfelId]:
        return [SurfelId(int(s), int(g)) for s, g in zip(self.slots, self.generations)]

    def rows_for_slots(self, slots: np.ndarray) -> np.ndarray:
        """Snapshot rows for slots (-1 for slots that are negative, dead or out of range)."""
        slots = np.asarray(slots, dtype=np.int64)
        ok = (slots >= 0) & (slots < self.row_of_slot.shape[0])
        rows = np.full(slots.shape, -1, dtype=np.int64)
        rows[ok] = self.row_of_slot[slots[ok]]
        return rows

    def bounding_sphere(self) -> BoundingSphere:
        return BoundingSphere.from_points(self.positions)


# =============================================================================
# Surfel Map
# =============================================================================


class SurfelMap:
    """Slot arena with free-list reuse and generation-tagged identifiers."""

    def __init__(
        self,
        capacity: int = constants.SURFEL_MAP_INITIAL_CAPACITY,
        max_surfels: Optional[int] = None,
    ):
        capacity = max(1, int(capacity))
        self.max_surfels = max_surfels
        self._positions = np.zeros((capacity, 3))
        self._normals = np.zeros((capacity, 3))
        self._radii = np.zeros(capacity)
        self._colors = np.zeros((capacity, 3))
        self._confidences = np.zeros(capacity)
        self._created_at = np.zeros(capacity)
        self._updated_at = np.zeros(capacity)
        self._unmatched = np.zeros(capacity, dtype=np.int64)
        self._generations = np.zeros(capacity, dtype=np.int64)
        self._alive = np.zeros(capacity, dtype=bool)
        self._free: List[int] = []
        self._high_water = 0
        self._count = 0

    def __len__(self) -> int:
        return self._count

    @property
    def capacity(self) -> int:
        return int(self._alive.shape[0])

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    def _grow(self, needed: int) -> None:
        new_capacity = self.capacity
        while new_capacity < needed:
            new_capacity *= 2
        if new_capacity == self.capacity:
            return
        extra = new_capacity - self.capacity
        _logger.debug(f"SurfelMap growing capacity {self.capacity} -> {new_capacity}")
        self._positions = np.concatenate([self._positions, np.zeros((extra, 3))])
        self._normals = np.concatenate([self._normals, np.zeros((extra, 3))])
        self._radii = np.concatenate([self._radii, np.zeros(extra)])
        self._colors = np.concatenate([self._colors, np.zeros((extra, 3))])
        self._confidences = np.concatenate([self._confidences, np.zeros(extra)])
        self._created_at = np.concatenate([self._created_at, np.zeros(extra)])
        self._updated_at = np.concatenate([self._updated_at, np.zeros(extra)])
        self._unmatched = np.concatenate([self._unmatched, np.zeros(extra, dtype=np.int64)])
        self._generations = np.concatenate([self._generations, np.zeros(extra, dtype=np.int64)])
        self._alive = np.concatenate([self._alive, np.zeros(extra, dtype=bool)])

    def _allocate(self, n: int) -> np.ndarray:
        """Take n slots, free list first (lowest slot first), then fresh ones."""
        n_reused = min(n, len(self._free))
        reused = [self._free.pop() for _ in range(n_reused)]
        n_fresh = n - n_reused
        if n_fresh > 0:
            self._grow(self._high_water + n_fresh)
        fresh = list(range(self._high_water, self._high_water + n_fresh))
        self._high_water += n_fresh
        return np.asarray(reused + fresh, dtype=np.int64)

    def _resolve(self, surfel_id: SurfelId) -> int:
        slot, generation = int(surfel_id[0]), int(surfel_id[1])
        if slot < 0 or slot >= self._high_water:
            raise UnknownSurfelIdError(f"Surfel id {tuple(surfel_id)} was never issued")
        current = int(self._generations[slot])
        if generation < current:
            raise StaleSurfelIdError(f"Surfel id {tuple(surfel_id)} refers to a removed surfel")
        if generation > current or not self._alive[slot]:
            raise UnknownSurfelIdError(f"Surfel id {tuple(surfel_id)} was never issued")
        return slot

    # -------------------------------------------------------------------------
    # Insert / lookup / remove
    # -------------------------------------------------------------------------

    def insert(self, surfel: Surfel) -> SurfelId:
        """Insert one surfel and return its new identifier."""
        slots = self.insert_batch(
            positions=np.asarray(surfel.position, dtype=float).reshape(1, 3),
            normals=np.asarray(surfel.normal, dtype=float).reshape(1, 3),
            radii=np.array([surfel.radius], dtype=float),
            colors=np.asarray(surfel.color, dtype=float).reshape(1, 3),
            confidences=np.array([surfel.confidence], dtype=float),
            timestamp=surfel.created_at,
        )
        if slots.shape[0] == 0:
            raise MapCapacityError(f"SurfelMap is full (max_surfels={self.max_surfels})")
        slot = int(slots[0])
        self._updated_at[slot] = surfel.updated_at
        return self.id_of(slot)

    def insert_batch(
        self,
        positions: np.ndarray,
        normals: np.ndarray,
        radii: np.ndarray,
        colors: np.ndarray,
        confidences: np.ndarray,
        timestamp: float,
        eps_normal: float = constants.EPS_NORMAL,
    ) -> np.ndarray:
        """
        Insert surfels; normals are normalized on the way in.

        When max_surfels is set, only the first entries that fit are inserted.

        Returns:
            Slots of the inserted surfels (use id_of for identifiers)

        Raises:
            DegenerateSurfelError: any normal has near-zero magnitude
        """
        positions = np.asarray(positions, dtype=float).reshape(-1, 3)
        normals = np.asarray(normals, dtype=float).reshape(-1, 3)
        n = positions.shape[0]
        norms = np.linalg.norm(normals, axis=1)
        if np.any(~(norms > eps_normal)):
            raise DegenerateSurfelError("Cannot insert a surfel with a zero-magnitude normal")

        if self.max_surfels is not None and self._count + n > self.max_surfels:
            fits = max(0, self.max_surfels - self._count)
            _logger.warning(
                f"SurfelMap capacity reached: inserting {fits} of {n} surfels (max_surfels={self.max_surfels})"
            )
            n = fits
        if n == 0:
            return np.zeros(0, dtype=np.int64)

        slots = self._allocate(n)
        self._positions[slots] = positions[:n]
        self._normals[slots] = normals[:n] / norms[:n, None]
        self._radii[slots] = np.asarray(radii, dtype=float).reshape(-1)[:n]
        self._colors[slots] = np.asarray(colors, dtype=float).reshape(-1, 3)[:n]
        self._confidences[slots] = np.asarray(confidences, dtype=float).reshape(-1)[:n]
        self._created_at[slots] = timestamp
        self._updated_at[slots] = timestamp
        self._unmatched[slots] = 0
        self._alive[slots] = True
        self._count += n
        return slots

    def id_of(self, slot: int) -> SurfelId:
        slot = int(slot)
        if slot < 0 or slot >= self._high_water or not self._alive[slot]:
            raise UnknownSurfelIdError(f"Slot {slot} holds no live surfel")
        return SurfelId(slot, int(self._generations[slot]))

    def contains(self, surfel_id: SurfelId) -> bool:
        try:
            self._resolve(surfel_id)
        except KeyError:
            return False
        return True

    def get(self, surfel_id: SurfelId) -> Surfel:
        """
        Copy of a live surfel.

        Raises:
            StaleSurfelIdError: the surfel was removed
            UnknownSurfelIdError: the id was never issued
        """
        slot = self._resolve(surfel_id)
        return Surfel(
            position=self._positions[slot].copy(),
            normal=self._normals[slot].copy(),
            radius=float(self._radii[slot]),
            color=self._colors[slot].copy(),
            confidence=float(self._confidences[slot]),
            created_at=float(self._created_at[slot]),
            updated_at=float(self._updated_at[slot]),
        )

    def remove(self, surfel_id: SurfelId) -> Surfel:
        """Remove a surfel and return its last state."""
        surfel = self.get(surfel_id)
        self.remove_slots(np.array([surfel_id[0]], dtype=np.int64))
        return surfel

    def remove_slots(self, slots: np.ndarray) -> int:
        """Remove live surfels by slot; dead slots are ignored. Returns the number removed."""
        slots = np.unique(np.asarray(slots, dtype=np.int64))
        slots = slots[(slots >= 0) & (slots < self._high_water)]
        slots = slots[self._alive[slots]]
        if slots.shape[0] == 0:
            return 0
        self._alive[slots] = False
        self._generations[slots] += 1
        self._confidences[slots] = 0.0
        self._unmatched[slots] = 0
        # Kept sorted descending so pop() hands out the lowest slot.
        self._free = sorted(self._free + slots.tolist(), reverse=True)
        self._count -= int(slots.shape[0])
        return int(slots.shape[0])

    def clear(self) -> None:
        self.remove_slots(self.live_slots())

    # -------------------------------------------------------------------------
    # Bulk access (fusion pipeline)
    # -------------------------------------------------------------------------

    def live_slots(self) -> np.ndarray:
        return np.nonzero(self._alive[:self._high_water])[0].astype(np.int64)

    def update_slots(
        self,
        slots: np.ndarray,
        positions: np.ndarray,
        normals: np.ndarray,
        radii: np.ndarray,
        colors: np.ndarray,
        confidences: np.ndarray,
        timestamp: float,
    ) -> None:
        """Overwrite fused state of live slots and reset their unmatched counters."""
        slots = np.asarray(slots, dtype=np.int64)
        if slots.shape[0] == 0:
            return
        if not np.all(self._alive[slots]):
            raise ValueError("update_slots called with dead slots")
        self._positions[slots] = positions
        self._normals[slots] = normals
        self._radii[slots] = radii
        self._colors[slots] = colors
        self._confidences[slots] = confidences
        self._updated_at[slots] = timestamp
        self._unmatched[slots] = 0

    def mark_unmatched(self, slots: np.ndarray) -> None:
        """Count one more consecutive frame in which these visible surfels went unmatched."""
        slots = np.asarray(slots, dtype=np.int64)
        slots = slots[self._alive[slots]]
        self._unmatched[slots] += 1

    def unmatched_counts(self, slots: np.ndarray) -> np.ndarray:
        return self._unmatched[np.asarray(slots, dtype=np.int64)].copy()

    def snapshot(self) -> SurfelSnapshot:
        slots = self.live_slots()
        row_of_slot = np.full(self._high_water, -1, dtype=np.int64)
        row_of_slot[slots] = np.arange(slots.shape[0], dtype=np.int64)
        arrays = dict(
            slots=slots,
            generations=self._generations[slots].copy(),
            positions=self._positions[slots].copy(),
            normals=self._normals[slots].copy(),
            radii=self._radii[slots].copy(),
            colors=self._colors[slots].copy(),
            confidences=self._confidences[slots].copy(),
            created_at=self._created_at[slots].copy(),
            updated_at=self._updated_at[slots].copy(),
            row_of_slot=row_of_slot,
        )
        for a in arrays.values():
            a.setflags(write=False)
        return SurfelSnapshot(**arrays)

    def bounding_sphere(self) -> BoundingSphere:
        return BoundingSphere.from_points(self._positions[self.live_slots()])
