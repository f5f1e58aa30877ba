"""
Projective index map.

One cell per pixel of a reference view. Each cell is empty or holds the
surfel (slot, generation) nearest to the camera along that pixel, plus its
depth. The map is rebuilt from a SurfelSnapshot every frame and never keeps
entries across rebuilds.
"""

from __future__ import annotations

from typing import NamedTuple, Optional, Tuple

import numpy as np

from surfel_slam.common import constants
from surfel_slam.common.pose import Pose
from surfel_slam.backend.structures.surfel_map import SurfelId, SurfelSnapshot


class IndexMapEntry(NamedTuple):
    surfel_id: SurfelId
    depth: float


class IndexMap:
    """Depth-tested rasterization of surfel centers."""

    def __init__(self, width: int, height: int):
        if width <= 0 or height <= 0:
            raise ValueError(f"IndexMap size must be positive, got {width}x{height}")
        self.width = int(width)
        self.height = int(height)
        self.slots = np.full((self.height, self.width), -1, dtype=np.int64)
        self.generations = np.zeros((self.height, self.width), dtype=np.int64)
        self.depths = np.full((self.height, self.width), np.inf)
        self.reference_pose: Optional[Pose] = None

    def clear(self) -> None:
        self.slots.fill(-1)
        self.generations.fill(0)
        self.depths.fill(np.inf)

    @property
    def n_filled(self) -> int:
        return int(np.count_nonzero(self.slots >= 0))

    def rebuild(
        self,
        snapshot: SurfelSnapshot,
        reference_pose: Pose,
        camera,
        min_view_cosine: Optional[float] = None,
    ) -> int:
        """
        Rasterize all live surfels seen from reference_pose (camera-to-map).

        A surfel is written to the cell its center projects to when it is in
        front of the camera, inside the image and, if min_view_cosine is set,
        facing the camera: dot(n_cam, -ray) >= min_view_cosine. Among surfels
        sharing a cell the smallest depth wins; ties go to the lower slot.

        Returns:
            Number of filled cells
        """
        if (camera.width, camera.height) != (self.width, self.height):
            raise ValueError(
                f"Camera {camera.width}x{camera.height} does not match IndexMap {self.width}x{self.height}"
            )
        self.clear()
        self.reference_pose = reference_pose
        if snapshot.is_empty():
            return 0

        map_to_cam = reference_pose.inverse()
        p_cam = map_to_cam.transform_points(snapshot.positions)
        n_cam = map_to_cam.transform_normals(snapshot.normals)
        rows, cols, depth, keep = camera.project_to_pixels(p_cam)

        n_norm = np.linalg.norm(n_cam, axis=1)
        keep &= np.abs(n_norm - 1.0) <= constants.UNIT_NORMAL_TOLERANCE
        if min_view_cosine is not None:
            ray = p_cam / np.maximum(np.linalg.norm(p_cam, axis=1, keepdims=True), constants.EPS_DEPTH)
            facing = -np.sum(n_cam * ray, axis=1)
            keep &= facing >= min_view_cosine

        cand = np.nonzero(keep)[0]
        if cand.shape[0] == 0:
            return 0
        # Snapshot rows are in ascending slot order, so a stable sort on depth
        # breaks ties by slot.
        order = cand[np.argsort(depth[cand], kind="stable")]
        cells = rows[order] * self.width + cols[order]
        _, first = np.unique(cells, return_index=True)
        winners = order[first]

        r, c = rows[winners], cols[winners]
        self.slots[r, c] = snapshot.slots[winners]
        self.generations[r, c] = snapshot.generations[winners]
        self.depths[r, c] = depth[winners]
        return int(winners.shape[0])

    def lookup(self, row: int, col: int) -> Optional[IndexMapEntry]:
        """Entry at a pixel, or None for empty or out-of-bounds cells."""
        if not (0 <= row < self.height and 0 <= col < self.width):
            return None
        slot = int(self.slots[row, col])
        if slot < 0:
            return None
        return IndexMapEntry(
            surfel_id=SurfelId(slot, int(self.generations[row, col])),
            depth=float(self.depths[row, col]),
        )

    def lookup_batch(self, rows: np.ndarray, cols: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Vectorized lookup.

        Returns:
            (slots, depths); slot -1 and depth inf for empty or out-of-bounds pixels
        """
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        inb = (rows >= 0) & (rows < self.height) & (cols >= 0) & (cols < self.width)
        slots = np.full(rows.shape, -1, dtype=np.int64)
        depths = np.full(rows.shape, np.inf)
        slots[inb] = self.slots[rows[inb], cols[inb]]
        depths[inb] = self.depths[rows[inb], cols[inb]]
        return slots, depths

    def visible_slots(self) -> np.ndarray:
        """Slots that won at least one cell in the last rebuild."""
        filled = self.slots[self.slots >= 0]
        return np.unique(filled)
