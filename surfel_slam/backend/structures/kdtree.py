"""
Static KD-tree over an unorganized 3D point set.

Thin layer over scipy's cKDTree built with median splits. Read-only after
construction; any change to the point set requires a new tree.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from scipy.spatial import cKDTree

from surfel_slam.common import constants
from surfel_slam.common.errors import EmptyIndexError


class KDTree:
    """
    Nearest and radius neighbor queries.

    Indices returned by queries refer to rows of the points passed to the
    constructor.
    """

    def __init__(self, points: np.ndarray, leaf_size: int = constants.KDTREE_LEAF_SIZE_DEFAULT):
        points = np.asarray(points, dtype=float)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(f"points must have shape (N, 3), got {points.shape}")
        if not np.all(np.isfinite(points)):
            raise ValueError("points must be finite")
        if leaf_size < 1:
            raise ValueError(f"leaf_size must be >= 1, got {leaf_size}")

        self._points = np.array(points)
        self._tree: Optional[cKDTree] = None
        if points.shape[0] > 0:
            self._tree = cKDTree(self._points, leafsize=int(leaf_size), balanced_tree=True)

    def __len__(self) -> int:
        return int(self._points.shape[0])

    def _require_tree(self) -> cKDTree:
        if self._tree is None:
            raise EmptyIndexError("KDTree has no points")
        return self._tree

    def nearest(self, point: np.ndarray) -> Tuple[float, int]:
        """Closest indexed point: (distance, index)."""
        tree = self._require_tree()
        point = np.asarray(point, dtype=float).reshape(-1)
        if point.shape != (3,):
            raise ValueError(f"query must be a 3-vector, got shape {point.shape}")
        dist, idx = tree.query(point, k=1)
        return float(dist), int(idx)

    def nearest_batch(
        self, points: np.ndarray, max_distance: Optional[float] = None
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Closest indexed point for each query row.

        Returns:
            (distances, indices). Queries with no neighbor within max_distance
            get distance inf and index -1.
        """
        tree = self._require_tree()
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        # cKDTree's bound is exclusive; step past it so max_distance itself counts.
        bound = np.inf if max_distance is None else np.nextafter(float(max_distance), np.inf)
        dists, idx = tree.query(points, k=1, distance_upper_bound=bound)
        idx = np.asarray(idx, dtype=np.int64)
        dists = np.asarray(dists, dtype=float)
        miss = idx >= len(self)
        idx[miss] = -1
        dists[miss] = np.inf
        return dists, idx

    def radius(self, point: np.ndarray, r: float) -> np.ndarray:
        """Indices of all points within distance r, sorted by distance."""
        tree = self._require_tree()
        point = np.asarray(point, dtype=float).reshape(-1)
        if point.shape != (3,):
            raise ValueError(f"query must be a 3-vector, got shape {point.shape}")
        idx = np.asarray(tree.query_ball_point(point, float(r)), dtype=np.int64)
        if idx.size == 0:
            return idx
        d_sq = np.sum((self._points[idx] - point) ** 2, axis=1)
        return idx[np.argsort(d_sq, kind="stable")]
