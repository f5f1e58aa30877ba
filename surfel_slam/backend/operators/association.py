"""
Data association between observed points and map surfels.

Two strategies share one output type:
- projective: project into the index map's reference view and take the
  surfel stored in that pixel (O(1) per point)
- nearest neighbor: query a KDTree over surfel positions (fallback for large
  motion or when the index map yields too few matches)

Both gate candidates on Euclidean distance and on the cosine between the
observed normal and the surfel normal. Inputs are read only.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from surfel_slam.backend.structures.index_map import IndexMap
from surfel_slam.backend.structures.kdtree import KDTree
from surfel_slam.backend.structures.surfel_map import SurfelSnapshot


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class Correspondences:
    """Accepted matches. target_index addresses the target arrays (snapshot rows)."""
    source_index: np.ndarray  # (M,) int64
    target_index: np.ndarray  # (M,) int64
    distances: np.ndarray     # (M,)

    def __len__(self) -> int:
        return int(self.source_index.shape[0])

    @classmethod
    def empty(cls) -> "Correspondences":
        return cls(
            source_index=np.zeros(0, dtype=np.int64),
            target_index=np.zeros(0, dtype=np.int64),
            distances=np.zeros(0),
        )


def _gate(
    points: np.ndarray,
    normals: np.ndarray,
    source_index: np.ndarray,
    target_index: np.ndarray,
    target_points: np.ndarray,
    target_normals: np.ndarray,
    max_distance: float,
    min_normal_cosine: float,
) -> Correspondences:
    diff = points[source_index] - target_points[target_index]
    dist = np.linalg.norm(diff, axis=1)
    cos = np.sum(normals[source_index] * target_normals[target_index], axis=1)
    ok = (dist <= max_distance) & (cos >= min_normal_cosine)
    return Correspondences(
        source_index=source_index[ok],
        target_index=target_index[ok],
        distances=dist[ok],
    )


def unique_targets(corr: Correspondences) -> Correspondences:
    """Keep only the closest source per target (ties: lowest source index)."""
    if len(corr) == 0:
        return corr
    order = np.lexsort((corr.source_index, corr.distances, corr.target_index))
    t_sorted = corr.target_index[order]
    first = np.ones(order.shape[0], dtype=bool)
    first[1:] = t_sorted[1:] != t_sorted[:-1]
    keep = np.sort(order[first])
    return Correspondences(
        source_index=corr.source_index[keep],
        target_index=corr.target_index[keep],
        distances=corr.distances[keep],
    )


# =============================================================================
# Main Operators
# =============================================================================


def associate_projective(
    points: np.ndarray,
    normals: np.ndarray,
    index_map: IndexMap,
    snapshot: SurfelSnapshot,
    camera,
    max_distance: float,
    min_normal_cosine: float,
) -> Correspondences:
    """
    Match map-frame points against the index map.

    Args:
        points: (N, 3) observed points already moved into the map frame
        normals: (N, 3) observed unit normals in the map frame
        index_map: Index map rebuilt from `snapshot`
        snapshot: Live surfels the index map was built from
        camera: Camera model of the index map's reference view
        max_distance: Point-to-surfel distance gate (meters)
        min_normal_cosine: Normal agreement gate
    """
    if index_map.reference_pose is None or snapshot.is_empty() or points.shape[0] == 0:
        return Correspondences.empty()
    p_ref = index_map.reference_pose.inverse().transform_points(points)
    rows, cols, _, inb = camera.project_to_pixels(p_ref)
    slots, _ = index_map.lookup_batch(rows, cols)
    slots[~inb] = -1
    target_rows = snapshot.rows_for_slots(slots)

    # Reject cells whose generation disagrees with the snapshot.
    hit = target_rows >= 0
    gen_ok = np.zeros_like(hit)
    gen_ok[hit] = (
        index_map.generations[rows[hit], cols[hit]] == snapshot.generations[target_rows[hit]]
    )
    source_index = np.nonzero(hit & gen_ok)[0].astype(np.int64)
    return _gate(
        points, normals, source_index, target_rows[source_index],
        snapshot.positions, snapshot.normals, max_distance, min_normal_cosine,
    )


def associate_nearest(
    points: np.ndarray,
    normals: np.ndarray,
    tree: KDTree,
    tree_rows: np.ndarray,
    target_points: np.ndarray,
    target_normals: np.ndarray,
    max_distance: float,
    min_normal_cosine: float,
) -> Correspondences:
    """
    Match map-frame points to their nearest target position.

    Args:
        tree: KDTree built over target_points[tree_rows]
        tree_rows: (K,) target rows for each tree point
    """
    if points.shape[0] == 0 or len(tree) == 0:
        return Correspondences.empty()
    _, idx = tree.nearest_batch(points, max_distance=max_distance)
    source_index = np.nonzero(idx >= 0)[0].astype(np.int64)
    target_index = np.asarray(tree_rows, dtype=np.int64)[idx[source_index]]
    return _gate(
        points, normals, source_index, target_index,
        target_points, target_normals, max_distance, min_normal_cosine,
    )
