"""
Surfel map update operators.

Pure functions over arrays; the pipeline applies their output to the
SurfelMap in a single write step:
- classify_observations: split observations into fuse / create / skip
- fuse_weighted_average: confidence-weighted running average
- initial_radius: pixel footprint of a new surfel
- select_stale_surfels: maintenance removal mask
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from surfel_slam.common import constants
from surfel_slam.common.param_models import FusionParams, MaintenanceParams
from surfel_slam.backend.operators.association import (
    Correspondences,
    associate_projective,
    unique_targets,
)
from surfel_slam.backend.structures.index_map import IndexMap
from surfel_slam.backend.structures.surfel_map import SurfelSnapshot


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class ObservationClasses:
    """Per-observation decisions for one frame."""
    matched: Correspondences   # one observation per surfel (closest wins)
    create: np.ndarray         # (K,) observation indices that become new surfels
    skipped: np.ndarray        # (S,) observations that matched a surfel another observation won

    @property
    def n_matched(self) -> int:
        return len(self.matched)


@dataclass
class FusedState:
    positions: np.ndarray
    normals: np.ndarray
    radii: np.ndarray
    colors: np.ndarray
    confidences: np.ndarray
    degenerate: np.ndarray  # (M,) bool; rows that kept their prior state


# =============================================================================
# Main Operators
# =============================================================================


def classify_observations(
    points: np.ndarray,
    normals: np.ndarray,
    index_map: IndexMap,
    snapshot: SurfelSnapshot,
    camera,
    params: FusionParams,
) -> ObservationClasses:
    """
    Decide fuse or create for every observation (map frame).

    An observation is matched when the surfel in its index-map pixel lies
    within association_distance and its normal is within the angle gate.
    If several observations match the same surfel only the closest one is
    fused and the others are skipped. Everything else creates a surfel.
    """
    n = points.shape[0]
    raw = associate_projective(
        points, normals, index_map, snapshot, camera,
        max_distance=params.association_distance,
        min_normal_cosine=params.min_normal_cosine,
    )
    matched = unique_targets(raw)
    is_matched = np.zeros(n, dtype=bool)
    is_matched[raw.source_index] = True
    is_winner = np.zeros(n, dtype=bool)
    is_winner[matched.source_index] = True
    return ObservationClasses(
        matched=matched,
        create=np.nonzero(~is_matched)[0].astype(np.int64),
        skipped=np.nonzero(is_matched & ~is_winner)[0].astype(np.int64),
    )


def fuse_weighted_average(
    positions: np.ndarray,
    normals: np.ndarray,
    radii: np.ndarray,
    colors: np.ndarray,
    confidences: np.ndarray,
    obs_positions: np.ndarray,
    obs_normals: np.ndarray,
    obs_radii: np.ndarray,
    obs_colors: np.ndarray,
    confidence_cap: float,
    eps_normal: float,
) -> FusedState:
    """
    new = (c * old + obs) / (c + 1) per attribute; c' = min(c + 1, cap).

    The averaged normal is re-normalized. Rows where it has (near) zero
    magnitude keep their prior state entirely and are flagged degenerate.
    """
    c = np.asarray(confidences, dtype=float)
    denom = c + 1.0
    new_pos = (c[:, None] * positions + obs_positions) / denom[:, None]
    new_nrm = (c[:, None] * normals + obs_normals) / denom[:, None]
    new_rad = (c * radii + obs_radii) / denom
    new_col = (c[:, None] * colors + obs_colors) / denom[:, None]
    new_conf = np.minimum(c + 1.0, confidence_cap)

    mag = np.linalg.norm(new_nrm, axis=1)
    degenerate = ~(mag > eps_normal)
    new_nrm = new_nrm / np.where(degenerate, 1.0, mag)[:, None]

    keep = degenerate[:, None]
    return FusedState(
        positions=np.where(keep, positions, new_pos),
        normals=np.where(keep, normals, new_nrm),
        radii=np.where(degenerate, radii, new_rad),
        colors=np.where(keep, colors, new_col),
        confidences=np.where(degenerate, c, new_conf),
        degenerate=degenerate,
    )


def initial_radius(camera, points_cam: np.ndarray, normals_cam: np.ndarray, params: FusionParams) -> np.ndarray:
    """Radius of new surfels from depth, focal length and viewing angle (camera frame)."""
    points_cam = np.asarray(points_cam, dtype=float).reshape(-1, 3)
    normals_cam = np.asarray(normals_cam, dtype=float).reshape(-1, 3)
    ray = points_cam / np.maximum(np.linalg.norm(points_cam, axis=1, keepdims=True), constants.EPS_DEPTH)
    cos_view = np.sum(normals_cam * ray, axis=1)
    radius = camera.footprint_radius(points_cam[:, 2], cos_view, params.min_grazing_cosine)
    return params.radius_scale * radius


def select_stale_surfels(
    confidences: np.ndarray,
    created_at: np.ndarray,
    unmatched: np.ndarray,
    now: float,
    params: MaintenanceParams,
) -> np.ndarray:
    """
    Removal mask for the maintenance pass.

    A surfel is removed when
    - its confidence is below min_confidence and it is older than
      staleness_timeout, or
    - it was predicted visible but unmatched for max_unmatched_frames
      consecutive frames and its confidence is below visibility_confidence.
    """
    confidences = np.asarray(confidences, dtype=float)
    age = now - np.asarray(created_at, dtype=float)
    unstable = (confidences < params.min_confidence) & (age > params.staleness_timeout)
    inconsistent = (
        (np.asarray(unmatched) >= params.max_unmatched_frames)
        & (confidences < params.visibility_confidence)
    )
    return unstable | inconsistent
