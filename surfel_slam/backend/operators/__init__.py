"""
Surfel SLAM operators.

Array-in, array-out functions; none of them mutates the SurfelMap.
"""

from surfel_slam.backend.operators.association import (
    Correspondences,
    associate_nearest,
    associate_projective,
    unique_targets,
)

from surfel_slam.backend.operators.point_to_plane import (
    NormalEquations,
    accumulate_normal_equations,
    pose_covariance,
    solve_damped,
)

from surfel_slam.backend.operators.map_update import (
    FusedState,
    ObservationClasses,
    classify_observations,
    fuse_weighted_average,
    initial_radius,
    select_stale_surfels,
)

__all__ = [
    # Association
    "Correspondences",
    "associate_nearest",
    "associate_projective",
    "unique_targets",
    # Linearization
    "NormalEquations",
    "accumulate_normal_equations",
    "pose_covariance",
    "solve_damped",
    # Map update
    "FusedState",
    "ObservationClasses",
    "classify_observations",
    "fuse_weighted_average",
    "initial_radius",
    "select_stale_surfels",
]
