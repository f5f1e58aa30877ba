"""
Surfel SLAM constants.

=============================================================================
CONVENTION QUICK REFERENCE
=============================================================================

POSES:
  Internal 6D: [trans(3), rotvec(3)] = [x, y, z, rx, ry, rz]
  A frame pose is camera-to-map: p_map = R @ p_cam + t

TANGENT INCREMENTS:
  [rho(3), phi(3)] (translation first, rotation second)
  ICP increments are applied on the LEFT: T <- Exp(delta) * T

CAMERA:
  Pinhole, +Z forward, +X right, +Y down. Pixel (row, col) = (v, u).
  A point projects to cell (round(v), round(u)).

SURFEL IDS:
  (slot, generation). A slot's generation is bumped on removal, so an id
  is never handed out twice.
=============================================================================
"""

# =============================================================================
# ICP (point-to-plane registration)
# =============================================================================

ICP_MAX_ITERATIONS_DEFAULT = 20
ICP_MIN_CORRESPONDENCES_DEFAULT = 6  # SE(3) has 6 DOF
ICP_MAX_CORRESPONDENCE_DISTANCE_DEFAULT = 0.1  # meters
ICP_MAX_NORMAL_ANGLE_DEG_DEFAULT = 30.0
ICP_INCREMENT_EPSILON_DEFAULT = 1e-6  # ||delta|| below this is convergence
ICP_RESIDUAL_TOLERANCE_DEFAULT = 1e-9  # relative MSE change counted as stalled
ICP_DIVERGENCE_TOLERANCE_DEFAULT = 1e-3  # relative MSE increase counted as divergence
ICP_MAX_RETRIES_DEFAULT = 3
ICP_DAMPING_INITIAL_DEFAULT = 1e-2  # Levenberg-Marquardt lambda on first retry
ICP_DAMPING_FACTOR_DEFAULT = 10.0
ICP_MAX_POINTS_DEFAULT = 8192  # Source points kept per iteration (uniform stride)

# =============================================================================
# Index map
# =============================================================================

INDEX_MAP_MAX_VIEW_ANGLE_DEG_DEFAULT = 85.0  # back-facing / grazing rejection

# =============================================================================
# Fusion
# =============================================================================

FUSION_ASSOCIATION_DISTANCE_DEFAULT = 0.05  # meters
FUSION_MAX_NORMAL_ANGLE_DEG_DEFAULT = 30.0
FUSION_CONFIDENCE_CAP_DEFAULT = 100.0
FUSION_RADIUS_SCALE_DEFAULT = 1.0
FUSION_MIN_GRAZING_COSINE_DEFAULT = 0.25  # footprint radius grows at most 4x at grazing angles

# =============================================================================
# Maintenance
# =============================================================================

MAINTENANCE_INTERVAL_DEFAULT = 5  # frames
MAINTENANCE_MIN_CONFIDENCE_DEFAULT = 3.0
MAINTENANCE_STALENESS_TIMEOUT_DEFAULT = 30.0  # timestamp units (frame index when no stamps)
MAINTENANCE_MAX_UNMATCHED_FRAMES_DEFAULT = 5
MAINTENANCE_VISIBILITY_CONFIDENCE_DEFAULT = 3.0

# =============================================================================
# Structures
# =============================================================================

SURFEL_MAP_INITIAL_CAPACITY = 1024
KDTREE_LEAF_SIZE_DEFAULT = 8

# =============================================================================
# Numerical stability (not model parameters)
# =============================================================================

EPS_NORMAL = 1e-6  # normals with smaller magnitude are degenerate
EPS_DEPTH = 1e-9  # points at or behind the image plane do not project
UNIT_NORMAL_TOLERANCE = 1e-3  # |1 - ||n||| beyond this makes a stored surfel degenerate
ROTATION_ORTHONORMAL_TOLERANCE = 1e-6
NORMAL_RATIO_THRESHOLD = 2.0  # neighbor distance ratio for central differences
EPS_OBJECTIVE = 1e-12  # absolute MSE slack (m^2) for ICP stall/divergence tests
SOLVE_RCOND = 1e-10  # relative singular value cutoff for the least-squares ICP step
