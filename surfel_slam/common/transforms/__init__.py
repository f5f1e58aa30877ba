"""
SE(3) transforms (NumPy).

Usage:
    from surfel_slam.common.transforms.se3 import se3_compose, se3_exp
"""

from surfel_slam.common.transforms.se3 import (
    skew,
    unskew,
    rotvec_to_rotmat,
    rotmat_to_rotvec,
    so3_left_jacobian,
    so3_left_jacobian_inv,
    se3_compose,
    se3_inverse,
    se3_apply,
    se3_exp,
    se3_log,
)

__all__ = [
    "skew",
    "unskew",
    "rotvec_to_rotmat",
    "rotmat_to_rotvec",
    "so3_left_jacobian",
    "so3_left_jacobian_inv",
    "se3_compose",
    "se3_inverse",
    "se3_apply",
    "se3_exp",
    "se3_log",
]
