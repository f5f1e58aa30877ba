"""
Rigid pose with an always-valid rotation.

A Pose stores the minimal 6-vector [x, y, z, rx, ry, rz] and caches its
rotation matrix. Every constructor goes through the rotation vector, so the
rotation is orthonormal with det = +1 by construction; matrices supplied by
callers are validated before they are accepted.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from surfel_slam.common import constants
from surfel_slam.common.errors import InvalidTransformError
from surfel_slam.common.transforms.se3 import (
    rotmat_to_rotvec,
    rotvec_to_rotmat,
    se3_compose,
    se3_exp,
    se3_inverse,
    se3_log,
)


class Pose:
    """Rigid transform in SE(3). Immutable."""

    __slots__ = ("_vec", "_R")

    def __init__(self, vec: Optional[np.ndarray] = None):
        if vec is None:
            vec = np.zeros(6, dtype=float)
        vec = np.array(vec, dtype=float).reshape(-1)
        if vec.shape != (6,):
            raise InvalidTransformError(f"Pose expects a 6-vector, got shape {vec.shape}")
        if not np.all(np.isfinite(vec)):
            raise InvalidTransformError(f"Pose has non-finite components: {vec}")
        vec.setflags(write=False)
        self._vec = vec
        R = rotvec_to_rotmat(vec[3:6])
        R.setflags(write=False)
        self._R = R

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def identity(cls) -> "Pose":
        return cls()

    @classmethod
    def from_translation(cls, t) -> "Pose":
        t = np.asarray(t, dtype=float).reshape(3)
        return cls(np.concatenate([t, np.zeros(3)]))

    @classmethod
    def from_rt(cls, R: np.ndarray, t: np.ndarray,
                atol: float = constants.ROTATION_ORTHONORMAL_TOLERANCE) -> "Pose":
        """Build from a rotation matrix and translation, rejecting scale or shear."""
        R = np.asarray(R, dtype=float).reshape(3, 3)
        t = np.asarray(t, dtype=float).reshape(3)
        if not (np.all(np.isfinite(R)) and np.all(np.isfinite(t))):
            raise InvalidTransformError("Pose matrix has non-finite entries")
        if not np.allclose(R.T @ R, np.eye(3), atol=atol):
            raise InvalidTransformError("Rotation block is not orthonormal")
        if np.linalg.det(R) < 0.0:
            raise InvalidTransformError("Rotation block is a reflection (det < 0)")
        return cls(np.concatenate([t, rotmat_to_rotvec(R)]))

    @classmethod
    def from_matrix(cls, M: np.ndarray,
                    atol: float = constants.ROTATION_ORTHONORMAL_TOLERANCE) -> "Pose":
        """Build from a 4x4 homogeneous matrix."""
        M = np.asarray(M, dtype=float)
        if M.shape != (4, 4):
            raise InvalidTransformError(f"Expected a 4x4 matrix, got shape {M.shape}")
        if not np.allclose(M[3], [0.0, 0.0, 0.0, 1.0], atol=atol):
            raise InvalidTransformError("Bottom row of a rigid transform must be [0, 0, 0, 1]")
        return cls.from_rt(M[:3, :3], M[:3, 3], atol=atol)

    @classmethod
    def exp(cls, xi: np.ndarray) -> "Pose":
        """Exponential map from a tangent increment (rho, phi)."""
        xi = np.asarray(xi, dtype=float).reshape(-1)
        if xi.shape != (6,) or not np.all(np.isfinite(xi)):
            raise InvalidTransformError(f"Invalid tangent increment: {xi}")
        return cls(se3_exp(xi))

    # -------------------------------------------------------------------------
    # Group operations
    # -------------------------------------------------------------------------

    def log(self) -> np.ndarray:
        """Logarithmic map to a tangent vector (rho, phi)."""
        return se3_log(self._vec)

    def compose(self, other: "Pose") -> "Pose":
        """self * other (other is applied first)."""
        return Pose(se3_compose(self._vec, other._vec))

    def inverse(self) -> "Pose":
        return Pose(se3_inverse(self._vec))

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=float)
        if points.ndim == 1:
            return self._R @ points + self._vec[:3]
        return points @ self._R.T + self._vec[:3]

    def transform_normals(self, normals: np.ndarray) -> np.ndarray:
        """Rotate direction vectors (translation is not applied)."""
        normals = np.asarray(normals, dtype=float)
        if normals.ndim == 1:
            return self._R @ normals
        return normals @ self._R.T

    def scale_translation(self, scale: float) -> "Pose":
        vec = np.array(self._vec)
        vec[:3] *= float(scale)
        return Pose(vec)

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def vec(self) -> np.ndarray:
        return self._vec

    @property
    def translation(self) -> np.ndarray:
        return self._vec[:3]

    @property
    def rotvec(self) -> np.ndarray:
        return self._vec[3:6]

    @property
    def rotation(self) -> np.ndarray:
        return self._R

    def angle(self) -> float:
        """Rotation angle in radians, in [0, pi]."""
        return float(np.linalg.norm(rotmat_to_rotvec(self._R)))

    def as_matrix(self) -> np.ndarray:
        M = np.eye(4, dtype=float)
        M[:3, :3] = self._R
        M[:3, 3] = self._vec[:3]
        return M

    def is_close(self, other: "Pose", atol: float = 1e-9) -> bool:
        return bool(np.allclose(self.as_matrix(), other.as_matrix(), atol=atol))

    def __repr__(self) -> str:
        t = np.array2string(self.translation, precision=4)
        r = np.array2string(self.rotvec, precision=4)
        return f"Pose(t={t}, rotvec={r})"
