"""
Pinhole camera model.

The core consumes any object with this duck-typed interface:
    width, height, fx, fy
    project(points) -> (u, v, z)
    project_to_pixels(points) -> (rows, cols, depth, in_bounds)
    backproject(u, v, z) -> points
    footprint_radius(depth, cos_view, min_cosine) -> radius
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Optional, Tuple

import numpy as np

from surfel_slam.common import constants
from surfel_slam.common.pose import Pose


@dataclass(frozen=True)
class PinholeCamera:
    """
    Camera intrinsics with optional extrinsics.

    Attributes:
        fx, fy: Focal length times pixel scale (pixels)
        cx, cy: Principal point (pixels)
        width, height: Image size (pixels)
        camera_to_world: Optional extrinsic pose of the sensor on its rig
    """
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    camera_to_world: Optional[Pose] = None

    def __post_init__(self):
        if self.fx <= 0.0 or self.fy <= 0.0:
            raise ValueError(f"Focal lengths must be positive, got fx={self.fx}, fy={self.fy}")
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Image size must be positive, got {self.width}x{self.height}")

    @classmethod
    def from_matrix(cls, K: np.ndarray, width: int, height: int) -> "PinholeCamera":
        """From a 3x3 intrinsic matrix [[fx, 0, cx], [0, fy, cy], [0, 0, 1]]."""
        K = np.asarray(K, dtype=float)
        return cls(fx=float(K[0, 0]), fy=float(K[1, 1]), cx=float(K[0, 2]), cy=float(K[1, 2]),
                   width=int(width), height=int(height))

    @property
    def focal_mean(self) -> float:
        return 0.5 * (self.fx + self.fy)

    @property
    def K(self) -> np.ndarray:
        return np.array([[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]])

    # -------------------------------------------------------------------------
    # Projection
    # -------------------------------------------------------------------------

    def project(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Project camera-frame points (N, 3) to continuous image coordinates.

        Points with z <= EPS_DEPTH get NaN coordinates.
        """
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        z = points[:, 2]
        in_front = z > constants.EPS_DEPTH
        safe_z = np.where(in_front, z, 1.0)
        u = np.where(in_front, points[:, 0] * self.fx / safe_z + self.cx, np.nan)
        v = np.where(in_front, points[:, 1] * self.fy / safe_z + self.cy, np.nan)
        return u, v, z

    def project_to_pixels(
        self, points: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Project camera-frame points to integer pixel cells.

        Returns:
            (rows, cols, depth, in_bounds). rows/cols are only meaningful where
            in_bounds is True (they are 0 elsewhere).
        """
        u, v, z = self.project(points)
        finite = np.isfinite(u) & np.isfinite(v)
        cols = np.zeros(u.shape, dtype=np.int64)
        rows = np.zeros(v.shape, dtype=np.int64)
        cols[finite] = np.floor(u[finite] + 0.5).astype(np.int64)
        rows[finite] = np.floor(v[finite] + 0.5).astype(np.int64)
        in_bounds = finite & (cols >= 0) & (cols < self.width) & (rows >= 0) & (rows < self.height)
        rows[~in_bounds] = 0
        cols[~in_bounds] = 0
        return rows, cols, z, in_bounds

    def project_grad(self, point: np.ndarray) -> np.ndarray:
        """Jacobian (2, 3) of (u, v) w.r.t. a camera-frame point."""
        x, y, z = np.asarray(point, dtype=float).reshape(3)
        zz = z * z
        return np.array([
            [self.fx / z, 0.0, -x * self.fx / zz],
            [0.0, self.fy / z, -y * self.fy / zz],
        ])

    def backproject(self, u, v, z) -> np.ndarray:
        """Back-project image coordinates with depth to camera-frame points (N, 3)."""
        u = np.asarray(u, dtype=float)
        v = np.asarray(v, dtype=float)
        z = np.asarray(z, dtype=float)
        x = (u - self.cx) * z / self.fx
        y = (v - self.cy) * z / self.fy
        return np.stack(np.broadcast_arrays(x, y, z), axis=-1)

    def backproject_grid(self, depth: np.ndarray) -> np.ndarray:
        """Back-project a full (H, W) depth image to an (H, W, 3) point buffer."""
        depth = np.asarray(depth, dtype=float)
        if depth.shape != (self.height, self.width):
            raise ValueError(f"Depth shape {depth.shape} does not match camera {self.height}x{self.width}")
        v, u = np.mgrid[0:self.height, 0:self.width]
        return self.backproject(u, v, depth)

    # -------------------------------------------------------------------------
    # Surfel support
    # -------------------------------------------------------------------------

    def footprint_radius(
        self,
        depth: np.ndarray,
        cos_view: Optional[np.ndarray] = None,
        min_cosine: float = constants.FUSION_MIN_GRAZING_COSINE_DEFAULT,
    ) -> np.ndarray:
        """
        Radius of a disk covering one pixel at the given depth.

        Half the pixel diagonal back-projected to depth z: sqrt(2)/2 * z / f.
        Tilted surfaces cover more of the surface, so the radius is divided by
        the cosine between normal and view ray (clamped at min_cosine).
        """
        depth = np.abs(np.asarray(depth, dtype=float))
        radius = (math.sqrt(2.0) * 0.5) * depth / self.focal_mean
        if cos_view is not None:
            cos_view = np.clip(np.abs(np.asarray(cos_view, dtype=float)), min_cosine, 1.0)
            radius = radius / cos_view
        return radius

    def scale(self, scale: float) -> "PinholeCamera":
        """Camera for an image resized by `scale`."""
        return replace(
            self,
            fx=self.fx * scale,
            fy=self.fy * scale,
            cx=self.cx * scale,
            cy=self.cy * scale,
            width=max(1, int(round(self.width * scale))),
            height=max(1, int(round(self.height * scale))),
        )
