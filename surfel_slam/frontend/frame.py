"""
Organized frame observation.

A FrameObservation holds per-pixel buffers aligned with the sensor grid
(row-major, shape (H, W, ...)): 3D point in the camera frame, unit normal,
color and a validity mask. Loaders and preprocessing live outside the core;
they only need to produce these buffers (or a depth image for from_depth).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple, Optional

import numpy as np

from surfel_slam.common import constants
from surfel_slam.frontend.camera import PinholeCamera


# TUM RGB-D convention: depth PNG value 5000 == 1 m.
DEFAULT_DEPTH_SCALE = 1.0 / 5000.0


class FlatObservation(NamedTuple):
    """Mask-filtered view of a frame. rows/cols give the source pixel of each entry."""
    points: np.ndarray   # (N, 3)
    normals: np.ndarray  # (N, 3)
    colors: np.ndarray   # (N, 3)
    rows: np.ndarray     # (N,) int64
    cols: np.ndarray     # (N,) int64

    def __len__(self) -> int:
        return int(self.points.shape[0])


@dataclass
class FrameObservation:
    """
    Organized point/normal/color buffer for one frame.

    Attributes:
        points: (H, W, 3) camera-frame points (meters)
        mask: (H, W) bool validity
        normals: (H, W, 3) unit normals, zero where unknown
        colors: (H, W, 3) float colors in [0, 1]
        timestamp: Optional capture time (seconds)
    """
    points: np.ndarray
    mask: np.ndarray
    normals: Optional[np.ndarray] = None
    colors: Optional[np.ndarray] = None
    timestamp: Optional[float] = None

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=float)
        if self.points.ndim != 3 or self.points.shape[2] != 3:
            raise ValueError(f"points must have shape (H, W, 3), got {self.points.shape}")
        hw = self.points.shape[:2]
        self.mask = np.asarray(self.mask, dtype=bool)
        if self.mask.shape != hw:
            raise ValueError(f"mask shape {self.mask.shape} does not match points {hw}")
        if self.normals is not None:
            self.normals = np.asarray(self.normals, dtype=float)
            if self.normals.shape != self.points.shape:
                raise ValueError(f"normals shape {self.normals.shape} does not match points {self.points.shape}")
        if self.colors is None:
            self.colors = np.zeros_like(self.points)
        else:
            self.colors = np.asarray(self.colors, dtype=float)
            if self.colors.shape != self.points.shape:
                raise ValueError(f"colors shape {self.colors.shape} does not match points {self.points.shape}")

    @classmethod
    def from_depth(
        cls,
        camera: PinholeCamera,
        depth: np.ndarray,
        rgb: Optional[np.ndarray] = None,
        depth_scale: float = DEFAULT_DEPTH_SCALE,
        timestamp: Optional[float] = None,
        compute_normals: bool = True,
    ) -> "FrameObservation":
        """
        Back-project a raw depth image.

        Args:
            camera: Pinhole intrinsics matching the image size
            depth: (H, W) raw depth; values <= 0 or non-finite are invalid
            rgb: Optional (H, W, 3) color image, uint8 or float in [0, 1]
            depth_scale: Raw depth units to meters
            timestamp: Optional capture time (seconds)
            compute_normals: Estimate normals from the organized points
        """
        raw = np.asarray(depth, dtype=float)
        mask = np.isfinite(raw) & (raw > 0.0)
        z = np.where(mask, raw * depth_scale, 0.0)
        points = camera.backproject_grid(z)
        points[~mask] = 0.0

        colors = None
        if rgb is not None:
            rgb = np.asarray(rgb)
            colors = rgb.astype(float)
            if np.issubdtype(rgb.dtype, np.integer):
                colors = colors / 255.0

        frame = cls(points=points, mask=mask, colors=colors, timestamp=timestamp)
        if compute_normals:
            frame.compute_normals()
        return frame

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def height(self) -> int:
        return int(self.points.shape[0])

    @property
    def width(self) -> int:
        return int(self.points.shape[1])

    def valid_mask(self, eps: float = constants.EPS_NORMAL) -> np.ndarray:
        """Valid pixels with a usable normal (finite, magnitude above eps)."""
        if self.normals is None:
            return np.zeros_like(self.mask)
        norms = np.linalg.norm(self.normals, axis=2)
        return (
            self.mask
            & (norms > eps)
            & np.all(np.isfinite(self.normals), axis=2)
            & np.all(np.isfinite(self.points), axis=2)
        )

    def valid_count(self) -> int:
        return int(np.count_nonzero(self.valid_mask()))

    def flatten(self) -> FlatObservation:
        """Mask-filtered points/normals/colors in row-major pixel order."""
        if self.normals is None:
            self.compute_normals()
        rows, cols = np.nonzero(self.valid_mask())
        normals = self.normals[rows, cols]
        normals = normals / np.linalg.norm(normals, axis=1, keepdims=True)
        return FlatObservation(
            points=self.points[rows, cols],
            normals=normals,
            colors=self.colors[rows, cols],
            rows=rows.astype(np.int64),
            cols=cols.astype(np.int64),
        )

    # -------------------------------------------------------------------------
    # Normal estimation
    # -------------------------------------------------------------------------

    def compute_normals(self, ratio_threshold: float = constants.NORMAL_RATIO_THRESHOLD) -> np.ndarray:
        """
        Estimate per-pixel normals from horizontal and vertical neighbors.

        For each axis the tangent is the central difference when both
        neighbors are at comparable distance (squared-distance ratio within
        ratio_threshold^2), otherwise the one-sided difference towards the
        closer neighbor. Missing neighbors count as the origin, so they are
        never closer than a real one. normal = cross(left_to_right,
        bottom_to_top), which faces the sensor for y-down image coordinates.
        Pixels whose cross product vanishes keep a zero normal.
        """
        points = np.where(self.mask[..., None], self.points, 0.0)
        padded = np.pad(points, ((1, 1), (1, 1), (0, 0)))
        left = padded[1:-1, :-2]
        right = padded[1:-1, 2:]
        top = padded[:-2, 1:-1]
        bottom = padded[2:, 1:-1]

        left_to_right = _tangent(points, left, right, ratio_threshold)
        bottom_to_top = _tangent(points, bottom, top, ratio_threshold)

        normals = np.cross(left_to_right, bottom_to_top)
        magnitude = np.linalg.norm(normals, axis=2, keepdims=True)
        ok = (magnitude[..., 0] > constants.EPS_NORMAL) & self.mask
        normals = np.where(ok[..., None], normals / np.where(magnitude > 0.0, magnitude, 1.0), 0.0)
        self.normals = normals
        return normals


def _tangent(center: np.ndarray, prev: np.ndarray, nxt: np.ndarray, ratio_threshold: float) -> np.ndarray:
    """Difference vector prev -> nxt, one-sided when the neighbors are unbalanced."""
    d_prev = np.sum((prev - center) ** 2, axis=2)
    d_next = np.sum((nxt - center) ** 2, axis=2)
    thr2 = ratio_threshold * ratio_threshold
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = d_prev / d_next
    central = (ratio < thr2) & (ratio > 1.0 / thr2)
    prev_closer = d_prev < d_next
    return np.where(
        central[..., None],
        nxt - prev,
        np.where(prev_closer[..., None], center - prev, nxt - center),
    )
