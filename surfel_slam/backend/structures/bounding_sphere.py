"""
Bounding sphere for coarse culling.

A sphere with radius < 0 is the empty marker. All operations return new
spheres and never mutate their inputs.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from surfel_slam.common.pose import Pose


@dataclass(frozen=True)
class BoundingSphere:
    center: np.ndarray  # (3,)
    radius: float

    @classmethod
    def empty(cls) -> "BoundingSphere":
        return cls(center=np.zeros(3), radius=-1.0)

    @classmethod
    def from_points(cls, points: np.ndarray) -> "BoundingSphere":
        """Centroid center, radius = max distance to the centroid. Empty input gives the empty marker."""
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        if points.shape[0] == 0:
            return cls.empty()
        center = points.mean(axis=0)
        sq = np.sum((points - center) ** 2, axis=1)
        return cls(center=center, radius=float(np.sqrt(np.max(sq))))

    def is_empty(self) -> bool:
        return self.radius < 0.0

    def merge(self, other: "BoundingSphere") -> "BoundingSphere":
        """
        Sphere containing both operands.

        Center is the midpoint of the two centers and radius the distance to
        the midpoint plus the larger radius. When one sphere already encloses
        the other the enclosing one is returned as is.
        """
        if self.is_empty():
            return other
        if other.is_empty():
            return self
        dist = float(np.linalg.norm(self.center - other.center))
        if dist + other.radius <= self.radius:
            return self
        if dist + self.radius <= other.radius:
            return other
        center = 0.5 * (self.center + other.center)
        return BoundingSphere(center=center, radius=0.5 * dist + max(self.radius, other.radius))

    def transform(self, pose: Pose) -> "BoundingSphere":
        if self.is_empty():
            return self
        return BoundingSphere(center=pose.transform_points(self.center), radius=self.radius)

    def inflate(self, margin: float) -> "BoundingSphere":
        if self.is_empty():
            return self
        return BoundingSphere(center=self.center, radius=self.radius + float(margin))

    def contains(self, points: np.ndarray) -> np.ndarray:
        """Per-point containment mask for (N, 3) points (or a bool for one point)."""
        points = np.asarray(points, dtype=float)
        if self.is_empty():
            return np.zeros(points.shape[:-1], dtype=bool) if points.ndim > 1 else False
        sq = np.sum((points - self.center) ** 2, axis=-1)
        inside = np.sqrt(sq) <= self.radius
        return inside if points.ndim > 1 else bool(inside)

    def intersects(self, other: "BoundingSphere") -> bool:
        if self.is_empty() or other.is_empty():
            return False
        return bool(np.linalg.norm(self.center - other.center) <= self.radius + other.radius)
