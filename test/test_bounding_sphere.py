import numpy as np
import pytest

from surfel_slam.common.pose import Pose
from surfel_slam.backend.structures.bounding_sphere import BoundingSphere


class TestBoundingSphere:
    """Enclosing sphere construction and merge."""

    def test_from_points_encloses_all(self, rng):
        pts = rng.normal(size=(200, 3))
        s = BoundingSphere.from_points(pts)
        assert np.allclose(s.center, pts.mean(axis=0))
        assert np.all(s.contains(pts))
        # Radius is attained by the farthest point.
        d = np.linalg.norm(pts - s.center, axis=1)
        assert s.radius == pytest.approx(np.max(d), rel=1e-12)

    def test_empty_input_gives_empty_marker(self):
        s = BoundingSphere.from_points(np.zeros((0, 3)))
        assert s.is_empty()
        assert s.radius < 0.0

    def test_merge_with_empty_returns_other(self):
        a = BoundingSphere.from_points(np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]]))
        e = BoundingSphere.empty()
        assert a.merge(e) is a
        assert e.merge(a) is a
        assert e.merge(e).is_empty()

    def test_merge_contains_both(self, rng):
        for _ in range(20):
            a = BoundingSphere(center=rng.normal(size=3), radius=float(rng.uniform(0.1, 2.0)))
            b = BoundingSphere(center=rng.normal(size=3) * 3.0, radius=float(rng.uniform(0.1, 2.0)))
            m = a.merge(b)
            for s in (a, b):
                d = np.linalg.norm(s.center - m.center)
                assert d + s.radius <= m.radius + 1e-12

    def test_merge_midpoint_rule(self):
        a = BoundingSphere(center=np.array([0.0, 0.0, 0.0]), radius=1.0)
        b = BoundingSphere(center=np.array([4.0, 0.0, 0.0]), radius=0.5)
        m = a.merge(b)
        assert np.allclose(m.center, [2.0, 0.0, 0.0])
        assert m.radius == 3.0

    def test_merge_keeps_enclosing_sphere(self):
        big = BoundingSphere(center=np.zeros(3), radius=5.0)
        small = BoundingSphere(center=np.array([1.0, 0.0, 0.0]), radius=1.0)
        assert big.merge(small) is big
        assert small.merge(big) is big

    def test_merge_does_not_mutate(self):
        a = BoundingSphere(center=np.array([0.0, 0.0, 0.0]), radius=1.0)
        b = BoundingSphere(center=np.array([3.0, 0.0, 0.0]), radius=1.0)
        a.merge(b)
        assert np.allclose(a.center, 0.0) and a.radius == 1.0
        assert np.allclose(b.center, [3.0, 0.0, 0.0]) and b.radius == 1.0

    def test_transform_moves_center_only(self):
        s = BoundingSphere(center=np.array([1.0, 0.0, 0.0]), radius=0.5)
        T = Pose(np.array([0.0, 1.0, 0.0, 0.0, 0.0, np.pi / 2]))
        t = s.transform(T)
        assert np.allclose(t.center, [0.0, 2.0, 0.0], atol=1e-12)
        assert t.radius == 0.5

    def test_intersects(self):
        a = BoundingSphere(center=np.zeros(3), radius=1.0)
        b = BoundingSphere(center=np.array([1.5, 0.0, 0.0]), radius=1.0)
        c = BoundingSphere(center=np.array([5.0, 0.0, 0.0]), radius=1.0)
        assert a.intersects(b)
        assert not a.intersects(c)
        assert a.inflate(3.0).intersects(c)
        assert not a.intersects(BoundingSphere.empty())
