import numpy as np
import pytest
from scipy.spatial import cKDTree

from surfel_slam.common.errors import EmptyIndexError
from surfel_slam.backend.structures.kdtree import KDTree


class TestKDTree:
    """Nearest and radius queries agree with scipy's cKDTree."""

    def test_nearest_matches_ckdtree(self, rng):
        pts = rng.uniform(-1.0, 1.0, size=(500, 3))
        queries = rng.uniform(-1.2, 1.2, size=(100, 3))
        tree = KDTree(pts)
        ref_d, ref_i = cKDTree(pts).query(queries)
        for q, d_ref, i_ref in zip(queries, ref_d, ref_i):
            d, i = tree.nearest(q)
            assert d == pytest.approx(d_ref, abs=1e-12)
            assert np.linalg.norm(pts[i] - q) == pytest.approx(d_ref, abs=1e-12)

    def test_nearest_batch_max_distance(self, rng):
        pts = rng.uniform(-1.0, 1.0, size=(300, 3))
        queries = rng.uniform(-1.5, 1.5, size=(80, 3))
        tree = KDTree(pts)
        d, i = tree.nearest_batch(queries, max_distance=0.1)
        ref_d, _ = cKDTree(pts).query(queries)
        within = ref_d <= 0.1
        assert np.all(i[~within] == -1)
        assert np.all(np.isinf(d[~within]))
        assert np.allclose(d[within], ref_d[within], atol=1e-12)

    def test_radius_matches_ckdtree(self, rng):
        pts = rng.uniform(0.0, 1.0, size=(400, 3))
        tree = KDTree(pts, leaf_size=4)
        ref = cKDTree(pts)
        for q in rng.uniform(0.0, 1.0, size=(30, 3)):
            got = tree.radius(q, 0.2)
            expected = ref.query_ball_point(q, 0.2)
            assert sorted(got.tolist()) == sorted(expected)
            dists = np.linalg.norm(pts[got] - q, axis=1)
            assert np.all(np.diff(dists) >= 0.0)

    def test_duplicate_points(self):
        pts = np.zeros((50, 3))
        pts[10] = [1.0, 1.0, 1.0]
        tree = KDTree(pts, leaf_size=2)
        d, i = tree.nearest(np.array([0.9, 0.9, 0.9]))
        assert i == 10
        assert len(tree.radius(np.zeros(3), 1e-9)) == 49

    def test_single_point(self):
        tree = KDTree(np.array([[1.0, 2.0, 3.0]]))
        d, i = tree.nearest(np.zeros(3))
        assert i == 0
        assert d == pytest.approx(np.sqrt(14.0))

    def test_large_batch_matches_ckdtree(self, rng):
        pts = rng.uniform(-2.0, 2.0, size=(20000, 3))
        queries = rng.uniform(-2.0, 2.0, size=(8192, 3))
        d, i = KDTree(pts).nearest_batch(queries)
        ref_d, ref_i = cKDTree(pts).query(queries)
        assert np.allclose(d, ref_d, atol=1e-12)
        assert np.array_equal(i, ref_i)

    def test_max_distance_is_inclusive(self):
        tree = KDTree(np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]]))
        d, i = tree.nearest_batch(np.array([[0.0, 0.0, 0.5], [5.0, 0.0, 0.0]]), max_distance=0.5)
        assert i.tolist() == [0, -1]
        assert d[0] == pytest.approx(0.5)
        assert np.isinf(d[1])

    def test_empty_index_raises(self):
        tree = KDTree(np.zeros((0, 3)))
        assert len(tree) == 0
        with pytest.raises(EmptyIndexError):
            tree.nearest(np.zeros(3))
        with pytest.raises(EmptyIndexError):
            tree.nearest_batch(np.zeros((2, 3)))
        with pytest.raises(EmptyIndexError):
            tree.radius(np.zeros(3), 1.0)

    def test_rejects_bad_shapes(self):
        with pytest.raises(ValueError):
            KDTree(np.zeros((5, 2)))
        with pytest.raises(ValueError):
            KDTree(np.array([[np.nan, 0.0, 0.0]]))

    def test_read_only_after_build(self, rng):
        pts = rng.normal(size=(64, 3))
        original = pts.copy()
        tree = KDTree(pts)
        pts[:] = 100.0
        d, i = tree.nearest(original[5])
        assert i == 5 and d == 0.0
