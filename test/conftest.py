import os
import sys

import numpy as np
import pytest

# Ensure local package import works for pytest collection.
_TEST_DIR = os.path.dirname(__file__)
_PKG_ROOT = os.path.abspath(os.path.join(_TEST_DIR, ".."))
if _PKG_ROOT not in sys.path:
    sys.path.insert(0, _PKG_ROOT)

from surfel_slam.frontend.camera import PinholeCamera  # noqa: E402
from surfel_slam.frontend.frame import FrameObservation  # noqa: E402


CONFIG_PATH = os.path.join(_PKG_ROOT, "config", "surfel_slam.yaml")


# =============================================================================
# Scene Fixtures
# =============================================================================


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(0)


@pytest.fixture
def config_path() -> str:
    return CONFIG_PATH


@pytest.fixture
def small_camera() -> PinholeCamera:
    """10x10 camera; one pixel spans 5 cm at 1 m depth."""
    return PinholeCamera(fx=20.0, fy=20.0, cx=4.5, cy=4.5, width=10, height=10)


def make_planar_frame(camera: PinholeCamera, depth_m: float = 1.0, timestamp=None) -> FrameObservation:
    """Fronto-parallel plane at depth_m filling the whole image."""
    raw = np.full((camera.height, camera.width), depth_m, dtype=float)
    return FrameObservation.from_depth(camera, raw, depth_scale=1.0, timestamp=timestamp)


@pytest.fixture
def planar_frame(small_camera) -> FrameObservation:
    return make_planar_frame(small_camera)


def make_three_planes(step: float = 0.05):
    """
    Three orthogonal unit squares through the origin (z=0, y=0, x=0 planes).

    Returns:
        (points (N, 3), normals (N, 3))
    """
    ticks = np.arange(0.0, 1.0 + 0.5 * step, step)
    a, b = np.meshgrid(ticks, ticks, indexing="ij")
    a = a.reshape(-1)
    b = b.reshape(-1)
    zeros = np.zeros_like(a)
    points = np.concatenate([
        np.stack([a, b, zeros], axis=1),
        np.stack([a, zeros, b], axis=1),
        np.stack([zeros, a, b], axis=1),
    ])
    normals = np.concatenate([
        np.tile([0.0, 0.0, 1.0], (a.shape[0], 1)),
        np.tile([0.0, 1.0, 0.0], (a.shape[0], 1)),
        np.tile([1.0, 0.0, 0.0], (a.shape[0], 1)),
    ])
    return points, normals


@pytest.fixture
def three_planes():
    return make_three_planes()
