"""
Frontend package for surfel SLAM.

Sensor-side data (camera model, organized frames) and pose registration.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "PinholeCamera",
    "FrameObservation",
    "FlatObservation",
    "PointToPlaneICP",
    "ICPResult",
    "ICPStatus",
]

_LAZY_ATTRS: dict[str, tuple[str, str]] = {
    "PinholeCamera": ("surfel_slam.frontend.camera", "PinholeCamera"),
    "FrameObservation": ("surfel_slam.frontend.frame", "FrameObservation"),
    "FlatObservation": ("surfel_slam.frontend.frame", "FlatObservation"),
    # ICP pulls in jax; keep it lazy.
    "PointToPlaneICP": ("surfel_slam.frontend.icp", "PointToPlaneICP"),
    "ICPResult": ("surfel_slam.frontend.icp", "ICPResult"),
    "ICPStatus": ("surfel_slam.frontend.icp", "ICPStatus"),
}


def __getattr__(name: str) -> Any:
    target = _LAZY_ATTRS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    return getattr(import_module(module_name), attr_name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(_LAZY_ATTRS.keys()))
