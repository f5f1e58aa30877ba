"""
Common package for surfel SLAM.

Shared utilities used by both frontend and backend.

Subpackages:
- transforms/: SE(3) geometry operations
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "Pose",
    "SurfelSlamParams",
    "load_params",
    "constants",
    "errors",
]

_LAZY_ATTRS: dict[str, tuple[str, str | None]] = {
    "Pose": ("surfel_slam.common.pose", "Pose"),
    "SurfelSlamParams": ("surfel_slam.common.param_models", "SurfelSlamParams"),
    "load_params": ("surfel_slam.common.param_models", "load_params"),
    # Expose these as submodules, but do not eagerly import them at package import time.
    "constants": ("surfel_slam.common.constants", None),
    "errors": ("surfel_slam.common.errors", None),
}


def __getattr__(name: str) -> Any:
    target = _LAZY_ATTRS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = target
    module = import_module(module_name)
    return module if attr_name is None else getattr(module, attr_name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(_LAZY_ATTRS.keys()))
