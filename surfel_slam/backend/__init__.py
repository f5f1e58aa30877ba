"""
Surfel SLAM backend.

Structure:
- structures/: SurfelMap, IndexMap, KDTree, BoundingSphere
- operators/: association, point-to-plane linearization, map update
- pipeline.py: SurfelFusion (per-frame tracking and fusion)
"""

# Lazy imports to avoid circular dependencies
__all__ = [
    "SurfelFusion",
    "FrameResult",
    "FrameStatus",
]


def __getattr__(name):
    if name == "SurfelFusion":
        from surfel_slam.backend.pipeline import SurfelFusion
        return SurfelFusion
    elif name == "FrameResult":
        from surfel_slam.backend.pipeline import FrameResult
        return FrameResult
    elif name == "FrameStatus":
        from surfel_slam.backend.pipeline import FrameStatus
        return FrameStatus
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
