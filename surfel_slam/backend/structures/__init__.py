"""
Data structures for surfel SLAM.

SurfelMap is the canonical map; IndexMap and KDTree are rebuilt from its
snapshots for association.
"""

from surfel_slam.backend.structures.bounding_sphere import BoundingSphere
from surfel_slam.backend.structures.kdtree import KDTree
from surfel_slam.backend.structures.surfel_map import (
    Surfel,
    SurfelId,
    SurfelMap,
    SurfelSnapshot,
)
from surfel_slam.backend.structures.index_map import (
    IndexMap,
    IndexMapEntry,
)

__all__ = [
    "BoundingSphere",
    "KDTree",
    "Surfel",
    "SurfelId",
    "SurfelMap",
    "SurfelSnapshot",
    "IndexMap",
    "IndexMapEntry",
]
