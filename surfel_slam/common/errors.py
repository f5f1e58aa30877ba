"""
Error taxonomy for surfel SLAM.

Registration failures are normally reported through ICPResult.status; the
exceptions below are raised by ICPResult.raise_for_status() and by the
structures whose contracts they guard.
"""

from __future__ import annotations


class SurfelSlamError(Exception):
    """Base class for all surfel SLAM errors."""


class InsufficientCorrespondencesError(SurfelSlamError):
    """Fewer accepted correspondences than needed to solve the 6-DOF system."""


class NumericalDivergenceError(SurfelSlamError):
    """Residual kept increasing after the damping retry budget was exhausted."""


class EmptyMapError(SurfelSlamError):
    """Association was attempted against a map with zero live surfels."""


class InvalidTransformError(SurfelSlamError, ValueError):
    """A pose is non-finite or its rotation is not orthonormal."""


class DegenerateSurfelError(SurfelSlamError, ValueError):
    """A surfel normal has (near) zero magnitude."""


class EmptyIndexError(SurfelSlamError):
    """A spatial index with zero points was queried."""


class UnknownSurfelIdError(SurfelSlamError, KeyError):
    """The identifier was never issued by this map."""


class StaleSurfelIdError(SurfelSlamError, KeyError):
    """The identifier refers to a surfel that has been removed."""


class MapCapacityError(SurfelSlamError):
    """The surfel map has reached its configured maximum size."""
