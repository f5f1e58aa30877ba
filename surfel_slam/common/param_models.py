"""Pydantic parameter models for surfel SLAM."""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from surfel_slam.common import constants


class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class ICPParams(_Params):
    """Point-to-plane ICP parameters."""

    max_iterations: int = Field(constants.ICP_MAX_ITERATIONS_DEFAULT, ge=1)
    min_correspondences: int = Field(constants.ICP_MIN_CORRESPONDENCES_DEFAULT, ge=6)
    max_correspondence_distance: float = Field(constants.ICP_MAX_CORRESPONDENCE_DISTANCE_DEFAULT, gt=0.0)
    max_normal_angle_deg: float = Field(constants.ICP_MAX_NORMAL_ANGLE_DEG_DEFAULT, gt=0.0, le=180.0)
    increment_epsilon: float = Field(constants.ICP_INCREMENT_EPSILON_DEFAULT, gt=0.0)
    residual_tolerance: float = Field(constants.ICP_RESIDUAL_TOLERANCE_DEFAULT, ge=0.0)
    divergence_tolerance: float = Field(constants.ICP_DIVERGENCE_TOLERANCE_DEFAULT, ge=0.0)
    max_retries: int = Field(constants.ICP_MAX_RETRIES_DEFAULT, ge=0)
    damping_initial: float = Field(constants.ICP_DAMPING_INITIAL_DEFAULT, gt=0.0)
    damping_factor: float = Field(constants.ICP_DAMPING_FACTOR_DEFAULT, gt=1.0)
    max_points: int = Field(constants.ICP_MAX_POINTS_DEFAULT, ge=6)
    use_spatial_index_fallback: bool = True

    @property
    def min_normal_cosine(self) -> float:
        return math.cos(math.radians(self.max_normal_angle_deg))


class IndexMapParams(_Params):
    """Projective index map parameters. None disables view-angle rejection."""

    max_view_angle_deg: Optional[float] = Field(constants.INDEX_MAP_MAX_VIEW_ANGLE_DEG_DEFAULT, gt=0.0, le=180.0)

    @property
    def min_view_cosine(self) -> Optional[float]:
        if self.max_view_angle_deg is None:
            return None
        return math.cos(math.radians(self.max_view_angle_deg))


class FusionParams(_Params):
    """Confidence-weighted surfel fusion parameters."""

    association_distance: float = Field(constants.FUSION_ASSOCIATION_DISTANCE_DEFAULT, gt=0.0)
    max_normal_angle_deg: float = Field(constants.FUSION_MAX_NORMAL_ANGLE_DEG_DEFAULT, gt=0.0, le=180.0)
    confidence_cap: float = Field(constants.FUSION_CONFIDENCE_CAP_DEFAULT, ge=1.0)
    radius_scale: float = Field(constants.FUSION_RADIUS_SCALE_DEFAULT, gt=0.0)
    min_grazing_cosine: float = Field(constants.FUSION_MIN_GRAZING_COSINE_DEFAULT, gt=0.0, le=1.0)
    normal_epsilon: float = Field(constants.EPS_NORMAL, gt=0.0)
    max_surfels: Optional[int] = Field(None, ge=1)

    @property
    def min_normal_cosine(self) -> float:
        return math.cos(math.radians(self.max_normal_angle_deg))


class MaintenanceParams(_Params):
    """Periodic removal of unstable or stale surfels."""

    interval: int = Field(constants.MAINTENANCE_INTERVAL_DEFAULT, ge=1)
    min_confidence: float = Field(constants.MAINTENANCE_MIN_CONFIDENCE_DEFAULT, ge=0.0)
    staleness_timeout: float = Field(constants.MAINTENANCE_STALENESS_TIMEOUT_DEFAULT, ge=0.0)
    max_unmatched_frames: int = Field(constants.MAINTENANCE_MAX_UNMATCHED_FRAMES_DEFAULT, ge=1)
    visibility_confidence: float = Field(constants.MAINTENANCE_VISIBILITY_CONFIDENCE_DEFAULT, ge=0.0)


class SurfelSlamParams(_Params):
    """Top-level parameter model."""

    icp: ICPParams = Field(default_factory=ICPParams)
    index_map: IndexMapParams = Field(default_factory=IndexMapParams)
    fusion: FusionParams = Field(default_factory=FusionParams)
    maintenance: MaintenanceParams = Field(default_factory=MaintenanceParams)


def _load_yaml_file(path: str) -> Dict[str, Any]:
    """Load a YAML config file, unwrapping an optional top-level 'surfel_slam' key."""
    import yaml

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be a mapping (from {path})")
    if "surfel_slam" in data:
        data = data["surfel_slam"] or {}
    return data


def load_params(path: str) -> SurfelSlamParams:
    """Load and validate parameters from a YAML file."""
    return SurfelSlamParams.model_validate(_load_yaml_file(path))
