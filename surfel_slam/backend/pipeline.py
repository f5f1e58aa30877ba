"""
Surfel fusion pipeline.

Per frame (strictly sequential; frame N+1 starts after frame N's map update):
    1. Snapshot the live surfels (read-only for the rest of the frame)
    2. Rebuild the index map at the previous refined pose
    3. ICP refines the pose (index map, KDTree fallback)
    4. Rebuild the index map at the refined pose and classify every valid
       pixel as fuse / create / skip
    5. Apply all decisions to the SurfelMap in one write step
    6. Every `maintenance.interval` frames remove unstable and stale surfels

A failed registration leaves the map untouched and keeps the last good pose.
An empty map skips ICP and turns every valid pixel into a surfel.

Time: frame.timestamp when given, otherwise the 1-based frame counter, so
staleness_timeout is in seconds or in frames accordingly.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from surfel_slam.common.param_models import SurfelSlamParams
from surfel_slam.common.pose import Pose
from surfel_slam.backend.operators.association import Correspondences
from surfel_slam.backend.operators.map_update import (
    ObservationClasses,
    classify_observations,
    fuse_weighted_average,
    initial_radius,
    select_stale_surfels,
)
from surfel_slam.backend.structures.bounding_sphere import BoundingSphere
from surfel_slam.backend.structures.index_map import IndexMap
from surfel_slam.backend.structures.surfel_map import SurfelMap, SurfelSnapshot
from surfel_slam.frontend.frame import FlatObservation, FrameObservation
from surfel_slam.frontend.icp import ICPResult, PointToPlaneICP


_logger = logging.getLogger(__name__)


class FrameStatus(enum.Enum):
    INITIALIZED = "initialized"   # empty map, all observations inserted
    TRACKED = "tracked"           # ICP converged, frame fused
    INTEGRATED = "integrated"     # fused at a caller-supplied pose
    FAILED = "failed"             # ICP failed, map untouched


@dataclass
class FrameResult:
    """Outcome of one processed frame. pose is the rig pose (camera pose without extrinsics)."""
    frame_index: int
    status: FrameStatus
    pose: Pose
    timestamp: float
    icp: Optional[ICPResult] = None
    n_fused: int = 0
    n_created: int = 0
    n_skipped: int = 0
    n_degenerate: int = 0
    n_removed: int = 0
    n_live: int = 0

    @property
    def ok(self) -> bool:
        return self.status != FrameStatus.FAILED


class SurfelFusion:
    """Tracks a depth camera and maintains its surfel map."""

    def __init__(self, camera, params: Optional[SurfelSlamParams] = None):
        self.camera = camera
        self.params = params if params is not None else SurfelSlamParams()
        self.map = SurfelMap(max_surfels=self.params.fusion.max_surfels)
        self.index_map = IndexMap(camera.width, camera.height)
        self.icp = PointToPlaneICP(self.params.icp)
        self.frame_count = 0
        self._extrinsic: Optional[Pose] = getattr(camera, "camera_to_world", None)
        self._sensor_pose = self._to_sensor(Pose.identity())
        self._trajectory: List[Pose] = []
        self._bounds = BoundingSphere.empty()

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def pose(self) -> Pose:
        """Latest refined rig pose."""
        return self._to_rig(self._sensor_pose)

    @property
    def trajectory(self) -> List[Pose]:
        return list(self._trajectory)

    @property
    def map_bounds(self) -> BoundingSphere:
        """Sphere enclosing every live surfel (may be larger than needed)."""
        return self._bounds

    def snapshot(self) -> SurfelSnapshot:
        return self.map.snapshot()

    def reset(self) -> None:
        self.map.clear()
        self.index_map.clear()
        self.frame_count = 0
        self._sensor_pose = self._to_sensor(Pose.identity())
        self._trajectory = []
        self._bounds = BoundingSphere.empty()

    def _to_sensor(self, rig_pose: Pose) -> Pose:
        return rig_pose if self._extrinsic is None else rig_pose.compose(self._extrinsic)

    def _to_rig(self, sensor_pose: Pose) -> Pose:
        return sensor_pose if self._extrinsic is None else sensor_pose.compose(self._extrinsic.inverse())

    def _next_timestamp(self, frame: FrameObservation) -> float:
        self.frame_count += 1
        return float(frame.timestamp) if frame.timestamp is not None else float(self.frame_count)

    # =========================================================================
    # Frame processing
    # =========================================================================

    def process_frame(self, frame: FrameObservation, init_pose: Optional[Pose] = None) -> FrameResult:
        """
        Register a frame against the map and fuse it.

        Args:
            frame: Organized observation in the camera frame
            init_pose: Optional rig pose guess (default: previous refined pose)
        """
        timestamp = self._next_timestamp(frame)
        flat = frame.flatten()
        init = self._to_sensor(init_pose) if init_pose is not None else self._sensor_pose

        if len(self.map) == 0:
            _logger.info(f"Frame {self.frame_count}: empty map, inserting {len(flat)} observations")
            return self._integrate(flat, init, timestamp, FrameStatus.INITIALIZED)

        snapshot = self.map.snapshot()
        frame_bounds = BoundingSphere.from_points(flat.points).transform(init)
        frame_bounds = frame_bounds.inflate(self.params.icp.max_correspondence_distance)
        index_map = None
        if frame_bounds.intersects(self._bounds):
            self.index_map.rebuild(snapshot, self._sensor_pose, self.camera, self.params.index_map.min_view_cosine)
            index_map = self.index_map
        else:
            _logger.debug(f"Frame {self.frame_count}: frame bounds miss the map, skipping projective association")

        icp_result = self.icp.register_frame(flat, snapshot, index_map, self.camera, init)
        if not icp_result.converged:
            _logger.warning(
                f"Frame {self.frame_count}: registration failed ({icp_result.status.value}), keeping last pose"
            )
            self._trajectory.append(self.pose)
            return FrameResult(
                frame_index=self.frame_count,
                status=FrameStatus.FAILED,
                pose=self.pose,
                timestamp=timestamp,
                icp=icp_result,
                n_live=len(self.map),
            )
        return self._integrate(flat, icp_result.pose, timestamp, FrameStatus.TRACKED, icp_result)

    def integrate(self, frame: FrameObservation, pose: Pose) -> FrameResult:
        """Fuse a frame at a known rig pose (no registration)."""
        timestamp = self._next_timestamp(frame)
        return self._integrate(frame.flatten(), self._to_sensor(pose), timestamp, FrameStatus.INTEGRATED)

    def _integrate(
        self,
        flat: FlatObservation,
        pose: Pose,
        timestamp: float,
        status: FrameStatus,
        icp_result: Optional[ICPResult] = None,
    ) -> FrameResult:
        fusion = self.params.fusion
        points_map = pose.transform_points(flat.points)
        normals_map = pose.transform_normals(flat.normals)

        # ----- classification (reads the snapshot only) -----
        snapshot = self.map.snapshot()
        visible = np.zeros(0, dtype=np.int64)
        if snapshot.is_empty():
            classes = ObservationClasses(
                matched=Correspondences.empty(),
                create=np.arange(len(flat), dtype=np.int64),
                skipped=np.zeros(0, dtype=np.int64),
            )
        else:
            self.index_map.rebuild(snapshot, pose, self.camera, self.params.index_map.min_view_cosine)
            visible = self.index_map.visible_slots()
            classes = classify_observations(points_map, normals_map, self.index_map, snapshot, self.camera, fusion)

        # ----- fusion inputs (no writes yet) -----
        src = classes.matched.source_index
        rows = classes.matched.target_index
        slots = snapshot.slots[rows]
        fused = fuse_weighted_average(
            snapshot.positions[rows],
            snapshot.normals[rows],
            snapshot.radii[rows],
            snapshot.colors[rows],
            snapshot.confidences[rows],
            points_map[src],
            normals_map[src],
            initial_radius(self.camera, flat.points[src], flat.normals[src], fusion),
            flat.colors[src],
            confidence_cap=fusion.confidence_cap,
            eps_normal=fusion.normal_epsilon,
        )
        ok = ~fused.degenerate

        # Rows that cannot become surfels are dropped before any write.
        create = classes.create
        create_norms = np.linalg.norm(normals_map[create], axis=1)
        usable = (
            np.isfinite(create_norms)
            & (create_norms > fusion.normal_epsilon)
            & np.all(np.isfinite(points_map[create]), axis=1)
        )
        n_unusable = int(np.count_nonzero(~usable))
        if n_unusable:
            _logger.debug(f"Frame {self.frame_count}: {n_unusable} observations skipped (non-finite or zero normal)")
        create = create[usable]
        create_radii = initial_radius(self.camera, flat.points[create], flat.normals[create], fusion)

        # ----- single write step -----
        self.map.update_slots(
            slots[ok], fused.positions[ok], fused.normals[ok], fused.radii[ok],
            fused.colors[ok], fused.confidences[ok], timestamp,
        )
        # Predicted visible but nothing fused into it this frame.
        self.map.mark_unmatched(np.setdiff1d(visible, slots[ok]))
        created = self.map.insert_batch(
            positions=points_map[create],
            normals=normals_map[create],
            radii=create_radii,
            colors=flat.colors[create],
            confidences=np.ones(create.shape[0]),
            timestamp=timestamp,
            eps_normal=fusion.normal_epsilon,
        )
        # Fused positions are convex combinations of old surfels and observations.
        self._bounds = self._bounds.merge(BoundingSphere.from_points(points_map))

        n_removed = 0
        if self.frame_count % self.params.maintenance.interval == 0:
            n_removed = self._maintain(timestamp)

        self._sensor_pose = pose
        self._trajectory.append(self.pose)

        n_degenerate = int(np.count_nonzero(fused.degenerate))
        if n_degenerate:
            _logger.debug(f"Frame {self.frame_count}: {n_degenerate} fusions rejected (degenerate normal)")
        result = FrameResult(
            frame_index=self.frame_count,
            status=status,
            pose=self.pose,
            timestamp=timestamp,
            icp=icp_result,
            n_fused=int(np.count_nonzero(ok)),
            n_created=int(created.shape[0]),
            n_skipped=int(classes.skipped.shape[0]) + n_unusable,
            n_degenerate=n_degenerate,
            n_removed=n_removed,
            n_live=len(self.map),
        )
        _logger.debug(
            f"Frame {result.frame_index} {status.value}: fused={result.n_fused} created={result.n_created} "
            f"skipped={result.n_skipped} removed={result.n_removed} live={result.n_live}"
        )
        return result

    # =========================================================================
    # Maintenance
    # =========================================================================

    def _maintain(self, now: float) -> int:
        """Remove unstable and stale surfels; recompute map bounds."""
        snapshot = self.map.snapshot()
        if snapshot.is_empty():
            return 0
        remove = select_stale_surfels(
            snapshot.confidences,
            snapshot.created_at,
            self.map.unmatched_counts(snapshot.slots),
            now,
            self.params.maintenance,
        )
        n_removed = self.map.remove_slots(snapshot.slots[remove])
        if n_removed:
            _logger.info(f"Maintenance removed {n_removed} surfels ({len(self.map)} live)")
            self._bounds = self.map.bounding_sphere()
        return n_removed
