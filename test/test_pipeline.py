"""
End-to-end tests of the per-frame pipeline on small synthetic scenes.
"""

import numpy as np
import pytest

from surfel_slam.common.param_models import FusionParams, MaintenanceParams, SurfelSlamParams
from surfel_slam.common.pose import Pose
from surfel_slam.backend.pipeline import FrameStatus, SurfelFusion
from surfel_slam.backend.structures.surfel_map import Surfel
from surfel_slam.frontend.camera import PinholeCamera
from surfel_slam.frontend.frame import FrameObservation
from surfel_slam.frontend.icp import ICPStatus

from conftest import make_planar_frame


def _single_pixel(frame: FrameObservation, row: int, col: int, depth_factor: float = 1.0) -> FrameObservation:
    """Keep one pixel of a frame, optionally pushed along its ray."""
    frame.mask[:] = False
    frame.mask[row, col] = True
    frame.points[row, col] *= depth_factor
    return frame


class TestInitialization:

    def test_empty_map_inserts_every_valid_pixel(self, small_camera, planar_frame):
        params = SurfelSlamParams(maintenance=MaintenanceParams(interval=1))
        fusion = SurfelFusion(small_camera, params)
        result = fusion.process_frame(planar_frame)
        assert result.status == FrameStatus.INITIALIZED
        assert result.icp is None
        assert result.n_created == 100
        assert result.n_fused == 0
        assert result.n_removed == 0
        assert len(fusion.map) == 100
        assert fusion.pose.is_close(Pose.identity())
        snap = fusion.snapshot()
        assert np.allclose(snap.positions[:, 2], 1.0)
        assert np.allclose(snap.normals, [0.0, 0.0, -1.0])
        assert np.all(snap.confidences == 1.0)

    def test_timestamps_fall_back_to_frame_counter(self, small_camera):
        fusion = SurfelFusion(small_camera)
        result = fusion.process_frame(make_planar_frame(small_camera))
        assert result.timestamp == 1.0
        assert np.all(fusion.snapshot().created_at == 1.0)

    def test_frame_timestamp_is_used(self, small_camera):
        fusion = SurfelFusion(small_camera)
        result = fusion.process_frame(make_planar_frame(small_camera, timestamp=12.5))
        assert result.timestamp == 12.5
        assert np.all(fusion.snapshot().created_at == 12.5)


class TestTracking:

    def test_identical_frame_fuses_everything(self, small_camera):
        fusion = SurfelFusion(small_camera)
        fusion.process_frame(make_planar_frame(small_camera))
        result = fusion.process_frame(make_planar_frame(small_camera))
        assert result.status == FrameStatus.TRACKED
        assert result.icp.status == ICPStatus.CONVERGED
        assert result.n_fused == 100
        assert result.n_created == 0
        assert len(fusion.map) == 100
        assert np.all(fusion.snapshot().confidences == 2.0)
        assert fusion.pose.is_close(Pose.identity(), atol=1e-9)

    def test_depth_change_is_tracked(self, small_camera):
        fusion = SurfelFusion(small_camera)
        fusion.process_frame(make_planar_frame(small_camera, 1.0))
        result = fusion.process_frame(make_planar_frame(small_camera, 1.02))
        assert result.status == FrameStatus.TRACKED
        assert np.allclose(result.pose.translation, [0.0, 0.0, -0.02], atol=1e-6)
        assert result.pose.angle() < 1e-6
        assert result.n_fused == 100
        # The fused plane stays at z = 1.
        assert np.allclose(fusion.snapshot().positions[:, 2], 1.0, atol=1e-6)

    def test_trajectory_has_one_pose_per_frame(self, small_camera):
        fusion = SurfelFusion(small_camera)
        for depth in (1.0, 1.01, 1.02):
            fusion.process_frame(make_planar_frame(small_camera, depth))
        assert len(fusion.trajectory) == 3
        assert fusion.trajectory[0].is_close(Pose.identity())
        assert fusion.trajectory[-1].is_close(fusion.pose)
        assert fusion.frame_count == 3

    def test_failed_frame_leaves_map_untouched(self, small_camera):
        fusion = SurfelFusion(small_camera)
        fusion.process_frame(make_planar_frame(small_camera))
        before = fusion.snapshot()
        empty = FrameObservation.from_depth(small_camera, np.zeros((10, 10)), depth_scale=1.0)
        result = fusion.process_frame(empty)
        assert result.status == FrameStatus.FAILED
        assert not result.ok
        assert result.icp.status == ICPStatus.INSUFFICIENT_CORRESPONDENCES
        after = fusion.snapshot()
        assert np.array_equal(before.slots, after.slots)
        assert np.array_equal(before.positions, after.positions)
        assert np.array_equal(before.confidences, after.confidences)
        assert len(fusion.trajectory) == 2
        assert fusion.trajectory[1].is_close(fusion.trajectory[0])

    def test_reset(self, small_camera, planar_frame):
        fusion = SurfelFusion(small_camera)
        fusion.process_frame(planar_frame)
        fusion.reset()
        assert len(fusion.map) == 0
        assert fusion.frame_count == 0
        assert fusion.trajectory == []
        assert fusion.map_bounds.is_empty()


class TestIntegration:

    def test_fuse_into_surfel_at_origin(self):
        """A camera 1 m above the origin looking down fuses into the surfel below it."""
        camera = PinholeCamera(fx=2.0, fy=2.0, cx=1.0, cy=1.0, width=3, height=3)
        points = np.zeros((3, 3, 3))
        points[1, 1] = [0.0, 0.0, 1.0]
        normals = np.zeros((3, 3, 3))
        normals[1, 1] = [0.0, 0.0, -1.0]
        mask = np.zeros((3, 3), dtype=bool)
        mask[1, 1] = True
        frame = FrameObservation(points=points, mask=mask, normals=normals)

        fusion = SurfelFusion(camera)
        sid = fusion.map.insert(Surfel(
            position=np.zeros(3),
            normal=np.array([0.0, 0.0, 1.0]),
            radius=0.01,
            color=np.zeros(3),
            confidence=5.0,
        ))
        # Camera 1.001 m up, flipped about x: the observation lands at (0, 0, 0.001).
        pose = Pose(np.array([0.0, 0.0, 1.001, np.pi, 0.0, 0.0]))
        result = fusion.integrate(frame, pose)

        assert result.status == FrameStatus.INTEGRATED
        assert result.n_fused == 1
        assert result.n_created == 0
        s = fusion.map.get(sid)
        assert s.confidence == 6.0
        assert np.allclose(s.position, 0.0, atol=1e-3)
        assert np.allclose(s.normal, [0.0, 0.0, 1.0], atol=1e-9)

    def test_far_observation_creates_without_touching_others(self, small_camera):
        fusion = SurfelFusion(small_camera)
        fusion.process_frame(make_planar_frame(small_camera))
        before = fusion.snapshot()
        frame = _single_pixel(make_planar_frame(small_camera), 5, 5, depth_factor=1.5)
        result = fusion.integrate(frame, Pose.identity())
        assert result.n_created == 1
        assert result.n_fused == 0
        assert len(fusion.map) == 101
        after = fusion.snapshot()
        rows = after.rows_for_slots(before.slots)
        assert np.array_equal(after.positions[rows], before.positions)
        assert np.array_equal(after.confidences[rows], before.confidences)
        new_row = after.rows_for_slots(np.setdiff1d(after.slots, before.slots))
        assert after.positions[new_row[0], 2] == pytest.approx(1.5)

    def test_map_bounds_cover_surfels(self, small_camera):
        fusion = SurfelFusion(small_camera)
        fusion.process_frame(make_planar_frame(small_camera, 1.0))
        fusion.integrate(_single_pixel(make_planar_frame(small_camera), 0, 0, 3.0), Pose.identity())
        assert np.all(fusion.map_bounds.contains(fusion.snapshot().positions))

    def test_extrinsic_is_applied(self):
        extrinsic = Pose.from_translation([0.0, 0.0, 0.5])
        camera = PinholeCamera(fx=20.0, fy=20.0, cx=4.5, cy=4.5, width=10, height=10,
                               camera_to_world=extrinsic)
        fusion = SurfelFusion(camera)
        fusion.process_frame(make_planar_frame(camera, 1.0))
        assert fusion.pose.is_close(Pose.identity())
        assert np.allclose(fusion.snapshot().positions[:, 2], 1.5)
        result = fusion.process_frame(make_planar_frame(camera, 1.0))
        assert result.status == FrameStatus.TRACKED
        assert result.pose.is_close(Pose.identity(), atol=1e-9)

    def test_non_finite_normal_skips_only_that_pixel(self, small_camera):
        fusion = SurfelFusion(small_camera)
        fusion.process_frame(make_planar_frame(small_camera))
        frame = make_planar_frame(small_camera)
        frame.points[5, 5] *= 1.5
        frame.normals[5, 5] = [np.inf, 0.0, 0.0]
        result = fusion.process_frame(frame)
        assert result.status == FrameStatus.TRACKED
        assert result.n_fused == 99
        assert result.n_created == 0
        assert len(fusion.map) == 100
        conf = fusion.snapshot().confidences
        assert np.count_nonzero(conf == 2.0) == 99
        assert np.count_nonzero(conf == 1.0) == 1

    def test_unusable_new_surfel_is_dropped_before_any_write(self, small_camera):
        fusion = SurfelFusion(small_camera)
        fusion.process_frame(make_planar_frame(small_camera))
        flat = make_planar_frame(small_camera).flatten()
        # Row-major index 55 is pixel (5, 5); pushed back it would become a new surfel.
        flat.points[55] *= 1.5
        flat.normals[55] = np.nan
        result = fusion._integrate(flat, Pose.identity(), 2.0, FrameStatus.INTEGRATED)
        assert result.n_created == 0
        assert result.n_fused == 99
        assert result.n_skipped == 1
        assert len(fusion.map) == 100
        assert np.all(np.isfinite(fusion.snapshot().normals))

    def test_rejected_fusion_counts_as_unmatched(self, small_camera):
        params = SurfelSlamParams(fusion=FusionParams(max_normal_angle_deg=180.0))
        fusion = SurfelFusion(small_camera, params)
        fusion.process_frame(make_planar_frame(small_camera))
        frame = make_planar_frame(small_camera)
        # Opposite normal: the averaged normal vanishes and the fusion is rejected.
        frame.normals[5, 5] = [0.0, 0.0, 1.0]
        result = fusion.integrate(frame, Pose.identity())
        assert result.n_fused == 99
        assert result.n_degenerate == 1
        snap = fusion.snapshot()
        counts = fusion.map.unmatched_counts(snap.slots)
        assert counts.sum() == 1
        rejected = snap.positions[counts == 1][0]
        assert np.allclose(rejected, frame.points[5, 5])
        assert snap.confidences[counts == 1][0] == 1.0


class TestMaintenance:

    def test_unmatched_visible_surfels_are_removed(self, small_camera):
        params = SurfelSlamParams(maintenance=MaintenanceParams(
            interval=1, max_unmatched_frames=1, visibility_confidence=3.0,
        ))
        fusion = SurfelFusion(small_camera, params)
        fusion.process_frame(make_planar_frame(small_camera))
        result = fusion.integrate(_single_pixel(make_planar_frame(small_camera), 5, 5), Pose.identity())
        assert result.n_fused == 1
        assert result.n_removed == 99
        assert result.n_live == 1
        assert fusion.map_bounds.radius == pytest.approx(0.0)

    def test_weak_old_surfels_are_removed(self, small_camera):
        params = SurfelSlamParams(maintenance=MaintenanceParams(
            interval=1, min_confidence=3.0, staleness_timeout=5.0,
        ))
        fusion = SurfelFusion(small_camera, params)
        fusion.process_frame(make_planar_frame(small_camera, timestamp=0.0))
        frame = _single_pixel(make_planar_frame(small_camera, timestamp=10.0), 0, 0, depth_factor=2.0)
        result = fusion.integrate(frame, Pose.identity())
        # The 100 surfels from t=0 are weak and older than the timeout; the new one is fresh.
        assert result.n_removed == 100
        assert result.n_live == 1

    def test_no_maintenance_between_intervals(self, small_camera):
        params = SurfelSlamParams(maintenance=MaintenanceParams(
            interval=3, min_confidence=3.0, staleness_timeout=0.0,
        ))
        fusion = SurfelFusion(small_camera, params)
        fusion.process_frame(make_planar_frame(small_camera, timestamp=0.0))
        r2 = fusion.integrate(make_planar_frame(small_camera, timestamp=1.0), Pose.identity())
        assert r2.n_removed == 0
        r3 = fusion.integrate(make_planar_frame(small_camera, timestamp=2.0), Pose.identity())
        # Confidence 3 after three frames is not below min_confidence.
        assert r3.n_removed == 0
        assert r3.n_live == 100


def _render_box_corner(camera: PinholeCamera, pose: Pose) -> FrameObservation:
    """Depth frame of the inside corner of a box with walls x = 1, y = 0.6 and z = 2."""
    v, u = np.mgrid[0:camera.height, 0:camera.width]
    rays = np.stack([(u - camera.cx) / camera.fx, (v - camera.cy) / camera.fy, np.ones(u.shape)], axis=-1)
    dirs = rays @ pose.rotation.T
    origin = pose.translation
    depth = np.full(u.shape, np.inf)
    for axis, wall in ((0, 1.0), (1, 0.6), (2, 2.0)):
        with np.errstate(divide="ignore", invalid="ignore"):
            s = (wall - origin[axis]) / dirs[..., axis]
        depth = np.where(s > 0.0, np.minimum(depth, s), depth)
    return FrameObservation.from_depth(camera, depth, depth_scale=1.0)


class TestSceneTracking:

    def test_six_dof_sequence_over_box_corner(self):
        """1 cm and 0.01 rad per frame over three walls: every frame tracks."""
        camera = PinholeCamera(fx=60.0, fy=60.0, cx=39.5, cy=29.5, width=80, height=60)
        direction = np.array([0.6, -0.2, 0.77])
        direction /= np.linalg.norm(direction)
        axis = np.array([0.3, 0.9, -0.3])
        axis /= np.linalg.norm(axis)
        fusion = SurfelFusion(camera)
        for k in range(10):
            truth = Pose(np.concatenate([0.01 * k * direction, 0.01 * k * axis]))
            result = fusion.process_frame(_render_box_corner(camera, truth))
            expected = FrameStatus.INITIALIZED if k == 0 else FrameStatus.TRACKED
            assert result.status == expected, f"frame {k}: {result.status}"
            error = truth.inverse().compose(result.pose)
            assert np.linalg.norm(error.translation) < 1e-3, f"frame {k}"
            assert error.angle() < 1e-3, f"frame {k}"
        assert len(fusion.trajectory) == 10
