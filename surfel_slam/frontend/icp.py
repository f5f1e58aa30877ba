"""
Point-to-plane Iterative Closest Point (ICP).

Each iteration:
    1. Associate: move the source points by the current estimate T and match
       them to surfels (index map first, KDTree fallback)
    2. Linearize: r_i = n_i^T (T s_i - q_i), J_i = [n_i^T, (T s_i x n_i)^T]
    3. Solve: (H + lambda diag(H)) delta = -g, T <- Exp(delta) * T
    4. Check: ||delta|| < eps or relative MSE change <= residual_tolerance

A step is rejected when it raises the MSE of the correspondences it was
solved for by more than divergence_tolerance, when the solve fails or is
non-finite, or when the next association loses track. Near convergence the
MSE measured after re-association wobbles as points switch between adjacent
surfels; that alone is never a rejection. A rejected step resets the estimate
to the best pose seen so far and raises the damping lambda (damping_initial,
then times damping_factor). After max_retries such resets the result is
DIVERGED_EXHAUSTED with the best pose.

COVARIANCE MODEL:
    Sigma = sigma^2 (J^T J)^{-1} at the best pose, sigma^2 = final MSE.

Results are explicit ICPResult states; nothing here raises on a bad frame.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

import numpy as np

from surfel_slam.common import constants
from surfel_slam.common.errors import (
    EmptyMapError,
    InsufficientCorrespondencesError,
    NumericalDivergenceError,
)
from surfel_slam.common.param_models import ICPParams
from surfel_slam.common.pose import Pose
from surfel_slam.backend.operators.association import (
    Correspondences,
    associate_nearest,
    associate_projective,
)
from surfel_slam.backend.operators.point_to_plane import (
    NormalEquations,
    accumulate_normal_equations,
    point_to_plane_mse,
    pose_covariance,
    solve_damped,
)
from surfel_slam.backend.structures.bounding_sphere import BoundingSphere
from surfel_slam.backend.structures.index_map import IndexMap
from surfel_slam.backend.structures.kdtree import KDTree
from surfel_slam.backend.structures.surfel_map import SurfelSnapshot
from surfel_slam.frontend.frame import FlatObservation, FrameObservation


_logger = logging.getLogger(__name__)


class ICPStatus(enum.Enum):
    CONVERGED = "converged"
    DIVERGED_EXHAUSTED = "diverged_exhausted"
    INSUFFICIENT_CORRESPONDENCES = "insufficient_correspondences"
    EMPTY_MAP = "empty_map"


@dataclass
class ICPResult:
    """
    Complete ICP result.

    pose is the refined estimate for CONVERGED, the best pose seen for
    DIVERGED_EXHAUSTED and the initial pose otherwise.
    """
    status: ICPStatus
    pose: Pose
    initial_pose: Pose
    iterations: int            # Iterations actually used
    max_iterations: int
    retries: int               # Damped restarts used
    initial_objective: float   # MSE at the first linearization
    final_objective: float     # Lowest MSE over accepted linearizations (inf when none)
    n_correspondences: int     # Correspondences of the last linearization
    used_spatial_index: bool
    hit_iteration_limit: bool = False
    covariance: Optional[np.ndarray] = None  # (6, 6) tangent covariance

    @property
    def converged(self) -> bool:
        return self.status == ICPStatus.CONVERGED

    def raise_for_status(self) -> "ICPResult":
        """Return self when converged, otherwise raise the matching error."""
        if self.status == ICPStatus.CONVERGED:
            return self
        if self.status == ICPStatus.DIVERGED_EXHAUSTED:
            raise NumericalDivergenceError(
                f"ICP diverged after {self.retries} retries ({self.iterations} iterations)"
            )
        if self.status == ICPStatus.EMPTY_MAP:
            raise EmptyMapError("ICP attempted against an empty map")
        raise InsufficientCorrespondencesError(
            f"ICP found too few correspondences ({self.n_correspondences})"
        )


# (points_map, normals_map) -> (correspondences, target_points, target_normals, used_spatial_index)
AssociateFn = Callable[[np.ndarray, np.ndarray], Tuple[Correspondences, np.ndarray, np.ndarray, bool]]


def _subsample(n: int, max_points: int) -> np.ndarray:
    """Uniform stride selection of at most max_points indices."""
    if n <= max_points:
        return np.arange(n)
    stride = int(np.ceil(n / max_points))
    return np.arange(0, n, stride)


class PointToPlaneICP:
    """Point-to-plane ICP against surfels (frames) or oriented point sets."""

    def __init__(self, params: Optional[ICPParams] = None):
        self.params = params if params is not None else ICPParams()

    # =========================================================================
    # Public entry points
    # =========================================================================

    def register_frame(
        self,
        frame: Union[FrameObservation, FlatObservation],
        snapshot: SurfelSnapshot,
        index_map: Optional[IndexMap],
        camera,
        init_pose: Pose,
    ) -> ICPResult:
        """
        Estimate the camera-to-map pose of a frame.

        Args:
            frame: Organized frame or its flattened view (camera frame)
            snapshot: Live surfels; read only for the whole registration
            index_map: Index map built from snapshot at the reference pose,
                or None to use only the spatial index
            camera: Camera model of the index map's reference view
            init_pose: Starting estimate (usually the previous refined pose)
        """
        flat = frame.flatten() if isinstance(frame, FrameObservation) else frame
        if snapshot.is_empty():
            return self._failed(ICPStatus.EMPTY_MAP, init_pose, 0, 0, False)

        keep = _subsample(len(flat), self.params.max_points)
        src_points = flat.points[keep]
        src_normals = flat.normals[keep]

        p = self.params
        min_cos = p.min_normal_cosine
        tree_cache = {}

        def build_tree() -> Tuple[KDTree, np.ndarray]:
            if "tree" not in tree_cache:
                sphere = BoundingSphere.from_points(src_points).transform(init_pose)
                sphere = sphere.inflate(2.0 * p.max_correspondence_distance)
                rows = np.nonzero(sphere.contains(snapshot.positions))[0].astype(np.int64)
                tree_cache["tree"] = (KDTree(snapshot.positions[rows]), rows)
                _logger.debug(f"ICP spatial index built over {rows.shape[0]} of {len(snapshot)} surfels")
            return tree_cache["tree"]

        def associate(points_map, normals_map):
            corr = Correspondences.empty()
            if index_map is not None:
                corr = associate_projective(
                    points_map, normals_map, index_map, snapshot, camera,
                    p.max_correspondence_distance, min_cos,
                )
            if len(corr) >= p.min_correspondences or not p.use_spatial_index_fallback:
                return corr, snapshot.positions, snapshot.normals, False
            tree, rows = build_tree()
            if len(tree) == 0:
                return corr, snapshot.positions, snapshot.normals, False
            corr_nn = associate_nearest(
                points_map, normals_map, tree, rows,
                snapshot.positions, snapshot.normals,
                p.max_correspondence_distance, min_cos,
            )
            if len(corr_nn) > len(corr):
                return corr_nn, snapshot.positions, snapshot.normals, True
            return corr, snapshot.positions, snapshot.normals, False

        return self._run(src_points, src_normals, associate, init_pose)

    def register_points(
        self,
        source_points: np.ndarray,
        target_points: np.ndarray,
        target_normals: np.ndarray,
        source_normals: Optional[np.ndarray] = None,
        init_pose: Optional[Pose] = None,
    ) -> ICPResult:
        """
        Register an unorganized point set to an oriented target point set.

        Correspondences come from a KDTree over the targets. Without source
        normals only the distance gate is applied.

        Returns:
            ICPResult whose pose maps source points onto the target
        """
        init_pose = init_pose if init_pose is not None else Pose.identity()
        source_points = np.asarray(source_points, dtype=float).reshape(-1, 3)
        target_points = np.asarray(target_points, dtype=float).reshape(-1, 3)
        target_normals = np.asarray(target_normals, dtype=float).reshape(-1, 3)
        if target_points.shape[0] == 0:
            return self._failed(ICPStatus.EMPTY_MAP, init_pose, 0, 0, False)

        p = self.params
        if source_normals is None:
            source_normals = np.zeros_like(source_points)
            min_cos = -np.inf
        else:
            source_normals = np.asarray(source_normals, dtype=float).reshape(-1, 3)
            min_cos = p.min_normal_cosine

        keep = _subsample(source_points.shape[0], p.max_points)
        source_points = source_points[keep]
        source_normals = source_normals[keep]

        tree = KDTree(target_points)
        rows = np.arange(target_points.shape[0], dtype=np.int64)

        def associate(points_map, normals_map):
            corr = associate_nearest(
                points_map, normals_map, tree, rows, target_points, target_normals,
                p.max_correspondence_distance, min_cos,
            )
            return corr, target_points, target_normals, True

        return self._run(source_points, source_normals, associate, init_pose)

    # =========================================================================
    # Iteration
    # =========================================================================

    def _failed(self, status: ICPStatus, init_pose: Pose, iterations: int,
                n_corr: int, used_index: bool, initial_objective: float = float("inf")) -> ICPResult:
        _logger.warning(f"ICP failed: {status.value} after {iterations} iterations ({n_corr} correspondences)")
        return ICPResult(
            status=status,
            pose=init_pose,
            initial_pose=init_pose,
            iterations=iterations,
            max_iterations=self.params.max_iterations,
            retries=0,
            initial_objective=initial_objective,
            final_objective=float("inf"),
            n_correspondences=n_corr,
            used_spatial_index=used_index,
        )

    def _run(
        self,
        src_points: np.ndarray,
        src_normals: np.ndarray,
        associate: AssociateFn,
        init_pose: Pose,
    ) -> ICPResult:
        p = self.params
        pose = init_pose
        best_pose = init_pose
        best_eq: Optional[NormalEquations] = None
        best_mse = float("inf")
        prev_mse: Optional[float] = None
        initial_objective = float("inf")
        damping = 0.0
        retries = 0
        used_index = False
        n_corr = 0
        just_reset = False

        def result(status: ICPStatus, out_pose: Pose, iterations: int, hit_limit: bool = False) -> ICPResult:
            cov = pose_covariance(best_eq.H, best_eq.mse) if best_eq is not None else None
            return ICPResult(
                status=status,
                pose=out_pose,
                initial_pose=init_pose,
                iterations=iterations,
                max_iterations=p.max_iterations,
                retries=retries,
                initial_objective=initial_objective,
                final_objective=best_mse,
                n_correspondences=n_corr,
                used_spatial_index=used_index,
                hit_iteration_limit=hit_limit,
                covariance=cov,
            )

        for it in range(1, p.max_iterations + 1):
            reject = False
            points_map = pose.transform_points(src_points)
            normals_map = pose.transform_normals(src_normals)
            corr, tgt_points, tgt_normals, used = associate(points_map, normals_map)
            used_index = used_index or used
            n_corr = len(corr)

            if n_corr < p.min_correspondences:
                if best_eq is None:
                    return self._failed(
                        ICPStatus.INSUFFICIENT_CORRESPONDENCES, init_pose, it, n_corr, used_index, initial_objective
                    )
                # Lost track after a step; treat like divergence.
                reject = True
                eq = None
            else:
                matched = points_map[corr.source_index]
                matched_points = tgt_points[corr.target_index]
                matched_normals = tgt_normals[corr.target_index]
                eq = accumulate_normal_equations(matched, matched_points, matched_normals)
                mse = eq.mse
                if best_eq is None:
                    initial_objective = mse

            if not reject:
                if mse < best_mse:
                    best_mse, best_pose, best_eq = mse, pose, eq
                stalled = (
                    prev_mse is not None
                    and not just_reset
                    and abs(prev_mse - mse) <= p.residual_tolerance * prev_mse + constants.EPS_OBJECTIVE
                )
                if stalled:
                    _logger.debug(f"ICP converged (stalled residual) at iteration {it}, mse={mse:.3e}")
                    return result(ICPStatus.CONVERGED, best_pose, it)
                prev_mse = mse
                just_reset = False
                try:
                    delta = solve_damped(eq.H, eq.g, damping)
                except np.linalg.LinAlgError:
                    delta = None
                if delta is None or not np.all(np.isfinite(delta)):
                    reject = True
                else:
                    step = Pose.exp(delta)
                    # Judged on the correspondences it was solved for; a new
                    # association at the next iteration is not a divergence.
                    step_mse = point_to_plane_mse(step.transform_points(matched), matched_points, matched_normals)
                    if step_mse > mse * (1.0 + p.divergence_tolerance) + constants.EPS_OBJECTIVE:
                        reject = True

                if not reject:
                    new_pose = step.compose(pose)
                    if float(np.linalg.norm(delta)) < p.increment_epsilon:
                        _logger.debug(f"ICP converged (small increment) at iteration {it}, mse={mse:.3e}")
                        return result(ICPStatus.CONVERGED, new_pose, it)
                    pose = new_pose

            if reject:
                retries += 1
                if retries > p.max_retries:
                    _logger.warning(
                        f"ICP diverged: retry budget ({p.max_retries}) exhausted at iteration {it}, "
                        f"best mse={best_mse:.3e}"
                    )
                    retries = p.max_retries
                    return result(ICPStatus.DIVERGED_EXHAUSTED, best_pose, it)
                damping = p.damping_initial if damping == 0.0 else damping * p.damping_factor
                _logger.debug(f"ICP retry {retries}/{p.max_retries}: reset to best pose, damping={damping:.1e}")
                pose = best_pose
                prev_mse = best_mse
                just_reset = True

        _logger.debug(f"ICP hit iteration limit ({p.max_iterations}), mse={best_mse:.3e}")
        return result(ICPStatus.CONVERGED, pose, p.max_iterations, hit_limit=True)
