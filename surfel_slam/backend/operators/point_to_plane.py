"""
Point-to-plane linearization for ICP.

For a correspondence (p, q, n) with p the source point already moved by the
current pose estimate, q the target surfel position and n its unit normal:

    r = n^T (p - q)
    J = [n^T, (p x n)^T]        w.r.t. a left increment xi = (rho, phi)

The per-correspondence terms w J^T J, w J^T r and w r^2 are summed with a
balanced pairwise reduction over a power-of-two padded batch, so the result
does not depend on how the batch is split for evaluation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import scipy.linalg

from surfel_slam.common import constants
from surfel_slam.common.jax_init import jax, jnp


# =============================================================================
# Data Structures
# =============================================================================


@dataclass
class NormalEquations:
    """Accumulated point-to-plane system."""
    H: np.ndarray        # (6, 6) sum w J^T J
    g: np.ndarray        # (6,) sum w J^T r
    cost: float          # sum w r^2
    weight_sum: float
    n: int               # correspondences (before padding)

    @property
    def mse(self) -> float:
        if self.weight_sum <= 0.0:
            return float("inf")
        return self.cost / self.weight_sum


# =============================================================================
# JIT'd core
# =============================================================================


def next_pow2(n: int) -> int:
    n = max(1, int(n))
    return 1 << (n - 1).bit_length()


def _tree_sum(x: jnp.ndarray) -> jnp.ndarray:
    """Pairwise sum along axis 0; length must be a power of two."""
    while x.shape[0] > 1:
        x = x[0::2] + x[1::2]
    return x[0]


@jax.jit
def _normal_equations_core(
    points: jnp.ndarray,
    target_points: jnp.ndarray,
    target_normals: jnp.ndarray,
    weights: jnp.ndarray,
) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray, jnp.ndarray]:
    r = jnp.sum(target_normals * (points - target_points), axis=1)          # (N,)
    J = jnp.concatenate([target_normals, jnp.cross(points, target_normals)], axis=1)  # (N, 6)
    wJ = weights[:, None] * J
    H_terms = wJ[:, :, None] * J[:, None, :]                                # (N, 6, 6)
    g_terms = wJ * r[:, None]                                               # (N, 6)
    cost_terms = weights * r * r
    return _tree_sum(H_terms), _tree_sum(g_terms), _tree_sum(cost_terms), _tree_sum(weights)


# =============================================================================
# Main Operators
# =============================================================================


def accumulate_normal_equations(
    points: np.ndarray,
    target_points: np.ndarray,
    target_normals: np.ndarray,
    weights: Optional[np.ndarray] = None,
) -> NormalEquations:
    """
    Build H, g and the weighted squared residual sum for N correspondences.

    Args:
        points: (N, 3) source points in the target frame
        target_points: (N, 3) matched surfel positions
        target_normals: (N, 3) matched surfel unit normals
        weights: Optional (N,) non-negative weights (default 1)
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    target_points = np.asarray(target_points, dtype=np.float64).reshape(-1, 3)
    target_normals = np.asarray(target_normals, dtype=np.float64).reshape(-1, 3)
    n = points.shape[0]
    if target_points.shape[0] != n or target_normals.shape[0] != n:
        raise ValueError(
            f"Correspondence arrays disagree: {n}, {target_points.shape[0]}, {target_normals.shape[0]}"
        )
    if weights is None:
        weights = np.ones(n)
    weights = np.asarray(weights, dtype=np.float64).reshape(-1)
    if weights.shape[0] != n:
        raise ValueError(f"weights has {weights.shape[0]} entries, expected {n}")

    # Zero-weight padding leaves the sums unchanged.
    size = next_pow2(n)
    pad = size - n
    if pad:
        zeros3 = np.zeros((pad, 3))
        points = np.concatenate([points, zeros3])
        target_points = np.concatenate([target_points, zeros3])
        target_normals = np.concatenate([target_normals, zeros3])
        weights = np.concatenate([weights, np.zeros(pad)])

    H, g, cost, wsum = _normal_equations_core(
        jnp.asarray(points),
        jnp.asarray(target_points),
        jnp.asarray(target_normals),
        jnp.asarray(weights),
    )
    H = np.asarray(H)
    return NormalEquations(
        H=0.5 * (H + H.T),
        g=np.asarray(g),
        cost=float(cost),
        weight_sum=float(wsum),
        n=int(n),
    )


def solve_damped(H: np.ndarray, g: np.ndarray, damping: float = 0.0) -> np.ndarray:
    """
    Solve (H + damping * diag(H)) xi = -g.

    A system that is not positive definite (e.g. a single plane leaves three
    directions unconstrained) gets the minimum-norm least-squares step, which
    does not move along the unconstrained directions.

    Raises:
        numpy.linalg.LinAlgError: the least-squares fallback did not converge
    """
    A = H + damping * np.diag(np.diag(H))
    try:
        return scipy.linalg.solve(A, -g, assume_a="pos")
    except np.linalg.LinAlgError:
        xi, _, _, _ = scipy.linalg.lstsq(A, -g, cond=constants.SOLVE_RCOND)
        return xi


def pose_covariance(H: np.ndarray, mse: float) -> np.ndarray:
    """Tangent-space pose covariance sigma^2 H^-1 (pseudo-inverse when singular)."""
    try:
        H_inv = scipy.linalg.inv(H)
    except np.linalg.LinAlgError:
        H_inv = np.linalg.pinv(H)
    cov = mse * H_inv
    return 0.5 * (cov + cov.T)


def point_to_plane_mse(points: np.ndarray, target_points: np.ndarray, target_normals: np.ndarray) -> float:
    """Mean squared point-to-plane residual over fixed correspondences."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if points.shape[0] == 0:
        return float("inf")
    target_points = np.asarray(target_points, dtype=np.float64).reshape(-1, 3)
    target_normals = np.asarray(target_normals, dtype=np.float64).reshape(-1, 3)
    r = np.sum(target_normals * (points - target_points), axis=1)
    return float(np.mean(r * r))
