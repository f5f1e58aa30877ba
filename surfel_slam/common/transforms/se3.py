"""
SE(3) geometry using a Lie algebra (tangent space) representation.

Pose representation: (x, y, z, rx, ry, rz) where:
- (x, y, z): translation in R^3
- (rx, ry, rz): rotation vector (axis-angle) in so(3)

Tangent increments: (rho, phi) with rho the translational and phi the
rotational part. se3_exp / se3_log map between the two representations.

Numerical Policy:
    ROTATION_EPSILON = 1e-10: below this angle closed forms switch to their
    Taylor expansion. SINGULARITY_EPSILON = 1e-6: threshold for the
    pi-singularity branch of the SO(3) logarithm. These affect only the
    computational path, not the mathematical result.

References:
- Barfoot (2017): State Estimation for Robotics
- Sola et al. (2018): A micro Lie theory for state estimation
"""

import math

import numpy as np


ROTATION_EPSILON: float = 1e-10
SINGULARITY_EPSILON: float = 1e-6


# =============================================================================
# so(3) <-> SO(3)
# =============================================================================


def skew(v: np.ndarray) -> np.ndarray:
    """Skew-symmetric matrix from 3-vector (hat operator)."""
    v = np.asarray(v, dtype=float).reshape(-1)
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0],
    ], dtype=float)


def unskew(S: np.ndarray) -> np.ndarray:
    """Extract 3-vector from skew-symmetric matrix (vee operator)."""
    return np.array([S[2, 1], S[0, 2], S[1, 0]], dtype=float)


def rotvec_to_rotmat(rotvec: np.ndarray) -> np.ndarray:
    """
    Exponential map so(3) -> SO(3) via Rodrigues' formula.

        R = I + sin(theta) K + (1 - cos(theta)) K^2,   K = [axis]_x
    """
    rotvec = np.asarray(rotvec, dtype=float).reshape(-1)
    theta = float(np.linalg.norm(rotvec))

    if theta < ROTATION_EPSILON:
        return np.eye(3, dtype=float) + skew(rotvec)

    K = skew(rotvec / theta)
    return np.eye(3, dtype=float) + math.sin(theta) * K + (1.0 - math.cos(theta)) * (K @ K)


def rotmat_to_rotvec(R: np.ndarray) -> np.ndarray:
    """
    Logarithmic map SO(3) -> so(3); returned angle lies in [0, pi].

    The angle is recovered with atan2 of the skew and trace parts, which
    keeps precision for small rotations. Near pi the axis is extracted from
    the diagonal.
    """
    R = np.asarray(R, dtype=float)
    w = np.array([R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]], dtype=float)
    sin_theta = 0.5 * float(np.linalg.norm(w))
    cos_theta = 0.5 * (float(np.trace(R)) - 1.0)
    theta = math.atan2(sin_theta, cos_theta)

    if theta < ROTATION_EPSILON:
        return 0.5 * w

    if abs(theta - math.pi) < SINGULARITY_EPSILON:
        axis = np.sqrt(np.maximum((np.diag(R) + 1.0) * 0.5, 0.0))
        # Resolve signs against the largest component
        k = int(np.argmax(axis))
        for j in range(3):
            if j != k:
                axis[j] = math.copysign(axis[j], R[k, j] + R[j, k])
        axis_norm = float(np.linalg.norm(axis))
        if axis_norm < 1e-12:
            return np.zeros(3, dtype=float)
        return axis / axis_norm * theta

    return w * (theta / (2.0 * sin_theta))


def so3_left_jacobian(phi: np.ndarray) -> np.ndarray:
    """
    SO(3) left Jacobian J_l(phi), mapping rho to the translation of Exp([rho; phi]).

        J_l = I + (1 - cos)/theta^2 [phi]_x + (theta - sin)/theta^3 [phi]_x^2
    """
    phi = np.asarray(phi, dtype=float).reshape(-1)
    theta = float(np.linalg.norm(phi))
    P = skew(phi)
    if theta < ROTATION_EPSILON:
        return np.eye(3, dtype=float) + 0.5 * P
    theta_sq = theta * theta
    return (np.eye(3, dtype=float)
            + (1.0 - math.cos(theta)) / theta_sq * P
            + (theta - math.sin(theta)) / (theta_sq * theta) * (P @ P))


def so3_left_jacobian_inv(phi: np.ndarray) -> np.ndarray:
    """
    Inverse SO(3) left Jacobian.

        J_l^{-1} = I - 1/2 [phi]_x + (1 - (theta/2) cot(theta/2)) K^2,  K = [axis]_x
    """
    phi = np.asarray(phi, dtype=float).reshape(-1)
    theta = float(np.linalg.norm(phi))
    if theta < ROTATION_EPSILON:
        return np.eye(3, dtype=float) - 0.5 * skew(phi)
    half = 0.5 * theta
    K = skew(phi / theta)
    return (np.eye(3, dtype=float)
            - 0.5 * skew(phi)
            + (1.0 - half / math.tan(half)) * (K @ K))


# =============================================================================
# SE(3) operations on (t, rotvec) 6-vectors
# =============================================================================


def se3_compose(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Compose two SE(3) transforms: T_a * T_b (T_b applied first).

    t_out = t_a + R_a t_b, R_out = R_a R_b.
    """
    a = np.asarray(a, dtype=float).reshape(-1)
    b = np.asarray(b, dtype=float).reshape(-1)
    R_a = rotvec_to_rotmat(a[3:6])
    R_b = rotvec_to_rotmat(b[3:6])
    t_out = a[:3] + R_a @ b[:3]
    return np.concatenate([t_out, rotmat_to_rotvec(R_a @ R_b)])


def se3_inverse(a: np.ndarray) -> np.ndarray:
    """Inverse of an SE(3) transform: (R^T, -R^T t)."""
    a = np.asarray(a, dtype=float).reshape(-1)
    R_inv = rotvec_to_rotmat(a[3:6]).T
    return np.concatenate([-R_inv @ a[:3], rotmat_to_rotvec(R_inv)])


def se3_apply(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Apply SE(3) transform to point(s).

    points: (N, 3) or (3,); the result has the same shape.
    """
    T = np.asarray(T, dtype=float).reshape(-1)
    points = np.asarray(points, dtype=float)
    R = rotvec_to_rotmat(T[3:6])
    if points.ndim == 1:
        return R @ points + T[:3]
    return points @ R.T + T[:3]


def se3_exp(xi: np.ndarray) -> np.ndarray:
    """
    Exponential map se(3) -> SE(3).

    xi = (rho, phi). Returns (t, rotvec) with t = J_l(phi) rho, rotvec = phi.
    """
    xi = np.asarray(xi, dtype=float).reshape(-1)
    rho = xi[:3]
    phi = xi[3:6]
    t = so3_left_jacobian(phi) @ rho
    return np.concatenate([t, phi])


def se3_log(T: np.ndarray) -> np.ndarray:
    """
    Logarithmic map SE(3) -> se(3), inverse of se3_exp.

    The rotation vector is first brought to its principal value (angle <= pi).
    """
    T = np.asarray(T, dtype=float).reshape(-1)
    phi = rotmat_to_rotvec(rotvec_to_rotmat(T[3:6]))
    rho = so3_left_jacobian_inv(phi) @ T[:3]
    return np.concatenate([rho, phi])
