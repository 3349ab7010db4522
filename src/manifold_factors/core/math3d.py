"""
SO(3) and SE(3) operations for manifold-factors.

This module implements the minimal 3D Lie-group mathematics needed by the
rotation and pose charts and by the measurement expressions:

    • SO(3) exponential & logarithm maps
    • Composition, inversion and relative pose of 6-vector poses
    • Point transforms into / out of a pose frame
    • Small-angle and near-π branches that stay differentiable

Poses are stored as 6-vectors ``[tx, ty, tz, wx, wy, wz]``: a translation
and a rotation vector (axis-angle). All functions are written in JAX and
support:
    - JIT compilation
    - Forward-mode automatic differentiation
    - Numerically stable behavior near the zero-rotation and π-rotation limits

Key Functions
-------------
so3_exp(w)
    Maps a 3-vector (axis-angle) to a 3×3 rotation matrix.

so3_log(R)
    Maps a rotation matrix back to its axis-angle representation.

compose_pose_se3(a, b)
    Composes two poses: a ∘ b.

relative_pose_se3(a, b)
    Relative pose a⁻¹ ∘ b. Together with `compose_pose_se3` this forms the
    exact retract / local pair used by `slam.manifold.Pose3Chart`.

transform_to_se3(pose, p)
    Expresses a world point in the pose frame.

Utilities
---------
hat(ω)
    Converts a 3-vector to its skew-symmetric matrix.

vee(Ω)
    Converts a 3×3 skew matrix back into a 3-vector.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

_SMALL_ANGLE = 1e-5
_NEAR_PI = 1e-2


def pose_vec_to_rt(v: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """
    Split a 6D pose vector into translation and rotation-vector (axis-angle).
    v: [tx, ty, tz, wx, wy, wz]
    """
    v = jnp.asarray(v)
    t = v[0:3]
    w = v[3:6]
    return t, w


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    zero = jnp.zeros_like(x)
    return jnp.array(
        [
            [zero, -z, y],
            [z, zero, -x],
            [-y, x, zero],
        ]
    )


def vee(R: jnp.ndarray) -> jnp.ndarray:
    """
    vee: so(3) -> R^3, inverse of hat.
    Uses the skew-symmetric part of R, so it is exact for skew matrices.
    """
    return jnp.array([
        R[2, 1] - R[1, 2],
        R[0, 2] - R[2, 0],
        R[1, 0] - R[0, 1],
    ]) / 2.0


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from so(3) (rotation vector) to SO(3).

    Uses Rodrigues' formula with a second-order Taylor fallback for small
    angles.
    """
    w = jnp.asarray(w)
    theta = jnp.linalg.norm(w)
    I = jnp.eye(3, dtype=w.dtype)

    def small_angle() -> jnp.ndarray:
        W = hat(w)
        return I + W + 0.5 * (W @ W)

    def normal_angle() -> jnp.ndarray:
        k = w / theta
        K = hat(k)
        return I + jnp.sin(theta) * K + (1.0 - jnp.cos(theta)) * (K @ K)

    return jax.lax.cond(theta < _SMALL_ANGLE, small_angle, normal_angle)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Numerically stable logarithm map for SO(3).

    The angle is recovered with atan2(|vee(R)|, (tr R - 1) / 2), which keeps
    full precision over [0, π] where arccos of the trace does not.

    Handles:
      - small angles via the skew-symmetric part of R
      - angles near π, where vee(R) -> 0, via the axis stored in the
        symmetric part: (R + Rᵀ)/2 = cos θ I + (1 - cos θ) k kᵀ

    Returns w in R^3 such that Exp(w) ~ R.
    """
    R = jnp.asarray(R)
    cos_theta = (jnp.trace(R) - 1.0) / 2.0
    v = vee(R)
    sin_theta = jnp.linalg.norm(v)
    theta = jnp.arctan2(sin_theta, cos_theta)

    def small_angle_case(_) -> jnp.ndarray:
        # R ~ I + hat(w) + O(|w|^2), the quadratic term is symmetric
        return v

    def general_case(_) -> jnp.ndarray:
        #   vee(R) = sin(theta) * k
        return (theta / sin_theta) * v

    def near_pi_case(_) -> jnp.ndarray:
        S = 0.5 * (R + R.T)
        kkT = (S - cos_theta * jnp.eye(3, dtype=R.dtype)) / (1.0 - cos_theta)
        col = kkT[:, jnp.argmax(jnp.diag(kkT))]
        k = col / jnp.linalg.norm(col)
        # the sign of k comes from the (tiny) skew part
        k = jnp.where(jnp.dot(k, v) < 0.0, -k, k)
        # signed sine keeps the angle differentiable through θ = π
        angle = jnp.arctan2(jnp.dot(v, k), cos_theta)
        return angle * k

    branch = jnp.where(
        theta < _SMALL_ANGLE, 0, jnp.where(theta > jnp.pi - _NEAR_PI, 2, 1)
    )
    return jax.lax.switch(
        branch,
        (small_angle_case, general_case, near_pi_case),
        None,
    )


def compose_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Compose two SE(3) poses in 6D vector form.

    a, b: [tx, ty, tz, wx, wy, wz]
    Returns: 6D vector for a ∘ b
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    R = Ra @ Rb
    t = Ra @ tb + ta

    w = so3_log(R)
    return jnp.concatenate([t, w])


def inverse_pose_se3(a: jnp.ndarray) -> jnp.ndarray:
    """Inverse pose a⁻¹ in 6D vector form."""
    ta, wa = pose_vec_to_rt(a)
    Ra = so3_exp(wa)
    return jnp.concatenate([-(Ra.T @ ta), -wa])


def relative_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Compute relative pose from a to b in 6D vector form.

      a, b: [tx, ty, tz, wx, wy, wz]
    Returns the 6-vector of T_rel = T_a^{-1} T_b:

      t_rel = R_a^T (t_b - t_a)
      w_rel = log(R_a^T R_b)
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    R_rel = Ra.T @ Rb
    w_rel = so3_log(R_rel)
    t_rel = Ra.T @ (tb - ta)

    return jnp.concatenate([t_rel, w_rel])


def transform_to_se3(pose: jnp.ndarray, p: jnp.ndarray) -> jnp.ndarray:
    """World point p expressed in the frame of `pose`: R^T (p - t)."""
    t, w = pose_vec_to_rt(pose)
    R = so3_exp(w)
    return R.T @ (jnp.asarray(p) - t)


def transform_from_se3(pose: jnp.ndarray, p: jnp.ndarray) -> jnp.ndarray:
    """Point p given in the frame of `pose`, expressed in world: R p + t."""
    t, w = pose_vec_to_rt(pose)
    R = so3_exp(w)
    return R @ jnp.asarray(p) + t


def se3_identity() -> jnp.ndarray:
    """
    Convenience: return the identity SE(3) pose in 6D vector form.
    """
    return jnp.zeros(6)
