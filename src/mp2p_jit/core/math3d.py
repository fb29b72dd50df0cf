# Copyright (c) 2025.
# This file is part of mp2p-jit, released under the MIT License.
"""
SE(3) and SO(3) Lie-group operations for mp2p-jit.

This module implements the 3D Lie-group machinery the Gauss-Newton solver
relies on:

    • SO(3) exponential & logarithm maps
    • SE(3) exponential & logarithm maps
    • Right-multiplicative retraction (T ⊕ δ = T · Exp(δ))
    • The differential of the retraction w.r.t. the ambient 3x4 matrix
    • `SE3Pose`, an immutable pose value built on top of the above

All functions are written in JAX and support:
    - JIT compilation
    - Automatic differentiation
    - Numerically stable behavior near zero-rotation limits

Conventions
-----------
Tangent increments are 6-vectors ordered ξ = (v, ω):
    - v: translational part in R^3
    - ω: rotational part (axis-angle) in R^3

Pose vectors (`SE3Pose.from_vector` / `as_vector`) are ordered
[tx, ty, tz, wx, wy, wz], with t the actual translation and w the rotation
vector of R. This is not the twist of the pose: use `se3_log` for that.

The ambient representation of a pose is the 12-vector
[R[:, 0], R[:, 1], R[:, 2], t], i.e. the 3x4 matrix [R | t] flattened
column-major. Residual Jacobians are expressed w.r.t. these 12 entries and
mapped to the 6D tangent space with `jacob_dDexpe_de`.

Key Functions
-------------
so3_exp(w), so3_log(R)
    Rotation vector ↔ rotation matrix.

se3_exp(xi), se3_log(T)
    Twist ↔ 4x4 homogeneous transform.

se3_retract_right(T, xi)
    T · Exp(xi), the update rule used by the solver.

jacob_dDexpe_de(T)
    12x6 matrix d vec(T · Exp(ε)) / dε at ε = 0.
"""

from __future__ import annotations

from dataclasses import dataclass

import jax
import jax.numpy as jnp

SMALL_ANGLE: float = 1e-5


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    return jnp.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def vee(W: jnp.ndarray) -> jnp.ndarray:
    """
    vee: so(3) -> R^3, inverse of hat.
    Uses the antisymmetric part, so slightly non-skew inputs are tolerated.
    """
    return jnp.array([
        W[2, 1] - W[1, 2],
        W[0, 2] - W[2, 0],
        W[1, 0] - W[0, 1],
    ]) / 2.0


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from so(3) (rotation vector) to SO(3).

    Uses Rodrigues' formula with a small-angle fallback.
    """
    w = jnp.asarray(w)
    theta = jnp.linalg.norm(w)
    I = jnp.eye(3, dtype=w.dtype)

    def small_angle() -> jnp.ndarray:
        W = hat(w)
        return I + W + 0.5 * (W @ W)

    def normal_angle() -> jnp.ndarray:
        K = hat(w / theta)
        return I + jnp.sin(theta) * K + (1.0 - jnp.cos(theta)) * (K @ K)

    return jax.lax.cond(theta < SMALL_ANGLE, small_angle, normal_angle)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Logarithm map for SO(3).

    Handles:
      - small angles via first-order approximation
      - trace slightly outside [-1, 3] via clamping

    Returns w in R^3 such that Exp(w) ~ R.
    """
    R = jnp.asarray(R)
    cos_theta = jnp.clip((jnp.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    theta = jnp.arccos(cos_theta)

    def small_angle_case(_) -> jnp.ndarray:
        # R ~ I + hat(w)
        return vee(R - jnp.eye(3, dtype=R.dtype))

    def general_case(_) -> jnp.ndarray:
        factor = theta / (2.0 * jnp.sin(theta) + 1e-12)
        return factor * vee(R - R.T)

    return jax.lax.cond(theta < SMALL_ANGLE, small_angle_case, general_case, operand=None)


def _so3_left_jacobian(w: jnp.ndarray) -> jnp.ndarray:
    """V(w) such that the translation of Exp([v, w]) is V(w) v."""
    theta = jnp.linalg.norm(w)
    I = jnp.eye(3, dtype=w.dtype)
    W = hat(w)

    def small_angle() -> jnp.ndarray:
        return I + 0.5 * W + (W @ W) / 6.0

    def normal_angle() -> jnp.ndarray:
        theta2 = theta * theta
        B = (1.0 - jnp.cos(theta)) / theta2
        C = (theta - jnp.sin(theta)) / (theta2 * theta)
        return I + B * W + C * (W @ W)

    return jax.lax.cond(theta < SMALL_ANGLE, small_angle, normal_angle)


def _so3_left_jacobian_inv(w: jnp.ndarray) -> jnp.ndarray:
    theta = jnp.linalg.norm(w)
    I = jnp.eye(3, dtype=w.dtype)
    W = hat(w)

    def small_angle() -> jnp.ndarray:
        return I - 0.5 * W + (W @ W) / 12.0

    def normal_angle() -> jnp.ndarray:
        theta2 = theta * theta
        D = (1.0 - theta * jnp.sin(theta) / (2.0 * (1.0 - jnp.cos(theta)))) / theta2
        return I - 0.5 * W + D * (W @ W)

    return jax.lax.cond(theta < SMALL_ANGLE, small_angle, normal_angle)


def se3_exp(xi: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from se(3) -> SE(3).

    xi = [v_x, v_y, v_z, w_x, w_y, w_z]

    Returns the 4x4 homogeneous matrix

        T = [ Exp(w), V(w) v ]
            [   0   ,   1    ]
    """
    xi = jnp.asarray(xi)
    v = xi[:3]
    w = xi[3:]

    T = jnp.eye(4, dtype=xi.dtype)
    T = T.at[:3, :3].set(so3_exp(w))
    T = T.at[:3, 3].set(_so3_left_jacobian(w) @ v)
    return T


def se3_log(T: jnp.ndarray) -> jnp.ndarray:
    """Inverse of `se3_exp`: twist [v, w] of a 4x4 transform."""
    T = jnp.asarray(T)
    w = so3_log(T[:3, :3])
    v = _so3_left_jacobian_inv(w) @ T[:3, 3]
    return jnp.concatenate([v, w])


def se3_inverse(T: jnp.ndarray) -> jnp.ndarray:
    R = T[:3, :3]
    t = T[:3, 3]
    T_inv = jnp.eye(4, dtype=T.dtype)
    T_inv = T_inv.at[:3, :3].set(R.T)
    T_inv = T_inv.at[:3, 3].set(-R.T @ t)
    return T_inv


def se3_retract_right(T: jnp.ndarray, xi: jnp.ndarray) -> jnp.ndarray:
    """
    Right-multiplicative SE(3) retraction:

        T_new = T · Exp(xi)

    The increment is expressed in the body (local) frame of T.
    """
    return jnp.asarray(T) @ se3_exp(xi)


def matrix_to_ambient(T: jnp.ndarray) -> jnp.ndarray:
    """[R | t] flattened column-major into a 12-vector."""
    return jnp.asarray(T)[:3, :4].T.reshape(12)


def ambient_to_matrix(p: jnp.ndarray) -> jnp.ndarray:
    p = jnp.asarray(p)
    T = jnp.eye(4, dtype=p.dtype)
    return T.at[:3, :4].set(p.reshape(4, 3).T)


@jax.jit
def _dDexpe_de(T: jnp.ndarray) -> jnp.ndarray:
    R = T[:3, :3]
    D = jnp.zeros((12, 6), dtype=T.dtype)
    for j in range(3):
        e_j = jnp.zeros(3, dtype=T.dtype).at[j].set(1.0)
        D = D.at[3 * j:3 * j + 3, 3:6].set(-R @ hat(e_j))
    return D.at[9:12, 0:3].set(R)


def jacob_dDexpe_de(pose: SE3Pose | jnp.ndarray) -> jnp.ndarray:
    """
    Differential of the right retraction at the identity increment:

        D = d vec(T · Exp(ε)) / dε  |ε=0      (12x6)

    For ε = [v, w] and vec = [R[:,0], R[:,1], R[:,2], t]:

        d R[:, j] / dw = -R hat(e_j)
        d t / dv      =  R

    A residual Jacobian J (d x 12) w.r.t. the ambient pose becomes the
    tangent-space Jacobian J @ D (d x 6).
    """
    T = pose.matrix if isinstance(pose, SE3Pose) else jnp.asarray(pose)
    return _dDexpe_de(T)


@dataclass(frozen=True, eq=False)
class SE3Pose:
    """
    Immutable rigid transform backed by a 4x4 homogeneous matrix.

    Only identity, composition and retraction are needed by the solver;
    conversions are provided for callers and tests.
    """
    matrix: jnp.ndarray

    def __post_init__(self):
        M = jnp.asarray(self.matrix, dtype=jnp.float64)
        if M.shape != (4, 4):
            raise ValueError(f"SE3Pose expects a 4x4 matrix, got shape {M.shape}")
        object.__setattr__(self, "matrix", M)

    @staticmethod
    def identity() -> "SE3Pose":
        return SE3Pose(jnp.eye(4))

    @staticmethod
    def from_vector(v) -> "SE3Pose":
        """Build from [tx, ty, tz, wx, wy, wz]."""
        v = jnp.asarray(v, dtype=jnp.float64)
        T = jnp.eye(4)
        T = T.at[:3, :3].set(so3_exp(v[3:6]))
        T = T.at[:3, 3].set(v[0:3])
        return SE3Pose(T)

    @staticmethod
    def from_rt(R, t) -> "SE3Pose":
        T = jnp.eye(4)
        T = T.at[:3, :3].set(jnp.asarray(R, dtype=jnp.float64))
        T = T.at[:3, 3].set(jnp.asarray(t, dtype=jnp.float64))
        return SE3Pose(T)

    @staticmethod
    def from_ambient(p) -> "SE3Pose":
        return SE3Pose(ambient_to_matrix(jnp.asarray(p, dtype=jnp.float64)))

    @staticmethod
    def exp(xi) -> "SE3Pose":
        return SE3Pose(se3_exp(jnp.asarray(xi, dtype=jnp.float64)))

    @property
    def rotation(self) -> jnp.ndarray:
        return self.matrix[:3, :3]

    @property
    def translation(self) -> jnp.ndarray:
        return self.matrix[:3, 3]

    def as_vector(self) -> jnp.ndarray:
        """[tx, ty, tz, wx, wy, wz]."""
        return jnp.concatenate([self.translation, so3_log(self.rotation)])

    def log(self) -> jnp.ndarray:
        return se3_log(self.matrix)

    def to_ambient(self) -> jnp.ndarray:
        return matrix_to_ambient(self.matrix)

    def compose(self, other: "SE3Pose") -> "SE3Pose":
        return SE3Pose(self.matrix @ other.matrix)

    def __matmul__(self, other: "SE3Pose") -> "SE3Pose":
        return self.compose(other)

    def inverse(self) -> "SE3Pose":
        return SE3Pose(se3_inverse(self.matrix))

    def retract(self, delta) -> "SE3Pose":
        """self · Exp(delta), with delta = [v, w] in the local frame."""
        return SE3Pose(se3_retract_right(self.matrix, jnp.asarray(delta, dtype=jnp.float64)))

    def transform_points(self, pts) -> jnp.ndarray:
        """Map (N, 3) or (3,) local points into the global frame."""
        pts = jnp.asarray(pts, dtype=jnp.float64)
        return pts @ self.rotation.T + self.translation

    def allclose(self, other: "SE3Pose", atol: float = 1e-8) -> bool:
        return bool(jnp.allclose(self.matrix, other.matrix, atol=atol))

    def __repr__(self) -> str:
        v = [round(float(x), 6) for x in self.as_vector()]
        return f"SE3Pose(t={v[:3]}, w={v[3:]})"
