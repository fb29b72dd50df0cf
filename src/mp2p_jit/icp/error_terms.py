# Copyright (c) 2025.
# This file is part of mp2p-jit, released under the MIT License.
"""
Residual models for the five pairing kinds.

Each model is a pure function

    r = f(p, *arrays)

of the 12-vector ambient pose p = [R[:,0], R[:,1], R[:,2], t] and the
3-vectors a pairing flattens into (`Pairing.as_arrays()`). Jacobians
w.r.t. p are obtained with `jax.jacfwd`; the solver maps them to the
tangent space with `core.math3d.jacob_dDexpe_de`.

With g = R l + t the local point expressed in the global frame:

    pt2pt   r = g - p_global                                   (3)
    pt2ln   r = (g - q) × u           line (q, u)              (3)
    pt2pl   r = (n · (g - q)) n       plane (q, n)             (3)
    pl2pl   r = n_global - R n_local                           (3)
    ln2ln   r = [u_global × R u_local, line distance]          (4)

The norm of the pt2ln / pt2pl residuals is the Euclidean distance from the
point to the line / plane.

Adding a pairing kind means adding a residual function and an `ErrorModel`
entry in `ERROR_MODELS`; the solver's accumulation does not change.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Tuple

import jax
import jax.numpy as jnp

from ..core.math3d import SE3Pose
from ..core.types import (
    LineToLine,
    PairingKind,
    PlaneToPlane,
    PointToLine,
    PointToPlane,
    PointToPoint,
)

ResidualFn = Callable[..., jnp.ndarray]

PARALLEL_EPS: float = 1e-9


def _split_ambient(p: jnp.ndarray) -> Tuple[jnp.ndarray, jnp.ndarray]:
    R = p[:9].reshape(3, 3).T
    t = p[9:12]
    return R, t


def _safe_norm(v: jnp.ndarray) -> jnp.ndarray:
    # Zero gradient at v == 0 instead of NaN
    sq = jnp.sum(v * v)
    is_zero = sq == 0.0
    return jnp.where(is_zero, 0.0, jnp.sqrt(jnp.where(is_zero, 1.0, sq)))


def point2point_residual(p, global_pt, local_pt) -> jnp.ndarray:
    R, t = _split_ambient(p)
    return R @ local_pt + t - global_pt


def point2line_residual(p, line_pt, line_dir, local_pt) -> jnp.ndarray:
    R, t = _split_ambient(p)
    g = R @ local_pt + t
    return jnp.cross(g - line_pt, line_dir)


def point2plane_residual(p, plane_pt, plane_n, local_pt) -> jnp.ndarray:
    R, t = _split_ambient(p)
    g = R @ local_pt + t
    return jnp.dot(plane_n, g - plane_pt) * plane_n


def plane2plane_residual(p, global_n, local_n) -> jnp.ndarray:
    R, _ = _split_ambient(p)
    return global_n - R @ local_n


def line2line_residual(p, g_pt, g_dir, l_pt, l_dir) -> jnp.ndarray:
    """
    Direction misalignment (3) followed by the distance between the lines (1).

    For non-parallel lines the distance is measured along the common
    perpendicular; for parallel ones it is the distance from the mapped
    local base point to the global line.
    """
    R, t = _split_ambient(p)
    q = R @ l_pt + t
    u = R @ l_dir
    c = jnp.cross(g_dir, u)
    s = _safe_norm(c)
    diff = q - g_pt

    parallel = s < PARALLEL_EPS
    s_div = jnp.where(parallel, 1.0, s)
    skew_dist = jnp.dot(diff, c) / s_div
    parallel_dist = _safe_norm(jnp.cross(diff, g_dir))
    dist = jnp.where(parallel, parallel_dist, skew_dist)

    return jnp.concatenate([c, dist[None]])


@dataclass(frozen=True)
class ErrorModel:
    """
    Residual function of one pairing kind plus its residual dimension.

    `linearize` evaluates a single pairing, `linearize_batch` a stack of
    them (arrays with a leading pairing axis).
    """
    kind: PairingKind
    residual_dim: int
    residual_fn: ResidualFn

    def linearize(self, p: jnp.ndarray, *arrays: jnp.ndarray) -> Tuple[jnp.ndarray, jnp.ndarray]:
        r = self.residual_fn(p, *arrays)
        J = jax.jacfwd(self.residual_fn, argnums=0)(p, *arrays)
        return r, J

    def linearize_batch(self, p: jnp.ndarray, *arrays: jnp.ndarray) -> Tuple[jnp.ndarray, jnp.ndarray]:
        in_axes = (None,) + (0,) * len(arrays)
        return jax.vmap(self.linearize, in_axes=in_axes)(p, *arrays)

    def residual_batch(self, p: jnp.ndarray, *arrays: jnp.ndarray) -> jnp.ndarray:
        in_axes = (None,) + (0,) * len(arrays)
        return jax.vmap(self.residual_fn, in_axes=in_axes)(p, *arrays)


ERROR_MODELS: Dict[PairingKind, ErrorModel] = {
    PairingKind.PT2PT: ErrorModel(PairingKind.PT2PT, 3, point2point_residual),
    PairingKind.PT2LN: ErrorModel(PairingKind.PT2LN, 3, point2line_residual),
    PairingKind.LN2LN: ErrorModel(PairingKind.LN2LN, 4, line2line_residual),
    PairingKind.PT2PL: ErrorModel(PairingKind.PT2PL, 3, point2plane_residual),
    PairingKind.PL2PL: ErrorModel(PairingKind.PL2PL, 3, plane2plane_residual),
}


def _evaluate(kind: PairingKind, pairing, pose: SE3Pose) -> Tuple[jnp.ndarray, jnp.ndarray]:
    return ERROR_MODELS[kind].linearize(pose.to_ambient(), *pairing.as_arrays())


def error_point2point(pairing: PointToPoint, pose: SE3Pose) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """Residual (3,) and ambient Jacobian (3, 12) of a point-to-point pairing."""
    return _evaluate(PairingKind.PT2PT, pairing, pose)


def error_point2line(pairing: PointToLine, pose: SE3Pose) -> Tuple[jnp.ndarray, jnp.ndarray]:
    return _evaluate(PairingKind.PT2LN, pairing, pose)


def error_point2plane(pairing: PointToPlane, pose: SE3Pose) -> Tuple[jnp.ndarray, jnp.ndarray]:
    return _evaluate(PairingKind.PT2PL, pairing, pose)


def error_plane2plane(pairing: PlaneToPlane, pose: SE3Pose) -> Tuple[jnp.ndarray, jnp.ndarray]:
    return _evaluate(PairingKind.PL2PL, pairing, pose)


def error_line2line(pairing: LineToLine, pose: SE3Pose) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """Residual (4,) and ambient Jacobian (4, 12) of a line-to-line pairing."""
    return _evaluate(PairingKind.LN2LN, pairing, pose)


def stack_pairings(pairings) -> Tuple[jnp.ndarray, ...]:
    """Stack a non-empty sequence of same-kind pairings into (N, 3) arrays."""
    columns = zip(*(p.as_arrays() for p in pairings))
    return tuple(jnp.stack(col) for col in columns)
