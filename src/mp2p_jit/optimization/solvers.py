# Copyright (c) 2025.
# This file is part of mp2p-jit, released under the MIT License.
"""
Gauss-Newton solver for the optimal SE(3) transform between paired
primitives.

Given `Pairings` (points, lines and planes of a local set matched to those
of a global set) and a linearization point, `optimal_tf_gauss_newton`
finds the pose T minimizing

    Σ_k Σ_i || w_ki · ρ_ki · r_k(T; pairing_i) ||²

where w_ki is the per-kind base weight (or the point weight override for
point-to-point pairings) and ρ_ki the optional robust kernel factor.

Key Concepts
------------
OptimalTFGNParameters
    Dataclass holding the solver configuration:
    - linearization_point: initial pose (mandatory)
    - max_inner_loop_iterations: iteration cap
    - max_cost: stop when the residual norm drops to this value
    - min_delta: stop when the increment norm drops below this value
    - kernel / kernel_param: robust kernel selection
    - pair_weights: base weight per pairing kind
    - verbose: log one line per iteration at INFO level

optimal_tf_gauss_newton(pairings, params)
    Undamped Gauss-Newton on SE(3). Each iteration:
        1. D = d vec(T · Exp(ε)) / dε at the current pose (12x6)
        2. accumulate H = Σ Jᵀ J and g = Σ Jᵀ e over all pairings,
           with J = w · J_ambient · D and e = w · r
        3. stop if sqrt(Σ ||e||²) <= max_cost
        4. solve H δ = -g (SVD least squares, tolerant to rank deficiency)
        5. T <- T · Exp(δ)
        6. stop if ||δ|| < min_delta

Notes
-----
The linearization of all pairings is a single module-level jitted function,
compiled once per combination of pairing kinds, kernel and batch sizes, so
repeated solves of same-shaped problems reuse it. Residuals and Jacobians
of each kind are evaluated with `jax.vmap`, so kinds only differ by their
`ErrorModel` entry.

There is no damping: an ill-conditioned H yields a poor step rather than an
exception. The condition number of H is recorded for every iteration in
`OptimalTFResult.history` so callers can detect this.
"""

from __future__ import annotations

import logging
from functools import partial
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np
import yaml

from ..core.errors import ConfigurationError, MissingLinearizationPointError
from ..core.math3d import SE3Pose, jacob_dDexpe_de
from ..core.types import PairingKind, Pairings, PairWeights
from ..icp.error_terms import ERROR_MODELS, stack_pairings
from ..icp.point_weights import expand_point_weights, validate_point_weights
from ..icp.robust_kernels import RobustKernel, check_kernel_param, robust_sqrt_weight

logger = logging.getLogger(__name__)

ILL_CONDITIONED: float = 1e12

# (stacked pairing arrays, per-pairing weights) for one kind
KindBatch = Tuple[Tuple[jnp.ndarray, ...], jnp.ndarray]


class TerminationReason(str, Enum):
    CONVERGED_BY_RESIDUAL = "converged_by_residual"
    CONVERGED_BY_STAGNATION = "converged_by_stagnation"
    ITERATIONS_EXHAUSTED = "iterations_exhausted"


@dataclass
class OptimalTFGNParameters:
    linearization_point: Optional[SE3Pose] = None
    max_inner_loop_iterations: int = 6
    max_cost: float = 0.0
    min_delta: float = 1e-7
    kernel: RobustKernel = RobustKernel.NONE
    kernel_param: float = 1.0
    pair_weights: PairWeights = field(default_factory=PairWeights)
    verbose: bool = False

    def __post_init__(self):
        self.kernel = RobustKernel.parse(self.kernel)
        n = self.max_inner_loop_iterations
        numeric = isinstance(n, (int, float, np.integer, np.floating)) and not isinstance(n, bool)
        if not numeric or not float(n).is_integer():
            raise ConfigurationError(f"max_inner_loop_iterations must be an integer, got {n!r}")
        if n < 0:
            raise ConfigurationError("max_inner_loop_iterations must be non-negative")
        self.max_inner_loop_iterations = int(self.max_inner_loop_iterations)
        if self.max_cost < 0.0 or self.min_delta < 0.0:
            raise ConfigurationError("max_cost and min_delta must be non-negative")

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "OptimalTFGNParameters":
        """
        Build parameters from a plain mapping (e.g. parsed YAML).

        `linearization_point` may be a 6-vector [tx, ty, tz, wx, wy, wz] or a
        4x4 matrix; `pair_weights` a mapping of kind name -> weight;
        `kernel` a kernel name.
        """
        known = {f.name for f in fields(OptimalTFGNParameters)}
        unknown = set(d) - known
        if unknown:
            raise ConfigurationError(f"Unknown solver parameters: {sorted(unknown)}")

        kwargs = dict(d)
        lp = kwargs.get("linearization_point")
        if lp is not None and not isinstance(lp, SE3Pose):
            arr = np.asarray(lp, dtype=np.float64)
            if arr.shape == (6,):
                kwargs["linearization_point"] = SE3Pose.from_vector(arr)
            elif arr.shape == (4, 4):
                kwargs["linearization_point"] = SE3Pose(arr)
            else:
                raise ConfigurationError(
                    f"linearization_point must be a 6-vector or a 4x4 matrix, got shape {arr.shape}"
                )
        pw = kwargs.get("pair_weights")
        if isinstance(pw, dict):
            kwargs["pair_weights"] = PairWeights.from_dict(pw)
        return OptimalTFGNParameters(**kwargs)


def load_gn_parameters(path: str) -> OptimalTFGNParameters:
    """Read solver parameters from a YAML mapping."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a mapping of solver parameters")
    return OptimalTFGNParameters.from_dict(data)


@dataclass
class IterationRecord:
    iteration: int
    error_norm: float
    condition_number: float
    delta_norm: Optional[float] = None  # None when stopped before solving


@dataclass
class OptimalTFResult:
    optimal_pose: SE3Pose
    termination_reason: TerminationReason
    iterations: int
    final_error_norm: float
    history: List[IterationRecord] = field(default_factory=list)

    @property
    def success(self) -> bool:
        # Every termination reason is a successful solve
        return True

    @property
    def converged(self) -> bool:
        return self.termination_reason is not TerminationReason.ITERATIONS_EXHAUSTED


def _pairing_weights(pairings: Pairings, kind: PairingKind, pair_weights: PairWeights) -> jnp.ndarray:
    n = len(pairings.of_kind(kind))
    if kind is PairingKind.PT2PT and pairings.point_weights:
        return jnp.asarray(expand_point_weights(pairings.point_weights, n))
    return jnp.full((n,), pair_weights.of_kind(kind), dtype=jnp.float64)


def _build_batches(
    pairings: Pairings, pair_weights: PairWeights
) -> Tuple[Tuple[PairingKind, ...], Tuple[KindBatch, ...]]:
    # Runs are checked even when there are no point-to-point pairings
    if pairings.point_weights:
        validate_point_weights(pairings.point_weights, len(pairings.pt2pt))
    kinds = []
    batches = []
    for kind in PairingKind:
        seq = pairings.of_kind(kind)
        if not seq:
            continue
        kinds.append(kind)
        batches.append((stack_pairings(seq), _pairing_weights(pairings, kind, pair_weights)))
    return tuple(kinds), tuple(batches)


@partial(jax.jit, static_argnames=("kinds", "kernel"))
def _linearize(
    p: jnp.ndarray,
    D: jnp.ndarray,
    batches: Tuple[KindBatch, ...],
    kernel_param: jnp.ndarray,
    kinds: Tuple[PairingKind, ...],
    kernel: RobustKernel,
) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
    """
    (H, g, Σ||e||²) of all pairings at the ambient pose p.

    p is the ambient 12-vector of the current pose and D its 12x6
    differential. Compiled once per (kinds, kernel, batch shapes); the
    kernel parameter is traced.
    """
    H = jnp.zeros((6, 6), dtype=p.dtype)
    g = jnp.zeros((6,), dtype=p.dtype)
    err_sq = jnp.zeros((), dtype=p.dtype)

    for kind, (arrays, w) in zip(kinds, batches):
        r, J = ERROR_MODELS[kind].linearize_batch(p, *arrays)  # (N, d), (N, d, 12)
        if kernel is not RobustKernel.NONE:
            w = w * robust_sqrt_weight(kernel, jnp.sum(r * r, axis=1), kernel_param)
        e = w[:, None] * r                                      # (N, d)
        J_local = w[:, None, None] * (J @ D)                    # (N, d, 6)

        g = g + jnp.einsum("nij,ni->j", J_local, e)
        H = H + jnp.einsum("nij,nik->jk", J_local, J_local)
        err_sq = err_sq + jnp.sum(e * e)

    return H, g, err_sq


def _condition_number(H: jnp.ndarray) -> float:
    s = jnp.linalg.svd(H, compute_uv=False)
    if float(s[-1]) == 0.0:
        return float("inf")
    return float(s[0] / s[-1])


def optimal_tf_gauss_newton(pairings: Pairings, params: OptimalTFGNParameters) -> OptimalTFResult:
    """
    Run Gauss-Newton steps on SE(3), relinearizing at the current solution.

    Preconditions (checked before any computation):
      - params.linearization_point is set
      - if pairings.point_weights is non-empty, its counts add up to
        len(pairings.pt2pt)

    Returns the pose after the last accepted step together with the reason
    the loop stopped. Running out of iterations is a normal outcome; check
    `final_error_norm` to judge the fit.
    """
    if params.linearization_point is None:
        raise MissingLinearizationPointError("This method requires a linearization point")

    if params.kernel is not RobustKernel.NONE:
        check_kernel_param(params.kernel_param)
    kernel_param = jnp.asarray(params.kernel_param, dtype=jnp.float64)
    kinds, batches = _build_batches(pairings, params.pair_weights)

    level = logging.INFO if params.verbose else logging.DEBUG
    logger.log(
        level,
        "[P2P GN] pairings: %s, kernel: %s, max iters: %d",
        pairings.contents_summary(), params.kernel.value, params.max_inner_loop_iterations,
    )

    pose = params.linearization_point
    reason = TerminationReason.ITERATIONS_EXHAUSTED
    history: List[IterationRecord] = []
    err_norm = float("nan")

    for it in range(params.max_inner_loop_iterations):
        D = jacob_dDexpe_de(pose)
        H, g, err_sq = _linearize(
            pose.to_ambient(), D, batches, kernel_param, kinds=kinds, kernel=params.kernel
        )

        err_norm = float(jnp.sqrt(err_sq))
        cond = _condition_number(H)

        if err_norm <= params.max_cost:
            history.append(IterationRecord(it, err_norm, cond))
            reason = TerminationReason.CONVERGED_BY_RESIDUAL
            break

        if cond > ILL_CONDITIONED:
            logger.warning("[P2P GN] iter: %d ill-conditioned normal matrix (cond=%.3e)", it, cond)

        delta = -jnp.linalg.lstsq(H, g)[0]
        pose = pose.retract(delta)

        delta_norm = float(jnp.linalg.norm(delta))
        history.append(IterationRecord(it, err_norm, cond, delta_norm))
        if logger.isEnabledFor(level):
            logger.log(level, "[P2P GN] iter: %d err: %.6e delta: %s", it, err_norm, np.asarray(delta))

        if delta_norm < params.min_delta:
            reason = TerminationReason.CONVERGED_BY_STAGNATION
            break

    logger.log(level, "[P2P GN] done after %d iterations: %s", len(history), reason.value)

    return OptimalTFResult(
        optimal_pose=pose,
        termination_reason=reason,
        iterations=len(history),
        final_error_norm=err_norm,
        history=history,
    )


def evaluate_pairs_error(
    pairings: Pairings,
    pose: SE3Pose,
    pair_weights: Optional[PairWeights] = None,
) -> float:
    """
    Σ ||w · r||² over all pairings at `pose`, without robust kernel.

    Useful to judge a solution independently of the kernel used to find it.
    """
    pair_weights = pair_weights if pair_weights is not None else PairWeights()
    kinds, batches = _build_batches(pairings, pair_weights)
    p = pose.to_ambient()
    total = 0.0
    for kind, (arrays, w) in zip(kinds, batches):
        r = ERROR_MODELS[kind].residual_batch(p, *arrays)
        total += float(jnp.sum((w[:, None] * r) ** 2))
    return total
