# Copyright (c) 2025.
# This file is part of mp2p-jit, released under the MIT License.
"""
Robust kernels for down-weighting outlier pairings.

`create_robust_kernel(kind, k)` returns either None (no kernel) or a
function of the squared residual norm e2 returning sqrt(weight). The solver
multiplies each pairing's weight by that value, which scales both the
residual and its Jacobian, so the squared cost of the pairing is scaled by
the full weight.

    GEMAN_MCCLURE   sqrt(w) = k^2 / (k^2 + e2)
    CAUCHY          sqrt(w) = 1 / sqrt(1 + e2 / k^2)

k is the residual scale at which down-weighting starts to bite.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional

import jax.numpy as jnp

from ..core.errors import ConfigurationError

RobustSqrtWeightFn = Callable[[jnp.ndarray], jnp.ndarray]


class RobustKernel(str, Enum):
    NONE = "None"
    GEMAN_MCCLURE = "GemanMcClure"
    CAUCHY = "Cauchy"

    @staticmethod
    def parse(value) -> "RobustKernel":
        """Accept enum members, values ("GemanMcClure") or names ("GEMAN_MCCLURE")."""
        if isinstance(value, RobustKernel):
            return value
        if value is None:
            return RobustKernel.NONE
        text = str(value)
        for kernel in RobustKernel:
            if text.lower() in (kernel.value.lower(), kernel.name.lower()):
                return kernel
        raise ConfigurationError(f"Unknown robust kernel '{value}'")


def robust_sqrt_weight(kind: RobustKernel, e2: jnp.ndarray, k: jnp.ndarray) -> jnp.ndarray:
    """
    sqrt(weight) of `kind` for squared errors e2 and kernel parameter k.

    `kind` selects the formula at trace time; `k` may be a traced value, so
    changing it does not recompile a jitted caller.
    """
    k2 = k * k
    if kind is RobustKernel.GEMAN_MCCLURE:
        return k2 / (k2 + e2)
    if kind is RobustKernel.CAUCHY:
        return 1.0 / jnp.sqrt(1.0 + e2 / k2)
    return jnp.ones_like(e2)


def check_kernel_param(kernel_param: float) -> float:
    k = float(kernel_param)
    if not k > 0.0:
        raise ConfigurationError(f"Robust kernel parameter must be positive, got {kernel_param}")
    return k


def create_robust_kernel(kind, kernel_param: float = 1.0) -> Optional[RobustSqrtWeightFn]:
    kind = RobustKernel.parse(kind)
    if kind is RobustKernel.NONE:
        return None
    k = check_kernel_param(kernel_param)

    def sqrt_weight(e2: jnp.ndarray) -> jnp.ndarray:
        return robust_sqrt_weight(kind, e2, k)
    return sqrt_weight
