# Copyright (c) 2025.
# This file is part of mp2p-jit, released under the MIT License.
"""
mp2p-jit: multi primitive-to-primitive SE(3) alignment in JAX.

Given putative correspondences between points, lines and planes of a
reference ("global") set and a query ("local") set, the Gauss-Newton solver
in `mp2p_jit.optimization.solvers` finds the rigid transform that maps the
local primitives onto the global ones.

Subpackages
-----------
core
    SE(3) / SO(3) Lie-group maps, the `SE3Pose` value type, primitive and
    pairing containers, and the exception hierarchy.

icp
    Residual / Jacobian models for the five pairing kinds, robust kernels
    and per-point weight overrides.

optimization
    The Gauss-Newton solver and its parameters.

Notes
-----
64-bit floats are enabled on import. The solver's stopping thresholds are
routinely below float32 resolution.
"""

import jax

jax.config.update("jax_enable_x64", True)

from .core.errors import (  # noqa: E402
    ConfigurationError,
    MissingLinearizationPointError,
    MP2PError,
    PointWeightsError,
)
from .core.math3d import SE3Pose  # noqa: E402
from .core.types import (  # noqa: E402
    Line3,
    LineToLine,
    PairingKind,
    Pairings,
    PairWeights,
    Plane3,
    PlaneToPlane,
    PointToLine,
    PointToPlane,
    PointToPoint,
)
from .icp.robust_kernels import RobustKernel, create_robust_kernel  # noqa: E402
from .optimization.solvers import (  # noqa: E402
    OptimalTFGNParameters,
    OptimalTFResult,
    TerminationReason,
    optimal_tf_gauss_newton,
)

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "MissingLinearizationPointError",
    "MP2PError",
    "PointWeightsError",
    "SE3Pose",
    "Line3",
    "LineToLine",
    "PairingKind",
    "Pairings",
    "PairWeights",
    "Plane3",
    "PlaneToPlane",
    "PointToLine",
    "PointToPlane",
    "PointToPoint",
    "RobustKernel",
    "create_robust_kernel",
    "OptimalTFGNParameters",
    "OptimalTFResult",
    "TerminationReason",
    "optimal_tf_gauss_newton",
]
