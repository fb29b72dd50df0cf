# Copyright (c) 2025.
# This file is part of mp2p-jit, released under the MIT License.
"""
Exception hierarchy for mp2p-jit.

Numerical degeneracy (a singular or ill-conditioned normal matrix) is not
an error: it is reported through the solver diagnostics instead.
"""


class MP2PError(Exception):
    """Base exception for mp2p-jit errors"""
    pass


class MissingLinearizationPointError(MP2PError):
    """The solver was called without an initial pose to linearize around"""
    pass


class PointWeightsError(MP2PError, ValueError):
    """Point-to-point weight override runs do not match the pairings"""
    pass


class ConfigurationError(MP2PError, ValueError):
    """Invalid solver or kernel parameters"""
    pass
