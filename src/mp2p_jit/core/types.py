# Copyright (c) 2025.
# This file is part of mp2p-jit, released under the MIT License.
"""
Core typed data structures for mp2p-jit.

This module defines the containers handed to the solver. They are
intentionally minimal: they store geometry only, while all numerical work
is done by JAX functions in `icp.error_terms` and `optimization.solvers`.

Classes
-------
Line3, Plane3
    Geometric primitives. Directions and normals are normalized on
    construction.

PointToPoint, PointToLine, PointToPlane, PlaneToPlane, LineToLine
    Frozen pairings between a primitive of the reference ("global") set and
    one of the query ("local") set. The pose being estimated maps local
    coordinates into the global frame.

Pairings
    The five ordered pairing sequences, plus optional run-length encoded
    weight overrides for the point-to-point sequence.

PairWeights
    Base weight per pairing kind.

Notes
-----
Every pairing knows how to flatten itself into a tuple of 3-vectors
(`as_arrays`). The solver stacks those tuples into (N, 3) arrays once per
solve and evaluates residuals with `jax.vmap`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Dict, List, Sequence, Tuple

import jax.numpy as jnp

from .errors import ConfigurationError


class PairingKind(str, Enum):
    """Pairing kinds, in the order the solver accumulates them."""
    PT2PT = "pt2pt"
    PT2LN = "pt2ln"
    LN2LN = "ln2ln"
    PT2PL = "pt2pl"
    PL2PL = "pl2pl"


def _vec3(v, name: str) -> jnp.ndarray:
    a = jnp.asarray(v, dtype=jnp.float64).reshape(-1)
    if a.shape != (3,):
        raise ValueError(f"{name} must have 3 components, got shape {a.shape}")
    return a


def _unit3(v, name: str) -> jnp.ndarray:
    a = _vec3(v, name)
    n = float(jnp.linalg.norm(a))
    if n == 0.0:
        raise ValueError(f"{name} must be non-zero")
    return a / n


@dataclass(frozen=True, eq=False)
class Line3:
    """Infinite 3D line through `point` along the unit vector `direction`."""
    point: jnp.ndarray
    direction: jnp.ndarray

    def __post_init__(self):
        object.__setattr__(self, "point", _vec3(self.point, "Line3.point"))
        object.__setattr__(self, "direction", _unit3(self.direction, "Line3.direction"))


@dataclass(frozen=True, eq=False)
class Plane3:
    """Plane through `point` with unit `normal`."""
    point: jnp.ndarray
    normal: jnp.ndarray

    def __post_init__(self):
        object.__setattr__(self, "point", _vec3(self.point, "Plane3.point"))
        object.__setattr__(self, "normal", _unit3(self.normal, "Plane3.normal"))


@dataclass(frozen=True, eq=False)
class PointToPoint:
    global_pt: jnp.ndarray
    local_pt: jnp.ndarray

    def __post_init__(self):
        object.__setattr__(self, "global_pt", _vec3(self.global_pt, "global_pt"))
        object.__setattr__(self, "local_pt", _vec3(self.local_pt, "local_pt"))

    def as_arrays(self) -> Tuple[jnp.ndarray, ...]:
        return (self.global_pt, self.local_pt)


@dataclass(frozen=True, eq=False)
class PointToLine:
    global_line: Line3
    local_pt: jnp.ndarray

    def __post_init__(self):
        object.__setattr__(self, "local_pt", _vec3(self.local_pt, "local_pt"))

    def as_arrays(self) -> Tuple[jnp.ndarray, ...]:
        return (self.global_line.point, self.global_line.direction, self.local_pt)


@dataclass(frozen=True, eq=False)
class PointToPlane:
    global_plane: Plane3
    local_pt: jnp.ndarray

    def __post_init__(self):
        object.__setattr__(self, "local_pt", _vec3(self.local_pt, "local_pt"))

    def as_arrays(self) -> Tuple[jnp.ndarray, ...]:
        return (self.global_plane.point, self.global_plane.normal, self.local_pt)


@dataclass(frozen=True, eq=False)
class PlaneToPlane:
    """Only the plane normals take part in the residual."""
    global_plane: Plane3
    local_plane: Plane3

    def as_arrays(self) -> Tuple[jnp.ndarray, ...]:
        return (self.global_plane.normal, self.local_plane.normal)


@dataclass(frozen=True, eq=False)
class LineToLine:
    global_line: Line3
    local_line: Line3

    def as_arrays(self) -> Tuple[jnp.ndarray, ...]:
        return (
            self.global_line.point,
            self.global_line.direction,
            self.local_line.point,
            self.local_line.direction,
        )


@dataclass
class Pairings:
    """
    Correspondences between a global (reference) and a local (query) set.

    `point_weights` is an optional list of (count, weight) runs covering the
    `pt2pt` sequence in order: the first `count_0` pairings get `weight_0`,
    the next `count_1` get `weight_1`, and so on. When present, the counts
    must add up to `len(pt2pt)`; the solver rejects the input otherwise.
    """
    pt2pt: List[PointToPoint] = field(default_factory=list)
    pt2ln: List[PointToLine] = field(default_factory=list)
    pt2pl: List[PointToPlane] = field(default_factory=list)
    pl2pl: List[PlaneToPlane] = field(default_factory=list)
    ln2ln: List[LineToLine] = field(default_factory=list)
    point_weights: List[Tuple[int, float]] = field(default_factory=list)

    def of_kind(self, kind: PairingKind) -> Sequence:
        return getattr(self, PairingKind(kind).value)

    def size(self) -> int:
        return sum(len(self.of_kind(k)) for k in PairingKind)

    def empty(self) -> bool:
        return self.size() == 0

    def extend(self, other: "Pairings") -> None:
        """
        Append all pairings of `other`.

        Weight runs are concatenated too; if only one side carries runs the
        other side's point-to-point pairings would be uncovered, so that case
        is rejected.
        """
        mixed = bool(self.point_weights) != bool(other.point_weights)
        if mixed and self.pt2pt and other.pt2pt:
            raise ValueError("Cannot merge pairings with and without point weight runs")
        for k in PairingKind:
            self.of_kind(k).extend(other.of_kind(k))
        self.point_weights.extend(other.point_weights)

    def contents_summary(self) -> str:
        parts = [f"{len(self.of_kind(k))} {k.value}" for k in PairingKind if self.of_kind(k)]
        if not parts:
            return "none"
        return ", ".join(parts)


@dataclass
class PairWeights:
    """Base weight per pairing kind, applied uniformly unless overridden."""
    pt2pt: float = 1.0
    pt2ln: float = 1.0
    pt2pl: float = 1.0
    pl2pl: float = 1.0
    ln2ln: float = 1.0

    def __post_init__(self):
        for f in fields(self):
            w = float(getattr(self, f.name))
            if w < 0.0:
                raise ConfigurationError(f"Pair weight '{f.name}' must be non-negative, got {w}")
            setattr(self, f.name, w)

    def of_kind(self, kind: PairingKind) -> float:
        return getattr(self, PairingKind(kind).value)

    def scaled(self, factor: float) -> "PairWeights":
        return PairWeights(**{f.name: getattr(self, f.name) * factor for f in fields(self)})

    @staticmethod
    def from_dict(d: Dict[str, float]) -> "PairWeights":
        known = {f.name for f in fields(PairWeights)}
        unknown = set(d) - known
        if unknown:
            raise ConfigurationError(f"Unknown pair weight keys: {sorted(unknown)}")
        return PairWeights(**{k: float(v) for k, v in d.items()})
