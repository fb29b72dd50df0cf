import numpy as np
import pytest

from mp2p_jit.core.math3d import SE3Pose
from mp2p_jit.core.types import (
    Line3,
    LineToLine,
    Pairings,
    Plane3,
    PlaneToPlane,
    PointToLine,
    PointToPlane,
    PointToPoint,
)


# =============================================================================
# Synthetic problems
# =============================================================================
# Local primitives are drawn at random, global ones are obtained by mapping
# them through a known pose. With noise=0 the known pose is an exact optimum.


def _unit(rng, n):
    v = rng.normal(size=(n, 3))
    return v / np.linalg.norm(v, axis=1, keepdims=True)


def build_synthetic_pairings(
    pose: SE3Pose,
    n_pt2pt: int = 20,
    n_pt2ln: int = 0,
    n_pt2pl: int = 0,
    n_pl2pl: int = 0,
    n_ln2ln: int = 0,
    noise: float = 0.0,
    seed: int = 42,
) -> Pairings:
    rng = np.random.default_rng(seed)
    R = np.asarray(pose.rotation)
    t = np.asarray(pose.translation)

    def to_global(p):
        return R @ p + t + noise * rng.normal(size=3)

    pairings = Pairings()

    for lp in rng.uniform(-2.0, 2.0, size=(n_pt2pt, 3)):
        pairings.pt2pt.append(PointToPoint(global_pt=to_global(lp), local_pt=lp))

    for lp, d in zip(rng.uniform(-2.0, 2.0, size=(n_pt2ln, 3)), _unit(rng, n_pt2ln)):
        shift = rng.uniform(-1.0, 1.0)
        pairings.pt2ln.append(
            PointToLine(global_line=Line3(to_global(lp) + shift * d, d), local_pt=lp)
        )

    for lp, n in zip(rng.uniform(-2.0, 2.0, size=(n_pt2pl, 3)), _unit(rng, n_pt2pl)):
        pairings.pt2pl.append(
            PointToPlane(global_plane=Plane3(to_global(lp), n), local_pt=lp)
        )

    for c, n in zip(rng.uniform(-2.0, 2.0, size=(n_pl2pl, 3)), _unit(rng, n_pl2pl)):
        pairings.pl2pl.append(
            PlaneToPlane(
                global_plane=Plane3(R @ c + t, R @ n),
                local_plane=Plane3(c, n),
            )
        )

    for p, u in zip(rng.uniform(-2.0, 2.0, size=(n_ln2ln, 3)), _unit(rng, n_ln2ln)):
        pairings.ln2ln.append(
            LineToLine(
                global_line=Line3(to_global(p), R @ u),
                local_line=Line3(p, u),
            )
        )

    return pairings


@pytest.fixture
def true_pose() -> SE3Pose:
    """Moderate rotation (~0.28 rad) and translation."""
    return SE3Pose.from_vector([0.3, -0.2, 0.5, 0.1, -0.2, 0.15])


@pytest.fixture
def synthetic_pairings():
    """Factory fixture: synthetic_pairings(pose, n_pt2pt=..., noise=...)."""
    return build_synthetic_pairings
