# Copyright (c) 2025.
# This file is part of mp2p-jit, released under the MIT License.

import logging

import numpy as np

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
    PairWeights,
)
from mp2p_jit.icp.robust_kernels import RobustKernel
from mp2p_jit.optimization.solvers import (
    OptimalTFGNParameters,
    optimal_tf_gauss_newton,
)
from mp2p_jit.visualization import plot_alignment_3d, plot_convergence


def build_demo_pairings(gt: SE3Pose, n: int = 30, noise: float = 0.02, n_outliers: int = 3):
    """
    Mixed pairings from every primitive kind, generated from `gt`, plus a
    few grossly wrong point-to-point pairings.
    """
    rng = np.random.default_rng(7)
    R = np.asarray(gt.rotation)
    t = np.asarray(gt.translation)

    def unit():
        v = rng.normal(size=3)
        return v / np.linalg.norm(v)

    def to_global(p):
        return R @ p + t + noise * rng.normal(size=3)

    pairings = Pairings()
    for _ in range(n):
        p = rng.uniform(-3.0, 3.0, size=3)
        pairings.pt2pt.append(PointToPoint(global_pt=to_global(p), local_pt=p))
    for _ in range(n_outliers):
        p = rng.uniform(-3.0, 3.0, size=3)
        pairings.pt2pt.append(
            PointToPoint(global_pt=rng.uniform(-10.0, 10.0, size=3), local_pt=p)
        )

    for _ in range(n // 3):
        p, d = rng.uniform(-3.0, 3.0, size=3), unit()
        pairings.pt2ln.append(PointToLine(global_line=Line3(to_global(p), d), local_pt=p))

        p, n_ = rng.uniform(-3.0, 3.0, size=3), unit()
        pairings.pt2pl.append(PointToPlane(global_plane=Plane3(to_global(p), n_), local_pt=p))

        c, n_ = rng.uniform(-3.0, 3.0, size=3), unit()
        pairings.pl2pl.append(
            PlaneToPlane(global_plane=Plane3(R @ c + t, R @ n_), local_plane=Plane3(c, n_))
        )

        p, u = rng.uniform(-3.0, 3.0, size=3), unit()
        pairings.ln2ln.append(
            LineToLine(global_line=Line3(to_global(p), R @ u), local_line=Line3(p, u))
        )

    return pairings


def main(show_plots: bool = True):
    logging.basicConfig(level=logging.INFO)

    gt = SE3Pose.from_vector([1.0, -0.5, 0.3, 0.2, -0.1, 0.4])
    pairings = build_demo_pairings(gt)
    print(f"Pairings: {pairings.contents_summary()}")

    for kernel in (RobustKernel.NONE, RobustKernel.CAUCHY):
        params = OptimalTFGNParameters(
            linearization_point=SE3Pose.identity(),
            max_inner_loop_iterations=15,
            kernel=kernel,
            kernel_param=0.5,
            pair_weights=PairWeights(pl2pl=10.0),
            verbose=True,
        )
        result = optimal_tf_gauss_newton(pairings, params)
        err = gt.inverse().compose(result.optimal_pose).as_vector()

        print(f"[{kernel.value}] {result.termination_reason.value} after {result.iterations} iterations")
        print(f"  estimate: {result.optimal_pose}")
        print(f"  error vs ground truth: {np.round(np.asarray(err), 5)}")

    if show_plots:
        g = np.stack([np.asarray(p.global_pt) for p in pairings.pt2pt])
        loc = np.stack([np.asarray(p.local_pt) for p in pairings.pt2pt])
        plot_alignment_3d(g, loc, result.optimal_pose, title="Point-to-point pairs after alignment", show=True)
        plot_convergence(result, show=True)


if __name__ == "__main__":
    main()
