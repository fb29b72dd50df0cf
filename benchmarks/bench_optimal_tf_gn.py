# Copyright (c) 2025.
# This file is part of mp2p-jit, released under the MIT License.

import time

import numpy as np

from mp2p_jit.core.math3d import SE3Pose
from mp2p_jit.core.types import Pairings, Plane3, PointToPlane, PointToPoint
from mp2p_jit.optimization.solvers import (
    OptimalTFGNParameters,
    optimal_tf_gauss_newton,
)


def build_point_plane_pairings(num_pairs: int = 1000, noise: float = 0.01, seed: int = 0):
    """
    Half point-to-point, half point-to-plane pairings generated from a known
    pose, with isotropic Gaussian noise on the global side.
    """
    rng = np.random.default_rng(seed)
    gt = SE3Pose.from_vector([0.5, -0.3, 0.2, 0.05, 0.1, -0.2])
    R = np.asarray(gt.rotation)
    t = np.asarray(gt.translation)

    pairings = Pairings()
    local = rng.uniform(-5.0, 5.0, size=(num_pairs, 3))
    for i, p in enumerate(local):
        g = R @ p + t + noise * rng.normal(size=3)
        if i % 2 == 0:
            pairings.pt2pt.append(PointToPoint(global_pt=g, local_pt=p))
        else:
            n = rng.normal(size=3)
            pairings.pt2pl.append(
                PointToPlane(global_plane=Plane3(g, n), local_pt=p)
            )
    return pairings, gt


def run_benchmark(num_pairs: int = 1000, max_iters: int = 10, repeats: int = 5):
    pairings, gt = build_point_plane_pairings(num_pairs)
    params = OptimalTFGNParameters(
        linearization_point=SE3Pose.identity(),
        max_inner_loop_iterations=max_iters,
        min_delta=1e-9,
    )

    # Warmup: first call traces and compiles the linearizer
    t0 = time.time()
    result = optimal_tf_gauss_newton(pairings, params)
    t1 = time.time()
    print(f"First solve (incl. compilation): {(t1 - t0) * 1000:.3f} ms")

    times = []
    for _ in range(repeats):
        t0 = time.time()
        result = optimal_tf_gauss_newton(pairings, params)
        result.optimal_pose.matrix.block_until_ready()
        times.append(time.time() - t0)

    print(f"Pairings: {pairings.contents_summary()}")
    print(f"Mean solve time over {repeats} runs: {np.mean(times) * 1000:.3f} ms")
    print(f"Iterations: {result.iterations} ({result.termination_reason.value})")
    print(f"Final error norm: {result.final_error_norm:.6e}")

    err = gt.inverse().compose(result.optimal_pose).as_vector()
    print(f"Pose error vs ground truth: {np.asarray(err)}")


if __name__ == "__main__":
    run_benchmark(num_pairs=1000, max_iters=10, repeats=5)
