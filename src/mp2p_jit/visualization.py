# Copyright (c) 2025.
# This file is part of mp2p-jit, released under the MIT License.
"""
Visualization utilities for mp2p-jit.

Two Matplotlib views for debugging alignments:

1. `plot_alignment_3d()` draws the global points next to the local points
   mapped through a pose, with optional correspondence segments. Called
   with the initial and the optimized pose it shows what the solver did.

2. `plot_convergence()` draws the residual norm and the increment norm per
   Gauss-Newton iteration from an `OptimalTFResult`.

Both return the figure and only call `plt.show()` when asked to, so they
can run headless in tests and scripts.
"""

from __future__ import annotations

from typing import Optional

import jax.numpy as jnp
import matplotlib.pyplot as plt

from .core.math3d import SE3Pose
from .optimization.solvers import OptimalTFResult


def _set_equal_aspect_3d(ax, pts: jnp.ndarray) -> None:
    mins = [float(v) for v in jnp.min(pts, axis=0)]
    maxs = [float(v) for v in jnp.max(pts, axis=0)]
    max_range = max(hi - lo for lo, hi in zip(mins, maxs)) / 2.0
    if max_range < 1e-3:
        max_range = 1.0
    mid = [0.5 * (lo + hi) for lo, hi in zip(mins, maxs)]
    ax.set_xlim(mid[0] - max_range * 1.1, mid[0] + max_range * 1.1)
    ax.set_ylim(mid[1] - max_range * 1.1, mid[1] + max_range * 1.1)
    ax.set_zlim(mid[2] - max_range * 1.1, mid[2] + max_range * 1.1)


def plot_alignment_3d(
    global_pts,
    local_pts,
    pose: Optional[SE3Pose] = None,
    show_pairs: bool = True,
    title: str = "mp2p-jit alignment",
    show: bool = False,
):
    """
    3D scatter of global points (C0) and pose-mapped local points (C1).

    :param global_pts: (N, 3) reference points.
    :param local_pts: (M, 3) query points, in the local frame.
    :param pose: Transform applied to the local points; identity if None.
    :param show_pairs: Draw a segment between global_pts[i] and the mapped
        local_pts[i] (only when N == M).
    :return: The Matplotlib figure.
    """
    pose = pose if pose is not None else SE3Pose.identity()
    g = jnp.asarray(global_pts, dtype=jnp.float64).reshape(-1, 3)
    mapped = pose.transform_points(jnp.asarray(local_pts).reshape(-1, 3))

    fig = plt.figure()
    ax = fig.add_subplot(111, projection="3d")

    ax.scatter(g[:, 0], g[:, 1], g[:, 2], s=12, c="C0", label="global")
    ax.scatter(mapped[:, 0], mapped[:, 1], mapped[:, 2], s=12, c="C1", label="local (mapped)")

    if show_pairs and g.shape[0] == mapped.shape[0]:
        for a, b in zip(g, mapped):
            ax.plot(
                [float(a[0]), float(b[0])],
                [float(a[1]), float(b[1])],
                [float(a[2]), float(b[2])],
                linewidth=0.6,
                alpha=0.4,
                linestyle="--",
                color="gray",
            )

    ax.set_xlabel("x [m]")
    ax.set_ylabel("y [m]")
    ax.set_zlabel("z [m]")
    ax.set_title(title)
    ax.legend(loc="upper right", fontsize=7)
    _set_equal_aspect_3d(ax, jnp.concatenate([g, mapped], axis=0))

    fig.tight_layout()
    if show:
        plt.show()
    return fig


def plot_convergence(result: OptimalTFResult, show: bool = False):
    """Residual norm and increment norm per iteration, log scale."""
    its = [rec.iteration for rec in result.history]
    errs = [rec.error_norm for rec in result.history]
    step_its = [rec.iteration for rec in result.history if rec.delta_norm is not None]
    steps = [rec.delta_norm for rec in result.history if rec.delta_norm is not None]

    fig, ax = plt.subplots()
    # Exact zeros cannot be drawn on a log axis
    ax.semilogy(its, [max(e, 1e-300) for e in errs], "o-", color="C0", label="‖e‖")
    if steps:
        ax.semilogy(step_its, [max(s, 1e-300) for s in steps], "s--", color="C1", label="‖δ‖")

    ax.set_xlabel("iteration")
    ax.set_title(f"Gauss-Newton ({result.termination_reason.value})")
    ax.legend(fontsize=7)

    fig.tight_layout()
    if show:
        plt.show()
    return fig
