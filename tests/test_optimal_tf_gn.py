from __future__ import annotations

import logging
from types import SimpleNamespace

import jax.numpy as jnp
import pytest

from mp2p_jit.core.errors import MissingLinearizationPointError, PointWeightsError
from mp2p_jit.core.math3d import SE3Pose
from mp2p_jit.core.types import Pairings, PairWeights, PairingKind, Plane3, PointToPlane, PointToPoint
from mp2p_jit.icp.error_terms import ERROR_MODELS, ErrorModel, point2point_residual
from mp2p_jit.icp.robust_kernels import RobustKernel
from mp2p_jit.optimization import solvers
from mp2p_jit.optimization.solvers import (
    OptimalTFGNParameters,
    TerminationReason,
    evaluate_pairs_error,
    optimal_tf_gauss_newton,
)


def _params(**kwargs) -> OptimalTFGNParameters:
    kwargs.setdefault("linearization_point", SE3Pose.identity())
    kwargs.setdefault("max_inner_loop_iterations", 50)
    return OptimalTFGNParameters(**kwargs)


def _pose_error(a: SE3Pose, b: SE3Pose) -> float:
    return float(jnp.linalg.norm((a.inverse() @ b).log()))


def test_zero_noise_convergence_all_pairing_kinds(true_pose, synthetic_pairings):
    """
    Noise-free pairings of every kind, solver started at identity:
    the known transform is recovered and the residual target is met.
    """
    pairings = synthetic_pairings(
        true_pose, n_pt2pt=10, n_pt2ln=8, n_pt2pl=8, n_pl2pl=4, n_ln2ln=6
    )
    params = _params(max_cost=1e-9, min_delta=1e-14)

    result = optimal_tf_gauss_newton(pairings, params)

    assert result.termination_reason is TerminationReason.CONVERGED_BY_RESIDUAL
    assert result.success
    assert result.converged
    assert result.iterations <= 15
    assert result.final_error_norm <= 1e-9
    assert _pose_error(result.optimal_pose, true_pose) < 1e-8


def test_zero_noise_convergence_from_offset_guess(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=15, n_pt2pl=10)
    guess = SE3Pose.from_vector([-0.4, 0.6, 0.0, -0.2, 0.1, 0.3])

    result = optimal_tf_gauss_newton(
        pairings, _params(linearization_point=guess, max_cost=1e-9, min_delta=1e-14)
    )

    assert result.termination_reason is TerminationReason.CONVERGED_BY_RESIDUAL
    assert _pose_error(result.optimal_pose, true_pose) < 1e-8


def test_common_weight_scale_does_not_change_solution(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=20, n_pt2pl=15, n_pt2ln=10, noise=0.02)
    weights = PairWeights(pt2pt=1.0, pt2pl=3.0, pt2ln=0.5)

    base = optimal_tf_gauss_newton(pairings, _params(pair_weights=weights, min_delta=1e-12))
    scaled = optimal_tf_gauss_newton(
        pairings, _params(pair_weights=weights.scaled(7.5), min_delta=1e-12)
    )

    assert base.termination_reason is TerminationReason.CONVERGED_BY_STAGNATION
    assert scaled.termination_reason is TerminationReason.CONVERGED_BY_STAGNATION
    assert base.optimal_pose.allclose(scaled.optimal_pose, atol=1e-8)
    # the cost itself scales with the weights
    assert scaled.final_error_norm == pytest.approx(7.5 * base.final_error_norm, rel=1e-6)


def test_robust_kernel_rejects_gross_outlier(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=30)
    bad = pairings.pt2pt[0]
    pairings.pt2pt[0] = PointToPoint(
        global_pt=bad.global_pt + jnp.array([20.0, 0.0, 0.0]), local_pt=bad.local_pt
    )
    guess = true_pose.retract(jnp.array([0.05, -0.05, 0.02, 0.02, 0.0, -0.02]))

    plain = optimal_tf_gauss_newton(
        pairings, _params(linearization_point=guess, min_delta=1e-12)
    )
    robust = optimal_tf_gauss_newton(
        pairings,
        _params(
            linearization_point=guess,
            min_delta=1e-12,
            kernel=RobustKernel.GEMAN_MCCLURE,
            kernel_param=0.5,
        ),
    )

    assert _pose_error(plain.optimal_pose, true_pose) > 0.1
    assert _pose_error(robust.optimal_pose, true_pose) < 1e-3


def test_cauchy_kernel_also_limits_outlier_influence(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=30)
    bad = pairings.pt2pt[3]
    pairings.pt2pt[3] = PointToPoint(
        global_pt=bad.global_pt + jnp.array([0.0, 0.0, 20.0]), local_pt=bad.local_pt
    )

    plain = optimal_tf_gauss_newton(pairings, _params(linearization_point=true_pose))
    robust = optimal_tf_gauss_newton(
        pairings,
        _params(linearization_point=true_pose, kernel="Cauchy", kernel_param=0.1),
    )

    assert _pose_error(robust.optimal_pose, true_pose) < 0.1 * _pose_error(plain.optimal_pose, true_pose)


def test_point_weight_runs_select_block(synthetic_pairings):
    """
    Two blocks of point pairings generated by two different translations:
    zeroing one block's weight makes the solver fit the other one exactly.
    """
    pose_a = SE3Pose.from_vector([1.0, 0.0, 0.0, 0.0, 0.0, 0.0])
    pose_b = SE3Pose.from_vector([0.0, -2.0, 0.5, 0.0, 0.0, 0.0])
    pairings = synthetic_pairings(pose_a, n_pt2pt=6, seed=1)
    pairings.extend(synthetic_pairings(pose_b, n_pt2pt=6, seed=2))

    pairings.point_weights = [(6, 1.0), (6, 0.0)]
    fit_a = optimal_tf_gauss_newton(pairings, _params(min_delta=1e-12))
    assert _pose_error(fit_a.optimal_pose, pose_a) < 1e-8

    pairings.point_weights = [(6, 0.0), (6, 1.0)]
    fit_b = optimal_tf_gauss_newton(pairings, _params(min_delta=1e-12))
    assert _pose_error(fit_b.optimal_pose, pose_b) < 1e-8


def test_point_weight_runs_override_base_weight(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=10, noise=0.05)
    pairings.point_weights = [(10, 2.0)]

    with_runs = optimal_tf_gauss_newton(
        pairings, _params(pair_weights=PairWeights(pt2pt=123.0), max_inner_loop_iterations=1)
    )
    pairings.point_weights = []
    without_runs = optimal_tf_gauss_newton(
        pairings, _params(pair_weights=PairWeights(pt2pt=2.0), max_inner_loop_iterations=1)
    )

    assert with_runs.final_error_norm == pytest.approx(without_runs.final_error_norm)


def test_mismatched_point_weight_runs_fail_fast(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=10)
    pairings.point_weights = [(2, 1.0), (3, 1.0)]

    with pytest.raises(PointWeightsError):
        optimal_tf_gauss_newton(pairings, _params())


def test_missing_linearization_point_is_fatal(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=5)
    with pytest.raises(MissingLinearizationPointError):
        optimal_tf_gauss_newton(pairings, OptimalTFGNParameters())


def test_idempotent_at_convergence(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=20, n_pt2pl=10, noise=0.01)
    first = optimal_tf_gauss_newton(pairings, _params(min_delta=1e-12))

    again = optimal_tf_gauss_newton(
        pairings,
        _params(linearization_point=first.optimal_pose, max_inner_loop_iterations=1),
    )

    assert again.history[0].delta_norm < 1e-9
    assert again.optimal_pose.allclose(first.optimal_pose, atol=1e-9)


def test_residual_check_happens_before_any_step(true_pose, synthetic_pairings):
    """Starting at the optimum: one evaluation, no retraction."""
    pairings = synthetic_pairings(true_pose, n_pt2pt=10)
    result = optimal_tf_gauss_newton(
        pairings, _params(linearization_point=true_pose, max_cost=1e-10)
    )

    assert result.termination_reason is TerminationReason.CONVERGED_BY_RESIDUAL
    assert result.iterations == 1
    assert result.history[0].delta_norm is None
    assert jnp.array_equal(result.optimal_pose.matrix, true_pose.matrix)


def test_stagnation_termination(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=20, noise=0.05)
    result = optimal_tf_gauss_newton(
        pairings, _params(max_cost=0.0, min_delta=1e-6, max_inner_loop_iterations=100)
    )

    assert result.termination_reason is TerminationReason.CONVERGED_BY_STAGNATION
    assert result.iterations < 100
    assert result.history[-1].delta_norm < 1e-6


def test_iteration_budget_termination(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=20, noise=0.05)
    for budget in (1, 2, 3):
        result = optimal_tf_gauss_newton(
            pairings,
            _params(max_cost=0.0, min_delta=0.0, max_inner_loop_iterations=budget),
        )
        assert result.termination_reason is TerminationReason.ITERATIONS_EXHAUSTED
        assert result.iterations == budget
        assert not result.converged
        assert result.success


def test_zero_iteration_budget_returns_linearization_point(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=5)
    guess = SE3Pose.from_vector([0.1, 0.2, 0.3, 0.0, 0.0, 0.1])
    result = optimal_tf_gauss_newton(
        pairings, _params(linearization_point=guess, max_inner_loop_iterations=0)
    )

    assert result.termination_reason is TerminationReason.ITERATIONS_EXHAUSTED
    assert result.iterations == 0
    assert result.optimal_pose is guess


def test_empty_pairings_converge_immediately():
    result = optimal_tf_gauss_newton(Pairings(), _params())
    assert result.termination_reason is TerminationReason.CONVERGED_BY_RESIDUAL
    assert result.final_error_norm == 0.0
    assert result.optimal_pose.allclose(SE3Pose.identity())


def test_rank_deficient_problem_does_not_crash():
    """A single point pair leaves rotation unobservable; lstsq still returns a step."""
    pairings = Pairings(pt2pt=[PointToPoint(global_pt=[1.0, 2.0, 3.0], local_pt=[0.0, 0.0, 0.0])])
    result = optimal_tf_gauss_newton(pairings, _params(max_inner_loop_iterations=5))

    assert jnp.all(jnp.isfinite(result.optimal_pose.matrix))
    assert result.history[0].condition_number > 1e12
    assert jnp.allclose(result.optimal_pose.translation, jnp.array([1.0, 2.0, 3.0]), atol=1e-9)


def test_line_to_line_pairings_keep_four_dimensional_residuals(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=0, n_ln2ln=6)
    result = optimal_tf_gauss_newton(
        pairings, _params(linearization_point=true_pose, max_cost=1e-10)
    )
    assert result.termination_reason is TerminationReason.CONVERGED_BY_RESIDUAL

    off = true_pose.retract(jnp.array([0.0, 0.0, 0.0, 0.05, 0.0, 0.0]))
    stepped = optimal_tf_gauss_newton(
        pairings, _params(linearization_point=off, max_inner_loop_iterations=1)
    )
    assert jnp.isfinite(stepped.final_error_norm)
    assert stepped.final_error_norm > 0.0


def test_solver_does_not_mutate_pairings(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=8, n_pt2pl=4)
    pairings.point_weights = [(3, 1.0), (5, 2.0)]
    before = [(p.global_pt, p.local_pt) for p in pairings.pt2pt]

    optimal_tf_gauss_newton(pairings, _params())

    assert len(pairings.pt2pt) == 8 and len(pairings.pt2pl) == 4
    assert pairings.point_weights == [(3, 1.0), (5, 2.0)]
    for (g, lc), p in zip(before, pairings.pt2pt):
        assert jnp.array_equal(g, p.global_pt) and jnp.array_equal(lc, p.local_pt)


def test_verbose_logs_each_iteration(true_pose, synthetic_pairings, caplog):
    pairings = synthetic_pairings(true_pose, n_pt2pt=10, noise=0.01)

    with caplog.at_level(logging.INFO, logger="mp2p_jit.optimization.solvers"):
        result = optimal_tf_gauss_newton(
            pairings, _params(verbose=True, min_delta=0.0, max_inner_loop_iterations=3)
        )

    iter_lines = [r for r in caplog.records if "err:" in r.getMessage()]
    assert len(iter_lines) == result.iterations == 3


def test_quiet_solver_logs_nothing_at_info(true_pose, synthetic_pairings, caplog):
    pairings = synthetic_pairings(true_pose, n_pt2pt=10)
    with caplog.at_level(logging.INFO, logger="mp2p_jit.optimization.solvers"):
        optimal_tf_gauss_newton(pairings, _params())
    ours = [r for r in caplog.records if r.name.startswith("mp2p_jit")]
    assert not [r for r in ours if r.levelno == logging.INFO]


def test_evaluate_pairs_error(true_pose, synthetic_pairings):
    pairings = synthetic_pairings(true_pose, n_pt2pt=5, n_pt2pl=5, n_ln2ln=3)
    assert evaluate_pairs_error(pairings, true_pose) == pytest.approx(0.0, abs=1e-20)

    off = true_pose.retract(jnp.array([0.1, 0.0, 0.0, 0.0, 0.0, 0.0]))
    e1 = evaluate_pairs_error(pairings, off)
    e2 = evaluate_pairs_error(pairings, off, PairWeights().scaled(2.0))
    assert e1 > 0.0
    assert e2 == pytest.approx(4.0 * e1)


def test_weight_runs_without_point_pairings_are_rejected():
    pairings = Pairings(
        pt2pl=[PointToPlane(global_plane=Plane3([0.0, 0.0, 1.0], [0.0, 0.0, 1.0]), local_pt=[0.0, 0.0, 0.0])],
        point_weights=[(5, 1.0)],
    )

    with pytest.raises(PointWeightsError, match="cover 5 pairings"):
        optimal_tf_gauss_newton(pairings, _params())
    with pytest.raises(PointWeightsError):
        evaluate_pairs_error(pairings, SE3Pose.identity())


def test_repeated_solves_reuse_compiled_linearization(true_pose, synthetic_pairings, monkeypatch):
    """Same kinds, kernel and sizes: the second solve does not trace again."""
    traces = []

    def counting_residual(p, global_pt, local_pt):
        traces.append(1)
        return point2point_residual(p, global_pt, local_pt)

    monkeypatch.setitem(
        ERROR_MODELS, PairingKind.PT2PT, ErrorModel(PairingKind.PT2PT, 3, counting_residual)
    )
    # a size no other test uses, so nothing is cached yet
    pairings = synthetic_pairings(true_pose, n_pt2pt=37, noise=0.01)

    optimal_tf_gauss_newton(
        pairings, _params(kernel=RobustKernel.CAUCHY, kernel_param=0.3, max_inner_loop_iterations=3)
    )
    first = len(traces)
    assert first > 0

    # a different kernel parameter is a traced value, not a new compilation
    optimal_tf_gauss_newton(
        pairings, _params(kernel=RobustKernel.CAUCHY, kernel_param=0.7, max_inner_loop_iterations=3)
    )
    assert len(traces) == first


def test_empty_pairings_do_not_warn_about_conditioning(caplog):
    with caplog.at_level(logging.WARNING, logger="mp2p_jit.optimization.solvers"):
        result = optimal_tf_gauss_newton(Pairings(), _params())

    assert result.termination_reason is TerminationReason.CONVERGED_BY_RESIDUAL
    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


def test_quiet_solver_skips_increment_formatting(true_pose, synthetic_pairings, monkeypatch):
    calls = []

    def counting_asarray(*args, **kwargs):
        calls.append(1)
        return jnp.asarray(*args, **kwargs)

    pairings = synthetic_pairings(true_pose, n_pt2pt=10, noise=0.01)
    params = _params(min_delta=0.0, max_inner_loop_iterations=3)
    logging.getLogger("mp2p_jit.optimization.solvers").setLevel(logging.WARNING)
    try:
        monkeypatch.setattr(solvers, "np", SimpleNamespace(asarray=counting_asarray))
        optimal_tf_gauss_newton(pairings, params)
    finally:
        logging.getLogger("mp2p_jit.optimization.solvers").setLevel(logging.NOTSET)

    assert calls == []
