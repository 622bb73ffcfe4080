from __future__ import annotations

import numpy as np
import pytest

from multifragreg.solver import (
    ObjectiveDeltaStopStrategy,
    SolverState,
    find_min_trust_region,
    solve_least_squares_lm,
    solve_trust_region_subproblem,
)


def _quad(H: np.ndarray, g: np.ndarray, p: np.ndarray) -> float:
    return float(g @ p + 0.5 * p @ H @ p)


def test_stop_strategy_stops_at_first_small_delta():
    stop = ObjectiveDeltaStopStrategy(min_delta=1e-3, max_iter=100)
    objectives = [10.0, 5.0, 2.0, 1.0, 0.9995, 0.9994, 0.9993]
    x = np.zeros((1,))
    decisions = []
    for f in objectives:
        decisions.append(stop.should_continue_search(x, f))
        if not decisions[-1]:
            break
    assert decisions == [True, True, True, True, False]
    assert stop.state is SolverState.STOPPED
    assert stop.reason == "min_delta"


def test_stop_strategy_respects_max_iter():
    stop = ObjectiveDeltaStopStrategy(min_delta=0.0, max_iter=5)
    x = np.zeros((1,))
    n_true = 0
    for k in range(100):
        if not stop.should_continue_search(x, 1.0 / (k + 1)):
            break
        n_true += 1
    assert n_true == 5
    assert stop.reason == "max_iter"
    assert stop.should_continue_search(x, 0.0) is False


def test_stop_strategy_reports_iterations():
    seen = []
    stop = ObjectiveDeltaStopStrategy(min_delta=1e-9, max_iter=10, on_iteration=lambda i, x, f: seen.append((i, f)))
    x = np.zeros((2,))
    stop.should_continue_search(x, 3.0)
    stop.should_continue_search(x, 2.0)
    assert seen == [(0, 3.0), (1, 2.0)]


def test_subproblem_interior_newton_step():
    H = np.diag([2.0, 4.0])
    g = np.array([2.0, 4.0])
    p, constrained = solve_trust_region_subproblem(H, g, radius=10.0)
    assert not constrained
    assert np.allclose(p, [-1.0, -1.0])


def test_subproblem_boundary_step():
    H = np.diag([2.0, 4.0])
    g = np.array([2.0, 4.0])
    p, constrained = solve_trust_region_subproblem(H, g, radius=0.5)
    assert constrained
    assert abs(np.linalg.norm(p) - 0.5) <= 0.05 + 1e-12
    assert _quad(H, g, p) < 0.0


def test_subproblem_indefinite_and_hard_case():
    H = np.diag([-1.0, 2.0])
    for g in (np.array([1.0, 1.0]), np.array([0.0, 1.0])):
        p, constrained = solve_trust_region_subproblem(H, g, radius=1.0)
        assert constrained
        assert abs(np.linalg.norm(p) - 1.0) <= 0.1 + 1e-12
        assert _quad(H, g, p) < 0.0


def test_subproblem_singular_hessian_minimum_norm_step():
    H = np.diag([1.0, 0.0])
    g = np.array([1.0, 0.0])
    p, constrained = solve_trust_region_subproblem(H, g, radius=10.0)
    assert not constrained
    assert np.allclose(p, [-1.0, 0.0])


def test_subproblem_zero_gradient():
    p, constrained = solve_trust_region_subproblem(np.eye(3), np.zeros((3,)), radius=1.0)
    assert not constrained
    assert np.all(p == 0.0)


def test_least_squares_exponential_fit():
    t = np.linspace(0.0, 4.0, 20)
    y = 2.0 * np.exp(-0.5 * t)

    def residuals(x):
        return x[0] * np.exp(x[1] * t) - y

    def jacobian(x):
        e = np.exp(x[1] * t)
        return np.stack([e, x[0] * t * e], axis=1)

    stop = ObjectiveDeltaStopStrategy(min_delta=1e-14, max_iter=200)
    res = solve_least_squares_lm(stop, residuals, jacobian, np.array([1.0, 0.0]))
    assert res.state is SolverState.STOPPED
    assert np.allclose(res.x, [2.0, -0.5], atol=1e-5)
    assert res.objective < 1e-10
    assert res.iterations < 200


def test_least_squares_never_exceeds_max_iter():
    calls = {"jacobian": 0}

    def residuals(x):
        return x - 1000.0

    def jacobian(x):
        calls["jacobian"] += 1
        return np.eye(x.size)

    stop = ObjectiveDeltaStopStrategy(min_delta=0.0, max_iter=3)
    res = solve_least_squares_lm(stop, residuals, jacobian, np.zeros((2,)), radius=1.0)
    assert res.iterations == 3
    assert res.reason == "max_iter"
    assert calls["jacobian"] <= 4
    assert np.all(res.x > 0.0)


def test_trust_region_rejects_non_finite_start():
    class Model:
        def __call__(self, x):
            return float("nan")

        def get_derivative_and_hessian(self, x):
            return np.zeros_like(x), np.eye(x.size)

    with pytest.raises(ValueError):
        find_min_trust_region(ObjectiveDeltaStopStrategy(), Model(), np.zeros((2,)))
