from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

import numpy as np

logger = logging.getLogger(__name__)

MAX_RADIUS = 1000.0


class SolverState(Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class ObjectiveDeltaStopStrategy:
    """
    Stops when the objective changes by less than `min_delta` between two consecutive
    checks, or after `max_iter` iterations (0 disables the iteration limit).

    `on_iteration(index, x, objective)` is called on every check, before the decision.
    """

    def __init__(
        self,
        min_delta: float = 1e-7,
        max_iter: int = 150,
        on_iteration: Callable[[int, np.ndarray, float], None] | None = None,
    ) -> None:
        if min_delta < 0.0:
            raise ValueError("min_delta can't be negative")
        self.min_delta = float(min_delta)
        self.max_iter = int(max_iter)
        self.on_iteration = on_iteration
        self.cur_iter = 0
        self.state = SolverState.RUNNING
        self.reason = ""
        self._been_used = False
        self._prev = 0.0

    def _stop(self, reason: str) -> bool:
        self.state = SolverState.STOPPED
        self.reason = reason
        return False

    def should_continue_search(self, x: np.ndarray, f: float, g: np.ndarray | None = None) -> bool:
        if self.state is SolverState.STOPPED:
            return False
        if self.on_iteration is not None:
            self.on_iteration(self.cur_iter, x, f)
        self.cur_iter += 1
        if self._been_used:
            if self.max_iter > 0 and self.cur_iter > self.max_iter:
                return self._stop("max_iter")
            if abs(f - self._prev) < self.min_delta:
                return self._stop("min_delta")
        self._been_used = True
        self._prev = float(f)
        return True

    @property
    def iterations(self) -> int:
        """Completed iterations (checks after the initial one)."""
        return max(0, self.cur_iter - 1)


def solve_trust_region_subproblem(
    H: np.ndarray,
    g: np.ndarray,
    radius: float,
    *,
    rel_tol: float = 0.1,
    max_iter: int = 20,
) -> tuple[np.ndarray, bool]:
    """
    Approximately minimise g.p + 0.5 p.H.p subject to ||p|| <= radius.

    Returns (p, constrained) where `constrained` tells whether the radius limited the step.
    The boundary solution is found with Newton iterations on the Levenberg parameter
    (More-Sorensen), stopping once | ||p|| - radius | <= rel_tol * radius.
    """
    H = np.asarray(H, dtype=np.float64)
    g = np.asarray(g, dtype=np.float64).reshape(-1)
    n = g.size
    if H.shape != (n, n):
        raise ValueError(f"H must be ({n},{n}), got {H.shape}")
    if radius <= 0.0:
        raise ValueError("radius must be > 0")

    gnorm = float(np.linalg.norm(g))
    if n == 0 or gnorm == 0.0:
        return np.zeros((n,), dtype=np.float64), False

    e, Q = np.linalg.eigh(0.5 * (H + H.T))
    gq = Q.T @ g
    tol = float(np.finfo(np.float64).eps) * n * max(1.0, float(np.max(np.abs(e))))
    e_min = float(e[0])

    if e_min > tol:
        pq = -gq / e
        if float(np.linalg.norm(pq)) <= radius:
            return Q @ pq, False
    elif e_min >= -tol:
        # Singular J^T J: the minimum-norm step is a minimiser only when g has no
        # component in the null space.
        nz = e > tol
        if np.all(np.abs(gq[~nz]) <= 1e-12 * gnorm):
            pq = np.zeros_like(gq)
            pq[nz] = -gq[nz] / e[nz]
            if float(np.linalg.norm(pq)) <= radius:
                return Q @ pq, False

    lo = max(0.0, -e_min)
    hi = lo + gnorm / radius

    # Hard case: g orthogonal to the most negative direction.
    if lo > 0.0 and abs(gq[0]) <= 1e-12 * gnorm:
        d = e + lo
        pq = np.zeros_like(gq)
        ok = d > tol
        pq[ok] = -gq[ok] / d[ok]
        pn = float(np.linalg.norm(pq))
        if pn <= radius:
            tau = float(np.sqrt(max(radius * radius - pn * pn, 0.0)))
            return Q @ pq + tau * Q[:, 0], True

    lam = hi
    pq = -gq / (e + lam)
    for _ in range(max_iter):
        d = e + lam
        pq = -gq / d
        pn = float(np.linalg.norm(pq))
        if abs(pn - radius) <= rel_tol * radius:
            break
        if pn > radius:
            lo = lam
        else:
            hi = lam
        qn2 = float(np.sum(gq * gq / (d * d * d)))
        lam_new = lam + (pn * pn / qn2) * (pn - radius) / radius if qn2 > 0.0 else 0.5 * (lo + hi)
        if not (lo < lam_new < hi):
            lam_new = 0.5 * (lo + hi)
        lam = lam_new
    return Q @ pq, True


class TrustRegionModel(Protocol):
    def __call__(self, x: np.ndarray) -> float: ...

    def get_derivative_and_hessian(self, x: np.ndarray) -> tuple[np.ndarray, np.ndarray]: ...


def find_min_trust_region(
    stop: ObjectiveDeltaStopStrategy,
    model: TrustRegionModel,
    x0: np.ndarray,
    radius: float = 1.0,
    min_f: float = -np.inf,
    min_radius: float = 1e-10,
) -> tuple[np.ndarray, float]:
    """
    Trust-region minimisation of `model` from `x0`. Returns (x, f).

    A step is accepted when it decreases the objective (rho > 0). The radius shrinks by 4
    when rho < 0.25 and doubles (up to 1000) when rho > 0.75 and the step hit the radius.
    """
    x = np.asarray(x0, dtype=np.float64).reshape(-1).copy()
    f = float(model(x))
    if not np.isfinite(f):
        raise ValueError("the objective function generated non-finite outputs")
    g, H = model.get_derivative_and_hessian(x)
    eps = float(np.finfo(np.float64).eps)

    # A rejected step is retried with the smaller radius without counting as an iteration.
    stale = False
    while stale or (stop.should_continue_search(x, f, g) and f > min_f):
        stale = False
        p, constrained = solve_trust_region_subproblem(H, g, radius)
        new_x = x + p
        new_f = float(model(new_x))

        predicted = -(float(g @ p) + 0.5 * float(p @ H @ p))
        measured = f - new_f
        # The subproblem can't find a way to improve: p is essentially 0.
        if abs(predicted) <= abs(measured) * eps:
            logger.debug("trust region: no predicted improvement, stopping")
            break
        rho = measured / abs(predicted)
        if not np.isfinite(rho):
            logger.debug("trust region: non-finite reduction ratio, stopping")
            break

        if rho < 0.25:
            radius *= 0.25
            logger.debug("trust region: rho=%.3g, radius shrunk to %.3g", rho, radius)
            if radius <= min_radius:
                break
        elif rho > 0.75 and constrained:
            radius = min(MAX_RADIUS, 2.0 * radius)

        if rho > 0.0:
            x = new_x
            f = new_f
            g, H = model.get_derivative_and_hessian(x)
        else:
            stale = True
    return x, f


class LeastSquaresModel:
    """
    Objective 0.5 * sum(r^2) with Gauss-Newton derivatives g = J^T r, H = J^T J.

    The residual vector of the last evaluated point is reused by
    `get_derivative_and_hessian` when the solver asks for the same x.
    """

    def __init__(
        self,
        residuals: Callable[[np.ndarray], np.ndarray],
        jacobian: Callable[[np.ndarray], np.ndarray],
    ) -> None:
        self.residuals = residuals
        self.jacobian = jacobian
        self._last_x: np.ndarray | None = None
        self._last_r: np.ndarray | None = None

    def _residuals(self, x: np.ndarray) -> np.ndarray:
        r = np.asarray(self.residuals(x), dtype=np.float64).reshape(-1)
        self._last_x = np.array(x, dtype=np.float64, copy=True)
        self._last_r = r
        return r

    def __call__(self, x: np.ndarray) -> float:
        r = self._residuals(x)
        return 0.5 * float(r @ r)

    def get_derivative_and_hessian(self, x: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        if self._last_x is not None and self._last_r is not None and np.array_equal(self._last_x, x):
            r = self._last_r
        else:
            r = self._residuals(x)
        J = np.asarray(self.jacobian(x), dtype=np.float64)
        if J.shape != (r.size, np.asarray(x).size):
            raise ValueError(f"jacobian must be {(r.size, np.asarray(x).size)}, got {J.shape}")
        return J.T @ r, J.T @ J


@dataclass(frozen=True)
class LeastSquaresResult:
    x: np.ndarray
    objective: float
    iterations: int
    state: SolverState
    reason: str


def solve_least_squares_lm(
    stop: ObjectiveDeltaStopStrategy,
    residuals: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    x0: np.ndarray,
    radius: float = 1.0,
) -> LeastSquaresResult:
    """Levenberg-Marquardt: trust-region minimisation of 0.5 * ||residuals(x)||^2."""
    model = LeastSquaresModel(residuals, jacobian)
    x, f = find_min_trust_region(stop, model, x0, radius=radius)
    if stop.state is SolverState.RUNNING:
        stop.state = SolverState.STOPPED
        stop.reason = stop.reason or "trust_region"
    return LeastSquaresResult(x=x, objective=f, iterations=stop.iterations, state=stop.state, reason=stop.reason)
