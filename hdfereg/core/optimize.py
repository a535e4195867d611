"""Outer optimization loop around the centering step.

``OptimizationDriver`` owns one estimation's mutable :class:`FitState` and
runs one of three drivers:

- ``run_linear``: one centering of ``[y, X]`` and one weighted solve;
- ``run_irls``: IRLS (Fisher scoring) or Newton (observed information)
  iterations, each re-centering the working response and regressors under
  the current working weights;
- ``run_nonlinear``: bounded Gauss-Newton on parameters that enter the
  linear predictor non-linearly, with the Jacobian columns treated as extra
  regressors of the same weighted problem.

Fatal conditions raise :class:`~hdfereg.core.errors.OptimizationFailed`
subclasses carrying last-iteration diagnostics; recoverable ones are
recorded on the state.
"""

# hdfereg/core/optimize.py
from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from .config import EngineConfig
from .errors import Diverged, NonFiniteValueError, OptimizationFailed
from .families import Family, Gaussian, NegativeBinomial
from .fe import center, recover_fe
from .linalg import NormalEquationsSolution, solve_normal_equations
from .parallel import ThreadedReduction

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .fe import FixedEffectLevels
    from .groups import GroupingSpec
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

__all__ = ["FitState", "OptimizationDriver"]

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class FitState:
    """Evolving model of one estimation.

    ``X_centered``, ``work_weights`` and ``work_resid`` describe the
    weighted problem at the final iterate; per-observation scores are
    ``X_centered * (work_weights * work_resid)[:, None]``.
    """

    coef: NDArray[np.float64]
    eta: NDArray[np.float64]
    mu: NDArray[np.float64]
    fe_part: NDArray[np.float64]
    deviance: float
    iteration: int = 0
    history: list[float] = field(default_factory=list)
    converged: bool = False
    solution: NormalEquationsSolution | None = None
    X_centered: NDArray[np.float64] | None = None
    work_weights: NDArray[np.float64] | None = None
    work_resid: NDArray[np.float64] | None = None
    centering_converged: bool = True
    fixef: FixedEffectLevels | None = None
    nl_coef: NDArray[np.float64] | None = None
    theta: float | None = None
    y_centered: NDArray[np.float64] | None = None

    def diagnostics(self, reason: str) -> dict[str, Any]:
        return {
            "reason": reason,
            "iteration": self.iteration,
            "deviance_history": list(self.history),
            "last_coef": np.array(self.coef, copy=True),
            "last_nl_coef": None if self.nl_coef is None else np.array(self.nl_coef, copy=True),
        }


def _weighted_norms(X: NDArray[np.float64], w: NDArray[np.float64]) -> NDArray[np.float64]:
    return np.sqrt(np.sum(X * X * w[:, None], axis=0))


class OptimizationDriver:
    """Run the outer loop of one estimation.

    Parameters
    ----------
    design : Design
        Response, regressors, groupings, weights and offset.
    family : Family, optional
        Response family; Gaussian when omitted. The driver works on a
        shallow copy, so estimated parameters such as the negative-binomial
        ``theta`` never leak back into the caller's object.
    config : EngineConfig, optional
    pool : ThreadedReduction, optional
        Worker pool shared by every centering and reduction of the fit.
    """

    def __init__(
        self,
        design: Any,
        family: Family | None = None,
        config: EngineConfig | None = None,
        pool: ThreadedReduction | None = None,
    ) -> None:
        self.design = design
        self.family = copy.copy(family) if family is not None else Gaussian()
        self.config = config if config is not None else EngineConfig()
        self.pool = pool if pool is not None else ThreadedReduction(1)
        self.y = np.asarray(design.y, dtype=np.float64)
        self.X = np.asarray(design.X, dtype=np.float64).reshape(self.y.shape[0], -1)
        self.w = np.asarray(design.weights, dtype=np.float64)
        self.offset = np.asarray(design.offset, dtype=np.float64)
        self.groupings: list[GroupingSpec] = list(design.groupings)
        self.names: list[str] = list(design.x_names)
        self.state: FitState | None = None
        self.slow_convergence = False

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def _center(self, M: NDArray[np.float64], weights: NDArray[np.float64]) -> NDArray[np.float64]:
        cfg = self.config
        res = center(
            M,
            self.groupings,
            weights=weights,
            tol=cfg.fe_tol,
            max_iter=cfg.fe_max_iter,
            pool=self.pool,
            accel=cfg.accel,
        )
        if not res.converged:
            self.slow_convergence = True
        return res.residual

    def _solve(
        self,
        Xt: NDArray[np.float64],
        zt: NDArray[np.float64],
        weights: NDArray[np.float64],
        X_raw: NDArray[np.float64],
        names: Sequence[str],
    ) -> NormalEquationsSolution:
        return solve_normal_equations(
            Xt,
            zt,
            weights=weights,
            scale=_weighted_norms(X_raw, weights),
            tol=self.config.collin_tol,
            names=names,
            warn=False,
        )

    def _center_and_solve(
        self,
        z_adj: NDArray[np.float64],
        X_raw: NDArray[np.float64],
        weights: NDArray[np.float64],
        names: Sequence[str],
    ) -> tuple[NormalEquationsSolution, NDArray[np.float64], NDArray[np.float64]]:
        """Center ``[z_adj, X_raw]`` and solve; return solution, centered X, residual."""
        M = np.column_stack([z_adj, X_raw]) if X_raw.shape[1] else z_adj.reshape(-1, 1)
        C = self._center(M, weights)
        zt, Xt = C[:, 0], C[:, 1:]
        sol = self._solve(Xt, zt, weights, X_raw, names)
        b = np.nan_to_num(sol.coef, nan=0.0)
        e = zt - Xt @ b
        return sol, Xt, e

    def _raise_nonfinite(self, state: FitState, what: str) -> None:
        msg = f"{what} became non-finite at iteration {state.iteration}."
        raise NonFiniteValueError(msg, state.diagnostics(f"non-finite {what}"))

    def _finish(self, state: FitState) -> FitState:
        state.fixef = recover_fe(
            state.fe_part,
            self.groupings,
            tol=min(self.config.fe_tol, 1e-10),
            max_iter=self.config.fe_max_iter,
            pool=self.pool,
        )
        state.centering_converged = not self.slow_convergence
        self.state = state
        return state

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------

    def run_linear(self) -> FitState:
        """Center once, solve once."""
        y_adj = self.y - self.offset
        sol, Xt, e = self._center_and_solve(y_adj, self.X, self.w, self.names)
        b = np.nan_to_num(sol.coef, nan=0.0)
        fitted = self.y - e
        fe_part = y_adj - self.X @ b - e
        mu = self.family.inverse_link(fitted)
        dev = self.family.deviance(self.y, mu, self.w)
        state = FitState(
            coef=sol.coef,
            eta=fitted,
            mu=mu,
            fe_part=fe_part,
            deviance=dev,
            iteration=1,
            history=[dev],
            converged=True,
            solution=sol,
            X_centered=Xt,
            work_weights=self.w,
            work_resid=e,
        )
        _LOGGER.debug("linear fit: deviance %.6g, rank %d", dev, sol.rank)
        return self._finish(state)

    def _initial_state(self) -> FitState:
        fam = self.family
        fam.validate_response(self.y)
        mu = fam.initialize(self.y, self.w)
        eta = fam.link(mu)
        k = self.X.shape[1]
        state = FitState(
            coef=np.zeros(k),
            eta=eta,
            mu=mu,
            fe_part=np.zeros_like(self.y),
            deviance=np.inf,
        )
        if not np.all(np.isfinite(eta)):
            self._raise_nonfinite(state, "linear predictor")
        state.deviance = fam.deviance(self.y, mu, self.w)
        if not np.isfinite(state.deviance):
            self._raise_nonfinite(state, "deviance")
        return state

    def _coef_tol(self) -> float:
        # centering error bounds how precisely b can settle
        return max(self.config.tol, 100.0 * self.config.fe_tol)

    @staticmethod
    def _rel_change(new: float, old: float) -> float:
        return abs(new - old) / (0.1 + abs(new))

    @staticmethod
    def _max_coef_change(new: NDArray[np.float64], old: NDArray[np.float64]) -> float:
        a = np.nan_to_num(new, nan=0.0)
        b = np.nan_to_num(old, nan=0.0)
        if a.size == 0:
            return 0.0
        return float(np.max(np.abs(a - b) / (0.1 + np.abs(a))))

    def _update_theta(self, state: FitState) -> None:
        fam = self.family
        if isinstance(fam, NegativeBinomial) and not fam.theta_fixed:
            state.theta = fam.update_theta(self.y, state.mu, self.w)
            state.deviance = fam.deviance(self.y, state.mu, self.w)

    def _final_working_problem(self, state: FitState, X_raw: NDArray[np.float64]) -> None:
        """Working weights, residual and centered X at the converged predictor."""
        z, W = self.family.working(self.y, state.eta, self.w, method="irls")
        Xt = self._center(X_raw, W) if X_raw.shape[1] else np.zeros((self.y.shape[0], 0))
        state.X_centered = Xt
        state.work_weights = W
        state.work_resid = z - state.eta

    def run_irls(self, method: str = "irls") -> FitState:
        """Reweighted iterations until deviance and coefficients settle.

        Parameters
        ----------
        method : {"irls", "newton"}
            Expected (Fisher scoring) or observed information weights.

        Raises
        ------
        NonFiniteValueError
            As soon as the linear predictor or the deviance is NaN/Inf.
        Diverged
            After ``max_nondecrease`` consecutive deviance increases, or when
            ``max_iter`` iterations did not converge.
        """
        if method not in {"irls", "newton"}:
            msg = "method must be 'irls' or 'newton'."
            raise ValueError(msg)
        cfg = self.config
        fam = self.family
        state = self._initial_state()
        nondecrease = 0
        for it in range(1, cfg.max_iter + 1):
            state.iteration = it
            z, W = fam.working(self.y, state.eta, self.w, method=method)
            if not (np.all(np.isfinite(z)) and np.all(np.isfinite(W))):
                self._raise_nonfinite(state, "working response")
            sol, Xt, e = self._center_and_solve(z - self.offset, self.X, W, self.names)
            eta_new = z - e
            if not np.all(np.isfinite(eta_new)):
                self._raise_nonfinite(state, "linear predictor")
            mu_new = fam.inverse_link(eta_new)
            dev = fam.deviance(self.y, mu_new, self.w)
            if not np.isfinite(dev):
                self._raise_nonfinite(state, "deviance")

            rel = self._rel_change(dev, state.deviance)
            dcoef = self._max_coef_change(sol.coef, state.coef)
            increased = dev - state.deviance > cfg.tol * (0.1 + abs(dev))
            b = np.nan_to_num(sol.coef, nan=0.0)
            state.coef = sol.coef
            state.eta = eta_new
            state.mu = mu_new
            state.fe_part = eta_new - self.offset - self.X @ b
            state.deviance = dev
            state.solution = sol
            state.history.append(dev)
            self._update_theta(state)
            _LOGGER.debug(
                "%s iteration %d: deviance %.10g, rel change %.3e, coef change %.3e",
                method, it, dev, rel, dcoef,
            )
            if rel <= cfg.tol and dcoef <= self._coef_tol():
                state.converged = True
                break
            nondecrease = nondecrease + 1 if increased else 0
            if nondecrease >= cfg.max_nondecrease:
                msg = (
                    f"deviance failed to decrease for {nondecrease} consecutive "
                    f"iterations (iteration {it})."
                )
                raise Diverged(msg, state.diagnostics("deviance not decreasing"))
        else:
            msg = f"no convergence within max_iter={cfg.max_iter} iterations."
            raise Diverged(msg, state.diagnostics("iteration cap"))

        self._final_working_problem(state, self.X)
        _LOGGER.info("%s converged in %d iterations, deviance %.10g", method, state.iteration, state.deviance)
        return self._finish(state)

    # ------------------------------------------------------------------
    # Non-linear right-hand side
    # ------------------------------------------------------------------

    @staticmethod
    def numerical_jacobian(
        func: Callable[[NDArray[np.float64]], NDArray[np.float64]],
        theta: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Central-difference Jacobian of ``func`` at ``theta``, shape (n, q)."""
        theta = np.asarray(theta, dtype=np.float64)
        cols = []
        for j in range(theta.shape[0]):
            h = 1e-6 * max(1.0, abs(float(theta[j])))
            up = theta.copy()
            dn = theta.copy()
            up[j] += h
            dn[j] -= h
            cols.append((np.asarray(func(up)) - np.asarray(func(dn))) / (2.0 * h))
        return np.column_stack(cols) if cols else np.zeros((0, 0))

    @staticmethod
    def _project_direction(
        theta: NDArray[np.float64],
        delta: NDArray[np.float64],
        lower: NDArray[np.float64],
        upper: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Zero the components of ``delta`` pushing through an active bound."""
        out = delta.copy()
        out[(theta <= lower) & (out < 0.0)] = 0.0
        out[(theta >= upper) & (out > 0.0)] = 0.0
        return out

    def run_nonlinear(  # noqa: PLR0913, PLR0915
        self,
        nl_func: Callable[[NDArray[np.float64]], NDArray[np.float64]],
        start: Sequence[float],
        lower: Sequence[float] | None = None,
        upper: Sequence[float] | None = None,
        jac: Callable[[NDArray[np.float64]], NDArray[np.float64]] | None = None,
        nl_names: Sequence[str] | None = None,
    ) -> FitState:
        """Bounded Gauss-Newton on ``eta = offset + nl_func(theta) + X b + FE``.

        Each iteration linearizes ``nl_func`` at ``theta``, appends the
        Jacobian columns to the regressors, and solves the weighted centered
        problem for a full step in ``(theta, b, FE)``. The step is projected
        on the active bounds and halved until it is feasible and the deviance
        does not increase.

        Raises
        ------
        OptimizationFailed
            When no acceptable step larger than ``min_step`` exists.
        """
        cfg = self.config
        fam = self.family
        theta = np.asarray(start, dtype=np.float64).reshape(-1)
        q = theta.shape[0]
        lo = np.full(q, -np.inf) if lower is None else np.asarray(lower, dtype=np.float64).reshape(-1)
        hi = np.full(q, np.inf) if upper is None else np.asarray(upper, dtype=np.float64).reshape(-1)
        if lo.shape[0] != q or hi.shape[0] != q:
            msg = "lower and upper must have one entry per non-linear parameter."
            raise ValueError(msg)
        if np.any(lo > hi):
            msg = "lower bounds must not exceed upper bounds."
            raise ValueError(msg)
        if np.any(theta < lo) or np.any(theta > hi):
            msg = "starting values must lie within the bounds."
            raise ValueError(msg)
        nl_names = list(nl_names) if nl_names is not None else [f"theta{j}" for j in range(q)]
        jac_fn = jac if jac is not None else (lambda t: self.numerical_jacobian(nl_func, t))
        fam.validate_response(self.y)

        def _nl(t: NDArray[np.float64]) -> NDArray[np.float64]:
            return np.asarray(nl_func(t), dtype=np.float64).reshape(-1)

        k = self.X.shape[1]
        b = np.zeros(k)
        g = np.zeros_like(self.y)
        f_val = _nl(theta)
        eta = self.offset + f_val
        state = FitState(
            coef=np.zeros(k), eta=eta, mu=fam.inverse_link(eta), fe_part=g,
            deviance=np.inf, nl_coef=theta.copy(),
        )
        if not np.all(np.isfinite(eta)):
            self._raise_nonfinite(state, "linear predictor")
        state.deviance = fam.deviance(self.y, state.mu, self.w)
        if not np.isfinite(state.deviance):
            self._raise_nonfinite(state, "deviance")

        names = nl_names + self.names
        for it in range(1, cfg.max_iter + 1):
            state.iteration = it
            z, W = fam.working(self.y, state.eta, self.w, method="irls")
            if not (np.all(np.isfinite(z)) and np.all(np.isfinite(W))):
                self._raise_nonfinite(state, "working response")
            J = np.asarray(jac_fn(theta), dtype=np.float64).reshape(self.y.shape[0], q)
            if not np.all(np.isfinite(J)):
                self._raise_nonfinite(state, "Jacobian")
            # full step target: z = offset + f(theta) + J d + X b_full + g_full
            Z = np.column_stack([J, self.X]) if k else J
            sol, _, e = self._center_and_solve(z - self.offset - f_val, Z, W, names)
            full = np.nan_to_num(sol.coef, nan=0.0)
            delta = self._project_direction(theta, full[:q], lo, hi)
            b_full = full[q:]
            g_full = z - self.offset - f_val - Z @ full - e

            alpha = 1.0
            accepted = False
            while alpha >= cfg.min_step:
                theta_try = theta + alpha * delta
                if np.all(theta_try >= lo) and np.all(theta_try <= hi):
                    f_try = _nl(theta_try)
                    b_try = b + alpha * (b_full - b)
                    g_try = g + alpha * (g_full - g)
                    eta_try = self.offset + f_try + self.X @ b_try + g_try
                    if np.all(np.isfinite(eta_try)):
                        mu_try = fam.inverse_link(eta_try)
                        dev_try = fam.deviance(self.y, mu_try, self.w)
                        if np.isfinite(dev_try) and dev_try <= state.deviance * (1.0 + 1e-12):
                            accepted = True
                            break
                alpha *= 0.5
            if not accepted:
                msg = f"no acceptable Gauss-Newton step above min_step at iteration {it}."
                raise OptimizationFailed(msg, state.diagnostics("step size below min_step"))

            rel = self._rel_change(dev_try, state.deviance)
            dpar = self._max_coef_change(
                np.concatenate([theta_try, b_try]), np.concatenate([theta, b]),
            )
            theta, b, g, f_val = theta_try, b_try, g_try, f_try
            coef_full = np.concatenate([theta, np.where(sol.keep[q:], b, np.nan)])
            state.coef = coef_full[q:]
            state.nl_coef = theta.copy()
            state.eta = eta_try
            state.mu = mu_try
            state.fe_part = g
            state.deviance = dev_try
            state.solution = sol
            state.history.append(dev_try)
            self._update_theta(state)
            _LOGGER.debug(
                "gauss-newton iteration %d: step %.3g, deviance %.10g, rel change %.3e",
                it, alpha, dev_try, rel,
            )
            if rel <= cfg.tol and dpar <= self._coef_tol():
                state.converged = True
                break
        else:
            msg = f"no convergence within max_iter={cfg.max_iter} iterations."
            raise Diverged(msg, state.diagnostics("iteration cap"))

        J = np.asarray(jac_fn(theta), dtype=np.float64).reshape(self.y.shape[0], q)
        self._final_working_problem(state, np.column_stack([J, self.X]) if k else J)
        _LOGGER.info("gauss-newton converged in %d iterations", state.iteration)
        return self._finish(state)
