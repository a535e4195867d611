"""Instrumental-variables regression with absorbed fixed effects.

This module implements two-stage least squares on centered data:

- ``TwoStageResolver`` centers the response, exogenous regressors,
  endogenous regressors and instruments in one call, runs the first stages
  (in parallel across endogenous regressors), solves the second stage on the
  fitted values and computes the weak-instrument, endogeneity and
  overidentification statistics.
- ``FEIV`` is the estimator front-end.
"""

# hdfereg/estimators/iv.py
from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from scipy import stats

from hdfereg.core.config import EngineConfig
from hdfereg.core.fe import center, compute_fe_dof, recover_fe
from hdfereg.core.families import Gaussian
from hdfereg.core.inference import ClusterSpec, CovarianceEstimator
from hdfereg.core.linalg import NormalEquationsSolution, solve_normal_equations
from hdfereg.core.optimize import FitState
from hdfereg.core.parallel import ThreadedReduction

from .base import BaseEstimator, Design, FitResult

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = ["FEIV", "TwoStageResolver"]

_LOGGER = logging.getLogger(__name__)


def _as_matrix(values: Any, names: Sequence[str] | None, prefix: str) -> tuple[NDArray[np.float64], list[str]]:
    if isinstance(values, pd.DataFrame):
        arr = values.to_numpy(dtype=np.float64)
        default = [str(c) for c in values.columns]
    elif isinstance(values, pd.Series):
        arr = values.to_numpy(dtype=np.float64).reshape(-1, 1)
        default = [str(values.name) if values.name is not None else f"{prefix}0"]
    else:
        arr = np.asarray(values, dtype=np.float64)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        default = [f"{prefix}{j}" for j in range(arr.shape[1])]
    out_names = list(names) if names is not None else default
    if len(out_names) != arr.shape[1]:
        msg = f"expected {arr.shape[1]} names for the {prefix} columns, got {len(out_names)}."
        raise ValueError(msg)
    if not np.all(np.isfinite(arr)):
        msg = f"{prefix} columns contain NaN or Inf."
        raise ValueError(msg)
    return arr, out_names


def _wssr(e: NDArray[np.float64], w: NDArray[np.float64]) -> float:
    return float(np.sum(w * e * e))


class TwoStageResolver:
    """First stages, second stage and IV diagnostics on centered data.

    Parameters
    ----------
    design : Design
        Response, exogenous regressors, groupings, weights and offset.
    endog : ndarray, shape (n, p)
    instruments : ndarray, shape (n, L)
        Excluded instruments, ``L >= p``.
    endog_names, instrument_names : sequence of str
    config : EngineConfig
    pool : ThreadedReduction
    """

    def __init__(  # noqa: PLR0913
        self,
        design: Design,
        endog: NDArray[np.float64],
        instruments: NDArray[np.float64],
        endog_names: Sequence[str],
        instrument_names: Sequence[str],
        config: EngineConfig,
        pool: ThreadedReduction,
    ) -> None:
        self.design = design
        self.D = np.asarray(endog, dtype=np.float64).reshape(design.n_obs, -1)
        self.Z = np.asarray(instruments, dtype=np.float64).reshape(design.n_obs, -1)
        self.endog_names = list(endog_names)
        self.instrument_names = list(instrument_names)
        self.config = config
        self.pool = pool
        p, L = self.D.shape[1], self.Z.shape[1]
        if p == 0:
            msg = "at least one endogenous regressor is required."
            raise ValueError(msg)
        if L < p:
            msg = f"model is underidentified: {L} instrument(s) for {p} endogenous regressor(s)."
            raise ValueError(msg)
        self.slow_convergence = False

    def _solve(
        self,
        A: NDArray[np.float64],
        b: NDArray[np.float64],
        A_raw: NDArray[np.float64],
        names: Sequence[str] | None = None,
    ) -> NormalEquationsSolution:
        w = self.design.weights
        scale = np.sqrt(np.sum(A_raw * A_raw * w[:, None], axis=0))
        return solve_normal_equations(
            A, b, weights=w, scale=scale, tol=self.config.collin_tol, names=names, warn=False,
        )

    def _first_stage(  # noqa: PLR0913
        self,
        j: int,
        *,
        Xt: NDArray[np.float64],
        Zt: NDArray[np.float64],
        Dt: NDArray[np.float64],
        kind: str,
        clusters: ClusterSpec | None,
        fe_dof: int,
    ) -> dict[str, Any]:
        """Regress endogenous column ``j`` on exogenous regressors and instruments."""
        d = self.design
        w, n, k = d.weights, d.n_obs, Xt.shape[1]
        XZt = np.column_stack([Xt, Zt])
        XZ_raw = np.column_stack([d.X, self.Z])
        sol_u = self._solve(XZt, Dt[:, j], XZ_raw)
        b_u = np.nan_to_num(sol_u.coef, nan=0.0)
        fitted = XZt @ b_u
        resid = Dt[:, j] - fitted
        ssr_u = _wssr(resid, w)
        if k:
            sol_r = self._solve(Xt, Dt[:, j], d.X)
            ssr_r = _wssr(Dt[:, j] - Xt @ np.nan_to_num(sol_r.coef, nan=0.0), w)
        else:
            ssr_r = _wssr(Dt[:, j], w)
        q_eff = int(sol_u.keep[k:].sum())
        df_u = n - sol_u.rank - fe_dof
        F = np.nan
        F_p = np.nan
        if q_eff > 0 and df_u > 0 and ssr_u > 0:
            F = (max(ssr_r - ssr_u, 0.0) / q_eff) / (ssr_u / df_u)
            F_p = float(stats.f.sf(F, q_eff, df_u))

        # robust Wald F on the instrument block; nested work runs inline
        wald = np.nan
        wald_p = np.nan
        kept = sol_u.kept_index
        zpos = np.flatnonzero(kept >= k)
        if q_eff > 0 and df_u > 0:
            est = CovarianceEstimator(XZt[:, kept], w, resid, ThreadedReduction(1))
            V = est.compute(
                kind,
                n_params=sol_u.rank + fe_dof,
                sigma2=ssr_u / df_u,
                clusters=clusters,
                cluster_df=self.config.cluster_df,
            ).matrix
            bz = b_u[kept][zpos]
            Vz = V[np.ix_(zpos, zpos)]
            wald = float(bz @ np.linalg.pinv(Vz) @ bz) / q_eff
            wald_p = float(stats.f.sf(wald, q_eff, df_u))
        _LOGGER.debug("first stage %s: F=%.4g, Wald F=%.4g", self.endog_names[j], F, wald)
        return {
            "fitted": fitted,
            "resid": resid,
            "stats": {
                "F": float(F),
                "F_pvalue": float(F_p),
                "wald_F": float(wald),
                "wald_pvalue": float(wald_p),
                "df_num": q_eff,
                "df_denom": int(df_u),
                "ssr_restricted": ssr_r,
                "ssr_unrestricted": ssr_u,
            },
        }

    def resolve(self, kind: str = "iid", clusters: ClusterSpec | None = None) -> tuple[FitState, dict[str, Any]]:
        """Run both stages; return the second-stage state and the IV statistics."""
        d, cfg = self.design, self.config
        w, n, k = d.weights, d.n_obs, d.n_regressors
        p, L = self.D.shape[1], self.Z.shape[1]
        y_adj = d.y - d.offset
        res = center(
            np.column_stack([y_adj, d.X, self.D, self.Z]),
            d.groupings,
            weights=w,
            tol=cfg.fe_tol,
            max_iter=cfg.fe_max_iter,
            pool=self.pool,
            accel=cfg.accel,
        )
        self.slow_convergence = not res.converged
        C = res.residual
        yt = C[:, 0]
        Xt = C[:, 1:1 + k]
        Dt = C[:, 1 + k:1 + k + p]
        Zt = C[:, 1 + k + p:]
        fe_dof = int(compute_fe_dof(d.groupings)["fe_dof"])

        stages = self.pool.map(
            lambda j: self._first_stage(
                j, Xt=Xt, Zt=Zt, Dt=Dt, kind=kind, clusters=clusters, fe_dof=fe_dof,
            ),
            range(p),
        )
        Dhat = np.column_stack([s["fitted"] for s in stages])
        Vhat = np.column_stack([s["resid"] for s in stages])

        names = [*d.x_names, *self.endog_names]
        XD_raw = np.column_stack([d.X, self.D])
        XDhat_t = np.column_stack([Xt, Dhat])
        XD_t = np.column_stack([Xt, Dt])
        sol = self._solve(XDhat_t, yt, XD_raw, names)
        b = np.nan_to_num(sol.coef, nan=0.0)
        u = yt - XD_t @ b

        # Wu-Hausman: control-function F on the first-stage residuals
        sol_r = self._solve(XD_t, yt, XD_raw)
        ssr_r = _wssr(yt - XD_t @ np.nan_to_num(sol_r.coef, nan=0.0), w)
        CF = np.column_stack([XD_t, Vhat])
        sol_cf = self._solve(CF, yt, np.column_stack([XD_raw, Vhat]))
        ssr_cf = _wssr(yt - CF @ np.nan_to_num(sol_cf.coef, nan=0.0), w)
        p_eff = int(sol_cf.keep[k + p:].sum())
        df_cf = n - sol_cf.rank - fe_dof
        wu = {"F": np.nan, "pvalue": np.nan, "df_num": p_eff, "df_denom": int(df_cf)}
        if p_eff > 0 and df_cf > 0 and ssr_cf > 0:
            F = (max(ssr_r - ssr_cf, 0.0) / p_eff) / (ssr_cf / df_cf)
            wu.update(F=float(F), pvalue=float(stats.f.sf(F, p_eff, df_cf)))

        sargan = None
        if L > p:
            XZt = np.column_stack([Xt, Zt])
            sol_s = self._solve(XZt, u, np.column_stack([d.X, self.Z]))
            e_s = u - XZt @ np.nan_to_num(sol_s.coef, nan=0.0)
            ubar = float(np.sum(w * u) / np.sum(w))
            tss = _wssr(u - ubar, w)
            r2 = 1.0 - _wssr(e_s, w) / tss if tss > 0 else 0.0
            stat = n * r2
            sargan = {"stat": float(stat), "df": L - p, "pvalue": float(stats.chi2.sf(stat, L - p))}

        fe_part = y_adj - XD_raw @ b - u
        mu = d.y - u
        ssr = _wssr(u, w)
        state = FitState(
            coef=sol.coef,
            eta=mu,
            mu=mu,
            fe_part=fe_part,
            deviance=ssr,
            iteration=1,
            history=[ssr],
            converged=True,
            solution=sol,
            X_centered=XDhat_t,
            work_weights=w,
            work_resid=u,
            centering_converged=not self.slow_convergence,
            y_centered=yt,
        )
        state.fixef = recover_fe(
            fe_part,
            d.groupings,
            tol=min(cfg.fe_tol, 1e-10),
            max_iter=cfg.fe_max_iter,
            pool=self.pool,
        )
        iv_stats = {
            "first_stage": {nm: s["stats"] for nm, s in zip(self.endog_names, stages)},
            "wu_hausman": wu,
            "sargan": sargan,
            "n_instruments": L,
            "n_endog": p,
        }
        return state, iv_stats


class FEIV(BaseEstimator):
    """Two-stage least squares with fixed effects.

    Parameters
    ----------
    design : Design, optional
        Response, exogenous regressors and groupings.
    endog : array-like, shape (n, p)
        Endogenous regressors.
    instruments : array-like, shape (n, L)
        Excluded instruments, ``L >= p``.
    endog_names, instrument_names : sequence of str, optional

    Notes
    -----
    Second-stage residuals use the original endogenous columns, not their
    first-stage fitted values. ``FitResult.iv_stats`` holds per-regressor
    first-stage F statistics (SSR-difference and Wald under the requested
    covariance), the Wu-Hausman endogeneity F and, when overidentified, the
    Sargan statistic.
    """

    def __init__(  # noqa: PLR0913
        self,
        design: Design | None = None,
        *,
        endog: Any,
        instruments: Any,
        endog_names: Sequence[str] | None = None,
        instrument_names: Sequence[str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(design, **kwargs)
        self.endog, self.endog_names = _as_matrix(endog, endog_names, "endog")
        self.instruments, self.instrument_names = _as_matrix(instruments, instrument_names, "z")
        n = self.design.n_obs
        if self.endog.shape[0] != n or self.instruments.shape[0] != n:
            msg = "endog and instruments must have one row per observation."
            raise ValueError(msg)
        clash = set(self.endog_names) & set(self.design.x_names)
        if clash:
            msg = f"endogenous names clash with regressor names: {sorted(clash)}"
            raise ValueError(msg)

    def fit(
        self,
        vcov: str | None = None,
        cluster: Any = None,
        config: EngineConfig | None = None,
    ) -> FitResult:
        """Fit by 2SLS; see :meth:`FEOLS.fit` for arguments."""
        config = config if config is not None else EngineConfig()
        kind = self._resolve_vcov(vcov, cluster)
        family = Gaussian()
        prep = self._prepare(config, family)
        clusters = self._cluster_spec(cluster, prep.mask, self.design.n_obs)
        rows = prep.mask
        with self._pool(config) as pool:
            resolver = TwoStageResolver(
                prep.design,
                self.endog[rows],
                self.instruments[rows],
                self.endog_names,
                self.instrument_names,
                config,
                pool,
            )
            state, iv_stats = resolver.resolve(kind, clusters)
            self._results = self._build_result(
                state,
                prep,
                family=family,
                vcov=kind,
                clusters=clusters,
                config=config,
                pool=pool,
                param_names=[*prep.design.x_names, *self.endog_names],
                model_info={"estimator": "FEIV"},
                iv_stats=iv_stats,
            )
        return self._results
