"""Design bundle, result container and the shared estimator base.

This module defines the immutable :class:`Design` handed to the engine, the
frozen :class:`FitResult` returned to callers, and :class:`BaseEstimator`,
which screens the groupings, drops unusable observations, owns the worker
pool of one fit and assembles the result from the converged state.
"""

# hdfereg/estimators/base.py
from __future__ import annotations

import logging
import warnings
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from scipy import stats

from hdfereg.core.config import EngineConfig
from hdfereg.core.errors import CollinearRegressor, DegenerateGroupingError
from hdfereg.core.families import Family, Gaussian, NegativeBinomial
from hdfereg.core.fe import compute_fe_dof
from hdfereg.core.groups import (
    GroupIndex,
    GroupingSpec,
    combine,
    drop_singletons,
    make_grouping,
    perfect_prediction_mask,
    subset_groupings,
    varying_slope,
)
from hdfereg.core.inference import ClusterSpec, CovarianceEstimator
from hdfereg.core.linalg import _assert_all_finite, _validate_weights
from hdfereg.core.parallel import ThreadedReduction

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from hdfereg.core.optimize import FitState

__all__ = [
    "BaseEstimator",
    "Design",
    "FitFlags",
    "FitResult",
    "normalize_ci_level",
]

_LOGGER = logging.getLogger(__name__)

CONST_NAME = "_cons"


def normalize_ci_level(level: float | None, *, default: float = 0.95) -> float:
    """Normalize confidence level to a probability (0, 1)."""
    coerced = float(default) if level is None else float(level)
    # Accept percentage-style inputs (e.g., 90 for 90%)
    if coerced > 1.0:
        coerced /= 100.0
    if not (0.0 < coerced < 1.0):
        msg = "ci_level must be in (0, 1); supply e.g. 0.95 or 95"
        raise ValueError(msg)
    return coerced


# ---------------------------------------------------------------------
# Design
# ---------------------------------------------------------------------


def _as_groupings(fe: Any, n: int) -> tuple[GroupingSpec, ...]:
    """Coerce the accepted fixed-effect inputs to a tuple of GroupingSpec."""
    if fe is None:
        return ()
    if isinstance(fe, GroupIndex):
        return tuple(fe.to_list())
    if isinstance(fe, GroupingSpec):
        return (fe,)
    if isinstance(fe, pd.DataFrame):
        fe = {str(c): fe[c].to_numpy() for c in fe.columns}
    if isinstance(fe, Mapping):
        return tuple(
            v if isinstance(v, GroupingSpec) else make_grouping(str(k), v, allow_single=True)
            for k, v in fe.items()
        )
    if isinstance(fe, (list, tuple)) and all(isinstance(g, GroupingSpec) for g in fe):
        return tuple(fe)
    if isinstance(fe, (list, tuple)) and fe and np.ndim(fe[0]) == 1 and len(fe[0]) == n:
        return tuple(
            g if isinstance(g, GroupingSpec) else make_grouping(f"fe{j}", g, allow_single=True)
            for j, g in enumerate(fe)
        )
    arr = np.asarray(fe, dtype=object)
    if arr.ndim == 1:
        arr = arr.reshape(-1, 1)
    if arr.shape[0] != n:
        msg = "fixed-effect labels must have one row per observation."
        raise ValueError(msg)
    return tuple(
        make_grouping(f"fe{j}", arr[:, j], allow_single=True) for j in range(arr.shape[1])
    )


@dataclass(frozen=True, eq=False)
class Design:
    """Numeric input of one estimation.

    Attributes
    ----------
    y : ndarray, shape (n,)
    X : ndarray, shape (n, k)
    x_names : tuple of str
    groupings : tuple of GroupingSpec
    weights : ndarray, shape (n,)
        Defaults to ones.
    offset : ndarray, shape (n,)
        Defaults to zeros.
    n_missing_dropped : int
        Rows removed by :meth:`from_frame` because of missing values.
    """

    y: NDArray[np.float64]
    X: NDArray[np.float64]
    x_names: tuple[str, ...] = ()
    groupings: tuple[GroupingSpec, ...] = ()
    weights: NDArray[np.float64] | None = None
    offset: NDArray[np.float64] | None = None
    n_missing_dropped: int = 0

    def __post_init__(self) -> None:
        y = np.asarray(self.y, dtype=np.float64).reshape(-1)
        n = y.shape[0]
        X = np.asarray(self.X, dtype=np.float64)
        if X.ndim < 2:
            X = X.reshape(n, -1)
        if X.shape[0] != n:
            msg = "X must have one row per observation."
            raise ValueError(msg)
        names = tuple(self.x_names) if self.x_names else tuple(f"x{j}" for j in range(X.shape[1]))
        if len(names) != X.shape[1]:
            msg = f"x_names has {len(names)} entries for {X.shape[1]} regressors."
            raise ValueError(msg)
        if len(set(names)) != len(names):
            msg = "regressor names must be unique."
            raise ValueError(msg)
        w = np.ones(n) if self.weights is None else _validate_weights(self.weights, n)
        off = np.zeros(n) if self.offset is None else np.asarray(self.offset, dtype=np.float64).reshape(-1)
        if off.shape[0] != n:
            msg = "offset must have one value per observation."
            raise ValueError(msg)
        _assert_all_finite(y, X, off)
        groupings = tuple(self.groupings)
        for g in groupings:
            if g.n_obs != n:
                msg = f"grouping '{g.name}' has {g.n_obs} observations, y has {n}."
                raise ValueError(msg)
        if len({g.name for g in groupings}) != len(groupings):
            msg = "grouping names must be unique."
            raise ValueError(msg)
        object.__setattr__(self, "y", y)
        object.__setattr__(self, "X", X)
        object.__setattr__(self, "x_names", names)
        object.__setattr__(self, "weights", w)
        object.__setattr__(self, "offset", off)
        object.__setattr__(self, "groupings", groupings)

    @property
    def n_obs(self) -> int:
        return int(self.y.shape[0])

    @property
    def n_regressors(self) -> int:
        return int(self.X.shape[1])

    def replace(self, **changes: Any) -> Design:
        params = {
            "y": self.y,
            "X": self.X,
            "x_names": self.x_names,
            "groupings": self.groupings,
            "weights": self.weights,
            "offset": self.offset,
            "n_missing_dropped": self.n_missing_dropped,
        }
        params.update(changes)
        return Design(**params)

    def subset(self, mask: NDArray[np.bool_]) -> Design:
        """Rows where ``mask`` is True, with grouping codes re-densified."""
        mask = np.asarray(mask, dtype=bool)
        return self.replace(
            y=self.y[mask],
            X=self.X[mask],
            groupings=tuple(subset_groupings(self.groupings, mask)),
            weights=self.weights[mask],
            offset=self.offset[mask],
        )

    @classmethod
    def from_arrays(  # noqa: PLR0913
        cls,
        y: Any,
        X: Any = None,
        *,
        fe: Any = None,
        weights: Any = None,
        offset: Any = None,
        x_names: Sequence[str] | None = None,
    ) -> Design:
        """Build from arrays.

        ``fe`` accepts a :class:`GroupIndex`, a list of ``GroupingSpec``, a
        mapping ``name -> labels``, a DataFrame, or an (n, K) label array.
        ``X`` may be a DataFrame (its columns name the regressors) or None.
        """
        y_arr = np.asarray(y, dtype=np.float64).reshape(-1)
        n = y_arr.shape[0]
        if X is None:
            X_arr = np.zeros((n, 0))
        elif isinstance(X, pd.DataFrame):
            X_arr = X.to_numpy(dtype=np.float64)
            if x_names is None:
                x_names = [str(c) for c in X.columns]
        elif isinstance(X, pd.Series):
            X_arr = X.to_numpy(dtype=np.float64).reshape(-1, 1)
            if x_names is None:
                x_names = [str(X.name) if X.name is not None else "x0"]
        else:
            X_arr = np.asarray(X, dtype=np.float64)
            X_arr = X_arr.reshape(n, -1)
        return cls(
            y=y_arr,
            X=X_arr,
            x_names=tuple(x_names) if x_names is not None else (),
            groupings=_as_groupings(fe, n),
            weights=None if weights is None else np.asarray(weights, dtype=np.float64),
            offset=None if offset is None else np.asarray(offset, dtype=np.float64),
        )

    @classmethod
    def from_frame(  # noqa: PLR0913
        cls,
        data: pd.DataFrame,
        y: str,
        x: Sequence[str] = (),
        *,
        fe: Sequence[str | tuple[str, str]] = (),
        slopes: Mapping[str, str] | None = None,
        weights: str | None = None,
        offset: str | None = None,
    ) -> Design:
        """Build from DataFrame columns, dropping rows with missing values.

        Parameters
        ----------
        fe : sequence
            Column names, or ``(a, b)`` pairs for a combined grouping.
        slopes : mapping, optional
            ``{fe_column: covariate_column}``; adds a per-level slope on the
            covariate next to the grouping's intercepts.
        """
        slopes = dict(slopes or {})
        fe_cols: list[str] = []
        for item in fe:
            fe_cols.extend(item if isinstance(item, tuple) else (item,))
        used = [y, *x, *fe_cols, *slopes.values()]
        used += [c for c in (weights, offset) if c is not None]
        missing = [c for c in used if c not in data.columns]
        if missing:
            msg = f"columns not found in data: {missing}"
            raise KeyError(msg)
        complete = data[list(dict.fromkeys(used))].notna().all(axis=1).to_numpy()
        n_dropped = int((~complete).sum())
        if n_dropped:
            _LOGGER.info("dropping %d row(s) with missing values", n_dropped)
        df = data.loc[complete]

        idx = GroupIndex()
        for item in fe:
            if isinstance(item, tuple):
                a, b = item
                ga = make_grouping(a, df[a].to_numpy(), allow_single=True)
                gb = make_grouping(b, df[b].to_numpy(), allow_single=True)
                idx._append(combine(ga, gb, allow_single=True))  # noqa: SLF001
            else:
                idx._append(make_grouping(item, df[item].to_numpy(), allow_single=True))  # noqa: SLF001
        for fe_col, cov in slopes.items():
            base = idx[fe_col] if fe_col in idx.names else make_grouping(
                fe_col, df[fe_col].to_numpy(), allow_single=True,
            )
            for spec in varying_slope(
                base, df[cov].to_numpy(), include_intercept=False, name=f"{fe_col}[{cov}]",
            ):
                idx._append(spec)  # noqa: SLF001
        return cls(
            y=df[y].to_numpy(dtype=np.float64),
            X=df[list(x)].to_numpy(dtype=np.float64) if x else np.zeros((len(df), 0)),
            x_names=tuple(x),
            groupings=tuple(idx.to_list()),
            weights=None if weights is None else df[weights].to_numpy(dtype=np.float64),
            offset=None if offset is None else df[offset].to_numpy(dtype=np.float64),
            n_missing_dropped=n_dropped,
        )


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class FitFlags:
    """Recoverable conditions met during one fit.

    ``slow_convergence`` is set when either the centering or the split of the
    absorbed part into per-level effects hit its iteration cap.
    """

    collinear: tuple[str, ...] = ()
    slow_convergence: bool = False
    underidentified: tuple[str, ...] = ()
    degenerate_dropped: tuple[str, ...] = ()
    dropped_singletons: int = 0
    dropped_perfect: int = 0
    dropped_missing: int = 0
    intercept_added: bool = False


@dataclass(frozen=True)
class FitResult:
    """Immutable outcome of one estimation.

    Attributes
    ----------
    coef : pd.Series
        Coefficients aligned with the regressor columns; dropped columns are
        NaN.
    fixef : dict[str, pd.Series]
        Level estimates per grouping; reference levels are exactly 0.0.
    vcov : pd.DataFrame
        Covariance of all estimated parameters (non-linear first, then the
        regressors); rows and columns of dropped regressors are NaN.
    stats : dict[str, float]
        Deviance, log-likelihood, null deviance, pseudo-R², R², within-R²,
        n_obs, df_model, df_resid, fe_dof and dispersion.
    converged, n_iter, flags
        Convergence diagnostics.
    vcov_kind : str
        ``"iid"``, ``"hetero"`` or ``"cluster"``.
    df_t : int | None
        Degrees of freedom of t-based inference; None for normal inference.
    """

    coef: pd.Series
    fixef: dict[str, pd.Series]
    vcov: pd.DataFrame
    stats: dict[str, float]
    converged: bool
    n_iter: int
    flags: FitFlags
    vcov_kind: str = "iid"
    df_t: int | None = None
    fitted: NDArray[np.float64] | None = None
    resid: NDArray[np.float64] | None = None
    linear_predictor: NDArray[np.float64] | None = None
    nl_coef: pd.Series | None = None
    iv_stats: dict[str, Any] | None = None
    model_info: dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        head = ", ".join(f"{k}={v}" for k, v in self.model_info.items())
        return f"FitResult(k={len(self.coef)}, n={self.n_obs}, {head})"

    @property
    def n_obs(self) -> int:
        return int(self.stats.get("n_obs", 0))

    @property
    def params(self) -> pd.Series:
        """All estimated parameters in ``vcov`` order."""
        if self.nl_coef is None:
            return self.coef
        return pd.concat([self.nl_coef, self.coef])

    @property
    def se(self) -> pd.Series:
        return pd.Series(np.sqrt(np.diag(self.vcov.to_numpy())), index=self.vcov.index, name="se")

    @property
    def tstat(self) -> pd.Series:
        return (self.params / self.se).rename("t")

    @property
    def pvalue(self) -> pd.Series:
        t = np.abs(self.tstat.to_numpy())
        if self.df_t is not None and self.df_t > 0:
            p = 2.0 * stats.t.sf(t, self.df_t)
        else:
            p = 2.0 * stats.norm.sf(t)
        return pd.Series(p, index=self.vcov.index, name="p")

    def confint(self, level: float | None = 0.95) -> pd.DataFrame:
        """Wald confidence intervals."""
        lv = normalize_ci_level(level)
        q = 0.5 + lv / 2.0
        crit = stats.t.ppf(q, self.df_t) if self.df_t is not None and self.df_t > 0 else stats.norm.ppf(q)
        est = self.params
        half = crit * self.se
        return pd.DataFrame({"lower": est - half, "upper": est + half})


# ---------------------------------------------------------------------
# Estimator base
# ---------------------------------------------------------------------


@dataclass
class _Prepared:
    """Screened design plus the bookkeeping needed to build the result."""

    design: Design
    mask: NDArray[np.bool_]
    degenerate: tuple[str, ...] = ()
    dropped_singletons: int = 0
    dropped_perfect: int = 0
    intercept_added: bool = False


def _check_grouping(g: GroupingSpec) -> None:
    if not g.is_slope and np.unique(g.codes).shape[0] <= 1:
        raise DegenerateGroupingError(g.name)


def _screen_groupings(
    groupings: Sequence[GroupingSpec], degenerate: list[str],
) -> list[GroupingSpec]:
    """Groupings with more than one level; the rest are warned about and named in ``degenerate``."""
    kept: list[GroupingSpec] = []
    for g in groupings:
        try:
            _check_grouping(g)
        except DegenerateGroupingError as err:
            warnings.warn(f"{err}; dropping it.", UserWarning, stacklevel=4)
            degenerate.append(g.name)
            continue
        kept.append(g)
    return kept


class BaseEstimator(ABC):
    """Abstract base class for all ``hdfereg`` estimators.

    Principles
    ----------
    1) All linear algebra goes through ``core.linalg``.
    2) FE absorption goes through ``core.fe``.
    3) One fit owns one ``ThreadedReduction`` pool, closed when it returns.

    Parameters
    ----------
    design : Design, optional
        Prepared input; alternatively pass ``y``, ``X`` and ``fe``.
    y, X, fe, weights, offset, x_names
        Forwarded to :meth:`Design.from_arrays` when ``design`` is None.
    add_intercept : bool
        Add a ``_cons`` column when no fixed-effect grouping remains.
    """

    def __init__(  # noqa: PLR0913
        self,
        design: Design | None = None,
        *,
        y: Any = None,
        X: Any = None,
        fe: Any = None,
        weights: Any = None,
        offset: Any = None,
        x_names: Sequence[str] | None = None,
        add_intercept: bool = True,
    ) -> None:
        if design is None:
            if y is None:
                msg = "pass either a Design or at least y."
                raise ValueError(msg)
            design = Design.from_arrays(
                y, X, fe=fe, weights=weights, offset=offset, x_names=x_names,
            )
        elif not isinstance(design, Design):
            msg = "design must be a Design instance."
            raise TypeError(msg)
        self.design = design
        self.add_intercept = bool(add_intercept)
        self._results: FitResult | None = None

    @abstractmethod
    def fit(self, *args: Any, **kwargs: Any) -> FitResult:
        """Fit the estimator and return a FitResult."""

    # -- convenience accessors ----------------------------------------
    @property
    def results(self) -> FitResult:
        if self._results is None:
            msg = "Model has not been fitted yet. Call .fit() first."
            raise RuntimeError(msg)
        return self._results

    @property
    def coef(self) -> pd.Series:
        return self.results.coef

    @property
    def se(self) -> pd.Series:
        return self.results.se

    # -- protected helpers for subclasses ------------------------------
    def _prepare(self, config: EngineConfig, family: Family | None = None) -> _Prepared:
        """Drop degenerate groupings, singletons and perfectly predicted rows."""
        design = self.design
        degenerate: list[str] = []
        kept = _screen_groupings(design.groupings, degenerate)
        mask = np.ones(design.n_obs, dtype=bool)
        n_single = 0
        if config.drop_singletons and kept:
            keep = drop_singletons(kept)
            n_single = int((~keep).sum())
            mask &= keep
        n_perfect = 0
        kind = getattr(family, "separation_kind", None)
        if kind is not None and kept:
            sub = subset_groupings(kept, mask)
            keep_sub = perfect_prediction_mask(sub, design.y[mask], kind=kind)
            n_perfect = int((~keep_sub).sum())
            idx = np.flatnonzero(mask)
            mask[idx[~keep_sub]] = False
        if n_single:
            _LOGGER.info("dropped %d singleton observation(s)", n_single)
        if n_perfect:
            _LOGGER.info("dropped %d observation(s) in perfectly predicted levels", n_perfect)
        if not mask.any():
            msg = "no observations left after dropping singletons and perfectly predicted levels."
            raise ValueError(msg)
        prepared = design.replace(groupings=tuple(kept))
        if not mask.all():
            prepared = prepared.subset(mask)
            # drops can leave a single observed level
            prepared = prepared.replace(
                groupings=tuple(_screen_groupings(prepared.groupings, degenerate)),
            )
        intercept_added = False
        if not prepared.groupings and self.add_intercept and CONST_NAME not in prepared.x_names:
            prepared = prepared.replace(
                X=np.column_stack([prepared.X, np.ones(prepared.n_obs)]),
                x_names=(*prepared.x_names, CONST_NAME),
            )
            intercept_added = True
        return _Prepared(
            design=prepared,
            mask=mask,
            degenerate=tuple(degenerate),
            dropped_singletons=n_single,
            dropped_perfect=n_perfect,
            intercept_added=intercept_added,
        )

    @staticmethod
    def _resolve_vcov(vcov: str | None, cluster: Any) -> str:
        if vcov is None:
            return "cluster" if cluster is not None else "iid"
        kind = str(vcov).lower()
        aliases = {"hc1": "hetero", "robust": "hetero", "white": "hetero", "cl": "cluster"}
        return aliases.get(kind, kind)

    @staticmethod
    def _cluster_spec(cluster: Any, mask: NDArray[np.bool_], n_full: int) -> ClusterSpec | None:
        if cluster is None:
            return None
        spec = ClusterSpec.from_labels(cluster)
        if spec.n_dims and spec.dims[0].n_obs != n_full:
            msg = "cluster labels must have one entry per observation of the design."
            raise ValueError(msg)
        return spec.subset(mask) if not mask.all() else spec

    def _build_result(  # noqa: PLR0913, PLR0915
        self,
        state: FitState,
        prep: _Prepared,
        *,
        family: Family,
        vcov: str,
        clusters: ClusterSpec | None,
        config: EngineConfig,
        pool: ThreadedReduction,
        param_names: Sequence[str] | None = None,
        n_nl: int = 0,
        model_info: dict[str, Any] | None = None,
        iv_stats: dict[str, Any] | None = None,
    ) -> FitResult:
        """Assemble the frozen result: statistics, covariance and fixed effects."""
        d = prep.design
        y, w = d.y, d.weights
        n = d.n_obs
        names = list(param_names) if param_names is not None else list(d.x_names)
        sol = state.solution
        keep = sol.keep if sol is not None else np.zeros(len(names), dtype=bool)
        rank = int(keep.sum())

        collinear = tuple(names[j] for j in np.flatnonzero(~keep))
        for lab in collinear:
            warnings.warn(
                f"regressor '{lab}' is collinear with other regressors or the fixed "
                "effects and was dropped.",
                CollinearRegressor,
                stacklevel=3,
            )

        fe_info = compute_fe_dof(d.groupings)
        fe_dof = int(fe_info["fe_dof"])
        df_resid = n - rank - fe_dof
        if df_resid <= 0:
            msg = f"no residual degrees of freedom (n={n}, parameters={rank + fe_dof})."
            raise ValueError(msg)

        is_linear = isinstance(family, Gaussian)
        resid_resp = y - state.mu
        if is_linear:
            dispersion = float(np.sum(w * state.work_resid**2) / df_resid)
        else:
            dispersion = family.dispersion(y, state.mu, w, df_resid)
        dev = float(state.deviance)
        null_dev = family.deviance(y, family.null_mean(y, w), w)
        stats_out: dict[str, float] = {
            "n_obs": float(n),
            "df_model": float(rank),
            "df_resid": float(df_resid),
            "fe_dof": float(fe_dof),
            "deviance": dev,
            "null_deviance": float(null_dev),
            "loglik": float(family.loglik(y, state.mu, w, scale=dispersion)),
            "pseudo_r2": float(1.0 - dev / null_dev) if null_dev > 0 else np.nan,
            "dispersion": float(dispersion),
            "r2": np.nan,
            "within_r2": np.nan,
        }
        if is_linear:
            ybar = float(np.sum(w * y) / np.sum(w))
            tss = float(np.sum(w * (y - ybar) ** 2))
            ssr = float(np.sum(w * resid_resp**2))
            stats_out["r2"] = 1.0 - ssr / tss if tss > 0 else np.nan
            if d.groupings and not n_nl:
                if state.y_centered is not None:
                    y_within = state.y_centered
                else:
                    b = np.nan_to_num(np.asarray(state.coef), nan=0.0)
                    y_within = state.work_resid + state.X_centered @ b
                wtss = float(np.sum(w * y_within**2))
                stats_out["within_r2"] = 1.0 - ssr / wtss if wtss > 0 else np.nan
        if isinstance(family, NegativeBinomial):
            stats_out["theta"] = float(family.theta)

        # covariance on the kept columns
        kept_idx = np.flatnonzero(keep)
        est = CovarianceEstimator(
            state.X_centered[:, kept_idx], state.work_weights, state.work_resid, pool,
        )
        n_params = rank + fe_dof
        if vcov == "cluster" and clusters is not None and clusters.n_dims:
            n_params = rank + int(compute_fe_dof(d.groupings, clusters=clusters.dims)["fe_dof"])
        sigma2 = dispersion if (is_linear or family.estimate_scale) else 1.0
        vres = est.compute(
            vcov,
            n_params=n_params,
            sigma2=sigma2,
            clusters=clusters,
            cluster_df=config.cluster_df,
        )
        full = np.full((len(names), len(names)), np.nan)
        full[np.ix_(kept_idx, kept_idx)] = vres.matrix
        vcov_df = pd.DataFrame(full, index=names, columns=names)

        df_t: int | None = None
        if is_linear:
            df_t = vres.df_t if vres.kind == "cluster" else df_resid

        fixef: dict[str, pd.Series] = {}
        under: tuple[str, ...] = ()
        if state.fixef is not None:
            for g in d.groupings:
                vals = state.fixef.values[g.name]
                fixef[g.name] = pd.Series(vals, index=g.level_labels(), name=g.name)
            under = tuple(state.fixef.underidentified)

        coef_all = np.asarray(state.coef, dtype=np.float64)
        coef = pd.Series(coef_all, index=names[n_nl:], name="coef")
        nl_coef = None
        if n_nl:
            nl_coef = pd.Series(np.asarray(state.nl_coef), index=names[:n_nl], name="nl_coef")

        slow = not state.centering_converged
        if state.fixef is not None and not state.fixef.converged:
            slow = True
        info = {"family": repr(family), "vcov": vres.kind, "n_groupings": len(d.groupings)}
        if vres.n_clusters:
            info["n_clusters"] = vres.n_clusters
        info.update(model_info or {})
        flags = FitFlags(
            collinear=collinear,
            slow_convergence=slow,
            underidentified=under,
            degenerate_dropped=prep.degenerate,
            dropped_singletons=prep.dropped_singletons,
            dropped_perfect=prep.dropped_perfect,
            dropped_missing=self.design.n_missing_dropped,
            intercept_added=prep.intercept_added,
        )
        return FitResult(
            coef=coef,
            fixef=fixef,
            vcov=vcov_df,
            stats=stats_out,
            converged=bool(state.converged),
            n_iter=int(state.iteration),
            flags=flags,
            vcov_kind=vres.kind,
            df_t=df_t,
            fitted=state.mu,
            resid=resid_resp,
            linear_predictor=state.eta,
            nl_coef=nl_coef,
            iv_stats=iv_stats,
            model_info=info,
        )

    @staticmethod
    def _pool(config: EngineConfig) -> ThreadedReduction:
        return ThreadedReduction.from_config(config)
