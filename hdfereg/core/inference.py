"""Sandwich covariance matrices for fitted models.

The bread is the inverse of the weighted cross-product of the centered
regressors at the converged working weights; the meat is built from the
per-observation scores ``x_i * w_i * r_i``. Multi-way clustering (up to four
dimensions) combines one meat per non-empty subset of dimensions by
inclusion-exclusion, clustering on the intersection of the subset.
"""

# hdfereg/core/inference.py
from __future__ import annotations

import itertools
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from .groups import GroupingSpec, make_grouping, subset_groupings
from .linalg import force_psd
from .parallel import ThreadedReduction

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

__all__ = ["ClusterSpec", "CovarianceEstimator", "VcovResult", "small_sample_factor"]

_LOGGER = logging.getLogger(__name__)

MAX_CLUSTER_DIMS = 4
_KINDS = {"iid", "hetero", "cluster"}


@dataclass(frozen=True)
class ClusterSpec:
    """Zero to four cluster dimensions, independent of the fixed effects."""

    dims: tuple[GroupingSpec, ...] = ()

    def __post_init__(self) -> None:
        dims = tuple(self.dims)
        object.__setattr__(self, "dims", dims)
        if len(dims) > MAX_CLUSTER_DIMS:
            msg = f"at most {MAX_CLUSTER_DIMS} cluster dimensions are supported; got {len(dims)}."
            raise ValueError(msg)
        if dims:
            n = dims[0].n_obs
            if any(d.n_obs != n for d in dims):
                msg = "all cluster dimensions must have the same length."
                raise ValueError(msg)

    @classmethod
    def from_labels(
        cls,
        clusters: Mapping[str, Any] | Sequence[Any] | Any,
    ) -> ClusterSpec:
        """Build from a mapping name -> labels, a list of label arrays, or one array."""
        if isinstance(clusters, ClusterSpec):
            return clusters
        if isinstance(clusters, GroupingSpec):
            return cls((clusters,))
        if isinstance(clusters, Mapping):
            items = list(clusters.items())
        else:
            arr = np.asarray(clusters, dtype=object)
            if arr.ndim == 1:
                items = [("cluster", clusters)]
            elif isinstance(clusters, (list, tuple)):
                items = [(f"cluster{j}", c) for j, c in enumerate(clusters)]
            else:
                items = [(f"cluster{j}", arr[:, j]) for j in range(arr.shape[1])]
        dims = tuple(
            d if isinstance(d, GroupingSpec) else make_grouping(name, d, allow_single=True)
            for name, d in items
        )
        return cls(dims)

    @property
    def names(self) -> list[str]:
        return [d.name for d in self.dims]

    @property
    def n_dims(self) -> int:
        return len(self.dims)

    def subset(self, mask: NDArray[np.bool_]) -> ClusterSpec:
        return ClusterSpec(tuple(subset_groupings(list(self.dims), mask)))


def small_sample_factor(n: int, k: int, n_clusters: int | None = None) -> float:
    """(n-1)/(n-k), times G/(G-1) when ``n_clusters`` is given."""
    if n - k <= 0:
        msg = f"no residual degrees of freedom (n={n}, k={k})."
        raise ValueError(msg)
    f = (n - 1.0) / (n - k)
    if n_clusters is not None:
        if n_clusters < 2:
            msg = "cluster-robust covariance needs at least two clusters."
            raise ValueError(msg)
        f *= n_clusters / (n_clusters - 1.0)
    return float(f)


@dataclass(frozen=True)
class VcovResult:
    matrix: NDArray[np.float64]
    kind: str
    n_clusters: tuple[int, ...] = ()
    n_clipped: int = 0

    @property
    def df_t(self) -> int | None:
        """Degrees of freedom for t-based inference under clustering (G_min - 1)."""
        return min(self.n_clusters) - 1 if self.n_clusters else None


def _intersection_codes(dims: Sequence[GroupingSpec]) -> tuple[NDArray[np.int64], int]:
    if len(dims) == 1:
        return dims[0].codes, dims[0].n_levels
    stacked = np.column_stack([d.codes for d in dims])
    _, inv = np.unique(stacked, axis=0, return_inverse=True)
    inv = np.asarray(inv).reshape(-1)
    return inv.astype(np.int64), int(inv.max()) + 1


class CovarianceEstimator:
    """Covariance of the coefficients of a converged fit.

    Parameters
    ----------
    X_centered : ndarray, shape (n, k)
        Centered regressors (kept columns only).
    weights : ndarray, shape (n,)
        Working weights at convergence.
    resid : ndarray, shape (n,)
        Working residuals at convergence.
    pool : ThreadedReduction, optional
    """

    def __init__(
        self,
        X_centered: NDArray[np.float64],
        weights: NDArray[np.float64],
        resid: NDArray[np.float64],
        pool: ThreadedReduction | None = None,
    ) -> None:
        self.X = np.asarray(X_centered, dtype=np.float64)
        self.w = np.asarray(weights, dtype=np.float64).reshape(-1)
        self.r = np.asarray(resid, dtype=np.float64).reshape(-1)
        self.pool = pool if pool is not None else ThreadedReduction(1)
        self.n, self.k = self.X.shape
        self._bread: NDArray[np.float64] | None = None
        self._scores: NDArray[np.float64] | None = None

    @property
    def bread(self) -> NDArray[np.float64]:
        if self._bread is None:
            X, w = self.X, self.w

            def _xtwx(s: int, e: int) -> NDArray[np.float64]:
                Xc = X[s:e]
                return (Xc * w[s:e, None]).T @ Xc

            xtwx = self.pool.map_reduce(_xtwx, self.n) if self.n else np.zeros((self.k, self.k))
            self._bread = np.linalg.pinv(0.5 * (xtwx + xtwx.T))
        return self._bread

    @property
    def scores(self) -> NDArray[np.float64]:
        """Per-observation score contributions, shape (n, k)."""
        if self._scores is None:
            X, wr = self.X, self.w * self.r
            self._scores = self.pool.map_rows(lambda s, e: X[s:e] * wr[s:e, None], self.n)
        return self._scores

    def _meat(self) -> NDArray[np.float64]:
        S = self.scores
        return self.pool.map_reduce(lambda s, e: S[s:e].T @ S[s:e], self.n)

    def iid(self, sigma2: float) -> VcovResult:
        """Classical covariance ``sigma2 * (X'WX)^-1``."""
        return VcovResult(float(sigma2) * self.bread, "iid")

    def hetero(self, n_params: int) -> VcovResult:
        """HC1 covariance with factor n / (n - K)."""
        if self.n - n_params <= 0:
            msg = f"no residual degrees of freedom (n={self.n}, k={n_params})."
            raise ValueError(msg)
        B = self.bread
        V = B @ self._meat() @ B * (self.n / (self.n - n_params))
        return VcovResult(0.5 * (V + V.T), "hetero")

    def cluster(
        self,
        spec: ClusterSpec,
        n_params: int,
        *,
        cluster_df: str = "min",
    ) -> VcovResult:
        """Multi-way cluster-robust covariance by inclusion-exclusion.

        Each non-empty subset S of the dimensions contributes
        ``(-1)**(|S|+1) * c_S * B M_S B`` where ``M_S`` sums outer products of
        scores summed within the intersection clusters of S. ``c_S`` is
        G/(G-1) with G the smallest single-dimension cluster count
        (``cluster_df="min"``) or the intersection's own count
        (``"conventional"``). The total is scaled by (n-1)/(n-K) and
        negative eigenvalues are clipped to zero.
        """
        if spec.n_dims == 0:
            msg = "cluster covariance requires at least one cluster dimension."
            raise ValueError(msg)
        if cluster_df not in {"min", "conventional"}:
            msg = "cluster_df must be 'min' or 'conventional'."
            raise ValueError(msg)
        for d in spec.dims:
            if d.n_obs != self.n:
                msg = f"cluster '{d.name}' has {d.n_obs} observations, the fit has {self.n}."
                raise ValueError(msg)
        counts = tuple(int(np.unique(d.codes).shape[0]) for d in spec.dims)
        g_min = min(counts)
        if g_min < 2:
            msg = "cluster-robust covariance needs at least two clusters per dimension."
            raise ValueError(msg)
        S = self.scores
        meat = np.zeros((self.k, self.k))
        for size in range(1, spec.n_dims + 1):
            sign = 1.0 if size % 2 == 1 else -1.0
            for combo in itertools.combinations(spec.dims, size):
                codes, G = _intersection_codes(combo)
                sums = self.pool.group_sum(S, codes, G)
                g_term = g_min if cluster_df == "min" else G
                c = g_term / (g_term - 1.0) if g_term > 1 else 1.0
                meat += sign * c * (sums.T @ sums)
        B = self.bread
        V = B @ meat @ B * ((self.n - 1.0) / (self.n - n_params))
        n_clip = 0
        if spec.n_dims > 1:
            V, n_clip = force_psd(V)
            if n_clip:
                _LOGGER.info("clipped %d negative eigenvalue(s) of the multi-way covariance", n_clip)
        return VcovResult(0.5 * (V + V.T), "cluster", counts, n_clip)

    def compute(
        self,
        kind: str,
        *,
        n_params: int,
        sigma2: float = 1.0,
        clusters: ClusterSpec | None = None,
        cluster_df: str = "min",
    ) -> VcovResult:
        """Dispatch on ``kind``; ``cluster`` without dimensions falls back to hetero."""
        if kind not in _KINDS:
            msg = f"vcov must be one of {sorted(_KINDS)}; got {kind!r}."
            raise ValueError(msg)
        if kind == "cluster":
            if clusters is None or clusters.n_dims == 0:
                _LOGGER.info("no cluster dimensions given; using heteroskedasticity-robust covariance")
                return self.hetero(n_params)
            return self.cluster(clusters, n_params, cluster_df=cluster_df)
        if kind == "hetero":
            return self.hetero(n_params)
        return self.iid(sigma2)
