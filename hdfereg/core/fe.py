"""Fixed-effects centering and recovery.

This module removes any number of fixed-effect groupings (and per-level
slopes) from the columns of a matrix by alternating projections, recovers
the per-level effects from a vector lying in their span, normalizes them
with explicit reference levels, and counts the absorbed degrees of freedom.

Groupings are visited in the order they are given; that order is part of
the reproducibility contract (it changes the speed of convergence, never the
fixed point).
"""

# hdfereg/core/fe.py
from __future__ import annotations

import logging
import warnings
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from .errors import SlowConvergenceWarning, UnderidentifiedFixedEffects
from .groups import GroupingSpec, connected_components
from .linalg import _validate_weights
from .parallel import ThreadedReduction

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

__all__ = [
    "CenteringResult",
    "FixedEffectLevels",
    "center",
    "compute_fe_dof",
    "normalize_references",
    "recover_fe",
]

_LOGGER = logging.getLogger(__name__)
_LOG_EVERY = 500


@dataclass(slots=True)
class CenteringResult:
    """Output of :func:`center`.

    Attributes
    ----------
    residual : np.ndarray
        Centered columns, shape (n, p).
    converged : bool
        False when the iteration cap stopped the projections.
    n_iter : int
        Number of full passes over the groupings.
    max_change : float
        Largest relative change of the last plain pass.
    coefficients : list[np.ndarray] | None
        Per grouping, the (L, p) level effects removed from each column.
    """

    residual: NDArray[np.float64]
    converged: bool
    n_iter: int
    max_change: float
    coefficients: list[NDArray[np.float64]] | None = None


@dataclass(slots=True)
class FixedEffectLevels:
    """Normalized level estimates of every grouping."""

    values: dict[str, NDArray[np.float64]]
    references: dict[str, list[int]] = field(default_factory=dict)
    underidentified: list[str] = field(default_factory=list)
    converged: bool = True


# ---------------------------------------------------------------------
# Projection operators
# ---------------------------------------------------------------------


class _Projector:
    """Per-grouping weighted projection shared by every column.

    Denominators (sum of weights, or of weight * slope**2) are computed once
    per call; each projection is then one threaded group sum and one
    scatter.
    """

    def __init__(
        self,
        groupings: Sequence[GroupingSpec],
        w: NDArray[np.float64],
        pool: ThreadedReduction,
    ) -> None:
        self.groupings = list(groupings)
        self.pool = pool
        self.mult: list[NDArray[np.float64]] = []
        self.inv: list[NDArray[np.float64]] = []
        for g in self.groupings:
            if g.slope is None:
                m = w
                den = pool.group_sum(w, g.codes, g.n_levels)
            else:
                m = w * g.slope
                den = pool.group_sum(m * g.slope, g.codes, g.n_levels)
            inv = np.zeros_like(den)
            pos = den > 0
            inv[pos] = 1.0 / den[pos]
            self.mult.append(m)
            self.inv.append(inv)

    def level_effects(self, j: int, A: NDArray[np.float64]) -> NDArray[np.float64]:
        """Weighted group-j mean (or slope) of every column of ``A``, (L, p)."""
        g = self.groupings[j]
        sums = self.pool.group_sum(A * self.mult[j][:, None], g.codes, g.n_levels)
        return sums * self.inv[j][:, None]

    def expand(self, j: int, effects: NDArray[np.float64]) -> NDArray[np.float64]:
        """Observation-level contribution of level ``effects``, (n, p)."""
        g = self.groupings[j]
        out = effects[g.codes]
        if g.slope is not None:
            out = out * g.slope[:, None]
        return out

    def sweep(self, A: NDArray[np.float64]) -> NDArray[np.float64]:
        """One pass over all groupings in order."""
        for j in range(len(self.groupings)):
            A = A - self.expand(j, self.level_effects(j, A))
        return A


def _irons_tuck(
    A_k: NDArray[np.float64],
    A_km1: NDArray[np.float64],
    A_km2: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Irons-Tuck extrapolation of the sequence A_km2, A_km1, A_k.

    One step length is shared by all columns so that the map stays linear in
    the input columns.
    """
    d1 = A_km1 - A_km2
    d2 = A_k - A_km1
    delta = d2 - d1
    denom = float(np.sum(delta * delta))
    if not np.isfinite(denom) or denom <= 0.0:
        return A_k
    alpha = -float(np.sum(d2 * delta)) / denom
    return A_k + alpha * d2


def _relative_change(
    A_new: NDArray[np.float64], A_old: NDArray[np.float64], scale: NDArray[np.float64],
) -> float:
    if A_new.size == 0:
        return 0.0
    diff = np.max(np.abs(A_new - A_old), axis=0) / scale
    return float(np.max(diff))


def _as_matrix(X: Any) -> tuple[NDArray[np.float64], bool]:
    arr = np.array(X, dtype=np.float64, copy=True)
    if arr.ndim == 1:
        return arr.reshape(-1, 1), True
    if arr.ndim != 2:
        msg = "center expects a vector or a 2-D matrix"
        raise ValueError(msg)
    return arr, False


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------


def center(  # noqa: PLR0913
    X: Any,
    groupings: Sequence[GroupingSpec],
    *,
    weights: Sequence[float] | NDArray[np.float64] | None = None,
    tol: float = 1e-8,
    max_iter: int = 10000,
    pool: ThreadedReduction | None = None,
    accel: str = "irons_tuck",
    return_coefficients: bool = False,
) -> CenteringResult:
    """Project the columns of ``X`` off the span of all groupings.

    Alternating projections: each pass replaces the current residual by
    itself minus its weighted group mean for every intercept grouping, and
    minus the per-level weighted regression fit on the covariate for every
    slope grouping, in the given order. Passes repeat until the largest
    relative change of a pass is at most ``tol`` (relative to each column's
    largest absolute value) or ``max_iter`` passes were made.

    Parameters
    ----------
    X : array-like, shape (n,) or (n, p)
        Columns to center; all share the same passes.
    groupings : sequence of GroupingSpec
        Fixed-effect dimensions, visited in this order.
    weights : array-like, optional
        Observation weights (non-negative).
    tol : float
        Relative convergence tolerance.
    max_iter : int
        Maximum number of passes.
    pool : ThreadedReduction, optional
        Worker pool for the group sums; a single-thread pool when omitted.
    accel : {"irons_tuck", "none"}
        Extrapolate every two passes (same fixed point) or plain passes.
    return_coefficients : bool
        Also return the per-level effects removed from each column.

    Returns
    -------
    CenteringResult
        The residual has the shape of ``X`` (vectors stay vectors).

    Warns
    -----
    SlowConvergenceWarning
        When the cap is reached; the best residual seen is returned.
    """
    A0, was_vector = _as_matrix(X)
    n, p = A0.shape
    groupings = list(groupings)
    for g in groupings:
        if g.n_obs != n:
            msg = f"grouping '{g.name}' has {g.n_obs} observations, X has {n}"
            raise ValueError(msg)
    if accel not in {"irons_tuck", "none"}:
        msg = "accel must be 'irons_tuck' or 'none'"
        raise ValueError(msg)
    w = (
        np.ones(n, dtype=np.float64)
        if weights is None
        else _validate_weights(weights, n)
    )
    pool = pool if pool is not None else ThreadedReduction(1)

    def _finish(res: CenteringResult) -> CenteringResult:
        if return_coefficients:
            res.coefficients = _decompose(
                A0 - res.residual, groupings, w, pool, tol=tol, max_iter=max_iter,
            )[0]
        if was_vector:
            res.residual = res.residual.reshape(-1)
        return res

    if not groupings or n == 0:
        return _finish(CenteringResult(A0.copy(), True, 0, 0.0))

    proj = _Projector(groupings, w, pool)
    scale = np.max(np.abs(A0), axis=0) if n else np.ones(p)
    scale = np.where(scale > 0.0, scale, 1.0)

    # A single grouping is an exact projection.
    if len(groupings) == 1:
        return _finish(CenteringResult(proj.sweep(A0), True, 1, 0.0))

    A = A0
    best_A = A0
    best_change = np.inf
    change = np.inf
    it = 0
    converged = False
    while it < max_iter:
        if accel == "irons_tuck":
            Y1 = proj.sweep(A)
            Y2 = proj.sweep(Y1)
            it += 2
            change = _relative_change(Y2, Y1, scale)
            if change < best_change:
                best_change, best_A = change, Y2
            if change <= tol:
                A = Y2
                converged = True
                break
            A = _irons_tuck(Y2, Y1, A)
        else:
            A_new = proj.sweep(A)
            it += 1
            change = _relative_change(A_new, A, scale)
            A = A_new
            if change < best_change:
                best_change, best_A = change, A
            if change <= tol:
                converged = True
                break
        if it % _LOG_EVERY == 0:
            _LOGGER.debug("center: pass %d, max relative change %.3e", it, change)

    if not converged:
        warnings.warn(
            f"alternating projections did not reach tol={tol:.1e} after {it} passes "
            f"(max relative change {best_change:.3e}); returning best residual.",
            SlowConvergenceWarning,
            stacklevel=2,
        )
        A = best_A
        change = best_change
    _LOGGER.debug("center: %d passes, converged=%s, change=%.3e", it, converged, change)
    return _finish(CenteringResult(A, converged, it, float(change)))


def _decompose(
    D: NDArray[np.float64],
    groupings: Sequence[GroupingSpec],
    w: NDArray[np.float64],
    pool: ThreadedReduction,
    *,
    tol: float,
    max_iter: int,
) -> tuple[list[NDArray[np.float64]], bool]:
    """Gauss-Seidel split of columns ``D`` (in the groupings' span) into levels."""
    D = D.reshape(D.shape[0], -1)
    proj = _Projector(groupings, w, pool)
    coefs = [np.zeros((g.n_levels, D.shape[1]), dtype=np.float64) for g in groupings]
    if not groupings:
        return coefs, True
    scale = np.max(np.abs(D), axis=0) if D.size else np.ones(D.shape[1])
    scale = np.where(scale > 0.0, scale, 1.0)
    r = D.copy()
    for it in range(1, max_iter + 1):
        biggest = 0.0
        for j in range(len(groupings)):
            eff = proj.level_effects(j, r)
            coefs[j] += eff
            r = r - proj.expand(j, eff)
            if eff.size:
                biggest = max(biggest, float(np.max(np.abs(eff) / scale[None, :])))
        if biggest <= tol:
            _LOGGER.debug("recover: %d sweeps", it)
            return coefs, True
    return coefs, False


def normalize_references(
    coefs: Sequence[NDArray[np.float64]],
    groupings: Sequence[GroupingSpec],
) -> tuple[list[NDArray[np.float64]], dict[str, list[int]], list[str]]:
    """Fix one reference level per connected component to zero.

    The first intercept grouping absorbs the overall level. For every later
    intercept grouping, each connected component it forms with the first
    grouping gets its lowest level as reference: that level's effect is moved
    onto the first grouping's levels of the same component, which leaves every
    observation's total effect unchanged. Slope groupings are identified on
    their own and are left as is.

    Returns
    -------
    values : list of ndarray
    references : dict
        Reference level indices per grouping name.
    underidentified : list of str
        Groupings that needed more than one reference, or whose levels are
        split into several components relative to another later grouping.
    """
    values = [np.array(c, dtype=np.float64, copy=True) for c in coefs]
    refs: dict[str, list[int]] = {}
    under: list[str] = []
    intercepts = [j for j, g in enumerate(groupings) if not g.is_slope]
    if len(intercepts) < 2:
        return values, refs, under
    first = intercepts[0]
    g0 = groupings[first]
    for j in intercepts[1:]:
        g = groupings[j]
        n_comp, comp0, compj = connected_components(g0, g)
        refs[g.name] = []
        present = np.zeros(g.n_levels, dtype=bool)
        present[g.codes] = True
        for c in range(n_comp):
            levels = np.flatnonzero((compj == c) & present)
            if levels.size == 0:
                continue
            ref = int(levels.min())
            shift = values[j][ref].copy()
            values[j][levels] -= shift
            values[first][comp0 == c] += shift
            refs[g.name].append(ref)
        if len(refs[g.name]) > 1:
            under.append(g.name)
    later = intercepts[1:]
    for a_pos, a in enumerate(later):
        for b in later[a_pos + 1:]:
            n_comp, _, _ = connected_components(groupings[a], groupings[b])
            if n_comp > 1 and groupings[b].name not in under:
                under.append(groupings[b].name)
    return values, refs, under


def recover_fe(  # noqa: PLR0913
    fe_part: Any,
    groupings: Sequence[GroupingSpec],
    *,
    weights: Sequence[float] | NDArray[np.float64] | None = None,
    tol: float = 1e-10,
    max_iter: int = 10000,
    pool: ThreadedReduction | None = None,
) -> FixedEffectLevels:
    """Recover normalized per-level effects from their observation-level sum.

    Parameters
    ----------
    fe_part : array-like, shape (n,)
        Sum of all fixed-effect contributions of every observation, e.g.
        ``y - X @ beta - residual`` for a linear fit.
    groupings : sequence of GroupingSpec

    Returns
    -------
    FixedEffectLevels
        ``values[name]`` has one entry per level; reference levels are
        exactly zero.

    Warns
    -----
    UnderidentifiedFixedEffects
        When some grouping needed more than one reference level; such levels
        are only comparable within their connected component.
    SlowConvergenceWarning
        When the Gauss-Seidel split did not converge.
    """
    d = np.asarray(fe_part, dtype=np.float64).reshape(-1, 1)
    n = d.shape[0]
    w = np.ones(n) if weights is None else _validate_weights(weights, n)
    pool = pool if pool is not None else ThreadedReduction(1)
    coefs, converged = _decompose(d, groupings, w, pool, tol=tol, max_iter=max_iter)
    if not converged:
        warnings.warn(
            f"fixed-effect recovery did not converge after {max_iter} sweeps.",
            SlowConvergenceWarning,
            stacklevel=2,
        )
    flat = [c[:, 0] for c in coefs]
    values, refs, under = normalize_references(flat, groupings)
    if under:
        warnings.warn(
            "fixed effects of "
            + ", ".join(repr(u) for u in under)
            + " need more than one reference level; levels are comparable only "
            "within their connected component.",
            UnderidentifiedFixedEffects,
            stacklevel=2,
        )
    return FixedEffectLevels(
        values={g.name: v for g, v in zip(groupings, values)},
        references=refs,
        underidentified=under,
        converged=converged,
    )


def _nested_in(g: GroupingSpec, cluster: GroupingSpec) -> bool:
    """Every level of ``g`` maps to a single cluster."""
    pairs = np.unique(np.column_stack([g.codes, cluster.codes]), axis=0)
    return int(pairs.shape[0]) == int(np.unique(g.codes).shape[0])


def compute_fe_dof(
    groupings: Sequence[GroupingSpec],
    *,
    clusters: Sequence[GroupingSpec] | None = None,
) -> dict[str, Any]:
    """Number of parameters absorbed by the groupings.

    Exact for two intercept groupings (levels minus connected components);
    for three or more the redundancy of grouping k is the largest number of
    components it forms with any earlier grouping. Slope groupings count the
    levels whose covariate is identified (non-zero, and non-constant when an
    intercept grouping on the same levels is present). When ``clusters`` are
    given, intercept groupings nested in a cluster dimension count zero.

    Returns
    -------
    dict
        ``fe_dof``, ``levels_per_fe``, ``redundant`` (per grouping) and
        ``nested`` (per grouping).
    """
    groupings = list(groupings)
    levels = [int(g.n_levels) for g in groupings]
    redundant = [0] * len(groupings)
    nested = [False] * len(groupings)
    intercepts = [j for j, g in enumerate(groupings) if not g.is_slope]
    for pos, j in enumerate(intercepts):
        if pos == 0:
            continue
        redundant[j] = max(
            connected_components(groupings[i], groupings[j])[0]
            for i in intercepts[:pos]
        )
    for j, g in enumerate(groupings):
        if not g.is_slope:
            continue
        z = g.slope
        zz = np.bincount(g.codes, weights=z * z, minlength=g.n_levels)
        active = zz > 0
        same_levels = any(
            (not h.is_slope) and np.array_equal(h.codes, g.codes) for h in groupings
        )
        if same_levels:
            cnt = np.bincount(g.codes, minlength=g.n_levels).astype(np.float64)
            zs = np.bincount(g.codes, weights=z, minlength=g.n_levels)
            with np.errstate(invalid="ignore", divide="ignore"):
                var = np.where(cnt > 0, zz / cnt - (zs / np.maximum(cnt, 1.0)) ** 2, 0.0)
            active &= var > 1e-12 * np.maximum(zz / np.maximum(cnt, 1.0), 1e-300)
        redundant[j] = int(g.n_levels - np.sum(active))
    if clusters:
        for j in intercepts:
            if any(_nested_in(groupings[j], c) for c in clusters):
                nested[j] = True
                redundant[j] = levels[j]
    fe_dof = int(sum(L - M for L, M in zip(levels, redundant)))
    return {
        "fe_dof": max(0, fe_dof),
        "levels_per_fe": levels,
        "redundant": redundant,
        "nested": nested,
    }
