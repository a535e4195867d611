"""Grouping indices for fixed-effect absorption.

Maps raw category labels to dense zero-based level codes, builds combined
groupings over observed label pairs and varying-slope groupings, and
provides the graph utilities (connected components, nesting, singleton and
perfect-prediction screens) used by centering and identification.
"""

# hdfereg/core/groups.py
from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.sparse.csgraph import connected_components as _cc

from .errors import DegenerateGroupingError

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

__all__ = [
    "GroupIndex",
    "GroupingSpec",
    "combine",
    "connected_components",
    "drop_singletons",
    "is_nested",
    "make_grouping",
    "perfect_prediction_mask",
    "subset_groupings",
    "to_codes",
    "varying_slope",
]

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class GroupingSpec:
    """One fixed-effect dimension.

    Attributes
    ----------
    name : str
        Identifier used to label output tables.
    codes : ndarray of int64, shape (n,)
        Dense level index of every observation, ``0..n_levels-1``.
    n_levels : int
        Number of levels.
    slope : ndarray of float64 or None
        Continuous covariate for a varying-slope grouping; the absorbed
        effect is ``slope * coef[level]`` instead of an intercept shift.
    labels : ndarray or None
        Original label of each level, used only for output.
    combined_from : tuple of str
        Names of the groupings this one was combined from.
    """

    name: str
    codes: NDArray[np.int64]
    n_levels: int
    slope: NDArray[np.float64] | None = None
    labels: NDArray[Any] | None = None
    combined_from: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        codes = np.asarray(self.codes, dtype=np.int64).reshape(-1)
        object.__setattr__(self, "codes", codes)
        if int(self.n_levels) < 1:
            msg = f"grouping '{self.name}' must have at least one level"
            raise ValueError(msg)
        if codes.size and (codes.min() < 0 or codes.max() >= int(self.n_levels)):
            msg = f"grouping '{self.name}' codes must lie in 0..n_levels-1"
            raise ValueError(msg)
        if self.slope is not None:
            slope = np.asarray(self.slope, dtype=np.float64).reshape(-1)
            if slope.shape[0] != codes.shape[0]:
                msg = f"slope covariate of '{self.name}' must align with codes"
                raise ValueError(msg)
            if not np.all(np.isfinite(slope)):
                msg = f"slope covariate of '{self.name}' contains NaN/Inf"
                raise ValueError(msg)
            object.__setattr__(self, "slope", slope)

    @property
    def n_obs(self) -> int:
        return int(self.codes.shape[0])

    @property
    def is_slope(self) -> bool:
        return self.slope is not None

    def level_labels(self) -> pd.Index:
        """Output index: original labels when known, else level positions."""
        if self.labels is not None and len(self.labels) == self.n_levels:
            return pd.Index(list(self.labels), name=self.name)
        return pd.RangeIndex(self.n_levels, name=self.name)


def to_codes(labels: Any) -> tuple[NDArray[np.int64], NDArray[Any]]:
    """Map arbitrary comparable labels to dense codes in sorted-label order.

    Returns
    -------
    codes : ndarray of int64
    uniques : ndarray
        ``uniques[code]`` is the original label.
    """
    arr = np.asarray(labels)
    if arr.ndim != 1:
        arr = arr.reshape(-1)
    codes, uniques = pd.factorize(arr, sort=True)
    if np.any(codes < 0):
        msg = "grouping labels contain missing values; drop those rows first"
        raise ValueError(msg)
    return codes.astype(np.int64, copy=False), np.asarray(uniques)


def make_grouping(
    name: str,
    labels: Any,
    *,
    slope: Any = None,
    allow_single: bool = False,
) -> GroupingSpec:
    """Build a :class:`GroupingSpec` from raw labels.

    Raises
    ------
    DegenerateGroupingError
        When an intercept grouping has exactly one level (it would only
        absorb a constant) and ``allow_single`` is False.
    """
    codes, uniques = to_codes(labels)
    L = int(uniques.shape[0])
    if L == 0:
        msg = f"grouping '{name}' is empty"
        raise ValueError(msg)
    if L == 1 and slope is None and not allow_single:
        raise DegenerateGroupingError(name)
    return GroupingSpec(
        name=str(name),
        codes=codes,
        n_levels=L,
        slope=None if slope is None else np.asarray(slope, dtype=np.float64),
        labels=uniques,
    )


def combine(
    a: GroupingSpec,
    b: GroupingSpec,
    *,
    name: str | None = None,
    allow_single: bool = False,
) -> GroupingSpec:
    """Interact two groupings into one dense index over observed pairs.

    Only pairs that occur in the data get a level; the result has at most
    ``min(n, La * Lb)`` levels. Labels are ``(label_a, label_b)`` tuples.
    A single observed pair raises :class:`DegenerateGroupingError` unless
    ``allow_single`` is True.
    """
    if a.n_obs != b.n_obs:
        msg = "combined groupings must have the same number of observations"
        raise ValueError(msg)
    keys = np.column_stack([a.codes, b.codes])
    uniq, inv = np.unique(keys, axis=0, return_inverse=True)
    inv = np.asarray(inv, dtype=np.int64).reshape(-1)
    la = a.level_labels()
    lb = b.level_labels()
    labels = np.empty(uniq.shape[0], dtype=object)
    for i, (ia, ib) in enumerate(uniq):
        labels[i] = (la[int(ia)], lb[int(ib)])
    out_name = name or f"{a.name}^{b.name}"
    if uniq.shape[0] == 1 and not allow_single:
        raise DegenerateGroupingError(out_name)
    return GroupingSpec(
        name=out_name,
        codes=inv,
        n_levels=int(uniq.shape[0]),
        labels=labels,
        combined_from=(a.name, b.name),
    )


def varying_slope(
    spec: GroupingSpec,
    covariate: Any,
    *,
    include_intercept: bool = True,
    name: str | None = None,
) -> list[GroupingSpec]:
    """Groupings for a per-level slope on ``covariate``.

    With ``include_intercept`` the plain grouping is returned first, followed
    by the slope-only grouping; centering then projects out both the level
    intercepts and the level-specific slopes.
    """
    z = np.asarray(covariate, dtype=np.float64).reshape(-1)
    if z.shape[0] != spec.n_obs:
        msg = "slope covariate must have one value per observation"
        raise ValueError(msg)
    slope_spec = GroupingSpec(
        name=name or f"{spec.name}[slope]",
        codes=spec.codes,
        n_levels=spec.n_levels,
        slope=z,
        labels=spec.labels,
        combined_from=spec.combined_from,
    )
    if include_intercept:
        return [spec, slope_spec]
    return [slope_spec]


def subset_groupings(
    groupings: Sequence[GroupingSpec], mask: NDArray[np.bool_],
) -> list[GroupingSpec]:
    """Restrict groupings to ``mask`` rows and re-densify the level codes.

    Levels that no longer occur are removed (and their labels with them).
    """
    mask = np.asarray(mask, dtype=bool)
    out: list[GroupingSpec] = []
    for g in groupings:
        codes = g.codes[mask]
        present, new_codes = np.unique(codes, return_inverse=True)
        labels = None if g.labels is None else np.asarray(g.labels)[present]
        out.append(
            GroupingSpec(
                name=g.name,
                codes=np.asarray(new_codes, dtype=np.int64).reshape(-1),
                n_levels=max(1, int(present.shape[0])),
                slope=None if g.slope is None else g.slope[mask],
                labels=labels,
                combined_from=g.combined_from,
            ),
        )
    return out


def connected_components(
    a: GroupingSpec, b: GroupingSpec,
) -> tuple[int, NDArray[np.int64], NDArray[np.int64]]:
    """Connected components of the bipartite level graph of two groupings.

    Two levels are connected when some observation carries both.

    Returns
    -------
    n_components : int
    comp_a : ndarray, shape (La,)
        Component label of every level of ``a``.
    comp_b : ndarray, shape (Lb,)
        Component label of every level of ``b``.
    """
    La, Lb = int(a.n_levels), int(b.n_levels)
    n = a.n_obs
    adj = sparse.csr_matrix(
        (np.ones(n, dtype=np.float64), (a.codes, La + b.codes)),
        shape=(La + Lb, La + Lb),
    )
    n_comp, labels = _cc(adj, directed=False)
    labels = np.asarray(labels, dtype=np.int64)
    return int(n_comp), labels[:La], labels[La:]


def is_nested(target: GroupingSpec, others: Sequence[GroupingSpec]) -> bool:
    """True when every level of ``target`` is determined by the ``others``."""
    if len(others) == 0:
        return False
    keys = np.column_stack([g.codes for g in others])
    _, key_inv = np.unique(keys, axis=0, return_inverse=True)
    key_inv = np.asarray(key_inv, dtype=np.int64).reshape(-1)
    kt = np.column_stack([key_inv, target.codes])
    _, inv = np.unique(kt, axis=0, return_inverse=True)
    n_key = int(key_inv.max()) + 1
    n_kt = int(np.asarray(inv).max()) + 1
    return n_kt == n_key


def drop_singletons(groupings: Sequence[GroupingSpec]) -> NDArray[np.bool_]:
    """Iteratively flag observations alone in a level of any grouping.

    Returns the keep-mask. Count based: weights are ignored.
    """
    if not groupings:
        return np.array([], dtype=bool)
    n = groupings[0].n_obs
    keep = np.ones(n, dtype=bool)

    def pass_once() -> bool:
        single = np.zeros(n, dtype=bool)
        for g in groupings:
            if g.is_slope:
                continue
            cnt = np.bincount(g.codes[keep], minlength=g.n_levels)
            single[keep] |= cnt[g.codes[keep]] == 1
        if np.any(single):
            keep[single] = False
            return True
        return False

    while pass_once():
        continue
    _LOGGER.debug("singletons: %d of %d observations flagged", int(n - keep.sum()), n)
    return keep


def perfect_prediction_mask(
    groupings: Sequence[GroupingSpec],
    y: NDArray[np.float64],
    *,
    kind: str,
) -> NDArray[np.bool_]:
    """Keep-mask excluding levels whose outcome is perfectly predicted.

    Parameters
    ----------
    kind : {"count", "binary"}
        ``"count"`` removes levels whose outcome is all zero (log link
        estimates would diverge to minus infinity); ``"binary"`` removes
        levels whose outcome is all zero or all one.
    """
    if kind not in {"count", "binary"}:
        msg = "kind must be 'count' or 'binary'"
        raise ValueError(msg)
    y = np.asarray(y, dtype=np.float64).reshape(-1)
    keep = np.ones(y.shape[0], dtype=bool)
    changed = True
    while changed:
        changed = False
        for g in groupings:
            if g.is_slope:
                continue
            c = g.codes[keep]
            cnt = np.bincount(c, minlength=g.n_levels)
            tot = np.bincount(c, weights=y[keep], minlength=g.n_levels)
            bad = (cnt > 0) & (tot == 0)
            if kind == "binary":
                bad |= (cnt > 0) & (tot == cnt)
            if np.any(bad):
                drop = np.zeros_like(keep)
                drop[keep] = bad[c]
                keep &= ~drop
                changed = True
    _LOGGER.debug(
        "perfect prediction (%s): %d observations flagged", kind, int((~keep).sum()),
    )
    return keep


class GroupIndex:
    """Ordered collection of groupings for one estimation.

    The order of insertion is the order in which centering visits the
    groupings, and the first intercept grouping is the one that carries the
    overall level when fixed effects are normalized.

    Examples
    --------
    >>> idx = GroupIndex()
    >>> idx.add("firm", firm_ids)
    >>> idx.add("year", years)
    >>> idx.combine("firm", "year")
    """

    def __init__(self, groupings: Sequence[GroupingSpec] = ()) -> None:
        self._groupings: list[GroupingSpec] = []
        for g in groupings:
            self._append(g)

    def _append(self, spec: GroupingSpec) -> GroupingSpec:
        if self._groupings and spec.n_obs != self._groupings[0].n_obs:
            msg = "all groupings must have the same number of observations"
            raise ValueError(msg)
        if spec.name in self.names:
            msg = f"duplicate grouping name '{spec.name}'"
            raise ValueError(msg)
        self._groupings.append(spec)
        return spec

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> GroupIndex:
        """Build from ``{name: labels}`` in mapping order."""
        idx = cls()
        for name, labels in mapping.items():
            idx.add(name, labels)
        return idx

    @classmethod
    def from_frame(cls, data: pd.DataFrame, columns: Sequence[str]) -> GroupIndex:
        return cls.from_mapping({c: data[c].to_numpy() for c in columns})

    @staticmethod
    def from_labels(name: str, labels: Any, *, slope: Any = None) -> GroupingSpec:
        """Standalone :class:`GroupingSpec` from raw labels (see :func:`make_grouping`)."""
        return make_grouping(name, labels, slope=slope)

    def add(self, name: str, labels: Any, *, slope: Any = None) -> GroupingSpec:
        """Add a grouping; raises :class:`DegenerateGroupingError` for one level."""
        return self._append(make_grouping(name, labels, slope=slope))

    def combine(self, a: str, b: str, *, name: str | None = None) -> GroupingSpec:
        """Add the combination of two existing groupings."""
        return self._append(combine(self[a], self[b], name=name))

    def varying_slope(
        self, name: str, covariate: Any, *, slope_name: str | None = None,
    ) -> GroupingSpec:
        """Add a slope-only grouping sharing the levels of ``name``."""
        (spec,) = varying_slope(
            self[name], covariate, include_intercept=False, name=slope_name,
        )
        return self._append(spec)

    @property
    def names(self) -> list[str]:
        return [g.name for g in self._groupings]

    def __getitem__(self, name: str) -> GroupingSpec:
        for g in self._groupings:
            if g.name == name:
                return g
        raise KeyError(name)

    def __iter__(self) -> Iterator[GroupingSpec]:
        return iter(self._groupings)

    def __len__(self) -> int:
        return len(self._groupings)

    def to_list(self) -> list[GroupingSpec]:
        return list(self._groupings)
