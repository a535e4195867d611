"""Dense linear algebra helpers for the weighted normal equations.

Everything here works on the small (k x k) problem left after the fixed
effects have been centered out: pivoted QR for the solve, rank detection from
the diagonal of R, and a PSD repair for sandwich matrices.
"""

# hdfereg/core/linalg.py
from __future__ import annotations

import logging
import warnings
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.linalg as sla

from .errors import CollinearRegressor

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

__all__ = [
    "NormalEquationsSolution",
    "force_psd",
    "gram",
    "solve_normal_equations",
    "xty",
]

_LOGGER = logging.getLogger(__name__)


def _validate_weights(
    weights: Sequence[float] | NDArray[np.float64],
    n: int,
    *,
    allow_zero: bool = True,
) -> NDArray[np.float64]:
    """Validate nonnegative weights and return a dense float64 array of shape (n,).

    Parameters
    ----------
    weights : Sequence[float]
        Weight values to validate.
    n : int
        Expected length.
    allow_zero : bool, default True
        Whether to allow zero weights.

    Returns
    -------
    NDArray[np.float64]
    """
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if w.shape[0] != n:
        msg = "weights length must match n."
        raise ValueError(msg)
    if np.any(~np.isfinite(w)):
        msg = "weights must be finite."
        raise ValueError(msg)
    if np.any(w < 0):
        msg = "weights must be nonnegative."
        raise ValueError(msg)
    if not allow_zero and np.any(w == 0):
        msg = "Zero weights not allowed (allow_zero=False)."
        raise ValueError(msg)
    wsum = float(np.sum(w))
    if n > 0 and (not np.isfinite(wsum) or wsum <= 0.0):
        msg = "weights must sum to a positive finite value"
        raise ValueError(msg)
    return w


def _assert_all_finite(*arrays: Any) -> None:
    """Raise ``ValueError`` when any array holds NaN or Inf."""
    for arr in arrays:
        if arr is None:
            continue
        a = np.asarray(arr, dtype=np.float64)
        if a.size and not np.all(np.isfinite(a)):
            msg = "Inputs contain NaN or Inf."
            raise ValueError(msg)


def _rank_from_diag(diagR: NDArray[np.float64], tol: float) -> int:
    """Numerical rank: pivots above ``tol`` times the largest pivot."""
    d = np.abs(np.asarray(diagR, dtype=np.float64).reshape(-1))
    if d.size == 0 or float(d[0]) == 0.0:
        return 0
    return int(np.sum(d > tol * float(np.max(d))))


def _in_order_independent(
    Xw: NDArray[np.float64],
    cand: NDArray[np.int64],
    norms: NDArray[np.float64],
    rel_tol: float,
) -> NDArray[np.int64]:
    """Keep each candidate column unless it lies in the span of earlier kept ones.

    Columns are scanned left to right, so of a dependent set the later
    columns are the ones dropped.
    """
    n = Xw.shape[0]
    basis = np.zeros((n, 0), dtype=np.float64)
    kept: list[int] = []
    for j in cand:
        v = Xw[:, j]
        r = v - basis @ (basis.T @ v)
        r = r - basis @ (basis.T @ r)  # second pass against cancellation
        nr = float(np.linalg.norm(r))
        if nr > rel_tol * float(norms[j]):
            basis = np.column_stack([basis, r / nr])
            kept.append(int(j))
    return np.asarray(kept, dtype=np.int64)


def gram(X: NDArray[np.float64], weights: NDArray[np.float64] | None = None) -> NDArray[np.float64]:
    """Compute X' W X with W = diag(w); W = I when ``weights`` is None."""
    Xd = np.asarray(X, dtype=np.float64)
    if weights is None:
        return Xd.T @ Xd
    w = _validate_weights(weights, Xd.shape[0]).reshape(-1, 1)
    return (Xd * w).T @ Xd


def xty(
    X: NDArray[np.float64],
    y: NDArray[np.float64],
    weights: NDArray[np.float64] | None = None,
) -> NDArray[np.float64]:
    """Compute X' W y with W = diag(w); keeps the trailing shape of ``y``."""
    Xd = np.asarray(X, dtype=np.float64)
    yd = np.asarray(y, dtype=np.float64)
    if weights is None:
        return Xd.T @ yd
    w = _validate_weights(weights, Xd.shape[0])
    wy = yd * (w if yd.ndim == 1 else w[:, None])
    return Xd.T @ wy


def force_psd(A: NDArray[np.float64], *, tol: float = 0.0) -> tuple[NDArray[np.float64], int]:
    """Symmetrize ``A`` and clip eigenvalues below ``tol`` to zero.

    Returns
    -------
    (ndarray, int)
        The repaired matrix and the number of clipped eigenvalues.
    """
    Ad = np.asarray(A, dtype=np.float64)
    Ad = 0.5 * (Ad + Ad.T)
    if Ad.size == 0:
        return Ad, 0
    vals, vecs = np.linalg.eigh(Ad)
    neg = vals < tol
    n_clip = int(np.sum(neg))
    if n_clip == 0:
        return Ad, 0
    vals = np.where(neg, 0.0, vals)
    out = (vecs * vals) @ vecs.T
    return 0.5 * (out + out.T), n_clip


@dataclass(slots=True)
class NormalEquationsSolution:
    """Weighted least-squares solution on centered variables.

    Attributes
    ----------
    coef : ndarray, shape (k,) or (k, m)
        Coefficients aligned with the input columns; dropped columns are NaN.
    xtwx_inv : ndarray, shape (r, r)
        Inverse of X'WX restricted to the kept columns, in original column
        order.
    R : ndarray
        Upper triangular factor of the pivoted QR of sqrt(W) X_kept.
    pivots : ndarray of int
        Column permutation of the QR (indices into the input columns).
    keep : ndarray of bool, shape (k,)
    dropped : list[int]
        Input column positions dropped as collinear.
    rank : int
    """

    coef: NDArray[np.float64]
    xtwx_inv: NDArray[np.float64]
    R: NDArray[np.float64]
    pivots: NDArray[np.int64]
    keep: NDArray[np.bool_]
    dropped: list[int] = field(default_factory=list)
    rank: int = 0

    @property
    def kept_index(self) -> NDArray[np.int64]:
        return np.flatnonzero(self.keep)


def solve_normal_equations(  # noqa: PLR0913
    X: NDArray[np.float64],
    y: NDArray[np.float64],
    *,
    weights: NDArray[np.float64] | None = None,
    scale: NDArray[np.float64] | None = None,
    tol: float = 1e-10,
    names: Sequence[str] | None = None,
    warn: bool = True,
) -> NormalEquationsSolution:
    """Solve min ||sqrt(W)(y - X b)|| by pivoted QR with rank detection.

    Parameters
    ----------
    X : ndarray, shape (n, k)
        Centered regressors.
    y : ndarray, shape (n,) or (n, m)
        Centered response(s).
    weights : ndarray, optional
        Observation weights.
    scale : ndarray, shape (k,), optional
        Weighted norms of the uncentered columns. A column whose centered
        norm is negligible against its ``scale`` lies in the span of the fixed
        effects and is dropped before the QR.
    tol : float
        Relative pivot threshold on |diag(R)|. A column whose part orthogonal
        to the earlier kept columns is below ``sqrt(tol)`` of its norm is
        dropped as collinear.
    names : sequence of str, optional
        Column names used in the warning messages.
    warn : bool
        Issue one ``CollinearRegressor`` warning per dropped column.

    Returns
    -------
    NormalEquationsSolution
    """
    Xd = np.asarray(X, dtype=np.float64)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    yd = np.asarray(y, dtype=np.float64)
    n, k = Xd.shape
    if yd.shape[0] != n:
        msg = "X and y must have the same number of rows."
        raise ValueError(msg)
    _assert_all_finite(Xd, yd)
    sw = np.ones(n) if weights is None else np.sqrt(_validate_weights(weights, n))
    Xw = Xd * sw[:, None]
    yw = yd * (sw if yd.ndim == 1 else sw[:, None])

    norms = np.sqrt(np.sum(Xw * Xw, axis=0)) if n else np.zeros(k)
    candidate = norms > 0.0
    if scale is not None:
        sc = np.asarray(scale, dtype=np.float64).reshape(-1)
        candidate &= norms > np.sqrt(tol) * np.where(sc > 0.0, sc, 0.0)
    cand_idx = _in_order_independent(Xw, np.flatnonzero(candidate), norms, np.sqrt(tol))

    m_shape = (k,) if yd.ndim == 1 else (k, yd.shape[1])
    coef = np.full(m_shape, np.nan, dtype=np.float64)
    keep = np.zeros(k, dtype=bool)
    if cand_idx.size:
        Q, R, P = sla.qr(Xw[:, cand_idx], mode="economic", pivoting=True)
        r = _rank_from_diag(np.diag(R), tol)
        piv = cand_idx[P]
        order = piv[:r]
        keep[order] = True
        R_r = R[:r, :r]
        Qty = Q[:, :r].T @ yw
        beta_piv = sla.solve_triangular(R_r, Qty, lower=False) if r else Qty
        coef[order] = beta_piv
        Rinv = sla.solve_triangular(R_r, np.eye(r), lower=False) if r else np.zeros((0, 0))
        inv_piv = Rinv @ Rinv.T
        perm = np.argsort(order)
        xtwx_inv = inv_piv[np.ix_(perm, perm)]
        pivots = piv.astype(np.int64)
    else:
        r = 0
        R = np.zeros((0, 0))
        xtwx_inv = np.zeros((0, 0))
        pivots = np.zeros(0, dtype=np.int64)

    dropped = [int(j) for j in np.flatnonzero(~keep)]
    if dropped:
        labels = [names[j] if names is not None else f"x{j}" for j in dropped]
        _LOGGER.debug("dropping collinear regressors: %s", ", ".join(labels))
        if warn:
            for lab in labels:
                warnings.warn(
                    f"regressor '{lab}' is collinear with other regressors or the "
                    "fixed effects and was dropped.",
                    CollinearRegressor,
                    stacklevel=2,
                )
    return NormalEquationsSolution(
        coef=coef,
        xtwx_inv=xtwx_inv,
        R=R,
        pivots=pivots,
        keep=keep,
        dropped=dropped,
        rank=r,
    )
