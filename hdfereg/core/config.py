"""Engine configuration.

All tunables of one estimation live in an explicit :class:`EngineConfig`
passed to the estimator, so that estimations stay reproducible and can run in
parallel without sharing process-wide state. The only environment hook is
``HDFEREG_NUM_THREADS``, read by :meth:`EngineConfig.from_env`.
"""

# hdfereg/core/config.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import Any

__all__ = ["EngineConfig", "default_thread_count"]

_LOGGER = logging.getLogger(__name__)

_ENV_THREADS = "HDFEREG_NUM_THREADS"
_VALID_ACCEL = {"none", "irons_tuck"}
_VALID_CLUSTER_DF = {"min", "conventional"}


def default_thread_count() -> int:
    """About half of the detected hardware threads, at least one."""
    n = os.cpu_count() or 1
    return max(1, n // 2)


def _env_threads() -> int | None:
    raw = str(os.environ.get(_ENV_THREADS, "")).strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        _LOGGER.debug("Ignoring non-integer %s=%r", _ENV_THREADS, raw)
        return None
    return value if value > 0 else None


@dataclass(frozen=True)
class EngineConfig:
    """Numerical and scheduling settings for one estimation.

    Attributes
    ----------
    n_threads : int | None
        Worker pool size. ``None`` resolves to :func:`default_thread_count`.
    min_chunk : int
        Smallest number of observations handed to one worker.
    fe_tol : float
        Relative tolerance of the alternating projections.
    fe_max_iter : int
        Iteration cap of the alternating projections.
    accel : str
        ``"irons_tuck"`` (extrapolate every two passes) or ``"none"``.
    tol : float
        Outer-loop tolerance on relative deviance and coefficient change.
    max_iter : int
        Outer-loop iteration cap.
    max_nondecrease : int
        Consecutive iterations without deviance decrease before ``Diverged``.
    min_step : float
        Smallest Gauss-Newton step fraction before ``OptimizationFailed``.
    collin_tol : float
        Relative pivot threshold of the rank-revealing QR.
    drop_singletons : bool
        Drop observations alone in a fixed-effect level before fitting.
    cluster_df : str
        ``"min"`` uses the smallest cluster count in the G/(G-1) factor of
        every multi-way term, ``"conventional"`` uses each term's own count.
    """

    n_threads: int | None = None
    min_chunk: int = 20000
    fe_tol: float = 1e-8
    fe_max_iter: int = 10000
    accel: str = "irons_tuck"
    tol: float = 1e-8
    max_iter: int = 300
    max_nondecrease: int = 5
    min_step: float = 1e-8
    collin_tol: float = 1e-10
    drop_singletons: bool = False
    cluster_df: str = "min"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ``ValueError`` on out-of-range settings."""
        if self.n_threads is not None and int(self.n_threads) < 1:
            msg = "n_threads must be a positive integer or None."
            raise ValueError(msg)
        if int(self.min_chunk) < 1:
            msg = "min_chunk must be positive."
            raise ValueError(msg)
        for name in ("fe_tol", "tol", "min_step", "collin_tol"):
            value = float(getattr(self, name))
            if not (0.0 < value < 1.0):
                msg = f"{name} must lie in (0, 1); got {value}."
                raise ValueError(msg)
        for name in ("fe_max_iter", "max_iter", "max_nondecrease"):
            if int(getattr(self, name)) < 1:
                msg = f"{name} must be at least 1."
                raise ValueError(msg)
        if self.accel not in _VALID_ACCEL:
            msg = f"accel must be one of {sorted(_VALID_ACCEL)}."
            raise ValueError(msg)
        if self.cluster_df not in _VALID_CLUSTER_DF:
            msg = f"cluster_df must be one of {sorted(_VALID_CLUSTER_DF)}."
            raise ValueError(msg)

    @property
    def threads(self) -> int:
        """Resolved worker count."""
        return int(self.n_threads) if self.n_threads is not None else default_thread_count()

    def replace(self, **changes: Any) -> EngineConfig:
        """Return a validated copy with ``changes`` applied."""
        return replace(self, **changes)

    @classmethod
    def from_env(cls, **overrides: Any) -> EngineConfig:
        """Build a config, taking the thread count from ``HDFEREG_NUM_THREADS``."""
        params = dict(overrides)
        if "n_threads" not in params:
            params["n_threads"] = _env_threads()
        return cls(**params)
