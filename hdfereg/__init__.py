"""hdfereg: regressions with high-dimensional fixed effects.

Linear, generalized-linear, non-linear and instrumental-variables estimators
that absorb any number of categorical groupings by alternating projections,
with iid, heteroskedasticity-robust and multi-way cluster-robust covariances.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "FEGLM",
    "FEIV",
    "FENLM",
    "FEOLS",
    "Binomial",
    "ClusterSpec",
    "CollinearRegressor",
    "CustomFamily",
    "DegenerateGroupingError",
    "Design",
    "Diverged",
    "EngineConfig",
    "FitResult",
    "Gamma",
    "Gaussian",
    "GroupIndex",
    "NegativeBinomial",
    "NonFiniteValueError",
    "OptimizationFailed",
    "Poisson",
    "Probit",
    "SlowConvergenceWarning",
    "UnderidentifiedFixedEffects",
    "center",
    "get_family",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "FEOLS": ("hdfereg.estimators.ols", "FEOLS"),
    "FEGLM": ("hdfereg.estimators.glm", "FEGLM"),
    "FENLM": ("hdfereg.estimators.nonlinear", "FENLM"),
    "FEIV": ("hdfereg.estimators.iv", "FEIV"),
    "Design": ("hdfereg.estimators.base", "Design"),
    "FitResult": ("hdfereg.estimators.base", "FitResult"),
    "EngineConfig": ("hdfereg.core.config", "EngineConfig"),
    "GroupIndex": ("hdfereg.core.groups", "GroupIndex"),
    "ClusterSpec": ("hdfereg.core.inference", "ClusterSpec"),
    "center": ("hdfereg.core.fe", "center"),
    "get_family": ("hdfereg.core.families", "get_family"),
    "Gaussian": ("hdfereg.core.families", "Gaussian"),
    "Poisson": ("hdfereg.core.families", "Poisson"),
    "Binomial": ("hdfereg.core.families", "Binomial"),
    "Probit": ("hdfereg.core.families", "Probit"),
    "Gamma": ("hdfereg.core.families", "Gamma"),
    "NegativeBinomial": ("hdfereg.core.families", "NegativeBinomial"),
    "CustomFamily": ("hdfereg.core.families", "CustomFamily"),
    "CollinearRegressor": ("hdfereg.core.errors", "CollinearRegressor"),
    "DegenerateGroupingError": ("hdfereg.core.errors", "DegenerateGroupingError"),
    "Diverged": ("hdfereg.core.errors", "Diverged"),
    "NonFiniteValueError": ("hdfereg.core.errors", "NonFiniteValueError"),
    "OptimizationFailed": ("hdfereg.core.errors", "OptimizationFailed"),
    "SlowConvergenceWarning": ("hdfereg.core.errors", "SlowConvergenceWarning"),
    "UnderidentifiedFixedEffects": ("hdfereg.core.errors", "UnderidentifiedFixedEffects"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    msg = f"module 'hdfereg' has no attribute '{name}'"
    raise AttributeError(msg)


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
