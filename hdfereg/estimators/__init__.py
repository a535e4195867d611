"""Estimator exports with lazy loading.

Public estimator classes and result containers. Uses lazy imports to avoid
circular dependencies.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "FEGLM",
    "FEIV",
    "FENLM",
    "FEOLS",
    "BaseEstimator",
    "Design",
    "FitFlags",
    "FitResult",
    "TwoStageResolver",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("hdfereg.estimators.base", "BaseEstimator"),
    "Design": ("hdfereg.estimators.base", "Design"),
    "FitFlags": ("hdfereg.estimators.base", "FitFlags"),
    "FitResult": ("hdfereg.estimators.base", "FitResult"),
    "FEOLS": ("hdfereg.estimators.ols", "FEOLS"),
    "FEGLM": ("hdfereg.estimators.glm", "FEGLM"),
    "FENLM": ("hdfereg.estimators.nonlinear", "FENLM"),
    "FEIV": ("hdfereg.estimators.iv", "FEIV"),
    "TwoStageResolver": ("hdfereg.estimators.iv", "TwoStageResolver"),
}


def __getattr__(name: str) -> Any:
    """Lazily import estimator classes and shared containers."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        attr = getattr(import_module(module_name), attr_name)
        globals()[name] = attr
        return attr
    msg = f"module 'hdfereg.estimators' has no attribute '{name}'"
    raise AttributeError(msg)


def __dir__() -> list[str]:
    """Expose lazily loaded attributes to ``dir()``."""
    return sorted(set(globals()) | set(__all__))
