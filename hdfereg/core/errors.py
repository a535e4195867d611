"""Error and warning kinds raised by the estimation engine.

Recoverable conditions are warning categories (issued with
:func:`warnings.warn` and also recorded on the fit result); conditions that
make the coefficient vector meaningless are exceptions.
"""

# hdfereg/core/errors.py
from __future__ import annotations

from typing import Any

__all__ = [
    "CollinearRegressor",
    "DegenerateGroupingError",
    "Diverged",
    "NonFiniteValueError",
    "OptimizationFailed",
    "SlowConvergenceWarning",
    "UnderidentifiedFixedEffects",
]


class DegenerateGroupingError(ValueError):
    """A grouping has exactly one level and absorbs nothing but a constant."""

    def __init__(self, name: str, message: str | None = None) -> None:
        self.name = name
        super().__init__(message or f"grouping '{name}' has a single level")


class CollinearRegressor(UserWarning):
    """A regressor was dropped because it is collinear with others or the FEs."""


class SlowConvergenceWarning(RuntimeWarning):
    """Alternating projections stopped at the iteration cap."""


class UnderidentifiedFixedEffects(UserWarning):
    """Fixed-effect levels need more than one reference per grouping."""


class OptimizationFailed(RuntimeError):
    """Fatal failure of one estimation.

    Attributes
    ----------
    diagnostics : dict
        Last-iteration diagnostics (iteration count, deviance history, last
        coefficients, reason).
    """

    def __init__(self, message: str, diagnostics: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.diagnostics: dict[str, Any] = dict(diagnostics or {})


class Diverged(OptimizationFailed):
    """Outer loop stopped improving or hit its iteration cap."""


class NonFiniteValueError(OptimizationFailed):
    """The linear predictor or the deviance became NaN/Inf."""
