"""Models whose linear predictor is non-linear in some parameters.

``FENLM`` fits ``eta = offset + f(theta) + X b + FE`` for any response
family, with box constraints on ``theta``.
"""

# hdfereg/estimators/nonlinear.py
from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

import numpy as np

from hdfereg.core.config import EngineConfig
from hdfereg.core.families import Family, get_family
from hdfereg.core.optimize import OptimizationDriver

from .base import BaseEstimator, Design, FitResult

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = ["FENLM"]


class FENLM(BaseEstimator):
    """Bounded Gauss-Newton fit of a non-linear right-hand side with fixed effects.

    Parameters
    ----------
    design : Design, optional
    nl_func : callable
        ``nl_func(theta) -> ndarray (n,)`` evaluated on the rows of the design.
    start : sequence of float
        Starting values of ``theta``.
    lower, upper : sequence of float, optional
        Bounds on ``theta`` (infinite when omitted).
    jac : callable, optional
        ``jac(theta) -> ndarray (n, q)``; central differences when omitted.
    nl_names : sequence of str, optional
    family : str or Family
        Gaussian by default.

    Examples
    --------
    >>> # y = exp(a * x) + FE + e with 0 <= a <= 1
    >>> model = FENLM(
    ...     y=y, fe={"g": g},
    ...     nl_func=lambda t: np.exp(t[0] * x), start=[0.1],
    ...     lower=[0.0], upper=[1.0], nl_names=["a"],
    ... )
    >>> model.fit().nl_coef
    """

    def __init__(  # noqa: PLR0913
        self,
        design: Design | None = None,
        *,
        nl_func: Callable[[NDArray[np.float64]], NDArray[np.float64]],
        start: Sequence[float],
        lower: Sequence[float] | None = None,
        upper: Sequence[float] | None = None,
        jac: Callable[[NDArray[np.float64]], NDArray[np.float64]] | None = None,
        nl_names: Sequence[str] | None = None,
        family: str | Family = "gaussian",
        **kwargs: Any,
    ) -> None:
        super().__init__(design, **kwargs)
        if not callable(nl_func):
            msg = "nl_func must be callable."
            raise TypeError(msg)
        self.nl_func = nl_func
        self.start = np.asarray(start, dtype=np.float64).reshape(-1)
        self.lower = lower
        self.upper = upper
        self.jac = jac
        q = self.start.shape[0]
        self.nl_names = list(nl_names) if nl_names is not None else [f"theta{j}" for j in range(q)]
        if len(self.nl_names) != q:
            msg = "nl_names must have one entry per non-linear parameter."
            raise ValueError(msg)
        self.family = get_family(family)

    def fit(
        self,
        vcov: str | None = None,
        cluster: Any = None,
        config: EngineConfig | None = None,
    ) -> FitResult:
        """Fit by bounded Gauss-Newton; see :meth:`FEOLS.fit` for arguments.

        Raises
        ------
        OptimizationFailed
            When no feasible, non-increasing step above ``min_step`` exists.
        """
        config = config if config is not None else EngineConfig()
        kind = self._resolve_vcov(vcov, cluster)
        prep = self._prepare(config, self.family)
        clusters = self._cluster_spec(cluster, prep.mask, self.design.n_obs)
        rows = prep.mask

        def f_sub(theta: NDArray[np.float64]) -> NDArray[np.float64]:
            return np.asarray(self.nl_func(theta), dtype=np.float64).reshape(-1)[rows]

        jac_sub = None
        if self.jac is not None:
            jac_fn = self.jac

            def jac_sub(theta: NDArray[np.float64]) -> NDArray[np.float64]:
                J = np.asarray(jac_fn(theta), dtype=np.float64)
                return J.reshape(rows.shape[0], -1)[rows]

        with self._pool(config) as pool:
            driver = OptimizationDriver(prep.design, self.family, config, pool)
            state = driver.run_nonlinear(
                f_sub,
                self.start,
                lower=self.lower,
                upper=self.upper,
                jac=jac_sub,
                nl_names=self.nl_names,
            )
            self._results = self._build_result(
                state,
                prep,
                family=driver.family,
                vcov=kind,
                clusters=clusters,
                config=config,
                pool=pool,
                param_names=[*self.nl_names, *prep.design.x_names],
                n_nl=len(self.nl_names),
                model_info={"estimator": "FENLM"},
            )
        return self._results
