"""Generalized linear models with absorbed fixed effects."""

# hdfereg/estimators/glm.py
from __future__ import annotations

from typing import Any

from hdfereg.core.config import EngineConfig
from hdfereg.core.families import Family, get_family
from hdfereg.core.optimize import OptimizationDriver

from .base import BaseEstimator, Design, FitResult

__all__ = ["FEGLM"]


class FEGLM(BaseEstimator):
    """GLM / maximum-likelihood fit with fixed effects.

    Each iteration computes the working response and weights from the
    current linear predictor, centers them together with the regressors,
    and solves the weighted normal equations. Levels whose outcome is
    perfectly predicted (all-zero counts, constant binary outcomes) are
    dropped before iterating.

    Parameters
    ----------
    design : Design, optional
    family : str or Family
        ``"gaussian"``, ``"poisson"``, ``"logit"``, ``"probit"``,
        ``"gamma"``, ``"negbin"`` or a :class:`~hdfereg.core.families.Family`.
    method : {"irls", "newton"}
        Fisher scoring or observed-information Newton steps.
    **kwargs
        ``y``, ``X``, ``fe``, ``weights``, ``offset``, ``x_names``,
        ``add_intercept`` when no ``design`` is given.
    """

    def __init__(
        self,
        design: Design | None = None,
        *,
        family: str | Family = "poisson",
        method: str = "irls",
        **kwargs: Any,
    ) -> None:
        super().__init__(design, **kwargs)
        if method not in {"irls", "newton"}:
            msg = "method must be 'irls' or 'newton'."
            raise ValueError(msg)
        self.family = get_family(family)
        self.method = method

    def fit(
        self,
        vcov: str | None = None,
        cluster: Any = None,
        config: EngineConfig | None = None,
    ) -> FitResult:
        """Fit by IRLS or Newton iterations; see :meth:`FEOLS.fit` for arguments.

        Raises
        ------
        NonFiniteValueError
            When the linear predictor or the deviance becomes non-finite.
        Diverged
            When the deviance keeps increasing or the iteration cap is hit.
        """
        config = config if config is not None else EngineConfig()
        kind = self._resolve_vcov(vcov, cluster)
        prep = self._prepare(config, self.family)
        clusters = self._cluster_spec(cluster, prep.mask, self.design.n_obs)
        with self._pool(config) as pool:
            driver = OptimizationDriver(prep.design, self.family, config, pool)
            state = driver.run_irls(self.method)
            self._results = self._build_result(
                state,
                prep,
                family=driver.family,
                vcov=kind,
                clusters=clusters,
                config=config,
                pool=pool,
                model_info={"estimator": "FEGLM", "method": self.method},
            )
        return self._results
