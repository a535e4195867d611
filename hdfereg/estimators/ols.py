"""Linear regression with absorbed fixed effects.

This module implements ``FEOLS``: one centering of the response and the
regressors followed by one weighted least-squares solve.
"""

# hdfereg/estimators/ols.py
from __future__ import annotations

from typing import Any

from hdfereg.core.config import EngineConfig
from hdfereg.core.families import Gaussian
from hdfereg.core.optimize import OptimizationDriver

from .base import BaseEstimator, FitResult

__all__ = ["FEOLS"]


class FEOLS(BaseEstimator):
    """Weighted least squares with any number of fixed-effect groupings.

    Estimates ``y = X b + sum_g FE_g + u`` by centering ``y`` and ``X`` on
    all groupings (Frisch-Waugh-Lovell) and solving the weighted normal
    equations on the centered variables. Fixed-effect levels are recovered
    from ``y - X b - u`` after the solve.

    Parameters
    ----------
    design : Design, optional
        Prepared input; alternatively pass ``y``, ``X`` and ``fe`` as
        keywords (see :class:`~hdfereg.estimators.base.BaseEstimator`).

    Examples
    --------
    >>> import numpy as np
    >>> from hdfereg import FEOLS
    >>> rng = np.random.default_rng(0)
    >>> firm = np.repeat(np.arange(50), 10)
    >>> x = rng.normal(size=500)
    >>> y = 2.0 * x + rng.normal(size=50)[firm] + rng.normal(size=500)
    >>> res = FEOLS(y=y, X=x.reshape(-1, 1), fe={"firm": firm}).fit(vcov="hetero")
    >>> res.coef
    >>> res.fixef["firm"].head()

    Notes
    -----
    - Regressors that are collinear with others or constant within a
      grouping are dropped (NaN coefficient, ``CollinearRegressor``).
    - Without any grouping a ``_cons`` column is added.
    """

    def fit(
        self,
        vcov: str | None = None,
        cluster: Any = None,
        config: EngineConfig | None = None,
    ) -> FitResult:
        """Fit the model.

        Parameters
        ----------
        vcov : {"iid", "hetero", "cluster"}, optional
            Defaults to ``"cluster"`` when ``cluster`` is given, else ``"iid"``.
        cluster : labels or ClusterSpec, optional
            One to four cluster dimensions (rows of the original design).
        config : EngineConfig, optional

        Returns
        -------
        FitResult
        """
        config = config if config is not None else EngineConfig()
        kind = self._resolve_vcov(vcov, cluster)
        family = Gaussian()
        prep = self._prepare(config, family)
        clusters = self._cluster_spec(cluster, prep.mask, self.design.n_obs)
        with self._pool(config) as pool:
            driver = OptimizationDriver(prep.design, family, config, pool)
            state = driver.run_linear()
            self._results = self._build_result(
                state,
                prep,
                family=family,
                vcov=kind,
                clusters=clusters,
                config=config,
                pool=pool,
                model_info={"estimator": "FEOLS"},
            )
        return self._results
