"""Response families for the reweighted fits.

Each family exposes the four operations the optimization loop needs (link,
inverse link, variance, deviance) plus the derived pieces built on them:
``mu_eta``, starting values, working response and weights for Fisher scoring
or Newton steps, and the log-likelihood. The set is closed
(:class:`Gaussian`, :class:`Poisson`, :class:`Binomial`, :class:`Probit`,
:class:`Gamma`, :class:`NegativeBinomial`) with :class:`CustomFamily` as the
escape hatch for a user-supplied quadruple of functions.
"""

# hdfereg/core/families.py
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np
from scipy import optimize, special, stats

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

__all__ = [
    "Binomial",
    "CustomFamily",
    "Family",
    "Gamma",
    "Gaussian",
    "NegativeBinomial",
    "Poisson",
    "Probit",
    "get_family",
]

_LOGGER = logging.getLogger(__name__)

_PROB_EPS = 1e-10


def _xlogy_ratio(y: NDArray[np.float64], mu: NDArray[np.float64]) -> NDArray[np.float64]:
    """y * log(y / mu) with the convention 0 * log(0) = 0."""
    with np.errstate(divide="ignore", invalid="ignore"):
        return special.xlogy(y, y) - special.xlogy(y, mu)


class Family(ABC):
    """Capability interface of a response distribution with its link.

    Subclasses implement ``link``, ``inverse_link``, ``mu_eta``,
    ``variance`` and ``deviance``. ``score_factor_deriv`` returns the
    derivative in eta of ``mu_eta / variance``; it is zero for canonical
    links, where Newton and Fisher scoring coincide.
    """

    name: ClassVar[str] = "family"
    link_name: ClassVar[str] = "identity"
    # "count" and "binary" families can have perfectly predicted levels
    separation_kind: ClassVar[str | None] = None
    # dispersion estimated from the residuals (otherwise fixed at 1)
    estimate_scale: ClassVar[bool] = False
    canonical: ClassVar[bool] = True

    @abstractmethod
    def link(self, mu: NDArray[np.float64]) -> NDArray[np.float64]: ...

    @abstractmethod
    def inverse_link(self, eta: NDArray[np.float64]) -> NDArray[np.float64]: ...

    @abstractmethod
    def mu_eta(self, eta: NDArray[np.float64]) -> NDArray[np.float64]:
        """Derivative of the inverse link, d mu / d eta."""

    @abstractmethod
    def variance(self, mu: NDArray[np.float64]) -> NDArray[np.float64]: ...

    @abstractmethod
    def deviance(
        self,
        y: NDArray[np.float64],
        mu: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> float: ...

    # ------------------------------------------------------------------
    # Derived operations
    # ------------------------------------------------------------------

    def validate_response(self, y: NDArray[np.float64]) -> None:
        """Raise ``ValueError`` when ``y`` is outside the family's support."""

    def initialize(self, y: NDArray[np.float64], weights: NDArray[np.float64]) -> NDArray[np.float64]:
        """Starting mean for the first iteration."""
        return np.asarray(y, dtype=np.float64).copy()

    def score_factor_deriv(self, eta: NDArray[np.float64]) -> NDArray[np.float64]:
        return np.zeros_like(eta)

    def working(
        self,
        y: NDArray[np.float64],
        eta: NDArray[np.float64],
        weights: NDArray[np.float64],
        *,
        method: str = "irls",
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Working response and working weights at ``eta``.

        ``method="irls"`` uses the expected information (Fisher scoring),
        ``method="newton"`` the observed information; observations where the
        observed information is not positive fall back to the expected one.
        """
        mu = self.inverse_link(eta)
        d = self.mu_eta(eta)
        v = self.variance(mu)
        with np.errstate(divide="ignore", invalid="ignore"):
            s = d / v
            w_fisher = weights * d * s
            score = weights * (y - mu) * s
            w_work = w_fisher
            if method == "newton" and not self.canonical:
                w_obs = w_fisher - weights * (y - mu) * self.score_factor_deriv(eta)
                w_work = np.where(w_obs > 0.0, w_obs, w_fisher)
            z = eta + np.where(w_work > 0.0, score / w_work, 0.0)
        return z, w_work

    def null_mean(self, y: NDArray[np.float64], weights: NDArray[np.float64]) -> NDArray[np.float64]:
        """Fitted mean of the intercept-only model."""
        wsum = float(np.sum(weights))
        mean = float(np.sum(weights * y) / wsum) if wsum > 0 else float(np.mean(y))
        return np.full_like(np.asarray(y, dtype=np.float64), mean)

    def pearson_chi2(
        self,
        y: NDArray[np.float64],
        mu: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> float:
        with np.errstate(divide="ignore", invalid="ignore"):
            return float(np.sum(weights * (y - mu) ** 2 / self.variance(mu)))

    def dispersion(
        self,
        y: NDArray[np.float64],
        mu: NDArray[np.float64],
        weights: NDArray[np.float64],
        df_resid: float,
    ) -> float:
        """Dispersion phi; 1 for families with a fixed scale."""
        if not self.estimate_scale:
            return 1.0
        return self.pearson_chi2(y, mu, weights) / max(float(df_resid), 1.0)

    def loglik(
        self,
        y: NDArray[np.float64],
        mu: NDArray[np.float64],
        weights: NDArray[np.float64],
        scale: float = 1.0,
    ) -> float:
        """Log-likelihood; quasi families report ``-deviance / 2``."""
        return -0.5 * self.deviance(y, mu, weights)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(link={self.link_name!r})"


class Gaussian(Family):
    name = "gaussian"
    link_name = "identity"
    estimate_scale = True

    def link(self, mu):
        return np.asarray(mu, dtype=np.float64)

    def inverse_link(self, eta):
        return np.asarray(eta, dtype=np.float64)

    def mu_eta(self, eta):
        return np.ones_like(eta, dtype=np.float64)

    def variance(self, mu):
        return np.ones_like(mu, dtype=np.float64)

    def deviance(self, y, mu, weights):
        return float(np.sum(weights * (y - mu) ** 2))

    def loglik(self, y, mu, weights, scale=1.0):
        wsum = float(np.sum(weights))
        sigma2 = self.deviance(y, mu, weights) / wsum
        if sigma2 <= 0.0:
            return np.inf
        return float(-0.5 * wsum * (np.log(2.0 * np.pi * sigma2) + 1.0))


class Poisson(Family):
    name = "poisson"
    link_name = "log"
    separation_kind = "count"

    def validate_response(self, y):
        if np.any(y < 0):
            msg = "Poisson response must be non-negative."
            raise ValueError(msg)

    def initialize(self, y, weights):
        return (y + float(np.average(y, weights=weights))) / 2.0

    def link(self, mu):
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.log(mu)

    def inverse_link(self, eta):
        with np.errstate(over="ignore"):
            return np.exp(eta)

    def mu_eta(self, eta):
        with np.errstate(over="ignore"):
            return np.exp(eta)

    def variance(self, mu):
        return np.asarray(mu, dtype=np.float64)

    def deviance(self, y, mu, weights):
        return float(2.0 * np.sum(weights * (_xlogy_ratio(y, mu) - (y - mu))))

    def loglik(self, y, mu, weights, scale=1.0):
        with np.errstate(divide="ignore", invalid="ignore"):
            ll = special.xlogy(y, mu) - mu - special.gammaln(y + 1.0)
        return float(np.sum(weights * ll))


class Binomial(Family):
    """Bernoulli response with logit link."""

    name = "binomial"
    link_name = "logit"
    separation_kind = "binary"

    def validate_response(self, y):
        if np.any((y < 0) | (y > 1)):
            msg = "binomial response must lie in [0, 1]."
            raise ValueError(msg)

    def initialize(self, y, weights):
        return (y + 0.5) / 2.0

    def link(self, mu):
        return special.logit(mu)

    def inverse_link(self, eta):
        return np.clip(special.expit(eta), _PROB_EPS, 1.0 - _PROB_EPS)

    def mu_eta(self, eta):
        p = special.expit(eta)
        return np.maximum(p * (1.0 - p), np.finfo(float).tiny)

    def variance(self, mu):
        return mu * (1.0 - mu)

    def deviance(self, y, mu, weights):
        dev = _xlogy_ratio(y, mu) + _xlogy_ratio(1.0 - y, 1.0 - mu)
        return float(2.0 * np.sum(weights * dev))

    def loglik(self, y, mu, weights, scale=1.0):
        ll = special.xlogy(y, mu) + special.xlogy(1.0 - y, 1.0 - mu)
        return float(np.sum(weights * ll))


class Probit(Binomial):
    """Bernoulli response with probit link."""

    name = "probit"
    link_name = "probit"
    canonical = False

    def link(self, mu):
        return stats.norm.ppf(mu)

    def inverse_link(self, eta):
        return np.clip(special.ndtr(eta), _PROB_EPS, 1.0 - _PROB_EPS)

    def mu_eta(self, eta):
        return np.maximum(stats.norm.pdf(eta), np.finfo(float).tiny)

    def score_factor_deriv(self, eta):
        mu = self.inverse_link(eta)
        d = self.mu_eta(eta)
        s = d / (mu * (1.0 - mu))
        return s * (-eta - d / mu + d / (1.0 - mu))


class Gamma(Family):
    """Gamma response with log link."""

    name = "gamma"
    link_name = "log"
    estimate_scale = True
    canonical = False

    def validate_response(self, y):
        if np.any(y <= 0):
            msg = "Gamma response must be strictly positive."
            raise ValueError(msg)

    def link(self, mu):
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.log(mu)

    def inverse_link(self, eta):
        with np.errstate(over="ignore"):
            return np.exp(eta)

    def mu_eta(self, eta):
        with np.errstate(over="ignore"):
            return np.exp(eta)

    def variance(self, mu):
        return mu * mu

    def score_factor_deriv(self, eta):
        with np.errstate(over="ignore"):
            return -np.exp(-eta)

    def deviance(self, y, mu, weights):
        with np.errstate(divide="ignore", invalid="ignore"):
            dev = -np.log(y / mu) + (y - mu) / mu
        return float(2.0 * np.sum(weights * dev))

    def loglik(self, y, mu, weights, scale=1.0):
        nu = 1.0 / scale
        with np.errstate(divide="ignore", invalid="ignore"):
            ll = nu * np.log(nu * y / mu) - nu * y / mu - np.log(y) - special.gammaln(nu)
        return float(np.sum(weights * ll))


class NegativeBinomial(Poisson):
    """Negative binomial (NB2) with log link and dispersion ``theta``.

    ``Var(y) = mu + mu**2 / theta``. When ``theta`` is None it is estimated
    by profile maximum likelihood between iterations of the fit.
    """

    name = "negbin"
    canonical = False

    def __init__(self, theta: float | None = None) -> None:
        if theta is not None and not float(theta) > 0.0:
            msg = "theta must be positive."
            raise ValueError(msg)
        self.theta_fixed = theta is not None
        self.theta = float(theta) if theta is not None else 1.0

    def variance(self, mu):
        return mu + mu * mu / self.theta

    def score_factor_deriv(self, eta):
        mu = self.inverse_link(eta)
        t = self.theta
        return -t * mu / (t + mu) ** 2

    def deviance(self, y, mu, weights):
        t = self.theta
        with np.errstate(divide="ignore", invalid="ignore"):
            dev = _xlogy_ratio(y, mu) - (y + t) * np.log((y + t) / (mu + t))
        return float(2.0 * np.sum(weights * dev))

    def _loglik_theta(self, theta, y, mu, weights):
        with np.errstate(divide="ignore", invalid="ignore"):
            ll = (
                special.gammaln(y + theta)
                - special.gammaln(theta)
                - special.gammaln(y + 1.0)
                + theta * np.log(theta / (theta + mu))
                + special.xlogy(y, mu / (theta + mu))
            )
        return float(np.sum(weights * ll))

    def loglik(self, y, mu, weights, scale=1.0):
        return self._loglik_theta(self.theta, y, mu, weights)

    def update_theta(self, y, mu, weights) -> float:
        """Profile-likelihood update of ``theta`` at fixed ``mu``."""
        if self.theta_fixed:
            return self.theta
        res = optimize.minimize_scalar(
            lambda lt: -self._loglik_theta(np.exp(lt), y, mu, weights),
            bounds=(-10.0, 15.0),
            method="bounded",
        )
        self.theta = float(np.exp(res.x))
        _LOGGER.debug("negbin theta update: %.6g", self.theta)
        return self.theta

    def __repr__(self) -> str:
        return f"NegativeBinomial(theta={self.theta:.6g})"


class CustomFamily(Family):
    """User-supplied link, inverse link, variance and deviance.

    Parameters
    ----------
    link, inverse_link, variance : callable
        Vectorized functions of mu, eta and mu respectively.
    deviance : callable
        ``deviance(y, mu, weights) -> float``.
    mu_eta : callable, optional
        Derivative of the inverse link; central differences when omitted.
    name : str

    Notes
    -----
    No safeguard is applied to the starting values (``mu = y``) or to the
    link; invalid combinations surface as non-finite predictors in the fit.
    """

    canonical = False
    estimate_scale = True

    def __init__(  # noqa: PLR0913
        self,
        link: Callable[[NDArray[np.float64]], NDArray[np.float64]],
        inverse_link: Callable[[NDArray[np.float64]], NDArray[np.float64]],
        variance: Callable[[NDArray[np.float64]], NDArray[np.float64]],
        deviance: Callable[..., float],
        mu_eta: Callable[[NDArray[np.float64]], NDArray[np.float64]] | None = None,
        *,
        name: str = "custom",
    ) -> None:
        for label, fn in (
            ("link", link),
            ("inverse_link", inverse_link),
            ("variance", variance),
            ("deviance", deviance),
        ):
            if not callable(fn):
                msg = f"{label} must be callable."
                raise TypeError(msg)
        self._link = link
        self._inverse_link = inverse_link
        self._variance = variance
        self._deviance = deviance
        self._mu_eta = mu_eta
        self.name = name
        self.link_name = getattr(link, "__name__", "custom")

    def link(self, mu):
        with np.errstate(all="ignore"):
            return np.asarray(self._link(mu), dtype=np.float64)

    def inverse_link(self, eta):
        with np.errstate(all="ignore"):
            return np.asarray(self._inverse_link(eta), dtype=np.float64)

    def mu_eta(self, eta):
        if self._mu_eta is not None:
            return np.asarray(self._mu_eta(eta), dtype=np.float64)
        h = 1e-6 * np.maximum(1.0, np.abs(eta))
        with np.errstate(all="ignore"):
            return (self.inverse_link(eta + h) - self.inverse_link(eta - h)) / (2.0 * h)

    def variance(self, mu):
        return np.asarray(self._variance(mu), dtype=np.float64)

    def deviance(self, y, mu, weights):
        with np.errstate(all="ignore"):
            return float(self._deviance(y, mu, weights))

    def score_factor_deriv(self, eta):
        h = 1e-5 * np.maximum(1.0, np.abs(eta))

        def _s(e):
            return self.mu_eta(e) / self.variance(self.inverse_link(e))

        with np.errstate(all="ignore"):
            return (_s(eta + h) - _s(eta - h)) / (2.0 * h)


_FAMILIES: dict[str, Callable[..., Family]] = {
    "gaussian": Gaussian,
    "normal": Gaussian,
    "poisson": Poisson,
    "binomial": Binomial,
    "logit": Binomial,
    "logistic": Binomial,
    "probit": Probit,
    "gamma": Gamma,
    "negbin": NegativeBinomial,
    "negative_binomial": NegativeBinomial,
}


def get_family(family: str | Family, **kwargs: Any) -> Family:
    """Resolve a family name (case-insensitive) or pass a ``Family`` through."""
    if isinstance(family, Family):
        return family
    key = str(family).lower().strip().replace("-", "_")
    if key not in _FAMILIES:
        msg = f"unknown family '{family}'; expected one of {sorted(_FAMILIES)}."
        raise ValueError(msg)
    return _FAMILIES[key](**kwargs)
