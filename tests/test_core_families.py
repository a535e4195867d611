import pytest
import numpy as np

from hdfereg.core import families as fam

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(31)

# ---------------------------------------------------------------------
# Unit Tests: Registry
# ---------------------------------------------------------------------

@pytest.mark.parametrize(
    ("name", "cls"),
    [
        ("gaussian", fam.Gaussian),
        ("Normal", fam.Gaussian),
        ("poisson", fam.Poisson),
        ("logit", fam.Binomial),
        ("probit", fam.Probit),
        ("gamma", fam.Gamma),
        ("negative-binomial", fam.NegativeBinomial),
    ],
)
def test_get_family_aliases(name, cls):
    assert type(fam.get_family(name)) is cls


def test_get_family_passthrough_and_unknown():
    p = fam.Poisson()
    assert fam.get_family(p) is p
    assert fam.get_family("negbin", theta=3.0).theta == 3.0
    with pytest.raises(ValueError):
        fam.get_family("tweedie")

# ---------------------------------------------------------------------
# Unit Tests: Family Functions
# ---------------------------------------------------------------------

def test_deviance_zero_at_saturation(rng):
    y = rng.poisson(3.0, size=50).astype(float)
    w = np.ones(50)
    assert fam.Poisson().deviance(y, y, w) == pytest.approx(0.0, abs=1e-12)
    assert fam.Poisson().deviance(y, np.full(50, 3.0), w) > 0.0
    assert fam.Gaussian().deviance(y, y, w) == 0.0


def test_binomial_inverse_link_is_clipped():
    mu = fam.Binomial().inverse_link(np.array([-1000.0, 0.0, 1000.0]))
    assert mu[0] > 0.0
    assert mu[-1] < 1.0
    assert mu[1] == pytest.approx(0.5)


def test_response_validation():
    with pytest.raises(ValueError):
        fam.Poisson().validate_response(np.array([1.0, -1.0]))
    with pytest.raises(ValueError):
        fam.Binomial().validate_response(np.array([0.0, 2.0]))
    with pytest.raises(ValueError):
        fam.Gamma().validate_response(np.array([1.0, 0.0]))
    with pytest.raises(ValueError):
        fam.NegativeBinomial(theta=0.0)


def test_gaussian_working_is_identity(rng):
    y = rng.standard_normal(20)
    eta = rng.standard_normal(20)
    w = rng.uniform(0.5, 1.5, size=20)
    z, W = fam.Gaussian().working(y, eta, w)
    np.testing.assert_allclose(z, y)
    np.testing.assert_allclose(W, w)


def test_newton_equals_irls_for_canonical_link(rng):
    y = rng.poisson(2.0, size=30).astype(float)
    eta = rng.normal(0.5, 0.2, size=30)
    w = np.ones(30)
    z1, W1 = fam.Poisson().working(y, eta, w, method="irls")
    z2, W2 = fam.Poisson().working(y, eta, w, method="newton")
    np.testing.assert_allclose(z1, z2)
    np.testing.assert_allclose(W1, W2)


@pytest.mark.parametrize("family", [fam.Probit(), fam.Gamma(), fam.NegativeBinomial(theta=2.0)])
def test_score_factor_derivative_matches_numeric(family):
    eta = np.linspace(-1.5, 1.5, 7)

    def s(e):
        return family.mu_eta(e) / family.variance(family.inverse_link(e))

    h = 1e-6
    numeric = (s(eta + h) - s(eta - h)) / (2.0 * h)
    np.testing.assert_allclose(family.score_factor_deriv(eta), numeric, rtol=1e-5, atol=1e-8)


def test_dispersion_fixed_and_estimated(rng):
    y = rng.standard_normal(40)
    mu = np.zeros(40)
    w = np.ones(40)
    assert fam.Poisson().dispersion(np.ones(40), np.ones(40), w, 38) == 1.0
    assert fam.Gaussian().dispersion(y, mu, w, 38) == pytest.approx(np.sum(y**2) / 38)


def test_negbin_theta_profile(rng):
    theta_true, mu0, n = 2.0, np.exp(1.0), 20000
    y = rng.negative_binomial(theta_true, theta_true / (theta_true + mu0), size=n).astype(float)
    nb = fam.NegativeBinomial()
    est = nb.update_theta(y, np.full(n, mu0), np.ones(n))
    assert est == pytest.approx(theta_true, rel=0.15)
    assert nb.theta == est
    fixed = fam.NegativeBinomial(theta=5.0)
    assert fixed.update_theta(y, np.full(n, mu0), np.ones(n)) == 5.0


def test_custom_family_callables():
    custom = fam.CustomFamily(
        link=np.log,
        inverse_link=np.exp,
        variance=lambda m: m,
        deviance=lambda y, m, w: float(np.sum(w * (y - m) ** 2)),
    )
    eta = np.array([0.0, 1.0])
    np.testing.assert_allclose(custom.mu_eta(eta), np.exp(eta), rtol=1e-6)
    assert custom.link_name == "log"
    assert not custom.canonical
    with pytest.raises(TypeError):
        fam.CustomFamily(np.log, np.exp, None, None)
