import pytest
import numpy as np

from hdfereg import FEGLM, FENLM, EngineConfig, OptimizationFailed

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(77)


@pytest.fixture
def exp_data(rng):
    n, G = 1200, 12
    g = rng.integers(0, G, size=n)
    x = rng.uniform(0.0, 2.0, size=n)
    z = rng.standard_normal(n)
    y = np.exp(0.7 * x) + 2.0 * z + rng.standard_normal(G)[g] + 0.3 * rng.standard_normal(n)
    return {"y": y, "x": x, "z": z, "g": g}

# ---------------------------------------------------------------------
# Integration Tests: Bounded Gauss-Newton
# ---------------------------------------------------------------------

def test_exponential_term_recovered(exp_data):
    d = exp_data
    x = d["x"]
    model = FENLM(
        y=d["y"], X=d["z"], fe={"g": d["g"]}, x_names=["z"],
        nl_func=lambda t: np.exp(t[0] * x), start=[0.1],
        lower=[0.0], upper=[1.0], nl_names=["a"],
    )
    res = model.fit()
    assert res.converged
    assert res.nl_coef["a"] == pytest.approx(0.7, abs=0.05)
    assert res.coef["z"] == pytest.approx(2.0, abs=0.05)
    assert list(res.params.index) == ["a", "z"]
    assert list(res.vcov.index) == ["a", "z"]
    assert (res.se > 0).all()
    assert res.df_t == res.stats["df_resid"]


def test_analytic_jacobian_matches_numerical(exp_data):
    d = exp_data
    x = d["x"]
    common = dict(
        y=d["y"], X=d["z"], fe={"g": d["g"]},
        nl_func=lambda t: np.exp(t[0] * x), start=[0.1], lower=[0.0], upper=[1.0],
    )
    numeric = FENLM(**common).fit()
    analytic = FENLM(**common, jac=lambda t: (x * np.exp(t[0] * x)).reshape(-1, 1)).fit()
    np.testing.assert_allclose(analytic.params.to_numpy(), numeric.params.to_numpy(), rtol=1e-5)


def test_upper_bound_is_respected(exp_data, rng):
    d = exp_data
    x = d["x"]
    y = np.exp(1.5 * x) + rng.standard_normal(12)[d["g"]] + 0.3 * rng.standard_normal(len(x))
    res = FENLM(
        y=y, fe={"g": d["g"]}, nl_func=lambda t: np.exp(t[0] * x), start=[0.5],
        lower=[0.0], upper=[1.0],
    ).fit()
    assert res.nl_coef.iloc[0] <= 1.0
    assert res.nl_coef.iloc[0] > 0.95


def test_linear_index_matches_poisson_glm(rng):
    n, G = 1500, 10
    g = rng.integers(0, G, size=n)
    x = rng.standard_normal(n)
    y = rng.poisson(np.exp(0.4 * x + rng.normal(0.0, 0.5, size=G)[g])).astype(float)
    nl = FENLM(
        y=y, fe={"g": g}, nl_func=lambda t: t[0] * x, start=[0.0],
        jac=lambda t: x.reshape(-1, 1), family="poisson",
    ).fit()
    glm = FEGLM(y=y, X=x, fe={"g": g}, family="poisson").fit()
    assert nl.nl_coef.iloc[0] == pytest.approx(glm.coef.iloc[0], rel=1e-4)
    assert nl.se.iloc[0] == pytest.approx(glm.se.iloc[0], rel=1e-3)


def test_bounds_and_start_validated(exp_data):
    d = exp_data
    x = d["x"]
    with pytest.raises(ValueError):
        FENLM(
            y=d["y"], fe={"g": d["g"]}, nl_func=lambda t: np.exp(t[0] * x),
            start=[2.0], lower=[0.0], upper=[1.0],
        ).fit()
    with pytest.raises(ValueError):
        FENLM(
            y=d["y"], fe={"g": d["g"]}, nl_func=lambda t: np.exp(t[0] * x),
            start=[0.5], lower=[1.0], upper=[0.0],
        ).fit()
    with pytest.raises(ValueError):
        FENLM(y=d["y"], nl_func=lambda t: t[0] * x, start=[0.0], nl_names=["a", "b"])
    with pytest.raises(TypeError):
        FENLM(y=d["y"], nl_func=None, start=[0.0])


def test_no_acceptable_step_raises(exp_data):
    d = exp_data
    x = d["x"]
    n = len(x)

    def f(t):
        # defined only at the starting value
        return t[0] * x if t[0] == 0.0 else np.full(n, np.nan)

    model = FENLM(
        y=2.0 * x + d["z"], fe={"g": d["g"]}, nl_func=f, start=[0.0],
        jac=lambda t: x.reshape(-1, 1),
    )
    with pytest.raises(OptimizationFailed) as info:
        model.fit(config=EngineConfig(min_step=1e-3))
    assert info.value.diagnostics["reason"] == "step size below min_step"
