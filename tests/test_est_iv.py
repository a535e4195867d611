import pytest
import numpy as np
import pandas as pd

from hdfereg import FEIV, FEOLS

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(2718)


@pytest.fixture
def iv_data(rng):
    """Endogenous regressor with two valid instruments and firm effects."""
    n, G = 3000, 20
    firm = rng.integers(0, G, size=n)
    alpha = rng.standard_normal(G)
    z1 = rng.standard_normal(n)
    z2 = rng.standard_normal(n)
    x = rng.standard_normal(n)
    v = rng.standard_normal(n)
    u = 0.8 * v + 0.6 * rng.standard_normal(n)
    d = 0.8 * z1 + 0.5 * z2 + 0.3 * x + alpha[firm] + v
    y = 1.0 * d + 0.5 * x + alpha[firm] + u
    return {"y": y, "x": x, "d": d, "Z": np.column_stack([z1, z2]), "firm": firm}


def _demean(a, g):
    df = pd.DataFrame(a)
    return (df - df.groupby(g).transform("mean")).to_numpy()

# ---------------------------------------------------------------------
# Integration Tests: Two-Stage Least Squares
# ---------------------------------------------------------------------

def test_iv_closer_to_truth_than_ols(iv_data):
    d = iv_data
    fe = {"firm": d["firm"]}
    iv = FEIV(y=d["y"], X=d["x"], fe=fe, endog=d["d"], instruments=d["Z"], endog_names=["d"]).fit()
    ols = FEOLS(y=d["y"], X=np.column_stack([d["x"], d["d"]]), fe=fe, x_names=["x0", "d"]).fit()
    assert abs(iv.coef["d"] - 1.0) < 0.1
    assert abs(iv.coef["d"] - 1.0) < abs(ols.coef["d"] - 1.0)
    assert ols.coef["d"] - 1.0 > 0.15
    assert list(iv.coef.index) == ["x0", "d"]


def test_iv_matches_manual_2sls(iv_data):
    d = iv_data
    g = d["firm"]
    iv = FEIV(y=d["y"], X=d["x"], fe={"firm": g}, endog=d["d"], instruments=d["Z"]).fit()

    yt = _demean(d["y"], g)[:, 0]
    Xt = _demean(d["x"], g)
    Dt = _demean(d["d"], g)
    Zt = _demean(d["Z"], g)
    XZ = np.column_stack([Xt, Zt])
    Dhat = XZ @ np.linalg.lstsq(XZ, Dt, rcond=None)[0]
    W = np.column_stack([Xt, Dhat])
    beta = np.linalg.lstsq(W, yt, rcond=None)[0]
    np.testing.assert_allclose(iv.coef.to_numpy(), beta, rtol=1e-8)

    u = yt - np.column_stack([Xt, Dt]) @ beta
    n, G = len(yt), 20
    sigma2 = np.sum(u**2) / (n - 2 - G)
    se = np.sqrt(np.diag(sigma2 * np.linalg.inv(W.T @ W)))
    np.testing.assert_allclose(iv.se.to_numpy(), se, rtol=1e-6)
    np.testing.assert_allclose(iv.resid, u, atol=1e-8)

# ---------------------------------------------------------------------
# Integration Tests: IV Diagnostics
# ---------------------------------------------------------------------

def test_first_stage_statistics(iv_data):
    d = iv_data
    res = FEIV(
        y=d["y"], X=d["x"], fe={"firm": d["firm"]}, endog=d["d"], instruments=d["Z"],
        endog_names=["d"],
    ).fit()
    fs = res.iv_stats["first_stage"]["d"]
    assert fs["F"] > 100.0
    assert fs["F_pvalue"] < 1e-10
    assert fs["df_num"] == 2
    assert fs["df_denom"] == 3000 - 3 - 20
    assert fs["ssr_restricted"] > fs["ssr_unrestricted"]
    # under iid the Wald F on the instrument block equals the SSR-difference F
    assert fs["wald_F"] == pytest.approx(fs["F"], rel=1e-6)
    assert res.iv_stats["n_instruments"] == 2
    assert res.iv_stats["n_endog"] == 1


def test_weak_instrument_has_small_f(iv_data, rng):
    d = iv_data
    noise = rng.standard_normal(len(d["y"]))
    res = FEIV(y=d["y"], X=d["x"], fe={"firm": d["firm"]}, endog=d["d"], instruments=noise).fit()
    assert res.iv_stats["first_stage"]["endog0"]["F"] < 15.0
    assert res.iv_stats["sargan"] is None


def test_endogeneity_and_overidentification_tests(iv_data):
    d = iv_data
    res = FEIV(y=d["y"], X=d["x"], fe={"firm": d["firm"]}, endog=d["d"], instruments=d["Z"]).fit()
    wu = res.iv_stats["wu_hausman"]
    assert wu["pvalue"] < 0.01
    assert wu["df_num"] == 1
    sargan = res.iv_stats["sargan"]
    assert sargan["df"] == 1
    # instruments are valid by construction
    assert sargan["pvalue"] > 0.001


def test_cluster_robust_iv(iv_data):
    d = iv_data
    res = FEIV(
        y=d["y"], X=d["x"], fe={"firm": d["firm"]}, endog=d["d"], instruments=d["Z"],
    ).fit(cluster=d["firm"])
    assert res.vcov_kind == "cluster"
    assert res.df_t == 19
    fs = res.iv_stats["first_stage"]["endog0"]
    assert np.isfinite(fs["wald_F"])
    assert (res.se > 0).all()


def test_iv_without_groupings_adds_intercept(iv_data):
    d = iv_data
    res = FEIV(y=d["y"], X=d["x"], endog=d["d"], instruments=d["Z"]).fit(vcov="hetero")
    assert res.flags.intercept_added
    assert list(res.coef.index) == ["x0", "_cons", "endog0"]

# ---------------------------------------------------------------------
# Failure Modes
# ---------------------------------------------------------------------

def test_underidentified_model_rejected(iv_data):
    d = iv_data
    endog = np.column_stack([d["d"], d["x"] ** 2])
    model = FEIV(y=d["y"], fe={"firm": d["firm"]}, endog=endog, instruments=d["Z"][:, 0])
    with pytest.raises(ValueError, match="underidentified"):
        model.fit()


def test_endog_name_clash_rejected(iv_data):
    d = iv_data
    with pytest.raises(ValueError):
        FEIV(
            y=d["y"], X=d["x"], x_names=["d"], endog=d["d"], instruments=d["Z"],
            endog_names=["d"],
        )
