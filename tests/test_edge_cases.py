import pytest
import numpy as np
import pandas as pd

import hdfereg
from hdfereg import FEOLS, Design, GroupIndex, UnderidentifiedFixedEffects
from hdfereg.core.groups import make_grouping
from hdfereg.estimators.base import _as_groupings, normalize_ci_level

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(99)

# ---------------------------------------------------------------------
# Unit Tests: Design Validation
# ---------------------------------------------------------------------

def test_design_defaults_and_names(rng):
    d = Design.from_arrays(rng.standard_normal(10), rng.standard_normal((10, 2)))
    assert d.x_names == ("x0", "x1")
    np.testing.assert_array_equal(d.weights, np.ones(10))
    np.testing.assert_array_equal(d.offset, np.zeros(10))
    assert d.n_obs == 10 and d.n_regressors == 2


def test_design_from_dataframe_columns(rng):
    X = pd.DataFrame({"a": rng.standard_normal(6), "b": rng.standard_normal(6)})
    d = Design.from_arrays(rng.standard_normal(6), X)
    assert d.x_names == ("a", "b")
    s = pd.Series(rng.standard_normal(6), name="s")
    assert Design.from_arrays(rng.standard_normal(6), s).x_names == ("s",)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"X": np.zeros((9, 1))},
        {"x_names": ["a", "b"]},
        {"x_names": ["a"], "X": np.zeros((10, 2))},
        {"weights": -np.ones(10)},
        {"offset": np.zeros(3)},
    ],
)
def test_design_rejects_inconsistent_input(kwargs):
    params = {"y": np.zeros(10), "X": np.zeros((10, 1))}
    params.update(kwargs)
    with pytest.raises(ValueError):
        Design.from_arrays(params.pop("y"), params.pop("X"), **params)


def test_design_rejects_nonfinite(rng):
    y = rng.standard_normal(5)
    y[2] = np.nan
    with pytest.raises(ValueError):
        Design.from_arrays(y, rng.standard_normal(5))


def test_design_subset_redensifies(rng):
    d = Design.from_arrays(rng.standard_normal(6), rng.standard_normal(6), fe={"g": [0, 0, 1, 1, 2, 2]})
    sub = d.subset(np.array([True, True, False, False, True, True]))
    assert sub.n_obs == 4
    assert sub.groupings[0].n_levels == 2


def test_as_groupings_variants(rng):
    n = 8
    a = rng.integers(0, 3, size=n)
    b = rng.integers(0, 2, size=n)
    assert _as_groupings(None, n) == ()
    assert [g.name for g in _as_groupings({"a": a, "b": b}, n)] == ["a", "b"]
    assert [g.name for g in _as_groupings([a, b], n)] == ["fe0", "fe1"]
    assert [g.name for g in _as_groupings(np.column_stack([a, b]), n)] == ["fe0", "fe1"]
    assert [g.name for g in _as_groupings(pd.DataFrame({"u": a}), n)] == ["u"]
    spec = make_grouping("s", a, allow_single=True)
    assert _as_groupings(spec, n)[0] is spec
    with pytest.raises(ValueError):
        _as_groupings(np.zeros((n + 1, 1)), n)


def test_normalize_ci_level():
    assert normalize_ci_level(None) == 0.95
    assert normalize_ci_level(90) == pytest.approx(0.90)
    with pytest.raises(ValueError):
        normalize_ci_level(0.0)

# ---------------------------------------------------------------------
# Integration Tests: Structural Edge Cases
# ---------------------------------------------------------------------

def test_varying_slopes_recovered(rng):
    n, G = 3000, 15
    firm = rng.integers(0, G, size=n)
    z = rng.standard_normal(n)
    x = rng.standard_normal(n)
    a = rng.standard_normal(G)
    b = rng.standard_normal(G)
    y = 1.0 * x + a[firm] + b[firm] * z + 0.5 * rng.standard_normal(n)
    df = pd.DataFrame({"y": y, "x": x, "firm": firm, "z": z})
    design = Design.from_frame(df, "y", ["x"], fe=["firm"], slopes={"firm": "z"})
    res = FEOLS(design).fit()
    assert res.coef["x"] == pytest.approx(1.0, abs=0.05)
    slopes = res.fixef["firm[z]"].sort_index().to_numpy()
    assert np.corrcoef(slopes, b)[0, 1] >= 0.95
    assert res.stats["fe_dof"] == 2 * G


def test_underidentified_effects_flagged(rng):
    n = 400
    block = rng.integers(0, 2, size=n)
    g1 = block * 5 + rng.integers(0, 5, size=n)
    g2 = block * 4 + rng.integers(0, 4, size=n)
    x = rng.standard_normal(n)
    y = x + rng.standard_normal(10)[g1] + rng.standard_normal(8)[g2] + rng.standard_normal(n)
    with pytest.warns(UnderidentifiedFixedEffects):
        res = FEOLS(y=y, X=x, fe={"g1": g1, "g2": g2}).fit()
    assert res.flags.underidentified == ("g2",)
    # two components, so two redundant levels
    assert res.stats["fe_dof"] == 10 + 8 - 2
    np.testing.assert_allclose(
        res.fixef["g1"].to_numpy()[g1] + res.fixef["g2"].to_numpy()[g2] + res.coef.iloc[0] * x,
        res.fitted,
        atol=1e-4,
    )


def test_group_index_combined_grouping(rng):
    n = 600
    idx = GroupIndex()
    idx.add("firm", rng.integers(0, 10, size=n))
    idx.add("year", rng.integers(0, 5, size=n))
    idx.combine("firm", "year")
    x = rng.standard_normal(n)
    y = x + rng.standard_normal(n)
    res = FEOLS(y=y, X=x, fe=idx).fit()
    assert set(res.fixef) == {"firm", "year", "firm^year"}
    assert res.coef.iloc[0] == pytest.approx(1.0, abs=0.2)

# ---------------------------------------------------------------------
# Unit Tests: Package Surface
# ---------------------------------------------------------------------

def test_lazy_exports():
    assert hdfereg.FEOLS is FEOLS
    assert "FEGLM" in dir(hdfereg)
    with pytest.raises(AttributeError):
        hdfereg.DoesNotExist
    assert hdfereg.__version__ == "0.1.0"
