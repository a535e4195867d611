import pytest
import numpy as np

from hdfereg.core import linalg
from hdfereg.core.errors import CollinearRegressor

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(2024)

# ---------------------------------------------------------------------
# Unit Tests: Weighted Normal Equations
# ---------------------------------------------------------------------

def test_solve_matches_lstsq(rng):
    n = 200
    X = rng.standard_normal((n, 3))
    y = X @ np.array([1.0, -2.0, 0.5]) + rng.standard_normal(n)
    sol = linalg.solve_normal_equations(X, y)
    expected = np.linalg.lstsq(X, y, rcond=None)[0]
    np.testing.assert_allclose(sol.coef, expected, rtol=1e-10)
    assert sol.rank == 3
    assert sol.dropped == []
    np.testing.assert_allclose(sol.xtwx_inv, np.linalg.inv(X.T @ X), rtol=1e-8)


def test_solve_weighted(rng):
    n = 150
    X = rng.standard_normal((n, 2))
    y = rng.standard_normal(n)
    w = rng.uniform(0.1, 3.0, size=n)
    sol = linalg.solve_normal_equations(X, y, weights=w)
    expected = np.linalg.solve(linalg.gram(X, w), linalg.xty(X, y, w))
    np.testing.assert_allclose(sol.coef, expected, rtol=1e-10)


def test_collinear_column_dropped_in_order(rng):
    n = 100
    x1 = rng.standard_normal(n)
    x2 = rng.standard_normal(n)
    X = np.column_stack([x1, x2, x1 + 2.0 * x2])
    y = x1 - x2 + 0.1 * rng.standard_normal(n)
    with pytest.warns(CollinearRegressor, match="'z'"):
        sol = linalg.solve_normal_equations(X, y, names=["a", "b", "z"])
    # the appended combination goes, not one of the originals
    assert sol.dropped == [2]
    assert sol.keep.tolist() == [True, True, False]
    assert np.isnan(sol.coef[2])
    expected = np.linalg.lstsq(X[:, :2], y, rcond=None)[0]
    np.testing.assert_allclose(sol.coef[:2], expected, rtol=1e-8)
    assert sol.xtwx_inv.shape == (2, 2)
    assert sol.kept_index.tolist() == [0, 1]


def test_column_absorbed_by_fixed_effects_dropped(rng):
    n = 50
    X = np.column_stack([rng.standard_normal(n), 1e-12 * rng.standard_normal(n)])
    y = rng.standard_normal(n)
    sol = linalg.solve_normal_equations(
        X, y, scale=np.array([np.sqrt(n), np.sqrt(n)]), warn=False,
    )
    assert sol.dropped == [1]
    assert sol.rank == 1


def test_all_zero_design(rng):
    sol = linalg.solve_normal_equations(np.zeros((10, 2)), rng.standard_normal(10), warn=False)
    assert sol.rank == 0
    assert np.all(np.isnan(sol.coef))
    assert sol.dropped == [0, 1]


def test_matrix_response(rng):
    n = 80
    X = rng.standard_normal((n, 2))
    Y = rng.standard_normal((n, 3))
    sol = linalg.solve_normal_equations(X, Y)
    assert sol.coef.shape == (2, 3)
    np.testing.assert_allclose(sol.coef, np.linalg.lstsq(X, Y, rcond=None)[0], rtol=1e-10)


def test_solve_rejects_bad_input(rng):
    X = rng.standard_normal((5, 2))
    with pytest.raises(ValueError):
        linalg.solve_normal_equations(X, np.ones(4))
    X[0, 0] = np.nan
    with pytest.raises(ValueError):
        linalg.solve_normal_equations(X, np.ones(5))

# ---------------------------------------------------------------------
# Unit Tests: Helpers
# ---------------------------------------------------------------------

def test_validate_weights():
    np.testing.assert_array_equal(linalg._validate_weights([1, 2], 2), [1.0, 2.0])
    with pytest.raises(ValueError):
        linalg._validate_weights([1.0], 2)
    with pytest.raises(ValueError):
        linalg._validate_weights([1.0, np.inf], 2)
    with pytest.raises(ValueError):
        linalg._validate_weights([1.0, -1.0], 2)
    with pytest.raises(ValueError):
        linalg._validate_weights([0.0, 0.0], 2)
    with pytest.raises(ValueError):
        linalg._validate_weights([1.0, 0.0], 2, allow_zero=False)


def test_force_psd_clips_negative_eigenvalues():
    A = np.array([[1.0, 2.0], [2.0, 1.0]])  # eigenvalues 3 and -1
    B, n_clip = linalg.force_psd(A)
    assert n_clip == 1
    assert np.min(np.linalg.eigvalsh(B)) >= -1e-12
    np.testing.assert_allclose(B, B.T)
    same, none = linalg.force_psd(np.eye(2))
    assert none == 0
    np.testing.assert_array_equal(same, np.eye(2))
