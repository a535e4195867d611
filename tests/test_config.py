import pytest

from hdfereg.core import errors
from hdfereg.core.config import EngineConfig, default_thread_count

# ---------------------------------------------------------------------
# Unit Tests: Engine Configuration
# ---------------------------------------------------------------------

def test_defaults():
    cfg = EngineConfig()
    assert cfg.accel == "irons_tuck"
    assert cfg.cluster_df == "min"
    assert cfg.drop_singletons is False
    assert cfg.threads == default_thread_count()
    assert default_thread_count() >= 1


@pytest.mark.parametrize(
    "changes",
    [
        {"n_threads": 0},
        {"min_chunk": 0},
        {"fe_tol": 0.0},
        {"tol": 1.5},
        {"max_iter": 0},
        {"max_nondecrease": 0},
        {"accel": "aitken"},
        {"cluster_df": "exact"},
    ],
)
def test_invalid_settings_rejected(changes):
    with pytest.raises(ValueError):
        EngineConfig(**changes)


def test_replace_validates():
    cfg = EngineConfig().replace(fe_tol=1e-10)
    assert cfg.fe_tol == 1e-10
    with pytest.raises(ValueError):
        cfg.replace(collin_tol=-1.0)


def test_from_env(monkeypatch):
    monkeypatch.setenv("HDFEREG_NUM_THREADS", "3")
    assert EngineConfig.from_env().threads == 3
    # explicit argument wins over the environment
    assert EngineConfig.from_env(n_threads=2).threads == 2
    monkeypatch.setenv("HDFEREG_NUM_THREADS", "many")
    assert EngineConfig.from_env().n_threads is None
    monkeypatch.delenv("HDFEREG_NUM_THREADS")
    assert EngineConfig.from_env().n_threads is None

# ---------------------------------------------------------------------
# Unit Tests: Error Kinds
# ---------------------------------------------------------------------

def test_error_hierarchy():
    assert issubclass(errors.Diverged, errors.OptimizationFailed)
    assert issubclass(errors.NonFiniteValueError, errors.OptimizationFailed)
    assert issubclass(errors.DegenerateGroupingError, ValueError)
    assert issubclass(errors.CollinearRegressor, UserWarning)
    assert issubclass(errors.SlowConvergenceWarning, RuntimeWarning)


def test_optimization_failed_carries_diagnostics():
    err = errors.Diverged("stuck", {"iteration": 4, "reason": "iteration cap"})
    assert err.diagnostics["iteration"] == 4
    assert str(err) == "stuck"
    assert errors.OptimizationFailed("x").diagnostics == {}
    assert errors.DegenerateGroupingError("firm").name == "firm"
