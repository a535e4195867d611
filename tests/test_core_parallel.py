import pytest
import numpy as np

from hdfereg.core.config import EngineConfig
from hdfereg.core.parallel import ThreadedReduction

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(7)

# ---------------------------------------------------------------------
# Unit Tests: Chunking and Reductions
# ---------------------------------------------------------------------

def test_chunks_cover_range():
    pool = ThreadedReduction(3, min_chunk=10)
    ranges = pool.chunks(95)
    assert ranges[0][0] == 0
    assert ranges[-1][1] == 95
    assert len(ranges) == 3
    for (_, stop), (start, _) in zip(ranges[:-1], ranges[1:]):
        assert stop == start
    assert pool.chunks(0) == []
    # small inputs stay in one chunk
    assert len(ThreadedReduction(8, min_chunk=1000).chunks(500)) == 1


def test_group_sum_matches_bincount(rng):
    n, G = 5000, 37
    codes = rng.integers(0, G, size=n)
    values = rng.standard_normal((n, 2))
    with ThreadedReduction(4, min_chunk=100) as pool:
        out = pool.group_sum(values, codes, G)
    for j in range(2):
        np.testing.assert_allclose(out[:, j], np.bincount(codes, weights=values[:, j], minlength=G))
    vec = ThreadedReduction(1).group_sum(values[:, 0], codes, G)
    assert vec.shape == (G,)


def test_group_sum_is_deterministic(rng):
    n, G = 20000, 11
    codes = rng.integers(0, G, size=n)
    values = rng.standard_normal(n)
    with ThreadedReduction(4, min_chunk=500) as pool:
        first = pool.group_sum(values, codes, G)
        second = pool.group_sum(values, codes, G)
    np.testing.assert_array_equal(first, second)


def test_map_reduce_and_map_rows(rng):
    X = rng.standard_normal((1000, 3))
    with ThreadedReduction(4, min_chunk=50) as pool:
        xtx = pool.map_reduce(lambda s, e: X[s:e].T @ X[s:e], X.shape[0])
        rows = pool.map_rows(lambda s, e: 2.0 * X[s:e], X.shape[0])
        squares = pool.map(lambda v: v * v, [1, 2, 3])
    np.testing.assert_allclose(xtx, X.T @ X)
    np.testing.assert_array_equal(rows, 2.0 * X)
    assert squares == [1, 4, 9]


def test_pool_validation_and_config():
    with pytest.raises(ValueError):
        ThreadedReduction(0)
    with pytest.raises(ValueError):
        ThreadedReduction(1).map_reduce(lambda s, e: 0.0, 0)
    pool = ThreadedReduction.from_config(EngineConfig(n_threads=3, min_chunk=10))
    assert pool.n_threads == 3
    assert pool.min_chunk == 10
    pool.close()
