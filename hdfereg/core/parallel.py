"""Fork-join reductions over observations.

:class:`ThreadedReduction` owns a fixed-size thread pool for the lifetime of
one estimation. Each call splits the observations into contiguous chunks,
computes partial results per chunk and combines them in chunk order before
returning, so the combine step always happens before the caller continues.
NumPy releases the GIL in the per-chunk kernels, which is where the speedup
comes from.
"""

# hdfereg/core/parallel.py
from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, Any, TypeVar

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .config import EngineConfig
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

__all__ = ["ThreadedReduction"]

T = TypeVar("T")
R = TypeVar("R")


class ThreadedReduction:
    """Deterministic chunked map/reduce on a private thread pool.

    Parameters
    ----------
    n_threads : int
        Number of workers. ``1`` runs everything inline.
    min_chunk : int
        Minimum number of rows per chunk; small inputs run as a single chunk.

    Examples
    --------
    >>> with ThreadedReduction(4) as pool:
    ...     totals = pool.group_sum(values, codes, n_groups)
    """

    def __init__(self, n_threads: int = 1, *, min_chunk: int = 20000) -> None:
        if int(n_threads) < 1:
            msg = "n_threads must be positive."
            raise ValueError(msg)
        self.n_threads = int(n_threads)
        self.min_chunk = max(1, int(min_chunk))
        self._executor: ThreadPoolExecutor | None = None

    @classmethod
    def from_config(cls, config: EngineConfig) -> ThreadedReduction:
        return cls(config.threads, min_chunk=config.min_chunk)

    # context management -------------------------------------------------

    def __enter__(self) -> ThreadedReduction:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def close(self) -> None:
        """Shut the pool down; later calls recreate it lazily."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.n_threads)
        return self._executor

    # chunking -----------------------------------------------------------

    def chunks(self, n: int) -> list[tuple[int, int]]:
        """Contiguous ``(start, stop)`` row ranges covering ``range(n)``."""
        n = int(n)
        if n <= 0:
            return []
        n_chunks = min(self.n_threads, max(1, n // self.min_chunk))
        bounds = np.linspace(0, n, n_chunks + 1).astype(np.int64)
        return [(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]

    # primitives ---------------------------------------------------------

    def map_reduce(self, func: Callable[[int, int], Any], n: int) -> Any:
        """Sum ``func(start, stop)`` over all chunks of ``range(n)``.

        Partial results are combined in chunk order, which keeps floating
        point results identical across runs with the same thread count.
        """
        ranges = self.chunks(n)
        if not ranges:
            msg = "map_reduce requires at least one observation."
            raise ValueError(msg)
        if len(ranges) == 1:
            return func(*ranges[0])
        pool = self._pool()
        futures = {pool.submit(func, s, e): i for i, (s, e) in enumerate(ranges)}
        out_ordered = [(futures[fut], fut.result()) for fut in as_completed(futures)]
        out_ordered.sort(key=lambda t: t[0])
        total = out_ordered[0][1]
        for _, part in out_ordered[1:]:
            total = total + part
        return total

    def map_rows(self, func: Callable[[int, int], NDArray[Any]], n: int) -> NDArray[Any]:
        """Concatenate ``func(start, stop)`` row blocks in original order."""
        ranges = self.chunks(n)
        if len(ranges) <= 1:
            return func(0, int(n))
        pool = self._pool()
        futures = {pool.submit(func, s, e): s for (s, e) in ranges}
        out_ordered = [(futures[fut], fut.result()) for fut in as_completed(futures)]
        out_ordered.sort(key=lambda t: t[0])
        return np.concatenate([v for _, v in out_ordered], axis=0)

    def map(self, func: Callable[[T], R], items: Iterable[T]) -> list[R]:
        """Run independent tasks and return their results in input order."""
        items = list(items)
        if self.n_threads == 1 or len(items) <= 1:
            return [func(item) for item in items]
        pool = self._pool()
        return list(pool.map(func, items))

    def group_sum(
        self,
        values: NDArray[np.float64],
        codes: NDArray[np.int64],
        n_groups: int,
    ) -> NDArray[np.float64]:
        """Sum rows of ``values`` within groups given by dense ``codes``.

        Parameters
        ----------
        values : ndarray, shape (n,) or (n, p)
        codes : ndarray of int, shape (n,)
            Dense group indices in ``0..n_groups-1``.
        n_groups : int

        Returns
        -------
        ndarray, shape (n_groups,) or (n_groups, p)
        """
        vals = np.asarray(values, dtype=np.float64)
        codes = np.asarray(codes, dtype=np.int64).reshape(-1)
        squeeze = vals.ndim == 1
        V = vals.reshape(-1, 1) if squeeze else vals
        if V.shape[0] != codes.shape[0]:
            msg = "codes length must match number of rows in values"
            raise ValueError(msg)
        G = int(n_groups)
        p = V.shape[1]

        def _partial(start: int, stop: int) -> NDArray[np.float64]:
            c = codes[start:stop]
            out = np.empty((G, p), dtype=np.float64)
            for j in range(p):
                out[:, j] = np.bincount(c, weights=V[start:stop, j], minlength=G)
            return out

        if V.shape[0] == 0:
            total = np.zeros((G, p), dtype=np.float64)
        else:
            total = self.map_reduce(_partial, V.shape[0])
        return total.reshape(-1) if squeeze else total
