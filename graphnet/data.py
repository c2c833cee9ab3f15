"""In-memory dataset with threaded batch assembly."""
from __future__ import annotations
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterator, Optional, Tuple

import numpy as np

from .errors import InvalidParameterError


class Dataset:
    """Features ``x`` and targets ``y`` sharing their first axis.

    Attributes:
        x: Feature array of shape ``(N, ...)``.
        y: Target array of shape ``(N, ...)`` (class labels or dense targets).
    """

    def __init__(self, x: np.ndarray, y: np.ndarray) -> None:
        x = np.asarray(x)
        y = np.asarray(y)
        if len(x) != len(y):
            raise InvalidParameterError(
                f"Features and targets must have same length, got {len(x)} and {len(y)}"
            )
        self.x: np.ndarray = x
        self.y: np.ndarray = y

    def __len__(self) -> int:
        return self.x.shape[0]

    def get_x(self, index: int) -> np.ndarray:
        return self.x[index]

    def get_y(self, index: int):
        return self.y[index]

    def split(self, fraction: float, shuffle: bool = False,
              seed: Optional[int] = None) -> Tuple['Dataset', 'Dataset']:
        """Split into ``(first, rest)`` where ``first`` holds ``floor(fraction * N)`` samples."""
        if not 0.0 < fraction < 1.0:
            raise InvalidParameterError(f"Split fraction must be in (0, 1), got {fraction}")
        idx = np.arange(len(self))
        if shuffle:
            np.random.default_rng(seed).shuffle(idx)
        cut = int(fraction * len(self))
        return (Dataset(self.x[idx[:cut]], self.y[idx[:cut]]),
                Dataset(self.x[idx[cut:]], self.y[idx[cut:]]))

    def num_batches(self, batch_size: int) -> int:
        _check_batch_size(batch_size)
        return (len(self) + batch_size - 1) // batch_size

    def batches(
        self,
        batch_size: int,
        shuffle: bool = False,
        seed: Optional[int] = None,
        preprocess: Optional[Callable[[np.ndarray], np.ndarray]] = None,
        num_threads: Optional[int] = None,
    ) -> Iterator[Tuple[np.ndarray, np.ndarray]]:
        """Yield ``(x, y)`` windows of ``batch_size``; the last one may be smaller.

        Batches are assembled by a small thread pool a few windows ahead of
        the consumer, in order.
        """
        _check_batch_size(batch_size)
        n = len(self)
        idx = np.arange(n)
        if shuffle:
            np.random.default_rng(seed).shuffle(idx)
        if num_threads is None:
            num_threads = min(4, os.cpu_count() or 1)

        def load_batch(start: int) -> Tuple[np.ndarray, np.ndarray]:
            window = idx[start:start + batch_size]
            x = self.x[window]
            if preprocess is not None:
                x = preprocess(x)
            return x, self.y[window]

        with ThreadPoolExecutor(max_workers=num_threads) as executor:
            futures = []
            for start in range(0, n, batch_size):
                futures.append(executor.submit(load_batch, start))
                if len(futures) >= num_threads:
                    yield futures.pop(0).result()
            for future in futures:
                yield future.result()


def _check_batch_size(batch_size: int) -> None:
    if isinstance(batch_size, bool) or int(batch_size) != batch_size or batch_size < 1:
        raise InvalidParameterError(f"Batch size must be a positive integer, got {batch_size}")
