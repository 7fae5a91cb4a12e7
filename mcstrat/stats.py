"""
Streaming statistics used by the simulator.

Both accumulators consume one terminal price at a time and use O(1)
memory per observation retained.
"""

import math
from typing import Callable, Dict, Optional

import numpy as np


QUANTILE_LEVELS: Dict[str, float] = {
    "qLoST": 0.025,
    "q05ST": 0.05,
    "q25ST": 0.25,
    "q50ST": 0.5,
    "q75ST": 0.75,
    "q95ST": 0.95,
    "qHiST": 0.975,
}


class StreamingMoments:
    """Running mean and sum of squared deviations (Welford)."""

    __slots__ = ("count", "mean", "m2")

    def __init__(self) -> None:
        self.count = 0
        self.mean = 0.0
        self.m2 = 0.0

    def update(self, x: float) -> None:
        self.count += 1
        delta = x - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (x - self.mean)

    @property
    def variance(self) -> float:
        """Sample variance; zero until two observations are seen."""
        if self.count < 2:
            return 0.0
        return self.m2 / (self.count - 1)

    @property
    def std(self) -> float:
        return math.sqrt(self.variance)


class ReservoirSampler:
    """
    Fixed-capacity uniform sample of a stream (Algorithm R).

    After `seen` offers every offered value is retained with probability
    capacity / seen, whatever the order of the stream.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = int(capacity)
        self._buffer = np.empty(self.capacity, dtype=np.float64)
        self.seen = 0

    @property
    def size(self) -> int:
        return min(self.seen, self.capacity)

    def offer(self, x: float, uniform: Callable[[], float]) -> None:
        i = self.seen
        if i < self.capacity:
            self._buffer[i] = x
        else:
            j = int(uniform() * (i + 1))
            if j < self.capacity:
                self._buffer[j] = x
        self.seen = i + 1

    def values(self) -> np.ndarray:
        """Copy of the retained values, in slot order."""
        return self._buffer[: self.size].copy()


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def nearest_rank(sorted_values: np.ndarray, p: float) -> Optional[float]:
    """
    Value at index round((n - 1) * p) of an ascending array.

    No interpolation. Halves round up, so p=0.5 over an even-length
    array picks the upper middle element.
    """
    n = len(sorted_values)
    if n == 0:
        return None
    idx = min(n - 1, max(0, _round_half_up((n - 1) * p)))
    return float(sorted_values[idx])


def summarize_quantiles(values: np.ndarray) -> Dict[str, Optional[float]]:
    """Sort once and read every reported quantile off the sorted array."""
    ordered = np.sort(np.asarray(values, dtype=np.float64))
    return {key: nearest_rank(ordered, p) for key, p in QUANTILE_LEVELS.items()}
