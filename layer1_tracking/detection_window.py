"""
Layer 1 — Detection Window
Fixed-capacity FIFO of the most recent accepted quads, with the derived
stability metric (median, median-biased average, jitter).
"""
from collections import deque
from dataclasses import dataclass
from typing import Tuple

from .quad import Quad

DEFAULT_CAPACITY = 5


@dataclass(frozen=True)
class StabilityMetric:
    """Statistics derived from a window snapshot. Never stored."""
    median_quad: Quad
    average_quad: Quad
    jitter: float
    sample_count: int

    @classmethod
    def from_samples(cls, samples: Tuple[Quad, ...]) -> 'StabilityMetric':
        median_quad = Quad.median(samples)
        # The median is injected as an extra sample so a single outlier
        # frame pulls the average less.
        average_quad = Quad.mean(list(samples) + [median_quad])
        if len(samples) <= 1:
            jitter = 0.0
        else:
            jitter = Quad.dispersion(samples, against=average_quad)
        return cls(
            median_quad=median_quad,
            average_quad=average_quad,
            jitter=jitter,
            sample_count=len(samples),
        )


class DetectionWindow:
    """
    Bounded FIFO of recent detections.

    Pushing at capacity evicts the oldest sample. Capacity cannot change
    after construction.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"Window capacity must be at least 1, got {capacity}")
        self._capacity = int(capacity)
        self._samples: deque = deque(maxlen=self._capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def push(self, quad: Quad):
        self._samples.append(quad)

    def is_full(self) -> bool:
        return len(self._samples) == self._capacity

    def clear(self):
        self._samples.clear()

    def samples(self) -> Tuple[Quad, ...]:
        """Read-only snapshot, oldest first."""
        return tuple(self._samples)

    def metric(self) -> StabilityMetric:
        return StabilityMetric.from_samples(self.samples())

    def __len__(self) -> int:
        return len(self._samples)

    def __repr__(self) -> str:
        return f"DetectionWindow({len(self)}/{self._capacity})"
