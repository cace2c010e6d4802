"""
Layer 1 — Stability Evaluator
Decides from a full detection window whether the tracked document is
steady enough to capture.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .detection_window import DEFAULT_CAPACITY, DetectionWindow
from .quad import Quad

logger = logging.getLogger(__name__)

DEFAULT_JITTER_THRESHOLD = 10.0


class Stability(Enum):
    INSUFFICIENT_DATA = "insufficient_data"
    STABLE = "stable"
    UNSTABLE = "unstable"


@dataclass(frozen=True)
class StabilityVerdict:
    """Outcome of one evaluation."""
    status: Stability
    quad: Optional[Quad] = None
    jitter: float = 0.0
    sample_count: int = 0
    window_size: int = DEFAULT_CAPACITY

    @property
    def is_stable(self) -> bool:
        return self.status is Stability.STABLE

    @property
    def progress(self) -> float:
        """Window fill ratio in [0, 1], for progress display."""
        if self.window_size <= 0:
            return 0.0
        return min(1.0, self.sample_count / self.window_size)

    def to_dict(self) -> Dict:
        return {
            'status': self.status.value,
            'quad': self.quad.to_dict() if self.quad else None,
            'jitter': round(self.jitter, 3),
            'sample_count': self.sample_count,
            'window_size': self.window_size,
            'progress': round(self.progress, 3),
        }


class StabilityEvaluator:
    """
    Stability check over a detection window.

    Deterministic: identical window contents always give the same verdict.
    """

    def __init__(self,
                 window_size: int = DEFAULT_CAPACITY,
                 jitter_threshold: float = DEFAULT_JITTER_THRESHOLD):
        """
        Args:
            window_size: Samples required before a verdict is possible
            jitter_threshold: Jitter (pixels) below which the window is stable
        """
        if window_size < 1:
            raise ValueError(f"window_size must be at least 1, got {window_size}")
        self.window_size = int(window_size)
        self.jitter_threshold = float(jitter_threshold)
        logger.debug(f"StabilityEvaluator: window={self.window_size}, threshold={self.jitter_threshold}")

    def new_window(self) -> DetectionWindow:
        return DetectionWindow(capacity=self.window_size)

    def evaluate(self, window: DetectionWindow) -> StabilityVerdict:
        """
        Evaluate a window snapshot.

        Returns:
            StabilityVerdict: INSUFFICIENT_DATA until the window is full,
            then STABLE (carrying the averaged quad) when jitter is below
            the threshold, otherwise UNSTABLE.
        """
        samples = window.samples()
        if len(samples) < self.window_size or not window.is_full():
            return StabilityVerdict(
                status=Stability.INSUFFICIENT_DATA,
                sample_count=len(samples),
                window_size=self.window_size,
            )

        metric = window.metric()

        if metric.jitter < self.jitter_threshold:
            return StabilityVerdict(
                status=Stability.STABLE,
                quad=metric.average_quad,
                jitter=metric.jitter,
                sample_count=metric.sample_count,
                window_size=self.window_size,
            )

        return StabilityVerdict(
            status=Stability.UNSTABLE,
            jitter=metric.jitter,
            sample_count=metric.sample_count,
            window_size=self.window_size,
        )
