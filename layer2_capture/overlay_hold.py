"""
Layer 2 — Overlay Hold
Keeps the last known quad on screen for a short grace period after a miss
so the overlay does not flicker on single dropped frames.
"""
import time
from typing import Callable, Optional

from layer1_tracking import Quad

DEFAULT_GRACE_SECONDS = 0.2


class OverlayHold:
    """Last-seen quad with a grace window."""

    def __init__(self,
                 grace_seconds: float = DEFAULT_GRACE_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.grace_seconds = float(grace_seconds)
        self._clock = clock
        self._quad: Optional[Quad] = None
        self._last_seen: Optional[float] = None

    def update(self, quad: Quad, now: Optional[float] = None) -> Quad:
        self._quad = quad
        self._last_seen = self._clock() if now is None else now
        return quad

    def miss(self, now: Optional[float] = None) -> Optional[Quad]:
        """Held quad while within the grace window, afterwards None."""
        if self._quad is None:
            return None
        now = self._clock() if now is None else now
        if now - self._last_seen <= self.grace_seconds:
            return self._quad
        self.clear()
        return None

    def current(self) -> Optional[Quad]:
        return self._quad

    def clear(self):
        self._quad = None
        self._last_seen = None
