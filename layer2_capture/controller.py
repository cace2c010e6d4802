"""
Layer 2 — Capture Controller
State machine deciding when detections are evaluated, when a capture is
issued, and when the post-capture cooldown suppresses evaluation.
"""
import logging
import time
from enum import Enum
from typing import Callable, Optional

from layer1_tracking import Quad, Stability, StabilityEvaluator, StabilityVerdict

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 2.0


class CaptureState(Enum):
    IDLE = "idle"
    COOLDOWN = "cooldown"


class CaptureController:
    """
    Idle / Cooldown state machine.

    Owns its detection window. Must be driven from a single thread; nothing
    here is locked.
    """

    def __init__(self,
                 evaluator: StabilityEvaluator,
                 request_capture: Callable[[Quad], None],
                 cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
                 auto_capture: bool = True,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            evaluator: Stability check applied after every accepted detection
            request_capture: Called with the stable quad when a capture fires
            cooldown_seconds: Time after a capture during which detections are ignored
            auto_capture: When False, detections are evaluated but never trigger
            clock: Monotonic time source
        """
        self.evaluator = evaluator
        self.window = evaluator.new_window()
        self.request_capture = request_capture
        self.cooldown_seconds = float(cooldown_seconds)
        self.auto_capture = auto_capture
        self._clock = clock

        self._state = CaptureState.IDLE
        self._cooldown_started: Optional[float] = None
        self.captures_issued = 0
        self.last_verdict = StabilityVerdict(
            status=Stability.INSUFFICIENT_DATA,
            window_size=evaluator.window_size,
        )

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    def state(self, now: Optional[float] = None) -> CaptureState:
        """Current state, applying the cooldown timeout first."""
        self.tick(now)
        return self._state

    def is_accepting(self, now: Optional[float] = None) -> bool:
        """True when detections are fed into evaluation."""
        return self.state(now) is CaptureState.IDLE

    def cooldown_remaining(self, now: Optional[float] = None) -> float:
        if self.state(now) is not CaptureState.COOLDOWN:
            return 0.0
        elapsed = self._now(now) - self._cooldown_started
        return max(0.0, self.cooldown_seconds - elapsed)

    def snapshot(self, now: Optional[float] = None) -> dict:
        """Read-only view for other threads; never mutates state."""
        now = self._now(now)
        state = self._state
        started = self._cooldown_started
        remaining = 0.0
        if state is CaptureState.COOLDOWN:
            # Cleared by the worker between the two reads
            if started is None:
                state = CaptureState.IDLE
            else:
                remaining = self.cooldown_seconds - (now - started)
                if remaining <= 0:
                    state, remaining = CaptureState.IDLE, 0.0
        return {
            'state': state.value,
            'cooldown_remaining': remaining,
            'window_count': len(self.window),
            'window_capacity': self.window.capacity,
        }

    def tick(self, now: Optional[float] = None):
        """Leave Cooldown once the fixed delay has elapsed."""
        if self._state is not CaptureState.COOLDOWN:
            return
        now = self._now(now)
        if now - self._cooldown_started >= self.cooldown_seconds:
            self._state = CaptureState.IDLE
            self._cooldown_started = None
            self.window.clear()
            logger.debug("Cooldown elapsed, accumulating from empty window")

    def on_detection(self, quad: Quad, now: Optional[float] = None) -> Optional[StabilityVerdict]:
        """
        Feed one accepted detection.

        Returns:
            The verdict for the updated window, or None if the detection was
            ignored because of the cooldown.
        """
        now = self._now(now)
        if not self.is_accepting(now):
            return None

        self.window.push(quad)
        verdict = self.evaluator.evaluate(self.window)
        self.last_verdict = verdict

        if verdict.is_stable and self.auto_capture:
            self._trigger(verdict.quad, now)

        return verdict

    def on_miss(self, now: Optional[float] = None):
        """A frame produced no usable detection: drop accumulated evidence."""
        if not self.is_accepting(now):
            return
        if len(self.window):
            logger.debug(f"Detection lost, clearing window at {len(self.window)}/{self.window.capacity}")
        self.window.clear()
        self.last_verdict = StabilityVerdict(
            status=Stability.INSUFFICIENT_DATA,
            window_size=self.evaluator.window_size,
        )

    def _trigger(self, quad: Quad, now: float):
        self.window.clear()
        self._cooldown_started = now
        self._state = CaptureState.COOLDOWN
        self.captures_issued += 1
        logger.info(f"Stable document (jitter {self.last_verdict.jitter:.2f}), capture #{self.captures_issued} requested")
        self.request_capture(quad)

    def reset(self):
        """Back to Idle with an empty window."""
        self._state = CaptureState.IDLE
        self._cooldown_started = None
        self.window.clear()
