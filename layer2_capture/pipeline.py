"""
Layer 2 — Capture Pipeline
Wires frame arrival -> detection -> window/stability -> capture controller
-> rectification -> completion callback.

Threads:
- frame source: calls submit_frame(), never blocks
- worker: single serial thread owning window, controller and overlay hold;
  it also drains manual-capture commands and detects on manual stills
- capture: single background thread running capture + rectification
- dispatch: one-way hand-off of callbacks to the UI side
"""
import logging
import os
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from error_handlers import CaptureDeviceError, DetectionError, DocumentTooSmall, ScannerError
from layer1_tracking import Quad, StabilityEvaluator, StabilityVerdict
from layer3_rectification import PerspectiveRectifier, RectifiedImage

from .camera import Frame
from .controller import CaptureController
from .detector import AcceptancePolicy, Detection
from .overlay_hold import OverlayHold

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass
class _ManualRequest:
    """Caller asked for a manual capture."""
    result: Future


@dataclass
class _ManualStill:
    """Capture thread hands a manual still back to the worker for detection."""
    result: Future
    image: Optional[np.ndarray]


@dataclass
class PipelineConfig:
    """Configuration for the capture pipeline."""
    # Stability settings
    window_size: int = 5
    jitter_threshold: float = 10.0     # pixels

    # Capture settings
    cooldown_seconds: float = 2.0
    auto_capture: bool = True

    # Overlay settings
    overlay_grace_seconds: float = 0.2

    # Acceptance thresholds
    live_min_confidence: float = 0.9
    manual_min_confidence: float = 0.7
    live_min_aspect_ratio: float = 0.2
    manual_min_aspect_ratio: float = 0.3
    max_aspect_ratio: float = 1.0

    # Live auto-capture size gate, fractions of the frame
    live_min_width_fraction: float = 0.5
    live_min_height_fraction: float = 0.3

    # Worker wakes this often without frames to run timeouts
    idle_poll_seconds: float = 0.05

    @classmethod
    def from_env(cls) -> 'PipelineConfig':
        """Defaults overridden by CAPTURE_* environment variables."""
        cfg = cls()
        cfg.window_size = int(os.environ.get('CAPTURE_WINDOW_SIZE', cfg.window_size))
        cfg.jitter_threshold = float(os.environ.get('CAPTURE_JITTER_THRESHOLD', cfg.jitter_threshold))
        cfg.cooldown_seconds = float(os.environ.get('CAPTURE_COOLDOWN_SECONDS', cfg.cooldown_seconds))
        cfg.overlay_grace_seconds = float(os.environ.get('CAPTURE_OVERLAY_GRACE', cfg.overlay_grace_seconds))
        auto = os.environ.get('CAPTURE_AUTO')
        if auto is not None:
            cfg.auto_capture = auto.strip().lower() not in ('0', 'false', 'no', 'off')
        return cfg

    def live_policy(self) -> AcceptancePolicy:
        return AcceptancePolicy(
            min_confidence=self.live_min_confidence,
            min_aspect_ratio=self.live_min_aspect_ratio,
            max_aspect_ratio=self.max_aspect_ratio,
            min_width_fraction=self.live_min_width_fraction,
            min_height_fraction=self.live_min_height_fraction,
        )

    def manual_policy(self) -> AcceptancePolicy:
        return AcceptancePolicy(
            min_confidence=self.manual_min_confidence,
            min_aspect_ratio=self.manual_min_aspect_ratio,
            max_aspect_ratio=self.max_aspect_ratio,
        )


class CapturePipeline:
    """
    Live document auto-capture driver.

    The detector is any object with detect(frame) -> Optional[Detection].
    The capture command is a callable returning a full-resolution image.
    """

    def __init__(self,
                 detector,
                 capture: Callable[[], np.ndarray],
                 config: Optional[PipelineConfig] = None,
                 rectifier: Optional[PerspectiveRectifier] = None,
                 on_overlay: Optional[Callable[[Optional[Quad]], None]] = None,
                 on_complete: Optional[Callable[[RectifiedImage], None]] = None,
                 on_error: Optional[Callable[[ScannerError], None]] = None,
                 on_progress: Optional[Callable[[StabilityVerdict], None]] = None,
                 dispatch: Optional[Callable] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            detector: Single-frame quadrilateral detector
            capture: "Take a photo now" command
            config: Pipeline configuration (defaults if not provided)
            rectifier: Perspective rectifier (default instance if not provided)
            on_overlay: Receives the quad to draw, or None to clear
            on_complete: Receives each RectifiedImage (or original on fallback)
            on_error: Receives capture device failures
            on_progress: Receives the stability verdict after each evaluation
            dispatch: dispatch(fn, *args) used to hand callbacks to the UI
                thread; a private single-thread executor if not provided
            clock: Monotonic time source
        """
        self.config = config or PipelineConfig()
        cfg = self.config

        self.detector = detector
        self.capture = capture
        self.rectifier = rectifier or PerspectiveRectifier()
        self.live_policy = cfg.live_policy()
        self.manual_policy = cfg.manual_policy()

        self.on_overlay = on_overlay
        self.on_complete = on_complete
        self.on_error = on_error
        self.on_progress = on_progress
        self._clock = clock

        # Worker-owned state
        self.evaluator = StabilityEvaluator(
            window_size=cfg.window_size,
            jitter_threshold=cfg.jitter_threshold,
        )
        self.controller = CaptureController(
            evaluator=self.evaluator,
            request_capture=self._request_capture,
            cooldown_seconds=cfg.cooldown_seconds,
            auto_capture=cfg.auto_capture,
            clock=clock,
        )
        self.overlay = OverlayHold(grace_seconds=cfg.overlay_grace_seconds, clock=clock)
        self._current_frame: Optional[Frame] = None
        self._last_overlay: Optional[Quad] = None

        self._mailbox: queue.Queue = queue.Queue(maxsize=1)
        # Manual capture commands; never dropped
        self._commands: queue.Queue = queue.Queue()
        self._waiting_manual: List[_ManualRequest] = []
        self._manual_active = False
        self._worker: Optional[threading.Thread] = None
        self._running = threading.Event()

        self._external_dispatch = dispatch
        self._capture_executor: Optional[ThreadPoolExecutor] = None
        self._ui_executor: Optional[ThreadPoolExecutor] = None
        self._capture_future: Optional[Future] = None
        self._open_executors()

        # Counters, each written by exactly one thread
        self.frames_received = 0
        self.frames_dropped = 0
        self.frames_processed = 0
        self.captures_completed = 0
        self.last_result: Optional[RectifiedImage] = None

        logger.info("CapturePipeline initialized")
        logger.debug(f"Config: {cfg}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _open_executors(self):
        self._capture_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capture")
        if self._external_dispatch is None:
            self._ui_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ui-dispatch")

    def _ensure_executors(self):
        if self._capture_executor is None:
            self._open_executors()

    def start(self):
        """Start the serial worker thread."""
        if self._worker is not None and self._worker.is_alive():
            logger.debug("Pipeline already running")
            return

        self._ensure_executors()

        self._running.set()
        self._worker = threading.Thread(target=self._run, name="capture-pipeline", daemon=True)
        self._worker.start()
        logger.info("Pipeline worker started")

    def stop(self, timeout: float = 2.0):
        """Stop the worker and wait for outstanding capture work."""
        self._running.clear()
        try:
            self._mailbox.put_nowait(_STOP)
        except queue.Full:
            # Replace the pending frame with the stop marker
            try:
                self._mailbox.get_nowait()
            except queue.Empty:
                pass
            self._mailbox.put_nowait(_STOP)

        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None

        if self._capture_executor is not None:
            self._capture_executor.shutdown(wait=True)
            self._capture_executor = None
        if self._ui_executor is not None:
            self._ui_executor.shutdown(wait=True)
            self._ui_executor = None

        # Drop any marker left behind for a later start()
        while not self._mailbox.empty():
            try:
                self._mailbox.get_nowait()
            except queue.Empty:
                break

        self._abandon_manual()

        logger.info("Pipeline stopped")

    def is_running(self) -> bool:
        return self._running.is_set()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    # ------------------------------------------------------------------
    # Frame source side
    # ------------------------------------------------------------------

    def submit_frame(self, frame: Frame) -> bool:
        """
        Hand a frame to the worker without blocking.

        Returns:
            bool: False if the frame was dropped because the worker is busy
        """
        self.frames_received += 1
        try:
            self._mailbox.put_nowait(frame)
            return True
        except queue.Full:
            self.frames_dropped += 1
            return False

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _run(self):
        while self._running.is_set():
            self.process_commands()
            try:
                item = self._mailbox.get(timeout=self.config.idle_poll_seconds)
            except queue.Empty:
                self.tick()
                continue

            if item is _STOP:
                break

            try:
                self.process_frame(item)
            except Exception as e:
                # Keep the worker alive; the next frame starts clean
                logger.error(f"Unexpected error processing frame: {e}")
                logger.exception("Full traceback:")
                self.controller.on_miss()

        logger.debug("Pipeline worker exiting")

    def tick(self, now: Optional[float] = None):
        """Run time-based transitions when no frame arrives."""
        now = self._clock() if now is None else now
        self.controller.tick(now)
        if self._last_overlay is not None:
            self._publish_overlay(self.overlay.miss(now))

    def process_frame(self, frame: Frame) -> Optional[StabilityVerdict]:
        """
        Process one frame to completion. Worker thread only.

        Returns:
            The stability verdict if the frame was evaluated, else None
        """
        now = self._clock()
        self.frames_processed += 1
        self._current_frame = frame
        self.controller.tick(now)

        try:
            detection: Optional[Detection] = self.detector.detect(frame)
            quad = self.live_policy.check(detection, frame_size=(frame.width, frame.height))
        except DocumentTooSmall as e:
            # Drawn, but not evidence for a capture
            logger.debug(f"Frame rejected: {e.error_code}")
            self.controller.on_miss(now)
            self._publish_overlay(self.overlay.update(detection.quad, now))
            return None
        except DetectionError as e:
            logger.debug(f"Frame rejected: {e.error_code}")
            self.controller.on_miss(now)
            self._publish_overlay(self.overlay.miss(now))
            return None

        if self._capture_in_flight():
            # Overlay only until the outstanding capture finishes
            self._publish_overlay(self.overlay.update(quad, now))
            return None

        verdict = self.controller.on_detection(quad, now)
        if verdict is None:
            display = quad
        elif verdict.is_stable:
            display = verdict.quad
        else:
            display = self.controller.window.metric().average_quad

        self._publish_overlay(self.overlay.update(display, now))

        if verdict is not None:
            self._dispatch_callback(self.on_progress, verdict)

        return verdict

    def pending_capture(self) -> Optional[Future]:
        """Future of the most recently issued capture, if any."""
        return self._capture_future

    def _capture_in_flight(self) -> bool:
        if self._manual_active:
            return True
        return self._capture_future is not None and not self._capture_future.done()

    def _publish_overlay(self, quad: Optional[Quad]):
        if quad == self._last_overlay:
            return
        self._last_overlay = quad
        self._dispatch_callback(self.on_overlay, quad)

    # ------------------------------------------------------------------
    # Capture side
    # ------------------------------------------------------------------

    def _request_capture(self, quad: Quad):
        """Controller callback: queue capture + rectification."""
        frame = self._current_frame
        frame_size = (frame.width, frame.height) if frame is not None else None
        self._ensure_executors()
        self._capture_future = self._capture_executor.submit(
            self._capture_and_rectify, quad, frame_size
        )

    def capture_now(self) -> Future:
        """
        Manual single-shot capture: photograph, detect on the still with the
        manual thresholds, rectify when a document is found.

        The request is handed to the worker, which runs it once no other
        capture is in flight. Requests made before start() wait for the
        worker; stop() cancels any still pending.

        Returns:
            Future resolving to a RectifiedImage, or None if the capture
            command failed
        """
        logger.info("Manual capture requested")
        future: Future = Future()
        self._commands.put(_ManualRequest(result=future))
        return future

    def process_commands(self):
        """Drain queued manual-capture commands. Worker thread only."""
        while True:
            try:
                command = self._commands.get_nowait()
            except queue.Empty:
                break
            if isinstance(command, _ManualStill):
                self._detect_on_still(command)
            else:
                self._waiting_manual.append(command)

        if self._waiting_manual and not self._capture_in_flight():
            self._start_manual(self._waiting_manual.pop(0))

    def _start_manual(self, request: _ManualRequest):
        if not request.result.set_running_or_notify_cancel():
            logger.debug("Manual capture cancelled before it started")
            return
        self._manual_active = True
        self._ensure_executors()
        self._capture_future = self._capture_executor.submit(self._photograph_manual, request.result)

    def _photograph_manual(self, result: Future):
        # Capture thread: the still goes back to the worker for detection
        self._commands.put(_ManualStill(result=result, image=self._take_photo()))

    def _detect_on_still(self, still: _ManualStill):
        self._manual_active = False
        if still.image is None:
            still.result.set_result(None)
            return

        quad, reason = None, None
        try:
            quad = self.manual_policy.check(self.detector.detect(Frame.from_array(still.image)))
        except DetectionError as e:
            logger.info(f"Manual capture without document: {e.error_code}")
            reason = e.message
        except Exception as e:
            logger.error(f"Unexpected error detecting on manual still: {e}")
            logger.exception("Full traceback:")
            still.result.set_exception(e)
            return

        self._ensure_executors()
        self._capture_future = self._capture_executor.submit(self._finish_manual, still, quad, reason)

    def _finish_manual(self, still: _ManualStill, quad: Optional[Quad],
                       reason: Optional[str]) -> Optional[RectifiedImage]:
        try:
            if quad is None:
                result = RectifiedImage(image=still.image, corners=None, rectified=False, error=reason)
            else:
                result = self.rectifier.rectify_or_original(still.image, quad)
            self._complete(result)
        except Exception as e:
            logger.exception("Manual capture failed")
            still.result.set_exception(e)
            return None

        still.result.set_result(result)
        return result

    def _abandon_manual(self):
        """Cancel manual requests the stopped worker will never run."""
        pending = [request.result for request in self._waiting_manual]
        self._waiting_manual = []
        while True:
            try:
                command = self._commands.get_nowait()
            except queue.Empty:
                break
            pending.append(command.result)
        self._manual_active = False

        for future in pending:
            if not future.cancel() and not future.done():
                future.set_exception(CaptureDeviceError("pipeline stopped"))

    def _take_photo(self) -> Optional[np.ndarray]:
        try:
            image = self.capture()
            if image is None or getattr(image, 'size', 0) == 0:
                raise CaptureDeviceError("no image returned")
        except CaptureDeviceError as e:
            error = e
        except ScannerError as e:
            error = CaptureDeviceError(e.message)
        except Exception as e:
            error = CaptureDeviceError(e)
        else:
            return image

        logger.warning(f"{error.error_code}: {error.message}")
        self._dispatch_callback(self.on_error, error)
        return None

    def _capture_and_rectify(self, quad: Quad,
                             frame_size: Optional[Tuple[int, int]]) -> Optional[RectifiedImage]:
        image = self._take_photo()
        if image is None:
            return None

        # Stable quad is in preview coordinates; the still may be larger
        h, w = image.shape[:2]
        if frame_size:
            fw, fh = frame_size
            if (fw, fh) != (w, h) and fw > 0 and fh > 0:
                quad = quad.scaled(w / fw, h / fh)

        result = self.rectifier.rectify_or_original(image, quad)
        self._complete(result)
        return result

    def _complete(self, result: RectifiedImage):
        self.captures_completed += 1
        self.last_result = result
        logger.info(f"Capture complete: rectified={result.rectified}, size={result.size}")
        self._dispatch_callback(self.on_complete, result)

    # ------------------------------------------------------------------
    # UI hand-off
    # ------------------------------------------------------------------

    def _dispatch_callback(self, callback: Optional[Callable], *args):
        if callback is None:
            return
        if self._external_dispatch is not None:
            self._external_dispatch(_safe_call, callback, *args)
        elif self._ui_executor is not None:
            self._ui_executor.submit(_safe_call, callback, *args)

    def status(self) -> Dict:
        """Snapshot for status endpoints. Safe to call from any thread."""
        snapshot = self.controller.snapshot(self._clock())
        verdict = self.controller.last_verdict
        overlay = self._last_overlay
        return {
            'running': self.is_running(),
            'state': snapshot['state'],
            'cooldown_remaining': round(snapshot['cooldown_remaining'], 3),
            'auto_capture': self.controller.auto_capture,
            'window': {
                'count': snapshot['window_count'],
                'capacity': snapshot['window_capacity'],
            },
            'stability': verdict.to_dict(),
            'overlay': overlay.to_dict() if overlay else None,
            'frames_received': self.frames_received,
            'frames_dropped': self.frames_dropped,
            'frames_processed': self.frames_processed,
            'captures_issued': self.controller.captures_issued,
            'captures_completed': self.captures_completed,
            'capture_in_flight': self._capture_in_flight(),
        }


def _safe_call(callback: Callable, *args):
    try:
        callback(*args)
    except Exception as e:
        logger.error(f"Callback {getattr(callback, '__name__', callback)} failed: {e}")
        logger.exception("Full traceback:")
