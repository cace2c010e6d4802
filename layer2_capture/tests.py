"""
Tests for Layer 2 — acceptance, controller, overlay hold, detector and
pipeline driver.
"""
import threading
import time

import numpy as np
import pytest

from error_handlers import (
    AspectOutOfRange,
    CameraNotFoundError,
    CameraNotInitializedError,
    CaptureDeviceError,
    DetectionMiss,
    DocumentTooSmall,
    FrameCaptureError,
    LowConfidence,
)
from layer1_tracking import Quad, Stability, StabilityEvaluator
from layer2_capture import (
    AcceptancePolicy,
    CameraHandler,
    CaptureController,
    CapturePipeline,
    CaptureState,
    ContourQuadDetector,
    Detection,
    Frame,
    OverlayHold,
    PipelineConfig,
)


def run_inline(fn, *args):
    fn(*args)


class ScriptedDetector:
    """Returns queued results in order, then repeats the last one."""

    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    def detect(self, frame):
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0] if self.results else None


class CountingDetector:
    """Records how many detect() calls overlap."""

    def __init__(self, detection, delay=0.02):
        self.detection = detection
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.calls = 0
        self._lock = threading.Lock()

    def detect(self, frame):
        with self._lock:
            self.active += 1
            self.calls += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delay)
            return self.detection
        finally:
            with self._lock:
                self.active -= 1


def make_frame(width=1920, height=1080, timestamp=0.0):
    return Frame(pixels=np.zeros((4, 4, 3), dtype=np.uint8),
                 width=width, height=height, timestamp=timestamp)


def drive_manual(pipeline, timeout=5):
    """Run a manual capture to completion without the worker thread."""
    future = pipeline.capture_now()
    pipeline.process_commands()
    pipeline.pending_capture().result(timeout=timeout)
    pipeline.process_commands()
    return future.result(timeout=timeout)


@pytest.fixture
def still_image():
    h, w = 1080, 1920
    image = np.zeros((h, w, 3), dtype=np.uint8)
    image[150:900, 200:1700] = (220, 220, 220)
    return image


class TestAcceptancePolicy:
    """Test candidate acceptance thresholds."""

    def test_no_candidate_is_a_miss(self):
        """Test that a missing candidate raises DetectionMiss."""
        with pytest.raises(DetectionMiss):
            AcceptancePolicy.live().check(None)

    def test_low_confidence_rejected(self, reference_quad):
        """Test that live capture rejects confidence below 0.9."""
        with pytest.raises(LowConfidence) as exc:
            AcceptancePolicy.live().check(Detection(reference_quad, 0.85))
        assert exc.value.error_code == "LOW_CONFIDENCE"

    def test_manual_policy_is_more_lenient(self, reference_quad):
        """Test that manual capture accepts confidence 0.75."""
        detection = Detection(reference_quad, 0.75)
        assert AcceptancePolicy.manual().check(detection) == reference_quad

    def test_thin_quad_rejected(self):
        """Test that a sliver fails the aspect ratio band."""
        sliver = Quad((0, 0), (1000, 0), (1000, 50), (0, 50))
        with pytest.raises(AspectOutOfRange):
            AcceptancePolicy.live().check(Detection(sliver, 0.99))

    def test_accepts_document(self, reference_quad):
        """Test that a confident, well-shaped quad passes."""
        assert AcceptancePolicy.live().check(Detection(reference_quad, 0.95)) == reference_quad

    def test_size_gate_accepts_large_document(self, reference_quad):
        """Test that a quad covering most of the frame passes the size gate."""
        policy = AcceptancePolicy.live()
        assert policy.check(Detection(reference_quad, 0.95), frame_size=(1920, 1080)) == reference_quad

    def test_size_gate_rejects_small_document(self):
        """Test that a quad under half the frame width is too small."""
        small = Quad((100, 100), (500, 100), (500, 400), (100, 400))
        with pytest.raises(DocumentTooSmall) as exc:
            AcceptancePolicy.live().check(Detection(small, 0.95), frame_size=(1920, 1080))
        assert exc.value.error_code == "DOCUMENT_TOO_SMALL"
        assert exc.value.details['min_width_fraction'] == 0.5

    def test_size_gate_is_strict(self):
        """Test that exactly half the frame width does not pass."""
        half = Quad((0, 0), (960, 0), (960, 540), (0, 540))
        with pytest.raises(DocumentTooSmall):
            AcceptancePolicy.live().check(Detection(half, 0.95), frame_size=(1920, 1080))

    def test_size_gate_needs_frame_size(self):
        """Test that the size gate is skipped when the frame size is unknown."""
        small = Quad((100, 100), (500, 100), (500, 400), (100, 400))
        assert AcceptancePolicy.live().check(Detection(small, 0.95)) == small

    def test_manual_policy_has_no_size_gate(self):
        """Test that manual capture accepts a small document."""
        small = Quad((100, 100), (500, 100), (500, 400), (100, 400))
        detection = Detection(small, 0.8)
        assert AcceptancePolicy.manual().check(detection, frame_size=(1920, 1080)) == small

    def test_nan_confidence_rejected(self, reference_quad):
        """Test that a NaN confidence fails instead of passing."""
        with pytest.raises(LowConfidence):
            AcceptancePolicy.live().check(Detection(reference_quad, float('nan')))

    def test_nan_corner_rejected(self):
        """Test that a quad with a NaN corner fails the aspect check."""
        broken = Quad((float('nan'), 150), (1700, 150), (1700, 900), (200, 900))
        with pytest.raises(AspectOutOfRange):
            AcceptancePolicy.live().check(Detection(broken, 0.95))


class TestCaptureController:
    """Test the Idle/Cooldown state machine."""

    @pytest.fixture
    def requests(self):
        return []

    @pytest.fixture
    def controller(self, clock, requests):
        return CaptureController(
            evaluator=StabilityEvaluator(window_size=5, jitter_threshold=10.0),
            request_capture=requests.append,
            cooldown_seconds=2.0,
            clock=clock,
        )

    def _feed(self, controller, clock, quad, count, step=1 / 30):
        verdict = None
        for _ in range(count):
            verdict = controller.on_detection(quad)
            clock.advance(step)
        return verdict

    def test_stable_window_triggers_single_capture(self, controller, clock, requests, reference_quad):
        """Test that the fifth steady detection issues exactly one capture."""
        self._feed(controller, clock, reference_quad, 4)
        assert requests == []
        verdict = controller.on_detection(reference_quad)
        assert verdict.status is Stability.STABLE
        assert requests == [reference_quad]
        assert controller.state() is CaptureState.COOLDOWN
        assert len(controller.window) == 0
        assert controller.captures_issued == 1

    def test_cooldown_ignores_detections(self, controller, clock, requests, reference_quad):
        """Test that detections during cooldown are dropped."""
        self._feed(controller, clock, reference_quad, 5)
        assert controller.on_detection(reference_quad) is None
        self._feed(controller, clock, reference_quad, 20)
        assert len(controller.window) == 0
        assert len(requests) == 1

    def test_cooldown_expires_to_empty_window(self, controller, clock, requests, reference_quad):
        """Test that cooldown ends after the fixed delay with an empty window."""
        self._feed(controller, clock, reference_quad, 5, step=0.0)
        entered = clock.now
        clock.now = entered + 1.99
        assert controller.state() is CaptureState.COOLDOWN
        clock.now = entered + 2.0
        assert controller.state() is CaptureState.IDLE
        assert len(controller.window) == 0
        verdict = controller.on_detection(reference_quad)
        assert verdict.status is Stability.INSUFFICIENT_DATA
        assert len(controller.window) == 1

    def test_cooldown_not_extended_by_events(self, controller, clock, requests, reference_quad):
        """Test that detections and misses do not restart the cooldown."""
        self._feed(controller, clock, reference_quad, 5, step=0.0)
        entered = clock.now
        clock.now = entered + 1.5
        controller.on_detection(reference_quad)
        controller.on_miss()
        clock.now = entered + 2.0
        assert controller.is_accepting()

    def test_miss_clears_partial_window(self, controller, clock, reference_quad):
        """Test that a miss empties a partially filled window."""
        self._feed(controller, clock, reference_quad, 3)
        assert len(controller.window) == 3
        controller.on_miss()
        assert len(controller.window) == 0

    def test_second_capture_after_cooldown(self, controller, clock, requests, reference_quad):
        """Test that a fresh stable window after cooldown captures again."""
        self._feed(controller, clock, reference_quad, 5)
        clock.advance(2.0)
        self._feed(controller, clock, reference_quad, 5)
        assert len(requests) == 2

    def test_auto_capture_disabled(self, clock, reference_quad):
        """Test that a stable verdict does not capture with auto capture off."""
        requests = []
        controller = CaptureController(
            evaluator=StabilityEvaluator(),
            request_capture=requests.append,
            auto_capture=False,
            clock=clock,
        )
        for _ in range(8):
            verdict = controller.on_detection(reference_quad)
        assert verdict.is_stable
        assert requests == []
        assert controller.state() is CaptureState.IDLE
        assert controller.window.is_full()

    def test_snapshot_does_not_mutate(self, controller, clock, reference_quad):
        """Test that snapshot reports expiry without leaving cooldown."""
        self._feed(controller, clock, reference_quad, 5)
        clock.advance(5.0)
        snap = controller.snapshot()
        assert snap['state'] == 'idle'
        assert snap['cooldown_remaining'] == 0.0
        assert controller._state is CaptureState.COOLDOWN

    def test_snapshot_during_cooldown(self, controller, clock, reference_quad):
        """Test that snapshot reports the remaining cooldown."""
        self._feed(controller, clock, reference_quad, 5, step=0.0)
        clock.advance(0.5)
        snap = controller.snapshot()
        assert snap['state'] == 'cooldown'
        assert snap['cooldown_remaining'] == pytest.approx(1.5)

    def test_snapshot_with_cleared_cooldown_start(self, controller, clock, reference_quad):
        """Test that a cooldown with no start time reads as idle."""
        self._feed(controller, clock, reference_quad, 5, step=0.0)
        # State as seen between the worker's two writes when leaving cooldown
        controller._cooldown_started = None
        snap = controller.snapshot()
        assert snap['state'] == 'idle'
        assert snap['cooldown_remaining'] == 0.0

    def test_reset(self, controller, clock, reference_quad):
        """Test that reset returns to idle."""
        self._feed(controller, clock, reference_quad, 5)
        controller.reset()
        assert controller.state() is CaptureState.IDLE


class TestOverlayHold:
    """Test the overlay grace window."""

    def test_holds_within_grace(self, clock, reference_quad):
        """Test that a miss inside the grace period keeps the last quad."""
        hold = OverlayHold(grace_seconds=0.2, clock=clock)
        hold.update(reference_quad)
        clock.advance(0.15)
        assert hold.miss() == reference_quad

    def test_clears_after_grace(self, clock, reference_quad):
        """Test that a miss after the grace period clears the overlay."""
        hold = OverlayHold(grace_seconds=0.2, clock=clock)
        hold.update(reference_quad)
        clock.advance(0.25)
        assert hold.miss() is None
        assert hold.current() is None

    def test_new_detection_restarts_grace(self, clock, reference_quad, shifted):
        """Test that each detection restarts the grace period."""
        hold = OverlayHold(grace_seconds=0.2, clock=clock)
        hold.update(reference_quad)
        clock.advance(0.15)
        moved = shifted(reference_quad, 5, 5)
        hold.update(moved)
        clock.advance(0.15)
        assert hold.miss() == moved

    def test_miss_without_detection(self, clock):
        """Test that a miss with nothing shown yields no overlay."""
        assert OverlayHold(clock=clock).miss() is None


class TestContourQuadDetector:
    """Test the default contour detector on synthetic frames."""

    def test_detects_bright_document(self, document_frame):
        """Test that the document rectangle is found with its corners."""
        detection = ContourQuadDetector().detect(Frame.from_array(document_frame))
        assert detection is not None
        assert detection.confidence > 0.9
        expected = [(120, 110), (520, 110), (520, 370), (120, 370)]
        for got, want in zip(detection.quad.corners(), expected):
            assert abs(got[0] - want[0]) <= 6
            assert abs(got[1] - want[1]) <= 6

    def test_accepts_raw_array(self, document_frame):
        """Test that a bare numpy array is accepted."""
        assert ContourQuadDetector().detect(document_frame) is not None

    def test_blank_frame_has_no_detection(self):
        """Test that a uniform frame yields no candidate."""
        blank = np.full((480, 640, 3), 90, dtype=np.uint8)
        assert ContourQuadDetector().detect(blank) is None

    def test_contrast_boost_stretches_around_mid_grey(self):
        """Test that the contrast boost doubles distance from 128 and saturates."""
        gray = np.array([[30, 100, 128, 150, 235]], dtype=np.uint8)
        boosted = ContourQuadDetector()._boost_contrast(gray)
        assert boosted.tolist() == [[0, 72, 128, 172, 255]]

    def test_contrast_disabled(self, document_frame):
        """Test that contrast 1.0 leaves grey levels alone and still detects."""
        detector = ContourQuadDetector(contrast=1.0)
        gray = np.array([[30, 235]], dtype=np.uint8)
        assert detector._boost_contrast(gray) is gray
        assert detector.detect(document_frame) is not None


class TestPipelineConfig:
    """Test configuration loading."""

    def test_defaults(self):
        """Test the default thresholds and timings."""
        cfg = PipelineConfig()
        assert cfg.window_size == 5
        assert cfg.jitter_threshold == 10.0
        assert cfg.cooldown_seconds == 2.0
        assert cfg.overlay_grace_seconds == 0.2
        assert cfg.live_policy().min_confidence == 0.9
        assert cfg.live_policy().min_width_fraction == 0.5
        assert cfg.live_policy().min_height_fraction == 0.3

    def test_from_env(self, monkeypatch):
        """Test that environment variables override the defaults."""
        monkeypatch.setenv('CAPTURE_WINDOW_SIZE', '7')
        monkeypatch.setenv('CAPTURE_JITTER_THRESHOLD', '4.5')
        monkeypatch.setenv('CAPTURE_AUTO', 'off')
        cfg = PipelineConfig.from_env()
        assert cfg.window_size == 7
        assert cfg.jitter_threshold == 4.5
        assert cfg.auto_capture is False


class TestCapturePipeline:
    """Test the pipeline driver with scripted detection."""

    def _pipeline(self, detector, capture, clock, config=None, **callbacks):
        return CapturePipeline(
            detector=detector,
            capture=capture,
            config=config or PipelineConfig(),
            dispatch=run_inline,
            clock=clock,
            **callbacks,
        )

    def test_stable_detections_produce_rectified_image(self, clock, reference_quad, still_image):
        """Test that five steady frames yield one rectified capture."""
        completed = []
        pipeline = self._pipeline(
            ScriptedDetector([Detection(reference_quad, 0.95)]),
            lambda: still_image,
            clock,
            on_complete=completed.append,
        )
        try:
            for i in range(5):
                pipeline.process_frame(make_frame())
                clock.advance(1 / 30)
            pipeline.pending_capture().result(timeout=5)
            assert len(completed) == 1
            result = completed[0]
            assert result.rectified
            assert result.size == (1500, 750)
            assert result.image.mean() > 200
            assert pipeline.controller.state() is CaptureState.COOLDOWN
        finally:
            pipeline.stop()

    def test_quad_scaled_to_still_resolution(self, clock, reference_quad, still_image):
        """Test that a preview-resolution quad is scaled to the still."""
        completed = []
        preview_quad = reference_quad.scaled(0.5, 0.5)
        pipeline = self._pipeline(
            ScriptedDetector([Detection(preview_quad, 0.95)]),
            lambda: still_image,
            clock,
            on_complete=completed.append,
        )
        try:
            for _ in range(5):
                pipeline.process_frame(make_frame(960, 540))
            pipeline.pending_capture().result(timeout=5)
            assert completed[0].corners == reference_quad
        finally:
            pipeline.stop()

    def test_rejected_frame_resets_window(self, clock, reference_quad):
        """Test that a low-confidence frame empties the window."""
        detector = ScriptedDetector(
            [Detection(reference_quad, 0.95)] * 3
            + [Detection(reference_quad, 0.5)]
            + [Detection(reference_quad, 0.95)]
        )
        pipeline = self._pipeline(detector, lambda: None, clock)
        try:
            for _ in range(3):
                pipeline.process_frame(make_frame())
            assert len(pipeline.controller.window) == 3
            assert pipeline.process_frame(make_frame()) is None
            assert len(pipeline.controller.window) == 0
            pipeline.process_frame(make_frame())
            assert len(pipeline.controller.window) == 1
        finally:
            pipeline.stop()

    def test_small_document_shown_but_not_counted(self, clock, reference_quad):
        """Test that a too-small document updates the overlay and resets the window."""
        small = Quad((100, 100), (500, 100), (500, 400), (100, 400))
        overlays = []
        detector = ScriptedDetector(
            [Detection(reference_quad, 0.95)] * 3 + [Detection(small, 0.95)]
        )
        pipeline = self._pipeline(detector, lambda: None, clock, on_overlay=overlays.append)
        try:
            for _ in range(3):
                pipeline.process_frame(make_frame())
            assert len(pipeline.controller.window) == 3
            for _ in range(6):
                assert pipeline.process_frame(make_frame()) is None
            assert len(pipeline.controller.window) == 0
            assert overlays[-1] == small
            assert pipeline.controller.captures_issued == 0
        finally:
            pipeline.stop()

    def test_capture_failure_reported(self, clock, reference_quad):
        """Test that a failing camera reports an error and completes nothing."""
        errors, completed = [], []

        def broken_camera():
            raise FrameCaptureError()

        pipeline = self._pipeline(
            ScriptedDetector([Detection(reference_quad, 0.95)]),
            broken_camera,
            clock,
            on_complete=completed.append,
            on_error=errors.append,
        )
        try:
            for _ in range(5):
                pipeline.process_frame(make_frame())
            assert pipeline.pending_capture().result(timeout=5) is None
            assert completed == []
            assert len(errors) == 1
            assert isinstance(errors[0], CaptureDeviceError)
            assert errors[0].error_code == "CAPTURE_DEVICE_FAILED"
        finally:
            pipeline.stop()

    def test_no_evaluation_while_capture_in_flight(self, clock, reference_quad, still_image):
        """Test that detections wait for an outstanding capture even after cooldown."""
        release = threading.Event()

        def slow_camera():
            release.wait(timeout=5)
            return still_image

        pipeline = self._pipeline(
            ScriptedDetector([Detection(reference_quad, 0.95)]),
            slow_camera,
            clock,
        )
        try:
            for _ in range(5):
                pipeline.process_frame(make_frame())
            first = pipeline.pending_capture()
            assert pipeline.controller.captures_issued == 1

            clock.advance(2.5)
            for _ in range(6):
                assert pipeline.process_frame(make_frame()) is None
            assert pipeline.controller.state() is CaptureState.IDLE
            assert len(pipeline.controller.window) == 0
            assert pipeline.controller.captures_issued == 1
            assert pipeline.status()['capture_in_flight'] is True
        finally:
            release.set()

        try:
            first.result(timeout=5)
            for _ in range(5):
                pipeline.process_frame(make_frame())
            assert pipeline.controller.captures_issued == 2
        finally:
            pipeline.stop()

    def test_cooldown_expires_without_frames(self, clock, reference_quad, still_image):
        """Test that the idle worker leaves cooldown and clears the overlay with no frames."""
        overlays = []
        pipeline = self._pipeline(
            ScriptedDetector([Detection(reference_quad, 0.95)]),
            lambda: still_image,
            clock,
            on_overlay=overlays.append,
        )
        try:
            for _ in range(5):
                pipeline.process_frame(make_frame())
            pipeline.pending_capture().result(timeout=5)
            assert pipeline.controller._state is CaptureState.COOLDOWN
            assert overlays[-1] is not None

            pipeline.start()
            clock.advance(2.5)
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if pipeline.controller._state is CaptureState.IDLE and overlays[-1] is None:
                    break
                time.sleep(0.01)

            assert pipeline.controller._state is CaptureState.IDLE
            assert len(pipeline.controller.window) == 0
            assert pipeline.status()['state'] == 'idle'
            assert overlays[-1] is None
            assert pipeline.frames_processed == 5
        finally:
            pipeline.stop()

    def test_overlay_held_then_cleared(self, clock, reference_quad):
        """Test that the overlay survives a brief miss and clears after grace."""
        overlays = []
        detector = ScriptedDetector([Detection(reference_quad, 0.95), None])
        pipeline = self._pipeline(detector, lambda: None, clock, on_overlay=overlays.append)
        try:
            pipeline.process_frame(make_frame())
            assert overlays == [reference_quad]
            clock.advance(0.1)
            pipeline.process_frame(make_frame())
            assert overlays == [reference_quad]
            clock.advance(0.2)
            pipeline.tick()
            assert overlays == [reference_quad, None]
        finally:
            pipeline.stop()

    def test_submit_frame_never_blocks(self, clock):
        """Test that a frame offered to a busy mailbox is dropped."""
        pipeline = self._pipeline(ScriptedDetector([None]), lambda: None, clock)
        try:
            assert pipeline.submit_frame(make_frame()) is True
            assert pipeline.submit_frame(make_frame()) is False
            assert pipeline.frames_received == 2
            assert pipeline.frames_dropped == 1
        finally:
            pipeline.stop()

    def test_manual_capture_rectifies(self, clock, reference_quad, still_image):
        """Test that a manual capture rectifies with the lenient thresholds."""
        pipeline = self._pipeline(
            ScriptedDetector([Detection(reference_quad, 0.75)]),
            lambda: still_image,
            clock,
        )
        try:
            result = drive_manual(pipeline)
            assert result.rectified
            assert result.size == (1500, 750)
            assert pipeline.captures_completed == 1
        finally:
            pipeline.stop()

    def test_manual_capture_without_document_returns_original(self, clock, still_image):
        """Test that a manual capture with no document returns the photo."""
        pipeline = self._pipeline(ScriptedDetector([None]), lambda: still_image, clock)
        try:
            result = drive_manual(pipeline)
            assert not result.rectified
            assert result.image is still_image
            assert result.error is not None
        finally:
            pipeline.stop()

    def test_manual_capture_waits_for_worker(self, clock, still_image):
        """Test that a manual request does nothing until the worker drains commands."""
        shots = []

        def camera():
            shots.append(1)
            return still_image

        pipeline = self._pipeline(ScriptedDetector([None]), camera, clock)
        try:
            future = pipeline.capture_now()
            assert not future.done()
            assert pipeline.pending_capture() is None
            assert shots == []
        finally:
            pipeline.stop()
        assert future.cancelled()

    def test_manual_capture_waits_for_capture_in_flight(self, clock, reference_quad, still_image):
        """Test that a manual request starts only after the auto capture finishes."""
        release = threading.Event()

        def slow_camera():
            release.wait(timeout=5)
            return still_image

        pipeline = self._pipeline(
            ScriptedDetector([Detection(reference_quad, 0.95)]),
            slow_camera,
            clock,
        )
        try:
            for _ in range(5):
                pipeline.process_frame(make_frame())
            auto = pipeline.pending_capture()
            manual = pipeline.capture_now()
            pipeline.process_commands()
            assert pipeline.pending_capture() is auto
            assert not manual.running()
        finally:
            release.set()

        try:
            auto.result(timeout=5)
            pipeline.process_commands()
            assert manual.running()
            pipeline.pending_capture().result(timeout=5)
            pipeline.process_commands()
            assert manual.result(timeout=5).rectified
            assert pipeline.captures_completed == 2
        finally:
            pipeline.stop()

    def test_manual_detection_runs_on_worker_only(self, reference_quad, still_image):
        """Test that manual and live detection never overlap while streaming."""
        detector = CountingDetector(Detection(reference_quad, 0.95))
        pipeline = CapturePipeline(
            detector=detector,
            capture=lambda: still_image,
            config=PipelineConfig(auto_capture=False),
        )
        with pipeline:
            future = pipeline.capture_now()
            deadline = time.monotonic() + 5
            while not future.done() and time.monotonic() < deadline:
                pipeline.submit_frame(make_frame())
                time.sleep(0.005)
            result = future.result(timeout=1)

        assert result.rectified
        assert detector.max_active == 1
        assert detector.calls == pipeline.frames_processed + 1

    def test_status_snapshot(self, clock, reference_quad):
        """Test the status dictionary after one accepted frame."""
        pipeline = self._pipeline(
            ScriptedDetector([Detection(reference_quad, 0.95)]), lambda: None, clock
        )
        try:
            pipeline.process_frame(make_frame())
            status = pipeline.status()
            assert status['state'] == 'idle'
            assert status['window'] == {'count': 1, 'capacity': 5}
            assert status['frames_processed'] == 1
            assert status['overlay'] is not None
        finally:
            pipeline.stop()

    def test_threaded_run_completes_capture(self, reference_quad, still_image):
        """Test an auto capture end to end on the worker thread."""
        done = threading.Event()
        results = []

        def on_complete(result):
            results.append(result)
            done.set()

        pipeline = CapturePipeline(
            detector=ScriptedDetector([Detection(reference_quad, 0.95)]),
            capture=lambda: still_image,
            on_complete=on_complete,
        )
        with pipeline:
            deadline = time.monotonic() + 5
            while not done.is_set() and time.monotonic() < deadline:
                pipeline.submit_frame(make_frame())
                time.sleep(0.01)
        assert done.is_set()
        assert results[0].rectified
        assert pipeline.controller.captures_issued == 1


class TestCameraHandler:
    """Test the frame source without camera hardware."""

    def test_missing_device(self, monkeypatch):
        """Test that a missing device node raises CameraNotFoundError."""
        camera = CameraHandler(camera_index=99)
        monkeypatch.setattr(camera, '_device_missing', lambda: True)
        with pytest.raises(CameraNotFoundError) as exc:
            camera.initialize()
        assert exc.value.details['camera_index'] == 99

    def test_reads_require_initialize(self):
        """Test that reads before initialize raise CameraNotInitializedError."""
        camera = CameraHandler()
        assert not camera.is_opened()
        with pytest.raises(CameraNotInitializedError):
            camera.get_frame()
        with pytest.raises(CameraNotInitializedError):
            camera.capture_still()

    def test_config_override(self):
        """Test that config overrides merge over the defaults."""
        camera = CameraHandler(config={'width': 1280, 'height': 720})
        assert camera.config['width'] == 1280
        assert camera.config['still_flush_frames'] == 2

    def test_frame_from_array(self, document_frame):
        """Test that Frame.from_array reads size from the array."""
        frame = Frame.from_array(document_frame, timestamp=3.5)
        assert (frame.width, frame.height) == (640, 480)
        assert frame.timestamp == 3.5
