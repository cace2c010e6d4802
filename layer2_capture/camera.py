"""
Layer 2 — Camera Handler
Frame source and capture command for the pipeline.
Streams preview frames from a producer thread and takes full-resolution
stills on request.
"""
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import cv2
import numpy as np

from error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    FrameCaptureError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    """One video frame as delivered by the frame source."""
    pixels: np.ndarray
    width: int
    height: int
    timestamp: float

    @classmethod
    def from_array(cls, pixels: np.ndarray, timestamp: Optional[float] = None) -> 'Frame':
        h, w = pixels.shape[:2]
        return cls(
            pixels=pixels,
            width=int(w),
            height=int(h),
            timestamp=time.monotonic() if timestamp is None else float(timestamp),
        )


class CameraHandler:
    """
    Frame source and capture command over an OpenCV video device.

    The producer thread and still captures share one device handle; reads
    are serialized by a lock so a still never interleaves with a preview read.
    """

    DEFAULT_CONFIG = {
        'width': 1920,
        'height': 1080,
        'fps': 30,
        'codec': 'MJPG',
        'buffer_size': 1,
        'still_flush_frames': 2,  # buffered preview frames dropped before a still
        'backend': 'v4l2',
    }

    _BACKENDS = {
        'v4l2': cv2.CAP_V4L2,
        'any': cv2.CAP_ANY,
    }

    def __init__(self, camera_index: int = 0, config: Optional[dict] = None):
        """
        Args:
            camera_index: Video device index (/dev/videoN with the v4l2 backend)
            config: Overrides for DEFAULT_CONFIG
        """
        self.camera_index = camera_index
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self.camera: Optional[cv2.VideoCapture] = None
        self._is_initialized = False

        # What the driver actually granted
        self.actual_width = 0
        self.actual_height = 0
        self.actual_fps = 0

        self._read_lock = threading.Lock()
        self._stream_thread: Optional[threading.Thread] = None
        self._streaming = threading.Event()

        logger.info(f"CameraHandler created for device {camera_index} ({self.config['backend']})")

    @property
    def device_path(self) -> str:
        return f"/dev/video{self.camera_index}"

    def _device_missing(self) -> bool:
        # Only V4L2 exposes a device node to check before opening
        if self.config['backend'] != 'v4l2' or not sys.platform.startswith('linux'):
            return False
        return not os.path.exists(self.device_path)

    def initialize(self) -> bool:
        """
        Open and configure the device. Idempotent.

        Raises:
            CameraNotFoundError: No device node for the index
            CameraInitError: The device exists but could not be opened
        """
        if self._is_initialized and self.camera is not None:
            return True

        if self._device_missing():
            logger.error(f"No video device at {self.device_path}")
            raise CameraNotFoundError(self.camera_index)

        backend = self._BACKENDS.get(self.config['backend'], cv2.CAP_ANY)
        try:
            capture = cv2.VideoCapture(self.camera_index, backend)
        except cv2.error as e:
            raise CameraInitError(self.camera_index, reason=str(e))

        if not capture.isOpened():
            capture.release()
            raise CameraInitError(self.camera_index, reason="device did not open")

        self.camera = capture
        self._apply_settings()
        self._is_initialized = True

        logger.info(
            f"Camera {self.camera_index} open: "
            f"{self.actual_width}x{self.actual_height} @ {self.actual_fps:.0f}fps"
        )
        return True

    def _apply_settings(self):
        cfg = self.config
        settings = (
            (cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*cfg['codec'])),
            (cv2.CAP_PROP_FRAME_WIDTH, cfg['width']),
            (cv2.CAP_PROP_FRAME_HEIGHT, cfg['height']),
            (cv2.CAP_PROP_FPS, cfg['fps']),
            (cv2.CAP_PROP_BUFFERSIZE, cfg['buffer_size']),
        )
        for prop, value in settings:
            if not self.camera.set(prop, value):
                logger.debug(f"Camera ignored property {prop}={value}")

        self.actual_width = int(self.camera.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.actual_height = int(self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.actual_fps = self.camera.get(cv2.CAP_PROP_FPS)

    def _read(self, flush: int = 0) -> np.ndarray:
        if not self._is_initialized or self.camera is None:
            raise CameraNotInitializedError()

        with self._read_lock:
            for _ in range(flush):
                self.camera.grab()
            ok, pixels = self.camera.read()

        if not ok or pixels is None:
            raise FrameCaptureError()
        return pixels

    def get_frame(self) -> Frame:
        """
        Capture a single preview frame.

        Raises:
            CameraNotInitializedError: If camera not initialized
            FrameCaptureError: If frame capture fails
        """
        return Frame.from_array(self._read())

    def capture_still(self) -> np.ndarray:
        """
        Take a photo now: drop buffered frames and return a fresh one at
        full resolution.

        Raises:
            CameraNotInitializedError: If camera not initialized
            FrameCaptureError: If frame capture fails
        """
        pixels = self._read(flush=self.config['still_flush_frames'])
        logger.info(f"Still captured: {pixels.shape[1]}x{pixels.shape[0]}")
        return pixels

    def start_stream(self, on_frame: Callable[[Frame], None]):
        """
        Start the producer thread delivering frames to `on_frame` at device
        rate. `on_frame` must not block.
        """
        if self._stream_thread is not None and self._stream_thread.is_alive():
            logger.debug("Frame stream already running")
            return

        if not self._is_initialized:
            self.initialize()

        self._streaming.set()
        self._stream_thread = threading.Thread(
            target=self._stream_loop,
            args=(on_frame,),
            name="frame-source",
            daemon=True,
        )
        self._stream_thread.start()
        logger.info("Frame stream started")

    def _stream_loop(self, on_frame: Callable[[Frame], None]):
        consecutive_failures = 0
        while self._streaming.is_set():
            try:
                frame = self.get_frame()
            except FrameCaptureError:
                consecutive_failures += 1
                if consecutive_failures % 30 == 1:
                    logger.warning(f"Frame read failed ({consecutive_failures} in a row)")
                time.sleep(0.05)
                continue
            except CameraNotInitializedError:
                logger.info("Camera released, frame stream ending")
                break

            consecutive_failures = 0
            on_frame(frame)

    def stop_stream(self, timeout: float = 2.0):
        """Stop the producer thread."""
        self._streaming.clear()
        thread = self._stream_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._stream_thread = None
        logger.info("Frame stream stopped")

    def get_resolution(self) -> Tuple[int, int]:
        return (self.actual_width, self.actual_height)

    def is_opened(self) -> bool:
        return self._is_initialized and self.camera is not None and self.camera.isOpened()

    def is_streaming(self) -> bool:
        return self._streaming.is_set()

    def release(self):
        """Stop streaming and release camera resources."""
        self.stop_stream()
        with self._read_lock:
            if self.camera is not None:
                self.camera.release()
                self.camera = None
            self._is_initialized = False
        logger.info("Camera released")

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
