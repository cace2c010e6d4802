"""
Pytest configuration and fixtures for the capture pipeline tests.
"""
import os
import sys

import cv2
import numpy as np
import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

from layer1_tracking import Quad  # noqa: E402


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = float(start)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def reference_quad():
    """Document quad on a 1920x1080 frame."""
    return Quad(
        top_left=(200, 150),
        top_right=(1700, 150),
        bottom_right=(1700, 900),
        bottom_left=(200, 900),
    )


@pytest.fixture
def shifted():
    """Return a copy of a quad translated by (dx, dy)."""
    def _shift(quad, dx, dy):
        return Quad(*((x + dx, y + dy) for x, y in quad.corners()))
    return _shift


@pytest.fixture
def gradient_image():
    """Deterministic 120x160 BGR image with distinct pixel values."""
    h, w = 120, 160
    ys, xs = np.mgrid[0:h, 0:w]
    image = np.zeros((h, w, 3), dtype=np.uint8)
    image[..., 0] = (xs * 255 // (w - 1)).astype(np.uint8)
    image[..., 1] = (ys * 255 // (h - 1)).astype(np.uint8)
    image[..., 2] = ((xs + ys) % 256).astype(np.uint8)
    return image


@pytest.fixture
def document_frame():
    """640x480 dark frame with a bright 400x260 document at (120, 110)."""
    frame = np.full((480, 640, 3), 30, dtype=np.uint8)
    cv2.rectangle(frame, (120, 110), (520, 370), (235, 235, 235), thickness=-1)
    return frame


@pytest.fixture
def app():
    """Create Flask test application."""
    from app import app as flask_app
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()


@pytest.fixture
def jpeg_bytes(document_frame):
    """The synthetic document frame encoded as JPEG."""
    ok, buffer = cv2.imencode('.jpg', document_frame)
    assert ok
    return buffer.tobytes()
