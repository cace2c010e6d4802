"""
Tests for the document auto-capture Flask application.
"""
import json
from io import BytesIO

import cv2
import numpy as np
import pytest

from error_handlers import (
    CameraNotFoundError,
    CameraNotInitializedError,
    CaptureDeviceError,
    LowConfidence,
    handle_error,
)
from layer1_tracking import Quad
from layer2_capture import Frame, PipelineConfig
from layer3_rectification import RectifiedImage


def decode(response):
    return cv2.imdecode(np.frombuffer(response.data, dtype=np.uint8), cv2.IMREAD_COLOR)


def upload(client, jpeg_bytes, corners=None, filename='doc.jpg'):
    data = {'image': (BytesIO(jpeg_bytes), filename)}
    if corners is not None:
        data['corners'] = json.dumps(corners)
    return client.post('/api/rectify', data=data, content_type='multipart/form-data')


@pytest.fixture
def scanner():
    from app import scanner as coordinator
    coordinator.last_result = None
    coordinator.last_error = None
    return coordinator


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        """Test /health returns OK status."""
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'
        assert data['service'] == 'doc-autocapture'


class TestStatusEndpoints:
    """Test pipeline status reporting."""

    def test_api_status(self, client, scanner):
        """Test /api/status reports pipeline state without a camera."""
        response = client.get('/api/status')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['camera_open'] is False
        assert data['pipeline']['state'] == 'idle'
        assert data['pipeline']['window']['capacity'] == 5
        assert 'rectify' in data['endpoints']

    def test_detection_status_idle(self, client, scanner):
        """Test /detection_status before any frames."""
        response = client.get('/detection_status')
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['detection']['state'] == 'idle'
        assert data['detection']['last_error'] is None


class TestCameraEndpoints:
    """Test camera lifecycle endpoints."""

    def test_start_camera_missing_device(self, client, scanner, monkeypatch):
        """Test /start_camera reports a missing device."""
        def missing():
            raise CameraNotFoundError(7)

        monkeypatch.setattr(scanner.camera, 'initialize', missing)
        response = client.post('/start_camera')
        assert response.status_code == 503
        data = json.loads(response.data)
        assert data['success'] is False
        assert data['error_code'] == 'CAMERA_NOT_FOUND'

    def test_capture_requires_camera(self, client, scanner):
        """Test /capture before /start_camera."""
        response = client.post('/capture')
        assert response.status_code == 503
        data = json.loads(response.data)
        assert data['error_code'] == 'CAMERA_NOT_INITIALIZED'

    def test_stop_camera_when_stopped(self, client, scanner):
        """Test /stop_camera is harmless when nothing runs."""
        response = client.post('/stop_camera')
        assert response.status_code == 200
        assert json.loads(response.data)['success'] is True


class TestLatestEndpoint:
    """Test retrieval of the last captured document."""

    def test_latest_before_capture(self, client, scanner):
        """Test that /api/latest is 404 before any capture."""
        response = client.get('/api/latest')
        assert response.status_code == 404
        assert json.loads(response.data)['error_code'] == 'NO_RESULT'

    def test_latest_returns_jpeg(self, client, scanner, gradient_image):
        """Test that /api/latest serves the last capture as JPEG."""
        scanner.last_result = RectifiedImage(
            image=gradient_image, corners=None, rectified=False, error="no document corners"
        )
        response = client.get('/api/latest')
        assert response.status_code == 200
        assert response.mimetype == 'image/jpeg'
        assert response.headers['X-Rectified'] == 'false'
        assert decode(response).shape == gradient_image.shape


class TestRectifyEndpoint:
    """Test rectification of uploaded images."""

    def test_requires_image(self, client):
        """Test that /api/rectify needs an image upload."""
        response = client.post('/api/rectify', data={}, content_type='multipart/form-data')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'NO_IMAGE'

    def test_rejects_unreadable_image(self, client):
        """Test that undecodable bytes are rejected."""
        response = upload(client, b'not an image')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_IMAGE'

    def test_rectifies_with_pixel_corners(self, client, jpeg_bytes):
        """Test rectification with pixel corners."""
        corners = [[120, 110], [520, 110], [520, 370], [120, 370]]
        response = upload(client, jpeg_bytes, corners)
        assert response.status_code == 200
        assert response.headers['X-Rectified'] == 'true'
        image = decode(response)
        assert image.shape[:2] == (260, 400)
        assert image.mean() > 200

    def test_rectifies_with_normalized_corners(self, client, jpeg_bytes):
        """Test rectification with normalized corners."""
        corners = {
            'normalized': True,
            'points': [[0.0, 1.0], [0.5, 1.0], [0.5, 0.5], [0.0, 0.5]],
        }
        response = upload(client, jpeg_bytes, corners)
        assert response.headers['X-Rectified'] == 'true'
        assert decode(response).shape[:2] == (240, 320)

    def test_without_corners_returns_original(self, client, jpeg_bytes):
        """Test that no corners returns the original image."""
        response = upload(client, jpeg_bytes)
        assert response.status_code == 200
        assert response.headers['X-Rectified'] == 'false'
        assert decode(response).shape[:2] == (480, 640)

    def test_degenerate_corners_return_original(self, client, jpeg_bytes):
        """Test that degenerate corners return the original image."""
        corners = [[0, 0], [100, 0], [200, 0], [0, 100]]
        response = upload(client, jpeg_bytes, corners)
        assert response.status_code == 200
        assert response.headers['X-Rectified'] == 'false'
        assert 'X-Rectify-Error' in response.headers
        assert decode(response).shape[:2] == (480, 640)

    def test_malformed_corners(self, client, jpeg_bytes):
        """Test that malformed corners are a 400."""
        response = upload(client, jpeg_bytes, [[1, 2], [3, 4]])
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_CORNERS'


class TestCaptureCoordinator:
    """Test the coordinator's views without camera hardware."""

    @pytest.fixture
    def coordinator(self):
        from app import CaptureCoordinator
        coordinator = CaptureCoordinator(camera_index=99, pipeline_config=PipelineConfig())
        yield coordinator
        coordinator.pipeline.stop()

    def test_preview_before_frames(self, coordinator):
        """Test that there is no preview before the first frame."""
        assert coordinator.preview_frame() is None

    def test_preview_draws_overlay(self, coordinator, document_frame):
        """Test that the preview draws the overlay quad."""
        coordinator._on_frame(Frame.from_array(document_frame))
        plain = coordinator.preview_frame()
        assert np.array_equal(plain, document_frame)

        coordinator._on_overlay(Quad((120, 110), (520, 110), (520, 370), (120, 370)))
        annotated = coordinator.preview_frame()
        assert not np.array_equal(annotated, document_frame)
        assert coordinator.detection_status()['detected'] is True

    def test_capture_errors_recorded(self, coordinator):
        """Test that capture errors show in detection status."""
        coordinator._on_error(CaptureDeviceError("device busy"))
        status = coordinator.detection_status()
        assert status['last_error']['error_code'] == 'CAPTURE_DEVICE_FAILED'

    def test_manual_capture_requires_running_pipeline(self, coordinator):
        """Test that manual capture refuses while live capture is stopped."""
        with pytest.raises(CameraNotInitializedError):
            coordinator.capture_manual(timeout=0.1)


class TestErrorHandlers:
    """Test error response helpers."""

    def test_known_error(self):
        """Test the response for a ScannerError."""
        response = handle_error(LowConfidence(0.5, 0.9))
        assert response['success'] is False
        assert response['error_code'] == 'LOW_CONFIDENCE'
        assert response['details']['threshold'] == 0.9

    def test_unexpected_error(self):
        """Test the response for an unexpected exception."""
        response = handle_error(RuntimeError("boom"))
        assert response['error_code'] == 'UNEXPECTED_ERROR'
        assert response['details']['error_type'] == 'RuntimeError'
