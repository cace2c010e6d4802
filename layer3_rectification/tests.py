"""
Tests for Layer 3 — perspective rectification.
"""
import cv2
import numpy as np
import pytest

from error_handlers import RectificationFailed
from layer1_tracking import Quad
from layer3_rectification import PerspectiveRectifier, RectifiedImage


@pytest.fixture
def rectifier():
    return PerspectiveRectifier()


class TestPerspectiveRectifier:
    """Test warping and geometry checks."""

    def test_full_frame_quad_is_identity(self, rectifier, gradient_image):
        """Test that a full-frame quad returns the image unchanged."""
        h, w = gradient_image.shape[:2]
        quad = Quad((0, 0), (w, 0), (w, h), (0, h))
        warped = rectifier.rectify(gradient_image, quad)
        assert warped.shape == gradient_image.shape
        diff = np.abs(warped.astype(int) - gradient_image.astype(int))
        assert diff.max() <= 1

    def test_output_size_uses_longer_edges(self, rectifier):
        """Test that output size takes the longer opposite edges."""
        quad = Quad((100, 100), (500, 120), (520, 400), (80, 380))
        width, height = rectifier.output_size(quad)
        top, right, bottom, left = quad.edge_lengths()
        assert width == round(max(top, bottom))
        assert height == round(max(left, right))
        warped = rectifier.rectify(np.zeros((480, 640, 3), dtype=np.uint8), quad)
        assert warped.shape[:2] == (height, width)

    def test_skewed_document_becomes_upright(self, rectifier):
        """Test that a skewed document is warped upright."""
        image = np.zeros((480, 640), dtype=np.uint8)
        corners = np.array([[150, 90], [500, 130], [470, 400], [120, 360]], dtype=np.int32)
        cv2.fillConvexPoly(image, corners, 255)
        quad = Quad(*[tuple(p) for p in corners.tolist()])
        warped = rectifier.rectify(image, quad)
        h, w = warped.shape
        interior = warped[h // 10: h - h // 10, w // 10: w - w // 10]
        assert interior.min() == 255

    def test_collinear_corners_rejected(self, rectifier):
        """Test that collinear corners fail rectification."""
        quad = Quad((0, 0), (50, 0), (100, 0), (0, 100))
        with pytest.raises(RectificationFailed) as exc:
            rectifier.rectify(np.zeros((200, 200, 3), dtype=np.uint8), quad)
        assert exc.value.error_code == "RECTIFICATION_FAILED"

    def test_coincident_corners_rejected(self, rectifier):
        """Test that coincident corners fail rectification."""
        quad = Quad((10, 10), (10, 10), (90, 90), (10, 90))
        with pytest.raises(RectificationFailed):
            rectifier.transform(quad)

    def test_missing_image_rejected(self, rectifier, reference_quad):
        """Test that an empty image fails rectification."""
        with pytest.raises(RectificationFailed):
            rectifier.rectify(None, reference_quad)
        with pytest.raises(RectificationFailed):
            rectifier.rectify(np.zeros((0, 0, 3), dtype=np.uint8), reference_quad)


class TestRectifyOrOriginal:
    """Test the fallback contract."""

    def test_success(self, rectifier, gradient_image):
        """Test a successful rectification result."""
        quad = Quad((20, 10), (140, 10), (140, 110), (20, 110))
        result = rectifier.rectify_or_original(gradient_image, quad)
        assert isinstance(result, RectifiedImage)
        assert result.rectified
        assert result.size == (120, 100)
        assert result.error is None

    def test_degenerate_quad_returns_original(self, rectifier, gradient_image):
        """Test that a degenerate quad falls back to the original."""
        original = gradient_image.copy()
        quad = Quad((0, 0), (60, 0), (120, 0), (0, 100))
        result = rectifier.rectify_or_original(gradient_image, quad)
        assert not result.rectified
        assert result.image is gradient_image
        assert np.array_equal(result.image, original)
        assert result.error

    def test_no_corners_returns_original(self, rectifier, gradient_image):
        """Test that no corners returns the original image."""
        result = rectifier.rectify_or_original(gradient_image, None)
        assert not result.rectified
        assert result.corners is None
        assert result.image is gradient_image

    def test_to_dict(self, rectifier, gradient_image):
        """Test the serialized result."""
        quad = Quad((0, 0), (160, 0), (160, 120), (0, 120))
        data = rectifier.rectify_or_original(gradient_image, quad).to_dict()
        assert data['rectified'] is True
        assert data['width'] == 160
        assert data['height'] == 120
        assert data['corners'] is not None
