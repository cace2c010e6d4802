"""
Layer 2 — Quadrilateral Detection
Detector contract, the acceptance thresholds applied to its candidates, and
a default OpenCV contour detector.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from error_handlers import AspectOutOfRange, DetectionMiss, DocumentTooSmall, LowConfidence
from layer1_tracking import Quad

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Detection:
    """A single detector candidate in frame pixel coordinates."""
    quad: Quad
    confidence: float


@dataclass(frozen=True)
class AcceptancePolicy:
    """
    Thresholds a candidate must pass before it counts as a detection.

    Aspect ratio is shorter side over longer side, so it lies in [0, 1].
    Width and height fractions compare the quad's bounding box to the frame
    and are only checked when the frame size is known; 0.0 disables them.
    """
    min_confidence: float = 0.9
    min_aspect_ratio: float = 0.2
    max_aspect_ratio: float = 1.0
    min_width_fraction: float = 0.0
    min_height_fraction: float = 0.0

    @classmethod
    def live(cls) -> 'AcceptancePolicy':
        """Thresholds for automatic capture from the live stream."""
        return cls(min_confidence=0.9, min_aspect_ratio=0.2,
                   min_width_fraction=0.5, min_height_fraction=0.3)

    @classmethod
    def manual(cls) -> 'AcceptancePolicy':
        """Thresholds for a single-shot manual capture."""
        return cls(min_confidence=0.7, min_aspect_ratio=0.3)

    def check(self, detection: Optional[Detection],
              frame_size: Optional[Tuple[int, int]] = None) -> Quad:
        """
        Return the candidate's quad if it passes.

        Args:
            detection: Detector output for one frame
            frame_size: (width, height) of that frame, enables the size gate

        Raises:
            DetectionMiss: No candidate
            LowConfidence: Confidence below min_confidence (or NaN)
            AspectOutOfRange: Aspect ratio outside the accepted band (or NaN)
            DocumentTooSmall: Bounding box not wider/taller than the minimum
                fractions of the frame
        """
        if detection is None:
            raise DetectionMiss()

        # Written as negated comparisons so NaN fails
        if not (detection.confidence >= self.min_confidence):
            raise LowConfidence(detection.confidence, self.min_confidence)

        aspect = detection.quad.aspect_ratio()
        if not (self.min_aspect_ratio <= aspect <= self.max_aspect_ratio):
            raise AspectOutOfRange(aspect, self.min_aspect_ratio, self.max_aspect_ratio)

        if frame_size and (self.min_width_fraction > 0 or self.min_height_fraction > 0):
            frame_w, frame_h = frame_size
            _, _, box_w, box_h = detection.quad.bounding_rect()
            width_fraction = box_w / frame_w if frame_w > 0 else 0.0
            height_fraction = box_h / frame_h if frame_h > 0 else 0.0
            if not (width_fraction > self.min_width_fraction
                    and height_fraction > self.min_height_fraction):
                raise DocumentTooSmall(width_fraction, height_fraction,
                                       self.min_width_fraction, self.min_height_fraction)

        return detection.quad


class ContourQuadDetector:
    """
    Edge/contour document detector.

    Returns the largest convex four-corner contour inside the configured
    area band. Confidence is the contour's fill of its minimum-area
    rectangle, so a clean rectangle scores close to 1.0.
    """

    def __init__(self,
                 min_area_percentage=8.0,
                 max_area_percentage=95.0,
                 preview_scale=0.5,
                 max_candidates=15,
                 contrast=2.0):
        """
        Args:
            min_area_percentage: Minimum document area as % of frame
            max_area_percentage: Maximum document area as % of frame
            preview_scale: Downscale factor applied before detection (speed)
            max_candidates: Largest contours examined per frame
            contrast: Gain applied around mid-grey before edge detection;
                1.0 leaves the image unchanged
        """
        self.min_area_percentage = min_area_percentage
        self.max_area_percentage = max_area_percentage
        self.preview_scale = preview_scale
        self.max_candidates = max_candidates
        self.contrast = contrast

        logger.info("ContourQuadDetector initialized")
        logger.debug(f"  Area band: {min_area_percentage}%-{max_area_percentage}%")
        logger.debug(f"  Preview scale: {preview_scale}")

    def detect(self, frame) -> Optional[Detection]:
        """
        Detect at most one document quadrilateral.

        Args:
            frame: Frame or BGR/grayscale numpy.ndarray

        Returns:
            Detection in full-resolution pixel coordinates, or None
        """
        image = getattr(frame, 'pixels', frame)
        if image is None or image.size == 0:
            return None

        height, width = image.shape[:2]
        scale = self.preview_scale if 0 < self.preview_scale < 1 else 1.0
        if scale != 1.0:
            small = cv2.resize(image, (max(1, int(width * scale)), max(1, int(height * scale))))
        else:
            small = image

        if small.ndim == 3:
            gray = cv2.cvtColor(small, cv2.COLOR_BGR2GRAY)
        else:
            gray = small

        gray = self._boost_contrast(gray)
        blurred = cv2.GaussianBlur(gray, (5, 5), 0)
        edges = cv2.Canny(blurred, 30, 120)

        # Close small gaps in the document outline
        kernel = np.ones((3, 3), np.uint8)
        closed = cv2.morphologyEx(edges, cv2.MORPH_CLOSE, kernel, iterations=2)

        contours, _ = cv2.findContours(closed, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        if not contours:
            return None

        contours = sorted(contours, key=cv2.contourArea, reverse=True)

        small_area = gray.shape[0] * gray.shape[1]
        min_area = small_area * (self.min_area_percentage / 100.0)
        max_area = small_area * (self.max_area_percentage / 100.0)

        for contour in contours[:self.max_candidates]:
            area = cv2.contourArea(contour)
            if area < min_area or area > max_area:
                continue

            peri = cv2.arcLength(contour, True)
            approx = cv2.approxPolyDP(contour, 0.02 * peri, True)

            if len(approx) != 4 or not cv2.isContourConvex(approx):
                continue

            (_, _), (rw, rh), _ = cv2.minAreaRect(approx)
            rect_area = rw * rh
            if rect_area <= 0:
                continue
            confidence = float(min(1.0, cv2.contourArea(approx) / rect_area))

            points = approx.reshape(4, 2).astype(np.float64) / scale
            quad = Quad.from_points(points)
            logger.debug(f"Quad candidate: area {area / small_area * 100:.1f}%, confidence {confidence:.3f}")
            return Detection(quad=quad, confidence=confidence)

        return None

    def _boost_contrast(self, gray: np.ndarray) -> np.ndarray:
        """Stretch grey levels around 128, saturating at 0 and 255."""
        if self.contrast == 1.0:
            return gray
        return cv2.addWeighted(gray, self.contrast, gray, 0.0, 128.0 * (1.0 - self.contrast))
