"""
Layer 3 — Perspective Rectification
Responsibility: Warp the document quadrilateral of a captured image onto a
flat rectangle.
Output: RectifiedImage (or the original image when correction is impossible)
"""
import itertools
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import cv2
import numpy as np

from error_handlers import RectificationFailed
from layer1_tracking import Quad

logger = logging.getLogger(__name__)


@dataclass
class RectifiedImage:
    """Terminal artifact of a capture, handed to the completion callback."""
    image: np.ndarray
    corners: Optional[Quad]
    rectified: bool
    error: Optional[str] = None

    @property
    def size(self):
        h, w = self.image.shape[:2]
        return (w, h)

    def to_dict(self) -> Dict:
        """Metadata for API responses (pixels excluded)."""
        w, h = self.size
        return {
            'rectified': self.rectified,
            'width': w,
            'height': h,
            'corners': self.corners.to_dict() if self.corners else None,
            'error': self.error,
        }


class PerspectiveRectifier:
    """
    Four-point perspective correction.

    Output size is the quad's content extent: the longer of the top and
    bottom edges by the longer of the left and right edges.
    """

    def __init__(self,
                 min_triangle_area: float = 1.0,
                 interpolation: int = cv2.INTER_LINEAR):
        """
        Args:
            min_triangle_area: Smallest area (px^2) any three corners may
                span before the quad is treated as degenerate
            interpolation: OpenCV resampling flag
        """
        self.min_triangle_area = float(min_triangle_area)
        self.interpolation = interpolation
        logger.info("PerspectiveRectifier initialized")

    def _check_geometry(self, quad: Quad):
        pts = quad.corners()
        if not all(np.isfinite(c) for p in pts for c in p):
            raise RectificationFailed("corner coordinates are not finite")

        for a, b, c in itertools.combinations(pts, 3):
            twice_area = abs((b[0] - a[0]) * (c[1] - a[1]) - (c[0] - a[0]) * (b[1] - a[1]))
            if twice_area / 2.0 < self.min_triangle_area:
                raise RectificationFailed("three corners are collinear")

    def output_size(self, quad: Quad):
        """(width, height) of the rectified output for `quad`."""
        top, right, bottom, left = quad.edge_lengths()
        return int(round(max(top, bottom))), int(round(max(left, right)))

    def transform(self, quad: Quad):
        """
        Projective transform mapping `quad` onto the output rectangle.

        Returns:
            tuple: (3x3 matrix, (width, height))

        Raises:
            RectificationFailed: Degenerate or non-invertible geometry
        """
        self._check_geometry(quad)

        width, height = self.output_size(quad)
        if width < 1 or height < 1:
            raise RectificationFailed(f"output extent {width}x{height} is empty")

        src = quad.as_array(np.float32)
        dst = np.array([
            [0, 0],
            [width, 0],
            [width, height],
            [0, height]
        ], dtype=np.float32)

        try:
            M = cv2.getPerspectiveTransform(src, dst)
        except cv2.error as e:
            raise RectificationFailed(f"transform could not be solved ({e})")

        if not np.all(np.isfinite(M)) or abs(np.linalg.det(M)) < 1e-12:
            raise RectificationFailed("transform is singular")

        return M, (width, height)

    def rectify(self, image: Optional[np.ndarray], quad: Quad) -> np.ndarray:
        """
        Warp the quad region of `image` onto a flat rectangle.

        Args:
            image: Source image in the quad's pixel space (top-left origin)
            quad: Document corners

        Returns:
            numpy.ndarray: Rectified image

        Raises:
            RectificationFailed: Missing image data or degenerate quad
        """
        if image is None or not isinstance(image, np.ndarray) or image.size == 0:
            raise RectificationFailed("image data unavailable")

        M, (width, height) = self.transform(quad)
        warped = cv2.warpPerspective(image, M, (width, height), flags=self.interpolation)

        logger.debug(f"Perspective corrected: {image.shape[1]}x{image.shape[0]} -> {width}x{height}")
        return warped

    def rectify_or_original(self, image: np.ndarray, quad: Optional[Quad]) -> RectifiedImage:
        """
        Rectify, falling back to the original image unchanged.

        Never raises for geometry or missing-data problems.
        """
        if quad is None:
            return RectifiedImage(image=image, corners=None, rectified=False,
                                  error="no document corners")
        try:
            warped = self.rectify(image, quad)
        except RectificationFailed as e:
            logger.warning(f"{e.error_code}: {e.message}, using original image")
            return RectifiedImage(image=image, corners=quad, rectified=False, error=e.message)

        return RectifiedImage(image=warped, corners=quad, rectified=True)
