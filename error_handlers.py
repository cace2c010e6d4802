"""
Error Handling System
Provides consistent error types and responses across all layers
"""
import logging

logger = logging.getLogger(__name__)


class ScannerError(Exception):
    """Base exception for capture pipeline errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Frame source / capture command errors
class CameraError(ScannerError):
    """Camera-related errors"""
    pass


class CameraNotFoundError(CameraError):
    """Camera device not found"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"Camera not found at /dev/video{camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )


class CameraInitError(CameraError):
    """Camera initialization failed"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Failed to initialize camera at /dev/video{camera_index}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera permissions and ensure no other app is using it"
            }
        )


class CameraNotInitializedError(CameraError):
    """Attempting to use camera before initialization"""
    def __init__(self):
        super().__init__(
            message="Camera not initialized. Please start the camera first.",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "Call /start_camera endpoint first"
            }
        )


class FrameCaptureError(CameraError):
    """Failed to read a frame from the camera"""
    def __init__(self):
        super().__init__(
            message="Failed to capture frame from camera",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "suggestion": "Check camera connection or restart the camera"
            }
        )


class CaptureDeviceError(CameraError):
    """The "take a photo now" command failed"""
    def __init__(self, reason):
        super().__init__(
            message=f"Capture command failed: {reason}",
            error_code="CAPTURE_DEVICE_FAILED",
            details={
                "reason": str(reason),
                "suggestion": "Check the camera; the next stable detection triggers a new capture"
            }
        )


# Detection and rectification errors
class ProcessingError(ScannerError):
    """Image processing errors"""
    pass


class DetectionError(ProcessingError):
    """A frame produced no usable quadrilateral"""
    pass


class DetectionMiss(DetectionError):
    """Detector returned no candidate for this frame"""
    def __init__(self):
        super().__init__(
            message="No document detected in the image",
            error_code="DOCUMENT_NOT_DETECTED",
            details={
                "suggestion": "Ensure document is fully visible and well-lit"
            }
        )


class LowConfidence(DetectionError):
    """Candidate rejected because its confidence is below the threshold"""
    def __init__(self, confidence, threshold):
        super().__init__(
            message=f"Detection confidence {confidence:.2f} below {threshold:.2f}",
            error_code="LOW_CONFIDENCE",
            details={
                "confidence": float(confidence),
                "threshold": float(threshold)
            }
        )


class AspectOutOfRange(DetectionError):
    """Candidate rejected because its aspect ratio is outside the accepted band"""
    def __init__(self, aspect_ratio, minimum, maximum):
        super().__init__(
            message=f"Aspect ratio {aspect_ratio:.2f} outside [{minimum:.2f}, {maximum:.2f}]",
            error_code="ASPECT_OUT_OF_RANGE",
            details={
                "aspect_ratio": float(aspect_ratio),
                "minimum": float(minimum),
                "maximum": float(maximum)
            }
        )


class DocumentTooSmall(DetectionError):
    """Candidate covers too little of the frame to trigger a capture"""
    def __init__(self, width_fraction, height_fraction, min_width, min_height):
        super().__init__(
            message=(
                f"Document spans {width_fraction:.2f}x{height_fraction:.2f} of the frame, "
                f"needs more than {min_width:.2f}x{min_height:.2f}"
            ),
            error_code="DOCUMENT_TOO_SMALL",
            details={
                "width_fraction": float(width_fraction),
                "height_fraction": float(height_fraction),
                "min_width_fraction": float(min_width),
                "min_height_fraction": float(min_height),
                "suggestion": "Move the camera closer to the document"
            }
        )


class RectificationFailed(ProcessingError):
    """Perspective correction could not be computed"""
    def __init__(self, reason):
        super().__init__(
            message=f"Rectification failed: {reason}",
            error_code="RECTIFICATION_FAILED",
            details={
                "reason": str(reason),
                "suggestion": "The original image is used instead"
            }
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, ScannerError):
        # Known pipeline error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }
