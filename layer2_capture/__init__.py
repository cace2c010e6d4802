"""
Layer 2 — Capture
Frame source, detection acceptance, the capture state machine with its
cooldown, the overlay hold and the pipeline driver tying them together.
"""
from .camera import CameraHandler, Frame
from .controller import CaptureController, CaptureState
from .detector import AcceptancePolicy, ContourQuadDetector, Detection
from .overlay_hold import OverlayHold
from .pipeline import CapturePipeline, PipelineConfig

__all__ = [
    'CameraHandler',
    'Frame',
    'CaptureController',
    'CaptureState',
    'AcceptancePolicy',
    'ContourQuadDetector',
    'Detection',
    'OverlayHold',
    'CapturePipeline',
    'PipelineConfig',
]
