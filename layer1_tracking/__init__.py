"""
Layer 1 — Tracking
Quad geometry, the sliding detection window and the stability check that
turns flickering per-frame detections into a steady estimate.
"""
from .quad import Quad
from .detection_window import DetectionWindow, StabilityMetric
from .stability import Stability, StabilityEvaluator, StabilityVerdict

__all__ = [
    'Quad',
    'DetectionWindow',
    'StabilityMetric',
    'Stability',
    'StabilityEvaluator',
    'StabilityVerdict',
]
