"""
Layer 3 — Rectification
Perspective correction of captured documents.
"""
from .rectifier import PerspectiveRectifier, RectifiedImage

__all__ = ['PerspectiveRectifier', 'RectifiedImage']
