"""
Layer 1 — Quad
Geometric value type for a detected document boundary: four corner points
in a frame's pixel space (origin top-left, y pointing down).
"""
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np

Point = Tuple[float, float]

ZERO_POINT: Point = (0.0, 0.0)


def _point(p) -> Point:
    return (float(p[0]), float(p[1]))


def _median(values: List[float]) -> float:
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2.0
    return ordered[mid]


@dataclass(frozen=True)
class Quad:
    """
    Four ordered corners: top-left, top-right, bottom-right, bottom-left.

    Immutable. A degenerate (collinear) quad is a valid value; consumers
    that need a proper polygon validate it themselves.
    """
    top_left: Point = ZERO_POINT
    top_right: Point = ZERO_POINT
    bottom_right: Point = ZERO_POINT
    bottom_left: Point = ZERO_POINT

    def __post_init__(self):
        for name in ('top_left', 'top_right', 'bottom_right', 'bottom_left'):
            object.__setattr__(self, name, _point(getattr(self, name)))

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def zero(cls) -> 'Quad':
        return cls()

    @classmethod
    def from_array(cls, array) -> 'Quad':
        """Build from a (4, 2) array already in TL, TR, BR, BL order."""
        pts = np.asarray(array, dtype=np.float64).reshape(4, 2)
        return cls(*(tuple(p) for p in pts))

    @classmethod
    def from_points(cls, points) -> 'Quad':
        """
        Build from four points in any order.

        Corners are assigned by coordinate sum and difference: top-left has
        the smallest x+y, bottom-right the largest, top-right the smallest
        y-x and bottom-left the largest.
        """
        pts = np.asarray(points, dtype=np.float64).reshape(4, 2)
        s = pts.sum(axis=1)
        diff = np.diff(pts, axis=1).ravel()
        return cls(
            top_left=tuple(pts[np.argmin(s)]),
            top_right=tuple(pts[np.argmin(diff)]),
            bottom_right=tuple(pts[np.argmax(s)]),
            bottom_left=tuple(pts[np.argmax(diff)]),
        )

    @classmethod
    def from_normalized(cls, corners: Sequence[Point], width: float, height: float) -> 'Quad':
        """
        Convert TL, TR, BR, BL corners given in unit coordinates with a
        bottom-left origin into top-left-origin pixel coordinates.
        """
        converted = [
            (x * width, (1.0 - y) * height) for x, y in corners
        ]
        return cls(*converted)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def corners(self) -> Tuple[Point, Point, Point, Point]:
        return (self.top_left, self.top_right, self.bottom_right, self.bottom_left)

    def as_array(self, dtype=np.float32) -> np.ndarray:
        """Corners as a (4, 2) array, the layout OpenCV expects."""
        return np.array(self.corners(), dtype=dtype)

    def scaled(self, sx: float, sy: float) -> 'Quad':
        return Quad(*((x * sx, y * sy) for x, y in self.corners()))

    def edge_lengths(self) -> Tuple[float, float, float, float]:
        """Lengths of the top, right, bottom and left edges."""
        tl, tr, br, bl = self.corners()
        return (
            math.dist(tl, tr),
            math.dist(tr, br),
            math.dist(br, bl),
            math.dist(bl, tl),
        )

    def area(self) -> float:
        """Absolute polygon area (shoelace formula)."""
        pts = self.corners()
        twice = 0.0
        for i in range(4):
            x1, y1 = pts[i]
            x2, y2 = pts[(i + 1) % 4]
            twice += x1 * y2 - x2 * y1
        return abs(twice) / 2.0

    def aspect_ratio(self) -> float:
        """
        Shorter over longer side, in [0, 1], from the averaged opposite edges.
        Returns 0.0 for a quad with a zero-length side pair.
        """
        top, right, bottom, left = self.edge_lengths()
        width = (top + bottom) / 2.0
        height = (left + right) / 2.0
        longer = max(width, height)
        if longer == 0 or min(width, height) == 0:
            return 0.0
        return min(width, height) / longer

    def bounding_rect(self) -> Tuple[float, float, float, float]:
        """(x, y, width, height) of the axis-aligned bounding box."""
        xs = [p[0] for p in self.corners()]
        ys = [p[1] for p in self.corners()]
        return (min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))

    def distance_to(self, other: 'Quad') -> float:
        """Sum of the Euclidean distances between corresponding corners."""
        return math.fsum(
            math.dist(a, b) for a, b in zip(self.corners(), other.corners())
        )

    def to_dict(self) -> Dict:
        return {
            'top_left': list(self.top_left),
            'top_right': list(self.top_right),
            'bottom_right': list(self.bottom_right),
            'bottom_left': list(self.bottom_left),
        }

    # ------------------------------------------------------------------
    # Reductions over samples
    # ------------------------------------------------------------------

    @staticmethod
    def mean(quads: Iterable['Quad']) -> 'Quad':
        """Componentwise arithmetic mean per corner; the zero quad if empty."""
        quads = list(quads)
        if not quads:
            return Quad.zero()
        n = len(quads)
        coords = np.array([q.as_array(np.float64).ravel() for q in quads])
        means = [math.fsum(coords[:, i]) / n for i in range(8)]
        return Quad.from_array(means)

    @staticmethod
    def median(quads: Iterable['Quad']) -> 'Quad':
        """
        Componentwise median of every x and y coordinate independently
        (not a geometric median); the zero quad if empty.
        """
        quads = list(quads)
        if not quads:
            return Quad.zero()
        coords = np.array([q.as_array(np.float64).ravel() for q in quads])
        medians = [_median(coords[:, i].tolist()) for i in range(8)]
        return Quad.from_array(medians)

    @staticmethod
    def dispersion(quads: Iterable['Quad'], against: 'Quad') -> float:
        """
        Mean over samples of the summed per-corner distance to `against`.
        """
        quads = list(quads)
        if not quads:
            return 0.0
        return math.fsum(q.distance_to(against) for q in quads) / len(quads)
