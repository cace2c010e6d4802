"""
Tests for Layer 1 — quad geometry, detection window and stability check.
"""
import itertools
import math

import numpy as np
import pytest

from layer1_tracking import (
    DetectionWindow,
    Quad,
    Stability,
    StabilityEvaluator,
    StabilityMetric,
)


def _filled(quads, capacity=5):
    window = DetectionWindow(capacity=capacity)
    for q in quads:
        window.push(q)
    return window


class TestQuad:
    """Test the Quad value type."""

    def test_corners_order(self, reference_quad):
        """Test corners() returns TL, TR, BR, BL."""
        assert reference_quad.corners() == (
            (200.0, 150.0), (1700.0, 150.0), (1700.0, 900.0), (200.0, 900.0)
        )

    def test_is_immutable(self, reference_quad):
        """Test that quad corners cannot be reassigned."""
        with pytest.raises(AttributeError):
            reference_quad.top_left = (0, 0)

    def test_mean_of_empty_is_zero_quad(self):
        """Test that the mean of no quads is the zero quad."""
        assert Quad.mean([]) == Quad.zero()

    def test_median_of_empty_is_zero_quad(self):
        """Test that the median of no quads is the zero quad."""
        assert Quad.median([]) == Quad.zero()

    def test_mean_is_componentwise(self, reference_quad, shifted):
        """Test that the mean averages each corner coordinate."""
        quads = [reference_quad, shifted(reference_quad, 10, -4)]
        assert Quad.mean(quads) == shifted(reference_quad, 5, -2)

    def test_median_odd_count(self, reference_quad, shifted):
        """Test the median of an odd number of quads."""
        quads = [shifted(reference_quad, d, 0) for d in (0, 300, 3)]
        assert Quad.median(quads) == shifted(reference_quad, 3, 0)

    def test_median_even_count_averages_middle_pair(self, reference_quad, shifted):
        """Test that an even count averages the middle pair."""
        quads = [shifted(reference_quad, d, 0) for d in (0, 2, 4, 100)]
        assert Quad.median(quads) == shifted(reference_quad, 3, 0)

    def test_median_is_per_coordinate(self):
        """Test x and y medians are taken independently of each other."""
        a = Quad((0, 9), (0, 0), (0, 0), (0, 0))
        b = Quad((5, 1), (0, 0), (0, 0), (0, 0))
        c = Quad((9, 5), (0, 0), (0, 0), (0, 0))
        assert Quad.median([a, b, c]).top_left == (5.0, 5.0)

    def test_dispersion_sums_corner_distances(self, reference_quad, shifted):
        """Test that dispersion sums corner distances to the reference."""
        sample = shifted(reference_quad, 3, 4)
        assert Quad.dispersion([sample], against=reference_quad) == pytest.approx(20.0)

    def test_dispersion_of_empty_is_zero(self, reference_quad):
        """Test that dispersion over no quads is zero."""
        assert Quad.dispersion([], against=reference_quad) == 0.0

    def test_from_points_orders_corners(self, reference_quad):
        """Test that unordered points are sorted into TL, TR, BR, BL."""
        shuffled = [(1700, 900), (200, 150), (200, 900), (1700, 150)]
        assert Quad.from_points(shuffled) == reference_quad

    def test_from_normalized_flips_y_axis(self):
        """Test that bottom-left normalized corners map to pixel space."""
        quad = Quad.from_normalized(
            [(0.0, 1.0), (1.0, 1.0), (1.0, 0.0), (0.0, 0.0)], width=1920, height=1080
        )
        assert quad == Quad((0, 0), (1920, 0), (1920, 1080), (0, 1080))

    def test_aspect_ratio(self, reference_quad):
        """Test shorter-over-longer aspect ratio."""
        assert reference_quad.aspect_ratio() == pytest.approx(750 / 1500)

    def test_aspect_ratio_of_degenerate_quad(self):
        """Test that a collapsed quad has aspect ratio 0."""
        line = Quad((0, 0), (10, 0), (10, 0), (0, 0))
        assert line.aspect_ratio() == 0.0

    def test_area(self, reference_quad):
        """Test the shoelace area."""
        assert reference_quad.area() == pytest.approx(1500 * 750)

    def test_scaled(self, reference_quad):
        """Test per-axis scaling."""
        assert reference_quad.scaled(2, 0.5).top_right == (3400.0, 75.0)

    def test_as_array_shape(self, reference_quad):
        """Test the (4, 2) float32 array form."""
        arr = reference_quad.as_array()
        assert arr.shape == (4, 2)
        assert arr.dtype == np.float32


class TestDetectionWindow:
    """Test the bounded FIFO window."""

    def test_rejects_zero_capacity(self):
        """Test that a window needs room for one sample."""
        with pytest.raises(ValueError):
            DetectionWindow(capacity=0)

    def test_fills_to_capacity(self, reference_quad):
        """Test that the window reports full at capacity."""
        window = DetectionWindow(capacity=3)
        for i in range(3):
            assert not window.is_full()
            window.push(reference_quad)
        assert window.is_full()
        assert len(window) == 3

    def test_evicts_oldest(self, reference_quad, shifted):
        """Test that appending past capacity drops the oldest sample."""
        quads = [shifted(reference_quad, i, 0) for i in range(7)]
        window = _filled(quads, capacity=5)
        assert len(window) == 5
        assert window.samples() == tuple(quads[2:])

    def test_clear_empties_window(self, reference_quad):
        """Test that clear removes every sample."""
        window = _filled([reference_quad] * 3)
        window.clear()
        assert len(window) == 0
        assert window.samples() == ()

    def test_samples_is_snapshot(self, reference_quad):
        """Test that samples() is a copy."""
        window = _filled([reference_quad])
        snapshot = window.samples()
        window.push(reference_quad)
        assert len(snapshot) == 1


class TestStabilityMetric:
    """Test the derived median / biased average / jitter."""

    def test_jitter_zero_for_empty_window(self):
        """Test that an empty window has zero jitter."""
        assert DetectionWindow().metric().jitter == 0.0

    def test_jitter_zero_for_single_sample(self, reference_quad, shifted):
        """Test that one sample has zero jitter."""
        window = _filled([shifted(reference_quad, 123.4, -56.7)])
        assert window.metric().jitter == 0.0

    def test_average_includes_median_as_extra_sample(self, reference_quad, shifted):
        """Test the average is taken over the samples plus their median."""
        quads = [shifted(reference_quad, d, 0) for d in (0, 0, 0, 0, 60)]
        metric = StabilityMetric.from_samples(tuple(quads))
        assert metric.median_quad == reference_quad
        # Plain mean would shift by 12; with the median injected it is 60 / 6.
        assert metric.average_quad.top_left[0] == pytest.approx(210.0)

    def test_jitter_is_order_invariant(self, reference_quad, shifted):
        """Test that jitter ignores sample order."""
        quads = [
            shifted(reference_quad, 0.1, 0.7),
            shifted(reference_quad, -1.3, 0.2),
            shifted(reference_quad, 2.9, -0.4),
            shifted(reference_quad, 0.0, 1.1),
            shifted(reference_quad, -0.6, -1.9),
        ]
        expected = _filled(quads).metric().jitter
        for perm in itertools.permutations(quads):
            assert _filled(perm).metric().jitter == expected


class TestStabilityEvaluator:
    """Test stability verdicts."""

    def test_insufficient_data_until_full(self, reference_quad):
        """Test that the verdict waits for a full window."""
        evaluator = StabilityEvaluator(window_size=5)
        window = evaluator.new_window()
        for _ in range(4):
            window.push(reference_quad)
            verdict = evaluator.evaluate(window)
            assert verdict.status is Stability.INSUFFICIENT_DATA
            assert not verdict.is_stable
            assert verdict.quad is None

    def test_near_identical_quads_are_stable(self, reference_quad, shifted):
        """Test quads within 2 px of the reference give a stable verdict."""
        offsets = [(2, 0), (-2, 0), (0, 2), (0, -2), (1, 1)]
        window = _filled([shifted(reference_quad, dx, dy) for dx, dy in offsets])
        verdict = StabilityEvaluator().evaluate(window)
        assert verdict.jitter < 10.0
        assert verdict.status is Stability.STABLE
        for got, want in zip(verdict.quad.corners(), reference_quad.corners()):
            assert math.dist(got, want) < 2.0

    def test_single_outlier_is_unstable(self, reference_quad, shifted):
        """Test that one outlier makes the window unstable."""
        quads = [reference_quad] * 4 + [shifted(reference_quad, 200, 200)]
        verdict = StabilityEvaluator().evaluate(_filled(quads))
        assert verdict.jitter >= 10.0
        assert verdict.status is Stability.UNSTABLE
        assert verdict.quad is None

    def test_threshold_is_strict(self, reference_quad, shifted):
        """Test jitter equal to the threshold is not stable."""
        quads = [reference_quad] * 4 + [shifted(reference_quad, 6, 0)]
        window = _filled(quads)
        jitter = window.metric().jitter
        assert not StabilityEvaluator(jitter_threshold=jitter).evaluate(window).is_stable
        assert StabilityEvaluator(jitter_threshold=jitter + 1e-9).evaluate(window).is_stable

    def test_identical_windows_give_identical_verdicts(self, reference_quad, shifted):
        """Test that evaluation is deterministic."""
        quads = [shifted(reference_quad, i * 0.5, -i) for i in range(5)]
        evaluator = StabilityEvaluator()
        assert evaluator.evaluate(_filled(quads)) == evaluator.evaluate(_filled(quads))

    def test_verdict_progress(self, reference_quad):
        """Test the fill progress reported by verdicts."""
        evaluator = StabilityEvaluator(window_size=4)
        verdict = evaluator.evaluate(_filled([reference_quad] * 2, capacity=4))
        assert verdict.progress == pytest.approx(0.5)
        assert verdict.to_dict()['status'] == 'insufficient_data'
