"""Unit tests for the geometry module."""

import math

import pytest

from sankeyroute.geometry import (
    bboxes_overlap,
    bezier_point,
    curvature_of,
    distance,
    intersection_angle,
    point_to_line_distance,
    polyline_bbox,
    sample_bezier,
    segment_intersection,
    svg_path,
)
from sankeyroute.models import Point

CURVE = [Point(0, 0), Point(0.25, 0.5), Point(0.75, 0.5), Point(1, 1)]


class TestBezier:
    """Tests for Bezier evaluation and sampling."""

    def test_endpoints(self):
        """Test the curve starts at P0 and ends at P3."""
        assert bezier_point(*CURVE, 0.0) == CURVE[0]
        assert bezier_point(*CURVE, 1.0) == CURVE[3]

    def test_midpoint(self):
        """Test the symmetric curve passes through its centre."""
        mid = bezier_point(*CURVE, 0.5)
        assert mid.x == pytest.approx(0.5)
        assert mid.y == pytest.approx(0.5)

    def test_sample_count(self):
        """Test sampling returns one more point than segments."""
        points = sample_bezier(CURVE, 20)
        assert len(points) == 21
        assert points[0] == CURVE[0]
        assert points[-1] == CURVE[3]


class TestSegmentIntersection:
    """Tests for segment_intersection."""

    def test_crossing_segments(self):
        """Test an X shape intersects at its centre."""
        found = segment_intersection(Point(0, 0), Point(1, 1), Point(0, 1), Point(1, 0))
        assert found is not None
        point, t, u = found
        assert point.x == pytest.approx(0.5)
        assert point.y == pytest.approx(0.5)
        assert t == pytest.approx(0.5)
        assert u == pytest.approx(0.5)

    def test_disjoint_segments(self):
        """Test segments that would meet only when extended."""
        assert segment_intersection(Point(0, 0), Point(0.4, 0.4), Point(0, 1), Point(1, 0)) is None

    def test_parallel_segments(self):
        """Test parallel segments never intersect."""
        assert segment_intersection(Point(0, 0), Point(1, 0), Point(0, 1), Point(1, 1)) is None

    def test_collinear_segments(self):
        """Test overlapping collinear segments are treated as parallel."""
        assert segment_intersection(Point(0, 0), Point(1, 0), Point(0.5, 0), Point(2, 0)) is None

    def test_contained_collinear_segment(self):
        """Test a diagonal segment lying inside another has no crossing point."""
        outer = (Point(0, 0), Point(1, 1))
        inner = (Point(0.25, 0.25), Point(0.75, 0.75))
        assert segment_intersection(*outer, *inner) is None
        assert segment_intersection(*inner, *outer) is None


class TestMeasures:
    """Tests for angles, distances and curvature."""

    def test_perpendicular_angle(self):
        """Test perpendicular segments meet at pi/2."""
        angle = intersection_angle(Point(0, 0), Point(1, 0), Point(0.5, -1), Point(0.5, 1))
        assert angle == pytest.approx(math.pi / 2)

    def test_opposite_directions(self):
        """Test antiparallel directions give pi."""
        angle = intersection_angle(Point(0, 0), Point(1, 0), Point(1, 0), Point(0, 0))
        assert angle == pytest.approx(math.pi)

    def test_zero_length_angle(self):
        """Test a degenerate segment gives angle zero."""
        assert intersection_angle(Point(0, 0), Point(0, 0), Point(0, 0), Point(1, 1)) == 0.0

    def test_distance(self):
        """Test Euclidean distance."""
        assert distance(Point(0, 0), Point(3, 4)) == pytest.approx(5)

    def test_point_to_line_distance(self):
        """Test perpendicular distance to a horizontal line."""
        result = point_to_line_distance(Point(0.5, 0.3), Point(0, 0), Point(1, 0))
        assert result == pytest.approx(0.3)

    def test_straight_curve_has_no_curvature(self):
        """Test control points on the chord give zero curvature."""
        straight = [Point(0, 0), Point(1 / 3, 1 / 3), Point(2 / 3, 2 / 3), Point(1, 1)]
        assert curvature_of(straight) == pytest.approx(0.0, abs=1e-12)

    def test_bent_curve_curvature(self):
        """Test curvature is the farthest control point over the chord length."""
        bent = [Point(0, 0), Point(0.5, 0.5), Point(0.5, 0), Point(1, 0)]
        assert curvature_of(bent) == pytest.approx(0.5)

    def test_degenerate_chord(self):
        """Test a zero-length chord has zero curvature."""
        assert curvature_of([Point(0, 0), Point(1, 1), Point(1, 0), Point(0, 0)]) == 0.0


class TestSvgPath:
    """Tests for SVG path output."""

    def test_path_format(self):
        """Test the move and cubic commands."""
        assert svg_path(CURVE) == "M 0 0 C 0.25 0.5, 0.75 0.5, 1 1"


class TestBoundingBoxes:
    """Tests for polyline bounding boxes."""

    def test_polyline_bbox(self):
        """Test the bounding box covers every point."""
        assert polyline_bbox([Point(0.2, 0.9), Point(0.7, 0.1), Point(0.4, 0.5)]) == (
            0.2,
            0.1,
            0.7,
            0.9,
        )

    def test_overlap(self):
        """Test overlapping and separate boxes."""
        assert bboxes_overlap((0, 0, 1, 1), (0.5, 0.5, 2, 2))
        assert not bboxes_overlap((0, 0, 1, 1), (1.5, 0, 2, 1))
