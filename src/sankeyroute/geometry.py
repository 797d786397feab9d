"""
Geometry helpers for cubic Bezier routes.

All coordinates live in normalized diagram space where x and y are in [0, 1]
(control points may stray outside that range when a curve bulges).

Provides:
- Cubic Bezier evaluation and uniform sampling
- Parametric 2D segment intersection
- Intersection angles and point/segment distances
- SVG path command strings
"""

import math
from typing import List, Optional, Sequence, Tuple

from .models import Point

# Determinant magnitude below which two segments are treated as parallel
PARALLEL_EPSILON = 1e-10


def bezier_point(p0: Point, p1: Point, p2: Point, p3: Point, t: float) -> Point:
    """Evaluate a cubic Bezier curve at parameter t."""
    mt = 1 - t
    a = mt * mt * mt
    b = 3 * mt * mt * t
    c = 3 * mt * t * t
    d = t * t * t
    return Point(
        a * p0.x + b * p1.x + c * p2.x + d * p3.x,
        a * p0.y + b * p1.y + c * p2.y + d * p3.y,
    )


def sample_bezier(control_points: Sequence[Point], samples: int) -> List[Point]:
    """
    Sample a cubic Bezier curve uniformly in t.

    Args:
        control_points: The four control points P0..P3.
        samples: Number of segments; samples + 1 points are returned.

    Returns:
        List of points from P0 to P3 inclusive.
    """
    p0, p1, p2, p3 = control_points
    return [bezier_point(p0, p1, p2, p3, i / samples) for i in range(samples + 1)]


def segment_intersection(
    a1: Point, a2: Point, b1: Point, b2: Point
) -> Optional[Tuple[Point, float, float]]:
    """
    Intersect segments a1-a2 and b1-b2.

    Solves a1 + t(a2 - a1) = b1 + u(b2 - b1) for t and u.

    Returns:
        (point, t, u) when both parameters lie in [0, 1], otherwise None.
        Parallel segments never intersect, and neither do collinear ones,
        even when they overlap: a shared run has no single crossing point.
        Crossing detection therefore does not count coincident stretches of
        two routes; runs between the same node pair are reported by the
        parallel-overlap check instead.
    """
    rx, ry = a2.x - a1.x, a2.y - a1.y
    sx, sy = b2.x - b1.x, b2.y - b1.y
    denom = rx * sy - ry * sx
    if abs(denom) < PARALLEL_EPSILON:
        return None

    qx, qy = b1.x - a1.x, b1.y - a1.y
    t = (qx * sy - qy * sx) / denom
    u = (qx * ry - qy * rx) / denom
    if 0 <= t <= 1 and 0 <= u <= 1:
        return Point(a1.x + t * rx, a1.y + t * ry), t, u
    return None


def intersection_angle(a1: Point, a2: Point, b1: Point, b2: Point) -> float:
    """Angle in radians between the directions of two segments, in [0, pi]."""
    v1x, v1y = a2.x - a1.x, a2.y - a1.y
    v2x, v2y = b2.x - b1.x, b2.y - b1.y
    len1 = math.hypot(v1x, v1y)
    len2 = math.hypot(v2x, v2y)
    if len1 == 0 or len2 == 0:
        return 0.0
    cos_angle = (v1x * v2x + v1y * v2y) / (len1 * len2)
    return math.acos(max(-1.0, min(1.0, cos_angle)))


def distance(a: Point, b: Point) -> float:
    return math.hypot(b.x - a.x, b.y - a.y)


def point_to_line_distance(point: Point, start: Point, end: Point) -> float:
    """Perpendicular distance from point to the infinite line start-end."""
    length = distance(start, end)
    if length == 0:
        return distance(point, start)
    cross = (end.x - start.x) * (start.y - point.y) - (start.x - point.x) * (
        end.y - start.y
    )
    return abs(cross) / length


def curvature_of(control_points: Sequence[Point]) -> float:
    """
    Scalar curvature of a cubic Bezier.

    The larger distance of P1 or P2 from the P0-P3 chord, divided by the
    chord length. Zero for a degenerate chord.
    """
    p0, p1, p2, p3 = control_points
    chord = distance(p0, p3)
    if chord == 0:
        return 0.0
    return max(point_to_line_distance(p1, p0, p3), point_to_line_distance(p2, p0, p3)) / chord


def svg_path(control_points: Sequence[Point]) -> str:
    """Build an SVG path command string for a cubic Bezier."""
    p0, p1, p2, p3 = control_points
    return (
        f"M {p0.x:.6g} {p0.y:.6g} "
        f"C {p1.x:.6g} {p1.y:.6g}, {p2.x:.6g} {p2.y:.6g}, {p3.x:.6g} {p3.y:.6g}"
    )


def polyline_bbox(points: Sequence[Point]) -> Tuple[float, float, float, float]:
    """Return (min_x, min_y, max_x, max_y) of a polyline."""
    xs = [p.x for p in points]
    ys = [p.y for p in points]
    return min(xs), min(ys), max(xs), max(ys)


def bboxes_overlap(
    a: Tuple[float, float, float, float], b: Tuple[float, float, float, float]
) -> bool:
    return a[0] <= b[2] and b[0] <= a[2] and a[1] <= b[3] and b[1] <= a[3]
