"""
Crossing detection and resolution for Sankey routes.

Detects two kinds of conflicts between routes:
- Crossings: sampled curves of two routes intersect (routes sharing a node
  are never considered crossing)
- Parallel overlaps: two routes between the same node pair run closer than
  the link separation

Resolution nudges interior control points with a strategy chosen by the
conflict type. Every nudge is tried on a copy and kept only if it does not
increase the crossings or overlaps involving the moved route, so a
resolution pass never makes the total worse.
"""

import logging
import math
import random
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import RoutingConfig
from .geometry import (
    bboxes_overlap,
    distance,
    intersection_angle,
    polyline_bbox,
    sample_bezier,
    segment_intersection,
)
from .models import AvoidanceZone, Crossing, CrossingType, FlowType, Point, Route
from .route_calculator import build_path

logger = logging.getLogger(__name__)

# =============================================================================
# RESOLUTION CONSTANTS
# =============================================================================

# Segments sampled per route when measuring parallel separation
SEPARATION_SAMPLES = 10

# Crossings shallower than this (radians) are handled with a vertical offset
SHALLOW_ANGLE = math.pi / 6

# Priority gap above which the lower priority route deviates around the point
PRIORITY_GAP = 0.3

# Order in which conflict groups are resolved
RESOLUTION_ORDER = (
    CrossingType.PARALLEL_OVERLAP,
    CrossingType.PRIMARY_PRIMARY,
    CrossingType.PRIMARY_SECONDARY,
    CrossingType.SECONDARY_SECONDARY,
    CrossingType.MIXED,
)

# Detour control point placement relative to the endpoint gap
DETOUR_NEAR = 0.35
DETOUR_FAR = 0.85
DETOUR_SCALES = (1.0, 1.5)

# Consecutive passes without improvement that end the loop under early termination
STALL_PASSES = 2

# Remaining fraction of crossings that triggers the last-resort pass
LAST_RESORT_FRACTION = 0.5

# Separation boost used by the last-resort pass
LAST_RESORT_BOOST = 1.5

# =============================================================================

ControlPoints = List[Point]


@dataclass
class ResolutionStats:
    """
    Summary of an optimization run.

    Attributes:
        initial_crossings: Crossings before optimization.
        final_crossings: Crossings after optimization.
        initial_overlaps: Parallel overlaps before optimization.
        final_overlaps: Parallel overlaps after optimization.
        iterations: Detect/resolve passes performed.
        converged: True when the loop stopped before max_iterations.
        last_resort: True when the last-resort separation pass ran.
    """

    initial_crossings: int = 0
    final_crossings: int = 0
    initial_overlaps: int = 0
    final_overlaps: int = 0
    iterations: int = 0
    converged: bool = True
    last_resort: bool = False

    @property
    def reduction(self) -> float:
        """Fraction of the initial crossings removed (0 when there were none)."""
        if self.initial_crossings == 0:
            return 0.0
        return (self.initial_crossings - self.final_crossings) / self.initial_crossings


def classify_crossing(route1: Route, route2: Route) -> CrossingType:
    type1 = route1.metadata.flow_type
    type2 = route2.metadata.flow_type
    if type1 == FlowType.PRIMARY and type2 == FlowType.PRIMARY:
        return CrossingType.PRIMARY_PRIMARY
    if type1 == FlowType.PRIMARY or type2 == FlowType.PRIMARY:
        return CrossingType.PRIMARY_SECONDARY
    if type1 == FlowType.SECONDARY and type2 == FlowType.SECONDARY:
        return CrossingType.SECONDARY_SECONDARY
    return CrossingType.MIXED


def crossing_severity(route1: Route, route2: Route, t1: float, t2: float, angle: float) -> float:
    """
    Estimate how disruptive a crossing is, in [0, 1].

    Perpendicular crossings, crossings near both midpoints, crossings between
    routes of very different priority and crossings between flows of very
    different magnitude score higher.
    """
    severity = 0.5
    severity *= 0.5 + abs(math.sin(angle)) * 0.5

    position_factor = 1 - (abs(t1 - 0.5) + abs(t2 - 0.5)) / 2
    severity *= 0.7 + position_factor * 0.3

    priority_gap = abs(route1.metadata.priority - route2.metadata.priority)
    severity *= 0.8 + priority_gap * 0.2

    high = max(route1.value, route2.value)
    low = min(route1.value, route2.value)
    ratio = high / low if low > 0 else 1.0
    severity *= min(1 + math.log10(ratio) * 0.1, 1.2)
    return min(severity, 1.0)


def polyline_intersections(
    samples1: Sequence[Point], samples2: Sequence[Point]
) -> List[Tuple[Point, float, float, float]]:
    """
    All intersections between two polylines.

    Segment parameters are treated as half-open so that a hit exactly on a
    shared sample vertex is counted once.

    Returns:
        List of (point, t1, t2, angle) with t1/t2 as fractions of each
        polyline's length in samples.
    """
    hits = []
    n1 = len(samples1) - 1
    n2 = len(samples2) - 1
    for i in range(n1):
        a1, a2 = samples1[i], samples1[i + 1]
        for j in range(n2):
            b1, b2 = samples2[j], samples2[j + 1]
            found = segment_intersection(a1, a2, b1, b2)
            if found is None:
                continue
            point, t, u = found
            if (t == 1 and i < n1 - 1) or (u == 1 and j < n2 - 1):
                continue
            hits.append(
                (point, (i + t) / n1, (j + u) / n2, intersection_angle(a1, a2, b1, b2))
            )
    return hits


def min_separation(samples1: Sequence[Point], samples2: Sequence[Point]) -> float:
    """Smallest distance between any sample of one route and any of the other."""
    return min(distance(p, q) for p in samples1 for q in samples2)


def pair_key(route: Route) -> Tuple[int, int]:
    return (min(route.source, route.target), max(route.source, route.target))


class _RouteIndex:
    """Sampled polylines and bounding boxes of a working route set."""

    def __init__(self, routes: List[Route], samples: int):
        self.routes = routes
        self.samples = samples
        self.polylines = [sample_bezier(r.control_points, samples) for r in routes]
        self.separation = [
            sample_bezier(r.control_points, SEPARATION_SAMPLES) for r in routes
        ]
        self.boxes = [polyline_bbox(p) for p in self.polylines]

    def replace(self, index: int, route: Route) -> None:
        self.routes[index] = route
        self.polylines[index] = sample_bezier(route.control_points, self.samples)
        self.separation[index] = sample_bezier(route.control_points, SEPARATION_SAMPLES)
        self.boxes[index] = polyline_bbox(self.polylines[index])


class CrossingResolver:
    """
    Detects and reduces crossings between routes.

    The resolver never mutates the routes passed in; every public method that
    changes geometry returns a new list of cloned routes.
    """

    def __init__(
        self,
        config: RoutingConfig,
        seed: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the resolver.

        Args:
            config: Configuration snapshot.
            seed: Seed for the random nudge used when no other strategy
                applies. None (the default) seeds from system entropy, so
                that path is not reproducible unless a seed is given.
            rng: Explicit random source; overrides seed.
        """
        self.config = config
        self.rng = rng if rng is not None else random.Random(seed)

    @property
    def separation(self) -> float:
        return self.config.effective_separation

    # --- Detection ---

    def detect_crossings(self, routes: Sequence[Route]) -> List[Crossing]:
        """
        Find every intersection between routes that share no node.

        Returns:
            Crossings sorted by severity, highest first.
        """
        index = _RouteIndex(list(routes), self.config.crossing_samples)
        crossings = []
        for i in range(len(routes)):
            for j in range(i + 1, len(routes)):
                crossings.extend(self._pair_crossings(index, i, j))
        crossings.sort(key=lambda c: -c.severity)
        return crossings

    def detect_parallel_overlaps(self, routes: Sequence[Route]) -> List[Crossing]:
        """Find routes between the same node pair running closer than the separation."""
        index = _RouteIndex(list(routes), self.config.crossing_samples)
        groups: Dict[Tuple[int, int], List[int]] = defaultdict(list)
        for i, route in enumerate(routes):
            groups[pair_key(route)].append(i)

        overlaps = []
        for members in groups.values():
            for a in range(len(members)):
                for b in range(a + 1, len(members)):
                    overlap = self._pair_overlap(index, members[a], members[b])
                    if overlap is not None:
                        overlaps.append(overlap)
        overlaps.sort(key=lambda c: -c.severity)
        return overlaps

    def detect_conflicts(self, routes: Sequence[Route]) -> List[Crossing]:
        """Crossings and parallel overlaps together, by severity."""
        conflicts = self.detect_crossings(routes) + self.detect_parallel_overlaps(routes)
        conflicts.sort(key=lambda c: -c.severity)
        return conflicts

    def _pair_crossings(self, index: _RouteIndex, i: int, j: int) -> List[Crossing]:
        route1, route2 = index.routes[i], index.routes[j]
        if route1.shares_node_with(route2):
            return []
        if not bboxes_overlap(index.boxes[i], index.boxes[j]):
            return []
        crossing_type = classify_crossing(route1, route2)
        return [
            Crossing(
                route1=i,
                route2=j,
                point=point,
                severity=crossing_severity(route1, route2, t1, t2, angle),
                crossing_type=crossing_type,
                t1=t1,
                t2=t2,
                angle=angle,
            )
            for point, t1, t2, angle in polyline_intersections(
                index.polylines[i], index.polylines[j]
            )
        ]

    def _pair_overlap(self, index: _RouteIndex, i: int, j: int) -> Optional[Crossing]:
        threshold = self.separation
        if threshold <= 0:
            return None
        # Shared anchors are expected; only the interior has to keep apart
        gap = min_separation(index.separation[i][1:-1], index.separation[j][1:-1])
        if gap >= threshold:
            return None
        mid1 = index.separation[i][SEPARATION_SAMPLES // 2]
        mid2 = index.separation[j][SEPARATION_SAMPLES // 2]
        return Crossing(
            route1=i,
            route2=j,
            point=Point((mid1.x + mid2.x) / 2, (mid1.y + mid2.y) / 2),
            severity=1 - gap / threshold,
            crossing_type=CrossingType.PARALLEL_OVERLAP,
            t1=0.5,
            t2=0.5,
            angle=0.0,
        )

    def _conflicts_of(self, index: _RouteIndex, k: int) -> Tuple[int, int]:
        """(crossings, overlaps) involving route k."""
        crossings = 0
        overlaps = 0
        key = pair_key(index.routes[k])
        for j in range(len(index.routes)):
            if j == k:
                continue
            crossings += len(self._pair_crossings(index, k, j))
            if pair_key(index.routes[j]) == key and self._pair_overlap(index, k, j):
                overlaps += 1
        return crossings, overlaps

    # --- Resolution ---

    def resolve_conflicts(
        self, routes: Sequence[Route], conflicts: Optional[Sequence[Crossing]] = None
    ) -> List[Route]:
        """
        Apply one resolution pass.

        Conflicts are grouped by type and handled most severe first with the
        strategy for their type. When a crossing survives its strategy and
        smart avoidance is enabled, one of the two routes is detoured around
        the other route's endpoint.

        Args:
            routes: Routes to improve. They are not modified.
            conflicts: Conflicts detected on ``routes``; detected when None.

        Returns:
            New list of routes with no more crossings than the input.
        """
        working = [route.clone() for route in routes]
        if conflicts is None:
            conflicts = self.detect_conflicts(working)
        if not conflicts:
            return working

        index = _RouteIndex(working, self.config.crossing_samples)
        grouped: Dict[CrossingType, List[Crossing]] = defaultdict(list)
        for conflict in conflicts:
            grouped[conflict.crossing_type].append(conflict)

        for crossing_type in RESOLUTION_ORDER:
            group = sorted(grouped.get(crossing_type, []), key=lambda c: -c.severity)
            for conflict in group:
                self._resolve_one(index, conflict)

        return index.routes

    def _resolve_one(self, index: _RouteIndex, conflict: Crossing) -> None:
        i, j = conflict.route1, conflict.route2
        if conflict.crossing_type == CrossingType.PARALLEL_OVERLAP:
            if self._pair_overlap(index, i, j) is None:
                return
        elif not self._pair_crossings(index, i, j):
            return

        for target, label, points in self._strategy_candidates(index, conflict):
            if self._try_adjustment(index, target, points, label, conflict):
                break

        if (
            conflict.crossing_type != CrossingType.PARALLEL_OVERLAP
            and self.config.smart_avoidance
            and self._pair_crossings(index, i, j)
        ):
            self._try_detours(index, conflict)

    def _strategy_candidates(
        self, index: _RouteIndex, conflict: Crossing
    ) -> List[Tuple[int, str, ControlPoints]]:
        """Candidate (route index, strategy name, control points) adjustments."""
        i, j = conflict.route1, conflict.route2
        route1, route2 = index.routes[i], index.routes[j]
        ctype = conflict.crossing_type

        if ctype == CrossingType.PARALLEL_OVERLAP:
            shift = self.separation * 2 * 0.8
            if route1.metadata.priority >= route2.metadata.priority:
                return [(j, "parallel-separation", _shift_interior(route2, -shift, -shift))]
            return [(i, "parallel-separation", _shift_interior(route1, shift, shift))]

        if ctype == CrossingType.PRIMARY_PRIMARY:
            if route1.value > route2.value:
                return [(j, "layering", self._layered(route2, -1))]
            return [(i, "layering", self._layered(route1, 1))]

        if ctype == CrossingType.PRIMARY_SECONDARY:
            if route1.metadata.flow_type == FlowType.PRIMARY:
                return [self._avoid_crossing(j, route2, route1, conflict.t2, conflict)]
            return [self._avoid_crossing(i, route1, route2, conflict.t1, conflict)]

        if ctype == CrossingType.SECONDARY_SECONDARY and self.config.adaptive_curvature:
            if route1.metadata.priority > route2.metadata.priority:
                return [(j, "adaptive-curvature", self._adaptive(route2, conflict.t2))]
            return [(i, "adaptive-curvature", self._adaptive(route1, conflict.t1))]

        if route1.metadata.priority > route2.metadata.priority:
            return [self._avoid_crossing(j, route2, route1, conflict.t2, conflict)]
        return [self._avoid_crossing(i, route1, route2, conflict.t1, conflict)]

    def _try_adjustment(
        self,
        index: _RouteIndex,
        k: int,
        points: ControlPoints,
        label: str,
        conflict: Optional[Crossing],
        require_pair_cleared: bool = False,
    ) -> bool:
        """Apply points to route k if that does not add conflicts for it."""
        original = index.routes[k]
        before = self._conflicts_of(index, k)

        trial = original.clone()
        trial.path = build_path(points)
        index.replace(k, trial)
        after = self._conflicts_of(index, k)

        accepted = after[0] <= before[0] and after[1] <= before[1]
        if accepted and require_pair_cleared and conflict is not None:
            other = conflict.route2 if k == conflict.route1 else conflict.route1
            accepted = not self._pair_crossings(index, k, other)
        if not accepted:
            index.replace(k, original)
            return False

        if conflict is None:
            trial.metadata.conflicts_resolved.append(label)
        else:
            trial.metadata.conflicts_resolved.append(f"{label}:{conflict.crossing_type.value}")
        if conflict is not None and conflict.crossing_type != CrossingType.PARALLEL_OVERLAP:
            trial.metadata.avoidance_zones.append(
                AvoidanceZone(conflict.point, self.config.avoidance_radius)
            )
        logger.debug(
            "Applied %s to %s (crossings %d -> %d)", label, trial.id, before[0], after[0]
        )
        return True

    # --- Strategies ---

    def _layered(self, route: Route, layer: int) -> ControlPoints:
        """Raise (layer=1) or lower (layer=-1) a route, most at P2."""
        offset = self.config.avoidance_radius * 1.5 * self.config.avoidance_strength * layer
        # Interior weights 1 - |i - 2| / 2 for a four point curve
        return _shift_interior(route, offset * 0.5, offset)

    def _adaptive(self, route: Route, t: float) -> ControlPoints:
        increase = max(self.config.curvature * 0.3, self.config.curvature_step)
        direction = 1 if t > 0.5 else -1
        return _shift_interior(route, increase * direction, increase * direction * 0.8)

    def _avoid_crossing(
        self, k: int, route: Route, priority_route: Route, t: float, conflict: Crossing
    ) -> Tuple[int, str, ControlPoints]:
        """Pick a strategy for moving route k away from priority_route."""
        shallow = min(conflict.angle, math.pi - conflict.angle) < SHALLOW_ANGLE
        direction = -1 if conflict.point.y > 0.5 else 1

        if shallow:
            offset = self.separation * 3 * direction
            return k, "vertical-offset", _shift_interior(route, offset, offset)

        if 0.3 < t < 0.7:
            increase = self.config.curvature * 0.5 * direction
            return k, "curvature-increase", _shift_interior(route, increase, increase * 0.8)

        gap = abs(route.metadata.priority - priority_route.metadata.priority)
        if gap > PRIORITY_GAP:
            return k, "path-deviation", self._deviate(route, conflict.point)

        return k, "generic", self._random_nudge(route)

    def _deviate(self, route: Route, center: Point) -> ControlPoints:
        """Push interior control points radially out of a circle around center."""
        radius = self.config.avoidance_radius * 2 * self.config.avoidance_strength
        points = list(route.control_points)
        for i in (1, 2):
            point = points[i]
            if distance(point, center) < radius:
                angle = math.atan2(point.y - center.y, point.x - center.x)
                points[i] = Point(
                    center.x + math.cos(angle) * radius, center.y + math.sin(angle) * radius
                )
        return points

    def _random_nudge(self, route: Route) -> ControlPoints:
        """The only randomized adjustment; reproducible through the seed."""
        adjustment = self.separation * 2
        direction = 1 if self.rng.random() > 0.5 else -1
        first = adjustment * direction * (0.5 + self.rng.random() * 0.5)
        second = adjustment * direction * (0.5 + self.rng.random() * 0.5)
        return _shift_interior(route, first, second)

    # --- Detours ---

    def _try_detours(self, index: _RouteIndex, conflict: Crossing) -> bool:
        """Wrap one route around an endpoint of the other; keep the first that clears."""
        i, j = conflict.route1, conflict.route2
        for k, other in ((i, j), (j, i)):
            for scale in DETOUR_SCALES:
                for label, points in detour_candidates(index.routes[k], index.routes[other], scale):
                    if self._try_adjustment(
                        index, k, points, label, conflict, require_pair_cleared=True
                    ):
                        return True
        return False

    # --- Optimization loop ---

    def optimize(
        self, routes: Sequence[Route], should_stop: Optional[Callable[[], bool]] = None
    ) -> Tuple[List[Route], ResolutionStats]:
        """
        Run detect/resolve passes until crossings stop improving.

        Stops when no conflicts remain, after max_iterations passes, or when
        the reduction since the first pass, as a fraction of the initial
        conflicts, is below the convergence threshold. With early
        termination the loop also ends after STALL_PASSES consecutive passes
        that do not lower the count. If more than half of the
        initial crossings remain afterwards and adaptive separation is on, a
        last-resort pass pushes the routes still crossing apart.

        Args:
            routes: Routes to optimize; not modified.
            should_stop: Optional callable polled between passes.

        Returns:
            Tuple of (optimized routes, stats).
        """
        current = [route.clone() for route in routes]
        conflicts = self.detect_conflicts(current)
        crossings = _count_crossings(conflicts)
        stats = ResolutionStats(
            initial_crossings=crossings,
            final_crossings=crossings,
            initial_overlaps=len(conflicts) - crossings,
            final_overlaps=len(conflicts) - crossings,
        )
        if not conflicts:
            return current, stats

        initial_total = len(conflicts)
        previous_total = initial_total
        stalled = 0
        stats.converged = False
        for _ in range(self.config.max_iterations):
            if should_stop is not None and should_stop():
                logger.debug("Crossing optimization stopped early")
                break
            current = self.resolve_conflicts(current, conflicts)
            conflicts = self.detect_conflicts(current)
            stats.iterations += 1

            total = len(conflicts)
            if total == 0:
                stats.converged = True
                break
            # Reduction is measured against the count before the first pass
            if (initial_total - total) / initial_total < self.config.convergence_threshold:
                stats.converged = True
                break
            stalled = stalled + 1 if total >= previous_total else 0
            if self.config.early_termination and stalled >= STALL_PASSES:
                stats.converged = True
                break
            previous_total = total

        remaining = [c for c in conflicts if c.crossing_type != CrossingType.PARALLEL_OVERLAP]
        if (
            self.config.adaptive_separation
            and remaining
            and len(remaining) > stats.initial_crossings * LAST_RESORT_FRACTION
        ):
            current = self.apply_last_resort(current, remaining)
            stats.last_resort = True
            conflicts = self.detect_conflicts(current)

        stats.final_crossings = _count_crossings(conflicts)
        stats.final_overlaps = len(conflicts) - stats.final_crossings
        logger.debug(
            "Crossing optimization: %d -> %d crossings in %d passes",
            stats.initial_crossings,
            stats.final_crossings,
            stats.iterations,
        )
        return current, stats

    def apply_last_resort(
        self, routes: Sequence[Route], crossings: Sequence[Crossing]
    ) -> List[Route]:
        """
        Spread routes still involved in crossings with a boosted separation.

        Routes alternate direction by index and move further the later they
        come. The boost only applies to this pass.
        """
        separation = self.separation * LAST_RESORT_BOOST
        involved = sorted({c.route1 for c in crossings} | {c.route2 for c in crossings})
        index = _RouteIndex([route.clone() for route in routes], self.config.crossing_samples)

        for k in involved:
            direction = 1 if k % 2 == 0 else -1
            shift = direction * separation * 3 * (1 + k * 0.1)
            self._try_adjustment(
                index, k, _shift_interior(index.routes[k], shift, shift), "forced-separation", None
            )
        return index.routes


def detour_candidates(
    route: Route, other: Route, scale: float = 1.0
) -> List[Tuple[str, ControlPoints]]:
    """
    Control points that wrap route around one of other's endpoints.

    Around other's target T the route first heads to the side of T that its
    own start lies on, passes beyond T, then turns back to its end. The
    mirror image wraps around other's source. A candidate exists only when
    the route's two ends lie on opposite sides of that endpoint.
    """
    r0, _, _, r3 = route.control_points
    o0, _, _, o3 = other.control_points
    dx = r3.x - r0.x
    candidates = []

    side = _sign(r0.y - o0.y)
    gap = abs(r3.y - o3.y)
    if side and side * (r3.y - o3.y) < 0 and gap > 0:
        gap *= scale
        candidates.append(
            (
                "detour-target",
                [
                    r0,
                    Point(r0.x + 0.5 * dx, o3.y + side * DETOUR_FAR * gap),
                    Point(o3.x + 0.5 * dx, o3.y + side * DETOUR_NEAR * gap),
                    r3,
                ],
            )
        )

    side = _sign(r3.y - o3.y)
    gap = abs(r0.y - o0.y)
    if side and side * (r0.y - o0.y) < 0 and gap > 0:
        gap *= scale
        candidates.append(
            (
                "detour-source",
                [
                    r0,
                    Point(o0.x - 0.5 * dx, o0.y + side * DETOUR_NEAR * gap),
                    Point(r3.x - 0.5 * dx, o0.y + side * DETOUR_FAR * gap),
                    r3,
                ],
            )
        )
    return candidates


def _shift_interior(route: Route, dy1: float, dy2: float) -> ControlPoints:
    p0, p1, p2, p3 = route.control_points
    return [p0, Point(p1.x, p1.y + dy1), Point(p2.x, p2.y + dy2), p3]


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def _count_crossings(conflicts: Sequence[Crossing]) -> int:
    return sum(1 for c in conflicts if c.crossing_type != CrossingType.PARALLEL_OVERLAP)


def count_crossings(routes: Sequence[Route], config: Optional[RoutingConfig] = None) -> int:
    """Number of crossings in a route set."""
    resolver = CrossingResolver(config or RoutingConfig(), seed=0)
    return len(resolver.detect_crossings(routes))
