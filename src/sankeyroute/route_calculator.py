"""
Route calculation for Sankey links.

Computes one cubic Bezier route per link:
- Links between the same pair of nodes are grouped and fanned out with a
  symmetric vertical offset pattern
- Anchors sit on the right edge of the source box and the left edge of the
  target box
- Interior control points carry a curvature derived from distance, the
  endpoint node types and the selected algorithm
- Curves that pass through other nodes' boxes are pushed clear of them
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import RoutingConfig
from .geometry import curvature_of, distance, sample_bezier, svg_path
from .hierarchy import HierarchyMap
from .models import (
    AvoidanceZone,
    FlowType,
    InvalidRecordError,
    Link,
    LinkLike,
    MultiLinkInfo,
    Node,
    NodeBounds,
    NodeInfo,
    NodeLike,
    NodeType,
    Point,
    Route,
    RoutePath,
    RoutingMetadata,
    coerce_links,
    coerce_nodes,
)

logger = logging.getLogger(__name__)

# =============================================================================
# ROUTING CONSTANTS
# =============================================================================

# Curvature scale per algorithm
ALGORITHM_CURVATURE = {
    "bezier-optimized": 1.0,
    "spline-smooth": 1.3,
    "arc-minimal": 0.6,
    "simple-curve": 1.0,
}

# Fraction of Δx used for the horizontal reach of P1 and P2
CONTROL_REACH = 0.4

# Fraction of node height used to tilt anchors toward the link direction
ANCHOR_TILT = 0.3

# Offset pattern per group size for parallel links
CURVATURE_PATTERNS: Dict[int, Tuple[float, ...]] = {
    2: (0.5, -0.5),
    3: (0.7, 0.0, -0.7),
    4: (0.8, 0.3, -0.3, -0.8),
    5: (1.0, 0.5, 0.0, -0.5, -1.0),
}

# --- Node collision resolution ---

# Padding added around every node box
COLLISION_MARGIN = 0.01

# Upper bound on push-away passes per curve
MAX_COLLISION_PASSES = 100

# Fraction of the clearance applied to P1/P2 per pass
COLLISION_PUSH = 0.8

# --- Output ---

# Points in the sampled polyline handed to renderers
POLYLINE_SAMPLES = 50

# Avoidance zones are taken at every third of these samples
AVOIDANCE_SAMPLES = 10

# Flow value at which the value component of a route priority saturates
PRIORITY_VALUE_SCALE = 3000.0

# =============================================================================


class RouteCalculationError(Exception):
    """Raised when a link cannot be routed (bad references or geometry)."""


@dataclass
class LinkGroup:
    """Links sharing an unordered node pair, sorted by value descending."""

    key: Tuple[int, int]
    link_indices: List[int]
    total_value: float = 0.0
    max_value: float = 0.0


def curvature_pattern(group_size: int) -> Tuple[float, ...]:
    """Symmetric, zero-centred offset pattern for a group of parallel links."""
    if group_size in CURVATURE_PATTERNS:
        return CURVATURE_PATTERNS[group_size]
    if group_size <= 1:
        return (0.0,)
    center = (group_size - 1) / 2
    return tuple((center - i) / center * 0.8 for i in range(group_size))


def flow_type_curvature(source_type: NodeType, target_type: NodeType) -> float:
    """Curvature multiplier for a pair of endpoint node types."""
    if source_type == NodeType.SOURCE and target_type == NodeType.TRANSFORMATION:
        return 0.7
    if source_type == NodeType.TRANSFORMATION and target_type == NodeType.DISTRIBUTION:
        return 1.2
    if source_type == NodeType.DISTRIBUTION and target_type == NodeType.CONSUMPTION:
        return 1.0
    if target_type == NodeType.TRANSFORMATION:
        return 0.9
    return 1.0


def route_flow_type(source: NodeInfo, target: NodeInfo) -> FlowType:
    if source.node_type == NodeType.SOURCE:
        return FlowType.PRIMARY
    if source.node_type == NodeType.TRANSFORMATION:
        return FlowType.SECONDARY
    if target.node_type == NodeType.CONSUMPTION:
        return FlowType.DISTRIBUTION
    return FlowType.TRANSFORMATION


def route_priority(
    source: NodeInfo, target: NodeInfo, value: float, config: RoutingConfig
) -> float:
    """Priority from endpoint types, scaled up for larger flows, capped at 1."""
    priority = 0.5
    if source.node_type == NodeType.SOURCE and target.node_type == NodeType.TRANSFORMATION:
        priority = config.priority_primary
    elif (
        source.node_type == NodeType.TRANSFORMATION
        and target.node_type == NodeType.DISTRIBUTION
    ):
        priority = config.priority_secondary
    elif (
        source.node_type == NodeType.DISTRIBUTION
        and target.node_type == NodeType.CONSUMPTION
    ):
        priority = config.priority_distribution
    elif target.node_type == NodeType.TRANSFORMATION:
        priority = config.priority_transformation

    if value > 0:
        value_factor = min(value / PRIORITY_VALUE_SCALE, 1.0)
        priority *= 0.7 + value_factor * 0.3
    return min(priority, 1.0)


def build_path(control_points: Sequence[Point]) -> RoutePath:
    """Derive curvature, polyline and SVG path for a set of control points."""
    points = list(control_points)
    return RoutePath(
        control_points=points,
        curvature=curvature_of(points),
        points=sample_bezier(points, POLYLINE_SAMPLES),
        svg_path=svg_path(points),
    )


def group_links(
    links: Sequence[Link], indices: Optional[Sequence[int]] = None
) -> Dict[Tuple[int, int], LinkGroup]:
    """
    Group links by unordered node pair; each group sorted by value desc.

    Args:
        links: All links.
        indices: Subset of link indices to group. Defaults to every link.
    """
    groups: Dict[Tuple[int, int], LinkGroup] = {}
    if indices is None:
        indices = range(len(links))
    for index in indices:
        link = links[index]
        key = (min(link.source, link.target), max(link.source, link.target))
        group = groups.get(key)
        if group is None:
            group = groups[key] = LinkGroup(key, [])
        group.link_indices.append(index)
        group.total_value += link.value
        group.max_value = max(group.max_value, link.value)

    for group in groups.values():
        # Stable sort keeps input order among equal values
        group.link_indices.sort(key=lambda i: -links[i].value)
    return groups


def straight_route(link: Link, index: int, nodes: Sequence[Node]) -> Route:
    """
    Default straight-line route between two node centres.

    The interior control points sit at one and two thirds of the chord.
    """
    start = Point(nodes[link.source].x, nodes[link.source].y)
    end = Point(nodes[link.target].x, nodes[link.target].y)
    dx = end.x - start.x
    dy = end.y - start.y
    control_points = [
        start,
        Point(start.x + dx / 3, start.y + dy / 3),
        Point(start.x + 2 * dx / 3, start.y + 2 * dy / 3),
        end,
    ]
    return Route(
        id=f"route_{link.source}_{link.target}_{index}",
        source=link.source,
        target=link.target,
        value=link.value,
        color=link.color,
        path=build_path(control_points),
        metadata=RoutingMetadata(priority=0.5, flow_type=FlowType.DEFAULT, algorithm="default"),
    )


class RouteCalculator:
    """
    Computes initial routes from links, node positions and a hierarchy map.

    A calculator is bound to one configuration snapshot.
    """

    def __init__(self, config: RoutingConfig, should_stop: Optional[Callable[[], bool]] = None):
        """
        Initialize the calculator.

        Args:
            config: Configuration snapshot used for every route.
            should_stop: Optional callable polled between links; when it
                returns True the calculation is abandoned.
        """
        self.config = config
        self.should_stop = should_stop

    def calculate_optimized_routes(
        self,
        links: Sequence[LinkLike],
        nodes: Sequence[NodeLike],
        hierarchy: HierarchyMap,
        algorithm: Optional[str] = None,
        skip_invalid: bool = False,
    ) -> List[Route]:
        """
        Compute one route per link.

        Args:
            links: Link records or dicts.
            nodes: Node records or dicts.
            hierarchy: Map produced by NodeHierarchyMapper.map_hierarchy.
            algorithm: Override for config.routing_algorithm.
            skip_invalid: Log and skip links with missing nodes or bad values
                instead of raising. Route ids keep the original link index.

        Returns:
            Routes in link order.

        Raises:
            RouteCalculationError: If a link references a missing node or
                the geometry is degenerate.
            InvalidRecordError: If a link or node record cannot be read.
        """
        link_list = coerce_links(list(links))
        node_list = coerce_nodes(list(nodes))
        algorithm = algorithm or self.config.routing_algorithm
        if algorithm not in ALGORITHM_CURVATURE:
            raise RouteCalculationError(f"Unknown routing algorithm '{algorithm}'")

        valid = []
        for index, link in enumerate(link_list):
            try:
                self._check_link(index, link, node_list, hierarchy)
            except RouteCalculationError as exc:
                if not skip_invalid:
                    raise
                logger.warning("Skipping invalid link: %s", exc)
                continue
            valid.append(index)

        groups = group_links(link_list, valid)
        routes = []
        for index in valid:
            link = link_list[index]
            if self.should_stop is not None and self.should_stop():
                raise RouteCalculationError("Route calculation cancelled")
            key = (min(link.source, link.target), max(link.source, link.target))
            multi = self._multi_link_info(groups[key], index)
            routes.append(self._calculate_route(link, index, hierarchy, multi, algorithm))

        logger.debug(
            "Calculated %d routes with %s (%d multi-link groups)",
            len(routes),
            algorithm,
            sum(1 for g in groups.values() if len(g.link_indices) > 1),
        )
        return routes

    # --- Validation ---

    @staticmethod
    def _check_link(
        index: int, link: Link, nodes: List[Node], hierarchy: HierarchyMap
    ) -> None:
        for end in (link.source, link.target):
            if not 0 <= end < len(nodes) or end not in hierarchy:
                raise RouteCalculationError(
                    f"Link {index} references missing node {end}"
                )
        if not math.isfinite(link.value):
            raise RouteCalculationError(f"Link {index} has non-finite value {link.value}")

    # --- Multi-link groups ---

    def _multi_link_info(self, group: LinkGroup, link_index: int) -> Optional[MultiLinkInfo]:
        size = len(group.link_indices)
        if size <= 1:
            return None
        return MultiLinkInfo(
            group_key=group.key,
            group_size=size,
            position=group.link_indices.index(link_index),
        )

    def _multi_link_offset(self, multi: Optional[MultiLinkInfo], node_height: float) -> float:
        """Vertical anchor offset; the offsets of one group sum to zero."""
        if multi is None:
            return 0.0
        pattern = curvature_pattern(multi.group_size)
        spacing = max(self.config.effective_separation * 2, node_height * 0.1)
        spread = max(1.0, (multi.group_size - 1) / 2)
        return pattern[multi.position] * spacing * spread

    # --- Route geometry ---

    def _calculate_route(
        self,
        link: Link,
        index: int,
        hierarchy: HierarchyMap,
        multi: Optional[MultiLinkInfo],
        algorithm: str,
    ) -> Route:
        source = hierarchy[link.source]
        target = hierarchy[link.target]

        offset = self._multi_link_offset(multi, source.bounds.height)
        if multi is not None:
            multi.offset = offset
        start, end = self._connection_points(source, target, offset)

        curvature = self.config.base_curvature * ALGORITHM_CURVATURE[algorithm]
        control_points = self._control_points(
            start, end, source, target, index, multi, curvature, algorithm
        )

        passes = 0
        if self.config.node_avoidance and algorithm != "simple-curve":
            control_points, passes = self.resolve_node_collisions(
                control_points, hierarchy, exclude=(link.source, link.target)
            )

        for point in control_points:
            if not (math.isfinite(point.x) and math.isfinite(point.y)):
                raise RouteCalculationError(f"Link {index} produced degenerate geometry")

        return Route(
            id=f"route_{link.source}_{link.target}_{index}",
            source=link.source,
            target=link.target,
            value=link.value,
            color=link.color,
            path=build_path(control_points),
            metadata=RoutingMetadata(
                priority=route_priority(source, target, link.value, self.config),
                flow_type=route_flow_type(source, target),
                algorithm=algorithm,
                avoidance_zones=self._avoidance_zones(control_points),
                multi_link=multi,
                collision_iterations=passes,
            ),
        )

    @staticmethod
    def _connection_points(
        source: NodeInfo, target: NodeInfo, offset: float
    ) -> Tuple[Point, Point]:
        dx = target.position.x - source.position.x
        dy = target.position.y - source.position.y
        tilt = math.sin(math.atan2(dy, dx))
        start = Point(
            source.bounds.right,
            source.position.y + tilt * source.bounds.height * ANCHOR_TILT + offset,
        )
        end = Point(
            target.bounds.left,
            target.position.y - tilt * target.bounds.height * ANCHOR_TILT + offset,
        )
        return start, end

    def _control_points(
        self,
        start: Point,
        end: Point,
        source: NodeInfo,
        target: NodeInfo,
        link_index: int,
        multi: Optional[MultiLinkInfo],
        curvature: float,
        algorithm: str,
    ) -> List[Point]:
        dx = end.x - start.x
        dist = distance(start, end)

        bend = curvature * min(dist * 2, 1.5)
        bend *= flow_type_curvature(source.node_type, target.node_type)

        vertical, horizontal, adjustment = 0.0, 0.0, 0.0
        if multi is not None and algorithm != "simple-curve":
            vertical, horizontal, adjustment = self._multi_link_variation(multi, dist)

        # Small per-link wobble so unrelated links with equal geometry differ
        link_variation = (link_index % 3 - 1) * 0.05
        vertical_offset = link_variation * dist + vertical
        reach = dx * (CONTROL_REACH + horizontal)

        return [
            start,
            Point(start.x + reach, start.y + bend * 0.5 + vertical_offset + adjustment),
            Point(end.x - reach, end.y - bend * 0.5 + vertical_offset + adjustment * 0.8),
            end,
        ]

    def _multi_link_variation(
        self, multi: MultiLinkInfo, dist: float
    ) -> Tuple[float, float, float]:
        """(vertical, horizontal, curvature adjustment) for a grouped link."""
        size = multi.group_size
        position = multi.position
        pattern = curvature_pattern(size)
        vertical = pattern[position] * dist * 0.1
        horizontal = (position - (size - 1) / 2) * 0.05

        max_center_distance = size // 2
        adjustment = 0.0
        if max_center_distance:
            factor = abs(position - (size - 1) / 2) / max_center_distance
            direction = 1 if position % 2 == 0 else -1
            adjustment = self.config.base_curvature * 0.3 * factor * direction * dist * 0.1
        return vertical, horizontal, adjustment

    def _avoidance_zones(self, control_points: Sequence[Point]) -> List[AvoidanceZone]:
        samples = sample_bezier(control_points, AVOIDANCE_SAMPLES)
        return [
            AvoidanceZone(point, self.config.avoidance_radius)
            for i, point in enumerate(samples)
            if i % 3 == 0
        ]

    # --- Node collisions ---

    def resolve_node_collisions(
        self,
        control_points: Sequence[Point],
        hierarchy: HierarchyMap,
        exclude: Tuple[int, ...] = (),
    ) -> Tuple[List[Point], int]:
        """
        Push a curve's interior control points clear of node boxes.

        Args:
            control_points: Initial P0..P3.
            hierarchy: Node boxes to avoid.
            exclude: Node indices the curve may touch (its own endpoints).

        Returns:
            Tuple of (adjusted control points, passes used). When the pass
            limit is reached a warning is logged and the best effort curve
            is returned.
        """
        points = list(control_points)
        boxes = [
            info.bounds.expanded(COLLISION_MARGIN)
            for index, info in hierarchy.items()
            if index not in exclude
        ]
        samples_count = self.config.collision_samples

        passes = 0
        while passes < MAX_COLLISION_PASSES:
            samples = sample_bezier(points, samples_count)
            collided = False
            for box in boxes:
                hits = [
                    (i / samples_count, p) for i, p in enumerate(samples) if box.contains(p)
                ]
                if hits:
                    collided = True
                    points = self._push_away(points, box, hits)
            if not collided:
                return points, passes
            passes += 1

        logger.warning(
            "Node collision resolution hit the %d pass limit", MAX_COLLISION_PASSES
        )
        return points, passes

    @staticmethod
    def _push_away(
        points: List[Point], box: NodeBounds, hits: List[Tuple[float, Point]]
    ) -> List[Point]:
        _, critical = min(hits, key=lambda hit: abs(hit[0] - 0.5))
        direction = 1 if critical.y > box.center.y else -1
        # box is already margin-expanded, so its height includes 2 * margin
        shift = box.height * direction * COLLISION_PUSH
        p0, p1, p2, p3 = points
        return [p0, Point(p1.x, p1.y + shift), Point(p2.x, p2.y + shift), p3]


def default_routes(links: Sequence[LinkLike], nodes: Sequence[NodeLike]) -> List[Route]:
    """
    Straight routes for every readable link whose endpoints exist.

    Unreadable link records, links with dangling references and links
    touching an unreadable node are skipped with a warning. Route ids keep
    the original link index.
    """
    link_list = _read_records(links, Link, "link")
    node_list = _read_records(nodes, Node, "node")
    routes = []
    for index, link in enumerate(link_list):
        if link is None:
            continue
        if not (0 <= link.source < len(node_list) and 0 <= link.target < len(node_list)):
            logger.warning("Skipping link %d with missing node reference", index)
            continue
        if node_list[link.source] is None or node_list[link.target] is None:
            logger.warning("Skipping link %d attached to an unreadable node", index)
            continue
        routes.append(straight_route(link, index, node_list))
    return routes


def _read_records(records, record_type, kind):
    """Coerce records one by one, with None in place of unreadable ones."""
    result = []
    for index, record in enumerate(records):
        if isinstance(record, record_type):
            result.append(record)
            continue
        try:
            result.append(record_type.from_dict(record))
        except InvalidRecordError as exc:
            logger.warning("Skipping unreadable %s %d: %s", kind, index, exc)
            result.append(None)
    return result
