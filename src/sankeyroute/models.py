"""
Data models for Sankey link routing.

This module contains the enums and dataclasses shared by every stage of the
routing pipeline. Input records describe what the host diagram supplies
(nodes with precomputed positions and links with flow values); the output
records describe what the engine produces for a renderer.

Classes:
    NodeType: Structural role of a node in the flow hierarchy.
    FlowType: Classification of a single flow/link.
    CrossingType: Classification of a detected conflict between two routes.
    Node, Link: Input records accepted from the host diagram.
    InvalidRecordError: Raised when a node or link record cannot be read.
    Point, NodeBounds: Geometry primitives in normalized [0, 1] space.
    FlowInfo, NodeInfo: Per-node summary produced by the hierarchy mapper.
    RoutePath, RoutingMetadata, MultiLinkInfo, Route: Computed link routes.
    Crossing: A transient conflict record produced by the crossing resolver.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union


class NodeType(Enum):
    """Structural role of a node in the flow hierarchy."""

    SOURCE = "source"
    TRANSFORMATION = "transformation"
    DISTRIBUTION = "distribution"
    CONSUMPTION = "consumption"
    HUB = "hub"


class FlowType(Enum):
    """Classification of a flow, used to prioritize routing decisions."""

    PRIMARY = "primary"
    SECONDARY = "secondary"
    TRANSFORMATION = "transformation"
    DISTRIBUTION = "distribution"
    DEFAULT = "default"


class CrossingType(Enum):
    """Classification of a conflict between two routes."""

    PRIMARY_PRIMARY = "primary-primary"
    PRIMARY_SECONDARY = "primary-secondary"
    SECONDARY_SECONDARY = "secondary-secondary"
    MIXED = "mixed"
    PARALLEL_OVERLAP = "parallel-overlap"


# =============================================================================
# Input records
# =============================================================================


class InvalidRecordError(ValueError):
    """A node or link record is missing a field or holds an unreadable value."""


@dataclass
class Node:
    """
    A diagram node with a position computed by an external layout stage.

    Attributes:
        name: Display name, possibly carrying markup or a value suffix.
        x: Horizontal position in [0, 1].
        y: Vertical position in [0, 1].
        value: Optional node magnitude used to scale its bounding box.
        customdata: Optional free-form text (may embed a "<n> PJ" value).
    """

    name: str
    x: float
    y: float
    value: Optional[float] = None
    customdata: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        """
        Build a node from a plain dict.

        Raises:
            InvalidRecordError: If the position is not numeric or data is not a mapping.
        """
        try:
            value = data.get("value")
            customdata = data.get("customdata")
            return cls(
                name=str(data.get("name", "")),
                x=float(data.get("x", 0.0)),
                y=float(data.get("y", 0.0)),
                value=float(value) if isinstance(value, (int, float)) else None,
                customdata=str(customdata) if customdata is not None else None,
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise InvalidRecordError(f"Unreadable node record {data!r}: {e}") from e


@dataclass
class Link:
    """
    A flow between two nodes.

    Attributes:
        source: Index of the source node.
        target: Index of the target node.
        value: Flow magnitude.
        color: Renderer color hint, passed through untouched.
        customdata: Optional free-form text (may embed a "<n> PJ" value).
    """

    source: int
    target: int
    value: float
    color: Optional[str] = None
    customdata: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Link":
        """
        Build a link from a plain dict.

        Raises:
            InvalidRecordError: If an endpoint is missing or a field is not numeric.
        """
        try:
            customdata = data.get("customdata")
            return cls(
                source=int(data["source"]),
                target=int(data["target"]),
                value=float(data.get("value", 0.0)),
                color=data.get("color"),
                customdata=str(customdata) if customdata is not None else None,
            )
        except KeyError as e:
            raise InvalidRecordError(f"Link record {data!r} is missing {e}") from e
        except (AttributeError, TypeError, ValueError) as e:
            raise InvalidRecordError(f"Unreadable link record {data!r}: {e}") from e


NodeLike = Union[Node, Dict[str, Any]]
LinkLike = Union[Link, Dict[str, Any]]


def coerce_nodes(nodes: List[NodeLike]) -> List[Node]:
    """Accept a mix of Node records and plain dicts."""
    return [n if isinstance(n, Node) else Node.from_dict(n) for n in nodes]


def coerce_links(links: List[LinkLike]) -> List[Link]:
    """Accept a mix of Link records and plain dicts."""
    return [lk if isinstance(lk, Link) else Link.from_dict(lk) for lk in links]


# =============================================================================
# Geometry primitives
# =============================================================================


@dataclass(frozen=True)
class Point:
    """A point in normalized diagram space."""

    x: float
    y: float

    def as_tuple(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class NodeBounds:
    """
    Axis-aligned bounding box of a node.

    Attributes:
        x: Left edge.
        y: Top edge.
        width: Box width.
        height: Box height.
    """

    x: float
    y: float
    width: float
    height: float

    @property
    def left(self) -> float:
        return self.x

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def top(self) -> float:
        return self.y

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> Point:
        return Point(self.x + self.width / 2, self.y + self.height / 2)

    def expanded(self, margin: float) -> "NodeBounds":
        """Return a copy grown by margin on every side."""
        return NodeBounds(
            self.x - margin,
            self.y - margin,
            self.width + 2 * margin,
            self.height + 2 * margin,
        )

    def contains(self, point: Point) -> bool:
        return self.left <= point.x <= self.right and self.top <= point.y <= self.bottom


# =============================================================================
# Hierarchy records
# =============================================================================


@dataclass(frozen=True)
class FlowInfo:
    """
    One incoming or outgoing flow of a node.

    Attributes:
        node: Index of the node on the other end of the flow.
        value: Flow magnitude.
        flow_type: Classified flow type.
        priority: Priority score in [0, 1].
    """

    node: int
    value: float
    flow_type: FlowType
    priority: float


@dataclass(frozen=True)
class Centrality:
    """Centrality scores of a node, each in [0, 1]."""

    degree: float = 0.0
    flow: float = 0.0
    betweenness: float = 0.0
    overall: float = 0.0


@dataclass(frozen=True)
class NodeInfo:
    """
    Structural and statistical summary of a node.

    Produced once per hierarchy mapping and never modified afterwards.

    Attributes:
        index: Position of the node in the input node list.
        name: Original display name.
        clean_name: Name with markup and value suffix removed.
        node_type: Classified structural role.
        level: Hierarchy level in [0, 10].
        column: Coarse column bucket derived from x.
        position: Node position.
        bounds: Node bounding box.
        parents: Indices of nodes flowing into this node.
        children: Indices of nodes this node flows into.
        incoming: Incoming flows.
        outgoing: Outgoing flows.
        energy_type: Energy carrier tag, or "unknown".
        in_degree: Number of incoming links.
        out_degree: Number of outgoing links.
        total_flow: max(sum of incoming, sum of outgoing).
        centrality: Centrality scores.
        bottleneck_score: Mean of overall centrality and connectivity ratio.
        is_bottleneck: True when bottleneck_score exceeds the threshold.
        groups: Grouping tags such as "type_source" or "column_2".
    """

    index: int
    name: str
    clean_name: str
    node_type: NodeType
    level: int
    column: int
    position: Point
    bounds: NodeBounds
    parents: FrozenSet[int] = frozenset()
    children: FrozenSet[int] = frozenset()
    incoming: Tuple[FlowInfo, ...] = ()
    outgoing: Tuple[FlowInfo, ...] = ()
    energy_type: str = "unknown"
    in_degree: int = 0
    out_degree: int = 0
    total_flow: float = 0.0
    centrality: Centrality = Centrality()
    bottleneck_score: float = 0.0
    is_bottleneck: bool = False
    groups: Tuple[str, ...] = ()


# =============================================================================
# Route records
# =============================================================================


@dataclass
class RoutePath:
    """
    Geometric description of a route.

    Attributes:
        control_points: Exactly four points P0..P3 of the cubic Bezier.
        curvature: Max control-point distance from the chord over chord length.
        points: Sampled polyline along the curve.
        svg_path: SVG path command string ("M ... C ...").
    """

    control_points: List[Point]
    curvature: float = 0.0
    points: List[Point] = field(default_factory=list)
    svg_path: str = ""


@dataclass
class MultiLinkInfo:
    """
    Position of a route within a group of parallel links.

    Attributes:
        group_key: Unordered node pair shared by the group.
        group_size: Number of links in the group.
        position: Index of this link within the value-sorted group.
        offset: Vertical offset applied to this link.
    """

    group_key: Tuple[int, int]
    group_size: int = 1
    position: int = 0
    offset: float = 0.0


@dataclass
class AvoidanceZone:
    """A circular zone around a sampled curve point."""

    center: Point
    radius: float


@dataclass
class RoutingMetadata:
    """
    Routing decisions attached to a route.

    Attributes:
        priority: Priority in [0, 1]; higher priority routes move less.
        flow_type: Flow type derived from the endpoint node types.
        algorithm: Routing algorithm that produced the route.
        avoidance_zones: Zones other routes should keep clear of.
        conflicts_resolved: Descriptions of adjustments applied to the route.
        multi_link: Group information when the route has parallel siblings.
        collision_iterations: Node-collision passes spent on the route.
    """

    priority: float = 0.5
    flow_type: FlowType = FlowType.DEFAULT
    algorithm: str = "default"
    avoidance_zones: List[AvoidanceZone] = field(default_factory=list)
    conflicts_resolved: List[str] = field(default_factory=list)
    multi_link: Optional[MultiLinkInfo] = None
    collision_iterations: int = 0


@dataclass
class Route:
    """
    A computed route for one link.

    Attributes:
        id: Stable identifier "route_<source>_<target>_<link index>".
        source: Source node index.
        target: Target node index.
        value: Flow magnitude.
        color: Renderer color hint.
        path: Route geometry.
        metadata: Routing decisions.
    """

    id: str
    source: int
    target: int
    value: float
    path: RoutePath
    color: Optional[str] = None
    metadata: RoutingMetadata = field(default_factory=RoutingMetadata)

    @property
    def control_points(self) -> List[Point]:
        return self.path.control_points

    def shares_node_with(self, other: "Route") -> bool:
        return bool({self.source, self.target} & {other.source, other.target})

    def clone(self) -> "Route":
        """Return an independent copy that can be adjusted freely."""
        meta = self.metadata
        multi = meta.multi_link
        return Route(
            id=self.id,
            source=self.source,
            target=self.target,
            value=self.value,
            color=self.color,
            path=RoutePath(
                control_points=list(self.path.control_points),
                curvature=self.path.curvature,
                points=list(self.path.points),
                svg_path=self.path.svg_path,
            ),
            metadata=RoutingMetadata(
                priority=meta.priority,
                flow_type=meta.flow_type,
                algorithm=meta.algorithm,
                avoidance_zones=[
                    AvoidanceZone(z.center, z.radius) for z in meta.avoidance_zones
                ],
                conflicts_resolved=list(meta.conflicts_resolved),
                multi_link=(
                    MultiLinkInfo(
                        multi.group_key, multi.group_size, multi.position, multi.offset
                    )
                    if multi is not None
                    else None
                ),
                collision_iterations=meta.collision_iterations,
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data form for hosts that serialize routes."""
        meta = self.metadata
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "value": self.value,
            "color": self.color,
            "path": {
                "control_points": [p.as_tuple() for p in self.path.control_points],
                "curvature": self.path.curvature,
                "points": [p.as_tuple() for p in self.path.points],
                "svg_path": self.path.svg_path,
            },
            "metadata": {
                "priority": meta.priority,
                "flow_type": meta.flow_type.value,
                "algorithm": meta.algorithm,
                "conflicts_resolved": list(meta.conflicts_resolved),
                "multi_link": (
                    {
                        "group_key": list(meta.multi_link.group_key),
                        "group_size": meta.multi_link.group_size,
                        "position": meta.multi_link.position,
                        "offset": meta.multi_link.offset,
                    }
                    if meta.multi_link is not None
                    else None
                ),
            },
        }


@dataclass
class Crossing:
    """
    A conflict between two routes.

    Attributes:
        route1: Index of the first route in the analysed list.
        route2: Index of the second route.
        point: Intersection point (closest approach for overlaps).
        severity: Visual disruption estimate in [0, 1].
        crossing_type: Classification of the conflict.
        t1: Parametric position along route1's polyline.
        t2: Parametric position along route2's polyline.
        angle: Intersection angle in radians.
    """

    route1: int
    route2: int
    point: Point
    severity: float
    crossing_type: CrossingType
    t1: float = 0.0
    t2: float = 0.0
    angle: float = 0.0
