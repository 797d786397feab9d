"""
Node hierarchy mapping using networkx.

Builds a per-node structural and statistical summary from raw node and link
arrays. Uses networkx for:
- Graph representation (a MultiDiGraph, so parallel links count separately)
- Parent/child lookups and degree counts
- Weighted in/out flow totals

Node types are detected from name patterns first, then from an optional
metadata provider, then from position and degree heuristics.
"""

import logging
import math
import re
from collections import Counter
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import networkx as nx

from .models import (
    Centrality,
    FlowInfo,
    FlowType,
    Link,
    LinkLike,
    Node,
    NodeBounds,
    NodeInfo,
    NodeLike,
    NodeType,
    Point,
    coerce_links,
    coerce_nodes,
)

logger = logging.getLogger(__name__)

HierarchyMap = Dict[int, NodeInfo]

# =============================================================================
# CLASSIFICATION TABLES
# =============================================================================

# Name fragments that identify a node's role in an energy balance diagram
NODE_TYPE_PATTERNS: Dict[NodeType, Tuple[str, ...]] = {
    NodeType.SOURCE: ("Producción", "Importación"),
    NodeType.TRANSFORMATION: ("Transformación", "Refinación", "Generación"),
    NodeType.DISTRIBUTION: ("Distribución", "Transporte"),
    NodeType.CONSUMPTION: ("Consumo", "Usos Finales", "Exportación", "Consumo Propio"),
}

# Minimum flow value for each flow type, checked in this order
FLOW_THRESHOLDS: Tuple[Tuple[FlowType, float], ...] = (
    (FlowType.PRIMARY, 500.0),
    (FlowType.SECONDARY, 100.0),
    (FlowType.TRANSFORMATION, 50.0),
)

# Priority multiplier per flow type
FLOW_TYPE_MULTIPLIERS: Dict[FlowType, float] = {
    FlowType.PRIMARY: 1.0,
    FlowType.SECONDARY: 0.8,
    FlowType.TRANSFORMATION: 0.6,
    FlowType.DISTRIBUTION: 0.4,
}

# Flow value at which the value component of a priority saturates
PRIORITY_VALUE_SCALE = 3000.0

# Heuristic position bands for type detection
SOURCE_MAX_X = 0.3
CONSUMPTION_MIN_X = 0.7

# Bottleneck detection
BOTTLENECK_THRESHOLD = 0.7
CONNECTIVITY_RATIO_SCALE = 1000.0

# Default node box size in normalized units
BASE_NODE_WIDTH = 0.03
BASE_NODE_HEIGHT = 0.05

# Keys of the metadata provider's node breakdown
PROVIDER_KIND_KEY = "tipo"
PROVIDER_CHILDREN_KEY = "Nodos Hijo"
PROVIDER_PRIMARY = "Energía Primaria"
PROVIDER_SECONDARY = "Energía Secundaria"

_VALUE_SUFFIX = re.compile(r"\s+\d+[.,]\d*\s*PJ$")
_VALUE_IN_TEXT = re.compile(r"(\d+[.,]\d*)\s*PJ")


class NodeDataProvider(Protocol):
    """Optional collaborator that knows more about a node than its name."""

    def get_node_data(self, name: str) -> Optional[Dict[str, Any]]:
        ...


def clean_node_name(name: str, index: int = 0) -> str:
    """
    Strip markup and a trailing value from a node label.

    "Petróleo 123.4 PJ<br>extra" becomes "Petróleo".
    """
    if not name:
        return f"node_{index}"
    first_line = name.split("<br>")[0].strip()
    return _VALUE_SUFFIX.sub("", first_line)


def parse_value(text: Optional[str]) -> Optional[float]:
    """Extract a "<number> PJ" value from free text, if any."""
    if not text:
        return None
    match = _VALUE_IN_TEXT.search(text)
    if match is None:
        return None
    return float(match.group(1).replace(",", "."))


def flow_priority(value: float, flow_type: FlowType) -> float:
    """Normalized value (capped at 1) times the flow type multiplier."""
    value_priority = min(max(value, 0.0) / PRIORITY_VALUE_SCALE, 1.0)
    return value_priority * FLOW_TYPE_MULTIPLIERS.get(flow_type, 0.5)


def classify_flow_value(value: float) -> FlowType:
    """Classify a flow by magnitude alone."""
    for flow_type, threshold in FLOW_THRESHOLDS:
        if value >= threshold:
            return flow_type
    return FlowType.DISTRIBUTION


def classify_flow(value: float, source_name: str, target_name: str) -> FlowType:
    """Classify a flow from endpoint names, falling back to its magnitude."""
    if "Producción" in source_name or "Importación" in source_name:
        return FlowType.PRIMARY
    if "Transformación" in target_name or "Refinación" in target_name:
        return FlowType.TRANSFORMATION
    if "Consumo" in target_name or "Exportación" in target_name:
        return FlowType.SECONDARY
    return classify_flow_value(value)


def node_bounds(x: float, y: float, value: Optional[float] = None) -> NodeBounds:
    """Estimate a node's box, centred on its position and grown by its value."""
    width_multiplier = 1.0
    height_multiplier = 1.0
    if value is not None and value > 0:
        normalized = min(value / 1000.0, 3.0)
        width_multiplier = 1 + normalized * 0.5
        height_multiplier = 1 + normalized * 0.3
    width = BASE_NODE_WIDTH * width_multiplier
    height = BASE_NODE_HEIGHT * height_multiplier
    return NodeBounds(x - width / 2, y - height / 2, width, height)


class NodeHierarchyMapper:
    """
    Classify nodes and summarize their connectivity.

    The mapper holds no per-call state; callers cache results as needed.
    """

    def __init__(self, provider: Optional[NodeDataProvider] = None):
        """
        Initialize the mapper.

        Args:
            provider: Optional metadata provider. Anything without a callable
                ``get_node_data`` attribute is ignored.
        """
        self.provider: Optional[NodeDataProvider] = None
        if provider is not None:
            if callable(getattr(provider, "get_node_data", None)):
                self.provider = provider
            else:
                logger.warning(
                    "Ignoring node data provider %r without get_node_data()", provider
                )

    def map_hierarchy(
        self, nodes: Sequence[NodeLike], links: Sequence[LinkLike]
    ) -> HierarchyMap:
        """
        Build the hierarchy map.

        Args:
            nodes: Node records or dicts with name, x and y.
            links: Link records or dicts with source, target and value.

        Returns:
            Dict mapping node index to its NodeInfo.
        """
        node_list = coerce_nodes(list(nodes))
        link_list = coerce_links(list(links))
        graph = self._build_graph(node_list, link_list)

        clean_names = [clean_node_name(n.name, i) for i, n in enumerate(node_list)]
        provider_data = [self._node_data(name) for name in clean_names]

        totals = {i: self._total_flow(graph, i) for i in range(len(node_list))}
        max_total = max(totals.values(), default=0.0)

        hierarchy: HierarchyMap = {}
        for index, node in enumerate(node_list):
            hierarchy[index] = self._analyze_node(
                index,
                node,
                graph,
                clean_names,
                provider_data[index],
                totals[index],
                max_total,
                len(node_list),
            )

        self._validate(hierarchy)
        logger.debug(
            "Mapped hierarchy: %d nodes, %d links, %d bottlenecks",
            len(hierarchy),
            len(link_list),
            sum(1 for info in hierarchy.values() if info.is_bottleneck),
        )
        return hierarchy

    # --- Graph helpers ---

    @staticmethod
    def _build_graph(nodes: List[Node], links: List[Link]) -> nx.MultiDiGraph:
        graph = nx.MultiDiGraph()
        graph.add_nodes_from(range(len(nodes)))
        for link in links:
            graph.add_edge(link.source, link.target, value=link.value)
        return graph

    @staticmethod
    def _total_flow(graph: nx.MultiDiGraph, index: int) -> float:
        incoming = graph.in_degree(index, weight="value")
        outgoing = graph.out_degree(index, weight="value")
        return float(max(incoming, outgoing))

    def _node_data(self, name: str) -> Optional[Dict[str, Any]]:
        if self.provider is None:
            return None
        try:
            return self.provider.get_node_data(name)
        except Exception:
            logger.warning(
                "Node data provider failed for %r; using heuristics", name, exc_info=True
            )
            return None

    # --- Per-node analysis ---

    def _analyze_node(
        self,
        index: int,
        node: Node,
        graph: nx.MultiDiGraph,
        clean_names: List[str],
        data: Optional[Dict[str, Any]],
        total_flow: float,
        max_total: float,
        node_count: int,
    ) -> NodeInfo:
        in_degree = graph.in_degree(index)
        out_degree = graph.out_degree(index)
        name = clean_names[index]

        node_type = self._detect_type(name, node.x, in_degree, out_degree, data)
        energy_type = self._energy_type(data)
        level = self._level(node.x, data)
        column = int(math.floor(node.x * 5))

        incoming = tuple(
            self._flow_info(src, attrs["value"], clean_names, src, index)
            for src, _, attrs in graph.in_edges(index, data=True)
        )
        outgoing = tuple(
            self._flow_info(dst, attrs["value"], clean_names, index, dst)
            for _, dst, attrs in graph.out_edges(index, data=True)
        )

        degree = (in_degree + out_degree) / (node_count - 1) if node_count > 1 else 0.0
        degree = min(degree, 1.0)
        flow = total_flow / max_total if max_total > 0 else 0.0
        if in_degree > 0 and out_degree > 0:
            betweenness = min(in_degree, out_degree) / max(in_degree, out_degree)
        else:
            betweenness = 0.0
        overall = (degree + flow + betweenness) / 3
        centrality = Centrality(degree, flow, betweenness, overall)

        connectivity_ratio = total_flow / max(in_degree + out_degree, 1)
        bottleneck = (overall + min(connectivity_ratio / CONNECTIVITY_RATIO_SCALE, 1.0)) / 2

        groups = []
        if energy_type != "unknown":
            groups.append(f"energy_{energy_type}")
        groups.append(f"type_{node_type.value}")
        groups.append(f"column_{column}")

        return NodeInfo(
            index=index,
            name=node.name,
            clean_name=name,
            node_type=node_type,
            level=level,
            column=column,
            position=Point(node.x, node.y),
            bounds=node_bounds(node.x, node.y, _node_value(node)),
            parents=frozenset(graph.predecessors(index)),
            children=frozenset(graph.successors(index)),
            incoming=incoming,
            outgoing=outgoing,
            energy_type=energy_type,
            in_degree=in_degree,
            out_degree=out_degree,
            total_flow=total_flow,
            centrality=centrality,
            bottleneck_score=bottleneck,
            is_bottleneck=bottleneck > BOTTLENECK_THRESHOLD,
            groups=tuple(groups),
        )

    @staticmethod
    def _flow_info(
        neighbor: int, value: float, names: List[str], source: int, target: int
    ) -> FlowInfo:
        if 0 <= source < len(names) and 0 <= target < len(names):
            flow_type = classify_flow(value, names[source], names[target])
        else:
            flow_type = classify_flow_value(value)
        return FlowInfo(neighbor, value, flow_type, flow_priority(value, flow_type))

    @staticmethod
    def _detect_type(
        name: str,
        x: float,
        in_degree: int,
        out_degree: int,
        data: Optional[Dict[str, Any]],
    ) -> NodeType:
        for node_type, patterns in NODE_TYPE_PATTERNS.items():
            if any(pattern in name for pattern in patterns):
                return node_type

        if data is not None:
            if _is_primary_energy(data) and in_degree == 0:
                return NodeType.SOURCE

        if in_degree == 0 and x < SOURCE_MAX_X:
            return NodeType.SOURCE
        if out_degree == 0 and x > CONSUMPTION_MIN_X:
            return NodeType.CONSUMPTION
        if SOURCE_MAX_X <= x <= CONSUMPTION_MIN_X and (in_degree > 1 or out_degree > 1):
            return NodeType.TRANSFORMATION
        return NodeType.DISTRIBUTION

    @staticmethod
    def _energy_type(data: Optional[Dict[str, Any]]) -> str:
        if data is None:
            return "unknown"
        if _is_primary_energy(data):
            return "primary"
        if _is_secondary_energy(data):
            return "secondary"
        return "mixed"

    @staticmethod
    def _level(x: float, data: Optional[Dict[str, Any]]) -> int:
        level = int(math.floor(x * 10))
        if data is not None:
            if _is_primary_energy(data):
                level -= 1
            elif _is_secondary_energy(data):
                level += 1
        return min(max(level, 0), 10)

    # --- Validation ---

    @staticmethod
    def _validate(hierarchy: HierarchyMap) -> int:
        """Log dangling references; returns the number of warnings."""
        warnings = 0
        for index, info in hierarchy.items():
            invalid_parents = sorted(p for p in info.parents if p not in hierarchy)
            invalid_children = sorted(c for c in info.children if c not in hierarchy)
            if invalid_parents or invalid_children:
                logger.warning(
                    "Node %d (%s) has unresolved references: parents=%s children=%s",
                    index,
                    info.clean_name,
                    invalid_parents,
                    invalid_children,
                )
                warnings += 1
            if len(info.incoming) != info.in_degree:
                logger.warning(
                    "Node %d (%s) has inconsistent incoming flows", index, info.clean_name
                )
                warnings += 1
        if warnings:
            logger.warning("Hierarchy validated with %d warnings", warnings)
        return warnings


def simple_hierarchy(nodes: Sequence[NodeLike], links: Sequence[LinkLike]) -> HierarchyMap:
    """
    Position-only hierarchy used by fallback routing.

    Types come from names and degree heuristics. No provider is consulted
    and no centrality or flow statistics are computed.
    """
    node_list = coerce_nodes(list(nodes))
    link_list = coerce_links(list(links))
    in_degree = Counter(link.target for link in link_list)
    out_degree = Counter(link.source for link in link_list)

    hierarchy: HierarchyMap = {}
    for index, node in enumerate(node_list):
        name = clean_node_name(node.name, index)
        hierarchy[index] = NodeInfo(
            index=index,
            name=node.name,
            clean_name=name,
            node_type=NodeHierarchyMapper._detect_type(
                name, node.x, in_degree[index], out_degree[index], None
            ),
            level=NodeHierarchyMapper._level(node.x, None),
            column=int(math.floor(node.x * 5)),
            position=Point(node.x, node.y),
            bounds=node_bounds(node.x, node.y, _node_value(node)),
            in_degree=in_degree[index],
            out_degree=out_degree[index],
        )
    return hierarchy


def _node_value(node: Node) -> Optional[float]:
    if node.value is not None:
        return node.value
    return parse_value(node.customdata)


def _kinds(data: Dict[str, Any]) -> List[Any]:
    children = data.get(PROVIDER_CHILDREN_KEY) or []
    kinds = [data.get(PROVIDER_KIND_KEY)]
    kinds.extend(child.get(PROVIDER_KIND_KEY) for child in children if isinstance(child, dict))
    return kinds


def _is_primary_energy(data: Dict[str, Any]) -> bool:
    return PROVIDER_PRIMARY in _kinds(data)


def _is_secondary_energy(data: Dict[str, Any]) -> bool:
    return PROVIDER_SECONDARY in _kinds(data)
