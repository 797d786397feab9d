"""
sankeyroute - Link routing for Sankey-style flow diagrams

Computes smooth cubic Bezier routes for the links of a flow diagram whose
node positions are already known, and reduces link crossings.

Example:
    >>> from sankeyroute import LinkRouter
    >>> router = LinkRouter()
    >>> routes = router.calculate_routes(
    ...     links=[{"source": 0, "target": 1, "value": 600}],
    ...     nodes=[{"name": "A", "x": 0.0, "y": 0.2}, {"name": "B", "x": 1.0, "y": 0.8}],
    ... )
    >>> print(routes[0].path.svg_path)

Configuration Example:
    >>> result = router.update_config({"curvature": 0.5, "max_iterations": 20})
    >>> result.rejected
    {}
    >>> print(router.metrics.summary())
"""

from .config import (
    CONFIG_SCHEMA,
    ConfigUpdateResult,
    ConfigValidationError,
    FieldSpec,
    RoutingConfig,
    configuration_schema,
)
from .crossings import CrossingResolver, ResolutionStats, count_crossings
from .hierarchy import NodeDataProvider, NodeHierarchyMapper, simple_hierarchy
from .metrics import CalculationRecord, PerformanceMetrics, Recommendation
from .models import (
    Crossing,
    CrossingType,
    FlowType,
    InvalidRecordError,
    Link,
    Node,
    NodeInfo,
    NodeType,
    Point,
    Route,
    RoutePath,
    RoutingMetadata,
)
from .route_calculator import RouteCalculationError, RouteCalculator, default_routes
from .router import LinkRouter, RoutingError, RoutingTimeoutError

__version__ = "0.1.0"

__all__ = [
    # Main API
    "LinkRouter",
    "RoutingError",
    "RoutingTimeoutError",
    # Configuration
    "RoutingConfig",
    "ConfigUpdateResult",
    "ConfigValidationError",
    "FieldSpec",
    "CONFIG_SCHEMA",
    "configuration_schema",
    # Models
    "Node",
    "Link",
    "InvalidRecordError",
    "Point",
    "NodeType",
    "FlowType",
    "CrossingType",
    "NodeInfo",
    "Route",
    "RoutePath",
    "RoutingMetadata",
    "Crossing",
    # Hierarchy
    "NodeHierarchyMapper",
    "NodeDataProvider",
    "simple_hierarchy",
    # Routes
    "RouteCalculator",
    "RouteCalculationError",
    "default_routes",
    # Crossings
    "CrossingResolver",
    "ResolutionStats",
    "count_crossings",
    # Metrics
    "PerformanceMetrics",
    "CalculationRecord",
    "Recommendation",
]
