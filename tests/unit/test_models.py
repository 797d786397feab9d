"""Unit tests for the models module."""

import pytest

from sankeyroute.models import (
    AvoidanceZone,
    FlowType,
    InvalidRecordError,
    Link,
    MultiLinkInfo,
    Node,
    NodeBounds,
    Point,
    Route,
    RoutingMetadata,
    coerce_links,
    coerce_nodes,
)
from sankeyroute.route_calculator import build_path


def make_route(source=0, target=1):
    points = [Point(0, 0), Point(0.3, 0.1), Point(0.6, 0.2), Point(1, 0)]
    return Route(
        id=f"route_{source}_{target}_0",
        source=source,
        target=target,
        value=100,
        path=build_path(points),
        metadata=RoutingMetadata(
            priority=0.8,
            flow_type=FlowType.PRIMARY,
            algorithm="bezier-optimized",
            avoidance_zones=[AvoidanceZone(Point(0.5, 0.1), 0.05)],
            multi_link=MultiLinkInfo((0, 1), 2, 1, -0.02),
        ),
    )


class TestInputRecords:
    """Tests for Node and Link parsing."""

    def test_node_from_dict(self):
        """Test a node dict with optional fields."""
        node = Node.from_dict({"name": "Gas", "x": 0.2, "y": 0.4, "customdata": "12.5 PJ"})
        assert node == Node("Gas", 0.2, 0.4, None, "12.5 PJ")

    def test_link_from_dict(self):
        """Test a link dict with a color hint."""
        link = Link.from_dict({"source": 1, "target": 2, "value": 30, "color": "#f00"})
        assert link.source == 1
        assert link.target == 2
        assert link.value == 30.0
        assert link.color == "#f00"

    def test_link_requires_endpoints(self):
        """Test a link without a source is rejected."""
        with pytest.raises(InvalidRecordError, match="source"):
            Link.from_dict({"target": 1, "value": 5})

    @pytest.mark.parametrize(
        "data",
        [
            {"source": 0, "target": 1, "value": None},
            {"source": 0, "target": "B", "value": 5},
            {"source": [0], "target": 1},
            None,
        ],
    )
    def test_unreadable_link(self, data):
        """Test links with values that cannot be converted are rejected."""
        with pytest.raises(InvalidRecordError):
            Link.from_dict(data)

    def test_unreadable_node(self):
        """Test a node with a non-numeric position is rejected."""
        with pytest.raises(InvalidRecordError, match="left"):
            Node.from_dict({"name": "A", "x": "left", "y": 0.5})

    def test_invalid_record_is_value_error(self):
        """Test callers catching ValueError still see unreadable records."""
        with pytest.raises(ValueError):
            coerce_links([{"source": "A", "target": 1}])

    def test_coerce_mixed(self):
        """Test records and dicts can be mixed."""
        nodes = coerce_nodes([Node("A", 0, 0), {"name": "B", "x": 1, "y": 1}])
        links = coerce_links([Link(0, 1, 5), {"source": 1, "target": 0, "value": 2}])
        assert [n.name for n in nodes] == ["A", "B"]
        assert [lk.value for lk in links] == [5, 2.0]


class TestNodeBounds:
    """Tests for NodeBounds."""

    def test_edges(self):
        """Test derived edges and centre."""
        box = NodeBounds(0.1, 0.2, 0.04, 0.06)
        assert box.right == pytest.approx(0.14)
        assert box.bottom == pytest.approx(0.26)
        assert box.center.x == pytest.approx(0.12)
        assert box.center.y == pytest.approx(0.23)

    def test_expanded_contains(self):
        """Test a point just outside is inside the expanded box."""
        box = NodeBounds(0.0, 0.0, 0.1, 0.1)
        point = Point(0.105, 0.05)
        assert not box.contains(point)
        assert box.expanded(0.01).contains(point)


class TestRoute:
    """Tests for Route helpers."""

    def test_shares_node(self):
        """Test routes sharing an endpoint are detected."""
        assert make_route(0, 1).shares_node_with(make_route(1, 2))
        assert not make_route(0, 1).shares_node_with(make_route(2, 3))

    def test_clone_is_independent(self):
        """Test adjusting a clone leaves the original untouched."""
        original = make_route()
        copy = original.clone()
        copy.path.control_points[1] = Point(0.3, 0.9)
        copy.metadata.conflicts_resolved.append("layering")
        copy.metadata.avoidance_zones.clear()
        copy.metadata.multi_link.offset = 1.0

        assert original.control_points[1] == Point(0.3, 0.1)
        assert original.metadata.conflicts_resolved == []
        assert len(original.metadata.avoidance_zones) == 1
        assert original.metadata.multi_link.offset == -0.02

    def test_clone_is_equal(self):
        """Test a fresh clone compares equal to its source."""
        original = make_route()
        assert original.clone() == original

    def test_to_dict(self):
        """Test the plain-data form."""
        data = make_route().to_dict()
        assert data["id"] == "route_0_1_0"
        assert data["path"]["control_points"][0] == (0, 0)
        assert data["path"]["svg_path"].startswith("M 0 0 C")
        assert data["metadata"]["flow_type"] == "primary"
        assert data["metadata"]["multi_link"]["group_size"] == 2
