"""Unit tests for the route_calculator module."""

import pytest

from sankeyroute.config import RoutingConfig
from sankeyroute.geometry import sample_bezier
from sankeyroute.models import FlowType, Link, Node, Point
from sankeyroute.route_calculator import (
    COLLISION_MARGIN,
    RouteCalculationError,
    RouteCalculator,
    curvature_pattern,
    default_routes,
    group_links,
    straight_route,
)


def assert_point(point, x, y):
    assert point.x == pytest.approx(x, abs=1e-3)
    assert point.y == pytest.approx(y, abs=1e-3)


class TestCurvaturePattern:
    """Tests for parallel link offset patterns."""

    @pytest.mark.parametrize("size", [2, 3, 4, 5, 6, 9])
    def test_symmetric(self, size):
        """Test patterns are zero-sum and mirror-symmetric."""
        pattern = curvature_pattern(size)
        assert len(pattern) == size
        assert sum(pattern) == pytest.approx(0.0, abs=1e-12)
        assert list(pattern) == pytest.approx([-p for p in reversed(pattern)])

    def test_single_link(self):
        """Test a single link has no offset."""
        assert curvature_pattern(1) == (0.0,)


class TestGroupLinks:
    """Tests for link grouping."""

    def test_groups_by_unordered_pair(self):
        """Test both directions share a group sorted by value."""
        links = [Link(0, 1, 5), Link(1, 0, 20), Link(1, 2, 3), Link(0, 1, 20)]
        groups = group_links(links)
        assert set(groups) == {(0, 1), (1, 2)}
        # Equal values keep input order
        assert groups[(0, 1)].link_indices == [1, 3, 0]
        assert groups[(0, 1)].total_value == 45
        assert groups[(0, 1)].max_value == 20

    def test_subset(self):
        """Test only the given indices are grouped."""
        links = [Link(0, 1, 5), Link(0, 1, 6)]
        assert group_links(links, [1])[(0, 1)].link_indices == [1]


class TestCrossingScenario:
    """Route geometry for two crossing links."""

    def test_control_points(self, calculator, mapper, crossing_nodes, crossing_links):
        """Test anchors, reach and bend of both routes."""
        hierarchy = mapper.map_hierarchy(crossing_nodes, crossing_links)
        first, second = calculator.calculate_optimized_routes(
            crossing_links, crossing_nodes, hierarchy
        )

        assert first.id == "route_0_3_0"
        assert_point(first.control_points[0], 0.015, 0.2077)
        assert_point(first.control_points[1], 0.403, 0.3761)
        assert_point(first.control_points[2], 0.597, 0.5107)
        assert_point(first.control_points[3], 0.985, 0.7923)

        assert second.id == "route_2_1_1"
        assert_point(second.control_points[0], 0.015, 0.7923)
        assert_point(second.control_points[1], 0.403, 1.0173)
        assert_point(second.control_points[2], 0.597, -0.0173)
        assert_point(second.control_points[3], 0.985, 0.2077)

    def test_metadata(self, calculator, mapper, crossing_nodes, crossing_links):
        """Test flow type, priority and outputs."""
        hierarchy = mapper.map_hierarchy(crossing_nodes, crossing_links)
        route = calculator.calculate_optimized_routes(crossing_links, crossing_nodes, hierarchy)[0]
        assert route.metadata.flow_type == FlowType.PRIMARY
        assert route.metadata.priority == pytest.approx(0.5 * (0.7 + 10 / 3000 * 0.3))
        assert route.metadata.algorithm == "bezier-optimized"
        assert route.metadata.multi_link is None
        assert len(route.path.points) == 51
        assert route.path.svg_path.startswith("M 0.015 ")
        assert len(route.metadata.avoidance_zones) == 4


class TestParallelGroup:
    """Route geometry for a group of parallel links."""

    def test_offsets_are_symmetric(self, calculator, mapper, parallel_nodes, parallel_links):
        """Test three distinct offsets summing to zero, largest value first."""
        hierarchy = mapper.map_hierarchy(parallel_nodes, parallel_links)
        routes = calculator.calculate_optimized_routes(parallel_links, parallel_nodes, hierarchy)

        infos = [route.metadata.multi_link for route in routes]
        assert all(info.group_size == 3 for info in infos)
        assert [info.position for info in infos] == [2, 1, 0]

        offsets = [info.offset for info in infos]
        assert len(set(offsets)) == 3
        assert sum(offsets) == pytest.approx(0.0, abs=1e-12)
        assert offsets[2] == pytest.approx(0.7 * 0.04)
        assert offsets[0] == pytest.approx(-offsets[2])

    def test_anchors_follow_offsets(self, calculator, mapper, parallel_nodes, parallel_links):
        """Test each route starts at the node centre plus its offset."""
        hierarchy = mapper.map_hierarchy(parallel_nodes, parallel_links)
        for route in calculator.calculate_optimized_routes(
            parallel_links, parallel_nodes, hierarchy
        ):
            assert route.control_points[0].y == pytest.approx(
                0.5 + route.metadata.multi_link.offset
            )


class TestAlgorithms:
    """Tests for algorithm selection."""

    def test_curvature_scale(self, mapper, crossing_nodes):
        """Test spline-smooth bends more than arc-minimal."""
        links = [{"source": 0, "target": 3, "value": 10}]
        hierarchy = mapper.map_hierarchy(crossing_nodes, links)
        calculator = RouteCalculator(RoutingConfig(node_avoidance=False))

        def bend(algorithm):
            route = calculator.calculate_optimized_routes(
                links, crossing_nodes, hierarchy, algorithm=algorithm
            )[0]
            return route.control_points[1].y - route.control_points[0].y

        assert bend("spline-smooth") > bend("bezier-optimized") > bend("arc-minimal")

    def test_unknown_algorithm(self, calculator, mapper, crossing_nodes, crossing_links):
        """Test an unknown algorithm is rejected."""
        hierarchy = mapper.map_hierarchy(crossing_nodes, crossing_links)
        with pytest.raises(RouteCalculationError, match="Unknown routing algorithm"):
            calculator.calculate_optimized_routes(
                crossing_links, crossing_nodes, hierarchy, algorithm="zigzag"
            )

    def test_simple_curve_skips_collisions(self, mapper, parallel_nodes, parallel_links):
        """Test simple-curve does no collision passes."""
        hierarchy = mapper.map_hierarchy(parallel_nodes, parallel_links)
        calculator = RouteCalculator(RoutingConfig(routing_algorithm="simple-curve"))
        routes = calculator.calculate_optimized_routes(parallel_links, parallel_nodes, hierarchy)
        assert all(route.metadata.collision_iterations == 0 for route in routes)
        assert all(route.metadata.algorithm == "simple-curve" for route in routes)


class TestValidation:
    """Tests for malformed input."""

    def test_missing_node(self, calculator, mapper, crossing_nodes):
        """Test a dangling reference raises."""
        links = [{"source": 0, "target": 9, "value": 1}]
        hierarchy = mapper.map_hierarchy(crossing_nodes, links)
        with pytest.raises(RouteCalculationError, match="missing node 9"):
            calculator.calculate_optimized_routes(links, crossing_nodes, hierarchy)

    def test_non_finite_value(self, calculator, mapper, crossing_nodes):
        """Test NaN values raise."""
        links = [{"source": 0, "target": 3, "value": float("nan")}]
        hierarchy = mapper.map_hierarchy(crossing_nodes, links)
        with pytest.raises(RouteCalculationError, match="non-finite"):
            calculator.calculate_optimized_routes(links, crossing_nodes, hierarchy)

    def test_skip_invalid_keeps_ids(self, calculator, mapper, crossing_nodes):
        """Test skipped links do not shift route ids."""
        links = [
            {"source": 0, "target": 3, "value": 1},
            {"source": 0, "target": 9, "value": 1},
            {"source": 2, "target": 1, "value": 1},
        ]
        hierarchy = mapper.map_hierarchy(crossing_nodes, links)
        routes = calculator.calculate_optimized_routes(
            links, crossing_nodes, hierarchy, skip_invalid=True
        )
        assert [route.id for route in routes] == ["route_0_3_0", "route_2_1_2"]

    def test_cancellation(self, mapper, crossing_nodes, crossing_links):
        """Test a stop request abandons the calculation."""
        hierarchy = mapper.map_hierarchy(crossing_nodes, crossing_links)
        calculator = RouteCalculator(RoutingConfig(), should_stop=lambda: True)
        with pytest.raises(RouteCalculationError, match="cancelled"):
            calculator.calculate_optimized_routes(crossing_links, crossing_nodes, hierarchy)


class TestNodeCollisions:
    """Tests for node collision resolution."""

    def test_curve_pushed_out_of_node(self, calculator, mapper):
        """Test a straight curve through a node is bent around it."""
        nodes = [
            {"name": "A", "x": 0.1, "y": 0.5},
            {"name": "M", "x": 0.5, "y": 0.5},
            {"name": "B", "x": 0.9, "y": 0.5},
        ]
        hierarchy = mapper.map_hierarchy(nodes, [])
        straight = [Point(0.115, 0.5), Point(0.4, 0.5), Point(0.6, 0.5), Point(0.885, 0.5)]

        points, passes = calculator.resolve_node_collisions(
            straight, hierarchy, exclude=(0, 2)
        )

        box = hierarchy[1].bounds.expanded(COLLISION_MARGIN)
        assert passes >= 1
        assert points[0] == straight[0]
        assert points[3] == straight[3]
        assert not any(box.contains(p) for p in sample_bezier(points, 20))

    def test_own_endpoints_excluded(self, calculator, mapper):
        """Test a curve is never pushed away from its own nodes."""
        nodes = [{"name": "A", "x": 0.1, "y": 0.5}, {"name": "B", "x": 0.9, "y": 0.5}]
        hierarchy = mapper.map_hierarchy(nodes, [])
        straight = [Point(0.1, 0.5), Point(0.4, 0.5), Point(0.6, 0.5), Point(0.9, 0.5)]
        points, passes = calculator.resolve_node_collisions(straight, hierarchy, exclude=(0, 1))
        assert passes == 0
        assert points == straight


class TestDefaultRoutes:
    """Tests for straight default routes."""

    def test_straight_route(self):
        """Test control points sit at thirds of the chord between centres."""
        nodes = [Node("A", 0.0, 0.0), Node("B", 0.9, 0.3)]
        route = straight_route(Link(0, 1, 5, color="red"), 4, nodes)
        assert route.id == "route_0_1_4"
        assert route.color == "red"
        assert_point(route.control_points[1], 0.3, 0.1)
        assert_point(route.control_points[2], 0.6, 0.2)
        assert route.path.curvature == pytest.approx(0.0, abs=1e-9)
        assert route.metadata.flow_type == FlowType.DEFAULT

    def test_dangling_links_skipped(self, crossing_nodes):
        """Test links to missing nodes are left out."""
        routes = default_routes(
            [{"source": 0, "target": 3, "value": 1}, {"source": 0, "target": 7, "value": 1}],
            crossing_nodes,
        )
        assert [route.id for route in routes] == ["route_0_3_0"]

    def test_unreadable_records_skipped(self, crossing_nodes):
        """Test unreadable links and links touching unreadable nodes are left out."""
        crossing_nodes[2] = {"name": "C", "x": None, "y": 0.8}
        links = [
            {"source": 0, "target": 3, "value": 1},
            {"source": 0, "target": 1, "value": None},
            {"source": 2, "target": 1, "value": 1},
            {"source": 0, "target": 1, "value": 2},
        ]
        routes = default_routes(links, crossing_nodes)
        assert [route.id for route in routes] == ["route_0_3_0", "route_0_1_3"]
