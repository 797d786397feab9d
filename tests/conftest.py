"""Pytest configuration and shared fixtures for sankeyroute tests."""

import pytest

from sankeyroute import LinkRouter, NodeHierarchyMapper, RoutingConfig
from sankeyroute.route_calculator import RouteCalculator


@pytest.fixture
def crossing_nodes():
    """Two sources on the left, two sinks on the right."""
    return [
        {"name": "A", "x": 0.0, "y": 0.2},
        {"name": "B", "x": 1.0, "y": 0.2},
        {"name": "C", "x": 0.0, "y": 0.8},
        {"name": "D", "x": 1.0, "y": 0.8},
    ]


@pytest.fixture
def crossing_links():
    """A->D and C->B, which cross in the middle of the diagram."""
    return [
        {"source": 0, "target": 3, "value": 10},
        {"source": 2, "target": 1, "value": 10},
    ]


@pytest.fixture
def parallel_nodes():
    """Two nodes connected by a group of parallel links."""
    return [
        {"name": "A", "x": 0.1, "y": 0.5},
        {"name": "B", "x": 0.9, "y": 0.5},
    ]


@pytest.fixture
def parallel_links():
    """Three links between the same pair of nodes."""
    return [
        {"source": 0, "target": 1, "value": 5},
        {"source": 0, "target": 1, "value": 10},
        {"source": 0, "target": 1, "value": 15},
    ]


@pytest.fixture
def energy_nodes():
    """Small energy balance with production, refining and consumption."""
    return [
        {"name": "Producción Petróleo 800.0 PJ", "x": 0.05, "y": 0.3},
        {"name": "Importación Gas", "x": 0.05, "y": 0.7},
        {"name": "Refinación", "x": 0.5, "y": 0.4},
        {"name": "Consumo Industrial", "x": 0.95, "y": 0.3},
        {"name": "Consumo Residencial", "x": 0.95, "y": 0.7},
    ]


@pytest.fixture
def energy_links():
    """Flows through the refinery plus one direct gas flow."""
    return [
        {"source": 0, "target": 2, "value": 800},
        {"source": 1, "target": 2, "value": 200},
        {"source": 1, "target": 4, "value": 150},
        {"source": 2, "target": 3, "value": 600},
        {"source": 2, "target": 4, "value": 300},
    ]


@pytest.fixture
def config():
    """Default routing configuration."""
    return RoutingConfig()


@pytest.fixture
def mapper():
    """Hierarchy mapper without a metadata provider."""
    return NodeHierarchyMapper()


@pytest.fixture
def calculator(config):
    """Route calculator bound to the default configuration."""
    return RouteCalculator(config)


@pytest.fixture
def router():
    """Router with a fixed seed; worker threads are shut down afterwards."""
    instance = LinkRouter(seed=7)
    yield instance
    instance.close()
