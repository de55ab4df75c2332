"""
Tests for network analysis domain functionality.
"""

import numpy as np
import pytest

from geotoolkit.domains.network_analysis import (
    Network,
    NetworkAnalyzer,
    build_network_from_lines,
)
from geotoolkit.error_handler import AnalysisError, TopologyError
from geotoolkit.geometry.model import Feature


def triangle():
    """A -> B (1), B -> C (1), A -> C (5) on a straight line."""
    network = Network()
    network.add_node('A', (0, 0))
    network.add_node('B', (1, 0))
    network.add_node('C', (2, 0))
    network.add_edge('A', 'B', 1, edge_id='ab')
    network.add_edge('B', 'C', 1, edge_id='bc')
    network.add_edge('A', 'C', 5, edge_id='ac')
    return network


def square_loop():
    """Four corners of a 10x10 square joined in both directions."""
    network = Network()
    corners = {'A': (0, 0), 'B': (10, 0), 'C': (10, 10), 'D': (0, 10)}
    for node_id, position in corners.items():
        network.add_node(node_id, position)
    for a, b in [('A', 'B'), ('B', 'C'), ('C', 'D'), ('D', 'A')]:
        network.add_edge(a, b, 10)
        network.add_edge(b, a, 10)
    return network


class TestNetwork:
    """Test the network container."""

    def test_duplicates_rejected(self):
        """Test duplicate node and edge ids."""
        network = triangle()
        with pytest.raises(TopologyError, match="Duplicate node id"):
            network.add_node('A', (5, 5))
        with pytest.raises(TopologyError, match="Duplicate edge id"):
            network.add_edge('A', 'B', 1, edge_id='ab')

    def test_unknown_endpoint(self):
        """Test edges must join existing nodes."""
        with pytest.raises(TopologyError, match="unknown node: Z"):
            triangle().add_edge('A', 'Z', 1)

    def test_generated_edge_ids(self):
        """Test that generated ids skip ids already in use."""
        network = Network()
        network.add_node('A', (0, 0))
        network.add_node('B', (1, 0))
        network.add_edge('A', 'B', 1, edge_id='e0')
        edge = network.add_edge('B', 'A', 1)
        assert edge.id == 'e1'

    def test_remove_edge(self):
        """Test edge removal updates adjacency."""
        network = triangle()
        assert network.remove_edge('ab') is True
        assert network.remove_edge('ab') is False
        assert [e.id for e in network.outgoing('A')] == ['ac']


class TestShortestPaths:
    """Test Dijkstra, A* and Bellman-Ford."""

    def setup_method(self):
        """Set up test fixtures."""
        self.analyzer = NetworkAnalyzer()
        self.network = triangle()

    @pytest.mark.parametrize("algorithm", ["dijkstra", "astar", "bellman-ford"])
    def test_cheapest_route(self, algorithm):
        """Test that the two-hop route beats the direct edge."""
        route = self.analyzer.shortest_path(self.network, 'A', 'C', algorithm)
        assert route.path == ['A', 'B', 'C']
        assert route.cost == 2
        assert route.distance == pytest.approx(2.0)
        assert route.geometry.positions == ((0.0, 0.0), (1.0, 0.0), (2.0, 0.0))

    def test_directed_edges(self):
        """Test that edges are one-way."""
        assert self.analyzer.dijkstra(self.network, 'C', 'A') is None
        assert self.analyzer.astar(self.network, 'C', 'A') is None
        assert self.analyzer.bellman_ford(self.network, 'C', 'A') is None

    def test_route_to_self(self):
        """Test a zero-length route."""
        route = self.analyzer.dijkstra(self.network, 'B', 'B')
        assert route.path == ['B']
        assert route.cost == 0
        assert route.geometry is None

    def test_impedance_override(self):
        """Test routing by an edge property instead of cost."""
        self.network.edges['ab'].properties['minutes'] = 10
        route = self.analyzer.dijkstra(self.network, 'A', 'C', impedance='minutes')
        assert route.path == ['A', 'C']
        assert route.cost == 5

    def test_unknown_node_and_algorithm(self):
        """Test argument validation."""
        with pytest.raises(AnalysisError, match="Unknown node: Z"):
            self.analyzer.dijkstra(self.network, 'A', 'Z')
        with pytest.raises(AnalysisError, match="Unknown routing algorithm"):
            self.analyzer.shortest_path(self.network, 'A', 'C', 'floyd')

    def test_negative_costs(self):
        """Test that only Bellman-Ford accepts negative costs."""
        self.network.edges['bc'].cost = -0.5
        with pytest.raises(AnalysisError, match="negative cost"):
            self.analyzer.dijkstra(self.network, 'A', 'C')
        route = self.analyzer.bellman_ford(self.network, 'A', 'C')
        assert route.path == ['A', 'B', 'C']
        assert route.cost == pytest.approx(0.5)

    def test_negative_cycle(self):
        """Test that a reachable negative cycle is reported."""
        self.network.add_edge('C', 'B', -3)
        with pytest.raises(TopologyError, match="negative cycle"):
            self.analyzer.bellman_ford(self.network, 'A', 'C')

    def test_astar_on_grid(self):
        """Test that A* agrees with Dijkstra on a lattice."""
        network = Network()
        for x in range(5):
            for y in range(5):
                network.add_node(f"{x},{y}", (x, y))
        for x in range(5):
            for y in range(5):
                for dx, dy in [(1, 0), (0, 1), (-1, 0), (0, -1)]:
                    if 0 <= x + dx < 5 and 0 <= y + dy < 5:
                        network.add_edge(f"{x},{y}", f"{x + dx},{y + dy}", 1)
        a = self.analyzer.astar(network, '0,0', '4,4')
        d = self.analyzer.dijkstra(network, '0,0', '4,4')
        assert a.cost == d.cost == 8
        assert len(a.path) == 9


class TestDerivedQueries:
    """Test service areas, path enumeration and tours."""

    def setup_method(self):
        """Set up test fixtures."""
        self.analyzer = NetworkAnalyzer()

    def test_service_area(self):
        """Test reachable nodes within a cost limit."""
        area = self.analyzer.service_area(triangle(), 'A', 1.5)
        assert area == {'A': 0.0, 'B': 1.0}
        assert list(self.analyzer.service_area(triangle(), 'A', 2)) == ['A', 'B', 'C']

    def test_service_area_negative_limit(self):
        """Test cost limit validation."""
        with pytest.raises(AnalysisError, match="max_cost"):
            self.analyzer.service_area(triangle(), 'A', -1)

    def test_all_paths(self):
        """Test enumeration ordered by cost."""
        routes = self.analyzer.all_paths(triangle(), 'A', 'C')
        assert [r.path for r in routes] == [['A', 'B', 'C'], ['A', 'C']]
        assert [r.cost for r in routes] == [2, 5]

    def test_all_paths_bounds(self):
        """Test path count and depth limits."""
        assert len(self.analyzer.all_paths(triangle(), 'A', 'C', max_paths=1)) == 1
        shallow = self.analyzer.all_paths(triangle(), 'A', 'C', max_depth=1)
        assert [r.path for r in shallow] == [['A', 'C']]

    def test_all_paths_simple(self):
        """Test that enumerated paths never revisit a node."""
        for route in self.analyzer.all_paths(square_loop(), 'A', 'C'):
            assert len(route.path) == len(set(route.path))

    @pytest.mark.parametrize("seed", range(6))
    def test_shortest_path_beats_every_enumerated_path(self, seed):
        """Test on random graphs that no simple path is cheaper than the shortest path."""
        rng = np.random.default_rng(seed)
        network = Network()
        names = [f"v{i}" for i in range(7)]
        for name in names:
            network.add_node(name, tuple(rng.uniform(0, 100, size=2)))
        for a in names:
            for b in names:
                if a != b and rng.random() < 0.4:
                    dx, dy = np.subtract(network.nodes[b].position, network.nodes[a].position)
                    network.add_edge(a, b, float(np.hypot(dx, dy) * rng.uniform(1, 3)))

        for target in names[1:]:
            best = self.analyzer.dijkstra(network, 'v0', target)
            routes = self.analyzer.all_paths(network, 'v0', target, max_paths=100000)
            if best is None:
                assert routes == []
                continue
            assert routes
            assert all(best.cost <= r.cost + 1e-9 for r in routes)
            assert routes[0].cost == pytest.approx(best.cost)
            assert self.analyzer.astar(network, 'v0', target).cost == pytest.approx(best.cost)
            assert self.analyzer.bellman_ford(network, 'v0', target).cost == pytest.approx(best.cost)

    def test_tsp(self):
        """Test the nearest-neighbour tour around a square."""
        route = self.analyzer.tsp(square_loop(), ['A', 'B', 'C', 'D'])
        assert route.stops == ['A', 'B', 'C', 'D', 'A']
        assert route.cost == 40
        assert route.path == ['A', 'B', 'C', 'D', 'A']

    def test_tsp_too_few_stops(self):
        """Test that a single stop has no tour."""
        assert self.analyzer.tsp(square_loop(), ['A']) is None

    def test_tsp_unreachable_start(self):
        """Test that the closing leg is skipped when the start is unreachable."""
        network = triangle()
        route = self.analyzer.tsp(network, ['A', 'C'])
        assert route.stops == ['A', 'C']
        assert route.cost == 2


class TestBuildFromLines:
    """Test network construction from line geometries."""

    def test_shared_endpoints(self, factory):
        """Test that touching lines share a node."""
        lines = [
            Feature(factory.create_line_string([[0, 0], [10, 0]]), {'speed': 50}),
            factory.create_line_string([[10, 0], [10, 5]]),
        ]
        network = build_network_from_lines(lines)
        assert len(network.nodes) == 3
        assert len(network.edges) == 4
        assert network.edges['e0'].properties == {'speed': 50}

        route = NetworkAnalyzer().dijkstra(network, 'n0', 'n2')
        assert route.cost == pytest.approx(15)
        assert route.distance == pytest.approx(15)
        assert route.geometry.positions[-1] == (10.0, 5.0)

    def test_reverse_edge_geometry(self, factory):
        """Test that the return edge runs the line backwards."""
        network = build_network_from_lines([factory.create_line_string([[0, 0], [3, 4], [6, 0]])])
        back = network.edges['e1']
        assert back.source == 'n1'
        assert back.geometry[0] == (6.0, 0.0)
        assert back.length == pytest.approx(10)

    def test_rejects_polygons(self, square):
        """Test that non-line geometries are rejected."""
        with pytest.raises(TopologyError, match="Polygon"):
            build_network_from_lines([square])
