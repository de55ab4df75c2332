"""
Network Analysis Domain - routing over directed, weighted graphs.

Key Features:
- Caller-owned ``Network`` container with directed edges and optional edge
  geometry
- Dijkstra, A* (Euclidean heuristic) and Bellman-Ford shortest paths
- Per-query impedance override read from edge properties
- Service areas, bounded enumeration of alternative paths and a
  nearest-neighbour travelling salesman heuristic
- Network construction from line geometries

A ``Network`` is mutable and not safe for concurrent writers; routing only
reads it.
"""

import heapq
import itertools
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..config_manager import AnalysisConfig, get_analysis_defaults
from ..error_handler import AnalysisError, TopologyError, report_error
from ..logging_manager import get_logger, get_logging_manager
from ..geometry.factory import euclidean, path_length
from ..geometry.model import Feature, LineString, MultiLineString, Position, to_position

logger = get_logger(__name__)


class RoutingAlgorithm(str, Enum):
    DIJKSTRA = "dijkstra"
    ASTAR = "astar"
    BELLMAN_FORD = "bellman-ford"


@dataclass
class NetworkNode:
    id: str
    position: Position
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NetworkEdge:
    """A directed edge. ``geometry`` overrides the straight node-to-node path."""
    id: str
    source: str
    target: str
    cost: float
    length: Optional[float] = None
    geometry: Optional[List[Position]] = None
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Route:
    """
    A path through the network.

    ``path`` lists every node traversed; ``stops`` is only filled by tour
    searches and lists the requested nodes in visiting order.
    """
    path: List[str]
    cost: float
    distance: float
    geometry: Optional[LineString] = None
    stops: List[str] = field(default_factory=list)


class Network:
    """Directed graph of positioned nodes."""

    def __init__(self):
        self.nodes: Dict[str, NetworkNode] = {}
        self.edges: Dict[str, NetworkEdge] = {}
        self._outgoing: Dict[str, List[str]] = {}
        self._ids = itertools.count()

    def add_node(self, node_id: str, position: Sequence[float],
                 properties: Optional[Dict[str, Any]] = None) -> NetworkNode:
        if node_id in self.nodes:
            raise TopologyError(f"Duplicate node id: {node_id}")
        node = NetworkNode(node_id, to_position(position), dict(properties or {}))
        self.nodes[node_id] = node
        self._outgoing[node_id] = []
        return node

    def add_edge(self, source: str, target: str, cost: float,
                 edge_id: Optional[str] = None,
                 geometry: Optional[Sequence[Sequence[float]]] = None,
                 length: Optional[float] = None,
                 properties: Optional[Dict[str, Any]] = None) -> NetworkEdge:
        """Add a directed edge ``source -> target``. Both nodes must exist."""
        for node_id in (source, target):
            if node_id not in self.nodes:
                raise TopologyError(f"Edge references unknown node: {node_id}")
        if edge_id is None:
            edge_id = f"e{next(self._ids)}"
            while edge_id in self.edges:
                edge_id = f"e{next(self._ids)}"
        elif edge_id in self.edges:
            raise TopologyError(f"Duplicate edge id: {edge_id}")

        positions = [to_position(p) for p in geometry] if geometry is not None else None
        edge = NetworkEdge(edge_id, source, target, float(cost), length, positions,
                           dict(properties or {}))
        self.edges[edge_id] = edge
        self._outgoing[source].append(edge_id)
        return edge

    def remove_edge(self, edge_id: str) -> bool:
        edge = self.edges.pop(edge_id, None)
        if edge is None:
            return False
        self._outgoing[edge.source].remove(edge_id)
        return True

    def outgoing(self, node_id: str) -> List[NetworkEdge]:
        return [self.edges[e] for e in self._outgoing.get(node_id, [])]

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes


def build_network_from_lines(lines: Sequence[Union[LineString, MultiLineString, Feature]]) -> Network:
    """
    Build a network from line work.

    Line endpoints become nodes (identical positions share a node) and every
    line becomes a pair of opposite edges costing its length. Feature
    properties are copied onto both edges so they can serve as impedances.
    """
    network = Network()
    node_at: Dict[Position, str] = {}

    def node_for(position: Position) -> str:
        key = position[:2]
        if key not in node_at:
            node_at[key] = f"n{len(node_at)}"
            network.add_node(node_at[key], position)
        return node_at[key]

    for item in lines:
        properties = {}
        geometry = item
        if isinstance(item, Feature):
            properties = item.properties
            geometry = item.geometry
        if isinstance(geometry, LineString):
            paths = [geometry.positions]
        elif isinstance(geometry, MultiLineString):
            paths = list(geometry.lines)
        else:
            raise TopologyError(f"Cannot build network edges from {type(geometry).__name__}")

        for path in paths:
            start, end = node_for(path[0]), node_for(path[-1])
            length = path_length(path)
            network.add_edge(start, end, length, geometry=path, length=length,
                             properties=properties)
            network.add_edge(end, start, length, geometry=list(reversed(path)),
                             length=length, properties=properties)

    logger.debug("Built network from lines", nodes=len(network.nodes),
                 edges=len(network.edges))
    return network


class NetworkAnalyzer:
    """Shortest paths and derived network queries."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or get_analysis_defaults()

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def edge_cost(edge: NetworkEdge, impedance: Optional[str] = None) -> float:
        """Edge cost, or the named property when the edge carries it."""
        if impedance and edge.properties.get(impedance) is not None:
            return float(edge.properties[impedance])
        return edge.cost

    @staticmethod
    def _require_nodes(network: Network, *node_ids: str) -> None:
        for node_id in node_ids:
            if node_id not in network:
                raise AnalysisError(f"Unknown node: {node_id}")

    def _cost_fn(self, impedance: Optional[str], allow_negative: bool = False
                 ) -> Callable[[NetworkEdge], float]:
        def cost(edge: NetworkEdge) -> float:
            value = self.edge_cost(edge, impedance)
            if value < 0 and not allow_negative:
                raise AnalysisError(
                    f"Edge {edge.id} has negative cost {value}; use bellman-ford"
                )
            return value
        return cost

    def _build_route(self, network: Network, edges: List[NetworkEdge], start: str,
                     cost: float) -> Route:
        path = [start] + [e.target for e in edges]
        positions: List[Position] = []
        distance = 0.0
        for edge in edges:
            if edge.geometry:
                segment = edge.geometry
                distance += edge.length if edge.length is not None else path_length(segment)
            else:
                segment = [network.nodes[edge.source].position, network.nodes[edge.target].position]
                distance += euclidean(segment[0], segment[1])
            for position in segment:
                if not positions or positions[-1] != position:
                    positions.append(position)
        geometry = LineString(tuple(positions)) if len(positions) >= 2 else None
        return Route(path=path, cost=cost, distance=distance, geometry=geometry)

    @staticmethod
    def _edges_to(previous: Dict[str, NetworkEdge], start: str, end: str) -> List[NetworkEdge]:
        edges = []
        current = end
        while current != start:
            edge = previous[current]
            edges.append(edge)
            current = edge.source
        edges.reverse()
        return edges

    def _dijkstra_tree(self, network: Network, start: str, cost: Callable[[NetworkEdge], float],
                       target: Optional[str] = None,
                       max_cost: float = math.inf) -> Tuple[Dict[str, float], Dict[str, NetworkEdge]]:
        """Settled costs and predecessor edges from ``start``."""
        distances: Dict[str, float] = {start: 0.0}
        previous: Dict[str, NetworkEdge] = {}
        settled = set()
        counter = itertools.count()
        heap = [(0.0, next(counter), start)]
        while heap:
            dist, _, node = heapq.heappop(heap)
            if node in settled:
                continue
            settled.add(node)
            if node == target:
                break
            for edge in network.outgoing(node):
                alt = dist + cost(edge)
                if alt <= max_cost and alt < distances.get(edge.target, math.inf):
                    distances[edge.target] = alt
                    previous[edge.target] = edge
                    heapq.heappush(heap, (alt, next(counter), edge.target))
        return {n: distances[n] for n in settled}, previous

    # -- shortest paths -----------------------------------------------------

    def shortest_path(self, network: Network, start: str, end: str,
                      algorithm: Union[str, RoutingAlgorithm] = RoutingAlgorithm.DIJKSTRA,
                      impedance: Optional[str] = None) -> Optional[Route]:
        """Route from ``start`` to ``end``, or None when ``end`` is unreachable."""
        try:
            algorithm = RoutingAlgorithm(algorithm)
        except ValueError:
            raise AnalysisError(f"Unknown routing algorithm: {algorithm}")
        if algorithm == RoutingAlgorithm.ASTAR:
            return self.astar(network, start, end, impedance)
        if algorithm == RoutingAlgorithm.BELLMAN_FORD:
            return self.bellman_ford(network, start, end, impedance)
        return self.dijkstra(network, start, end, impedance)

    def dijkstra(self, network: Network, start: str, end: str,
                 impedance: Optional[str] = None) -> Optional[Route]:
        self._require_nodes(network, start, end)
        with get_logging_manager().operation("network", "dijkstra", nodes=len(network.nodes)):
            distances, previous = self._dijkstra_tree(network, start, self._cost_fn(impedance),
                                                      target=end)
            if end not in distances:
                return None
            edges = self._edges_to(previous, start, end)
            return self._build_route(network, edges, start, distances[end])

    def astar(self, network: Network, start: str, end: str,
              impedance: Optional[str] = None) -> Optional[Route]:
        """
        A* search with a straight-line distance heuristic.

        The heuristic is only admissible when edge costs are at least the
        Euclidean distance between their nodes; otherwise the route may not be
        optimal.
        """
        self._require_nodes(network, start, end)
        cost = self._cost_fn(impedance)
        goal = network.nodes[end].position

        def heuristic(node_id: str) -> float:
            return euclidean(network.nodes[node_id].position, goal)

        g_score: Dict[str, float] = {start: 0.0}
        previous: Dict[str, NetworkEdge] = {}
        counter = itertools.count()
        open_heap = [(heuristic(start), next(counter), 0.0, start)]
        with get_logging_manager().operation("network", "astar", nodes=len(network.nodes)):
            while open_heap:
                _, _, g, node = heapq.heappop(open_heap)
                if g > g_score.get(node, math.inf):
                    continue
                if node == end:
                    edges = self._edges_to(previous, start, end)
                    return self._build_route(network, edges, start, g)
                for edge in network.outgoing(node):
                    tentative = g + cost(edge)
                    if tentative < g_score.get(edge.target, math.inf):
                        g_score[edge.target] = tentative
                        previous[edge.target] = edge
                        heapq.heappush(open_heap, (tentative + heuristic(edge.target),
                                                   next(counter), tentative, edge.target))
        return None

    def bellman_ford(self, network: Network, start: str, end: str,
                     impedance: Optional[str] = None) -> Optional[Route]:
        """Shortest path allowing negative edge costs; raises on a reachable negative cycle."""
        self._require_nodes(network, start, end)
        cost = self._cost_fn(impedance, allow_negative=True)
        distances: Dict[str, float] = {node_id: math.inf for node_id in network.nodes}
        distances[start] = 0.0
        previous: Dict[str, NetworkEdge] = {}

        with get_logging_manager().operation("network", "bellman_ford", nodes=len(network.nodes)):
            for _ in range(len(network.nodes) - 1):
                changed = False
                for edge in network.edges.values():
                    if distances[edge.source] == math.inf:
                        continue
                    alt = distances[edge.source] + cost(edge)
                    if alt < distances[edge.target]:
                        distances[edge.target] = alt
                        previous[edge.target] = edge
                        changed = True
                if not changed:
                    break

            for edge in network.edges.values():
                if distances[edge.source] == math.inf:
                    continue
                if distances[edge.source] + cost(edge) < distances[edge.target]:
                    raise report_error(
                        TopologyError("Network contains a negative cycle",
                                      metadata={'edge': edge.id}),
                        "network"
                    )

        if distances[end] == math.inf:
            return None
        edges = self._edges_to(previous, start, end)
        return self._build_route(network, edges, start, distances[end])

    # -- derived queries ----------------------------------------------------

    def service_area(self, network: Network, start: str, max_cost: float,
                     impedance: Optional[str] = None) -> Dict[str, float]:
        """Every node reachable within ``max_cost``, mapped to its cost, cheapest first."""
        self._require_nodes(network, start)
        if max_cost < 0:
            raise AnalysisError(f"max_cost must be non-negative, got {max_cost}")
        distances, _ = self._dijkstra_tree(network, start, self._cost_fn(impedance),
                                           max_cost=max_cost)
        return dict(sorted(distances.items(), key=lambda item: item[1]))

    def all_paths(self, network: Network, start: str, end: str,
                  max_paths: Optional[int] = None, max_depth: Optional[int] = None,
                  impedance: Optional[str] = None) -> List[Route]:
        """
        Enumerate simple paths from ``start`` to ``end``, cheapest first.

        Depth-first search with an explicit stack. Enumeration stops after
        ``max_paths`` paths are found, and paths longer than ``max_depth``
        edges are not followed.
        """
        self._require_nodes(network, start, end)
        max_paths = max_paths or self.config.max_paths
        max_depth = max_depth or self.config.max_path_depth
        cost = self._cost_fn(impedance, allow_negative=True)

        routes: List[Route] = []
        stack: List[Tuple[str, List[NetworkEdge], float]] = [(start, [], 0.0)]
        while stack and len(routes) < max_paths:
            node, edges, total = stack.pop()
            if node == end and edges:
                routes.append(self._build_route(network, edges, start, total))
                continue
            if len(edges) >= max_depth:
                continue
            visited = {start} | {e.target for e in edges}
            for edge in reversed(network.outgoing(node)):
                if edge.target not in visited or (edge.target == end and end == start):
                    stack.append((edge.target, edges + [edge], total + cost(edge)))

        routes.sort(key=lambda r: r.cost)
        logger.debug("Enumerated paths", start=start, end=end, found=len(routes))
        return routes

    def tsp(self, network: Network, node_ids: Sequence[str],
            impedance: Optional[str] = None) -> Optional[Route]:
        """
        Nearest-neighbour tour through ``node_ids``, returning to the first.

        Each step moves to the unvisited stop with the cheapest shortest-path
        cost. Stops that cannot be reached end the tour early, and the closing
        leg is skipped when the start is unreachable. Not optimal.
        """
        if len(node_ids) < 2:
            return None
        self._require_nodes(network, *node_ids)
        cost = self._cost_fn(impedance)

        stops = [node_ids[0]]
        remaining = [n for n in dict.fromkeys(node_ids[1:]) if n != node_ids[0]]
        legs: List[NetworkEdge] = []
        total = 0.0
        with get_logging_manager().operation("network", "tsp", stops=len(node_ids)):
            while remaining:
                current = stops[-1]
                distances, previous = self._dijkstra_tree(network, current, cost)
                reachable = [n for n in remaining if n in distances]
                if not reachable:
                    logger.warning("Tour ended early, stops unreachable",
                                   unreachable=remaining)
                    break
                nearest = min(reachable, key=lambda n: distances[n])
                legs.extend(self._edges_to(previous, current, nearest))
                total += distances[nearest]
                stops.append(nearest)
                remaining.remove(nearest)

            distances, previous = self._dijkstra_tree(network, stops[-1], cost, target=stops[0])
            if stops[0] in distances and stops[-1] != stops[0]:
                legs.extend(self._edges_to(previous, stops[-1], stops[0]))
                total += distances[stops[0]]
                stops.append(stops[0])

        route = self._build_route(network, legs, stops[0], total)
        route.stops = stops
        return route
