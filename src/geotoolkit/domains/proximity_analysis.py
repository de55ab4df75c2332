"""
Proximity Analysis Domain - distance-based queries between point sets.

Every query takes a ``geodetic`` switch: False measures planar Euclidean
distance in coordinate units, True measures great-circle (haversine) distance
in meters on lon/lat positions.

Key Features:
- Nearest-N, within-distance and k-NN queries (k-NN through scikit-learn)
- Full distance matrices, vectorized per row
- Point-to-segment distance and route-corridor membership
- Facility allocation and minimum distance to arbitrary geometries
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from sklearn.neighbors import NearestNeighbors

from ..cancellation import CancellationToken, check_cancelled
from ..config_manager import AnalysisConfig, get_analysis_defaults
from ..error_handler import AnalysisError
from ..logging_manager import get_logger, get_logging_manager
from ..geometry.factory import haversine
from ..geometry.model import Geometry, LineString, Position
from ..geometry.topology import TopologyEngine, closest_point_on_segment

logger = get_logger(__name__)


@dataclass
class Neighbor:
    """A candidate point matched by a proximity query."""
    index: int
    position: Position
    distance: float


@dataclass
class FacilityAllocation:
    demand_index: int
    facility_index: int
    distance: float


def _as_array(points: Sequence[Sequence[float]]) -> np.ndarray:
    arr = np.asarray([p[:2] for p in points], dtype=float)
    return arr.reshape(-1, 2)


def haversine_matrix(coords1: np.ndarray, coords2: np.ndarray, radius: float) -> np.ndarray:
    """Great-circle distances between lon/lat rows of two arrays."""
    lon1 = np.radians(coords1[:, 0:1])
    lat1 = np.radians(coords1[:, 1:2])
    lon2 = np.radians(coords2[:, 0]).reshape(1, -1)
    lat2 = np.radians(coords2[:, 1]).reshape(1, -1)
    a = (np.sin((lat2 - lat1) / 2) ** 2 +
         np.cos(lat1) * np.cos(lat2) * np.sin((lon2 - lon1) / 2) ** 2)
    return 2 * radius * np.arctan2(np.sqrt(a), np.sqrt(np.clip(1 - a, 0.0, None)))


def euclidean_matrix(coords1: np.ndarray, coords2: np.ndarray) -> np.ndarray:
    dx = coords1[:, 0:1] - coords2[:, 0].reshape(1, -1)
    dy = coords1[:, 1:2] - coords2[:, 1].reshape(1, -1)
    return np.sqrt(dx * dx + dy * dy)


class ProximityAnalyzer:
    """Point-set proximity queries."""

    def __init__(self, config: Optional[AnalysisConfig] = None,
                 topology: Optional[TopologyEngine] = None):
        self.config = config or get_analysis_defaults()
        self.topology = topology or TopologyEngine()

    def distance(self, a: Sequence[float], b: Sequence[float], geodetic: bool = False) -> float:
        if geodetic:
            return haversine(a, b, self.config.earth_radius)
        return math.hypot(b[0] - a[0], b[1] - a[1])

    def _distances_from(self, query: Sequence[float], candidates: Sequence[Sequence[float]],
                        geodetic: bool) -> np.ndarray:
        coords = _as_array(candidates)
        q = _as_array([query])
        if geodetic:
            return haversine_matrix(q, coords, self.config.earth_radius)[0]
        return euclidean_matrix(q, coords)[0]

    # -- point queries ------------------------------------------------------

    def nearest_n(self, query: Sequence[float], candidates: Sequence[Sequence[float]],
                  n: int = 1, geodetic: bool = False) -> List[Neighbor]:
        """The ``n`` closest candidates, nearest first. Ties keep input order."""
        if n < 1:
            raise AnalysisError(f"n must be at least 1, got {n}")
        if len(candidates) == 0:
            return []
        distances = self._distances_from(query, candidates, geodetic)
        order = np.argsort(distances, kind='stable')[:n]
        return [Neighbor(int(i), tuple(candidates[i]), float(distances[i])) for i in order]

    def within_distance(self, query: Sequence[float], candidates: Sequence[Sequence[float]],
                        max_distance: float, geodetic: bool = False) -> List[Neighbor]:
        """Candidates no farther than ``max_distance``, nearest first."""
        if max_distance < 0:
            raise AnalysisError(f"max_distance must be non-negative, got {max_distance}")
        if len(candidates) == 0:
            return []
        distances = self._distances_from(query, candidates, geodetic)
        order = np.argsort(distances, kind='stable')
        return [Neighbor(int(i), tuple(candidates[i]), float(distances[i]))
                for i in order if distances[i] <= max_distance]

    def k_nearest_neighbors(self, query_points: Sequence[Sequence[float]],
                            reference_points: Sequence[Sequence[float]],
                            k: int = 1, geodetic: bool = False) -> Tuple[np.ndarray, np.ndarray]:
        """
        Find k nearest reference points for each query point.

        Parameters
        ----------
        query_points : sequence of positions
            Points to find neighbors for.
        reference_points : sequence of positions
            Points to search within.
        k : int, default 1
            Number of neighbors; capped at the number of reference points.
        geodetic : bool, default False
            Use a ball tree with the haversine metric on lon/lat input.

        Returns
        -------
        distances : ndarray
            Shape (n_queries, k), ascending per row (meters when geodetic).
        indices : ndarray
            Indices into ``reference_points``.
        """
        if k < 1:
            raise AnalysisError(f"k must be at least 1, got {k}")
        if len(reference_points) == 0 or len(query_points) == 0:
            return np.empty((len(query_points), 0)), np.empty((len(query_points), 0), dtype=int)
        k = min(k, len(reference_points))

        reference = _as_array(reference_points)
        queries = _as_array(query_points)
        if geodetic:
            # scikit-learn's haversine metric expects [lat, lon] in radians
            model = NearestNeighbors(n_neighbors=k, algorithm='ball_tree', metric='haversine')
            model.fit(np.radians(reference[:, ::-1]))
            distances, indices = model.kneighbors(np.radians(queries[:, ::-1]))
            distances = distances * self.config.earth_radius
        else:
            model = NearestNeighbors(n_neighbors=k, algorithm='auto', metric='euclidean')
            model.fit(reference)
            distances, indices = model.kneighbors(queries)

        logger.debug("k-NN query complete", queries=len(queries), k=k, geodetic=geodetic)
        return distances, indices

    def distance_matrix(self, points1: Sequence[Sequence[float]],
                        points2: Optional[Sequence[Sequence[float]]] = None,
                        geodetic: bool = False,
                        cancel_token: Optional[CancellationToken] = None) -> np.ndarray:
        """Distance matrix of shape (len(points1), len(points2)); points2 defaults to points1."""
        coords1 = _as_array(points1)
        coords2 = coords1 if points2 is None else _as_array(points2)
        matrix = np.zeros((len(coords1), len(coords2)))

        with get_logging_manager().operation("proximity", "distance_matrix",
                                             rows=len(coords1), cols=len(coords2)):
            for i in range(len(coords1)):
                check_cancelled(cancel_token, "proximity")
                row = coords1[i:i + 1]
                if geodetic:
                    matrix[i] = haversine_matrix(row, coords2, self.config.earth_radius)[0]
                else:
                    matrix[i] = euclidean_matrix(row, coords2)[0]
        return matrix

    # -- segments and corridors ---------------------------------------------

    def point_to_segment_distance(self, point: Sequence[float], start: Sequence[float],
                                  end: Sequence[float], geodetic: bool = False) -> float:
        """Distance from a point to the closest point of segment start-end.

        In geodetic mode the closest point is found in lon/lat space and the
        distance to it is measured along the great circle.
        """
        closest = closest_point_on_segment(point, start, end)
        return self.distance(point, closest, geodetic)

    def distance_to_path(self, point: Sequence[float], path: Sequence[Sequence[float]],
                         geodetic: bool = False) -> float:
        if len(path) == 1:
            return self.distance(point, path[0], geodetic)
        return min(self.point_to_segment_distance(point, a, b, geodetic)
                   for a, b in zip(path[:-1], path[1:]))

    def route_corridor(self, points: Sequence[Sequence[float]],
                       route: Union[LineString, Sequence[Sequence[float]]],
                       corridor_width: float, geodetic: bool = False) -> List[int]:
        """Indices of points within ``corridor_width`` of the route line."""
        path = route.positions if isinstance(route, LineString) else list(route)
        if not path:
            raise AnalysisError("Route must contain at least one position")
        if corridor_width < 0:
            raise AnalysisError(f"corridor_width must be non-negative, got {corridor_width}")
        return [i for i, p in enumerate(points)
                if self.distance_to_path(p, path, geodetic) <= corridor_width]

    # -- facilities ---------------------------------------------------------

    def nearest_facility(self, demand_points: Sequence[Sequence[float]],
                         facilities: Sequence[Sequence[float]],
                         geodetic: bool = False) -> List[FacilityAllocation]:
        """Allocate every demand point to its closest facility."""
        if len(facilities) == 0:
            raise AnalysisError("At least one facility is required")
        if len(demand_points) == 0:
            return []
        matrix = self.distance_matrix(demand_points, facilities, geodetic)
        closest = np.argmin(matrix, axis=1)
        return [FacilityAllocation(i, int(j), float(matrix[i, j]))
                for i, j in enumerate(closest)]

    def allocate_to_facilities(self, demand_points: Sequence[Sequence[float]],
                               facilities: Sequence[Sequence[float]],
                               geodetic: bool = False) -> Dict[int, List[int]]:
        """Facility index -> demand indices served by it."""
        allocation: Dict[int, List[int]] = {}
        for item in self.nearest_facility(demand_points, facilities, geodetic):
            allocation.setdefault(item.facility_index, []).append(item.demand_index)
        return allocation

    def minimum_distance_to_features(self, query_points: Sequence[Sequence[float]],
                                     geometries: Sequence[Geometry]) -> List[float]:
        """Planar distance from each point to the closest of ``geometries``."""
        if len(geometries) == 0:
            raise AnalysisError("At least one feature geometry is required")
        return [min(self.topology.distance_to_geometry(p, g) for g in geometries)
                for p in query_points]
