"""
Geometry Factory - construction, measurement and basic editing of geometries.

Construction is strict: a geometry that violates a structural invariant is
never returned, a ``GeometryError`` is raised instead. Everything else here
(bounds, centroid, area, length, distance) is a pure function of its inputs.

Key Features:
- Checked constructors for every geometry variant
- Parametric generators (circle, ellipse, regular polygon, star, rectangle)
- Bounds, centroid, shoelace area with holes subtracted, length
- Euclidean and haversine (great-circle) distances
- Ring closing, reversal, position extraction and deep cloning
"""

import copy
import math
from typing import Iterable, List, Optional, Sequence

import numpy as np

from ..config_manager import AnalysisConfig, get_analysis_defaults
from ..error_handler import GeometryError
from ..logging_manager import get_logger
from .model import (
    Bounds, Geometry, GeometryCollection, LineString, MultiLineString, MultiPoint,
    MultiPolygon, Point, Polygon, Position, Ring, to_position, unsupported_geometry
)

logger = get_logger(__name__)

EARTH_RADIUS_M = 6371000.0


# ============================================================================
# Shared helpers
# ============================================================================

def extract_positions(geometry: Geometry) -> List[Position]:
    """Flatten any geometry to its constituent positions, in order."""
    if isinstance(geometry, Point):
        return [geometry.position]
    if isinstance(geometry, (LineString, MultiPoint)):
        return list(geometry.positions)
    if isinstance(geometry, Polygon):
        return [p for ring in geometry.rings for p in ring]
    if isinstance(geometry, MultiLineString):
        return [p for line in geometry.lines for p in line]
    if isinstance(geometry, MultiPolygon):
        return [p for rings in geometry.polygons for ring in rings for p in ring]
    if isinstance(geometry, GeometryCollection):
        return [p for g in geometry.geometries for p in extract_positions(g)]
    raise unsupported_geometry(geometry)


def _distinct_vertices(geometry: Geometry) -> List[Position]:
    if isinstance(geometry, Polygon):
        return [p for ring in geometry.rings for p in _open_ring(ring)]
    if isinstance(geometry, MultiPolygon):
        return [p for rings in geometry.polygons for ring in rings for p in _open_ring(ring)]
    if isinstance(geometry, GeometryCollection):
        return [p for g in geometry.geometries for p in _distinct_vertices(g)]
    return extract_positions(geometry)


def _open_ring(ring: Sequence[Position]) -> Sequence[Position]:
    return ring[:-1] if len(ring) > 1 and is_closed(ring) else ring


def positions_equal(a: Sequence[float], b: Sequence[float], tolerance: float = 0.0) -> bool:
    """Compare the x/y components of two positions."""
    return abs(a[0] - b[0]) <= tolerance and abs(a[1] - b[1]) <= tolerance


def is_closed(ring: Sequence[Sequence[float]]) -> bool:
    return len(ring) > 0 and positions_equal(ring[0], ring[-1])


def euclidean(a: Sequence[float], b: Sequence[float]) -> float:
    """Planar distance, including dz when both positions carry z."""
    dx = b[0] - a[0]
    dy = b[1] - a[1]
    if len(a) > 2 and len(b) > 2:
        dz = b[2] - a[2]
        return math.sqrt(dx * dx + dy * dy + dz * dz)
    return math.sqrt(dx * dx + dy * dy)


def haversine(a: Sequence[float], b: Sequence[float], radius: float = EARTH_RADIUS_M) -> float:
    """Great-circle distance between two (lon, lat) positions in degrees."""
    lat1, lat2 = math.radians(a[1]), math.radians(b[1])
    dlat = lat2 - lat1
    dlon = math.radians(b[0] - a[0])
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return radius * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def ring_signed_area(ring: Sequence[Sequence[float]]) -> float:
    """Shoelace area; positive for counter-clockwise rings."""
    if len(ring) < 3:
        return 0.0
    coords = np.asarray([(p[0], p[1]) for p in ring], dtype=float)
    x, y = coords[:, 0], coords[:, 1]
    return float(np.dot(x[:-1], y[1:]) - np.dot(x[1:], y[:-1])) / 2.0


def polygon_area(rings: Sequence[Ring]) -> float:
    """Exterior area minus hole areas."""
    if not rings:
        return 0.0
    area = abs(ring_signed_area(rings[0]))
    for hole in rings[1:]:
        area -= abs(ring_signed_area(hole))
    return abs(area)


def path_length(positions: Sequence[Sequence[float]]) -> float:
    return sum(euclidean(positions[i], positions[i + 1]) for i in range(len(positions) - 1))


def bounds_of_positions(positions: Sequence[Sequence[float]]) -> Bounds:
    """Bounds of a non-empty position list, with z range when every position has z."""
    if not positions:
        raise GeometryError("Cannot compute bounds of an empty geometry")
    xs = [p[0] for p in positions]
    ys = [p[1] for p in positions]
    if all(len(p) > 2 for p in positions):
        zs = [p[2] for p in positions]
        return Bounds(min(xs), min(ys), max(xs), max(ys), min(zs), max(zs))
    return Bounds(min(xs), min(ys), max(xs), max(ys))


# ============================================================================
# Factory
# ============================================================================

class GeometryFactory:
    """
    Checked geometry construction and measurement.

    The factory holds no mutable state; ``config`` only supplies defaults
    (sphere radius, circle steps).
    """

    def __init__(self, config: Optional[AnalysisConfig] = None):
        """
        Parameters
        ----------
        config : AnalysisConfig, optional
            Source of default ``earth_radius`` and ``circle_steps``.
        """
        self.config = config or get_analysis_defaults()

    # -- constructors -------------------------------------------------------

    def create_point(self, coordinates: Sequence[float]) -> Point:
        try:
            return Point(to_position(coordinates))
        except (TypeError, ValueError) as e:
            raise GeometryError(f"Invalid point coordinates: {e}", cause=e)

    def create_line_string(self, coordinates: Iterable[Sequence[float]]) -> LineString:
        positions = self._positions(coordinates)
        if len(positions) < 2:
            raise GeometryError(
                f"LineString must have at least 2 positions, got {len(positions)}"
            )
        return LineString(tuple(positions))

    def create_polygon(self, rings: Iterable[Iterable[Sequence[float]]]) -> Polygon:
        """
        Create a polygon from an exterior ring followed by optional holes.

        Raises
        ------
        GeometryError
            If there are no rings, or any ring has fewer than 4 positions or is
            not closed.
        """
        rings = list(rings)
        # A bare exterior ring is accepted as well as a list of rings
        if rings and len(rings[0]) > 0 and isinstance(rings[0][0], (int, float)):
            rings = [rings]
        checked = tuple(self._ring(ring, index) for index, ring in enumerate(rings))
        if not checked:
            raise GeometryError("Polygon must have at least one ring")
        return Polygon(checked)

    def create_multi_point(self, coordinates: Iterable[Sequence[float]]) -> MultiPoint:
        positions = self._positions(coordinates)
        if not positions:
            raise GeometryError("MultiPoint must contain at least one point")
        return MultiPoint(tuple(positions))

    def create_multi_line_string(self, lines: Iterable[Iterable[Sequence[float]]]) -> MultiLineString:
        checked = tuple(self.create_line_string(line).positions for line in lines)
        if not checked:
            raise GeometryError("MultiLineString must contain at least one line")
        return MultiLineString(checked)

    def create_multi_polygon(self, polygons: Iterable[Iterable[Iterable[Sequence[float]]]]) -> MultiPolygon:
        checked = tuple(self.create_polygon(rings).rings for rings in polygons)
        if not checked:
            raise GeometryError("MultiPolygon must contain at least one polygon")
        return MultiPolygon(checked)

    def create_geometry_collection(self, geometries: Iterable[Geometry]) -> GeometryCollection:
        return GeometryCollection(tuple(geometries))

    def create_rectangle(self, bounds: Bounds) -> Polygon:
        return Polygon(((
            (bounds.min_x, bounds.min_y),
            (bounds.max_x, bounds.min_y),
            (bounds.max_x, bounds.max_y),
            (bounds.min_x, bounds.max_y),
            (bounds.min_x, bounds.min_y),
        ),))

    # -- parametric generators ----------------------------------------------

    def create_circle(self, center: Sequence[float], radius: float,
                      steps: Optional[int] = None) -> Polygon:
        """Approximate a circle with ``steps`` distinct vertices plus a closing one."""
        steps = steps or self.config.circle_steps
        return self.create_ellipse(center, radius, radius, steps=steps)

    def create_ellipse(self, center: Sequence[float], radius_x: float, radius_y: float,
                       steps: Optional[int] = None, rotation: float = 0.0) -> Polygon:
        """
        Approximate an ellipse.

        Parameters
        ----------
        center : sequence of float
            Ellipse centre.
        radius_x, radius_y : float
            Semi-axes along x and y before rotation.
        steps : int, optional
            Number of distinct vertices, default ``config.circle_steps``.
        rotation : float, default 0.0
            Counter-clockwise rotation in degrees.
        """
        steps = steps or self.config.circle_steps
        if steps < 3:
            raise GeometryError(f"steps must be at least 3, got {steps}")
        if radius_x <= 0 or radius_y <= 0:
            raise GeometryError("Ellipse radii must be positive")
        cx, cy = float(center[0]), float(center[1])
        cos_r, sin_r = math.cos(math.radians(rotation)), math.sin(math.radians(rotation))
        ring = []
        for i in range(steps):
            angle = i / steps * 2 * math.pi
            dx = radius_x * math.cos(angle)
            dy = radius_y * math.sin(angle)
            ring.append((cx + dx * cos_r - dy * sin_r, cy + dx * sin_r + dy * cos_r))
        ring.append(ring[0])
        return Polygon((tuple(ring),))

    def create_regular_polygon(self, center: Sequence[float], radius: float, sides: int) -> Polygon:
        if sides < 3:
            raise GeometryError(f"Regular polygon needs at least 3 sides, got {sides}")
        cx, cy = float(center[0]), float(center[1])
        ring = []
        for i in range(sides):
            angle = i / sides * 2 * math.pi - math.pi / 2
            ring.append((cx + radius * math.cos(angle), cy + radius * math.sin(angle)))
        ring.append(ring[0])
        return Polygon((tuple(ring),))

    def create_star(self, center: Sequence[float], outer_radius: float,
                    inner_radius: float, points: int = 5) -> Polygon:
        if points < 3:
            raise GeometryError(f"Star needs at least 3 points, got {points}")
        cx, cy = float(center[0]), float(center[1])
        ring = []
        for i in range(points * 2):
            radius = outer_radius if i % 2 == 0 else inner_radius
            angle = i / (points * 2) * 2 * math.pi - math.pi / 2
            ring.append((cx + radius * math.cos(angle), cy + radius * math.sin(angle)))
        ring.append(ring[0])
        return Polygon((tuple(ring),))

    # -- measurement --------------------------------------------------------

    def get_bounds(self, geometry: Geometry) -> Bounds:
        return bounds_of_positions(extract_positions(geometry))

    def get_centroid(self, geometry: Geometry) -> Point:
        """Vertex mean (z included when every position has z).

        Ring closing positions are skipped so a closed ring weights each
        vertex once.
        """
        positions = _distinct_vertices(geometry)
        if not positions:
            raise GeometryError("Cannot compute centroid of an empty geometry")
        if all(len(p) > 2 for p in positions):
            arr = np.asarray([p[:3] for p in positions], dtype=float)
        else:
            arr = np.asarray([p[:2] for p in positions], dtype=float)
        return Point(tuple(float(v) for v in arr.mean(axis=0)))

    def get_area(self, geometry: Geometry) -> float:
        if isinstance(geometry, Polygon):
            return polygon_area(geometry.rings)
        if isinstance(geometry, MultiPolygon):
            return sum(polygon_area(rings) for rings in geometry.polygons)
        if isinstance(geometry, GeometryCollection):
            return sum(self.get_area(g) for g in geometry.geometries)
        return 0.0

    def get_length(self, geometry: Geometry) -> float:
        """Length of lines, or perimeter of polygons (all rings)."""
        if isinstance(geometry, LineString):
            return path_length(geometry.positions)
        if isinstance(geometry, MultiLineString):
            return sum(path_length(line) for line in geometry.lines)
        if isinstance(geometry, Polygon):
            return sum(path_length(ring) for ring in geometry.rings)
        if isinstance(geometry, MultiPolygon):
            return sum(path_length(ring) for rings in geometry.polygons for ring in rings)
        if isinstance(geometry, GeometryCollection):
            return sum(self.get_length(g) for g in geometry.geometries)
        return 0.0

    def distance(self, a: Sequence[float], b: Sequence[float]) -> float:
        return euclidean(a, b)

    def haversine_distance(self, a: Sequence[float], b: Sequence[float],
                           radius: Optional[float] = None) -> float:
        """Great-circle distance in meters (or units of ``radius``) between lon/lat positions."""
        return haversine(a, b, radius or self.config.earth_radius)

    # -- editing ------------------------------------------------------------

    def close_ring(self, ring: Sequence[Sequence[float]]) -> Ring:
        positions = tuple(to_position(p) for p in ring)
        if positions and not is_closed(positions):
            positions = positions + (positions[0],)
        return positions

    def reverse(self, geometry: Geometry) -> Geometry:
        """Reverse the vertex order of every line and ring."""
        if isinstance(geometry, (Point, MultiPoint)):
            return geometry
        if isinstance(geometry, LineString):
            return LineString(geometry.positions[::-1])
        if isinstance(geometry, Polygon):
            return Polygon(tuple(ring[::-1] for ring in geometry.rings))
        if isinstance(geometry, MultiLineString):
            return MultiLineString(tuple(line[::-1] for line in geometry.lines))
        if isinstance(geometry, MultiPolygon):
            return MultiPolygon(tuple(tuple(ring[::-1] for ring in rings)
                                      for rings in geometry.polygons))
        if isinstance(geometry, GeometryCollection):
            return GeometryCollection(tuple(self.reverse(g) for g in geometry.geometries))
        raise unsupported_geometry(geometry)

    def extract_positions(self, geometry: Geometry) -> List[Position]:
        return extract_positions(geometry)

    def clone(self, geometry: Geometry) -> Geometry:
        return copy.deepcopy(geometry)

    # -- internals ----------------------------------------------------------

    def _positions(self, coordinates: Iterable[Sequence[float]]) -> List[Position]:
        try:
            return [to_position(c) for c in coordinates]
        except (TypeError, ValueError) as e:
            raise GeometryError(f"Invalid coordinates: {e}", cause=e)

    def _ring(self, ring: Iterable[Sequence[float]], index: int) -> Ring:
        positions = self._positions(ring)
        if len(positions) < 4:
            raise GeometryError(
                f"Polygon ring {index} must have at least 4 positions, got {len(positions)}"
            )
        if not is_closed(positions):
            raise GeometryError(f"Polygon ring {index} is not closed",
                                location=positions[0])
        return tuple(positions)
