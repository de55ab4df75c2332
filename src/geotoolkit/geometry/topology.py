"""
Topology Engine - spatial predicates between geometries.

Predicates are evaluated with a bounding-box rejection test followed by
point-in-polygon ray casting, cross-product point-on-line tests and
orientation (CCW) segment intersection tests.

Key Features:
- relate() dispatch over eight named relationships
- intersects / contains / within / overlaps / touches / crosses / disjoint / equals
- Point-in-polygon with exterior inclusive and holes exclusive
- Exact segment intersection point, nearest point and point-to-geometry distance
"""

import math
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

from ..error_handler import TopologyError
from ..logging_manager import get_logger
from .factory import bounds_of_positions, euclidean, extract_positions
from .model import (
    Geometry, GeometryCollection, LineString, MultiLineString, MultiPoint,
    MultiPolygon, Point, Polygon, Position
)

logger = get_logger(__name__)

COLLINEAR_TOLERANCE = 1e-10
POINT_TOLERANCE = 1e-10

Segment = Tuple[Position, Position]


class SpatialRelationship(str, Enum):
    """Supported relationship names."""
    INTERSECTS = "intersects"
    CONTAINS = "contains"
    WITHIN = "within"
    OVERLAPS = "overlaps"
    TOUCHES = "touches"
    CROSSES = "crosses"
    DISJOINT = "disjoint"
    EQUALS = "equals"


def parse_relationship(relationship: Union[str, SpatialRelationship]) -> SpatialRelationship:
    """Resolve a relationship name, raising ``TopologyError`` for unknown names."""
    try:
        return SpatialRelationship(relationship)
    except ValueError:
        valid = [r.value for r in SpatialRelationship]
        raise TopologyError(f"Unknown spatial relationship: {relationship}. Valid: {valid}")


def ring_contains(ring: Sequence[Sequence[float]], x: float, y: float) -> bool:
    """Even-odd ray casting against a single ring."""
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def ccw(a: Sequence[float], b: Sequence[float], c: Sequence[float]) -> bool:
    return (c[1] - a[1]) * (b[0] - a[0]) > (b[1] - a[1]) * (c[0] - a[0])


def segments_intersect(p1: Sequence[float], p2: Sequence[float],
                       p3: Sequence[float], p4: Sequence[float]) -> bool:
    """Orientation test for a proper crossing of segments p1-p2 and p3-p4."""
    return ccw(p1, p3, p4) != ccw(p2, p3, p4) and ccw(p1, p2, p3) != ccw(p1, p2, p4)


def line_intersection(p1: Sequence[float], p2: Sequence[float],
                      p3: Sequence[float], p4: Sequence[float]) -> Optional[Position]:
    """
    Intersection point of segments p1-p2 and p3-p4.

    Returns
    -------
    position : tuple or None
        ``None`` when the segments are parallel or do not meet within
        their parameter ranges t, u in [0, 1].
    """
    x1, y1, x2, y2 = p1[0], p1[1], p2[0], p2[1]
    x3, y3, x4, y4 = p3[0], p3[1], p4[0], p4[1]

    denom = (x1 - x2) * (y3 - y4) - (y1 - y2) * (x3 - x4)
    if abs(denom) < COLLINEAR_TOLERANCE:
        return None

    t = ((x1 - x3) * (y3 - y4) - (y1 - y3) * (x3 - x4)) / denom
    u = -((x1 - x2) * (y1 - y3) - (y1 - y2) * (x1 - x3)) / denom

    if 0 <= t <= 1 and 0 <= u <= 1:
        return (x1 + t * (x2 - x1), y1 + t * (y2 - y1))
    return None


def closest_point_on_segment(p: Sequence[float], a: Sequence[float],
                             b: Sequence[float]) -> Position:
    dx, dy = b[0] - a[0], b[1] - a[1]
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return (a[0], a[1])
    t = max(0.0, min(1.0, ((p[0] - a[0]) * dx + (p[1] - a[1]) * dy) / length_sq))
    return (a[0] + t * dx, a[1] + t * dy)


def geometry_segments(geometry: Geometry) -> List[Segment]:
    """All consecutive-position segments of lines and rings."""
    if isinstance(geometry, (Point, MultiPoint)):
        return []
    if isinstance(geometry, LineString):
        paths = [geometry.positions]
    elif isinstance(geometry, Polygon):
        paths = list(geometry.rings)
    elif isinstance(geometry, MultiLineString):
        paths = list(geometry.lines)
    elif isinstance(geometry, MultiPolygon):
        paths = [ring for rings in geometry.polygons for ring in rings]
    elif isinstance(geometry, GeometryCollection):
        return [s for g in geometry.geometries for s in geometry_segments(g)]
    else:
        raise TopologyError(f"Unsupported geometry type: {type(geometry).__name__}")
    return [(path[i], path[i + 1]) for path in paths for i in range(len(path) - 1)]


class TopologyEngine:
    """
    Spatial relationship tests between two geometries.

    ``contains`` only holds for polygonal containers. ``overlaps``,
    ``touches`` and ``crosses`` are derived from ``intersects`` and
    ``contains`` so that the relationships stay mutually consistent.
    """

    def relate(self, geom_a: Geometry, geom_b: Geometry,
               relationship: Union[str, SpatialRelationship]) -> bool:
        rel = parse_relationship(relationship)
        handler = {
            SpatialRelationship.INTERSECTS: self.intersects,
            SpatialRelationship.CONTAINS: self.contains,
            SpatialRelationship.WITHIN: self.within,
            SpatialRelationship.OVERLAPS: self.overlaps,
            SpatialRelationship.TOUCHES: self.touches,
            SpatialRelationship.CROSSES: self.crosses,
            SpatialRelationship.DISJOINT: self.disjoint,
            SpatialRelationship.EQUALS: self.equals,
        }[rel]
        return handler(geom_a, geom_b)

    # -- predicates ---------------------------------------------------------

    def intersects(self, geom_a: Geometry, geom_b: Geometry) -> bool:
        positions_a = extract_positions(geom_a)
        positions_b = extract_positions(geom_b)
        if not positions_a or not positions_b:
            return False
        if not bounds_of_positions(positions_a).intersects(bounds_of_positions(positions_b)):
            return False
        return self._geometries_intersect(geom_a, geom_b, positions_a, positions_b)

    def contains(self, geom_a: Geometry, geom_b: Geometry) -> bool:
        """True when every position of ``geom_b`` lies in polygonal ``geom_a``."""
        if not isinstance(geom_a, (Polygon, MultiPolygon)):
            return False
        positions = extract_positions(geom_b)
        return bool(positions) and all(self.point_in_geometry(p, geom_a) for p in positions)

    def within(self, geom_a: Geometry, geom_b: Geometry) -> bool:
        return self.contains(geom_b, geom_a)

    def overlaps(self, geom_a: Geometry, geom_b: Geometry) -> bool:
        return (self.intersects(geom_a, geom_b)
                and not self.contains(geom_a, geom_b)
                and not self.contains(geom_b, geom_a))

    def touches(self, geom_a: Geometry, geom_b: Geometry) -> bool:
        return self.intersects(geom_a, geom_b) and not self.overlaps(geom_a, geom_b)

    def crosses(self, geom_a: Geometry, geom_b: Geometry) -> bool:
        return (self.intersects(geom_a, geom_b)
                and not self.contains(geom_a, geom_b)
                and not self.within(geom_a, geom_b))

    def disjoint(self, geom_a: Geometry, geom_b: Geometry) -> bool:
        return not self.intersects(geom_a, geom_b)

    def equals(self, geom_a: Geometry, geom_b: Geometry) -> bool:
        """Same type and the same x/y sequence in the same order."""
        if type(geom_a) is not type(geom_b):
            return False
        positions_a = extract_positions(geom_a)
        positions_b = extract_positions(geom_b)
        if len(positions_a) != len(positions_b):
            return False
        return all(a[0] == b[0] and a[1] == b[1] for a, b in zip(positions_a, positions_b))

    # -- point tests --------------------------------------------------------

    def point_in_geometry(self, point: Sequence[float], geometry: Geometry) -> bool:
        if isinstance(geometry, Point):
            return self.point_equals(point, geometry.position)
        if isinstance(geometry, MultiPoint):
            return any(self.point_equals(point, p) for p in geometry.positions)
        if isinstance(geometry, LineString):
            return self.point_on_line(point, geometry.positions)
        if isinstance(geometry, MultiLineString):
            return any(self.point_on_line(point, line) for line in geometry.lines)
        if isinstance(geometry, Polygon):
            return self.point_in_polygon(point, geometry)
        if isinstance(geometry, MultiPolygon):
            return any(self.point_in_polygon(point, part) for part in geometry.parts())
        if isinstance(geometry, GeometryCollection):
            return any(self.point_in_geometry(point, g) for g in geometry.geometries)
        raise TopologyError(f"Unsupported geometry type: {type(geometry).__name__}")

    def point_in_polygon(self, point: Sequence[float], polygon: Polygon) -> bool:
        """Ray casting on the exterior ring; a point inside any hole is outside."""
        x, y = point[0], point[1]
        if not ring_contains(polygon.exterior, x, y):
            return False
        return not any(ring_contains(hole, x, y) for hole in polygon.holes)

    def point_on_line(self, point: Sequence[float],
                      positions: Sequence[Sequence[float]]) -> bool:
        x, y = point[0], point[1]
        for i in range(len(positions) - 1):
            x1, y1 = positions[i][0], positions[i][1]
            x2, y2 = positions[i + 1][0], positions[i + 1][1]
            cross = (y - y1) * (x2 - x1) - (x - x1) * (y2 - y1)
            if abs(cross) < COLLINEAR_TOLERANCE:
                if min(x1, x2) <= x <= max(x1, x2) and min(y1, y2) <= y <= max(y1, y2):
                    return True
        return False

    def point_equals(self, a: Sequence[float], b: Sequence[float],
                     tolerance: float = POINT_TOLERANCE) -> bool:
        return abs(a[0] - b[0]) < tolerance and abs(a[1] - b[1]) < tolerance

    def segments_intersect(self, p1, p2, p3, p4) -> bool:
        return segments_intersect(p1, p2, p3, p4)

    def line_intersection(self, p1, p2, p3, p4) -> Optional[Position]:
        return line_intersection(p1, p2, p3, p4)

    # -- distances ----------------------------------------------------------

    def nearest_point(self, point: Sequence[float], geometry: Geometry) -> Position:
        """Closest position on ``geometry`` (vertices and segments) to ``point``."""
        candidates = [closest_point_on_segment(point, a, b)
                      for a, b in geometry_segments(geometry)]
        candidates.extend((p[0], p[1]) for p in extract_positions(geometry))
        if not candidates:
            raise TopologyError("Cannot find nearest point on an empty geometry")
        return min(candidates, key=lambda c: euclidean(point, c))

    def distance_to_geometry(self, point: Sequence[float], geometry: Geometry) -> float:
        """0 when the point lies in the geometry, else distance to the nearest point."""
        if self.point_in_geometry(point, geometry):
            return 0.0
        nearest = self.nearest_point(point, geometry)
        return math.hypot(point[0] - nearest[0], point[1] - nearest[1])

    # -- internals ----------------------------------------------------------

    def _geometries_intersect(self, geom_a: Geometry, geom_b: Geometry,
                              positions_a: List[Position],
                              positions_b: List[Position]) -> bool:
        if isinstance(geom_a, Point):
            return self.point_in_geometry(geom_a.position, geom_b)
        if isinstance(geom_b, Point):
            return self.point_in_geometry(geom_b.position, geom_a)

        if isinstance(geom_a, LineString) and isinstance(geom_b, LineString):
            return self._any_segment_crossing(geometry_segments(geom_a),
                                              geometry_segments(geom_b))

        if isinstance(geom_a, Polygon) and isinstance(geom_b, Polygon):
            if any(self.point_in_polygon(p, geom_b) for p in geom_a.exterior):
                return True
            if any(self.point_in_polygon(p, geom_a) for p in geom_b.exterior):
                return True
            return self._any_segment_crossing(geometry_segments(geom_a),
                                              geometry_segments(geom_b))

        if (any(self.point_in_geometry(p, geom_b) for p in positions_a)
                or any(self.point_in_geometry(p, geom_a) for p in positions_b)):
            return True
        return self._any_segment_crossing(geometry_segments(geom_a),
                                          geometry_segments(geom_b))

    @staticmethod
    def _any_segment_crossing(segments_a: List[Segment], segments_b: List[Segment]) -> bool:
        for a1, a2 in segments_a:
            for b1, b2 in segments_b:
                if segments_intersect(a1, a2, b1, b2):
                    return True
        return False
