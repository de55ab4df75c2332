"""
Overlay Engine - boolean operations between polygonal geometries.

Results are the convex hull of the relevant vertices and edge intersection
points of the inputs. This is exact for convex inputs only: concave inputs
yield a convex over-approximation. Empty results are returned as ``None``.

Key Features:
- union, intersection, difference, symmetric_difference, dissolve
- Monotone-chain convex hull with a closed, counter-clockwise output ring
"""

from typing import List, Optional, Sequence

from ..logging_manager import get_logger, get_logging_manager
from ..geometry.factory import extract_positions
from ..geometry.model import Geometry, MultiPolygon, Polygon, Position
from ..geometry.topology import TopologyEngine, geometry_segments, line_intersection

logger = get_logger(__name__)


def convex_hull(points: Sequence[Sequence[float]]) -> List[Position]:
    """
    Convex hull of a point set.

    Returns
    -------
    ring : list of tuple
        Counter-clockwise hull closed by repeating the first vertex, or
        fewer than 4 positions when the points are degenerate.
    """
    unique = sorted({(float(p[0]), float(p[1])) for p in points})
    if len(unique) < 3:
        return unique

    def cross_product(o, a, b):
        return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])

    lower: List[Position] = []
    for p in unique:
        while len(lower) >= 2 and cross_product(lower[-2], lower[-1], p) <= 0:
            lower.pop()
        lower.append(p)

    upper: List[Position] = []
    for p in reversed(unique):
        while len(upper) >= 2 and cross_product(upper[-2], upper[-1], p) <= 0:
            upper.pop()
        upper.append(p)

    hull = lower[:-1] + upper[:-1]
    if len(hull) < 3:
        return hull
    return hull + [hull[0]]


class OverlayEngine:
    """Convex-hull based polygon overlay."""

    def __init__(self, topology: Optional[TopologyEngine] = None):
        self.topology = topology or TopologyEngine()

    def union(self, geom_a: Geometry, geom_b: Geometry) -> Optional[Polygon]:
        with get_logging_manager().operation("overlay", "union"):
            points = extract_positions(geom_a) + extract_positions(geom_b)
            return self._hull_polygon(points)

    def intersection(self, geom_a: Geometry, geom_b: Geometry) -> Optional[Polygon]:
        with get_logging_manager().operation("overlay", "intersection"):
            if not self.topology.intersects(geom_a, geom_b):
                return None
            points = [p for p in extract_positions(geom_a)
                      if self.topology.point_in_geometry(p, geom_b)]
            points += [p for p in extract_positions(geom_b)
                       if self.topology.point_in_geometry(p, geom_a)]
            points += self._edge_intersections(geom_a, geom_b)
            return self._hull_polygon(points)

    def difference(self, geom_a: Geometry, geom_b: Geometry) -> Optional[Polygon]:
        """Part of ``geom_a`` outside ``geom_b``."""
        with get_logging_manager().operation("overlay", "difference"):
            return self._difference(geom_a, geom_b)

    def symmetric_difference(self, geom_a: Geometry, geom_b: Geometry) -> Optional[Geometry]:
        with get_logging_manager().operation("overlay", "symmetric_difference"):
            parts = [p for p in (self._difference(geom_a, geom_b),
                                 self._difference(geom_b, geom_a)) if p is not None]
            if not parts:
                return None
            if len(parts) == 1:
                return parts[0]
            return MultiPolygon(tuple(part.rings for part in parts))

    def dissolve(self, geometries: Sequence[Geometry]) -> Optional[Polygon]:
        """Merge all geometries into one polygon."""
        with get_logging_manager().operation("overlay", "dissolve", count=len(geometries)):
            points = [p for g in geometries for p in extract_positions(g)]
            return self._hull_polygon(points)

    # -- internals ----------------------------------------------------------

    def _difference(self, geom_a: Geometry, geom_b: Geometry) -> Optional[Polygon]:
        if not self.topology.intersects(geom_a, geom_b):
            return self._hull_polygon(extract_positions(geom_a))
        points = [p for p in extract_positions(geom_a)
                  if not self.topology.point_in_geometry(p, geom_b)]
        if not points:
            return None
        points += self._edge_intersections(geom_a, geom_b)
        return self._hull_polygon(points)

    def _edge_intersections(self, geom_a: Geometry, geom_b: Geometry) -> List[Position]:
        found = []
        segments_b = geometry_segments(geom_b)
        for a1, a2 in geometry_segments(geom_a):
            for b1, b2 in segments_b:
                point = line_intersection(a1, a2, b1, b2)
                if point is not None:
                    found.append(point)
        return found

    def _hull_polygon(self, points: Sequence[Sequence[float]]) -> Optional[Polygon]:
        ring = convex_hull(points)
        if len(ring) < 4:
            logger.debug("Overlay produced a degenerate result", points=len(points))
            return None
        return Polygon((tuple(ring),))
