"""
Buffer Engine - offset geometries by a distance.

Distances are converted to meters through a fixed unit table and applied in
the coordinate space of the input, which is therefore expected to be planar
and metric.

Key Features:
- Point buffers as regular polygons with ``steps`` distinct vertices
- LineString buffers from parallel offsets on both sides with round, flat or
  square end caps
- Polygon buffers from per-vertex averaged-normal offsets (negative
  distances erode)
- Multi-geometries and collections buffered part by part into a MultiPolygon
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from ..config_manager import AnalysisConfig, get_analysis_defaults
from ..error_handler import AnalysisError
from ..logging_manager import get_logger, get_logging_manager
from ..geometry.factory import ring_signed_area
from ..geometry.model import (
    Geometry, GeometryCollection, LineString, MultiLineString, MultiPoint,
    MultiPolygon, Point, Polygon, Position, Ring, unsupported_geometry
)

logger = get_logger(__name__)


class DistanceUnit(str, Enum):
    METERS = "meters"
    KILOMETERS = "kilometers"
    FEET = "feet"
    MILES = "miles"
    DEGREES = "degrees"


UNIT_TO_METERS = {
    DistanceUnit.METERS: 1.0,
    DistanceUnit.KILOMETERS: 1000.0,
    DistanceUnit.FEET: 0.3048,
    DistanceUnit.MILES: 1609.34,
    DistanceUnit.DEGREES: 111320.0,  # at the equator
}


class CapStyle(str, Enum):
    ROUND = "round"
    FLAT = "flat"
    SQUARE = "square"


@dataclass
class BufferOptions:
    """Recognised buffer options."""
    distance: float
    units: DistanceUnit = DistanceUnit.METERS
    steps: Optional[int] = None
    cap: CapStyle = CapStyle.ROUND

    def __post_init__(self):
        self.units = DistanceUnit(self.units)
        self.cap = CapStyle(self.cap)
        if self.steps is not None and self.steps < 3:
            raise AnalysisError(f"Buffer steps must be at least 3, got {self.steps}")

    def distance_in_meters(self) -> float:
        return self.distance * UNIT_TO_METERS[self.units]


def _unit_normal(a: Sequence[float], b: Sequence[float]) -> Optional[Tuple[float, float]]:
    """Left-hand unit normal of segment a->b, None for zero-length segments."""
    dx, dy = b[0] - a[0], b[1] - a[1]
    length = math.hypot(dx, dy)
    if length == 0:
        return None
    return (-dy / length, dx / length)


def _arc(center: Sequence[float], radius: float, start: float, sweep: float,
         segments: int) -> List[Position]:
    """Points on an arc from ``start`` over ``sweep`` radians, endpoints included."""
    return [(center[0] + radius * math.cos(start + sweep * i / segments),
             center[1] + radius * math.sin(start + sweep * i / segments))
            for i in range(segments + 1)]


class BufferEngine:
    """Create buffer polygons around geometries."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or get_analysis_defaults()

    def buffer(self, geometry: Geometry, options: BufferOptions) -> Geometry:
        """
        Buffer a geometry.

        Parameters
        ----------
        geometry : Geometry
            Input geometry; never modified.
        options : BufferOptions
            Distance, units, arc steps and end-cap style.

        Returns
        -------
        geometry : Polygon or MultiPolygon
            A new geometry.
        """
        distance = options.distance_in_meters()
        steps = options.steps or self.config.buffer_steps

        with get_logging_manager().operation("buffer", "buffer",
                                             geometry_type=type(geometry).__name__):
            return self._buffer(geometry, distance, steps, options.cap)

    def _buffer(self, geometry: Geometry, distance: float, steps: int,
                cap: CapStyle) -> Geometry:
        if isinstance(geometry, Point):
            return self.buffer_point(geometry.position, distance, steps)
        if isinstance(geometry, LineString):
            return self.buffer_line(geometry.positions, distance, steps, cap)
        if isinstance(geometry, Polygon):
            return self.buffer_polygon(geometry, distance)
        if isinstance(geometry, MultiPoint):
            return MultiPolygon(tuple(self.buffer_point(p, distance, steps).rings
                                      for p in geometry.positions))
        if isinstance(geometry, MultiLineString):
            return MultiPolygon(tuple(self.buffer_line(line, distance, steps, cap).rings
                                      for line in geometry.lines))
        if isinstance(geometry, MultiPolygon):
            return MultiPolygon(tuple(self.buffer_polygon(part, distance).rings
                                      for part in geometry.parts()))
        if isinstance(geometry, GeometryCollection):
            parts = []
            for member in geometry.geometries:
                buffered = self._buffer(member, distance, steps, cap)
                if isinstance(buffered, MultiPolygon):
                    parts.extend(buffered.polygons)
                else:
                    parts.append(buffered.rings)
            return MultiPolygon(tuple(parts))
        raise unsupported_geometry(geometry)

    def buffer_point(self, center: Sequence[float], distance: float, steps: int) -> Polygon:
        if distance <= 0:
            raise AnalysisError(f"Point buffer distance must be positive, got {distance}")
        ring = [(center[0] + distance * math.cos(2 * math.pi * i / steps),
                 center[1] + distance * math.sin(2 * math.pi * i / steps))
                for i in range(steps)]
        ring.append(ring[0])
        return Polygon((tuple(ring),))

    def buffer_line(self, positions: Sequence[Position], distance: float, steps: int,
                    cap: CapStyle = CapStyle.ROUND) -> Polygon:
        """
        Buffer a line by offsetting both sides and joining them with end caps.

        Interior vertices are offset along the average of the adjacent
        segment normals. Zero-length segments are ignored.
        """
        if distance <= 0:
            raise AnalysisError(f"Line buffer distance must be positive, got {distance}")
        path = [positions[0]]
        for p in positions[1:]:
            if p[0] != path[-1][0] or p[1] != path[-1][1]:
                path.append(p)
        if len(path) < 2:
            # Degenerate line: buffer as a point
            return self.buffer_point(path[0], distance, steps)

        normals = [_unit_normal(path[i], path[i + 1]) for i in range(len(path) - 1)]
        left: List[Position] = []
        right: List[Position] = []
        for i, p in enumerate(path):
            if i == 0:
                nx, ny = normals[0]
            elif i == len(path) - 1:
                nx, ny = normals[-1]
            else:
                nx, ny = normals[i - 1][0] + normals[i][0], normals[i - 1][1] + normals[i][1]
                length = math.hypot(nx, ny)
                if length == 0:
                    nx, ny = normals[i]
                else:
                    nx, ny = nx / length, ny / length
            left.append((p[0] + nx * distance, p[1] + ny * distance))
            right.append((p[0] - nx * distance, p[1] - ny * distance))

        half_steps = max(steps // 2, 1)
        end, start = path[-1], path[0]
        end_normal, start_normal = normals[-1], normals[0]
        ring: List[Position] = list(left)

        if cap == CapStyle.ROUND:
            angle = math.atan2(end_normal[1], end_normal[0])
            ring.extend(_arc(end, distance, angle, -math.pi, half_steps)[1:-1])
        elif cap == CapStyle.SQUARE:
            ex, ey = end_normal[1], -end_normal[0]
            ring[-1] = (ring[-1][0] + ex * distance, ring[-1][1] + ey * distance)
            right[-1] = (right[-1][0] + ex * distance, right[-1][1] + ey * distance)

        if cap == CapStyle.SQUARE:
            sx, sy = -start_normal[1], start_normal[0]
            right[0] = (right[0][0] + sx * distance, right[0][1] + sy * distance)
            ring[0] = (ring[0][0] + sx * distance, ring[0][1] + sy * distance)

        ring.extend(reversed(right))

        if cap == CapStyle.ROUND:
            angle = math.atan2(-start_normal[1], -start_normal[0])
            ring.extend(_arc(start, distance, angle, -math.pi, half_steps)[1:-1])

        # Left side first traces clockwise; exteriors are counter-clockwise
        ring.reverse()
        ring.append(ring[0])
        return Polygon((tuple(ring),))

    def buffer_polygon(self, polygon: Polygon, distance: float) -> Polygon:
        """Offset every ring along its averaged vertex normals.

        Positive distances grow the exterior and shrink holes.
        """
        if distance == 0:
            return Polygon(tuple(tuple(ring) for ring in polygon.rings))
        rings = [self._offset_ring(ring, distance, outward=(index == 0))
                 for index, ring in enumerate(polygon.rings)]
        return Polygon(tuple(rings))

    def _offset_ring(self, ring: Ring, distance: float, outward: bool) -> Ring:
        vertices = list(ring[:-1]) if ring[0][:2] == ring[-1][:2] else list(ring)
        n = len(vertices)
        # Left normals point inward on a counter-clockwise ring
        sign = -1.0 if ring_signed_area(ring) > 0 else 1.0
        if not outward:
            sign = -sign

        offset: List[Position] = []
        for i in range(n):
            prev_normal = _unit_normal(vertices[i - 1], vertices[i])
            next_normal = _unit_normal(vertices[i], vertices[(i + 1) % n])
            candidates = [nrm for nrm in (prev_normal, next_normal) if nrm is not None]
            if not candidates:
                offset.append(vertices[i])
                continue
            nx = sum(c[0] for c in candidates)
            ny = sum(c[1] for c in candidates)
            length = math.hypot(nx, ny) or 1.0
            nx, ny = nx / length, ny / length
            offset.append((vertices[i][0] + sign * nx * distance,
                           vertices[i][1] + sign * ny * distance))
        offset.append(offset[0])
        return tuple(offset)
