"""
Simplification Engine - vertex reduction, smoothing and densification.

Every operation works on a position sequence and is lifted to whole
geometries by ``SimplifyEngine``; rings stay closed and are left untouched
when simplifying them would drop below four positions.

Key Features:
- Douglas-Peucker with an explicit stack (no recursion depth limit)
- Radial distance pre-pass for cheap reduction
- Visvalingam-Whyatt effective-area elimination
- Chaikin corner cutting, densification, spike and small-bend removal
"""

import heapq
import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import numpy as np

from ..config_manager import AnalysisConfig, get_analysis_defaults
from ..error_handler import AnalysisError
from ..logging_manager import get_logger, get_logging_manager
from ..geometry.model import (
    Geometry, GeometryCollection, LineString, MultiLineString, MultiPoint,
    MultiPolygon, Point, Polygon, Position, unsupported_geometry
)

logger = get_logger(__name__)

PathFn = Callable[[Sequence[Position]], List[Position]]


@dataclass
class SimplifyOptions:
    """Recognised simplify options."""
    tolerance: float = 1.0
    high_quality: bool = False

    def __post_init__(self):
        if self.tolerance < 0:
            raise AnalysisError(f"tolerance must be non-negative, got {self.tolerance}")


def _segment_distance_sq(p: Sequence[float], a: Sequence[float], b: Sequence[float]) -> float:
    x, y = a[0], a[1]
    dx, dy = b[0] - x, b[1] - y
    if dx != 0 or dy != 0:
        t = ((p[0] - x) * dx + (p[1] - y) * dy) / (dx * dx + dy * dy)
        if t > 1:
            x, y = b[0], b[1]
        elif t > 0:
            x, y = x + dx * t, y + dy * t
    dx, dy = p[0] - x, p[1] - y
    return dx * dx + dy * dy


def _triangle_area(a: Sequence[float], b: Sequence[float], c: Sequence[float]) -> float:
    return abs((b[0] - a[0]) * (c[1] - a[1]) - (c[0] - a[0]) * (b[1] - a[1])) / 2.0


def _is_closed(positions: Sequence[Position]) -> bool:
    return len(positions) > 1 and positions[0][:2] == positions[-1][:2]


# ============================================================================
# Path algorithms
# ============================================================================

def douglas_peucker(positions: Sequence[Position], tolerance: float) -> List[Position]:
    """
    Keep the vertices that deviate more than ``tolerance`` from the chord of
    their enclosing range. First and last positions are always kept.
    """
    n = len(positions)
    if n <= 2:
        return list(positions)

    tolerance_sq = tolerance * tolerance
    keep = np.zeros(n, dtype=bool)
    keep[0] = keep[n - 1] = True

    stack = [(0, n - 1)]
    while stack:
        first, last = stack.pop()
        max_sq = tolerance_sq
        index = -1
        for i in range(first + 1, last):
            d = _segment_distance_sq(positions[i], positions[first], positions[last])
            if d > max_sq:
                max_sq = d
                index = i
        if index != -1:
            keep[index] = True
            stack.append((first, index))
            stack.append((index, last))

    return [p for p, k in zip(positions, keep) if k]


def radial_distance(positions: Sequence[Position], tolerance: float) -> List[Position]:
    """Drop vertices closer than ``tolerance`` to the previously kept vertex."""
    if len(positions) <= 2:
        return list(positions)
    tolerance_sq = tolerance * tolerance
    kept = [positions[0]]
    for p in positions[1:-1]:
        dx, dy = p[0] - kept[-1][0], p[1] - kept[-1][1]
        if dx * dx + dy * dy > tolerance_sq:
            kept.append(p)
    kept.append(positions[-1])
    return kept


def visvalingam_whyatt(positions: Sequence[Position], min_area: float) -> List[Position]:
    """
    Repeatedly remove the vertex forming the smallest triangle with its
    neighbours until every remaining triangle covers at least ``min_area``.
    """
    n = len(positions)
    if n <= 2:
        return list(positions)

    prev = list(range(-1, n - 1))
    nxt = list(range(1, n + 1))
    alive = [True] * n
    heap = [(_triangle_area(positions[i - 1], positions[i], positions[i + 1]), i)
            for i in range(1, n - 1)]
    heapq.heapify(heap)
    current = {i: area for area, i in heap}

    while heap:
        area, i = heapq.heappop(heap)
        if not alive[i] or current.get(i) != area:
            continue
        if area >= min_area:
            break
        alive[i] = False
        p, q = prev[i], nxt[i]
        nxt[p], prev[q] = q, p
        for j in (p, q):
            if 0 < j < n - 1 and alive[j]:
                new_area = _triangle_area(positions[prev[j]], positions[j], positions[nxt[j]])
                current[j] = new_area
                heapq.heappush(heap, (new_area, j))

    return [positions[i] for i in range(n) if alive[i]]


def chaikin(positions: Sequence[Position], iterations: int = 1) -> List[Position]:
    """Corner cutting: each segment contributes its 1/4 and 3/4 points."""
    current = list(positions)
    if len(current) < 2:
        return current
    for _ in range(iterations):
        smoothed = [current[0]]
        for p0, p1 in zip(current[:-1], current[1:]):
            smoothed.append((0.75 * p0[0] + 0.25 * p1[0], 0.75 * p0[1] + 0.25 * p1[1]))
            smoothed.append((0.25 * p0[0] + 0.75 * p1[0], 0.25 * p0[1] + 0.75 * p1[1]))
        smoothed.append(current[-1])
        current = smoothed
    return current


def densify(positions: Sequence[Position], max_length: float) -> List[Position]:
    """Insert evenly spaced vertices so no segment exceeds ``max_length``."""
    if max_length <= 0:
        raise AnalysisError(f"Max segment length must be positive, got {max_length}")
    if len(positions) < 2:
        return list(positions)
    result = [positions[0]]
    for p0, p1 in zip(positions[:-1], positions[1:]):
        count = math.ceil(math.hypot(p1[0] - p0[0], p1[1] - p0[1]) / max_length)
        for j in range(1, count):
            t = j / count
            result.append((p0[0] + t * (p1[0] - p0[0]), p0[1] + t * (p1[1] - p0[1])))
        result.append(p1)
    return result


def turn_angle(p0: Sequence[float], p1: Sequence[float], p2: Sequence[float]) -> float:
    """Direction change at ``p1`` in degrees: 0 for straight, 180 for a reversal."""
    v1x, v1y = p0[0] - p1[0], p0[1] - p1[1]
    v2x, v2y = p2[0] - p1[0], p2[1] - p1[1]
    interior = abs(math.degrees(math.atan2(v1x * v2y - v1y * v2x, v1x * v2x + v1y * v2y)))
    return 180.0 - interior


def remove_spikes(positions: Sequence[Position], angle_threshold: float = 160.0) -> List[Position]:
    """Drop vertices whose turn angle exceeds ``angle_threshold`` degrees."""
    closed = _is_closed(positions)
    vertices = list(positions[:-1]) if closed else list(positions)

    changed = True
    while changed and len(vertices) > (3 if closed else 2):
        changed = False
        n = len(vertices)
        indices = range(n) if closed else range(1, n - 1)
        for i in indices:
            if turn_angle(vertices[i - 1], vertices[i], vertices[(i + 1) % n]) > angle_threshold:
                del vertices[i]
                changed = True
                break

    if closed:
        vertices.append(vertices[0])
    return vertices


def remove_small_bends(positions: Sequence[Position], min_area: float) -> List[Position]:
    """Skip vertices that form a triangle smaller than ``min_area`` with the last kept vertex."""
    if min_area < 0:
        raise AnalysisError("Minimum area must be non-negative")
    if len(positions) < 3:
        return list(positions)
    kept = [positions[0]]
    for i in range(1, len(positions) - 1):
        if _triangle_area(kept[-1], positions[i], positions[i + 1]) >= min_area:
            kept.append(positions[i])
    kept.append(positions[-1])
    return kept


# ============================================================================
# Geometry-level engine
# ============================================================================

class SimplifyEngine:
    """Apply path algorithms to every line and ring of a geometry."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or get_analysis_defaults()

    def simplify(self, geometry: Geometry, options: Optional[SimplifyOptions] = None) -> Geometry:
        """
        Simplify with Douglas-Peucker, preceded by a radial-distance pass
        unless ``options.high_quality`` is set.
        """
        options = options or SimplifyOptions()

        def reduce(path: Sequence[Position]) -> List[Position]:
            points = list(path) if options.high_quality else radial_distance(path, options.tolerance)
            return douglas_peucker(points, options.tolerance)

        with get_logging_manager().operation("simplify", "simplify",
                                             tolerance=options.tolerance):
            return self._apply(geometry, reduce)

    def douglas_peucker(self, geometry: Geometry, tolerance: float) -> Geometry:
        return self._apply(geometry, lambda path: douglas_peucker(path, tolerance))

    def radial_distance(self, geometry: Geometry, tolerance: float) -> Geometry:
        return self._apply(geometry, lambda path: radial_distance(path, tolerance))

    def visvalingam_whyatt(self, geometry: Geometry, min_area: float) -> Geometry:
        return self._apply(geometry, lambda path: visvalingam_whyatt(path, min_area))

    def smooth(self, geometry: Geometry, iterations: int = 1) -> Geometry:
        if iterations < 0:
            raise AnalysisError(f"iterations must be non-negative, got {iterations}")
        return self._apply(geometry, lambda path: self._smooth_path(path, iterations))

    def densify(self, geometry: Geometry, max_length: float) -> Geometry:
        if max_length <= 0:
            raise AnalysisError(f"Max segment length must be positive, got {max_length}")
        return self._apply(geometry, lambda path: densify(path, max_length))

    def remove_spikes(self, geometry: Geometry, angle_threshold: Optional[float] = None) -> Geometry:
        threshold = angle_threshold if angle_threshold is not None else self.config.spike_angle
        return self._apply(geometry, lambda path: remove_spikes(path, threshold))

    def remove_small_bends(self, geometry: Geometry, min_area: float) -> Geometry:
        return self._apply(geometry, lambda path: remove_small_bends(path, min_area))

    @staticmethod
    def _smooth_path(path: Sequence[Position], iterations: int) -> List[Position]:
        smoothed = chaikin(path, iterations)
        if _is_closed(path) and not _is_closed(smoothed):
            smoothed.append(smoothed[0])
        return smoothed

    def _apply(self, geometry: Geometry, fn: PathFn) -> Geometry:
        def line(path: Sequence[Position]) -> tuple:
            result = fn(path)
            return tuple(result) if len(result) >= 2 else tuple(path)

        def ring(path: Sequence[Position]) -> tuple:
            result = fn(path)
            if result and not _is_closed(result):
                result.append(result[0])
            if len(result) < 4:
                return tuple(path)
            return tuple(result)

        if isinstance(geometry, (Point, MultiPoint)):
            return geometry
        if isinstance(geometry, LineString):
            return LineString(line(geometry.positions))
        if isinstance(geometry, MultiLineString):
            return MultiLineString(tuple(line(path) for path in geometry.lines))
        if isinstance(geometry, Polygon):
            return Polygon(tuple(ring(r) for r in geometry.rings))
        if isinstance(geometry, MultiPolygon):
            return MultiPolygon(tuple(tuple(ring(r) for r in rings)
                                      for rings in geometry.polygons))
        if isinstance(geometry, GeometryCollection):
            return GeometryCollection(tuple(self._apply(g, fn) for g in geometry.geometries))
        raise unsupported_geometry(geometry)
