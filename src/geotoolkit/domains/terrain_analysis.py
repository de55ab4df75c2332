"""
Terrain Analysis Domain - surface derivatives, drainage and contours of a DEM.

Derivatives use central differences over the eight neighbours, so the outer
ring of cells has no defined value and is left at 0. North is the top row:
``dz/dy`` is positive when terrain rises to the north.

Key Features:
- Slope (degrees or percent), aspect, hillshade and curvature
- D8 flow direction and topologically ordered flow accumulation
- Elevation profiles with gain/loss statistics
- Contour lines by marching squares with saddle disambiguation
"""

import math
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..cancellation import CancellationToken, check_cancelled
from ..config_manager import AnalysisConfig, get_analysis_defaults
from ..error_handler import AnalysisError
from ..logging_manager import get_logger, get_logging_manager
from ..geometry.factory import euclidean
from ..geometry.model import Feature, LineString, Position
from ..transforms.simplify import chaikin, douglas_peucker
from .raster import Raster

logger = get_logger(__name__)

FLAT_ASPECT = -1.0

# D8 codes clockwise from north: code -> (row offset, col offset)
D8_OFFSETS: Dict[int, Tuple[int, int]] = {
    1: (-1, 0),
    2: (-1, 1),
    4: (0, 1),
    8: (1, 1),
    16: (1, 0),
    32: (1, -1),
    64: (0, -1),
    128: (-1, -1),
}


class SlopeUnits(str, Enum):
    DEGREES = "degrees"
    PERCENT = "percent"


@dataclass
class ElevationProfile:
    distances: List[float]
    elevations: List[float]
    total_distance: float
    gain: float
    loss: float
    min_elevation: float
    max_elevation: float


@dataclass
class ContourOptions:
    """Contour levels are ``base + i * interval`` within the DEM range."""
    interval: float
    base: float = 0.0
    smooth: bool = False
    simplify: bool = False
    tolerance: float = 1.0

    def __post_init__(self):
        if self.interval <= 0:
            raise AnalysisError(f"Contour interval must be positive, got {self.interval}")
        if self.tolerance < 0:
            raise AnalysisError(f"tolerance must be non-negative, got {self.tolerance}")


def sample_elevation(dem: Raster, position: Sequence[float]) -> float:
    """Elevation of the cell containing ``position``; 0 outside the DEM."""
    return dem.value_at(position, default=0.0)


class TerrainAnalyzer:
    """DEM derivatives and hydrology."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or get_analysis_defaults()

    @staticmethod
    def _gradients(dem: Raster, row: int) -> Tuple[np.ndarray, np.ndarray]:
        """dz/dx and dz/dy for the interior cells of one row."""
        px, py = dem.pixel_size
        data = dem.data
        dzdx = (data[row, 2:] - data[row, :-2]) / (2 * px)
        dzdy = (data[row - 1, 1:-1] - data[row + 1, 1:-1]) / (2 * py)
        return dzdx, dzdy

    def _interior_rows(self, dem: Raster) -> range:
        if dem.width < 3:
            return range(0)
        return range(1, dem.height - 1)

    # -- surface derivatives ------------------------------------------------

    def slope(self, dem: Raster, units: Union[str, SlopeUnits] = SlopeUnits.DEGREES,
              cancel_token: Optional[CancellationToken] = None) -> Raster:
        """Steepest gradient per cell, in degrees or percent rise."""
        units = SlopeUnits(units)
        out = np.zeros_like(dem.data)
        with get_logging_manager().operation("terrain", "slope", units=units.value):
            for row in self._interior_rows(dem):
                check_cancelled(cancel_token, "terrain")
                dzdx, dzdy = self._gradients(dem, row)
                rise = np.sqrt(dzdx * dzdx + dzdy * dzdy)
                if units == SlopeUnits.PERCENT:
                    out[row, 1:-1] = rise * 100
                else:
                    out[row, 1:-1] = np.degrees(np.arctan(rise))
        return dem.with_data(out)

    def aspect(self, dem: Raster, cancel_token: Optional[CancellationToken] = None) -> Raster:
        """
        Downslope compass direction in degrees clockwise from north.

        Flat cells have aspect -1 (``FLAT_ASPECT``), never a compass value.
        """
        out = np.zeros_like(dem.data)
        with get_logging_manager().operation("terrain", "aspect"):
            for row in self._interior_rows(dem):
                check_cancelled(cancel_token, "terrain")
                dzdx, dzdy = self._gradients(dem, row)
                angle = np.degrees(np.arctan2(dzdy, -dzdx)) + 90
                angle = np.mod(angle, 360)
                flat = (dzdx == 0) & (dzdy == 0)
                out[row, 1:-1] = np.where(flat, FLAT_ASPECT, angle)
        return dem.with_data(out)

    def hillshade(self, dem: Raster, azimuth: float = 315.0, altitude: float = 45.0,
                  cancel_token: Optional[CancellationToken] = None) -> Raster:
        """
        Shaded relief for a light source at ``azimuth``/``altitude`` degrees.

        Uses the standard illumination model
        ``sin(altitude) cos(slope) + cos(altitude) sin(slope) cos(azimuth - aspect)``
        clipped at zero and scaled to 0-255. It is not remapped from [-1, 1]
        to [0, 1], so flat ground under the default 45 degree sun shades to
        about 180 and slopes facing away from the light are 0.
        """
        azimuth_rad = math.radians(azimuth)
        altitude_rad = math.radians(altitude)
        out = np.zeros_like(dem.data)
        with get_logging_manager().operation("terrain", "hillshade"):
            for row in self._interior_rows(dem):
                check_cancelled(cancel_token, "terrain")
                dzdx, dzdy = self._gradients(dem, row)
                slope_rad = np.arctan(np.sqrt(dzdx * dzdx + dzdy * dzdy))
                aspect_rad = np.arctan2(dzdy, -dzdx) + math.pi / 2
                shade = (math.sin(altitude_rad) * np.cos(slope_rad) +
                         math.cos(altitude_rad) * np.sin(slope_rad) *
                         np.cos(azimuth_rad - aspect_rad))
                out[row, 1:-1] = np.clip(255 * shade, 0, 255)
        return dem.with_data(out)

    def curvature(self, dem: Raster, cancel_token: Optional[CancellationToken] = None) -> Raster:
        """Negative Laplacian scaled by 200; positive values are convex."""
        px, py = dem.pixel_size
        data = dem.data
        out = np.zeros_like(data)
        with get_logging_manager().operation("terrain", "curvature"):
            for row in self._interior_rows(dem):
                check_cancelled(cancel_token, "terrain")
                center = data[row, 1:-1]
                d2x = (data[row, :-2] - 2 * center + data[row, 2:]) / (px * px)
                d2y = (data[row - 1, 1:-1] - 2 * center + data[row + 1, 1:-1]) / (py * py)
                out[row, 1:-1] = -2 * (d2x + d2y) * 100
        return dem.with_data(out)

    # -- hydrology ----------------------------------------------------------

    def flow_direction(self, dem: Raster,
                       cancel_token: Optional[CancellationToken] = None) -> Raster:
        """
        D8 flow direction codes (1=N, 2=NE, 4=E ... 128=NW).

        Each interior cell drains to the neighbour with the steepest descent.
        Pits, flats and border cells get 0.
        """
        px, py = dem.pixel_size
        data = dem.data
        out = np.zeros_like(data)
        steps = [(code, dr, dc, math.hypot(dr * py, dc * px))
                 for code, (dr, dc) in D8_OFFSETS.items()]

        with get_logging_manager().operation("terrain", "flow_direction"):
            for row in self._interior_rows(dem):
                check_cancelled(cancel_token, "terrain")
                center = data[row, 1:-1]
                best_slope = np.zeros_like(center)
                best_code = np.zeros_like(center)
                for code, dr, dc, dist in steps:
                    neighbour = data[row + dr, 1 + dc:dem.width - 1 + dc]
                    drop = (center - neighbour) / dist
                    better = drop > best_slope
                    best_slope = np.where(better, drop, best_slope)
                    best_code = np.where(better, code, best_code)
                out[row, 1:-1] = best_code
        return dem.with_data(out)

    def flow_accumulation(self, flow_direction: Raster,
                          cancel_token: Optional[CancellationToken] = None) -> Raster:
        """
        Number of cells draining through each cell, itself included.

        Cells are visited in upstream-to-downstream order, so the count at a
        cell is final before it is passed on.
        """
        codes = flow_direction.data.astype(int)
        height, width = codes.shape
        unknown = set(np.unique(codes).tolist()) - set(D8_OFFSETS) - {0}
        if unknown:
            raise AnalysisError(f"Invalid flow direction codes: {sorted(unknown)}")

        downstream: Dict[Tuple[int, int], Tuple[int, int]] = {}
        indegree = np.zeros((height, width), dtype=int)
        for row in range(height):
            check_cancelled(cancel_token, "terrain")
            for col in range(width):
                code = codes[row, col]
                if code == 0:
                    continue
                dr, dc = D8_OFFSETS[code]
                target = (row + dr, col + dc)
                if 0 <= target[0] < height and 0 <= target[1] < width:
                    downstream[(row, col)] = target
                    indegree[target] += 1

        accumulation = np.ones((height, width), dtype=float)
        queue = deque((int(r), int(c)) for r, c in zip(*np.nonzero(indegree == 0)))
        processed = 0
        with get_logging_manager().operation("terrain", "flow_accumulation"):
            while queue:
                cell = queue.popleft()
                processed += 1
                target = downstream.get(cell)
                if target is None:
                    continue
                accumulation[target] += accumulation[cell]
                indegree[target] -= 1
                if indegree[target] == 0:
                    queue.append(target)

        if processed < height * width:
            logger.warning("Flow directions contain cycles; cells on them are incomplete",
                           cells=height * width - processed)
        return flow_direction.with_data(accumulation)

    # -- profiles -----------------------------------------------------------

    def sample_elevation(self, dem: Raster, position: Sequence[float]) -> float:
        return sample_elevation(dem, position)

    def elevation_profile(self, dem: Raster, line: Union[LineString, Sequence[Sequence[float]]],
                          samples: Optional[int] = None) -> ElevationProfile:
        """
        Elevations along a path.

        Args:
            dem: Elevation raster
            line: Path as a LineString or position list
            samples: Evenly spaced sample count; the path vertices are sampled
                when omitted

        Returns:
            ElevationProfile with cumulative distances and climb statistics
        """
        path = list(line.positions if isinstance(line, LineString) else line)
        if not path:
            raise AnalysisError("Profile path must contain at least one position")
        if samples is not None and samples < 2:
            raise AnalysisError(f"samples must be at least 2, got {samples}")

        cumulative = [0.0]
        for a, b in zip(path[:-1], path[1:]):
            cumulative.append(cumulative[-1] + euclidean(a, b))
        total = cumulative[-1]

        if samples is None:
            distances = cumulative
            positions = path
        else:
            distances = [total * i / (samples - 1) for i in range(samples)]
            positions = [self._position_along(path, cumulative, d) for d in distances]

        elevations = [sample_elevation(dem, p) for p in positions]
        changes = np.diff(elevations) if len(elevations) > 1 else np.zeros(0)
        return ElevationProfile(
            distances=list(distances),
            elevations=elevations,
            total_distance=total,
            gain=float(changes[changes > 0].sum()),
            loss=float(-changes[changes < 0].sum()),
            min_elevation=min(elevations),
            max_elevation=max(elevations)
        )

    @staticmethod
    def _position_along(path: Sequence[Sequence[float]], cumulative: Sequence[float],
                        distance: float) -> Position:
        for i in range(len(path) - 1):
            seg = cumulative[i + 1] - cumulative[i]
            if distance <= cumulative[i + 1] or i == len(path) - 2:
                t = 0.0 if seg == 0 else min(1.0, max(0.0, (distance - cumulative[i]) / seg))
                a, b = path[i], path[i + 1]
                return (a[0] + t * (b[0] - a[0]), a[1] + t * (b[1] - a[1]))
        return (path[0][0], path[0][1])

    # -- contours -----------------------------------------------------------

    def generate_contours(self, dem: Raster, options: Union[ContourOptions, float],
                          cancel_token: Optional[CancellationToken] = None) -> List[Feature]:
        """
        Contour lines at regular elevation intervals.

        Each feature is a LineString carrying ``elevation`` and the level
        ``index`` (``(elevation - base) / interval``). Closed contours repeat
        their first position at the end.
        """
        if not isinstance(options, ContourOptions):
            options = ContourOptions(interval=options)
        stats = dem.statistics()
        if stats is None:
            return []

        first = math.ceil((stats.min - options.base) / options.interval)
        last = math.floor((stats.max - options.base) / options.interval)
        features: List[Feature] = []
        with get_logging_manager().operation("terrain", "contours", levels=max(0, last - first + 1)):
            for index in range(first, last + 1):
                check_cancelled(cancel_token, "terrain")
                level = options.base + index * options.interval
                for coords in marching_squares(dem, level):
                    if options.smooth:
                        coords = chaikin(coords, 2)
                    if options.simplify:
                        coords = douglas_peucker(coords, options.tolerance)
                    if len(coords) < 2:
                        continue
                    features.append(Feature(LineString(tuple(coords)),
                                            {'elevation': level, 'index': index}))
        logger.debug("Generated contours", count=len(features))
        return features


# ============================================================================
# Marching squares
# ============================================================================

EdgeKey = Tuple[str, int, int]


def marching_squares(dem: Raster, level: float) -> List[List[Position]]:
    """
    Iso-lines of ``level`` through the grid of cell centers.

    A corner at or above the level counts as inside. Saddle cells are
    resolved with the mean of their four corners. Segments are stitched
    into polylines through the grid edges they share.
    """
    data = dem.data
    height, width = data.shape
    points: Dict[EdgeKey, Position] = {}
    segments: List[Tuple[EdgeKey, EdgeKey]] = []

    def crossing(key: EdgeKey, r1: int, c1: int, r2: int, c2: int) -> EdgeKey:
        if key not in points:
            v1, v2 = data[r1, c1], data[r2, c2]
            t = (level - v1) / (v2 - v1)
            x1, y1 = dem.cell_center(r1, c1)
            x2, y2 = dem.cell_center(r2, c2)
            points[key] = (x1 + t * (x2 - x1), y1 + t * (y2 - y1))
        return key

    for r in range(height - 1):
        for c in range(width - 1):
            corners = (data[r, c], data[r, c + 1], data[r + 1, c + 1], data[r + 1, c])
            if not all(math.isfinite(v) for v in corners):
                continue
            tl, tr, br, bl = (v >= level for v in corners)
            edges = {}
            if tl != tr:
                edges['top'] = crossing(('h', r, c), r, c, r, c + 1)
            if tr != br:
                edges['right'] = crossing(('v', r, c + 1), r, c + 1, r + 1, c + 1)
            if bl != br:
                edges['bottom'] = crossing(('h', r + 1, c), r + 1, c, r + 1, c + 1)
            if tl != bl:
                edges['left'] = crossing(('v', r, c), r, c, r + 1, c)

            if len(edges) == 2:
                a, b = edges.values()
                segments.append((a, b))
            elif len(edges) == 4:
                center_inside = sum(corners) / 4 >= level
                if center_inside == tl:
                    segments.append((edges['top'], edges['right']))
                    segments.append((edges['bottom'], edges['left']))
                else:
                    segments.append((edges['left'], edges['top']))
                    segments.append((edges['right'], edges['bottom']))

    return [[points[k] for k in chain] for chain in _stitch(segments)]


def _stitch(segments: List[Tuple[EdgeKey, EdgeKey]]) -> List[List[EdgeKey]]:
    """Join segments sharing endpoints; open chains first, then loops."""
    adjacency: Dict[EdgeKey, List[int]] = {}
    for i, (a, b) in enumerate(segments):
        adjacency.setdefault(a, []).append(i)
        adjacency.setdefault(b, []).append(i)

    used = [False] * len(segments)

    def walk(start: EdgeKey) -> List[EdgeKey]:
        chain = [start]
        current = start
        while True:
            nxt = next((i for i in adjacency[current] if not used[i]), None)
            if nxt is None:
                return chain
            used[nxt] = True
            a, b = segments[nxt]
            current = b if a == current else a
            chain.append(current)

    chains = []
    for key, members in adjacency.items():
        if len(members) == 1 and not used[members[0]]:
            chains.append(walk(key))
    for i, (a, _) in enumerate(segments):
        if not used[i]:
            chains.append(walk(a))
    return chains
