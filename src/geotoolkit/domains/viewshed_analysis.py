"""
Viewshed Analysis Domain - visibility over a DEM.

Sight lines are traced cell by cell with Bresenham's algorithm. A target is
visible when its elevation angle from the observer's eye is at least the
steepest angle of every cell crossed on the way. Distances are measured
between cell centers in map units.

Key Features:
- Single-observer viewshed with observer/target heights, range and vertical view limits
- Point-to-point line of sight reporting the first blocking cell
- Cumulative viewshed counting observers per cell
- Brute-force optimal viewpoint search and horizon angle profiles
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..cancellation import CancellationToken, check_cancelled
from ..config_manager import AnalysisConfig, get_analysis_defaults
from ..error_handler import AnalysisError
from ..logging_manager import get_logger, get_logging_manager
from ..geometry.model import Bounds, Position
from .raster import Raster

logger = get_logger(__name__)

Cell = Tuple[int, int]


@dataclass
class ViewshedResult:
    """``visible`` holds 1 for visible cells (a count per cell when cumulative)."""
    visible: Raster
    visible_count: int
    total_cells: int
    visibility_percent: float


@dataclass
class LineOfSightResult:
    visible: bool
    blocking_point: Optional[Position] = None
    blocking_elevation: Optional[float] = None


@dataclass
class Observer:
    position: Position
    height: float = 2.0
    vertical_angle: float = 180.0


@dataclass
class ViewpointResult:
    position: Position
    visible_count: int
    visibility_percent: float


def bresenham(start: Cell, end: Cell) -> List[Cell]:
    """Grid cells on the line from ``start`` to ``end`` (both included), as (row, col)."""
    row, col = start
    row1, col1 = end
    dx = abs(col1 - col)
    dy = abs(row1 - row)
    sx = 1 if col < col1 else -1
    sy = 1 if row < row1 else -1
    err = dx - dy
    cells = []
    while True:
        cells.append((row, col))
        if row == row1 and col == col1:
            return cells
        e2 = 2 * err
        if e2 > -dy:
            err -= dy
            col += sx
        if e2 < dx:
            err += dx
            row += sy


class ViewshedAnalyzer:
    """Visibility analysis on a DEM raster."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or get_analysis_defaults()

    def _observer_cell(self, dem: Raster, position: Sequence[float]) -> Cell:
        row, col = dem.cell_of(position)
        if not dem.in_grid(row, col):
            raise AnalysisError("Observer position outside DEM bounds",
                                location=list(position[:2]))
        return row, col

    @staticmethod
    def _cell_distance(dem: Raster, a: Cell, b: Cell) -> float:
        px, py = dem.pixel_size
        return math.hypot((a[0] - b[0]) * py, (a[1] - b[1]) * px)

    def _is_visible(self, dem: Raster, origin: Cell, eye: float, target: Cell,
                    target_height: float, half_view: float = math.pi / 2) -> bool:
        if target == origin:
            return True
        data = dem.data
        horizon = -math.inf
        for cell in bresenham(origin, target)[1:-1]:
            angle = math.atan2(data[cell] - eye, self._cell_distance(dem, origin, cell))
            horizon = max(horizon, angle)
        target_angle = math.atan2(data[target] + target_height - eye,
                                  self._cell_distance(dem, origin, target))
        if abs(target_angle) > half_view:
            return False
        return target_angle >= horizon

    # -- viewsheds ----------------------------------------------------------

    def viewshed(self, dem: Raster, observer: Sequence[float],
                 observer_height: float = 2.0, target_height: float = 0.0,
                 max_distance: float = math.inf, vertical_angle: float = 180.0,
                 cancel_token: Optional[CancellationToken] = None) -> ViewshedResult:
        """
        Cells visible from an observer standing ``observer_height`` above the DEM.

        Parameters
        ----------
        dem : Raster
            Elevation model.
        observer : position
            Observer location; must fall inside the DEM.
        observer_height, target_height : float
            Heights added to the ground at the observer and at each target.
        max_distance : float
            Cells farther than this are reported not visible.
        vertical_angle : float
            Vertical field of view in degrees, centered on the horizontal.
            Targets seen more than half of it above or below the horizontal
            are not visible. 180 sees everything.

        Returns
        -------
        ViewshedResult
        """
        if not 0 < vertical_angle <= 180:
            raise AnalysisError(f"vertical_angle must be in (0, 180], got {vertical_angle}")
        half_view = math.radians(vertical_angle) / 2
        origin = self._observer_cell(dem, observer)
        eye = dem.data[origin] + observer_height
        visible = np.zeros_like(dem.data)

        with get_logging_manager().operation("viewshed", "viewshed",
                                             cells=dem.width * dem.height):
            for row in range(dem.height):
                check_cancelled(cancel_token, "viewshed")
                for col in range(dem.width):
                    if self._cell_distance(dem, origin, (row, col)) > max_distance:
                        continue
                    if self._is_visible(dem, origin, eye, (row, col), target_height,
                                        half_view):
                        visible[row, col] = 1

        count = int(visible.sum())
        total = dem.width * dem.height
        return ViewshedResult(dem.with_data(visible), count, total, count / total * 100)

    def cumulative_viewshed(self, dem: Raster, observers: Sequence[Observer],
                            target_height: float = 0.0, max_distance: float = math.inf,
                            cancel_token: Optional[CancellationToken] = None) -> ViewshedResult:
        """Per-cell number of observers that can see the cell."""
        counts = np.zeros_like(dem.data)
        for observer in observers:
            result = self.viewshed(dem, observer.position, observer.height, target_height,
                                   max_distance, observer.vertical_angle, cancel_token)
            counts += result.visible.data
        seen = int((counts > 0).sum())
        total = dem.width * dem.height
        return ViewshedResult(dem.with_data(counts), seen, total, seen / total * 100)

    def optimal_viewpoint(self, dem: Raster, search_area: Bounds, step_cells: int = 5,
                          observer_height: float = 2.0, target_height: float = 0.0,
                          max_distance: float = math.inf,
                          cancel_token: Optional[CancellationToken] = None) -> Optional[ViewpointResult]:
        """
        Sampled position in ``search_area`` that sees the most cells.

        Candidates are spaced ``step_cells`` cells apart from the area's
        south-west corner. Candidates outside the DEM are skipped; returns
        None when none fall inside it.
        """
        if step_cells < 1:
            raise AnalysisError(f"step_cells must be at least 1, got {step_cells}")
        px, py = dem.pixel_size
        xs = np.arange(search_area.min_x, search_area.max_x + 1e-9, px * step_cells)
        ys = np.arange(search_area.min_y, search_area.max_y + 1e-9, py * step_cells)

        best: Optional[ViewpointResult] = None
        with get_logging_manager().operation("viewshed", "optimal_viewpoint",
                                             candidates=len(xs) * len(ys)):
            for x in xs:
                for y in ys:
                    check_cancelled(cancel_token, "viewshed")
                    position = (float(x), float(y))
                    if not dem.in_grid(*dem.cell_of(position)):
                        continue
                    result = self.viewshed(dem, position, observer_height, target_height,
                                           max_distance)
                    if best is None or result.visible_count > best.visible_count:
                        best = ViewpointResult(position, result.visible_count,
                                               result.visibility_percent)
        return best

    # -- sight lines --------------------------------------------------------

    def line_of_sight(self, dem: Raster, observer: Sequence[float], target: Sequence[float],
                      observer_height: float = 2.0, target_height: float = 0.0) -> LineOfSightResult:
        """
        Whether the straight sight line between two positions clears the terrain.

        The first intermediate cell rising above the sight line is reported as
        the blocking point (its cell center).
        """
        origin = self._observer_cell(dem, observer)
        end = dem.cell_of(target)
        if not dem.in_grid(*end):
            raise AnalysisError("Target position outside DEM bounds",
                                location=list(target[:2]))
        eye = dem.data[origin] + observer_height
        goal = dem.data[end] + target_height
        total = self._cell_distance(dem, origin, end)

        for cell in bresenham(origin, end)[1:-1]:
            expected = eye + (goal - eye) * self._cell_distance(dem, origin, cell) / total
            ground = float(dem.data[cell])
            if ground > expected:
                return LineOfSightResult(False, dem.cell_center(*cell), ground)
        return LineOfSightResult(True)

    def horizon_angles(self, dem: Raster, position: Sequence[float],
                       observer_height: float = 2.0, directions: int = 36) -> List[float]:
        """
        Highest terrain elevation angle, in degrees, along evenly spaced azimuths.

        Rays start due north and turn clockwise. A direction with no terrain
        in range reports -90.
        """
        if directions < 1:
            raise AnalysisError(f"directions must be at least 1, got {directions}")
        origin = self._observer_cell(dem, position)
        eye = dem.data[origin] + observer_height
        reach = max(dem.width, dem.height)

        angles = []
        for i in range(directions):
            azimuth = math.radians(i * 360 / directions)
            horizon = -90.0
            for step in range(1, reach):
                cell = (round(origin[0] - step * math.cos(azimuth)),
                        round(origin[1] + step * math.sin(azimuth)))
                if not dem.in_grid(*cell):
                    break
                if cell == origin:
                    continue
                angle = math.degrees(math.atan2(dem.data[cell] - eye,
                                                self._cell_distance(dem, origin, cell)))
                horizon = max(horizon, angle)
            angles.append(horizon)
        return angles
