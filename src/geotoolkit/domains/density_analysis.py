"""
Density Analysis Domain - kernel density estimation and hot spot statistics.

Grid outputs are ``Raster`` values whose cells are evaluated at their
centers. Each output row is computed in one vectorized step against all
input points; the cancellation token is checked once per row.

Key Features:
- Kernel density with gaussian, quartic, triangular and uniform kernels
- Point and line density normalized by the search-circle area
- Weighted heat maps normalized to [0, 1]
- Getis-Ord Gi* style hot spot z-scores with an Abramowitz-Stegun normal CDF
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from ..cancellation import CancellationToken, check_cancelled
from ..config_manager import AnalysisConfig, get_analysis_defaults
from ..error_handler import AnalysisError
from ..logging_manager import get_logger, get_logging_manager
from ..geometry.model import Bounds, LineString, Position
from .raster import BandStatistics, Raster, band_statistics

logger = get_logger(__name__)


class KernelType(str, Enum):
    GAUSSIAN = "gaussian"
    QUARTIC = "quartic"
    TRIANGULAR = "triangular"
    UNIFORM = "uniform"


class AreaUnit(str, Enum):
    SQUARE_METERS = "square-meters"
    SQUARE_KILOMETERS = "square-kilometers"
    SQUARE_MILES = "square-miles"


AREA_MULTIPLIERS = {
    AreaUnit.SQUARE_METERS: 1.0,
    AreaUnit.SQUARE_KILOMETERS: 1_000_000.0,
    AreaUnit.SQUARE_MILES: 2_589_988.0,
}


@dataclass
class Hotspot:
    position: Position
    z_score: float
    p_value: float


def kernel_function(u: np.ndarray, kernel: KernelType) -> np.ndarray:
    """Kernel weight for normalized distances ``u = d / bandwidth``."""
    u = np.asarray(u, dtype=float)
    inside = u <= 1
    if kernel == KernelType.GAUSSIAN:
        return (1 / math.sqrt(2 * math.pi)) * np.exp(-0.5 * u * u)
    if kernel == KernelType.QUARTIC:
        return np.where(inside, (15 / 16) * (1 - u * u) ** 2, 0.0)
    if kernel == KernelType.TRIANGULAR:
        return np.where(inside, 1 - u, 0.0)
    if kernel == KernelType.UNIFORM:
        return np.where(inside, 0.5, 0.0)
    raise AnalysisError(f"Unknown kernel: {kernel}")


def normal_cdf(x: float) -> float:
    """Standard normal CDF, Abramowitz-Stegun 26.2.17 (|error| < 7.5e-8)."""
    t = 1 / (1 + 0.2316419 * abs(x))
    d = 0.3989423 * math.exp(-x * x / 2)
    prob = d * t * (0.3193815 + t * (-0.3565638 + t * (1.781478 + t * (-1.821256 + t * 1.330274))))
    return 1 - prob if x > 0 else prob


def segment_length_in_circle(start: Sequence[float], end: Sequence[float],
                             center: Sequence[float], radius: float) -> float:
    """Length of the part of segment start-end lying inside a circle."""
    dx, dy = end[0] - start[0], end[1] - start[1]
    fx, fy = start[0] - center[0], start[1] - center[1]
    a = dx * dx + dy * dy
    if a == 0:
        return 0.0
    b = 2 * (fx * dx + fy * dy)
    c = fx * fx + fy * fy - radius * radius
    disc = b * b - 4 * a * c
    if disc <= 0:
        return 0.0
    root = math.sqrt(disc)
    t0 = max(0.0, (-b - root) / (2 * a))
    t1 = min(1.0, (-b + root) / (2 * a))
    if t1 <= t0:
        return 0.0
    return (t1 - t0) * math.sqrt(a)


class DensityAnalyzer:
    """Grid density estimators."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or get_analysis_defaults()

    @staticmethod
    def _check_grid_args(cell_size: float, search_radius: float):
        if cell_size <= 0:
            raise AnalysisError(f"cell_size must be positive, got {cell_size}")
        if search_radius <= 0:
            raise AnalysisError(f"search_radius must be positive, got {search_radius}")

    def _row_distances(self, grid: Raster, row: int, coords: np.ndarray) -> np.ndarray:
        """(width, n_points) distances from one row of cell centers."""
        px, py = grid.pixel_size
        xs = grid.bounds.min_x + (np.arange(grid.width) + 0.5) * px
        y = grid.bounds.max_y - (row + 0.5) * py
        dx = xs[:, None] - coords[None, :, 0]
        dy = y - coords[None, :, 1]
        return np.sqrt(dx * dx + dy * dy)

    # -- point kernels ------------------------------------------------------

    def kernel_density(self, points: Sequence[Sequence[float]], bounds: Bounds,
                       cell_size: float, search_radius: float,
                       kernel: Union[str, KernelType] = KernelType.GAUSSIAN,
                       cancel_token: Optional[CancellationToken] = None) -> Raster:
        """
        Sum of kernel contributions of every point within ``search_radius``.

        Parameters
        ----------
        points : sequence of positions
        bounds : Bounds
            Output extent; the grid is extended to whole cells.
        cell_size : float
            Cell edge length in coordinate units.
        search_radius : float
            Kernel bandwidth; points farther away contribute nothing.
        kernel : {'gaussian', 'quartic', 'triangular', 'uniform'}

        Returns
        -------
        raster : Raster
        """
        self._check_grid_args(cell_size, search_radius)
        try:
            kernel = KernelType(kernel)
        except ValueError:
            raise AnalysisError(f"Unknown kernel: {kernel}")

        grid = Raster.from_cell_size(bounds, cell_size)
        coords = np.asarray([p[:2] for p in points], dtype=float).reshape(-1, 2)

        with get_logging_manager().operation("density", "kernel_density",
                                             points=len(coords), kernel=kernel.value):
            for row in range(grid.height):
                check_cancelled(cancel_token, "density")
                distances = self._row_distances(grid, row, coords)
                weights = np.where(distances <= search_radius,
                                   kernel_function(distances / search_radius, kernel), 0.0)
                grid.data[row] = weights.sum(axis=1)
        return grid

    def point_density(self, points: Sequence[Sequence[float]], bounds: Bounds,
                      cell_size: float, search_radius: float,
                      area_units: Union[str, AreaUnit] = AreaUnit.SQUARE_METERS,
                      cancel_token: Optional[CancellationToken] = None) -> Raster:
        """Points within the search circle divided by the circle's area."""
        self._check_grid_args(cell_size, search_radius)
        area_units = AreaUnit(area_units)
        search_area = math.pi * search_radius * search_radius * AREA_MULTIPLIERS[area_units]

        grid = Raster.from_cell_size(bounds, cell_size)
        coords = np.asarray([p[:2] for p in points], dtype=float).reshape(-1, 2)

        with get_logging_manager().operation("density", "point_density", points=len(coords)):
            for row in range(grid.height):
                check_cancelled(cancel_token, "density")
                counts = (self._row_distances(grid, row, coords) <= search_radius).sum(axis=1)
                grid.data[row] = counts / search_area
        return grid

    def line_density(self, lines: Sequence[Union[LineString, Sequence[Sequence[float]]]],
                     bounds: Bounds, cell_size: float, search_radius: float,
                     cancel_token: Optional[CancellationToken] = None) -> Raster:
        """Line length inside the search circle divided by the circle's area."""
        self._check_grid_args(cell_size, search_radius)
        grid = Raster.from_cell_size(bounds, cell_size)
        segments = []
        for line in lines:
            path = line.positions if isinstance(line, LineString) else line
            segments.extend(zip(path[:-1], path[1:]))
        search_area = math.pi * search_radius * search_radius

        with get_logging_manager().operation("density", "line_density", segments=len(segments)):
            for row in range(grid.height):
                check_cancelled(cancel_token, "density")
                for col in range(grid.width):
                    center = grid.cell_center(row, col)
                    total = sum(segment_length_in_circle(a, b, center, search_radius)
                                for a, b in segments)
                    grid.data[row, col] = total / search_area
        return grid

    def heat_map(self, points: Sequence[Union[Sequence[float], Tuple[Sequence[float], float]]],
                 bounds: Bounds, cell_size: float, search_radius: float,
                 cancel_token: Optional[CancellationToken] = None) -> Raster:
        """
        Weighted gaussian influence surface scaled so the hottest cell is 1.

        ``points`` holds positions or ``(position, weight)`` pairs; bare
        positions weigh 1.
        """
        self._check_grid_args(cell_size, search_radius)
        coords, weights = [], []
        for item in points:
            if len(item) == 2 and isinstance(item[0], (list, tuple)):
                coords.append(item[0][:2])
                weights.append(float(item[1]))
            else:
                coords.append(item[:2])
                weights.append(1.0)
        coords_arr = np.asarray(coords, dtype=float).reshape(-1, 2)
        weight_arr = np.asarray(weights, dtype=float)

        grid = Raster.from_cell_size(bounds, cell_size)
        with get_logging_manager().operation("density", "heat_map", points=len(coords)):
            for row in range(grid.height):
                check_cancelled(cancel_token, "density")
                distances = self._row_distances(grid, row, coords_arr)
                influence = np.where(distances <= search_radius,
                                     kernel_function(distances / search_radius, KernelType.GAUSSIAN),
                                     0.0)
                grid.data[row] = (influence * weight_arr[None, :]).sum(axis=1)

            peak = grid.data.max()
            if peak > 0:
                grid.data /= peak
        return grid

    # -- per-point statistics -----------------------------------------------

    def local_density(self, points: Sequence[Sequence[float]], search_radius: float,
                      cancel_token: Optional[CancellationToken] = None) -> List[float]:
        """Neighbours within the radius (self excluded) per unit circle area."""
        if search_radius <= 0:
            raise AnalysisError(f"search_radius must be positive, got {search_radius}")
        coords = np.asarray([p[:2] for p in points], dtype=float).reshape(-1, 2)
        area = math.pi * search_radius * search_radius
        densities = []
        for i in range(len(coords)):
            check_cancelled(cancel_token, "density")
            d = np.hypot(coords[:, 0] - coords[i, 0], coords[:, 1] - coords[i, 1])
            densities.append(float((d <= search_radius).sum() - 1) / area)
        return densities

    def hotspots(self, points: Sequence[Sequence[float]], values: Sequence[float],
                 search_radius: float,
                 cancel_token: Optional[CancellationToken] = None) -> List[Hotspot]:
        """
        Local-mean z-score per point.

        For each point the mean of the values within ``search_radius`` (itself
        included) is compared against the global mean:
        ``z = (local_mean - mean) / (std / sqrt(n_local))``. The p-value is the
        one-sided upper tail ``1 - Phi(|z|)``. A constant field yields z = 0.
        """
        if len(points) != len(values):
            raise AnalysisError(
                f"points and values differ in length ({len(points)} != {len(values)})"
            )
        if search_radius <= 0:
            raise AnalysisError(f"search_radius must be positive, got {search_radius}")
        if not points:
            return []

        coords = np.asarray([p[:2] for p in points], dtype=float).reshape(-1, 2)
        vals = np.asarray(values, dtype=float)
        mean = vals.mean()
        std_dev = vals.std()

        results = []
        with get_logging_manager().operation("density", "hotspots", points=len(coords)):
            for i in range(len(coords)):
                check_cancelled(cancel_token, "density")
                d = np.hypot(coords[:, 0] - coords[i, 0], coords[:, 1] - coords[i, 1])
                local = vals[d <= search_radius]
                if std_dev == 0:
                    z = 0.0
                else:
                    z = float((local.mean() - mean) / (std_dev / math.sqrt(local.size)))
                results.append(Hotspot(tuple(points[i]), z, 1 - normal_cdf(abs(z))))
        return results

    def band_statistics(self, raster: Raster) -> Optional[BandStatistics]:
        return band_statistics(raster)
