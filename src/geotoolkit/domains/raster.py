"""
Raster model shared by the grid-based analyses.

A raster is a single-band ``numpy`` array with north-up georeferencing:
row 0 is the top edge (``bounds.max_y``) and column 0 the left edge
(``bounds.min_x``). Terrain, viewshed, density and interpolation all read and
produce this type.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from ..error_handler import AnalysisError
from ..geometry.model import Bounds, Position


@dataclass
class BandStatistics:
    """Summary statistics over the finite, non-nodata cells of a band."""
    min: float
    max: float
    mean: float
    std_dev: float
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'min': self.min,
            'max': self.max,
            'mean': self.mean,
            'std_dev': self.std_dev,
            'count': self.count
        }


@dataclass
class Raster:
    """North-up single-band grid."""
    data: np.ndarray
    bounds: Bounds
    no_data: Optional[float] = None

    def __post_init__(self):
        self.data = np.asarray(self.data, dtype=float)
        if self.data.ndim != 2 or self.data.size == 0:
            raise AnalysisError(f"Raster data must be a non-empty 2D array, got shape {self.data.shape}")
        if self.bounds.width <= 0 or self.bounds.height <= 0:
            raise AnalysisError("Raster bounds must have positive width and height")

    @classmethod
    def from_cell_size(cls, bounds: Bounds, cell_size: float,
                       fill: float = 0.0) -> 'Raster':
        """Grid covering ``bounds`` with square cells, extended to whole cells."""
        if cell_size <= 0:
            raise AnalysisError(f"cell_size must be positive, got {cell_size}")
        width = max(1, math.ceil(bounds.width / cell_size))
        height = max(1, math.ceil(bounds.height / cell_size))
        extent = Bounds(bounds.min_x, bounds.max_y - height * cell_size,
                        bounds.min_x + width * cell_size, bounds.max_y)
        return cls(np.full((height, width), fill, dtype=float), extent)

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def pixel_size(self) -> Tuple[float, float]:
        return (self.bounds.width / self.width, self.bounds.height / self.height)

    def cell_center(self, row: int, col: int) -> Position:
        px, py = self.pixel_size
        return (self.bounds.min_x + (col + 0.5) * px, self.bounds.max_y - (row + 0.5) * py)

    def cell_centers(self) -> Tuple[np.ndarray, np.ndarray]:
        """Center coordinates as two (height, width) arrays."""
        px, py = self.pixel_size
        xs = self.bounds.min_x + (np.arange(self.width) + 0.5) * px
        ys = self.bounds.max_y - (np.arange(self.height) + 0.5) * py
        return np.meshgrid(xs, ys)

    def cell_of(self, position: Sequence[float]) -> Tuple[int, int]:
        """(row, col) of the cell containing a position; may be out of range."""
        px, py = self.pixel_size
        col = math.floor((position[0] - self.bounds.min_x) / px)
        row = math.floor((self.bounds.max_y - position[1]) / py)
        return row, col

    def in_grid(self, row: int, col: int) -> bool:
        return 0 <= row < self.height and 0 <= col < self.width

    def value_at(self, position: Sequence[float], default: float = 0.0) -> float:
        row, col = self.cell_of(position)
        if not self.in_grid(row, col):
            return default
        return float(self.data[row, col])

    def with_data(self, data: np.ndarray, no_data: Optional[float] = None) -> 'Raster':
        """A raster on the same grid carrying new values."""
        return Raster(data, self.bounds, no_data)

    def valid_mask(self) -> np.ndarray:
        mask = np.isfinite(self.data)
        if self.no_data is not None:
            mask &= ~np.isclose(self.data, self.no_data, atol=1e-10)
        return mask

    def statistics(self) -> Optional[BandStatistics]:
        """Band statistics, or None when no cell holds a value."""
        values = self.data[self.valid_mask()]
        if values.size == 0:
            return None
        return BandStatistics(
            min=float(values.min()),
            max=float(values.max()),
            mean=float(values.mean()),
            std_dev=float(values.std()),
            count=int(values.size)
        )


def band_statistics(raster: Raster) -> Optional[BandStatistics]:
    return raster.statistics()
