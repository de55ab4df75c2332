"""
Raster Mosaic Domain - merging and resampling rasters.

Mosaics place every input on a common north-up grid built from the union
of their bounds and the first input's cell size. Each output cell takes
the input cell under its center. Resampling changes the cell size of one
raster over its own extent.

Key Features:
- Mosaic with first, last, min, max, mean or edge-feathered blend merging
- Nearest, bilinear and cubic convolution resampling
- Nodata-aware: uncovered cells are nodata, nodata inputs never contribute
"""

import math
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from ..cancellation import CancellationToken, check_cancelled
from ..config_manager import AnalysisConfig, get_analysis_defaults
from ..error_handler import AnalysisError
from ..geometry.model import Bounds
from ..logging_manager import get_logger, get_logging_manager
from .raster import Raster

logger = get_logger(__name__)

DEFAULT_NO_DATA = -9999.0

# Keys cubic convolution parameter
CUBIC_A = -0.5


class MosaicMethod(str, Enum):
    FIRST = "first"
    LAST = "last"
    MIN = "min"
    MAX = "max"
    MEAN = "mean"
    BLEND = "blend"


class ResampleMethod(str, Enum):
    NEAREST = "nearest"
    BILINEAR = "bilinear"
    CUBIC = "cubic"


def combined_bounds(rasters: Sequence[Raster]) -> Bounds:
    return Bounds(min(r.bounds.min_x for r in rasters), min(r.bounds.min_y for r in rasters),
                  max(r.bounds.max_x for r in rasters), max(r.bounds.max_y for r in rasters))


def blend_weights(raster: Raster) -> np.ndarray:
    """
    Feathering weights that ramp up from the raster edge.

    The ramp is a tenth of the smaller side wide (at least one cell); edge
    cells keep a small positive weight so a lone input still counts.
    """
    rows = np.arange(raster.height)[:, None]
    cols = np.arange(raster.width)[None, :]
    to_edge = np.minimum(np.minimum(rows, raster.height - 1 - rows),
                         np.minimum(cols, raster.width - 1 - cols))
    ramp = max(1.0, min(raster.height, raster.width) / 10)
    return np.minimum(1.0, (to_edge + 1) / ramp)


def cubic_kernel(x: np.ndarray) -> np.ndarray:
    """Keys cubic convolution kernel."""
    x = np.abs(x)
    a = CUBIC_A
    near = (a + 2) * x ** 3 - (a + 3) * x ** 2 + 1
    far = a * x ** 3 - 5 * a * x ** 2 + 8 * a * x - 4 * a
    return np.where(x <= 1, near, np.where(x < 2, far, 0.0))


class RasterMosaic:
    """Mosaic and resample rasters."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or get_analysis_defaults()

    # -- mosaic -------------------------------------------------------------

    def mosaic(self, rasters: Sequence[Raster],
               method: Union[MosaicMethod, str] = MosaicMethod.FIRST,
               no_data: float = DEFAULT_NO_DATA,
               cancel_token: Optional[CancellationToken] = None) -> Raster:
        """
        Merge rasters onto one grid.

        Parameters
        ----------
        rasters : sequence of Raster
            Inputs in priority order; ``first`` keeps the earliest value and
            ``last`` the latest.
        method : MosaicMethod or str
            How overlapping values combine. ``mean`` averages, ``blend``
            averages with weights that fade towards each input's edges.
        no_data : float
            Value of output cells that no input covers.

        Returns
        -------
        Raster
            Extent is the union of input bounds extended to whole cells of
            the first input's size.
        """
        if not rasters:
            raise AnalysisError("No rasters provided for mosaic")
        try:
            method = MosaicMethod(method)
        except ValueError as e:
            raise AnalysisError(str(e))

        px, py = rasters[0].pixel_size
        union = combined_bounds(rasters)
        width = max(1, math.ceil(round(union.width / px, 9)))
        height = max(1, math.ceil(round(union.height / py, 9)))
        grid = Raster(np.zeros((height, width)),
                      Bounds(union.min_x, union.max_y - height * py,
                             union.min_x + width * px, union.max_y))
        xs, ys = grid.cell_centers()

        total = np.zeros((height, width))
        weights = np.zeros((height, width))
        covered = np.zeros((height, width), dtype=bool)

        with get_logging_manager().operation("raster", "mosaic", inputs=len(rasters),
                                             method=method.value, cells=width * height):
            for raster in rasters:
                check_cancelled(cancel_token, "raster")
                rows, cols, hit = self._sample_cells(raster, xs, ys)
                values = raster.data[rows, cols]
                hit &= raster.valid_mask()[rows, cols]

                if method == MosaicMethod.FIRST:
                    take = hit & ~covered
                    total[take] = values[take]
                elif method == MosaicMethod.LAST:
                    total[hit] = values[hit]
                elif method in (MosaicMethod.MIN, MosaicMethod.MAX):
                    pick = np.minimum if method == MosaicMethod.MIN else np.maximum
                    merged = np.where(covered, pick(total, values), values)
                    total[hit] = merged[hit]
                else:
                    w = blend_weights(raster)[rows, cols] if method == MosaicMethod.BLEND \
                        else np.ones_like(values)
                    total[hit] += values[hit] * w[hit]
                    weights[hit] += w[hit]
                covered |= hit

        if method in (MosaicMethod.MEAN, MosaicMethod.BLEND):
            total = np.divide(total, weights, out=np.zeros_like(total), where=weights > 0)
        total[~covered] = no_data
        logger.debug("Mosaic complete", covered=int(covered.sum()), cells=width * height)
        return grid.with_data(total, no_data)

    @staticmethod
    def _sample_cells(raster: Raster, xs: np.ndarray,
                      ys: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Input (row, col) under each position, clipped, with an in-grid mask."""
        px, py = raster.pixel_size
        cols = np.floor((xs - raster.bounds.min_x) / px).astype(int)
        rows = np.floor((raster.bounds.max_y - ys) / py).astype(int)
        inside = (rows >= 0) & (rows < raster.height) & (cols >= 0) & (cols < raster.width)
        return (np.clip(rows, 0, raster.height - 1), np.clip(cols, 0, raster.width - 1),
                inside)

    # -- resample -----------------------------------------------------------

    def resample(self, raster: Raster, cell_size: Union[float, Tuple[float, float]],
                 method: Union[ResampleMethod, str] = ResampleMethod.BILINEAR,
                 cancel_token: Optional[CancellationToken] = None) -> Raster:
        """
        Raster over the same extent with a new cell size.

        Input values sit at cell centers. Bilinear and cubic sampling clamp
        at the raster edge and fall back to the nearest cell wherever a
        contributing cell is nodata. The extent grows to whole output cells;
        output cells centered past the input edge take the nearest edge value.
        """
        try:
            method = ResampleMethod(method)
        except ValueError as e:
            raise AnalysisError(str(e))
        cx, cy = (cell_size, cell_size) if np.isscalar(cell_size) else cell_size
        if cx <= 0 or cy <= 0:
            raise AnalysisError(f"cell_size must be positive, got {cell_size}")

        b = raster.bounds
        width = max(1, math.ceil(round(b.width / cx, 9)))
        height = max(1, math.ceil(round(b.height / cy, 9)))
        grid = Raster(np.zeros((height, width)),
                      Bounds(b.min_x, b.max_y - height * cy, b.min_x + width * cx, b.max_y))
        xs, ys = grid.cell_centers()

        px, py = raster.pixel_size
        # Fractional input positions, 0 at the center of cell 0
        col_f = (xs - b.min_x) / px - 0.5
        row_f = (b.max_y - ys) / py - 0.5
        valid = raster.valid_mask()

        rows, cols, _ = self._sample_cells(raster, xs, ys)
        nearest = raster.data[rows, cols]
        out = np.empty((height, width))

        with get_logging_manager().operation("raster", "resample", method=method.value,
                                             cells=width * height):
            for row in range(height):
                check_cancelled(cancel_token, "raster")
                if method == ResampleMethod.NEAREST:
                    out[row] = nearest[row]
                    continue
                offsets = [0, 1] if method == ResampleMethod.BILINEAR else [-1, 0, 1, 2]
                value, ok = self._convolve(raster.data, valid, row_f[row], col_f[row],
                                           offsets, method)
                out[row] = np.where(ok, value, nearest[row])
        return grid.with_data(out, raster.no_data)

    @staticmethod
    def _convolve(data: np.ndarray, valid: np.ndarray, row_f: np.ndarray, col_f: np.ndarray,
                  offsets: List[int], method: ResampleMethod) -> Tuple[np.ndarray, np.ndarray]:
        """Weighted sum over the neighbourhood of each fractional position."""
        height, width = data.shape
        r0 = np.floor(row_f).astype(int)
        c0 = np.floor(col_f).astype(int)
        tr = row_f - r0
        tc = col_f - c0

        value = np.zeros(row_f.shape)
        ok = np.ones(row_f.shape, dtype=bool)
        for dr in offsets:
            wr = (1 - tr if dr == 0 else tr) if method == ResampleMethod.BILINEAR \
                else cubic_kernel(tr - dr)
            r = np.clip(r0 + dr, 0, height - 1)
            for dc in offsets:
                wc = (1 - tc if dc == 0 else tc) if method == ResampleMethod.BILINEAR \
                    else cubic_kernel(tc - dc)
                c = np.clip(c0 + dc, 0, width - 1)
                value += wr * wc * data[r, c]
                ok &= valid[r, c]
        return value, ok
