"""
Raster Interpolation Domain - surfaces from scattered samples.

Samples are ``(x, y, value)`` triples. Every method evaluates the surface at
cell centers of a north-up grid covering the requested bounds and computes
one output row at a time.

Key Features:
- Inverse distance weighting with power and search radius
- Ordinary kriging with spherical, exponential, gaussian or linear models,
  solved with scipy.linalg
- Gaussian radial-basis spline with tension
- Nearest sample and a natural-neighbour approximation
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

import numpy as np
from scipy import linalg

from ..cancellation import CancellationToken, check_cancelled
from ..config_manager import AnalysisConfig, get_analysis_defaults
from ..error_handler import AnalysisError
from ..logging_manager import get_logger, get_logging_manager
from ..geometry.model import Bounds
from .raster import Raster

logger = get_logger(__name__)

EXACT_HIT = 1e-10


class InterpolationMethod(str, Enum):
    IDW = "idw"
    KRIGING = "kriging"
    SPLINE = "spline"
    NEAREST = "nearest"
    NATURAL_NEIGHBOR = "natural_neighbor"


class VariogramModel(str, Enum):
    SPHERICAL = "spherical"
    EXPONENTIAL = "exponential"
    GAUSSIAN = "gaussian"
    LINEAR = "linear"


@dataclass
class InterpolationOptions:
    method: InterpolationMethod = InterpolationMethod.IDW
    power: float = 2.0
    search_radius: Optional[float] = None
    variogram_model: VariogramModel = VariogramModel.SPHERICAL
    tension: float = 0.1

    def __post_init__(self):
        try:
            self.method = InterpolationMethod(self.method)
            self.variogram_model = VariogramModel(self.variogram_model)
        except ValueError as e:
            raise AnalysisError(str(e))
        if self.power <= 0:
            raise AnalysisError(f"power must be positive, got {self.power}")
        if self.search_radius is not None and self.search_radius <= 0:
            raise AnalysisError(f"search_radius must be positive, got {self.search_radius}")


def variogram(h: np.ndarray, model: VariogramModel) -> np.ndarray:
    """Correlation at lag ``h`` expressed in units of the range."""
    h = np.asarray(h, dtype=float)
    if model == VariogramModel.SPHERICAL:
        return np.where(h <= 1, 1 - 1.5 * h + 0.5 * h ** 3, 0.0)
    if model == VariogramModel.EXPONENTIAL:
        return np.exp(-3 * h)
    if model == VariogramModel.GAUSSIAN:
        return np.exp(-3 * h * h)
    return np.where(h <= 1, 1 - h, 0.0)


def _samples(points: Sequence[Sequence[float]]) -> Tuple[np.ndarray, np.ndarray]:
    if len(points) == 0:
        raise AnalysisError("Interpolation needs at least one sample")
    arr = np.asarray([p[:3] for p in points], dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise AnalysisError("Samples must be (x, y, value) triples")
    return arr[:, :2], arr[:, 2]


class RasterInterpolator:
    """Grid interpolation of point samples."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or get_analysis_defaults()

    def interpolate(self, points: Sequence[Sequence[float]], bounds: Bounds, cell_size: float,
                    options: Union[InterpolationOptions, str, None] = None,
                    cancel_token: Optional[CancellationToken] = None) -> Raster:
        """
        Interpolate samples onto a grid.

        Parameters
        ----------
        points : sequence of (x, y, value)
        bounds : Bounds
            Output extent; extended to whole cells.
        cell_size : float
        options : InterpolationOptions or method name
            Defaults to IDW with power 2.

        Returns
        -------
        raster : Raster
        """
        if options is None or isinstance(options, str):
            options = InterpolationOptions(method=options or InterpolationMethod.IDW)
        coords, values = _samples(points)
        grid = Raster.from_cell_size(bounds, cell_size)

        if options.method == InterpolationMethod.KRIGING:
            row_fn = self._kriging_rows(coords, values, options.variogram_model)
        elif options.method == InterpolationMethod.SPLINE:
            row_fn = lambda d: self._spline_row(d, values, options.tension)
        elif options.method == InterpolationMethod.NEAREST:
            row_fn = lambda d: values[np.argmin(d, axis=1)]
        elif options.method == InterpolationMethod.NATURAL_NEIGHBOR:
            row_fn = lambda d: self._idw_row(d, values, 1.0, options.search_radius)
        else:
            row_fn = lambda d: self._idw_row(d, values, options.power, options.search_radius)

        xs, _ = grid.cell_centers()
        with get_logging_manager().operation("interpolation", options.method.value,
                                             samples=len(values),
                                             cells=grid.width * grid.height):
            for row in range(grid.height):
                check_cancelled(cancel_token, "interpolation")
                y = grid.cell_center(row, 0)[1]
                dx = xs[row][:, None] - coords[None, :, 0]
                dy = y - coords[None, :, 1]
                grid.data[row] = row_fn(np.sqrt(dx * dx + dy * dy))
        return grid

    def idw(self, points, bounds, cell_size, power=2.0, search_radius=None,
            cancel_token=None) -> Raster:
        return self.interpolate(points, bounds, cell_size,
                                InterpolationOptions(InterpolationMethod.IDW, power=power,
                                                     search_radius=search_radius),
                                cancel_token)

    def kriging(self, points, bounds, cell_size, variogram_model=VariogramModel.SPHERICAL,
                cancel_token=None) -> Raster:
        return self.interpolate(points, bounds, cell_size,
                                InterpolationOptions(InterpolationMethod.KRIGING,
                                                     variogram_model=variogram_model),
                                cancel_token)

    # -- per-row estimators -------------------------------------------------

    @staticmethod
    def _idw_row(distances: np.ndarray, values: np.ndarray, power: float,
                 search_radius: Optional[float]) -> np.ndarray:
        """Weighted mean of samples in range; an exact hit takes the sample value."""
        out = np.zeros(distances.shape[0])
        for i, d in enumerate(distances):
            hits = np.nonzero(d < EXACT_HIT)[0]
            if hits.size:
                out[i] = values[hits[0]]
                continue
            mask = d <= search_radius if search_radius is not None else np.ones_like(d, dtype=bool)
            if not mask.any():
                continue
            weights = 1.0 / d[mask] ** power
            out[i] = (weights * values[mask]).sum() / weights.sum()
        return out

    @staticmethod
    def _spline_row(distances: np.ndarray, values: np.ndarray, tension: float) -> np.ndarray:
        weights = np.exp(-(distances * tension) ** 2)
        totals = weights.sum(axis=1)
        sums = (weights * values[None, :]).sum(axis=1)
        return np.divide(sums, totals, out=np.zeros_like(sums), where=totals > 0)

    def _kriging_rows(self, coords: np.ndarray, values: np.ndarray, model: VariogramModel):
        """
        Ordinary kriging estimator for rows of cell-to-sample distances.

        The range is a third of the largest sample separation. The bordered
        system ``[[C, 1], [1, 0]] w = [c, 1]`` is solved for all cells of a
        row at once; a singular system falls back to least squares.
        """
        n = len(values)
        dx = coords[:, 0:1] - coords[:, 0].reshape(1, -1)
        dy = coords[:, 1:2] - coords[:, 1].reshape(1, -1)
        separation = np.sqrt(dx * dx + dy * dy)
        corr_range = separation.max() / 3 if n > 1 else 0.0
        if corr_range == 0:
            corr_range = 1.0

        system = np.ones((n + 1, n + 1))
        system[:n, :n] = variogram(separation / corr_range, model)
        system[n, n] = 0.0
        state = {'singular': False}

        def estimate(distances: np.ndarray) -> np.ndarray:
            rhs = np.ones((n + 1, distances.shape[0]))
            rhs[:n] = variogram(distances.T / corr_range, model)
            if not state['singular']:
                try:
                    weights = linalg.solve(system, rhs)
                except linalg.LinAlgError:
                    state['singular'] = True
                    logger.warning("Kriging system is singular, falling back to least squares",
                                   samples=n)
            if state['singular']:
                weights = linalg.lstsq(system, rhs)[0]
            return values @ weights[:n]

        logger.debug("Kriging system assembled", samples=n, range=corr_range, model=model.value)
        return estimate
