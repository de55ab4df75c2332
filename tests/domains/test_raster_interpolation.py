"""
Tests for raster interpolation domain functionality.
"""

import numpy as np
import pytest

from geotoolkit.cancellation import CancellationToken
from geotoolkit.domains.raster_interpolation import (
    InterpolationMethod,
    InterpolationOptions,
    RasterInterpolator,
    VariogramModel,
    variogram,
)
from geotoolkit.error_handler import AnalysisError, OperationCancelledError
from geotoolkit.geometry.model import Bounds

EXTENT = Bounds(0, 0, 10, 10)

# Samples on cell centers of a 1-unit grid over EXTENT
SAMPLES = [(0.5, 9.5, 10.0), (9.5, 9.5, 20.0), (0.5, 0.5, 30.0), (9.5, 0.5, 40.0), (4.5, 4.5, 25.0)]


class TestVariogram:
    """Test variogram correlation models."""

    @pytest.mark.parametrize("model", list(VariogramModel))
    def test_unit_at_zero(self, model):
        """Test that every model is fully correlated at zero lag."""
        assert variogram(np.array([0.0]), model)[0] == pytest.approx(1.0)

    def test_bounded_models_vanish_past_range(self):
        """Test spherical and linear models beyond the range."""
        assert variogram(np.array([1.5]), VariogramModel.SPHERICAL)[0] == 0.0
        assert variogram(np.array([1.0]), VariogramModel.LINEAR)[0] == 0.0


class TestOptions:
    """Test interpolation option validation."""

    @pytest.mark.parametrize("kwargs,message", [
        ({'method': 'cubic'}, "cubic"),
        ({'power': 0}, "power must be positive"),
        ({'search_radius': 0}, "search_radius must be positive"),
        ({'variogram_model': 'circular'}, "circular"),
    ])
    def test_invalid(self, kwargs, message):
        """Test rejection of invalid options."""
        with pytest.raises(AnalysisError, match=message):
            InterpolationOptions(**kwargs)

    def test_string_method(self):
        """Test that methods may be given by name."""
        assert InterpolationOptions(method="kriging").method == InterpolationMethod.KRIGING


class TestInterpolation:
    """Test the interpolation methods."""

    def setup_method(self):
        """Set up test fixtures."""
        self.interpolator = RasterInterpolator()

    def test_idw_exact_hits(self):
        """Test that cells on samples take the sample value."""
        grid = self.interpolator.idw(SAMPLES, EXTENT, 1.0)
        for x, y, value in SAMPLES:
            assert grid.value_at((x, y)) == value

    def test_idw_within_sample_range(self):
        """Test that IDW never leaves the sample value range."""
        grid = self.interpolator.idw(SAMPLES, EXTENT, 1.0, power=3)
        assert grid.data.min() >= 10.0
        assert grid.data.max() <= 40.0

    def test_idw_midpoint(self):
        """Test that a cell equidistant from two samples gets their mean."""
        samples = [(0.5, 0.5, 0.0), (4.5, 0.5, 8.0)]
        grid = self.interpolator.idw(samples, Bounds(0, 0, 5, 1), 1.0)
        assert grid.value_at((2.5, 0.5)) == pytest.approx(4.0)

    def test_idw_search_radius(self):
        """Test that cells without samples in range stay zero."""
        grid = self.interpolator.idw([(0.5, 0.5, 5.0)], EXTENT, 1.0, search_radius=2.0)
        assert grid.value_at((1.5, 0.5)) == pytest.approx(5.0)
        assert grid.value_at((9.5, 9.5)) == 0.0

    def test_nearest(self):
        """Test nearest-sample assignment."""
        grid = self.interpolator.interpolate(SAMPLES, EXTENT, 1.0, "nearest")
        assert grid.value_at((1.5, 8.5)) == 10.0
        assert grid.value_at((8.5, 1.5)) == 40.0

    @pytest.mark.parametrize("model", list(VariogramModel))
    def test_kriging_honours_samples(self, model):
        """Test that ordinary kriging reproduces the data at sample locations."""
        grid = self.interpolator.kriging(SAMPLES, EXTENT, 1.0, variogram_model=model)
        for x, y, value in SAMPLES:
            assert grid.value_at((x, y)) == pytest.approx(value, abs=1e-6)

    @pytest.mark.parametrize("method", ["idw", "kriging", "spline", "nearest", "natural_neighbor"])
    def test_constant_field(self, method):
        """Test that every method reproduces a constant field."""
        samples = [(x, y, 7.0) for x, y, _ in SAMPLES]
        grid = self.interpolator.interpolate(samples, EXTENT, 1.0, method)
        np.testing.assert_allclose(grid.data, 7.0, atol=1e-6)

    def test_single_sample_kriging(self):
        """Test kriging with one sample."""
        grid = self.interpolator.kriging([(5.0, 5.0, 3.0)], EXTENT, 1.0)
        np.testing.assert_allclose(grid.data, 3.0, atol=1e-9)

    @pytest.mark.parametrize("samples,message", [
        ([], "at least one sample"),
        ([(0, 0), (1, 1)], "triples"),
    ])
    def test_invalid_samples(self, samples, message):
        """Test sample validation."""
        with pytest.raises(AnalysisError, match=message):
            self.interpolator.idw(samples, EXTENT, 1.0)

    def test_cancelled(self):
        """Test cooperative cancellation."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            self.interpolator.idw(SAMPLES, EXTENT, 1.0, cancel_token=token)
