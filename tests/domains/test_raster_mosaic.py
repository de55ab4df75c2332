"""
Tests for raster mosaic domain functionality.
"""

import numpy as np
import pytest

from geotoolkit.cancellation import CancellationToken
from geotoolkit.domains.raster import Raster
from geotoolkit.domains.raster_mosaic import (
    MosaicMethod,
    RasterMosaic,
    ResampleMethod,
    blend_weights,
    cubic_kernel,
)
from geotoolkit.error_handler import AnalysisError, OperationCancelledError
from geotoolkit.geometry.model import Bounds


def tile(data, min_x, min_y, cell_size=1.0, no_data=None):
    """Raster with ``data`` and its lower-left corner at (min_x, min_y)."""
    data = np.asarray(data, dtype=float)
    height, width = data.shape
    return Raster(data, Bounds(min_x, min_y, min_x + width * cell_size,
                               min_y + height * cell_size), no_data)


class TestMosaic:
    """Test merging rasters onto a common grid."""

    def setup_method(self):
        """Set up test fixtures."""
        self.mosaic = RasterMosaic()
        self.left = tile(np.full((2, 2), 1.0), 0, 0)
        self.right = tile(np.full((2, 2), 2.0), 1, 0)

    @pytest.mark.parametrize("method,overlap", [
        (MosaicMethod.FIRST, 1.0),
        (MosaicMethod.LAST, 2.0),
        (MosaicMethod.MIN, 1.0),
        (MosaicMethod.MAX, 2.0),
        (MosaicMethod.MEAN, 1.5),
        ("blend", 1.5),
    ])
    def test_overlap_methods(self, method, overlap):
        """Test how each method merges the shared column."""
        result = self.mosaic.mosaic([self.left, self.right], method)
        assert result.data.shape == (2, 3)
        assert result.bounds == Bounds(0, 0, 3, 2)
        np.testing.assert_allclose(result.data[:, 0], [1, 1])
        np.testing.assert_allclose(result.data[:, 1], [overlap, overlap])
        np.testing.assert_allclose(result.data[:, 2], [2, 2])

    def test_min_max_order_independent(self):
        """Test that min and max do not depend on input order."""
        forward = self.mosaic.mosaic([self.left, self.right], "min")
        backward = self.mosaic.mosaic([self.right, self.left], "min")
        np.testing.assert_array_equal(forward.data, backward.data)

    def test_uncovered_cells_are_nodata(self):
        """Test gaps between inputs."""
        low = tile([[5.0]], 0, 0)
        high = tile([[7.0]], 2, 2)
        result = self.mosaic.mosaic([low, high])
        assert result.data.shape == (3, 3)
        assert result.no_data == -9999
        assert result.data[2, 0] == 5.0
        assert result.data[0, 2] == 7.0
        assert result.data[1, 1] == -9999
        assert result.valid_mask().sum() == 2

        custom = self.mosaic.mosaic([low, high], no_data=-1)
        assert custom.data[1, 1] == -1

    def test_nodata_inputs_do_not_contribute(self):
        """Test that a nodata cell lets the next input through."""
        left = tile([[1.0, -9999], [1.0, 1.0]], 0, 0, no_data=-9999)
        result = self.mosaic.mosaic([left, self.right], "first")
        assert result.data[0, 1] == 2.0
        assert result.data[1, 1] == 1.0

        mean = self.mosaic.mosaic([left, self.right], "mean")
        assert mean.data[0, 1] == 2.0
        assert mean.data[1, 1] == 1.5

    def test_mixed_cell_sizes(self):
        """Test that the grid follows the first input and samples the others."""
        fine = tile(np.arange(16).reshape(4, 4), 2, 0, cell_size=0.5)
        result = self.mosaic.mosaic([self.left, fine])
        assert result.data.shape == (2, 4)
        assert result.pixel_size == (1.0, 1.0)
        assert result.data[0, 2] == 5.0
        assert result.data[1, 3] == 15.0

    def test_blend_feathers_towards_edges(self):
        """Test that an input's edge counts less than another's interior."""
        low = tile(np.zeros((20, 20)), 0, 0)
        high = tile(np.full((20, 20), 10.0), 10, 0)
        result = self.mosaic.mosaic([low, high], MosaicMethod.BLEND)
        assert result.data[10, 10] == pytest.approx(10 / 3)
        assert result.data[10, 11] == pytest.approx(5.0)
        assert result.data[10, 25] == pytest.approx(10.0)

    def test_validation(self):
        """Test empty input and unknown methods."""
        with pytest.raises(AnalysisError, match="No rasters provided"):
            self.mosaic.mosaic([])
        with pytest.raises(AnalysisError, match="average"):
            self.mosaic.mosaic([self.left], "average")

    def test_cancelled(self):
        """Test cooperative cancellation."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            self.mosaic.mosaic([self.left, self.right], cancel_token=token)


class TestBlendWeights:
    """Test feathering weights."""

    def test_ramp(self):
        """Test that weights rise from the edge over a tenth of the side."""
        weights = blend_weights(tile(np.zeros((20, 20)), 0, 0))
        assert weights[0, 0] == 0.5
        assert weights[0, 10] == 0.5
        assert weights[1, 1] == 1.0
        assert weights[10, 10] == 1.0

    def test_small_rasters_weigh_fully(self):
        """Test that rasters under ten cells wide have flat weights."""
        assert (blend_weights(tile(np.zeros((3, 3)), 0, 0)) == 1.0).all()


class TestResample:
    """Test changing the cell size of a raster."""

    def setup_method(self):
        """Set up test fixtures."""
        self.mosaic = RasterMosaic()
        self.raster = tile([[0, 1], [2, 3]], 0, 0)

    def test_nearest(self):
        """Test that nearest sampling duplicates cells."""
        result = self.mosaic.resample(self.raster, 0.5, ResampleMethod.NEAREST)
        assert result.bounds == self.raster.bounds
        np.testing.assert_array_equal(result.data, np.kron(self.raster.data, np.ones((2, 2))))

    def test_bilinear(self):
        """Test interpolation between cell centers with clamped edges."""
        result = self.mosaic.resample(self.raster, 0.5, "bilinear")
        np.testing.assert_allclose(result.data[0], [0, 0.25, 0.75, 1])
        np.testing.assert_allclose(result.data[1], [0.5, 0.75, 1.25, 1.5])
        np.testing.assert_allclose(result.data[3], [2, 2.25, 2.75, 3])

    @pytest.mark.parametrize("method,first,last", [("bilinear", 1, 14), ("cubic", 3, 10)])
    def test_reproduces_linear_ramp(self, method, first, last):
        """Test that interior cells of a linear surface are exact."""
        ramp = tile(np.tile(np.arange(8, dtype=float), (8, 1)), 0, 0)
        result = self.mosaic.resample(ramp, 0.5, method)
        cols = np.arange(first, last + 1)
        for row in range(result.height):
            np.testing.assert_allclose(result.data[row, cols], 0.5 * cols - 0.25, atol=1e-12)

    def test_cubic_same_cell_size_is_identity(self):
        """Test that cubic sampling at cell centers returns the input."""
        data = np.random.default_rng(3).uniform(0, 100, size=(6, 5))
        raster = tile(data, 10, 20)
        result = self.mosaic.resample(raster, 1.0, ResampleMethod.CUBIC)
        np.testing.assert_allclose(result.data, data, atol=1e-9)

    def test_cubic_differs_from_bilinear(self):
        """Test that cubic sampling follows curvature."""
        curve = tile(np.tile(np.arange(8, dtype=float) ** 2, (8, 1)), 0, 0)
        bilinear = self.mosaic.resample(curve, 0.5, "bilinear").data[4, 7]
        cubic = self.mosaic.resample(curve, 0.5, "cubic").data[4, 7]
        exact = (0.5 * 7 - 0.25) ** 2
        assert abs(cubic - exact) < abs(bilinear - exact)

    def test_nodata_falls_back_to_nearest(self):
        """Test that nodata neighbours are not blended in."""
        raster = tile([[0, 1], [2, -9999]], 0, 0, no_data=-9999)
        result = self.mosaic.resample(raster, 0.5, "bilinear")
        assert result.no_data == -9999
        assert result.data[0, 0] == 0.0
        assert result.data[1, 1] == 0.0
        assert result.data[3, 3] == -9999
        assert result.valid_mask().sum() == 12

    def test_rectangular_cells(self):
        """Test separate x and y cell sizes."""
        result = self.mosaic.resample(self.raster, (1.0, 0.5), "nearest")
        assert result.data.shape == (4, 2)
        assert result.pixel_size == (1.0, 0.5)

    def test_validation(self):
        """Test cell size and method validation."""
        with pytest.raises(AnalysisError, match="cell_size"):
            self.mosaic.resample(self.raster, 0)
        with pytest.raises(AnalysisError, match="lanczos"):
            self.mosaic.resample(self.raster, 1.0, "lanczos")


class TestCubicKernel:
    """Test the cubic convolution kernel."""

    def test_interpolating(self):
        """Test unit weight at zero and none at other integers."""
        np.testing.assert_allclose(cubic_kernel(np.array([0.0, 1.0, -1.0, 2.0, 3.0])),
                                   [1, 0, 0, 0, 0], atol=1e-12)

    def test_partition_of_unity(self):
        """Test that the four weights sum to one."""
        t = np.linspace(0, 1, 11)
        total = sum(cubic_kernel(t - d) for d in (-1, 0, 1, 2))
        np.testing.assert_allclose(total, 1.0)
