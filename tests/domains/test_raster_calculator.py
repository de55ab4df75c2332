"""
Tests for raster calculator domain functionality.
"""

import numpy as np
import pytest

from geotoolkit.cancellation import CancellationToken
from geotoolkit.domains.raster import Raster
from geotoolkit.domains.raster_calculator import (
    FocalStatistic,
    RasterCalculator,
    ReclassRange,
    ZonalStatistic,
)
from geotoolkit.error_handler import AnalysisError, OperationCancelledError
from geotoolkit.geometry.model import Bounds


def grid(data, no_data=None):
    """Raster of unit cells with its lower-left corner at the origin."""
    data = np.asarray(data, dtype=float)
    height, width = data.shape
    return Raster(data, Bounds(0, 0, width, height), no_data)


class TestMapAlgebra:
    """Test cell-by-cell arithmetic and functions."""

    def setup_method(self):
        """Set up test fixtures."""
        self.calc = RasterCalculator()
        self.a = grid([[1, 2], [3, 4]])
        self.b = grid([[2, 2], [0, 4]])

    def test_arithmetic(self):
        """Test raster-raster arithmetic."""
        np.testing.assert_array_equal(self.calc.add(self.a, self.b).data, [[3, 4], [3, 8]])
        np.testing.assert_array_equal(self.calc.subtract(self.a, self.b).data, [[-1, 0], [3, 0]])
        np.testing.assert_array_equal(self.calc.multiply(self.a, self.b).data, [[2, 4], [0, 16]])

    def test_scalars_on_either_side(self):
        """Test that a scalar operand may come first or second."""
        np.testing.assert_array_equal(self.calc.add(self.a, 10).data, [[11, 12], [13, 14]])
        np.testing.assert_array_equal(self.calc.subtract(10, self.a).data, [[9, 8], [7, 6]])
        np.testing.assert_array_equal(self.calc.divide(12, self.b).data, [[6, 6], [0, 3]])

    def test_divide_by_zero_is_zero(self):
        """Test safe division."""
        result = self.calc.divide(self.a, self.b)
        np.testing.assert_array_equal(result.data, [[0.5, 1], [0, 1]])

    def test_inputs_unchanged(self):
        """Test that operations return new rasters."""
        self.calc.add(self.a, self.b)
        np.testing.assert_array_equal(self.a.data, [[1, 2], [3, 4]])

    def test_power_min_max(self):
        """Test power and cell-wise extremes."""
        np.testing.assert_array_equal(self.calc.power(self.a, 2).data, [[1, 4], [9, 16]])
        np.testing.assert_array_equal(self.calc.minimum(self.a, self.b).data, [[1, 2], [0, 4]])
        np.testing.assert_array_equal(self.calc.maximum(self.a, 3).data, [[3, 3], [3, 4]])

    def test_math_functions(self):
        """Test sqrt, abs, log, exp and trigonometry."""
        raster = grid([[-4, 4], [1, 100]])
        np.testing.assert_array_equal(self.calc.sqrt(raster).data, [[0, 2], [1, 10]])
        np.testing.assert_array_equal(self.calc.abs(raster).data, [[4, 4], [1, 100]])
        np.testing.assert_allclose(self.calc.log(raster, 10).data, [[0, np.log10(4)], [0, 2]])
        np.testing.assert_allclose(self.calc.exp(grid([[0, 1]])).data, [[1, np.e]])
        angles = grid([[0, np.pi / 2]])
        np.testing.assert_allclose(self.calc.sin(angles).data, [[0, 1]], atol=1e-12)
        np.testing.assert_allclose(self.calc.cos(angles).data, [[1, 0]], atol=1e-12)
        np.testing.assert_allclose(self.calc.tan(grid([[np.pi / 4]])).data, [[1]])

    def test_log_base_validation(self):
        """Test that unusable bases are rejected."""
        with pytest.raises(AnalysisError, match="log base"):
            self.calc.log(self.a, 1)
        with pytest.raises(AnalysisError, match="log base"):
            self.calc.log(self.a, -2)

    def test_nodata_propagates(self):
        """Test that nodata in any input stays nodata."""
        a = grid([[-9999, 2], [3, 4]], no_data=-9999)
        result = self.calc.add(a, self.b)
        assert result.no_data == -9999
        np.testing.assert_array_equal(result.data, [[-9999, 4], [3, 8]])

        result = self.calc.multiply(self.b, a)
        assert result.data[0, 0] == -9999
        assert result.statistics().count == 3

    def test_grid_mismatch(self):
        """Test that rasters must share dimensions."""
        with pytest.raises(AnalysisError, match="same dimensions"):
            self.calc.add(self.a, grid([[1, 2, 3]]))

    def test_requires_a_raster(self):
        """Test that two scalars are rejected."""
        with pytest.raises(AnalysisError, match="At least one operand"):
            self.calc.add(1, 2)


class TestClassificationAndMasks:
    """Test reclassify, con, set null and fill null."""

    def setup_method(self):
        """Set up test fixtures."""
        self.calc = RasterCalculator()

    def test_reclassify_first_range_wins(self):
        """Test range matching, overlap order and unmatched cells."""
        raster = grid([[1, 5], [10, 20]])
        result = self.calc.reclassify(raster, [ReclassRange(0, 5, 1), ReclassRange(5, 10, 2)])
        np.testing.assert_array_equal(result.data, [[1, 1], [2, 20]])

    def test_reclass_range_validation(self):
        """Test that a range must not be inverted."""
        with pytest.raises(AnalysisError, match="exceeds max"):
            ReclassRange(5, 1, 0)

    def test_con(self):
        """Test conditional selection with rasters and scalars."""
        condition = grid([[0, 1], [2, 0]])
        values = grid([[7, 8], [9, 6]])
        np.testing.assert_array_equal(self.calc.con(condition, 10, 20).data, [[20, 10], [10, 20]])
        np.testing.assert_array_equal(self.calc.con(condition, values, 0, threshold=1).data,
                                      [[0, 0], [9, 0]])

    def test_set_null_and_fill_null(self):
        """Test masking cells out and filling them back in."""
        raster = grid([[1, 2], [3, 4]])
        masked = self.calc.set_null(raster, lambda v: v > 2)
        assert masked.no_data == -9999
        np.testing.assert_array_equal(masked.data, [[1, 2], [-9999, -9999]])
        assert masked.valid_mask().sum() == 2

        filled = self.calc.fill_null(masked, 0)
        np.testing.assert_array_equal(filled.data, [[1, 2], [0, 0]])

    def test_set_null_keeps_existing_nodata_value(self):
        """Test that the raster's own nodata value is reused."""
        raster = grid([[1, -1], [3, 4]], no_data=-1)
        masked = self.calc.set_null(raster, lambda v: v == 4)
        assert masked.no_data == -1
        assert masked.valid_mask().sum() == 2

    def test_fill_null_non_finite(self):
        """Test that NaN cells are filled."""
        filled = self.calc.fill_null(grid([[np.nan, 1]]), 5)
        np.testing.assert_array_equal(filled.data, [[5, 1]])


class TestStatistics:
    """Test focal and zonal statistics."""

    def setup_method(self):
        """Set up test fixtures."""
        self.calc = RasterCalculator()
        self.raster = grid(np.arange(9).reshape(3, 3))

    def test_focal_mean_truncates_at_edges(self):
        """Test interior and corner windows."""
        result = self.calc.focal_statistics(self.raster, 3, FocalStatistic.MEAN)
        assert result.data[1, 1] == pytest.approx(4.0)
        assert result.data[0, 0] == pytest.approx(2.0)
        assert result.data[2, 2] == pytest.approx(6.0)

    @pytest.mark.parametrize("statistic,expected", [
        ("sum", 8.0),
        ("min", 0.0),
        ("max", 4.0),
        ("std", np.std([0, 1, 3, 4])),
    ])
    def test_focal_statistic_names(self, statistic, expected):
        """Test each statistic on the top-left window."""
        result = self.calc.focal_statistics(self.raster, 3, statistic)
        assert result.data[0, 0] == pytest.approx(expected)

    def test_focal_window_of_one_is_identity(self):
        """Test that a 1x1 window returns the input."""
        result = self.calc.focal_statistics(self.raster, 1, "sum")
        np.testing.assert_array_equal(result.data, self.raster.data)

    def test_focal_skips_nodata(self):
        """Test that nodata neighbours are ignored and empty windows give 0."""
        data = self.raster.data.copy()
        data[1, 1] = -9999
        raster = grid(data, no_data=-9999)
        assert self.calc.focal_statistics(raster, 3, "max").data[0, 0] == 3.0

        empty = grid([[-9999]], no_data=-9999)
        assert self.calc.focal_statistics(empty, 3, "mean").data[0, 0] == 0.0

    def test_focal_validation(self):
        """Test window and statistic validation."""
        with pytest.raises(AnalysisError, match="window_size"):
            self.calc.focal_statistics(self.raster, 0)
        with pytest.raises(AnalysisError, match="median"):
            self.calc.focal_statistics(self.raster, 3, "median")

    def test_focal_cancelled(self):
        """Test cooperative cancellation."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            self.calc.focal_statistics(self.raster, cancel_token=token)

    def test_zonal_statistics(self):
        """Test per-zone summaries."""
        values = grid([[0, 1], [2, 3]])
        zones = grid([[1, 1], [2, 2]])
        assert self.calc.zonal_statistics(values, zones) == {1.0: 0.5, 2.0: 2.5}
        assert self.calc.zonal_statistics(values, zones, ZonalStatistic.MAX) == {1.0: 1.0, 2.0: 3.0}

    def test_zonal_skips_nodata(self):
        """Test that nodata zones and values are left out."""
        values = grid([[0, 1], [-9999, 3]], no_data=-9999)
        zones = grid([[1, -1], [2, 2]], no_data=-1)
        assert self.calc.zonal_statistics(values, zones, "count") == {1.0: 1.0, 2.0: 1.0}


class TestExpressions:
    """Test map algebra expressions."""

    def setup_method(self):
        """Set up test fixtures."""
        self.calc = RasterCalculator()
        self.rasters = {'a': grid([[3, 0], [6, 1]]), 'b': grid([[4, 0], [8, 1]])}

    def test_expression(self):
        """Test operators, functions and constants together."""
        result = self.calc.calculate("sqrt(a * a + b * b) / 5", self.rasters)
        np.testing.assert_allclose(result.data, [[1, 0], [2, np.sqrt(2) / 5]])

    def test_unary_power_and_extremes(self):
        """Test unary minus, powers and two-argument functions."""
        result = self.calc.calculate("-a + 2 ** 2", self.rasters)
        np.testing.assert_array_equal(result.data, [[1, 4], [-2, 3]])
        result = self.calc.calculate("max(a, b) - min(a, b)", self.rasters)
        np.testing.assert_array_equal(result.data, [[1, 0], [2, 0]])

    def test_expression_division_by_zero(self):
        """Test that expression division is safe."""
        result = self.calc.calculate("a / (b - b)", self.rasters)
        np.testing.assert_array_equal(result.data, [[0, 0], [0, 0]])

    def test_expression_nodata(self):
        """Test that nodata carries through expressions."""
        rasters = {'a': grid([[-9999, 1]], no_data=-9999), 'b': grid([[1, 1]])}
        result = self.calc.calculate("a + b", rasters)
        np.testing.assert_array_equal(result.data, [[-9999, 2]])

    @pytest.mark.parametrize("expression,message", [
        ("a + c", "Unknown raster in expression: c"),
        ("median(a)", "Unknown function in expression: median"),
        ("__import__('os')", "Unknown function"),
        ("a.data", "Unsupported expression element"),
        ("a if b else 0", "Unsupported expression element"),
        ("a % b", "Unsupported expression element"),
        ("'text'", "Unsupported expression element"),
        ("a +", "Invalid raster expression"),
        ("sqrt(a, b)", "Bad arguments to sqrt"),
        ("", "non-empty"),
    ])
    def test_rejected_expressions(self, expression, message):
        """Test that malformed and disallowed expressions are rejected."""
        with pytest.raises(AnalysisError, match=message):
            self.calc.calculate(expression, self.rasters)

    def test_extra_arguments_do_not_touch_inputs(self):
        """Test that a surplus argument is rejected rather than written to."""
        with pytest.raises(AnalysisError, match="Bad arguments to abs"):
            self.calc.calculate("abs(a, b)", self.rasters)
        np.testing.assert_array_equal(self.rasters['b'].data, [[4, 0], [8, 1]])

    def test_no_rasters(self):
        """Test that an empty raster mapping is rejected."""
        with pytest.raises(AnalysisError, match="No rasters provided"):
            self.calc.calculate("1 + 1", {})
