"""
Raster Calculator Domain - map algebra on single-band rasters.

All operations work cell by cell on rasters sharing one grid and return a
new ``Raster``; inputs are never modified. Cells that are nodata in any
input stay nodata in the output, using the first input's nodata value.

Key Features:
- Arithmetic between rasters or with scalars, safe division
- Math functions (power, sqrt, abs, log, exp, trigonometry) and cell-wise min/max
- Reclassification by value ranges, Con, SetNull and FillNull
- Focal statistics over square windows and zonal statistics
- Expression evaluation over named rasters without ``eval``
"""

import ast
import operator
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Sequence, Union

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from ..cancellation import CancellationToken, check_cancelled
from ..config_manager import AnalysisConfig, get_analysis_defaults
from ..error_handler import AnalysisError
from ..logging_manager import get_logger, get_logging_manager
from .raster import Raster

logger = get_logger(__name__)

DEFAULT_NO_DATA = -9999.0

Operand = Union[Raster, float, int]


class FocalStatistic(str, Enum):
    MEAN = "mean"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    STD = "std"


class ZonalStatistic(str, Enum):
    MEAN = "mean"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    COUNT = "count"


@dataclass
class ReclassRange:
    """Values in ``[min, max]`` (both inclusive) become ``value``."""
    min: float
    max: float
    value: float

    def __post_init__(self):
        if self.min > self.max:
            raise AnalysisError(f"Reclass range min {self.min} exceeds max {self.max}")


_FOCAL_REDUCERS: Dict[FocalStatistic, Callable] = {
    FocalStatistic.MEAN: np.nanmean,
    FocalStatistic.SUM: np.nansum,
    FocalStatistic.MIN: np.nanmin,
    FocalStatistic.MAX: np.nanmax,
    FocalStatistic.STD: np.nanstd,
}

_ZONAL_REDUCERS: Dict[ZonalStatistic, Callable] = {
    ZonalStatistic.MEAN: np.mean,
    ZonalStatistic.SUM: np.sum,
    ZonalStatistic.MIN: np.min,
    ZonalStatistic.MAX: np.max,
    ZonalStatistic.COUNT: np.size,
}


def _safe_divide(a, b) -> np.ndarray:
    """Division with 0 wherever the divisor is 0."""
    a, b = np.broadcast_arrays(np.asarray(a, dtype=float), np.asarray(b, dtype=float))
    return np.divide(a, b, out=np.zeros(a.shape), where=b != 0)


def _safe_log(a, base: float = np.e) -> np.ndarray:
    """Logarithm with 0 for non-positive input."""
    a = np.asarray(a, dtype=float)
    out = np.zeros(a.shape)
    np.log(a, out=out, where=a > 0)
    return out / np.log(base)


class RasterCalculator:
    """Cell-by-cell raster arithmetic, functions, masks and statistics."""

    # Functions callable from expressions; fixed arity keeps extra
    # arguments from landing in a ufunc's out parameter
    FUNCTIONS: Dict[str, Callable] = {
        'sqrt': lambda a: np.sqrt(np.maximum(a, 0)),
        'abs': lambda a: np.abs(a),
        'log': lambda a, base=np.e: _safe_log(a, base),
        'exp': lambda a: np.exp(a),
        'sin': lambda a: np.sin(a),
        'cos': lambda a: np.cos(a),
        'tan': lambda a: np.tan(a),
        'min': lambda a, b: np.minimum(a, b),
        'max': lambda a, b: np.maximum(a, b),
    }

    _BINARY_OPS = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: _safe_divide,
        ast.Pow: np.power,
    }

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or get_analysis_defaults()

    # -- plumbing -----------------------------------------------------------

    @staticmethod
    def _check_grids(rasters: Sequence[Raster]) -> None:
        shape = rasters[0].data.shape
        for raster in rasters[1:]:
            if raster.data.shape != shape:
                raise AnalysisError(
                    f"Rasters must have the same dimensions, got {shape} and {raster.data.shape}")

    def _apply(self, fn: Callable, *operands: Operand) -> Raster:
        """Run ``fn`` over operand arrays and carry nodata through."""
        rasters = [o for o in operands if isinstance(o, Raster)]
        if not rasters:
            raise AnalysisError("At least one operand must be a raster")
        self._check_grids(rasters)
        template = rasters[0]
        no_data = next((r.no_data for r in rasters if r.no_data is not None), None)

        arrays = [o.data if isinstance(o, Raster) else float(o) for o in operands]
        with np.errstate(all='ignore'):
            result = np.asarray(fn(*arrays), dtype=float)
        result = np.broadcast_to(result, template.data.shape).copy()

        if no_data is not None:
            invalid = np.zeros(template.data.shape, dtype=bool)
            for raster in rasters:
                invalid |= ~raster.valid_mask()
            result[invalid] = no_data
        return template.with_data(result, no_data)

    # -- arithmetic ---------------------------------------------------------

    def add(self, a: Operand, b: Operand) -> Raster:
        return self._apply(operator.add, a, b)

    def subtract(self, a: Operand, b: Operand) -> Raster:
        return self._apply(operator.sub, a, b)

    def multiply(self, a: Operand, b: Operand) -> Raster:
        return self._apply(operator.mul, a, b)

    def divide(self, a: Operand, b: Operand) -> Raster:
        """Cell-wise division; cells divided by zero are 0."""
        return self._apply(_safe_divide, a, b)

    def power(self, raster: Raster, exponent: float) -> Raster:
        return self._apply(np.power, raster, exponent)

    def minimum(self, a: Operand, b: Operand) -> Raster:
        return self._apply(np.minimum, a, b)

    def maximum(self, a: Operand, b: Operand) -> Raster:
        return self._apply(np.maximum, a, b)

    # -- functions ----------------------------------------------------------

    def sqrt(self, raster: Raster) -> Raster:
        """Square root; negative cells are treated as 0."""
        return self._apply(self.FUNCTIONS['sqrt'], raster)

    def abs(self, raster: Raster) -> Raster:
        return self._apply(np.abs, raster)

    def log(self, raster: Raster, base: float = np.e) -> Raster:
        """Logarithm in ``base``; non-positive cells become 0."""
        if base <= 0 or base == 1:
            raise AnalysisError(f"log base must be positive and not 1, got {base}")
        return self._apply(lambda a: _safe_log(a, base), raster)

    def exp(self, raster: Raster) -> Raster:
        return self._apply(np.exp, raster)

    def sin(self, raster: Raster) -> Raster:
        return self._apply(np.sin, raster)

    def cos(self, raster: Raster) -> Raster:
        return self._apply(np.cos, raster)

    def tan(self, raster: Raster) -> Raster:
        return self._apply(np.tan, raster)

    # -- classification and masks -------------------------------------------

    def reclassify(self, raster: Raster, ranges: Sequence[ReclassRange]) -> Raster:
        """Replace values by the first matching range; unmatched cells keep their value."""
        def reclass(data: np.ndarray) -> np.ndarray:
            out = data.copy()
            assigned = np.zeros(data.shape, dtype=bool)
            for r in ranges:
                hit = ~assigned & (data >= r.min) & (data <= r.max)
                out[hit] = r.value
                assigned |= hit
            return out

        return self._apply(reclass, raster)

    def con(self, condition: Raster, true_value: Operand, false_value: Operand,
            threshold: float = 0.0) -> Raster:
        """Cells where ``condition`` exceeds ``threshold`` take ``true_value``, others ``false_value``."""
        return self._apply(lambda c, t, f: np.where(c > threshold, t, f),
                           condition, true_value, false_value)

    def set_null(self, raster: Raster, predicate: Callable[[np.ndarray], np.ndarray]) -> Raster:
        """Mark cells where ``predicate(values)`` is true as nodata.

        The raster's nodata value is used, or -9999 when it has none.
        """
        no_data = raster.no_data if raster.no_data is not None else DEFAULT_NO_DATA
        data = raster.data.copy()
        data[np.asarray(predicate(raster.data), dtype=bool)] = no_data
        return raster.with_data(data, no_data)

    def fill_null(self, raster: Raster, fill_value: float) -> Raster:
        """Replace nodata and non-finite cells with ``fill_value``."""
        data = raster.data.copy()
        data[~raster.valid_mask()] = fill_value
        return raster.with_data(data, raster.no_data)

    # -- statistics ---------------------------------------------------------

    def focal_statistics(self, raster: Raster, window_size: int = 3,
                         statistic: Union[FocalStatistic, str] = FocalStatistic.MEAN,
                         cancel_token: Optional[CancellationToken] = None) -> Raster:
        """
        Statistic of each cell's square neighbourhood.

        The window is truncated at the raster edge and skips nodata cells.
        A window with no valid cell yields 0.
        """
        if window_size < 1:
            raise AnalysisError(f"window_size must be at least 1, got {window_size}")
        try:
            statistic = FocalStatistic(statistic)
        except ValueError as e:
            raise AnalysisError(str(e))
        reducer = _FOCAL_REDUCERS[statistic]

        radius = window_size // 2
        values = np.where(raster.valid_mask(), raster.data, np.nan)
        padded = np.pad(values, radius, mode='constant', constant_values=np.nan)
        windows = sliding_window_view(padded, (2 * radius + 1, 2 * radius + 1))
        out = np.zeros_like(raster.data)

        with get_logging_manager().operation("raster", "focal_statistics",
                                             window=window_size, statistic=statistic.value):
            for row in range(raster.height):
                check_cancelled(cancel_token, "raster")
                block = windows[row].reshape(raster.width, -1)
                has_values = ~np.isnan(block).all(axis=1)
                if has_values.any():
                    out[row, has_values] = reducer(block[has_values], axis=1)
        return raster.with_data(out)

    def zonal_statistics(self, values: Raster, zones: Raster,
                         statistic: Union[ZonalStatistic, str] = ZonalStatistic.MEAN) -> Dict[float, float]:
        """Statistic of ``values`` per distinct zone id; nodata cells in either raster are skipped."""
        try:
            statistic = ZonalStatistic(statistic)
        except ValueError as e:
            raise AnalysisError(str(e))
        reducer = _ZONAL_REDUCERS[statistic]
        self._check_grids([values, zones])

        valid = values.valid_mask() & zones.valid_mask()
        zone_ids = zones.data[valid]
        cell_values = values.data[valid]
        results: Dict[float, float] = {}
        for zone in np.unique(zone_ids):
            results[float(zone)] = float(reducer(cell_values[zone_ids == zone]))
        logger.debug("Zonal statistics", zones=len(results), statistic=statistic.value)
        return results

    # -- expressions --------------------------------------------------------

    def calculate(self, expression: str, rasters: Mapping[str, Raster]) -> Raster:
        """
        Evaluate a map algebra expression over named rasters.

        Supports ``+ - * / **``, unary minus, numbers, raster names and the
        functions in ``FUNCTIONS``, e.g. ``"sqrt(a * a + b * b) / 2"``.
        The expression is parsed into a syntax tree and walked; nothing is
        executed through ``eval``.

        Raises
        ------
        AnalysisError
            On syntax errors, unknown names or functions, and disallowed
            constructs.
        """
        if not rasters:
            raise AnalysisError("No rasters provided")
        if not expression or not expression.strip():
            raise AnalysisError("Expression must be a non-empty string")
        try:
            tree = ast.parse(expression.strip(), mode='eval')
        except SyntaxError as e:
            raise AnalysisError(f"Invalid raster expression: {e.msg}", cause=e)

        names = list(rasters)
        ordered = [rasters[name] for name in names]

        def evaluate(*arrays):
            scope = dict(zip(names, arrays))
            return self._eval_node(tree.body, scope)

        with get_logging_manager().operation("raster", "calculate", rasters=len(names)):
            return self._apply(evaluate, *ordered)

    def _eval_node(self, node: ast.AST, scope: Dict[str, np.ndarray]):
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) \
                and not isinstance(node.value, bool):
            return float(node.value)
        if isinstance(node, ast.Name):
            if node.id not in scope:
                raise AnalysisError(f"Unknown raster in expression: {node.id}")
            return scope[node.id]
        if isinstance(node, ast.BinOp) and type(node.op) in self._BINARY_OPS:
            return self._BINARY_OPS[type(node.op)](self._eval_node(node.left, scope),
                                                   self._eval_node(node.right, scope))
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
            value = self._eval_node(node.operand, scope)
            return -value if isinstance(node.op, ast.USub) else value
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and not node.keywords:
            fn = self.FUNCTIONS.get(node.func.id)
            if fn is None:
                raise AnalysisError(f"Unknown function in expression: {node.func.id}")
            args = [self._eval_node(arg, scope) for arg in node.args]
            try:
                return fn(*args)
            except TypeError as e:
                raise AnalysisError(f"Bad arguments to {node.func.id}(): {e}", cause=e)
        raise AnalysisError(f"Unsupported expression element: {type(node).__name__}")
