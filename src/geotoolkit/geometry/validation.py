"""
Validation Engine - structural and advisory checks on geometries.

Validation never raises for a malformed geometry: every problem is reported
as an issue with ``error`` severity (blocks downstream use) or ``warning``
severity (advisory), alongside a ``valid`` flag that is true when no errors
were found.

Key Features:
- Coordinate finiteness and geographic range checks
- Ring length, closure and orientation checks
- O(n^2) segment-pair self-intersection detection
- Zero-length, zero-area and degenerate geometry detection
- fix(): best-effort repair of ring closure, orientation and duplicate vertices
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..cancellation import CancellationToken, check_cancelled
from ..logging_manager import get_logger
from .factory import GeometryFactory, path_length, polygon_area
from .model import (
    Feature, Geometry, GeometryCollection, LineString, MultiLineString, MultiPoint,
    MultiPolygon, Point, Polygon, Position
)
from .topology import segments_intersect

logger = get_logger(__name__)

DUPLICATE_TOLERANCE = 1e-10
DEGENERATE_AREA = 1e-10


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class IssueType(str, Enum):
    """Issue codes. The first group are errors, the second warnings."""
    INVALID_COORDINATE = "INVALID_COORDINATE"
    INSUFFICIENT_POINTS = "INSUFFICIENT_POINTS"
    SELF_INTERSECTION = "SELF_INTERSECTION"
    NO_RINGS = "NO_RINGS"
    RING_NOT_CLOSED = "RING_NOT_CLOSED"
    DEGENERATE_GEOMETRY = "DEGENERATE_GEOMETRY"
    INVALID_GEOMETRY = "INVALID_GEOMETRY"
    VALIDATION_EXCEPTION = "VALIDATION_EXCEPTION"

    COORDINATE_OUT_OF_RANGE = "COORDINATE_OUT_OF_RANGE"
    DUPLICATE_POINTS = "DUPLICATE_POINTS"
    ZERO_LENGTH = "ZERO_LENGTH"
    INCORRECT_RING_ORIENTATION = "INCORRECT_RING_ORIENTATION"
    ZERO_AREA = "ZERO_AREA"


@dataclass
class ValidationIssue:
    """A single validation finding."""
    type: IssueType
    message: str
    severity: IssueSeverity
    location: Optional[Position] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {'type': self.type.value, 'message': self.message,
                  'severity': self.severity.value}
        if self.location is not None:
            result['location'] = list(self.location)
        return result


@dataclass
class ValidationResult:
    """Outcome of validating one geometry."""
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def error(self, issue_type: IssueType, message: str,
              location: Optional[Sequence[float]] = None) -> None:
        self.errors.append(ValidationIssue(issue_type, message, IssueSeverity.ERROR,
                                           tuple(location) if location is not None else None))

    def warning(self, issue_type: IssueType, message: str,
                location: Optional[Sequence[float]] = None) -> None:
        self.warnings.append(ValidationIssue(issue_type, message, IssueSeverity.WARNING,
                                             tuple(location) if location is not None else None))

    def extend(self, other: 'ValidationResult', prefix: str = "") -> None:
        for issue in other.errors:
            self.errors.append(ValidationIssue(issue.type, prefix + issue.message,
                                               issue.severity, issue.location))
        for issue in other.warnings:
            self.warnings.append(ValidationIssue(issue.type, prefix + issue.message,
                                                 issue.severity, issue.location))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'errors': [e.to_dict() for e in self.errors],
            'warnings': [w.to_dict() for w in self.warnings],
        }


@dataclass
class CollectionValidationResult:
    """Per-feature results for a batch of features."""
    results: List[ValidationResult]

    @property
    def valid(self) -> bool:
        return all(r.valid for r in self.results)

    @property
    def error_count(self) -> int:
        return sum(len(r.errors) for r in self.results)

    @property
    def warning_count(self) -> int:
        return sum(len(r.warnings) for r in self.results)

    @property
    def invalid_indices(self) -> List[int]:
        return [i for i, r in enumerate(self.results) if not r.valid]


def is_counter_clockwise(ring: Sequence[Sequence[float]]) -> bool:
    total = 0.0
    for i in range(len(ring) - 1):
        total += (ring[i + 1][0] - ring[i][0]) * (ring[i + 1][1] + ring[i][1])
    return total < 0


def _is_valid_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_valid_position(position: Sequence[Any]) -> bool:
    return len(position) >= 2 and _is_valid_number(position[0]) and _is_valid_number(position[1])


def _same_position(a: Sequence[float], b: Sequence[float]) -> bool:
    return abs(a[0] - b[0]) < DUPLICATE_TOLERANCE and abs(a[1] - b[1]) < DUPLICATE_TOLERANCE


class ValidationEngine:
    """Validate geometries and repair the repairable subset of problems."""

    def __init__(self, factory: Optional[GeometryFactory] = None):
        self.factory = factory or GeometryFactory()

    def validate(self, geometry: Geometry,
                 cancel_token: Optional[CancellationToken] = None) -> ValidationResult:
        result = ValidationResult()
        try:
            self._validate_into(geometry, result, cancel_token)
        except (TypeError, ValueError, IndexError) as e:
            result.error(IssueType.VALIDATION_EXCEPTION, str(e))
        if result.errors:
            logger.debug("Geometry failed validation",
                         geometry_type=type(geometry).__name__,
                         errors=len(result.errors), warnings=len(result.warnings))
        return result

    def validate_collection(self, features: Iterable[Feature],
                            cancel_token: Optional[CancellationToken] = None
                            ) -> CollectionValidationResult:
        results = []
        for feature in features:
            if feature.geometry is None:
                missing = ValidationResult()
                missing.error(IssueType.INVALID_GEOMETRY, "Feature has no geometry")
                results.append(missing)
            else:
                results.append(self.validate(feature.geometry, cancel_token))
        return CollectionValidationResult(results)

    # -- per-type checks ----------------------------------------------------

    def _validate_into(self, geometry: Geometry, result: ValidationResult,
                       cancel_token: Optional[CancellationToken]) -> None:
        if isinstance(geometry, Point):
            self._validate_point(geometry.position, result)
        elif isinstance(geometry, LineString):
            self._validate_line(geometry.positions, result, cancel_token)
        elif isinstance(geometry, Polygon):
            self._validate_polygon(geometry.rings, result, cancel_token)
        elif isinstance(geometry, MultiPoint):
            if not geometry.positions:
                result.error(IssueType.INVALID_GEOMETRY, "MultiPoint has no components")
            for i, position in enumerate(geometry.positions):
                part = ValidationResult()
                self._validate_point(position, part)
                result.extend(part, f"Point {i}: ")
        elif isinstance(geometry, MultiLineString):
            if not geometry.lines:
                result.error(IssueType.INVALID_GEOMETRY, "MultiLineString has no components")
            for i, line in enumerate(geometry.lines):
                part = ValidationResult()
                self._validate_line(line, part, cancel_token)
                result.extend(part, f"LineString {i}: ")
        elif isinstance(geometry, MultiPolygon):
            if not geometry.polygons:
                result.error(IssueType.INVALID_GEOMETRY, "MultiPolygon has no components")
            for i, rings in enumerate(geometry.polygons):
                part = ValidationResult()
                self._validate_polygon(rings, part, cancel_token)
                result.extend(part, f"Polygon {i}: ")
        elif isinstance(geometry, GeometryCollection):
            for i, member in enumerate(geometry.geometries):
                part = ValidationResult()
                self._validate_into(member, part, cancel_token)
                result.extend(part, f"Geometry {i}: ")
        else:
            result.error(IssueType.INVALID_GEOMETRY,
                         f"Unsupported geometry type: {type(geometry).__name__}")

    def _validate_point(self, position: Sequence[Any], result: ValidationResult) -> None:
        labels = ('X', 'Y', 'Z')
        for axis, value in zip(labels, position):
            if not _is_valid_number(value):
                result.error(IssueType.INVALID_COORDINATE,
                             f"Invalid {axis} coordinate: {value}", position)
        if not result.errors:
            if abs(position[0]) > 180:
                result.warning(IssueType.COORDINATE_OUT_OF_RANGE,
                               f"X coordinate {position[0]} exceeds typical longitude range",
                               position)
            if abs(position[1]) > 90:
                result.warning(IssueType.COORDINATE_OUT_OF_RANGE,
                               f"Y coordinate {position[1]} exceeds typical latitude range",
                               position)

    def _validate_line(self, positions: Sequence[Position], result: ValidationResult,
                       cancel_token: Optional[CancellationToken]) -> None:
        if len(positions) < 2:
            result.error(IssueType.INSUFFICIENT_POINTS, "LineString must have at least 2 points")
            return

        bad = [i for i, p in enumerate(positions) if not _is_valid_position(p)]
        for i in bad:
            result.error(IssueType.INVALID_COORDINATE, f"Invalid coordinate at index {i}",
                         positions[i])
        if bad:
            return

        for i in range(len(positions) - 1):
            if _same_position(positions[i], positions[i + 1]):
                result.warning(IssueType.DUPLICATE_POINTS,
                               f"Duplicate consecutive points at index {i}", positions[i])

        if self._line_self_intersects(positions, cancel_token):
            result.error(IssueType.SELF_INTERSECTION, "LineString has self-intersection")

        if path_length(positions) == 0:
            result.warning(IssueType.ZERO_LENGTH, "LineString has zero length")

    def _validate_polygon(self, rings: Sequence[Sequence[Position]], result: ValidationResult,
                          cancel_token: Optional[CancellationToken]) -> None:
        if not rings:
            result.error(IssueType.NO_RINGS, "Polygon has no rings")
            return

        usable = True
        for index, ring in enumerate(rings):
            usable = self._validate_ring(ring, index, result) and usable
        if not usable:
            return

        if not is_counter_clockwise(rings[0]):
            result.warning(IssueType.INCORRECT_RING_ORIENTATION,
                           "Exterior ring should be counter-clockwise")
        for index in range(1, len(rings)):
            if is_counter_clockwise(rings[index]):
                result.warning(IssueType.INCORRECT_RING_ORIENTATION,
                               f"Hole {index} should be clockwise")

        for index, ring in enumerate(rings):
            if self._ring_self_intersects(ring, cancel_token):
                result.error(IssueType.SELF_INTERSECTION, f"Ring {index} has self-intersection")

        area = polygon_area(rings)
        if area == 0:
            result.warning(IssueType.ZERO_AREA, "Polygon has zero area")
        if area < DEGENERATE_AREA:
            result.error(IssueType.DEGENERATE_GEOMETRY, "Polygon is degenerate")

    def _validate_ring(self, ring: Sequence[Position], index: int,
                       result: ValidationResult) -> bool:
        """Check one ring; returns False when later geometric checks cannot run."""
        if len(ring) < 4:
            result.error(IssueType.INSUFFICIENT_POINTS, f"Ring {index} must have at least 4 points")
            return False

        bad = [i for i, p in enumerate(ring) if not _is_valid_position(p)]
        for i in bad:
            result.error(IssueType.INVALID_COORDINATE,
                         f"Invalid coordinate in ring {index} at index {i}", ring[i])
        if bad:
            return False

        if not _same_position(ring[0], ring[-1]):
            result.error(IssueType.RING_NOT_CLOSED, f"Ring {index} is not closed", ring[0])

        for i in range(len(ring) - 1):
            if _same_position(ring[i], ring[i + 1]):
                result.warning(IssueType.DUPLICATE_POINTS,
                               f"Duplicate consecutive points in ring {index} at index {i}",
                               ring[i])
        return True

    # -- self intersection --------------------------------------------------

    def _line_self_intersects(self, positions: Sequence[Position],
                              cancel_token: Optional[CancellationToken]) -> bool:
        n = len(positions)
        for i in range(n - 3):
            check_cancelled(cancel_token, "validation")
            for j in range(i + 2, n - 1):
                if segments_intersect(positions[i], positions[i + 1],
                                      positions[j], positions[j + 1]):
                    return True
        return False

    def _ring_self_intersects(self, ring: Sequence[Position],
                              cancel_token: Optional[CancellationToken]) -> bool:
        n = len(ring)
        for i in range(n - 2):
            check_cancelled(cancel_token, "validation")
            for j in range(i + 2, n - 1):
                # First and last segments meet at the closing vertex
                if i == 0 and j == n - 2:
                    continue
                if segments_intersect(ring[i], ring[i + 1], ring[j], ring[j + 1]):
                    return True
        return False

    # -- repair -------------------------------------------------------------

    def fix(self, geometry: Geometry) -> Geometry:
        """
        Repair ring closure, ring orientation and duplicate line vertices.

        Geometries without errors or warnings are returned unchanged. Other
        problems (such as self-intersections) are left as they are.

        Raises
        ------
        GeometryError
            If the repaired geometry still violates a structural invariant,
            e.g. a ring with fewer than 4 positions.
        """
        result = self.validate(geometry)
        if result.valid and not result.warnings:
            return geometry

        if isinstance(geometry, Polygon):
            return self._fix_polygon(geometry.rings)
        if isinstance(geometry, MultiPolygon):
            return MultiPolygon(tuple(self._fix_polygon(rings).rings
                                      for rings in geometry.polygons))
        if isinstance(geometry, LineString):
            return self._fix_line(geometry.positions)
        if isinstance(geometry, MultiLineString):
            return MultiLineString(tuple(self._fix_line(line).positions
                                         for line in geometry.lines))
        if isinstance(geometry, GeometryCollection):
            return GeometryCollection(tuple(self.fix(g) for g in geometry.geometries))
        return self.factory.clone(geometry)

    def _fix_polygon(self, rings: Sequence[Sequence[Position]]) -> Polygon:
        fixed = []
        for index, ring in enumerate(rings):
            closed = self.factory.close_ring(self._dedupe(ring))
            if index == 0 and not is_counter_clockwise(closed):
                closed = closed[::-1]
            elif index > 0 and is_counter_clockwise(closed):
                closed = closed[::-1]
            fixed.append(closed)
        return self.factory.create_polygon(fixed)

    def _fix_line(self, positions: Sequence[Position]) -> LineString:
        return self.factory.create_line_string(self._dedupe(positions))

    @staticmethod
    def _dedupe(positions: Sequence[Position]) -> List[Position]:
        kept: List[Position] = []
        for position in positions:
            if not kept or not _same_position(kept[-1], position):
                kept.append(position)
        return kept

