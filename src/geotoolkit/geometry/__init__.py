"""
Geometry model, construction, topology predicates and validation.

Geometry values are immutable tagged unions; every operation that changes
shape returns a new value.
"""

from .model import (
    GeometryType,
    Point,
    LineString,
    Polygon,
    MultiPoint,
    MultiLineString,
    MultiPolygon,
    GeometryCollection,
    Bounds,
    Feature,
)

from .factory import (
    GeometryFactory,
    extract_positions,
    euclidean,
    haversine,
)

from .topology import (
    SpatialRelationship,
    TopologyEngine,
    parse_relationship,
)

from .validation import (
    IssueSeverity,
    IssueType,
    ValidationIssue,
    ValidationResult,
    CollectionValidationResult,
    ValidationEngine,
)

__all__ = [
    # Model
    "GeometryType",
    "Point",
    "LineString",
    "Polygon",
    "MultiPoint",
    "MultiLineString",
    "MultiPolygon",
    "GeometryCollection",
    "Bounds",
    "Feature",

    # Factory
    "GeometryFactory",
    "extract_positions",
    "euclidean",
    "haversine",

    # Topology
    "SpatialRelationship",
    "TopologyEngine",
    "parse_relationship",

    # Validation
    "IssueSeverity",
    "IssueType",
    "ValidationIssue",
    "ValidationResult",
    "CollectionValidationResult",
    "ValidationEngine",
]
