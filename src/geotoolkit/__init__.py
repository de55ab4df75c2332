"""
geotoolkit - geometry, topology, spatial indexing and spatial analysis.

Key Components:
- Immutable geometry model with a validating factory
- Topology predicates, buffer, overlay, simplification and validation
- R-tree spatial index
- Proximity, density, clustering, routing, terrain, viewshed and
  interpolation analysis
- Injectable projection and datum-transform registries
- GeoJSON codec and a safe attribute/spatial query evaluator
"""

from .error_handler import (
    GeoToolkitError,
    GeometryError,
    TopologyError,
    ProjectionError,
    QueryParseError,
    AnalysisError,
    OperationCancelledError,
    ErrorCategory,
    ErrorSeverity,
)

from .cancellation import CancellationToken, CancelReason
from .config_manager import AnalysisConfig, LoggingConfig, get_config_manager, initialize_config
from .logging_manager import get_logger, get_logging_manager

from .geometry import (
    Bounds,
    Feature,
    GeometryCollection,
    GeometryFactory,
    LineString,
    MultiLineString,
    MultiPoint,
    MultiPolygon,
    Point,
    Polygon,
    SpatialRelationship,
    TopologyEngine,
    ValidationEngine,
)

from .transforms import BufferEngine, BufferOptions, OverlayEngine, SimplifyEngine, SimplifyOptions
from .spatial_index import RTree
from .projection import DatumTransform, ProjectionEngine, ProjectionRegistry
from .geojson_codec import from_geojson, to_geojson
from .query_parser import SpatialQuery, execute_query, parse_where

__all__ = [
    # Errors
    "GeoToolkitError",
    "GeometryError",
    "TopologyError",
    "ProjectionError",
    "QueryParseError",
    "AnalysisError",
    "OperationCancelledError",
    "ErrorCategory",
    "ErrorSeverity",

    # Infrastructure
    "CancellationToken",
    "CancelReason",
    "AnalysisConfig",
    "LoggingConfig",
    "get_config_manager",
    "initialize_config",
    "get_logger",
    "get_logging_manager",

    # Geometry
    "Bounds",
    "Feature",
    "GeometryCollection",
    "GeometryFactory",
    "LineString",
    "MultiLineString",
    "MultiPoint",
    "MultiPolygon",
    "Point",
    "Polygon",
    "SpatialRelationship",
    "TopologyEngine",
    "ValidationEngine",

    # Transforms and index
    "BufferEngine",
    "BufferOptions",
    "OverlayEngine",
    "SimplifyEngine",
    "SimplifyOptions",
    "RTree",

    # Projection
    "DatumTransform",
    "ProjectionEngine",
    "ProjectionRegistry",

    # Wire format and queries
    "from_geojson",
    "to_geojson",
    "SpatialQuery",
    "execute_query",
    "parse_where",
]

__version__ = "1.0.0"
