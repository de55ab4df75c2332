"""
GeoJSON codec - geometry wire format.

Converts between geometry values and GeoJSON-shaped dictionaries
(``{type, coordinates}``, ``{type: "GeometryCollection", geometries}``,
Features and FeatureCollections). Decoding goes through ``GeometryFactory``
so structural rules are enforced on the way in; any malformed input raises
``GeometryError``.
"""

import json
from typing import Any, Dict, List, Optional, Union

from .error_handler import GeometryError
from .geometry.factory import GeometryFactory
from .geometry.model import (Feature, Geometry, GeometryCollection, GeometryType, LineString,
                             MultiLineString, MultiPoint, MultiPolygon, Point, Polygon,
                             unsupported_geometry)


def _coords(positions) -> list:
    return [list(p) for p in positions]


def geometry_to_geojson(geometry: Geometry) -> Dict[str, Any]:
    """Geometry value to a GeoJSON geometry object."""
    if isinstance(geometry, Point):
        return {'type': geometry.type.value, 'coordinates': list(geometry.position)}
    if isinstance(geometry, (LineString, MultiPoint)):
        return {'type': geometry.type.value, 'coordinates': _coords(geometry.positions)}
    if isinstance(geometry, Polygon):
        return {'type': geometry.type.value, 'coordinates': [_coords(r) for r in geometry.rings]}
    if isinstance(geometry, MultiLineString):
        return {'type': geometry.type.value, 'coordinates': [_coords(l) for l in geometry.lines]}
    if isinstance(geometry, MultiPolygon):
        return {'type': geometry.type.value,
                'coordinates': [[_coords(r) for r in rings] for rings in geometry.polygons]}
    if isinstance(geometry, GeometryCollection):
        return {'type': geometry.type.value,
                'geometries': [geometry_to_geojson(g) for g in geometry.geometries]}
    raise unsupported_geometry(geometry)


def geometry_from_geojson(data: Dict[str, Any],
                          factory: Optional[GeometryFactory] = None) -> Geometry:
    """
    GeoJSON geometry object to a geometry value.

    Raises
    ------
    GeometryError
        If ``data`` is not a mapping, has an unknown ``type``, lacks
        coordinates, or describes a structurally invalid geometry.
    """
    factory = factory or GeometryFactory()
    if not isinstance(data, dict):
        raise GeometryError(f"GeoJSON geometry must be an object, got {type(data).__name__}")
    try:
        geometry_type = GeometryType(data.get('type'))
    except ValueError:
        raise GeometryError(f"Unknown geometry type: {data.get('type')!r}")

    if geometry_type == GeometryType.GEOMETRY_COLLECTION:
        members = data.get('geometries')
        if not isinstance(members, list):
            raise GeometryError("GeometryCollection requires a 'geometries' array")
        return factory.create_geometry_collection(
            [geometry_from_geojson(g, factory) for g in members]
        )

    if 'coordinates' not in data:
        raise GeometryError(f"{geometry_type.value} requires 'coordinates'")
    coordinates = data['coordinates']
    builders = {
        GeometryType.POINT: factory.create_point,
        GeometryType.LINE_STRING: factory.create_line_string,
        GeometryType.POLYGON: factory.create_polygon,
        GeometryType.MULTI_POINT: factory.create_multi_point,
        GeometryType.MULTI_LINE_STRING: factory.create_multi_line_string,
        GeometryType.MULTI_POLYGON: factory.create_multi_polygon,
    }
    try:
        return builders[geometry_type](coordinates)
    except (TypeError, ValueError, IndexError) as e:
        raise GeometryError(f"Malformed {geometry_type.value} coordinates: {e}", cause=e)


def feature_to_geojson(feature: Feature) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        'type': 'Feature',
        'geometry': geometry_to_geojson(feature.geometry) if feature.geometry is not None else None,
        'properties': dict(feature.properties),
    }
    if feature.id is not None:
        result['id'] = feature.id
    return result


def feature_from_geojson(data: Dict[str, Any],
                         factory: Optional[GeometryFactory] = None) -> Feature:
    if not isinstance(data, dict) or data.get('type') != 'Feature':
        raise GeometryError("Expected a GeoJSON Feature object")
    geometry = data.get('geometry')
    properties = data.get('properties') or {}
    if not isinstance(properties, dict):
        raise GeometryError("Feature properties must be an object")
    return Feature(
        geometry=geometry_from_geojson(geometry, factory) if geometry is not None else None,
        properties=dict(properties),
        id=data.get('id')
    )


def feature_collection_to_geojson(features: List[Feature]) -> Dict[str, Any]:
    return {'type': 'FeatureCollection', 'features': [feature_to_geojson(f) for f in features]}


def feature_collection_from_geojson(data: Dict[str, Any],
                                    factory: Optional[GeometryFactory] = None) -> List[Feature]:
    if not isinstance(data, dict) or data.get('type') != 'FeatureCollection':
        raise GeometryError("Expected a GeoJSON FeatureCollection object")
    features = data.get('features')
    if not isinstance(features, list):
        raise GeometryError("FeatureCollection requires a 'features' array")
    return [feature_from_geojson(f, factory) for f in features]


def to_geojson(value: Union[Geometry, Feature, List[Feature]]) -> Dict[str, Any]:
    """Encode a geometry, a feature, or a list of features."""
    if isinstance(value, Feature):
        return feature_to_geojson(value)
    if isinstance(value, list):
        return feature_collection_to_geojson(value)
    return geometry_to_geojson(value)


def from_geojson(data: Dict[str, Any],
                 factory: Optional[GeometryFactory] = None) -> Union[Geometry, Feature, List[Feature]]:
    """Decode any GeoJSON object, dispatching on its ``type``."""
    kind = data.get('type') if isinstance(data, dict) else None
    if kind == 'Feature':
        return feature_from_geojson(data, factory)
    if kind == 'FeatureCollection':
        return feature_collection_from_geojson(data, factory)
    return geometry_from_geojson(data, factory)


def dumps(value: Union[Geometry, Feature, List[Feature]], **kwargs) -> str:
    return json.dumps(to_geojson(value), **kwargs)


def loads(text: str, factory: Optional[GeometryFactory] = None) -> Union[Geometry, Feature, List[Feature]]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise GeometryError(f"Invalid GeoJSON text: {e}", cause=e)
    return from_geojson(data, factory)
