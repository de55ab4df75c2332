"""
Geometry data model - immutable tagged-union geometries.

Every geometry is a frozen dataclass carrying tuples of positions, so values
are hashable, comparable and safe to share between threads. Consumers
dispatch on the concrete class; ``GEOMETRY_CLASSES`` lists the closed set of
variants and ``unsupported_geometry`` is the common fall-through.

Key Features:
- Position: (x, y) or (x, y, z) tuple of floats
- Point, LineString, Polygon, MultiPoint, MultiLineString, MultiPolygon,
  GeometryCollection variants with a ``type`` tag matching GeoJSON names
- Bounds: axis-aligned box with union/intersection helpers used by the R-tree
- Feature: geometry plus opaque properties and optional identity
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple, Union

Position = Tuple[float, ...]
Ring = Tuple[Position, ...]


class GeometryType(str, Enum):
    """Geometry type tags (GeoJSON names)."""
    POINT = "Point"
    LINE_STRING = "LineString"
    POLYGON = "Polygon"
    MULTI_POINT = "MultiPoint"
    MULTI_LINE_STRING = "MultiLineString"
    MULTI_POLYGON = "MultiPolygon"
    GEOMETRY_COLLECTION = "GeometryCollection"


def to_position(coords: Sequence[float]) -> Position:
    """Normalise a coordinate sequence to a 2D or 3D float tuple."""
    if len(coords) < 2:
        raise ValueError(f"Position needs at least 2 coordinates, got {len(coords)}")
    if len(coords) >= 3 and coords[2] is not None:
        return (float(coords[0]), float(coords[1]), float(coords[2]))
    return (float(coords[0]), float(coords[1]))


@dataclass(frozen=True)
class Point:
    position: Position

    @property
    def type(self) -> GeometryType:
        return GeometryType.POINT

    @property
    def x(self) -> float:
        return self.position[0]

    @property
    def y(self) -> float:
        return self.position[1]


@dataclass(frozen=True)
class LineString:
    positions: Tuple[Position, ...]

    @property
    def type(self) -> GeometryType:
        return GeometryType.LINE_STRING


@dataclass(frozen=True)
class Polygon:
    rings: Tuple[Ring, ...]

    @property
    def type(self) -> GeometryType:
        return GeometryType.POLYGON

    @property
    def exterior(self) -> Ring:
        return self.rings[0]

    @property
    def holes(self) -> Tuple[Ring, ...]:
        return self.rings[1:]


@dataclass(frozen=True)
class MultiPoint:
    positions: Tuple[Position, ...]

    @property
    def type(self) -> GeometryType:
        return GeometryType.MULTI_POINT


@dataclass(frozen=True)
class MultiLineString:
    lines: Tuple[Tuple[Position, ...], ...]

    @property
    def type(self) -> GeometryType:
        return GeometryType.MULTI_LINE_STRING


@dataclass(frozen=True)
class MultiPolygon:
    polygons: Tuple[Tuple[Ring, ...], ...]

    @property
    def type(self) -> GeometryType:
        return GeometryType.MULTI_POLYGON

    def parts(self) -> Tuple[Polygon, ...]:
        return tuple(Polygon(rings) for rings in self.polygons)


@dataclass(frozen=True)
class GeometryCollection:
    geometries: Tuple['Geometry', ...]

    @property
    def type(self) -> GeometryType:
        return GeometryType.GEOMETRY_COLLECTION


Geometry = Union[Point, LineString, Polygon, MultiPoint, MultiLineString,
                 MultiPolygon, GeometryCollection]

GEOMETRY_CLASSES = (Point, LineString, Polygon, MultiPoint, MultiLineString,
                    MultiPolygon, GeometryCollection)


def unsupported_geometry(geometry: Any) -> TypeError:
    """Error for a value outside the geometry union."""
    return TypeError(f"Unsupported geometry type: {type(geometry).__name__}")


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned bounding box."""
    min_x: float
    min_y: float
    max_x: float
    max_y: float
    min_z: Optional[float] = None
    max_z: Optional[float] = None

    def __post_init__(self):
        if self.min_x > self.max_x or self.min_y > self.max_y:
            raise ValueError(
                f"Invalid bounds: ({self.min_x}, {self.min_y}, {self.max_x}, {self.max_y})"
            )

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    def area(self) -> float:
        return self.width * self.height

    def center(self) -> Position:
        return ((self.min_x + self.max_x) / 2, (self.min_y + self.max_y) / 2)

    def intersects(self, other: 'Bounds') -> bool:
        return not (other.min_x > self.max_x or other.max_x < self.min_x or
                    other.min_y > self.max_y or other.max_y < self.min_y)

    def contains(self, other: 'Bounds') -> bool:
        return (self.min_x <= other.min_x and self.max_x >= other.max_x and
                self.min_y <= other.min_y and self.max_y >= other.max_y)

    def contains_position(self, position: Sequence[float]) -> bool:
        return (self.min_x <= position[0] <= self.max_x and
                self.min_y <= position[1] <= self.max_y)

    def union(self, other: 'Bounds') -> 'Bounds':
        return Bounds(min(self.min_x, other.min_x), min(self.min_y, other.min_y),
                      max(self.max_x, other.max_x), max(self.max_y, other.max_y))

    def enlargement(self, other: 'Bounds') -> float:
        """Area increase needed for this box to cover ``other``."""
        return self.union(other).area() - self.area()

    def expand(self, distance: float) -> 'Bounds':
        return Bounds(self.min_x - distance, self.min_y - distance,
                      self.max_x + distance, self.max_y + distance)

    def distance_to(self, position: Sequence[float]) -> float:
        """Euclidean distance from a position to the box (0 inside)."""
        dx = max(self.min_x - position[0], 0.0, position[0] - self.max_x)
        dy = max(self.min_y - position[1], 0.0, position[1] - self.max_y)
        return math.hypot(dx, dy)

    def to_list(self) -> list:
        return [self.min_x, self.min_y, self.max_x, self.max_y]

    @classmethod
    def union_all(cls, boxes: Iterable['Bounds']) -> 'Bounds':
        result = None
        for box in boxes:
            result = box if result is None else result.union(box)
        if result is None:
            raise ValueError("Cannot take the union of zero bounds")
        return result


@dataclass(eq=False)
class Feature:
    """A geometry with properties. Owned by the caller's feature store.

    Compared and hashed by identity so spatial indexes can reference it.
    """
    geometry: Optional[Geometry]
    properties: Dict[str, Any] = field(default_factory=dict)
    id: Optional[Union[str, int]] = None
