"""
Projection Engine - coordinate transformation between registered CRSs.

Every conversion is routed through WGS84 longitude/latitude: the source
coordinate is unprojected to WGS84, then projected into the target system.
Registries are plain values: build one with ``ProjectionRegistry.with_defaults()``
(or empty, for isolated tests) and hand it to a ``ProjectionEngine``.

Key Features:
- Closed-form WGS84 <-> UTM (all 120 zones) and Web Mercator
- Albers equal-area conic (CONUS, EPSG:5070), British National Grid
  transverse Mercator (EPSG:27700) and world equidistant cylindrical
  (EPSG:4087)
- NAD83, NAD27 and ETRS89 geographic systems treated as WGS84-equivalent;
  datum shifts belong to ``DatumTransform``
- ``EPSG:<n>`` code parsing with ``ProjectionError`` for unknown or
  malformed codes
"""

import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ..error_handler import ProjectionError
from ..logging_manager import get_logger
from ..geometry.model import Position

logger = get_logger(__name__)

WGS84_CODE = "EPSG:4326"
WGS84_A = 6378137.0
WGS84_F = 1 / 298.257223563
GRS80_F = 1 / 298.257222101
AIRY_A = 6377563.396
AIRY_B = 6356256.909

# Web Mercator is undefined at the poles
MERCATOR_MAX_LAT = 85.05112877980659

_CODE_PATTERN = re.compile(r'^\s*(?:EPSG:)?(\d+)\s*$', re.IGNORECASE)


def normalize_code(code) -> str:
    """'epsg:4326', '4326' and 4326 all become 'EPSG:4326'."""
    match = _CODE_PATTERN.match(str(code))
    if not match:
        raise ProjectionError(f"Malformed CRS code: {code!r}", code=str(code))
    return f"EPSG:{int(match.group(1))}"


# ============================================================================
# Projections (lon/lat degrees on WGS84 <-> native coordinates)
# ============================================================================

class Projection:
    """Maps WGS84 lon/lat degrees to native x/y and back."""

    def forward(self, lon: float, lat: float):
        raise NotImplementedError

    def inverse(self, x: float, y: float):
        raise NotImplementedError


class Geographic(Projection):
    """Lon/lat systems used as-is."""

    def forward(self, lon, lat):
        return lon, lat

    def inverse(self, x, y):
        return x, y


class WebMercator(Projection):
    """Spherical Mercator on the WGS84 semi-major axis."""

    def forward(self, lon, lat):
        lat = max(-MERCATOR_MAX_LAT, min(MERCATOR_MAX_LAT, lat))
        x = WGS84_A * math.radians(lon)
        y = WGS84_A * math.log(math.tan(math.pi / 4 + math.radians(lat) / 2))
        return x, y

    def inverse(self, x, y):
        lon = math.degrees(x / WGS84_A)
        lat = math.degrees(2 * math.atan(math.exp(y / WGS84_A)) - math.pi / 2)
        return lon, lat


class EquidistantCylindrical(Projection):
    """Plate carree scaled by the WGS84 semi-major axis (latitude of true scale 0)."""

    def forward(self, lon, lat):
        return WGS84_A * math.radians(lon), WGS84_A * math.radians(lat)

    def inverse(self, x, y):
        return math.degrees(x / WGS84_A), math.degrees(y / WGS84_A)


class TransverseMercator(Projection):
    """
    Ellipsoidal transverse Mercator using the Redfearn series.

    Parameters are the ellipsoid (``a``, ``f``), the natural origin
    (``lon0``, ``lat0`` in degrees), the central scale factor ``k0`` and the
    false easting/northing.
    """

    def __init__(self, a: float, f: float, lon0: float, lat0: float, k0: float,
                 false_easting: float, false_northing: float):
        self.a = a
        self.k0 = k0
        self.lon0 = math.radians(lon0)
        self.lat0 = math.radians(lat0)
        self.false_easting = false_easting
        self.false_northing = false_northing
        self.e2 = f * (2 - f)
        self.ep2 = self.e2 / (1 - self.e2)
        self.m0 = self._meridian_arc(self.lat0)

    def _meridian_arc(self, phi: float) -> float:
        e2 = self.e2
        e4 = e2 * e2
        e6 = e4 * e2
        return self.a * ((1 - e2 / 4 - 3 * e4 / 64 - 5 * e6 / 256) * phi
                         - (3 * e2 / 8 + 3 * e4 / 32 + 45 * e6 / 1024) * math.sin(2 * phi)
                         + (15 * e4 / 256 + 45 * e6 / 1024) * math.sin(4 * phi)
                         - (35 * e6 / 3072) * math.sin(6 * phi))

    def forward(self, lon, lat):
        phi = math.radians(lat)
        sin_phi, cos_phi, tan_phi = math.sin(phi), math.cos(phi), math.tan(phi)
        n = self.a / math.sqrt(1 - self.e2 * sin_phi ** 2)
        t = tan_phi ** 2
        c = self.ep2 * cos_phi ** 2
        a_ = cos_phi * (math.radians(lon) - self.lon0)
        m = self._meridian_arc(phi)

        x = self.k0 * n * (a_
                           + (1 - t + c) * a_ ** 3 / 6
                           + (5 - 18 * t + t * t + 72 * c - 58 * self.ep2) * a_ ** 5 / 120)
        y = self.k0 * (m - self.m0 + n * tan_phi * (
            a_ ** 2 / 2
            + (5 - t + 9 * c + 4 * c * c) * a_ ** 4 / 24
            + (61 - 58 * t + t * t + 600 * c - 330 * self.ep2) * a_ ** 6 / 720))
        return x + self.false_easting, y + self.false_northing

    def inverse(self, x, y):
        e2 = self.e2
        e4 = e2 * e2
        e6 = e4 * e2
        m = self.m0 + (y - self.false_northing) / self.k0
        mu = m / (self.a * (1 - e2 / 4 - 3 * e4 / 64 - 5 * e6 / 256))
        e1 = (1 - math.sqrt(1 - e2)) / (1 + math.sqrt(1 - e2))
        phi1 = (mu
                + (3 * e1 / 2 - 27 * e1 ** 3 / 32) * math.sin(2 * mu)
                + (21 * e1 ** 2 / 16 - 55 * e1 ** 4 / 32) * math.sin(4 * mu)
                + (151 * e1 ** 3 / 96) * math.sin(6 * mu)
                + (1097 * e1 ** 4 / 512) * math.sin(8 * mu))

        sin1, cos1, tan1 = math.sin(phi1), math.cos(phi1), math.tan(phi1)
        n1 = self.a / math.sqrt(1 - e2 * sin1 ** 2)
        t1 = tan1 ** 2
        c1 = self.ep2 * cos1 ** 2
        r1 = self.a * (1 - e2) / (1 - e2 * sin1 ** 2) ** 1.5
        d = (x - self.false_easting) / (n1 * self.k0)

        phi = phi1 - (n1 * tan1 / r1) * (
            d ** 2 / 2
            - (5 + 3 * t1 + 10 * c1 - 4 * c1 * c1 - 9 * self.ep2) * d ** 4 / 24
            + (61 + 90 * t1 + 298 * c1 + 45 * t1 * t1 - 252 * self.ep2 - 3 * c1 * c1) * d ** 6 / 720)
        lam = self.lon0 + (
            d
            - (1 + 2 * t1 + c1) * d ** 3 / 6
            + (5 - 2 * c1 + 28 * t1 - 3 * c1 * c1 + 8 * self.ep2 + 24 * t1 * t1) * d ** 5 / 120
        ) / cos1
        return math.degrees(lam), math.degrees(phi)


class UTM(TransverseMercator):
    """Universal Transverse Mercator zone on WGS84."""

    def __init__(self, zone: int, south: bool = False):
        if not 1 <= zone <= 60:
            raise ProjectionError(f"UTM zone must be 1-60, got {zone}")
        self.zone = zone
        self.south = south
        super().__init__(WGS84_A, WGS84_F, lon0=(zone - 1) * 6 - 180 + 3, lat0=0.0,
                         k0=0.9996, false_easting=500000.0,
                         false_northing=10000000.0 if south else 0.0)


class AlbersEqualArea(Projection):
    """Ellipsoidal Albers equal-area conic with two standard parallels."""

    def __init__(self, a: float, f: float, lat1: float, lat2: float, lat0: float,
                 lon0: float, false_easting: float = 0.0, false_northing: float = 0.0):
        self.a = a
        self.e2 = f * (2 - f)
        self.e = math.sqrt(self.e2)
        self.lon0 = math.radians(lon0)
        self.false_easting = false_easting
        self.false_northing = false_northing

        phi1, phi2, phi0 = map(math.radians, (lat1, lat2, lat0))
        m1, m2 = self._m(phi1), self._m(phi2)
        q1, q2, q0 = self._q(phi1), self._q(phi2), self._q(phi0)
        self.n = (m1 * m1 - m2 * m2) / (q2 - q1)
        self.c = m1 * m1 + self.n * q1
        self.rho0 = self.a * math.sqrt(self.c - self.n * q0) / self.n

    def _m(self, phi: float) -> float:
        return math.cos(phi) / math.sqrt(1 - self.e2 * math.sin(phi) ** 2)

    def _q(self, phi: float) -> float:
        s = math.sin(phi)
        return (1 - self.e2) * (s / (1 - self.e2 * s * s)
                                - (1 / (2 * self.e)) * math.log((1 - self.e * s) / (1 + self.e * s)))

    def forward(self, lon, lat):
        rho = self.a * math.sqrt(self.c - self.n * self._q(math.radians(lat))) / self.n
        theta = self.n * (math.radians(lon) - self.lon0)
        x = rho * math.sin(theta)
        y = self.rho0 - rho * math.cos(theta)
        return x + self.false_easting, y + self.false_northing

    def inverse(self, x, y):
        x -= self.false_easting
        y -= self.false_northing
        rho = math.hypot(x, self.rho0 - y)
        theta = math.atan2(x, self.rho0 - y)
        q = (self.c - (rho * self.n / self.a) ** 2) / self.n
        phi = math.asin(max(-1.0, min(1.0, q / 2)))
        for _ in range(25):
            s = math.sin(phi)
            delta = ((1 - self.e2 * s * s) ** 2 / (2 * math.cos(phi))) * (
                q / (1 - self.e2) - s / (1 - self.e2 * s * s)
                + (1 / (2 * self.e)) * math.log((1 - self.e * s) / (1 + self.e * s)))
            phi += delta
            if abs(delta) < 1e-14:
                break
        return math.degrees(self.lon0 + theta / self.n), math.degrees(phi)


# ============================================================================
# Registry
# ============================================================================

@dataclass
class CRSDefinition:
    """A registered coordinate reference system."""
    code: str
    name: str
    proj4: str
    units: str
    projection: Projection = field(repr=False, compare=False)

    @property
    def is_geographic(self) -> bool:
        return self.units == "degrees"

    def to_dict(self) -> Dict[str, str]:
        return {'code': self.code, 'name': self.name, 'proj4': self.proj4, 'units': self.units}


def utm_definition(zone: int, south: bool = False) -> CRSDefinition:
    hemisphere = "S" if south else "N"
    code = f"EPSG:{32700 + zone if south else 32600 + zone}"
    proj4 = f"+proj=utm +zone={zone}{' +south' if south else ''} +datum=WGS84 +units=m +no_defs"
    return CRSDefinition(code, f"WGS 84 / UTM zone {zone}{hemisphere}", proj4, "meters",
                         UTM(zone, south))


class ProjectionRegistry:
    """Lookup table of CRS definitions keyed by ``EPSG:<n>``."""

    def __init__(self, definitions: Optional[Sequence[CRSDefinition]] = None):
        self._definitions: Dict[str, CRSDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    @classmethod
    def with_defaults(cls) -> 'ProjectionRegistry':
        """Registry seeded with WGS84, Web Mercator, all UTM zones and common national systems."""
        registry = cls([
            CRSDefinition(WGS84_CODE, "WGS 84", "+proj=longlat +datum=WGS84 +no_defs",
                          "degrees", Geographic()),
            CRSDefinition("EPSG:3857", "WGS 84 / Pseudo-Mercator",
                          "+proj=merc +a=6378137 +b=6378137 +lat_ts=0 +lon_0=0 +x_0=0 +y_0=0 "
                          "+k=1 +units=m +nadgrids=@null +no_defs",
                          "meters", WebMercator()),
            CRSDefinition("EPSG:4269", "NAD83", "+proj=longlat +datum=NAD83 +no_defs",
                          "degrees", Geographic()),
            CRSDefinition("EPSG:4267", "NAD27", "+proj=longlat +datum=NAD27 +no_defs",
                          "degrees", Geographic()),
            CRSDefinition("EPSG:4258", "ETRS89", "+proj=longlat +ellps=GRS80 +no_defs",
                          "degrees", Geographic()),
            CRSDefinition("EPSG:5070", "NAD83 / Conus Albers",
                          "+proj=aea +lat_0=23 +lon_0=-96 +lat_1=29.5 +lat_2=45.5 +x_0=0 +y_0=0 "
                          "+datum=NAD83 +units=m +no_defs",
                          "meters", AlbersEqualArea(WGS84_A, GRS80_F, 29.5, 45.5, 23.0, -96.0)),
            CRSDefinition("EPSG:27700", "OSGB 1936 / British National Grid",
                          "+proj=tmerc +lat_0=49 +lon_0=-2 +k=0.9996012717 +x_0=400000 "
                          "+y_0=-100000 +ellps=airy +units=m +no_defs",
                          "meters", TransverseMercator(AIRY_A, 1 - AIRY_B / AIRY_A, -2.0, 49.0,
                                                       0.9996012717, 400000.0, -100000.0)),
            CRSDefinition("EPSG:4087", "WGS 84 / World Equidistant Cylindrical",
                          "+proj=eqc +lat_ts=0 +lat_0=0 +lon_0=0 +x_0=0 +y_0=0 +datum=WGS84 "
                          "+units=m +no_defs",
                          "meters", EquidistantCylindrical()),
        ])
        for zone in range(1, 61):
            registry.register(utm_definition(zone))
            registry.register(utm_definition(zone, south=True))
        return registry

    def register(self, definition: CRSDefinition) -> None:
        definition.code = normalize_code(definition.code)
        self._definitions[definition.code] = definition

    def get(self, code) -> CRSDefinition:
        normalized = normalize_code(code)
        definition = self._definitions.get(normalized)
        if definition is None:
            raise ProjectionError(f"Unregistered CRS: {normalized}", code=normalized)
        return definition

    def is_registered(self, code) -> bool:
        try:
            return normalize_code(code) in self._definitions
        except ProjectionError:
            return False

    def list_codes(self) -> List[str]:
        return sorted(self._definitions, key=lambda c: int(c.split(":")[1]))

    def __len__(self) -> int:
        return len(self._definitions)


# ============================================================================
# Engine
# ============================================================================

class ProjectionEngine:
    """Transforms coordinates between the systems of a registry."""

    def __init__(self, registry: Optional[ProjectionRegistry] = None):
        self.registry = registry if registry is not None else ProjectionRegistry.with_defaults()

    def to_wgs84(self, coord: Sequence[float], from_code) -> Position:
        lon, lat = self.registry.get(from_code).projection.inverse(coord[0], coord[1])
        return (lon, lat) + tuple(coord[2:3])

    def from_wgs84(self, coord: Sequence[float], to_code) -> Position:
        x, y = self.registry.get(to_code).projection.forward(coord[0], coord[1])
        return (x, y) + tuple(coord[2:3])

    def transform(self, coord: Sequence[float], from_code, to_code) -> Position:
        """
        Transform one coordinate. A z value is carried through unchanged.

        Raises
        ------
        ProjectionError
            If either code is malformed or not registered.
        """
        source = self.registry.get(from_code)
        target = self.registry.get(to_code)
        if source.code == target.code:
            return tuple(float(v) for v in coord[:3])
        return self.from_wgs84(self.to_wgs84(coord, source.code), target.code)

    def transform_many(self, coords: Sequence[Sequence[float]], from_code, to_code) -> List[Position]:
        self.registry.get(from_code)
        self.registry.get(to_code)
        logger.debug("Transforming coordinates", count=len(coords),
                     source=from_code, target=to_code)
        return [self.transform(c, from_code, to_code) for c in coords]

    @staticmethod
    def utm_zone_for(lon: float, lat: float) -> str:
        """EPSG code of the standard UTM zone containing a lon/lat position."""
        zone = int(math.floor((lon + 180) / 6)) + 1
        zone = min(max(zone, 1), 60)
        return f"EPSG:{(32700 if lat < 0 else 32600) + zone}"
