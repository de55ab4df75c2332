"""
Datum Transform - seven-parameter Helmert shifts between geodetic datums.

A geodetic coordinate is converted to earth-centred cartesian (ECEF) on the
source ellipsoid, shifted with the Helmert similarity transform, and converted
back to geodetic on the target ellipsoid. Rotations are small-angle, in
arc-seconds (position-vector convention); scale is in parts per million.

Key Features:
- Ellipsoid definitions (WGS84, GRS80, Airy 1830, International 1924, Clarke 1866)
- Geodetic <-> ECEF conversion with a fixed-iteration inverse
- Named parameter sets registered with their inverses
"""

import math
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple, Union

from ..error_handler import ProjectionError
from ..logging_manager import get_logger

logger = get_logger(__name__)

ARCSEC_TO_RAD = math.pi / (180 * 3600)


@dataclass(frozen=True)
class Ellipsoid:
    name: str
    a: float
    f: float

    @property
    def b(self) -> float:
        return self.a * (1 - self.f)

    @property
    def e2(self) -> float:
        return self.f * (2 - self.f)


WGS84 = Ellipsoid("WGS84", 6378137.0, 1 / 298.257223563)
GRS80 = Ellipsoid("GRS80", 6378137.0, 1 / 298.257222101)
AIRY_1830 = Ellipsoid("Airy 1830", 6377563.396, 1 - 6356256.909 / 6377563.396)
INTERNATIONAL_1924 = Ellipsoid("International 1924", 6378388.0, 1 / 297.0)
CLARKE_1866 = Ellipsoid("Clarke 1866", 6378206.4, 1 - 6356583.8 / 6378206.4)


@dataclass(frozen=True)
class HelmertParameters:
    """
    Seven-parameter transform from ``source`` to ``target`` ellipsoid.

    Translations ``tx, ty, tz`` in meters, rotations ``rx, ry, rz`` in
    arc-seconds, scale ``s`` in ppm.
    """
    tx: float
    ty: float
    tz: float
    rx: float = 0.0
    ry: float = 0.0
    rz: float = 0.0
    s: float = 0.0
    source: Ellipsoid = WGS84
    target: Ellipsoid = WGS84

    def inverse(self) -> 'HelmertParameters':
        """Reverse transform; exact to first order in the small parameters."""
        return replace(self, tx=-self.tx, ty=-self.ty, tz=-self.tz,
                       rx=-self.rx, ry=-self.ry, rz=-self.rz, s=-self.s,
                       source=self.target, target=self.source)


def geodetic_to_ecef(lon: float, lat: float, h: float = 0.0,
                     ellipsoid: Ellipsoid = WGS84) -> Tuple[float, float, float]:
    phi, lam = math.radians(lat), math.radians(lon)
    n = ellipsoid.a / math.sqrt(1 - ellipsoid.e2 * math.sin(phi) ** 2)
    x = (n + h) * math.cos(phi) * math.cos(lam)
    y = (n + h) * math.cos(phi) * math.sin(lam)
    z = (n * (1 - ellipsoid.e2) + h) * math.sin(phi)
    return x, y, z


def ecef_to_geodetic(x: float, y: float, z: float, ellipsoid: Ellipsoid = WGS84,
                     iterations: int = 5) -> Tuple[float, float, float]:
    """Inverse of ``geodetic_to_ecef`` by fixed-point iteration on latitude."""
    e2 = ellipsoid.e2
    p = math.hypot(x, y)
    lam = math.atan2(y, x)
    phi = math.atan2(z, p * (1 - e2))
    h = 0.0
    for _ in range(iterations):
        n = ellipsoid.a / math.sqrt(1 - e2 * math.sin(phi) ** 2)
        h = p / math.cos(phi) - n
        phi = math.atan2(z, p * (1 - e2 * n / (n + h)))
    n = ellipsoid.a / math.sqrt(1 - e2 * math.sin(phi) ** 2)
    h = p / math.cos(phi) - n
    return math.degrees(lam), math.degrees(phi), h


def helmert(x: float, y: float, z: float,
            params: HelmertParameters) -> Tuple[float, float, float]:
    """Apply the Helmert similarity transform to an ECEF position."""
    scale = 1 + params.s * 1e-6
    rx = params.rx * ARCSEC_TO_RAD
    ry = params.ry * ARCSEC_TO_RAD
    rz = params.rz * ARCSEC_TO_RAD
    return (params.tx + scale * (x - rz * y + ry * z),
            params.ty + scale * (rz * x + y - rx * z),
            params.tz + scale * (-ry * x + rx * y + z))


class DatumTransform:
    """Registry of named Helmert parameter sets."""

    def __init__(self, parameters: Optional[Dict[str, HelmertParameters]] = None):
        self._parameters: Dict[str, HelmertParameters] = {}
        for name, params in (parameters or {}).items():
            self.register(name, params)

    @classmethod
    def with_defaults(cls) -> 'DatumTransform':
        """WGS84 to OSGB36, ED50 and NAD27, with their inverses."""
        transform = cls()
        transform.register("WGS84->OSGB36", HelmertParameters(
            tx=-446.448, ty=125.157, tz=-542.060,
            rx=-0.1502, ry=-0.2470, rz=-0.8421, s=20.4894,
            source=WGS84, target=AIRY_1830))
        transform.register("WGS84->ED50", HelmertParameters(
            tx=89.5, ty=93.8, tz=123.1, rz=0.156, s=-1.2,
            source=WGS84, target=INTERNATIONAL_1924))
        transform.register("WGS84->NAD27", HelmertParameters(
            tx=8.0, ty=-160.0, tz=-176.0,
            source=WGS84, target=CLARKE_1866))
        return transform

    def register(self, name: str, params: HelmertParameters, with_inverse: bool = True) -> None:
        """Register ``"A->B"``; the reverse ``"B->A"`` is added unless disabled."""
        self._parameters[name] = params
        if with_inverse and "->" in name:
            source, target = name.split("->", 1)
            self._parameters[f"{target}->{source}"] = params.inverse()

    def get(self, name: str) -> HelmertParameters:
        params = self._parameters.get(name)
        if params is None:
            raise ProjectionError(f"Unknown datum transformation: {name}")
        return params

    def list_transforms(self) -> List[str]:
        return sorted(self._parameters)

    def transform(self, lon: float, lat: float, h: float = 0.0,
                  params: Union[str, HelmertParameters] = "WGS84->OSGB36"
                  ) -> Tuple[float, float, float]:
        """Shift a geodetic position between datums; returns (lon, lat, h)."""
        if isinstance(params, str):
            params = self.get(params)
        x, y, z = geodetic_to_ecef(lon, lat, h, params.source)
        x, y, z = helmert(x, y, z, params)
        result = ecef_to_geodetic(x, y, z, params.target)
        logger.debug("Datum shift applied", source=params.source.name,
                     target=params.target.name)
        return result
