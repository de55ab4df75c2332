"""
Coordinate reference systems and datum shifts.

Registries are plain values: build one with ``ProjectionRegistry.with_defaults()``
or ``DatumTransform.with_defaults()`` and pass it to the code that needs it.
"""

from .projection_engine import (
    CRSDefinition,
    ProjectionEngine,
    ProjectionRegistry,
    normalize_code,
    utm_definition,
)

from .datum_transform import (
    DatumTransform,
    Ellipsoid,
    HelmertParameters,
)

__all__ = [
    "CRSDefinition",
    "ProjectionEngine",
    "ProjectionRegistry",
    "normalize_code",
    "utm_definition",
    "DatumTransform",
    "Ellipsoid",
    "HelmertParameters",
]
