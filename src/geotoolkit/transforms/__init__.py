"""
Geometry transforms: buffering, boolean overlay and simplification.
"""

from .buffer import BufferEngine, BufferOptions, CapStyle, DistanceUnit
from .overlay import OverlayEngine, convex_hull
from .simplify import SimplifyEngine, SimplifyOptions, douglas_peucker

__all__ = [
    "BufferEngine",
    "BufferOptions",
    "CapStyle",
    "DistanceUnit",
    "OverlayEngine",
    "convex_hull",
    "SimplifyEngine",
    "SimplifyOptions",
    "douglas_peucker",
]
