"""
Shared fixtures for the geotoolkit test suite.

Provides geometry factories, common shapes, small DEM rasters and helpers
that isolate configuration state between tests.
"""

import numpy as np
import pytest

from geotoolkit import config_manager
from geotoolkit.config_manager import AnalysisConfig
from geotoolkit.domains.raster import Raster
from geotoolkit.geometry.factory import GeometryFactory
from geotoolkit.geometry.model import Bounds, Feature
from geotoolkit.geometry.topology import TopologyEngine


# =============================================================================
# Engines
# =============================================================================

@pytest.fixture
def factory():
    """Geometry factory with default analysis settings."""
    return GeometryFactory()


@pytest.fixture
def topology():
    """Topology engine."""
    return TopologyEngine()


@pytest.fixture
def analysis_config():
    """Analysis configuration with a fixed random seed."""
    return AnalysisConfig(random_seed=42)


@pytest.fixture(autouse=True)
def reset_global_config():
    """Drop the global ConfigManager so environment patches take effect."""
    config_manager._config_manager = None
    yield
    config_manager._config_manager = None


# =============================================================================
# Geometries
# =============================================================================

@pytest.fixture
def square(factory):
    """4x4 square with its lower-left corner at the origin."""
    return factory.create_polygon([[0, 0], [4, 0], [4, 4], [0, 4], [0, 0]])


@pytest.fixture
def square_with_hole(factory):
    """10x10 square with a clockwise 2x2 hole in the middle."""
    return factory.create_polygon([
        [[0, 0], [10, 0], [10, 10], [0, 10], [0, 0]],
        [[4, 4], [4, 6], [6, 6], [6, 4], [4, 4]],
    ])


@pytest.fixture
def zigzag(factory):
    """Line with small wiggles around y=0."""
    return factory.create_line_string([
        [0, 0], [1, 0.1], [2, -0.1], [3, 5], [4, 6], [5, 7], [6, 8.1], [7, 9], [8, 9], [9, 9]
    ])


@pytest.fixture
def grid_features(factory):
    """Point features on a 10x10 integer grid."""
    return [
        Feature(factory.create_point([x, y]), {'x': x, 'y': y}, id=f"p{x}_{y}")
        for x in range(10) for y in range(10)
    ]


# =============================================================================
# Rasters
# =============================================================================

def make_dem(data, cell_size=1.0, origin=(0.0, 0.0)):
    """Raster with ``data`` placed north-up, lower-left corner at ``origin``."""
    data = np.asarray(data, dtype=float)
    height, width = data.shape
    bounds = Bounds(origin[0], origin[1],
                    origin[0] + width * cell_size, origin[1] + height * cell_size)
    return Raster(data, bounds)


@pytest.fixture
def flat_dem():
    """20x20 DEM at constant elevation 100."""
    return make_dem(np.full((20, 20), 100.0))


@pytest.fixture
def east_slope_dem():
    """10x10 DEM rising 1 unit per cell towards the east."""
    cols = np.arange(10, dtype=float)
    return make_dem(np.tile(cols, (10, 1)))


@pytest.fixture
def cone_dem():
    """21x21 DEM with a single peak of height 20 at the center cell."""
    rows, cols = np.mgrid[0:21, 0:21]
    distance = np.sqrt((rows - 10) ** 2 + (cols - 10) ** 2)
    return make_dem(np.maximum(0.0, 20.0 - 2.0 * distance))


@pytest.fixture
def dem_builder():
    """The ``make_dem`` helper as a fixture."""
    return make_dem
