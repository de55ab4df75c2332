"""
Spatial analysis domains for geotoolkit.

Each domain exposes an analyzer class that takes an optional
``AnalysisConfig`` and accepts a cooperative ``cancel_token`` on its long
running operations.

Available domains:
- proximity_analysis: Nearest neighbours, distance matrices, facility allocation
- density_analysis: Kernel density, point/line density, Getis-Ord Gi* hotspots
- cluster_analysis: DBSCAN, k-means, hierarchical clustering, silhouette score
- network_analysis: Dijkstra, A*, Bellman-Ford, service areas, path enumeration, TSP
- terrain_analysis: Slope, aspect, hillshade, curvature, D8 flow, profiles, contours
- viewshed_analysis: Viewshed, line of sight, cumulative viewshed, horizon angles
- raster_interpolation: IDW, kriging, spline, nearest and natural neighbour surfaces
- raster_calculator: Map algebra, reclassification, focal and zonal statistics, expressions
- raster_mosaic: Mosaicking with overlap rules, nearest/bilinear/cubic resampling
"""

from .raster import Raster, BandStatistics, band_statistics

from .proximity_analysis import (
    ProximityAnalyzer,
    Neighbor,
    FacilityAllocation,
)

from .density_analysis import (
    DensityAnalyzer,
    KernelType,
    AreaUnit,
    Hotspot,
)

from .cluster_analysis import (
    ClusterAnalyzer,
    ClusterAlgorithm,
    ClusterOptions,
    Cluster,
    DistanceMetric,
    SpatialClusteringTransformer,
    NOISE,
)

from .network_analysis import (
    Network,
    NetworkNode,
    NetworkEdge,
    NetworkAnalyzer,
    Route,
    RoutingAlgorithm,
    build_network_from_lines,
)

from .terrain_analysis import (
    TerrainAnalyzer,
    ContourOptions,
    ElevationProfile,
    SlopeUnits,
)

from .viewshed_analysis import (
    ViewshedAnalyzer,
    ViewshedResult,
    LineOfSightResult,
    Observer,
    ViewpointResult,
)

from .raster_interpolation import (
    RasterInterpolator,
    InterpolationMethod,
    InterpolationOptions,
    VariogramModel,
)

from .raster_calculator import (
    RasterCalculator,
    FocalStatistic,
    ZonalStatistic,
    ReclassRange,
)

from .raster_mosaic import (
    RasterMosaic,
    MosaicMethod,
    ResampleMethod,
)

__all__ = [
    # Raster model
    "Raster",
    "BandStatistics",
    "band_statistics",

    # Proximity
    "ProximityAnalyzer",
    "Neighbor",
    "FacilityAllocation",

    # Density
    "DensityAnalyzer",
    "KernelType",
    "AreaUnit",
    "Hotspot",

    # Clustering
    "ClusterAnalyzer",
    "ClusterAlgorithm",
    "ClusterOptions",
    "Cluster",
    "DistanceMetric",
    "SpatialClusteringTransformer",
    "NOISE",

    # Network
    "Network",
    "NetworkNode",
    "NetworkEdge",
    "NetworkAnalyzer",
    "Route",
    "RoutingAlgorithm",
    "build_network_from_lines",

    # Terrain
    "TerrainAnalyzer",
    "ContourOptions",
    "ElevationProfile",
    "SlopeUnits",

    # Viewshed
    "ViewshedAnalyzer",
    "ViewshedResult",
    "LineOfSightResult",
    "Observer",
    "ViewpointResult",

    # Interpolation
    "RasterInterpolator",
    "InterpolationMethod",
    "InterpolationOptions",
    "VariogramModel",

    # Map algebra
    "RasterCalculator",
    "FocalStatistic",
    "ZonalStatistic",
    "ReclassRange",

    # Mosaic
    "RasterMosaic",
    "MosaicMethod",
    "ResampleMethod",
]
