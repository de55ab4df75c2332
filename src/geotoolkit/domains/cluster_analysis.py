"""
Cluster Analysis Domain - spatial clustering of point sets.

Key Features:
- DBSCAN with core/border/noise labelling and order-independent membership
- K-means with k-means++ seeding and a choice of distance metric
- Agglomerative hierarchical clustering with average linkage
- Silhouette score for cluster quality
- Feature clustering by geometry centroid with back-references
- Sklearn-compatible ``SpatialClusteringTransformer`` for DataFrame pipelines
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.utils.validation import check_is_fitted

from ..cancellation import CancellationToken, check_cancelled
from ..config_manager import AnalysisConfig, get_analysis_defaults
from ..error_handler import AnalysisError
from ..logging_manager import get_logger, get_logging_manager
from ..geometry.factory import GeometryFactory
from ..geometry.model import Feature, Position
from .proximity_analysis import euclidean_matrix, haversine_matrix

logger = get_logger(__name__)

NOISE = -1


class ClusterAlgorithm(str, Enum):
    DBSCAN = "dbscan"
    KMEANS = "kmeans"
    HIERARCHICAL = "hierarchical"


class DistanceMetric(str, Enum):
    EUCLIDEAN = "euclidean"
    MANHATTAN = "manhattan"
    HAVERSINE = "haversine"


@dataclass
class Cluster:
    """A group of member positions and their mean."""
    id: int
    points: List[Position]
    centroid: Position
    indices: List[int] = field(default_factory=list)
    features: Optional[List[Feature]] = None

    @property
    def size(self) -> int:
        return len(self.points)


@dataclass
class ClusterOptions:
    algorithm: ClusterAlgorithm = ClusterAlgorithm.DBSCAN
    epsilon: Optional[float] = None
    min_points: Optional[int] = None
    k: Optional[int] = None
    metric: DistanceMetric = DistanceMetric.EUCLIDEAN

    def __post_init__(self):
        try:
            self.algorithm = ClusterAlgorithm(self.algorithm)
            self.metric = DistanceMetric(self.metric)
        except ValueError as e:
            raise AnalysisError(str(e))


def _coords(points: Sequence[Sequence[float]]) -> np.ndarray:
    return np.asarray([p[:2] for p in points], dtype=float).reshape(-1, 2)


def _centroid(coords: np.ndarray) -> Position:
    mean = coords.mean(axis=0)
    return (float(mean[0]), float(mean[1]))


class ClusterAnalyzer:
    """DBSCAN, k-means and hierarchical clustering over positions."""

    def __init__(self, config: Optional[AnalysisConfig] = None,
                 factory: Optional[GeometryFactory] = None):
        self.config = config or get_analysis_defaults()
        self.factory = factory or GeometryFactory(self.config)

    # -- distances ----------------------------------------------------------

    def pairwise(self, a: np.ndarray, b: np.ndarray,
                 metric: DistanceMetric = DistanceMetric.EUCLIDEAN) -> np.ndarray:
        metric = DistanceMetric(metric)
        if metric == DistanceMetric.HAVERSINE:
            return haversine_matrix(a, b, self.config.earth_radius)
        if metric == DistanceMetric.MANHATTAN:
            return (np.abs(a[:, 0:1] - b[:, 0].reshape(1, -1)) +
                    np.abs(a[:, 1:2] - b[:, 1].reshape(1, -1)))
        return euclidean_matrix(a, b)

    # -- dispatch -----------------------------------------------------------

    def cluster(self, points: Sequence[Sequence[float]], options: Optional[ClusterOptions] = None,
                cancel_token: Optional[CancellationToken] = None) -> List[Cluster]:
        options = options or ClusterOptions()
        if options.algorithm == ClusterAlgorithm.DBSCAN:
            return self.dbscan(points,
                               options.epsilon if options.epsilon is not None else self.config.dbscan_epsilon,
                               options.min_points or self.config.dbscan_min_points,
                               options.metric, cancel_token)
        if options.algorithm == ClusterAlgorithm.KMEANS:
            return self.kmeans(points, options.k or self.config.cluster_k, options.metric,
                               cancel_token=cancel_token)
        return self.hierarchical(points, options.k or self.config.cluster_k, options.metric,
                                 cancel_token)

    def labels(self, points: Sequence[Sequence[float]], clusters: Sequence[Cluster]) -> np.ndarray:
        """Per-point cluster id, ``NOISE`` for points in no cluster."""
        labels = np.full(len(points), NOISE, dtype=int)
        for cluster in clusters:
            labels[cluster.indices] = cluster.id
        return labels

    # -- DBSCAN -------------------------------------------------------------

    def dbscan(self, points: Sequence[Sequence[float]], epsilon: float, min_points: int,
               metric: Union[str, DistanceMetric] = DistanceMetric.EUCLIDEAN,
               cancel_token: Optional[CancellationToken] = None) -> List[Cluster]:
        """
        Density-based clustering.

        A point is core when at least ``min_points`` points (itself included)
        lie within ``epsilon``. Core points within ``epsilon`` of each other
        share a cluster; a border point joins the cluster of its nearest core
        neighbour (ties to the lexicographically smallest core position);
        everything else is noise.

        Clusters are numbered by their smallest member position, so the result
        does not depend on input order. Noise points belong to no cluster.
        """
        if epsilon < 0:
            raise AnalysisError(f"epsilon must be non-negative, got {epsilon}")
        if min_points < 1:
            raise AnalysisError(f"min_points must be at least 1, got {min_points}")
        coords = _coords(points)
        n = len(coords)
        if n == 0:
            return []

        with get_logging_manager().operation("cluster", "dbscan", points=n):
            neighbors: List[np.ndarray] = []
            distances: List[np.ndarray] = []
            for i in range(n):
                check_cancelled(cancel_token, "cluster")
                d = self.pairwise(coords[i:i + 1], coords, metric)[0]
                distances.append(d)
                neighbors.append(np.nonzero(d <= epsilon)[0])
            core = np.array([len(nb) >= min_points for nb in neighbors])

            component = np.full(n, NOISE, dtype=int)
            next_id = 0
            for start in range(n):
                if not core[start] or component[start] != NOISE:
                    continue
                component[start] = next_id
                stack = [start]
                while stack:
                    current = stack.pop()
                    for nb in neighbors[current]:
                        if core[nb] and component[nb] == NOISE:
                            component[nb] = next_id
                            stack.append(nb)
                next_id += 1

            labels = component.copy()
            for i in range(n):
                if core[i]:
                    continue
                core_neighbors = [j for j in neighbors[i] if core[j]]
                if core_neighbors:
                    best = min(core_neighbors,
                               key=lambda j: (distances[i][j], tuple(coords[j])))
                    labels[i] = component[best]

            clusters = self._build_clusters(points, coords, labels)
            logger.debug("DBSCAN complete", clusters=len(clusters),
                         noise=int((labels == NOISE).sum()))
            return clusters

    # -- k-means ------------------------------------------------------------

    def kmeans(self, points: Sequence[Sequence[float]], k: int,
               metric: Union[str, DistanceMetric] = DistanceMetric.EUCLIDEAN,
               max_iterations: Optional[int] = None,
               random_state: Optional[int] = None,
               cancel_token: Optional[CancellationToken] = None) -> List[Cluster]:
        """
        Lloyd's k-means with k-means++ seeding.

        Iterates until no label changes or ``max_iterations`` is reached. A
        cluster that loses all members keeps its previous centroid. Empty
        clusters are omitted from the result.
        """
        if k < 1:
            raise AnalysisError(f"k must be at least 1, got {k}")
        coords = _coords(points)
        n = len(coords)
        if n == 0:
            return []
        k = min(k, n)
        max_iterations = max_iterations or self.config.kmeans_max_iterations
        seed = random_state if random_state is not None else self.config.random_seed
        rng = np.random.default_rng(seed)

        with get_logging_manager().operation("cluster", "kmeans", points=n, k=k):
            centroids = self._kmeans_plus_plus(coords, k, rng)
            labels = np.full(n, -1, dtype=int)
            iteration = 0
            for iteration in range(1, max_iterations + 1):
                check_cancelled(cancel_token, "cluster")
                new_labels = np.argmin(self.pairwise(coords, centroids, metric), axis=1)
                if np.array_equal(new_labels, labels):
                    break
                labels = new_labels
                for c in range(k):
                    members = coords[labels == c]
                    if len(members):
                        centroids[c] = members.mean(axis=0)
                    else:
                        logger.warning("k-means cluster emptied, keeping previous centroid",
                                       cluster=c, iteration=iteration)

            logger.debug("k-means finished", iterations=iteration)
            clusters = []
            for c in range(k):
                idx = np.nonzero(labels == c)[0]
                if len(idx):
                    clusters.append(Cluster(
                        id=c,
                        points=[tuple(points[i]) for i in idx],
                        centroid=(float(centroids[c][0]), float(centroids[c][1])),
                        indices=[int(i) for i in idx]
                    ))
            return clusters

    def _kmeans_plus_plus(self, coords: np.ndarray, k: int,
                          rng: np.random.Generator) -> np.ndarray:
        """Seeding with probability proportional to squared distance."""
        centroids = [coords[rng.integers(len(coords))]]
        for _ in range(1, k):
            d = euclidean_matrix(coords, np.asarray(centroids)).min(axis=1)
            weights = d * d
            total = weights.sum()
            if total == 0:
                centroids.append(coords[rng.integers(len(coords))])
            else:
                centroids.append(coords[rng.choice(len(coords), p=weights / total)])
        return np.asarray(centroids, dtype=float)

    # -- hierarchical -------------------------------------------------------

    def hierarchical(self, points: Sequence[Sequence[float]], k: int,
                     metric: Union[str, DistanceMetric] = DistanceMetric.EUCLIDEAN,
                     cancel_token: Optional[CancellationToken] = None) -> List[Cluster]:
        """
        Agglomerative clustering with average linkage.

        Repeatedly merges the closest pair of clusters until ``k`` remain.
        Linkage distances are updated in place with the Lance-Williams rule
        for average linkage.
        """
        if k < 1:
            raise AnalysisError(f"k must be at least 1, got {k}")
        coords = _coords(points)
        n = len(coords)
        if n == 0:
            return []

        with get_logging_manager().operation("cluster", "hierarchical", points=n, k=k):
            linkage = self.pairwise(coords, coords, metric)
            np.fill_diagonal(linkage, np.inf)
            members: Dict[int, List[int]] = {i: [i] for i in range(n)}
            active = np.ones(n, dtype=bool)

            while len(members) > k:
                check_cancelled(cancel_token, "cluster")
                masked = np.where(active[:, None] & active[None, :], linkage, np.inf)
                i, j = np.unravel_index(np.argmin(masked), masked.shape)
                i, j = min(i, j), max(i, j)
                size_i, size_j = len(members[i]), len(members[j])
                merged = (size_i * linkage[i] + size_j * linkage[j]) / (size_i + size_j)
                linkage[i, :] = merged
                linkage[:, i] = merged
                linkage[i, i] = np.inf
                linkage[j, :] = np.inf
                linkage[:, j] = np.inf
                active[j] = False
                members[i].extend(members.pop(j))

            labels = np.full(n, NOISE, dtype=int)
            for cluster_id, group in enumerate(sorted(members.values(), key=min)):
                labels[group] = cluster_id
            return self._build_clusters(points, coords, labels, renumber=False)

    # -- quality ------------------------------------------------------------

    def silhouette_score(self, clusters: Sequence[Cluster],
                         metric: Union[str, DistanceMetric] = DistanceMetric.EUCLIDEAN,
                         cancel_token: Optional[CancellationToken] = None) -> float:
        """
        Mean silhouette over all clustered points, in [-1, 1].

        Points in singleton clusters score 0; fewer than two clusters give 0.
        """
        groups = [_coords(c.points) for c in clusters if c.points]
        if len(groups) < 2:
            return 0.0

        scores = []
        for gi, group in enumerate(groups):
            check_cancelled(cancel_token, "cluster")
            if len(group) == 1:
                scores.append(0.0)
                continue
            own = self.pairwise(group, group, metric)
            a = own.sum(axis=1) / (len(group) - 1)
            b = np.min([self.pairwise(group, other, metric).mean(axis=1)
                        for gj, other in enumerate(groups) if gj != gi], axis=0)
            denom = np.maximum(a, b)
            s = np.where(denom > 0, (b - a) / np.where(denom > 0, denom, 1), 0.0)
            scores.extend(s.tolist())
        return float(np.mean(scores))

    # -- features -----------------------------------------------------------

    def cluster_features(self, features: Sequence[Feature],
                         options: Optional[ClusterOptions] = None,
                         cancel_token: Optional[CancellationToken] = None) -> List[Cluster]:
        """Cluster features by geometry centroid; each cluster lists its features.

        Features without a geometry are left out. Cluster ``indices`` refer
        to positions in ``features``.
        """
        located = [i for i, f in enumerate(features) if f.geometry is not None]
        if len(located) < len(features):
            logger.debug("Skipping features without geometry",
                         skipped=len(features) - len(located))
        centroids = [self.factory.get_centroid(features[i].geometry).position for i in located]
        clusters = self.cluster(centroids, options, cancel_token)
        for cluster in clusters:
            cluster.indices = [located[i] for i in cluster.indices]
            cluster.features = [features[i] for i in cluster.indices]
        return clusters

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _build_clusters(points: Sequence[Sequence[float]], coords: np.ndarray,
                        labels: np.ndarray, renumber: bool = True) -> List[Cluster]:
        """Clusters from labels; ``renumber`` orders ids by smallest member position."""
        groups: Dict[int, List[int]] = {}
        for i, label in enumerate(labels):
            if label != NOISE:
                groups.setdefault(int(label), []).append(i)

        ordered = list(groups.values())
        if renumber:
            ordered.sort(key=lambda idx: min(tuple(coords[i]) for i in idx))
        else:
            ordered.sort(key=lambda idx: int(labels[idx[0]]))

        return [Cluster(id=cluster_id,
                        points=[tuple(points[i]) for i in idx],
                        centroid=_centroid(coords[idx]),
                        indices=idx)
                for cluster_id, idx in enumerate(ordered)]


# ============================================================================
# Sklearn integration
# ============================================================================

class SpatialClusteringTransformer(BaseEstimator, TransformerMixin):
    """
    Sklearn-compatible transformer that labels rows by spatial cluster.

    Fitting clusters the coordinate columns; transforming returns a copy of
    the input with a ``cluster`` column (-1 for noise).
    """

    def __init__(self,
                 algorithm: str = 'dbscan',
                 epsilon: Optional[float] = None,
                 min_points: Optional[int] = None,
                 k: Optional[int] = None,
                 metric: str = 'euclidean',
                 coordinate_columns: Optional[List[str]] = None):
        """
        Parameters
        ----------
        algorithm : {'dbscan', 'kmeans', 'hierarchical'}
        epsilon, min_points : DBSCAN parameters.
        k : number of clusters for k-means and hierarchical.
        metric : {'euclidean', 'manhattan', 'haversine'}
        coordinate_columns : list of str, optional
            Names of the x/y columns, default ``['x', 'y']``.
        """
        self.algorithm = algorithm
        self.epsilon = epsilon
        self.min_points = min_points
        self.k = k
        self.metric = metric
        self.coordinate_columns = coordinate_columns

    def _points(self, X: Union[pd.DataFrame, np.ndarray]) -> List[Position]:
        if isinstance(X, pd.DataFrame):
            columns = self.coordinate_columns or ['x', 'y']
            missing = [c for c in columns if c not in X.columns]
            if missing:
                raise AnalysisError(f"Coordinate columns not found: {missing}")
            values = X[columns].to_numpy(dtype=float)
        else:
            values = np.asarray(X, dtype=float)[:, :2]
        return [tuple(row) for row in values]

    def fit(self, X: Union[pd.DataFrame, np.ndarray], y: Any = None) -> 'SpatialClusteringTransformer':
        points = self._points(X)
        options = ClusterOptions(algorithm=self.algorithm, epsilon=self.epsilon,
                                 min_points=self.min_points, k=self.k, metric=self.metric)
        analyzer = ClusterAnalyzer()
        self.clusters_ = analyzer.cluster(points, options)
        self.labels_ = analyzer.labels(points, self.clusters_)
        self.n_clusters_ = len(self.clusters_)
        return self

    def transform(self, X: Union[pd.DataFrame, np.ndarray]) -> Union[pd.DataFrame, np.ndarray]:
        """Attach the fitted labels. ``X`` must be the data passed to ``fit``."""
        check_is_fitted(self, 'labels_')
        if len(X) != len(self.labels_):
            raise AnalysisError("transform expects the same rows that were fitted")
        if isinstance(X, pd.DataFrame):
            result = X.copy()
            result['cluster'] = self.labels_
            return result
        return self.labels_.reshape(-1, 1)

    def get_feature_names_out(self, input_features: Optional[List[str]] = None) -> List[str]:
        return list(input_features or []) + ['cluster']
