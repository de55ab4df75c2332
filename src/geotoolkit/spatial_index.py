"""
Spatial Index - an R-tree over feature bounding boxes.

The index stores only (bounds, feature reference) pairs; features stay owned
by the caller. Searches are bounding-box exact: results equal a brute-force
bounds filter, so callers refine with topology predicates when they need
exact geometry semantics.

Key Features:
- Explicit LeafNode / InternalNode types, bounds re-derived after every change
- Least-enlargement subtree choice and midpoint node splitting
- Deletion with underflow condensing and re-insertion of orphaned entries
- Best-first k-nearest search and within-distance queries

Not safe for concurrent writers: serialize insert/remove on one instance.
"""

import heapq
import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .config_manager import AnalysisConfig, get_analysis_defaults
from .error_handler import GeometryError
from .logging_manager import get_logger, get_logging_manager
from .geometry.factory import GeometryFactory
from .geometry.model import Bounds, Feature

logger = get_logger(__name__)


@dataclass
class Entry:
    """A feature reference with the bounds it was indexed under."""
    bounds: Bounds
    feature: Feature


@dataclass
class LeafNode:
    entries: List[Entry] = field(default_factory=list)
    bounds: Optional[Bounds] = None

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class InternalNode:
    children: List['Node'] = field(default_factory=list)
    bounds: Optional[Bounds] = None

    def __len__(self) -> int:
        return len(self.children)


Node = Union[LeafNode, InternalNode]


@dataclass
class IndexStats:
    node_count: int
    feature_count: int
    depth: int

    def to_dict(self) -> Dict[str, int]:
        return {
            'node_count': self.node_count,
            'feature_count': self.feature_count,
            'depth': self.depth
        }


def _refresh_bounds(node: Node) -> None:
    """Re-derive a node's bounds from its direct members."""
    if isinstance(node, LeafNode):
        boxes = [e.bounds for e in node.entries]
    else:
        boxes = [c.bounds for c in node.children if c.bounds is not None]
    node.bounds = Bounds.union_all(boxes) if boxes else None


def _members(node: Node) -> list:
    return node.entries if isinstance(node, LeafNode) else node.children


class RTree:
    """R-tree spatial index keyed by feature bounds."""

    def __init__(self, max_entries: Optional[int] = None, min_entries: Optional[int] = None,
                 factory: Optional[GeometryFactory] = None, name: str = "rtree",
                 config: Optional[AnalysisConfig] = None):
        """
        Parameters
        ----------
        max_entries : int, optional
            Node capacity before splitting (default 9).
        min_entries : int, optional
            Fill below which a non-root node is dissolved on removal (default 4).
        factory : GeometryFactory, optional
            Used to compute feature bounds.
        name : str
            Label for the index-size metric.
        """
        config = config or get_analysis_defaults()
        self.max_entries = max_entries or config.rtree_max_entries
        self.min_entries = min_entries or config.rtree_min_entries
        if self.max_entries < 2:
            raise ValueError(f"max_entries must be at least 2, got {self.max_entries}")
        if not 1 <= self.min_entries <= self.max_entries // 2:
            raise ValueError(
                f"min_entries must be between 1 and max_entries/2, got {self.min_entries}"
            )
        self.factory = factory or GeometryFactory()
        self.name = name
        self.root: Node = LeafNode()
        self._bounds: Dict[Feature, Bounds] = {}

    # -- mutation -----------------------------------------------------------

    def insert(self, feature: Feature) -> None:
        """Index a feature under its geometry bounds. Re-inserting replaces it."""
        if feature.geometry is None:
            raise GeometryError("Cannot index a feature without geometry")
        if feature in self._bounds:
            self._remove_entry(feature)
        bounds = self.factory.get_bounds(feature.geometry)
        self._insert_entry(Entry(bounds, feature))
        self._bounds[feature] = bounds
        self._publish_size()

    def bulk_load(self, features: Iterable[Feature]) -> int:
        count = 0
        for feature in features:
            self.insert(feature)
            count += 1
        logger.debug("Bulk loaded features", index=self.name, count=count)
        return count

    def remove(self, feature: Feature) -> bool:
        """Remove a feature. Returns False if it was not indexed."""
        if feature not in self._bounds:
            return False
        self._remove_entry(feature)
        del self._bounds[feature]
        self._publish_size()
        return True

    def clear(self) -> None:
        self.root = LeafNode()
        self._bounds.clear()
        self._publish_size()

    # -- queries ------------------------------------------------------------

    def search(self, bounds: Bounds) -> List[Feature]:
        """Every feature whose indexed bounds intersect ``bounds``."""
        results = []
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.bounds is None or not node.bounds.intersects(bounds):
                continue
            if isinstance(node, LeafNode):
                results.extend(e.feature for e in node.entries if e.bounds.intersects(bounds))
            else:
                stack.extend(node.children)
        return results

    def search_within_distance(self, position: Sequence[float], distance: float) -> List[Feature]:
        """Features whose bounds lie within ``distance`` of a position."""
        window = Bounds(position[0], position[1], position[0], position[1]).expand(distance)
        return [f for f in self.search(window)
                if self._bounds[f].distance_to(position) <= distance]

    def nearest(self, position: Sequence[float], k: int = 1) -> List[Feature]:
        """
        The ``k`` features with the closest bounds to a position.

        Best-first traversal: nodes and entries share one priority queue keyed
        on box distance, so entries come out in non-decreasing distance order.
        """
        if k < 1:
            return []
        counter = itertools.count()
        heap: List[Tuple[float, int, Any]] = []
        if self.root.bounds is not None:
            heap.append((self.root.bounds.distance_to(position), next(counter), self.root))

        results: List[Feature] = []
        while heap and len(results) < k:
            _, _, item = heapq.heappop(heap)
            if isinstance(item, Entry):
                results.append(item.feature)
            elif isinstance(item, LeafNode):
                for entry in item.entries:
                    heapq.heappush(heap, (entry.bounds.distance_to(position), next(counter), entry))
            else:
                for child in item.children:
                    if child.bounds is not None:
                        heapq.heappush(heap, (child.bounds.distance_to(position),
                                              next(counter), child))
        return results

    def all(self) -> List[Feature]:
        return list(self._bounds)

    def get_stats(self) -> IndexStats:
        node_count = 0
        depth = 0
        stack = [(self.root, 1)]
        while stack:
            node, level = stack.pop()
            node_count += 1
            depth = max(depth, level)
            if isinstance(node, InternalNode):
                stack.extend((child, level + 1) for child in node.children)
        return IndexStats(node_count=node_count, feature_count=len(self._bounds), depth=depth)

    def __len__(self) -> int:
        return len(self._bounds)

    def __contains__(self, feature: Feature) -> bool:
        return feature in self._bounds

    # -- internals ----------------------------------------------------------

    def _insert_entry(self, entry: Entry) -> None:
        path: List[Node] = [self.root]
        while isinstance(path[-1], InternalNode):
            path.append(self._choose_subtree(path[-1], entry.bounds))
        path[-1].entries.append(entry)
        self._adjust_path(path)

    def _choose_subtree(self, node: InternalNode, bounds: Bounds) -> Node:
        """Child needing the least enlargement, ties broken by smaller area."""
        return min(node.children,
                   key=lambda child: (child.bounds.enlargement(bounds), child.bounds.area()))

    def _adjust_path(self, path: List[Node]) -> None:
        """Split overflowing nodes bottom-up and refresh bounds along the path."""
        for depth in range(len(path) - 1, -1, -1):
            node = path[depth]
            sibling = self._split(node) if len(node) > self.max_entries else None
            _refresh_bounds(node)
            if sibling is None:
                continue
            if depth == 0:
                self.root = InternalNode(children=[node, sibling])
                _refresh_bounds(self.root)
                logger.debug("R-tree root split", index=self.name,
                             depth=self.get_stats().depth)
            else:
                path[depth - 1].children.append(sibling)

    def _split(self, node: Node) -> Node:
        """
        Midpoint split along the wider axis of the node's bounds.

        Members are ordered by box center on that axis and halved, so both
        halves hold at least ``max_entries // 2`` members.
        """
        members = _members(node)
        extent = Bounds.union_all(m.bounds for m in members)
        axis = 0 if extent.width >= extent.height else 1
        members.sort(key=lambda m: m.bounds.center()[axis])
        half = len(members) // 2
        moved = members[half:]
        del members[half:]
        if isinstance(node, LeafNode):
            sibling: Node = LeafNode(entries=moved)
        else:
            sibling = InternalNode(children=moved)
        _refresh_bounds(sibling)
        return sibling

    def _find_leaf(self, feature: Feature, bounds: Bounds) -> Optional[List[Node]]:
        stack: List[List[Node]] = [[self.root]]
        while stack:
            path = stack.pop()
            node = path[-1]
            if node.bounds is None or not node.bounds.contains(bounds):
                continue
            if isinstance(node, LeafNode):
                if any(e.feature is feature for e in node.entries):
                    return path
            else:
                stack.extend(path + [child] for child in node.children)
        return None

    def _remove_entry(self, feature: Feature) -> None:
        path = self._find_leaf(feature, self._bounds[feature])
        if path is None:
            raise RuntimeError(f"R-tree {self.name} lost track of an indexed feature")
        leaf = path[-1]
        leaf.entries = [e for e in leaf.entries if e.feature is not feature]

        # Condense: dissolve underfull nodes and collect their entries
        orphans: List[Entry] = []
        for depth in range(len(path) - 1, 0, -1):
            node, parent = path[depth], path[depth - 1]
            if len(node) < self.min_entries:
                parent.children = [c for c in parent.children if c is not node]
                orphans.extend(self._collect_entries(node))
            else:
                _refresh_bounds(node)
        _refresh_bounds(self.root)

        while isinstance(self.root, InternalNode) and len(self.root.children) == 1:
            self.root = self.root.children[0]
        if isinstance(self.root, InternalNode) and not self.root.children:
            self.root = LeafNode()

        for entry in orphans:
            self._insert_entry(entry)

    @staticmethod
    def _collect_entries(node: Node) -> List[Entry]:
        entries: List[Entry] = []
        stack = [node]
        while stack:
            current = stack.pop()
            if isinstance(current, LeafNode):
                entries.extend(current.entries)
            else:
                stack.extend(current.children)
        return entries

    def _publish_size(self) -> None:
        manager = get_logging_manager()
        if manager.config.enable_metrics:
            manager.metrics.update_index_size(self.name, len(self._bounds))
