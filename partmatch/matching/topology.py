"""
Topology Graph Module

Builds a k-nearest-neighbour graph over a point set. Each edge records the
bearing from a node to its neighbour and the neighbour distance divided by
the node's distance to the set centroid, which makes the edge description
independent of translation and uniform scale.

Two nodes from different graphs are compared by how well their edge sets
line up; the graph matcher turns that into an assignment cost.

Usage:
    from partmatch.matching.topology import TopologyGraph

    template_graph = TopologyGraph.from_template(template, k=4)
    detected_graph = TopologyGraph.from_detections(detections, k=4)
    cost = template_graph.matching_cost(0, detected_graph, 2)
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy.spatial import cKDTree

from partmatch.geometry import Point, centroid, normalize_angle, points_to_array
from partmatch.models import DetectedObject, Template

logger = logging.getLogger(__name__)

# Cost for pairing nodes of different classes (never chosen in practice)
CLASS_MISMATCH_COST = 1000.0

# Number of nearest edges compared per node
MAX_COMPARED_EDGES = 5


@dataclass(frozen=True)
class TopologyNode:
    """A graph vertex: one template feature or one detection."""

    node_id: str
    index: int
    class_id: int
    position: Point
    size: float = 10.0


@dataclass(frozen=True)
class TopologyEdge:
    """
    Directed edge from a node to one of its nearest neighbours.

    Attributes:
        source_id: Node the edge starts at.
        target_id: Neighbour node.
        relative_angle: Bearing of source -> target in radians.
        distance_ratio: |source - target| / |source - centroid|; the raw
                        distance when the source sits on the centroid.
        distance: |source - target| in pixels.
        neighbor_rank: 0 for the nearest neighbour.
    """

    source_id: str
    target_id: str
    relative_angle: float
    distance_ratio: float
    distance: float
    neighbor_rank: int

    def similarity(self, other: "TopologyEdge") -> float:
        """Average of angle and ratio agreement, in [0, 1]."""
        angle_diff = abs(normalize_angle(self.relative_angle - other.relative_angle))
        angle_sim = max(0.0, 1.0 - angle_diff / math.pi)

        ratio_diff = abs(self.distance_ratio - other.distance_ratio)
        max_ratio = max(self.distance_ratio, other.distance_ratio)
        ratio_sim = max(0.0, 1.0 - ratio_diff / max_ratio) if max_ratio > 1e-6 else 1.0

        return min(1.0, max(0.0, (angle_sim + ratio_sim) / 2.0))

    def __str__(self) -> str:
        return (
            f"Edge[{self.source_id}->{self.target_id}, "
            f"angle={math.degrees(self.relative_angle):.2f}, "
            f"ratio={self.distance_ratio:.3f}, rank={self.neighbor_rank}]"
        )


class TopologyGraph:
    """k-nearest-neighbour graph over one point set."""

    def __init__(self, nodes: Sequence[TopologyNode], k: int = 4):
        self.nodes: List[TopologyNode] = list(nodes)
        self.k = k
        self.reference = (
            centroid(n.position for n in self.nodes) if self.nodes else Point(0.0, 0.0)
        )
        self.edges: Dict[str, List[TopologyEdge]] = {n.node_id: [] for n in self.nodes}
        self._build_edges()

    @classmethod
    def from_template(cls, template: Template, k: int = 4) -> "TopologyGraph":
        nodes = [
            TopologyNode(node_id=f.id, index=i, class_id=f.class_id, position=f.position)
            for i, f in enumerate(template.features)
        ]
        return cls(nodes, k)

    @classmethod
    def from_detections(cls, detections: Sequence[DetectedObject], k: int = 4) -> "TopologyGraph":
        nodes = [
            TopologyNode(
                node_id=f"detected_{i}",
                index=i,
                class_id=det.class_id,
                position=det.center,
                size=max(det.width, det.height),
            )
            for i, det in enumerate(detections)
        ]
        return cls(nodes, k)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _build_edges(self) -> None:
        n = len(self.nodes)
        k_actual = min(n - 1, self.k)
        if k_actual <= 0:
            return

        coords = points_to_array(n.position for n in self.nodes)
        tree = cKDTree(coords)
        # One extra neighbour to make room for the node itself
        dists, idxs = tree.query(coords, k=k_actual + 1)

        for i, source in enumerate(self.nodes):
            neighbours = [
                (float(d), int(j)) for d, j in zip(dists[i], idxs[i]) if j != i and j < n
            ]
            neighbours.sort()
            neighbours = neighbours[:k_actual]

            ref_dist = source.position.distance_to(self.reference)
            for rank, (dist, j) in enumerate(neighbours):
                target = self.nodes[j]
                self.edges[source.node_id].append(TopologyEdge(
                    source_id=source.node_id,
                    target_id=target.node_id,
                    relative_angle=source.position.angle_to(target.position),
                    distance_ratio=dist / ref_dist if ref_dist > 1e-6 else dist,
                    distance=dist,
                    neighbor_rank=rank,
                ))

        logger.debug(f"Topology graph: {n} nodes, k={k_actual}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def edges_of(self, index: int) -> List[TopologyEdge]:
        return self.edges[self.nodes[index].node_id]

    def node_similarity(self, index: int, other: "TopologyGraph", other_index: int,
                        max_edges: int = MAX_COMPARED_EDGES) -> float:
        """
        Mean over this node's nearest edges of the best similarity to any of
        the other node's nearest edges. Both edge lists are cut to the same
        length; 0.0 when either node has no edges.
        """
        edges_a = self.edges_of(index)
        edges_b = other.edges_of(other_index)
        k = min(max_edges, len(edges_a), len(edges_b))
        if k == 0:
            return 0.0

        edges_a = edges_a[:k]
        edges_b = edges_b[:k]
        total = 0.0
        for edge in edges_a:
            total += max(edge.similarity(candidate) for candidate in edges_b)
        return total / k

    def matching_cost(self, index: int, other: "TopologyGraph", other_index: int,
                      max_edges: int = MAX_COMPARED_EDGES,
                      class_mismatch_cost: float = CLASS_MISMATCH_COST) -> float:
        if self.nodes[index].class_id != other.nodes[other_index].class_id:
            return class_mismatch_cost
        return 1.0 - self.node_similarity(index, other, other_index, max_edges)

    def cost_matrix(self, rows: Sequence[int], other: "TopologyGraph",
                    cols: Sequence[int], max_edges: int = MAX_COMPARED_EDGES,
                    class_mismatch_cost: float = CLASS_MISMATCH_COST) -> np.ndarray:
        cost = np.zeros((len(rows), len(cols)))
        for r, i in enumerate(rows):
            for c, j in enumerate(cols):
                cost[r, c] = self.matching_cost(i, other, j, max_edges, class_mismatch_cost)
        return cost

    def find(self, node_id: str) -> Optional[TopologyNode]:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None

    def __len__(self) -> int:
        return len(self.nodes)
