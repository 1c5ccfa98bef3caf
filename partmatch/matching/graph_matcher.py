"""
Topology Matcher: match template features to detections by graph structure.

Implements the Matcher interface using only relational information. Both
point sets are turned into k-nearest-neighbour graphs (see topology.py);
nodes are matched per class by edge-set similarity, then a least-squares
affine fit over all valid matches flags globally inconsistent pairs
(e.g. swapped symmetric features) as suspicious.

Pipeline:
  1. Build template and detection graphs over all points
  2. Per class, cost = 1 - node similarity; solve the assignment
  3. Reject pairs whose cost reaches the maximum match cost
  4. Affine consistency check over the valid pairs (>= 3)
  5. Rigid alignment of trusted pairs, per-feature errors in template frame
  6. Classify PASSED / DEVIATION_EXCEEDED / SUSPICIOUS / MISSING / EXTRA
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

import numpy as np

from partmatch.geometry import (
    AffineTransform,
    RigidTransform,
    fit_affine,
    fit_rigid,
    median_offset,
)
from partmatch.matching.assignment import solve_assignment
from partmatch.matching.interfaces import Matcher, MatchPair
from partmatch.matching.results import build_result, failure_result, group_by_class
from partmatch.matching.topology import (
    CLASS_MISMATCH_COST,
    MAX_COMPARED_EDGES,
    TopologyGraph,
)
from partmatch.models import (
    DetectedObject,
    FeatureComparison,
    InspectionResult,
    MatchStrategy,
    Template,
)

logger = logging.getLogger(__name__)


@dataclass
class ConsistencyReport:
    """
    Outcome of the global affine consistency check.

    Attributes:
        checked: False when the check was skipped (too few pairs or a
                 singular system).
        transform: Fitted affine transform (template -> detected).
        residuals: Residual per template index of each checked pair.
        suspicious: Template indices whose residual exceeded the threshold.
        threshold: Residual threshold in pixels.
        mean_residual: Mean residual over the checked pairs.
    """

    checked: bool = False
    transform: Optional[AffineTransform] = None
    residuals: Dict[int, float] = field(default_factory=dict)
    suspicious: Set[int] = field(default_factory=set)
    threshold: float = 0.0
    mean_residual: float = 0.0


class TopologyMatcher(Matcher):
    """
    Graph-structure matcher.

    Invariant to translation and uniform scale; tolerant of moderate
    rotation (edge bearings shift by the rotation angle).
    """

    strategy = MatchStrategy.TOPOLOGY

    # Residual threshold = factor * sqrt(tolX^2 + tolY^2)
    RESIDUAL_FACTOR = 1.5

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.topology_k = config.get("topology_k", 4)
        self.max_match_cost = config.get("max_match_cost", 0.5)
        self.max_compared_edges = config.get("max_compared_edges", MAX_COMPARED_EDGES)
        self.class_mismatch_cost = config.get("class_mismatch_cost", CLASS_MISMATCH_COST)
        self.treat_extra_as_error = config.get("treat_extra_as_error", True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def match(
        self, template: Template, detections: Sequence[DetectedObject]
    ) -> InspectionResult:
        started = time.perf_counter()
        try:
            return self._match_impl(template, list(detections), started)
        except Exception as e:
            logger.warning(f"Topology matching failed: {e}")
            return failure_result(
                template, detections, self.strategy.value,
                f"topology matching failed: {e}", started,
            )

    def find_pairs(
        self, template: Template, detections: Sequence[DetectedObject]
    ) -> List[MatchPair]:
        """
        Per-class graph assignment.

        Returns every assigned pair, valid or not; ``MatchPair.is_valid``
        tells whether its cost is below the maximum match cost.
        """
        k = template.topology_k or self.topology_k
        max_cost = self._max_cost(template)

        template_graph = TopologyGraph.from_template(template, k)
        detected_graph = TopologyGraph.from_detections(detections, k)

        template_groups = group_by_class(f.class_id for f in template.features)
        detected_groups = group_by_class(d.class_id for d in detections)

        pairs: List[MatchPair] = []
        for class_id, t_indices in template_groups.items():
            d_indices = detected_groups.get(class_id, [])
            if not d_indices:
                logger.warning(
                    f"Class {class_id} absent from detections: "
                    f"{len(t_indices)} template features unmatched"
                )
                continue

            logger.debug(
                f"Matching class {class_id}: {len(t_indices)} template vs "
                f"{len(d_indices)} detected nodes"
            )
            cost = template_graph.cost_matrix(
                t_indices, detected_graph, d_indices,
                self.max_compared_edges, self.class_mismatch_cost,
            )
            assignment = solve_assignment(cost)
            for r, c in enumerate(assignment):
                if c < 0:
                    continue
                pair = MatchPair(t_indices[r], d_indices[c], float(cost[r, c]), max_cost)
                logger.debug(
                    f"Pair {template.features[pair.template_index].id} -> "
                    f"detected_{pair.detected_index}, cost={pair.cost:.4f}"
                )
                pairs.append(pair)

        for class_id, d_indices in detected_groups.items():
            if class_id not in template_groups:
                logger.warning(
                    f"Class {class_id} absent from template: "
                    f"{len(d_indices)} detections unmatched"
                )
        return pairs

    def validate_global_consistency(
        self,
        template: Template,
        detections: Sequence[DetectedObject],
        pairs: Sequence[MatchPair],
    ) -> ConsistencyReport:
        """
        Fit an affine transform over valid pairs and flag outlying pairs.

        Needs at least 3 valid pairs; a singular system skips the check.
        """
        valid = [p for p in pairs if p.is_valid]
        threshold = self.RESIDUAL_FACTOR * template.tolerance_magnitude
        report = ConsistencyReport(threshold=threshold)

        if len(valid) < 3:
            logger.debug("Fewer than 3 valid pairs; skipping global consistency check")
            return report

        src = [template.features[p.template_index].position for p in valid]
        dst = [detections[p.detected_index].center for p in valid]
        transform = fit_affine(src, dst)
        if transform is None:
            logger.warning("Affine system is singular; skipping global consistency check")
            return report

        report.checked = True
        report.transform = transform
        for pair, s, d in zip(valid, src, dst):
            residual = transform.apply(s).distance_to(d)
            report.residuals[pair.template_index] = residual
            if residual > threshold:
                report.suspicious.add(pair.template_index)
                logger.debug(
                    f"Suspicious pair {template.features[pair.template_index].id} -> "
                    f"detected_{pair.detected_index}: residual={residual:.2f} "
                    f"(threshold={threshold:.2f})"
                )

        report.mean_residual = float(np.mean(list(report.residuals.values())))
        logger.debug(
            f"Consistency: {transform}, mean residual={report.mean_residual:.2f}, "
            f"suspicious={len(report.suspicious)}"
        )
        if report.mean_residual > 2 * threshold:
            logger.warning(
                f"Poor overall match quality: mean residual {report.mean_residual:.2f} "
                f"exceeds {2 * threshold:.2f}"
            )
        return report

    # ------------------------------------------------------------------
    # Implementation
    # ------------------------------------------------------------------

    def _match_impl(
        self, template: Template, detections: List[DetectedObject], started: float
    ) -> InspectionResult:
        logger.info(
            f"Topology matching: template {template.template_id} "
            f"({len(template.features)} features) vs {len(detections)} detections"
        )

        pairs = self.find_pairs(template, detections)
        valid = [p for p in pairs if p.is_valid]
        report = self.validate_global_consistency(template, detections, valid)
        alignment = self._fit_alignment(template, detections, valid, report.suspicious)

        by_feature = {p.template_index: p for p in valid}
        used = {p.detected_index for p in valid}

        comparisons: List[FeatureComparison] = []
        for i, feature in enumerate(template.features):
            expected = alignment.apply(feature.position) if alignment else None
            pair = by_feature.get(i)
            if pair is None:
                if feature.required:
                    logger.info(f"Missing: feature {feature.id} ({feature.name})")
                    comparisons.append(FeatureComparison.missing(feature, expected))
                continue

            detected = detections[pair.detected_index]
            mapped = alignment.apply_inverse(detected.center) if alignment else detected.center
            comparisons.append(FeatureComparison.evaluate(
                feature,
                detected,
                x_error=mapped.x - feature.position.x,
                y_error=mapped.y - feature.position.y,
                suspicious=i in report.suspicious,
                confidence=max(0.0, 1.0 - pair.cost),
                expected_position=expected,
            ))

        for j, detected in enumerate(detections):
            if j not in used:
                logger.info(
                    f"Extra: class {detected.class_id} at {detected.center} "
                    f"has no template counterpart"
                )
                comparisons.append(FeatureComparison.extra(detected, j))

        details = {
            "pairs": len(pairs),
            "valid_pairs": len(valid),
            "rejected_pairs": len(pairs) - len(valid),
            "consistency_checked": report.checked,
            "suspicious": [template.features[i].id for i in sorted(report.suspicious)],
            "mean_residual": report.mean_residual,
            "affine": str(report.transform) if report.transform else None,
            "alignment": str(alignment) if alignment else None,
        }
        result = build_result(
            template, comparisons, self.strategy.value, started,
            self.treat_extra_as_error, details,
        )
        logger.info(f"Topology matching done: {result.message}")
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _max_cost(self, template: Template) -> float:
        if template.topology_threshold is not None:
            return 1.0 - template.topology_threshold
        return self.max_match_cost

    def _fit_alignment(
        self,
        template: Template,
        detections: Sequence[DetectedObject],
        pairs: Sequence[MatchPair],
        suspicious: Set[int],
    ) -> Optional[RigidTransform]:
        """
        Rigid alignment from trusted pairs, refitted once without pairs whose
        residual exceeds the consistency threshold. Falls back to the median
        offset when fewer than 2 pairs are trusted.
        """
        trusted = [p for p in pairs if p.template_index not in suspicious]
        if not trusted:
            return None

        src = [template.features[p.template_index].position for p in trusted]
        dst = [detections[p.detected_index].center for p in trusted]
        transform = fit_rigid(src, dst)
        if transform is None:
            offset = median_offset(src, dst)
            return RigidTransform(tx=offset.x, ty=offset.y)

        threshold = self.RESIDUAL_FACTOR * template.tolerance_magnitude
        keep = [
            k for k, (s, d) in enumerate(zip(src, dst))
            if transform.apply(s).distance_to(d) <= threshold
        ]
        if 2 <= len(keep) < len(src):
            refit = fit_rigid([src[k] for k in keep], [dst[k] for k in keep])
            if refit is not None:
                logger.debug(f"Alignment refit on {len(keep)}/{len(src)} pairs")
                transform = refit
        return transform
