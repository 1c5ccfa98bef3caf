"""
Cross-Ratio Matcher: projective fingerprint registration + distance assignment.

Implements the Matcher interface. Template features are registered as
cross-ratio fingerprints against the canvas reference frame. Detections
that carry a track id are optionally smoothed by a shared Kalman registry,
then every detection is fingerprinted the same way.

Assignment is per class. By default the cost is the Euclidean distance
between raw positions, which is the most robust choice when the scene is
only mildly distorted; the fingerprint distance can be selected instead
(``assignment_cost: fingerprint``). Fingerprints always feed the
per-comparison confidence and the distribution diagnostics.

Pipeline:
  1. Reference frame from the template canvas (1920x1080 when unknown)
  2. Register template fingerprints (invalid ones flagged, not dropped)
  3. Smooth tracked detection positions, fingerprint every detection
  4. Per-class assignment; reject pairs beyond max_match_distance
  5. Classify with a 3x tolerance near the canvas border
"""

import logging
import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from partmatch.geometry import Point
from partmatch.kalman import KalmanFilterManager
from partmatch.matching.assignment import solve_assignment
from partmatch.matching.cross_ratio import (
    CrossRatioFingerprint,
    FingerprintCalculator,
    ReferencePoints,
    component_ranges,
)
from partmatch.matching.interfaces import Matcher, MatchErrorKind, MatchPair
from partmatch.matching.results import (
    assign_by_distance,
    build_result,
    failure_result,
    group_by_class,
    nearest_position,
)
from partmatch.models import (
    DetectedObject,
    FeatureComparison,
    InspectionResult,
    MatchStrategy,
    Template,
)

logger = logging.getLogger(__name__)

DEFAULT_CANVAS_WIDTH = 1920
DEFAULT_CANVAS_HEIGHT = 1080


@dataclass
class FingerprintDatabase:
    """
    Fingerprints computed for one inspection call.

    Attributes:
        reference: Reference frame used for every fingerprint.
        template: Fingerprint per template feature id.
        observations: Fingerprint per detection key (track id or
                      ``detected_{i}``).
    """

    reference: ReferencePoints
    template: Dict[str, CrossRatioFingerprint] = field(default_factory=dict)
    observations: Dict[str, CrossRatioFingerprint] = field(default_factory=dict)

    @property
    def invalid_template_ids(self) -> List[str]:
        return [fid for fid, fp in self.template.items() if not fp.is_valid]

    @property
    def invalid_observation_ids(self) -> List[str]:
        return [oid for oid, fp in self.observations.items() if not fp.is_valid]


class CrossRatioMatcher(Matcher):
    """Fingerprint matcher with distance-based assignment."""

    strategy = MatchStrategy.CROSS_RATIO

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 smoother: Optional[KalmanFilterManager] = None):
        """
        Args:
            config: Matcher configuration (``matching.cross_ratio`` section).
            smoother: Kalman registry shared across calls. A private one is
                      created when smoothing is enabled and none is given.
        """
        config = config or {}
        self.base_tolerance = config.get("base_tolerance", 0.1)
        self.high_confidence_threshold = config.get("high_confidence_threshold", 0.6)
        self.low_confidence_threshold = config.get("low_confidence_threshold", 0.3)
        self.edge_distance_threshold = config.get("edge_distance_threshold", 100.0)
        self.edge_tolerance_multiplier = config.get("edge_tolerance_multiplier", 3.0)
        self.max_match_distance = config.get("max_match_distance", 500.0)
        self.enable_kalman_filter = config.get("enable_kalman_filter", True)
        self.assignment_cost = config.get("assignment_cost", "euclidean")
        self.canvas_width = config.get("canvas_width")
        self.canvas_height = config.get("canvas_height")
        self.treat_extra_as_error = config.get("treat_extra_as_error", True)

        if self.assignment_cost not in ("euclidean", "fingerprint"):
            raise ValueError(
                f"assignment_cost must be 'euclidean' or 'fingerprint', "
                f"got '{self.assignment_cost}'"
            )

        if smoother is None and self.enable_kalman_filter:
            smoother = KalmanFilterManager()
        self.smoother = smoother

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
            logger.warning(f"Cross-ratio matching failed: {e}")
            return failure_result(
                template, detections, self.strategy.value,
                f"cross-ratio matching failed: {e}", started,
            )

    def reference_for(self, template: Template) -> ReferencePoints:
        width = template.image_width or self.canvas_width or DEFAULT_CANVAS_WIDTH
        height = template.image_height or self.canvas_height or DEFAULT_CANVAS_HEIGHT
        return ReferencePoints.from_canvas(width, height)

    def register(self, template: Template) -> FingerprintDatabase:
        """Fingerprint every template feature against the template canvas."""
        reference = self.reference_for(template)
        calculator = FingerprintCalculator(reference)
        database = FingerprintDatabase(reference=reference)
        for feature in template.features:
            fp = calculator.compute(feature.position, feature.id)
            database.template[feature.id] = fp
            if not fp.is_valid:
                logger.debug(f"Feature {feature.id} at {feature.position} has an invalid fingerprint")

        logger.info(
            f"Registered {len(database.template)} fingerprints for template "
            f"{template.template_id} ({len(database.invalid_template_ids)} invalid) on {reference}"
        )
        return database

    def analyze_distribution(self, database: FingerprintDatabase) -> Dict[str, Any]:
        """Log and return the (min, max) range of each template fingerprint component."""
        ranges = component_ranges(list(database.template.values()))
        for name, (lo, hi) in ranges.items():
            logger.info(f"Fingerprint {name}: min={lo:.4f}, max={hi:.4f}, span={hi - lo:.4f}")
        return ranges

    # ------------------------------------------------------------------
    # Implementation
    # ------------------------------------------------------------------

    def _match_impl(
        self, template: Template, detections: List[DetectedObject], started: float
    ) -> InspectionResult:
        database = self.register(template)
        reference = database.reference
        if not reference.is_valid:
            return failure_result(
                template, detections, self.strategy.value,
                f"{MatchErrorKind.DEGENERATE_REFERENCE.value}: invalid reference frame {reference}",
                started,
            )

        observed = self._smooth(detections)
        calculator = FingerprintCalculator(reference)
        keys = [self._track_key(det, j) for j, det in enumerate(detections)]
        for key, det in zip(keys, observed):
            database.observations[key] = calculator.compute(det.center, key)

        template_groups = group_by_class(f.class_id for f in template.features)
        detected_groups = group_by_class(d.class_id for d in observed)

        pairs: List[MatchPair] = []
        for class_id, t_indices in template_groups.items():
            d_indices = detected_groups.get(class_id, [])
            if not d_indices:
                logger.warning(f"Class {class_id} absent from detections")
                continue
            pairs.extend(self._assign_class(template, observed, keys, database, t_indices, d_indices))

        valid = [p for p in pairs if p.is_valid]
        for pair in pairs:
            if not pair.is_valid:
                logger.debug(
                    f"Rejected {template.features[pair.template_index].id} -> "
                    f"{keys[pair.detected_index]}: distance beyond {self.max_match_distance}"
                )

        by_feature = {p.template_index: p for p in valid}
        used = {p.detected_index for p in valid}

        comparisons: List[FeatureComparison] = []
        high, low = 0, 0
        for i, feature in enumerate(template.features):
            pair = by_feature.get(i)
            if pair is None:
                if feature.required:
                    comparisons.append(FeatureComparison.missing(feature, feature.position))
                continue

            detected = observed[pair.detected_index]
            comparison = self._compare(
                feature, detected, reference,
                database.template[feature.id],
                database.observations[keys[pair.detected_index]],
            )
            if comparison.confidence >= self.high_confidence_threshold:
                high += 1
            elif comparison.confidence < self.low_confidence_threshold:
                low += 1
                logger.debug(f"Low confidence match for {feature.id}: {comparison.confidence:.3f}")
            comparisons.append(comparison)

        features_by_class = template.features_by_class()
        for j, detected in enumerate(observed):
            if j in used:
                continue
            candidates = [f.position for f in features_by_class.get(detected.class_id, [])]
            comparisons.append(FeatureComparison.extra(
                detected, j, nearest_position(detected.center, candidates)
            ))

        details = {
            "reference": str(reference),
            "assignment_cost": self.assignment_cost,
            "pairs": len(pairs),
            "valid_pairs": len(valid),
            "invalid_template_fingerprints": database.invalid_template_ids,
            "invalid_observation_fingerprints": database.invalid_observation_ids,
            "high_confidence_matches": high,
            "low_confidence_matches": low,
            "smoothed": self.smoother is not None and self.enable_kalman_filter,
            "tracked_detections": sum(1 for d in detections if d.track_id),
        }
        result = build_result(
            template, comparisons, self.strategy.value, started,
            self.treat_extra_as_error, details,
        )
        logger.info(f"Cross-ratio matching done: {result.message}")
        return result

    def _assign_class(
        self,
        template: Template,
        observed: Sequence[DetectedObject],
        keys: Sequence[str],
        database: FingerprintDatabase,
        t_indices: Sequence[int],
        d_indices: Sequence[int],
    ) -> List[MatchPair]:
        t_positions = [template.features[i].position for i in t_indices]
        d_positions = [observed[j].center for j in d_indices]
        if self.assignment_cost == "euclidean":
            return assign_by_distance(
                t_positions, t_indices, d_positions, d_indices, self.max_match_distance
            )

        cost = np.array([
            [
                database.template[template.features[i].id].distance(database.observations[keys[j]])
                for j in d_indices
            ]
            for i in t_indices
        ])
        assignment = solve_assignment(cost)
        pairs = []
        for r, c in enumerate(assignment):
            if c < 0:
                continue
            distance = t_positions[r].distance_to(d_positions[c])
            # Validity is always judged in pixels
            pairs.append(MatchPair(
                template_index=t_indices[r],
                detected_index=d_indices[c],
                cost=distance if math.isfinite(cost[r, c]) else math.inf,
                max_cost=self.max_match_distance,
            ))
        return pairs

    def _compare(
        self,
        feature,
        detected: DetectedObject,
        reference: ReferencePoints,
        template_fp: CrossRatioFingerprint,
        observed_fp: CrossRatioFingerprint,
    ) -> FeatureComparison:
        x_error = detected.center.x - feature.position.x
        y_error = detected.center.y - feature.position.y

        multiplier = 1.0
        if self._edge_distance(detected.center, reference) < self.edge_distance_threshold:
            multiplier = self.edge_tolerance_multiplier

        distance = math.hypot(x_error, y_error)
        tolerance = math.hypot(feature.tolerance_x, feature.tolerance_y)
        if tolerance > 0:
            confidence = 1.0 / (1.0 + distance / (tolerance * 10.0))
        else:
            confidence = 1.0 if distance == 0 else 0.0
        if template_fp.is_valid and observed_fp.is_valid:
            confidence = 0.5 * (confidence + template_fp.similarity(observed_fp, self.base_tolerance))

        return FeatureComparison.evaluate(
            feature,
            detected,
            x_error=x_error,
            y_error=y_error,
            tolerance_x=feature.tolerance_x * multiplier,
            tolerance_y=feature.tolerance_y * multiplier,
            confidence=confidence,
            expected_position=feature.position,
        )

    def _smooth(self, detections: Sequence[DetectedObject]) -> List[DetectedObject]:
        """
        Replace tracked detection centers with their Kalman estimate.

        Only detections carrying a ``track_id`` are smoothed. List position
        says nothing about object identity across calls, so untracked
        detections are passed through unchanged.
        """
        if not self.enable_kalman_filter or self.smoother is None:
            return list(detections)
        smoothed = []
        for det in detections:
            if det.track_id:
                det = replace(det, center=self.smoother.smooth(det.track_id, det.center))
            smoothed.append(det)
        return smoothed

    @staticmethod
    def _track_key(detected: DetectedObject, index: int) -> str:
        # Per-call fingerprint key; never used to persist filter state
        return detected.track_id or f"detected_{index}"

    @staticmethod
    def _edge_distance(point: Point, reference: ReferencePoints) -> float:
        return min(
            point.x - reference.a.x,
            point.y - reference.a.y,
            reference.a.x + reference.width - point.x,
            reference.a.y + reference.height - point.y,
        )
