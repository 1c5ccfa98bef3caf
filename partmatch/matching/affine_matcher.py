"""
Iterative Affine Matcher: three-pass robust similarity estimation.

Implements the Matcher interface. Recovers a global rotation + translation
between template and detections even when detections are partially
occluded or contaminated with spurious points, then matches features by
proximity after mapping the template through the fitted transform.

Pipeline:
  Pass 1 - rough translation: detection-count weighted mean of per-class
           centroid offsets (rotation 0)
  Pass 2 - reliable pairs: per-class assignment between template features
           and inverse-mapped detections under a fixed collection threshold;
           abort on excessive occlusion or too few pairs
  Pass 3 - refinement: RANSAC over bearing differences for the rotation,
           median residual translation, one outlier-filtered redo, and a
           ceiling on the residual correction
  Final  - per-class proximity assignment of mapped template features

Estimation failures are returned as typed values (EstimationResult.error),
never raised.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from partmatch.geometry import (
    Point,
    RigidTransform,
    centroid,
    normalize_angle,
    rotate_about,
)
from partmatch.matching.interfaces import (
    EstimationResult,
    Matcher,
    MatchErrorKind,
    MatchPair,
)
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


@dataclass
class _Refinement:
    """Rotation and residual translation fitted on one set of pairs."""

    rotation_deg: float
    inlier_ratio: float
    template_center: Point
    detected_center: Point
    residual: Point
    residuals: List[Point]


class IterativeAffineMatcher(Matcher):
    """Three-pass similarity-transform matcher (translation + rotation)."""

    strategy = MatchStrategy.ITERATIVE_AFFINE

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.match_distance_threshold = config.get("match_distance_threshold", 300.0)
        self.collection_threshold = config.get("collection_threshold", 150.0)
        self.max_occlusion_rate = config.get("max_occlusion_rate", 0.5)
        self.min_reliable_pairs = config.get("min_reliable_pairs", 4)
        self.min_inlier_ratio = config.get("min_inlier_ratio", 0.5)
        self.ransac_iterations = config.get("ransac_iterations", 100)
        self.inlier_angle_deg = config.get("inlier_angle_deg", 3.0)
        self.min_rotation_deg = config.get("min_rotation_deg", 0.5)
        self.outlier_threshold = config.get("outlier_threshold", 50.0)
        self.max_residual = config.get("max_residual", 15.0)
        self.random_seed = config.get("random_seed", 42)
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
            logger.warning(f"Iterative affine matching failed: {e}")
            return failure_result(
                template, detections, self.strategy.value,
                f"iterative affine matching failed: {e}", started,
            )

    def estimate_transform(
        self, template: Template, detections: Sequence[DetectedObject]
    ) -> EstimationResult:
        """
        Run passes 1 to 3 and return the fitted transform or a typed error.
        """
        detections = list(detections)
        required = template.required_features
        required_classes = {f.class_id for f in required}

        # Occlusion ceiling
        relevant = sum(1 for d in detections if d.class_id in required_classes)
        occlusion = max(0.0, 1.0 - relevant / len(required)) if required else 0.0
        if occlusion > self.max_occlusion_rate:
            return EstimationResult.failure(
                MatchErrorKind.OCCLUSION_TOO_HIGH,
                f"occlusion rate {occlusion:.2f} exceeds {self.max_occlusion_rate:.2f} "
                f"({relevant} detections for {len(required)} required features)",
                details={"occlusion_rate": occlusion},
            )

        # Pass 1
        rough = self._rough_translation(template, detections)
        if rough is None:
            return EstimationResult.failure(
                MatchErrorKind.NO_CLASS_OVERLAP,
                "no detection shares a class with the template's required features",
                details={"occlusion_rate": occlusion},
            )
        logger.info(f"Pass 1 rough translation: ({rough.x:.2f}, {rough.y:.2f})")

        # Pass 2
        reliable = self._collect_reliable_pairs(template, detections, rough)
        if len(reliable) < self.min_reliable_pairs:
            return EstimationResult.failure(
                MatchErrorKind.TOO_FEW_RELIABLE_PAIRS,
                f"found {len(reliable)} reliable pairs, need {self.min_reliable_pairs}",
                reliable_pairs=reliable,
                details={"occlusion_rate": occlusion, "rough_translation": (rough.x, rough.y)},
            )
        logger.info(f"Pass 2 collected {len(reliable)} reliable pairs")

        # Pass 3
        rng = np.random.default_rng(self.random_seed)
        src = [template.features[p.template_index].position for p in reliable]
        dst = [detections[p.detected_index].center for p in reliable]
        refinement = self._refine(src, dst, rng)
        inliers = list(reliable)

        deviations = [
            math.hypot(r.x - refinement.residual.x, r.y - refinement.residual.y)
            for r in refinement.residuals
        ]
        keep = [k for k, dev in enumerate(deviations) if dev <= self.outlier_threshold]
        if len(keep) < len(reliable):
            if len(keep) >= 2 and 2 * len(keep) >= len(reliable):
                logger.info(
                    f"Pass 3 dropped {len(reliable) - len(keep)} outlier pairs; re-estimating"
                )
                inliers = [reliable[k] for k in keep]
                refinement = self._refine([src[k] for k in keep], [dst[k] for k in keep], rng)
            else:
                logger.warning(
                    f"Only {len(keep)}/{len(reliable)} pairs within outlier threshold; "
                    f"keeping unfiltered estimate"
                )

        residual = refinement.residual
        if math.hypot(residual.x, residual.y) > self.max_residual:
            logger.warning(
                f"Residual ({residual.x:.2f}, {residual.y:.2f}) exceeds {self.max_residual}px; "
                f"falling back to centroid translation"
            )
            residual = Point(0.0, 0.0)

        offset = refinement.detected_center - refinement.template_center
        transform = RigidTransform(
            tx=offset.x + residual.x,
            ty=offset.y + residual.y,
            angle_deg=refinement.rotation_deg,
            pivot=refinement.template_center,
        )
        logger.info(f"Pass 3 transform: {transform} (inlier ratio {refinement.inlier_ratio:.2f})")

        return EstimationResult(
            transform=transform,
            reliable_pairs=reliable,
            inlier_pairs=inliers,
            rotation_deg=refinement.rotation_deg,
            residual_x=residual.x,
            residual_y=residual.y,
            inlier_ratio=refinement.inlier_ratio,
            details={"occlusion_rate": occlusion, "rough_translation": (rough.x, rough.y)},
        )

    # ------------------------------------------------------------------
    # Implementation
    # ------------------------------------------------------------------

    def _match_impl(
        self, template: Template, detections: List[DetectedObject], started: float
    ) -> InspectionResult:
        logger.info(
            f"Iterative affine matching: template {template.template_id} "
            f"({len(template.features)} features) vs {len(detections)} detections"
        )
        estimate = self.estimate_transform(template, detections)
        if not estimate.ok:
            logger.warning(f"Transform estimation failed: {estimate.error}")
            return failure_result(
                template, detections, self.strategy.value, str(estimate.error), started,
                details={"error_kind": estimate.error.kind.value, **estimate.details},
            )

        transform = estimate.transform
        mapped = [transform.apply(f.position) for f in template.features]

        template_groups = group_by_class(f.class_id for f in template.features)
        detected_groups = group_by_class(d.class_id for d in detections)
        pairs: List[MatchPair] = []
        for class_id, t_indices in template_groups.items():
            d_indices = detected_groups.get(class_id, [])
            pairs.extend(assign_by_distance(
                [mapped[i] for i in t_indices], t_indices,
                [detections[j].center for j in d_indices], d_indices,
                self.match_distance_threshold,
            ))

        valid = [p for p in pairs if p.is_valid]
        by_feature = {p.template_index: p for p in valid}
        used = {p.detected_index for p in valid}

        comparisons: List[FeatureComparison] = []
        for i, feature in enumerate(template.features):
            pair = by_feature.get(i)
            if pair is None:
                if feature.required:
                    logger.info(f"Missing: feature {feature.id} expected at {mapped[i]}")
                    comparisons.append(FeatureComparison.missing(feature, mapped[i]))
                continue

            detected = detections[pair.detected_index]
            local = transform.apply_inverse(detected.center)
            comparisons.append(FeatureComparison.evaluate(
                feature,
                detected,
                x_error=local.x - feature.position.x,
                y_error=local.y - feature.position.y,
                confidence=self._confidence(pair.cost, feature),
                expected_position=mapped[i],
            ))

        for j, detected in enumerate(detections):
            if j in used:
                continue
            candidates = [mapped[i] for i in template_groups.get(detected.class_id, [])]
            comparisons.append(FeatureComparison.extra(
                detected, j, nearest_position(detected.center, candidates)
            ))

        details = {
            "transform": str(transform),
            "rotation_deg": estimate.rotation_deg,
            "residual": (estimate.residual_x, estimate.residual_y),
            "inlier_ratio": estimate.inlier_ratio,
            "reliable_pairs": len(estimate.reliable_pairs),
            "inlier_pairs": len(estimate.inlier_pairs),
            **estimate.details,
        }
        result = build_result(
            template, comparisons, self.strategy.value, started,
            self.treat_extra_as_error, details,
        )
        logger.info(f"Iterative affine matching done: {result.message}")
        return result

    def _rough_translation(
        self, template: Template, detections: Sequence[DetectedObject]
    ) -> Optional[Point]:
        """Detection-count weighted mean of per-class centroid offsets."""
        template_by_class: Dict[int, List[Point]] = {}
        for feature in template.required_features:
            template_by_class.setdefault(feature.class_id, []).append(feature.position)

        total_weight = 0.0
        tx, ty = 0.0, 0.0
        for class_id, indices in group_by_class(d.class_id for d in detections).items():
            positions = template_by_class.get(class_id)
            if not positions:
                continue
            t_center = centroid(positions)
            d_center = centroid(detections[j].center for j in indices)
            weight = float(len(indices))
            tx += (d_center.x - t_center.x) * weight
            ty += (d_center.y - t_center.y) * weight
            total_weight += weight
            logger.debug(
                f"Class {class_id} offset: {t_center} -> {d_center} (weight {weight:.0f})"
            )

        if total_weight == 0:
            return None
        return Point(tx / total_weight, ty / total_weight)

    def _collect_reliable_pairs(
        self, template: Template, detections: Sequence[DetectedObject], rough: Point
    ) -> List[MatchPair]:
        required = [i for i, f in enumerate(template.features) if f.required]
        template_groups = group_by_class(template.features[i].class_id for i in required)
        detected_groups = group_by_class(d.class_id for d in detections)
        local = [d.center - rough for d in detections]

        reliable: List[MatchPair] = []
        for class_id, members in template_groups.items():
            t_indices = [required[k] for k in members]
            d_indices = detected_groups.get(class_id, [])
            pairs = assign_by_distance(
                [template.features[i].position for i in t_indices], t_indices,
                [local[j] for j in d_indices], d_indices,
                self.collection_threshold,
            )
            reliable.extend(p for p in pairs if p.is_valid)
        return reliable

    def _refine(self, src: Sequence[Point], dst: Sequence[Point],
                rng: np.random.Generator) -> _Refinement:
        """Rotation by RANSAC over bearings, then the median residual translation."""
        rotation, ratio = self._estimate_rotation(src, dst, rng)
        t_center = centroid(src)
        d_center = centroid(dst)
        offset = d_center - t_center

        residuals = [
            d - (rotate_about(s, t_center, rotation) + offset)
            for s, d in zip(src, dst)
        ]
        residual = Point(
            float(np.median([r.x for r in residuals])),
            float(np.median([r.y for r in residuals])),
        )
        return _Refinement(rotation, ratio, t_center, d_center, residual, residuals)

    def _estimate_rotation(self, src: Sequence[Point], dst: Sequence[Point],
                           rng: np.random.Generator) -> Tuple[float, float]:
        """
        Returns (rotation in degrees, inlier ratio). Rotation is 0 when the
        best hypothesis has too little support or is below the noise floor.
        """
        t_center = centroid(src)
        d_center = centroid(dst)
        angles = []
        for s, d in zip(src, dst):
            if s.distance_to(t_center) < 1e-6 or d.distance_to(d_center) < 1e-6:
                continue
            angles.append(normalize_angle(d_center.angle_to(d) - t_center.angle_to(s)))

        n = len(angles)
        if n < 2:
            return 0.0, 0.0

        window = math.radians(self.inlier_angle_deg)
        best_hypothesis = 0.0
        best_inliers: List[float] = []
        for _ in range(self.ransac_iterations):
            i, j = rng.choice(n, size=2, replace=False)
            hypothesis = math.atan2(
                math.sin(angles[i]) + math.sin(angles[j]),
                math.cos(angles[i]) + math.cos(angles[j]),
            )
            inliers = [
                normalize_angle(a - hypothesis) for a in angles
                if abs(normalize_angle(a - hypothesis)) <= window
            ]
            if len(inliers) > len(best_inliers):
                best_hypothesis, best_inliers = hypothesis, inliers

        ratio = len(best_inliers) / n
        if ratio < self.min_inlier_ratio:
            logger.info(
                f"Rotation rejected: inlier ratio {ratio:.2f} below {self.min_inlier_ratio}"
            )
            return 0.0, ratio

        rotation = math.degrees(normalize_angle(best_hypothesis + float(np.median(best_inliers))))
        if abs(rotation) < self.min_rotation_deg:
            return 0.0, ratio
        return rotation, ratio

    @staticmethod
    def _confidence(distance: float, feature) -> float:
        scale = 10.0 * math.hypot(feature.tolerance_x, feature.tolerance_y)
        if scale <= 0:
            return 1.0 if distance == 0 else 0.0
        return 1.0 / (1.0 + distance / scale)
