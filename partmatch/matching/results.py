"""
Shared helpers for assembling InspectionResults.

Grouping by class, distance-based per-class assignment and the final
pass/fail bookkeeping are identical across strategies and live here.
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

from partmatch.geometry import Point
from partmatch.matching.assignment import solve_assignment
from partmatch.matching.interfaces import MatchPair
from partmatch.models import (
    ComparisonStatus,
    DetectedObject,
    FeatureComparison,
    InspectionResult,
    Template,
    evaluate_passed,
)

logger = logging.getLogger(__name__)


def group_by_class(class_ids: Iterable[int]) -> Dict[int, List[int]]:
    """Map class id -> indices of the items carrying it (first-seen order)."""
    groups: Dict[int, List[int]] = OrderedDict()
    for index, class_id in enumerate(class_ids):
        groups.setdefault(class_id, []).append(index)
    return groups


def assign_by_distance(
    template_positions: Sequence[Point],
    template_indices: Sequence[int],
    detected_positions: Sequence[Point],
    detected_indices: Sequence[int],
    max_distance: float,
) -> List[MatchPair]:
    """
    Minimum total-distance assignment between two same-class point groups.

    ``template_positions[k]`` belongs to ``template_indices[k]`` (likewise
    for detections). Pairs farther apart than ``max_distance`` are returned
    but flagged invalid through ``MatchPair.max_cost``.
    """
    if not template_indices or not detected_indices:
        return []

    cost = np.zeros((len(template_indices), len(detected_indices)))
    for r, t_pos in enumerate(template_positions):
        for c, d_pos in enumerate(detected_positions):
            cost[r, c] = t_pos.distance_to(d_pos)

    assignment = solve_assignment(cost)
    pairs = []
    for r, c in enumerate(assignment):
        if c < 0:
            continue
        pairs.append(MatchPair(
            template_index=template_indices[r],
            detected_index=detected_indices[c],
            cost=float(cost[r, c]),
            max_cost=max_distance,
        ))
    return pairs


def nearest_position(point: Point, candidates: Sequence[Point]) -> Optional[Point]:
    if not candidates:
        return None
    return min(candidates, key=point.distance_to)


def build_result(
    template: Template,
    comparisons: List[FeatureComparison],
    strategy: str,
    started: float,
    treat_extra_as_error: bool = True,
    details: Optional[Dict[str, Any]] = None,
) -> InspectionResult:
    """Compute the pass flag and message and wrap everything up."""
    passed = evaluate_passed(comparisons, treat_extra_as_error)
    result = InspectionResult(
        template_id=template.template_id,
        comparisons=comparisons,
        passed=passed,
        processing_time_ms=(time.perf_counter() - started) * 1000.0,
        strategy=strategy,
        details=dict(details or {}),
    )
    summary = result.summary()
    required = sum(1 for c in comparisons if c.required and c.status != ComparisonStatus.EXTRA)
    result.message = (
        f"{'PASSED' if passed else 'FAILED'}: {summary.passed}/{required} features passed, "
        f"{summary.deviation} deviated, {summary.missing} missing, "
        f"{summary.suspicious} suspicious, {summary.extra} extra"
    )
    return result


def failure_result(
    template: Optional[Template],
    detections: Optional[Sequence[DetectedObject]],
    strategy: str,
    reason: str,
    started: Optional[float] = None,
    details: Optional[Dict[str, Any]] = None,
) -> InspectionResult:
    """
    Result for a call that could not be matched at all: every required
    feature MISSING and every detection EXTRA.
    """
    features = list(getattr(template, "features", None) or [])
    comparisons = [FeatureComparison.missing(f) for f in features if f.required]
    comparisons.extend(
        FeatureComparison.extra(det, i) for i, det in enumerate(detections or [])
    )

    elapsed = 0.0 if started is None else (time.perf_counter() - started) * 1000.0
    info = dict(details or {})
    info["error"] = reason
    return InspectionResult(
        template_id=getattr(template, "template_id", "unknown"),
        comparisons=comparisons,
        passed=False,
        processing_time_ms=elapsed,
        message=f"FAILED: {reason}",
        strategy=strategy,
        details=info,
    )
