"""
Matching Interfaces Module

Defines the contract shared by all correspondence strategies:

1. TopologyMatcher - invariant k-nearest-neighbour graph matching
2. CrossRatioMatcher - projective fingerprint matching (distance assignment)
3. IterativeAffineMatcher - three-pass robust similarity estimation

Every strategy consumes a Template and a list of DetectedObjects and returns
an InspectionResult, so callers can switch strategy per part type without
changing integration code.

Usage:
    from partmatch.matching.interfaces import Matcher, MatchPair

    class MyMatcher(Matcher):
        strategy = MatchStrategy.TOPOLOGY

        def match(self, template, detections):
            ...
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from partmatch.geometry import RigidTransform
from partmatch.models import DetectedObject, InspectionResult, MatchStrategy, Template


@dataclass(frozen=True)
class MatchPair:
    """
    One template/detection correspondence proposed by a matcher.

    Attributes:
        template_index: Index into ``template.features``.
        detected_index: Index into the detection list.
        cost: Matcher-specific cost (lower = more similar).
        max_cost: Validity threshold; the pair counts only below it.
    """

    template_index: int
    detected_index: int
    cost: float
    max_cost: float = float("inf")

    @property
    def is_valid(self) -> bool:
        return self.cost < self.max_cost


class MatchErrorKind(str, Enum):
    """Unrecoverable input conditions reported by transform estimation."""

    OCCLUSION_TOO_HIGH = "occlusion_too_high"
    TOO_FEW_RELIABLE_PAIRS = "too_few_reliable_pairs"
    DEGENERATE_REFERENCE = "degenerate_reference"
    NO_CLASS_OVERLAP = "no_class_overlap"


@dataclass(frozen=True)
class MatchError:
    """Typed reason an estimation could not produce a transform."""

    kind: MatchErrorKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass
class EstimationResult:
    """
    Outcome of a global transform estimation.

    Exactly one of ``transform`` / ``error`` is set.

    Attributes:
        transform: Fitted template-to-detection transform.
        error: Reason the estimation was abandoned.
        reliable_pairs: Pairs collected before refinement.
        inlier_pairs: Pairs that survived outlier filtering.
        rotation_deg: Estimated rotation (0 when rejected).
        residual_x: Residual translation kept in the transform.
        residual_y: Residual translation kept in the transform.
        inlier_ratio: Support of the winning rotation hypothesis.
        details: Free-form diagnostics.
    """

    transform: Optional[RigidTransform] = None
    error: Optional[MatchError] = None
    reliable_pairs: List[MatchPair] = field(default_factory=list)
    inlier_pairs: List[MatchPair] = field(default_factory=list)
    rotation_deg: float = 0.0
    residual_x: float = 0.0
    residual_y: float = 0.0
    inlier_ratio: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and self.transform is not None

    @classmethod
    def failure(cls, kind: MatchErrorKind, message: str, **kwargs) -> "EstimationResult":
        return cls(error=MatchError(kind, message), **kwargs)


class Matcher(ABC):
    """
    Abstract base class for correspondence strategies.

    Implementations must never raise from ``match``: failures are reported
    as an InspectionResult with ``passed=False`` and a diagnostic message.
    """

    strategy: MatchStrategy

    @abstractmethod
    def match(
        self, template: Template, detections: Sequence[DetectedObject]
    ) -> InspectionResult:
        """
        Compare detections against a template.

        Args:
            template: Read-only template for this call.
            detections: Detections of the current frame (order irrelevant).

        Returns:
            InspectionResult covering every required feature once and every
            unmatched detection once.
        """
        pass
