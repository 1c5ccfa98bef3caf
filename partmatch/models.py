"""
Inspection Data Model

Value types exchanged between the caller and the matching engine:

- TemplateFeature / Template: the expected layout of a part, built offline
- DetectedObject: one detection produced by an external detector per frame
- FeatureComparison: the verdict for one template feature or extra detection
- InspectionResult: aggregate verdict for one inspection call

A Template is read-only during an inspection call. Detection lists are
created per call and discarded afterwards.

Usage:
    from partmatch.models import Template, TemplateFeature, DetectedObject
    from partmatch.geometry import Point

    template = Template(
        template_id="bracket_v2",
        features=[
            TemplateFeature("F0", "hole", 0, Point(100, 100)),
            TemplateFeature("F1", "hole", 0, Point(200, 100)),
        ],
    )
    detections = [DetectedObject(0, Point(101, 99)), DetectedObject(0, Point(199, 101))]
"""

import math
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from partmatch.geometry import Point


class ComparisonStatus(str, Enum):
    """Outcome of comparing one template feature (or one extra detection)."""

    PASSED = "PASSED"
    DEVIATION_EXCEEDED = "DEVIATION_EXCEEDED"
    MISSING = "MISSING"
    EXTRA = "EXTRA"
    SUSPICIOUS = "SUSPICIOUS"


class MatchStrategy(str, Enum):
    """Available correspondence strategies (values match config strings)."""

    TOPOLOGY = "topology"
    CROSS_RATIO = "cross_ratio"
    ITERATIVE_AFFINE = "iterative_affine"

    @classmethod
    def parse(cls, value) -> "MatchStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown match strategy '{value}'. "
                f"Available: {[s.value for s in cls]}"
            )


# ============================================================
# Template side
# ============================================================


@dataclass(frozen=True)
class TemplateFeature:
    """
    One expected feature of a part.

    Attributes:
        id: Unique identifier within the template.
        name: Human-readable name (e.g. "hole", "screw").
        class_id: Detector class this feature must be matched against.
        position: Expected centre in template pixel coordinates.
        tolerance_x: Allowed absolute x deviation in pixels.
        tolerance_y: Allowed absolute y deviation in pixels.
        required: Whether a missing or deviated match fails the inspection.
    """

    id: str
    name: str
    class_id: int
    position: Point
    tolerance_x: float = 5.0
    tolerance_y: float = 5.0
    required: bool = True

    def __post_init__(self):
        assert self.tolerance_x >= 0 and self.tolerance_y >= 0, \
            f"Feature {self.id}: tolerances must be non-negative"


@dataclass
class Template:
    """
    Expected layout of a part.

    Attributes:
        template_id: Identifier of the part type.
        features: Ordered list of template features with unique ids.
        tolerance_x: Global x tolerance (used for consistency checks).
        tolerance_y: Global y tolerance.
        topology_k: Optional neighbour count override for the graph matcher.
        topology_threshold: Optional minimum topology similarity for a
                            graph match to count as valid.
        image_width: Canvas width the template was built on (fingerprint
                     reference frame).
        image_height: Canvas height the template was built on.
        metadata: Free-form information (e.g. "match_strategy").
    """

    template_id: str
    features: List[TemplateFeature]
    tolerance_x: float = 5.0
    tolerance_y: float = 5.0
    topology_k: Optional[int] = None
    topology_threshold: Optional[float] = None
    image_width: Optional[float] = None
    image_height: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        ids = [f.id for f in self.features]
        assert len(ids) == len(set(ids)), \
            f"Template {self.template_id}: duplicate feature ids"
        assert self.tolerance_x >= 0 and self.tolerance_y >= 0, \
            f"Template {self.template_id}: tolerances must be non-negative"

    @property
    def required_features(self) -> List[TemplateFeature]:
        return [f for f in self.features if f.required]

    @property
    def classes(self) -> List[int]:
        """Class ids present in the template, in first-seen order."""
        return list(OrderedDict.fromkeys(f.class_id for f in self.features))

    @property
    def tolerance_magnitude(self) -> float:
        return math.hypot(self.tolerance_x, self.tolerance_y)

    def features_by_class(self) -> Dict[int, List[TemplateFeature]]:
        groups: Dict[int, List[TemplateFeature]] = OrderedDict()
        for feature in self.features:
            groups.setdefault(feature.class_id, []).append(feature)
        return groups

    def get_feature(self, feature_id: str) -> Optional[TemplateFeature]:
        for feature in self.features:
            if feature.id == feature_id:
                return feature
        return None

    def __len__(self) -> int:
        return len(self.features)


# ============================================================
# Detection side
# ============================================================


@dataclass(frozen=True)
class DetectedObject:
    """
    One detection from the upstream detector.

    Attributes:
        class_id: Detector class id.
        center: Detection centre in image pixels.
        width: Bounding box width.
        height: Bounding box height.
        confidence: Detector confidence in [0, 1].
        class_name: Optional class label.
        track_id: Optional stable identifier used for temporal smoothing.
    """

    class_id: int
    center: Point
    width: float = 0.0
    height: float = 0.0
    confidence: float = 1.0
    class_name: Optional[str] = None
    track_id: Optional[str] = None

    @property
    def top_left(self) -> Point:
        return Point(self.center.x - self.width / 2, self.center.y - self.height / 2)

    @property
    def bbox(self) -> Tuple[float, float, float, float]:
        """(x, y, width, height) of the bounding box."""
        tl = self.top_left
        return (tl.x, tl.y, self.width, self.height)


def build_template_from_detections(
    detections: Sequence[DetectedObject],
    template_id: str,
    tolerance_x: float = 5.0,
    tolerance_y: float = 5.0,
    image_width: Optional[float] = None,
    image_height: Optional[float] = None,
) -> Template:
    """
    Build a template from a reference detection of a known-good part.

    Every detection becomes one required feature ``F{i}``; its name is the
    detection's class name, or ``class_{id}`` when the detector gave none.
    """
    if not detections:
        raise ValueError("No detected objects provided")

    features = [
        TemplateFeature(
            id=f"F{i}",
            name=det.class_name or f"class_{det.class_id}",
            class_id=det.class_id,
            position=det.center,
            tolerance_x=tolerance_x,
            tolerance_y=tolerance_y,
        )
        for i, det in enumerate(detections)
    ]

    return Template(
        template_id=template_id,
        features=features,
        tolerance_x=tolerance_x,
        tolerance_y=tolerance_y,
        image_width=image_width,
        image_height=image_height,
        metadata={
            "total_features": len(features),
            "source": "model_detection",
        },
    )


# ============================================================
# Results
# ============================================================


@dataclass(frozen=True)
class FeatureComparison:
    """
    Verdict for one template feature or one unmatched detection.

    Errors are ``detected - expected`` along each axis, measured in the
    template frame by the matcher that produced them.

    Attributes:
        feature_id: Template feature id (or a generated id for extras).
        feature_name: Template feature name (or class label for extras).
        class_id: Class of the feature or detection.
        status: ComparisonStatus of this entry.
        template_position: Template position (None for extras).
        detected_position: Detection position (None for missing features).
        expected_position: Where the feature was expected in the detected
                           frame, when the matcher knows it.
        x_error: Signed x error in pixels.
        y_error: Signed y error in pixels.
        tolerance_x: Tolerance applied to x_error.
        tolerance_y: Tolerance applied to y_error.
        confidence: Matcher-specific confidence in [0, 1].
        class_name: Optional class label.
        required: Whether this entry affects the pass decision.
    """

    feature_id: str
    feature_name: str
    class_id: int
    status: ComparisonStatus
    template_position: Optional[Point] = None
    detected_position: Optional[Point] = None
    expected_position: Optional[Point] = None
    x_error: float = 0.0
    y_error: float = 0.0
    tolerance_x: float = 0.0
    tolerance_y: float = 0.0
    confidence: float = 0.0
    class_name: Optional[str] = None
    required: bool = True

    @property
    def total_error(self) -> float:
        return math.hypot(self.x_error, self.y_error)

    @property
    def within_tolerance(self) -> bool:
        return (
            abs(self.x_error) <= self.tolerance_x
            and abs(self.y_error) <= self.tolerance_y
        )

    @classmethod
    def evaluate(
        cls,
        feature: TemplateFeature,
        detected: DetectedObject,
        x_error: float,
        y_error: float,
        tolerance_x: Optional[float] = None,
        tolerance_y: Optional[float] = None,
        suspicious: bool = False,
        confidence: float = 1.0,
        expected_position: Optional[Point] = None,
    ) -> "FeatureComparison":
        """Classify a matched pair from its errors and consistency flag."""
        tol_x = feature.tolerance_x if tolerance_x is None else tolerance_x
        tol_y = feature.tolerance_y if tolerance_y is None else tolerance_y
        if suspicious:
            status = ComparisonStatus.SUSPICIOUS
        elif abs(x_error) <= tol_x and abs(y_error) <= tol_y:
            status = ComparisonStatus.PASSED
        else:
            status = ComparisonStatus.DEVIATION_EXCEEDED
        return cls(
            feature_id=feature.id,
            feature_name=feature.name,
            class_id=feature.class_id,
            status=status,
            template_position=feature.position,
            detected_position=detected.center,
            expected_position=expected_position,
            x_error=float(x_error),
            y_error=float(y_error),
            tolerance_x=tol_x,
            tolerance_y=tol_y,
            confidence=float(confidence),
            class_name=detected.class_name,
            required=feature.required,
        )

    @classmethod
    def passed(cls, feature: TemplateFeature, detected: DetectedObject,
               x_error: float = 0.0, y_error: float = 0.0,
               confidence: float = 1.0) -> "FeatureComparison":
        return cls(
            feature_id=feature.id,
            feature_name=feature.name,
            class_id=feature.class_id,
            status=ComparisonStatus.PASSED,
            template_position=feature.position,
            detected_position=detected.center,
            x_error=float(x_error),
            y_error=float(y_error),
            tolerance_x=feature.tolerance_x,
            tolerance_y=feature.tolerance_y,
            confidence=float(confidence),
            class_name=detected.class_name,
            required=feature.required,
        )

    @classmethod
    def missing(cls, feature: TemplateFeature,
                expected_position: Optional[Point] = None) -> "FeatureComparison":
        return cls(
            feature_id=feature.id,
            feature_name=feature.name,
            class_id=feature.class_id,
            status=ComparisonStatus.MISSING,
            template_position=feature.position,
            expected_position=expected_position,
            tolerance_x=feature.tolerance_x,
            tolerance_y=feature.tolerance_y,
            required=feature.required,
        )

    @classmethod
    def extra(cls, detected: DetectedObject, index: int,
              expected_position: Optional[Point] = None) -> "FeatureComparison":
        label = detected.class_name or f"class_{detected.class_id}"
        return cls(
            feature_id=f"extra_{index}",
            feature_name=label,
            class_id=detected.class_id,
            status=ComparisonStatus.EXTRA,
            detected_position=detected.center,
            expected_position=expected_position,
            confidence=detected.confidence,
            class_name=detected.class_name,
        )


@dataclass
class InspectionSummary:
    """Per-status counts of an InspectionResult."""

    total: int = 0
    passed: int = 0
    deviation: int = 0
    missing: int = 0
    extra: int = 0
    suspicious: int = 0

    def __str__(self) -> str:
        return (
            f"total={self.total}, passed={self.passed}, deviation={self.deviation}, "
            f"missing={self.missing}, extra={self.extra}, suspicious={self.suspicious}"
        )


@dataclass
class InspectionResult:
    """
    Aggregate verdict of one inspection call.

    Attributes:
        template_id: Template the detections were compared against.
        comparisons: One entry per required template feature (plus matched
                     optional features) and one per unmatched detection.
        passed: Overall pass/fail decision.
        processing_time_ms: Wall-clock matching time.
        message: Human-readable summary or diagnostic.
        strategy: Strategy value that produced this result.
        details: Matcher-specific diagnostics (transforms, counts, errors).
    """

    template_id: str
    comparisons: List[FeatureComparison] = field(default_factory=list)
    passed: bool = False
    processing_time_ms: float = 0.0
    message: str = ""
    strategy: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def with_status(self, status: ComparisonStatus) -> List[FeatureComparison]:
        return [c for c in self.comparisons if c.status == status]

    @property
    def passed_features(self) -> List[FeatureComparison]:
        return self.with_status(ComparisonStatus.PASSED)

    @property
    def missing(self) -> List[FeatureComparison]:
        return self.with_status(ComparisonStatus.MISSING)

    @property
    def extras(self) -> List[FeatureComparison]:
        return self.with_status(ComparisonStatus.EXTRA)

    @property
    def deviations(self) -> List[FeatureComparison]:
        return self.with_status(ComparisonStatus.DEVIATION_EXCEEDED)

    @property
    def suspicious(self) -> List[FeatureComparison]:
        return self.with_status(ComparisonStatus.SUSPICIOUS)

    def summary(self) -> InspectionSummary:
        return InspectionSummary(
            total=len(self.comparisons),
            passed=len(self.passed_features),
            deviation=len(self.deviations),
            missing=len(self.missing),
            extra=len(self.extras),
            suspicious=len(self.suspicious),
        )

    def get(self, feature_id: str) -> Optional[FeatureComparison]:
        for comparison in self.comparisons:
            if comparison.feature_id == feature_id:
                return comparison
        return None


def evaluate_passed(comparisons: Sequence[FeatureComparison],
                    treat_extra_as_error: bool = True) -> bool:
    """
    Overall decision: every required entry PASSED and, when extras count as
    errors, no EXTRA entry at all.
    """
    for comparison in comparisons:
        if comparison.status == ComparisonStatus.EXTRA:
            if treat_extra_as_error:
                return False
        elif comparison.required and comparison.status != ComparisonStatus.PASSED:
            return False
    return True
