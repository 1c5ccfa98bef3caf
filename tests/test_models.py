"""
Unit Tests for the Inspection Data Model

This module tests:
- TemplateFeature / Template validation and helpers
- DetectedObject bounding box helpers
- FeatureComparison classification and factories
- InspectionResult summaries and the overall pass rule
- Building a template from reference detections

Usage:
    pytest tests/test_models.py -v
"""

import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from partmatch.geometry import Point
from partmatch.models import (
    ComparisonStatus,
    DetectedObject,
    FeatureComparison,
    InspectionResult,
    MatchStrategy,
    Template,
    TemplateFeature,
    build_template_from_detections,
    evaluate_passed,
)


# ============================================================
# Test Fixtures
# ============================================================

@pytest.fixture
def feature():
    return TemplateFeature("F0", "hole", 0, Point(100.0, 200.0), tolerance_x=5.0, tolerance_y=4.0)


@pytest.fixture
def detection():
    return DetectedObject(0, Point(102.0, 201.0), width=20, height=10, class_name="hole")


# ============================================================
# Test Template
# ============================================================

class TestTemplate:
    """Tests for Template and TemplateFeature."""

    def test_duplicate_ids_rejected(self):
        with pytest.raises(AssertionError):
            Template("t", [
                TemplateFeature("F0", "a", 0, Point(0, 0)),
                TemplateFeature("F0", "b", 0, Point(5, 5)),
            ])

    def test_negative_tolerance_rejected(self):
        with pytest.raises(AssertionError):
            TemplateFeature("F0", "a", 0, Point(0, 0), tolerance_x=-1.0)

    def test_grouping_and_required(self):
        template = Template("t", [
            TemplateFeature("F0", "a", 1, Point(0, 0)),
            TemplateFeature("F1", "b", 0, Point(5, 5), required=False),
            TemplateFeature("F2", "c", 1, Point(9, 9)),
        ])
        assert template.classes == [1, 0]
        assert [f.id for f in template.features_by_class()[1]] == ["F0", "F2"]
        assert [f.id for f in template.required_features] == ["F0", "F2"]
        assert template.get_feature("F1").name == "b"
        assert template.get_feature("nope") is None

    def test_defaults(self):
        template = Template("t", [])
        assert template.tolerance_x == 5.0
        assert template.tolerance_magnitude == pytest.approx(50 ** 0.5)


class TestDetectedObject:
    """Tests for DetectedObject helpers."""

    def test_bbox(self, detection):
        assert detection.top_left == Point(92.0, 196.0)
        assert detection.bbox == (92.0, 196.0, 20, 10)


# ============================================================
# Test FeatureComparison
# ============================================================

class TestFeatureComparison:
    """Tests for comparison classification."""

    def test_within_tolerance_passes(self, feature, detection):
        comp = FeatureComparison.evaluate(feature, detection, 2.0, 1.0)
        assert comp.status == ComparisonStatus.PASSED
        assert comp.within_tolerance
        assert comp.total_error == pytest.approx(5 ** 0.5)

    def test_tolerance_boundary_is_inclusive(self, feature, detection):
        comp = FeatureComparison.evaluate(feature, detection, -5.0, 4.0)
        assert comp.status == ComparisonStatus.PASSED

    def test_exceeding_one_axis_is_deviation(self, feature, detection):
        comp = FeatureComparison.evaluate(feature, detection, 0.0, 4.5)
        assert comp.status == ComparisonStatus.DEVIATION_EXCEEDED

    def test_suspicious_overrides_error(self, feature, detection):
        comp = FeatureComparison.evaluate(feature, detection, 0.0, 0.0, suspicious=True)
        assert comp.status == ComparisonStatus.SUSPICIOUS

    def test_custom_tolerance(self, feature, detection):
        comp = FeatureComparison.evaluate(feature, detection, 12.0, 0.0, tolerance_x=15.0)
        assert comp.status == ComparisonStatus.PASSED
        assert comp.tolerance_x == 15.0

    def test_missing_and_extra_factories(self, feature, detection):
        missing = FeatureComparison.missing(feature, Point(1, 1))
        assert missing.status == ComparisonStatus.MISSING
        assert missing.detected_position is None
        assert missing.expected_position == Point(1, 1)

        extra = FeatureComparison.extra(detection, 3)
        assert extra.status == ComparisonStatus.EXTRA
        assert extra.feature_id == "extra_3"
        assert extra.template_position is None
        assert extra.feature_name == "hole"

    def test_comparison_is_immutable(self, feature, detection):
        comp = FeatureComparison.passed(feature, detection)
        with pytest.raises(Exception):
            comp.status = ComparisonStatus.MISSING


# ============================================================
# Test InspectionResult
# ============================================================

class TestInspectionResult:
    """Tests for summaries and the pass rule."""

    def test_summary_counts(self, feature, detection):
        comps = [
            FeatureComparison.passed(feature, detection),
            FeatureComparison.missing(TemplateFeature("F1", "x", 0, Point(0, 0))),
            FeatureComparison.extra(detection, 0),
        ]
        result = InspectionResult("t", comps)
        summary = result.summary()
        assert (summary.total, summary.passed, summary.missing, summary.extra) == (3, 1, 1, 1)
        assert result.get("F1").status == ComparisonStatus.MISSING

    def test_all_passed(self, feature, detection):
        assert evaluate_passed([FeatureComparison.passed(feature, detection)])

    def test_extra_fails_only_when_configured(self, feature, detection):
        comps = [FeatureComparison.passed(feature, detection), FeatureComparison.extra(detection, 1)]
        assert not evaluate_passed(comps, treat_extra_as_error=True)
        assert evaluate_passed(comps, treat_extra_as_error=False)

    def test_optional_deviation_does_not_fail(self, detection):
        optional = TemplateFeature("F9", "opt", 0, Point(0, 0), required=False)
        comp = FeatureComparison.evaluate(optional, detection, 50.0, 0.0)
        assert comp.status == ComparisonStatus.DEVIATION_EXCEEDED
        assert evaluate_passed([comp])

    def test_missing_fails(self, feature):
        assert not evaluate_passed([FeatureComparison.missing(feature)])


# ============================================================
# Test Template Building
# ============================================================

class TestBuildTemplate:
    """Tests for build_template_from_detections."""

    def test_build(self):
        detections = [
            DetectedObject(0, Point(10, 10), class_name="hole"),
            DetectedObject(2, Point(50, 10)),
        ]
        template = build_template_from_detections(detections, "part_a", 3.0, 4.0, 640, 480)

        assert [f.id for f in template.features] == ["F0", "F1"]
        assert template.features[0].name == "hole"
        assert template.features[1].name == "class_2"
        assert template.features[1].tolerance_y == 4.0
        assert template.image_width == 640
        assert template.metadata["total_features"] == 2

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            build_template_from_detections([], "part_a")


class TestMatchStrategy:
    """Tests for strategy parsing."""

    def test_parse(self):
        assert MatchStrategy.parse("Cross_Ratio") == MatchStrategy.CROSS_RATIO
        assert MatchStrategy.parse(MatchStrategy.TOPOLOGY) == MatchStrategy.TOPOLOGY

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            MatchStrategy.parse("coordinate")
