"""
Unit Tests for the Iterative Affine Matcher

This module tests:
- Rotation + translation recovery
- Outlier rejection in the refinement pass
- Occlusion ceiling and minimum pair count
- Determinism of the RANSAC rotation search
- Residual ceiling and missing-feature placement

Usage:
    pytest tests/test_affine_matcher.py -v
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from partmatch.geometry import Point, centroid, rotate_about
from partmatch.matching.affine_matcher import IterativeAffineMatcher
from partmatch.matching.interfaces import MatchErrorKind
from partmatch.models import ComparisonStatus, DetectedObject, Template, TemplateFeature


# ============================================================
# Test Fixtures
# ============================================================

def make_template(points, class_ids=None):
    class_ids = class_ids or [0] * len(points)
    features = [
        TemplateFeature(f"F{i}", f"feature_{i}", c, Point(float(x), float(y)))
        for i, ((x, y), c) in enumerate(zip(points, class_ids))
    ]
    return Template("affine_part", features)


def transformed(template, angle_deg=0.0, dx=0.0, dy=0.0):
    pivot = centroid(f.position for f in template.features)
    return [
        DetectedObject(f.class_id, rotate_about(f.position, pivot, angle_deg).translate(dx, dy))
        for f in template.features
    ]


@pytest.fixture
def matcher():
    return IterativeAffineMatcher()


@pytest.fixture
def grid_with_outliers():
    """Eight class-0 grid points plus two single-feature classes."""
    points = [(x, y) for y in (100, 200) for x in (100, 200, 300, 400)]
    points += [(250, 320), (250, -20)]
    template = make_template(points, [0] * 8 + [1, 2])

    detections = [
        DetectedObject(f.class_id, f.position.translate(30.0, 20.0))
        for f in template.features
    ]
    # Displace the two single-feature classes in opposite directions
    detections[8] = DetectedObject(1, detections[8].center.translate(120.0, 0.0))
    detections[9] = DetectedObject(2, detections[9].center.translate(-120.0, 0.0))
    return template, detections


# ============================================================
# Test Transform Estimation
# ============================================================

class TestEstimateTransform:
    """Tests for passes 1 to 3."""

    def test_recovers_rotation(self, matcher):
        template = make_template([(100, 100), (200, 100), (200, 200), (100, 200), (150, 260)])
        estimate = matcher.estimate_transform(template, transformed(template, 10.0, 25.0, -15.0))

        assert estimate.ok
        assert estimate.rotation_deg == pytest.approx(10.0, abs=1e-6)
        assert estimate.inlier_ratio == pytest.approx(1.0)
        for feature, det in zip(template.features, transformed(template, 10.0, 25.0, -15.0)):
            mapped = estimate.transform.apply(feature.position)
            assert mapped.x == pytest.approx(det.center.x, abs=1e-6)
            assert mapped.y == pytest.approx(det.center.y, abs=1e-6)

    def test_small_rotation_is_ignored(self, matcher):
        template = make_template([(100, 100), (200, 100), (200, 200), (100, 200)])
        estimate = matcher.estimate_transform(template, transformed(template, 0.3))
        assert estimate.rotation_deg == 0.0

    def test_outliers_are_rejected(self, matcher, grid_with_outliers):
        template, detections = grid_with_outliers
        estimate = matcher.estimate_transform(template, detections)

        assert estimate.ok
        assert len(estimate.reliable_pairs) == 10
        assert len(estimate.inlier_pairs) == 8
        assert {p.template_index for p in estimate.inlier_pairs} == set(range(8))
        assert estimate.rotation_deg == 0.0
        assert estimate.transform.translation.x == pytest.approx(30.0)
        assert estimate.transform.translation.y == pytest.approx(20.0)

    def test_occlusion_ceiling(self, matcher):
        template = make_template([(x * 50, 0) for x in range(10)])
        detections = [DetectedObject(0, Point(x * 50.0, 0.0)) for x in range(3)]

        estimate = matcher.estimate_transform(template, detections)

        assert not estimate.ok
        assert estimate.error.kind == MatchErrorKind.OCCLUSION_TOO_HIGH
        assert estimate.details["occlusion_rate"] == pytest.approx(0.7)

    def test_too_few_reliable_pairs(self, matcher):
        template = make_template([(100, 100), (200, 100), (200, 200), (100, 200)])
        estimate = matcher.estimate_transform(template, transformed(template)[:3])

        assert estimate.error.kind == MatchErrorKind.TOO_FEW_RELIABLE_PAIRS
        assert len(estimate.reliable_pairs) == 3

    def test_no_class_overlap(self):
        matcher = IterativeAffineMatcher({"max_occlusion_rate": 1.0})
        template = make_template([(100, 100), (200, 100)])
        estimate = matcher.estimate_transform(template, [DetectedObject(5, Point(100, 100))])

        assert estimate.error.kind == MatchErrorKind.NO_CLASS_OVERLAP

    def test_deterministic(self):
        rng = np.random.default_rng(5)
        points = rng.uniform(0, 600, (12, 2))
        template = make_template([tuple(p) for p in points])
        detections = [
            DetectedObject(0, d.center.translate(*rng.normal(0, 1.5, 2)))
            for d in transformed(template, 6.0, 40.0, 10.0)
        ]

        first = IterativeAffineMatcher().estimate_transform(template, detections)
        second = IterativeAffineMatcher().estimate_transform(template, detections)

        assert first.rotation_deg == second.rotation_deg
        assert first.transform == second.transform
        assert first.rotation_deg == pytest.approx(6.0, abs=1.0)

    def test_residual_ceiling(self):
        matcher = IterativeAffineMatcher({"max_residual": 0.5, "min_reliable_pairs": 4})
        template = make_template([(0, 0), (300, 0), (300, 200), (0, 200), (150, 320)])
        detections = transformed(template)
        for k in range(3):
            detections[k] = DetectedObject(0, detections[k].center.translate(5.0, 0.0))

        estimate = matcher.estimate_transform(template, detections)

        assert estimate.ok
        assert estimate.residual_x == 0.0
        assert estimate.residual_y == 0.0
        assert estimate.transform.tx == pytest.approx(3.0)


# ============================================================
# Test Matching
# ============================================================

class TestIterativeAffineMatcher:
    """End-to-end tests of match()."""

    def test_rotated_square_passes(self, matcher):
        template = make_template([(0, 0), (100, 0), (100, 100), (0, 100)])
        result = matcher.match(template, transformed(template, 10.0))

        assert result.passed
        assert len(result.passed_features) == 4
        assert result.details["rotation_deg"] == pytest.approx(10.0, abs=1e-6)

    def test_outlier_features_deviate(self, matcher, grid_with_outliers):
        template, detections = grid_with_outliers
        result = matcher.match(template, detections)

        assert not result.passed
        assert len(result.passed_features) == 8
        assert result.get("F8").status == ComparisonStatus.DEVIATION_EXCEEDED
        assert result.get("F8").x_error == pytest.approx(120.0)
        assert result.get("F9").x_error == pytest.approx(-120.0)
        assert result.details["inlier_pairs"] == 8

    def test_missing_feature_has_expected_position(self, matcher):
        template = make_template([(100, 100), (300, 100), (300, 250), (100, 250), (200, 400)])
        detections = transformed(template, 0.0, 30.0, 20.0)[:4]
        result = matcher.match(template, detections)

        missing = result.get("F4")
        assert missing.status == ComparisonStatus.MISSING
        assert missing.expected_position.x == pytest.approx(230.0)
        assert missing.expected_position.y == pytest.approx(420.0)
        assert len(result.passed_features) == 4

    def test_extra_detection(self, matcher):
        template = make_template([(0, 0), (100, 0), (100, 100), (0, 100)])
        detections = transformed(template) + [DetectedObject(9, Point(250.0, 50.0))]
        result = matcher.match(template, detections)

        assert not result.passed
        assert len(result.passed_features) == 4
        assert len(result.extras) == 1
        assert result.extras[0].expected_position is None

    def test_occluded_scene_fails_cleanly(self, matcher):
        template = make_template([(x * 50, 0) for x in range(10)])
        detections = [DetectedObject(0, Point(x * 50.0, 0.0)) for x in range(3)]

        result = matcher.match(template, detections)

        assert not result.passed
        assert len(result.missing) == 10
        assert len(result.extras) == 3
        assert result.details["error_kind"] == "occlusion_too_high"
        assert result.strategy == "iterative_affine"

    def test_optional_features_not_counted_for_occlusion(self, matcher):
        features = [TemplateFeature(f"F{i}", "pin", 0, Point(i * 100.0, (i % 2) * 80.0)) for i in range(4)]
        features += [TemplateFeature(f"O{i}", "label", 3, Point(50.0 + i * 10, 300.0), required=False)
                     for i in range(6)]
        template = Template("optional", features)
        detections = [DetectedObject(0, f.position) for f in features[:4]]

        result = matcher.match(template, detections)

        assert result.passed
        assert len(result.comparisons) == 4
