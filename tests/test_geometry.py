"""
Unit Tests for Geometry Primitives

This module tests:
- Point arithmetic, distance and bearing
- Angle wrapping and centroids
- Least-squares affine fitting (including degenerate input)
- Rigid fitting and its inverse

Usage:
    pytest tests/test_geometry.py -v
"""

import math
import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from partmatch.geometry import (
    AffineTransform,
    Point,
    RigidTransform,
    centroid,
    fit_affine,
    fit_rigid,
    median_offset,
    normalize_angle,
    rotate_about,
)


# ============================================================
# Test Fixtures
# ============================================================

@pytest.fixture
def scattered_points():
    """Ten non-collinear points spread over a 500x400 area."""
    rng = np.random.default_rng(7)
    coords = rng.uniform(0, 1, (10, 2)) * [500.0, 400.0]
    return [Point(float(x), float(y)) for x, y in coords]


# ============================================================
# Test Point
# ============================================================

class TestPoint:
    """Tests for the Point value type."""

    def test_arithmetic(self):
        assert Point(1, 2) + Point(3, 4) == Point(4, 6)
        assert Point(5, 5) - Point(2, 1) == Point(3, 4)

    def test_distance_and_angle(self):
        a, b = Point(0, 0), Point(3, 4)
        assert a.distance_to(b) == pytest.approx(5.0)
        assert Point(0, 0).angle_to(Point(0, 10)) == pytest.approx(math.pi / 2)

    def test_is_hashable_value(self):
        """Points with equal coordinates are interchangeable."""
        assert len({Point(1.0, 2.0), Point(1.0, 2.0)}) == 1

    def test_is_finite(self):
        assert Point(1, 2).is_finite()
        assert not Point(float("nan"), 2).is_finite()


class TestHelpers:
    """Tests for angle wrapping, centroid and rotation helpers."""

    @pytest.mark.parametrize("angle,expected", [
        (0.0, 0.0),
        (3 * math.pi / 2, -math.pi / 2),
        (-3 * math.pi / 2, math.pi / 2),
        (5 * math.pi, math.pi),
    ])
    def test_normalize_angle(self, angle, expected):
        assert normalize_angle(angle) == pytest.approx(expected)

    def test_centroid(self):
        assert centroid([Point(0, 0), Point(10, 0), Point(10, 10), Point(0, 10)]) == Point(5, 5)

    def test_centroid_empty_raises(self):
        with pytest.raises(ValueError):
            centroid([])

    def test_rotate_about_quarter_turn(self):
        rotated = rotate_about(Point(10, 0), Point(0, 0), 90.0)
        assert rotated.x == pytest.approx(0.0, abs=1e-9)
        assert rotated.y == pytest.approx(10.0)

    def test_median_offset_ignores_single_outlier(self):
        src = [Point(0, 0), Point(10, 0), Point(20, 0)]
        dst = [Point(5, 1), Point(15, 1), Point(100, 50)]
        offset = median_offset(src, dst)
        assert offset.x == pytest.approx(5.0)
        assert offset.y == pytest.approx(1.0)


# ============================================================
# Test Affine Fitting
# ============================================================

class TestFitAffine:
    """Tests for the least-squares affine fit."""

    def test_recovers_known_transform(self, scattered_points):
        truth = AffineTransform(a=1.02, b=-0.1, tx=30.0, c=0.08, d=0.97, ty=-12.0)
        dst = [truth.apply(p) for p in scattered_points]

        fitted = fit_affine(scattered_points, dst)

        assert fitted is not None
        for name in ("a", "b", "tx", "c", "d", "ty"):
            assert getattr(fitted, name) == pytest.approx(getattr(truth, name), abs=1e-6)

    def test_rotation_and_scale_properties(self):
        theta = math.radians(15)
        t = AffineTransform(a=2 * math.cos(theta), b=-2 * math.sin(theta), tx=0,
                            c=2 * math.sin(theta), d=2 * math.cos(theta), ty=0)
        assert t.rotation_deg == pytest.approx(15.0)
        assert t.scale_x == pytest.approx(2.0)
        assert t.scale_y == pytest.approx(2.0)

    def test_too_few_points_returns_none(self):
        assert fit_affine([Point(0, 0), Point(1, 1)], [Point(0, 0), Point(1, 1)]) is None

    def test_collinear_points_return_none(self):
        """A rank-deficient system is reported, not solved."""
        src = [Point(0, 0), Point(10, 10), Point(20, 20), Point(30, 30)]
        assert fit_affine(src, src) is None

    def test_length_mismatch_raises(self):
        with pytest.raises(ValueError):
            fit_affine([Point(0, 0)], [])


# ============================================================
# Test Rigid Fitting
# ============================================================

class TestFitRigid:
    """Tests for the SVD rotation + translation fit."""

    def test_recovers_rotation_and_translation(self, scattered_points):
        pivot = centroid(scattered_points)
        dst = [rotate_about(p, pivot, 12.0).translate(40.0, -25.0) for p in scattered_points]

        fitted = fit_rigid(scattered_points, dst)

        assert fitted is not None
        assert fitted.angle_deg == pytest.approx(12.0, abs=1e-6)
        for s, d in zip(scattered_points, dst):
            mapped = fitted.apply(s)
            assert mapped.x == pytest.approx(d.x, abs=1e-6)
            assert mapped.y == pytest.approx(d.y, abs=1e-6)

    def test_inverse_round_trip(self):
        t = RigidTransform(tx=12.0, ty=-3.0, angle_deg=33.0, pivot=Point(100, 50))
        p = Point(240.0, 310.0)
        back = t.apply_inverse(t.apply(p))
        assert back.x == pytest.approx(p.x)
        assert back.y == pytest.approx(p.y)

    def test_single_pair_returns_none(self):
        assert fit_rigid([Point(0, 0)], [Point(1, 1)]) is None
