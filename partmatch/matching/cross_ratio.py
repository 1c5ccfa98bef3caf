"""
Cross-Ratio Fingerprint Module

A point P is described by three cross-ratios of the line pencil through P
and six reference points: the four corners A, B, C, D of the canvas (or of
a region of interest) plus two asymmetric interior points E and E'. The
cross-ratio of four lines through a common point is preserved by any
projective transform, so the fingerprint of a point does not change when
the whole scene (points and reference frame) is warped.

    CR(P; A, B; C, X) = [sin(APC) / sin(BPC)] / [sin(APX) / sin(BPX)]

for X in {D, E, E'}. Angles are unsigned, which keeps the absolute value of
the classical signed cross-ratio.

Usage:
    from partmatch.matching.cross_ratio import ReferencePoints, FingerprintCalculator

    calculator = FingerprintCalculator(ReferencePoints.from_canvas(1920, 1080))
    fp = calculator.compute(Point(640, 360))
    if fp.is_valid:
        print(fp.similarity(other_fp, tolerance=0.1))
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from partmatch.geometry import Point

logger = logging.getLogger(__name__)

GOLDEN_MAJOR = 0.618
GOLDEN_MINOR = 0.382

# Sine / ratio magnitudes below this make a cross-ratio undefined
DEGENERACY_EPSILON = 1e-10

# Component weights for weighted_distance (E is the most discriminative)
COMPONENT_WEIGHTS = (1.0, 1.5, 0.8)


@dataclass(frozen=True)
class ReferencePoints:
    """Six reference points defining the fingerprint frame."""

    a: Point
    b: Point
    c: Point
    d: Point
    e: Point
    e_prime: Point

    @classmethod
    def from_canvas(cls, width: float, height: float) -> "ReferencePoints":
        """Canvas corners plus golden-ratio interior points."""
        return cls(
            a=Point(0.0, 0.0),
            b=Point(width, 0.0),
            c=Point(width, height),
            d=Point(0.0, height),
            e=Point(width * GOLDEN_MAJOR, height * GOLDEN_MINOR),
            e_prime=Point(width * GOLDEN_MINOR, height * GOLDEN_MAJOR),
        )

    @classmethod
    def from_roi(cls, top_left: Point, top_right: Point,
                 bottom_right: Point, bottom_left: Point) -> "ReferencePoints":
        """Reference frame from the four corners of a region of interest."""
        width = top_right.x - top_left.x
        height = bottom_left.y - top_left.y
        return cls(
            a=top_left,
            b=top_right,
            c=bottom_right,
            d=bottom_left,
            e=top_left.translate(width * GOLDEN_MAJOR, height * GOLDEN_MINOR),
            e_prime=top_left.translate(width * GOLDEN_MINOR, height * GOLDEN_MAJOR),
        )

    @property
    def width(self) -> float:
        return self.b.x - self.a.x

    @property
    def height(self) -> float:
        return self.d.y - self.a.y

    @property
    def is_valid(self) -> bool:
        corners = (self.a, self.b, self.c, self.d)
        return self.width > 0 and self.height > 0 and all(p.is_finite() for p in corners)

    def __str__(self) -> str:
        return (
            f"ReferencePoints[w={self.width:.1f}, h={self.height:.1f}, "
            f"E={self.e}, E'={self.e_prime}]"
        )


@dataclass(frozen=True)
class CrossRatioFingerprint:
    """Three cross-ratios describing one point (NaN components mean invalid)."""

    cr_d: float
    cr_e: float
    cr_e_prime: float
    point_id: Optional[str] = None

    @classmethod
    def invalid(cls, point_id: Optional[str] = None) -> "CrossRatioFingerprint":
        return cls(math.nan, math.nan, math.nan, point_id)

    @property
    def is_valid(self) -> bool:
        return all(math.isfinite(v) for v in self.as_tuple())

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.cr_d, self.cr_e, self.cr_e_prime)

    def distance(self, other: "CrossRatioFingerprint") -> float:
        """Euclidean distance; infinite when either fingerprint is invalid."""
        if not (self.is_valid and other.is_valid):
            return math.inf
        return float(np.linalg.norm(np.subtract(self.as_tuple(), other.as_tuple())))

    def weighted_distance(self, other: "CrossRatioFingerprint") -> float:
        if not (self.is_valid and other.is_valid):
            return math.inf
        diff = np.subtract(self.as_tuple(), other.as_tuple()) * np.asarray(COMPONENT_WEIGHTS)
        return float(np.linalg.norm(diff))

    def similarity(self, other: "CrossRatioFingerprint", tolerance: float) -> float:
        """Gaussian kernel of the weighted distance: exp(-d^2 / (2 tol^2))."""
        d = self.weighted_distance(other)
        if not math.isfinite(d) or tolerance <= 0:
            return 0.0
        return math.exp(-(d * d) / (2.0 * tolerance * tolerance))

    def __str__(self) -> str:
        if not self.is_valid:
            return f"Fingerprint[{self.point_id}: INVALID]"
        return (
            f"Fingerprint[{self.point_id}: "
            f"({self.cr_d:.4f}, {self.cr_e:.4f}, {self.cr_e_prime:.4f})]"
        )


class FingerprintCalculator:
    """Computes fingerprints against a fixed reference frame."""

    def __init__(self, reference: ReferencePoints):
        self.reference = reference

    def compute(self, point: Point, point_id: Optional[str] = None) -> CrossRatioFingerprint:
        ref = self.reference
        if not ref.is_valid or not point.is_finite():
            return CrossRatioFingerprint.invalid(point_id)
        return CrossRatioFingerprint(
            cr_d=cross_ratio(point, ref.a, ref.b, ref.c, ref.d),
            cr_e=cross_ratio(point, ref.a, ref.b, ref.c, ref.e),
            cr_e_prime=cross_ratio(point, ref.a, ref.b, ref.c, ref.e_prime),
            point_id=point_id,
        )

    def compute_all(self, points: Dict[str, Point]) -> Dict[str, CrossRatioFingerprint]:
        return {pid: self.compute(p, pid) for pid, p in points.items()}


def angle_at(p: Point, a: Point, b: Point) -> float:
    """Unsigned angle APB at vertex P in radians; 0 when P coincides with A or B."""
    ax, ay = a.x - p.x, a.y - p.y
    bx, by = b.x - p.x, b.y - p.y
    if math.hypot(ax, ay) < DEGENERACY_EPSILON or math.hypot(bx, by) < DEGENERACY_EPSILON:
        return 0.0
    return math.atan2(abs(ax * by - ay * bx), ax * bx + ay * by)


def cross_ratio(p: Point, a: Point, b: Point, c: Point, x: Point) -> float:
    """Pencil cross-ratio CR(P; A, B; C, X); NaN when undefined."""
    sin_apc = math.sin(angle_at(p, a, c))
    sin_bpc = math.sin(angle_at(p, b, c))
    sin_apx = math.sin(angle_at(p, a, x))
    sin_bpx = math.sin(angle_at(p, b, x))

    if abs(sin_bpc) < DEGENERACY_EPSILON or abs(sin_bpx) < DEGENERACY_EPSILON:
        return math.nan

    ratio1 = sin_apc / sin_bpc
    ratio2 = sin_apx / sin_bpx
    if abs(ratio2) < DEGENERACY_EPSILON:
        return math.nan
    return ratio1 / ratio2


def component_ranges(fingerprints: Sequence[CrossRatioFingerprint]) -> Dict[str, Tuple[float, float]]:
    """(min, max) of each component over the valid fingerprints."""
    valid = [fp.as_tuple() for fp in fingerprints if fp.is_valid]
    if not valid:
        return {}
    arr = np.asarray(valid)
    names = ("cr_d", "cr_e", "cr_e_prime")
    return {
        name: (float(arr[:, k].min()), float(arr[:, k].max()))
        for k, name in enumerate(names)
    }
