"""
Geometry Primitives

Small value types and fitting helpers shared by every matcher:

- Point: immutable 2D point with distance and bearing helpers
- AffineTransform / fit_affine: 6-parameter affine fitted by least squares
- RigidTransform / fit_rigid: rotation about a pivot plus translation

All coordinates are image pixels (x to the right, y down).

Usage:
    from partmatch.geometry import Point, fit_affine, fit_rigid

    transform = fit_rigid(template_points, detected_points)
    mapped = transform.apply(Point(10.0, 20.0))
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Point:
    """A 2D point in pixel coordinates."""

    x: float
    y: float

    def __add__(self, other: "Point") -> "Point":
        return Point(self.x + other.x, self.y + other.y)

    def __sub__(self, other: "Point") -> "Point":
        return Point(self.x - other.x, self.y - other.y)

    def distance_to(self, other: "Point") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def angle_to(self, other: "Point") -> float:
        """Bearing (radians) of the vector from this point to ``other``."""
        return math.atan2(other.y - self.y, other.x - self.x)

    def translate(self, dx: float, dy: float) -> "Point":
        return Point(self.x + dx, self.y + dy)

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y], dtype=np.float64)

    def is_finite(self) -> bool:
        return math.isfinite(self.x) and math.isfinite(self.y)

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "Point":
        return cls(float(values[0]), float(values[1]))

    def __str__(self) -> str:
        return f"({self.x:.1f}, {self.y:.1f})"


def normalize_angle(angle: float) -> float:
    """Wrap an angle in radians into [-pi, pi]."""
    while angle > math.pi:
        angle -= 2 * math.pi
    while angle < -math.pi:
        angle += 2 * math.pi
    return angle


def centroid(points: Iterable[Point]) -> Point:
    """Arithmetic mean of a non-empty collection of points."""
    pts = list(points)
    if not pts:
        raise ValueError("centroid of an empty point set is undefined")
    return Point(
        sum(p.x for p in pts) / len(pts),
        sum(p.y for p in pts) / len(pts),
    )


def points_to_array(points: Iterable[Point]) -> np.ndarray:
    """Stack points into an (N, 2) float array."""
    pts = [(p.x, p.y) for p in points]
    if not pts:
        return np.empty((0, 2), dtype=np.float64)
    return np.asarray(pts, dtype=np.float64)


# ============================================================
# Affine transform
# ============================================================


@dataclass(frozen=True)
class AffineTransform:
    """
    2D affine transform ``[a b tx; c d ty]``.

    Maps (x, y) to (a*x + b*y + tx, c*x + d*y + ty).
    """

    a: float = 1.0
    b: float = 0.0
    tx: float = 0.0
    c: float = 0.0
    d: float = 1.0
    ty: float = 0.0

    def apply(self, point: Point) -> Point:
        return Point(
            self.a * point.x + self.b * point.y + self.tx,
            self.c * point.x + self.d * point.y + self.ty,
        )

    @property
    def rotation_deg(self) -> float:
        return math.degrees(math.atan2(self.c, self.a))

    @property
    def scale_x(self) -> float:
        return math.hypot(self.a, self.c)

    @property
    def scale_y(self) -> float:
        return math.hypot(self.b, self.d)

    def __str__(self) -> str:
        return (
            f"Affine(rot={self.rotation_deg:.2f}deg, "
            f"scale=({self.scale_x:.3f}, {self.scale_y:.3f}), "
            f"t=({self.tx:.1f}, {self.ty:.1f}))"
        )


def fit_affine(src: Sequence[Point], dst: Sequence[Point]) -> Optional[AffineTransform]:
    """
    Least-squares affine fit mapping ``src`` onto ``dst``.

    Builds the over-determined 2n x 6 system relating source to destination
    coordinates and solves its normal equations.

    Args:
        src: Source points (e.g. template positions).
        dst: Destination points, same length as ``src``.

    Returns:
        The fitted AffineTransform, or None when fewer than 3 pairs are
        given or the system is rank deficient (collinear points).
    """
    if len(src) != len(dst):
        raise ValueError(f"point count mismatch: {len(src)} vs {len(dst)}")
    n = len(src)
    if n < 3:
        return None

    A = np.zeros((2 * n, 6), dtype=np.float64)
    b = np.zeros(2 * n, dtype=np.float64)
    for i, (s, t) in enumerate(zip(src, dst)):
        A[2 * i] = [s.x, s.y, 1.0, 0.0, 0.0, 0.0]
        A[2 * i + 1] = [0.0, 0.0, 0.0, s.x, s.y, 1.0]
        b[2 * i] = t.x
        b[2 * i + 1] = t.y

    if np.linalg.matrix_rank(A) < 6:
        logger.debug(f"Affine fit skipped: rank-deficient system over {n} pairs")
        return None

    AtA = A.T @ A
    Atb = A.T @ b
    try:
        params = np.linalg.solve(AtA, Atb)
    except np.linalg.LinAlgError as e:
        logger.debug(f"Affine fit skipped: {e}")
        return None

    return AffineTransform(*(float(v) for v in params))


# ============================================================
# Rigid transform
# ============================================================


@dataclass(frozen=True)
class RigidTransform:
    """
    Rotation about ``pivot`` followed by a translation.

    forward(p) = R(angle) * (p - pivot) + pivot + (tx, ty)
    """

    tx: float = 0.0
    ty: float = 0.0
    angle_deg: float = 0.0
    pivot: Point = field(default_factory=lambda: Point(0.0, 0.0))

    def _rotate(self, dx: float, dy: float, sign: float = 1.0):
        theta = math.radians(self.angle_deg) * sign
        cos_t, sin_t = math.cos(theta), math.sin(theta)
        return cos_t * dx - sin_t * dy, sin_t * dx + cos_t * dy

    def apply(self, point: Point) -> Point:
        rx, ry = self._rotate(point.x - self.pivot.x, point.y - self.pivot.y)
        return Point(rx + self.pivot.x + self.tx, ry + self.pivot.y + self.ty)

    def apply_inverse(self, point: Point) -> Point:
        dx = point.x - self.pivot.x - self.tx
        dy = point.y - self.pivot.y - self.ty
        rx, ry = self._rotate(dx, dy, sign=-1.0)
        return Point(rx + self.pivot.x, ry + self.pivot.y)

    @property
    def translation(self) -> Point:
        return Point(self.tx, self.ty)

    def __str__(self) -> str:
        return (
            f"Rigid(rot={self.angle_deg:.2f}deg, t=({self.tx:.1f}, {self.ty:.1f}), "
            f"pivot={self.pivot})"
        )


def fit_rigid(src: Sequence[Point], dst: Sequence[Point]) -> Optional[RigidTransform]:
    """
    Best rotation + translation (no scale) mapping ``src`` onto ``dst``.

    SVD solution of the orthogonal Procrustes problem on centred point sets.
    Returns None for fewer than 2 pairs.
    """
    if len(src) != len(dst):
        raise ValueError(f"point count mismatch: {len(src)} vs {len(dst)}")
    if len(src) < 2:
        return None

    src_arr = points_to_array(src)
    dst_arr = points_to_array(dst)
    src_centroid = src_arr.mean(axis=0)
    dst_centroid = dst_arr.mean(axis=0)

    H = (src_arr - src_centroid).T @ (dst_arr - dst_centroid)
    U, _, Vt = np.linalg.svd(H)
    R = Vt.T @ U.T
    if np.linalg.det(R) < 0:
        Vt[-1] *= -1
        R = Vt.T @ U.T

    angle = math.degrees(math.atan2(R[1, 0], R[0, 0]))
    offset = dst_centroid - src_centroid
    return RigidTransform(
        tx=float(offset[0]),
        ty=float(offset[1]),
        angle_deg=angle,
        pivot=Point.from_array(src_centroid),
    )


def median_offset(src: Sequence[Point], dst: Sequence[Point]) -> Point:
    """Per-axis median of ``dst - src``; zero offset for empty input."""
    if not src:
        return Point(0.0, 0.0)
    dx = [t.x - s.x for s, t in zip(src, dst)]
    dy = [t.y - s.y for s, t in zip(src, dst)]
    return Point(float(np.median(dx)), float(np.median(dy)))


def rotate_about(point: Point, pivot: Point, angle_deg: float) -> Point:
    """Rotate ``point`` about ``pivot`` by ``angle_deg`` (counter-clockwise in math axes)."""
    theta = math.radians(angle_deg)
    dx, dy = point.x - pivot.x, point.y - pivot.y
    return Point(
        pivot.x + math.cos(theta) * dx - math.sin(theta) * dy,
        pivot.y + math.sin(theta) * dx + math.cos(theta) * dy,
    )
