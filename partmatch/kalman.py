"""
Temporal Smoothing Module

Constant-velocity Kalman filter used to reduce per-frame detector jitter
before matching, plus a thread-safe registry of filters keyed by a stable
object identifier.

State vector: [x, y, vx, vy]. Only the position is observed.

The registry is the only mutable state shared across inspection calls, so
it is owned by the caller (typically QualityInspector) and handed to the
matcher that needs it.

Usage:
    from partmatch.kalman import KalmanFilterManager

    smoother = KalmanFilterManager(dt=0.033, process_noise=0.1, measurement_noise=5.0)
    smoothed = smoother.smooth("hole_3", Point(412.0, 230.5))
"""

import logging
import math
import threading
from typing import Any, Dict, List, Optional

import numpy as np

from partmatch.geometry import Point

logger = logging.getLogger(__name__)

# Smallest magnitude allowed for the determinant of a 2x2 inverse
DET_EPSILON = 1e-10


class KalmanFilter:
    """
    2D constant-velocity Kalman filter.

    Defaults are tuned for ~30 fps streams with ~5 px detector jitter.
    """

    INITIAL_COVARIANCE = 100.0
    RESET_COVARIANCE = 10.0

    def __init__(self, dt: float = 0.033, process_noise: float = 0.1,
                 measurement_noise: float = 5.0):
        """
        Args:
            dt: Time step between observations in seconds.
            process_noise: Standard deviation of the acceleration noise.
            measurement_noise: Standard deviation of the position measurement.
        """
        self.dt = dt
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise

        self.F = np.array([
            [1.0, 0.0, dt, 0.0],
            [0.0, 1.0, 0.0, dt],
            [0.0, 0.0, 1.0, 0.0],
            [0.0, 0.0, 0.0, 1.0],
        ])
        self.H = np.array([
            [1.0, 0.0, 0.0, 0.0],
            [0.0, 1.0, 0.0, 0.0],
        ])

        # Process noise driven by acceleration
        q = process_noise ** 2
        dt2, dt3, dt4 = dt ** 2, dt ** 3, dt ** 4
        self.Q = q * np.array([
            [dt4 / 4, 0.0, dt3 / 2, 0.0],
            [0.0, dt4 / 4, 0.0, dt3 / 2],
            [dt3 / 2, 0.0, dt2, 0.0],
            [0.0, dt3 / 2, 0.0, dt2],
        ])
        self.R = (measurement_noise ** 2) * np.eye(2)

        self.x: Optional[np.ndarray] = None
        self.P = self.INITIAL_COVARIANCE * np.eye(4)
        self.initialized = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def init(self, point: Point) -> None:
        """Start tracking at ``point`` with zero velocity."""
        self.x = np.array([point.x, point.y, 0.0, 0.0])
        self.P = self.RESET_COVARIANCE * np.eye(4)
        self.initialized = True

    def predict(self) -> Point:
        """Advance state and covariance by one time step."""
        self._require_initialized()
        self.x = self.F @ self.x
        self.P = self.F @ self.P @ self.F.T + self.Q
        return self.position

    def update(self, measurement: Point) -> Point:
        """
        Fold in one observation and return the corrected position.

        The first observation only initialises the filter.
        """
        if not self.initialized:
            self.init(measurement)
            return self.position

        self.predict()

        z = np.array([measurement.x, measurement.y])
        innovation = z - self.H @ self.x
        PHt = self.P @ self.H.T
        S = self.H @ PHt + self.R
        K = PHt @ self.inverse_2x2(S)

        self.x = self.x + K @ innovation
        self.P = (np.eye(4) - K @ self.H) @ self.P
        return self.position

    def reset(self) -> None:
        self.x = None
        self.P = self.INITIAL_COVARIANCE * np.eye(4)
        self.initialized = False

    @property
    def position(self) -> Point:
        self._require_initialized()
        return Point(float(self.x[0]), float(self.x[1]))

    @property
    def velocity(self) -> Point:
        self._require_initialized()
        return Point(float(self.x[2]), float(self.x[3]))

    @property
    def position_uncertainty(self) -> float:
        self._require_initialized()
        return math.sqrt(self.P[0, 0] + self.P[1, 1])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def inverse_2x2(m: np.ndarray) -> np.ndarray:
        """Inverse of a 2x2 matrix; a near-zero determinant is clamped to a signed epsilon."""
        det = m[0, 0] * m[1, 1] - m[0, 1] * m[1, 0]
        if abs(det) < DET_EPSILON:
            det = DET_EPSILON if det >= 0 else -DET_EPSILON
        return np.array([
            [m[1, 1], -m[0, 1]],
            [-m[1, 0], m[0, 0]],
        ]) / det

    def _require_initialized(self) -> None:
        if not self.initialized:
            raise RuntimeError("KalmanFilter not initialized. Call init() first.")


class KalmanFilterManager:
    """
    Registry of Kalman filters keyed by object identifier.

    Filters are created lazily on first observation. All operations take an
    internal lock, so one manager may be shared by concurrent inspection
    calls.
    """

    def __init__(self, dt: float = 0.033, process_noise: float = 0.1,
                 measurement_noise: float = 5.0):
        self.dt = dt
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise
        self._filters: Dict[str, KalmanFilter] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "KalmanFilterManager":
        return cls(
            dt=config.get("dt", 0.033),
            process_noise=config.get("process_noise", 0.1),
            measurement_noise=config.get("measurement_noise", 5.0),
        )

    def smooth(self, object_id: str, point: Point) -> Point:
        """
        Feed an observation and return the smoothed position.

        The first observation of an id is returned unchanged.
        """
        with self._lock:
            kf = self._filters.get(object_id)
            if kf is None:
                kf = KalmanFilter(self.dt, self.process_noise, self.measurement_noise)
                kf.init(point)
                self._filters[object_id] = kf
                logger.debug(f"Started tracking {object_id} at {point}")
                return point
            return kf.update(point)

    def predict(self, object_id: str) -> Optional[Point]:
        """Advance a tracked object one step without an observation."""
        with self._lock:
            kf = self._filters.get(object_id)
            if kf is None:
                return None
            return kf.predict()

    def remove(self, object_id: str) -> bool:
        with self._lock:
            return self._filters.pop(object_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._filters.clear()

    def track_ids(self) -> List[str]:
        with self._lock:
            return list(self._filters.keys())

    def __contains__(self, object_id: str) -> bool:
        with self._lock:
            return object_id in self._filters

    def __len__(self) -> int:
        with self._lock:
            return len(self._filters)
