"""
Unit Tests for Temporal Smoothing

This module tests:
- KalmanFilter initialisation, prediction and convergence
- The 2x2 inverse used for the gain
- KalmanFilterManager bookkeeping and thread safety

Usage:
    pytest tests/test_kalman.py -v
"""

import sys
import threading
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from partmatch.geometry import Point
from partmatch.kalman import KalmanFilter, KalmanFilterManager


# ============================================================
# Test KalmanFilter
# ============================================================

class TestKalmanFilter:
    """Tests for the constant-velocity filter."""

    def test_uninitialized_access_raises(self):
        kf = KalmanFilter()
        with pytest.raises(RuntimeError):
            kf.predict()
        with pytest.raises(RuntimeError):
            _ = kf.position

    def test_first_update_initializes(self):
        kf = KalmanFilter()
        assert kf.update(Point(10.0, 20.0)) == Point(10.0, 20.0)
        assert kf.initialized
        assert kf.velocity == Point(0.0, 0.0)

    def test_predict_grows_uncertainty(self):
        kf = KalmanFilter()
        kf.init(Point(0.0, 0.0))
        before = kf.position_uncertainty
        kf.predict()
        assert kf.position_uncertainty > before

    def test_converges_on_static_target(self):
        """A noisy static target is smoothed: less spread, closer to the truth."""
        rng = np.random.default_rng(0)
        truth = np.array([200.0, 150.0])
        kf = KalmanFilter(dt=0.033, process_noise=0.1, measurement_noise=5.0)

        raw, smoothed = [], []
        for i in range(60):
            measured = truth + rng.uniform(-5.0, 5.0, 2)
            estimate = kf.update(Point(float(measured[0]), float(measured[1])))
            if i >= 10:
                raw.append(measured)
                smoothed.append((estimate.x, estimate.y))

        raw, smoothed = np.array(raw), np.array(smoothed)
        for axis in (0, 1):
            assert np.var(smoothed[:, axis]) < np.var(raw[:, axis])
        raw_error = np.linalg.norm(raw - truth, axis=1).mean()
        smoothed_error = np.linalg.norm(smoothed - truth, axis=1).mean()
        assert smoothed_error < raw_error

    def test_tracks_constant_velocity(self):
        kf = KalmanFilter(dt=1.0, process_noise=0.1, measurement_noise=1.0)
        for t in range(30):
            kf.update(Point(float(t) * 2.0, 5.0))
        assert kf.velocity.x == pytest.approx(2.0, abs=0.1)
        assert kf.velocity.y == pytest.approx(0.0, abs=0.1)

    def test_reset(self):
        kf = KalmanFilter()
        kf.init(Point(1, 1))
        kf.reset()
        assert not kf.initialized
        assert kf.P[0, 0] == KalmanFilter.INITIAL_COVARIANCE

    def test_inverse_2x2(self):
        m = np.array([[4.0, 1.0], [2.0, 3.0]])
        np.testing.assert_allclose(KalmanFilter.inverse_2x2(m) @ m, np.eye(2), atol=1e-12)

    def test_inverse_2x2_singular_is_finite(self):
        inv = KalmanFilter.inverse_2x2(np.array([[1.0, 2.0], [2.0, 4.0]]))
        assert np.all(np.isfinite(inv))


# ============================================================
# Test KalmanFilterManager
# ============================================================

class TestKalmanFilterManager:
    """Tests for the keyed filter registry."""

    def test_first_observation_is_returned_unchanged(self):
        manager = KalmanFilterManager()
        assert manager.smooth("a", Point(3.0, 4.0)) == Point(3.0, 4.0)
        assert "a" in manager
        assert len(manager) == 1

    def test_second_observation_is_smoothed(self):
        manager = KalmanFilterManager()
        manager.smooth("a", Point(0.0, 0.0))
        smoothed = manager.smooth("a", Point(10.0, 0.0))
        assert 0.0 < smoothed.x < 10.0

    def test_ids_are_independent(self):
        manager = KalmanFilterManager()
        manager.smooth("a", Point(0.0, 0.0))
        assert manager.smooth("b", Point(50.0, 50.0)) == Point(50.0, 50.0)

    def test_predict_unknown_returns_none(self):
        assert KalmanFilterManager().predict("ghost") is None

    def test_remove_and_clear(self):
        manager = KalmanFilterManager()
        manager.smooth("a", Point(0, 0))
        manager.smooth("b", Point(1, 1))
        assert manager.remove("a")
        assert not manager.remove("a")
        assert manager.track_ids() == ["b"]
        manager.clear()
        assert len(manager) == 0

    def test_from_config(self):
        manager = KalmanFilterManager.from_config({"dt": 0.1, "measurement_noise": 2.0})
        assert manager.dt == 0.1
        assert manager.process_noise == 0.1
        assert manager.measurement_noise == 2.0

    def test_concurrent_smoothing(self):
        manager = KalmanFilterManager()

        def worker(prefix):
            for i in range(50):
                manager.smooth(f"{prefix}_{i % 5}", Point(float(i), float(i)))

        threads = [threading.Thread(target=worker, args=(f"t{n}",)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(manager) == 20
