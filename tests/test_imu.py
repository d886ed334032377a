"""
Tests for IMU preintegration
"""

import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from comap.core.imu_preintegration import GRAVITY, ImuPreintegration


def stationary(num_samples=50, dt=0.01) -> ImuPreintegration:
    """Sensor at rest measuring only gravity"""
    preint = ImuPreintegration(GRAVITY, np.zeros(3))
    for _ in range(num_samples):
        preint.push_back(dt, GRAVITY, np.zeros(3))
    return preint


class TestImuPreintegration:
    """Test integration, residuals and repropagation"""

    def test_stationary_deltas(self):
        preint = stationary()
        assert preint.num_measurements == 50
        assert np.isclose(preint.sum_dt, 0.5)
        assert np.allclose(preint.delta_q, [0.0, 0.0, 0.0, 1.0])
        assert np.allclose(preint.delta_v, GRAVITY * 0.5)

    def test_stationary_residual_is_zero(self):
        preint = stationary()
        q = np.array([0.0, 0.0, 0.0, 1.0])
        p = np.array([1.0, 2.0, 3.0])
        zero = np.zeros(3)
        residual = preint.evaluate(p, q, zero, zero, zero, p, q, zero, zero, zero)
        assert residual.shape == (15,)
        assert np.allclose(residual, 0.0, atol=1e-9)

    def test_moving_pose_gives_residual(self):
        preint = stationary()
        q = np.array([0.0, 0.0, 0.0, 1.0])
        zero = np.zeros(3)
        residual = preint.evaluate(zero, q, zero, zero, zero, np.array([0.3, 0.0, 0.0]), q, zero, zero, zero)
        assert np.isclose(residual[0], 0.3)

    def test_sqrt_information(self):
        S = stationary().sqrt_information()
        assert S.shape == (15, 15)
        assert np.allclose(S, np.triu(S))
        assert np.all(np.isfinite(S))

    def test_repropagate_matches_first_order_correction(self):
        """Test that with constant readings the bias correction is exact"""
        preint = stationary()
        ba = np.array([0.02, -0.01, 0.05])
        expected_p, _, expected_v = preint.corrected_deltas(ba, np.zeros(3))

        preint.repropagate(ba, np.zeros(3))

        assert preint.num_measurements == 50
        assert np.allclose(preint.delta_v, expected_v, atol=1e-9)
        assert np.allclose(preint.delta_p, expected_p, atol=1e-9)
