"""
Unit tests for manifolds, robust losses and geometry helpers
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from comap.core.optimization.errors import ConfigurationError
from comap.core.optimization.geometry import (
    R2ypr,
    block_to_transform,
    normalize_angle,
    transform_to_block,
    ypr2R,
)
from comap.core.optimization.loss import CauchyLoss, HuberLoss, TrivialLoss, make_loss
from comap.core.optimization.parameterization import AngleManifold, PoseManifold

from conftest import make_pose


class TestPoseManifold:
    """Test SE(3) block updates"""

    def test_zero_delta_is_identity(self):
        x = transform_to_block(make_pose(30.0, 10.0, -5.0, (1.0, 2.0, 3.0)))
        assert np.allclose(PoseManifold().plus(x, np.zeros(6)), x)

    def test_update_keeps_unit_quaternion(self):
        x = transform_to_block(make_pose(30.0, 10.0, -5.0))
        y = PoseManifold().plus(x, np.array([0.3, -0.2, 0.1, 1.0, 0.0, -1.0]))
        assert np.isclose(np.linalg.norm(y[:4]), 1.0)
        assert np.allclose(y[4:], [1.0, 0.0, -1.0])

    def test_rotation_is_right_perturbation(self):
        """Test that the rotation delta is applied in the body frame"""
        T = make_pose(40.0, 0.0, 0.0)
        y = PoseManifold().plus(transform_to_block(T), np.array([0.0, 0.0, np.radians(10.0), 0, 0, 0]))
        assert np.allclose(block_to_transform(y)[:3, :3], T[:3, :3] @ ypr2R([10.0, 0.0, 0.0]))


class TestAngles:
    """Test yaw/pitch/roll helpers"""

    def test_ypr_round_trip(self):
        ypr = np.array([120.0, -30.0, 45.0])
        assert np.allclose(R2ypr(ypr2R(ypr)), ypr)

    @pytest.mark.parametrize("angle,expected", [(190.0, -170.0), (-180.0, 180.0), (540.0, 180.0), (10.0, 10.0)])
    def test_normalize_angle(self, angle, expected):
        assert np.isclose(normalize_angle(angle), expected)

    def test_angle_manifold_wraps(self):
        assert np.isclose(AngleManifold().plus(np.array([175.0]), np.array([10.0]))[0], -175.0)


class TestLosses:
    """Test robust loss corrections"""

    def test_trivial_loss_passthrough(self):
        r = np.array([3.0, 4.0])
        corrected, _ = TrivialLoss().correct(r)
        assert np.array_equal(corrected, r)

    @pytest.mark.parametrize("loss", [CauchyLoss(1.0), HuberLoss(0.5)])
    def test_corrected_norm_matches_rho(self, loss):
        """Test that ||r~||^2 equals rho(||r||^2)"""
        r = np.array([3.0, 4.0])
        corrected, _ = loss.correct(r)
        rho, _ = loss.evaluate(25.0)
        assert np.isclose(corrected @ corrected, rho)

    def test_cauchy_downweights_large_residuals(self):
        corrected, _ = CauchyLoss(1.0).correct(np.array([30.0, 40.0]))
        assert np.linalg.norm(corrected) < 5.0

    def test_huber_quadratic_region(self):
        r = np.array([0.1, 0.1])
        J = np.eye(2)
        corrected, corrected_J = HuberLoss(1.0).correct(r, J)
        assert np.allclose(corrected, r)
        assert np.allclose(corrected_J, J)

    def test_corrected_jacobian_consistent(self):
        """Test that the corrected Jacobian is the derivative of the corrected residual"""
        loss = CauchyLoss(2.0)
        A = np.array([[1.0, 2.0], [0.5, -1.0], [3.0, 0.2]])
        x = np.array([0.7, -0.4])
        b = np.array([0.1, 4.0, -2.0])
        _, J = loss.correct(A @ x - b, A)

        eps = 1e-6
        numeric = np.zeros((3, 2))
        for k in range(2):
            dx = np.zeros(2)
            dx[k] = eps
            r_plus, _ = loss.correct(A @ (x + dx) - b)
            r_minus, _ = loss.correct(A @ (x - dx) - b)
            numeric[:, k] = (r_plus - r_minus) / (2 * eps)
        assert np.allclose(J, numeric, atol=1e-6)

    def test_make_loss(self):
        assert isinstance(make_loss(None), TrivialLoss)
        assert isinstance(make_loss("cauchy", 2.0), CauchyLoss)
        with pytest.raises(ConfigurationError):
            make_loss("tukey")
