"""
Manifold update rules for parameter blocks

The solver optimizes a tangent-space increment around a snapshot of every
variable block. A manifold maps (snapshot, increment) back to the ambient
block and reports how a local perturbation at the updated point relates to a
change of the increment, so factor Jacobians computed in local tangent
coordinates can be chained exactly.
"""

from abc import ABC, abstractmethod

import numpy as np

from .geometry import (
    POSE_BLOCK_SIZE,
    quat_multiply,
    quat_normalize,
    so3_exp,
    so3_right_jacobian,
    normalize_angle,
)


class Manifold(ABC):
    """
    Abstract update rule for one parameter block

    Subclasses must implement:
    - ambient_size / tangent_size
    - plus: apply a tangent increment to an ambient value
    """

    @property
    @abstractmethod
    def ambient_size(self) -> int:
        pass

    @property
    @abstractmethod
    def tangent_size(self) -> int:
        pass

    @abstractmethod
    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        """
        Apply a tangent increment

        Args:
            x: Ambient value (ambient_size,)
            delta: Tangent increment (tangent_size,)

        Returns:
            Updated ambient value
        """
        pass

    def delta_jacobian(self, delta: np.ndarray) -> np.ndarray:
        """
        Map a change of the increment to a local perturbation of plus(x, delta)

        For flat spaces this is the identity.
        """
        return np.eye(self.tangent_size)


class EuclideanManifold(Manifold):
    """Plain vector space (positions, velocities, biases, intrinsics)"""

    def __init__(self, size: int):
        self._size = int(size)

    @property
    def ambient_size(self) -> int:
        return self._size

    @property
    def tangent_size(self) -> int:
        return self._size

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        return x + delta


class PoseManifold(Manifold):
    """
    SE(3) pose block [qx, qy, qz, qw, tx, ty, tz]

    Tangent is [dtheta, dt]: q <- q * Exp(dtheta), t <- t + dt.
    """

    @property
    def ambient_size(self) -> int:
        return POSE_BLOCK_SIZE

    @property
    def tangent_size(self) -> int:
        return 6

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        out = np.empty(POSE_BLOCK_SIZE)
        out[:4] = quat_normalize(quat_multiply(x[:4], so3_exp(delta[:3])))
        out[4:] = x[4:7] + delta[3:6]
        return out

    def delta_jacobian(self, delta: np.ndarray) -> np.ndarray:
        J = np.eye(6)
        J[:3, :3] = so3_right_jacobian(delta[:3])
        return J


class AngleManifold(Manifold):
    """Yaw angle in degrees, wrapped into (-180, 180] after every update"""

    @property
    def ambient_size(self) -> int:
        return 1

    @property
    def tangent_size(self) -> int:
        return 1

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        return np.array([normalize_angle(x[0] + delta[0])])
