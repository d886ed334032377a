"""
Residual factors

Every factor evaluates a residual from a list of parameter-block values and
reports Jacobians in the local tangent coordinates of each block's manifold,
i.e. the derivative w.r.t. eps at eps = 0 of r(..., plus(x_k, eps), ...).
Factors without analytic Jacobians fall back to central differences.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np

from ..camera_models import CameraModel, CameraVariant, camera_variant
from ..imu_preintegration import ImuPreintegration
from .geometry import (
    skew,
    quat_to_rotation,
    quat_normalize,
    rotation_to_quat,
    block_to_transform,
    inv_T,
    ypr2R,
    normalize_angle,
)
from .parameterization import Manifold

NUMERIC_STEP = 1e-6


class CostFunction(ABC):
    """
    Abstract residual term

    Subclasses must implement:
    - num_residuals
    - residual: evaluate the residual vector from block values
    """

    num_residuals: int = 0

    @abstractmethod
    def residual(self, blocks: Sequence[np.ndarray]) -> np.ndarray:
        pass

    def jacobians(
        self,
        blocks: Sequence[np.ndarray],
        manifolds: Sequence[Manifold],
        active: Optional[Sequence[bool]] = None,
    ) -> List[Optional[np.ndarray]]:
        """
        Jacobians w.r.t. each block's local tangent coordinates

        Args:
            blocks: Current block values
            manifolds: Manifold of each block
            active: Which blocks need a Jacobian (None = all)

        Returns:
            One (num_residuals, tangent_size) array per block, None where inactive
        """
        return [
            self._numeric_jacobian(blocks, manifolds, k)
            if active is None or active[k] else None
            for k in range(len(blocks))
        ]

    def _numeric_jacobian(self, blocks, manifolds, k: int) -> np.ndarray:
        manifold = manifolds[k]
        J = np.zeros((self.num_residuals, manifold.tangent_size))
        perturbed = list(blocks)
        for col in range(manifold.tangent_size):
            step = np.zeros(manifold.tangent_size)
            step[col] = NUMERIC_STEP
            perturbed[k] = manifold.plus(blocks[k], step)
            r_plus = self.residual(perturbed)
            perturbed[k] = manifold.plus(blocks[k], -step)
            r_minus = self.residual(perturbed)
            J[:, col] = (r_plus - r_minus) / (2.0 * NUMERIC_STEP)
        return J


class ReprojectionFactor(CostFunction):
    """
    Pixel reprojection error of a world point observed by one keyframe

    Blocks: (pose T_ws, extrinsics T_sc, position X_w, intrinsics, distortion)
    Residual: (pi(T_cs T_sw X_w) - z) / sigma. Points that cannot be projected
    contribute a zero residual.
    """

    num_residuals = 2

    def __init__(self, observation: np.ndarray, sigma: float, variant: CameraVariant):
        self.observation = np.asarray(observation, dtype=np.float64)
        self.sigma = float(sigma)
        self.variant = variant

    def _camera_point(self, blocks):
        pose, extrinsics, position = blocks[0], blocks[1], blocks[2]
        R_ws = quat_to_rotation(quat_normalize(pose[:4]))
        R_sc = quat_to_rotation(quat_normalize(extrinsics[:4]))
        p_s = R_ws.T @ (position - pose[4:7])
        p_c = R_sc.T @ (p_s - extrinsics[4:7])
        return R_ws, R_sc, p_s, p_c

    def residual(self, blocks):
        _, _, _, p_c = self._camera_point(blocks)
        pixel, valid = self.variant.project(p_c, blocks[3], blocks[4])
        if not valid:
            return np.zeros(2)
        return (pixel - self.observation) / self.sigma

    def jacobians(self, blocks, manifolds, active=None):
        if active is None:
            active = [True] * len(blocks)
        R_ws, R_sc, p_s, p_c = self._camera_point(blocks)
        _, J_pi, valid = self.variant.project(p_c, blocks[3], blocks[4], with_jacobian=True)

        out: List[Optional[np.ndarray]] = [None] * len(blocks)
        if not valid:
            for k, manifold in enumerate(manifolds):
                if active[k]:
                    out[k] = np.zeros((2, manifold.tangent_size))
            return out

        J_pc = J_pi / self.sigma
        J_ps = J_pc @ R_sc.T
        if active[0]:
            out[0] = np.hstack([J_ps @ skew(p_s), -J_ps @ R_ws.T])
        if active[1]:
            out[1] = np.hstack([J_pc @ skew(p_c), -J_pc @ R_sc.T])
        if active[2]:
            out[2] = J_ps @ R_ws.T
        for k in (3, 4):
            if active[k]:
                out[k] = self._numeric_jacobian(blocks, manifolds, k)
        return out


class RelativeProjectionType(str, Enum):
    NORMAL = "normal"
    INVERSE = "inverse"


class RelativeReprojectionFactor(CostFunction):
    """
    Reprojection error through a relative camera transform T_12

    Block: (T_12,) mapping points from camera 2 into camera 1.
    NORMAL: a camera-2 point is mapped into camera 1 and compared with a
    camera-1 keypoint. INVERSE: a camera-1 point is mapped into camera 2.
    """

    num_residuals = 2

    def __init__(
        self,
        observation: np.ndarray,
        sigma: float,
        camera: CameraModel,
        point: np.ndarray,
        direction: RelativeProjectionType = RelativeProjectionType.NORMAL,
    ):
        self.observation = np.asarray(observation, dtype=np.float64)
        self.sigma = float(sigma)
        self.camera = camera
        self.variant = camera_variant(camera)
        self.point = np.asarray(point, dtype=np.float64)
        self.direction = RelativeProjectionType(direction)

    def _transformed(self, block):
        R = quat_to_rotation(quat_normalize(block[:4]))
        t = block[4:7]
        if self.direction is RelativeProjectionType.NORMAL:
            return R, R @ self.point + t
        return R, R.T @ (self.point - t)

    def residual(self, blocks):
        _, p = self._transformed(blocks[0])
        pixel, valid = self.variant.project(p, self.camera.intrinsics, self.camera.distortion_params)
        if not valid:
            return np.zeros(2)
        return (pixel - self.observation) / self.sigma

    def jacobians(self, blocks, manifolds, active=None):
        if active is not None and not active[0]:
            return [None]
        R, p = self._transformed(blocks[0])
        _, J_pi, valid = self.variant.project(
            p, self.camera.intrinsics, self.camera.distortion_params, with_jacobian=True
        )
        if not valid:
            return [np.zeros((2, 6))]
        J_p = J_pi / self.sigma
        if self.direction is RelativeProjectionType.NORMAL:
            J = np.hstack([-J_p @ R @ skew(self.point), J_p])
        else:
            J = np.hstack([J_p @ skew(p), -J_p @ R.T])
        return [J]


class ImuPreintegrationFactor(CostFunction):
    """
    Inertial error between consecutive keyframes i -> j

    Blocks: (pose_i, speed_bias_i, pose_j, speed_bias_j), speed_bias = [v, ba, bg]
    """

    num_residuals = 15

    def __init__(self, preintegration: ImuPreintegration):
        self.preintegration = preintegration
        self.sqrt_info = preintegration.sqrt_information()

    def residual(self, blocks):
        pose_i, sb_i, pose_j, sb_j = blocks
        raw = self.preintegration.evaluate(
            pose_i[4:7], quat_normalize(pose_i[:4]), sb_i[0:3], sb_i[3:6], sb_i[6:9],
            pose_j[4:7], quat_normalize(pose_j[:4]), sb_j[0:3], sb_j[3:6], sb_j[6:9],
        )
        return self.sqrt_info @ raw


class PoseErrorType(str, Enum):
    IMU = "imu"  # measurement between sensor frames
    VISUAL = "visual"  # measurement between camera frames


def _rotation_error(R_meas: np.ndarray, R_est: np.ndarray) -> np.ndarray:
    q_err = rotation_to_quat(R_meas.T @ R_est)
    if q_err[3] < 0.0:
        q_err = -q_err
    return 2.0 * q_err[:3]


class SixDofBetweenFactor(CostFunction):
    """
    Relative-pose error between two keyframes

    Blocks: (pose_1, pose_2, extrinsics_1, extrinsics_2)
    Residual: sqrt_info @ [2 vec(q_meas^-1 * q_12), t_12 - t_meas]
    """

    num_residuals = 6

    def __init__(
        self,
        T_meas: np.ndarray,
        sqrt_info: np.ndarray,
        error_type: PoseErrorType = PoseErrorType.IMU,
    ):
        self.R_meas = np.asarray(T_meas, dtype=np.float64)[:3, :3]
        self.t_meas = np.asarray(T_meas, dtype=np.float64)[:3, 3]
        self.sqrt_info = np.asarray(sqrt_info, dtype=np.float64)
        self.error_type = PoseErrorType(error_type)

    def residual(self, blocks):
        T_1 = block_to_transform(blocks[0])
        T_2 = block_to_transform(blocks[1])
        if self.error_type is PoseErrorType.VISUAL:
            T_1 = T_1 @ block_to_transform(blocks[2])
            T_2 = T_2 @ block_to_transform(blocks[3])
        T_12 = inv_T(T_1) @ T_2
        error = np.concatenate([
            _rotation_error(self.R_meas, T_12[:3, :3]),
            T_12[:3, 3] - self.t_meas,
        ])
        return self.sqrt_info @ error


class FourDofFactor(CostFunction):
    """
    Yaw + translation relative-pose error with fixed pitch/roll of keyframe i

    Blocks: (yaw_i, t_i, yaw_j, t_j); yaw in degrees.
    Residual: [R(yaw_i, pitch_i, roll_i)^T (t_j - t_i) - t_meas] * w_t,
              wrap(yaw_j - yaw_i - yaw_meas) * w_yaw
    """

    num_residuals = 4

    def __init__(
        self,
        t_meas: np.ndarray,
        yaw_meas: float,
        pitch_i: float,
        roll_i: float,
        translation_weight: float = 1.0,
        yaw_weight: float = 1.0,
    ):
        self.t_meas = np.asarray(t_meas, dtype=np.float64)
        self.yaw_meas = float(yaw_meas)
        self.pitch_i = float(pitch_i)
        self.roll_i = float(roll_i)
        self.translation_weight = float(translation_weight)
        self.yaw_weight = float(yaw_weight)

    def _rotation_i(self, yaw_i: float) -> np.ndarray:
        return ypr2R([yaw_i, self.pitch_i, self.roll_i])

    def residual(self, blocks):
        yaw_i, t_i, yaw_j, t_j = blocks
        R_i = self._rotation_i(yaw_i[0])
        r = np.empty(4)
        r[:3] = (R_i.T @ (t_j - t_i) - self.t_meas) * self.translation_weight
        r[3] = normalize_angle(yaw_j[0] - yaw_i[0] - self.yaw_meas) * self.yaw_weight
        return r

    def jacobians(self, blocks, manifolds, active=None):
        if active is None:
            active = [True] * 4
        yaw_i, t_i, yaw_j, t_j = blocks
        R_i = self._rotation_i(yaw_i[0])
        w_t = self.translation_weight
        out: List[Optional[np.ndarray]] = [None] * 4
        if active[0]:
            # d Rz(y)/dy = [e_z]x Rz(y), in degrees
            dR = skew(np.array([0.0, 0.0, 1.0])) @ R_i * (np.pi / 180.0)
            J = np.zeros((4, 1))
            J[:3, 0] = dR.T @ (t_j - t_i) * w_t
            J[3, 0] = -self.yaw_weight
            out[0] = J
        if active[1]:
            J = np.zeros((4, 3))
            J[:3, :] = -R_i.T * w_t
            out[1] = J
        if active[2]:
            J = np.zeros((4, 1))
            J[3, 0] = self.yaw_weight
            out[2] = J
        if active[3]:
            J = np.zeros((4, 3))
            J[:3, :] = R_i.T * w_t
            out[3] = J
        return out


def make_reprojection_factor(camera: CameraModel, observation: np.ndarray, sigma: float) -> ReprojectionFactor:
    """
    Build the reprojection factor matching a keyframe's camera

    Raises:
        CameraModelError: unknown projection or distortion family
    """
    return ReprojectionFactor(observation, sigma, camera_variant(camera))
