"""
Problem builder and state synchronization

Attaches keyframe/landmark state to a Problem as parameter blocks, wires
factors between them, and decodes optimized blocks back into entity state.
Every procedure (GBA, LBA, relative pose, pose graph) goes through the same
attach_keyframe() so the per-keyframe camera/extrinsics setup lives here only.
"""

import logging
from typing import Hashable, Optional, Tuple

import numpy as np

from ..camera_models import camera_variant
from ..map_model import Keyframe, KeyframeId
from .factors import (
    FourDofFactor,
    ImuPreintegrationFactor,
    PoseErrorType,
    RelativeProjectionType,
    RelativeReprojectionFactor,
    SixDofBetweenFactor,
    make_reprojection_factor,
)
from .geometry import (
    R2ypr,
    Rt_to_T,
    block_to_transform,
    transform_to_block,
    ypr2R,
)
from .loss import LossFunction
from .parameterization import AngleManifold, EuclideanManifold, PoseManifold
from .problem import Problem

logger = logging.getLogger(__name__)


def pose_key(kf_id: KeyframeId):
    return ("pose", tuple(kf_id))


def speed_bias_key(kf_id: KeyframeId):
    return ("speed_bias", tuple(kf_id))


def extrinsics_key(kf_id: KeyframeId):
    return ("extrinsics", tuple(kf_id))


def intrinsics_key(kf_id: KeyframeId):
    return ("intrinsics", tuple(kf_id))


def distortion_key(kf_id: KeyframeId):
    return ("distortion", tuple(kf_id))


def landmark_key(lm_id: Hashable):
    return ("landmark", lm_id)


def yaw_key(kf_id: KeyframeId):
    return ("yaw", tuple(kf_id))


def position_key(kf_id: KeyframeId):
    return ("position", tuple(kf_id))


RELATIVE_POSE_KEY = ("relative_pose",)


def diagonal_sqrt_info(rotation_weight: float, translation_weight: float) -> np.ndarray:
    """6x6 square-root information with separate rotation/translation weights"""
    return np.diag([rotation_weight] * 3 + [translation_weight] * 3).astype(np.float64)


class ProblemBuilder:
    """
    Populates one Problem from live map state

    Args:
        problem: Problem to populate (a fresh one when None)
    """

    def __init__(self, problem: Optional[Problem] = None):
        self.problem = problem or Problem()

    # ------------------------------------------------------------------
    # Parameter blocks
    # ------------------------------------------------------------------

    def attach_keyframe(
        self,
        kf: Keyframe,
        T_init: Optional[np.ndarray] = None,
        fix_pose: bool = False,
        with_speed_bias: bool = False,
    ):
        """
        Add a keyframe's pose, extrinsics and camera blocks

        Extrinsics, intrinsics and distortion are always held constant.

        Args:
            kf: Keyframe to attach
            T_init: Initial pose block value (defaults to kf.T_ws)
            fix_pose: Hold the pose block constant
            with_speed_bias: Also add the [v, ba, bg] block

        Raises:
            CameraModelError: the keyframe's camera cannot be resolved
        """
        camera_variant(kf.camera)
        problem = self.problem
        T = kf.T_ws if T_init is None else T_init

        problem.add_parameter_block(pose_key(kf.id), transform_to_block(T), PoseManifold(), constant=fix_pose)
        problem.add_parameter_block(extrinsics_key(kf.id), transform_to_block(kf.T_sc), PoseManifold(), constant=True)
        problem.add_parameter_block(intrinsics_key(kf.id), kf.camera.intrinsics, constant=True)
        problem.add_parameter_block(distortion_key(kf.id), kf.camera.distortion_params, constant=True)
        if with_speed_bias:
            problem.add_parameter_block(
                speed_bias_key(kf.id),
                np.concatenate([kf.velocity, kf.bias_acc, kf.bias_gyr]),
                EuclideanManifold(9),
            )

    def attach_keyframe_4dof(self, kf: Keyframe, T_init: Optional[np.ndarray] = None, fix_pose: bool = False):
        """Add a keyframe's yaw (degrees) and position blocks"""
        T = kf.T_ws if T_init is None else T_init
        yaw = R2ypr(T[:3, :3])[0]
        self.problem.add_parameter_block(yaw_key(kf.id), [yaw], AngleManifold(), constant=fix_pose)
        self.problem.add_parameter_block(position_key(kf.id), T[:3, 3], EuclideanManifold(3), constant=fix_pose)

    def attach_landmark(self, lm_id: Hashable, position: np.ndarray):
        self.problem.add_parameter_block(landmark_key(lm_id), position, EuclideanManifold(3))
        return landmark_key(lm_id)

    def attach_relative_pose(self, T_12: np.ndarray):
        self.problem.add_parameter_block(RELATIVE_POSE_KEY, transform_to_block(T_12), PoseManifold())
        return RELATIVE_POSE_KEY

    def fix_pose(self, kf_id: KeyframeId):
        self.problem.set_constant(pose_key(kf_id))

    # ------------------------------------------------------------------
    # Factors
    # ------------------------------------------------------------------

    def add_reprojection(
        self,
        kf: Keyframe,
        feature_index: int,
        lm_key,
        loss: Optional[LossFunction] = None,
    ) -> int:
        """
        Add the reprojection factor of one keypoint

        Raises:
            MissingParameterBlockError: the keyframe or landmark is not attached
            CameraModelError: the keyframe's camera cannot be resolved
        """
        factor = make_reprojection_factor(
            kf.camera, kf.observation(feature_index), kf.observation_sigma(feature_index)
        )
        return self.problem.add_residual_block(
            factor,
            loss,
            [pose_key(kf.id), extrinsics_key(kf.id), lm_key, intrinsics_key(kf.id), distortion_key(kf.id)],
        )

    def add_between(
        self,
        kf1_id: KeyframeId,
        kf2_id: KeyframeId,
        T_12: np.ndarray,
        sqrt_info: np.ndarray,
        loss: Optional[LossFunction] = None,
        error_type: PoseErrorType = PoseErrorType.IMU,
    ) -> int:
        factor = SixDofBetweenFactor(T_12, sqrt_info, error_type)
        return self.problem.add_residual_block(
            factor,
            loss,
            [pose_key(kf1_id), pose_key(kf2_id), extrinsics_key(kf1_id), extrinsics_key(kf2_id)],
        )

    def add_four_dof(
        self,
        kf1_id: KeyframeId,
        kf2_id: KeyframeId,
        t_12: np.ndarray,
        relative_yaw: float,
        pitch_1: float,
        roll_1: float,
        translation_weight: float = 1.0,
        yaw_weight: float = 1.0,
        loss: Optional[LossFunction] = None,
    ) -> int:
        factor = FourDofFactor(t_12, relative_yaw, pitch_1, roll_1, translation_weight, yaw_weight)
        return self.problem.add_residual_block(
            factor,
            loss,
            [yaw_key(kf1_id), position_key(kf1_id), yaw_key(kf2_id), position_key(kf2_id)],
        )

    def add_relative_reprojection(
        self,
        kf: Keyframe,
        feature_index: int,
        point: np.ndarray,
        direction: RelativeProjectionType,
        loss: Optional[LossFunction] = None,
    ) -> int:
        """Add a reprojection factor through the relative pose block"""
        factor = RelativeReprojectionFactor(
            kf.observation(feature_index),
            kf.observation_sigma(feature_index),
            kf.camera,
            point,
            direction,
        )
        return self.problem.add_residual_block(factor, loss, [RELATIVE_POSE_KEY])

    def add_imu(self, pred: Keyframe, kf: Keyframe) -> Optional[int]:
        """
        Add the inertial factor pred -> kf, repropagated at kf's current biases

        Returns:
            Residual id, or None when kf carries no IMU measurements
        """
        if kf.imu is None or kf.imu.num_measurements == 0:
            logger.info(f"Keyframe {kf.id}: 0 IMU measurements, skipping IMU factor")
            return None
        sb = self.problem.parameter_block(speed_bias_key(kf.id))
        kf.imu.repropagate(sb[3:6], sb[6:9])
        factor = ImuPreintegrationFactor(kf.imu)
        return self.problem.add_residual_block(
            factor,
            None,
            [pose_key(pred.id), speed_bias_key(pred.id), pose_key(kf.id), speed_bias_key(kf.id)],
        )

    # ------------------------------------------------------------------
    # Read-back
    # ------------------------------------------------------------------

    def pose(self, kf_id: KeyframeId) -> np.ndarray:
        return block_to_transform(self.problem.parameter_block(pose_key(kf_id)))

    def relative_pose(self) -> np.ndarray:
        return block_to_transform(self.problem.parameter_block(RELATIVE_POSE_KEY))

    def speed_bias(self, kf_id: KeyframeId) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        sb = self.problem.parameter_block(speed_bias_key(kf_id))
        return sb[0:3].copy(), sb[3:6].copy(), sb[6:9].copy()

    def position(self, key) -> np.ndarray:
        return self.problem.parameter_block(key).copy()

    def pose_4dof(self, kf_id: KeyframeId, pitch: float, roll: float) -> np.ndarray:
        """Rebuild a full pose from the optimized yaw/position and held pitch/roll"""
        yaw = self.problem.parameter_block(yaw_key(kf_id))[0]
        t = self.problem.parameter_block(position_key(kf_id))
        return Rt_to_T(ypr2R([yaw, pitch, roll]), t)
