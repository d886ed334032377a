"""
Arena data model for a collaborative map

Keyframes and landmarks live in one SlamMap and reference each other only
through stable identifiers:
    KeyframeId = (frame_id, agent_id)
    LandmarkId = (landmark_id, agent_id)

Observations are stored on both sides: a keyframe holds one landmark-id slot
per keypoint, and a landmark holds a {KeyframeId: feature_index} mapping.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Hashable, Iterator, List, Optional, Tuple

import numpy as np

from .camera_models import CameraModel
from .imu_preintegration import ImuPreintegration

logger = logging.getLogger(__name__)

KeyframeId = Tuple[int, int]
LandmarkId = Hashable


@dataclass
class Keyframe:
    """A selected sensor pose with its keypoint observations"""

    id: KeyframeId
    T_ws: np.ndarray = field(default_factory=lambda: np.eye(4))
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    bias_acc: np.ndarray = field(default_factory=lambda: np.zeros(3))
    bias_gyr: np.ndarray = field(default_factory=lambda: np.zeros(3))
    T_sc: np.ndarray = field(default_factory=lambda: np.eye(4))
    camera: CameraModel = field(default_factory=CameraModel)
    keypoints: np.ndarray = field(default_factory=lambda: np.zeros((0, 2)))
    keypoint_octaves: Optional[np.ndarray] = None
    landmarks: List[Optional[LandmarkId]] = field(default_factory=list)
    predecessor_id: Optional[KeyframeId] = None
    successor_id: Optional[KeyframeId] = None
    imu: Optional[ImuPreintegration] = None

    invalid: bool = False
    is_loaded: bool = False
    is_gba_optimized: bool = False
    pose_optimized: bool = False
    vel_bias_optimized: bool = False

    def __post_init__(self):
        self.id = tuple(self.id)
        self.T_ws = np.asarray(self.T_ws, dtype=np.float64).copy()
        self.T_sc = np.asarray(self.T_sc, dtype=np.float64).copy()
        self.velocity = np.asarray(self.velocity, dtype=np.float64).copy()
        self.bias_acc = np.asarray(self.bias_acc, dtype=np.float64).copy()
        self.bias_gyr = np.asarray(self.bias_gyr, dtype=np.float64).copy()
        self.keypoints = np.asarray(self.keypoints, dtype=np.float64).reshape(-1, 2)
        if self.keypoint_octaves is None:
            self.keypoint_octaves = np.zeros(len(self.keypoints), dtype=int)
        else:
            self.keypoint_octaves = np.asarray(self.keypoint_octaves).reshape(-1)
        if len(self.landmarks) < len(self.keypoints):
            self.landmarks = list(self.landmarks) + [None] * (len(self.keypoints) - len(self.landmarks))

    @property
    def frame_id(self) -> int:
        return self.id[0]

    @property
    def agent_id(self) -> int:
        return self.id[1]

    @property
    def T_sw(self) -> np.ndarray:
        R = self.T_ws[:3, :3]
        T = np.eye(4)
        T[:3, :3] = R.T
        T[:3, 3] = -R.T @ self.T_ws[:3, 3]
        return T

    @property
    def T_wc(self) -> np.ndarray:
        return self.T_ws @ self.T_sc

    def observation(self, feature_index: int) -> np.ndarray:
        return self.keypoints[feature_index]

    def observation_sigma(self, feature_index: int) -> float:
        """Pixel noise scale of one keypoint, growing with its pyramid level"""
        return (float(self.keypoint_octaves[feature_index]) + 1.0) * 2.0

    def set_pose(self, T_ws: np.ndarray):
        self.T_ws = np.asarray(T_ws, dtype=np.float64).copy()

    def set_velocity(self, velocity: np.ndarray):
        self.velocity = np.asarray(velocity, dtype=np.float64).copy()

    def set_bias(self, bias_acc: np.ndarray, bias_gyr: np.ndarray):
        self.bias_acc = np.asarray(bias_acc, dtype=np.float64).copy()
        self.bias_gyr = np.asarray(bias_gyr, dtype=np.float64).copy()

    def erase_landmark(self, feature_index: int):
        self.landmarks[feature_index] = None


@dataclass
class Landmark:
    """A triangulated 3D point and the keyframes observing it"""

    id: LandmarkId
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    observations: Dict[KeyframeId, int] = field(default_factory=dict)
    reference_keyframe_id: Optional[KeyframeId] = None

    invalid: bool = False
    optimized: bool = False
    is_gba_optimized: bool = False

    def __post_init__(self):
        self.position = np.asarray(self.position, dtype=np.float64).copy()

    def feature_index(self, keyframe_id: KeyframeId) -> int:
        """Keypoint index of this landmark in a keyframe, -1 if not observed there"""
        return self.observations.get(tuple(keyframe_id), -1)

    def set_position(self, position: np.ndarray):
        self.position = np.asarray(position, dtype=np.float64).copy()

    def erase_observation(self, keyframe_id: KeyframeId):
        self.observations.pop(tuple(keyframe_id), None)


@dataclass
class LoopConstraint:
    """Relative transform between the sensor frames of two keyframes"""

    kf1_id: KeyframeId
    kf2_id: KeyframeId
    T_s1_s2: np.ndarray
    # 6x6, rotation block first, translation block second
    covariance: np.ndarray = field(default_factory=lambda: np.eye(6))
    relative_yaw: float = 0.0


@dataclass
class LocalLandmark:
    """Landmark of a local submap, expressed in the query-anchor frame"""

    position: np.ndarray
    observations: Dict[KeyframeId, int] = field(default_factory=dict)

    def __post_init__(self):
        self.position = np.asarray(self.position, dtype=np.float64).copy()


class SlamMap:
    """
    Ordered arena of keyframes and landmarks for one map

    Args:
        map_id: Id of the agent owning the map; keyframe (0, map_id) anchors it
    """

    def __init__(self, map_id: int = 0):
        self.map_id = map_id
        self.keyframes: Dict[KeyframeId, Keyframe] = {}
        self.landmarks: Dict[LandmarkId, Landmark] = {}
        self.loop_constraints: List[LoopConstraint] = []

    @property
    def anchor_id(self) -> KeyframeId:
        return (0, self.map_id)

    def add_keyframe(self, keyframe: Keyframe) -> Keyframe:
        self.keyframes[keyframe.id] = keyframe
        return keyframe

    def add_landmark(self, landmark: Landmark) -> Landmark:
        self.landmarks[landmark.id] = landmark
        return landmark

    def add_observation(self, landmark_id: LandmarkId, keyframe_id: KeyframeId, feature_index: int):
        """Link a landmark and a keypoint on both sides"""
        kf = self.keyframes[tuple(keyframe_id)]
        lm = self.landmarks[landmark_id]
        kf.landmarks[feature_index] = landmark_id
        lm.observations[kf.id] = feature_index
        if lm.reference_keyframe_id is None:
            lm.reference_keyframe_id = kf.id

    def add_loop_constraint(self, loop: LoopConstraint):
        self.loop_constraints.append(loop)

    def keyframe(self, keyframe_id: Optional[KeyframeId]) -> Optional[Keyframe]:
        if keyframe_id is None:
            return None
        return self.keyframes.get(tuple(keyframe_id))

    def landmark(self, landmark_id: Optional[LandmarkId]) -> Optional[Landmark]:
        if landmark_id is None:
            return None
        return self.landmarks.get(landmark_id)

    def predecessor(self, keyframe: Keyframe) -> Optional[Keyframe]:
        return self.keyframe(keyframe.predecessor_id)

    def successor(self, keyframe: Keyframe) -> Optional[Keyframe]:
        return self.keyframe(keyframe.successor_id)

    def valid_keyframes(self) -> List[Keyframe]:
        return [kf for kf in self.keyframes.values() if not kf.invalid]

    def valid_landmarks(self) -> List[Landmark]:
        return [lm for lm in self.landmarks.values() if not lm.invalid]

    def __iter__(self) -> Iterator[Keyframe]:
        return iter(self.keyframes.values())

    def clean(self) -> int:
        """
        Drop landmarks left without observations

        Returns:
            Number of landmarks removed
        """
        orphans = [lm_id for lm_id, lm in self.landmarks.items() if not lm.observations]
        for lm_id in orphans:
            del self.landmarks[lm_id]
        if orphans:
            orphan_set = set(orphans)
            for kf in self.keyframes.values():
                kf.landmarks = [None if slot in orphan_set else slot for slot in kf.landmarks]
            logger.info(f"Map {self.map_id}: removed {len(orphans)} landmarks without observations")
        return len(orphans)
