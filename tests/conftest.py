"""
Shared synthetic scenes for optimization tests
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from comap.core.camera_models import CameraModel
from comap.core.map_model import Keyframe, Landmark, LoopConstraint, SlamMap
from comap.core.optimization.geometry import R2ypr, Rt_to_T, inv_T, transform_point, ypr2R


def make_camera() -> CameraModel:
    return CameraModel("pinhole", "none", intrinsics=[400.0, 400.0, 320.0, 240.0], width=640, height=480)


def make_pose(yaw=0.0, pitch=0.0, roll=0.0, t=(0.0, 0.0, 0.0)) -> np.ndarray:
    return Rt_to_T(ypr2R([yaw, pitch, roll]), np.asarray(t, dtype=np.float64))


def perturb(T: np.ndarray, rng: np.random.Generator, rot_deg=0.5, trans=0.05) -> np.ndarray:
    """Small random rotation and translation offset"""
    dT = make_pose(*rng.normal(0.0, rot_deg, 3), t=rng.normal(0.0, trans, 3))
    return T @ dT


def scene_points(num_points: int, rng: np.random.Generator) -> np.ndarray:
    """Points spread in front of cameras looking along +z"""
    return np.column_stack([
        rng.uniform(-2.0, 4.0, num_points),
        rng.uniform(-1.5, 1.5, num_points),
        rng.uniform(5.0, 8.0, num_points),
    ])


def project(camera: CameraModel, T_ws: np.ndarray, X: np.ndarray) -> np.ndarray:
    pixel, valid = camera.project(transform_point(inv_T(T_ws), X))
    assert valid
    return pixel


def build_map(
    poses,
    points: np.ndarray,
    map_id: int = 0,
    observers=None,
) -> SlamMap:
    """
    Map with one keyframe per pose (frame ids 0..n-1) and noiseless keypoints

    Args:
        poses: Ground-truth T_ws per keyframe
        points: Landmark positions; landmark i sits in keypoint slot i
        map_id: Agent id of all keyframes
        observers: Optional {landmark index: [keyframe indices]} restricting
            which keyframes observe a landmark (default: all)
    """
    slam_map = SlamMap(map_id)
    camera = make_camera()
    n = len(poses)
    for i, T in enumerate(poses):
        keypoints = np.array([project(camera, T, X) for X in points])
        slam_map.add_keyframe(Keyframe(
            id=(i, map_id),
            T_ws=T,
            camera=camera,
            keypoints=keypoints,
            predecessor_id=(i - 1, map_id) if i > 0 else None,
            successor_id=(i + 1, map_id) if i < n - 1 else None,
        ))
    for j, X in enumerate(points):
        lm = slam_map.add_landmark(Landmark(id=(j, map_id), position=X))
        seen_by = range(n) if observers is None or j not in observers else observers[j]
        for i in seen_by:
            slam_map.add_observation(lm.id, (i, map_id), j)
    return slam_map


@pytest.fixture
def rng():
    return np.random.default_rng(7)


@pytest.fixture
def trajectory():
    """Five keyframes moving along x with mild attitude changes"""
    return [
        make_pose(0.0, 0.0, 0.0, (0.0, 0.0, 0.0)),
        make_pose(2.0, 1.0, -1.0, (0.5, 0.05, 0.0)),
        make_pose(4.0, -1.5, 0.5, (1.0, 0.1, 0.05)),
        make_pose(6.0, 0.5, 1.5, (1.5, 0.0, 0.1)),
        make_pose(3.0, 2.0, -0.5, (2.0, -0.1, 0.0)),
    ]


@pytest.fixture
def scene(trajectory, rng):
    """(map, ground-truth poses, points) with 40 landmarks seen by every keyframe"""
    points = scene_points(40, rng)
    return build_map(trajectory, points), trajectory, points


def add_loop(slam_map: SlamMap, i: int, j: int, T_true_i: np.ndarray, T_true_j: np.ndarray, covariance=None):
    loop = LoopConstraint(
        kf1_id=(i, slam_map.map_id),
        kf2_id=(j, slam_map.map_id),
        T_s1_s2=inv_T(T_true_i) @ T_true_j,
        covariance=np.eye(6) * 0.01 if covariance is None else covariance,
        relative_yaw=R2ypr(T_true_j[:3, :3])[0] - R2ypr(T_true_i[:3, :3])[0],
    )
    slam_map.add_loop_constraint(loop)
    return loop
