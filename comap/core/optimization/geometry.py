"""
Rigid-transform helpers shared by factors, manifolds and state synchronization

Conventions:
    - Quaternions are stored as (x, y, z, w), matching scipy's Rotation.
    - Transforms are 4x4 homogeneous matrices; T_ab maps points from frame b
      into frame a.
    - Yaw/pitch/roll are in degrees, composed as R = Rz(yaw) Ry(pitch) Rx(roll).
"""

import numpy as np
from scipy.spatial.transform import Rotation

POSE_BLOCK_SIZE = 7
SPEED_BIAS_BLOCK_SIZE = 9
POSITION_BLOCK_SIZE = 3


def skew(v: np.ndarray) -> np.ndarray:
    """Skew-symmetric cross-product matrix of a 3-vector"""
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0],
    ])


def quat_multiply(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    """Hamilton product q1 * q2 for (x, y, z, w) quaternions"""
    x1, y1, z1, w1 = q1
    x2, y2, z2, w2 = q2
    return np.array([
        w1 * x2 + x1 * w2 + y1 * z2 - z1 * y2,
        w1 * y2 - x1 * z2 + y1 * w2 + z1 * x2,
        w1 * z2 + x1 * y2 - y1 * x2 + z1 * w2,
        w1 * w2 - x1 * x2 - y1 * y2 - z1 * z2,
    ])


def quat_inverse(q: np.ndarray) -> np.ndarray:
    """Inverse of a unit quaternion"""
    return np.array([-q[0], -q[1], -q[2], q[3]])


def quat_normalize(q: np.ndarray) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64)
    return q / np.linalg.norm(q)


def quat_to_rotation(q: np.ndarray) -> np.ndarray:
    return Rotation.from_quat(q).as_matrix()


def rotation_to_quat(R: np.ndarray) -> np.ndarray:
    return Rotation.from_matrix(R).as_quat()


def delta_quat(theta: np.ndarray) -> np.ndarray:
    """First-order quaternion for a small rotation vector"""
    half = 0.5 * np.asarray(theta, dtype=np.float64)
    return quat_normalize(np.array([half[0], half[1], half[2], 1.0]))


def so3_exp(phi: np.ndarray) -> np.ndarray:
    """Rotation vector to (x, y, z, w) quaternion"""
    return Rotation.from_rotvec(phi).as_quat()


def so3_right_jacobian(phi: np.ndarray) -> np.ndarray:
    """Right Jacobian of SO(3): Exp(phi + d) ~= Exp(phi) Exp(Jr(phi) d)"""
    theta = np.linalg.norm(phi)
    K = skew(phi)
    if theta < 1e-8:
        return np.eye(3) - 0.5 * K
    return (
        np.eye(3)
        - (1.0 - np.cos(theta)) / theta**2 * K
        + (theta - np.sin(theta)) / theta**3 * (K @ K)
    )


def Rt_to_T(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = np.asarray(t).reshape(3)
    return T


def inv_T(T: np.ndarray) -> np.ndarray:
    R = T[:3, :3]
    t = T[:3, 3]
    Ti = np.eye(4)
    Ti[:3, :3] = R.T
    Ti[:3, 3] = -R.T @ t
    return Ti


def transform_point(T: np.ndarray, p: np.ndarray) -> np.ndarray:
    return T[:3, :3] @ p + T[:3, 3]


def transform_to_block(T: np.ndarray) -> np.ndarray:
    """Encode a 4x4 transform as a 7-scalar pose block [qx qy qz qw tx ty tz]"""
    block = np.empty(POSE_BLOCK_SIZE)
    block[:4] = rotation_to_quat(T[:3, :3])
    block[4:] = T[:3, 3]
    return block


def block_to_transform(block: np.ndarray) -> np.ndarray:
    """Decode a 7-scalar pose block into a 4x4 transform"""
    return Rt_to_T(quat_to_rotation(quat_normalize(block[:4])), block[4:7])


def R2ypr(R: np.ndarray) -> np.ndarray:
    """Rotation matrix to (yaw, pitch, roll) in degrees"""
    n = R[:, 0]
    o = R[:, 1]
    a = R[:, 2]
    y = np.arctan2(n[1], n[0])
    p = np.arctan2(-n[2], n[0] * np.cos(y) + n[1] * np.sin(y))
    r = np.arctan2(
        a[0] * np.sin(y) - a[1] * np.cos(y),
        -o[0] * np.sin(y) + o[1] * np.cos(y),
    )
    return np.degrees(np.array([y, p, r]))


def ypr2R(ypr: np.ndarray) -> np.ndarray:
    """(yaw, pitch, roll) in degrees to rotation matrix"""
    y, p, r = np.radians(np.asarray(ypr, dtype=np.float64))
    Rz = np.array([
        [np.cos(y), -np.sin(y), 0.0],
        [np.sin(y), np.cos(y), 0.0],
        [0.0, 0.0, 1.0],
    ])
    Ry = np.array([
        [np.cos(p), 0.0, np.sin(p)],
        [0.0, 1.0, 0.0],
        [-np.sin(p), 0.0, np.cos(p)],
    ])
    Rx = np.array([
        [1.0, 0.0, 0.0],
        [0.0, np.cos(r), -np.sin(r)],
        [0.0, np.sin(r), np.cos(r)],
    ])
    return Rz @ Ry @ Rx


def normalize_angle(angle_degrees: float) -> float:
    """Wrap an angle in degrees into (-180, 180]"""
    angle = float(angle_degrees)
    while angle > 180.0:
        angle -= 360.0
    while angle <= -180.0:
        angle += 360.0
    return angle
