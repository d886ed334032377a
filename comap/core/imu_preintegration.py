"""
IMU preintegration between two consecutive keyframes

Midpoint integration of accelerometer/gyroscope samples into relative
position, rotation and velocity increments, with first-order bias Jacobians
and propagated covariance. The error state is ordered [p, q, v, ba, bg].
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from .optimization.geometry import (
    skew,
    quat_multiply,
    quat_inverse,
    quat_normalize,
    quat_to_rotation,
    delta_quat,
)

logger = logging.getLogger(__name__)

GRAVITY = np.array([0.0, 0.0, 9.81])

O_P, O_R, O_V, O_BA, O_BG = 0, 3, 6, 9, 12


@dataclass
class ImuNoise:
    """Continuous-time IMU noise densities and bias random walks"""

    acc_n: float = 0.08
    gyr_n: float = 0.004
    acc_w: float = 0.00004
    gyr_w: float = 2.0e-6

    def matrix(self) -> np.ndarray:
        diag = np.concatenate([
            np.full(3, self.acc_n ** 2),
            np.full(3, self.gyr_n ** 2),
            np.full(3, self.acc_n ** 2),
            np.full(3, self.gyr_n ** 2),
            np.full(3, self.acc_w ** 2),
            np.full(3, self.gyr_w ** 2),
        ])
        return np.diag(diag)


class ImuPreintegration:
    """
    Preintegrated IMU measurements from keyframe i to keyframe j

    Raw samples are buffered so the increments can be repropagated when the
    linearization biases change.
    """

    def __init__(
        self,
        acc_0: np.ndarray,
        gyr_0: np.ndarray,
        linearized_ba: Optional[np.ndarray] = None,
        linearized_bg: Optional[np.ndarray] = None,
        noise: Optional[ImuNoise] = None,
    ):
        self.noise = noise or ImuNoise()
        self.linearized_acc = np.asarray(acc_0, dtype=np.float64).copy()
        self.linearized_gyr = np.asarray(gyr_0, dtype=np.float64).copy()
        self.linearized_ba = np.zeros(3) if linearized_ba is None else np.asarray(linearized_ba, dtype=np.float64).copy()
        self.linearized_bg = np.zeros(3) if linearized_bg is None else np.asarray(linearized_bg, dtype=np.float64).copy()

        self.dt_buf: List[float] = []
        self.acc_buf: List[np.ndarray] = []
        self.gyr_buf: List[np.ndarray] = []

        self._reset()

    def _reset(self):
        self.acc_0 = self.linearized_acc.copy()
        self.gyr_0 = self.linearized_gyr.copy()
        self.sum_dt = 0.0
        self.delta_p = np.zeros(3)
        self.delta_q = np.array([0.0, 0.0, 0.0, 1.0])
        self.delta_v = np.zeros(3)
        self.jacobian = np.eye(15)
        self.covariance = np.zeros((15, 15))

    @property
    def num_measurements(self) -> int:
        return len(self.dt_buf)

    def push_back(self, dt: float, acc: np.ndarray, gyr: np.ndarray):
        """Append one IMU sample and integrate it"""
        acc = np.asarray(acc, dtype=np.float64)
        gyr = np.asarray(gyr, dtype=np.float64)
        self.dt_buf.append(float(dt))
        self.acc_buf.append(acc)
        self.gyr_buf.append(gyr)
        self._propagate(float(dt), acc, gyr)

    def repropagate(self, linearized_ba: np.ndarray, linearized_bg: np.ndarray):
        """Re-integrate all buffered samples around new bias estimates"""
        self.linearized_ba = np.asarray(linearized_ba, dtype=np.float64).copy()
        self.linearized_bg = np.asarray(linearized_bg, dtype=np.float64).copy()
        self._reset()
        for dt, acc, gyr in zip(self.dt_buf, self.acc_buf, self.gyr_buf):
            self._propagate(dt, acc, gyr)

    def _propagate(self, dt: float, acc_1: np.ndarray, gyr_1: np.ndarray):
        ba = self.linearized_ba
        bg = self.linearized_bg
        acc_0 = self.acc_0
        gyr_0 = self.gyr_0

        R0 = quat_to_rotation(self.delta_q)
        un_acc_0 = R0 @ (acc_0 - ba)
        un_gyr = 0.5 * (gyr_0 + gyr_1) - bg
        result_q = quat_normalize(quat_multiply(self.delta_q, delta_quat(un_gyr * dt)))
        R1 = quat_to_rotation(result_q)
        un_acc_1 = R1 @ (acc_1 - ba)
        un_acc = 0.5 * (un_acc_0 + un_acc_1)
        result_p = self.delta_p + self.delta_v * dt + 0.5 * un_acc * dt * dt
        result_v = self.delta_v + un_acc * dt

        R_w_x = skew(un_gyr)
        R_a_0_x = skew(acc_0 - ba)
        R_a_1_x = skew(acc_1 - ba)
        I3 = np.eye(3)
        rot_step = I3 - R_w_x * dt

        F = np.eye(15)
        F[0:3, 3:6] = (-0.25 * R0 @ R_a_0_x * dt * dt
                       - 0.25 * R1 @ R_a_1_x @ rot_step * dt * dt)
        F[0:3, 6:9] = I3 * dt
        F[0:3, 9:12] = -0.25 * (R0 + R1) * dt * dt
        F[0:3, 12:15] = 0.25 * R1 @ R_a_1_x * dt * dt * dt
        F[3:6, 3:6] = rot_step
        F[3:6, 12:15] = -I3 * dt
        F[6:9, 3:6] = (-0.5 * R0 @ R_a_0_x * dt
                       - 0.5 * R1 @ R_a_1_x @ rot_step * dt)
        F[6:9, 9:12] = -0.5 * (R0 + R1) * dt
        F[6:9, 12:15] = 0.5 * R1 @ R_a_1_x * dt * dt

        V = np.zeros((15, 18))
        V[0:3, 0:3] = 0.25 * R0 * dt * dt
        V[0:3, 3:6] = -0.125 * R1 @ R_a_1_x * dt * dt * dt
        V[0:3, 6:9] = 0.25 * R1 * dt * dt
        V[0:3, 9:12] = V[0:3, 3:6]
        V[3:6, 3:6] = 0.5 * I3 * dt
        V[3:6, 9:12] = 0.5 * I3 * dt
        V[6:9, 0:3] = 0.5 * R0 * dt
        V[6:9, 3:6] = -0.25 * R1 @ R_a_1_x * dt * dt
        V[6:9, 6:9] = 0.5 * R1 * dt
        V[6:9, 9:12] = V[6:9, 3:6]
        V[9:12, 12:15] = I3 * dt
        V[12:15, 15:18] = I3 * dt

        self.jacobian = F @ self.jacobian
        self.covariance = F @ self.covariance @ F.T + V @ self.noise.matrix() @ V.T

        self.delta_p = result_p
        self.delta_q = result_q
        self.delta_v = result_v
        self.sum_dt += dt
        self.acc_0 = acc_1
        self.gyr_0 = gyr_1

    def sqrt_information(self) -> np.ndarray:
        """Upper-triangular square root of the inverse covariance"""
        cov = 0.5 * (self.covariance + self.covariance.T)
        information = np.linalg.inv(cov)
        information = 0.5 * (information + information.T)
        return np.linalg.cholesky(information).T

    def corrected_deltas(
        self, ba_i: np.ndarray, bg_i: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """First-order bias-corrected (delta_p, delta_q, delta_v)"""
        J = self.jacobian
        dba = ba_i - self.linearized_ba
        dbg = bg_i - self.linearized_bg
        corrected_q = quat_multiply(self.delta_q, delta_quat(J[O_R:O_R + 3, O_BG:O_BG + 3] @ dbg))
        corrected_v = (self.delta_v + J[O_V:O_V + 3, O_BA:O_BA + 3] @ dba
                       + J[O_V:O_V + 3, O_BG:O_BG + 3] @ dbg)
        corrected_p = (self.delta_p + J[O_P:O_P + 3, O_BA:O_BA + 3] @ dba
                       + J[O_P:O_P + 3, O_BG:O_BG + 3] @ dbg)
        return corrected_p, corrected_q, corrected_v

    def evaluate(
        self,
        p_i: np.ndarray, q_i: np.ndarray, v_i: np.ndarray, ba_i: np.ndarray, bg_i: np.ndarray,
        p_j: np.ndarray, q_j: np.ndarray, v_j: np.ndarray, ba_j: np.ndarray, bg_j: np.ndarray,
    ) -> np.ndarray:
        """Unweighted 15-dim residual [p, q, v, ba, bg]"""
        corrected_p, corrected_q, corrected_v = self.corrected_deltas(ba_i, bg_i)
        dt = self.sum_dt
        R_i_inv = quat_to_rotation(q_i).T

        residual = np.empty(15)
        residual[O_P:O_P + 3] = R_i_inv @ (0.5 * GRAVITY * dt * dt + p_j - p_i - v_i * dt) - corrected_p
        q_err = quat_multiply(quat_inverse(corrected_q), quat_multiply(quat_inverse(q_i), q_j))
        residual[O_R:O_R + 3] = 2.0 * q_err[:3]
        residual[O_V:O_V + 3] = R_i_inv @ (GRAVITY * dt + v_j - v_i) - corrected_v
        residual[O_BA:O_BA + 3] = ba_j - ba_i
        residual[O_BG:O_BG + 3] = bg_j - bg_i
        return residual
