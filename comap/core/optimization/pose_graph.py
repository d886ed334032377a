"""
Pose-graph optimization over sequential, sliding-window and loop edges

Two variants share edge enumeration and write-back:
- 6-DoF: full pose blocks tied by relative-pose (between) factors
- 4-DoF: yaw + position blocks with pitch/roll held at their current values,
  for visual-inertial maps where gravity makes pitch/roll observable

Externally corrected poses only initialize the solve. After solving, each
landmark is re-anchored so that its position relative to its reference
keyframe is unchanged.
"""

import logging
import time
from dataclasses import replace
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from ..map_model import Keyframe, KeyframeId, LoopConstraint, SlamMap
from .builder import ProblemBuilder, diagonal_sqrt_info, pose_key, yaw_key
from .config import PoseGraphConfig, SolverConfig
from .errors import MapStructureError, MissingParameterBlockError
from .geometry import R2ypr, inv_T, transform_point
from .loss import HuberLoss
from .solver import OptimizationSummary, Solver

logger = logging.getLogger(__name__)

SEQUENTIAL = "sequential"
WINDOW = "window"


class PoseGraphOptimizer:
    """
    Args:
        config: PoseGraphConfig or None (uses defaults)
        solver_config: SolverConfig or None (uses defaults)
    """

    def __init__(
        self,
        config: Optional[PoseGraphConfig] = None,
        solver_config: Optional[SolverConfig] = None,
    ):
        self.config = config or PoseGraphConfig()
        self.solver_config = solver_config or SolverConfig()
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # 6-DoF
    # ------------------------------------------------------------------

    def run_6dof(
        self,
        slam_map: SlamMap,
        corrected_poses: Optional[Mapping[KeyframeId, np.ndarray]] = None,
    ) -> OptimizationSummary:
        """
        Refine all keyframe poses from structural and loop edges

        Args:
            slam_map: Map to optimize in place
            corrected_poses: Optional {KeyframeId: T_ws} used as initial values

        Returns:
            OptimizationSummary

        Raises:
            CameraModelError: a keyframe's camera cannot be resolved
            MapStructureError: a loop covariance is not positive definite
            MissingParameterBlockError: a landmark's reference keyframe was
                not part of the problem
        """
        start = time.time()
        cfg = self.config
        corrected_poses = corrected_poses or {}
        summary = OptimizationSummary(procedure="PGO-6DoF")
        builder = ProblemBuilder()
        problem = builder.problem

        keyframes = slam_map.valid_keyframes()
        old_poses = {kf.id: kf.T_ws.copy() for kf in keyframes}
        for kf in keyframes:
            T_init = corrected_poses.get(kf.id, kf.T_ws)
            builder.attach_keyframe(kf, T_init=T_init, fix_pose=self._is_fixed(slam_map, kf))
        self._check_anchor(slam_map)

        for loop in slam_map.loop_constraints:
            if not self._loop_attached(problem, loop, pose_key):
                continue
            builder.add_between(loop.kf1_id, loop.kf2_id, loop.T_s1_s2, self._loop_sqrt_info(loop))
            summary.loop_edges += 1

        sqrt_info = diagonal_sqrt_info(cfg.sequential_rotation_weight, cfg.sequential_translation_weight)
        for kf_i, kf_j, kind in self._structural_edges(slam_map, keyframes):
            builder.add_between(kf_i.id, kf_j.id, kf_i.T_sw @ kf_j.T_ws, sqrt_info)
            self._count_edge(summary, kind)

        solver = Solver(replace(self.solver_config, trust_region="dogleg", linear_solver="sparse_normal_cholesky"))
        summary.solver = solver.solve(problem, cfg.max_iterations)

        new_poses = {}
        for kf in keyframes:
            if problem.is_constant(pose_key(kf.id)):
                new_poses[kf.id] = kf.T_ws
            else:
                new_poses[kf.id] = builder.pose(kf.id)
        self._write_back(slam_map, keyframes, old_poses, new_poses)

        summary.duration = time.time() - start
        summary.log(self.logger)
        return summary

    def _loop_sqrt_info(self, loop: LoopConstraint) -> np.ndarray:
        cfg = self.config
        policy = cfg.loop_weight_policy_6dof
        if policy == "fixed":
            return diagonal_sqrt_info(cfg.sequential_rotation_weight, cfg.sequential_translation_weight)
        covariance = np.asarray(loop.covariance, dtype=np.float64)
        if policy == "bucketed":
            trace = float(np.trace(covariance[3:6, 3:6]))
            return np.eye(6) * cfg.buckets.weight(trace)
        try:
            return np.linalg.cholesky(np.linalg.inv(covariance)).T
        except np.linalg.LinAlgError as e:
            raise MapStructureError(
                f"Loop {loop.kf1_id} -> {loop.kf2_id}: covariance is not positive definite"
            ) from e

    # ------------------------------------------------------------------
    # 4-DoF
    # ------------------------------------------------------------------

    def run_4dof(
        self,
        slam_map: SlamMap,
        corrected_poses: Optional[Mapping[KeyframeId, np.ndarray]] = None,
    ) -> OptimizationSummary:
        """
        Refine yaw and position of all keyframes, keeping pitch and roll

        Args:
            slam_map: Map to optimize in place
            corrected_poses: Optional {KeyframeId: T_ws}; their yaw and
                translation initialize the solve

        Returns:
            OptimizationSummary

        Raises:
            MissingParameterBlockError: a landmark's reference keyframe was
                not part of the problem
        """
        start = time.time()
        cfg = self.config
        corrected_poses = corrected_poses or {}
        summary = OptimizationSummary(procedure="PGO-4DoF")
        builder = ProblemBuilder()
        problem = builder.problem

        keyframes = slam_map.valid_keyframes()
        old_poses = {kf.id: kf.T_ws.copy() for kf in keyframes}
        attitude: Dict[KeyframeId, Tuple[float, float]] = {}
        yaw: Dict[KeyframeId, float] = {}
        for kf in keyframes:
            yaw[kf.id], pitch, roll = R2ypr(kf.T_ws[:3, :3])
            attitude[kf.id] = (pitch, roll)
            T_init = np.asarray(corrected_poses.get(kf.id, kf.T_ws), dtype=np.float64)
            builder.attach_keyframe_4dof(kf, T_init=T_init, fix_pose=self._is_fixed(slam_map, kf))
        self._check_anchor(slam_map)

        loop_loss = HuberLoss(cfg.loop_loss_scale)
        for loop in slam_map.loop_constraints:
            if not self._loop_attached(problem, loop, yaw_key):
                continue
            weight = self._loop_weight_4dof(loop)
            pitch, roll = attitude[tuple(loop.kf1_id)]
            builder.add_four_dof(
                loop.kf1_id,
                loop.kf2_id,
                np.asarray(loop.T_s1_s2)[:3, 3],
                loop.relative_yaw,
                pitch,
                roll,
                translation_weight=weight,
                yaw_weight=weight / 10.0,
                loss=loop_loss,
            )
            summary.loop_edges += 1

        for kf_i, kf_j, kind in self._structural_edges(slam_map, keyframes):
            pitch, roll = attitude[kf_i.id]
            t_ij = (kf_i.T_sw @ kf_j.T_ws)[:3, 3]
            builder.add_four_dof(kf_i.id, kf_j.id, t_ij, yaw[kf_j.id] - yaw[kf_i.id], pitch, roll)
            self._count_edge(summary, kind)

        solver = Solver(replace(
            self.solver_config,
            trust_region="trust_region_reflective",
            linear_solver=cfg.linear_solver_4dof,
        ))
        summary.solver = solver.solve(problem, cfg.max_iterations)

        new_poses = {}
        for kf in keyframes:
            if problem.is_constant(yaw_key(kf.id)):
                new_poses[kf.id] = kf.T_ws
            else:
                pitch, roll = attitude[kf.id]
                new_poses[kf.id] = builder.pose_4dof(kf.id, pitch, roll)
        self._write_back(slam_map, keyframes, old_poses, new_poses)

        summary.duration = time.time() - start
        summary.log(self.logger)
        return summary

    def _loop_weight_4dof(self, loop: LoopConstraint) -> float:
        cfg = self.config
        policy = cfg.loop_weight_policy_4dof
        if policy == "fixed":
            return cfg.sequential_translation_weight
        covariance = np.asarray(loop.covariance, dtype=np.float64)
        if policy == "bucketed":
            return cfg.buckets.weight(float(np.trace(covariance[3:6, 3:6])))
        variance = float(np.mean(np.diag(covariance)[3:6]))
        if variance <= 0.0:
            raise MapStructureError(
                f"Loop {loop.kf1_id} -> {loop.kf2_id}: non-positive translational variance"
            )
        return 1.0 / np.sqrt(variance)

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def _is_fixed(self, slam_map: SlamMap, kf: Keyframe) -> bool:
        cfg = self.config
        if kf.id == slam_map.anchor_id:
            return True
        if cfg.fix_gba_optimized_keyframes and kf.is_gba_optimized:
            return True
        return cfg.fix_loaded_keyframes and kf.is_loaded

    def _check_anchor(self, slam_map: SlamMap):
        anchor = slam_map.keyframe(slam_map.anchor_id)
        if anchor is None or anchor.invalid:
            self.logger.warning(f"Map {slam_map.map_id}: anchor keyframe {slam_map.anchor_id} missing")

    def _loop_attached(self, problem, loop: LoopConstraint, key_fn) -> bool:
        if problem.has_parameter_block(key_fn(loop.kf1_id)) and problem.has_parameter_block(key_fn(loop.kf2_id)):
            return True
        self.logger.warning(f"Loop keyframe missing, skipping loop between {loop.kf1_id} and {loop.kf2_id}")
        return False

    def _structural_edges(
        self, slam_map: SlamMap, keyframes: List[Keyframe]
    ) -> List[Tuple[Keyframe, Keyframe, str]]:
        """
        Sequential edges kf -> successor, then sliding-window edges from up
        to window_size predecessors to each keyframe; each ordered pair once
        """
        edges = []
        visited = set()
        for kf in keyframes:
            succ = slam_map.successor(kf)
            if succ is None or succ.invalid:
                continue
            visited.add((kf.id, succ.id))
            edges.append((kf, succ, SEQUENTIAL))

        for kf in keyframes:
            pred = kf
            for j in range(1, self.config.window_size + 1):
                if kf.frame_id - j <= 0:
                    break
                pred = slam_map.predecessor(pred)
                if pred is None:
                    break
                if pred.invalid or (pred.id, kf.id) in visited:
                    continue
                visited.add((pred.id, kf.id))
                edges.append((pred, kf, WINDOW))
        return edges

    @staticmethod
    def _count_edge(summary: OptimizationSummary, kind: str):
        if kind == SEQUENTIAL:
            summary.sequential_edges += 1
        else:
            summary.window_edges += 1

    def _write_back(
        self,
        slam_map: SlamMap,
        keyframes: List[Keyframe],
        old_poses: Dict[KeyframeId, np.ndarray],
        new_poses: Dict[KeyframeId, np.ndarray],
    ):
        # Resolve every landmark before touching the map so a bad reference
        # leaves it unchanged
        landmark_positions = []
        for lm in slam_map.valid_landmarks():
            ref = lm.reference_keyframe_id
            if ref is None:
                self.logger.warning(f"Landmark {lm.id}: no reference keyframe, position unchanged")
                continue
            ref = tuple(ref)
            if ref not in old_poses:
                self.logger.error(f"Landmark {lm.id}: reference keyframe {ref} not in pose graph")
                raise MissingParameterBlockError(pose_key(ref))
            p_s = transform_point(inv_T(old_poses[ref]), lm.position)
            landmark_positions.append((lm, transform_point(new_poses[ref], p_s)))

        for kf in keyframes:
            T_new = new_poses[kf.id]
            R_delta = T_new[:3, :3] @ old_poses[kf.id][:3, :3].T
            kf.set_pose(T_new)
            kf.set_velocity(R_delta @ kf.velocity)
            kf.pose_optimized = True

        for lm, position in landmark_positions:
            lm.set_position(position)
            lm.optimized = True
