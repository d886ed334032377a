"""
Global bundle adjustment

Joint refinement of all valid keyframe poses (plus velocity and biases in
visual-inertial mode) and all sufficiently observed landmark positions of
one map, preceded by an optional short solve whose large reprojection
residuals are removed from the map as outliers.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Hashable, List, Optional, Set, Tuple

from ..map_model import KeyframeId, SlamMap
from .builder import ProblemBuilder, diagonal_sqrt_info, landmark_key, pose_key
from .config import GlobalBAConfig, SolverConfig
from .errors import MissingPredecessorError
from .loss import CauchyLoss
from .outliers import OutlierClassifier
from .solver import OptimizationSummary, Solver

logger = logging.getLogger(__name__)


@dataclass
class _Observation:
    residual_id: int
    keyframe_id: KeyframeId
    landmark_id: Hashable
    feature_index: int


@dataclass
class _BuiltProblem:
    builder: ProblemBuilder
    observations: List[_Observation] = field(default_factory=list)
    included: List[Hashable] = field(default_factory=list)
    excluded: Set[Hashable] = field(default_factory=set)
    imu_factors: int = 0
    loop_edges: int = 0


class GlobalBundleAdjustment:
    """
    Global bundle adjustment over one SlamMap

    Args:
        config: GlobalBAConfig or None (uses defaults)
        solver_config: SolverConfig or None (uses defaults)
    """

    def __init__(
        self,
        config: Optional[GlobalBAConfig] = None,
        solver_config: Optional[SolverConfig] = None,
    ):
        self.config = config or GlobalBAConfig()
        self.solver = Solver(solver_config)
        self.logger = logging.getLogger(__name__)

    def run(
        self,
        slam_map: SlamMap,
        max_iterations: Optional[int] = None,
        time_limit: Optional[float] = None,
        visual_only: Optional[bool] = None,
        outlier_removal: Optional[bool] = None,
    ) -> OptimizationSummary:
        """
        Optimize the map in place

        Args:
            slam_map: Map to optimize
            max_iterations: Main-pass iteration cap (config default when None)
            time_limit: Main-pass time budget in seconds (config default when None)
            visual_only: Skip velocity/bias blocks and IMU factors
            outlier_removal: Run the outlier pre-pass

        Returns:
            OptimizationSummary

        Raises:
            CameraModelError: a keyframe's camera cannot be resolved
            MissingPredecessorError: visual-inertial mode and a non-root
                keyframe has no valid predecessor
        """
        start = time.time()
        cfg = self.config
        max_iterations = max_iterations or cfg.max_iterations
        time_limit = cfg.time_limit if time_limit is None else time_limit
        visual_only = cfg.visual_only if visual_only is None else visual_only
        outlier_removal = cfg.outlier_removal if outlier_removal is None else outlier_removal

        summary = OptimizationSummary(procedure="GBA")
        self.logger.info(
            f"GBA start: map {slam_map.map_id}, {len(slam_map.keyframes)} keyframes, "
            f"{len(slam_map.landmarks)} landmarks"
        )

        if outlier_removal:
            removed, total = self._remove_outliers(slam_map, visual_only)
            summary.observations_removed = removed
            summary.observations_total = total

        built = self._build(slam_map, visual_only, loop_loss=CauchyLoss(cfg.loss_scale))
        summary.landmarks_included = len(built.included)
        summary.landmarks_excluded = len(built.excluded)
        summary.imu_factors = built.imu_factors
        summary.loop_edges = built.loop_edges

        summary.solver = self.solver.solve(built.builder.problem, max_iterations, time_limit)
        self._write_back(slam_map, built, visual_only)

        slam_map.clean()
        summary.duration = time.time() - start
        summary.log(self.logger)
        return summary

    def _remove_outliers(self, slam_map: SlamMap, visual_only: bool) -> Tuple[int, int]:
        """Short solve, then erase observations whose residual exceeds the threshold"""
        cfg = self.config
        built = self._build(slam_map, visual_only, loop_loss=None)
        problem = built.builder.problem
        self.solver.solve(problem, cfg.outlier_iterations)

        by_id = {obs.residual_id: obs for obs in built.observations}
        classifier = OutlierClassifier(problem)
        _, outliers = classifier.classify(list(by_id), cfg.outlier_threshold)
        for rid in outliers:
            obs = by_id[rid]
            kf = slam_map.keyframe(obs.keyframe_id)
            lm = slam_map.landmark(obs.landmark_id)
            kf.erase_landmark(obs.feature_index)
            lm.erase_observation(obs.keyframe_id)
        classifier.remove(outliers)

        self.logger.info(f"GBA removed {len(outliers)} of {len(by_id)} observations")
        return len(outliers), len(by_id)

    def _build(self, slam_map: SlamMap, visual_only: bool, loop_loss) -> _BuiltProblem:
        cfg = self.config
        builder = ProblemBuilder()
        problem = builder.problem
        built = _BuiltProblem(builder)
        keyframes = slam_map.valid_keyframes()

        for kf in keyframes:
            fix = kf.id == slam_map.anchor_id or (cfg.fix_loaded_keyframes and kf.is_loaded)
            builder.attach_keyframe(kf, fix_pose=fix, with_speed_bias=not visual_only)

        if not visual_only:
            for kf in keyframes:
                pred = slam_map.predecessor(kf)
                if pred is None or pred.invalid:
                    if kf.frame_id != 0:
                        reason = "no predecessor" if pred is None else "invalid predecessor"
                        self.logger.error(f"Keyframe {kf.id}: {reason}")
                        raise MissingPredecessorError(kf.id, reason)
                    continue
                if builder.add_imu(pred, kf) is not None:
                    built.imu_factors += 1

        reprojection_loss = CauchyLoss(cfg.loss_scale)
        for lm in slam_map.valid_landmarks():
            observers = []
            for kf_id, feat in lm.observations.items():
                kf = slam_map.keyframe(kf_id)
                if kf is None or kf.invalid:
                    continue
                observers.append((kf, feat))
            if len(observers) < cfg.min_observations:
                built.excluded.add(lm.id)
                continue

            key = builder.attach_landmark(lm.id, lm.position)
            built.included.append(lm.id)
            for kf, feat in observers:
                rid = builder.add_reprojection(kf, feat, key, reprojection_loss)
                built.observations.append(_Observation(rid, kf.id, lm.id, feat))

        if cfg.use_loop_constraints:
            sqrt_info = diagonal_sqrt_info(cfg.loop_rotation_weight, cfg.loop_translation_weight)
            for loop in slam_map.loop_constraints:
                if not (problem.has_parameter_block(pose_key(loop.kf1_id))
                        and problem.has_parameter_block(pose_key(loop.kf2_id))):
                    self.logger.warning(
                        f"Loop keyframe missing, skipping loop between {loop.kf1_id} and {loop.kf2_id}"
                    )
                    continue
                builder.add_between(loop.kf1_id, loop.kf2_id, loop.T_s1_s2, sqrt_info, loss=loop_loss)
                built.loop_edges += 1

        self.logger.debug(
            f"GBA problem: {len(keyframes)} keyframes, landmarks included|not "
            f"{len(built.included)}|{len(built.excluded)}, {len(built.observations)} observations"
        )
        return built

    def _write_back(self, slam_map: SlamMap, built: _BuiltProblem, visual_only: bool):
        builder = built.builder
        problem = builder.problem
        for kf in slam_map.keyframes.values():
            if kf.invalid:
                self.logger.warning(f"Keyframe {kf.id}: invalid")
                continue
            if not problem.is_constant(pose_key(kf.id)):
                kf.set_pose(builder.pose(kf.id))
            kf.pose_optimized = True
            if not visual_only:
                velocity, bias_acc, bias_gyr = builder.speed_bias(kf.id)
                kf.set_velocity(velocity)
                kf.set_bias(bias_acc, bias_gyr)
                kf.vel_bias_optimized = True
            kf.is_gba_optimized = True

        for lm_id in built.included:
            lm = slam_map.landmark(lm_id)
            lm.set_position(builder.position(landmark_key(lm_id)))
            lm.optimized = True
            lm.is_gba_optimized = True
