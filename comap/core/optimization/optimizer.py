"""
Map optimizer facade

Single entry point for the five optimization procedures of the
collaborative mapping server:

    global_bundle_adjustment      GBA over one map, with outlier pre-pass
    local_bundle_adjustment       query/candidate window alignment + covariance
    optimize_relative_pose        two-view relative pose with inlier count
    pose_graph_optimization       6-DoF pose graph
    pose_graph_optimization_4dof  yaw + position pose graph

Procedures mutate the map passed in; callers serialize access per map.
Independent maps may be optimized from concurrent threads.

Usage:
    from comap.core.optimization import MapOptimizer, OptimizationConfig

    optimizer = MapOptimizer(OptimizationConfig())
    summary = optimizer.global_bundle_adjustment(slam_map)
"""

import logging
from typing import List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..map_model import Keyframe, KeyframeId, Landmark, LandmarkId, LocalLandmark, SlamMap
from ..performance_monitor import PerformanceMonitor
from .config import OptimizationConfig
from .covariance import ResultSink
from .global_ba import GlobalBundleAdjustment
from .local_ba import LocalBundleAdjustment
from .pose_graph import PoseGraphOptimizer
from .relative_pose import RelativePoseOptimizer
from .solver import OptimizationSummary

logger = logging.getLogger(__name__)


class MapOptimizer:
    """
    Args:
        config: OptimizationConfig or None (uses defaults)
        sink: Optional receiver of LBA Jacobians and covariances
        monitor: Optional shared PerformanceMonitor
    """

    def __init__(
        self,
        config: Optional[OptimizationConfig] = None,
        sink: Optional[ResultSink] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        self.config = config or OptimizationConfig()
        self.logger = logging.getLogger(__name__)

        # Configure logging
        logging.basicConfig(level=getattr(logging, self.config.log_level))

        self.monitor = monitor or PerformanceMonitor()
        self.gba = GlobalBundleAdjustment(self.config.gba, self.config.solver)
        self.lba = LocalBundleAdjustment(self.config.lba, self.config.solver, sink)
        self.relative_pose = RelativePoseOptimizer(self.config.relative_pose, self.config.solver)
        self.pose_graph = PoseGraphOptimizer(self.config.pose_graph, self.config.solver)

        self.logger.info(
            f"MapOptimizer initialized ({self.config.solver.num_threads} threads, "
            f"{self.config.solver.trust_region}/{self.config.solver.linear_solver})"
        )

    def global_bundle_adjustment(
        self,
        slam_map: SlamMap,
        max_iterations: Optional[int] = None,
        time_limit: Optional[float] = None,
        visual_only: Optional[bool] = None,
        outlier_removal: Optional[bool] = None,
    ) -> OptimizationSummary:
        """
        Jointly refine all poses (and velocity/bias) and landmarks of a map

        Raises:
            CameraModelError: a keyframe's camera cannot be resolved
            MissingPredecessorError: visual-inertial mode and a non-root
                keyframe has no valid predecessor
        """
        with self.monitor.measure("GBA", {"map_id": slam_map.map_id}):
            return self.gba.run(slam_map, max_iterations, time_limit, visual_only, outlier_removal)

    def local_bundle_adjustment(
        self,
        landmarks: Sequence[LocalLandmark],
        query: Sequence[Keyframe],
        candidate: Sequence[Keyframe],
        T_s1s2: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray, OptimizationSummary]:
        """
        Refine the query/candidate relative transform

        Returns:
            (T_query_candidate, 6x6 covariance, summary)
        """
        with self.monitor.measure("LBA"):
            return self.lba.run(landmarks, query, candidate, T_s1s2)

    def optimize_relative_pose(
        self,
        kf1: Keyframe,
        kf2: Keyframe,
        landmarks1: Mapping[LandmarkId, Landmark],
        matches: List[Optional[Landmark]],
        T_12: np.ndarray,
        threshold: Optional[float] = None,
    ) -> Tuple[int, np.ndarray, OptimizationSummary]:
        """
        Refine a two-view relative pose

        Returns:
            (inlier count, T_c1_c2, summary); ignore the transform when the
            count is 0
        """
        with self.monitor.measure("RelativePose"):
            return self.relative_pose.run(kf1, kf2, landmarks1, matches, T_12, threshold)

    def pose_graph_optimization(
        self,
        slam_map: SlamMap,
        corrected_poses: Optional[Mapping[KeyframeId, np.ndarray]] = None,
    ) -> OptimizationSummary:
        with self.monitor.measure("PGO-6DoF", {"map_id": slam_map.map_id}):
            return self.pose_graph.run_6dof(slam_map, corrected_poses)

    def pose_graph_optimization_4dof(
        self,
        slam_map: SlamMap,
        corrected_poses: Optional[Mapping[KeyframeId, np.ndarray]] = None,
    ) -> OptimizationSummary:
        with self.monitor.measure("PGO-4DoF", {"map_id": slam_map.map_id}):
            return self.pose_graph.run_4dof(slam_map, corrected_poses)

    def get_performance_summary(self):
        return self.monitor.get_summary()
