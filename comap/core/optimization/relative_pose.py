"""
Two-view relative pose refinement from landmark correspondences

The relative transform T_c1_c2 maps camera-2 points into camera 1. Every
correspondence contributes two reprojection factors: kf1's keypoint against
kf2's landmark seen through T_c1_c2, and kf2's keypoint against kf1's
landmark seen through its inverse.
"""

import logging
import time
from typing import List, Mapping, Optional, Tuple

import numpy as np

from ..map_model import Keyframe, Landmark, LandmarkId
from .builder import ProblemBuilder
from .config import RelativePoseConfig, SolverConfig
from .factors import RelativeProjectionType
from .geometry import inv_T, transform_point
from .loss import CauchyLoss
from .outliers import OutlierClassifier
from .solver import OptimizationSummary, Solver

logger = logging.getLogger(__name__)


class RelativePoseOptimizer:
    """
    Args:
        config: RelativePoseConfig or None (uses defaults)
        solver_config: SolverConfig or None (uses defaults)
    """

    def __init__(
        self,
        config: Optional[RelativePoseConfig] = None,
        solver_config: Optional[SolverConfig] = None,
    ):
        self.config = config or RelativePoseConfig()
        self.solver = Solver(solver_config)
        self.logger = logging.getLogger(__name__)

    def run(
        self,
        kf1: Keyframe,
        kf2: Keyframe,
        landmarks1: Mapping[LandmarkId, Landmark],
        matches: List[Optional[Landmark]],
        T_12: np.ndarray,
        threshold: Optional[float] = None,
    ) -> Tuple[int, np.ndarray, OptimizationSummary]:
        """
        Refine T_c1_c2 and prune outlier correspondences

        Args:
            kf1: First keyframe
            kf2: Second keyframe
            landmarks1: Landmark lookup for kf1's landmark slots
            matches: kf2-side landmark per kf1 keypoint or None; outliers
                are set to None in place
            T_12: Initial transform from camera 2 to camera 1
            threshold: Pixel threshold on either direction's residual norm
                (config default when None)

        Returns:
            (inlier count, refined T_c1_c2, summary). The count is 0 when
            fewer than min_inliers correspondences survive, and the returned
            transform must then be ignored.
        """
        start = time.time()
        cfg = self.config
        threshold = cfg.outlier_threshold if threshold is None else threshold
        summary = OptimizationSummary(procedure="RelativePose")

        builder = ProblemBuilder()
        builder.attach_relative_pose(T_12)
        loss = CauchyLoss(cfg.loss_scale)

        T_c1w = inv_T(kf1.T_wc)
        T_c2w = inv_T(kf2.T_wc)
        pairs: List[Tuple[int, int]] = []
        match_indices: List[int] = []
        for i, lm2 in enumerate(matches):
            if lm2 is None or lm2.invalid or i >= len(kf1.landmarks):
                continue
            lm1 = landmarks1.get(kf1.landmarks[i]) if kf1.landmarks[i] is not None else None
            if lm1 is None or lm1.invalid:
                continue
            i2 = lm2.feature_index(kf2.id)
            if i2 < 0:
                continue

            normal = builder.add_relative_reprojection(
                kf1, i, transform_point(T_c2w, lm2.position), RelativeProjectionType.NORMAL, loss
            )
            inverse = builder.add_relative_reprojection(
                kf2, i2, transform_point(T_c1w, lm1.position), RelativeProjectionType.INVERSE, loss
            )
            pairs.append((normal, inverse))
            match_indices.append(i)
        summary.correspondences = len(pairs)

        problem = builder.problem
        if not pairs:
            self.logger.warning(f"No usable correspondences between {kf1.id} and {kf2.id}")
            summary.duration = time.time() - start
            return 0, np.asarray(T_12, dtype=np.float64).copy(), summary

        self.solver.solve(problem, cfg.max_iterations)

        classifier = OutlierClassifier(problem)
        inliers, outliers = classifier.classify_pairs(pairs, threshold)
        for k in outliers:
            matches[match_indices[k]] = None
            classifier.remove(pairs[k])
        summary.inliers = len(inliers)

        if len(inliers) < cfg.min_inliers:
            self.logger.info(
                f"Relative pose {kf1.id} -> {kf2.id}: {len(inliers)} inliers, "
                f"below {cfg.min_inliers}"
            )
            summary.duration = time.time() - start
            return 0, builder.relative_pose(), summary

        summary.solver = self.solver.solve(problem, cfg.max_iterations)
        summary.duration = time.time() - start
        summary.log(self.logger)
        return len(inliers), builder.relative_pose(), summary
