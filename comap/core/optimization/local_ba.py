"""
Local bundle adjustment between a query window and a candidate window

All window poses are expressed in the frame of the first query keyframe,
which is held at identity. The candidate-window anchor block therefore holds
the query-candidate relative transform, whose covariance is estimated from
the problem Jacobian after the solve.
"""

import logging
import time
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..map_model import Keyframe, LocalLandmark
from .builder import ProblemBuilder, diagonal_sqrt_info, pose_key
from .config import LocalBAConfig, SolverConfig
from .covariance import ResultSink, estimate_covariance
from .errors import MapStructureError, MissingParameterBlockError
from .loss import CauchyLoss
from .solver import OptimizationSummary, Solver

logger = logging.getLogger(__name__)


class LocalBundleAdjustment:
    """
    Args:
        config: LocalBAConfig or None (uses defaults)
        solver_config: SolverConfig or None (uses defaults)
        sink: Optional receiver of the covariance Jacobian and result
    """

    def __init__(
        self,
        config: Optional[LocalBAConfig] = None,
        solver_config: Optional[SolverConfig] = None,
        sink: Optional[ResultSink] = None,
    ):
        self.config = config or LocalBAConfig()
        self.solver = Solver(solver_config)
        self.sink = sink
        self.logger = logging.getLogger(__name__)

    def run(
        self,
        landmarks: Sequence[LocalLandmark],
        query: Sequence[Keyframe],
        candidate: Sequence[Keyframe],
        T_s1s2: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray, OptimizationSummary]:
        """
        Refine the query-candidate transform and local landmark positions

        Args:
            landmarks: Local landmarks in the query-anchor frame (updated in place)
            query: Query window, anchor first
            candidate: Candidate window, anchor first
            T_s1s2: Initial transform from the candidate anchor to the query anchor

        Returns:
            (T_query_candidate, 6x6 covariance, summary)

        Raises:
            MapStructureError: an empty window
            MissingParameterBlockError: a landmark is observed by a keyframe
                outside both windows
        """
        start = time.time()
        if not query or not candidate:
            raise MapStructureError("Local BA needs non-empty query and candidate windows")

        cfg = self.config
        summary = OptimizationSummary(procedure="LBA")
        builder = ProblemBuilder()
        problem = builder.problem

        q_anchor = query[0]
        c_anchor = candidate[0]
        builder.attach_keyframe(q_anchor, T_init=np.eye(4), fix_pose=True)
        for kf in query[1:]:
            builder.attach_keyframe(kf, T_init=q_anchor.T_sw @ kf.T_ws)
        for kf in candidate:
            builder.attach_keyframe(kf, T_init=T_s1s2 @ c_anchor.T_sw @ kf.T_ws)

        windows = {kf.id: kf for kf in list(query) + list(candidate)}
        loss = CauchyLoss(cfg.loss_scale)
        lm_keys = []
        for i, lm in enumerate(landmarks):
            key = builder.attach_landmark(("local", i), lm.position)
            lm_keys.append(key)
            for kf_id, feat in lm.observations.items():
                kf = windows.get(tuple(kf_id))
                if kf is None:
                    self.logger.error(f"Local landmark {i} observed by keyframe {kf_id} outside both windows")
                    raise MissingParameterBlockError(pose_key(kf_id))
                if kf.invalid:
                    continue
                builder.add_reprojection(kf, feat, key, loss)
                summary.observations_total += 1
        summary.landmarks_included = len(lm_keys)

        sqrt_info = diagonal_sqrt_info(cfg.odometry_rotation_weight, cfg.odometry_translation_weight)
        for window in (candidate, query):
            anchor = window[0]
            for kf in window[1:]:
                builder.add_between(anchor.id, kf.id, anchor.T_sw @ kf.T_ws, sqrt_info, loss=loss)
                summary.sequential_edges += 1

        summary.solver = self.solver.solve(problem, cfg.max_iterations)
        T_query_candidate = builder.pose(c_anchor.id)

        eval_keys: List = [pose_key(kf.id) for kf in candidate]
        eval_keys += [pose_key(kf.id) for kf in query[1:]]
        eval_keys += lm_keys
        covariance = estimate_covariance(problem, eval_keys, size=6, sink=self.sink, name="lba")

        for lm, key in zip(landmarks, lm_keys):
            lm.position = builder.position(key)

        summary.duration = time.time() - start
        summary.log(self.logger)
        return T_query_candidate, covariance, summary
