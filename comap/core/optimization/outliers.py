"""
Residual-based outlier classification

Classifies residual blocks by the Euclidean norm of their raw (loss-free)
residual. Acting on the result (erasing observations, nulling matches,
removing residual blocks) is left to the calling procedure.
"""

import logging
from typing import List, Sequence, Tuple

import numpy as np

from .problem import Problem

logger = logging.getLogger(__name__)


class OutlierClassifier:
    """
    Args:
        problem: Problem holding the residual blocks to classify
    """

    def __init__(self, problem: Problem):
        self.problem = problem

    def residual_norms(self, ids: Sequence[int]) -> np.ndarray:
        residuals = self.problem.evaluate_residual_blocks(ids, apply_loss=False)
        return np.array([np.linalg.norm(r) for r in residuals], dtype=np.float64)

    def classify(self, ids: Sequence[int], threshold: float) -> Tuple[List[int], List[int]]:
        """
        Split residual blocks at a norm threshold

        Returns:
            (inlier ids, outlier ids); a norm equal to the threshold is an inlier
        """
        ids = list(ids)
        if not ids:
            return [], []
        norms = self.residual_norms(ids)
        inliers = [rid for rid, n in zip(ids, norms) if n <= threshold]
        outliers = [rid for rid, n in zip(ids, norms) if n > threshold]
        logger.debug(f"Classified {len(outliers)} of {len(ids)} residual blocks as outliers (threshold {threshold})")
        return inliers, outliers

    def classify_pairs(
        self, pairs: Sequence[Tuple[int, int]], threshold: float
    ) -> Tuple[List[int], List[int]]:
        """
        Classify paired residual blocks; a pair is an outlier if either exceeds the threshold

        Returns:
            (inlier pair indices, outlier pair indices)
        """
        if not pairs:
            return [], []
        norms_a = self.residual_norms([a for a, _ in pairs])
        norms_b = self.residual_norms([b for _, b in pairs])
        bad = (norms_a > threshold) | (norms_b > threshold)
        inliers = [i for i in range(len(pairs)) if not bad[i]]
        outliers = [i for i in range(len(pairs)) if bad[i]]
        return inliers, outliers

    def remove(self, ids: Sequence[int]):
        for rid in ids:
            self.problem.remove_residual_block(rid)
