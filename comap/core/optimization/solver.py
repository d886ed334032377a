"""
Solver driver

Runs scipy's trust-region least squares over the concatenated tangent
increments of all variable parameter blocks. Each evaluation maps the
increment through the block manifolds, so orientation blocks stay on their
manifold, and chains the factor Jacobians through the manifold update.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
from scipy.optimize import least_squares

from .config import SolverConfig
from .problem import Problem, BlockKey

logger = logging.getLogger(__name__)


class _TimeBudgetExceeded(Exception):
    pass


@dataclass
class SolverSummary:
    """Outcome of one solve"""

    initial_cost: float = 0.0
    final_cost: float = 0.0
    num_evaluations: int = 0
    num_jacobian_evaluations: int = 0
    num_parameters: int = 0
    num_residuals: int = 0
    termination: str = ""
    success: bool = False
    time_budget_exhausted: bool = False
    duration: float = 0.0

    def brief_report(self) -> str:
        return (
            f"cost {self.initial_cost:.6g} -> {self.final_cost:.6g}, "
            f"{self.num_evaluations} evaluations, {self.num_parameters} params, "
            f"{self.num_residuals} residuals, {self.duration:.3f}s ({self.termination})"
        )


class Solver:
    """
    Trust-region solver for a Problem

    Args:
        config: SolverConfig or None (uses defaults)
    """

    def __init__(self, config: Optional[SolverConfig] = None):
        self.config = config or SolverConfig()
        self.logger = logging.getLogger(__name__)

    def solve(
        self,
        problem: Problem,
        max_iterations: int,
        time_limit: Optional[float] = None,
    ) -> SolverSummary:
        """
        Minimize the problem's robustified cost and write the result back

        Args:
            problem: Problem whose variable blocks are updated in place
            max_iterations: Cap on residual evaluations
            time_limit: Optional wall-clock budget in seconds; the best
                iterate seen so far is kept when it runs out

        Returns:
            SolverSummary
        """
        start = time.time()
        keys = problem.variable_keys()
        summary = SolverSummary(num_residuals=problem.num_residuals)

        if not keys or summary.num_residuals == 0:
            summary.initial_cost = summary.final_cost = problem.total_cost()
            summary.termination = "nothing to optimize"
            summary.success = True
            self.logger.debug("Solve skipped: no free parameters or no residuals")
            return summary

        manifolds = {k: problem.manifold(k) for k in keys}
        x0 = {k: problem.parameter_block(k).copy() for k in keys}
        offsets: Dict[BlockKey, slice] = {}
        n = 0
        for k in keys:
            size = manifolds[k].tangent_size
            offsets[k] = slice(n, n + size)
            n += size
        summary.num_parameters = n

        def unpack(delta: np.ndarray) -> Dict[BlockKey, np.ndarray]:
            return {k: manifolds[k].plus(x0[k], delta[offsets[k]]) for k in keys}

        best = {"cost": np.inf, "delta": np.zeros(n)}
        counters = {"nfev": 0, "njev": 0}

        def fun(delta):
            if time_limit is not None and time.time() - start > time_limit:
                raise _TimeBudgetExceeded()
            r = problem.residual_vector(apply_loss=True, values=unpack(delta))
            counters["nfev"] += 1
            cost = 0.5 * float(r @ r)
            if cost < best["cost"]:
                best["cost"] = cost
                best["delta"] = delta.copy()
            return r

        executor = None
        if self.config.num_threads > 1:
            executor = ThreadPoolExecutor(max_workers=self.config.num_threads)

        def jac(delta):
            counters["njev"] += 1
            chain = {k: manifolds[k].delta_jacobian(delta[offsets[k]]) for k in keys}
            J = problem.jacobian(
                keys, apply_loss=True, values=unpack(delta), chain=chain, executor=executor
            )
            if self.config.dense:
                return J.toarray()
            return J

        summary.initial_cost = problem.total_cost()
        try:
            result = least_squares(
                fun,
                np.zeros(n),
                jac=jac,
                method=self.config.scipy_method,
                tr_solver="exact" if self.config.dense else "lsmr",
                x_scale=self.config.x_scale,
                ftol=self.config.ftol,
                xtol=self.config.xtol,
                gtol=self.config.gtol,
                max_nfev=max_iterations,
                verbose=self.config.verbose,
            )
            delta = result.x
            summary.termination = result.message
            summary.success = bool(result.success) or result.status == 0
        except _TimeBudgetExceeded:
            delta = best["delta"]
            summary.termination = "time budget exhausted"
            summary.time_budget_exhausted = True
            summary.success = True
            self.logger.warning(f"Solver stopped after {time_limit:.2f}s budget, keeping best iterate")
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        # least_squares may end on a worse trial point than the best evaluated one
        if best["cost"] < np.inf:
            final_r = problem.residual_vector(apply_loss=True, values=unpack(delta))
            if 0.5 * float(final_r @ final_r) > best["cost"]:
                delta = best["delta"]

        for k, value in unpack(delta).items():
            problem.set_parameter_block(k, value)

        summary.final_cost = problem.total_cost()
        summary.num_evaluations = counters["nfev"]
        summary.num_jacobian_evaluations = counters["njev"]
        summary.duration = time.time() - start
        self.logger.debug(f"Solve finished: {summary.brief_report()}")
        return summary


@dataclass
class OptimizationSummary:
    """Per-call counts reported by every optimization procedure"""

    procedure: str
    observations_total: int = 0
    observations_removed: int = 0
    landmarks_included: int = 0
    landmarks_excluded: int = 0
    correspondences: int = 0
    inliers: int = 0
    imu_factors: int = 0
    loop_edges: int = 0
    sequential_edges: int = 0
    window_edges: int = 0
    solver: Optional[SolverSummary] = None
    duration: float = 0.0

    def log(self, log: logging.Logger = logger):
        parts = [f"{self.procedure}:"]
        if self.observations_total:
            parts.append(f"removed {self.observations_removed} of {self.observations_total} observations,")
        if self.landmarks_included or self.landmarks_excluded:
            parts.append(f"landmarks included|excluded {self.landmarks_included}|{self.landmarks_excluded},")
        if self.correspondences:
            parts.append(f"inliers {self.inliers} of {self.correspondences},")
        if self.imu_factors:
            parts.append(f"{self.imu_factors} IMU factors,")
        if self.loop_edges or self.sequential_edges or self.window_edges:
            parts.append(
                f"edges loop|seq|window {self.loop_edges}|{self.sequential_edges}|{self.window_edges},"
            )
        if self.solver is not None:
            parts.append(self.solver.brief_report())
        log.info(" ".join(parts))
