"""
Unit tests for the problem container, solver driver and outlier classifier
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from comap.core.optimization.config import SolverConfig
from comap.core.optimization.covariance import ResultSink, estimate_covariance
from comap.core.optimization.errors import MissingParameterBlockError
from comap.core.optimization.factors import CostFunction
from comap.core.optimization.loss import CauchyLoss
from comap.core.optimization.outliers import OutlierClassifier
from comap.core.optimization.problem import Problem
from comap.core.optimization.solver import Solver


class PriorFactor(CostFunction):
    """r = (x - target) / sigma on a single Euclidean block"""

    def __init__(self, target, sigma=1.0):
        self.target = np.asarray(target, dtype=np.float64)
        self.sigma = sigma
        self.num_residuals = self.target.size

    def residual(self, blocks):
        return (blocks[0] - self.target) / self.sigma


class DifferenceFactor(CostFunction):
    """r = (x_j - x_i) - d"""

    def __init__(self, d):
        self.d = np.asarray(d, dtype=np.float64)
        self.num_residuals = self.d.size

    def residual(self, blocks):
        return blocks[1] - blocks[0] - self.d


class RecordingSink:
    def __init__(self):
        self.calls = []

    def on_jacobian(self, name, jacobian):
        self.calls.append(("jacobian", name, jacobian.shape))

    def on_covariance(self, name, covariance):
        self.calls.append(("covariance", name, covariance.shape))


def chain_problem():
    """x0 fixed at 0, x1 and x2 tied by unit differences"""
    problem = Problem()
    problem.add_parameter_block("x0", [0.0], constant=True)
    problem.add_parameter_block("x1", [0.3])
    problem.add_parameter_block("x2", [2.7])
    problem.add_residual_block(DifferenceFactor([1.0]), None, ["x0", "x1"])
    problem.add_residual_block(DifferenceFactor([1.0]), None, ["x1", "x2"])
    return problem


class TestProblem:
    """Test parameter and residual block bookkeeping"""

    def test_missing_block_raises(self):
        problem = Problem()
        problem.add_parameter_block("a", [1.0])
        with pytest.raises(MissingParameterBlockError) as exc_info:
            problem.add_residual_block(PriorFactor([0.0]), None, ["a", "b"])
        assert exc_info.value.key == "b"
        with pytest.raises(MissingParameterBlockError):
            problem.parameter_block("b")

    def test_readd_keeps_value(self):
        problem = Problem()
        problem.add_parameter_block("a", [1.0, 2.0])
        problem.add_parameter_block("a", [5.0, 5.0], constant=True)
        assert np.allclose(problem.parameter_block("a"), [1.0, 2.0])
        assert problem.is_constant("a")

    def test_variable_keys_exclude_constant_and_unused(self):
        problem = chain_problem()
        problem.add_parameter_block("unused", [0.0])
        assert problem.variable_keys() == ["x1", "x2"]

    def test_remove_residual_block(self):
        problem = chain_problem()
        rid = problem.residual_block_ids[0]
        problem.remove_residual_block(rid)
        assert problem.num_residual_blocks == 1
        assert rid not in problem.residual_block_ids

    def test_jacobian_layout(self):
        """Test that Jacobian columns follow the requested key order"""
        problem = chain_problem()
        J = problem.jacobian(["x1", "x2"]).toarray()
        assert np.allclose(J, [[1.0, 0.0], [-1.0, 1.0]])


class TestSolver:
    """Test the trust-region driver"""

    @pytest.mark.parametrize("trust_region", ["dogleg", "trust_region_reflective"])
    def test_linear_chain_converges(self, trust_region):
        problem = chain_problem()
        summary = Solver(SolverConfig(trust_region=trust_region, num_threads=1)).solve(problem, 50)
        assert np.allclose(problem.parameter_block("x1"), [1.0], atol=1e-6)
        assert np.allclose(problem.parameter_block("x2"), [2.0], atol=1e-6)
        assert problem.parameter_block("x0")[0] == 0.0
        assert summary.final_cost < summary.initial_cost

    def test_threaded_jacobian_assembly(self):
        problem = chain_problem()
        Solver(SolverConfig(num_threads=4, linear_solver="dense_qr")).solve(problem, 50)
        assert np.allclose(problem.parameter_block("x2"), [2.0], atol=1e-6)

    def test_nothing_to_optimize(self):
        problem = Problem()
        problem.add_parameter_block("a", [1.0], constant=True)
        problem.add_residual_block(PriorFactor([0.0]), None, ["a"])
        summary = Solver(SolverConfig(num_threads=1)).solve(problem, 10)
        assert summary.success
        assert problem.parameter_block("a")[0] == 1.0

    def test_time_budget_keeps_initial_values(self):
        problem = chain_problem()
        summary = Solver(SolverConfig(num_threads=1)).solve(problem, 50, time_limit=0.0)
        assert summary.time_budget_exhausted
        assert np.isclose(problem.parameter_block("x1")[0], 0.3)

    def test_robust_loss_resists_outlier(self):
        """Test that a Cauchy-weighted outlier barely moves the estimate"""
        problem = Problem()
        problem.add_parameter_block("x", [0.0])
        for target in (1.0, 1.1, 0.9, 1.05, 0.95):
            problem.add_residual_block(PriorFactor([target], sigma=0.1), CauchyLoss(1.0), ["x"])
        problem.add_residual_block(PriorFactor([50.0], sigma=0.1), CauchyLoss(1.0), ["x"])
        Solver(SolverConfig(num_threads=1)).solve(problem, 100)
        assert abs(problem.parameter_block("x")[0] - 1.0) < 0.1


class TestOutlierClassifier:
    """Test residual-norm classification"""

    def test_classify_at_threshold(self):
        problem = Problem()
        problem.add_parameter_block("x", [0.0])
        ids = [problem.add_residual_block(PriorFactor([t]), None, ["x"]) for t in (1.0, 2.0, 3.0)]
        inliers, outliers = OutlierClassifier(problem).classify(ids, 2.0)
        assert inliers == ids[:2]
        assert outliers == ids[2:]

    def test_classify_pairs_either_direction(self):
        problem = Problem()
        problem.add_parameter_block("x", [0.0])
        small = [problem.add_residual_block(PriorFactor([0.5]), None, ["x"]) for _ in range(2)]
        large = problem.add_residual_block(PriorFactor([9.0]), None, ["x"])
        pairs = [(small[0], small[1]), (small[0], large)]
        inliers, outliers = OutlierClassifier(problem).classify_pairs(pairs, 1.0)
        assert inliers == [0]
        assert outliers == [1]


class TestCovariance:
    """Test covariance extraction"""

    def test_prior_covariance(self):
        problem = Problem()
        problem.add_parameter_block("x", [0.0, 0.0])
        problem.add_residual_block(PriorFactor([1.0, 2.0], sigma=0.5), None, ["x"])
        sink = RecordingSink()
        assert isinstance(sink, ResultSink)
        cov = estimate_covariance(problem, ["x"], size=2, sink=sink, name="prior")
        assert np.allclose(cov, np.eye(2) * 0.25)
        assert sink.calls == [("jacobian", "prior", (2, 2)), ("covariance", "prior", (2, 2))]
