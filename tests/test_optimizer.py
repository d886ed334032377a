"""
Tests for the MapOptimizer facade, performance monitoring and result I/O
"""

import json
import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from comap import MapOptimizer, OptimizationConfig
from comap.core.optimization.errors import MissingPredecessorError
from comap.core.performance_monitor import PerformanceMonitor
from comap.utils.io_utils import H5ResultSink, load_results, save_summary

from conftest import add_loop


def make_optimizer(monitor=None) -> MapOptimizer:
    config = OptimizationConfig.from_dict({
        "solver": {"num_threads": 1},
        "gba": {"visual_only": True, "max_iterations": 10},
        "log_level": "WARNING",
    })
    return MapOptimizer(config, monitor=monitor)


class TestMapOptimizer:
    """Test procedures through the facade"""

    def test_gba_recorded_by_monitor(self, scene):
        slam_map, _, _ = scene
        optimizer = make_optimizer()
        summary = optimizer.global_bundle_adjustment(slam_map)

        assert summary.procedure == "GBA"
        stats = optimizer.monitor.get_procedure_stats("GBA")
        assert stats.count == 1
        assert stats.failures == 0
        assert optimizer.get_performance_summary()["summary"]["total_calls"] == 1

    def test_per_call_overrides(self, scene):
        slam_map, _, _ = scene
        summary = make_optimizer().global_bundle_adjustment(slam_map, outlier_removal=False, max_iterations=3)
        assert summary.observations_removed == 0

    def test_failure_recorded(self, scene):
        slam_map, _, _ = scene
        slam_map.keyframe((3, 0)).predecessor_id = (11, 0)
        optimizer = make_optimizer()
        with pytest.raises(MissingPredecessorError):
            optimizer.global_bundle_adjustment(slam_map, visual_only=False)
        stats = optimizer.monitor.get_procedure_stats("GBA")
        assert stats.failures == 1
        assert stats.success_rate == 0.0
        assert "MissingPredecessorError" in stats.errors[0]

    def test_pose_graph_procedures(self, scene):
        slam_map, poses, _ = scene
        add_loop(slam_map, 0, 4, poses[0], poses[4])
        optimizer = make_optimizer()
        assert optimizer.pose_graph_optimization(slam_map).loop_edges == 1
        assert optimizer.pose_graph_optimization_4dof(slam_map).loop_edges == 1
        procedures = optimizer.get_performance_summary()["procedures"]
        assert set(procedures) == {"PGO-6DoF", "PGO-4DoF"}

    def test_shared_monitor(self, scene):
        slam_map, _, _ = scene
        monitor = PerformanceMonitor()
        make_optimizer(monitor).pose_graph_optimization(slam_map)
        make_optimizer(monitor).pose_graph_optimization(slam_map)
        assert monitor.get_procedure_stats("PGO-6DoF").count == 2


class TestPerformanceMonitor:
    """Test statistics bookkeeping"""

    def test_measure_and_export(self, tmp_path):
        monitor = PerformanceMonitor()
        for _ in range(3):
            with monitor.measure("LBA", {"window": 2}):
                pass
        stats = monitor.get_procedure_stats("LBA")
        assert stats.count == 3
        assert stats.min_time <= stats.avg_time <= stats.max_time

        filepath = tmp_path / "perf.json"
        monitor.export_results(filepath)
        with open(filepath) as f:
            results = json.load(f)
        assert len(results["calls"]) == 3
        assert results["calls"][0]["context"] == {"window": 2}
        assert all(call["error"] is None for call in results["calls"])

    def test_clear(self):
        monitor = PerformanceMonitor()
        with monitor.measure("GBA"):
            pass
        monitor.clear()
        assert monitor.get_procedure_stats("GBA") is None
        assert monitor.get_summary()["summary"]["total_calls"] == 0


class TestResultIO:
    """Test result sinks and summary export"""

    def test_h5_sink_numbers_repeated_names(self, tmp_path):
        filepath = tmp_path / "results.h5"
        sink = H5ResultSink(filepath)
        sink.on_jacobian("lba", np.ones((4, 3)))
        sink.on_jacobian("lba", np.zeros((2, 3)))
        sink.on_covariance("lba", np.eye(6))

        results = load_results(filepath)
        assert set(results["jacobians"]) == {"lba_0", "lba_1"}
        assert results["jacobians"]["lba_1"].shape == (2, 3)
        assert np.array_equal(results["covariances"]["lba_0"], np.eye(6))

    def test_save_summary(self, scene, tmp_path):
        slam_map, _, _ = scene
        summary = make_optimizer().global_bundle_adjustment(slam_map)
        filepath = tmp_path / "summary.json"
        save_summary(summary, filepath)
        with open(filepath) as f:
            data = json.load(f)
        assert data["procedure"] == "GBA"
        assert data["observations_total"] == summary.observations_total
        assert "final_cost" in data["solver"]
