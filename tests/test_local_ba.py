"""
Tests for local bundle adjustment and its covariance output
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from comap.core.map_model import LocalLandmark
from comap.core.optimization.config import LocalBAConfig, SolverConfig
from comap.core.optimization.errors import MapStructureError, MissingParameterBlockError
from comap.core.optimization.local_ba import LocalBundleAdjustment
from comap.utils.io_utils import H5ResultSink, load_results

from conftest import build_map, make_pose, scene_points


class RecordingSink:
    def __init__(self):
        self.jacobians = []
        self.covariances = []

    def on_jacobian(self, name, jacobian):
        self.jacobians.append((name, jacobian))

    def on_covariance(self, name, covariance):
        self.covariances.append((name, covariance))


@pytest.fixture
def windows(rng):
    """
    Query window from agent 0 and candidate window from agent 1

    Everything is expressed in the query-anchor frame except the candidate
    keyframes' own poses, which live in agent 1's frame T_M.
    """
    points = scene_points(30, rng)
    query_poses = [make_pose(), make_pose(2.0, 1.0, 0.0, (0.4, 0.0, 0.05))]
    candidate_poses = [make_pose(-3.0, 0.5, 1.0, (1.2, 0.1, -0.1)), make_pose(-1.0, 0.0, 0.5, (1.7, 0.15, 0.0))]
    query = list(build_map(query_poses, points, map_id=0))
    candidate = list(build_map(candidate_poses, points, map_id=1))

    T_M = make_pose(70.0, 5.0, -3.0, (10.0, -4.0, 2.0))
    for kf in candidate:
        kf.set_pose(T_M @ kf.T_ws)

    landmarks = [
        LocalLandmark(X, {kf.id: j for kf in query + candidate})
        for j, X in enumerate(points)
    ]
    return landmarks, query, candidate, candidate_poses[0], points


def make_lba(sink=None) -> LocalBundleAdjustment:
    return LocalBundleAdjustment(LocalBAConfig(max_iterations=200), SolverConfig(num_threads=1), sink)


class TestLocalBA:
    """Test relative transform refinement"""

    def test_recovers_relative_transform(self, windows):
        landmarks, query, candidate, T_true, points = windows
        T_init = T_true @ make_pose(1.0, -0.5, 0.5, (0.03, -0.02, 0.01))

        T_qc, covariance, summary = make_lba().run(landmarks, query, candidate, T_init)

        assert np.allclose(T_qc, T_true, atol=1e-4)
        assert summary.landmarks_included == 30
        assert summary.observations_total == 30 * 4
        assert summary.sequential_edges == 2
        for lm, X in zip(landmarks, points):
            assert np.allclose(lm.position, X, atol=1e-3)

    def test_covariance_shape(self, windows):
        landmarks, query, candidate, T_true, _ = windows
        _, covariance, _ = make_lba().run(landmarks, query, candidate, T_true)
        assert covariance.shape == (6, 6)
        assert np.allclose(covariance, covariance.T, atol=1e-12)
        assert np.all(np.diag(covariance) > 0)

    def test_query_anchor_unchanged(self, windows):
        landmarks, query, candidate, T_true, _ = windows
        before = query[0].T_ws.copy()
        make_lba().run(landmarks, query, candidate, T_true)
        assert np.array_equal(query[0].T_ws, before)

    def test_sink_receives_results(self, windows):
        landmarks, query, candidate, T_true, _ = windows
        sink = RecordingSink()
        _, covariance, _ = make_lba(sink).run(landmarks, query, candidate, T_true)

        assert [name for name, _ in sink.jacobians] == ["lba"]
        # 2 candidate poses + 1 query pose + 30 landmarks
        assert sink.jacobians[0][1].shape[1] == 6 * 3 + 3 * 30
        assert np.array_equal(sink.covariances[0][1], covariance)

    def test_h5_sink(self, windows, tmp_path):
        landmarks, query, candidate, T_true, _ = windows
        filepath = tmp_path / "lba.h5"
        _, covariance, _ = make_lba(H5ResultSink(filepath)).run(landmarks, query, candidate, T_true)

        results = load_results(filepath)
        assert set(results) == {"jacobians", "covariances"}
        assert np.allclose(results["covariances"]["lba_0"], covariance)


class TestLocalBAErrors:
    """Test rejected inputs"""

    def test_empty_window(self, windows):
        landmarks, query, _, T_true, _ = windows
        with pytest.raises(MapStructureError):
            make_lba().run(landmarks, query, [], T_true)

    def test_observer_outside_windows(self, windows):
        landmarks, query, candidate, T_true, _ = windows
        landmarks[4].observations[(9, 3)] = 0
        with pytest.raises(MissingParameterBlockError):
            make_lba().run(landmarks, query, candidate, T_true)
