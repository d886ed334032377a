"""
Tests for global bundle adjustment
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from comap.core.camera_models import CameraModel
from comap.core.imu_preintegration import ImuPreintegration
from comap.core.optimization.config import GlobalBAConfig, SolverConfig
from comap.core.optimization.errors import CameraModelError, MissingPredecessorError
from comap.core.optimization.global_ba import GlobalBundleAdjustment

from conftest import add_loop, build_map, perturb, project, scene_points


def make_gba(**kwargs) -> GlobalBundleAdjustment:
    return GlobalBundleAdjustment(GlobalBAConfig(**kwargs), SolverConfig(num_threads=1))


class TestGlobalBAInvariants:
    """Test anchor handling and write-back flags"""

    def test_anchor_pose_unchanged(self, scene, rng):
        slam_map, poses, _ = scene
        for kf in list(slam_map)[1:]:
            kf.set_pose(perturb(kf.T_ws, rng))
        anchor = slam_map.keyframe(slam_map.anchor_id)
        before = anchor.T_ws.copy()

        summary = make_gba(visual_only=True, outlier_removal=False, max_iterations=30).run(slam_map)

        assert np.array_equal(anchor.T_ws, before)
        assert summary.landmarks_included == 40
        assert all(kf.is_gba_optimized and kf.pose_optimized for kf in slam_map)
        assert summary.solver.final_cost <= summary.solver.initial_cost

    def test_noiseless_scene_stays_put(self, scene):
        slam_map, poses, points = scene
        make_gba(visual_only=True, outlier_removal=False, max_iterations=20).run(slam_map)
        for kf, T in zip(slam_map, poses):
            assert np.allclose(kf.T_ws, T, atol=1e-6)
        for lm, X in zip(slam_map.landmarks.values(), points):
            assert np.allclose(lm.position, X, atol=1e-5)
            assert lm.is_gba_optimized

    def test_fix_loaded_keyframes(self, scene, rng):
        slam_map, _, _ = scene
        loaded = slam_map.keyframe((2, 0))
        loaded.is_loaded = True
        loaded.set_pose(perturb(loaded.T_ws, rng))
        before = loaded.T_ws.copy()
        make_gba(visual_only=True, fix_loaded_keyframes=True, max_iterations=10).run(slam_map)
        assert np.array_equal(loaded.T_ws, before)

    def test_time_budget(self, scene):
        slam_map, _, _ = scene
        summary = make_gba(visual_only=True, outlier_removal=False).run(slam_map, time_limit=0.0)
        assert summary.solver.time_budget_exhausted


class TestGlobalBAOutliers:
    """Test the outlier pre-pass and landmark inclusion rules"""

    def test_corrupted_observation_removed(self, scene):
        slam_map, _, _ = scene
        kf = slam_map.keyframe((2, 0))
        kf.keypoints[5] += np.array([60.0, -40.0])

        summary = make_gba(visual_only=True, max_iterations=10).run(slam_map)

        lm = slam_map.landmark((5, 0))
        assert kf.landmarks[5] is None
        assert (2, 0) not in lm.observations
        assert summary.observations_removed >= 1
        assert summary.observations_total == 40 * 5

    def test_surviving_residuals_within_threshold(self, scene):
        """Test that no observation above the outlier threshold survives"""
        slam_map, _, _ = scene
        corrupted = [((1, 0), 3), ((2, 0), 8), ((3, 0), 15), ((4, 0), 22), ((2, 0), 30)]
        for kf_id, slot in corrupted:
            slam_map.keyframe(kf_id).keypoints[slot] += np.array([50.0, -35.0])

        gba = make_gba(visual_only=True, max_iterations=20)
        summary = gba.run(slam_map)

        assert summary.observations_removed >= len(corrupted)
        for kf_id, slot in corrupted:
            assert slam_map.keyframe(kf_id).landmarks[slot] is None
        for kf in slam_map:
            for slot, lm_id in enumerate(kf.landmarks):
                if lm_id is None:
                    continue
                X = slam_map.landmark(lm_id).position
                error = np.linalg.norm(project(kf.camera, kf.T_ws, X) - kf.observation(slot))
                assert error / kf.observation_sigma(slot) <= gba.config.outlier_threshold

    def test_under_observed_landmark_excluded(self, trajectory, rng):
        points = scene_points(20, rng)
        slam_map = build_map(trajectory, points, observers={3: [1]})
        lonely = slam_map.landmark((3, 0))
        before = lonely.position.copy()

        summary = make_gba(visual_only=True, outlier_removal=False, max_iterations=5).run(slam_map)

        assert summary.landmarks_excluded == 1
        assert summary.landmarks_included == 19
        assert np.array_equal(lonely.position, before)
        assert not lonely.is_gba_optimized

    def test_orphaned_landmarks_cleaned(self, scene):
        slam_map, _, _ = scene
        lm = slam_map.landmark((7, 0))
        for kf_id in list(lm.observations):
            slam_map.keyframe(kf_id).erase_landmark(7)
        lm.observations.clear()

        make_gba(visual_only=True, outlier_removal=False, max_iterations=5).run(slam_map)
        assert slam_map.landmark((7, 0)) is None


class TestGlobalBAStructure:
    """Test structural errors and loop edges"""

    def test_missing_predecessor_raises(self, scene):
        slam_map, _, _ = scene
        slam_map.keyframe((2, 0)).predecessor_id = (17, 0)
        with pytest.raises(MissingPredecessorError) as exc_info:
            make_gba(visual_only=False).run(slam_map)
        assert exc_info.value.keyframe_id == (2, 0)

    def test_invalid_predecessor_raises(self, scene):
        slam_map, _, _ = scene
        slam_map.keyframe((1, 0)).invalid = True
        with pytest.raises(MissingPredecessorError):
            make_gba(visual_only=False, outlier_removal=False).run(slam_map)

    def test_bad_camera_raises(self, scene):
        slam_map, _, _ = scene
        slam_map.keyframe((3, 0)).camera = CameraModel("pinhole", "radtan", [400, 400, 320, 240], [0.1])
        with pytest.raises(CameraModelError):
            make_gba(visual_only=True).run(slam_map)

    def test_loop_edges_counted(self, scene):
        slam_map, poses, _ = scene
        add_loop(slam_map, 0, 4, poses[0], poses[4])
        add_loop(slam_map, 1, 42, poses[1], poses[4])
        summary = make_gba(visual_only=True, outlier_removal=False, max_iterations=5).run(slam_map)
        assert summary.loop_edges == 1

    def test_visual_inertial_without_measurements(self, scene):
        """Test that keyframes without IMU samples skip the inertial factor"""
        slam_map, _, _ = scene
        for kf in slam_map:
            kf.imu = ImuPreintegration(np.zeros(3), np.zeros(3))
        summary = make_gba(visual_only=False, outlier_removal=False, max_iterations=5).run(slam_map)
        assert summary.imu_factors == 0
        assert all(kf.vel_bias_optimized for kf in slam_map)
