"""Tests of the pose prior files and the Gaussian prior residual."""

from __future__ import annotations

import numpy as np
import pytest

from shapeundercloth.common import PriorFormatError
from shapeundercloth.np import NormalPrior, load_pose_prior

from conftest import write_pose_prior


class TestLoadPosePrior:
    def test_root_entries_are_zero(self, prior_dir, prior_stiffness):
        prior = load_pose_prior(prior_dir, pose_size=6)
        assert prior.pose_size == 6
        np.testing.assert_allclose(prior.mean_pose, [0, 0, 0, 0.1, -0.05, 0.02])
        assert not np.any(prior.stiffness[:3])
        assert not np.any(prior.stiffness[:, :3])
        np.testing.assert_allclose(prior.stiffness[3:, 3:], prior_stiffness)

    def test_location_from_environment(self, prior_dir, monkeypatch):
        monkeypatch.setenv('SHAPEUNDERCLOTH_POSE_PRIOR', str(prior_dir))
        prior = load_pose_prior(pose_size=6)
        assert prior.stiffness.shape == (6, 6)

    def test_missing_files(self, tmp_path):
        with pytest.raises(FileNotFoundError, match='SHAPEUNDERCLOTH_POSE_PRIOR'):
            load_pose_prior(tmp_path / 'nowhere', pose_size=6)

    def test_wrong_mean_pose_count(self, tmp_path, prior_stiffness):
        write_pose_prior(tmp_path, [0.1, 0.2], prior_stiffness)
        with pytest.raises(PriorFormatError):
            load_pose_prior(tmp_path, pose_size=6)

    def test_missing_values(self, tmp_path, prior_stiffness):
        write_pose_prior(tmp_path, [0.1, 0.2, 0.3], prior_stiffness)
        (tmp_path / 'mean_pose.txt').write_text('3\n0.1 0.2\n')
        with pytest.raises(PriorFormatError):
            load_pose_prior(tmp_path, pose_size=6)

    def test_non_square_stiffness(self, tmp_path):
        write_pose_prior(tmp_path, [0.1, 0.2, 0.3], np.ones((3, 2)))
        with pytest.raises(PriorFormatError):
            load_pose_prior(tmp_path, pose_size=6)

    def test_wrong_size_stiffness(self, tmp_path):
        write_pose_prior(tmp_path, [0.1, 0.2, 0.3], np.eye(4))
        with pytest.raises(PriorFormatError):
            load_pose_prior(tmp_path, pose_size=6)

    def test_non_symmetric_stiffness(self, tmp_path):
        stiffness = np.eye(3)
        stiffness[0, 1] = 0.5
        write_pose_prior(tmp_path, [0.1, 0.2, 0.3], stiffness)
        with pytest.raises(PriorFormatError):
            load_pose_prior(tmp_path, pose_size=6)

    def test_non_numeric(self, tmp_path, prior_stiffness):
        write_pose_prior(tmp_path, [0.1, 0.2, 0.3], prior_stiffness)
        (tmp_path / 'mean_pose.txt').write_text('3\n0.1 abc 0.3\n')
        with pytest.raises(PriorFormatError):
            load_pose_prior(tmp_path, pose_size=6)


class TestNormalPrior:
    def test_zero_at_mean(self, prior_dir):
        prior = load_pose_prior(prior_dir, pose_size=6)
        block = NormalPrior.from_pose_prior(prior)
        residuals, _ = block.evaluate([prior.mean_pose.copy()])
        np.testing.assert_array_equal(residuals, 0.0)

    def test_zero_at_mean_for_random_stiffness(self):
        np.random.seed(0)
        for _ in range(5):
            a = np.random.randn(5, 5)
            mean = np.random.randn(5)
            residuals, _ = NormalPrior(a @ a.T, mean).evaluate([mean.copy()])
            np.testing.assert_array_equal(residuals, 0.0)

    def test_squared_norm_is_mahalanobis(self, prior_dir):
        prior = load_pose_prior(prior_dir, pose_size=6)
        block = NormalPrior.from_pose_prior(prior)
        np.random.seed(1)
        x = np.random.randn(6)
        residuals, (jacobian,) = block.evaluate([x], jacobians=True)
        diff = x - prior.mean_pose
        np.testing.assert_allclose(residuals @ residuals, diff @ prior.stiffness @ diff)
        np.testing.assert_allclose(jacobian.T @ jacobian, prior.stiffness, atol=1e-12)
        np.testing.assert_allclose(jacobian @ diff, residuals, atol=1e-12)

    def test_root_rotation_is_not_penalized(self, prior_dir):
        prior = load_pose_prior(prior_dir, pose_size=6)
        block = NormalPrior.from_pose_prior(prior)
        x = prior.mean_pose.copy()
        x[:3] = [1.0, -2.0, 0.5]
        residuals, _ = block.evaluate([x])
        np.testing.assert_allclose(residuals, 0.0, atol=1e-12)

    def test_mismatched_shapes(self):
        with pytest.raises(PriorFormatError):
            NormalPrior(np.eye(3), np.zeros(4))
