"""Tests of the problem assembly."""

from __future__ import annotations

import numpy as np
import pytest

from shapeundercloth.common import ConfigurationError
from shapeundercloth.np import Problem, ScaledLoss


class LinearResidual:
    """Residual ``A x - b`` over a single parameter block."""

    def __init__(self, a, b):
        self.a = np.asarray(a, np.float64)
        self.b = np.asarray(b, np.float64)
        self.num_residuals = len(self.b)
        self.parameter_block_sizes = [self.a.shape[1]]

    def evaluate(self, parameters, jacobians=False):
        residuals = self.a @ parameters[0] - self.b
        return residuals, ([self.a.copy()] if jacobians else None)


class DifferenceResidual:
    """Residual ``x - y`` over two parameter blocks."""

    num_residuals = 2
    parameter_block_sizes = [2, 2]

    def evaluate(self, parameters, jacobians=False):
        x, y = parameters
        return x - y, ([np.eye(2), -np.eye(2)] if jacobians else None)


class RecordingCallback:
    def __init__(self):
        self.calls = []

    def prepare(self, evaluate_jacobians, new_evaluation_point):
        self.calls.append((evaluate_jacobians, new_evaluation_point))


class TestProblem:
    def test_assembly(self):
        x = np.array([1.0, 2.0])
        y = np.array([0.5, 0.5])
        problem = Problem()
        problem.add_residual_block(LinearResidual(np.eye(2) * 2, [1.0, 1.0]), None, x)
        problem.add_residual_block(DifferenceResidual(), ScaledLoss(4.0), x, y)

        assert problem.num_parameter_blocks == 2
        assert problem.num_residual_blocks == 2
        assert problem.num_parameters == 4
        assert problem.num_residuals == 4

        residuals, jacobian = problem.evaluate(jacobians=True)
        np.testing.assert_allclose(residuals, [1.0, 3.0, 1.0, 3.0])
        expected = np.array([
            [2.0, 0.0, 0.0, 0.0],
            [0.0, 2.0, 0.0, 0.0],
            [2.0, 0.0, -2.0, 0.0],
            [0.0, 2.0, 0.0, -2.0],
        ])
        np.testing.assert_allclose(jacobian, expected)

    def test_state_is_written_in_place(self):
        x = np.zeros(2)
        problem = Problem()
        problem.add_residual_block(LinearResidual(np.eye(2), [1.0, 1.0]), None, x)
        residuals, jacobian = problem.evaluate(np.array([3.0, 4.0]))
        np.testing.assert_allclose(x, [3.0, 4.0])
        np.testing.assert_allclose(residuals, [2.0, 3.0])
        assert jacobian is None
        np.testing.assert_allclose(problem.get_state(), [3.0, 4.0])

    def test_constant_blocks(self):
        x = np.array([1.0, 2.0])
        y = np.array([0.5, 0.5])
        problem = Problem()
        problem.add_residual_block(DifferenceResidual(), None, x, y)
        problem.set_parameter_block_constant(y)
        assert problem.is_parameter_block_constant(y)
        np.testing.assert_array_equal(problem.variable_mask(), [True, True, False, False])

        _, jacobian = problem.evaluate(np.array([0.0, 0.0, 9.0, 9.0]), jacobians=True)
        np.testing.assert_allclose(y, [0.5, 0.5])
        np.testing.assert_array_equal(jacobian[:, 2:], 0.0)

        problem.set_parameter_block_variable(y)
        assert not problem.is_parameter_block_constant(y)

    def test_evaluation_callback_is_prepared_first(self):
        callback = RecordingCallback()
        problem = Problem(evaluation_callback=callback)
        problem.add_residual_block(LinearResidual(np.eye(2), [1.0, 1.0]), None, np.zeros(2))
        problem.evaluate(jacobians=True, new_evaluation_point=True)
        problem.evaluate(jacobians=False, new_evaluation_point=True)
        problem.evaluate(jacobians=True, new_evaluation_point=False)
        assert callback.calls == [(True, True), (False, True), (True, False)]

    def test_scaled_loss(self):
        loss = ScaledLoss(9.0)
        assert loss.sqrt_scale == 3.0
        with pytest.raises(ConfigurationError):
            ScaledLoss(-1.0)

    def test_block_size_mismatch(self):
        problem = Problem()
        with pytest.raises(ConfigurationError):
            problem.add_residual_block(LinearResidual(np.eye(2), [1.0, 1.0]), None, np.zeros(3))
        with pytest.raises(ConfigurationError):
            problem.add_residual_block(DifferenceResidual(), None, np.zeros(2))

    def test_blocks_must_be_float64(self):
        problem = Problem()
        with pytest.raises(ConfigurationError):
            problem.add_residual_block(
                LinearResidual(np.eye(2), [1.0, 1.0]), None, np.zeros(2, np.float32)
            )

    def test_unknown_block(self):
        problem = Problem()
        with pytest.raises(ConfigurationError):
            problem.set_parameter_block_constant(np.zeros(2))

    def test_row_views_are_separate_blocks(self):
        displacements = np.zeros((3, 3))
        problem = Problem()
        for i in range(3):
            problem.add_residual_block(
                LinearResidual(np.eye(3), [1.0, 2.0, 3.0]), None, displacements[i]
            )
        assert problem.num_parameters == 9
        problem.evaluate(np.arange(9, dtype=np.float64))
        np.testing.assert_allclose(displacements, np.arange(9).reshape(3, 3))
