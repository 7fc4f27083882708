from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..common import ConfigurationError


class ScaledLoss:
    """Scales the squared norm of a residual block by a constant factor.

    Equivalent to multiplying the residuals and their Jacobians by ``sqrt(scale)``.
    """

    def __init__(self, scale: float):
        if scale < 0:
            raise ConfigurationError(f'Loss scale must be non-negative, got {scale}')
        self.scale = scale
        self.sqrt_scale = np.sqrt(scale)


@dataclass
class _ParameterBlock:
    values: np.ndarray
    offset: int
    constant: bool = False

    @property
    def size(self) -> int:
        return self.values.size


@dataclass
class _ResidualBlock:
    cost_function: object
    loss: Optional[ScaledLoss]
    parameter_ids: list = field(default_factory=list)
    offset: int = 0


class Problem:
    """
    Nonlinear least squares problem assembled from residual blocks over parameter blocks.

    Parameter blocks are NumPy arrays that the problem reads and writes in place: setting a
    point of the problem writes its values into the arrays, so everything that holds a
    reference to them (e.g. the :class:`~shapeundercloth.np.bodymodel.ModelState`) sees the
    point being evaluated.

    A residual block (cost function) has ``num_residuals``, ``parameter_block_sizes`` and
    ``evaluate(parameters, jacobians) -> (residuals, list of Jacobians or None)``.

    Parameters:
        evaluation_callback: Optional object with a ``prepare(evaluate_jacobians,
            new_evaluation_point)`` method, called before the residual blocks are evaluated.
    """

    def __init__(self, evaluation_callback=None):
        self.evaluation_callback = evaluation_callback
        self._parameter_blocks: list[_ParameterBlock] = []
        self._residual_blocks: list[_ResidualBlock] = []
        self._num_parameters = 0
        self._num_residuals = 0

    def add_parameter_block(self, values: np.ndarray) -> int:
        for i_block, block in enumerate(self._parameter_blocks):
            if block.values is values:
                return i_block
        if not isinstance(values, np.ndarray) or values.dtype != np.float64:
            raise ConfigurationError('Parameter blocks must be float64 NumPy arrays')
        if not values.flags.writeable:
            raise ConfigurationError('Parameter blocks must be writeable')
        self._parameter_blocks.append(_ParameterBlock(values, self._num_parameters))
        self._num_parameters += values.size
        return len(self._parameter_blocks) - 1

    def add_residual_block(self, cost_function, loss: Optional[ScaledLoss], *parameter_blocks):
        sizes = list(cost_function.parameter_block_sizes)
        if len(sizes) != len(parameter_blocks):
            raise ConfigurationError(
                f'The cost function expects {len(sizes)} parameter blocks, '
                f'got {len(parameter_blocks)}'
            )
        for size, values in zip(sizes, parameter_blocks):
            if values.size != size:
                raise ConfigurationError(
                    f'Parameter block has size {values.size}, the cost function expects {size}'
                )
        parameter_ids = [self.add_parameter_block(values) for values in parameter_blocks]
        self._residual_blocks.append(
            _ResidualBlock(cost_function, loss, parameter_ids, self._num_residuals)
        )
        self._num_residuals += cost_function.num_residuals

    def set_parameter_block_constant(self, values: np.ndarray):
        self._parameter_blocks[self._find(values)].constant = True

    def set_parameter_block_variable(self, values: np.ndarray):
        self._parameter_blocks[self._find(values)].constant = False

    def is_parameter_block_constant(self, values: np.ndarray) -> bool:
        return self._parameter_blocks[self._find(values)].constant

    def _find(self, values):
        for i_block, block in enumerate(self._parameter_blocks):
            if block.values is values:
                return i_block
        raise ConfigurationError('The array is not a parameter block of this problem')

    @property
    def num_residuals(self) -> int:
        return self._num_residuals

    @property
    def num_parameters(self) -> int:
        return self._num_parameters

    @property
    def num_residual_blocks(self) -> int:
        return len(self._residual_blocks)

    @property
    def num_parameter_blocks(self) -> int:
        return len(self._parameter_blocks)

    def variable_mask(self) -> np.ndarray:
        """Boolean mask over the parameter vector, False for constant blocks."""
        mask = np.ones(self._num_parameters, bool)
        for block in self._parameter_blocks:
            if block.constant:
                mask[block.offset:block.offset + block.size] = False
        return mask

    def get_state(self) -> np.ndarray:
        x = np.empty(self._num_parameters, np.float64)
        for block in self._parameter_blocks:
            x[block.offset:block.offset + block.size] = np.reshape(block.values, [-1])
        return x

    def set_state(self, x: np.ndarray):
        for block in self._parameter_blocks:
            if not block.constant:
                np.copyto(
                    block.values,
                    np.reshape(x[block.offset:block.offset + block.size], block.values.shape),
                )

    def evaluate(
        self,
        x: Optional[np.ndarray] = None,
        jacobians: bool = False,
        new_evaluation_point: bool = True,
    ):
        """Evaluates all residual blocks at `x` (or at the current values of the blocks).

        Returns:
            Tuple of the residual vector (num_residuals,) and the dense Jacobian
            (num_residuals, num_parameters), or None if not requested. Columns of constant
            blocks are zero.
        """
        if x is not None:
            self.set_state(x)
        if self.evaluation_callback is not None:
            self.evaluation_callback.prepare(jacobians, new_evaluation_point)

        residuals = np.empty(self._num_residuals, np.float64)
        jacobian = np.zeros((self._num_residuals, self._num_parameters)) if jacobians else None

        for block in self._residual_blocks:
            parameters = [self._parameter_blocks[i].values for i in block.parameter_ids]
            block_residuals, block_jacobians = block.cost_function.evaluate(parameters, jacobians)
            rows = slice(block.offset, block.offset + block.cost_function.num_residuals)
            scale = block.loss.sqrt_scale if block.loss is not None else 1.0
            residuals[rows] = scale * np.asarray(block_residuals)

            if not jacobians:
                continue
            for i_param, block_jacobian in zip(block.parameter_ids, block_jacobians):
                param = self._parameter_blocks[i_param]
                if param.constant:
                    continue
                cols = slice(param.offset, param.offset + param.size)
                jacobian[rows, cols] += scale * np.asarray(block_jacobian)

        return residuals, jacobian
