from __future__ import annotations

import logging
import os.path as osp
from dataclasses import dataclass

import numpy as np
import scipy.linalg

from ..common import PriorFormatError, SPACE_DIM, resolve_pose_prior_dir

logger = logging.getLogger(__name__)

MEAN_POSE_FILENAME = 'mean_pose.txt'
STIFFNESS_FILENAME = 'stiffness.txt'


@dataclass
class PosePrior:
    """Gaussian prior over body poses.

    Both arrays cover the full pose vector. The entries of the global (root) rotation are
    zero, so the prior never penalizes the orientation of the body as a whole.
    """

    mean_pose: np.ndarray
    """Mean pose, shape (pose_size,)."""

    stiffness: np.ndarray
    """Precision matrix of the pose, shape (pose_size, pose_size)."""

    @property
    def pose_size(self) -> int:
        return len(self.mean_pose)


def load_pose_prior(prior_root=None, pose_size=72, space_dim=SPACE_DIM) -> PosePrior:
    """Loads the mean pose and the stiffness (precision) matrix of the pose prior.

    The files ``mean_pose.txt`` and ``stiffness.txt`` store only the non-root part of the
    pose. ``mean_pose.txt`` starts with the number of values followed by the values;
    ``stiffness.txt`` starts with the number of rows and columns followed by the matrix, all
    whitespace-separated.

    Parameters:
        prior_root: Directory of the prior files. By default $SHAPEUNDERCLOTH_POSE_PRIOR or
            $DATA_ROOT/pose_prior is used.
        pose_size: Size of the full pose vector of the body model.
        space_dim: Size of the root rotation, which is excluded from the prior.

    Raises:
        PriorFormatError: If the dimensions in the files do not match the body model.
    """
    if prior_root is None:
        prior_root = resolve_pose_prior_dir()

    non_root_size = pose_size - space_dim

    values = _read_numbers(osp.join(prior_root, MEAN_POSE_FILENAME))
    size = _read_count(values, 0, MEAN_POSE_FILENAME)
    if size != non_root_size:
        raise PriorFormatError(
            f'Mean pose has {size} values, the body model has {non_root_size} non-root pose '
            f'parameters'
        )
    if len(values) - 1 < size:
        raise PriorFormatError(f'Mean pose declares {size} values but has {len(values) - 1}')
    mean_pose = np.zeros(pose_size, np.float64)
    mean_pose[space_dim:] = values[1:1 + size]

    values = _read_numbers(osp.join(prior_root, STIFFNESS_FILENAME))
    rows = _read_count(values, 0, STIFFNESS_FILENAME)
    cols = _read_count(values, 1, STIFFNESS_FILENAME)
    if rows != cols:
        raise PriorFormatError(f'Stiffness matrix is not square: {rows}x{cols}')
    if rows != non_root_size:
        raise PriorFormatError(
            f'Stiffness matrix size {rows} does not match the {non_root_size} non-root pose '
            f'parameters'
        )
    if len(values) - 2 < rows * cols:
        raise PriorFormatError(
            f'Stiffness matrix declares {rows * cols} values but has {len(values) - 2}'
        )
    stiffness = np.zeros((pose_size, pose_size), np.float64)
    stiffness[space_dim:, space_dim:] = np.reshape(values[2:2 + rows * cols], (rows, cols))
    if not np.allclose(stiffness, stiffness.T, rtol=1e-6, atol=1e-8):
        raise PriorFormatError('Stiffness matrix is not symmetric')

    logger.debug('Loaded pose prior from %s', prior_root)
    return PosePrior(mean_pose=mean_pose, stiffness=stiffness)


def _read_numbers(path):
    try:
        with open(path) as f:
            tokens = f.read().split()
    except FileNotFoundError:
        raise FileNotFoundError(
            f'Pose prior file not found: {path}\n\n'
            f'Set the pose prior location using one of:\n'
            f'  1. ShapeUnderClothOptimizer(..., prior_path=\'/your/path/pose_prior\')\n'
            f'  2. export SHAPEUNDERCLOTH_POSE_PRIOR=/your/path/pose_prior\n'
            f'  3. export DATA_ROOT=/your/path   (looks for $DATA_ROOT/pose_prior/)'
        ) from None
    try:
        return np.array([float(t) for t in tokens], np.float64)
    except ValueError as e:
        raise PriorFormatError(f'Non-numeric value in {path}: {e}') from None


def _read_count(values, index, filename):
    if len(values) <= index or not float(values[index]).is_integer():
        raise PriorFormatError(f'{filename} must start with integer dimensions')
    return int(values[index])


class NormalPrior:
    """
    Residual block of a Gaussian prior, ``A (x - mean)`` with ``A^T A = stiffness``.

    Half the squared norm of the residuals is then the negative log-likelihood of ``x``
    (up to a constant) under a normal distribution with precision matrix `stiffness`. The
    mapping is linear, so the Jacobian is the constant matrix ``A``.

    Parameters:
        stiffness: Symmetric positive semi-definite precision matrix, shape (n, n).
        mean: Mean vector, shape (n,).
    """

    def __init__(self, stiffness: np.ndarray, mean: np.ndarray):
        stiffness = np.asarray(stiffness, np.float64)
        self.mean = np.asarray(mean, np.float64)
        if stiffness.shape != (len(self.mean), len(self.mean)):
            raise PriorFormatError(
                f'Stiffness shape {stiffness.shape} does not match mean size {len(self.mean)}'
            )
        eigvals, eigvecs = scipy.linalg.eigh(stiffness)
        # Rounding noise in the null space (e.g. the root rotation) is treated as zero
        tolerance = np.max(np.abs(eigvals), initial=0.0) * len(eigvals) * np.finfo(np.float64).eps
        eigvals = np.where(eigvals > tolerance, eigvals, 0.0)
        self.sqrt_stiffness = np.sqrt(eigvals)[:, np.newaxis] * eigvecs.T
        self.num_residuals = len(self.mean)
        self.parameter_block_sizes = [len(self.mean)]

    @classmethod
    def from_pose_prior(cls, prior: PosePrior) -> 'NormalPrior':
        return cls(prior.stiffness, prior.mean_pose)

    def evaluate(self, parameters, jacobians: bool = False):
        residuals = self.sqrt_stiffness @ (np.asarray(parameters[0], np.float64) - self.mean)
        if not jacobians:
            return residuals, None
        return residuals, [self.sqrt_stiffness.copy()]

