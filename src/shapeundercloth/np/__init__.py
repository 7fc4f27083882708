"""NumPy implementation of the body model, the signed-distance residuals and the fitter."""

from __future__ import annotations

from .bodymodel import BodyModel, ModelState
from .mesh import TargetMesh, load_mesh
from .signed_distance import SignedDistanceResult, signed_distance
from .evaluation import DistanceEvaluator, DistanceResult, EvaluationContext, ParameterKind
from .residuals import (
    AsymmetricSquaredDistance,
    DirectionalPoseTranslationResidual,
    DistanceResidual,
)
from .prior import NormalPrior, PosePrior, load_pose_prior
from .problem import Problem, ScaledLoss
from .solver import IterationSummary, SolverOptions, SolverSummary, TerminationType, solve
from .optimizer import FitConfig, ShapeUnderClothOptimizer, VertexSnapshotCallback
from shapeundercloth.common import _set_module_for_docs

import functools

__all__ = [
    'BodyModel',
    'ModelState',
    'TargetMesh',
    'load_mesh',
    'SignedDistanceResult',
    'signed_distance',
    'DistanceEvaluator',
    'DistanceResult',
    'EvaluationContext',
    'ParameterKind',
    'AsymmetricSquaredDistance',
    'DirectionalPoseTranslationResidual',
    'DistanceResidual',
    'NormalPrior',
    'PosePrior',
    'load_pose_prior',
    'Problem',
    'ScaledLoss',
    'IterationSummary',
    'SolverOptions',
    'SolverSummary',
    'TerminationType',
    'solve',
    'FitConfig',
    'ShapeUnderClothOptimizer',
    'VertexSnapshotCallback',
    'get_cached_body_model',
]
_set_module_for_docs(__name__, globals(), __all__)


@functools.lru_cache()
def get_cached_body_model(model_name='smpl', gender='neutral', model_root=None):
    return BodyModel(model_name, gender, model_root)
