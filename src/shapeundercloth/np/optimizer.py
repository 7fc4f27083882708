from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, MutableSequence, Optional, Sequence

import numpy as np

from ..common import ConfigurationError
from .bodymodel import BodyModel, ModelState
from .evaluation import EvaluationContext, ParameterKind
from .mesh import TargetMesh
from .prior import NormalPrior, load_pose_prior
from .problem import Problem, ScaledLoss
from .residuals import (
    AsymmetricSquaredDistance,
    DirectionalPoseTranslationResidual,
    DistanceResidual,
)
from .solver import IterationSummary, SolverOptions, SolverSummary, TerminationType, solve

logger = logging.getLogger(__name__)

STRATEGIES = ('directional', 'distance')


@dataclass
class FitConfig:
    """Configuration of a :class:`ShapeUnderClothOptimizer` run."""

    strategy: str = 'directional'
    """'directional' fits pose and translation with
    :class:`~shapeundercloth.np.residuals.DirectionalPoseTranslationResidual`; 'distance'
    fits the block of `parameter_kind` with
    :class:`~shapeundercloth.np.residuals.DistanceResidual`."""

    parameter_kind: ParameterKind = ParameterKind.POSE
    inside_coef: float = 1.0
    outside_coef: float = 1.0
    normal_threshold: Optional[float] = None
    prior_weight: float = 1e-4
    max_num_iterations: int = 500
    linear_solver_type: str = 'dense_qr'
    log_progress: bool = True
    use_evaluation_callback: bool = True
    normalized_target: bool = True
    displacement_vertex_ids: Optional[Sequence[int]] = None
    """Vertices whose displacement is optimized. All vertices by default."""

    initial_translation: Optional[np.ndarray] = None
    """By default, the offset between the target centroid and the template centroid."""

    def __post_init__(self):
        if self.strategy not in STRATEGIES:
            raise ConfigurationError(
                f'Unknown strategy: {self.strategy!r}. Expected one of {STRATEGIES}'
            )
        self.parameter_kind = ParameterKind.coerce(self.parameter_kind)
        if self.prior_weight < 0:
            raise ConfigurationError(f'prior_weight must be non-negative, got {self.prior_weight}')


class VertexSnapshotCallback:
    """Appends a copy of the current model vertices to `sink` after each accepted iteration.

    It only reads the model state, so the consumer of the snapshots never sees solver
    internals.
    """

    def __init__(self, body_model: BodyModel, sink: MutableSequence[np.ndarray]):
        self.body_model = body_model
        self.sink = sink

    def __call__(self, iteration_summary: IterationSummary):
        state = self.body_model.state
        vertices = self.body_model(
            state.translation, state.pose, state.shape, state.displacements
        )['vertices']
        self.sink.append(vertices.copy())


class ShapeUnderClothOptimizer:
    """
    Estimates the body under clothing: fits the body model to an observed (clothed) target
    surface with signed-distance residuals and a Gaussian pose prior.

    Parameters:
        body_model: The body model to fit.
        target: The observed target surface.
        prior_path: Directory of the pose prior files. By default
            $SHAPEUNDERCLOTH_POSE_PRIOR or $DATA_ROOT/pose_prior is used.
        config: Configuration of the fit.
    """

    def __init__(
        self,
        body_model: BodyModel,
        target: TargetMesh,
        prior_path: Optional[str] = None,
        config: Optional[FitConfig] = None,
    ):
        self.body_model = body_model
        self.target = target
        self.config = config if config is not None else FitConfig()
        self.summary: Optional[SolverSummary] = None
        self.set_new_prior_path(prior_path)

    def set_new_body_model(self, body_model: BodyModel):
        # Load first so that a failure leaves the previous model and prior in place
        prior = load_pose_prior(self.prior_path, body_model.pose_size)
        self.body_model = body_model
        self.prior = prior

    def set_new_target(self, target: TargetMesh):
        self.target = target

    def set_new_prior_path(self, prior_path: Optional[str]):
        prior = load_pose_prior(prior_path, self.body_model.pose_size)
        self.prior_path = prior_path
        self.prior = prior

    def find_optimal_parameters(self, iteration_results: Optional[List[np.ndarray]] = None):
        """Runs the optimization from a fresh initial state.

        Parameters:
            iteration_results: If given, the model vertices after each accepted iteration are
                appended to it.

        Returns:
            Tuple of copies of the estimated translation (3,), pose (pose_size,) and shape
            (shape_size,).
        """
        config = self.config
        state = self._initial_state()
        self.body_model.state = state

        problem = self._build_problem(state)

        options = SolverOptions(
            linear_solver_type=config.linear_solver_type,
            max_num_iterations=config.max_num_iterations,
            minimizer_progress_to_stdout=config.log_progress,
        )
        if iteration_results is not None:
            options.callbacks.append(VertexSnapshotCallback(self.body_model, iteration_results))

        logger.info(
            'Fitting %s to target %r with the %s strategy (%d parameters, %d residuals)',
            self.body_model.model_name, self.target.name, config.strategy,
            problem.num_parameters, problem.num_residuals,
        )
        self.summary = solve(options, problem)
        logger.info('%s', self.summary.full_report())
        if self.summary.termination_type is not TerminationType.CONVERGENCE:
            logger.warning('Fit did not converge: %s', self.summary.message)

        return state.translation.copy(), state.pose.copy(), state.shape.copy()

    def _initial_state(self) -> ModelState:
        config = self.config
        state = ModelState.zeros(self.body_model)
        if config.initial_translation is not None:
            state.translation[:] = config.initial_translation
        else:
            normalized = config.strategy == 'distance' and config.normalized_target
            target_mean = np.mean(self.target.get_vertices(normalized), axis=0)
            state.translation[:] = target_mean - self.body_model.template_mean_point()
        return state

    def _build_problem(self, state: ModelState) -> Problem:
        config = self.config

        if config.strategy == 'directional':
            problem = Problem()
            residual = DirectionalPoseTranslationResidual(
                self.body_model, self.target, shape=state.shape, inside_coef=config.inside_coef
            )
            problem.add_residual_block(residual, None, state.pose, state.translation)
            pose_is_variable = True
        else:
            kind = config.parameter_kind
            context = EvaluationContext.create(
                self.body_model, self.target, kind, state, config.normalized_target
            )
            problem = Problem(
                evaluation_callback=context if config.use_evaluation_callback else None
            )
            policy = AsymmetricSquaredDistance(
                config.inside_coef, config.outside_coef, config.normal_threshold
            )
            if kind is ParameterKind.DISPLACEMENT:
                vertex_ids = config.displacement_vertex_ids
                if vertex_ids is None:
                    vertex_ids = range(self.body_model.num_vertices)
                for vertex_id in vertex_ids:
                    residual = DistanceResidual(
                        context, vertex_id, policy, config.use_evaluation_callback
                    )
                    problem.add_residual_block(residual, None, state.displacements[vertex_id])
            else:
                residual = DistanceResidual(
                    context, policy=policy, use_evaluation_callback=config.use_evaluation_callback
                )
                problem.add_residual_block(residual, None, _parameter_block(state, kind))
            pose_is_variable = kind is ParameterKind.POSE

        problem.add_residual_block(
            NormalPrior.from_pose_prior(self.prior), ScaledLoss(config.prior_weight), state.pose
        )
        if not pose_is_variable:
            problem.set_parameter_block_constant(state.pose)
        return problem


def _parameter_block(state: ModelState, kind: ParameterKind) -> np.ndarray:
    if kind is ParameterKind.TRANSLATION:
        return state.translation
    elif kind is ParameterKind.SHAPE:
        return state.shape
    elif kind is ParameterKind.POSE:
        return state.pose
    raise ConfigurationError(f'{kind!r} is not a single parameter block')
