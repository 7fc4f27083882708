from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..common import ConfigurationError, IllegalStateError
from .bodymodel import BodyModel, ModelState
from .mesh import TargetMesh
from .signed_distance import signed_distance

logger = logging.getLogger(__name__)


class ParameterKind(enum.Enum):
    """The parameter block that a distance residual is differentiated with respect to."""

    TRANSLATION = 'translation'
    SHAPE = 'shape'
    POSE = 'pose'
    DISPLACEMENT = 'displacement'

    @classmethod
    def coerce(cls, kind) -> 'ParameterKind':
        if isinstance(kind, cls):
            return kind
        if isinstance(kind, str):
            try:
                return cls[kind.upper()]
            except KeyError:
                pass
        raise ConfigurationError(
            f'Unknown parameter kind: {kind!r}. Expected one of {[k.name for k in cls]}'
        )

    def block_size(self, body_model: BodyModel) -> int:
        return _BLOCK_SIZES[self](body_model)

    def num_residuals(self, body_model: BodyModel) -> int:
        # Displacements are optimized per vertex, with the distance of that vertex only
        return 1 if self is ParameterKind.DISPLACEMENT else body_model.num_vertices


_BLOCK_SIZES = {
    ParameterKind.TRANSLATION: lambda m: m.SPACE_DIM,
    ParameterKind.SHAPE: lambda m: m.shape_size,
    ParameterKind.POSE: lambda m: m.pose_size,
    ParameterKind.DISPLACEMENT: lambda m: m.SPACE_DIM,
}


@dataclass
class DistanceResult:
    """Model vertices at an evaluation point, their distances to the target surface and the
    Jacobian of the vertices with respect to the active parameter block."""

    verts: np.ndarray
    verts_normals: np.ndarray
    signed_dists: np.ndarray
    closest_face_ids: np.ndarray
    closest_points: np.ndarray
    sign_normals: np.ndarray
    jacobian: Optional[np.ndarray] = None
    """Shape (parameter_size, num_vertices, 3): entry ``[p]`` is d(verts)/d(parameter p)."""

    def __post_init__(self):
        num_vertices = len(self.verts)
        for name in ('verts_normals', 'signed_dists', 'closest_face_ids', 'closest_points',
                     'sign_normals'):
            if len(getattr(self, name)) != num_vertices:
                raise IllegalStateError(
                    f'DistanceResult.{name} has {len(getattr(self, name))} rows, '
                    f'expected {num_vertices}'
                )


class DistanceEvaluator:
    """
    Runs the model forward pass and the distance resolution for one parameter kind.

    The parameter of the given kind can be overridden by an explicit value, all others are
    read from the model state. This is the computation behind both the shared
    :class:`EvaluationContext` and the immediate (context-free) evaluation of residual blocks.

    Parameters:
        body_model: The deformable body model.
        target: The observed target surface.
        kind: The parameter kind whose Jacobian is computed.
        state: Current parameter values. Defaults to the state of the body model.
        normalized_target: Whether distances are measured against the normalized target
            vertices.
    """

    def __init__(
        self,
        body_model: BodyModel,
        target: TargetMesh,
        kind: ParameterKind,
        state: Optional[ModelState] = None,
        normalized_target: bool = True,
    ):
        self.body_model = body_model
        self.target = target
        self.kind = ParameterKind.coerce(kind)
        self.state = state if state is not None else body_model.state
        self.normalized_target = normalized_target
        self.block_size = self.kind.block_size(body_model)

    def compute(
        self,
        parameter: Optional[np.ndarray] = None,
        with_jacobian: bool = False,
        vertex_id: Optional[int] = None,
        frozen_jacobian: Optional[np.ndarray] = None,
    ) -> DistanceResult:
        """Computes the distance result at the current state, optionally with `parameter`
        substituted for the block of this evaluator's kind.

        For the displacement kind, `vertex_id` selects the vertex whose displacement
        `parameter` is. `frozen_jacobian`, if given, is attached to the result instead
        of computing one.
        """
        translation = self.state.translation
        pose = self.state.pose
        shape = self.state.shape
        displacements = self.state.displacements

        if parameter is not None:
            parameter = np.asarray(parameter, np.float64)
            if self.kind is ParameterKind.TRANSLATION:
                translation = parameter
            elif self.kind is ParameterKind.SHAPE:
                shape = parameter
            elif self.kind is ParameterKind.POSE:
                pose = parameter
            elif self.kind is ParameterKind.DISPLACEMENT:
                if vertex_id is None:
                    raise IllegalStateError('A displacement parameter needs a vertex id')
                displacements = displacements.copy()
                displacements[vertex_id] = parameter
            else:
                raise IllegalStateError(f'Unknown parameter kind: {self.kind!r}')

        model_jacobian_flags = dict(
            pose_jacobian=with_jacobian and self.kind is ParameterKind.POSE,
            shape_jacobian=with_jacobian and self.kind is ParameterKind.SHAPE,
            displacement_jacobian=with_jacobian and self.kind is ParameterKind.DISPLACEMENT,
        )
        forward = self.body_model(translation, pose, shape, displacements, **model_jacobian_flags)
        verts = forward['vertices']

        jacobian = frozen_jacobian
        if with_jacobian:
            jacobian = self._select_jacobian(forward)
            if len(jacobian) != self.block_size:
                raise IllegalStateError(
                    f'Jacobian has {len(jacobian)} entries, expected {self.block_size} for '
                    f'{self.kind.name}'
                )

        distances = signed_distance(verts, self.target, normalized=self.normalized_target)
        return DistanceResult(
            verts=verts,
            verts_normals=self.body_model.vertex_normals(verts),
            signed_dists=distances.signed_dists,
            closest_face_ids=distances.closest_face_ids,
            closest_points=distances.closest_points,
            sign_normals=distances.sign_normals,
            jacobian=jacobian,
        )

    def _select_jacobian(self, forward):
        if self.kind is ParameterKind.TRANSLATION:
            # The vertices move rigidly with the translation
            num_vertices = self.body_model.num_vertices
            return np.broadcast_to(
                np.eye(3)[:, np.newaxis, :], (3, num_vertices, 3)
            ).copy()
        elif self.kind is ParameterKind.SHAPE:
            return forward['shape_jacobian']
        elif self.kind is ParameterKind.POSE:
            return forward['pose_jacobian']
        elif self.kind is ParameterKind.DISPLACEMENT:
            return forward['displacement_jacobian']
        raise IllegalStateError(f'Unknown parameter kind: {self.kind!r}')


class EvaluationContext:
    """
    Shared cache of the most recent distance result of one optimization problem.

    The solver calls :meth:`prepare` once before evaluating the residual blocks at a point,
    so all blocks that evaluate at that point share a single forward pass and distance
    resolution. Each problem solve owns its own context; contexts are not safe to share
    between concurrent solves.

    For displacements, the Jacobian of a vertex with respect to its own offset does not
    depend on the offsets, so it is computed once per run and then frozen.
    """

    def __init__(self, evaluator: DistanceEvaluator):
        self.evaluator = evaluator
        self.result: Optional[DistanceResult] = None
        self.displacement_jacobian_frozen = False
        self.num_evaluations = 0
        self.num_jacobian_evaluations = 0

    @classmethod
    def create(cls, body_model, target, kind, state=None, normalized_target=True):
        return cls(DistanceEvaluator(body_model, target, kind, state, normalized_target))

    @property
    def kind(self) -> ParameterKind:
        return self.evaluator.kind

    def reset(self):
        self.result = None
        self.displacement_jacobian_frozen = False

    def prepare(self, evaluate_jacobians: bool, new_evaluation_point: bool):
        """Recomputes the distance result from the current state if a Jacobian is requested
        or the evaluation point changed, otherwise keeps the stored result."""
        if not (evaluate_jacobians or new_evaluation_point):
            return

        frozen = self.kind is ParameterKind.DISPLACEMENT and self.displacement_jacobian_frozen
        compute_jacobian = evaluate_jacobians and not frozen
        previous_jacobian = self.result.jacobian if self.result is not None else None

        self.result = self.evaluator.compute(
            with_jacobian=compute_jacobian,
            frozen_jacobian=previous_jacobian if frozen else None,
        )
        self.num_evaluations += 1
        if compute_jacobian:
            self.num_jacobian_evaluations += 1
            if self.kind is ParameterKind.DISPLACEMENT:
                self.displacement_jacobian_frozen = True
                logger.debug('Displacement Jacobian computed and frozen for this run')
