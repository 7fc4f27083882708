from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from ..common import ConfigurationError, IllegalStateError
from .bodymodel import BodyModel
from .evaluation import DistanceResult, EvaluationContext, ParameterKind
from .mesh import TargetMesh
from .signed_distance import signed_distance


class AsymmetricSquaredDistance:
    """
    Elementwise residual policy of the distance residual blocks.

    The residual of a vertex is ``w * d**2``, with ``d`` its signed distance to the target
    and ``w = outside_coef`` when the vertex is outside (``d > 0``) and ``inside_coef``
    otherwise. A lower inside weight models clothing: the body is expected to lie inside the
    observed surface.

    If `normal_threshold` is set, vertices whose model normal and the normal of the nearest
    target face have a cosine below it get zero weight, which suppresses matches against
    the far side of thin or self-occluding parts of the target.

    With the nearest point ``c`` held fixed, ``d(d**2) = 2 (v - c) . dv``, so the Jacobian
    of each residual is ``2 w (v - c) . dv/dp``.
    """

    def __init__(
        self,
        inside_coef: float = 1.0,
        outside_coef: float = 1.0,
        normal_threshold: Optional[float] = None,
    ):
        if inside_coef < 0 or outside_coef < 0:
            raise ConfigurationError('Residual weights must be non-negative')
        self.inside_coef = inside_coef
        self.outside_coef = outside_coef
        self.normal_threshold = normal_threshold

    def weights(self, signed_dists, verts_normals=None, face_normals=None):
        weights = np.where(signed_dists > 0, self.outside_coef, self.inside_coef)
        if self.normal_threshold is not None:
            cosines = np.sum(verts_normals * face_normals, axis=-1)
            weights = np.where(cosines < self.normal_threshold, 0.0, weights)
        return weights

    def residuals(self, signed_dists, weights):
        return weights * np.square(signed_dists)

    def jacobian(self, verts, closest_points, weights, vertex_jacobian):
        """Jacobian of the residuals, (num_vertices, num_params), given the vertex Jacobian
        (num_params, num_vertices, 3)."""
        return 2 * weights[:, np.newaxis] * np.einsum(
            'vc,pvc->vp', verts - closest_points, vertex_jacobian
        )

    def translation_jacobian(self, verts, closest_points, weights):
        return 2 * weights[:, np.newaxis] * (verts - closest_points)


class DistanceResidual:
    """
    Residual block of signed distances from the body model vertices to the target surface,
    differentiated with respect to one parameter block.

    ==============  ==================  ====================
    Kind            Residuals           Parameter size
    ==============  ==================  ====================
    TRANSLATION     num_vertices        3
    SHAPE           num_vertices        shape_size
    POSE            num_vertices        pose_size
    DISPLACEMENT    1                   3 (one vertex)
    ==============  ==================  ====================

    Parameters:
        context: The evaluation context of the problem. Its kind determines the kind of
            this block.
        vertex_id: For DISPLACEMENT, the vertex whose offset is the parameter block. Ignored
            for the other kinds.
        policy: Elementwise residual policy, by default symmetric squared distance.
        use_evaluation_callback: If True, the residuals are read from the context prepared
            by the solver. If False, each evaluation recomputes the forward pass and the
            distances from the parameter values it is given, which allows evaluating the
            block on its own.
    """

    def __init__(
        self,
        context: EvaluationContext,
        vertex_id: Optional[int] = None,
        policy: Optional[AsymmetricSquaredDistance] = None,
        use_evaluation_callback: bool = True,
    ):
        self.context = context
        self.kind = ParameterKind.coerce(context.kind)
        self.policy = policy if policy is not None else AsymmetricSquaredDistance()
        self.use_evaluation_callback = use_evaluation_callback

        body_model = context.evaluator.body_model
        if self.kind is ParameterKind.DISPLACEMENT:
            if vertex_id is None or not 0 <= vertex_id < body_model.num_vertices:
                raise ConfigurationError(
                    f'Displacement residuals need a vertex id in [0, {body_model.num_vertices}),'
                    f' got {vertex_id!r}'
                )
        else:
            vertex_id = None
        self.vertex_id = vertex_id
        self.num_residuals = self.kind.num_residuals(body_model)
        self.parameter_block_sizes = [self.kind.block_size(body_model)]
        self._fill_jacobian = _JACOBIAN_FILLERS.get(self.kind)

    @property
    def target(self) -> TargetMesh:
        return self.context.evaluator.target

    def evaluate(self, parameters: Sequence[np.ndarray], jacobians: bool = False):
        """Evaluates the residuals and, if requested, the Jacobian.

        Returns:
            Tuple of the residuals (num_residuals,) and a list with the Jacobian
            (num_residuals, parameter_size) of the single parameter block, or None.
        """
        if self.use_evaluation_callback:
            distance_result = self.context.result
            if distance_result is None:
                raise IllegalStateError(
                    'The evaluation context was not prepared before evaluating the residuals'
                )
        else:
            distance_result = self.context.evaluator.compute(
                parameters[0], with_jacobian=jacobians, vertex_id=self.vertex_id
            )

        face_normals = self.target.pseudonormals(self.context.evaluator.normalized_target)[
            'face_normals'
        ]
        rows = slice(None) if self.vertex_id is None else slice(self.vertex_id, self.vertex_id + 1)
        weights = self.policy.weights(
            distance_result.signed_dists[rows],
            distance_result.verts_normals[rows],
            face_normals[distance_result.closest_face_ids[rows]],
        )
        residuals = self.policy.residuals(distance_result.signed_dists[rows], weights)

        if not jacobians:
            return residuals, None

        if distance_result.jacobian is None:
            raise IllegalStateError(
                'A Jacobian was requested but the evaluation context holds none; '
                'prepare() must be called with evaluate_jacobians=True first'
            )
        if len(distance_result.jacobian) != self.parameter_block_sizes[0]:
            raise IllegalStateError(
                f'The prepared Jacobian has {len(distance_result.jacobian)} entries, '
                f'this block expects {self.parameter_block_sizes[0]}'
            )
        if self._fill_jacobian is None:
            raise IllegalStateError(f'No Jacobian evaluation for parameter kind {self.kind!r}')
        return residuals, [self._fill_jacobian(self, distance_result, rows, weights)]


def _fill_translation_jacobian(block, distance_result: DistanceResult, rows, weights):
    return block.policy.translation_jacobian(
        distance_result.verts[rows], distance_result.closest_points[rows], weights
    )


def _fill_jacobian(block, distance_result: DistanceResult, rows, weights):
    return block.policy.jacobian(
        distance_result.verts[rows],
        distance_result.closest_points[rows],
        weights,
        distance_result.jacobian[:, rows],
    )


_JACOBIAN_FILLERS = {
    ParameterKind.TRANSLATION: _fill_translation_jacobian,
    ParameterKind.SHAPE: _fill_jacobian,
    ParameterKind.POSE: _fill_jacobian,
    # Restricted to the selected vertex through the row slice
    ParameterKind.DISPLACEMENT: _fill_jacobian,
}


class DirectionalPoseTranslationResidual:
    """
    Residual block of squared signed distances with respect to pose and translation, with a
    fixed body shape. It does not use an evaluation context; every evaluation runs the
    forward pass and the distance resolution itself.

    Vertices outside the target are penalized with weight 1, vertices inside it with
    `inside_coef`, since a body under clothing is expected to be inside the observed surface.

    Parameters:
        body_model: The deformable body model.
        target: The observed target surface. Distances are measured to its raw vertices.
        shape: The fixed shape coefficients.
        inside_coef: Weight of the residuals of vertices inside the target.
    """

    def __init__(
        self,
        body_model: BodyModel,
        target: TargetMesh,
        shape: Optional[np.ndarray] = None,
        inside_coef: float = 1.0,
    ):
        if inside_coef < 0:
            raise ConfigurationError(f'inside_coef must be non-negative, got {inside_coef}')
        self.body_model = body_model
        self.target = target
        self.shape = shape if shape is not None else np.zeros(body_model.shape_size)
        self.inside_coef = inside_coef
        self.num_residuals = body_model.num_vertices
        self.parameter_block_sizes = [body_model.pose_size, body_model.SPACE_DIM]

    def evaluate(self, parameters: Sequence[np.ndarray], jacobians: bool = False):
        pose, translation = parameters
        forward = self.body_model(
            pose=pose,
            shape=self.shape,
            displacements=self.body_model.state.displacements,
            pose_jacobian=jacobians,
        )
        verts = forward['vertices'] + np.asarray(translation, np.float64)
        distances = signed_distance(verts, self.target)

        signed_dists = distances.signed_dists
        weights = np.where(signed_dists > 0, 1.0, self.inside_coef)
        residuals = weights * np.square(signed_dists)
        if not jacobians:
            return residuals, None

        offsets = 2 * weights[:, np.newaxis] * (verts - distances.closest_points)
        pose_jacobian = np.einsum('vc,pvc->vp', offsets, forward['pose_jacobian'])
        return residuals, [pose_jacobian, offsets]
