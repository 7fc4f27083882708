"""Tests of the shared evaluation context and the distance evaluator."""

from __future__ import annotations

import numpy as np
import pytest

from shapeundercloth.common import ConfigurationError, IllegalStateError
from shapeundercloth.np import DistanceResult, EvaluationContext, ParameterKind


def _set_random_state(body_model, seed=0):
    rng = np.random.RandomState(seed)
    body_model.state.pose[:] = rng.randn(body_model.pose_size) * 0.2
    body_model.state.shape[:] = rng.randn(body_model.shape_size) * 0.5
    body_model.state.translation[:] = [0.01, -0.02, 0.03]


class TestParameterKind:
    def test_coerce_by_name(self):
        assert ParameterKind.coerce('pose') is ParameterKind.POSE
        assert ParameterKind.coerce('DISPLACEMENT') is ParameterKind.DISPLACEMENT
        assert ParameterKind.coerce(ParameterKind.SHAPE) is ParameterKind.SHAPE

    @pytest.mark.parametrize('kind', ['rotation', 3, None])
    def test_unknown_kind_fails_fast(self, body_model, template_target, kind):
        with pytest.raises(ConfigurationError):
            EvaluationContext.create(body_model, template_target, kind)

    def test_block_sizes(self, body_model):
        assert ParameterKind.TRANSLATION.block_size(body_model) == 3
        assert ParameterKind.SHAPE.block_size(body_model) == body_model.shape_size
        assert ParameterKind.POSE.block_size(body_model) == body_model.pose_size
        assert ParameterKind.DISPLACEMENT.block_size(body_model) == 3
        assert ParameterKind.DISPLACEMENT.num_residuals(body_model) == 1
        assert ParameterKind.POSE.num_residuals(body_model) == body_model.num_vertices


class TestDistanceResult:
    def test_row_counts_are_checked(self):
        with pytest.raises(IllegalStateError):
            DistanceResult(
                verts=np.zeros((4, 3)),
                verts_normals=np.zeros((4, 3)),
                signed_dists=np.zeros(3),
                closest_face_ids=np.zeros(4, np.int64),
                closest_points=np.zeros((4, 3)),
                sign_normals=np.zeros((4, 3)),
            )


class TestEvaluationContext:
    """The prepare protocol and the cached results."""

    @pytest.mark.parametrize('kind', list(ParameterKind))
    def test_cached_equals_immediate(self, body_model, shrunk_target, kind):
        """The cached result equals a direct computation at the same parameters."""
        _set_random_state(body_model)
        context = EvaluationContext.create(body_model, shrunk_target, kind)
        context.prepare(True, True)
        cached = context.result

        parameter = {
            ParameterKind.TRANSLATION: body_model.state.translation,
            ParameterKind.SHAPE: body_model.state.shape,
            ParameterKind.POSE: body_model.state.pose,
            ParameterKind.DISPLACEMENT: body_model.state.displacements[5],
        }[kind]
        immediate = context.evaluator.compute(parameter.copy(), with_jacobian=True, vertex_id=5)

        np.testing.assert_allclose(immediate.verts, cached.verts, rtol=0, atol=1e-14)
        np.testing.assert_allclose(
            immediate.signed_dists, cached.signed_dists, rtol=0, atol=1e-14
        )
        np.testing.assert_array_equal(immediate.closest_face_ids, cached.closest_face_ids)
        np.testing.assert_allclose(immediate.jacobian, cached.jacobian, rtol=0, atol=1e-14)
        assert len(cached.jacobian) == kind.block_size(body_model)

    def test_prepare_without_flags_is_noop(self, body_model, shrunk_target):
        context = EvaluationContext.create(body_model, shrunk_target, 'pose')
        context.prepare(False, True)
        result = context.result
        context.prepare(False, False)
        assert context.result is result
        assert context.num_evaluations == 1

    def test_prepare_without_jacobian(self, body_model, shrunk_target):
        context = EvaluationContext.create(body_model, shrunk_target, 'pose')
        context.prepare(False, True)
        assert context.result.jacobian is None
        assert context.num_jacobian_evaluations == 0

    def test_prepare_reads_current_state(self, body_model, shrunk_target):
        context = EvaluationContext.create(body_model, shrunk_target, 'translation')
        context.prepare(False, True)
        before = context.result.verts.copy()
        body_model.state.translation[:] = [0.1, 0.0, 0.0]
        context.prepare(False, True)
        np.testing.assert_allclose(
            context.result.verts - before, [[0.1, 0.0, 0.0]] * len(before), atol=1e-12
        )

    def test_translation_jacobian_is_identity(self, body_model, shrunk_target):
        context = EvaluationContext.create(body_model, shrunk_target, 'translation')
        context.prepare(True, True)
        jacobian = context.result.jacobian
        assert jacobian.shape == (3, body_model.num_vertices, 3)
        np.testing.assert_array_equal(jacobian[:, 0], np.eye(3))

    def test_displacement_jacobian_is_computed_once(self, body_model, shrunk_target):
        """However often a Jacobian is requested, it is computed once per run."""
        context = EvaluationContext.create(body_model, shrunk_target, 'displacement')
        context.prepare(True, True)
        jacobian = context.result.jacobian
        for i in range(5):
            body_model.state.displacements[i] = [0.01, 0.0, -0.01]
            context.prepare(False, True)
            context.prepare(True, False)
            context.prepare(True, True)
        assert context.num_jacobian_evaluations == 1
        assert context.displacement_jacobian_frozen
        assert context.result.jacobian is jacobian
        assert context.num_evaluations == 16

        context.reset()
        assert context.result is None
        context.prepare(True, True)
        assert context.num_jacobian_evaluations == 2

    def test_pose_jacobian_is_recomputed(self, body_model, shrunk_target):
        context = EvaluationContext.create(body_model, shrunk_target, 'pose')
        context.prepare(True, True)
        context.prepare(True, False)
        assert context.num_jacobian_evaluations == 2

    def test_explicit_state(self, body_model, shrunk_target):
        state = body_model.state.copy()
        state.translation[:] = [1.0, 0.0, 0.0]
        context = EvaluationContext.create(body_model, shrunk_target, 'pose', state=state)
        context.prepare(False, True)
        np.testing.assert_allclose(
            context.result.verts, body_model.v_template + [1.0, 0.0, 0.0], atol=1e-12
        )
