"""Shared pytest fixtures for shapeundercloth tests.

The tests run on a small synthetic body model instead of the SMPL files, which cannot be
redistributed: a sphere-shaped template with two joints (a root and a joint above it), smooth
skinning weights along the vertical axis and small random blend shapes.
"""

from __future__ import annotations

import numpy as np
import pytest

from shapeundercloth.common import ModelData
from shapeundercloth.np import BodyModel, TargetMesh

NUM_BETAS = 4


def icosphere(subdivisions: int = 1, radius: float = 1.0):
    """Vertices and outward-oriented faces of a subdivided icosahedron."""
    t = (1.0 + np.sqrt(5.0)) / 2.0
    vertices = [
        [-1, t, 0], [1, t, 0], [-1, -t, 0], [1, -t, 0],
        [0, -1, t], [0, 1, t], [0, -1, -t], [0, 1, -t],
        [t, 0, -1], [t, 0, 1], [-t, 0, -1], [-t, 0, 1],
    ]
    faces = [
        [0, 11, 5], [0, 5, 1], [0, 1, 7], [0, 7, 10], [0, 10, 11],
        [1, 5, 9], [5, 11, 4], [11, 10, 2], [10, 7, 6], [7, 1, 8],
        [3, 9, 4], [3, 4, 2], [3, 2, 6], [3, 6, 8], [3, 8, 9],
        [4, 9, 5], [2, 4, 11], [6, 2, 10], [8, 6, 7], [9, 8, 1],
    ]
    vertices = [np.array(v, np.float64) / np.linalg.norm(v) for v in vertices]

    for _ in range(subdivisions):
        midpoint_cache = {}

        def midpoint(i, j):
            key = (min(i, j), max(i, j))
            if key not in midpoint_cache:
                m = vertices[i] + vertices[j]
                vertices.append(m / np.linalg.norm(m))
                midpoint_cache[key] = len(vertices) - 1
            return midpoint_cache[key]

        new_faces = []
        for a, b, c in faces:
            ab = midpoint(a, b)
            bc = midpoint(b, c)
            ca = midpoint(c, a)
            new_faces += [[a, ab, ca], [b, bc, ab], [c, ca, bc], [ab, bc, ca]]
        faces = new_faces

    vertices = np.stack(vertices) * radius
    faces = np.array(faces, np.int64)

    # Orient each face so that its normal points away from the center
    corners = vertices[faces]
    normals = np.cross(corners[:, 1] - corners[:, 0], corners[:, 2] - corners[:, 0])
    inward = np.sum(normals * np.mean(corners, axis=1), axis=-1) < 0
    faces[inward] = faces[inward][:, ::-1]
    return vertices, faces


def make_model_data(seed: int = 0) -> ModelData:
    rng = np.random.RandomState(seed)
    v_template, faces = icosphere(subdivisions=1, radius=0.5)
    num_vertices = len(v_template)
    num_joints = 2

    # Smooth blend from the root (bottom) to the upper joint (top)
    upper = 1.0 / (1.0 + np.exp(-v_template[:, 1] / 0.1))
    weights = np.stack([1.0 - upper, upper], axis=1)

    return ModelData(
        v_template=v_template,
        shapedirs=rng.randn(num_vertices, 3, NUM_BETAS) * 0.01,
        posedirs=rng.randn(num_vertices, 3, (num_joints - 1) * 9) * 0.01,
        J_template=np.array([[0.0, 0.0, 0.0], [0.0, 0.25, 0.0]]),
        J_shapedirs=rng.randn(num_joints, 3, NUM_BETAS) * 0.01,
        weights=weights,
        kintree_parents=[-1, 0],
        faces=faces,
        num_joints=num_joints,
        num_vertices=num_vertices,
    )


def write_pose_prior(directory, mean_pose, stiffness):
    """Writes prior files in the text format read by load_pose_prior."""
    mean_pose = np.asarray(mean_pose, np.float64)
    stiffness = np.asarray(stiffness, np.float64)
    with open(directory / 'mean_pose.txt', 'w') as f:
        f.write(f'{len(mean_pose)}\n')
        f.write(' '.join(repr(float(x)) for x in mean_pose) + '\n')
    with open(directory / 'stiffness.txt', 'w') as f:
        f.write(f'{stiffness.shape[0]} {stiffness.shape[1]}\n')
        for row in stiffness:
            f.write(' '.join(repr(float(x)) for x in row) + '\n')
    return directory


@pytest.fixture
def model_data() -> ModelData:
    return make_model_data()


@pytest.fixture
def body_model(model_data) -> BodyModel:
    """Synthetic two-joint body model with 42 vertices and 4 shape coefficients."""
    return BodyModel(model_name='synthetic', data=model_data)


@pytest.fixture
def template_target(body_model) -> TargetMesh:
    """Target surface identical to the body model template."""
    return TargetMesh(body_model.v_template.copy(), body_model.faces.copy(), name='template')


@pytest.fixture
def shrunk_target(body_model) -> TargetMesh:
    """Template scaled by 0.8, so all model vertices near the rest pose are outside."""
    return TargetMesh(body_model.v_template * 0.8, body_model.faces.copy(), name='shrunk')


@pytest.fixture
def grown_target(body_model) -> TargetMesh:
    """Template scaled by 1.2, so all model vertices near the rest pose are inside."""
    return TargetMesh(body_model.v_template * 1.2, body_model.faces.copy(), name='grown')


@pytest.fixture
def sphere_target() -> TargetMesh:
    vertices, faces = icosphere(subdivisions=2, radius=1.0)
    return TargetMesh(vertices, faces, name='sphere')


@pytest.fixture
def prior_stiffness() -> np.ndarray:
    return np.array([[2.0, 0.3, 0.0], [0.3, 1.5, 0.2], [0.0, 0.2, 1.0]])


@pytest.fixture
def prior_dir(tmp_path, prior_stiffness):
    """Pose prior files for the synthetic model (3 non-root pose parameters)."""
    return write_pose_prior(tmp_path, [0.1, -0.05, 0.02], prior_stiffness)


@pytest.fixture
def zero_mean_prior_dir(tmp_path, prior_stiffness):
    directory = tmp_path / 'zero_mean'
    directory.mkdir()
    return write_pose_prior(directory, [0.0, 0.0, 0.0], prior_stiffness)
