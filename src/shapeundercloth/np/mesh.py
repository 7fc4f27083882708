from __future__ import annotations

import os.path as osp
from typing import Optional

import numpy as np
import trimesh

from ..common import GeometryError


class TargetMesh:
    """
    Static triangle mesh of the observed surface that the body model is fitted to.

    Besides the raw geometry, it precomputes the angle-weighted pseudonormals used for
    resolving the sign of distances: unit face normals, angle-weighted vertex normals and
    edge normals (the sum of the unit normals of the faces sharing the edge). These are well
    defined also on open or non-manifold surfaces.

    Parameters:
        vertices: Vertex positions, shape (num_vertices, 3).
        faces: Vertex indices of the triangles, shape (num_faces, 3).
        normalized_vertices: Vertex positions after normalization (e.g. re-centering or
            rescaling to the body model's units). Defaults to the raw vertices.
        name: Name used in logs.
    """

    def __init__(
        self,
        vertices: np.ndarray,
        faces: np.ndarray,
        normalized_vertices: Optional[np.ndarray] = None,
        name: str = '',
    ):
        self.vertices = np.asarray(vertices, np.float64)
        self.faces = np.asarray(faces, np.int64).reshape(-1, 3)
        if normalized_vertices is None:
            normalized_vertices = self.vertices
        self.normalized_vertices = np.asarray(normalized_vertices, np.float64)
        self.name = name

        if self.vertices.ndim != 2 or self.vertices.shape[1] != 3:
            raise ValueError(f'Vertices must have shape (n, 3), got {self.vertices.shape}')
        if self.normalized_vertices.shape != self.vertices.shape:
            raise ValueError('Normalized vertices must have the same shape as the vertices')

        self._geometry_cache = {}

    @property
    def num_faces(self) -> int:
        return len(self.faces)

    def mean_point(self) -> np.ndarray:
        return np.mean(self.vertices, axis=0)

    @property
    def face_normals(self) -> np.ndarray:
        return self.pseudonormals(normalized=False)['face_normals']

    @property
    def vertex_normals(self) -> np.ndarray:
        return self.pseudonormals(normalized=False)['vertex_normals']

    @property
    def edge_normals(self) -> np.ndarray:
        return self.pseudonormals(normalized=False)['edge_normals']

    @property
    def face_edge_ids(self) -> np.ndarray:
        return self.pseudonormals(normalized=False)['face_edge_ids']

    def get_vertices(self, normalized: bool = False) -> np.ndarray:
        return self.normalized_vertices if normalized else self.vertices

    def pseudonormals(self, normalized: bool = False) -> dict:
        """Face, vertex and edge pseudonormals of the raw or the normalized geometry.

        Returns:
            A dictionary containing
                - **face_normals** -- unit face normals, shaped as (num_faces, 3).
                - **vertex_normals** -- angle-weighted vertex normals, (num_vertices, 3).
                - **edge_normals** -- edge normals, shaped as (num_edges, 3).
                - **face_edge_ids** -- edge index of the edges (v0, v1), (v1, v2), (v2, v0) of
                  each face, shaped as (num_faces, 3).
        """
        if self.num_faces == 0:
            raise GeometryError(f'Target mesh {self.name!r} has no faces')

        if normalized not in self._geometry_cache:
            self._geometry_cache[normalized] = compute_pseudonormals(
                self.get_vertices(normalized), self.faces
            )
        return self._geometry_cache[normalized]

    def normalized(self, center: Optional[np.ndarray] = None, scale: float = 1.0) -> 'TargetMesh':
        """Returns a mesh whose normalized vertices are centered at `center` and scaled by
        `scale` around their mean."""
        mean = self.mean_point()
        if center is None:
            center = mean
        normalized_vertices = (self.vertices - mean) * scale + np.asarray(center, np.float64)
        return TargetMesh(self.vertices, self.faces, normalized_vertices, self.name)


def compute_pseudonormals(vertices, faces):
    corners = vertices[faces]
    edge_vectors = [corners[:, (i + 1) % 3] - corners[:, i] for i in range(3)]
    face_normals = np.cross(edge_vectors[0], -edge_vectors[2])
    face_normals = _normalize(face_normals)

    # Angle-weighted vertex normals
    vertex_normals = np.zeros_like(vertices)
    for i_corner in range(3):
        outgoing = _normalize(edge_vectors[i_corner])
        incoming = _normalize(-edge_vectors[(i_corner + 2) % 3])
        angle = np.arccos(np.clip(np.sum(outgoing * incoming, axis=-1), -1.0, 1.0))
        np.add.at(vertex_normals, faces[:, i_corner], angle[:, np.newaxis] * face_normals)
    vertex_normals = _normalize(vertex_normals)

    # Undirected edges shared between faces get the sum of the adjacent face normals
    directed_edges = np.stack([faces, np.roll(faces, -1, axis=1)], axis=-1).reshape(-1, 2)
    unique_edges, edge_ids = np.unique(np.sort(directed_edges, axis=1), axis=0, return_inverse=True)
    edge_ids = np.reshape(edge_ids, [-1])
    edge_normals = np.zeros((len(unique_edges), 3))
    np.add.at(edge_normals, edge_ids, np.repeat(face_normals, 3, axis=0))

    return dict(
        face_normals=face_normals,
        vertex_normals=vertex_normals,
        edge_normals=edge_normals,
        face_edge_ids=edge_ids.reshape(-1, 3),
    )


def _normalize(vectors):
    norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
    return vectors / np.where(norms == 0, 1.0, norms)


def load_mesh(path, name=None) -> TargetMesh:
    """Loads a target mesh from an ``.npz`` file with ``vertices`` and ``faces`` arrays or
    from any mesh format that trimesh reads (e.g. ``.obj``, ``.ply``)."""
    path = str(path)
    if name is None:
        name = osp.splitext(osp.basename(path))[0]

    if path.endswith('.npz'):
        data = np.load(path)
        return TargetMesh(data['vertices'], data['faces'], name=name)

    mesh = trimesh.load(path, process=False, force='mesh')
    return TargetMesh(
        np.asarray(mesh.vertices, np.float64), np.asarray(mesh.faces, np.int64), name=name
    )
