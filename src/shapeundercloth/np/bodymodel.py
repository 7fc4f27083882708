from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
from .. import common as shapeundercloth_common
from .rotation import rotvec2mat, rotvec2mat_jacobian


@dataclass
class ModelState:
    """Current parameter values of a body model.

    The arrays are the parameter blocks of an optimization run. The solver writes the
    candidate evaluation point into them in place, so residual blocks that hold some of the
    parameters fixed read the others from here.
    """

    translation: np.ndarray
    pose: np.ndarray
    shape: np.ndarray
    displacements: np.ndarray

    @classmethod
    def zeros(cls, body_model: 'BodyModel') -> 'ModelState':
        return cls(
            translation=np.zeros(body_model.SPACE_DIM, np.float64),
            pose=np.zeros(body_model.pose_size, np.float64),
            shape=np.zeros(body_model.shape_size, np.float64),
            displacements=np.zeros((body_model.num_vertices, body_model.SPACE_DIM), np.float64),
        )

    def copy(self) -> 'ModelState':
        return ModelState(
            translation=self.translation.copy(),
            pose=self.pose.copy(),
            shape=self.shape.copy(),
            displacements=self.displacements.copy(),
        )


class BodyModel:
    """
    Represents a statistical body model of the SMPL family, evaluated for a single instance
    in double precision, with analytic Jacobians of the vertex positions.

    Parameters:
        model_name: Name of the model type.
        gender: Gender of the model, which can be 'neutral', 'female' or 'male'.
        model_root: Path to the directory containing model files. By default,
            {SHAPEUNDERCLOTH_BODY_MODELS}/{model_name} or {DATA_ROOT}/body_models/{model_name}
            is used.
        num_betas: Number of shape parameters (betas) to use. By default, all available betas are
            used.
        data: Already loaded model data. If given, nothing is read from disk.
    """

    SPACE_DIM = shapeundercloth_common.SPACE_DIM

    def __init__(
        self,
        model_name='smpl',
        gender='neutral',
        model_root=None,
        num_betas=None,
        data: Optional[shapeundercloth_common.ModelData] = None,
    ):
        self.gender = gender
        self.model_name = model_name
        if data is None:
            data = shapeundercloth_common.initialize(model_name, gender, model_root, num_betas)
        elif num_betas is not None:
            data.shapedirs = data.shapedirs[:, :, :num_betas]
            data.J_shapedirs = data.J_shapedirs[:, :, :num_betas]

        self.v_template = np.array(data.v_template, np.float64)
        self.shapedirs = np.array(data.shapedirs, np.float64)
        self.posedirs = np.array(data.posedirs, np.float64)
        self.J_template = np.array(data.J_template, np.float64)
        self.J_shapedirs = np.array(data.J_shapedirs, np.float64)
        self.weights = np.array(data.weights, np.float64)
        self.kintree_parents = list(data.kintree_parents)
        self.faces = np.array(data.faces, np.int64)
        self.num_joints = data.num_joints
        self.num_vertices = data.num_vertices
        self.num_betas = self.shapedirs.shape[2]

        # descendants[k, j] is 1 if joint j is k or lies below k in the kinematic tree
        self.descendants = np.eye(self.num_joints)
        for i_joint in range(self.num_joints - 1, 0, -1):
            i_parent = self.kintree_parents[i_joint]
            self.descendants[i_parent] += self.descendants[i_joint]

        self.state = ModelState.zeros(self)

    @property
    def pose_size(self) -> int:
        return self.num_joints * self.SPACE_DIM

    @property
    def shape_size(self) -> int:
        return self.num_betas

    def __call__(
        self,
        translation: Optional[np.ndarray] = None,
        pose: Optional[np.ndarray] = None,
        shape: Optional[np.ndarray] = None,
        displacements: Optional[np.ndarray] = None,
        *,
        pose_jacobian: bool = False,
        shape_jacobian: bool = False,
        displacement_jacobian: bool = False,
    ):
        """
        Calculates the body model vertices for the given translation, pose, shape and
        per-vertex displacements, and optionally the Jacobians of the vertex positions with
        respect to each scalar pose, shape and displacement parameter.

        Displacements are offsets added to the shaped template before posing, so they move
        with the body part they belong to.

        Parameters:
            translation: Translation vector to apply after posing, shaped as (3,).
            pose: Parent-relative rotation vectors per joint, flattened as (num_joints * 3,).
            shape: Shape coefficients (betas), shaped as (num_betas,).
            displacements: Per-vertex offsets in the template space, shaped as
                (num_vertices, 3).
            pose_jacobian: Whether to compute the Jacobian with respect to the pose.
            shape_jacobian: Whether to compute the Jacobian with respect to the shape.
            displacement_jacobian: Whether to compute the Jacobian with respect to the
                displacement of each vertex along each axis.

        Returns:
            A dictionary containing
                - **vertices** -- 3D body model vertices, shaped as (num_vertices, 3).
                - **joints** -- 3D joint positions, shaped as (num_joints, 3).
                - **pose_jacobian** -- if requested, shaped as (num_joints * 3, num_vertices, 3).
                - **shape_jacobian** -- if requested, shaped as (num_betas, num_vertices, 3).
                - **displacement_jacobian** -- if requested, shaped as (3, num_vertices, 3).
                  Entry ``[c, i]`` is the derivative of vertex ``i`` with respect to the
                  displacement of vertex ``i`` along axis ``c``.
        """
        if pose is None:
            pose = np.zeros(self.pose_size, np.float64)
        rotvecs = np.reshape(np.asarray(pose, np.float64), (self.num_joints, 3))
        rel_rotmats = rotvec2mat(rotvecs)

        if shape is None:
            shape = np.zeros(0, np.float64)
        shape = np.asarray(shape, np.float64)
        num_betas = min(shape.shape[0], self.num_betas)

        glob_rotmats = [rel_rotmats[0]]
        for i_joint in range(1, self.num_joints):
            i_parent = self.kintree_parents[i_joint]
            glob_rotmats.append(glob_rotmats[i_parent] @ rel_rotmats[i_joint])
        glob_rotmats = np.stack(glob_rotmats, axis=0)

        j = self.J_template + self.J_shapedirs[:, :, :num_betas] @ shape[:num_betas]

        glob_positions = [j[0]]
        for i_joint in range(1, self.num_joints):
            i_parent = self.kintree_parents[i_joint]
            bone = j[i_joint] - j[i_parent]
            glob_positions.append(glob_positions[i_parent] + glob_rotmats[i_parent] @ bone)
        glob_positions = np.stack(glob_positions, axis=0)

        pose_feature = np.reshape(rel_rotmats[1:] - np.eye(3), [-1])
        v_posed = (
            self.v_template
            + self.shapedirs[:, :, :num_betas] @ shape[:num_betas]
            + self.posedirs @ pose_feature
        )
        if displacements is not None:
            v_posed = v_posed + displacements

        translations = glob_positions - np.einsum('jCc,jc->jC', glob_rotmats, j)
        # Per-vertex blended rotation, the linear part of the skinning transform
        skinning_rotmats = np.einsum('vj,jCc->vCc', self.weights, glob_rotmats)
        vertices = (
            np.einsum('vCc,vc->vC', skinning_rotmats, v_posed) + self.weights @ translations
        )

        if translation is None:
            translation = np.zeros(self.SPACE_DIM, np.float64)

        result = dict(vertices=vertices + translation, joints=glob_positions + translation)

        if pose_jacobian:
            result['pose_jacobian'] = self._pose_jacobian(
                rotvecs, rel_rotmats, glob_rotmats, glob_positions, translations, v_posed,
                skinning_rotmats,
            )
        if shape_jacobian:
            result['shape_jacobian'] = self._shape_jacobian(
                glob_rotmats, skinning_rotmats, num_betas
            )
        if displacement_jacobian:
            result['displacement_jacobian'] = np.transpose(skinning_rotmats, (2, 0, 1)).copy()
        return result

    def _pose_jacobian(
        self, rotvecs, rel_rotmats, glob_rotmats, glob_positions, translations, v_posed,
        skinning_rotmats,
    ):
        # Rotating joint k by dR moves every joint j below it as a rigid body around the
        # position of k. In world coordinates the motion is D = A_p dR R^T A_p^T, where A_p is
        # the global rotation of the parent of k.
        d_rel = rotvec2mat_jacobian(rotvecs, rel_rotmats)  # (joint, comp, 3, 3)
        parent_rotmats = np.stack(
            [np.eye(3)] + [glob_rotmats[self.kintree_parents[k]] for k in range(1, self.num_joints)]
        )
        world_motion = np.einsum(
            'kab,kcbd,ked,kfe->kcaf', parent_rotmats, d_rel, rel_rotmats, parent_rotmats
        )

        # Each vertex transformed by each joint separately, (vertex, joint, 3)
        per_joint = np.einsum('jCc,vc->vjC', glob_rotmats, v_posed) + translations
        weighted_below = np.einsum('vj,vjc,kj->vkc', self.weights, per_joint, self.descendants)
        weight_below = self.weights @ self.descendants.T
        lever = weighted_below - weight_below[..., np.newaxis] * glob_positions
        lbs_part = np.einsum('kcab,vkb->kcva', world_motion, lever)

        # Pose blend shapes depend on the relative rotations of the non-root joints
        feature_jac = np.zeros((self.num_joints, 3, self.num_joints - 1, 9))
        for k in range(1, self.num_joints):
            feature_jac[k, :, k - 1] = np.reshape(d_rel[k], (3, 9))
        feature_jac = np.reshape(feature_jac, (self.num_joints, 3, (self.num_joints - 1) * 9))
        d_v_posed = np.einsum('vcf,kpf->kpvc', self.posedirs, feature_jac)
        blend_part = np.einsum('vab,kpvb->kpva', skinning_rotmats, d_v_posed)

        return np.reshape(lbs_part + blend_part, (self.pose_size, self.num_vertices, 3))

    def _shape_jacobian(self, glob_rotmats, skinning_rotmats, num_betas):
        d_j = np.transpose(self.J_shapedirs[:, :, :num_betas], (2, 0, 1))  # (beta, joint, 3)
        d_positions = [d_j[:, 0]]
        for i_joint in range(1, self.num_joints):
            i_parent = self.kintree_parents[i_joint]
            d_bone = d_j[:, i_joint] - d_j[:, i_parent]
            d_positions.append(d_positions[i_parent] + d_bone @ glob_rotmats[i_parent].T)
        d_positions = np.stack(d_positions, axis=1)
        d_translations = d_positions - np.einsum('jCc,sjc->sjC', glob_rotmats, d_j)

        d_v_posed = np.transpose(self.shapedirs[:, :, :num_betas], (2, 0, 1))
        shape_jac = np.einsum('vCc,svc->svC', skinning_rotmats, d_v_posed) + np.einsum(
            'vj,sjc->svc', self.weights, d_translations
        )
        if num_betas < self.num_betas:
            padding = np.zeros((self.num_betas - num_betas, self.num_vertices, 3))
            shape_jac = np.concatenate([shape_jac, padding], axis=0)
        return shape_jac

    def vertex_normals(self, vertices: np.ndarray) -> np.ndarray:
        """Area-weighted unit vertex normals of the model mesh for the given vertices."""
        return compute_vertex_normals(vertices, self.faces)

    def template_mean_point(self) -> np.ndarray:
        return np.mean(self.v_template, axis=0)


def compute_vertex_normals(vertices, faces):
    corners = vertices[faces]
    face_normals = np.cross(corners[:, 1] - corners[:, 0], corners[:, 2] - corners[:, 0])
    normals = np.zeros_like(vertices)
    for i_corner in range(3):
        np.add.at(normals, faces[:, i_corner], face_normals)
    norms = np.linalg.norm(normals, axis=-1, keepdims=True)
    return normals / np.where(norms == 0, 1.0, norms)
