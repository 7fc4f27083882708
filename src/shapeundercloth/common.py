from __future__ import annotations

import os
import os.path as osp
import pickle
from dataclasses import dataclass

import numpy as np

SPACE_DIM = 3
"""Dimensionality of the space the body model and the target surface live in."""


class ConfigurationError(ValueError):
    """An invalid option was given when constructing a residual block or a fit."""


class IllegalStateError(RuntimeError):
    """An evaluation was requested in a state that cannot produce a valid result."""


class PriorFormatError(ValueError):
    """A pose prior file does not match the dimensions of the body model."""


class GeometryError(ValueError):
    """A target surface is degenerate, e.g. it has no faces."""


def _set_module_for_docs(module_name, module_globals, all_names):
    """Override __module__ on exported objects so Sphinx resolves package-level names.

    The original __module__ is saved as ``_module_original_`` so that
    ``inspect.getsourcefile`` can still find the real source file.
    """
    for name in all_names:
        obj = module_globals.get(name)
        if obj is not None and callable(obj):
            obj._module_original_ = obj.__module__
            obj.__module__ = module_name


@dataclass
class ModelData:
    """Data loaded from a SMPL-family body model file.

    All arrays are float64, since the fitting runs double precision least squares.
    """

    v_template: np.ndarray
    """Vertex template in T-pose, shape (num_vertices, 3)."""

    shapedirs: np.ndarray
    """Shape blend shapes, shape (num_vertices, 3, num_betas)."""

    posedirs: np.ndarray
    """Pose blend shapes, shape (num_vertices, 3, (num_joints-1)*9)."""

    J_template: np.ndarray
    """Joint template positions, shape (num_joints, 3)."""

    J_shapedirs: np.ndarray
    """Joint shape directions, shape (num_joints, 3, num_betas)."""

    weights: np.ndarray
    """Skinning weights, shape (num_vertices, num_joints)."""

    kintree_parents: list[int]
    """Parent joint indices for kinematic tree. The root has parent -1 and parents precede
    their children."""

    faces: np.ndarray
    """Face indices, shape (num_faces, 3)."""

    num_joints: int
    """Number of joints in the body model."""

    num_vertices: int
    """Number of vertices in the body model mesh."""


def resolve_body_models_dir():
    body_models_dir = os.getenv('SHAPEUNDERCLOTH_BODY_MODELS')
    if body_models_dir is None:
        data_root = os.getenv('DATA_ROOT', '.')
        body_models_dir = f'{data_root}/body_models'
    return body_models_dir


def resolve_pose_prior_dir():
    prior_dir = os.getenv('SHAPEUNDERCLOTH_POSE_PRIOR')
    if prior_dir is None:
        data_root = os.getenv('DATA_ROOT', '.')
        prior_dir = f'{data_root}/pose_prior'
    return prior_dir


def initialize(model_name, gender, model_root=None, num_betas=None):
    if model_root is None:
        model_root = f'{resolve_body_models_dir()}/{model_name}'

    if model_name == 'smpl':
        gender_str = dict(f='f', m='m', n='neutral')[gender[0]]
        filename = f'basicmodel_{gender_str}_lbs_10_207_0_v1.1.0.pkl'
    elif model_name == 'smplx':
        gender_str = dict(f='FEMALE', m='MALE', n='NEUTRAL')[gender[0]]
        filename = f'SMPLX_{gender_str}.npz'
    elif model_name == 'smplh16':
        gender_str = dict(f='female', m='male', n='neutral')[gender[0]]
        filename = osp.join(gender_str, 'model.npz')
    else:
        raise ValueError(f'Unknown model name: {model_name}')

    filepath = osp.join(model_root, filename)
    try:
        if filename.endswith('.npz'):
            smpl_data = np.load(filepath)
        else:
            with open(filepath, 'rb') as f:
                smpl_data = pickle.load(f, encoding='latin1')
    except FileNotFoundError:
        raise FileNotFoundError(
            f'Body model file not found: {filepath}\n\n'
            f'Set the body model location using one of:\n'
            f"  1. BodyModel('{model_name}', '{gender}', "
            f"model_root='/your/path/body_models/{model_name}')\n"
            f'  2. export SHAPEUNDERCLOTH_BODY_MODELS=/your/path/body_models\n'
            f'  3. export DATA_ROOT=/your/path   '
            f'(looks for $DATA_ROOT/body_models/)\n\n'
            f'Register and download at https://smpl.is.tue.mpg.de/'
        ) from None

    shapedirs = np.array(smpl_data['shapedirs'], dtype=np.float64)[:, :, :num_betas]
    v_template = np.array(smpl_data['v_template'], dtype=np.float64)

    if not isinstance(smpl_data['J_regressor'], np.ndarray):
        J_regressor = np.array(smpl_data['J_regressor'].toarray(), dtype=np.float64)
    else:
        J_regressor = smpl_data['J_regressor'].astype(np.float64)

    kintree_parents = np.array(smpl_data['kintree_table'][0]).astype(np.int64).tolist()
    # The root's parent is stored as an unsigned -1 in the original files
    kintree_parents[0] = -1

    return ModelData(
        v_template=v_template,
        shapedirs=shapedirs,
        posedirs=np.array(smpl_data['posedirs'], dtype=np.float64),
        J_template=J_regressor @ v_template,
        J_shapedirs=np.einsum('jv,vcs->jcs', J_regressor, shapedirs),
        weights=np.array(smpl_data['weights'], dtype=np.float64),
        kintree_parents=kintree_parents,
        faces=np.array(smpl_data['f']).astype(np.int64),
        num_joints=len(kintree_parents),
        num_vertices=len(v_template),
    )
