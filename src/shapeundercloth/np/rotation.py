from __future__ import annotations

import numpy as np


def skew(vec):
    """Cross-product matrices of vectors, (..., 3) -> (..., 3, 3)."""
    x = vec[..., 0]
    y = vec[..., 1]
    z = vec[..., 2]
    zero = np.zeros_like(x)
    matrix = np.stack((zero, -z, y, z, zero, -x, -y, x, zero), axis=-1)
    return matrix.reshape(vec.shape[:-1] + (3, 3))


def rotvec2mat(rotvec):
    rotvec = np.asarray(rotvec, np.float64)
    angle = np.linalg.norm(rotvec, axis=-1, keepdims=True)
    safe_angle = np.where(angle == 0, 1.0, angle)
    axis = np.where(angle == 0, 0.0, rotvec / safe_angle)

    sin_axis = np.sin(angle) * axis
    cos_angle = np.cos(angle)
    cos1_axis = (1.0 - cos_angle) * axis
    axis_y = axis[..., 1]
    axis_z = axis[..., 2]
    cos1_axis_x = cos1_axis[..., 0]
    cos1_axis_y = cos1_axis[..., 1]
    sin_axis_x = sin_axis[..., 0]
    sin_axis_y = sin_axis[..., 1]
    sin_axis_z = sin_axis[..., 2]

    tmp = cos1_axis_x * axis_y
    m01 = tmp - sin_axis_z
    m10 = tmp + sin_axis_z
    tmp = cos1_axis_x * axis_z
    m02 = tmp + sin_axis_y
    m20 = tmp - sin_axis_y
    tmp = cos1_axis_y * axis_z
    m12 = tmp - sin_axis_x
    m21 = tmp + sin_axis_x

    diag = cos1_axis * axis + cos_angle
    m00 = diag[..., 0]
    m11 = diag[..., 1]
    m22 = diag[..., 2]

    matrix = np.stack((m00, m01, m02, m10, m11, m12, m20, m21, m22), axis=-1)
    return matrix.reshape(axis.shape[:-1] + (3, 3))


def rotvec2mat_jacobian(rotvec, rotmat=None, eps=1e-8):
    """Derivative of the rotation matrix with respect to each rotation vector component.

    Uses the closed form of Gallego and Yezzi (2015):
    ``dR/dv_i = (v_i [v]x + [v x (I - R) e_i]x) R / |v|^2``. Near the identity the second order
    Taylor expansion ``[e_i]x + ([v]x [e_i]x + [e_i]x [v]x) / 2`` is used instead.

    Parameters:
        rotvec: Rotation vectors, shape (..., 3).
        rotmat: The corresponding rotation matrices, if already computed.
        eps: Squared angle below which the Taylor expansion is used.

    Returns:
        Array of shape (..., 3, 3, 3), where ``[..., i, :, :]`` is ``dR/dv_i``.
    """
    rotvec = np.asarray(rotvec, np.float64)
    if rotmat is None:
        rotmat = rotvec2mat(rotvec)

    sq_angle = np.sum(rotvec * rotvec, axis=-1)[..., np.newaxis, np.newaxis, np.newaxis]
    eye = np.eye(3)
    # Columns of (I - R), indexed by i along axis -2 after the transpose
    i_minus_r_cols = np.swapaxes(eye - rotmat, -1, -2)
    crossed = np.cross(rotvec[..., np.newaxis, :], i_minus_r_cols)
    numer = (
        rotvec[..., :, np.newaxis, np.newaxis] * skew(rotvec)[..., np.newaxis, :, :]
        + skew(crossed)
    )
    safe_sq_angle = np.where(sq_angle < eps, 1.0, sq_angle)
    general = (numer @ rotmat[..., np.newaxis, :, :]) / safe_sq_angle
    # Series R = I + [v]x + [v]x^2 / 2 + O(|v|^3), differentiated term by term
    e_skews = skew(eye)
    v_skew = skew(rotvec)[..., np.newaxis, :, :]
    near_identity = e_skews + 0.5 * (v_skew @ e_skews + e_skews @ v_skew)
    return np.where(sq_angle < eps, near_identity, general)
