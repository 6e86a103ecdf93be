#!/usr/bin/env python3
"""
Rotation utilities for the articulated body model.

All functions are written with plain tensor ops so that they compose with
torch.func transforms (jvp / jacfwd / vmap).

Coordinate convention:
- Euler angles: (x, y, z) in radians, intrinsic XYZ order, R = Rx @ Ry @ Rz
- Axis-angle: unit axis [3] plus a scalar angle
- Inertia moments: (Ixx, Iyy, Izz, Ixy, Ixz, Iyz)
"""

import torch


def _matrix_from_rows(r0, r1, r2) -> torch.Tensor:
    return torch.stack([
        torch.stack(r0, dim=-1),
        torch.stack(r1, dim=-1),
        torch.stack(r2, dim=-1),
    ], dim=-2)


def rotation_x(angle: torch.Tensor) -> torch.Tensor:
    """Rotation about the x axis. angle: [...] -> [..., 3, 3]"""
    c, s = torch.cos(angle), torch.sin(angle)
    one, zero = torch.ones_like(angle), torch.zeros_like(angle)
    return _matrix_from_rows([one, zero, zero], [zero, c, -s], [zero, s, c])


def rotation_y(angle: torch.Tensor) -> torch.Tensor:
    """Rotation about the y axis. angle: [...] -> [..., 3, 3]"""
    c, s = torch.cos(angle), torch.sin(angle)
    one, zero = torch.ones_like(angle), torch.zeros_like(angle)
    return _matrix_from_rows([c, zero, s], [zero, one, zero], [-s, zero, c])


def rotation_z(angle: torch.Tensor) -> torch.Tensor:
    """Rotation about the z axis. angle: [...] -> [..., 3, 3]"""
    c, s = torch.cos(angle), torch.sin(angle)
    one, zero = torch.ones_like(angle), torch.zeros_like(angle)
    return _matrix_from_rows([c, -s, zero], [s, c, zero], [zero, zero, one])


def euler_xyz_to_matrix(euler: torch.Tensor) -> torch.Tensor:
    """
    Convert intrinsic XYZ Euler angles to a rotation matrix.

    Args:
        euler: [..., 3] Euler angles in radians

    Returns:
        [..., 3, 3] Rotation matrices
    """
    return rotation_x(euler[..., 0]) @ rotation_y(euler[..., 1]) @ rotation_z(euler[..., 2])


def skew(v: torch.Tensor) -> torch.Tensor:
    """Cross-product matrix. v: [..., 3] -> [..., 3, 3]"""
    zero = torch.zeros_like(v[..., 0])
    return _matrix_from_rows(
        [zero, -v[..., 2], v[..., 1]],
        [v[..., 2], zero, -v[..., 0]],
        [-v[..., 1], v[..., 0], zero],
    )


def vee(m: torch.Tensor) -> torch.Tensor:
    """Inverse of skew() applied to the antisymmetric part of m. [..., 3, 3] -> [..., 3]"""
    return 0.5 * torch.stack([
        m[..., 2, 1] - m[..., 1, 2],
        m[..., 0, 2] - m[..., 2, 0],
        m[..., 1, 0] - m[..., 0, 1],
    ], dim=-1)


def axis_angle_to_matrix(axis: torch.Tensor, angle: torch.Tensor) -> torch.Tensor:
    """
    Rodrigues' formula for a fixed unit axis.

    Args:
        axis: [3] unit rotation axis
        angle: [...] rotation angle in radians

    Returns:
        [..., 3, 3] Rotation matrices
    """
    k = skew(axis)
    eye = torch.eye(3, dtype=k.dtype)
    s = torch.sin(angle)[..., None, None]
    c = torch.cos(angle)[..., None, None]
    return eye + s * k + (1.0 - c) * (k @ k)


def inertia_matrix(moments: torch.Tensor) -> torch.Tensor:
    """
    Symmetric inertia tensor from its six independent entries.

    Args:
        moments: [..., 6] as (Ixx, Iyy, Izz, Ixy, Ixz, Iyz)

    Returns:
        [..., 3, 3] Inertia tensors
    """
    ixx, iyy, izz = moments[..., 0], moments[..., 1], moments[..., 2]
    ixy, ixz, iyz = moments[..., 3], moments[..., 4], moments[..., 5]
    return _matrix_from_rows([ixx, ixy, ixz], [ixy, iyy, iyz], [ixz, iyz, izz])
