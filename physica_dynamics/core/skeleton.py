#!/usr/bin/env python3
"""
Articulated rigid-body skeleton with differentiable dynamics.

The skeleton is a tree of bodies. Every body hangs off its parent through a
joint (FREE for the root, BALL / REVOLUTE / WELD below it) and carries a mass,
a center of mass and an inertia tensor. Bodies are partitioned into scale
groups; a group's 3D scale stretches the joint offsets of its children and
the COM / marker offsets expressed in its own frame.

All numerics run through a functional torch core (state in, quantities out),
so every derivative the fitter needs comes from torch.func instead of hand
derived Jacobians. The public API takes and returns numpy arrays.

Conventions:
- Gravity is along -y.
- FREE joint dofs are (rx, ry, rz, tx, ty, tz): XYZ Euler rotation, then world
  translation. The first 6 generalized forces are therefore the root torques
  and the world-frame root force.
- Contact wrenches are 6-vectors (torque about the world origin, force) in
  world coordinates.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import torch
from torch.func import jacfwd, jvp

from .config import GRAVITY
from ..utils.rotation import axis_angle_to_matrix, euler_xyz_to_matrix, inertia_matrix, vee


DTYPE = torch.float64


class JointType(Enum):
    """Joint connecting a body to its parent."""
    FREE = 6
    BALL = 3
    REVOLUTE = 1
    WELD = 0

    @property
    def num_dofs(self) -> int:
        return self.value


class WithRespectTo(Enum):
    """Quantities a dynamics Jacobian can be taken with respect to."""
    POSITION = 'position'
    VELOCITY = 'velocity'
    ACCELERATION = 'acceleration'
    GROUP_MASSES = 'group_masses'
    GROUP_COMS = 'group_coms'
    GROUP_INERTIAS = 'group_inertias'
    GROUP_SCALES = 'group_scales'
    LINK_MASSES = 'link_masses'

    def dim(self, skel: "Skeleton") -> int:
        return self.get(skel).shape[0]

    def get(self, skel: "Skeleton") -> np.ndarray:
        return getattr(skel, 'get_' + _ACCESSORS[self])()

    def set(self, skel: "Skeleton", value: np.ndarray):
        getattr(skel, 'set_' + _ACCESSORS[self])(value)


_ACCESSORS = {
    WithRespectTo.POSITION: 'positions',
    WithRespectTo.VELOCITY: 'velocities',
    WithRespectTo.ACCELERATION: 'accelerations',
    WithRespectTo.GROUP_MASSES: 'group_masses',
    WithRespectTo.GROUP_COMS: 'group_coms',
    WithRespectTo.GROUP_INERTIAS: 'group_inertias',
    WithRespectTo.GROUP_SCALES: 'group_scales',
    WithRespectTo.LINK_MASSES: 'link_masses',
}


@dataclass
class Body:
    """One rigid body and the joint attaching it to its parent."""
    name: str
    index: int
    parent: int
    joint_type: JointType
    joint_name: str
    offset: np.ndarray
    axis: np.ndarray
    dof_start: int
    scale_group: int
    children: List[int] = field(default_factory=list)

    @property
    def num_dofs(self) -> int:
        return self.joint_type.num_dofs

    @property
    def dofs(self) -> slice:
        return slice(self.dof_start, self.dof_start + self.num_dofs)


class _Params(NamedTuple):
    """Per-body inertial parameters and scales as tensors."""
    masses: torch.Tensor    # [B]
    coms: torch.Tensor      # [B, 3]
    inertias: torch.Tensor  # [B, 6]
    scales: torch.Tensor    # [B, 3]


def _t(x) -> torch.Tensor:
    return torch.as_tensor(np.asarray(x, dtype=np.float64), dtype=DTYPE)


def _np(x: torch.Tensor) -> np.ndarray:
    return x.detach().cpu().numpy()


class Skeleton:
    """
    Tree-structured rigid-body model.

    Example:
        skel = Skeleton('pendulum')
        base = skel.add_body('base', joint_type=JointType.FREE, mass=5.0)
        skel.add_body('bob', parent=base, joint_type=JointType.REVOLUTE,
                      offset=[0, -0.1, 0], axis=[0, 0, 1], com=[0, -0.5, 0])
    """

    def __init__(self, name: str = 'skeleton', gravity: Optional[np.ndarray] = None):
        self.name = name
        self.gravity = np.array(GRAVITY if gravity is None else gravity, dtype=np.float64)
        self.bodies: List[Body] = []
        self._groups: List[List[int]] = []
        self._num_dofs = 0

        # Per-body inertial parameters
        self._masses = np.zeros(0)
        self._coms = np.zeros((0, 3))
        self._inertias = np.zeros((0, 6))
        self._group_scales = np.zeros((0, 3))

        # Bounds
        self._mass_bounds = np.zeros((0, 2))
        self._com_bounds = np.zeros((0, 2, 3))
        self._inertia_bounds = np.zeros((0, 2, 6))
        self._scale_bounds = np.zeros((0, 2, 3))

        # Generalized state and limits
        self._q = np.zeros(0)
        self._dq = np.zeros(0)
        self._ddq = np.zeros(0)
        self._position_limits = np.zeros((2, 0))
        self._velocity_limits = np.zeros((2, 0))
        self._acceleration_limits = np.zeros((2, 0))

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_body(
        self,
        name: str,
        parent: Optional[int] = None,
        joint_type: JointType = JointType.REVOLUTE,
        offset: Sequence[float] = (0.0, 0.0, 0.0),
        axis: Sequence[float] = (0.0, 0.0, 1.0),
        mass: float = 1.0,
        com: Sequence[float] = (0.0, 0.0, 0.0),
        inertia: Sequence[float] = (0.01, 0.01, 0.01, 0.0, 0.0, 0.0),
        scale_group: Optional[int] = None,
        position_limits: Optional[Tuple[Sequence[float], Sequence[float]]] = None,
        joint_name: Optional[str] = None,
    ) -> int:
        """
        Append a body to the tree.

        Args:
            name: Body name (unique).
            parent: Index of the parent body, None for the root.
            joint_type: Joint to the parent.
            offset: Joint origin in the parent frame (before scaling) [3].
                For the root this is the world position of the joint origin.
            axis: Rotation axis for REVOLUTE joints [3].
            mass: Body mass (kg).
            com: Center of mass in the body frame [3].
            inertia: (Ixx, Iyy, Izz, Ixy, Ixz, Iyz) about the COM.
            scale_group: Index of an existing scale group to join, or None
                to start a new group.
            position_limits: Optional (lower, upper) for the joint dofs.
            joint_name: Defaults to "<name>_joint".

        Returns:
            Index of the new body.
        """
        if any(b.name == name for b in self.bodies):
            raise ValueError(f"Duplicate body name: {name}")
        if parent is None:
            if self.bodies:
                raise ValueError("Only the first body may be added without a parent")
            parent = -1
        elif not 0 <= parent < len(self.bodies):
            raise ValueError(f"Unknown parent index {parent}")
        if joint_type == JointType.FREE and parent != -1:
            raise ValueError("FREE joints are only supported at the root")

        index = len(self.bodies)
        if scale_group is None:
            scale_group = len(self._groups)
            self._groups.append([])
            self._group_scales = np.vstack([self._group_scales, np.ones((1, 3))])
            self._scale_bounds = np.concatenate(
                [self._scale_bounds, np.array([[[0.1] * 3, [10.0] * 3]])])
        elif not 0 <= scale_group < len(self._groups):
            raise ValueError(f"Unknown scale group {scale_group}")
        self._groups[scale_group].append(index)

        axis = np.asarray(axis, dtype=np.float64)
        body = Body(
            name=name,
            index=index,
            parent=parent,
            joint_type=joint_type,
            joint_name=joint_name or f'{name}_joint',
            offset=np.asarray(offset, dtype=np.float64),
            axis=axis / np.linalg.norm(axis),
            dof_start=self._num_dofs,
            scale_group=scale_group,
        )
        self.bodies.append(body)
        if parent >= 0:
            self.bodies[parent].children.append(index)

        self._masses = np.append(self._masses, float(mass))
        self._coms = np.vstack([self._coms, np.asarray(com, dtype=np.float64)])
        self._inertias = np.vstack([self._inertias, np.asarray(inertia, dtype=np.float64)])
        self._mass_bounds = np.vstack([self._mass_bounds, [1e-3, 1e3]])
        self._com_bounds = np.concatenate(
            [self._com_bounds, np.array([[[-np.inf] * 3, [np.inf] * 3]])])
        self._inertia_bounds = np.concatenate([self._inertia_bounds, np.array(
            [[[1e-6, 1e-6, 1e-6, -np.inf, -np.inf, -np.inf], [np.inf] * 6]])])

        n = joint_type.num_dofs
        self._num_dofs += n
        self._q = np.append(self._q, np.zeros(n))
        self._dq = np.append(self._dq, np.zeros(n))
        self._ddq = np.append(self._ddq, np.zeros(n))
        lower, upper = (np.full(n, -np.inf), np.full(n, np.inf)) if position_limits is None \
            else (np.asarray(position_limits[0], dtype=np.float64),
                  np.asarray(position_limits[1], dtype=np.float64))
        self._position_limits = np.hstack([self._position_limits, np.stack([lower, upper])])
        self._velocity_limits = np.hstack(
            [self._velocity_limits, np.stack([np.full(n, -np.inf), np.full(n, np.inf)])])
        self._acceleration_limits = np.hstack(
            [self._acceleration_limits, np.stack([np.full(n, -np.inf), np.full(n, np.inf)])])
        return index

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    @property
    def num_dofs(self) -> int:
        return self._num_dofs

    @property
    def num_bodies(self) -> int:
        return len(self.bodies)

    @property
    def num_scale_groups(self) -> int:
        return len(self._groups)

    @property
    def group_scale_dim(self) -> int:
        return 3 * len(self._groups)

    @property
    def body_names(self) -> List[str]:
        return [b.name for b in self.bodies]

    def get_body_index(self, name: str) -> int:
        for body in self.bodies:
            if body.name == name:
                return body.index
        raise KeyError(f"No body named {name}")

    def get_parent_index(self, index: int) -> int:
        return self.bodies[index].parent

    def get_child_indices(self, index: int) -> List[int]:
        return list(self.bodies[index].children)

    def get_scale_group(self, group: int) -> List[int]:
        return list(self._groups[group])

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_positions(self) -> np.ndarray:
        return self._q.copy()

    def set_positions(self, q: np.ndarray):
        self._q = np.array(q, dtype=np.float64)

    def get_velocities(self) -> np.ndarray:
        return self._dq.copy()

    def set_velocities(self, dq: np.ndarray):
        self._dq = np.array(dq, dtype=np.float64)

    def get_accelerations(self) -> np.ndarray:
        return self._ddq.copy()

    def set_accelerations(self, ddq: np.ndarray):
        self._ddq = np.array(ddq, dtype=np.float64)

    def get_position_lower_limits(self) -> np.ndarray:
        return self._position_limits[0].copy()

    def get_position_upper_limits(self) -> np.ndarray:
        return self._position_limits[1].copy()

    def set_position_limits(self, lower: np.ndarray, upper: np.ndarray):
        self._position_limits = np.stack([np.asarray(lower, dtype=np.float64),
                                          np.asarray(upper, dtype=np.float64)])

    def get_velocity_lower_limits(self) -> np.ndarray:
        return self._velocity_limits[0].copy()

    def get_velocity_upper_limits(self) -> np.ndarray:
        return self._velocity_limits[1].copy()

    def set_velocity_limits(self, lower: np.ndarray, upper: np.ndarray):
        self._velocity_limits = np.stack([np.asarray(lower, dtype=np.float64),
                                          np.asarray(upper, dtype=np.float64)])

    def get_acceleration_lower_limits(self) -> np.ndarray:
        return self._acceleration_limits[0].copy()

    def get_acceleration_upper_limits(self) -> np.ndarray:
        return self._acceleration_limits[1].copy()

    def set_acceleration_limits(self, lower: np.ndarray, upper: np.ndarray):
        self._acceleration_limits = np.stack([np.asarray(lower, dtype=np.float64),
                                              np.asarray(upper, dtype=np.float64)])

    @contextmanager
    def preserved_state(self):
        """Restore state and inertial parameters when the block exits."""
        saved = (
            self._q.copy(), self._dq.copy(), self._ddq.copy(),
            self._masses.copy(), self._coms.copy(), self._inertias.copy(),
            self._group_scales.copy(),
        )
        try:
            yield self
        finally:
            (self._q, self._dq, self._ddq,
             self._masses, self._coms, self._inertias, self._group_scales) = saved

    # ------------------------------------------------------------------
    # Inertial parameters
    # ------------------------------------------------------------------

    def get_link_masses(self) -> np.ndarray:
        return self._masses.copy()

    def set_link_masses(self, masses: np.ndarray):
        self._masses = np.array(masses, dtype=np.float64)

    def get_link_coms(self) -> np.ndarray:
        """Per-body COM offsets [B, 3]."""
        return self._coms.copy()

    def set_link_coms(self, coms: np.ndarray):
        self._coms = np.array(coms, dtype=np.float64).reshape(-1, 3)

    def get_link_inertias(self) -> np.ndarray:
        """Per-body inertia moments [B, 6]."""
        return self._inertias.copy()

    def set_link_inertias(self, inertias: np.ndarray):
        self._inertias = np.array(inertias, dtype=np.float64).reshape(-1, 6)

    def _group_mean(self, values: np.ndarray) -> np.ndarray:
        return np.stack([values[members].mean(axis=0) for members in self._groups])

    def _assign_groups(self, target: np.ndarray, values: np.ndarray):
        for g, members in enumerate(self._groups):
            target[members] = values[g]

    def get_group_masses(self) -> np.ndarray:
        """Mass of each scale group's bodies [G] (mean over members)."""
        return self._group_mean(self._masses)

    def set_group_masses(self, masses: np.ndarray):
        self._assign_groups(self._masses, np.asarray(masses, dtype=np.float64))

    def get_group_coms(self) -> np.ndarray:
        """COM offsets of each scale group, flattened [3G]."""
        return self._group_mean(self._coms).reshape(-1)

    def set_group_coms(self, coms: np.ndarray):
        self._assign_groups(self._coms, np.asarray(coms, dtype=np.float64).reshape(-1, 3))

    def get_group_inertias(self) -> np.ndarray:
        """Inertia moments of each scale group, flattened [6G]."""
        return self._group_mean(self._inertias).reshape(-1)

    def set_group_inertias(self, inertias: np.ndarray):
        self._assign_groups(self._inertias, np.asarray(inertias, dtype=np.float64).reshape(-1, 6))

    def get_group_scales(self) -> np.ndarray:
        """Scale of each group, flattened [3G]."""
        return self._group_scales.reshape(-1).copy()

    def set_group_scales(self, scales: np.ndarray):
        self._group_scales = np.array(scales, dtype=np.float64).reshape(-1, 3)

    def get_body_scales(self) -> np.ndarray:
        """Scale applied to each body's frame [B, 3]."""
        return np.stack([self._group_scales[b.scale_group] for b in self.bodies])

    # Bounds: a group is limited by the tightest of its members

    def set_body_mass_bounds(self, index: int, lower: float, upper: float):
        self._mass_bounds[index] = [lower, upper]

    def set_body_com_bounds(self, index: int, lower: np.ndarray, upper: np.ndarray):
        self._com_bounds[index] = [lower, upper]

    def set_body_inertia_bounds(self, index: int, lower: np.ndarray, upper: np.ndarray):
        self._inertia_bounds[index] = [lower, upper]

    def set_group_scale_bounds(self, group: int, lower: np.ndarray, upper: np.ndarray):
        self._scale_bounds[group] = [lower, upper]

    def _group_bounds(self, bounds: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        lower = np.stack([bounds[members, 0].max(axis=0) for members in self._groups])
        upper = np.stack([bounds[members, 1].min(axis=0) for members in self._groups])
        return lower.reshape(-1), upper.reshape(-1)

    def get_group_masses_lower_bound(self) -> np.ndarray:
        return self._group_bounds(self._mass_bounds)[0]

    def get_group_masses_upper_bound(self) -> np.ndarray:
        return self._group_bounds(self._mass_bounds)[1]

    def get_group_coms_lower_bound(self) -> np.ndarray:
        return self._group_bounds(self._com_bounds)[0]

    def get_group_coms_upper_bound(self) -> np.ndarray:
        return self._group_bounds(self._com_bounds)[1]

    def get_group_inertias_lower_bound(self) -> np.ndarray:
        return self._group_bounds(self._inertia_bounds)[0]

    def get_group_inertias_upper_bound(self) -> np.ndarray:
        return self._group_bounds(self._inertia_bounds)[1]

    def get_group_scales_lower_bound(self) -> np.ndarray:
        return self._scale_bounds[:, 0].reshape(-1).copy()

    def get_group_scales_upper_bound(self) -> np.ndarray:
        return self._scale_bounds[:, 1].reshape(-1).copy()

    # ------------------------------------------------------------------
    # Functional core (torch)
    # ------------------------------------------------------------------

    def _params(
        self,
        group_masses: Optional[torch.Tensor] = None,
        group_coms: Optional[torch.Tensor] = None,
        group_inertias: Optional[torch.Tensor] = None,
        group_scales: Optional[torch.Tensor] = None,
    ) -> _Params:
        """
        Body parameter tensors, optionally with group values swapped in.

        Group overrides are applied as offsets from the current group values,
        so evaluating at the current values reproduces the stored per-body
        parameters exactly and the derivative sums over the group members.
        """
        body_group = [b.scale_group for b in self.bodies]
        masses = _t(self._masses)
        coms = _t(self._coms)
        inertias = _t(self._inertias)
        if group_masses is not None:
            delta = group_masses - _t(self.get_group_masses())
            masses = masses + torch.stack([delta[g] for g in body_group])
        if group_coms is not None:
            delta = (group_coms - _t(self.get_group_coms())).reshape(-1, 3)
            coms = coms + torch.stack([delta[g] for g in body_group])
        if group_inertias is not None:
            delta = (group_inertias - _t(self.get_group_inertias())).reshape(-1, 6)
            inertias = inertias + torch.stack([delta[g] for g in body_group])
        scales = _t(self._group_scales) if group_scales is None else group_scales.reshape(-1, 3)
        scales = torch.stack([scales[g] for g in body_group])
        return _Params(masses, coms, inertias, scales)

    def _kinematics(self, q: torch.Tensor, p: _Params):
        """
        World frames of every body.

        Returns:
            coms: [B, 3] COM world positions
            rotations: [B, 3, 3] body-to-world rotations
            origins: [B, 3] body origin world positions
        """
        rotations, origins = [], []
        for body in self.bodies:
            qj = q[body.dofs]
            translation = None
            if body.joint_type == JointType.FREE:
                local = euler_xyz_to_matrix(qj[:3])
                translation = qj[3:6]
            elif body.joint_type == JointType.BALL:
                local = euler_xyz_to_matrix(qj)
            elif body.joint_type == JointType.REVOLUTE:
                local = axis_angle_to_matrix(_t(body.axis), qj[0])
            else:
                local = None

            offset = _t(body.offset)
            if body.parent < 0:
                rotation = local if local is not None else torch.eye(3, dtype=DTYPE)
                origin = offset if translation is None else offset + translation
            else:
                parent_rot = rotations[body.parent]
                origin = origins[body.parent] + parent_rot @ (p.scales[body.parent] * offset)
                if translation is not None:
                    origin = origin + parent_rot @ translation
                rotation = parent_rot if local is None else parent_rot @ local
            rotations.append(rotation)
            origins.append(origin)

        rotations = torch.stack(rotations)
        origins = torch.stack(origins)
        coms = origins + (rotations @ (p.scales * p.coms)[..., None])[..., 0]
        return coms, rotations, origins

    def _velocity_jacobians(self, q: torch.Tensor, p: _Params):
        """
        Linear and angular velocity Jacobians.

        Returns:
            com_jac: [B, 3, n]
            angular_jac: [B, 3, n]
            origin_jac: [B, 3, n]
        """
        _, rotations, _ = self._kinematics(q, p)
        com_jac, rot_jac, origin_jac = jacfwd(lambda x: self._kinematics(x, p))(q)
        # dR/dq_k R^T is the skew matrix of the k-th angular velocity column
        rot_jac = rot_jac.permute(0, 3, 1, 2)
        angular_jac = vee(rot_jac @ rotations.transpose(-1, -2)[:, None]).transpose(1, 2)
        return com_jac, angular_jac, origin_jac

    def _inverse_dynamics(
        self,
        q: torch.Tensor,
        dq: torch.Tensor,
        ddq: torch.Tensor,
        p: _Params,
        contact_bodies: Sequence[int] = (),
        wrenches: Optional[torch.Tensor] = None,
        gravity: bool = True,
    ) -> torch.Tensor:
        """Generalized forces M(q) ddq + C(q, dq) - sum_k J_k^T w_k."""
        def kin(x):
            return self._kinematics(x, p)

        def kin_rate(x):
            return jvp(kin, (x,), (dq,))[1]

        (_, rotations, origins), (_, rot_dot, _) = jvp(kin, (q,), (dq,))
        _, (com_acc_quad, rot_acc_quad, _) = jvp(kin_rate, (q,), (dq,))
        _, (com_acc_lin, rot_acc_lin, _) = jvp(kin, (q,), (ddq,))
        com_acc = com_acc_quad + com_acc_lin
        rot_acc = rot_acc_quad + rot_acc_lin

        rot_t = rotations.transpose(-1, -2)
        omega_hat = rot_dot @ rot_t
        omega = vee(omega_hat)
        alpha = vee(rot_acc @ rot_t - omega_hat @ omega_hat)

        inertia_world = rotations @ inertia_matrix(p.inertias) @ rot_t
        if gravity:
            com_acc = com_acc - _t(self.gravity)
        forces = p.masses[:, None] * com_acc
        ang_momentum = (inertia_world @ omega[..., None])[..., 0]
        torques = (inertia_world @ alpha[..., None])[..., 0] + torch.linalg.cross(omega, ang_momentum)

        com_jac, angular_jac, origin_jac = self._velocity_jacobians(q, p)
        tau = torch.einsum('bin,bi->n', com_jac, forces) + torch.einsum('bin,bi->n', angular_jac, torques)
        for k, body in enumerate(contact_bodies):
            torque = wrenches[6 * k:6 * k + 3]
            force = wrenches[6 * k + 3:6 * k + 6]
            moment_at_origin = torque - torch.linalg.cross(origins[body], force)
            tau = tau - origin_jac[body].T @ force - angular_jac[body].T @ moment_at_origin
        return tau

    def _contact_forces(
        self,
        q: torch.Tensor,
        p: _Params,
        contact_bodies: Sequence[int],
        wrenches: torch.Tensor,
    ) -> torch.Tensor:
        """Generalized forces produced by world wrenches on the given bodies."""
        _, _, origins = self._kinematics(q, p)
        _, angular_jac, origin_jac = self._velocity_jacobians(q, p)
        tau = torch.zeros(self._num_dofs, dtype=DTYPE)
        for k, body in enumerate(contact_bodies):
            torque = wrenches[6 * k:6 * k + 3]
            force = wrenches[6 * k + 3:6 * k + 6]
            moment_at_origin = torque - torch.linalg.cross(origins[body], force)
            tau = tau + origin_jac[body].T @ force + angular_jac[body].T @ moment_at_origin
        return tau

    def _differentiate(self, fn, wrt: WithRespectTo, q, dq, ddq) -> np.ndarray:
        """Jacobian of fn(q, dq, ddq, params) with respect to one argument kind."""
        q, dq, ddq = _t(q), _t(dq), _t(ddq)
        if wrt == WithRespectTo.POSITION:
            jac = jacfwd(lambda x: fn(x, dq, ddq, self._params()))(q)
        elif wrt == WithRespectTo.VELOCITY:
            jac = jacfwd(lambda x: fn(q, x, ddq, self._params()))(dq)
        elif wrt == WithRespectTo.ACCELERATION:
            jac = jacfwd(lambda x: fn(q, dq, x, self._params()))(ddq)
        elif wrt in (WithRespectTo.GROUP_MASSES, WithRespectTo.GROUP_COMS,
                     WithRespectTo.GROUP_INERTIAS, WithRespectTo.GROUP_SCALES):
            x0 = _t(wrt.get(self))
            jac = jacfwd(lambda x: fn(q, dq, ddq, self._params(**{wrt.value: x})))(x0)
        else:
            raise ValueError(f"No analytical Jacobian with respect to {wrt.name}")
        return _np(jac)

    # ------------------------------------------------------------------
    # Dynamics
    # ------------------------------------------------------------------

    def inverse_dynamics(
        self,
        q: np.ndarray,
        dq: np.ndarray,
        ddq: np.ndarray,
        contact_bodies: Sequence[int] = (),
        wrenches: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Generalized forces needed to produce ddq, net of contact wrenches.

        Args:
            q, dq, ddq: Generalized positions, velocities, accelerations [n].
            contact_bodies: Body index receiving each wrench.
            wrenches: Concatenated world wrenches [6 * len(contact_bodies)].

        Returns:
            tau [n]
        """
        w = _t(wrenches) if len(contact_bodies) > 0 else None
        return _np(self._inverse_dynamics(_t(q), _t(dq), _t(ddq), self._params(), contact_bodies, w))

    def get_mass_matrix(self, q: Optional[np.ndarray] = None) -> np.ndarray:
        """Joint-space mass matrix M(q) [n, n]."""
        q = self._q if q is None else q
        p = self._params()
        com_jac, angular_jac, _ = self._velocity_jacobians(_t(q), p)
        _, rotations, _ = self._kinematics(_t(q), p)
        inertia_world = rotations @ inertia_matrix(p.inertias) @ rotations.transpose(-1, -2)
        mass = torch.einsum('b,bin,bim->nm', p.masses, com_jac, com_jac)
        mass = mass + torch.einsum('bin,bij,bjm->nm', angular_jac, inertia_world, angular_jac)
        return _np(mass)

    def get_coriolis_and_gravity_forces(
        self,
        q: Optional[np.ndarray] = None,
        dq: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """C(q, dq) [n], including gravity."""
        q = self._q if q is None else q
        dq = self._dq if dq is None else dq
        zero = torch.zeros(self._num_dofs, dtype=DTYPE)
        return _np(self._inverse_dynamics(_t(q), _t(dq), zero, self._params()))

    def get_contact_forces(
        self,
        q: np.ndarray,
        contact_bodies: Sequence[int],
        wrenches: np.ndarray,
    ) -> np.ndarray:
        """Generalized forces [n] from world wrenches applied to bodies."""
        return _np(self._contact_forces(_t(q), self._params(), contact_bodies, _t(wrenches)))

    def get_jacobian_of_m(self, q: np.ndarray, ddq: np.ndarray, wrt: WithRespectTo) -> np.ndarray:
        """d(M(q) ddq)/d(wrt) [n, dim(wrt)]."""
        zero = np.zeros(self._num_dofs)

        def fn(q_, dq_, ddq_, p):
            return self._inverse_dynamics(q_, torch.zeros_like(dq_), ddq_, p, gravity=False)
        return self._differentiate(fn, wrt, q, zero, ddq)

    def get_jacobian_of_c(self, q: np.ndarray, dq: np.ndarray, wrt: WithRespectTo) -> np.ndarray:
        """d(C(q, dq))/d(wrt) [n, dim(wrt)]."""
        zero = np.zeros(self._num_dofs)

        def fn(q_, dq_, ddq_, p):
            return self._inverse_dynamics(q_, dq_, torch.zeros_like(ddq_), p)
        return self._differentiate(fn, wrt, q, dq, zero)

    def get_jacobian_of_contact_forces(
        self,
        q: np.ndarray,
        contact_bodies: Sequence[int],
        wrenches: np.ndarray,
        wrt: WithRespectTo,
    ) -> np.ndarray:
        """d(sum_k J_k^T w_k)/d(wrt) [n, dim(wrt)]."""
        zero = np.zeros(self._num_dofs)
        w = _t(wrenches)

        def fn(q_, dq_, ddq_, p):
            return self._contact_forces(q_, p, contact_bodies, w)
        return self._differentiate(fn, wrt, q, zero, zero)

    # ------------------------------------------------------------------
    # Kinematics
    # ------------------------------------------------------------------

    def get_body_world_positions(self, q: Optional[np.ndarray] = None) -> np.ndarray:
        """Body origins in world coordinates [B, 3]."""
        q = self._q if q is None else q
        return _np(self._kinematics(_t(q), self._params())[2])

    def get_body_world_rotations(self, q: Optional[np.ndarray] = None) -> np.ndarray:
        """Body-to-world rotations [B, 3, 3]."""
        q = self._q if q is None else q
        return _np(self._kinematics(_t(q), self._params())[1])

    def get_com_positions(self, q: Optional[np.ndarray] = None) -> np.ndarray:
        """Per-body COM positions in world coordinates [B, 3]."""
        q = self._q if q is None else q
        return _np(self._kinematics(_t(q), self._params())[0])

    def _marker_positions(self, q, p, markers, offsets):
        _, rotations, origins = self._kinematics(q, p)
        scales = p.scales
        return torch.cat([
            origins[body] + rotations[body] @ (scales[body] * offsets[k])
            for k, (body, _) in enumerate(markers)
        ])

    def _joint_positions(self, q, p, joints):
        _, _, origins = self._kinematics(q, p)
        return torch.cat([origins[j] for j in joints])

    @staticmethod
    def _marker_offsets(markers) -> torch.Tensor:
        return _t(np.stack([np.asarray(offset, dtype=np.float64) for _, offset in markers]))

    def get_marker_world_positions(
        self,
        markers: Sequence[Tuple[int, np.ndarray]],
        q: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        World positions of markers.

        Args:
            markers: (body index, offset in the body frame) per marker.
            q: Generalized positions, defaults to the current state.

        Returns:
            Concatenated positions [3 * M].
        """
        if len(markers) == 0:
            return np.zeros(0)
        q = self._q if q is None else q
        return _np(self._marker_positions(_t(q), self._params(), markers, self._marker_offsets(markers)))

    def get_marker_world_positions_jacobian_wrt_joint_positions(
        self, markers: Sequence[Tuple[int, np.ndarray]], q: np.ndarray,
    ) -> np.ndarray:
        """[3M, n]"""
        if len(markers) == 0:
            return np.zeros((0, self._num_dofs))
        p = self._params()
        offsets = self._marker_offsets(markers)
        return _np(jacfwd(lambda x: self._marker_positions(x, p, markers, offsets))(_t(q)))

    def get_marker_world_positions_jacobian_wrt_group_scales(
        self, markers: Sequence[Tuple[int, np.ndarray]], q: np.ndarray,
    ) -> np.ndarray:
        """[3M, 3G]"""
        if len(markers) == 0:
            return np.zeros((0, self.group_scale_dim))
        q = _t(q)
        offsets = self._marker_offsets(markers)
        return _np(jacfwd(lambda x: self._marker_positions(
            q, self._params(group_scales=x), markers, offsets))(_t(self.get_group_scales())))

    def get_marker_world_positions_jacobian_wrt_marker_offsets(
        self, markers: Sequence[Tuple[int, np.ndarray]], q: np.ndarray,
    ) -> np.ndarray:
        """[3M, 3M]"""
        if len(markers) == 0:
            return np.zeros((0, 0))
        q = _t(q)
        p = self._params()
        offsets = self._marker_offsets(markers).reshape(-1)
        return _np(jacfwd(lambda x: self._marker_positions(q, p, markers, x.reshape(-1, 3)))(offsets))

    def get_joint_world_positions(self, joints: Sequence[int], q: Optional[np.ndarray] = None) -> np.ndarray:
        """World positions [3J] of the joints attaching each listed body to its parent."""
        if len(joints) == 0:
            return np.zeros(0)
        q = self._q if q is None else q
        return _np(self._joint_positions(_t(q), self._params(), joints))

    def get_joint_world_positions_jacobian_wrt_joint_positions(
        self, joints: Sequence[int], q: np.ndarray,
    ) -> np.ndarray:
        """[3J, n]"""
        if len(joints) == 0:
            return np.zeros((0, self._num_dofs))
        p = self._params()
        return _np(jacfwd(lambda x: self._joint_positions(x, p, joints))(_t(q)))

    def get_joint_world_positions_jacobian_wrt_group_scales(
        self, joints: Sequence[int], q: np.ndarray,
    ) -> np.ndarray:
        """[3J, 3G]"""
        if len(joints) == 0:
            return np.zeros((0, self.group_scale_dim))
        q = _t(q)
        return _np(jacfwd(lambda x: self._joint_positions(
            q, self._params(group_scales=x), joints))(_t(self.get_group_scales())))

    def get_total_mass(self) -> float:
        return float(np.sum(self._masses))

    def describe(self) -> Dict[str, object]:
        """Summary of the model for logging."""
        return {
            'name': self.name,
            'bodies': self.body_names,
            'dofs': self._num_dofs,
            'scale_groups': [list(g) for g in self._groups],
            'total_mass': self.get_total_mass(),
        }
