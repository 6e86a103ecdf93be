#!/usr/bin/env python3
"""
Dynamics fitting as a constrained nonlinear program.

Decision variables (selected by DynamicsFitConfig inclusion flags): group
masses, COMs, inertias and scales, marker offsets, and per-frame joint
positions / velocities / accelerations. The objective combines

- regularization of every inertial / scale / marker-offset group toward its
  initial value,
- residual root forces on frames with usable force plate data,
- marker tracking error,
- joint center and joint axis tracking error,
- pose regularization toward the smoothed input trajectory,

and equality constraints keep the velocity and acceleration channels equal
to finite differences of the position channel.

Besides the loss / gradient / constraint evaluators, the class implements the
callback interface of a generic constrained NLP solver (get_nlp_info,
eval_f, eval_jac_g, intermediate_callback, ...), see solver.py.
"""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..core.config import BEST_ITERATE_MAX_INFEASIBILITY, DynamicsFitConfig
from ..core.exceptions import MissingContactAnnotationError
from ..core.skeleton import Skeleton, WithRespectTo
from ..data.initialization import DynamicsInitialization, MarkerMap
from ..utils.finite_difference import central_difference_jacobian, finite_difference_jacobian
from .layout import ProblemLayout
from .residual import ResidualForceHelper, residual_norm_gradient


def _normalized(v: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(v)
    return v / norm if norm > 0 else np.zeros_like(v)


class DynamicsFitProblem:
    """
    NLP view over a DynamicsInitialization and the skeleton it describes.

    The skeleton's group parameters are used as scratch space: unflatten()
    writes the decision vector into them. finalize_solution() copies the best
    iterate into the initialization.
    """

    def __init__(
        self,
        init: DynamicsInitialization,
        skeleton: Skeleton,
        marker_map: MarkerMap,
        tracking_markers: Sequence[str],
        foot_nodes: Sequence[int],
        config: Optional[DynamicsFitConfig] = None,
        verbose: bool = True,
    ):
        """
        Args:
            init: Initialization bundle; written back on finalize.
            skeleton: Model being fit.
            marker_map: marker name -> (body index, offset).
            tracking_markers: Names of markers placed on soft tissue. Their
                offsets are regularized less than anatomical markers.
            foot_nodes: Bodies receiving the GRF blocks of init.grf_trials.
            config: Inclusion flags and loss weights.
            verbose: Print progress.
        """
        self.init = init
        self.skeleton = skeleton
        self.config = config if config is not None else DynamicsFitConfig()
        self.verbose = verbose
        self.residual_helper = ResidualForceHelper(skeleton, list(foot_nodes), verbose=verbose)

        # Markers, in name order
        tracking = set(tracking_markers)
        self.marker_names: List[str] = sorted(marker_map)
        self.markers: List[Tuple[int, np.ndarray]] = [
            (int(marker_map[name][0]), np.array(marker_map[name][1], dtype=np.float64))
            for name in self.marker_names
        ]
        self.marker_is_tracking = [name in tracking for name in self.marker_names]
        self._marker_index = {name: i for i, name in enumerate(self.marker_names)}
        self._validate_joint_targets()

        # Trajectories, velocities and accelerations by finite differences
        self.poses: List[np.ndarray] = []
        self.vels: List[np.ndarray] = []
        self.accs: List[np.ndarray] = []
        for trial, poses in enumerate(init.pose_trials):
            dt = init.trial_timesteps[trial]
            poses = np.array(poses, dtype=np.float64)
            vels = (poses[:, 1:] - poses[:, :-1]) / dt
            accs = (vels[:, 1:] - vels[:, :-1]) / dt
            self.poses.append(poses)
            self.vels.append(vels)
            self.accs.append(accs)

        # Regularization targets
        self.original_group_masses = self._original(init.original_group_masses, skeleton.get_group_masses())
        self.original_group_coms = self._original(init.original_group_coms, skeleton.get_group_coms())
        self.original_group_inertias = self._original(
            init.original_group_inertias, skeleton.get_group_inertias())
        self.original_group_scales = self._original(init.original_group_scales, skeleton.get_group_scales())
        self.original_poses = [
            np.array(p, dtype=np.float64)
            for p in (init.original_poses if len(init.original_poses) == init.num_trials else self.poses)
        ]

        self.layout = ProblemLayout(
            self.config,
            num_groups=skeleton.num_scale_groups,
            group_scale_dim=skeleton.group_scale_dim,
            num_markers=len(self.markers),
            num_dofs=skeleton.num_dofs,
            trial_lengths=[p.shape[1] for p in self.poses],
        )

        self._last_x: Optional[np.ndarray] = None
        self._sparse_jacobian: Optional[Tuple[np.ndarray, np.ndarray, np.ndarray]] = None

        # Best iterate seen by intermediate_callback()
        self.best_objective_value = np.inf
        self.best_state: Optional[np.ndarray] = None
        self.best_iteration = -1

        if self.verbose:
            print(f"[DynamicsFitProblem] {self.get_problem_size()} variables "
                  f"({self.layout.describe()}), {self.get_constraint_size()} constraints")

    @staticmethod
    def _original(stored: np.ndarray, current: np.ndarray) -> np.ndarray:
        stored = np.asarray(stored, dtype=np.float64)
        return stored.copy() if stored.shape == current.shape else current.copy()

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def get_problem_size(self) -> int:
        return self.layout.size

    def _fill(self, x: np.ndarray, masses, coms, inertias, scales, marker, pos, vel, acc) -> np.ndarray:
        """Write group values and per-frame series into a flat vector."""
        layout = self.layout
        if 'masses' in layout:
            x[layout['masses'].slice] = masses
        if 'coms' in layout:
            x[layout['coms'].slice] = coms
        if 'inertias' in layout:
            x[layout['inertias'].slice] = inertias
        if 'scales' in layout:
            x[layout['scales'].slice] = scales
        if 'marker_offsets' in layout:
            for i in range(len(self.markers)):
                x[layout.marker(i)] = marker(i)
        if layout.includes_poses:
            for trial, length in enumerate(layout.trial_lengths):
                for t in range(length):
                    x[layout.pos(trial, t)] = pos(trial, t)
                for t in range(length - 1):
                    x[layout.vel(trial, t)] = vel(trial, t)
                for t in range(length - 2):
                    x[layout.acc(trial, t)] = acc(trial, t)
        return x

    def flatten(self) -> np.ndarray:
        """Current model and trajectory state as a decision vector."""
        skel = self.skeleton
        return self._fill(
            np.zeros(self.layout.size),
            skel.get_group_masses(),
            skel.get_group_coms(),
            skel.get_group_inertias(),
            skel.get_group_scales(),
            lambda i: self.markers[i][1],
            lambda k, t: self.poses[k][:, t],
            lambda k, t: self.vels[k][:, t],
            lambda k, t: self.accs[k][:, t],
        )

    def flatten_upper_bound(self) -> np.ndarray:
        skel = self.skeleton
        bound = self.config.marker_offset_bound
        return self._fill(
            np.zeros(self.layout.size),
            skel.get_group_masses_upper_bound(),
            skel.get_group_coms_upper_bound(),
            skel.get_group_inertias_upper_bound(),
            skel.get_group_scales_upper_bound(),
            lambda i: np.full(3, bound),
            lambda k, t: skel.get_position_upper_limits(),
            lambda k, t: skel.get_velocity_upper_limits(),
            lambda k, t: skel.get_acceleration_upper_limits(),
        )

    def flatten_lower_bound(self) -> np.ndarray:
        skel = self.skeleton
        bound = self.config.marker_offset_bound
        return self._fill(
            np.zeros(self.layout.size),
            skel.get_group_masses_lower_bound(),
            skel.get_group_coms_lower_bound(),
            skel.get_group_inertias_lower_bound(),
            skel.get_group_scales_lower_bound(),
            lambda i: np.full(3, -bound),
            lambda k, t: skel.get_position_lower_limits(),
            lambda k, t: skel.get_velocity_lower_limits(),
            lambda k, t: skel.get_acceleration_lower_limits(),
        )

    def unflatten(self, x: np.ndarray):
        """Write a decision vector into the skeleton and trajectories."""
        x = np.asarray(x, dtype=np.float64)
        if self._last_x is not None and self._last_x.shape == x.shape \
                and self._last_x.tobytes() == x.tobytes():
            return
        self._last_x = x.copy()

        layout = self.layout
        skel = self.skeleton
        if 'masses' in layout:
            skel.set_group_masses(x[layout['masses'].slice])
        if 'coms' in layout:
            skel.set_group_coms(x[layout['coms'].slice])
        if 'inertias' in layout:
            skel.set_group_inertias(x[layout['inertias'].slice])
        if 'scales' in layout:
            skel.set_group_scales(x[layout['scales'].slice])
        if 'marker_offsets' in layout:
            for i, (body, _) in enumerate(self.markers):
                self.markers[i] = (body, x[layout.marker(i)].copy())
        if layout.includes_poses:
            for trial, length in enumerate(layout.trial_lengths):
                for t in range(length):
                    self.poses[trial][:, t] = x[layout.pos(trial, t)]
                for t in range(length - 1):
                    self.vels[trial][:, t] = x[layout.vel(trial, t)]
                for t in range(length - 2):
                    self.accs[trial][:, t] = x[layout.acc(trial, t)]

    def describe_index(self, index: int) -> str:
        """Human readable name of one decision variable."""
        for block in self.layout.blocks:
            if block.offset <= index < block.end:
                local = index - block.offset
                if not block.name.startswith('trial_'):
                    return f"{block.name}[{local}]"
                n = self.layout.num_dofs
                t, rest = divmod(local, 3 * n)
                kind, dof = divmod(rest, n)
                trial = int(block.name.split('_')[1])
                last = self.layout.num_acc_timesteps(trial)
                if t == last and kind == 2:
                    return f"{block.name} pos[t={last + 1}, dof={dof}]"
                return f"{block.name} {('pos', 'vel', 'acc')[kind]}[t={t}, dof={dof}]"
        raise IndexError(f"Index {index} outside the decision vector")

    # ------------------------------------------------------------------
    # Loss
    # ------------------------------------------------------------------

    def _require_contact_annotations(self):
        if not self.init.has_contact_annotations():
            raise MissingContactAnnotationError(len(self.init.probably_missing_grf), self.init.num_trials)

    def _forces(self, trial: int, t: int) -> np.ndarray:
        if trial < len(self.init.grf_trials) and self.init.grf_trials[trial].shape[0] > 0:
            return self.init.grf_trials[trial][:, t]
        return np.zeros(6 * len(self.residual_helper.force_body_indices))

    def _residual_frames(self, trial: int) -> List[int]:
        missing = self.init.probably_missing_grf[trial]
        return [t for t in range(self.poses[trial].shape[1] - 2) if not missing[t]]

    def _residual_count(self) -> int:
        return sum(len(self._residual_frames(k)) for k in range(len(self.poses)))

    def _observed(self, trial: int, t: int) -> List[Tuple[int, np.ndarray]]:
        """(marker index, observed position) for markers seen in this frame."""
        frames = self.init.marker_observation_trials
        if trial >= len(frames) or t >= len(frames[trial]):
            return []
        return [
            (self._marker_index[name], np.asarray(pos, dtype=np.float64))
            for name, pos in frames[trial][t].items()
            if name in self._marker_index
        ]

    def _marker_count(self) -> int:
        return sum(
            len(self._observed(k, t))
            for k in range(len(self.poses))
            for t in range(self.poses[k].shape[1])
        )

    def _validate_joint_targets(self):
        """
        Raises:
            ValueError: if joint weights or per-trial targets do not match
                the number of tracked joints.
        """
        init = self.init
        num_joints = len(init.joints)
        if num_joints == 0:
            return
        if len(init.joint_weights) != num_joints:
            raise ValueError(f"{len(init.joint_weights)} joint weights for {num_joints} joints")
        has_axis = any(axis.size > 0 for axis in init.joint_axis)
        if has_axis and len(init.axis_weights) != num_joints:
            raise ValueError(f"{len(init.axis_weights)} axis weights for {num_joints} joints")
        for trial, centers in enumerate(init.joint_centers):
            if centers.size > 0 and centers.shape[0] != 3 * num_joints:
                raise ValueError(
                    f"Trial {trial} joint centers have {centers.shape[0]} rows, expected {3 * num_joints}")
        for trial, axis in enumerate(init.joint_axis):
            if axis.size > 0 and axis.shape[0] != 6 * num_joints:
                raise ValueError(
                    f"Trial {trial} joint axes have {axis.shape[0]} rows, expected {6 * num_joints}")

    def _has_joint_targets(self, trial: int) -> bool:
        return len(self.init.joints) > 0 and trial < len(self.init.joint_centers) \
            and self.init.joint_centers[trial].size > 0

    def _marker_offset_weight(self, i: int) -> float:
        if self.marker_is_tracking[i]:
            return self.config.regularize_tracking_marker_offsets
        return self.config.regularize_anatomical_marker_offsets

    def compute_loss(self, x: np.ndarray, log_explanation: bool = False) -> float:
        """
        Weighted objective at x.

        Raises:
            MissingContactAnnotationError: if estimate_foot_ground_contacts()
                has not annotated every trial.
        """
        self._require_contact_annotations()
        self.unflatten(x)
        cfg = self.config
        skel = self.skeleton
        init = self.init
        num_groups = skel.num_scale_groups

        mass_reg = cfg.regularize_masses / num_groups * float(
            np.sum((skel.get_group_masses() - self.original_group_masses) ** 2))
        com_reg = cfg.regularize_coms / num_groups * float(
            np.sum((skel.get_group_coms() - self.original_group_coms) ** 2))
        inertia_reg = cfg.regularize_inertias / num_groups * float(
            np.sum((skel.get_group_inertias() - self.original_group_inertias) ** 2))
        scale_reg = cfg.regularize_body_scales / num_groups * float(
            np.sum((skel.get_group_scales() - self.original_group_scales) ** 2))

        marker_reg = 0.0
        for i, name in enumerate(self.marker_names):
            if name in init.original_marker_offsets:
                diff = self.markers[i][1] - init.original_marker_offsets[name]
                marker_reg += self._marker_offset_weight(i) / len(self.markers) * float(diff @ diff)

        residual_sum = 0.0
        marker_sum = 0.0
        joint_sum = 0.0
        axis_sum = 0.0
        pose_sum = 0.0
        for trial, poses in enumerate(self.poses):
            residual_frames = set(self._residual_frames(trial))
            for t in range(poses.shape[1]):
                q = poses[:, t]

                if t in residual_frames:
                    residual_sum += self.residual_helper.calculate_residual_norm(
                        q, self.vels[trial][:, t], self.accs[trial][:, t],
                        self._forces(trial, t), cfg.residual_use_l1)

                observed = self._observed(trial, t)
                if observed:
                    model = skel.get_marker_world_positions(self.markers, q)
                    for i, target in observed:
                        diff = model[3 * i:3 * i + 3] - target
                        marker_sum += np.linalg.norm(diff) if cfg.marker_use_l1 else float(diff @ diff)

                if self._has_joint_targets(trial):
                    joint_sum_t, axis_sum_t, _ = self._joint_terms(trial, t, q)
                    joint_sum += joint_sum_t
                    axis_sum += axis_sum_t

                diff = q - self.original_poses[trial][:, t]
                pose_sum += float(diff @ diff)

        residual_term = cfg.residual_weight * residual_sum / max(self._residual_count(), 1)
        marker_term = cfg.marker_weight * marker_sum / max(self._marker_count(), 1)
        joint_term = cfg.joint_weight * joint_sum
        axis_term = cfg.joint_weight * axis_sum
        pose_term = cfg.regularize_poses * pose_sum / max(init.total_timesteps, 1)

        loss = (mass_reg + com_reg + inertia_reg + scale_reg + marker_reg
                + residual_term + marker_term + joint_term + axis_term + pose_term)

        if log_explanation:
            print(f"[DynamicsFitProblem] loss={loss:.6f} massR={mass_reg:.6f} comR={com_reg:.6f} "
                  f"inR={inertia_reg:.6f} scR={scale_reg:.6f} mkrR={marker_reg:.6f} "
                  f"jntRMS={joint_term:.6f} axisRMS={axis_term:.6f} qR={pose_term:.6f} "
                  f"fRMS={residual_term:.6f} mkRMS={marker_term:.6f}")
        return loss

    def _joint_terms(self, trial: int, t: int, q: np.ndarray) -> Tuple[float, float, np.ndarray]:
        """
        Joint center and axis costs at one frame.

        Returns:
            joint cost, axis cost, and the gradient [3J] of their
            weighted sum (times joint_weight) with respect to joint positions.
        """
        init = self.init
        joints = init.joints
        positions = self.skeleton.get_joint_world_positions(joints, q)
        centers = init.joint_centers[trial][:, t]
        has_axis = trial < len(init.joint_axis) and init.joint_axis[trial].size > 0
        joint_cost = 0.0
        axis_cost = 0.0
        grad = np.zeros(3 * len(joints))
        for i in range(len(joints)):
            pos = positions[3 * i:3 * i + 3]
            diff = pos - centers[3 * i:3 * i + 3]
            joint_cost += float(diff @ diff) * init.joint_weights[i]
            grad[3 * i:3 * i + 3] += 2.0 * diff * init.joint_weights[i]
            if has_axis:
                axis = init.joint_axis[trial][6 * i:6 * i + 6, t]
                direction = _normalized(axis[3:])
                off_axis = pos - axis[:3]
                off_axis = off_axis - (off_axis @ direction) * direction
                axis_cost += float(off_axis @ off_axis) * init.axis_weights[i]
                grad[3 * i:3 * i + 3] += 2.0 * off_axis * init.axis_weights[i]
        return joint_cost, axis_cost, self.config.joint_weight * grad

    # ------------------------------------------------------------------
    # Gradient
    # ------------------------------------------------------------------

    def compute_gradient(self, x: np.ndarray) -> np.ndarray:
        """
        Analytical gradient of compute_loss() in the flatten() layout.

        Raises:
            MissingContactAnnotationError: see compute_loss().
        """
        self._require_contact_annotations()
        self.unflatten(x)
        cfg = self.config
        skel = self.skeleton
        init = self.init
        layout = self.layout
        helper = self.residual_helper
        grad = np.zeros(layout.size)
        num_groups = skel.num_scale_groups

        if 'masses' in layout:
            grad[layout['masses'].slice] += cfg.regularize_masses / num_groups * 2.0 * (
                skel.get_group_masses() - self.original_group_masses)
        if 'coms' in layout:
            grad[layout['coms'].slice] += cfg.regularize_coms / num_groups * 2.0 * (
                skel.get_group_coms() - self.original_group_coms)
        if 'inertias' in layout:
            grad[layout['inertias'].slice] += cfg.regularize_inertias / num_groups * 2.0 * (
                skel.get_group_inertias() - self.original_group_inertias)
        if 'scales' in layout:
            grad[layout['scales'].slice] += cfg.regularize_body_scales / num_groups * 2.0 * (
                skel.get_group_scales() - self.original_group_scales)
        if 'marker_offsets' in layout:
            for i, name in enumerate(self.marker_names):
                if name in init.original_marker_offsets:
                    grad[layout.marker(i)] += self._marker_offset_weight(i) / len(self.markers) * 2.0 * (
                        self.markers[i][1] - init.original_marker_offsets[name])

        residual_count = max(self._residual_count(), 1)
        marker_count = max(self._marker_count(), 1)
        residual_scale = cfg.residual_weight / residual_count
        pose_scale = cfg.regularize_poses / max(init.total_timesteps, 1)

        residual_kinds = [
            ('masses', WithRespectTo.GROUP_MASSES),
            ('coms', WithRespectTo.GROUP_COMS),
            ('inertias', WithRespectTo.GROUP_INERTIAS),
            ('scales', WithRespectTo.GROUP_SCALES),
        ]

        for trial, poses in enumerate(self.poses):
            residual_frames = set(self._residual_frames(trial))
            for t in range(poses.shape[1]):
                q = poses[:, t]

                # Marker tracking
                observed = self._observed(trial, t)
                if observed:
                    model = skel.get_marker_world_positions(self.markers, q)
                    marker_grad = np.zeros(3 * len(self.markers))
                    for i, target in observed:
                        diff = model[3 * i:3 * i + 3] - target
                        marker_grad[3 * i:3 * i + 3] = _normalized(diff) if cfg.marker_use_l1 else 2.0 * diff
                    marker_grad *= cfg.marker_weight / marker_count
                    if layout.includes_poses:
                        grad[layout.pos(trial, t)] += skel.get_marker_world_positions_jacobian_wrt_joint_positions(
                            self.markers, q).T @ marker_grad
                    if 'scales' in layout:
                        grad[layout['scales'].slice] += skel.get_marker_world_positions_jacobian_wrt_group_scales(
                            self.markers, q).T @ marker_grad
                    if 'marker_offsets' in layout:
                        grad[layout['marker_offsets'].slice] += \
                            skel.get_marker_world_positions_jacobian_wrt_marker_offsets(
                                self.markers, q).T @ marker_grad

                # Joint centers and axes
                if self._has_joint_targets(trial):
                    _, _, joint_grad = self._joint_terms(trial, t, q)
                    if layout.includes_poses:
                        grad[layout.pos(trial, t)] += skel.get_joint_world_positions_jacobian_wrt_joint_positions(
                            init.joints, q).T @ joint_grad
                    if 'scales' in layout:
                        grad[layout['scales'].slice] += skel.get_joint_world_positions_jacobian_wrt_group_scales(
                            init.joints, q).T @ joint_grad

                # Pose regularization
                if layout.includes_poses:
                    grad[layout.pos(trial, t)] += pose_scale * 2.0 * (q - self.original_poses[trial][:, t])

                # Residual forces, only on frames with an acceleration and usable GRF
                if t not in residual_frames:
                    continue
                dq = self.vels[trial][:, t]
                ddq = self.accs[trial][:, t]
                forces = self._forces(trial, t)
                residual = helper.calculate_residual(q, dq, ddq, forces)

                def residual_grad(wrt: WithRespectTo) -> np.ndarray:
                    jac = helper.calculate_residual_jacobian_wrt(q, dq, ddq, forces, wrt)
                    return residual_scale * residual_norm_gradient(residual, jac, cfg.residual_use_l1)

                for block, wrt in residual_kinds:
                    if block in layout:
                        grad[layout[block].slice] += residual_grad(wrt)
                if layout.includes_poses:
                    grad[layout.pos(trial, t)] += residual_grad(WithRespectTo.POSITION)
                    grad[layout.vel(trial, t)] += residual_grad(WithRespectTo.VELOCITY)
                    grad[layout.acc(trial, t)] += residual_grad(WithRespectTo.ACCELERATION)

        return grad

    def finite_difference_gradient(self, x: np.ndarray, use_ridders: bool = True) -> np.ndarray:
        """Gradient of compute_loss() by finite differences, for checking."""
        x = np.asarray(x, dtype=np.float64)
        try:
            return finite_difference_jacobian(self.compute_loss, x, use_ridders=use_ridders)
        finally:
            self.unflatten(x)

    # ------------------------------------------------------------------
    # Constraints
    # ------------------------------------------------------------------

    def get_constraint_size(self) -> int:
        if not self.layout.includes_poses:
            return 0
        n = self.skeleton.num_dofs
        return sum((2 * (length - 2) + 1) * n for length in self.layout.trial_lengths)

    def compute_constraints(self, x: np.ndarray) -> np.ndarray:
        """
        Finite-difference consistency residuals, zero when satisfied.

        Per trial: v_t dt - (q_{t+1} - q_t) and a_t dt - (v_{t+1} - v_t) for
        every acceleration frame, then the last velocity against the last two
        positions.
        """
        self.unflatten(x)
        out = np.zeros(self.get_constraint_size())
        if not self.layout.includes_poses:
            return out
        n = self.skeleton.num_dofs
        row = 0
        for trial, poses in enumerate(self.poses):
            dt = self.init.trial_timesteps[trial]
            vels = self.vels[trial]
            accs = self.accs[trial]
            last = poses.shape[1] - 2
            for t in range(last):
                out[row:row + n] = vels[:, t] * dt - (poses[:, t + 1] - poses[:, t])
                row += n
                out[row:row + n] = accs[:, t] * dt - (vels[:, t + 1] - vels[:, t])
                row += n
            out[row:row + n] = vels[:, last] * dt - (poses[:, last + 1] - poses[:, last])
            row += n
        return out

    def compute_sparse_constraints_jacobian(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Constraint Jacobian as (rows, cols, values), three entries per row.

        The constraints are linear, so this does not depend on x.
        """
        if self._sparse_jacobian is not None:
            return self._sparse_jacobian

        layout = self.layout
        rows: List[int] = []
        cols: List[int] = []
        vals: List[float] = []

        def stamp(row: int, plus: int, minus: int, derivative: int, dt: float):
            rows.extend([row, row, row])
            cols.extend([plus, minus, derivative])
            vals.extend([1.0, -1.0, dt])

        if layout.includes_poses:
            n = self.skeleton.num_dofs
            row = 0
            for trial, length in enumerate(layout.trial_lengths):
                dt = self.init.trial_timesteps[trial]
                last = length - 2
                for t in range(last):
                    for i in range(n):
                        stamp(row + i, layout.pos_offset(trial, t) + i,
                              layout.pos_offset(trial, t + 1) + i, layout.vel_offset(trial, t) + i, dt)
                    row += n
                    for i in range(n):
                        stamp(row + i, layout.vel_offset(trial, t) + i,
                              layout.vel_offset(trial, t + 1) + i, layout.acc_offset(trial, t) + i, dt)
                    row += n
                for i in range(n):
                    stamp(row + i, layout.pos_offset(trial, last) + i,
                          layout.pos_offset(trial, last + 1) + i, layout.vel_offset(trial, last) + i, dt)
                row += n

        self._sparse_jacobian = (
            np.array(rows, dtype=np.int64),
            np.array(cols, dtype=np.int64),
            np.array(vals, dtype=np.float64),
        )
        return self._sparse_jacobian

    def compute_constraints_jacobian(self) -> np.ndarray:
        """Dense [m, n] version of compute_sparse_constraints_jacobian()."""
        dense = np.zeros((self.get_constraint_size(), self.get_problem_size()))
        rows, cols, vals = self.compute_sparse_constraints_jacobian()
        np.add.at(dense, (rows, cols), vals)
        return dense

    def finite_difference_constraints_jacobian(self, x: Optional[np.ndarray] = None) -> np.ndarray:
        x = self.flatten() if x is None else np.asarray(x, dtype=np.float64)
        try:
            return central_difference_jacobian(self.compute_constraints, x, eps=1e-7)
        finally:
            self.unflatten(x)

    def debug_errors(self, fd: np.ndarray, analytical: np.ndarray, tolerance: float = 1e-6) -> bool:
        """
        Print every entry where a finite-difference vector disagrees with the
        analytical one.

        Returns:
            True if any entry differs by more than tolerance (relative to
            max(1, |fd|)).
        """
        fd = np.asarray(fd).reshape(-1)
        analytical = np.asarray(analytical).reshape(-1)
        found = False
        for i in range(fd.shape[0]):
            error = abs(fd[i] - analytical[i])
            if error > tolerance * max(1.0, abs(fd[i])):
                found = True
                print(f"[DynamicsFitProblem] Mismatch at {self.describe_index(i)}: "
                      f"analytical={analytical[i]:.8e} fd={fd[i]:.8e} diff={error:.3e}")
        return found

    # ------------------------------------------------------------------
    # NLP solver callbacks
    # ------------------------------------------------------------------

    def get_nlp_info(self) -> Tuple[int, int, int, int]:
        """(num variables, num constraints, Jacobian nonzeros, Hessian nonzeros)."""
        nnz_jac_g = len(self.compute_sparse_constraints_jacobian()[0])
        return self.get_problem_size(), self.get_constraint_size(), nnz_jac_g, 0

    def get_bounds_info(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """(x_l, x_u, g_l, g_u); every constraint is an equality to zero."""
        m = self.get_constraint_size()
        return self.flatten_lower_bound(), self.flatten_upper_bound(), np.zeros(m), np.zeros(m)

    def get_starting_point(self) -> np.ndarray:
        return self.flatten()

    def eval_f(self, x: np.ndarray, new_x: bool = True) -> float:
        return self.compute_loss(x)

    def eval_grad_f(self, x: np.ndarray, new_x: bool = True) -> np.ndarray:
        return self.compute_gradient(x)

    def eval_g(self, x: np.ndarray, new_x: bool = True) -> np.ndarray:
        return self.compute_constraints(x)

    def eval_jac_g(self, x: Optional[np.ndarray] = None, values: Optional[np.ndarray] = None,
                   new_x: bool = True):
        """
        Two-phase constraint Jacobian query.

        With values=None returns the sparsity structure (rows, cols);
        otherwise fills values in the same order and returns it.
        """
        rows, cols, vals = self.compute_sparse_constraints_jacobian()
        if values is None:
            return rows, cols
        values[:] = vals
        return values

    def eval_h(self, x=None, obj_factor=None, lambdas=None, new_x: bool = True):
        """Exact Hessians are not provided; the solver must approximate them."""
        return None

    def intermediate_callback(
        self,
        iteration: int,
        obj_value: float,
        inf_pr: float,
        x: Optional[np.ndarray] = None,
    ) -> bool:
        """
        Record the best sufficiently feasible iterate.

        Returns:
            True to let the solver continue.
        """
        if abs(inf_pr) < BEST_ITERATE_MAX_INFEASIBILITY and obj_value < self.best_objective_value:
            self.best_objective_value = obj_value
            self.best_iteration = iteration
            state = x if x is not None else self._last_x
            self.best_state = None if state is None else np.array(state, dtype=np.float64)
        return True

    def finalize_solution(self, status: str, x: np.ndarray, obj_value: float):
        """Write the best iterate (or x if none qualified) back into the initialization."""
        state = self.best_state if self.best_state is not None else np.asarray(x, dtype=np.float64)
        self.unflatten(state)

        skel = self.skeleton
        init = self.init
        init.group_scales = skel.get_group_scales()
        init.body_coms = skel.get_link_coms()
        init.body_inertias = skel.get_link_inertias()
        init.body_masses = skel.get_link_masses()
        for trial, poses in enumerate(self.poses):
            init.pose_trials[trial] = poses.copy()
        for name, (body, offset) in zip(self.marker_names, self.markers):
            init.marker_offsets[name] = offset.copy()
            init.updated_marker_map[name] = (body, offset.copy())

        if self.verbose:
            best = self.best_objective_value if self.best_state is not None else obj_value
            print(f"[DynamicsFitProblem] Finished ({status}): final loss {obj_value:.6e}, "
                  f"kept loss {best:.6e} from iteration {self.best_iteration}")
