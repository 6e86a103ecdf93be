#!/usr/bin/env python3
"""
Dynamics fitting pipeline.

Stages:
1. create_initialization: smooth poses, assign force plate wrenches to the
   nearest foot body, snapshot the model parameters
2. estimate_foot_ground_contacts: find frames where a foot probably touched
   the ground off the instrumented plates
3. (optional) scale_link_masses_from_gravity / estimate_link_masses_from_acceleration:
   warm-start the link masses
4. run_optimization: solve the dynamics NLP, repeatable with different
   variable groups
5. diagnostics: marker RMSE, residual force, measured force, plots

Example:
    fitter = DynamicsFitter(skel, foot_nodes, marker_map, tracking_markers)
    init = fitter.create_initialization(plates, poses, fps, marker_observations)
    fitter.estimate_foot_ground_contacts(init)
    fitter.scale_link_masses_from_gravity(init)
    fitter.run_optimization(init, residual_weight=1.0, marker_weight=1.0,
                            include_poses=False, include_marker_offsets=False)
"""

from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.linalg
from tqdm import tqdm

from .core.config import (
    DEFAULT_PLATE_PADDING,
    FORCE_ACTIVE_THRESHOLD,
    MIN_LINK_MASS,
    FitterConfig,
)
from .core.exceptions import DynamicsFitError
from .core.skeleton import Skeleton
from .data.force_plate import ForcePlate
from .data.initialization import DynamicsInitialization, KinematicFitResult, MarkerMap, MarkerObservations
from .optimization.problem import DynamicsFitProblem
from .optimization.residual import ResidualForceHelper
from .optimization.solver import InteriorPointSolver, SolveResult
from .utils.geometry import footprint_contains, padded_bounding_rectangle
from .utils.smoothing import AccelerationSmoother
from .utils.visualization import plot_trial_dynamics


@dataclass
class TrialDynamicsSummary:
    """Per-frame dynamics of one trial, for plotting and reports."""
    trial: int
    time: np.ndarray                 # [T]
    com_positions: np.ndarray        # [T, 3]
    com_accelerations: np.ndarray    # [T-2, 3]
    implied_forces: np.ndarray       # [T-2, 3]
    measured_forces: np.ndarray      # [T-2, 3]
    residual_forces: np.ndarray      # [T-2], NaN on missing-GRF frames
    residual_torques: np.ndarray     # [T-2], NaN on missing-GRF frames
    probably_missing_grf: List[bool]


class DynamicsFitter:
    """
    Fits masses, inertias, scales, marker offsets and trajectories so that
    the motion is explained by the measured ground reaction forces.
    """

    def __init__(
        self,
        skeleton: Skeleton,
        foot_nodes: Sequence[int],
        marker_map: MarkerMap,
        tracking_markers: Sequence[str],
        config: Optional[FitterConfig] = None,
    ):
        """
        Args:
            skeleton: Model to fit. Its parameters are overwritten by
                run_optimization().
            foot_nodes: Bodies that receive ground reaction forces.
            marker_map: marker name -> (body index, offset in body frame).
            tracking_markers: Soft-tissue marker names.
            config: Fitter configuration.
        """
        self.skeleton = skeleton
        self.foot_nodes = list(foot_nodes)
        self.marker_map = {name: (int(b), np.array(o, dtype=np.float64)) for name, (b, o) in marker_map.items()}
        self.tracking_markers = list(tracking_markers)
        self.config = config if config is not None else FitterConfig()
        self.verbose = self.config.verbose

    # ------------------------------------------------------------------
    # Stage 1: initialization
    # ------------------------------------------------------------------

    def create_initialization(
        self,
        force_plate_trials: List[List[ForcePlate]],
        pose_trials: List[np.ndarray],
        frames_per_second: Union[float, Sequence[float]],
        marker_observation_trials: List[MarkerObservations],
    ) -> DynamicsInitialization:
        """
        Build the initialization bundle from raw trajectories and force plates.

        Args:
            force_plate_trials: Force plates recorded during each trial.
            pose_trials: Joint positions per trial [dofs, T].
            frames_per_second: Frame rate, per trial or shared.
            marker_observation_trials: Observed marker positions per frame.

        Returns:
            DynamicsInitialization with smoothed poses and per-body GRF.
        """
        return self._create_initialization(
            force_plate_trials, pose_trials, frames_per_second, marker_observation_trials, self.marker_map)

    def create_initialization_from_kinematics(
        self,
        kinematic_fit: KinematicFitResult,
        force_plate_trials: List[List[ForcePlate]],
        frames_per_second: Union[float, Sequence[float]],
        marker_observation_trials: List[MarkerObservations],
    ) -> DynamicsInitialization:
        """
        Build the initialization from a kinematic fit over all trials.

        The fit's concatenated pose matrix is split back into trials using
        the number of marker observation frames in each trial. The fit's
        group scales are applied to the skeleton.
        """
        lengths = [len(frames) for frames in marker_observation_trials]
        total = sum(lengths)
        if kinematic_fit.poses.shape[1] != total:
            raise ValueError(
                f"Kinematic fit has {kinematic_fit.poses.shape[1]} frames, trials have {total}")
        bounds = np.cumsum([0] + lengths)

        def split(matrix: np.ndarray) -> List[np.ndarray]:
            if matrix.size == 0:
                return []
            return [matrix[:, bounds[k]:bounds[k + 1]].copy() for k in range(len(lengths))]

        self.skeleton.set_group_scales(kinematic_fit.group_scales)
        init = self._create_initialization(
            force_plate_trials,
            split(kinematic_fit.poses),
            frames_per_second,
            marker_observation_trials,
            kinematic_fit.updated_marker_map,
        )
        init.joints = list(kinematic_fit.joints)
        init.joint_weights = np.array(kinematic_fit.joint_weights, dtype=np.float64)
        init.axis_weights = np.array(kinematic_fit.axis_weights, dtype=np.float64)
        init.joint_centers = split(kinematic_fit.joint_centers)
        init.joint_axis = split(kinematic_fit.joint_axis)
        return init

    def _create_initialization(
        self,
        force_plate_trials: List[List[ForcePlate]],
        pose_trials: List[np.ndarray],
        frames_per_second: Union[float, Sequence[float]],
        marker_observation_trials: List[MarkerObservations],
        marker_map: MarkerMap,
    ) -> DynamicsInitialization:
        num_trials = len(pose_trials)
        if np.isscalar(frames_per_second):
            frames_per_second = [frames_per_second] * num_trials
        if not (len(force_plate_trials) == len(frames_per_second) == len(marker_observation_trials) == num_trials):
            raise ValueError(
                f"Per-trial inputs disagree: {num_trials} pose trials, {len(force_plate_trials)} force plate "
                f"trials, {len(frames_per_second)} frame rates, {len(marker_observation_trials)} marker trials")

        cfg = self.config
        init = DynamicsInitialization()
        init.force_plate_trials = force_plate_trials
        init.marker_observation_trials = marker_observation_trials
        init.tracking_markers = list(self.tracking_markers)
        init.grf_body_indices = list(self.foot_nodes)
        init.updated_marker_map = {name: (int(b), np.array(o, dtype=np.float64)) for name, (b, o) in marker_map.items()}

        for trial in range(num_trials):
            poses = np.array(pose_trials[trial], dtype=np.float64)
            init.original_pose_trials.append(poses.copy())
            if cfg.smoothing_weight > 0:
                smoother = AccelerationSmoother(poses.shape[1], cfg.smoothing_weight, cfg.smoothing_regularization)
                poses = smoother.smooth(poses)
            init.pose_trials.append(poses)
            init.trial_timesteps.append(1.0 / frames_per_second[trial])
            init.grf_trials.append(self._assign_plate_wrenches(poses, force_plate_trials[trial], trial))

        # Regularization targets
        init.original_poses = [p.copy() for p in init.pose_trials]
        skel = self.skeleton
        init.body_masses = skel.get_link_masses()
        init.body_coms = skel.get_link_coms()
        init.body_inertias = skel.get_link_inertias()
        init.group_scales = skel.get_group_scales()
        init.original_group_masses = skel.get_group_masses()
        init.original_group_coms = skel.get_group_coms()
        init.original_group_inertias = skel.get_group_inertias()
        init.original_group_scales = skel.get_group_scales()
        init.marker_offsets = {name: o.copy() for name, (_, o) in init.updated_marker_map.items()}
        init.original_marker_offsets = {name: o.copy() for name, (_, o) in init.updated_marker_map.items()}

        if self.verbose:
            print(f"[DynamicsFitter] Initialized {num_trials} trials, {init.total_timesteps} frames, "
                  f"{len(self.foot_nodes)} GRF bodies")
        return init

    def _assign_plate_wrenches(self, poses: np.ndarray, plates: List[ForcePlate], trial: int) -> np.ndarray:
        """GRF matrix [6 * num_feet, T]: every plate wrench goes to the foot nearest its COP."""
        num_frames = poses.shape[1]
        grf = np.zeros((6 * len(self.foot_nodes), num_frames))
        if not plates or not self.foot_nodes:
            return grf
        for t in tqdm(range(num_frames), disable=not self.verbose, desc=f"GRF trial {trial}"):
            feet = self.skeleton.get_body_world_positions(poses[:, t])[self.foot_nodes]
            for plate in plates:
                if t >= plate.num_frames:
                    continue
                distances = np.linalg.norm(feet - plate.centers_of_pressure[t], axis=1)
                k = int(np.argmin(distances))
                grf[6 * k:6 * k + 6, t] += plate.world_wrench(t)
        return grf

    @contextmanager
    def _init_parameters(self, init: DynamicsInitialization):
        """Temporarily load the initialization's parameters into the skeleton."""
        with self.skeleton.preserved_state():
            self._apply_init_to_skeleton(init)
            yield self.skeleton

    def _apply_init_to_skeleton(self, init: DynamicsInitialization):
        skel = self.skeleton
        if len(init.body_masses) == skel.num_bodies:
            skel.set_link_masses(init.body_masses)
        if len(init.body_coms) == skel.num_bodies:
            skel.set_link_coms(init.body_coms)
        if len(init.body_inertias) == skel.num_bodies:
            skel.set_link_inertias(init.body_inertias)
        if len(init.group_scales) == skel.group_scale_dim:
            skel.set_group_scales(init.group_scales)

    # ------------------------------------------------------------------
    # Stage 2: contact annotation
    # ------------------------------------------------------------------

    def estimate_foot_ground_contacts(self, init: DynamicsInitialization):
        """
        Flag frames that probably touch the ground off the force plates.

        For every GRF body, the candidate contact bodies are the body and its
        descendants that are not GRF bodies themselves. Each candidate gets a
        contact sphere, grown on force-loaded frames until the candidate
        nearest the ground counts as touching it. A frame is flagged
        probably_missing_grf when some foot has no measured load, one of its
        spheres touches the ground, and none of its candidates is over a
        plate footprint.
        """
        skel = self.skeleton
        grf_nodes = set(init.grf_body_indices)

        # (a) candidate contact bodies per GRF node
        init.contact_bodies = []
        for node in init.grf_body_indices:
            bodies = []
            queue = deque([node])
            while queue:
                body = queue.popleft()
                bodies.append(body)
                for child in skel.get_child_indices(body):
                    if child not in grf_nodes:
                        queue.append(child)
            init.contact_bodies.append(bodies)

        init.ground_height = []
        init.flat_ground = []
        init.default_force_plate_corners = []
        init.grf_body_contact_sphere_radius = []
        init.grf_body_force_active = []
        init.grf_body_sphere_in_contact = []
        init.grf_body_off_force_plate = []
        init.probably_missing_grf = []

        with self._init_parameters(init):
            for trial in range(init.num_trials):
                self._annotate_trial(init, trial)

        if self.verbose:
            print(f"[DynamicsFitter] {init.num_missing_grf_frames()} of {init.total_timesteps} "
                  f"frames probably missing GRF")

    def _annotate_trial(self, init: DynamicsInitialization, trial: int):
        plates = init.force_plate_trials[trial]
        poses = init.pose_trials[trial]
        grf = init.grf_trials[trial]
        num_frames = poses.shape[1]
        num_feet = len(init.grf_body_indices)
        contact_bodies = init.contact_bodies

        if not plates:
            if self.verbose:
                print(f"[WARNING] Trial {trial} has no force plates, every frame is flagged as missing GRF")
            init.ground_height.append(0.0)
            init.flat_ground.append(True)
            init.default_force_plate_corners.append([])
            init.grf_body_contact_sphere_radius.append([[0.0] * len(b) for b in contact_bodies])
            init.grf_body_force_active.append([[False] * num_feet for _ in range(num_frames)])
            init.grf_body_sphere_in_contact.append([[False] * num_feet for _ in range(num_frames)])
            init.grf_body_off_force_plate.append([[False] * num_feet for _ in range(num_frames)])
            init.probably_missing_grf.append([True] * num_frames)
            return

        # (b) ground height
        corner_heights = [c[1] for plate in plates for c in plate.corners]
        if corner_heights:
            ground_height = float(corner_heights[0])
            flat_ground = bool(np.all(np.abs(np.array(corner_heights) - ground_height) < 1e-8))
        else:
            ground_height = float(min(np.min(plate.centers_of_pressure[:, 1]) for plate in plates))
            flat_ground = True

        default_corners: List[np.ndarray] = []
        if any(len(plate.corners) == 0 for plate in plates):
            cops = np.concatenate([plate.centers_of_pressure for plate in plates])
            default_corners = padded_bounding_rectangle(cops, DEFAULT_PLATE_PADDING, ground_height)

        positions = [self.skeleton.get_body_world_positions(poses[:, t]) for t in range(num_frames)]
        force_active = [
            [float(np.sum(grf[6 * k:6 * k + 6, t] ** 2)) > FORCE_ACTIVE_THRESHOLD for k in range(num_feet)]
            for t in range(num_frames)
        ]

        # (c) grow contact spheres to cover loaded frames
        radii = [[0.0] * len(bodies) for bodies in contact_bodies]
        for t in range(num_frames):
            for k, bodies in enumerate(contact_bodies):
                if not force_active[t][k]:
                    continue
                heights = positions[t][bodies, 1] - ground_height
                nearest = int(np.argmin(heights))
                radii[k][nearest] = max(radii[k][nearest], float(heights[nearest]))

        # (d) contact predicted without load and away from every plate
        footprints = [plate.corners for plate in plates if len(plate.corners) > 0]
        if default_corners:
            footprints.append(default_corners)

        sphere_in_contact = []
        off_force_plate = []
        missing = []
        for t in range(num_frames):
            in_contact_t = []
            off_plate_t = []
            for k, bodies in enumerate(contact_bodies):
                heights = positions[t][bodies, 1] - ground_height
                in_contact = bool(np.any(heights < np.array(radii[k])))
                off_plate = False
                if in_contact and not force_active[t][k]:
                    off_plate = not any(
                        footprint_contains(positions[t][body], corners)
                        for body in bodies
                        for corners in footprints
                    )
                in_contact_t.append(in_contact)
                off_plate_t.append(off_plate)
            sphere_in_contact.append(in_contact_t)
            off_force_plate.append(off_plate_t)
            missing.append(any(off_plate_t))

        init.ground_height.append(ground_height)
        init.flat_ground.append(flat_ground)
        init.default_force_plate_corners.append(default_corners)
        init.grf_body_contact_sphere_radius.append(radii)
        init.grf_body_force_active.append(force_active)
        init.grf_body_sphere_in_contact.append(sphere_in_contact)
        init.grf_body_off_force_plate.append(off_force_plate)
        init.probably_missing_grf.append(missing)

    # ------------------------------------------------------------------
    # Stage 3: mass warm starts
    # ------------------------------------------------------------------

    def scale_link_masses_from_gravity(self, init: DynamicsInitialization) -> float:
        """
        Rescale every link mass by one factor so that total vertical GRF
        matches total mass times vertical (COM acceleration - gravity).

        Returns:
            The applied ratio.

        Raises:
            DynamicsFitError: if no trial has the 3 frames needed for a COM
                acceleration.
        """
        gravity_y = self.skeleton.gravity[1]
        total_force = 0.0
        total_acc = 0.0
        for trial in range(init.num_trials):
            total_force += float(np.sum(self.measured_grf_forces(init, trial)[:, 1]))
            total_acc += float(np.sum(self.com_accelerations(init, trial)[:, 1] - gravity_y))

        if abs(total_acc) < 1e-12:
            raise DynamicsFitError(
                "Cannot scale link masses from gravity: no frames with a COM acceleration "
                f"across {init.num_trials} trials")
        implied_mass = total_force / total_acc
        ratio = implied_mass / float(np.sum(init.body_masses))
        init.body_masses = init.body_masses * ratio
        if self.verbose:
            print(f"[DynamicsFitter] Implied total mass {implied_mass:.3f} kg, scaled link masses by {ratio:.4f}")
        return ratio

    def estimate_link_masses_from_acceleration(
        self,
        init: DynamicsInitialization,
        regularization_weight: Optional[float] = None,
    ) -> np.ndarray:
        """
        Least-squares link masses from body COM accelerations and plate forces.

        Solves sum_b m_b (a_b - g) = F_plates at every frame, stacked with
        reg * m = reg * m_current, then clamps masses to MIN_LINK_MASS.

        Returns:
            The new link masses [B] (also stored in init.body_masses).
        """
        reg = self.config.mass_regularization_weight if regularization_weight is None else regularization_weight
        skel = self.skeleton
        num_bodies = skel.num_bodies
        num_rows = sum(3 * max(0, p.shape[1] - 2) for p in init.pose_trials)

        A = np.zeros((num_rows + num_bodies, num_bodies))
        b = np.zeros(num_rows + num_bodies)
        row = 0
        with self._init_parameters(init):
            for trial in range(init.num_trials):
                poses = init.pose_trials[trial]
                if poses.shape[1] < 3:
                    continue
                dt = init.trial_timesteps[trial]
                coms = np.stack([skel.get_com_positions(poses[:, t]) for t in range(poses.shape[1])])
                accs = (coms[2:] - 2.0 * coms[1:-1] + coms[:-2]) / (dt * dt)
                forces = self.measured_grf_forces(init, trial)
                for t in range(accs.shape[0]):
                    A[row:row + 3] = (accs[t] - skel.gravity).T
                    b[row:row + 3] = forces[t]
                    row += 3

        A[row:] = reg * np.eye(num_bodies)
        b[row:] = reg * init.body_masses
        masses, _, _, _ = scipy.linalg.lstsq(A, b)
        masses = np.maximum(masses, MIN_LINK_MASS)
        init.body_masses = masses
        if self.verbose:
            print(f"[DynamicsFitter] Least-squares link masses: total {masses.sum():.3f} kg")
        return masses

    # ------------------------------------------------------------------
    # Stage 4: optimization
    # ------------------------------------------------------------------

    def run_optimization(
        self,
        init: DynamicsInitialization,
        residual_weight: Optional[float] = None,
        marker_weight: Optional[float] = None,
        include_masses: bool = True,
        include_coms: bool = True,
        include_inertias: bool = True,
        include_body_scales: bool = True,
        include_poses: bool = True,
        include_marker_offsets: bool = True,
    ) -> SolveResult:
        """
        Solve the dynamics fit and write the best iterate into init.

        Args:
            init: Annotated initialization.
            residual_weight: Weight on residual forces (squared unless the
                L1 residual is configured). Defaults to the configured one.
            marker_weight: Weight on marker error, treated the same way.
            include_*: Which quantities are free.

        Returns:
            Solver status summary.
        """
        base = self.config.problem
        residual_weight = base.residual_weight if residual_weight is None else residual_weight
        marker_weight = base.marker_weight if marker_weight is None else marker_weight
        config = base.replace(
            include_masses=include_masses,
            include_coms=include_coms,
            include_inertias=include_inertias,
            include_body_scales=include_body_scales,
            include_poses=include_poses,
            include_marker_offsets=include_marker_offsets,
            residual_weight=residual_weight if base.residual_use_l1 else residual_weight * residual_weight,
            marker_weight=marker_weight if base.marker_use_l1 else marker_weight * marker_weight,
        )

        self._apply_init_to_skeleton(init)
        problem = DynamicsFitProblem(
            init,
            self.skeleton,
            init.updated_marker_map if init.updated_marker_map else self.marker_map,
            self.tracking_markers,
            self.foot_nodes,
            config,
            verbose=self.verbose,
        )
        if self.verbose:
            problem.compute_loss(problem.flatten(), log_explanation=True)
        result = InteriorPointSolver(self.config.solver).solve(problem)
        if self.verbose:
            problem.compute_loss(problem.flatten(), log_explanation=True)
        return result

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @staticmethod
    def _check_trial(init: DynamicsInitialization, trial: int):
        if not 0 <= trial < init.num_trials:
            raise IndexError(f"Trial {trial} out of range, initialization has {init.num_trials} trials")

    @staticmethod
    def _is_missing(init: DynamicsInitialization, trial: int, t: int) -> bool:
        if trial >= len(init.probably_missing_grf):
            return False
        return bool(init.probably_missing_grf[trial][t])

    def com_positions(self, init: DynamicsInitialization, trial: int) -> np.ndarray:
        """Whole-body COM per frame [T, 3]."""
        self._check_trial(init, trial)
        poses = init.pose_trials[trial]
        masses = np.asarray(init.body_masses)
        with self._init_parameters(init):
            coms = np.stack([self.skeleton.get_com_positions(poses[:, t]) for t in range(poses.shape[1])])
        return np.einsum('b,tbi->ti', masses, coms) / masses.sum()

    def com_accelerations(self, init: DynamicsInitialization, trial: int) -> np.ndarray:
        """Second finite difference of the whole-body COM [T-2, 3]."""
        positions = self.com_positions(init, trial)
        dt = init.trial_timesteps[trial]
        return (positions[2:] - 2.0 * positions[1:-1] + positions[:-2]) / (dt * dt)

    def implied_com_forces(
        self,
        init: DynamicsInitialization,
        trial: int,
        include_gravity: bool = True,
    ) -> np.ndarray:
        """Total mass times COM acceleration (minus gravity) [T-2, 3]."""
        acc = self.com_accelerations(init, trial)
        if include_gravity:
            acc = acc - self.skeleton.gravity
        return float(np.sum(init.body_masses)) * acc

    def measured_grf_forces(self, init: DynamicsInitialization, trial: int) -> np.ndarray:
        """Sum of all plate forces per frame [T-2, 3]."""
        self._check_trial(init, trial)
        num_frames = max(0, init.pose_trials[trial].shape[1] - 2)
        forces = np.zeros((num_frames, 3))
        for plate in init.force_plate_trials[trial]:
            n = min(num_frames, plate.num_frames)
            forces[:n] += plate.forces[:n]
        return forces

    def compute_average_marker_rmse(self, init: DynamicsInitialization) -> float:
        """Mean distance between observed and modeled markers over all frames."""
        names = sorted(init.updated_marker_map)
        markers = [init.updated_marker_map[name] for name in names]
        index = {name: i for i, name in enumerate(names)}
        total = 0.0
        count = 0
        with self._init_parameters(init):
            for trial in range(init.num_trials):
                poses = init.pose_trials[trial]
                frames = init.marker_observation_trials[trial]
                for t in range(min(poses.shape[1], len(frames))):
                    observed = [(index[n], p) for n, p in frames[t].items() if n in index]
                    if not observed:
                        continue
                    model = self.skeleton.get_marker_world_positions(markers, poses[:, t])
                    for i, target in observed:
                        total += float(np.linalg.norm(model[3 * i:3 * i + 3] - target))
                        count += 1
        return total / count if count > 0 else 0.0

    def _frame_residual(self, helper: ResidualForceHelper, init: DynamicsInitialization, trial: int, t: int):
        poses = init.pose_trials[trial]
        dt = init.trial_timesteps[trial]
        q = poses[:, t]
        dq = (poses[:, t + 1] - poses[:, t]) / dt
        ddq = (poses[:, t + 2] - 2.0 * poses[:, t + 1] + poses[:, t]) / (dt * dt)
        return helper.calculate_residual(q, dq, ddq, init.grf_trials[trial][:, t])

    def compute_average_residual_force(self, init: DynamicsInitialization) -> Tuple[float, float]:
        """
        Mean residual root force and torque norms over frames with usable GRF.

        Returns:
            (force, torque)
        """
        helper = ResidualForceHelper(self.skeleton, init.grf_body_indices, verbose=False)
        force_total = 0.0
        torque_total = 0.0
        count = 0
        with self._init_parameters(init):
            for trial in range(init.num_trials):
                for t in range(init.pose_trials[trial].shape[1] - 2):
                    if self._is_missing(init, trial, t):
                        continue
                    residual = self._frame_residual(helper, init, trial, t)
                    torque_total += float(np.linalg.norm(residual[:3]))
                    force_total += float(np.linalg.norm(residual[3:]))
                    count += 1
        if count == 0:
            return 0.0, 0.0
        return force_total / count, torque_total / count

    def compute_average_real_force(self, init: DynamicsInitialization) -> Tuple[float, float]:
        """
        Mean measured plate force and moment norms.

        Returns:
            (force, moment)
        """
        force_total = 0.0
        moment_total = 0.0
        count = 0
        for plates in init.force_plate_trials:
            for plate in plates:
                force_total += float(np.sum(np.linalg.norm(plate.forces, axis=1)))
                moment_total += float(np.sum(np.linalg.norm(plate.moments, axis=1)))
                count += plate.num_frames
        if count == 0:
            return 0.0, 0.0
        return force_total / count, moment_total / count

    def summarize_trial(self, init: DynamicsInitialization, trial: int) -> TrialDynamicsSummary:
        """Per-frame dynamics of one trial."""
        self._check_trial(init, trial)
        num_frames = init.pose_trials[trial].shape[1]
        helper = ResidualForceHelper(self.skeleton, init.grf_body_indices, verbose=False)
        residual_forces = np.full(max(0, num_frames - 2), np.nan)
        residual_torques = np.full(max(0, num_frames - 2), np.nan)
        with self._init_parameters(init):
            for t in range(num_frames - 2):
                if self._is_missing(init, trial, t):
                    continue
                residual = self._frame_residual(helper, init, trial, t)
                residual_torques[t] = np.linalg.norm(residual[:3])
                residual_forces[t] = np.linalg.norm(residual[3:])

        missing = [self._is_missing(init, trial, t) for t in range(num_frames)]
        return TrialDynamicsSummary(
            trial=trial,
            time=np.arange(num_frames) * init.trial_timesteps[trial],
            com_positions=self.com_positions(init, trial),
            com_accelerations=self.com_accelerations(init, trial),
            implied_forces=self.implied_com_forces(init, trial),
            measured_forces=self.measured_grf_forces(init, trial),
            residual_forces=residual_forces,
            residual_torques=residual_torques,
            probably_missing_grf=missing,
        )

    def save_dynamics_plot(self, init: DynamicsInitialization, trial: int, save_path: Union[str, Path]):
        """Render summarize_trial() to an image."""
        plot_trial_dynamics(self.summarize_trial(init, trial), save_path)

    def report(self, init: DynamicsInitialization) -> Dict[str, float]:
        """Headline diagnostics."""
        residual_force, residual_torque = self.compute_average_residual_force(init)
        real_force, real_moment = self.compute_average_real_force(init)
        return {
            'marker_rmse': self.compute_average_marker_rmse(init),
            'residual_force': residual_force,
            'residual_torque': residual_torque,
            'real_force': real_force,
            'real_moment': real_moment,
            'total_mass': float(np.sum(init.body_masses)),
        }
