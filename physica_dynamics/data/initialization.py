"""
State bundle passed between the stages of a dynamics fit.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import numpy as np

from .force_plate import ForcePlate


# marker name -> (body index, offset in the body frame)
MarkerMap = Dict[str, Tuple[int, np.ndarray]]

# per-frame marker name -> observed world position
MarkerObservations = List[Dict[str, np.ndarray]]


@dataclass
class DynamicsInitialization:
    """
    Everything the fitter knows about one subject across all trials.

    Created once per fitting run by DynamicsFitter.create_initialization(),
    then mutated in place by each pipeline stage. The ``original_*`` fields
    are regularization targets and are never overwritten.

    Per-trial matrices have one column per frame: pose trials are
    [dofs, T], GRF trials are [6 * num_grf_bodies, T], joint centers are
    [3 * J, T] and joint axes [6 * J, T] (center then direction).
    """
    # Trajectories
    pose_trials: List[np.ndarray] = field(default_factory=list)
    original_pose_trials: List[np.ndarray] = field(default_factory=list)
    original_poses: List[np.ndarray] = field(default_factory=list)
    trial_timesteps: List[float] = field(default_factory=list)

    # Forces
    force_plate_trials: List[List[ForcePlate]] = field(default_factory=list)
    grf_trials: List[np.ndarray] = field(default_factory=list)
    grf_body_indices: List[int] = field(default_factory=list)

    # Markers
    marker_observation_trials: List[MarkerObservations] = field(default_factory=list)
    tracking_markers: List[str] = field(default_factory=list)
    updated_marker_map: MarkerMap = field(default_factory=dict)
    marker_offsets: Dict[str, np.ndarray] = field(default_factory=dict)
    original_marker_offsets: Dict[str, np.ndarray] = field(default_factory=dict)

    # Inertial parameters (per body) and scales (per group)
    body_masses: np.ndarray = field(default_factory=lambda: np.zeros(0))
    body_coms: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    body_inertias: np.ndarray = field(default_factory=lambda: np.zeros((0, 6)))
    group_scales: np.ndarray = field(default_factory=lambda: np.zeros(0))
    original_group_masses: np.ndarray = field(default_factory=lambda: np.zeros(0))
    original_group_coms: np.ndarray = field(default_factory=lambda: np.zeros(0))
    original_group_inertias: np.ndarray = field(default_factory=lambda: np.zeros(0))
    original_group_scales: np.ndarray = field(default_factory=lambda: np.zeros(0))

    # Contact annotations, filled by estimate_foot_ground_contacts()
    contact_bodies: List[List[int]] = field(default_factory=list)
    ground_height: List[float] = field(default_factory=list)
    flat_ground: List[bool] = field(default_factory=list)
    default_force_plate_corners: List[List[np.ndarray]] = field(default_factory=list)
    grf_body_contact_sphere_radius: List[List[List[float]]] = field(default_factory=list)
    grf_body_force_active: List[List[List[bool]]] = field(default_factory=list)
    grf_body_sphere_in_contact: List[List[List[bool]]] = field(default_factory=list)
    grf_body_off_force_plate: List[List[List[bool]]] = field(default_factory=list)
    probably_missing_grf: List[List[bool]] = field(default_factory=list)

    # Functional joint-center tracking targets
    joints: List[int] = field(default_factory=list)
    joint_centers: List[np.ndarray] = field(default_factory=list)
    joint_axis: List[np.ndarray] = field(default_factory=list)
    joint_weights: np.ndarray = field(default_factory=lambda: np.zeros(0))
    axis_weights: np.ndarray = field(default_factory=lambda: np.zeros(0))

    @property
    def num_trials(self) -> int:
        return len(self.pose_trials)

    @property
    def total_timesteps(self) -> int:
        return sum(p.shape[1] for p in self.pose_trials)

    def has_contact_annotations(self) -> bool:
        """Whether every trial has per-frame missing-GRF flags."""
        return len(self.probably_missing_grf) >= len(self.pose_trials)

    def num_missing_grf_frames(self) -> int:
        return sum(sum(flags) for flags in self.probably_missing_grf)


@dataclass
class KinematicFitResult:
    """
    Output of a kinematic (marker) fit covering several trials.

    ``poses`` concatenates every trial's frames along the columns; the
    dynamics initialization splits it back using the per-trial frame counts.
    """
    poses: np.ndarray
    updated_marker_map: MarkerMap
    group_scales: np.ndarray
    joints: List[int] = field(default_factory=list)
    joint_centers: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))
    joint_axis: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))
    joint_weights: np.ndarray = field(default_factory=lambda: np.zeros(0))
    axis_weights: np.ndarray = field(default_factory=lambda: np.zeros(0))
