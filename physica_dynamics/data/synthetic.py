"""
Synthetic subjects with known parameters, for demos and regression tests.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Sequence

import numpy as np

from ..core.skeleton import JointType, Skeleton
from .force_plate import ForcePlate
from .initialization import MarkerMap, MarkerObservations


@dataclass
class SyntheticTrial:
    """Everything needed to build a DynamicsInitialization for one subject."""
    skeleton: Skeleton
    foot_nodes: List[int]
    marker_map: MarkerMap
    tracking_markers: List[str]
    pose_trials: List[np.ndarray]
    force_plate_trials: List[List[ForcePlate]]
    marker_observation_trials: List[MarkerObservations]
    frames_per_second: float
    true_masses: np.ndarray = field(default_factory=lambda: np.zeros(0))


def build_pendulum(base_mass: float = 5.0, bob_mass: float = 2.0) -> Skeleton:
    """Free base body with a pendulum bob hinged about z."""
    skel = Skeleton('pendulum')
    base = skel.add_body('base', joint_type=JointType.FREE, mass=base_mass,
                         inertia=(0.05, 0.05, 0.05, 0.0, 0.0, 0.0))
    skel.add_body('bob', parent=base, joint_type=JointType.REVOLUTE,
                  offset=(0.0, -0.1, 0.0), axis=(0.0, 0.0, 1.0),
                  mass=bob_mass, com=(0.0, -0.5, 0.0),
                  inertia=(0.02, 0.002, 0.02, 0.0, 0.0, 0.0))
    return skel


def pendulum_poses(
    num_frames: int = 10,
    frames_per_second: float = 100.0,
    amplitude: float = 0.6,
    frequency: float = 0.8,
    base_position: Sequence[float] = (0.0, 1.0, 0.0),
) -> np.ndarray:
    """Base held still at base_position, bob swinging sinusoidally. [7, T]"""
    time = np.arange(num_frames) / frames_per_second
    poses = np.zeros((7, num_frames))
    poses[3:6] = np.asarray(base_position, dtype=np.float64)[:, None]
    poses[6] = amplitude * np.sin(2.0 * np.pi * frequency * time)
    return poses


def exact_contact_wrenches(
    skeleton: Skeleton,
    poses: np.ndarray,
    dt: float,
    foot_nodes: Sequence[int],
) -> np.ndarray:
    """
    World wrenches on the foot bodies that zero the root residual.

    Velocities and accelerations are the same forward differences the
    dynamics fit uses. The last two frames reuse the last computable frame.

    Returns:
        [6 * len(foot_nodes), T]
    """
    # Imported here: optimization depends on data
    from ..optimization.residual import ResidualForceHelper

    helper = ResidualForceHelper(skeleton, foot_nodes, verbose=False)
    num_frames = poses.shape[1]
    dim = 6 * len(foot_nodes)
    wrenches = np.zeros((dim, num_frames))
    for t in range(num_frames):
        k = min(t, num_frames - 3)
        q = poses[:, k]
        dq = (poses[:, k + 1] - poses[:, k]) / dt
        ddq = (poses[:, k + 2] - 2.0 * poses[:, k + 1] + poses[:, k]) / (dt * dt)
        # Residual is affine in the wrench: r(w) = r(0) - A w
        base = helper.calculate_residual(q, dq, ddq, np.zeros(dim))
        A = np.stack([base - helper.calculate_residual(q, dq, ddq, e) for e in np.eye(dim)], axis=1)
        wrenches[:, t] = np.linalg.lstsq(A, base, rcond=None)[0]
    return wrenches


def plate_from_wrenches(wrenches: np.ndarray, corners: Sequence[np.ndarray] = ()) -> ForcePlate:
    """Force plate with its COP at the world origin carrying the given world wrenches [6, T]."""
    num_frames = wrenches.shape[1]
    return ForcePlate(
        forces=wrenches[3:6].T.copy(),
        moments=wrenches[0:3].T.copy(),
        centers_of_pressure=np.zeros((num_frames, 3)),
        corners=list(corners),
    )


def observe_markers(skeleton: Skeleton, marker_map: MarkerMap, poses: np.ndarray) -> MarkerObservations:
    names = sorted(marker_map)
    markers = [marker_map[name] for name in names]
    frames = []
    for t in range(poses.shape[1]):
        positions = skeleton.get_marker_world_positions(markers, poses[:, t])
        frames.append({name: positions[3 * i:3 * i + 3].copy() for i, name in enumerate(names)})
    return frames


def pendulum_trial(
    num_frames: int = 10,
    frames_per_second: float = 100.0,
    initial_bob_mass: float = 2.0,
) -> SyntheticTrial:
    """
    Pendulum whose base is held by a single force plate.

    The plate wrench is computed with the true masses (base 5 kg, bob 2 kg);
    the returned skeleton starts with initial_bob_mass for the bob.
    """
    truth = build_pendulum()
    poses = pendulum_poses(num_frames, frames_per_second)
    foot_nodes = [0]
    wrenches = exact_contact_wrenches(truth, poses, 1.0 / frames_per_second, foot_nodes)
    plate = plate_from_wrenches(wrenches)

    marker_map = {
        'BASE': (0, np.array([0.05, 0.0, 0.0])),
        'BOB_TIP': (1, np.array([0.0, -0.6, 0.0])),
        'BOB_SIDE': (1, np.array([0.03, -0.3, 0.0])),
    }
    return SyntheticTrial(
        skeleton=build_pendulum(bob_mass=initial_bob_mass),
        foot_nodes=foot_nodes,
        marker_map=marker_map,
        tracking_markers=['BOB_SIDE'],
        pose_trials=[poses],
        force_plate_trials=[[plate]],
        marker_observation_trials=[observe_markers(truth, marker_map, poses)],
        frames_per_second=frames_per_second,
        true_masses=truth.get_link_masses(),
    )


def build_walker() -> Skeleton:
    """Pelvis on a free joint with two one-dof legs, each ending in a foot."""
    skel = Skeleton('walker')
    pelvis = skel.add_body('pelvis', joint_type=JointType.FREE, mass=10.0, com=(0.0, 0.0, 0.0))
    for side, z in (('r', 0.1), ('l', -0.1)):
        leg = skel.add_body(f'leg_{side}', parent=pelvis, joint_type=JointType.REVOLUTE,
                            offset=(0.0, 0.0, z), axis=(0.0, 0.0, 1.0), mass=4.0, com=(0.0, -0.4, 0.0))
        skel.add_body(f'foot_{side}', parent=leg, joint_type=JointType.WELD,
                      offset=(0.0, -0.9, 0.0), mass=1.0, com=(0.05, -0.03, 0.0))
    return skel


def sliding_foot_trial(num_frames: int = 20, frames_per_second: float = 100.0) -> SyntheticTrial:
    """
    Walker standing on two plates, then sliding off one of them.

    Frames 0-4: both feet 3 cm above ground, each on its own loaded plate.
    From frame 5 the whole body drops to 1 cm and glides +x at 5 m/s. The
    right plate is long enough to keep carrying the right foot, while the
    left plate stops measuring force and the left foot crosses the edge of
    its footprint (x = 0.1) at frame 6, so frames 7 onward have unmeasured
    contact.
    """
    skel = build_walker()
    foot_r = skel.get_body_index('foot_r')
    foot_l = skel.get_body_index('foot_l')
    dt = 1.0 / frames_per_second

    sliding = np.arange(num_frames) >= 5
    poses = np.zeros((skel.num_dofs, num_frames))
    poses[3] = np.where(sliding, 5.0 * (np.arange(num_frames) - 4) * dt, 0.0)
    poses[4] = np.where(sliding, 0.91, 0.93)

    feet = np.stack([skel.get_body_world_positions(poses[:, t]) for t in range(num_frames)])
    weight = 20.0 * 9.81

    right_cops = feet[:, foot_r].copy()
    right_cops[:, 1] = 0.0
    right_forces = np.tile([0.0, weight / 2.0, 0.0], (num_frames, 1))
    right_forces[sliding, 1] = weight
    right_plate = ForcePlate(
        forces=right_forces,
        moments=np.zeros((num_frames, 3)),
        centers_of_pressure=right_cops,
        corners=[np.array([-1.0, 0.0, 0.02]), np.array([1.0, 0.0, 0.02]),
                 np.array([1.0, 0.0, 0.3]), np.array([-1.0, 0.0, 0.3])],
    )

    left_cops = np.tile(feet[0, foot_l], (num_frames, 1))
    left_cops[:, 1] = 0.0
    left_forces = np.tile([0.0, weight / 2.0, 0.0], (num_frames, 1))
    left_forces[sliding] = 0.0
    left_plate = ForcePlate(
        forces=left_forces,
        moments=np.zeros((num_frames, 3)),
        centers_of_pressure=left_cops,
        corners=[np.array([-0.1, 0.0, -0.3]), np.array([0.1, 0.0, -0.3]),
                 np.array([0.1, 0.0, -0.02]), np.array([-0.1, 0.0, -0.02])],
    )

    marker_map: Dict[str, tuple] = {
        'PELVIS': (0, np.array([0.0, 0.1, 0.0])),
        'RTOE': (foot_r, np.array([0.1, 0.0, 0.0])),
        'LTOE': (foot_l, np.array([0.1, 0.0, 0.0])),
    }
    return SyntheticTrial(
        skeleton=skel,
        foot_nodes=[foot_r, foot_l],
        marker_map=marker_map,
        tracking_markers=[],
        pose_trials=[poses],
        force_plate_trials=[[right_plate, left_plate]],
        marker_observation_trials=[observe_markers(skel, marker_map, poses)],
        frames_per_second=frames_per_second,
        true_masses=skel.get_link_masses(),
    )
