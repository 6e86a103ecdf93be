"""
Shared fixtures: small synthetic subjects and quiet configurations.
"""

import numpy as np
import pytest

from physica_dynamics.core.config import DynamicsFitConfig, FitterConfig, SolverConfig
from physica_dynamics.data.synthetic import pendulum_trial, sliding_foot_trial
from physica_dynamics.fitter import DynamicsFitter


def quiet_config(**problem_changes) -> FitterConfig:
    """Fitter config with no smoothing and no console output."""
    return FitterConfig(
        problem=DynamicsFitConfig(**problem_changes),
        solver=SolverConfig(silence_output=True, tolerance=1e-10, iteration_limit=1000),
        smoothing_weight=0.0,
        verbose=False,
    )


def make_fitter(subject, config: FitterConfig = None) -> DynamicsFitter:
    return DynamicsFitter(
        subject.skeleton,
        subject.foot_nodes,
        subject.marker_map,
        subject.tracking_markers,
        config=config if config is not None else quiet_config(),
    )


def make_init(fitter: DynamicsFitter, subject, annotate: bool = True):
    init = fitter.create_initialization(
        subject.force_plate_trials,
        subject.pose_trials,
        subject.frames_per_second,
        subject.marker_observation_trials,
    )
    if annotate:
        fitter.estimate_foot_ground_contacts(init)
    return init


@pytest.fixture
def pendulum():
    """Pendulum with the true masses."""
    return pendulum_trial()


@pytest.fixture
def wrong_mass_pendulum():
    """Pendulum whose bob mass starts 25% low."""
    return pendulum_trial(initial_bob_mass=1.5)


@pytest.fixture
def short_pendulum():
    """Four-frame pendulum, small enough for finite-difference gradients over poses."""
    return pendulum_trial(num_frames=4, initial_bob_mass=1.5)


@pytest.fixture
def sliding():
    return sliding_foot_trial()


@pytest.fixture
def rng():
    return np.random.default_rng(0)
