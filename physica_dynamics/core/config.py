"""
Configuration and constants for the dynamics fitting pipeline.
"""

import dataclasses
from dataclasses import dataclass, field

import numpy as np


# =============================================================================
# Physical Constants
# =============================================================================

GRAVITY = np.array([0.0, -9.81, 0.0])
GRAVITY_MAGNITUDE = 9.81

# Hard floor applied after the least-squares link mass estimate (kg)
MIN_LINK_MASS = 0.01

# Squared wrench norm above which a contact body counts as loaded
FORCE_ACTIVE_THRESHOLD = 1e-3

# Margin around observed COPs for the synthesized force plate (m)
DEFAULT_PLATE_PADDING = 0.10

# Iterates with a larger primal infeasibility are never kept as "best"
BEST_ITERATE_MAX_INFEASIBILITY = 1.0


# =============================================================================
# Problem Configuration
# =============================================================================

@dataclass(frozen=True)
class DynamicsFitConfig:
    """Which quantities are decision variables, and how the loss is weighted."""
    # Inclusion flags
    include_masses: bool = True
    include_coms: bool = True
    include_inertias: bool = True
    include_body_scales: bool = True
    include_poses: bool = True
    include_marker_offsets: bool = True

    # Loss weights
    residual_weight: float = 0.1
    marker_weight: float = 1.0
    joint_weight: float = 1.0
    residual_use_l1: bool = False
    marker_use_l1: bool = False

    # Regularization toward the initial values
    regularize_masses: float = 1.0
    regularize_coms: float = 1.0
    regularize_inertias: float = 1.0
    regularize_body_scales: float = 0.2
    regularize_poses: float = 0.0
    regularize_tracking_marker_offsets: float = 0.05
    regularize_anatomical_marker_offsets: float = 10.0

    # Box bound on every marker offset coordinate (m)
    marker_offset_bound: float = 5.0

    def replace(self, **changes) -> "DynamicsFitConfig":
        """Return a copy with some fields changed."""
        return dataclasses.replace(self, **changes)

    @classmethod
    def only(cls, *names: str, **changes) -> "DynamicsFitConfig":
        """Config with every inclusion flag off except the named ones.

        Example: ``DynamicsFitConfig.only('masses', residual_weight=1.0)``.
        """
        flags = {
            'include_masses': False,
            'include_coms': False,
            'include_inertias': False,
            'include_body_scales': False,
            'include_poses': False,
            'include_marker_offsets': False,
        }
        for name in names:
            key = f'include_{name}'
            if key not in flags:
                raise ValueError(f"Unknown variable group: {name}")
            flags[key] = True
        flags.update(changes)
        return cls(**flags)


# =============================================================================
# Solver Configuration
# =============================================================================

@dataclass
class SolverConfig:
    """Options for the interior-point solve."""
    tolerance: float = 1e-8
    iteration_limit: int = 500
    check_derivatives: bool = False
    print_frequency: int = 1
    silence_output: bool = False
    initial_trust_radius: float = 1.0


# =============================================================================
# Pipeline Configuration
# =============================================================================

@dataclass
class FitterConfig:
    """Main dynamics fitter configuration."""
    problem: DynamicsFitConfig = field(default_factory=DynamicsFitConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    smoothing_weight: float = 0.05
    smoothing_regularization: float = 1.0
    mass_regularization_weight: float = 50.0
    verbose: bool = True

    @classmethod
    def default(cls) -> "FitterConfig":
        """Create default configuration."""
        return cls()

    @classmethod
    def fast(cls) -> "FitterConfig":
        """Looser tolerances for quick iterations."""
        return cls(
            solver=SolverConfig(tolerance=1e-5, iteration_limit=100, print_frequency=10),
        )

    @classmethod
    def quiet(cls) -> "FitterConfig":
        """Default settings with all console output disabled."""
        return cls(solver=SolverConfig(silence_output=True), verbose=False)


DEFAULT_CONFIG = FitterConfig()
