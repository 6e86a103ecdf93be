"""
physica_dynamics: Rigid-Body Dynamics Fitting for Motion Capture

Fits link masses, centers of mass, inertias, body scales, marker offsets and
joint trajectories so that recorded motion is explained by the measured
ground reaction forces, with minimal residual root forces.
"""

__version__ = "0.1.0"

from .core.config import DynamicsFitConfig, FitterConfig, SolverConfig
from .core.exceptions import DynamicsFitError, MissingContactAnnotationError, SolverError
from .core.skeleton import JointType, Skeleton, WithRespectTo
from .data.force_plate import ForcePlate
from .data.initialization import DynamicsInitialization, KinematicFitResult
from .fitter import DynamicsFitter, TrialDynamicsSummary
from .optimization.problem import DynamicsFitProblem
from .optimization.residual import ResidualForceHelper
from .optimization.solver import InteriorPointSolver, SolveResult

__all__ = [
    "DynamicsFitter",
    "TrialDynamicsSummary",
    "DynamicsFitProblem",
    "ResidualForceHelper",
    "InteriorPointSolver",
    "SolveResult",
    "DynamicsInitialization",
    "KinematicFitResult",
    "ForcePlate",
    "Skeleton",
    "JointType",
    "WithRespectTo",
    "DynamicsFitConfig",
    "FitterConfig",
    "SolverConfig",
    "DynamicsFitError",
    "MissingContactAnnotationError",
    "SolverError",
]
