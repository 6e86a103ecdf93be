"""Core modules: configuration, errors and the articulated body model."""

from .config import DynamicsFitConfig, FitterConfig, SolverConfig
from .skeleton import JointType, Skeleton, WithRespectTo

__all__ = [
    "DynamicsFitConfig",
    "FitterConfig",
    "SolverConfig",
    "JointType",
    "Skeleton",
    "WithRespectTo",
]
