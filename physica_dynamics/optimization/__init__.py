"""Residual forces, the dynamics NLP and its solver."""

from .layout import ProblemLayout
from .problem import DynamicsFitProblem
from .residual import ResidualForceHelper
from .solver import InteriorPointSolver, SolveResult

__all__ = [
    "ProblemLayout",
    "DynamicsFitProblem",
    "ResidualForceHelper",
    "InteriorPointSolver",
    "SolveResult",
]
