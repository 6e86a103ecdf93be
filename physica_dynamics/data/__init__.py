"""Input data: force plates, the initialization bundle and synthetic subjects."""

from .force_plate import ForcePlate
from .initialization import DynamicsInitialization, KinematicFitResult

__all__ = [
    "ForcePlate",
    "DynamicsInitialization",
    "KinematicFitResult",
]
