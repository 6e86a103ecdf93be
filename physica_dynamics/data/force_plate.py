"""
Force plate recordings.
"""

from dataclasses import dataclass, field
from typing import List

import numpy as np

from ..utils.geometry import transform_wrench_to_world


@dataclass
class ForcePlate:
    """
    One instrumented plate over a trial.

    Attributes:
        forces: Ground reaction force per frame [T, 3] (N).
        moments: Moment about the center of pressure per frame [T, 3] (N m).
        centers_of_pressure: COP per frame in world coordinates [T, 3] (m).
        corners: Optional footprint corners in world coordinates. Empty when
            the plate geometry was not recorded.
    """
    forces: np.ndarray
    moments: np.ndarray
    centers_of_pressure: np.ndarray
    corners: List[np.ndarray] = field(default_factory=list)

    def __post_init__(self):
        self.forces = np.asarray(self.forces, dtype=np.float64).reshape(-1, 3)
        self.moments = np.asarray(self.moments, dtype=np.float64).reshape(-1, 3)
        self.centers_of_pressure = np.asarray(self.centers_of_pressure, dtype=np.float64).reshape(-1, 3)
        self.corners = [np.asarray(c, dtype=np.float64) for c in self.corners]
        if not (len(self.forces) == len(self.moments) == len(self.centers_of_pressure)):
            raise ValueError(
                f"Force plate series lengths differ: forces={len(self.forces)}, "
                f"moments={len(self.moments)}, cops={len(self.centers_of_pressure)}"
            )

    @property
    def num_frames(self) -> int:
        return len(self.forces)

    def world_wrench(self, t: int) -> np.ndarray:
        """Wrench [6] at frame t moved to the world origin."""
        return transform_wrench_to_world(self.moments[t], self.forces[t], self.centers_of_pressure[t])
