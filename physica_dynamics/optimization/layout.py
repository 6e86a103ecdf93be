"""
Layout of the flat decision vector.

The vector is an ordered list of named blocks, computed once from the
problem configuration:

    [masses][coms][inertias][scales][marker_offsets][trial_0][trial_1]...

A trial block with T frames (A = T - 2 acceleration frames) stores
(q_t, dq_t, ddq_t) for t < A, followed by q_A, dq_A and q_{A+1}.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..core.config import DynamicsFitConfig


@dataclass(frozen=True)
class Block:
    """A contiguous named range of the decision vector."""
    name: str
    offset: int
    length: int

    @property
    def slice(self) -> slice:
        return slice(self.offset, self.offset + self.length)

    @property
    def end(self) -> int:
        return self.offset + self.length


class ProblemLayout:
    """
    Named (offset, length) blocks of the decision vector.

    Args:
        config: Inclusion flags.
        num_groups: Number of scale groups.
        group_scale_dim: Length of the group scale vector.
        num_markers: Number of markers with offsets.
        num_dofs: Skeleton degrees of freedom.
        trial_lengths: Frames per trial.
    """

    def __init__(
        self,
        config: DynamicsFitConfig,
        num_groups: int,
        group_scale_dim: int,
        num_markers: int,
        num_dofs: int,
        trial_lengths: Sequence[int],
    ):
        self.num_dofs = num_dofs
        self.trial_lengths = list(trial_lengths)
        for k, length in enumerate(self.trial_lengths):
            if length < 3:
                raise ValueError(f"Trial {k} has {length} frames, at least 3 are required")

        self.blocks: List[Block] = []
        self._by_name: Dict[str, Block] = {}
        cursor = 0

        def add(name: str, length: int):
            nonlocal cursor
            block = Block(name, cursor, length)
            self.blocks.append(block)
            self._by_name[name] = block
            cursor += length

        if config.include_masses:
            add('masses', num_groups)
        if config.include_coms:
            add('coms', 3 * num_groups)
        if config.include_inertias:
            add('inertias', 6 * num_groups)
        if config.include_body_scales:
            add('scales', group_scale_dim)
        if config.include_marker_offsets:
            add('marker_offsets', 3 * num_markers)
        if config.include_poses:
            for k, length in enumerate(self.trial_lengths):
                add(f'trial_{k}', 3 * num_dofs * (length - 2) + 3 * num_dofs)

        self.size = cursor

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def get(self, name: str) -> Optional[Block]:
        return self._by_name.get(name)

    def __getitem__(self, name: str) -> Block:
        return self._by_name[name]

    @property
    def includes_poses(self) -> bool:
        return 'trial_0' in self._by_name

    def num_acc_timesteps(self, trial: int) -> int:
        return self.trial_lengths[trial] - 2

    def marker(self, index: int) -> slice:
        start = self._by_name['marker_offsets'].offset + 3 * index
        return slice(start, start + 3)

    def pos_offset(self, trial: int, t: int) -> int:
        base = self._by_name[f'trial_{trial}'].offset
        n = self.num_dofs
        last = self.num_acc_timesteps(trial)
        if t <= last:
            return base + 3 * n * t
        if t == last + 1:
            return base + 3 * n * last + 2 * n
        raise IndexError(f"Frame {t} out of range for trial {trial}")

    def vel_offset(self, trial: int, t: int) -> int:
        if t > self.num_acc_timesteps(trial):
            raise IndexError(f"No velocity variable for frame {t} of trial {trial}")
        return self._by_name[f'trial_{trial}'].offset + 3 * self.num_dofs * t + self.num_dofs

    def acc_offset(self, trial: int, t: int) -> int:
        if t >= self.num_acc_timesteps(trial):
            raise IndexError(f"No acceleration variable for frame {t} of trial {trial}")
        return self._by_name[f'trial_{trial}'].offset + 3 * self.num_dofs * t + 2 * self.num_dofs

    def pos(self, trial: int, t: int) -> slice:
        start = self.pos_offset(trial, t)
        return slice(start, start + self.num_dofs)

    def vel(self, trial: int, t: int) -> slice:
        start = self.vel_offset(trial, t)
        return slice(start, start + self.num_dofs)

    def acc(self, trial: int, t: int) -> slice:
        start = self.acc_offset(trial, t)
        return slice(start, start + self.num_dofs)

    def describe(self) -> str:
        return ', '.join(f'{b.name}[{b.offset}:{b.end}]' for b in self.blocks)
