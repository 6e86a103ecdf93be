"""
Plots of per-trial dynamics summaries.
"""

from pathlib import Path
from typing import Union

import numpy as np
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt


def _shade_missing(ax, time: np.ndarray, missing: np.ndarray):
    """Grey out frames flagged as probably missing GRF."""
    for t in np.flatnonzero(missing):
        if t + 1 < len(time):
            ax.axvspan(time[t], time[t + 1], color='grey', alpha=0.2, linewidth=0)


def plot_trial_dynamics(summary, save_path: Union[str, Path, None] = None):
    """
    Measured vs. implied forces, residuals and contact flags for one trial.

    Args:
        summary: TrialDynamicsSummary from DynamicsFitter.summarize_trial().
        save_path: PNG path. Shows the figure when None.
    """
    time = summary.time
    acc_time = time[:len(summary.implied_forces)]
    missing = np.asarray(summary.probably_missing_grf[:len(acc_time)], dtype=bool)

    fig, axes = plt.subplots(3, 1, figsize=(12, 10), sharex=True)

    ax = axes[0]
    for axis, color in zip(range(3), ['tab:red', 'tab:green', 'tab:blue']):
        label = 'xyz'[axis]
        ax.plot(acc_time, summary.measured_forces[:, axis], color=color, label=f'GRF {label}')
        ax.plot(acc_time, summary.implied_forces[:, axis], color=color, linestyle='--',
                label=f'm(a - g) {label}')
    _shade_missing(ax, time, missing)
    ax.set_ylabel('Force (N)', fontsize=12)
    ax.set_title(f'Trial {summary.trial}: measured vs. implied COM force', fontsize=14, fontweight='bold')
    ax.legend(ncol=3, fontsize=9)
    ax.grid(True, alpha=0.3)

    ax = axes[1]
    ax.plot(acc_time, summary.residual_forces, color='tab:purple', label='|residual force|')
    ax.plot(acc_time, summary.residual_torques, color='tab:orange', label='|residual torque|')
    _shade_missing(ax, time, missing)
    ax.set_ylabel('Residual (N, N m)', fontsize=12)
    ax.legend()
    ax.grid(True, alpha=0.3)

    ax = axes[2]
    ax.plot(time, summary.com_positions[:, 0], label='COM x')
    ax.plot(time, summary.com_positions[:, 1], label='COM y')
    ax.plot(time, summary.com_positions[:, 2], label='COM z')
    _shade_missing(ax, time, missing)
    ax.set_xlabel('Time (s)', fontsize=12)
    ax.set_ylabel('Position (m)', fontsize=12)
    ax.legend()
    ax.grid(True, alpha=0.3)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"Saved dynamics plot to: {save_path}")
    else:
        plt.show()

    plt.close(fig)
