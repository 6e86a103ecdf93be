#!/usr/bin/env python3
"""
Command-line interface for the dynamics fitter.

Runs the staged fit on a built-in synthetic subject and writes the fitted
parameters, trajectories and diagnostics to an output directory.

Usage:
    python -m physica_dynamics.cli.main --scenario pendulum --out_dir <path>
"""

import argparse
import json
import sys
from pathlib import Path

import numpy as np

from ..core.config import DynamicsFitConfig, FitterConfig, SolverConfig
from ..core.exceptions import DynamicsFitError
from ..data.initialization import DynamicsInitialization
from ..data.synthetic import pendulum_trial, sliding_foot_trial
from ..fitter import DynamicsFitter


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='Physica Dynamics - fit masses and motion to force plate data',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        '--scenario',
        choices=['pendulum', 'sliding'],
        default='pendulum',
        help='Synthetic subject to fit'
    )
    parser.add_argument('--out_dir', required=True, help='Output directory for results')

    # Scenario options
    parser.add_argument('--num_frames', type=int, default=10, help='Number of frames')
    parser.add_argument('--fps', type=float, default=100.0, help='Frames per second')
    parser.add_argument('--initial_bob_mass', type=float, default=1.5,
                        help='Starting guess for the pendulum bob mass (kg)')

    # Configuration presets
    parser.add_argument(
        '--preset',
        choices=['default', 'fast'],
        default='default',
        help='Configuration preset'
    )

    # Optimization hyperparameters
    parser.add_argument('--iters', type=int, help='Solver iteration limit')
    parser.add_argument('--tolerance', type=float, help='Solver tolerance')
    parser.add_argument('--smoothing_weight', type=float, help='Acceleration smoothing weight (0 disables)')
    parser.add_argument('--residual_weight', type=float, default=1.0, help='Residual force weight')
    parser.add_argument('--marker_weight', type=float, default=1.0, help='Marker error weight')
    parser.add_argument('--residual_l1', action='store_true', help='Use the L1 residual norm')
    parser.add_argument('--check_derivatives', action='store_true', help='Compare gradients with finite differences')
    parser.add_argument('--full', action='store_true',
                        help='Finish with a pass over every variable group, including poses')

    # Other options
    parser.add_argument('--plot', action='store_true', help='Save a dynamics plot per trial')
    parser.add_argument('--quiet', action='store_true', help='Suppress output')

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> FitterConfig:
    if args.preset == 'fast':
        config = FitterConfig.fast()
    else:
        config = FitterConfig.default()

    solver = config.solver
    if args.iters is not None:
        solver.iteration_limit = args.iters
    if args.tolerance is not None:
        solver.tolerance = args.tolerance
    solver.check_derivatives = args.check_derivatives
    solver.silence_output = args.quiet

    if args.smoothing_weight is not None:
        config.smoothing_weight = args.smoothing_weight
    config.problem = DynamicsFitConfig(residual_use_l1=args.residual_l1)
    config.verbose = not args.quiet
    return config


def save_result(fitter: DynamicsFitter, init: DynamicsInitialization, output_dir: str, plot: bool = False):
    """Write fitted parameters, trajectories and diagnostics to output_dir."""
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    np.savez(
        output_path / 'body_params.npz',
        masses=init.body_masses,
        coms=init.body_coms,
        inertias=init.body_inertias,
        group_scales=init.group_scales,
    )
    np.savez(output_path / 'poses.npz', **{f'trial_{k}': p for k, p in enumerate(init.pose_trials)})

    metadata = {
        'metrics': fitter.report(init),
        'bodies': fitter.skeleton.body_names,
        'num_trials': init.num_trials,
        'num_frames': init.total_timesteps,
        'missing_grf_frames': init.num_missing_grf_frames(),
        'marker_offsets': {name: offset.tolist() for name, offset in init.marker_offsets.items()},
    }
    with open(output_path / 'metadata.json', 'w') as f:
        json.dump(metadata, f, indent=2)

    if plot:
        for trial in range(init.num_trials):
            fitter.save_dynamics_plot(init, trial, output_path / f'dynamics_trial_{trial}.png')


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    config = build_config(args)

    if args.scenario == 'pendulum':
        subject = pendulum_trial(args.num_frames, args.fps, initial_bob_mass=args.initial_bob_mass)
    else:
        subject = sliding_foot_trial(max(args.num_frames, 10), args.fps)

    fitter = DynamicsFitter(
        subject.skeleton,
        subject.foot_nodes,
        subject.marker_map,
        subject.tracking_markers,
        config=config,
    )

    try:
        init = fitter.create_initialization(
            subject.force_plate_trials,
            subject.pose_trials,
            subject.frames_per_second,
            subject.marker_observation_trials,
        )
        fitter.estimate_foot_ground_contacts(init)
        fitter.scale_link_masses_from_gravity(init)

        # Stage 1: inertial parameters only
        fitter.run_optimization(
            init,
            residual_weight=args.residual_weight,
            marker_weight=args.marker_weight,
            include_masses=True,
            include_coms=True,
            include_inertias=True,
            include_body_scales=False,
            include_poses=False,
            include_marker_offsets=False,
        )

        # Stage 2: everything
        if args.full:
            fitter.run_optimization(init, residual_weight=args.residual_weight, marker_weight=args.marker_weight)

        save_result(fitter, init, args.out_dir, plot=args.plot)

        if not args.quiet:
            metrics = fitter.report(init)
            print("\nSummary:")
            print(f"  Total mass:      {metrics['total_mass']:.3f} kg")
            print(f"  Marker RMSE:     {metrics['marker_rmse'] * 1000:.2f} mm")
            print(f"  Residual force:  {metrics['residual_force']:.4f} N")
            print(f"  Residual torque: {metrics['residual_torque']:.4f} N m")
            print(f"  Output: {args.out_dir}")

        return 0

    except DynamicsFitError as e:
        print(f"Error: {e}", file=sys.stderr)
        if config.verbose:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
