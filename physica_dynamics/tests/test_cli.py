"""
Tests for the command-line entry point.
"""

import json

import numpy as np
import pytest

from physica_dynamics.cli.main import build_config, main, parse_args


class TestArgs:
    """Tests for argument handling."""

    def test_overrides_reach_config(self):
        args = parse_args(['--out_dir', 'out', '--preset', 'fast', '--iters', '7',
                           '--smoothing_weight', '0', '--residual_l1', '--quiet'])
        config = build_config(args)
        assert config.solver.iteration_limit == 7
        assert config.solver.silence_output
        assert config.smoothing_weight == 0.0
        assert config.problem.residual_use_l1
        assert not config.verbose

    def test_out_dir_required(self):
        with pytest.raises(SystemExit):
            parse_args([])


class TestMain:
    """End-to-end runs on the built-in subjects."""

    def test_pendulum_run_writes_results(self, tmp_path):
        code = main(['--out_dir', str(tmp_path), '--num_frames', '8', '--iters', '30',
                     '--smoothing_weight', '0', '--quiet'])
        assert code == 0

        params = np.load(tmp_path / 'body_params.npz')
        assert params['masses'].shape == (2,)
        assert params['group_scales'].shape == (6,)
        poses = np.load(tmp_path / 'poses.npz')
        assert poses['trial_0'].shape == (7, 8)

        with open(tmp_path / 'metadata.json') as f:
            metadata = json.load(f)
        assert metadata['bodies'] == ['base', 'bob']
        assert metadata['num_frames'] == 8
        assert metadata['missing_grf_frames'] == 0
        assert set(metadata['metrics']) >= {'marker_rmse', 'residual_force', 'total_mass'}


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
