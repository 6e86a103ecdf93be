"""
Tests for the dynamics fitting pipeline.
"""

import numpy as np
import pytest

from physica_dynamics.core.config import MIN_LINK_MASS
from physica_dynamics.core.exceptions import DynamicsFitError, MissingContactAnnotationError
from physica_dynamics.data.force_plate import ForcePlate
from physica_dynamics.data.initialization import KinematicFitResult
from physica_dynamics.data.synthetic import pendulum_trial

from conftest import make_fitter, make_init, quiet_config


class TestCreateInitialization:
    """Tests for create_initialization()."""

    def test_plate_wrench_goes_to_nearest_foot(self, sliding):
        fitter = make_fitter(sliding)
        init = make_init(fitter, sliding, annotate=False)
        grf = init.grf_trials[0]
        assert grf.shape == (12, 20)
        # Right foot carries its plate throughout
        np.testing.assert_allclose(grf[4, 5:], 20.0 * 9.81)
        # Left foot is loaded only while standing
        np.testing.assert_allclose(grf[10, :5], 10.0 * 9.81)
        np.testing.assert_allclose(grf[6:, 5:], 0.0)

    def test_wrench_includes_cop_moment(self, sliding):
        fitter = make_fitter(sliding)
        init = make_init(fitter, sliding, annotate=False)
        plate = sliding.force_plate_trials[0][0]
        t = 10
        expected = np.cross(plate.centers_of_pressure[t], plate.forces[t])
        np.testing.assert_allclose(init.grf_trials[0][0:3, t], expected)

    def test_snapshot_of_model(self, pendulum):
        fitter = make_fitter(pendulum)
        init = make_init(fitter, pendulum, annotate=False)
        assert init.num_trials == 1
        assert init.trial_timesteps == [pytest.approx(0.01)]
        np.testing.assert_array_equal(init.body_masses, [5.0, 2.0])
        assert init.body_coms.shape == (2, 3)
        assert init.body_inertias.shape == (2, 6)
        np.testing.assert_array_equal(init.original_group_scales, np.ones(6))
        assert set(init.original_marker_offsets) == set(pendulum.marker_map)
        # No smoothing: trajectories are unchanged
        np.testing.assert_array_equal(init.pose_trials[0], pendulum.pose_trials[0])
        np.testing.assert_array_equal(init.original_poses[0], pendulum.pose_trials[0])

    def test_smoothing_changes_noisy_poses(self, pendulum, rng):
        config = quiet_config()
        config.smoothing_weight = 1.0
        fitter = make_fitter(pendulum, config)
        noisy = pendulum.pose_trials[0] + 0.01 * rng.normal(size=pendulum.pose_trials[0].shape)
        init = fitter.create_initialization(
            pendulum.force_plate_trials, [noisy], [100.0], pendulum.marker_observation_trials)
        assert not np.allclose(init.pose_trials[0], noisy)
        np.testing.assert_array_equal(init.original_pose_trials[0], noisy)
        np.testing.assert_array_equal(init.original_poses[0], init.pose_trials[0])

    def test_mismatched_trial_counts_rejected(self, pendulum):
        fitter = make_fitter(pendulum)
        with pytest.raises(ValueError):
            fitter.create_initialization([], pendulum.pose_trials, 100.0, pendulum.marker_observation_trials)

    def test_from_kinematics_splits_trials(self, pendulum):
        fitter = make_fitter(pendulum)
        poses = pendulum.pose_trials[0]
        scales = np.full(6, 1.1)
        marker_map = {name: (body, offset * 1.5) for name, (body, offset) in pendulum.marker_map.items()}
        fit = KinematicFitResult(
            poses=np.concatenate([poses, poses[:, :6]], axis=1),
            updated_marker_map=marker_map,
            group_scales=scales,
            joints=[1],
            joint_centers=np.zeros((3, 16)),
            joint_axis=np.zeros((6, 16)),
            joint_weights=np.ones(1),
            axis_weights=np.ones(1),
        )
        plate = pendulum.force_plate_trials[0][0]
        short_plate = ForcePlate(plate.forces[:6], plate.moments[:6], plate.centers_of_pressure[:6])
        observations = pendulum.marker_observation_trials[0]

        init = fitter.create_initialization_from_kinematics(
            fit, [[plate], [short_plate]], 100.0, [observations, observations[:6]])

        assert [p.shape[1] for p in init.pose_trials] == [10, 6]
        assert [c.shape for c in init.joint_centers] == [(3, 10), (3, 6)]
        assert [a.shape for a in init.joint_axis] == [(6, 10), (6, 6)]
        np.testing.assert_allclose(fitter.skeleton.get_group_scales(), scales)
        np.testing.assert_allclose(init.original_group_scales, scales)
        np.testing.assert_allclose(init.marker_offsets['BOB_TIP'], [0.0, -0.9, 0.0])

    def test_from_kinematics_frame_count_mismatch(self, pendulum):
        fitter = make_fitter(pendulum)
        fit = KinematicFitResult(poses=np.zeros((7, 3)), updated_marker_map={}, group_scales=np.ones(6))
        with pytest.raises(ValueError):
            fitter.create_initialization_from_kinematics(
                fit, pendulum.force_plate_trials, 100.0, pendulum.marker_observation_trials)


class TestContacts:
    """Tests for estimate_foot_ground_contacts()."""

    def test_sliding_foot_flagged_off_plate(self, sliding):
        fitter = make_fitter(sliding)
        init = make_init(fitter, sliding)

        missing = init.probably_missing_grf[0]
        assert not any(missing[:6])
        assert all(missing[7:])
        assert init.ground_height == [0.0]
        assert init.flat_ground == [True]
        assert init.default_force_plate_corners == [[]]
        # Left foot: loaded while standing, off plate once it slides away
        assert [frame[1] for frame in init.grf_body_force_active[0][:5]] == [True] * 5
        assert not any(frame[1] for frame in init.grf_body_force_active[0][5:])
        assert all(frame[1] for frame in init.grf_body_off_force_plate[0][7:])
        # Right foot stays loaded and is never suspicious
        assert not any(frame[0] for frame in init.grf_body_off_force_plate[0])

    def test_contact_sphere_radius_grows_to_loaded_height(self, sliding):
        fitter = make_fitter(sliding)
        init = make_init(fitter, sliding)
        radii = init.grf_body_contact_sphere_radius[0]
        assert radii[0][0] == pytest.approx(0.03)
        assert radii[1][0] == pytest.approx(0.03)
        assert init.contact_bodies == [[sliding.foot_nodes[0]], [sliding.foot_nodes[1]]]

    def test_tiny_force_is_not_active(self, sliding):
        plates = sliding.force_plate_trials[0]
        plates[1].forces[:] = 0.0
        plates[1].forces[:, 1] = 0.03
        fitter = make_fitter(sliding)
        init = make_init(fitter, sliding)
        assert not any(frame[1] for frame in init.grf_body_force_active[0])

    def test_default_plate_when_corners_missing(self, sliding):
        for plate in sliding.force_plate_trials[0]:
            plate.corners = []
        fitter = make_fitter(sliding)
        init = make_init(fitter, sliding)

        corners = init.default_force_plate_corners[0]
        assert len(corners) == 4
        assert all(c[1] == 0.0 for c in corners)
        xs = [c[0] for c in corners]
        zs = [c[2] for c in corners]
        assert min(xs) == pytest.approx(-0.1)
        assert min(zs) == pytest.approx(-0.2)
        assert max(zs) == pytest.approx(0.2)
        # Both feet stay over the padded COP rectangle
        assert init.num_missing_grf_frames() == 0

    def test_default_plate_flags_feet_beyond_it(self, sliding):
        plates = sliding.force_plate_trials[0]
        for plate in plates:
            plate.corners = []
        # Right COP stays at the origin, so the padded rectangle ends at x = 0.1
        right = plates[0]
        right.centers_of_pressure[:, 0] = right.centers_of_pressure[0, 0]
        fitter = make_fitter(sliding)
        init = make_init(fitter, sliding)

        xs = [c[0] for c in init.default_force_plate_corners[0]]
        assert max(xs) == pytest.approx(0.1)
        missing = init.probably_missing_grf[0]
        assert not any(missing[:6])
        assert all(missing[7:])
        assert all(frame[1] for frame in init.grf_body_off_force_plate[0][7:])

    def test_trial_without_plates_is_all_missing(self, pendulum, capsys):
        fitter = make_fitter(pendulum)
        fitter.verbose = True
        init = fitter.create_initialization([[]], pendulum.pose_trials, 100.0, pendulum.marker_observation_trials)
        fitter.estimate_foot_ground_contacts(init)
        assert init.probably_missing_grf == [[True] * 10]
        assert '[WARNING]' in capsys.readouterr().out

    def test_pendulum_has_no_missing_frames(self, pendulum):
        fitter = make_fitter(pendulum)
        init = make_init(fitter, pendulum)
        assert init.contact_bodies == [[0, 1]]
        assert init.has_contact_annotations()
        assert init.num_missing_grf_frames() == 0


class TestMassEstimates:
    """Tests for the link mass warm starts."""

    def test_gravity_scaling_recovers_total_mass(self, pendulum):
        pendulum.skeleton.set_link_masses([6.5, 2.6])
        fitter = make_fitter(pendulum)
        init = make_init(fitter, pendulum)
        ratio = fitter.scale_link_masses_from_gravity(init)
        assert ratio == pytest.approx(7.0 / 9.1, rel=0.02)
        assert np.sum(init.body_masses) == pytest.approx(7.0, rel=0.02)
        # Proportions are unchanged
        assert init.body_masses[0] / init.body_masses[1] == pytest.approx(2.5)

    def test_least_squares_masses_are_floored(self, pendulum):
        plate = pendulum.force_plate_trials[0][0]
        plate.forces[:] = -plate.forces
        fitter = make_fitter(pendulum)
        init = make_init(fitter, pendulum)
        masses = fitter.estimate_link_masses_from_acceleration(init, regularization_weight=1e-6)
        assert np.all(masses >= MIN_LINK_MASS)
        assert np.any(masses == MIN_LINK_MASS)
        np.testing.assert_array_equal(init.body_masses, masses)

    def test_least_squares_masses_near_truth(self, pendulum):
        fitter = make_fitter(pendulum)
        init = make_init(fitter, pendulum)
        masses = fitter.estimate_link_masses_from_acceleration(init, regularization_weight=1e-3)
        assert np.sum(masses) == pytest.approx(7.0, rel=0.02)

    def test_least_squares_skips_short_trials(self, pendulum):
        plate = pendulum.force_plate_trials[0][0]
        one_frame = ForcePlate(plate.forces[:1], plate.moments[:1], plate.centers_of_pressure[:1])
        poses = pendulum.pose_trials[0]
        observations = pendulum.marker_observation_trials[0]
        fitter = make_fitter(pendulum)
        init = fitter.create_initialization(
            [[plate], [one_frame]], [poses, poses[:, :1]], 100.0, [observations, observations[:1]])

        masses = fitter.estimate_link_masses_from_acceleration(init, regularization_weight=1e-3)
        assert masses.shape == (2,)
        assert np.sum(masses) == pytest.approx(7.0, rel=0.02)

    def test_gravity_scaling_needs_three_frames(self, pendulum):
        plate = pendulum.force_plate_trials[0][0]
        two_frames = ForcePlate(plate.forces[:2], plate.moments[:2], plate.centers_of_pressure[:2])
        fitter = make_fitter(pendulum)
        init = fitter.create_initialization(
            [[two_frames]], [pendulum.pose_trials[0][:, :2]], 100.0,
            [pendulum.marker_observation_trials[0][:2]])
        with pytest.raises(DynamicsFitError):
            fitter.scale_link_masses_from_gravity(init)
        np.testing.assert_array_equal(init.body_masses, [5.0, 2.0])


class TestRunOptimization:
    """End-to-end fits."""

    def test_pendulum_mass_recovered(self):
        subject = pendulum_trial(initial_bob_mass=1.5)
        fitter = make_fitter(subject, quiet_config(regularize_masses=0.0))
        init = make_init(fitter, subject)

        result = fitter.run_optimization(
            init,
            residual_weight=1.0,
            marker_weight=0.0,
            include_masses=True,
            include_coms=False,
            include_inertias=False,
            include_body_scales=False,
            include_poses=False,
            include_marker_offsets=False,
        )

        assert result.iterations > 0
        np.testing.assert_allclose(init.body_masses, subject.true_masses, rtol=0.01)
        force, torque = fitter.compute_average_residual_force(init)
        assert force < 1e-4
        assert torque < 1e-4

    def test_requires_contact_annotations(self, pendulum):
        fitter = make_fitter(pendulum)
        init = make_init(fitter, pendulum, annotate=False)
        with pytest.raises(MissingContactAnnotationError):
            fitter.run_optimization(init, include_poses=False)

    def test_full_fit_writes_back_every_group(self, wrong_mass_pendulum):
        subject = wrong_mass_pendulum
        config = quiet_config()
        config.solver.iteration_limit = 5
        fitter = make_fitter(subject, config)
        init = make_init(fitter, subject)

        result = fitter.run_optimization(init, residual_weight=1.0, marker_weight=1.0)

        assert result.iterations <= 5
        assert np.all(np.isfinite(init.body_masses))
        assert np.all(init.body_masses > 0)
        assert init.group_scales.shape == (6,)
        assert init.pose_trials[0].shape == (7, 10)
        assert set(init.updated_marker_map) == set(subject.marker_map)
        for name, (_, offset) in init.updated_marker_map.items():
            np.testing.assert_array_equal(offset, init.marker_offsets[name])


class TestDiagnostics:
    """Tests for the per-trial diagnostics."""

    def test_implied_force_matches_plate_force(self, pendulum):
        fitter = make_fitter(pendulum)
        init = make_init(fitter, pendulum)
        implied = fitter.implied_com_forces(init, 0)
        measured = fitter.measured_grf_forces(init, 0)
        assert implied.shape == measured.shape == (8, 3)
        np.testing.assert_allclose(implied, measured, rtol=0.02, atol=1.0)

    def test_bad_trial_index(self, pendulum):
        fitter = make_fitter(pendulum)
        init = make_init(fitter, pendulum)
        with pytest.raises(IndexError):
            fitter.com_positions(init, 3)

    def test_marker_rmse_zero_for_true_model(self, pendulum):
        fitter = make_fitter(pendulum)
        init = make_init(fitter, pendulum)
        assert fitter.compute_average_marker_rmse(init) == pytest.approx(0.0, abs=1e-10)

    def test_average_real_force(self, pendulum):
        fitter = make_fitter(pendulum)
        init = make_init(fitter, pendulum)
        force, moment = fitter.compute_average_real_force(init)
        plate = pendulum.force_plate_trials[0][0]
        assert force == pytest.approx(np.mean(np.linalg.norm(plate.forces, axis=1)))
        assert moment == pytest.approx(np.mean(np.linalg.norm(plate.moments, axis=1)))

    def test_diagnostics_leave_skeleton_untouched(self, pendulum):
        fitter = make_fitter(pendulum)
        init = make_init(fitter, pendulum)
        init.body_masses = np.array([1.0, 1.0])
        fitter.compute_average_residual_force(init)
        np.testing.assert_array_equal(pendulum.skeleton.get_link_masses(), [5.0, 2.0])

    def test_summary_and_plot(self, sliding, tmp_path):
        fitter = make_fitter(sliding)
        init = make_init(fitter, sliding)
        summary = fitter.summarize_trial(init, 0)
        assert summary.residual_forces.shape == (18,)
        assert np.all(np.isnan(summary.residual_forces[7:]))
        assert not np.any(np.isnan(summary.residual_forces[:6]))

        path = tmp_path / 'dynamics.png'
        fitter.save_dynamics_plot(init, 0, path)
        assert path.exists()

    def test_report_keys(self, pendulum):
        fitter = make_fitter(pendulum)
        init = make_init(fitter, pendulum)
        report = fitter.report(init)
        assert set(report) == {
            'marker_rmse', 'residual_force', 'residual_torque', 'real_force', 'real_moment', 'total_mass'}
        assert report['total_mass'] == pytest.approx(7.0)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
