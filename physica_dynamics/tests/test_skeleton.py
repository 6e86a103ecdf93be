"""
Tests for the articulated body model.
"""

import numpy as np
import pytest

from physica_dynamics.core.skeleton import JointType, Skeleton, WithRespectTo
from physica_dynamics.data.synthetic import build_pendulum, build_walker
from physica_dynamics.utils.finite_difference import central_difference_jacobian


def single_body(com=(0.1, 0.2, -0.05), mass=3.0) -> Skeleton:
    skel = Skeleton('block')
    skel.add_body('block', joint_type=JointType.FREE, mass=mass, com=com,
                  inertia=(0.3, 0.2, 0.1, 0.01, 0.0, -0.02))
    return skel


class TestConstruction:
    """Tests for building the body tree."""

    def test_dofs_and_tree(self):
        skel = build_walker()
        assert skel.num_dofs == 8
        assert skel.num_bodies == 5
        assert skel.get_child_indices(0) == [1, 3]
        assert skel.get_parent_index(skel.get_body_index('foot_l')) == skel.get_body_index('leg_l')

    def test_duplicate_name_rejected(self):
        skel = build_pendulum()
        with pytest.raises(ValueError):
            skel.add_body('bob', parent=0)

    def test_free_joint_only_at_root(self):
        skel = build_pendulum()
        with pytest.raises(ValueError):
            skel.add_body('extra', parent=1, joint_type=JointType.FREE)

    def test_unknown_body_name(self):
        with pytest.raises(KeyError):
            build_pendulum().get_body_index('missing')


class TestParameters:
    """Tests for link and group parameter accessors."""

    def test_group_values_are_member_means(self):
        skel = Skeleton()
        root = skel.add_body('root', joint_type=JointType.FREE, mass=2.0)
        skel.add_body('a', parent=root, mass=1.0, scale_group=0)
        assert skel.num_scale_groups == 1
        np.testing.assert_allclose(skel.get_group_masses(), [1.5])

        skel.set_group_masses(np.array([4.0]))
        np.testing.assert_allclose(skel.get_link_masses(), [4.0, 4.0])

    def test_group_scale_shapes(self):
        skel = build_walker()
        assert skel.get_group_scales().shape == (3 * skel.num_scale_groups,)
        assert skel.get_body_scales().shape == (skel.num_bodies, 3)

    def test_default_bounds(self):
        skel = build_pendulum()
        assert np.all(skel.get_group_masses_lower_bound() > 0)
        assert np.all(skel.get_group_scales_lower_bound() == 0.1)
        assert np.all(np.isinf(skel.get_group_coms_upper_bound()))

    def test_with_respect_to_roundtrip(self):
        skel = build_pendulum()
        for wrt in WithRespectTo:
            value = wrt.get(skel)
            assert wrt.dim(skel) == value.shape[0]
            wrt.set(skel, value + 0.5)
            np.testing.assert_allclose(wrt.get(skel), value + 0.5)


class TestState:
    """Tests for state save / restore."""

    def test_preserved_state_restores_everything(self, rng):
        skel = build_pendulum()
        q = rng.normal(size=skel.num_dofs)
        skel.set_positions(q)
        masses = skel.get_link_masses()

        with skel.preserved_state():
            skel.set_positions(q + 1.0)
            skel.set_velocities(np.ones(skel.num_dofs))
            skel.set_link_masses(masses * 3.0)
            skel.set_group_scales(skel.get_group_scales() * 2.0)

        np.testing.assert_array_equal(skel.get_positions(), q)
        np.testing.assert_array_equal(skel.get_velocities(), np.zeros(skel.num_dofs))
        np.testing.assert_array_equal(skel.get_link_masses(), masses)
        np.testing.assert_array_equal(skel.get_group_scales(), np.ones(6))

    def test_preserved_state_restores_on_error(self):
        skel = build_pendulum()
        with pytest.raises(RuntimeError):
            with skel.preserved_state():
                skel.set_positions(np.ones(skel.num_dofs))
                raise RuntimeError("boom")
        np.testing.assert_array_equal(skel.get_positions(), np.zeros(skel.num_dofs))


class TestDynamics:
    """Tests for mass matrix, inverse dynamics and their derivatives."""

    def test_mass_matrix_symmetric_positive_definite(self, rng):
        skel = build_walker()
        M = skel.get_mass_matrix(rng.normal(size=skel.num_dofs) * 0.3)
        np.testing.assert_allclose(M, M.T, atol=1e-10)
        assert np.all(np.linalg.eigvalsh(M) > 0)

    def test_mass_matrix_matches_inverse_dynamics(self, rng):
        skel = build_pendulum()
        q = rng.normal(size=skel.num_dofs) * 0.3
        dq = rng.normal(size=skel.num_dofs)
        ddq = rng.normal(size=skel.num_dofs)
        expected = skel.get_mass_matrix(q) @ ddq + skel.get_coriolis_and_gravity_forces(q, dq)
        np.testing.assert_allclose(skel.inverse_dynamics(q, dq, ddq), expected, atol=1e-9)

    def test_free_fall_needs_no_force(self):
        skel = single_body()
        q = np.array([0.2, -0.1, 0.4, 1.0, 2.0, 3.0])
        ddq = np.array([0.0, 0.0, 0.0, 0.0, -9.81, 0.0])
        np.testing.assert_allclose(skel.inverse_dynamics(q, np.zeros(6), ddq), np.zeros(6), atol=1e-10)

    def test_weight_supported_at_com_balances(self):
        """A wrench equal to the weight, applied through the COM, holds the body still."""
        skel = single_body()
        q = np.array([0.0, 0.0, 0.7, 0.5, 1.0, -0.2])
        com = skel.get_com_positions(q)[0]
        force = np.array([0.0, 3.0 * 9.81, 0.0])
        wrench = np.concatenate([np.cross(com, force), force])
        tau = skel.inverse_dynamics(q, np.zeros(6), np.zeros(6), [0], wrench)
        np.testing.assert_allclose(tau, np.zeros(6), atol=1e-10)

    def test_contact_forces_linear_in_wrench(self, rng):
        skel = build_walker()
        q = rng.normal(size=skel.num_dofs) * 0.2
        feet = [skel.get_body_index('foot_r'), skel.get_body_index('foot_l')]
        w1 = rng.normal(size=12)
        w2 = rng.normal(size=12)
        np.testing.assert_allclose(
            skel.get_contact_forces(q, feet, w1 + 2.0 * w2),
            skel.get_contact_forces(q, feet, w1) + 2.0 * skel.get_contact_forces(q, feet, w2),
            atol=1e-10,
        )

    @pytest.mark.parametrize('wrt', [
        WithRespectTo.POSITION,
        WithRespectTo.VELOCITY,
        WithRespectTo.GROUP_MASSES,
        WithRespectTo.GROUP_COMS,
        WithRespectTo.GROUP_SCALES,
    ])
    def test_jacobian_of_c_matches_finite_differences(self, wrt, rng):
        skel = build_pendulum()
        q = rng.normal(size=skel.num_dofs) * 0.3
        dq = rng.normal(size=skel.num_dofs)
        analytical = skel.get_jacobian_of_c(q, dq, wrt)

        def c_of(x):
            with skel.preserved_state():
                if wrt == WithRespectTo.POSITION:
                    return skel.get_coriolis_and_gravity_forces(x, dq)
                if wrt == WithRespectTo.VELOCITY:
                    return skel.get_coriolis_and_gravity_forces(q, x)
                wrt.set(skel, x)
                return skel.get_coriolis_and_gravity_forces(q, dq)

        start = q if wrt == WithRespectTo.POSITION else dq if wrt == WithRespectTo.VELOCITY else wrt.get(skel)
        fd = central_difference_jacobian(c_of, start, eps=1e-6)
        np.testing.assert_allclose(analytical, fd, rtol=1e-5, atol=1e-6)


class TestKinematics:
    """Tests for body, marker and joint positions."""

    def test_pendulum_bob_hangs_below_base(self):
        skel = build_pendulum()
        q = np.zeros(7)
        q[3:6] = [0.0, 1.0, 0.0]
        origins = skel.get_body_world_positions(q)
        np.testing.assert_allclose(origins[1], [0.0, 0.9, 0.0], atol=1e-12)
        np.testing.assert_allclose(skel.get_com_positions(q)[1], [0.0, 0.4, 0.0], atol=1e-12)

    def test_scale_stretches_child_offset(self):
        skel = build_pendulum()
        scales = skel.get_group_scales()
        scales[:3] = 2.0
        skel.set_group_scales(scales)
        origins = skel.get_body_world_positions(np.zeros(7))
        np.testing.assert_allclose(origins[1], [0.0, -0.2, 0.0], atol=1e-12)

    def test_marker_jacobians_match_finite_differences(self, rng):
        skel = build_pendulum()
        markers = [(1, np.array([0.1, -0.3, 0.05])), (0, np.array([0.0, 0.2, 0.0]))]
        q = rng.normal(size=7) * 0.3

        analytical = skel.get_marker_world_positions_jacobian_wrt_joint_positions(markers, q)
        fd = central_difference_jacobian(lambda x: skel.get_marker_world_positions(markers, x), q)
        np.testing.assert_allclose(analytical, fd, atol=1e-7)

        def with_scales(s):
            with skel.preserved_state():
                skel.set_group_scales(s)
                return skel.get_marker_world_positions(markers, q)

        analytical = skel.get_marker_world_positions_jacobian_wrt_group_scales(markers, q)
        fd = central_difference_jacobian(with_scales, skel.get_group_scales())
        np.testing.assert_allclose(analytical, fd, atol=1e-7)

    def test_joint_positions_are_body_origins(self, rng):
        skel = build_walker()
        q = rng.normal(size=skel.num_dofs) * 0.2
        origins = skel.get_body_world_positions(q)
        np.testing.assert_allclose(skel.get_joint_world_positions([1, 2], q), origins[[1, 2]].reshape(-1))


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
