"""
Tests for residual root forces and their Jacobians.
"""

import numpy as np
import pytest

from physica_dynamics.core.skeleton import JointType, Skeleton, WithRespectTo
from physica_dynamics.data.synthetic import build_pendulum, exact_contact_wrenches, pendulum_poses
from physica_dynamics.optimization.residual import (
    JacobianStrategy,
    ResidualForceHelper,
    residual_norm_gradient,
    select_strategy,
)


def spinning_block():
    """Single free body spinning about z at a constant rate while translating."""
    skel = Skeleton('block')
    skel.add_body('block', joint_type=JointType.FREE, mass=2.0, com=(0.0, 0.0, 0.0),
                  inertia=(0.4, 0.4, 0.1, 0.0, 0.0, 0.0))
    return skel


def random_state(rng, n):
    return rng.normal(size=n) * 0.3, rng.normal(size=n), rng.normal(size=n)


class TestResidual:
    """Tests for calculate_residual()."""

    def test_spinning_block_balanced_by_weight(self):
        """
        Pure z-rotation at constant rate about a principal axis through the
        COM needs no torque, and constant-velocity translation needs only
        the weight.
        """
        skel = spinning_block()
        helper = ResidualForceHelper(skel, [0], verbose=False)
        q = np.array([0.0, 0.0, 0.3, 0.2, 1.0, -0.4])
        dq = np.array([0.0, 0.0, 2.0, 0.5, 0.0, 0.1])
        ddq = np.zeros(6)

        com = skel.get_com_positions(q)[0]
        force = np.array([0.0, 2.0 * 9.81, 0.0])
        wrench = np.concatenate([np.cross(com, force), force])
        np.testing.assert_allclose(helper.calculate_residual(q, dq, ddq, wrench), np.zeros(6), atol=1e-10)

    def test_missing_weight_shows_up_as_residual_force(self):
        skel = spinning_block()
        helper = ResidualForceHelper(skel, [0], verbose=False)
        q = np.array([0.0, 0.0, 0.0, 0.0, 1.0, 0.0])
        residual = helper.calculate_residual(q, np.zeros(6), np.zeros(6), np.zeros(6))
        np.testing.assert_allclose(residual[3:], [0.0, 2.0 * 9.81, 0.0], atol=1e-10)
        assert helper.calculate_residual_norm(q, np.zeros(6), np.zeros(6), np.zeros(6)) == \
            pytest.approx((2.0 * 9.81) ** 2)

    def test_exact_wrenches_zero_the_pendulum_residual(self):
        skel = build_pendulum()
        dt = 0.01
        poses = pendulum_poses(10, 100.0)
        wrenches = exact_contact_wrenches(skel, poses, dt, [0])
        helper = ResidualForceHelper(skel, [0], verbose=False)
        for t in range(poses.shape[1] - 2):
            dq = (poses[:, t + 1] - poses[:, t]) / dt
            ddq = (poses[:, t + 2] - 2.0 * poses[:, t + 1] + poses[:, t]) / (dt * dt)
            residual = helper.calculate_residual(poses[:, t], dq, ddq, wrenches[:, t])
            np.testing.assert_allclose(residual, np.zeros(6), atol=1e-8)

    def test_residual_leaves_skeleton_untouched(self, rng):
        skel = build_pendulum()
        helper = ResidualForceHelper(skel, [0], verbose=False)
        q, dq, ddq = random_state(rng, skel.num_dofs)
        helper.calculate_residual(q, dq, ddq, rng.normal(size=6))
        helper.calculate_residual_jacobian_wrt(q, dq, ddq, rng.normal(size=6), WithRespectTo.LINK_MASSES)
        np.testing.assert_array_equal(skel.get_positions(), np.zeros(skel.num_dofs))
        np.testing.assert_array_equal(skel.get_link_masses(), [5.0, 2.0])


class TestResidualJacobians:
    """Analytical Jacobians against finite differences."""

    @pytest.mark.parametrize('wrt', [
        WithRespectTo.POSITION,
        WithRespectTo.VELOCITY,
        WithRespectTo.ACCELERATION,
        WithRespectTo.GROUP_MASSES,
        WithRespectTo.GROUP_COMS,
        WithRespectTo.GROUP_INERTIAS,
        WithRespectTo.GROUP_SCALES,
    ])
    def test_analytical_matches_finite_difference(self, wrt, rng):
        skel = build_pendulum()
        helper = ResidualForceHelper(skel, [0], verbose=False)
        q, dq, ddq = random_state(rng, skel.num_dofs)
        forces = rng.normal(size=6) * 10.0

        analytical = helper.calculate_residual_jacobian_wrt(q, dq, ddq, forces, wrt)
        fd = helper.finite_difference_residual_jacobian_wrt(q, dq, ddq, forces, wrt)
        assert analytical.shape == (6, wrt.dim(skel))
        np.testing.assert_allclose(analytical, fd, rtol=1e-5, atol=1e-6)

    def test_strategy_selection(self):
        assert select_strategy(WithRespectTo.GROUP_MASSES) == JacobianStrategy.ANALYTICAL
        assert select_strategy(WithRespectTo.LINK_MASSES) == JacobianStrategy.FINITE_DIFFERENCE

    def test_fallback_warns_once(self, rng, capsys):
        skel = build_pendulum()
        helper = ResidualForceHelper(skel, [0], verbose=True)
        q, dq, ddq = random_state(rng, skel.num_dofs)
        forces = rng.normal(size=6)

        jac = helper.calculate_residual_jacobian_wrt(q, dq, ddq, forces, WithRespectTo.LINK_MASSES)
        helper.calculate_residual_jacobian_wrt(q, dq, ddq, forces, WithRespectTo.LINK_MASSES)
        out = capsys.readouterr().out
        assert out.count('[WARNING]') == 1
        assert 'LINK_MASSES' in out
        assert jac.shape == (6, skel.num_bodies)

    def test_forced_strategy_skips_warning(self, rng, capsys):
        skel = build_pendulum()
        helper = ResidualForceHelper(skel, [0], verbose=True)
        q, dq, ddq = random_state(rng, skel.num_dofs)
        helper.calculate_residual_jacobian_wrt(
            q, dq, ddq, np.zeros(6), WithRespectTo.GROUP_MASSES, strategy=JacobianStrategy.FINITE_DIFFERENCE)
        assert '[WARNING]' not in capsys.readouterr().out

    def test_link_masses_agree_with_group_masses_for_singleton_groups(self, rng):
        skel = build_pendulum()
        helper = ResidualForceHelper(skel, [0], verbose=False)
        q, dq, ddq = random_state(rng, skel.num_dofs)
        forces = rng.normal(size=6)
        by_link = helper.calculate_residual_jacobian_wrt(
            q, dq, ddq, forces, WithRespectTo.LINK_MASSES, strategy=JacobianStrategy.FINITE_DIFFERENCE)
        by_group = helper.calculate_residual_jacobian_wrt(q, dq, ddq, forces, WithRespectTo.GROUP_MASSES)
        np.testing.assert_allclose(by_link, by_group, rtol=1e-5, atol=1e-6)


class TestNormGradient:
    """Tests for the residual norm chain rule."""

    @pytest.mark.parametrize('use_l1', [False, True])
    def test_norm_gradient_matches_finite_difference(self, use_l1, rng):
        skel = build_pendulum()
        helper = ResidualForceHelper(skel, [0], verbose=False)
        q, dq, ddq = random_state(rng, skel.num_dofs)
        forces = rng.normal(size=6)

        analytical = helper.calculate_residual_norm_gradient_wrt(
            q, dq, ddq, forces, WithRespectTo.ACCELERATION, use_l1)

        eps = 1e-6
        fd = np.zeros(skel.num_dofs)
        for i in range(skel.num_dofs):
            step = np.zeros(skel.num_dofs)
            step[i] = eps
            fd[i] = (helper.calculate_residual_norm(q, dq, ddq + step, forces, use_l1)
                     - helper.calculate_residual_norm(q, dq, ddq - step, forces, use_l1)) / (2.0 * eps)
        np.testing.assert_allclose(analytical, fd, rtol=1e-5, atol=1e-5)

    def test_l1_gradient_of_zero_residual_is_zero(self):
        jac = np.ones((6, 2))
        np.testing.assert_array_equal(residual_norm_gradient(np.zeros(6), jac, use_l1=True), np.zeros(2))


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
