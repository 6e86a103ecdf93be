"""
Residual (unexplained) root forces and their derivatives.

For a single frame the residual is the first six rows of

    M(q) ddq + C(q, dq) - sum_k J_k(q)^T w_k

i.e. the torque and force the free-floating root would need on top of the
measured contact wrenches w_k to reproduce the observed motion.
"""

from enum import Enum
from typing import List, Optional, Set

import numpy as np

from ..core.skeleton import Skeleton, WithRespectTo
from ..utils.finite_difference import finite_difference_jacobian


class JacobianStrategy(Enum):
    """How a residual Jacobian is computed."""
    ANALYTICAL = 'analytical'
    FINITE_DIFFERENCE = 'finite_difference'


ANALYTICAL_KINDS = frozenset([
    WithRespectTo.POSITION,
    WithRespectTo.VELOCITY,
    WithRespectTo.ACCELERATION,
    WithRespectTo.GROUP_MASSES,
    WithRespectTo.GROUP_COMS,
    WithRespectTo.GROUP_INERTIAS,
    WithRespectTo.GROUP_SCALES,
])


def select_strategy(wrt: WithRespectTo) -> JacobianStrategy:
    """Analytical where the skeleton provides the derivative, else finite differences."""
    if wrt in ANALYTICAL_KINDS:
        return JacobianStrategy.ANALYTICAL
    return JacobianStrategy.FINITE_DIFFERENCE


def _normalized(v: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(v)
    if norm == 0:
        return np.zeros_like(v)
    return v / norm


def residual_norm_gradient(residual: np.ndarray, jacobian: np.ndarray, use_l1: bool = False) -> np.ndarray:
    """
    Chain rule from a residual Jacobian to the gradient of the residual norm.

    Args:
        residual: Residual wrench [6].
        jacobian: d(residual)/d(param) [6, P].
        use_l1: Norm is |torque| + |force| instead of the squared norm.

    Returns:
        Gradient [P].
    """
    if use_l1:
        grad_residual = np.concatenate([_normalized(residual[:3]), _normalized(residual[3:])])
    else:
        grad_residual = 2.0 * residual
    return jacobian.T @ grad_residual


class ResidualForceHelper:
    """
    Per-frame residual force evaluation for one skeleton.

    Every public method leaves the skeleton's state and parameters exactly as
    it found them.
    """

    def __init__(self, skeleton: Skeleton, force_body_indices: List[int], verbose: bool = True):
        """
        Args:
            skeleton: Model to evaluate.
            force_body_indices: Body receiving each 6-row block of the
                contact wrench vector.
            verbose: Print a warning the first time a finite-difference
                fallback is used for a parameter kind.
        """
        self.skeleton = skeleton
        self.force_body_indices = list(force_body_indices)
        self.verbose = verbose
        self._warned: Set[WithRespectTo] = set()

    def calculate_residual(
        self,
        q: np.ndarray,
        dq: np.ndarray,
        ddq: np.ndarray,
        forces: np.ndarray,
    ) -> np.ndarray:
        """
        Root residual wrench [6] (torque rows then force rows).

        Args:
            q, dq, ddq: Generalized state [n].
            forces: Concatenated world wrenches [6 * num_force_bodies].
        """
        skel = self.skeleton
        with skel.preserved_state():
            skel.set_positions(q)
            skel.set_velocities(dq)
            skel.set_accelerations(ddq)
            mass_matrix = skel.get_mass_matrix(q)
            coriolis = skel.get_coriolis_and_gravity_forces(q, dq)
            contact = skel.get_contact_forces(q, self.force_body_indices, forces)
            tau = mass_matrix @ ddq + coriolis - contact
        return tau[:6]

    def calculate_residual_norm(
        self,
        q: np.ndarray,
        dq: np.ndarray,
        ddq: np.ndarray,
        forces: np.ndarray,
        use_l1: bool = False,
    ) -> float:
        """Squared norm of the residual, or |torque| + |force| when use_l1 is set."""
        residual = self.calculate_residual(q, dq, ddq, forces)
        if use_l1:
            return float(np.linalg.norm(residual[:3]) + np.linalg.norm(residual[3:]))
        return float(residual @ residual)

    def calculate_residual_jacobian_wrt(
        self,
        q: np.ndarray,
        dq: np.ndarray,
        ddq: np.ndarray,
        forces: np.ndarray,
        wrt: WithRespectTo,
        strategy: Optional[JacobianStrategy] = None,
    ) -> np.ndarray:
        """
        Jacobian [6, dim(wrt)] of the residual.

        Args:
            strategy: Force a strategy; by default select_strategy(wrt).
        """
        if strategy is None:
            strategy = select_strategy(wrt)
            if strategy == JacobianStrategy.FINITE_DIFFERENCE and self.verbose and wrt not in self._warned:
                print(f"[WARNING] [ResidualForceHelper] No analytical Jacobian with respect to "
                      f"{wrt.name}, falling back to finite differences")
                self._warned.add(wrt)

        if strategy == JacobianStrategy.FINITE_DIFFERENCE:
            return self.finite_difference_residual_jacobian_wrt(q, dq, ddq, forces, wrt)
        return self._analytical_residual_jacobian_wrt(q, dq, ddq, forces, wrt)

    def _analytical_residual_jacobian_wrt(self, q, dq, ddq, forces, wrt: WithRespectTo) -> np.ndarray:
        skel = self.skeleton
        with skel.preserved_state():
            if wrt in (WithRespectTo.POSITION, WithRespectTo.GROUP_SCALES):
                d_m = skel.get_jacobian_of_m(q, ddq, wrt)
                d_c = skel.get_jacobian_of_c(q, dq, wrt)
                d_f = skel.get_jacobian_of_contact_forces(q, self.force_body_indices, forces, wrt)
                jac = d_m + d_c - d_f
            elif wrt in (WithRespectTo.GROUP_MASSES, WithRespectTo.GROUP_COMS, WithRespectTo.GROUP_INERTIAS):
                jac = skel.get_jacobian_of_m(q, ddq, wrt) + skel.get_jacobian_of_c(q, dq, wrt)
            elif wrt == WithRespectTo.VELOCITY:
                jac = skel.get_jacobian_of_c(q, dq, wrt)
            elif wrt == WithRespectTo.ACCELERATION:
                jac = skel.get_mass_matrix(q)
            else:
                raise ValueError(f"No analytical Jacobian with respect to {wrt.name}")
        return jac[:6]

    def finite_difference_residual_jacobian_wrt(
        self,
        q: np.ndarray,
        dq: np.ndarray,
        ddq: np.ndarray,
        forces: np.ndarray,
        wrt: WithRespectTo,
        use_ridders: bool = True,
    ) -> np.ndarray:
        """Jacobian [6, dim(wrt)] of the residual by finite differences."""
        skel = self.skeleton
        with skel.preserved_state():
            skel.set_positions(q)
            skel.set_velocities(dq)
            skel.set_accelerations(ddq)

            def perturbed(value: np.ndarray) -> np.ndarray:
                wrt.set(skel, value)
                return self.calculate_residual(
                    skel.get_positions(), skel.get_velocities(), skel.get_accelerations(), forces)

            return finite_difference_jacobian(
                perturbed, wrt.get(skel), eps=1e-2 if use_ridders else 1e-7, use_ridders=use_ridders)

    def calculate_residual_norm_gradient_wrt(
        self,
        q: np.ndarray,
        dq: np.ndarray,
        ddq: np.ndarray,
        forces: np.ndarray,
        wrt: WithRespectTo,
        use_l1: bool = False,
    ) -> np.ndarray:
        """Gradient [dim(wrt)] of calculate_residual_norm()."""
        residual = self.calculate_residual(q, dq, ddq, forces)
        jac = self.calculate_residual_jacobian_wrt(q, dq, ddq, forces, wrt)
        return residual_norm_gradient(residual, jac, use_l1)
