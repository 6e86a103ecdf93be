"""
Interior-point solve of an NLP exposed through solver callbacks.

The problem object provides the usual constrained-NLP callbacks
(get_nlp_info, get_bounds_info, get_starting_point, eval_f, eval_grad_f,
eval_g, eval_jac_g, eval_h, intermediate_callback, finalize_solution). This
module drives them with scipy's ``trust-constr`` method, which handles the
box bounds with a barrier (interior point) and the equality constraints with
an SQP trust-region. Since eval_h provides no Hessian, the objective Hessian
is a BFGS quasi-Newton approximation.
"""

from dataclasses import dataclass

import numpy as np
import scipy.sparse
from scipy.optimize import BFGS, Bounds, NonlinearConstraint, minimize

from ..core.config import SolverConfig
from ..core.exceptions import SolverError


_STATUS = {
    0: 'Maximum_Iterations_Exceeded',
    1: 'Solve_Succeeded',
    2: 'Solved_To_Acceptable_Level',
    3: 'User_Requested_Stop',
}


@dataclass
class SolveResult:
    """Outcome of one solve."""
    status: str
    success: bool
    iterations: int
    objective: float
    constraint_violation: float
    message: str


class InteriorPointSolver:
    """
    Drives an NLP callback object to a local optimum.

    Args:
        config: Tolerances, iteration limit and output options.
    """

    def __init__(self, config: SolverConfig = None):
        self.config = config if config is not None else SolverConfig()

    @property
    def verbose(self) -> bool:
        return not self.config.silence_output

    def check_derivatives(self, problem, x0: np.ndarray) -> bool:
        """Compare analytical and finite-difference gradients at x0."""
        analytical = problem.eval_grad_f(x0)
        fd = problem.finite_difference_gradient(x0, use_ridders=False)
        has_errors = problem.debug_errors(fd, analytical, tolerance=1e-4)
        if self.verbose:
            status = 'found mismatches' if has_errors else 'passed'
            print(f"[Solver] Derivative check {status} "
                  f"(max abs diff {np.max(np.abs(fd - analytical), initial=0.0):.3e})")
        return not has_errors

    def solve(self, problem) -> SolveResult:
        """
        Solve the problem and hand the result to problem.finalize_solution().

        Raises:
            SolverError: if the objective is not finite at the starting point.
        """
        cfg = self.config
        n, m, nnz_jac_g, _ = problem.get_nlp_info()
        x_l, x_u, g_l, g_u = problem.get_bounds_info()
        x0 = np.asarray(problem.get_starting_point(), dtype=np.float64)
        # Start inside the box
        x0 = np.clip(x0, x_l, x_u)

        f0 = problem.eval_f(x0)
        if not np.isfinite(f0):
            raise SolverError(f"Objective is not finite at the starting point ({f0})")

        if cfg.check_derivatives:
            self.check_derivatives(problem, x0)

        constraints = []
        g0 = np.zeros(0)
        if m > 0:
            rows, cols = problem.eval_jac_g(x0)
            jac_values = np.zeros(nnz_jac_g)

            def jac(x):
                problem.eval_jac_g(x, jac_values)
                return scipy.sparse.csr_matrix((jac_values, (rows, cols)), shape=(m, n))

            def constraint_hess(x, v):
                return scipy.sparse.csr_matrix((n, n))

            constraints.append(NonlinearConstraint(
                problem.eval_g, g_l, g_u, jac=jac, hess=constraint_hess))
            g0 = problem.eval_g(x0)

        # The starting point counts as iteration 0
        problem.intermediate_callback(0, f0, float(np.max(np.abs(g0), initial=0.0)), x0)

        hessian = problem.eval_h(x0)
        hess = hessian if hessian is not None else BFGS()

        if self.verbose:
            print(f"[Solver] trust-constr: {n} variables, {m} constraints ({nnz_jac_g} nonzeros), "
                  f"initial loss {f0:.6e}")

        def callback(intermediate_result):
            it = int(intermediate_result.nit)
            violation = float(intermediate_result.constr_violation)
            fun = float(intermediate_result.fun)
            if self.verbose and cfg.print_frequency > 0 and it % cfg.print_frequency == 0:
                print(f"[Solver] iter {it:4d}: loss={fun:.6e} inf_pr={violation:.3e}")
            if not problem.intermediate_callback(it, fun, violation, np.array(intermediate_result.x)):
                raise StopIteration

        result = minimize(
            problem.eval_f,
            x0,
            jac=problem.eval_grad_f,
            hess=hess,
            method='trust-constr',
            bounds=Bounds(x_l, x_u),
            constraints=constraints,
            callback=callback,
            options={
                'gtol': cfg.tolerance,
                'xtol': cfg.tolerance,
                'barrier_tol': cfg.tolerance,
                'maxiter': cfg.iteration_limit,
                'initial_tr_radius': cfg.initial_trust_radius,
                'verbose': 0,
            },
        )

        status = _STATUS.get(result.status, f'Status_{result.status}')
        solve_result = SolveResult(
            status=status,
            success=result.status in (1, 2),
            iterations=int(result.nit),
            objective=float(result.fun),
            constraint_violation=float(getattr(result, 'constr_violation', 0.0)),
            message=str(result.message),
        )
        if self.verbose:
            print(f"[Solver] {status} after {solve_result.iterations} iterations: {solve_result.message}")

        problem.finalize_solution(status, result.x, float(result.fun))
        return solve_result
