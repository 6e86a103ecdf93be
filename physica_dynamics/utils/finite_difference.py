"""
Finite-difference Jacobians used to check analytical derivatives.
"""

from typing import Callable

import numpy as np


def central_difference_jacobian(
    fn: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    eps: float = 1e-6,
) -> np.ndarray:
    """
    Jacobian of fn at x by central differences.

    Args:
        fn: Maps an [n] vector to an [m] vector (or scalar).
        x: Evaluation point [n].
        eps: Step size.

    Returns:
        Jacobian [m, n] (or [n] if fn returns a scalar).
    """
    x = np.asarray(x, dtype=np.float64)
    columns = []
    for i in range(x.shape[0]):
        plus = x.copy()
        minus = x.copy()
        plus[i] += eps
        minus[i] -= eps
        columns.append((np.asarray(fn(plus)) - np.asarray(fn(minus))) / (2.0 * eps))
    if not columns:
        return np.zeros((np.asarray(fn(x)).size, 0))
    return np.stack(columns, axis=-1)


def ridders_jacobian(
    fn: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    eps: float = 1e-3,
    tableau_size: int = 10,
    step_shrink: float = 1.4,
    safe_threshold: float = 2.0,
) -> np.ndarray:
    """
    Jacobian of fn at x by Ridders' extrapolation of central differences.

    Each column starts from step ``eps`` and shrinks it by ``step_shrink``,
    extrapolating the sequence of central differences (Numerical Recipes
    dfridr) until the error estimate stops improving.

    Args:
        fn: Maps an [n] vector to an [m] vector (or scalar).
        x: Evaluation point [n].
        eps: Initial step size.
        tableau_size: Maximum number of step halvings.
        step_shrink: Factor the step is divided by each round.
        safe_threshold: Stop once the error grows by this factor.

    Returns:
        Jacobian [m, n] (or [n] if fn returns a scalar).
    """
    x = np.asarray(x, dtype=np.float64)
    shrink_sq = step_shrink * step_shrink

    def central(i: int, step: float) -> np.ndarray:
        plus = x.copy()
        minus = x.copy()
        plus[i] += step
        minus[i] -= step
        return (np.asarray(fn(plus), dtype=np.float64)
                - np.asarray(fn(minus), dtype=np.float64)) / (2.0 * step)

    columns = []
    for i in range(x.shape[0]):
        step = eps
        tableau = [[None] * tableau_size for _ in range(tableau_size)]
        tableau[0][0] = central(i, step)
        best = tableau[0][0]
        best_error = np.inf

        for k in range(1, tableau_size):
            step /= step_shrink
            tableau[0][k] = central(i, step)
            factor = shrink_sq
            for j in range(1, k + 1):
                tableau[j][k] = (tableau[j - 1][k] * factor - tableau[j - 1][k - 1]) / (factor - 1.0)
                factor *= shrink_sq
                error = max(
                    np.max(np.abs(tableau[j][k] - tableau[j - 1][k]), initial=0.0),
                    np.max(np.abs(tableau[j][k] - tableau[j - 1][k - 1]), initial=0.0),
                )
                if error <= best_error:
                    best_error = error
                    best = tableau[j][k]
            drift = np.max(np.abs(tableau[k][k] - tableau[k - 1][k - 1]), initial=0.0)
            if drift >= safe_threshold * best_error:
                break

        columns.append(best)

    if not columns:
        return np.zeros((np.asarray(fn(x)).size, 0))
    return np.stack(columns, axis=-1)


def finite_difference_jacobian(
    fn: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    eps: float = None,
    use_ridders: bool = True,
) -> np.ndarray:
    """Dispatch to Ridders or plain central differences."""
    if use_ridders:
        return ridders_jacobian(fn, x, eps=1e-3 if eps is None else eps)
    return central_difference_jacobian(fn, x, eps=1e-6 if eps is None else eps)
