"""
Jerk-minimizing smoothing of joint trajectories.

Each row of a [dofs, T] series is smoothed independently by solving

    min_y  sum_t ||w * (-y_t + 3 y_{t+1} - 3 y_{t+2} + y_{t+3})||^2
         + sum_t ||r * (y_t - s_t)||^2

which is a sparse, symmetric positive definite linear system per row.
"""

import numpy as np
import scipy.sparse
import scipy.sparse.linalg


JERK_STAMP = np.array([-1.0, 3.0, -3.0, 1.0])


class AccelerationSmoother:
    """
    Smooth time series by penalizing third differences.

    Args:
        timesteps: Length T of the series that will be smoothed.
        smoothing_weight: Weight w on the jerk term.
        regularization_weight: Weight r pulling toward the input series.
    """

    def __init__(self, timesteps: int, smoothing_weight: float, regularization_weight: float = 1.0):
        self.timesteps = timesteps
        self.smoothing_weight = smoothing_weight
        self.regularization_weight = regularization_weight

        jerk_rows = max(timesteps - 3, 0)
        rows, cols, vals = [], [], []
        for t in range(jerk_rows):
            for k, coeff in enumerate(JERK_STAMP):
                rows.append(t)
                cols.append(t + k)
                vals.append(coeff * smoothing_weight)
        self._jerk = scipy.sparse.csr_matrix((vals, (rows, cols)), shape=(jerk_rows, timesteps))

        reg = regularization_weight * regularization_weight
        normal = self._jerk.T @ self._jerk + reg * scipy.sparse.identity(timesteps, format='csr')
        self._normal = normal.tocsc()

    def smooth(self, series: np.ndarray) -> np.ndarray:
        """
        Smooth every row of a [dofs, T] series.

        Rows that are exactly constant are returned unchanged.

        Raises:
            ValueError: if the series length differs from timesteps.
        """
        series = np.asarray(series, dtype=np.float64)
        if series.shape[1] != self.timesteps:
            raise ValueError(f"Expected {self.timesteps} timesteps, got {series.shape[1]}")

        reg = self.regularization_weight * self.regularization_weight
        smoothed = series.copy()
        for row in range(series.shape[0]):
            if np.all(series[row] == series[row, 0]):
                continue
            smoothed[row] = scipy.sparse.linalg.spsolve(self._normal, reg * series[row])
        return smoothed

    def get_loss(self, series: np.ndarray, original: np.ndarray) -> float:
        """Objective value of a smoothed series against the input it came from."""
        series = np.asarray(series, dtype=np.float64)
        jerk = self._jerk @ series.T
        diff = self.regularization_weight * (series - original)
        return float(np.sum(jerk * jerk) + np.sum(diff * diff))
