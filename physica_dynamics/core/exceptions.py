"""
Exceptions raised by the dynamics fitting pipeline.
"""


class DynamicsFitError(RuntimeError):
    """Base class for dynamics fitting errors."""


class MissingContactAnnotationError(DynamicsFitError):
    """
    Raised when the loss or gradient is evaluated before every trial has
    per-frame missing-GRF flags.

    Run DynamicsFitter.estimate_foot_ground_contacts() on the initialization
    first.
    """

    def __init__(self, num_annotated: int, num_trials: int):
        self.num_annotated = num_annotated
        self.num_trials = num_trials
        super().__init__(
            f"probably_missing_grf covers {num_annotated} of {num_trials} trials. "
            "Call estimate_foot_ground_contacts() before running the optimizer."
        )


class SolverError(DynamicsFitError):
    """Raised when the solver cannot be started on a problem."""
