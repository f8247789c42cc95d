"""Exceptions raised by the penalty evaluation engine."""


class FletcherPenaltyError(Exception):
    """Base class for all errors raised by fletcher-jax."""


class DimensionError(FletcherPenaltyError, ValueError):
    """An input vector or output buffer has the wrong length."""


class LinearSolverError(FletcherPenaltyError):
    """A saddle-point or auxiliary linear solve failed.

    Attributes:
        iterations: Iterations performed, when the solver is iterative.
        residual_norm: Last residual norm the solver observed, if any.
    """

    def __init__(self, message, iterations=None, residual_norm=None):
        super().__init__(message)
        self.iterations = iterations
        self.residual_norm = residual_norm


class SingularSystemError(LinearSolverError):
    """The system is singular or numerically singular."""


class NonConvergenceError(LinearSolverError):
    """An iterative solve stopped before reaching its tolerance."""


class NonFiniteValueError(FletcherPenaltyError, FloatingPointError):
    """A NaN or Inf showed up in a model value or a solve result."""
