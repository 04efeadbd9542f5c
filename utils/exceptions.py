"""Custom exceptions for the path-tracking MPC."""


class MPCError(Exception):
    """Base exception for controller errors."""


class ConfigurationError(MPCError):
    """Raised when the configuration or the solve inputs are invalid."""


class SolveFailure(MPCError):
    """Raised when a solve did not reach an acceptable optimum."""

    def __init__(self, message: str, solution=None):
        super().__init__(message)
        self.solution = solution


class NumericalDegeneracy(SolveFailure):
    """Raised when NaN/Inf values reach the problem or come out of the solver."""
