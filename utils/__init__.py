from .exceptions import MPCError, ConfigurationError, SolveFailure, NumericalDegeneracy
from .run_manager import RunManager, export_results, to_serializable

__all__ = [
    'MPCError',
    'ConfigurationError',
    'SolveFailure',
    'NumericalDegeneracy',
    'RunManager',
    'export_results',
    'to_serializable',
]
