from .base import (
    Solution,
    SolveStatus,
    SUCCESS_STATUSES,
    DEGENERATE_STATUSES,
)

from .formulation import (
    TrackingNLPFormulation,
    N_COEFFS,
)

__all__ = [
    # Results
    'Solution',
    'SolveStatus',
    'SUCCESS_STATUSES',
    'DEGENERATE_STATUSES',

    # NLP
    'TrackingNLPFormulation',
    'N_COEFFS',
]
