from .mpc import (
    PathTrackingMPC,
    solve,
)

__all__ = [
    'PathTrackingMPC',
    'solve',
]
