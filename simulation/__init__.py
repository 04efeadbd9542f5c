from .closed_loop import (
    Road,
    sine_road,
    ClosedLoopSimulator,
    ClosedLoopResult,
)

__all__ = [
    'Road',
    'sine_road',
    'ClosedLoopSimulator',
    'ClosedLoopResult',
]
