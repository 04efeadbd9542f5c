from .plot_config import apply_plot_style, DEFAULT_COLORS
from .trajectory_viz import plot_horizon, plot_closed_loop

__all__ = [
    'apply_plot_style',
    'DEFAULT_COLORS',
    'plot_horizon',
    'plot_closed_loop',
    ]
