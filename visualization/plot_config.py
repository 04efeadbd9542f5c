"""Shared plotting defaults for the trajectory and closed-loop plots."""

from __future__ import annotations

import math
from typing import Dict, Tuple

import matplotlib.pyplot as plt

DEFAULT_COLORS: Dict[str, str] = {
    "road": "#7f7f7f",
    "vehicle": "#1f77b4",
    "prediction": "#2ca02c",
    "reference": "#d62728",
    "steering": "#9467bd",
    "throttle": "#ff7f0e",
    "locked": "#bbbbbb",
    "failure": "#e31a1c",
}


def apply_plot_style() -> None:
    """Grid, thin spines and compact fonts for dense multi-panel figures."""
    plt.rcParams.update(
        {
            "font.family": "DejaVu Sans",
            "font.size": 9,
            "axes.titlesize": 11,
            "axes.titleweight": "bold",
            "axes.spines.top": False,
            "axes.spines.right": False,
            "axes.grid": True,
            "grid.alpha": 0.3,
            "grid.linestyle": ":",
            "lines.linewidth": 1.5,
            "legend.fontsize": 8,
            "figure.dpi": 110,
        }
    )


def get_actuator_bounds(config=None) -> Tuple[float, float]:
    """Return (steering bound in degrees, acceleration bound)."""
    if config is None:
        return 25.0, 1.0
    return math.degrees(config.steering_bound), float(config.accel_bound)
