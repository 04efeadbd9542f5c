import numpy as np
import matplotlib.pyplot as plt

from models.kinematic_bicycle import reference_y
from visualization.plot_config import DEFAULT_COLORS, apply_plot_style, get_actuator_bounds


def plot_horizon(solution, coeffs, config=None, save_path=None):
    """
    Plot one MPC solution in the vehicle frame.

    Left: predicted trajectory against the reference polynomial.
    Right: predicted steering/throttle, latency-locked steps shaded.
    """
    if not solution.success:
        print(f"Solution not plotted: {solution.return_status or solution.message}")
        return None

    apply_plot_style()
    fig, axes = plt.subplots(1, 2, figsize=(13, 5))

    # --- Plot 1: Predicted path vs reference ---
    ax = axes[0]
    x_max = max(float(np.max(solution.trajectory_x)), 1.0)
    x_ref = np.linspace(0.0, x_max * 1.1, 100)
    ax.plot(x_ref, reference_y(np.asarray(coeffs, dtype=float), x_ref), '--',
            color=DEFAULT_COLORS['reference'], label='Reference f(x)')
    ax.plot(solution.trajectory_x, solution.trajectory_y, 'o-',
            color=DEFAULT_COLORS['prediction'], markersize=3, label='MPC prediction')
    ax.set_xlabel('x (m, vehicle frame)')
    ax.set_ylabel('y (m, vehicle frame)')
    ax.set_title(f'Predicted Trajectory (cost {solution.cost:.2f})')
    ax.legend()

    # --- Plot 2: Actuation sequence ---
    ax = axes[1]
    steps = np.arange(len(solution.delta))
    ax.step(steps, np.degrees(solution.delta), where='post',
            color=DEFAULT_COLORS['steering'], label='delta (deg)')
    ax.step(steps, solution.a, where='post',
            color=DEFAULT_COLORS['throttle'], label='a (-)')

    locked = solution.command_index if config is None else config.latency_steps
    if locked > 0:
        ax.axvspan(0, locked, color=DEFAULT_COLORS['locked'], alpha=0.4, label='Latency lock')
    ax.axvline(solution.command_index, color='k', linestyle=':', alpha=0.6, label='Applied step')

    if config is not None:
        steer_deg, accel = get_actuator_bounds(config)
        ax.axhline(steer_deg, color=DEFAULT_COLORS['steering'], linestyle='--', alpha=0.3)
        ax.axhline(-steer_deg, color=DEFAULT_COLORS['steering'], linestyle='--', alpha=0.3)

    ax.set_xlabel('Step')
    ax.set_title('Predicted Actuation')
    ax.legend()

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"Horizon plot saved to {save_path}")

    return fig


def plot_closed_loop(result, config=None, title=None, save_path=None):
    """Path, tracking errors, commands and solve times of a closed-loop run"""
    apply_plot_style()
    fig, axes = plt.subplots(2, 2, figsize=(14, 10))

    poses = result.poses
    t_ctrl = result.times[:-1]

    # --- Plot 1: Driven path vs road ---
    ax = axes[0, 0]
    if result.road is not None:
        ax.plot(result.road.xs, result.road.ys, '-', color=DEFAULT_COLORS['road'],
                linewidth=4, alpha=0.4, label='Road')
    ax.plot(poses[:, 0], poses[:, 1], '-', color=DEFAULT_COLORS['vehicle'], label='Vehicle')
    for path in result.predicted_paths[::10]:
        ax.plot(path[:, 0], path[:, 1], '-', color=DEFAULT_COLORS['prediction'], linewidth=1, alpha=0.6)

    failed = ~result.solve_success
    if np.any(failed):
        ax.scatter(poses[:-1][failed, 0], poses[:-1][failed, 1], color=DEFAULT_COLORS['failure'],
                   s=12, zorder=3, label='Failed solve')
    ax.set_xlabel('X (m)')
    ax.set_ylabel('Y (m)')
    ax.set_title('Path (green = MPC predictions)')
    ax.set_aspect('equal', adjustable='datalim')
    ax.legend()

    # --- Plot 2: Tracking errors ---
    ax = axes[0, 1]
    ax.plot(t_ctrl, result.cte, color=DEFAULT_COLORS['reference'], label='cte (m)')
    ax.plot(t_ctrl, np.degrees(result.epsi), color=DEFAULT_COLORS['steering'], label='epsi (deg)')
    ax.axhline(0.0, color='k', linewidth=0.8, alpha=0.5)
    ax.set_xlabel('Time (s)')
    ax.set_title('Tracking Errors')
    ax.legend()

    # --- Plot 3: Commands ---
    ax = axes[1, 0]
    ax.plot(t_ctrl, np.degrees(result.commands[:, 0]), color=DEFAULT_COLORS['steering'],
            label='delta (deg)')
    ax2 = ax.twinx()
    ax2.plot(t_ctrl, result.commands[:, 1], color=DEFAULT_COLORS['throttle'], label='a (-)')
    ax2.plot(result.times, poses[:, 3] / max(np.max(np.abs(poses[:, 3])), 1e-6), ':',
             color=DEFAULT_COLORS['vehicle'], label='v (normalised)')
    ax2.set_ylim(-1.1, 1.1)
    ax2.grid(False)
    ax.set_xlabel('Time (s)')
    ax.set_ylabel('Steering (deg)')
    ax2.set_ylabel('Throttle / speed')
    ax.set_title('Issued Commands')
    lines = ax.get_legend_handles_labels()
    lines2 = ax2.get_legend_handles_labels()
    ax.legend(lines[0] + lines2[0], lines[1] + lines2[1], loc='upper right')

    # --- Plot 4: Solve times ---
    ax = axes[1, 1]
    ax.plot(t_ctrl, result.solve_times * 1000.0, color=DEFAULT_COLORS['vehicle'])
    if config is not None:
        ax.axhline(config.solver_time_budget * 1000.0, color='k', linestyle='--', alpha=0.4,
                   label='Time budget')
        ax.legend()
    ax.set_xlabel('Time (s)')
    ax.set_ylabel('Solve time (ms)')
    ax.set_title(f'Solver ({result.success_rate:.0f}% success)')

    plt.suptitle(title or 'Closed-Loop Path Tracking', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"Closed-loop plot saved to {save_path}")

    return fig
