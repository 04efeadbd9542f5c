import matplotlib.pyplot as plt

from config.app_config import AppConfig, build_mpc_config
from controllers import PathTrackingMPC
from models import VehicleState, Actuation
from simulation import ClosedLoopSimulator, sine_road
from simulation.closed_loop import fit_reference, local_tracking_errors, to_vehicle_frame
from utils import RunManager, export_results
from visualization import plot_closed_loop, plot_horizon


def main(args: AppConfig):
    """Main execution function."""

    print("=" * 70)
    print("  PATH-TRACKING MPC")
    print("=" * 70)

    # =========================================================================
    print("\n" + "=" * 70)
    print("CONFIGURATION")
    print("=" * 70)

    mpc_config = build_mpc_config(args)
    controller = PathTrackingMPC(mpc_config)
    dims = controller.describe()

    print(f"\nProfile: {args.profile}")
    print(f"Horizon: N={dims['horizon_length']}, dt={dims['dt']}s "
          f"({mpc_config.horizon_time:.2f}s look-ahead)")
    print(f"Latency: {dims['latency_steps']} steps ({mpc_config.latency_time * 1000:.0f}ms), "
          f"applied index {dims['command_index']}")
    print(f"NLP: {dims['n_vars']} variables, {dims['n_constraints']} equality constraints")

    # =========================================================================
    print("\n" + "=" * 70)
    print("SCENARIO")
    print("=" * 70)

    road = sine_road(amplitude=args.amplitude, wavelength=args.wavelength, length=args.road_length)
    initial_pose = (0.0, args.initial_offset, 0.0, args.initial_speed)
    print(f"   Road: {road.name}, {road.length:.0f}m, {road.n_points} waypoints")
    print(f"   Start: offset {args.initial_offset:.2f}m, speed {args.initial_speed:.1f}")

    run_manager = RunManager(road.name) if args.save_results else None

    # Single solve from the start pose, for the horizon plot
    local_x, local_y = to_vehicle_frame(*initial_pose[:3], road.xs[:args.lookahead_points],
                                        road.ys[:args.lookahead_points])
    coeffs = fit_reference(local_x, local_y)
    cte, epsi = local_tracking_errors(coeffs)
    first = controller.solve(VehicleState(0.0, 0.0, 0.0, args.initial_speed, cte, epsi),
                             coeffs, Actuation.zero())
    print(f"   First solve: {first.return_status}, cost {first.cost:.2f}, "
          f"{first.solve_time * 1000:.1f}ms")

    # =========================================================================
    print("\n" + "=" * 70)
    print("CLOSED LOOP")
    print("=" * 70)

    simulator = ClosedLoopSimulator(
        controller,
        road,
        lookahead_points=args.lookahead_points,
        predict_latency=args.predict_latency,
        verbose=args.verbose,
    )
    result = simulator.run(initial_pose=initial_pose, n_steps=args.steps)
    summary = result.summary()

    print(f"\n   Steps:          {summary['steps']} ({'completed' if summary['completed'] else 'step limit'})")
    print(f"   Mean |cte|:     {summary['mean_abs_cte']:.3f}m (max {summary['max_abs_cte']:.3f}m)")
    print(f"   Mean speed:     {summary['mean_speed']:.2f}")
    print(f"   Solver success: {summary['success_rate']:.1f}% ({summary['fail_count']} failed)")
    print(f"   Solve time:     {summary['avg_solve_time'] * 1000:.1f}ms avg, "
          f"{summary['max_solve_time'] * 1000:.1f}ms max")

    if run_manager is not None:
        run_manager.save_json(export_results(result, mpc_config, args), "run")
        run_manager.save_telemetry(result)
        run_manager.save_config(mpc_config)
        run_manager.save_summary(summary)

    # =========================================================================
    if args.plot:
        print("\n" + "=" * 70)
        print("VISUALIZATION")
        print("=" * 70)

        fig_loop = plot_closed_loop(result, config=mpc_config, title=f"{road.name} ({args.profile})")
        fig_horizon = plot_horizon(first, coeffs, config=mpc_config)

        if run_manager is not None:
            run_manager.save_figure(fig_loop, "closed_loop")
            if fig_horizon is not None:
                run_manager.save_figure(fig_horizon, "first_horizon")
        plt.show()

    print("\n" + "=" * 70)
    print("  DONE")
    print("=" * 70)

    return result


if __name__ == "__main__":
    from config.app_config import app
    app()
