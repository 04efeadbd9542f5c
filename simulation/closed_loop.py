"""
Closed-loop simulation of the path-tracking MPC.

Plays the part of the surrounding control loop:
    world pose -> look-ahead waypoints -> vehicle frame -> cubic fit
    -> local state (cte, epsi) -> MPC -> actuator (with latency) -> plant

The plant is the kinematic bicycle in world coordinates. Commands take effect
`latency_steps` cycles after they are issued.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from models.kinematic_bicycle import Actuation, VehicleState, integrate_pose


@dataclass
class Road:
    """Reference waypoints in world coordinates"""
    xs: np.ndarray
    ys: np.ndarray
    name: str = "road"

    @property
    def n_points(self) -> int:
        return len(self.xs)

    @property
    def length(self) -> float:
        return float(np.sum(np.hypot(np.diff(self.xs), np.diff(self.ys))))


def sine_road(amplitude: float = 4.0,
              wavelength: float = 120.0,
              length: float = 400.0,
              spacing: float = 2.0) -> Road:
    """Sinusoidal road along the world x axis. amplitude=0 gives a straight."""
    xs = np.arange(0.0, length + spacing, spacing)
    ys = amplitude * np.sin(2.0 * np.pi * xs / wavelength)
    name = "straight" if amplitude == 0 else f"sine_a{amplitude:g}_w{wavelength:g}"
    return Road(xs=xs, ys=ys, name=name)


def to_vehicle_frame(px: float, py: float, psi: float,
                     xs: np.ndarray, ys: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """World waypoints -> vehicle frame (origin at the car, x along heading)"""
    dx = np.asarray(xs, dtype=float) - px
    dy = np.asarray(ys, dtype=float) - py
    cos_psi = np.cos(psi)
    sin_psi = np.sin(psi)
    return dx * cos_psi + dy * sin_psi, -dx * sin_psi + dy * cos_psi


def to_world_frame(px: float, py: float, psi: float,
                   xs: np.ndarray, ys: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse of to_vehicle_frame"""
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    cos_psi = np.cos(psi)
    sin_psi = np.sin(psi)
    return px + xs * cos_psi - ys * sin_psi, py + xs * sin_psi + ys * cos_psi


def fit_reference(xs: np.ndarray, ys: np.ndarray, degree: int = 3) -> np.ndarray:
    """Least-squares polynomial fit, returned as 4 ascending coefficients."""
    coeffs = np.polyfit(xs, ys, degree)[::-1]
    out = np.zeros(4)
    out[:len(coeffs)] = coeffs
    return out


def local_tracking_errors(coeffs: np.ndarray) -> Tuple[float, float]:
    """
    cte and epsi of a car at the local origin with zero heading.

    cte = f(0) - 0, epsi = 0 - atan(f'(0))
    """
    return float(coeffs[0]), float(-np.arctan(coeffs[1]))


def latency_shifted_state(v: float, cte: float, epsi: float,
                          actuation: Actuation, latency_time: float, lf: float) -> VehicleState:
    """Propagate the local state over the actuation latency with the last command."""
    if latency_time <= 0:
        return VehicleState(0.0, 0.0, 0.0, v, cte, epsi)

    return VehicleState(
        x=v * latency_time,
        y=0.0,
        psi=v / lf * actuation.delta * latency_time,
        v=v + actuation.a * latency_time,
        cte=cte + v * np.sin(epsi) * latency_time,
        epsi=epsi + v * actuation.delta / lf * latency_time,
    )


@dataclass
class ClosedLoopResult:
    """Container for closed-loop telemetry"""

    times: np.ndarray              # (n+1,) [s]
    poses: np.ndarray              # (n+1, 4) world [x, y, psi, v]
    cte: np.ndarray                # (n,) local cte seen by the controller
    epsi: np.ndarray               # (n,) local epsi seen by the controller
    commands: np.ndarray           # (n, 2) issued [delta, a]
    solve_times: np.ndarray        # (n,) [s]
    solve_success: np.ndarray      # (n,) bool
    completed: bool                # reached the end of the road

    road: Optional[Road] = None
    predicted_paths: List[np.ndarray] = field(default_factory=list)

    @property
    def n_steps(self) -> int:
        return len(self.commands)

    @property
    def fail_count(self) -> int:
        return int(np.sum(~self.solve_success)) if self.n_steps else 0

    @property
    def success_rate(self) -> float:
        if self.n_steps == 0:
            return 0.0
        return 100.0 * float(np.mean(self.solve_success))

    def summary(self) -> Dict:
        return {
            'steps': self.n_steps,
            'completed': bool(self.completed),
            'distance_x': float(self.poses[-1, 0] - self.poses[0, 0]),
            'mean_abs_cte': float(np.mean(np.abs(self.cte))) if self.n_steps else 0.0,
            'max_abs_cte': float(np.max(np.abs(self.cte))) if self.n_steps else 0.0,
            'mean_speed': float(np.mean(self.poses[:, 3])),
            'success_rate': self.success_rate,
            'fail_count': self.fail_count,
            'avg_solve_time': float(np.mean(self.solve_times)) if self.n_steps else 0.0,
            'max_solve_time': float(np.max(self.solve_times)) if self.n_steps else 0.0,
        }


class ClosedLoopSimulator:
    """Drive the kinematic plant along a road with a path-tracking controller"""

    def __init__(self,
                 controller,
                 road: Road,
                 lookahead_points: int = 12,
                 predict_latency: bool = False,
                 verbose: bool = False):
        """
        Args:
            controller: object with .config (MPCConfig) and
                .solve(state, coeffs, previous_actuation) -> Solution
            road: reference waypoints
            lookahead_points: waypoints used for each polynomial fit (>= 4)
            predict_latency: feed the latency-propagated state to the controller
        """
        if lookahead_points < 4:
            raise ValueError("A cubic fit needs at least 4 look-ahead points")

        self.controller = controller
        self.config = controller.config
        self.road = road
        self.lookahead_points = lookahead_points
        self.predict_latency = predict_latency
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(f"   [ClosedLoop] {message}")

    def _reference_window(self, pose: np.ndarray) -> Optional[np.ndarray]:
        """Indices of the look-ahead waypoints, None at the end of the road"""
        d2 = (self.road.xs - pose[0]) ** 2 + (self.road.ys - pose[1]) ** 2
        nearest = int(np.argmin(d2))
        window = np.arange(nearest, min(nearest + self.lookahead_points, self.road.n_points))
        if len(window) < self.lookahead_points:
            return None
        return window

    def run(self,
            initial_pose: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 10.0),
            n_steps: int = 200) -> ClosedLoopResult:
        """
        Simulate up to n_steps control cycles.

        Args:
            initial_pose: world [x, y, psi, v]
            n_steps: maximum number of control cycles

        Returns:
            ClosedLoopResult with complete telemetry
        """
        cfg = self.config
        pose = np.asarray(initial_pose, dtype=float)

        # Issued commands still travelling through the actuation delay
        in_flight = deque([Actuation.zero()] * cfg.latency_steps)
        previous = Actuation.zero()

        times = [0.0]
        poses = [pose.copy()]
        cte_history = []
        epsi_history = []
        commands = []
        solve_times = []
        solve_success = []
        predicted_paths = []
        completed = False

        for k in range(n_steps):
            window = self._reference_window(pose)
            if window is None:
                completed = True
                break

            local_x, local_y = to_vehicle_frame(pose[0], pose[1], pose[2],
                                                self.road.xs[window], self.road.ys[window])
            coeffs = fit_reference(local_x, local_y)
            cte, epsi = local_tracking_errors(coeffs)

            if self.predict_latency:
                state = latency_shifted_state(pose[3], cte, epsi, previous, cfg.latency_time, cfg.lf)
            else:
                state = VehicleState(0.0, 0.0, 0.0, pose[3], cte, epsi)

            start = time.monotonic()
            solution = self.controller.solve(state, coeffs, previous)
            solve_times.append(time.monotonic() - start)
            solve_success.append(solution.success)

            if solution.success:
                command = solution.command()
                predicted_paths.append(np.column_stack(
                    to_world_frame(pose[0], pose[1], pose[2],
                                   solution.trajectory_x, solution.trajectory_y)
                ))
            else:
                # Hold the last command; the MPC never hands out a failed plan
                command = previous
                self._log(f"Step {k}: solve failed ({solution.return_status}), holding command")

            in_flight.append(command)
            applied = in_flight.popleft()
            pose = integrate_pose(pose, applied, cfg.dt, cfg.lf)
            previous = command

            cte_history.append(cte)
            epsi_history.append(epsi)
            commands.append(command.as_array())
            times.append(times[-1] + cfg.dt)
            poses.append(pose.copy())

        result = ClosedLoopResult(
            times=np.array(times),
            poses=np.vstack(poses),
            cte=np.array(cte_history),
            epsi=np.array(epsi_history),
            commands=np.array(commands).reshape(-1, 2),
            solve_times=np.array(solve_times),
            solve_success=np.array(solve_success, dtype=bool),
            completed=completed,
            road=self.road,
            predicted_paths=predicted_paths,
        )

        self._log(f"{result.n_steps} steps, mean |cte| {result.summary()['mean_abs_cte']:.3f}m, "
                  f"{result.fail_count} failed solves")
        return result
