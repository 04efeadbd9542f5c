"""
Path-Tracking Model Predictive Controller

Each control cycle:
1. Build bounds from the current state and the previously issued actuation
2. Solve the tracking NLP with IPOPT (coefficients passed as parameters)
3. Validate the solver status
4. Extract the predicted trajectory and the first unlocked actuation

The NLP is built once per configuration; only bounds, initial guess and path
coefficients change between cycles.
"""

import math
import time
from functools import lru_cache
from typing import Dict, Optional, Sequence, Union

import casadi as ca
import numpy as np

from config.mpc import MPCConfig
from models.kinematic_bicycle import Actuation, VehicleState
from solvers.base import DEGENERATE_STATUSES, SUCCESS_STATUSES, Solution, SolveStatus
from solvers.formulation import N_COEFFS, TrackingNLPFormulation
from utils.exceptions import ConfigurationError

StateLike = Union[VehicleState, Sequence[float], np.ndarray]

# Wall-time limits of deadline solvers are multiples of this [s]
BUDGET_STEP = 0.01


class PathTrackingMPC:
    """
    MPC for steering/throttle along a cubic reference path

    Holds no state between solves apart from the compiled solver.
    """

    def __init__(self, config: Optional[MPCConfig] = None):
        self.config = (config or MPCConfig()).validate()
        self.formulation = TrackingNLPFormulation(self.config)
        self.layout = self.formulation.layout

        self._nlp = self.formulation.build_nlp()

        build_start = time.monotonic()
        self._solver = self._create_solver(self.config.solver_time_budget)
        self._build_time = time.monotonic() - build_start

        # Deadline solvers keyed by wall-time limit in BUDGET_STEP units
        self._deadline_solvers: Dict[int, object] = {}

        self._log(f"Horizon: {self.layout.N} steps x {self.config.dt:.3f}s, "
                  f"latency {self.config.latency_steps} steps, "
                  f"{self.layout.n_vars} variables / {self.layout.n_constraints} constraints")

    def _log(self, message: str):
        """Print message if verbose mode is on"""
        if self.config.verbose:
            print(f"   [PathMPC] {message}")

    def _create_solver(self, time_budget: float):
        """Configure IPOPT for the tracking NLP."""
        cfg = self.config
        opts = {
            'ipopt.print_level': 3 if cfg.verbose else 0,
            'ipopt.sb': 'yes',
            'print_time': 0,
            'ipopt.tol': cfg.tol,
            'ipopt.acceptable_tol': cfg.acceptable_tol,
            'ipopt.max_iter': cfg.max_iter,
            'ipopt.max_wall_time': float(time_budget),
            'ipopt.linear_solver': cfg.linear_solver,
            'ipopt.hessian_approximation': 'exact',
            'error_on_fail': False,
        }
        return ca.nlpsol('path_mpc', 'ipopt', self._nlp, opts)

    def _solver_for(self, time_budget: float):
        """
        Solver whose IPOPT wall-time limit fits in time_budget.

        A budget shorter than the configured one selects a deadline solver.
        A fresh build gets the budget minus the longest build time measured so
        far, and is cached for later cycles. Returns None when nothing fits.
        """
        if time_budget >= self.config.solver_time_budget:
            return self._solver

        steps = int(time_budget / BUDGET_STEP)
        reserve = int(math.ceil(self._build_time / BUDGET_STEP))

        # A cached limit within one build time of the budget beats building
        usable = [k for k in self._deadline_solvers if steps - reserve <= k <= steps]
        if usable:
            return self._deadline_solvers[max(usable)]

        steps -= reserve
        if steps < 1:
            return None

        self._log(f"Deadline limits solve to {steps * BUDGET_STEP * 1000:.0f}ms")
        build_start = time.monotonic()
        solver = self._create_solver(steps * BUDGET_STEP)
        self._build_time = max(self._build_time, time.monotonic() - build_start)
        self._deadline_solvers[steps] = solver
        return solver

    def solve(self,
              state: StateLike,
              coeffs: Sequence[float],
              previous_actuation: Actuation,
              deadline: Optional[float] = None) -> Solution:
        """
        Solve one MPC cycle.

        Args:
            state: [x, y, psi, v, cte, epsi] in the local path frame
            coeffs: cubic reference polynomial [c0, c1, c2, c3]
            previous_actuation: command issued in the previous cycle
            deadline: optional absolute time.monotonic() deadline

        Returns:
            Solution; status FAILURE carries diagnostics but no trajectory
        """
        cfg = self.config
        lay = self.layout
        start_time = time.monotonic()

        state_arr = self._as_state_array(state)
        coeffs_arr = self._as_coeff_array(coeffs)
        previous = self._as_actuation(previous_actuation)

        # Fails fast on an unlockable previous command
        lbx, ubx = self.formulation.variable_bounds(previous)

        inputs = np.concatenate([state_arr, coeffs_arr, previous.as_array()])
        if not np.all(np.isfinite(inputs)):
            self._log("Non-finite state, coefficients or previous actuation")
            return Solution.failed(
                return_status='Invalid_Input',
                message="NaN/Inf in state, path coefficients or previous actuation",
                command_index=cfg.applied_index,
                degenerate=True,
            )

        time_budget = cfg.solver_time_budget
        if deadline is not None:
            time_budget = min(time_budget, deadline - start_time)
            if time_budget <= 0:
                return self._deadline_expired()

        lbg, ubg = self.formulation.constraint_bounds(state_arr)
        w0 = self.formulation.initial_guess(state_arr)

        solver = self._solver_for(time_budget)
        if solver is None or (deadline is not None and time.monotonic() >= deadline):
            return self._deadline_expired()

        result = solver(x0=w0, p=coeffs_arr, lbx=lbx, ubx=ubx, lbg=lbg, ubg=ubg)
        stats = solver.stats()
        solve_time = time.monotonic() - start_time

        return_status = str(stats.get('return_status', ''))
        iterations = int(stats.get('iter_count', 0))
        cost = float(result['f'])
        w_opt = result['x'].full().flatten()

        if return_status not in SUCCESS_STATUSES:
            self._log(f"Solve failed: {return_status} after {iterations} iterations")
            return Solution.failed(
                return_status=return_status,
                message=f"IPOPT returned {return_status}",
                cost=cost,
                iterations=iterations,
                solve_time=solve_time,
                command_index=cfg.applied_index,
                degenerate=return_status in DEGENERATE_STATUSES,
            )

        if not (np.isfinite(cost) and np.all(np.isfinite(w_opt))):
            self._log("Solver returned NaN/Inf")
            return Solution.failed(
                return_status=return_status,
                message="Solver output contains NaN/Inf",
                cost=cost,
                iterations=iterations,
                solve_time=solve_time,
                command_index=cfg.applied_index,
                degenerate=True,
            )

        states = lay.unpack_states(w_opt)
        actuations = lay.unpack_actuations(w_opt)

        # IPOPT relaxes bounds by ~1e-8; returned controls must be lockable next cycle
        actuations[:, 0] = np.clip(actuations[:, 0], -cfg.steering_bound, cfg.steering_bound)
        actuations[:, 1] = np.clip(actuations[:, 1], -cfg.accel_bound, cfg.accel_bound)

        self._log(f"Cost {cost:.4f} ({return_status}, {iterations} iterations, "
                  f"{solve_time * 1000:.1f}ms)")

        return Solution(
            status=SolveStatus.SUCCESS,
            trajectory_x=states[:-1, 0].copy(),
            trajectory_y=states[:-1, 1].copy(),
            delta=actuations[:, 0].copy(),
            a=actuations[:, 1].copy(),
            cost=cost,
            iterations=iterations,
            return_status=return_status,
            solve_time=solve_time,
            command_index=cfg.applied_index,
            predicted_states=states,
        )

    def _deadline_expired(self) -> Solution:
        self._log("Deadline expired before solve")
        return Solution.failed(
            return_status='Deadline_Expired',
            message="Deadline expired before the solver was invoked",
            command_index=self.config.applied_index,
        )

    def get_control(self, state: StateLike, coeffs: Sequence[float],
                    previous_actuation: Actuation) -> Actuation:
        """
        Simple control interface: the command to apply, or SolveFailure.
        """
        return self.solve(state, coeffs, previous_actuation).command()

    def describe(self) -> Dict:
        """Problem dimensions, for logs and run summaries"""
        cfg = self.config
        return {
            'horizon_length': self.layout.N,
            'dt': cfg.dt,
            'latency_steps': cfg.latency_steps,
            'n_vars': self.layout.n_vars,
            'n_constraints': self.layout.n_constraints,
            'command_index': cfg.applied_index,
        }

    @staticmethod
    def _as_state_array(state: StateLike) -> np.ndarray:
        if isinstance(state, VehicleState):
            return state.as_array()
        arr = np.asarray(state, dtype=float).ravel()
        if arr.shape != (6,):
            raise ConfigurationError(f"state must have 6 entries [x, y, psi, v, cte, epsi], got {arr.shape[0]}")
        return arr

    @staticmethod
    def _as_coeff_array(coeffs: Sequence[float]) -> np.ndarray:
        arr = np.asarray(coeffs, dtype=float).ravel()
        if arr.shape != (N_COEFFS,):
            raise ConfigurationError(
                f"reference polynomial needs {N_COEFFS} coefficients (degree 3), got {arr.shape[0]}"
            )
        return arr

    @staticmethod
    def _as_actuation(previous: Union[Actuation, Sequence[float]]) -> Actuation:
        if isinstance(previous, Actuation):
            return previous
        values = np.asarray(previous, dtype=float).ravel()
        if values.shape != (2,):
            raise ConfigurationError(f"previous actuation must be [delta, a], got {values.shape[0]} values")
        return Actuation(float(values[0]), float(values[1]))


@lru_cache(maxsize=8)
def _controller_for(config: MPCConfig) -> PathTrackingMPC:
    return PathTrackingMPC(config)


def solve(state: StateLike,
          coeffs: Sequence[float],
          previous_actuation: Actuation,
          config: Optional[MPCConfig] = None,
          deadline: Optional[float] = None) -> Solution:
    """
    Solve(state, coeffs, previous_actuation, config) -> Solution

    Controllers are cached per (immutable) configuration, so calling this every
    cycle does not rebuild the NLP.
    """
    controller = _controller_for(config or MPCConfig())
    return controller.solve(state, coeffs, previous_actuation, deadline=deadline)
