"""
Tracking NLP Formulation

Decision vector w (see models.layout):
    [x, y, psi, v, cte, epsi] x N   states
    [delta, a] x (N-1)              actuators

Problem:
    minimize    J(w)
    subject to: g(w; coeffs) in [lbg, ubg]     (initial state + kinematic model)
                lbx <= w <= ubx                (actuator limits, latency lock)

    J = Σ_t  w_cte*(cte-cte_ref)² + w_epsi*(epsi-epsi_ref)² + w_v*(v-v_ref)²
      + Σ_t  w_delta*delta² + w_a*a²
      + Σ_t  w_ddelta*(delta[t+1]-delta[t])² + w_da*(a[t+1]-a[t])²

Both J and g are plain arithmetic over the vector so CasADi can derive exact,
sparse gradients, Jacobians and Hessians.
"""

from typing import Tuple

import casadi as ca
import numpy as np

from config.mpc import MPCConfig
from models.kinematic_bicycle import Actuation, predict_next_state
from models.layout import VariableLayout
from utils.exceptions import ConfigurationError

N_COEFFS = 4


class TrackingNLPFormulation:
    """Cost, constraints, bounds and initial guess for one configuration."""

    def __init__(self, config: MPCConfig):
        self.config = config
        self.layout = VariableLayout.for_horizon(config.horizon_length)

    # =====================================================================
    # OBJECTIVE
    # =====================================================================

    def cost_of(self, w):
        """Scalar objective over the decision vector."""
        cfg = self.config
        wt = cfg.weights
        lay = self.layout
        N = lay.N

        cost = 0

        # Reference state tracking
        for t in range(N):
            cost += wt.cte * (w[lay.cte_start + t] - cfg.reference_cte) ** 2
            cost += wt.epsi * (w[lay.epsi_start + t] - cfg.reference_epsi) ** 2
            cost += wt.speed * (w[lay.v_start + t] - cfg.reference_speed) ** 2

        # Actuator use
        for t in range(N - 1):
            cost += wt.steering * w[lay.delta_start + t] ** 2
            cost += wt.throttle * w[lay.a_start + t] ** 2

        # Gap between sequential actuations
        for t in range(N - 2):
            cost += wt.steering_rate * (w[lay.delta_start + t + 1] - w[lay.delta_start + t]) ** 2
            cost += wt.throttle_rate * (w[lay.a_start + t + 1] - w[lay.a_start + t]) ** 2

        return cost

    # =====================================================================
    # CONSTRAINTS
    # =====================================================================

    def dynamics_residual_of(self, w, coeffs):
        """
        Constraint vector (6N rows).

        Rows 0..5 are the timestep-0 state itself (pinned through the
        constraint bounds); rows 6(t+1)..6(t+1)+5 are next - predicted for
        the step t -> t+1.
        """
        cfg = self.config
        lay = self.layout

        rows = list(lay.state_at(w, 0))

        for t in range(lay.N - 1):
            state0 = lay.state_at(w, t)
            state1 = lay.state_at(w, t + 1)
            delta0, a0 = lay.actuation_at(w, t)

            predicted = predict_next_state(state0, delta0, a0, coeffs, cfg.dt, cfg.lf)
            rows.extend(nxt - pred for nxt, pred in zip(state1, predicted))

        return ca.vertcat(*rows)

    def constraint_bounds(self, state: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Zero for the dynamics rows, equal to the state for rows 0..5."""
        n = self.layout.n_constraints
        lbg = np.zeros(n)
        ubg = np.zeros(n)
        lbg[:6] = state
        ubg[:6] = state
        return lbg, ubg

    # =====================================================================
    # VARIABLE BOUNDS
    # =====================================================================

    def variable_bounds(self, previous: Actuation) -> Tuple[np.ndarray, np.ndarray]:
        """
        Lower/upper bounds on the decision vector.

        The first latency_steps actuator entries are fixed to the previous
        command: anything issued now only takes effect after the latency.
        """
        cfg = self.config
        lay = self.layout
        L = cfg.latency_steps

        if L > 0:
            self._check_locked_actuation(previous)

        lbx = np.empty(lay.n_vars)
        ubx = np.empty(lay.n_vars)

        # States are driven by the dynamics only
        lbx[:lay.delta_start] = -cfg.state_bound
        ubx[:lay.delta_start] = cfg.state_bound

        # Steering
        lbx[lay.delta_start:lay.a_start] = -cfg.steering_bound
        ubx[lay.delta_start:lay.a_start] = cfg.steering_bound
        lbx[lay.delta_start:lay.delta_start + L] = previous.delta
        ubx[lay.delta_start:lay.delta_start + L] = previous.delta

        # Acceleration / deceleration
        lbx[lay.a_start:] = -cfg.accel_bound
        ubx[lay.a_start:] = cfg.accel_bound
        lbx[lay.a_start:lay.a_start + L] = previous.a
        ubx[lay.a_start:lay.a_start + L] = previous.a

        return lbx, ubx

    def _check_locked_actuation(self, previous: Actuation):
        cfg = self.config
        if abs(previous.delta) > cfg.steering_bound:
            raise ConfigurationError(
                f"previous delta={previous.delta:.6f} is outside the steering bound "
                f"±{cfg.steering_bound:.6f} and cannot be locked for the latency window"
            )
        if abs(previous.a) > cfg.accel_bound:
            raise ConfigurationError(
                f"previous a={previous.a:.6f} is outside the acceleration bound "
                f"±{cfg.accel_bound:.6f} and cannot be locked for the latency window"
            )

    # =====================================================================
    # INITIAL GUESS
    # =====================================================================

    def initial_guess(self, state: np.ndarray) -> np.ndarray:
        """Zeros, except the timestep-0 state."""
        w0 = np.zeros(self.layout.n_vars)
        w0[list(self.layout.state_starts)] = state
        return w0

    # =====================================================================
    # CASADI OBJECTS
    # =====================================================================

    def build_nlp(self) -> dict:
        """Symbolic NLP with the path coefficients as parameter p."""
        w = ca.SX.sym('w', self.layout.n_vars)
        coeffs = ca.SX.sym('coeffs', N_COEFFS)
        return {
            'x': w,
            'p': coeffs,
            'f': self.cost_of(w),
            'g': self.dynamics_residual_of(w, coeffs),
        }

    def create_functions(self) -> Tuple[ca.Function, ca.Function]:
        """Numeric evaluators: cost(w) and residual(w, coeffs)."""
        w = ca.SX.sym('w', self.layout.n_vars)
        coeffs = ca.SX.sym('coeffs', N_COEFFS)
        cost = ca.Function('cost_of', [w], [self.cost_of(w)])
        residual = ca.Function('dynamics_residual_of', [w, coeffs],
                               [self.dynamics_residual_of(w, coeffs)])
        return cost, residual
