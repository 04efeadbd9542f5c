"""
Kinematic bicycle model in the vehicle's local frame.

State:   [x, y, psi, v, cte, epsi]
Control: [delta, a]

    x'    = x + v*cos(psi)*dt
    y'    = y + v*sin(psi)*dt
    psi'  = psi + v/Lf*delta*dt
    v'    = v + a*dt
    cte'  = (f(x) - y) + v*sin(epsi)*dt
    epsi' = (psi - psi_des(x)) + v*delta/Lf*dt

with f the cubic reference path and psi_des = atan(f'(x)).

The model functions only use arithmetic and CasADi intrinsics so the same code
builds the symbolic NLP constraints and the numeric forward simulation.
"""

from dataclasses import dataclass
from typing import Sequence

import casadi as ca
import numpy as np

from models.layout import STATE_FIELDS


@dataclass(frozen=True)
class VehicleState:
    """Vehicle state at one instant, in the local path frame"""
    x: float = 0.0
    y: float = 0.0
    psi: float = 0.0
    v: float = 0.0
    cte: float = 0.0
    epsi: float = 0.0

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.psi, self.v, self.cte, self.epsi], dtype=float)

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "VehicleState":
        values = np.asarray(values, dtype=float).ravel()
        return cls(**{name: float(val) for name, val in zip(STATE_FIELDS, values)})


@dataclass(frozen=True)
class Actuation:
    """Steering angle [rad] and normalised acceleration [-]"""
    delta: float = 0.0
    a: float = 0.0

    @classmethod
    def zero(cls) -> "Actuation":
        return cls(0.0, 0.0)

    def as_array(self) -> np.ndarray:
        return np.array([self.delta, self.a], dtype=float)


def reference_y(coeffs, x):
    """f(x) = c0 + c1*x + c2*x^2 + c3*x^3"""
    return coeffs[0] + coeffs[1] * x + coeffs[2] * x * x + coeffs[3] * x * x * x


def reference_heading(coeffs, x):
    """Tangent angle of the reference path at x"""
    return ca.atan(coeffs[1] + 2 * coeffs[2] * x + 3 * coeffs[3] * x * x)


def predict_next_state(state, delta, a, coeffs, dt: float, lf: float) -> tuple:
    """One Euler step of the kinematic bicycle model."""
    x, y, psi, v, cte, epsi = state

    f0 = reference_y(coeffs, x)
    psides = reference_heading(coeffs, x)

    return (
        x + v * ca.cos(psi) * dt,
        y + v * ca.sin(psi) * dt,
        psi + v / lf * delta * dt,
        v + a * dt,
        (f0 - y) + v * ca.sin(epsi) * dt,
        (psi - psides) + v * delta / lf * dt,
    )


def create_step_function(dt: float, lf: float) -> ca.Function:
    """Compiled model step: (state[6], control[2], coeffs[4]) -> next state[6]"""
    state = ca.SX.sym('state', 6)
    control = ca.SX.sym('control', 2)
    coeffs = ca.SX.sym('coeffs', 4)

    next_state = predict_next_state(
        [state[i] for i in range(6)], control[0], control[1], coeffs, dt, lf
    )
    return ca.Function('kinematic_step', [state, control, coeffs], [ca.vertcat(*next_state)],
                       ['state', 'control', 'coeffs'], ['next_state'])


def rollout(initial_state, deltas, accels, coeffs, dt: float, lf: float) -> np.ndarray:
    """
    Forward-simulate an actuation sequence.

    Returns:
        (len(deltas) + 1, 6) array of states, starting with initial_state
    """
    if isinstance(initial_state, VehicleState):
        initial_state = initial_state.as_array()

    step = create_step_function(dt, lf)
    coeffs = np.asarray(coeffs, dtype=float)

    states = [np.asarray(initial_state, dtype=float).ravel()]
    for delta, a in zip(deltas, accels):
        nxt = step(states[-1], np.array([delta, a], dtype=float), coeffs)
        states.append(nxt.full().flatten())

    return np.vstack(states)


def integrate_pose(pose: np.ndarray, actuation: Actuation, dt: float, lf: float) -> np.ndarray:
    """
    Advance a world-frame pose [x, y, psi, v] by one step.

    Used by the closed-loop plant, which has no path-relative errors.
    """
    x, y, psi, v = pose
    return np.array([
        x + v * np.cos(psi) * dt,
        y + v * np.sin(psi) * dt,
        psi + v / lf * actuation.delta * dt,
        v + actuation.a * dt,
    ])
