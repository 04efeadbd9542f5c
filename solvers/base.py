from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

import numpy as np

from models.kinematic_bicycle import Actuation
from utils.exceptions import NumericalDegeneracy, SolveFailure

# IPOPT return statuses treated as a usable optimum
SUCCESS_STATUSES = frozenset({
    'Solve_Succeeded',
    'Solved_To_Acceptable_Level',
})

# IPOPT return statuses caused by NaN/Inf during function evaluation
DEGENERATE_STATUSES = frozenset({
    'Invalid_Number_Detected',
})


class SolveStatus(Enum):
    SUCCESS = 'success'
    FAILURE = 'failure'


def _empty() -> np.ndarray:
    return np.zeros(0)


@dataclass
class Solution:
    """Outputs of one MPC solve"""

    status: SolveStatus

    # Predicted trajectory, timesteps 0..N-2 (diagnostics / visualisation)
    trajectory_x: np.ndarray = field(default_factory=_empty)
    trajectory_y: np.ndarray = field(default_factory=_empty)

    # Predicted actuation sequence (N-1 steps)
    delta: np.ndarray = field(default_factory=_empty)
    a: np.ndarray = field(default_factory=_empty)

    cost: float = float('nan')

    # Solver metadata
    iterations: int = 0
    return_status: str = ''
    solve_time: float = 0.0
    command_index: int = 0
    degenerate: bool = False
    message: str = ''

    # Full (N, 6) predicted state matrix [x, y, psi, v, cte, epsi]
    predicted_states: Optional[np.ndarray] = None

    @property
    def success(self) -> bool:
        return self.status is SolveStatus.SUCCESS

    def raise_for_status(self) -> None:
        """Raise SolveFailure (or NumericalDegeneracy) if the solve failed."""
        if self.success:
            return
        message = self.message or f"MPC solve failed ({self.return_status or 'no solver status'})"
        if self.degenerate:
            raise NumericalDegeneracy(message, solution=self)
        raise SolveFailure(message, solution=self)

    def command(self) -> Actuation:
        """Actuation to apply this cycle (first unlocked predicted step)."""
        self.raise_for_status()
        idx = self.command_index
        return Actuation(float(self.delta[idx]), float(self.a[idx]))

    @classmethod
    def failed(cls, return_status: str = '', message: str = '', cost: float = float('nan'),
               iterations: int = 0, solve_time: float = 0.0, command_index: int = 0,
               degenerate: bool = False) -> "Solution":
        """Failure result: diagnostics only, no trajectory."""
        return cls(
            status=SolveStatus.FAILURE,
            cost=cost,
            iterations=iterations,
            return_status=return_status,
            solve_time=solve_time,
            command_index=command_index,
            degenerate=degenerate,
            message=message,
        )

    def summary(self) -> Dict:
        """Compact diagnostics, JSON friendly"""
        info = {
            'status': self.status.value,
            'return_status': self.return_status,
            'cost': float(self.cost),
            'iterations': int(self.iterations),
            'solve_time': float(self.solve_time),
        }
        if self.success:
            cmd = self.command()
            info['delta'] = cmd.delta
            info['a'] = cmd.a
        elif self.message:
            info['message'] = self.message
        return info
