"""
Decision-variable layout of the tracking NLP.

The flat vector holds six N-length state blocks followed by two (N-1)-length
actuator blocks:

    [ x | y | psi | v | cte | epsi | delta | a ]
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np

STATE_FIELDS = ('x', 'y', 'psi', 'v', 'cte', 'epsi')
ACTUATION_FIELDS = ('delta', 'a')


@dataclass(frozen=True)
class VariableLayout:
    """Block offsets into the decision vector for a horizon of N steps"""

    N: int

    @classmethod
    def for_horizon(cls, horizon_length: int) -> "VariableLayout":
        return cls(N=int(horizon_length))

    # State blocks (length N)
    @property
    def x_start(self) -> int:
        return 0

    @property
    def y_start(self) -> int:
        return self.x_start + self.N

    @property
    def psi_start(self) -> int:
        return self.y_start + self.N

    @property
    def v_start(self) -> int:
        return self.psi_start + self.N

    @property
    def cte_start(self) -> int:
        return self.v_start + self.N

    @property
    def epsi_start(self) -> int:
        return self.cte_start + self.N

    # Actuator blocks (length N - 1)
    @property
    def delta_start(self) -> int:
        return self.epsi_start + self.N

    @property
    def a_start(self) -> int:
        return self.delta_start + self.N - 1

    @property
    def n_vars(self) -> int:
        return self.a_start + self.N - 1

    @property
    def n_constraints(self) -> int:
        return 6 * self.N

    @property
    def n_actuations(self) -> int:
        return self.N - 1

    @property
    def state_starts(self) -> Tuple[int, ...]:
        """Block offsets in STATE_FIELDS order"""
        return (self.x_start, self.y_start, self.psi_start,
                self.v_start, self.cte_start, self.epsi_start)

    def state_at(self, w, t: int) -> tuple:
        """(x, y, psi, v, cte, epsi) at timestep t"""
        return tuple(w[start + t] for start in self.state_starts)

    def actuation_at(self, w, t: int) -> tuple:
        """(delta, a) at timestep t"""
        return w[self.delta_start + t], w[self.a_start + t]

    def unpack_states(self, w: np.ndarray) -> np.ndarray:
        """Numeric decision vector -> (N, 6) state matrix"""
        w = np.asarray(w, dtype=float).ravel()
        return np.column_stack([w[start:start + self.N] for start in self.state_starts])

    def unpack_actuations(self, w: np.ndarray) -> np.ndarray:
        """Numeric decision vector -> (N-1, 2) actuation matrix"""
        w = np.asarray(w, dtype=float).ravel()
        return np.column_stack([
            w[self.delta_start:self.a_start],
            w[self.a_start:self.n_vars],
        ])
