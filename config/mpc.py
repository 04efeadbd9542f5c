"""
MPC Configuration

Horizon, model and solver settings for the path-tracking controller.

The default profile matches the tuning used on the simulator track:
- 12 steps of 50ms (0.6s look-ahead)
- 2 steps (100ms) of actuation latency
- Lf = 2.67m, obtained by matching the turning radius of the simulated car
  at constant steering and speed
"""

import math
from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping, Optional

from utils.exceptions import ConfigurationError


@dataclass(frozen=True)
class CostWeights:
    """Weights of the NLP objective terms"""

    # Reference tracking
    cte: float = 1.0
    epsi: float = 1.0
    speed: float = 1.0

    # Actuator magnitude
    steering: float = 1.0
    throttle: float = 1.0

    # Actuator smoothness. Steering chatter is penalised far harder than jerk.
    steering_rate: float = 700.0
    throttle_rate: float = 1.0


@dataclass(frozen=True)
class MPCConfig:
    """Configuration for one MPC solve (immutable, hashable)"""

    # Horizon
    horizon_length: int = 12            # N, number of predicted states
    dt: float = 0.05                    # [s] Step length
    latency_steps: int = 2              # Actuator latency in units of dt

    # Vehicle model
    lf: float = 2.67                    # [m] Front axle to CoG

    # Reference
    reference_speed: float = 75.0
    reference_cte: float = 0.0
    reference_epsi: float = 0.0

    weights: CostWeights = field(default_factory=CostWeights)

    # Bounds
    steering_bound: float = 0.436332    # [rad] 25 deg
    accel_bound: float = 1.0            # [-] Normalised throttle/brake
    state_bound: float = 1.0e17         # States are left to the dynamics

    # Solver settings
    solver_time_budget: float = 0.5     # [s] Wall-clock limit per solve
    tol: float = 1e-6
    acceptable_tol: float = 1e-4
    max_iter: int = 200
    linear_solver: str = "mumps"

    # Index of the predicted actuation that is applied. None -> first unlocked.
    command_index: Optional[int] = None
    verbose: bool = False

    @property
    def n_vars(self) -> int:
        """Length of the flat decision vector"""
        return 6 * self.horizon_length + 2 * (self.horizon_length - 1)

    @property
    def n_constraints(self) -> int:
        return 6 * self.horizon_length

    @property
    def applied_index(self) -> int:
        """Index of the delta/a sequence that becomes the actuator command"""
        if self.command_index is None:
            return self.latency_steps
        return self.command_index

    @property
    def latency_time(self) -> float:
        """Actuation latency in seconds"""
        return self.latency_steps * self.dt

    @property
    def horizon_time(self) -> float:
        return (self.horizon_length - 1) * self.dt

    def validate(self) -> "MPCConfig":
        """Raise ConfigurationError if the configuration cannot be solved."""
        N = self.horizon_length

        if not isinstance(N, int) or N < 2:
            raise ConfigurationError(f"horizon_length must be an integer >= 2, got {N!r}")
        if not math.isfinite(self.dt) or self.dt <= 0:
            raise ConfigurationError(f"dt must be positive, got {self.dt}")
        if not isinstance(self.latency_steps, int) or self.latency_steps < 0:
            raise ConfigurationError(f"latency_steps must be a non-negative integer, got {self.latency_steps!r}")
        if self.latency_steps >= N - 1:
            raise ConfigurationError(
                f"latency_steps={self.latency_steps} locks every actuator step of a horizon "
                f"with {N - 1} steps; use latency_steps < horizon_length - 1"
            )
        if not math.isfinite(self.lf) or self.lf <= 0:
            raise ConfigurationError(f"lf must be positive, got {self.lf}")

        for name in ("steering_bound", "accel_bound", "state_bound"):
            value = getattr(self, name)
            if not value >= 0:
                raise ConfigurationError(f"{name} must be non-negative, got {value}")

        for name in ("solver_time_budget", "tol", "acceptable_tol"):
            value = getattr(self, name)
            if not value > 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")
        if self.max_iter < 1:
            raise ConfigurationError(f"max_iter must be >= 1, got {self.max_iter}")

        for weight in fields(self.weights):
            value = getattr(self.weights, weight.name)
            if not math.isfinite(value) or value < 0:
                raise ConfigurationError(f"weight '{weight.name}' must be finite and >= 0, got {value}")

        idx = self.applied_index
        if not self.latency_steps <= idx <= N - 2:
            raise ConfigurationError(
                f"command_index={idx} must select an unlocked step in "
                f"[{self.latency_steps}, {N - 2}]"
            )
        return self

    def with_overrides(self, data: Mapping[str, Any]) -> "MPCConfig":
        """Copy with the given fields replaced; `weights` may be a partial mapping."""
        known = {f.name for f in fields(self)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown MPC config keys: {sorted(unknown)}")

        values = dict(data)
        weights = values.get("weights")
        if isinstance(weights, Mapping):
            weight_names = {f.name for f in fields(CostWeights)}
            bad = set(weights) - weight_names
            if bad:
                raise ConfigurationError(f"Unknown cost weight keys: {sorted(bad)}")
            values["weights"] = replace(self.weights, **weights)

        return replace(self, **values)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MPCConfig":
        """Build a config from plain data (e.g. a YAML section)."""
        return cls().with_overrides(data)


_PROFILE_OVERRIDES: Mapping[str, dict] = {
    "default": {},
    "low_speed": {
        "horizon_length": 10,
        "dt": 0.1,
        "latency_steps": 1,
        "reference_speed": 20.0,
    },
    "no_latency": {
        "latency_steps": 0,
    },
}


def get_mpc_config(profile: str = "default", base: MPCConfig | None = None, **overrides) -> MPCConfig:
    """Apply a named profile and keyword overrides, then validate."""
    cfg = base or MPCConfig()

    if profile not in _PROFILE_OVERRIDES:
        raise ConfigurationError(f"Unknown MPC profile: {profile}. Options: {list(_PROFILE_OVERRIDES.keys())}")

    cfg = replace(cfg, **_PROFILE_OVERRIDES[profile])
    if overrides:
        cfg = cfg.with_overrides(overrides)
    return cfg.validate()


def available_profiles() -> list:
    return list(_PROFILE_OVERRIDES.keys())
