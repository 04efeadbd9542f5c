from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any, Dict, Optional

import typer
import yaml

from config.mpc import MPCConfig, get_mpc_config


@dataclass
class AppConfig:
    profile: str = "low_speed"
    steps: int = 300
    amplitude: float = 4.0
    wavelength: float = 120.0
    road_length: float = 400.0
    initial_speed: float = 10.0
    initial_offset: float = 1.0
    lookahead_points: int = 12
    predict_latency: bool = False
    horizon_length: int | None = None
    dt: float | None = None
    latency_steps: int | None = None
    reference_speed: float | None = None
    solver_time_budget: float | None = None
    verbose: bool = False
    plot: bool = True
    save_results: bool = True
    mpc: Dict[str, Any] = field(default_factory=dict)


def _load_yaml_defaults(path: Path) -> dict:
    """Load a YAML config file and return its contents as a dict."""
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def build_mpc_config(args: AppConfig) -> MPCConfig:
    """Profile -> YAML `mpc:` section -> explicit CLI overrides, then validate."""
    overrides = dict(args.mpc)
    for name in ("horizon_length", "dt", "latency_steps", "reference_speed", "solver_time_budget"):
        value = getattr(args, name)
        if value is not None:
            overrides[name] = value
    if args.verbose:
        overrides["verbose"] = True
    return get_mpc_config(args.profile, **overrides)


app = typer.Typer(add_completion=False)


@app.command(help="Path-tracking MPC closed-loop demo")
def cli(
    ctx: typer.Context,
    # ── Controller ────────────────────────────────────────────────
    profile: Annotated[str, typer.Option(help="MPC profile: default, low_speed, no_latency")] = "low_speed",
    horizon_length: Annotated[Optional[int], typer.Option(help="Override horizon length N")] = None,
    dt: Annotated[Optional[float], typer.Option(help="Override step length [s]")] = None,
    latency_steps: Annotated[Optional[int], typer.Option(help="Override actuation latency [steps]")] = None,
    reference_speed: Annotated[Optional[float], typer.Option(help="Override reference speed")] = None,
    solver_time_budget: Annotated[Optional[float], typer.Option(help="Override IPOPT wall-time budget [s]")] = None,
    predict_latency: Annotated[bool, typer.Option("--predict-latency/--no-predict-latency", help="Propagate the state over the latency before solving")] = False,

    # ── Scenario ──────────────────────────────────────────────────
    steps: Annotated[int, typer.Option(help="Maximum number of control cycles")] = 300,
    amplitude: Annotated[float, typer.Option(help="Sine road amplitude [m] (0 = straight)")] = 4.0,
    wavelength: Annotated[float, typer.Option(help="Sine road wavelength [m]")] = 120.0,
    road_length: Annotated[float, typer.Option(help="Road length [m]")] = 400.0,
    initial_speed: Annotated[float, typer.Option(help="Initial speed")] = 10.0,
    initial_offset: Annotated[float, typer.Option(help="Initial lateral offset from the road [m]")] = 1.0,
    lookahead_points: Annotated[int, typer.Option(help="Waypoints per polynomial fit")] = 12,

    # ── Output ────────────────────────────────────────────────────
    verbose: Annotated[bool, typer.Option("--verbose/--quiet", help="Print solver progress")] = False,
    plot: Annotated[bool, typer.Option("--plot/--no-plot", help="Generate visualisation plots")] = True,
    save_results: Annotated[bool, typer.Option("--save-results/--no-save-results", help="Write plots and JSON under results/")] = True,

    # ── Config file ───────────────────────────────────────────────
    config: Annotated[Optional[Path], typer.Option(help="Path to YAML config file")] = None,
):
    """Entry point: build AppConfig from CLI args (with optional YAML defaults) and run."""
    from main import main as run_main

    cli_values = {
        "profile": profile, "horizon_length": horizon_length, "dt": dt,
        "latency_steps": latency_steps, "reference_speed": reference_speed,
        "solver_time_budget": solver_time_budget, "predict_latency": predict_latency,
        "steps": steps, "amplitude": amplitude, "wavelength": wavelength,
        "road_length": road_length, "initial_speed": initial_speed,
        "initial_offset": initial_offset, "lookahead_points": lookahead_points,
        "verbose": verbose, "plot": plot, "save_results": save_results,
    }

    if config is not None:
        yaml_defaults = _load_yaml_defaults(config)
        # YAML replaces defaults; options given on the command line win
        explicit = {
            name: value for name, value in cli_values.items()
            if ctx.get_parameter_source(name).name != "DEFAULT"
        }
        merged = {**cli_values, **yaml_defaults, **explicit}
    else:
        merged = cli_values

    args = AppConfig(**merged)
    run_main(args)
