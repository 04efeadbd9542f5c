import json
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Dict

import matplotlib.pyplot as plt
import numpy as np
import yaml


class RunManager:
    """
    Output folder of one closed-loop run

        results/<scenario>/<YYYYMMDD_HHMMSS>/
            figures/      PNG plots
            telemetry/    run.json, telemetry.npz
            mpc.yaml      controller settings, reusable as the `mpc:` section of --config
            summary.txt
    """

    def __init__(self, scenario_name: str, base_dir: str = "results"):
        self.scenario_name = scenario_name
        self.started = datetime.now()

        self.run_dir = Path(base_dir) / scenario_name.lower() / self.started.strftime("%Y%m%d_%H%M%S")
        self.figures_dir = self.run_dir / "figures"
        self.telemetry_dir = self.run_dir / "telemetry"
        for directory in (self.figures_dir, self.telemetry_dir):
            directory.mkdir(parents=True, exist_ok=True)

        print(f"\n📁 Run output: {self.run_dir}")

    def _saved(self, path: Path) -> Path:
        print(f"   ✓ Saved {path.relative_to(self.run_dir)}")
        return path

    def save_figure(self, fig: plt.Figure, name: str) -> Path:
        path = self.figures_dir / f"{name}.png"
        fig.savefig(path, dpi=150, bbox_inches='tight')
        return self._saved(path)

    def save_json(self, data: Dict, name: str) -> Path:
        path = self.telemetry_dir / f"{name}.json"
        with open(path, 'w') as f:
            json.dump(to_serializable(data), f, indent=2)
        return self._saved(path)

    def save_telemetry(self, result) -> Path:
        """Per-cycle arrays of a ClosedLoopResult as one .npz archive"""
        path = self.telemetry_dir / "telemetry.npz"
        np.savez_compressed(
            path,
            times=result.times,
            poses=result.poses,
            cte=result.cte,
            epsi=result.epsi,
            commands=result.commands,
            solve_times=result.solve_times,
            solve_success=result.solve_success,
        )
        return self._saved(path)

    def save_config(self, mpc_config) -> Path:
        path = self.run_dir / "mpc.yaml"
        with open(path, 'w') as f:
            yaml.safe_dump(to_serializable(asdict(mpc_config)), f, sort_keys=False)
        return self._saved(path)

    def save_summary(self, summary: Dict) -> Path:
        path = self.run_dir / "summary.txt"
        width = max((len(key) for key in summary), default=0)
        with open(path, 'w') as f:
            f.write(f"{self.scenario_name} ({self.started.isoformat(timespec='seconds')})\n")
            for key, value in summary.items():
                if isinstance(value, float):
                    value = f"{value:.4f}"
                f.write(f"{key:<{width}}  {value}\n")
        return self._saved(path)


def to_serializable(obj):
    """numpy scalars/arrays -> plain Python, recursively"""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: to_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_serializable(item) for item in obj]
    return obj


def export_results(result, mpc_config, args) -> Dict:
    """Run metadata, controller settings and closed-loop statistics"""
    return {
        'metadata': {
            'scenario': result.road.name if result.road is not None else None,
            'profile': args.profile,
            'timestamp': datetime.now().isoformat(),
            'predict_latency': args.predict_latency,
            'initial_speed': args.initial_speed,
            'initial_offset': args.initial_offset,
        },
        'controller': asdict(mpc_config),
        'performance': result.summary(),
        'solver': {
            'budget_s': mpc_config.solver_time_budget,
            'over_budget': int(np.sum(result.solve_times > mpc_config.solver_time_budget)),
        },
    }
