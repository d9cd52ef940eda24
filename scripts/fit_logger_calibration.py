#!/usr/bin/env python3
"""
Fit per-logger calibration coefficients against the standard-logger reference.

Reads observations.csv from extract_logger_csv.py; standard loggers, window and
plausibility thresholds come from meta/config.yml (calibration section).

Output (data/processed/{run_id}/calibration/):
  calibration__{batch_id}__{unit}.csv   one (coefficient, intercept) row per logger
  excluded__{batch_id}__{unit}.csv      loggers that could not be fit, with reason
  calibration__{batch_id}__{unit}.png   reference vs raw per logger
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# Use non-interactive backend so script does not block on display (headless / IDE / SSH)
import matplotlib
matplotlib.use("Agg")

from reef_stress_pipeline.calibration import (  # noqa: E402
    fit_logger_calibration,
    residual_sd,
    write_calibration_csv,
)
from reef_stress_pipeline.config import load_config  # noqa: E402
from reef_stress_pipeline.loader import read_observations_csv  # noqa: E402
from reef_stress_pipeline.meta_paths import get_meta_paths  # noqa: E402
from reef_stress_pipeline.plotting import plot_calibration  # noqa: E402

META = get_meta_paths(REPO_ROOT)


def _derive_run_id(obs_path: Path) -> str:
    """run_id: .../run_id/extract/observations.csv -> run_id, otherwise the file stem."""
    parent = obs_path.parent
    if parent.name == "extract" and parent.parent.name:
        return parent.parent.name
    return obs_path.stem


def main() -> None:
    p = argparse.ArgumentParser(description="Fit logger calibration against standard loggers.")
    p.add_argument("--observations", required=True, type=Path, help="observations.csv from extract_logger_csv.py.")
    p.add_argument("--config", type=Path, default=META.config, help="Path to config.yml.")
    p.add_argument("--unit", default=None, help="Unit to calibrate (degC, lux, raw_par); required if mixed.")
    p.add_argument("--batch_id", default=None, help="Calibration batch ID (default: run_id).")
    p.add_argument(
        "--standard_loggers",
        nargs="*",
        default=None,
        help="Override calibration.standard_loggers from config.",
    )
    p.add_argument("--round_to", default=None, help="Round timestamps (e.g. 10min) before joining to the reference.")
    p.add_argument("--out_dir", type=Path, default=META.processed_dir, help="Processed root directory.")
    p.add_argument("--no_plot", action="store_true", help="Skip the calibration figure.")
    p.add_argument("--debug", action="store_true", help="Verbose logging.")
    args = p.parse_args()

    if not args.observations.is_file():
        raise FileNotFoundError(f"Observations not found: {args.observations}")
    cfg = load_config(args.config if args.config.is_file() else None)
    cal = cfg["calibration"]

    obs = read_observations_csv(args.observations)
    run_id = _derive_run_id(args.observations)
    batch_id = args.batch_id or run_id
    standards = args.standard_loggers if args.standard_loggers else cal["standard_loggers"]
    if not standards:
        raise ValueError("No standard loggers: set calibration.standard_loggers in config or pass --standard_loggers.")

    unit = args.unit
    if unit is None and obs["unit"].nunique() == 1:
        unit = str(obs["unit"].iloc[0])
    max_value = (cal.get("max_value") or {}).get(unit) if unit else None

    run = fit_logger_calibration(
        obs,
        standard_ids=standards,
        start=cal.get("window_start"),
        end=cal.get("window_end"),
        unit=unit,
        max_value=max_value,
        min_points=int(cal["min_points"]),
        round_to=args.round_to or cal.get("round_to"),
        batch_id=batch_id,
    )

    out_dir = args.out_dir / run_id / "calibration"
    out_dir.mkdir(parents=True, exist_ok=True)
    stem = f"{batch_id}__{unit or 'value'}"
    params_path = write_calibration_csv(run.params, out_dir / f"calibration__{stem}.csv")
    excluded_path = out_dir / f"excluded__{stem}.csv"
    run.excluded.to_csv(excluded_path, index=False)

    print(f"Standard loggers: {standards}")
    print(f"Fitted loggers: {len(run.params)}; excluded: {len(run.excluded)}; dropped out-of-range readings: {run.n_dropped_out_of_range}")
    if args.debug:
        sd = residual_sd(run)
        for r in run.params.itertuples():
            print(f"  {r.logger_id}: coef={r.coefficient:.4f} intercept={r.intercept:.4f} r2={r.r2:.4f} n={r.n} resid_sd={sd.get(r.logger_id, float('nan')):.4f}")
        for r in run.excluded.itertuples():
            print(f"  excluded {r.logger_id}: {r.reason} (overlap n={r.n_overlap})")
    print(f"Saved: {params_path}")
    print(f"Saved (excluded): {excluded_path}")

    if not args.no_plot and not run.params.empty:
        png = plot_calibration(run.pairs, run.params, out_dir / f"calibration__{stem}.png", unit=unit or "")
        print(f"Saved (plot): {png}")


if __name__ == "__main__":
    main()
