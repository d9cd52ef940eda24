#!/usr/bin/env python3
"""
Apply calibration coefficients to experiment-period observations and summarize per tank.

Output (data/processed/{run_id}/calibrated/):
  calibrated.csv          observations + value_calibrated (+ tank/treatment when metadata given)
  daily__{unit}.csv       daily mean/min/max per tank (or per logger without metadata)
  dli.csv                 daily light integral per tank, when light readings are present
  daily__{unit}.png       daily profile figure
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import pandas as pd

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

import matplotlib
matplotlib.use("Agg")

from reef_stress_pipeline.calibration import apply_calibration, read_calibration_csv  # noqa: E402
from reef_stress_pipeline.config import load_config  # noqa: E402
from reef_stress_pipeline.loader import attach_metadata, read_logger_metadata, read_observations_csv  # noqa: E402
from reef_stress_pipeline.meta_paths import get_meta_paths  # noqa: E402
from reef_stress_pipeline.plotting import plot_daily_profile  # noqa: E402
from reef_stress_pipeline.timeseries import daily_light_integral, summarize_logger_daily  # noqa: E402
from reef_stress_pipeline.units import lux_to_par  # noqa: E402

META = get_meta_paths(REPO_ROOT)


def main() -> None:
    p = argparse.ArgumentParser(description="Apply logger calibration and build daily summaries.")
    p.add_argument("--observations", required=True, type=Path, help="observations.csv of the experiment period.")
    p.add_argument("--calibration", required=True, nargs="+", type=Path, help="One or more calibration__*.csv files.")
    p.add_argument("--logger_metadata", type=Path, default=META.logger_metadata, help="Logger -> tank/treatment CSV.")
    p.add_argument("--config", type=Path, default=META.config, help="Path to config.yml.")
    p.add_argument("--tz", default=None, help="Local time zone for calendar days (default: UTC).")
    p.add_argument("--out_dir", type=Path, default=None, help="Output dir (default: next to observations run).")
    p.add_argument("--no_plot", action="store_true", help="Skip daily profile figures.")
    p.add_argument("--debug", action="store_true", help="Verbose logging.")
    args = p.parse_args()

    if not args.observations.is_file():
        raise FileNotFoundError(f"Observations not found: {args.observations}")
    for c in args.calibration:
        if not c.is_file():
            raise FileNotFoundError(f"Calibration CSV not found: {c}")
    cfg = load_config(args.config if args.config.is_file() else None)

    obs = read_observations_csv(args.observations)
    params = pd.concat([read_calibration_csv(c) for c in args.calibration], ignore_index=True)
    calibrated, cal_report = apply_calibration(obs, params)
    print(f"Calibration join: {cal_report.describe()}")

    group_col = "logger_id"
    if args.logger_metadata is not None and args.logger_metadata.is_file():
        calibrated, meta_report = attach_metadata(calibrated, read_logger_metadata(args.logger_metadata), key="logger_id")
        group_col = "tank"
        print(f"Metadata join: {meta_report.describe()}")
    elif args.debug:
        print("No logger metadata; summarizing per logger.")

    out_dir = args.out_dir
    if out_dir is None:
        run_dir = args.observations.parent.parent if args.observations.parent.name == "extract" else args.observations.parent
        out_dir = run_dir / "calibrated"
    out_dir.mkdir(parents=True, exist_ok=True)

    out_csv = out_dir / "calibrated.csv"
    calibrated.to_csv(out_csv, index=False)
    print(f"Saved: {out_csv}")

    for unit, g in calibrated.groupby("unit", sort=True):
        daily = summarize_logger_daily(g, value_col="value_calibrated", group_cols=(group_col, "unit"), tz=args.tz)
        daily_path = out_dir / f"daily__{unit}.csv"
        daily.to_csv(daily_path, index=False)
        print(f"Saved (daily): {daily_path}")
        if not args.no_plot and not daily.empty:
            png = plot_daily_profile(daily, out_dir / f"daily__{unit}.png", group_col=group_col, value_label=str(unit))
            print(f"Saved (plot): {png}")

    light = calibrated[calibrated["unit"] == "lux"].copy()
    if not light.empty:
        light["value_calibrated"] = lux_to_par(light["value_calibrated"], factor=float(cfg["units"]["lux_to_par"]))
        keys = ("logger_id",) if group_col == "logger_id" else (group_col, "logger_id")
        dli = daily_light_integral(light, value_col="value_calibrated", group_cols=keys, tz=args.tz)
        if group_col != "logger_id":
            dli = dli.groupby([group_col, "day"], as_index=False).agg(
                dli_mol_m2_d=("dli_mol_m2_d", "mean"), n_loggers=("logger_id", "nunique")
            )
        dli_path = out_dir / "dli.csv"
        dli.to_csv(dli_path, index=False)
        print(f"Saved (DLI): {dli_path}")


if __name__ == "__main__":
    main()
