#!/usr/bin/env python3
"""
Clean the manual tank measurement log (pH, salinity, flow, PAR) and summarize per tank and day.

Output (data/processed/{run_id}/field/):
  field_clean.csv, field_daily.csv, field_removed_counts.csv
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

from reef_stress_pipeline.config import load_config  # noqa: E402
from reef_stress_pipeline.field import (  # noqa: E402
    derive_field_values,
    drop_implausible,
    read_field_log,
    summarize_daily,
)
from reef_stress_pipeline.meta_paths import get_meta_paths  # noqa: E402

META = get_meta_paths(REPO_ROOT)


def main() -> None:
    p = argparse.ArgumentParser(description="Summarize manual field measurements per tank and day.")
    p.add_argument("--log", required=True, type=Path, help="Manual measurement log CSV.")
    p.add_argument("--run_id", default=None, help="Run ID (default: log file stem).")
    p.add_argument("--tank_metadata", type=Path, default=None, help="Optional CSV tank -> treatment.")
    p.add_argument("--config", type=Path, default=META.config, help="Path to config.yml.")
    p.add_argument("--out_dir", type=Path, default=META.processed_dir, help="Processed root directory.")
    args = p.parse_args()

    if not args.log.is_file():
        raise FileNotFoundError(f"Field log not found: {args.log}")
    cfg = load_config(args.config if args.config.is_file() else None)
    run_id = args.run_id or args.log.stem

    df = derive_field_values(read_field_log(args.log))
    df, counts = drop_implausible(df, cfg["field"]["limits"])

    group_cols = ["tank"]
    if args.tank_metadata is not None:
        if not args.tank_metadata.is_file():
            raise FileNotFoundError(f"Tank metadata not found: {args.tank_metadata}")
        tanks = pd.read_csv(args.tank_metadata, dtype=str)[["tank", "treatment"]].drop_duplicates()
        df = df.drop(columns=[c for c in ("treatment",) if c in df.columns]).merge(tanks, on="tank", how="left", validate="m:1")
        unmatched = sorted(df.loc[df["treatment"].isna(), "tank"].unique())
        if unmatched:
            print(f"Warning: tanks without treatment: {unmatched}")
        df["treatment"] = df["treatment"].fillna("")
        group_cols = ["treatment", "tank"]

    daily = summarize_daily(df, group_cols=group_cols)

    out_dir = args.out_dir / run_id / "field"
    out_dir.mkdir(parents=True, exist_ok=True)
    clean_path = out_dir / "field_clean.csv"
    daily_path = out_dir / "field_daily.csv"
    removed_path = out_dir / "field_removed_counts.csv"
    df.to_csv(clean_path, index=False)
    daily.to_csv(daily_path, index=False)
    pd.DataFrame([{"variable": k, "n_removed": v} for k, v in counts.items()]).to_csv(removed_path, index=False)

    print(f"Rows: {len(df)}; tanks: {df['tank'].nunique()}; removed implausible: {sum(counts.values())}")
    print(f"Saved: {clean_path}")
    print(f"Saved (daily): {daily_path}")
    print(f"Saved (removed counts): {removed_path}")


if __name__ == "__main__":
    main()
