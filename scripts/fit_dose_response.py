#!/usr/bin/env python3
"""
Fit LL.3 dose-response curves (e.g. Fv/Fm vs assay temperature) per biological unit,
with Cook's distance based refinement, and write parameter tables for downstream tests.

Input CSV: one row per measurement, with stressor (x) and response (y) columns and
the grouping columns (e.g. genotype, treatment). Fragment metadata is joined when
the input has fragment_id and a metadata CSV exists.

Output (data/processed/{run_id}/dose_response/):
  ll3_params.csv   one row per group (converged=False rows are groups without a model)
  ll3_points.csv   input rows + fitted, cooks_d, flagged, replaced, y_adjusted
  ll3_curves.png   per-group panels
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

from reef_stress_pipeline.config import load_config  # noqa: E402
from reef_stress_pipeline.dose_response import fit_groups  # noqa: E402
from reef_stress_pipeline.loader import attach_metadata, read_fragment_metadata  # noqa: E402
from reef_stress_pipeline.meta_paths import get_meta_paths  # noqa: E402
from reef_stress_pipeline.plotting import plot_dose_response  # noqa: E402

META = get_meta_paths(REPO_ROOT)


def main() -> None:
    p = argparse.ArgumentParser(description="Fit LL.3 dose-response curves per group.")
    p.add_argument("--input", required=True, type=Path, help="Long CSV of stressor/response measurements.")
    p.add_argument("--run_id", default=None, help="Run ID (default: input file stem).")
    p.add_argument("--x_col", default="temperature", help="Stressor column.")
    p.add_argument("--y_col", default="fvfm", help="Response column.")
    p.add_argument("--group_cols", nargs="+", default=["genotype"], help="Columns defining one biological unit.")
    p.add_argument("--fragment_metadata", type=Path, default=META.fragment_metadata, help="Fragment metadata CSV.")
    p.add_argument("--config", type=Path, default=META.config, help="Path to config.yml.")
    p.add_argument("--no_refine", action="store_true", help="Only the initial fit (no Cook's distance step).")
    p.add_argument("--out_dir", type=Path, default=META.processed_dir, help="Processed root directory.")
    p.add_argument("--no_plot", action="store_true", help="Skip the figure.")
    p.add_argument("--debug", action="store_true", help="Verbose logging.")
    args = p.parse_args()

    if not args.input.is_file():
        raise FileNotFoundError(f"Input not found: {args.input}")
    cfg = load_config(args.config if args.config.is_file() else None)
    dr = cfg["dose_response"]
    run_id = args.run_id or args.input.stem

    df = pd.read_csv(args.input)
    if "fragment_id" in df.columns and args.fragment_metadata.is_file():
        df, report = attach_metadata(df, read_fragment_metadata(args.fragment_metadata), key="fragment_id")
        print(f"Metadata join: {report.describe()}")
    missing = [c for c in args.group_cols + [args.x_col, args.y_col] if c not in df.columns]
    if missing:
        raise ValueError(f"Input lacks columns {missing}; found {list(df.columns)}")

    batch = fit_groups(
        df,
        group_cols=args.group_cols,
        x_col=args.x_col,
        y_col=args.y_col,
        refine=not args.no_refine,
        bounds=(dr["steepness_bounds"], dr["asymptote_bounds"], dr["threshold_bounds"]),
        cooks_multiplier=float(dr["cooks_multiplier"]),
        max_replace_fraction=float(dr["max_replace_fraction"]),
        min_points=int(dr["min_points"]),
    )

    out_dir = args.out_dir / run_id / "dose_response"
    out_dir.mkdir(parents=True, exist_ok=True)
    params_path = out_dir / "ll3_params.csv"
    points_path = out_dir / "ll3_points.csv"
    batch.params.to_csv(params_path, index=False)
    batch.points.to_csv(points_path, index=False)

    n_ok = int(batch.params["converged"].astype(bool).sum())
    print(f"Groups fitted: {n_ok}/{len(batch.params)}; points replaced: {int(batch.params['n_replaced'].sum())}")
    if args.debug:
        for r in batch.failed.itertuples():
            print(f"  no model: {[getattr(r, c) for c in args.group_cols]} ({r.message})")
    print(f"Saved: {params_path}")
    print(f"Saved (points): {points_path}")

    if not args.no_plot and not batch.params.empty:
        png = plot_dose_response(
            batch.points,
            batch.params,
            out_dir / "ll3_curves.png",
            group_cols=args.group_cols,
            x_col=args.x_col,
            y_col=args.y_col,
        )
        print(f"Saved (plot): {png}")


if __name__ == "__main__":
    main()
