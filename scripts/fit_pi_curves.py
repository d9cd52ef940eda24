#!/usr/bin/env python3
"""
Fit photosynthesis-irradiance (tanh) curves per group from O2 evolution / ETR vs PAR data.

Output: data/processed/{run_id}/pi_curve/pi_params.csv (converged=False rows = no model)
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from reef_stress_pipeline.loader import read_table  # noqa: E402
from reef_stress_pipeline.meta_paths import get_meta_paths  # noqa: E402
from reef_stress_pipeline.pi_curve import fit_pi_groups  # noqa: E402

META = get_meta_paths(REPO_ROOT)


def main() -> None:
    p = argparse.ArgumentParser(description="Fit P-I curves per group.")
    p.add_argument("--input", required=True, type=Path, help="Long CSV or .xlsx with irradiance and production columns.")
    p.add_argument("--run_id", default=None, help="Run ID (default: input file stem).")
    p.add_argument("--x_col", default="par", help="Irradiance column.")
    p.add_argument("--y_col", default="production", help="Production / ETR column.")
    p.add_argument("--group_cols", nargs="+", default=["fragment_id"], help="Columns defining one curve.")
    p.add_argument("--out_dir", type=Path, default=META.processed_dir, help="Processed root directory.")
    args = p.parse_args()

    if not args.input.is_file():
        raise FileNotFoundError(f"Input not found: {args.input}")
    run_id = args.run_id or args.input.stem
    df = read_table(args.input)
    params = fit_pi_groups(df, group_cols=args.group_cols, x_col=args.x_col, y_col=args.y_col)

    out_dir = args.out_dir / run_id / "pi_curve"
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / "pi_params.csv"
    params.to_csv(out_path, index=False)
    print(f"Groups fitted: {int(params['converged'].sum())}/{len(params)}")
    print(f"Saved: {out_path}")


if __name__ == "__main__":
    main()
