#!/usr/bin/env python3
"""
Plate-reader / hemocytometer readings -> per-fragment areal densities.

  protein:  BCA plate export + plate map (standards of known ug/mL) -> ug/mL -> ug/cm^2
  symbiont: plate export with cell standards, OR hemocytometer counts CSV
            (sample_id, count, squares, dilution) -> cells/mL -> cells/cm^2

Surface area comes from wax dipping: spherical standards (diameter_cm) give
the wax-mass -> cm^2 curve that is applied to each fragment.

Output (data/processed/{run_id}/areal/):
  standard_curves__{assay}.csv, surface_area.csv, areal__{assay}.csv
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
from reef_stress_pipeline.loader import (  # noqa: E402
    normalize_id,
    read_fragment_metadata,
    read_plate_map_tsv,
    read_table,
    read_synergy_endpoint,
)
from reef_stress_pipeline.meta_paths import get_meta_paths  # noqa: E402
from reef_stress_pipeline.standards import (  # noqa: E402
    build_areal_table,
    fragment_surface_area,
    hemocytometer_density,
    quantify_plate,
    read_wax_table,
    surface_area_curve,
)

META = get_meta_paths(REPO_ROOT)

OUT_COLUMN = {"protein": "protein_ug_cm2", "symbiont": "symbionts_cells_cm2"}


def _samples_from_counts(path: Path) -> pd.DataFrame:
    df = read_table(path, dtype={"sample_id": str})
    for c in ("sample_id", "count"):
        if c not in df.columns:
            raise ValueError(f"Counts CSV needs '{c}' column: {path}")
    squares = df["squares"] if "squares" in df.columns else 1.0
    dilution = df["dilution"] if "dilution" in df.columns else 1.0
    df["concentration"] = hemocytometer_density(df["count"], squares, dilution)
    df["sample_id"] = df["sample_id"].map(normalize_id)
    return df.groupby("sample_id", as_index=False).agg(n_counts=("count", "size"), concentration=("concentration", "mean"))


def main() -> None:
    p = argparse.ArgumentParser(description="Compute areal protein / symbiont densities.")
    p.add_argument("--assay", required=True, choices=sorted(OUT_COLUMN), help="Assay type.")
    p.add_argument("--run_id", required=True, help="Run ID used for the output folder.")
    p.add_argument("--plate", type=Path, default=None, help="Synergy endpoint export.")
    p.add_argument("--plate_map", type=Path, default=None, help="Plate map TSV (default: meta/plate_maps/{run_id}.tsv).")
    p.add_argument("--counts", type=Path, default=None, help="Hemocytometer counts CSV (symbiont assay only).")
    p.add_argument("--wax_standards", type=Path, default=META.wax_standards, help="Wax-dipping standards CSV.")
    p.add_argument("--wax_samples", type=Path, default=META.wax_samples, help="Wax-dipping fragments CSV.")
    p.add_argument("--fragment_metadata", type=Path, default=META.fragment_metadata, help="Fragment metadata CSV.")
    p.add_argument("--homogenate_volume_ml", type=float, default=None, help="Default homogenate volume (mL).")
    p.add_argument("--config", type=Path, default=META.config, help="Path to config.yml.")
    p.add_argument("--out_dir", type=Path, default=META.processed_dir, help="Processed root directory.")
    p.add_argument("--debug", action="store_true", help="Verbose logging.")
    args = p.parse_args()

    cfg = load_config(args.config if args.config.is_file() else None)
    volume = args.homogenate_volume_ml if args.homogenate_volume_ml is not None else float(cfg["areal"]["homogenate_volume_ml"])
    out_dir = args.out_dir / args.run_id / "areal"
    out_dir.mkdir(parents=True, exist_ok=True)

    if args.counts is not None:
        if args.assay != "symbiont":
            raise ValueError("--counts is only valid for --assay symbiont")
        if not args.counts.is_file():
            raise FileNotFoundError(f"Counts CSV not found: {args.counts}")
        samples = _samples_from_counts(args.counts)
    else:
        if args.plate is None or not args.plate.is_file():
            raise FileNotFoundError(f"--plate not found: {args.plate}")
        plate_map_path = args.plate_map or (META.plate_maps_dir / f"{args.run_id}.tsv")
        if not plate_map_path.is_file():
            raise FileNotFoundError(f"Plate map not found: {plate_map_path}")
        samples, curves, report = quantify_plate(read_synergy_endpoint(args.plate), read_plate_map_tsv(plate_map_path))
        curves_path = out_dir / f"standard_curves__{args.assay}.csv"
        curves.to_csv(curves_path, index=False)
        print(f"Plate map join: {report.describe()}")
        print(f"Saved (standard curves): {curves_path}")
        n_extra = int(samples["extrapolated"].sum()) if "extrapolated" in samples.columns else 0
        if n_extra:
            print(f"Warning: {n_extra} samples read outside the standard range (kept, flagged 'extrapolated').")

    for path in (args.wax_standards, args.wax_samples):
        if not path.is_file():
            raise FileNotFoundError(f"Wax table not found: {path}")
    sa_curve = surface_area_curve(read_wax_table(args.wax_standards))
    surface = fragment_surface_area(read_wax_table(args.wax_samples), sa_curve)
    sa_path = out_dir / "surface_area.csv"
    surface.to_csv(sa_path, index=False)
    print(f"Surface-area curve: area = {sa_curve.slope:.3f} * wax_g + {sa_curve.intercept:.3f} (R²={sa_curve.r2:.4f}, n={sa_curve.n})")
    print(f"Saved (surface area): {sa_path}")

    fragments = read_fragment_metadata(args.fragment_metadata) if args.fragment_metadata.is_file() else None
    areal, report = build_areal_table(
        samples,
        surface,
        out_col=OUT_COLUMN[args.assay],
        homogenate_volume_ml=volume,
        fragments=fragments,
    )
    if args.debug or not report.is_clean:
        print(f"Sample join: {report.describe()}")
    areal_path = out_dir / f"areal__{args.assay}.csv"
    areal.to_csv(areal_path, index=False)
    print(f"Saved: {areal_path} ({len(areal)} fragments)")


if __name__ == "__main__":
    main()
