#!/usr/bin/env python3
"""
Parse raw logger exports (Hobo pendants, Odyssey PAR) into one tidy observation table.

Output: data/processed/{run_id}/extract/observations.csv
        data/processed/{run_id}/extract/metadata_join_report.csv (when --logger_metadata is given)

Usage:
  python scripts/extract_logger_csv.py --raw data/raw/calib_2021-06 [--kind auto|hobo|odyssey]
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
    attach_metadata,
    read_hobo_export,
    read_logger_metadata,
    read_odyssey_export,
)
from reef_stress_pipeline.meta_paths import get_meta_paths  # noqa: E402

META = get_meta_paths(REPO_ROOT)


def _resolve_from_repo_root(p: str | Path, repo_root: Path) -> Path:
    p = Path(p)
    return p if p.is_absolute() else (repo_root / p)


def _list_exports(raw_input: Path) -> list[Path]:
    if raw_input.is_file():
        return [raw_input]
    if raw_input.is_dir():
        files = sorted(p for p in raw_input.iterdir() if p.is_file() and p.suffix.lower() in (".csv", ".txt"))
        if not files:
            raise ValueError(f"No CSV/TXT exports found in raw folder: {raw_input}")
        return files
    raise FileNotFoundError(f"--raw not found: {raw_input}")


def _detect_kind(path: Path) -> str:
    head = path.read_bytes()[:4000].decode("utf-8", errors="ignore")
    if "Date Time" in head:
        return "hobo"
    if "scan no" in head.lower():
        return "odyssey"
    raise ValueError(f"Cannot tell logger type of {path}; pass --kind.")


def main() -> None:
    p = argparse.ArgumentParser(description="Extract logger exports into a tidy observation CSV.")
    p.add_argument("--raw", required=True, help="Export file OR folder of exports analyzed together.")
    p.add_argument("--kind", default="auto", choices=["auto", "hobo", "odyssey"], help="Logger export type.")
    p.add_argument("--config", type=Path, default=META.config, help="Path to config.yml.")
    p.add_argument(
        "--logger_metadata",
        type=Path,
        default=None,
        help="Optional logger metadata CSV; unmatched loggers are listed in the join report.",
    )
    p.add_argument("--out_dir", type=Path, default=META.processed_dir, help="Processed root directory.")
    p.add_argument("--run_id", default=None, help="Run ID (default: raw folder name or file stem).")
    p.add_argument("--debug", action="store_true", help="Verbose logging.")
    args = p.parse_args()

    raw_input = _resolve_from_repo_root(args.raw, REPO_ROOT)
    config_path = _resolve_from_repo_root(args.config, REPO_ROOT)
    cfg = load_config(config_path if config_path.is_file() else None)
    run_id = args.run_id or (raw_input.stem if raw_input.is_file() else raw_input.name)

    parts: list[pd.DataFrame] = []
    for f in _list_exports(raw_input):
        kind = _detect_kind(f) if args.kind == "auto" else args.kind
        if kind == "hobo":
            part = read_hobo_export(f)
        else:
            part = read_odyssey_export(f, tz=str(cfg["units"]["odyssey_tz"]))
        part["source_file"] = f.name
        parts.append(part)
        if args.debug:
            print(f"  {f.name}: {kind}, {len(part)} readings, loggers={sorted(part['logger_id'].unique())}")

    obs = pd.concat(parts, ignore_index=True)
    obs = obs.sort_values(["logger_id", "unit", "timestamp"]).reset_index(drop=True)
    obs["run_id"] = run_id

    extract_dir = _resolve_from_repo_root(args.out_dir, REPO_ROOT) / run_id / "extract"
    extract_dir.mkdir(parents=True, exist_ok=True)

    if args.logger_metadata is not None:
        meta_path = _resolve_from_repo_root(args.logger_metadata, REPO_ROOT)
        if not meta_path.is_file():
            raise FileNotFoundError(f"Logger metadata not found: {meta_path}")
        obs, report = attach_metadata(obs, read_logger_metadata(meta_path), key="logger_id")
        report_path = extract_dir / "metadata_join_report.csv"
        pd.DataFrame(
            [{"logger_id": k, "side": "observations_only"} for k in report.left_only]
            + [{"logger_id": k, "side": "metadata_only"} for k in report.right_only],
            columns=["logger_id", "side"],
        ).to_csv(report_path, index=False)
        print(f"Metadata join: {report.describe()}")
        print(f"Saved (join report): {report_path}")

    out_path = extract_dir / "observations.csv"
    obs.to_csv(out_path, index=False)
    print(f"Saved: {out_path}")
    print(f"Exports analyzed together ({len(parts)}); loggers: {obs['logger_id'].nunique()}")


if __name__ == "__main__":
    main()
