"""
Central definitions for user-editable meta file paths.

Scripts should use get_meta_paths(repo_root) so that moving files only
requires changing this module.

Layout (all user inputs in one place: meta/):
  meta/
    loggers/       - logger_metadata.csv (logger serial -> tank, treatment)
    fragments/     - fragment_metadata.csv (fragment id -> tank, treatment, genotype)
    plate_maps/    - per-run plate maps: {run_id}.tsv (well -> sample_id, kind, known_value)
    wax/           - wax_standards.csv, wax_samples.csv (wax-dipping masses)
    config.yml     - analysis config (standard loggers, bounds, limits)
"""
from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace


def get_meta_paths(repo_root: Path) -> SimpleNamespace:
    """Return paths to user-editable meta files under repo_root/meta/."""
    root = Path(repo_root)
    meta = root / "meta"
    return SimpleNamespace(
        logger_metadata=meta / "loggers" / "logger_metadata.csv",
        fragment_metadata=meta / "fragments" / "fragment_metadata.csv",
        plate_maps_dir=meta / "plate_maps",
        wax_standards=meta / "wax" / "wax_standards.csv",
        wax_samples=meta / "wax" / "wax_samples.csv",
        config=meta / "config.yml",
        processed_dir=root / "data" / "processed",
        raw_dir=root / "data" / "raw",
    )
