# src/reef_stress_pipeline/config.py
"""
Analysis defaults and merging of the user's meta/config.yml over them.

Only values that scripts actually consume live here; everything else in the
YAML is passed through untouched so notes/comments blocks do not break runs.
"""
from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Optional

from .loader import load_yaml


DEFAULTS: Dict[str, Any] = {
    "calibration": {
        # Logger ids whose mean forms the reference series
        "standard_loggers": [],
        # Shared observation window (ISO strings, UTC unless offset given)
        "window_start": None,
        "window_end": None,
        # Readings above this are dropped before fitting, per unit
        "max_value": {"degC": 40.0, "lux": 200000.0, "raw_par": None},
        "min_points": 3,
        # pandas offset alias (e.g. "10min") to align logger clocks before joining
        "round_to": None,
    },
    "units": {
        "lux_to_par": 0.0185,
        "odyssey_tz": "UTC",
    },
    "dose_response": {
        "asymptote_bounds": [0.3, 0.7],
        "threshold_bounds": [30.0, 40.0],
        "steepness_bounds": [None, None],
        "cooks_multiplier": 4.0,
        "max_replace_fraction": 0.2,
        "min_points": 4,
    },
    "field": {
        "limits": {
            "temperature_c": [15.0, 40.0],
            "salinity_psu": [0.0, 45.0],
            "ph": [6.0, 9.0],
            "par": [0.0, 3000.0],
        },
    },
    "areal": {
        "homogenate_volume_ml": 10.0,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def _check_pair(value: Any, name: str) -> None:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValueError(f"{name} must be a [low, high] pair, got {value!r}")
    lo, hi = value
    if lo is not None and hi is not None and float(lo) > float(hi):
        raise ValueError(f"{name}: low {lo} > high {hi}")


def resolve_config(raw: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return DEFAULTS with ``raw`` merged on top, after basic type checks."""
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ValueError(f"config root must be a mapping, got {type(raw).__name__}")
    cfg = _merge(DEFAULTS, raw)

    cal = cfg["calibration"]
    if not isinstance(cal["standard_loggers"], list):
        raise ValueError("calibration.standard_loggers must be a list of logger ids")
    cal["standard_loggers"] = [str(s).strip() for s in cal["standard_loggers"]]
    if int(cal["min_points"]) < 2:
        raise ValueError("calibration.min_points must be >= 2")

    dr = cfg["dose_response"]
    for key in ("asymptote_bounds", "threshold_bounds", "steepness_bounds"):
        _check_pair(dr[key], f"dose_response.{key}")
    frac = float(dr["max_replace_fraction"])
    if not 0.0 <= frac <= 1.0:
        raise ValueError("dose_response.max_replace_fraction must be within [0, 1]")
    if float(dr["cooks_multiplier"]) <= 0:
        raise ValueError("dose_response.cooks_multiplier must be positive")

    for col, pair in cfg["field"]["limits"].items():
        _check_pair(pair, f"field.limits.{col}")

    if float(cfg["units"]["lux_to_par"]) <= 0:
        raise ValueError("units.lux_to_par must be positive")
    return cfg


def load_config(path: Optional[Path]) -> Dict[str, Any]:
    """Read config YAML (missing path -> defaults only)."""
    if path is None:
        return resolve_config({})
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Config not found: {path}")
    return resolve_config(load_yaml(path))
