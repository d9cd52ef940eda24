# src/reef_stress_pipeline/field.py
"""
Manual field/tank measurements (temperature, salinity, pH, flow, PAR).

Input: hand-entered log CSV, one row per tank visit.
Output: cleaned long table and daily per-tank summaries.
"""
from __future__ import annotations

import warnings
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .loader import read_table
from .schemas import FIELD_LOG_COLUMNS, SchemaError, validate_table
from .units import flow_rate_l_per_h, ph_from_millivolts


FIELD_VALUE_COLUMNS = ["temperature_c", "salinity_psu", "ph", "flow_l_h", "par"]


def read_field_log(path: Path) -> pd.DataFrame:
    """
    Read the manual measurement log. Column headers are matched case-insensitively
    after stripping; spaces become underscores ("Temperature C" -> temperature_c).
    """
    df = read_table(path, dtype=str)
    df.columns = [str(c).strip().lower().replace(" ", "_") for c in df.columns]
    df = df.dropna(how="all")
    df = validate_table(df, FIELD_LOG_COLUMNS, source=str(path))

    stamp = df["date"] + " " + df["time"].fillna("")
    df["datetime"] = pd.to_datetime(stamp.str.strip(), errors="coerce")
    bad = df["datetime"].isna()
    if bad.any():
        raise SchemaError(f"{path}: unparseable date/time on rows {df.index[bad].tolist()[:10]}")
    df["day"] = df["datetime"].dt.normalize()
    return df


def derive_field_values(df: pd.DataFrame, *, temp_fallback_c: float = 25.0) -> pd.DataFrame:
    """
    Fill ph from electrode mV where a standard reading is logged, and compute flow_l_h.
    A directly logged ph is kept as-is.
    """
    out = df.copy()
    has_mv = out["ph_mv"].notna() & out["ph_std_mv"].notna() & out["ph_std"].notna()
    if has_mv.any():
        temp = out["temperature_c"].fillna(temp_fallback_c)
        derived = ph_from_millivolts(out["ph_mv"], out["ph_std_mv"], out["ph_std"], temp)
        out["ph"] = np.where(out["ph"].isna() & has_mv, derived, out["ph"])
    out["flow_l_h"] = flow_rate_l_per_h(out["flow_ml"], out["flow_s"])
    return out


def drop_implausible(
    df: pd.DataFrame,
    limits: Mapping[str, Sequence[Optional[float]]],
) -> Tuple[pd.DataFrame, Dict[str, int]]:
    """
    Set values outside fixed [low, high] limits to NaN.
    Returns (cleaned, counts per column) and warns when anything was removed.
    """
    out = df.copy()
    counts: Dict[str, int] = {}
    for col, (lo, hi) in limits.items():
        if col not in out.columns:
            continue
        vals = pd.to_numeric(out[col], errors="coerce")
        bad = pd.Series(False, index=out.index)
        if lo is not None:
            bad |= vals < float(lo)
        if hi is not None:
            bad |= vals > float(hi)
        n = int(bad.sum())
        if n:
            out.loc[bad, col] = np.nan
        counts[col] = n
    removed = {k: v for k, v in counts.items() if v}
    if removed:
        warnings.warn(f"Implausible field values set to NaN: {removed}", UserWarning)
    return out, counts


def summarize_daily(
    df: pd.DataFrame,
    *,
    value_cols: Sequence[str] = tuple(FIELD_VALUE_COLUMNS),
    group_cols: Sequence[str] = ("tank",),
    day_col: str = "day",
) -> pd.DataFrame:
    """Long table: group cols, day, variable, mean, sd, min, max, n (NaN values skipped)."""
    cols = [c for c in value_cols if c in df.columns]
    if not cols:
        return pd.DataFrame(columns=list(group_cols) + [day_col, "variable", "mean", "sd", "min", "max", "n"])
    long = df.melt(id_vars=list(group_cols) + [day_col], value_vars=cols, var_name="variable", value_name="value")
    long["value"] = pd.to_numeric(long["value"], errors="coerce")
    long = long.dropna(subset=["value"])
    summary = (
        long.groupby(list(group_cols) + [day_col, "variable"], as_index=False)["value"]
        .agg(mean="mean", sd="std", min="min", max="max", n="count")
    )
    return summary.sort_values(list(group_cols) + [day_col, "variable"]).reset_index(drop=True)
