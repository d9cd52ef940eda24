# src/reef_stress_pipeline/timeseries.py
"""
Daily summaries of logger time series (temperature profiles, light dose).
"""
from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import pandas as pd


def _local_day(ts: pd.Series, tz: Optional[str]) -> pd.Series:
    if tz:
        ts = ts.dt.tz_convert(tz)
    return ts.dt.tz_localize(None).dt.normalize()


def summarize_logger_daily(
    obs: pd.DataFrame,
    *,
    value_col: str = "value",
    group_cols: Sequence[str] = ("logger_id", "unit"),
    tz: Optional[str] = None,
) -> pd.DataFrame:
    """
    Daily mean/min/max/n per group. ``tz`` sets which local calendar day a UTC
    timestamp belongs to (default: UTC days). Pass group_cols=("tank", "unit")
    after attaching logger metadata to summarize per tank.
    """
    d = obs.copy()
    d["day"] = _local_day(d["timestamp"], tz)
    keys = list(group_cols) + ["day"]
    out = (
        d.groupby(keys, as_index=False)[value_col]
        .agg(mean="mean", min="min", max="max", n="count")
    )
    return out.sort_values(keys).reset_index(drop=True)


def daily_light_integral(
    par_obs: pd.DataFrame,
    *,
    value_col: str = "value",
    group_cols: Sequence[str] = ("logger_id",),
    tz: Optional[str] = None,
    max_gap_s: Optional[float] = None,
) -> pd.DataFrame:
    """
    Daily light integral (mol photons m^-2 d^-1) from PAR readings (umol m^-2 s^-1).

    Each reading is held over the interval to the next reading of the same
    group (left Riemann sum); intervals longer than ``max_gap_s`` (default:
    3x the median interval) are treated as gaps and contribute nothing.
    """
    parts = []
    for _, g in par_obs.groupby(list(group_cols), sort=True):
        g = g.sort_values("timestamp").copy()
        dt = g["timestamp"].diff().shift(-1).dt.total_seconds()
        median_dt = float(np.nanmedian(dt)) if dt.notna().any() else float("nan")
        # last reading of the series: assume a regular interval
        dt.iloc[-1] = median_dt if np.isfinite(median_dt) else 0.0
        gap = max_gap_s if max_gap_s is not None else 3.0 * median_dt
        if np.isfinite(gap):
            dt = dt.where(dt <= gap, 0.0)
        g["umol"] = pd.to_numeric(g[value_col], errors="coerce").clip(lower=0) * dt
        g["day"] = _local_day(g["timestamp"], tz)
        parts.append(g)
    if not parts:
        return pd.DataFrame(columns=list(group_cols) + ["day", "dli_mol_m2_d", "n"])
    d = pd.concat(parts, ignore_index=True)
    out = d.groupby(list(group_cols) + ["day"], as_index=False).agg(umol=("umol", "sum"), n=("umol", "count"))
    out["dli_mol_m2_d"] = out["umol"] / 1e6
    return out[list(group_cols) + ["day", "dli_mol_m2_d", "n"]]
