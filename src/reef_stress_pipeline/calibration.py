# src/reef_stress_pipeline/calibration.py
"""
Inter-logger calibration against a reference series.

The reference is the per-timestamp mean of a designated group of "standard"
loggers deployed side by side with every other logger over a shared window.
Each logger gets one OLS fit  reference = coefficient * raw + intercept.

Input: long Observation table (logger_id, timestamp, value, unit).
Output: CalibrationRun with one params row per fitted logger, plus an explicit
        table of excluded loggers (no overlap, too few points, failed fit).
"""
from __future__ import annotations

import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from .loader import filter_window, normalize_id
from .regression import LinearFitError, fit_linear
from .schemas import (
    CALIBRATION_COLUMNS,
    CalibrationParams,
    JoinReport,
    join_report,
    validate_table,
)


EXCLUDED_COLUMNS = ["batch_id", "logger_id", "unit", "reason", "n_overlap"]
EXCLUDE_NO_OVERLAP = "no_overlap"
EXCLUDE_TOO_FEW = "too_few_points"
EXCLUDE_FIT_FAILED = "fit_failed"


class CalibrationError(RuntimeError):
    """Raised when a calibration batch cannot be set up at all (e.g. no standard loggers)."""


@dataclass(frozen=True)
class CalibrationRun:
    params: pd.DataFrame  # CALIBRATION_COLUMNS, one row per fitted logger
    excluded: pd.DataFrame  # EXCLUDED_COLUMNS
    pairs: pd.DataFrame  # logger_id, timestamp, value, reference (points used by the fits)
    n_dropped_out_of_range: int = 0

    def get(self, logger_id: str) -> Optional[CalibrationParams]:
        hit = self.params[self.params["logger_id"] == normalize_id(logger_id)]
        if hit.empty:
            return None
        r = hit.iloc[0]
        return CalibrationParams(
            logger_id=str(r["logger_id"]),
            coefficient=float(r["coefficient"]),
            intercept=float(r["intercept"]),
            r2=float(r["r2"]),
            n=int(r["n"]),
            unit=str(r["unit"]),
            batch_id=str(r["batch_id"]),
        )


def _single_unit(obs: pd.DataFrame, unit: Optional[str]) -> Tuple[pd.DataFrame, str]:
    if unit is not None:
        return obs[obs["unit"] == unit], unit
    units = sorted(obs["unit"].dropna().unique().tolist())
    if len(units) > 1:
        raise ValueError(f"Observations mix units {units}; pass unit= to calibrate one at a time.")
    return obs, (units[0] if units else "")


def drop_out_of_range(obs: pd.DataFrame, max_value: Optional[float]) -> Tuple[pd.DataFrame, int]:
    """Drop readings above a fixed plausibility threshold (e.g. saturated light)."""
    if max_value is None:
        return obs, 0
    keep = obs["value"] <= float(max_value)
    return obs.loc[keep].reset_index(drop=True), int((~keep).sum())


def reference_series(obs: pd.DataFrame, standard_ids: Iterable[str]) -> pd.DataFrame:
    """Per-timestamp mean (and count) of the standard logger group."""
    ids = {normalize_id(s) for s in standard_ids}
    std = obs[obs["logger_id"].isin(ids)]
    if std.empty:
        raise CalibrationError(f"None of the standard loggers {sorted(ids)} have observations in the window.")
    ref = (
        std.groupby("timestamp", sort=True)["value"]
        .agg(reference="mean", n_standards="count")
        .reset_index()
    )
    return ref


def _align_timestamps(obs: pd.DataFrame, round_to: Optional[str]) -> pd.DataFrame:
    if not round_to:
        return obs
    out = obs.copy()
    out["timestamp"] = out["timestamp"].dt.round(round_to)
    return out.groupby(["logger_id", "unit", "timestamp"], as_index=False)["value"].mean()


def fit_logger_calibration(
    obs: pd.DataFrame,
    *,
    standard_ids: Iterable[str],
    start: Any = None,
    end: Any = None,
    unit: Optional[str] = None,
    max_value: Optional[float] = None,
    min_points: int = 3,
    round_to: Optional[str] = None,
    batch_id: str = "",
) -> CalibrationRun:
    """
    Fit reference ~ raw for every logger in ``obs`` (standards included).

    Steps: window filter -> out-of-range drop -> optional timestamp rounding
    -> reference = mean(standards) per timestamp -> inner join per logger -> OLS.
    Loggers that cannot be fit are listed in ``excluded`` and warned about;
    the batch itself never aborts for a single logger.
    """
    obs = obs.copy()
    obs["logger_id"] = obs["logger_id"].map(normalize_id)
    obs, unit_name = _single_unit(obs, unit)
    obs = filter_window(obs, start, end)
    obs, n_dropped = drop_out_of_range(obs, max_value)
    if n_dropped:
        warnings.warn(f"Dropped {n_dropped} readings above max_value={max_value} before calibration.", UserWarning)
    obs = _align_timestamps(obs, round_to)

    ref = reference_series(obs, standard_ids)

    params_rows: List[dict] = []
    excluded_rows: List[dict] = []
    pair_parts: List[pd.DataFrame] = []
    for logger_id, g in obs.groupby("logger_id", sort=True):
        j = g[["logger_id", "timestamp", "value"]].merge(ref[["timestamp", "reference"]], on="timestamp", how="inner")
        base = {"batch_id": batch_id, "logger_id": logger_id, "unit": unit_name, "n_overlap": int(len(j))}
        if j.empty:
            excluded_rows.append({**base, "reason": EXCLUDE_NO_OVERLAP})
            continue
        if len(j) < int(min_points):
            excluded_rows.append({**base, "reason": EXCLUDE_TOO_FEW})
            continue
        try:
            fit = fit_linear(j["value"].to_numpy(dtype=float), j["reference"].to_numpy(dtype=float))
        except LinearFitError:
            excluded_rows.append({**base, "reason": EXCLUDE_FIT_FAILED})
            continue
        params_rows.append(
            {
                "batch_id": batch_id,
                "logger_id": logger_id,
                "unit": unit_name,
                "coefficient": fit.slope,
                "intercept": fit.intercept,
                "r2": fit.r2,
                "n": fit.n,
            }
        )
        pair_parts.append(j)

    params = pd.DataFrame(params_rows, columns=list(CALIBRATION_COLUMNS.keys()))
    params = validate_table(params, CALIBRATION_COLUMNS, source="calibration params")
    excluded = pd.DataFrame(excluded_rows, columns=EXCLUDED_COLUMNS)
    pairs = (
        pd.concat(pair_parts, ignore_index=True)
        if pair_parts
        else pd.DataFrame(columns=["logger_id", "timestamp", "value", "reference"])
    )

    if not excluded.empty:
        summary = ", ".join(f"{r.logger_id} ({r.reason})" for r in excluded.itertuples())
        warnings.warn(f"Calibration batch '{batch_id}' excluded loggers: {summary}", UserWarning)

    return CalibrationRun(params=params, excluded=excluded, pairs=pairs, n_dropped_out_of_range=n_dropped)


def _join_keys(df: pd.DataFrame, keys: List[str]) -> np.ndarray:
    """'logger_id' or 'logger_id:unit' strings, matching the join actually performed."""
    s = df[keys[0]].astype(str)
    for k in keys[1:]:
        s = s + ":" + df[k].astype(str)
    return s.unique()


def apply_calibration(obs: pd.DataFrame, params: pd.DataFrame) -> Tuple[pd.DataFrame, JoinReport]:
    """
    Add value_calibrated = value * coefficient + intercept.

    Observations of loggers without a params row are dropped and reported.
    When both tables carry a unit, the join is per (logger_id, unit) and the
    report keys are "logger_id:unit" strings.
    """
    left = obs.copy()
    left["logger_id"] = left["logger_id"].map(normalize_id)
    p = params.copy()
    p["logger_id"] = p["logger_id"].map(normalize_id)
    keys = ["logger_id"]
    if "unit" in left.columns and "unit" in p.columns and p["unit"].astype(str).str.len().gt(0).all():
        keys.append("unit")

    dup = p.duplicated(subset=keys)
    if dup.any():
        raise ValueError(f"Calibration params are not unique per {keys}: {p.loc[dup, 'logger_id'].tolist()}")

    report = join_report(_join_keys(left, keys), _join_keys(p, keys), key=":".join(keys))
    joined = left.merge(p[keys + ["coefficient", "intercept"]], on=keys, how="inner", validate="m:1")
    joined["value_calibrated"] = joined["value"] * joined["coefficient"] + joined["intercept"]
    if report.left_only:
        warnings.warn(f"No calibration for {report.describe()}", UserWarning)
    return joined.drop(columns=["coefficient", "intercept"]), report


def write_calibration_csv(params: pd.DataFrame, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    params.to_csv(path, index=False)
    return path


def read_calibration_csv(path: Path) -> pd.DataFrame:
    df = pd.read_csv(path, dtype={"logger_id": str, "batch_id": str, "unit": str})
    df = validate_table(df, CALIBRATION_COLUMNS, source=str(path))
    df["logger_id"] = df["logger_id"].map(normalize_id)
    return df


def residual_sd(run: CalibrationRun) -> pd.Series:
    """Residual standard deviation of each logger's fit, indexed by logger_id."""
    if run.pairs.empty:
        return pd.Series(dtype=float)
    p = run.pairs.merge(run.params[["logger_id", "coefficient", "intercept"]], on="logger_id")
    resid = p["reference"] - (p["value"] * p["coefficient"] + p["intercept"])
    dof = p.groupby("logger_id")["value"].transform("size") - 2
    sq = (resid**2) / dof.where(dof > 0, np.nan)
    return np.sqrt(sq.groupby(p["logger_id"]).sum())
