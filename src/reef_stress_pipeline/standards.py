# src/reef_stress_pipeline/standards.py
"""
Standard curves and areal normalization for tissue assays.

- Protein (BCA/Bradford) and symbiont readings: plate reading -> concentration
  through a linear standard curve fit on wells of known concentration.
- Surface area: wax-dipping mass gain -> cm^2 through a curve fit on spherical
  standards of known diameter (area = pi * d^2).
- Areal density = concentration * homogenate volume / surface area.
"""
from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from .loader import attach_plate_map, normalize_id, read_table
from .regression import LinearFitError, fit_linear
from .schemas import WAX_COLUMNS, JoinReport, SchemaError, join_report, validate_table
from .units import sphere_surface_area


class StandardCurveError(RuntimeError):
    """Raised when a standard curve cannot be fit from the given standards."""


@dataclass(frozen=True)
class StandardCurve:
    """known = slope * reading + intercept"""

    slope: float
    intercept: float
    r2: float
    n: int
    reading_min: float = float("nan")
    reading_max: float = float("nan")

    def predict(self, reading):
        return self.slope * np.asarray(reading, dtype=float) + self.intercept


def fit_standard_curve(known, reading) -> StandardCurve:
    """OLS of known concentration on instrument reading (inverse-prediction form)."""
    try:
        fit = fit_linear(reading, known)
    except LinearFitError as e:
        raise StandardCurveError(f"Standard curve failed: {e}") from e
    return StandardCurve(
        slope=fit.slope,
        intercept=fit.intercept,
        r2=fit.r2,
        n=fit.n,
        reading_min=fit.x_min,
        reading_max=fit.x_max,
    )


def readings_to_concentration(readings, curve: StandardCurve, dilution=1.0):
    return curve.predict(readings) * np.asarray(dilution, dtype=float)


def blank_correct(mapped: pd.DataFrame) -> pd.DataFrame:
    """
    Subtract the mean blank reading of each plate from every reading.
    Plates without blank wells are left unchanged (reading_corrected = reading).
    """
    out = mapped.copy()
    blanks = out[out["kind"] == "blank"].groupby("plate_id")["reading"].mean().rename("blank_mean")
    out = out.merge(blanks, left_on="plate_id", right_index=True, how="left")
    out["blank_mean"] = out["blank_mean"].fillna(0.0)
    out["reading_corrected"] = out["reading"] - out["blank_mean"]
    return out


def fit_plate_standards(mapped: pd.DataFrame, *, reading_col: str = "reading_corrected") -> StandardCurve:
    """Average replicate standard wells per known_value, then fit the curve."""
    std = mapped[mapped["kind"] == "standard"]
    if std.empty:
        raise StandardCurveError("No standard wells on plate map.")
    means = std.groupby("known_value", as_index=False)[reading_col].mean()
    return fit_standard_curve(means["known_value"], means[reading_col])


def quantify_plate(
    plate: pd.DataFrame,
    plate_map: pd.DataFrame,
    *,
    per_plate: bool = True,
) -> Tuple[pd.DataFrame, pd.DataFrame, JoinReport]:
    """
    Readings + plate map -> per-sample concentration.

    Returns (samples, curves, report):
      samples: plate_id, sample_id, n_wells, reading_mean, concentration (dilution applied)
      curves:  one row per standard curve (plate_id or "all")
    Sample readings outside the standard range are kept but flagged ``extrapolated``.
    A plate whose curve cannot be fit gets a NaN curve row with ``message`` and
    NaN sample concentrations; the other plates are still quantified.
    """
    mapped, report = attach_plate_map(plate, plate_map)
    if report.left_only:
        warnings.warn(f"Plate wells without plate-map entry: {report.describe()}", UserWarning)
    mapped = blank_correct(mapped)

    groups = mapped.groupby("plate_id") if per_plate else [("all", mapped)]
    curve_rows = []
    sample_parts = []
    failed = []
    for plate_id, g in groups:
        try:
            curve = fit_plate_standards(g)
        except StandardCurveError as e:
            curve = None
            failed.append(f"{plate_id} ({e})")
            nan = float("nan")
            curve_rows.append({"plate_id": plate_id, "slope": nan, "intercept": nan, "r2": nan, "n": 0, "message": str(e)})
        else:
            curve_rows.append(
                {
                    "plate_id": plate_id,
                    "slope": curve.slope,
                    "intercept": curve.intercept,
                    "r2": curve.r2,
                    "n": curve.n,
                    "message": "",
                }
            )
        s = g[g["kind"] == "sample"].copy()
        if s.empty:
            continue
        if curve is None:
            # no curve: samples kept with NaN concentration
            s["concentration"] = np.nan
            s["extrapolated"] = False
        else:
            s["concentration"] = readings_to_concentration(s["reading_corrected"], curve, s["dilution"])
            s["extrapolated"] = (s["reading_corrected"] < curve.reading_min) | (s["reading_corrected"] > curve.reading_max)
        sample_parts.append(s)

    if failed:
        warnings.warn(f"No standard curve for {len(failed)} plate(s): {failed}", UserWarning)
    curves = pd.DataFrame(curve_rows, columns=["plate_id", "slope", "intercept", "r2", "n", "message"])
    if not sample_parts:
        return pd.DataFrame(columns=["plate_id", "sample_id", "n_wells", "reading_mean", "concentration", "extrapolated"]), curves, report
    wells = pd.concat(sample_parts, ignore_index=True)
    samples = (
        wells.groupby(["plate_id", "sample_id"], as_index=False)
        .agg(
            n_wells=("well", "count"),
            reading_mean=("reading_corrected", "mean"),
            concentration=("concentration", "mean"),
            extrapolated=("extrapolated", "any"),
        )
    )
    return samples, curves, report


def read_wax_table(path) -> pd.DataFrame:
    df = read_table(path, dtype={"sample_id": str})
    df = validate_table(df, WAX_COLUMNS, source=str(path))
    df["sample_id"] = df["sample_id"].map(normalize_id)
    df["wax_mass_g"] = df["mass_after_g"] - df["mass_before_g"]
    return df


def surface_area_curve(standards: pd.DataFrame) -> StandardCurve:
    """
    Fit surface area (cm^2) on wax mass gain (g) for spherical standards.
    ``standards`` needs diameter_cm and mass_before_g/mass_after_g (or wax_mass_g).
    """
    if standards["diameter_cm"].isna().any():
        raise SchemaError("Wax standards need diameter_cm for every row.")
    wax = standards["wax_mass_g"] if "wax_mass_g" in standards.columns else standards["mass_after_g"] - standards["mass_before_g"]
    area = sphere_surface_area(standards["diameter_cm"])
    return fit_standard_curve(area, wax)


def fragment_surface_area(samples: pd.DataFrame, curve: StandardCurve) -> pd.DataFrame:
    """Add surface_area_cm2 to wax-dipped fragments; non-positive areas become NaN."""
    out = samples.copy()
    wax = out["wax_mass_g"] if "wax_mass_g" in out.columns else out["mass_after_g"] - out["mass_before_g"]
    area = curve.predict(wax)
    out["surface_area_cm2"] = np.where(area > 0, area, np.nan)
    n_bad = int(np.sum(~(area > 0)))
    if n_bad:
        warnings.warn(f"{n_bad} fragments got non-positive surface area and were set to NaN.", UserWarning)
    return out


def areal_density(concentration, homogenate_volume_ml, surface_area_cm2):
    """concentration (per mL) * homogenate volume (mL) / surface area (cm^2)."""
    conc = np.asarray(concentration, dtype=float)
    vol = np.asarray(homogenate_volume_ml, dtype=float)
    area = np.asarray(surface_area_cm2, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = conc * vol / area
    return np.where(area > 0, out, np.nan)


def hemocytometer_density(counts, squares=None, dilution=1.0):
    """
    Cells per mL from hemocytometer counts: mean count per large square
    (0.1 uL = 1e-4 mL) * 1e4 * dilution. ``counts`` is the total over ``squares`` squares.
    """
    counts = np.asarray(counts, dtype=float)
    if squares is None:
        squares = 1.0
    squares = np.asarray(squares, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        per_square = counts / squares
    return np.where(squares > 0, per_square * 1e4 * np.asarray(dilution, dtype=float), np.nan)


def build_areal_table(
    samples: pd.DataFrame,
    surface: pd.DataFrame,
    *,
    value_col: str = "concentration",
    out_col: str = "protein_ug_cm2",
    homogenate_volume_ml: float = 10.0,
    fragments: Optional[pd.DataFrame] = None,
) -> Tuple[pd.DataFrame, JoinReport]:
    """
    Join per-sample concentrations with fragment surface areas (by sample_id
    == fragment id) and compute areal density. ``samples`` may carry a
    homogenate_volume_ml column to override the default per sample.
    Optional fragment metadata (fragment_id, tank, treatment, genotype) is attached.
    """
    s = samples.copy()
    s["sample_id"] = s["sample_id"].map(normalize_id)
    sa = surface[["sample_id", "surface_area_cm2"]].copy()
    sa["sample_id"] = sa["sample_id"].map(normalize_id)

    report = join_report(s["sample_id"].unique(), sa["sample_id"].unique(), key="sample_id")
    out = s.merge(sa, on="sample_id", how="inner", validate="m:1")
    if report.left_only:
        warnings.warn(f"Samples without surface area: {report.describe()}", UserWarning)

    if "homogenate_volume_ml" not in out.columns:
        out["homogenate_volume_ml"] = float(homogenate_volume_ml)
    out["homogenate_volume_ml"] = out["homogenate_volume_ml"].fillna(float(homogenate_volume_ml))
    out[out_col] = areal_density(out[value_col], out["homogenate_volume_ml"], out["surface_area_cm2"])

    if fragments is not None:
        meta = fragments.rename(columns={"fragment_id": "sample_id"})
        meta_report = join_report(out["sample_id"].unique(), meta["sample_id"].unique(), key="sample_id")
        out = out.merge(meta, on="sample_id", how="inner", validate="m:1")
        if meta_report.left_only:
            warnings.warn(f"Samples without fragment metadata: {meta_report.describe()}", UserWarning)
            report = JoinReport(
                key="sample_id",
                left_only=tuple(sorted(set(report.left_only) | set(meta_report.left_only))),
                right_only=report.right_only,
            )
    return out.reset_index(drop=True), report
