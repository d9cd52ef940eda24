# src/reef_stress_pipeline/schemas.py
"""
Typed records and column schemas shared by every pipeline stage.

Column names are the contract between stages (extract -> calibrate -> fit),
so each table kind has one schema here and is validated when it is read.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

import numpy as np
import pandas as pd


class SchemaError(ValueError):
    """Raised when an input table is missing columns or has uncoercible values."""


# Column name -> dtype kind ("str", "float", "int", "datetime").
# Kinds suffixed with "?" are optional: absent columns are allowed, values may be NaN.
Schema = Mapping[str, str]

OBSERVATION_COLUMNS: Schema = {
    "logger_id": "str",
    "timestamp": "datetime",
    "value": "float",
    "unit": "str",
}

CALIBRATION_COLUMNS: Schema = {
    "batch_id": "str",
    "logger_id": "str",
    "unit": "str",
    "coefficient": "float",
    "intercept": "float",
    "r2": "float?",
    "n": "int",
}

LOGGER_METADATA_COLUMNS: Schema = {
    "logger_id": "str",
    "tank": "str",
    "treatment": "str",
}

FRAGMENT_METADATA_COLUMNS: Schema = {
    "fragment_id": "str",
    "tank": "str",
    "treatment": "str",
    "genotype": "str",
}

PLATE_MAP_COLUMNS: Schema = {
    "well": "str",
    "sample_id": "str",
    "kind": "str",
    "known_value": "float?",
    "dilution": "float?",
}

WAX_COLUMNS: Schema = {
    "sample_id": "str",
    "mass_before_g": "float",
    "mass_after_g": "float",
    "diameter_cm": "float?",
}

FIELD_LOG_COLUMNS: Schema = {
    "date": "str",
    "time": "str?",
    "tank": "str",
    "temperature_c": "float?",
    "salinity_psu": "float?",
    "ph": "float?",
    "ph_mv": "float?",
    "ph_std_mv": "float?",
    "ph_std": "float?",
    "flow_ml": "float?",
    "flow_s": "float?",
    "par": "float?",
}

DOSE_RESPONSE_COLUMNS: List[str] = [
    "model",
    "steepness",
    "asymptote",
    "threshold",
    "ed5",
    "ed95",
    "rss",
    "n",
    "converged",
    "n_replaced",
    "message",
]

PLATE_KINDS = ("standard", "sample", "blank")


@dataclass(frozen=True)
class Observation:
    logger_id: str
    timestamp: pd.Timestamp
    value: float
    unit: str


@dataclass(frozen=True)
class CalibrationParams:
    logger_id: str
    coefficient: float
    intercept: float
    r2: float
    n: int
    unit: str = ""
    batch_id: str = ""

    def apply(self, raw: float) -> float:
        return float(raw) * self.coefficient + self.intercept


@dataclass(frozen=True)
class MetadataRecord:
    unit_id: str
    tank: str
    treatment: str
    genotype: str = ""


@dataclass(frozen=True)
class DoseResponseFit:
    """
    Parameters of one fitted log-logistic curve.

    steepness/asymptote/threshold are b/d/e of
        f(x) = d / (1 + exp(b * (ln x - ln e)))
    so threshold is the ED50. A failed fit is represented by ``no_model()``.
    """

    model: str
    steepness: float
    asymptote: float
    threshold: float
    ed5: float
    ed95: float
    rss: float
    n: int
    converged: bool
    n_replaced: int = 0
    message: str = ""

    @classmethod
    def no_model(cls, n: int = 0, message: str = "") -> "DoseResponseFit":
        nan = float("nan")
        return cls(
            model="none",
            steepness=nan,
            asymptote=nan,
            threshold=nan,
            ed5=nan,
            ed95=nan,
            rss=nan,
            n=int(n),
            converged=False,
            n_replaced=0,
            message=message,
        )

    @property
    def params(self) -> tuple[float, float, float]:
        return (self.steepness, self.asymptote, self.threshold)

    def as_row(self) -> Dict[str, object]:
        return {c: getattr(self, c) for c in DOSE_RESPONSE_COLUMNS}


@dataclass(frozen=True)
class JoinReport:
    """Keys dropped by an inner join, from either side."""

    key: str
    left_only: tuple = field(default_factory=tuple)
    right_only: tuple = field(default_factory=tuple)

    @property
    def is_clean(self) -> bool:
        return not self.left_only and not self.right_only

    def describe(self) -> str:
        parts = []
        if self.left_only:
            parts.append(f"{len(self.left_only)} {self.key} without match: {list(self.left_only)}")
        if self.right_only:
            parts.append(f"{len(self.right_only)} {self.key} unused: {list(self.right_only)}")
        return "; ".join(parts) if parts else f"all {self.key} matched"


def _is_optional(kind: str) -> bool:
    return kind.endswith("?")


def _coerce(series: pd.Series, kind: str) -> pd.Series:
    base = kind.rstrip("?")
    if base == "str":
        return series.map(lambda v: "" if pd.isna(v) else str(v).strip())
    if base == "float":
        return pd.to_numeric(series, errors="coerce").astype(float)
    if base == "int":
        return pd.to_numeric(series, errors="coerce").astype("Int64")
    if base == "datetime":
        if pd.api.types.is_datetime64_any_dtype(series):
            ts = series
        else:
            ts = pd.to_datetime(series, errors="coerce", utc=True)
        if ts.dt.tz is None:
            return ts.dt.tz_localize("UTC")
        return ts.dt.tz_convert("UTC")
    raise ValueError(f"Unknown schema kind: {kind}")


def validate_table(df: pd.DataFrame, schema: Schema, *, source: str = "table") -> pd.DataFrame:
    """
    Check that ``df`` carries every required column of ``schema`` and coerce types.

    Required non-str columns with blank or unparseable (NaN/NaT) values raise SchemaError;
    optional columns are added as NaN when absent. Extra columns are kept untouched.
    """
    out = df.copy()
    out.columns = [str(c).strip() for c in out.columns]

    missing = [c for c, kind in schema.items() if not _is_optional(kind) and c not in out.columns]
    if missing:
        raise SchemaError(f"{source}: missing required columns {missing}; found {list(out.columns)}")

    for col, kind in schema.items():
        if col not in out.columns:
            out[col] = np.nan
            continue
        raw = out[col]
        coerced = _coerce(raw, kind)
        if not _is_optional(kind) and kind.rstrip("?") != "str":
            blank = raw.isna() | raw.astype(str).str.strip().eq("")
            if blank.any():
                rows = out.index[blank].tolist()[:10]
                raise SchemaError(f"{source}: required column '{col}' is blank on rows {rows}")
            bad = coerced.isna()
            if bad.any():
                examples = raw[bad].astype(str).head(5).tolist()
                raise SchemaError(f"{source}: column '{col}' has non-{kind} values, e.g. {examples}")
        out[col] = coerced

    ordered = list(schema.keys())
    rest = [c for c in out.columns if c not in schema]
    return out[ordered + rest]


def join_report(left_keys, right_keys, *, key: str) -> JoinReport:
    left = set(pd.Series(list(left_keys), dtype=object).dropna().astype(str))
    right = set(pd.Series(list(right_keys), dtype=object).dropna().astype(str))
    return JoinReport(
        key=key,
        left_only=tuple(sorted(left - right)),
        right_only=tuple(sorted(right - left)),
    )


def empty_table(schema: Schema, extra: Optional[List[str]] = None) -> pd.DataFrame:
    cols = list(schema.keys()) + list(extra or [])
    return pd.DataFrame({c: pd.Series(dtype=object) for c in cols})
