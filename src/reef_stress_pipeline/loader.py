from __future__ import annotations

import re
import warnings
from io import StringIO
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
import yaml

from .schemas import (
    FRAGMENT_METADATA_COLUMNS,
    LOGGER_METADATA_COLUMNS,
    OBSERVATION_COLUMNS,
    PLATE_KINDS,
    PLATE_MAP_COLUMNS,
    JoinReport,
    SchemaError,
    join_report,
    validate_table,
)
from .units import fahrenheit_to_celsius


WELL_RE = re.compile(r"^([A-H])0*([1-9]|1[0-2])$", re.IGNORECASE)
_GMT_RE = re.compile(r"GMT\s*([+-])(\d{1,2}):?(\d{2})")
_SERIAL_RE = re.compile(r"(?:LGR S/N|Serial(?: Number)?|Plot Title)\s*[:,]?\s*\"?\s*(\d+)", re.IGNORECASE)
_HOBO_TIME_FORMATS = ("%m/%d/%y %I:%M:%S %p", "%m/%d/%Y %I:%M:%S %p", "%m/%d/%y %H:%M:%S", "%Y-%m-%d %H:%M:%S")


def load_yaml(path: Path) -> Dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as f:
        obj = yaml.safe_load(f)
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ValueError(f"YAML root must be a mapping: {path}")
    return obj


def read_table(path: Path, *, dtype: Any = None, sheet_name: Any = 0) -> pd.DataFrame:
    """Hand-entered tables: .csv, .tsv/.txt (tab) or .xlsx (first sheet unless given)."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in (".xlsx", ".xlsm"):
        return pd.read_excel(path, sheet_name=sheet_name, dtype=dtype, engine="openpyxl")
    if suffix in (".tsv", ".txt"):
        return pd.read_csv(path, sep="\t", dtype=dtype)
    return pd.read_csv(path, dtype=dtype)


def normalize_id(s: Any) -> str:
    """Logger serials/fragment ids as text; spreadsheets turn 20527123 into 20527123.0."""
    if s is None or (isinstance(s, float) and pd.isna(s)):
        return ""
    out = str(s).strip()
    if re.fullmatch(r"\d+\.0+", out):
        out = out.split(".", 1)[0]
    return out


def normalize_plate_id(s: str) -> str:
    s2 = str(s).strip().lower()
    m = re.search(r"(\d+)", s2)
    if m:
        return f"plate{int(m.group(1))}"
    if s2.startswith("plate"):
        return s2
    return f"plate{s2}"


def normalize_well(well: str) -> str:
    w = str(well).strip().upper()
    m = re.match(r"^([A-H])0*([0-9]+)$", w)
    if m:
        return f"{m.group(1)}{int(m.group(2))}"
    return w


def parse_well(well: str) -> Tuple[str, int]:
    w = normalize_well(well)
    m = WELL_RE.match(w)
    if not m:
        raise ValueError(f"Invalid well: {well}")
    return m.group(1).upper(), int(m.group(2))


def _read_text_flexible(p: Path) -> str:
    data = Path(p).read_bytes()
    for enc in ("utf-8-sig", "utf-8", "cp1252", "utf-16", "utf-16-le", "utf-16-be"):
        try:
            return data.decode(enc)
        except UnicodeDecodeError:
            continue
    return data.decode("latin-1", errors="ignore")


def _sniff_sep(line: str) -> str:
    return "\t" if line.count("\t") >= line.count(",") else ","


# --------------------------------------------------------------------------------------
# Temperature / light loggers
# --------------------------------------------------------------------------------------


def _gmt_offset_minutes(header: str) -> int:
    m = _GMT_RE.search(header)
    if not m:
        return 0
    sign = -1 if m.group(1) == "-" else 1
    return sign * (int(m.group(2)) * 60 + int(m.group(3)))


def _parse_hobo_times(values: pd.Series) -> pd.Series:
    s = values.astype(str).str.strip()
    for fmt in _HOBO_TIME_FORMATS:
        ts = pd.to_datetime(s, format=fmt, errors="coerce")
        if ts.notna().mean() > 0.9:
            return ts
    return pd.to_datetime(s, errors="coerce")


def _observations(logger_id: str, ts_utc: pd.Series, values: pd.Series, unit: str) -> pd.DataFrame:
    out = pd.DataFrame(
        {
            "logger_id": logger_id,
            "timestamp": ts_utc,
            "value": pd.to_numeric(values, errors="coerce"),
            "unit": unit,
        }
    )
    out = out.dropna(subset=["timestamp", "value"]).reset_index(drop=True)
    return validate_table(out, OBSERVATION_COLUMNS, source=f"observations[{logger_id}]")


def read_hobo_export(path: Path, *, logger_id: Optional[str] = None) -> pd.DataFrame:
    """
    Parse a HOBOware CSV export (temperature and optionally light pendants).

    Layout:
      "Plot Title: 20527123"                          (optional)
      "#","Date Time, GMT-04:00","Temp, °F (LGR S/N: ...)","Intensity, Lux (...)",...
      1,06/01/21 12:00:00 PM,78.15,1234.5,...

    Timestamps are shifted by the header's GMT offset to UTC. °F is converted to °C.
    Returns long Observation table (units: degC, lux).
    """
    path = Path(path)
    text = _read_text_flexible(path)
    lines = text.splitlines()

    header_i = None
    for i, ln in enumerate(lines[:20]):
        if "Date Time" in ln:
            header_i = i
            break
    if header_i is None:
        raise SchemaError(f"Not a Hobo export (no 'Date Time' header): {path}")

    if logger_id is None:
        serial = None
        for ln in lines[: header_i + 1]:
            m = _SERIAL_RE.search(ln)
            if m:
                serial = m.group(1)
                break
        logger_id = serial if serial else path.stem
    logger_id = normalize_id(logger_id)

    sep = _sniff_sep(lines[header_i])
    df = pd.read_csv(StringIO("\n".join(lines[header_i:])), sep=sep, engine="python")
    df.columns = [str(c).strip() for c in df.columns]

    time_col = next((c for c in df.columns if c.startswith("Date Time")), None)
    temp_col = next((c for c in df.columns if c.startswith("Temp")), None)
    light_col = next((c for c in df.columns if c.startswith("Intensity")), None)
    if time_col is None or (temp_col is None and light_col is None):
        raise SchemaError(f"Hobo export lacks time or value columns: {list(df.columns)} in {path}")

    naive = _parse_hobo_times(df[time_col])
    ts_utc = (naive - pd.Timedelta(minutes=_gmt_offset_minutes(time_col))).dt.tz_localize("UTC")

    parts: List[pd.DataFrame] = []
    if temp_col is not None:
        vals = pd.to_numeric(df[temp_col], errors="coerce")
        if re.search(r"°\s*F|\bF\b", temp_col):
            vals = pd.Series(fahrenheit_to_celsius(vals), index=vals.index)
        parts.append(_observations(logger_id, ts_utc, vals, "degC"))
    if light_col is not None:
        parts.append(_observations(logger_id, ts_utc, df[light_col], "lux"))
    return pd.concat(parts, ignore_index=True)


def read_odyssey_export(path: Path, *, logger_id: Optional[str] = None, tz: str = "UTC") -> pd.DataFrame:
    """
    Parse an Odyssey PAR logger CSV export.

    A free-text preamble (site, logger serial) precedes a table whose header
    starts with 'Scan No' and has Date (day-first), Time and Raw Value columns.
    Wall-clock times are localized to ``tz`` and converted to UTC; DST gaps become NaT and are dropped.
    """
    path = Path(path)
    lines = _read_text_flexible(path).splitlines()
    header_i = next((i for i, ln in enumerate(lines) if ln.strip().lower().startswith("scan no")), None)
    if header_i is None:
        raise SchemaError(f"Not an Odyssey export (no 'Scan No' header): {path}")

    if logger_id is None:
        serial = None
        for ln in lines[:header_i]:
            m = _SERIAL_RE.search(ln)
            if m:
                serial = m.group(1)
                break
        logger_id = serial if serial else path.stem
    logger_id = normalize_id(logger_id)

    sep = _sniff_sep(lines[header_i])
    df = pd.read_csv(StringIO("\n".join(lines[header_i:])), sep=sep, engine="python")
    df.columns = [str(c).strip() for c in df.columns]
    lower = {c.lower(): c for c in df.columns}
    for need in ("date", "time", "raw value"):
        if need not in lower:
            raise SchemaError(f"Odyssey export missing '{need}' column: {list(df.columns)} in {path}")

    stamp = df[lower["date"]].astype(str).str.strip() + " " + df[lower["time"]].astype(str).str.strip()
    naive = pd.to_datetime(stamp, dayfirst=True, errors="coerce")
    local = naive.dt.tz_localize(tz, ambiguous="NaT", nonexistent="NaT")
    return _observations(logger_id, local.dt.tz_convert("UTC"), df[lower["raw value"]], "raw_par")


def read_observations_csv(path: Path) -> pd.DataFrame:
    """Re-read a tidy observation table written by an earlier stage."""
    df = pd.read_csv(path, dtype={"logger_id": str})
    df["logger_id"] = df["logger_id"].map(normalize_id)
    return validate_table(df, OBSERVATION_COLUMNS, source=str(path))


def filter_window(df: pd.DataFrame, start: Any = None, end: Any = None, *, col: str = "timestamp") -> pd.DataFrame:
    """Keep rows with start <= timestamp <= end (either bound optional; naive bounds are UTC)."""
    mask = pd.Series(True, index=df.index)
    for bound, op in ((start, "ge"), (end, "le")):
        if bound is None or (isinstance(bound, str) and not bound.strip()):
            continue
        ts = pd.Timestamp(bound)
        ts = ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
        mask &= getattr(df[col], op)(ts)
    return df.loc[mask].reset_index(drop=True)


# --------------------------------------------------------------------------------------
# Metadata
# --------------------------------------------------------------------------------------


def _read_metadata(path: Path, schema, id_col: str) -> pd.DataFrame:
    df = read_table(path, dtype=str).fillna("")
    df.columns = [str(c).strip() for c in df.columns]
    df = validate_table(df, schema, source=str(path))
    df[id_col] = df[id_col].map(normalize_id)
    dup = df[id_col][df[id_col].duplicated()].unique().tolist()
    if dup:
        raise SchemaError(f"{path}: duplicated {id_col} values {dup}")
    return df


def read_logger_metadata(path: Path) -> pd.DataFrame:
    """CSV: logger_id, tank, treatment (+ any extra columns kept as-is)."""
    return _read_metadata(path, LOGGER_METADATA_COLUMNS, "logger_id")


def read_fragment_metadata(path: Path) -> pd.DataFrame:
    """CSV: fragment_id, tank, treatment, genotype (+ extra columns)."""
    return _read_metadata(path, FRAGMENT_METADATA_COLUMNS, "fragment_id")


def attach_metadata(df: pd.DataFrame, metadata: pd.DataFrame, *, key: str) -> Tuple[pd.DataFrame, JoinReport]:
    """
    Inner join ``metadata`` onto ``df`` by ``key``.

    Rows whose key has no metadata are dropped, but the dropped keys (and any
    unused metadata keys) are returned in the JoinReport and warned about.
    """
    if key not in df.columns:
        raise KeyError(f"attach_metadata requires '{key}' column in df.")
    if key not in metadata.columns:
        raise KeyError(f"attach_metadata requires '{key}' column in metadata.")
    left = df.copy()
    right = metadata.copy()
    left[key] = left[key].map(normalize_id)
    right[key] = right[key].map(normalize_id)

    report = join_report(left[key].unique(), right[key].unique(), key=key)
    overlap = [c for c in right.columns if c != key and c in left.columns]
    if overlap:
        right = right.drop(columns=overlap)
    joined = left.merge(right, on=key, how="inner", validate="m:1")
    if report.left_only:
        warnings.warn(f"No metadata for {report.describe()}", UserWarning)
    return joined.reset_index(drop=True), report


# --------------------------------------------------------------------------------------
# Plate reader (BioTek Synergy endpoint exports)
# --------------------------------------------------------------------------------------


def _plate_id_from_context(lines: List[str], start_idx: int) -> str:
    # scan upwards to find "Plate Number\tPlate 1"
    for j in range(start_idx, max(-1, start_idx - 200), -1):
        line = lines[j]
        if line.startswith("Plate Number"):
            parts = re.split(r"[\t,]", line)
            if len(parts) >= 2 and parts[1].strip():
                return normalize_plate_id(parts[1])
    return "plate1"


def _is_grid_header(cells: List[str]) -> bool:
    nums = [c.strip() for c in cells[1:] if c.strip()]
    return len(nums) >= 3 and nums[:3] == ["1", "2", "3"] and not cells[0].strip()


def read_synergy_endpoint(path: Path) -> pd.DataFrame:
    """
    Parse a Synergy endpoint export (absorbance/fluorescence) into tidy
    [plate_id, well, reading]. Each plate block is an 8x12 grid:

        <blank>  1      2      ...  12
        A        0.123  0.456  ...  0.789   562
        ...
    Trailing read-label cells (e.g. '562') beyond the numbered columns are ignored.
    Non-numeric cells ('OVRFLW', '?????') become NaN and are dropped.
    """
    path = Path(path)
    lines = _read_text_flexible(path).splitlines()
    blocks: List[pd.DataFrame] = []

    for i, ln in enumerate(lines):
        sep = _sniff_sep(ln)
        cells = ln.split(sep)
        if not _is_grid_header(cells):
            continue
        col_nums: Dict[int, int] = {}
        for j, c in enumerate(cells[1:], start=1):
            c = c.strip()
            if c.isdigit() and 1 <= int(c) <= 12:
                col_nums[j] = int(c)
        plate_id = _plate_id_from_context(lines, i)
        rows = []
        for ln2 in lines[i + 1 : i + 1 + 16]:
            vals = ln2.split(sep)
            row = vals[0].strip().upper() if vals else ""
            if not re.fullmatch(r"[A-H]", row):
                if rows:
                    break
                continue
            for j, cnum in col_nums.items():
                raw = vals[j].strip() if j < len(vals) else ""
                rows.append({"plate_id": plate_id, "well": f"{row}{cnum}", "reading": raw})
        if rows:
            blocks.append(pd.DataFrame(rows))

    if not blocks:
        raise SchemaError(f"Could not find any 8x12 plate grid in: {path}")

    tidy = pd.concat(blocks, ignore_index=True)
    tidy["reading"] = pd.to_numeric(tidy["reading"], errors="coerce")
    tidy = tidy.dropna(subset=["reading"])
    dup = tidy.duplicated(subset=["plate_id", "well"])
    if dup.any():
        # Multiple read blocks for the same plate: keep the first (primary read)
        tidy = tidy.loc[~dup]
    return tidy.reset_index(drop=True)


def read_plate_map_tsv(path: Path) -> pd.DataFrame:
    """
    TSV with columns:
      - required: well, sample_id, kind (standard | sample | blank)
      - optional: plate, known_value (standards), dilution (default 1)
    Blank lines are allowed.
    """
    df = pd.read_csv(path, sep="\t", dtype=str).fillna("")
    df.columns = [c.strip() for c in df.columns]
    df = validate_table(df, PLATE_MAP_COLUMNS, source=str(path))

    df["well"] = df["well"].map(normalize_well)
    bad_wells = [w for w in df["well"] if not WELL_RE.match(w)]
    if bad_wells:
        raise SchemaError(f"{path}: invalid wells {bad_wells}")
    df["kind"] = df["kind"].str.lower()
    bad_kind = sorted(set(df["kind"]) - set(PLATE_KINDS))
    if bad_kind:
        raise SchemaError(f"{path}: unknown kind values {bad_kind}; expected {PLATE_KINDS}")
    std_missing = df[(df["kind"] == "standard") & df["known_value"].isna()]
    if not std_missing.empty:
        raise SchemaError(f"{path}: standard wells without known_value: {std_missing['well'].tolist()}")

    if "plate" in df.columns:
        df["plate_id"] = df["plate"].map(lambda s: normalize_plate_id(s) if str(s).strip() else "")
    else:
        df["plate_id"] = ""  # wildcard
    df["dilution"] = df["dilution"].fillna(1.0)
    return df[["plate_id", "well", "sample_id", "kind", "known_value", "dilution"]].reset_index(drop=True)


def attach_plate_map(plate: pd.DataFrame, plate_map: pd.DataFrame) -> Tuple[pd.DataFrame, JoinReport]:
    """
    Attach plate-map rows to tidy readings. A plate map row with empty plate_id
    applies to every plate. Wells without a plate-map row are dropped and reported.
    """
    specific = plate_map[plate_map["plate_id"] != ""]
    wildcard = plate_map[plate_map["plate_id"] == ""].drop(columns=["plate_id"])

    parts = []
    if not specific.empty:
        parts.append(plate.merge(specific, on=["plate_id", "well"], how="inner", validate="1:1"))
    if not wildcard.empty:
        rest = plate
        if not specific.empty:
            used = set(zip(specific["plate_id"], specific["well"]))
            rest = plate[[(p, w) not in used for p, w in zip(plate["plate_id"], plate["well"])]]
        parts.append(rest.merge(wildcard, on="well", how="inner", validate="m:1"))
    joined = pd.concat(parts, ignore_index=True) if parts else plate.iloc[0:0]

    left_keys = (plate["plate_id"] + ":" + plate["well"]).unique()
    hit_keys = (joined["plate_id"] + ":" + joined["well"]).unique() if not joined.empty else []
    report = JoinReport(key="well", left_only=tuple(sorted(set(left_keys) - set(hit_keys))), right_only=())
    return joined, report
