from __future__ import annotations

import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np
import pandas as pd


REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from reef_stress_pipeline.loader import (  # noqa: E402
    attach_metadata,
    filter_window,
    normalize_id,
    parse_well,
    read_hobo_export,
    read_logger_metadata,
    read_odyssey_export,
    read_plate_map_tsv,
    read_synergy_endpoint,
)
from reef_stress_pipeline.schemas import SchemaError  # noqa: E402


HOBO_TEXT = (
    '"Plot Title: 20527101"\n'
    '"#","Date Time, GMT-04:00","Temp, °F (LGR S/N: 20527101, SEN S/N: 20527101)",'
    '"Intensity, Lux (LGR S/N: 20527101, SEN S/N: 20527101)"\n'
    "1,06/01/21 12:00:00 PM,77.0,1000.0\n"
    "2,06/01/21 12:10:00 PM,86.0,2000.0\n"
    "3,06/01/21 12:20:00 PM,,\n"
)

ODYSSEY_TEXT = (
    "Site Name,Reef flat\n"
    "Logger Serial Number,5871\n"
    "\n"
    "Scan No,Date,Time,Raw Value\n"
    "1,01/06/2021,12:00:00,100\n"
    "2,01/06/2021,12:15:00,150\n"
)


def _synergy_text() -> str:
    lines = ["Plate Number\tPlate 2", "", "\t" + "\t".join(str(c) for c in range(1, 13))]
    for r_i, row in enumerate("ABCDEFGH"):
        vals = [f"{0.1 * (r_i + 1) + 0.001 * c:.3f}" for c in range(1, 13)]
        if row == "H":
            vals[11] = "OVRFLW"
        lines.append(row + "\t" + "\t".join(vals) + "\t562")
    return "\n".join(lines) + "\n"


class IdTests(unittest.TestCase):
    def test_normalize_id_strips_spreadsheet_float(self) -> None:
        self.assertEqual(normalize_id(20527101.0), "20527101")
        self.assertEqual(normalize_id("20527101.0"), "20527101")
        self.assertEqual(normalize_id(" F01 "), "F01")
        self.assertEqual(normalize_id(float("nan")), "")

    def test_parse_well(self) -> None:
        self.assertEqual(parse_well("a01"), ("A", 1))
        self.assertEqual(parse_well("H12"), ("H", 12))
        with self.assertRaises(ValueError):
            parse_well("I1")


class LoggerExportTests(unittest.TestCase):
    def test_hobo_export_to_utc_celsius(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "tank1.csv"
            path.write_text(HOBO_TEXT, encoding="utf-8")
            obs = read_hobo_export(path)

        self.assertEqual(set(obs["logger_id"]), {"20527101"})
        temp = obs[obs["unit"] == "degC"].sort_values("timestamp")
        light = obs[obs["unit"] == "lux"]
        np.testing.assert_allclose(temp["value"].to_numpy(), [25.0, 30.0])
        self.assertEqual(len(light), 2)
        self.assertEqual(temp["timestamp"].iloc[0], pd.Timestamp("2021-06-01 16:00", tz="UTC"))

    def test_hobo_logger_id_override(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "tank1.csv"
            path.write_text(HOBO_TEXT, encoding="utf-8")
            obs = read_hobo_export(path, logger_id="custom")
        self.assertEqual(set(obs["logger_id"]), {"custom"})

    def test_non_hobo_file_raises(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "x.csv"
            path.write_text("a,b\n1,2\n", encoding="utf-8")
            with self.assertRaises(SchemaError):
                read_hobo_export(path)

    def test_odyssey_export_localized(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "par.csv"
            path.write_text(ODYSSEY_TEXT, encoding="utf-8")
            obs = read_odyssey_export(path, tz="Australia/Brisbane")

        self.assertEqual(set(obs["logger_id"]), {"5871"})
        self.assertEqual(set(obs["unit"]), {"raw_par"})
        self.assertEqual(obs["value"].tolist(), [100.0, 150.0])
        # 1 June 12:00 AEST (UTC+10)
        self.assertEqual(obs["timestamp"].iloc[0], pd.Timestamp("2021-06-01 02:00", tz="UTC"))

    def test_filter_window_inclusive(self) -> None:
        times = pd.date_range("2021-06-01", periods=6, freq="h", tz="UTC")
        df = pd.DataFrame({"timestamp": times, "value": range(6)})
        out = filter_window(df, "2021-06-01 01:00", "2021-06-01 03:00")
        self.assertEqual(out["value"].tolist(), [1, 2, 3])
        self.assertEqual(len(filter_window(df, None, "")), 6)


class PlateReaderTests(unittest.TestCase):
    def test_synergy_grid(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "bca.txt"
            path.write_text(_synergy_text(), encoding="utf-8")
            tidy = read_synergy_endpoint(path)

        self.assertEqual(len(tidy), 95)
        self.assertEqual(set(tidy["plate_id"]), {"plate2"})
        a1 = tidy[tidy["well"] == "A1"]["reading"].iloc[0]
        self.assertAlmostEqual(float(a1), 0.101)
        self.assertNotIn("H12", tidy["well"].tolist())

    def test_plate_map(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "map.tsv"
            path.write_text(
                "well\tsample_id\tkind\tknown_value\tdilution\n"
                "A01\tstd0\tStandard\t0\t\n"
                "A2\tstd1\tstandard\t25\t\n"
                "B1\tF01\tsample\t\t2\n",
                encoding="utf-8",
            )
            pm = read_plate_map_tsv(path)
        self.assertEqual(pm["well"].tolist(), ["A1", "A2", "B1"])
        self.assertEqual(pm["kind"].tolist(), ["standard", "standard", "sample"])
        self.assertEqual(pm["plate_id"].tolist(), ["", "", ""])
        self.assertEqual(pm["dilution"].tolist(), [1.0, 1.0, 2.0])

    def test_plate_map_standard_needs_known_value(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "map.tsv"
            path.write_text("well\tsample_id\tkind\tknown_value\nA1\tstd0\tstandard\t\n", encoding="utf-8")
            with self.assertRaises(SchemaError):
                read_plate_map_tsv(path)

    def test_plate_map_rejects_unknown_kind(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "map.tsv"
            path.write_text("well\tsample_id\tkind\nA1\tx\tcontrol\n", encoding="utf-8")
            with self.assertRaises(SchemaError):
                read_plate_map_tsv(path)


class MetadataTests(unittest.TestCase):
    def test_attach_metadata_reports_both_sides(self) -> None:
        obs = pd.DataFrame({"logger_id": ["20527101", "99", "20527101"], "value": [1.0, 2.0, 3.0]})
        meta = pd.DataFrame(
            {"logger_id": ["20527101.0", "20527102"], "tank": ["T1", "T2"], "treatment": ["heat", "control"]}
        )
        with self.assertWarns(UserWarning):
            out, report = attach_metadata(obs, meta, key="logger_id")
        self.assertEqual(report.left_only, ("99",))
        self.assertEqual(report.right_only, ("20527102",))
        self.assertEqual(out["tank"].tolist(), ["T1", "T1"])
        self.assertFalse(report.is_clean)

    def test_duplicate_logger_rows_raise(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "loggers.csv"
            path.write_text("logger_id,tank,treatment\n1,T1,heat\n1,T2,control\n", encoding="utf-8")
            with self.assertRaises(SchemaError):
                read_logger_metadata(path)

    def test_logger_metadata_from_excel(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "loggers.xlsx"
            pd.DataFrame(
                {"logger_id": ["20527101", "20527102"], "tank": ["T1", "T2"], "treatment": ["heat", "control"]}
            ).to_excel(path, index=False)
            meta = read_logger_metadata(path)
        self.assertEqual(meta["logger_id"].tolist(), ["20527101", "20527102"])
        self.assertEqual(meta["tank"].tolist(), ["T1", "T2"])


if __name__ == "__main__":
    unittest.main()
