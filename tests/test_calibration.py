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

from reef_stress_pipeline.calibration import (  # noqa: E402
    EXCLUDE_FIT_FAILED,
    EXCLUDE_NO_OVERLAP,
    EXCLUDE_TOO_FEW,
    CalibrationError,
    apply_calibration,
    fit_logger_calibration,
    read_calibration_csv,
    reference_series,
    residual_sd,
    write_calibration_csv,
)


def _obs(logger_id: str, times, values, unit: str = "degC") -> pd.DataFrame:
    return pd.DataFrame(
        {
            "logger_id": logger_id,
            "timestamp": pd.DatetimeIndex(times),
            "value": np.asarray(values, dtype=float),
            "unit": unit,
        }
    )


class CalibrationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.times = pd.date_range("2021-06-01 00:00", periods=8, freq="10min", tz="UTC")
        self.ref = np.array([26.0, 26.5, 27.0, 27.2, 27.9, 28.4, 28.8, 29.5])
        self.obs = pd.concat(
            [
                _obs("S1", self.times, self.ref + 0.1),
                _obs("S2", self.times, self.ref - 0.1),
                _obs("L1", self.times, 2.0 * self.ref + 5.0),
            ],
            ignore_index=True,
        )

    def test_reference_is_mean_of_standards(self) -> None:
        ref = reference_series(self.obs, ["S1", "S2"])
        np.testing.assert_allclose(ref["reference"].to_numpy(), self.ref)
        self.assertTrue((ref["n_standards"] == 2).all())

    def test_linear_logger_recovers_inverse_line(self) -> None:
        run = fit_logger_calibration(self.obs, standard_ids=["S1", "S2"])
        p = run.get("L1")
        self.assertIsNotNone(p)
        self.assertAlmostEqual(p.coefficient, 0.5, places=9)
        self.assertAlmostEqual(p.intercept, -2.5, places=9)
        self.assertAlmostEqual(p.r2, 1.0, places=9)
        self.assertEqual(p.n, 8)
        self.assertEqual(p.unit, "degC")
        # calibrated readings reproduce the reference
        np.testing.assert_allclose([p.apply(v) for v in 2.0 * self.ref + 5.0], self.ref)

    def test_standards_are_fit_too(self) -> None:
        run = fit_logger_calibration(self.obs, standard_ids=["S1", "S2"])
        self.assertEqual(sorted(run.params["logger_id"]), ["L1", "S1", "S2"])
        s1 = run.get("S1")
        self.assertAlmostEqual(s1.coefficient, 1.0, places=9)
        self.assertAlmostEqual(s1.intercept, -0.1, places=9)
        self.assertTrue(run.excluded.empty)

    def test_unfittable_loggers_are_listed_not_fatal(self) -> None:
        later = pd.date_range("2021-07-01", periods=5, freq="10min", tz="UTC")
        obs = pd.concat(
            [
                self.obs,
                _obs("L2", later, np.arange(5.0)),
                _obs("L3", self.times[:2], [1.0, 2.0]),
                _obs("L4", self.times, np.full(8, 3.0)),
            ],
            ignore_index=True,
        )
        with self.assertWarns(UserWarning):
            run = fit_logger_calibration(obs, standard_ids=["S1", "S2"], batch_id="b1")

        reasons = dict(zip(run.excluded["logger_id"], run.excluded["reason"]))
        self.assertEqual(
            reasons,
            {"L2": EXCLUDE_NO_OVERLAP, "L3": EXCLUDE_TOO_FEW, "L4": EXCLUDE_FIT_FAILED},
        )
        self.assertIn("L1", run.params["logger_id"].tolist())
        self.assertTrue((run.params["batch_id"] == "b1").all())
        self.assertIsNone(run.get("L2"))

    def test_out_of_range_readings_are_dropped(self) -> None:
        obs = self.obs.copy()
        obs.loc[(obs["logger_id"] == "L1") & (obs["timestamp"] == self.times[0]), "value"] = 250.0
        with self.assertWarns(UserWarning):
            run = fit_logger_calibration(obs, standard_ids=["S1", "S2"], max_value=100.0)
        self.assertEqual(run.n_dropped_out_of_range, 1)
        self.assertEqual(run.get("L1").n, 7)
        self.assertAlmostEqual(run.get("L1").coefficient, 0.5, places=9)

    def test_window_limits_points(self) -> None:
        run = fit_logger_calibration(
            self.obs,
            standard_ids=["S1", "S2"],
            start="2021-06-01 00:20",
            end="2021-06-01 00:50",
        )
        self.assertEqual(run.get("L1").n, 4)

    def test_missing_standards_raise(self) -> None:
        with self.assertRaises(CalibrationError):
            fit_logger_calibration(self.obs, standard_ids=["NOPE"])

    def test_mixed_units_need_explicit_unit(self) -> None:
        obs = pd.concat([self.obs, _obs("S1", self.times, np.arange(8.0), unit="lux")], ignore_index=True)
        with self.assertRaises(ValueError):
            fit_logger_calibration(obs, standard_ids=["S1", "S2"])
        run = fit_logger_calibration(obs, standard_ids=["S1", "S2"], unit="degC")
        self.assertAlmostEqual(run.get("L1").coefficient, 0.5, places=9)

    def test_apply_calibration_reports_missing_loggers(self) -> None:
        run = fit_logger_calibration(self.obs, standard_ids=["S1", "S2"])
        extra = _obs("L9", self.times, np.arange(8.0))
        obs = pd.concat([self.obs, extra], ignore_index=True)
        with self.assertWarns(UserWarning):
            out, report = apply_calibration(obs, run.params)
        self.assertEqual(report.left_only, ("L9:degC",))
        self.assertNotIn("L9", out["logger_id"].tolist())
        l1 = out[out["logger_id"] == "L1"].sort_values("timestamp")
        np.testing.assert_allclose(l1["value_calibrated"].to_numpy(), self.ref)

    def test_apply_calibration_reports_uncalibrated_unit(self) -> None:
        run = fit_logger_calibration(self.obs, standard_ids=["S1", "S2"])
        light = _obs("L1", self.times[:3], [100.0, 200.0, 300.0], unit="lux")
        obs = pd.concat([self.obs[self.obs["logger_id"] == "L1"], light], ignore_index=True)
        with self.assertWarns(UserWarning):
            out, report = apply_calibration(obs, run.params)
        self.assertEqual(report.key, "logger_id:unit")
        self.assertEqual(report.left_only, ("L1:lux",))
        self.assertFalse(report.is_clean)
        self.assertEqual(set(out["unit"]), {"degC"})
        self.assertEqual(len(out), 8)

    def test_params_csv_roundtrip_keeps_ids_as_text(self) -> None:
        obs = self.obs.copy()
        obs["logger_id"] = obs["logger_id"].replace({"L1": "20527101"})
        run = fit_logger_calibration(obs, standard_ids=["S1", "S2"])
        with tempfile.TemporaryDirectory() as td:
            path = write_calibration_csv(run.params, Path(td) / "calibration__degC.csv")
            back = read_calibration_csv(path)
        self.assertIn("20527101", back["logger_id"].tolist())
        row = back[back["logger_id"] == "20527101"].iloc[0]
        self.assertAlmostEqual(float(row["coefficient"]), 0.5, places=9)

    def test_residual_sd_is_zero_for_exact_lines(self) -> None:
        run = fit_logger_calibration(self.obs, standard_ids=["S1", "S2"])
        sd = residual_sd(run)
        self.assertLess(float(sd["L1"]), 1e-9)


if __name__ == "__main__":
    unittest.main()
