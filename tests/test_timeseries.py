from __future__ import annotations

import sys
import unittest
from pathlib import Path

import numpy as np
import pandas as pd


REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from reef_stress_pipeline.timeseries import daily_light_integral, summarize_logger_daily  # noqa: E402


def _par_day(value: float = 1000.0) -> pd.DataFrame:
    times = pd.date_range("2021-06-01 00:00", periods=144, freq="10min", tz="UTC")
    return pd.DataFrame({"logger_id": "P1", "timestamp": times, "value": value, "unit": "par"})


class DailySummaryTests(unittest.TestCase):
    def test_local_day_assignment(self) -> None:
        times = pd.DatetimeIndex(["2021-06-01 10:00", "2021-06-01 23:00"], tz="UTC")
        obs = pd.DataFrame({"logger_id": "L1", "unit": "degC", "timestamp": times, "value": [26.0, 28.0]})

        utc = summarize_logger_daily(obs)
        self.assertEqual(len(utc), 1)
        self.assertAlmostEqual(float(utc["mean"].iloc[0]), 27.0)

        # 23:00 UTC is the next morning in Brisbane (UTC+10)
        local = summarize_logger_daily(obs, tz="Australia/Brisbane")
        self.assertEqual(local["day"].tolist(), [pd.Timestamp("2021-06-01"), pd.Timestamp("2021-06-02")])
        self.assertEqual(local["n"].tolist(), [1, 1])


class DailyLightIntegralTests(unittest.TestCase):
    def test_constant_par_full_day(self) -> None:
        dli = daily_light_integral(_par_day(1000.0))
        self.assertEqual(len(dli), 1)
        # 1000 umol m-2 s-1 * 86400 s
        self.assertAlmostEqual(float(dli["dli_mol_m2_d"].iloc[0]), 86.4)
        self.assertEqual(int(dli["n"].iloc[0]), 144)

    def test_gap_contributes_nothing(self) -> None:
        par = _par_day(1000.0)
        par = par.drop(index=range(37, 72)).reset_index(drop=True)
        dli = daily_light_integral(par)
        # 109 readings, the one before the 6 h gap is not held over it
        self.assertAlmostEqual(float(dli["dli_mol_m2_d"].iloc[0]), 1000.0 * 600 * 108 / 1e6)

    def test_negative_readings_clipped(self) -> None:
        par = _par_day(1000.0)
        par.loc[par.index < 72, "value"] = -5.0
        dli = daily_light_integral(par)
        self.assertAlmostEqual(float(dli["dli_mol_m2_d"].iloc[0]), 1000.0 * 600 * 72 / 1e6)

    def test_groups_are_independent(self) -> None:
        a = _par_day(1000.0)
        b = _par_day(500.0)
        b["logger_id"] = "P2"
        dli = daily_light_integral(pd.concat([a, b], ignore_index=True))
        np.testing.assert_allclose(dli.sort_values("logger_id")["dli_mol_m2_d"].to_numpy(), [86.4, 43.2])

    def test_empty_input(self) -> None:
        dli = daily_light_integral(_par_day().iloc[0:0])
        self.assertTrue(dli.empty)
        self.assertIn("dli_mol_m2_d", dli.columns)


if __name__ == "__main__":
    unittest.main()
