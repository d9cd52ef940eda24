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

from reef_stress_pipeline.schemas import SchemaError  # noqa: E402
from reef_stress_pipeline.standards import (  # noqa: E402
    StandardCurveError,
    areal_density,
    build_areal_table,
    fit_standard_curve,
    fragment_surface_area,
    hemocytometer_density,
    quantify_plate,
    read_wax_table,
    surface_area_curve,
)


class ArealDensityTests(unittest.TestCase):
    def test_scales_with_volume_and_inverse_area(self) -> None:
        base = float(areal_density(10.0, 2.0, 5.0))
        self.assertAlmostEqual(base, 4.0)
        self.assertAlmostEqual(float(areal_density(10.0, 4.0, 5.0)), 2 * base)
        self.assertAlmostEqual(float(areal_density(10.0, 2.0, 10.0)), base / 2)

    def test_non_positive_area_is_nan(self) -> None:
        out = areal_density([1.0, 1.0], [1.0, 1.0], [0.0, -2.0])
        self.assertTrue(np.isnan(out).all())

    def test_hemocytometer_density(self) -> None:
        # 40 cells over 4 squares -> 10 per 0.1 uL -> 1e5 per mL, x2 dilution
        self.assertAlmostEqual(float(hemocytometer_density(40, 4, 2.0)), 2e5)
        self.assertTrue(np.isnan(hemocytometer_density(10, 0)))


class StandardCurveTests(unittest.TestCase):
    def test_linear_standards(self) -> None:
        reading = np.array([0.1, 0.2, 0.4, 0.8])
        curve = fit_standard_curve(2.0 * reading + 1.0, reading)
        self.assertAlmostEqual(curve.slope, 2.0)
        self.assertAlmostEqual(curve.intercept, 1.0)
        self.assertAlmostEqual(curve.r2, 1.0)
        self.assertEqual((curve.reading_min, curve.reading_max), (0.1, 0.8))

    def test_single_standard_raises(self) -> None:
        with self.assertRaises(StandardCurveError):
            fit_standard_curve([1.0], [0.5])

    def test_surface_area_from_wax_spheres(self) -> None:
        d = np.array([1.0, 2.0, 3.0, 4.0])
        area = np.pi * d**2
        standards = pd.DataFrame(
            {
                "sample_id": ["s1", "s2", "s3", "s4"],
                "diameter_cm": d,
                "mass_before_g": 1.0,
                "mass_after_g": 1.0 + 0.01 * area,
            }
        )
        curve = surface_area_curve(standards)
        self.assertAlmostEqual(curve.slope, 100.0, places=6)
        self.assertAlmostEqual(curve.intercept, 0.0, places=6)

        frags = pd.DataFrame({"sample_id": ["F01", "F02"], "mass_before_g": [2.0, 2.0], "mass_after_g": [2.2, 1.9]})
        with self.assertWarns(UserWarning):
            out = fragment_surface_area(frags, curve)
        self.assertAlmostEqual(float(out["surface_area_cm2"].iloc[0]), 20.0, places=6)
        # mass loss -> negative area -> NaN
        self.assertTrue(np.isnan(out["surface_area_cm2"].iloc[1]))

    def test_standards_without_diameter_raise(self) -> None:
        standards = pd.DataFrame({"diameter_cm": [1.0, np.nan], "mass_before_g": [1.0, 1.0], "mass_after_g": [1.1, 1.2]})
        with self.assertRaises(SchemaError):
            surface_area_curve(standards)

    def test_read_wax_table(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "wax.csv"
            path.write_text("sample_id,mass_before_g,mass_after_g\n1.0,2.5,2.75\nF02,3,3.5\n", encoding="utf-8")
            df = read_wax_table(path)
        self.assertEqual(df["sample_id"].tolist(), ["1", "F02"])
        np.testing.assert_allclose(df["wax_mass_g"].to_numpy(), [0.25, 0.5])
        self.assertIn("diameter_cm", df.columns)


class PlateQuantificationTests(unittest.TestCase):
    def _plate(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "plate_id": "plate1",
                "well": ["A1", "A2", "A3", "A4", "B1", "C1", "C2", "H12"],
                "reading": [0.1, 0.2, 0.3, 0.4, 0.1, 0.25, 0.6, 0.9],
            }
        )

    def _map(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "plate_id": "plate1",
                "well": ["A1", "A2", "A3", "A4", "B1", "C1", "C2"],
                "sample_id": ["std0", "std10", "std20", "std30", "blank", "F01", "F02"],
                "kind": ["standard"] * 4 + ["blank", "sample", "sample"],
                "known_value": [0.0, 10.0, 20.0, 30.0, np.nan, np.nan, np.nan],
                "dilution": [1.0, 1.0, 1.0, 1.0, 1.0, 2.0, 1.0],
            }
        )

    def test_concentration_with_blank_and_dilution(self) -> None:
        with self.assertWarns(UserWarning):
            samples, curves, report = quantify_plate(self._plate(), self._map())

        self.assertEqual(report.left_only, ("plate1:H12",))
        self.assertEqual(len(curves), 1)
        self.assertAlmostEqual(float(curves["slope"].iloc[0]), 100.0, places=6)

        s = samples.set_index("sample_id")
        # (0.25 - 0.1) * 100 * 2
        self.assertAlmostEqual(float(s.loc["F01", "concentration"]), 30.0, places=6)
        self.assertFalse(bool(s.loc["F01", "extrapolated"]))
        self.assertTrue(bool(s.loc["F02", "extrapolated"]))

    def test_plate_without_standards_gets_nan_curve(self) -> None:
        plate = pd.concat(
            [self._plate(), pd.DataFrame({"plate_id": ["plate2"], "well": ["C1"], "reading": [0.3]})],
            ignore_index=True,
        )
        pm = pd.concat(
            [
                self._map(),
                pd.DataFrame(
                    {
                        "plate_id": ["plate2"],
                        "well": ["C1"],
                        "sample_id": ["F03"],
                        "kind": ["sample"],
                        "known_value": [np.nan],
                        "dilution": [1.0],
                    }
                ),
            ],
            ignore_index=True,
        )
        with self.assertWarns(UserWarning):
            samples, curves, _ = quantify_plate(plate, pm)

        c = curves.set_index("plate_id")
        self.assertAlmostEqual(float(c.loc["plate1", "slope"]), 100.0, places=6)
        self.assertTrue(np.isnan(c.loc["plate2", "slope"]))
        self.assertIn("No standard wells", c.loc["plate2", "message"])

        s = samples.set_index("sample_id")
        self.assertAlmostEqual(float(s.loc["F01", "concentration"]), 30.0, places=6)
        self.assertTrue(np.isnan(s.loc["F03", "concentration"]))

    def test_single_plate_without_standards_does_not_raise(self) -> None:
        m = self._map()
        m = m[m["kind"] != "standard"]
        with self.assertWarns(UserWarning):
            samples, curves, _ = quantify_plate(self._plate(), m)
        self.assertEqual(len(curves), 1)
        self.assertTrue(samples["concentration"].isna().all())


class ArealTableTests(unittest.TestCase):
    def test_join_and_density(self) -> None:
        samples = pd.DataFrame({"sample_id": ["F01", "F02"], "concentration": [30.0, 12.0]})
        surface = pd.DataFrame({"sample_id": ["F01", "F03"], "surface_area_cm2": [5.0, 8.0]})
        with self.assertWarns(UserWarning):
            out, report = build_areal_table(samples, surface, homogenate_volume_ml=10.0)
        self.assertEqual(report.left_only, ("F02",))
        self.assertEqual(report.right_only, ("F03",))
        self.assertEqual(out["sample_id"].tolist(), ["F01"])
        self.assertAlmostEqual(float(out["protein_ug_cm2"].iloc[0]), 60.0)

    def test_per_sample_volume_overrides_default(self) -> None:
        samples = pd.DataFrame(
            {"sample_id": ["F01", "F02"], "concentration": [30.0, 30.0], "homogenate_volume_ml": [20.0, np.nan]}
        )
        surface = pd.DataFrame({"sample_id": ["F01", "F02"], "surface_area_cm2": [5.0, 5.0]})
        out, report = build_areal_table(samples, surface, homogenate_volume_ml=10.0)
        self.assertTrue(report.is_clean)
        self.assertEqual(out["protein_ug_cm2"].tolist(), [120.0, 60.0])

    def test_fragment_metadata_attached(self) -> None:
        samples = pd.DataFrame({"sample_id": ["F01"], "concentration": [30.0]})
        surface = pd.DataFrame({"sample_id": ["F01"], "surface_area_cm2": [5.0]})
        frags = pd.DataFrame({"fragment_id": ["F01"], "tank": ["T1"], "treatment": ["heat"], "genotype": ["G1"]})
        out, _ = build_areal_table(samples, surface, fragments=frags)
        self.assertEqual(out["treatment"].iloc[0], "heat")


if __name__ == "__main__":
    unittest.main()
