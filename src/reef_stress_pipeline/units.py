# src/reef_stress_pipeline/units.py
"""
Unit conversions used across the logger, assay and field-log pipelines.
All functions accept scalars or numpy/pandas arrays.
"""
from __future__ import annotations

import numpy as np

# Sunlight lux -> PAR (umol photons m^-2 s^-1); Thimijan & Heins (1983).
LUX_TO_PAR_SUNLIGHT = 0.0185

# Gas constant (J mol^-1 K^-1) and Faraday constant (C mol^-1)
_R = 8.314462618
_F = 96485.33212


def fahrenheit_to_celsius(temp_f):
    return (np.asarray(temp_f, dtype=float) - 32.0) * 5.0 / 9.0


def lux_to_par(lux, factor: float = LUX_TO_PAR_SUNLIGHT):
    return np.asarray(lux, dtype=float) * float(factor)


def nernst_slope_mv(temp_c) -> np.ndarray:
    """Electrode slope in mV per pH unit at temp_c (59.16 mV at 25 C)."""
    temp_k = np.asarray(temp_c, dtype=float) + 273.15
    return 1000.0 * _R * temp_k * np.log(10.0) / _F


def ph_from_millivolts(mv_sample, mv_standard, ph_standard, temp_c=25.0):
    """
    Convert an electrode mV reading to pH against a buffer standard (e.g. tris).

    pH = pH_std + (mV_std - mV_sample) / S(T)
    """
    mv_sample = np.asarray(mv_sample, dtype=float)
    mv_standard = np.asarray(mv_standard, dtype=float)
    return np.asarray(ph_standard, dtype=float) + (mv_standard - mv_sample) / nernst_slope_mv(temp_c)


def flow_rate_l_per_h(volume_ml, seconds):
    """Bucket-and-stopwatch flow: mL collected over ``seconds`` -> L/h. Zero time gives NaN."""
    volume_ml = np.asarray(volume_ml, dtype=float)
    seconds = np.asarray(seconds, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = (volume_ml / 1000.0) / (seconds / 3600.0)
    return np.where(seconds > 0, out, np.nan)


def sphere_surface_area(diameter_cm):
    """Surface area (cm^2) of a sphere: pi * d^2."""
    d = np.asarray(diameter_cm, dtype=float)
    return np.pi * d**2
