# src/reef_stress_pipeline/pi_curve.py
"""
Photosynthesis-irradiance (P-I) curves: Jassby & Platt (1976) tanh model
with a respiration offset.

    P(I) = Pmax * tanh(alpha * I / Pmax) + R

Same failure policy as the dose-response fits: a group whose fit does not
converge gets a sentinel row instead of raising.
"""
from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np
import pandas as pd
from scipy.optimize import OptimizeWarning, curve_fit

from .dose_response import iter_groups


PI_COLUMNS = ["model", "pmax", "alpha", "resp", "ik", "rss", "n", "converged", "message"]


class PICurveFitError(RuntimeError):
    """Raised when a single P-I fit cannot be obtained."""


@dataclass(frozen=True)
class PICurveFit:
    model: str
    pmax: float
    alpha: float
    resp: float
    ik: float  # saturation irradiance, Pmax / alpha
    rss: float
    n: int
    converged: bool
    message: str = ""

    @classmethod
    def no_model(cls, n: int = 0, message: str = "") -> "PICurveFit":
        nan = float("nan")
        return cls("none", nan, nan, nan, nan, nan, int(n), False, message)

    def as_row(self) -> dict:
        return {c: getattr(self, c) for c in PI_COLUMNS}


def pi_tanh(irradiance, pmax: float, alpha: float, resp: float) -> np.ndarray:
    i = np.asarray(irradiance, dtype=float)
    return pmax * np.tanh(alpha * i / pmax) + resp


def fit_pi_curve(irradiance, production, *, min_points: int = 4, maxfev: int = 20_000) -> PICurveFit:
    i = np.asarray(irradiance, dtype=float)
    p = np.asarray(production, dtype=float)
    ok = np.isfinite(i) & np.isfinite(p) & (i >= 0)
    i, p = i[ok], p[ok]
    n = int(i.size)
    if n < max(4, int(min_points)):
        raise PICurveFitError(f"too few points ({n})")

    order = np.argsort(i)
    i_s, p_s = i[order], p[order]
    resp0 = float(p_s[0]) if i_s[0] <= 0 else min(0.0, float(np.min(p_s)))
    pmax0 = max(float(np.max(p_s)) - resp0, 1e-6)
    pos = i_s > 0
    if np.count_nonzero(pos) >= 1:
        # initial slope from the lowest non-zero irradiance
        alpha0 = max((float(p_s[pos][0]) - resp0) / float(i_s[pos][0]), 1e-6)
    else:
        raise PICurveFitError("no positive irradiance levels")

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", OptimizeWarning)
            popt, _ = curve_fit(
                pi_tanh,
                i,
                p,
                p0=[pmax0, alpha0, resp0],
                bounds=([1e-9, 1e-9, -np.inf], [np.inf, np.inf, np.inf]),
                method="trf",
                maxfev=maxfev,
            )
    except (RuntimeError, ValueError) as e:
        raise PICurveFitError(f"no convergence: {e}") from e

    pmax, alpha, resp = (float(v) for v in popt)
    if not all(np.isfinite([pmax, alpha, resp])):
        raise PICurveFitError(f"non-finite parameters {popt!r}")
    rss = float(np.sum((p - pi_tanh(i, pmax, alpha, resp)) ** 2))
    return PICurveFit("tanh", pmax, alpha, resp, pmax / alpha, rss, n, True)


def fit_pi_groups(
    df: pd.DataFrame,
    *,
    group_cols: Sequence[str],
    x_col: str = "par",
    y_col: str = "production",
    min_points: int = 4,
) -> pd.DataFrame:
    """One P-I fit per group; non-convergent groups get sentinel rows and a warning."""
    rows: List[dict] = []
    failed: List[str] = []
    for key, g in iter_groups(df, group_cols):
        try:
            fit = fit_pi_curve(
                pd.to_numeric(g[x_col], errors="coerce"),
                pd.to_numeric(g[y_col], errors="coerce"),
                min_points=min_points,
            )
        except PICurveFitError as e:
            fit = PICurveFit.no_model(n=len(g), message=str(e))
            failed.append(", ".join(f"{k}={v}" for k, v in key.items()) or "all")
        rows.append({**key, **fit.as_row()})
    if failed:
        warnings.warn(f"No P-I model for {len(failed)} group(s): {failed}", UserWarning)
    return pd.DataFrame(rows, columns=list(group_cols) + PI_COLUMNS)
