# src/reef_stress_pipeline/regression.py
"""
Ordinary least squares helpers shared by logger calibration and standard curves.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class LinearFit:
    slope: float
    intercept: float
    r2: float
    n: int
    x_min: float
    x_max: float

    def predict(self, x):
        return self.slope * np.asarray(x, dtype=float) + self.intercept


class LinearFitError(RuntimeError):
    """Raised when a straight line cannot be fit (too few points, constant x)."""


def r_squared(y: np.ndarray, yhat: np.ndarray) -> float:
    y = np.asarray(y, dtype=float)
    yhat = np.asarray(yhat, dtype=float)
    ss_res = float(np.sum((y - yhat) ** 2))
    ss_tot = float(np.sum((y - float(np.mean(y))) ** 2))
    return float(1.0 - ss_res / ss_tot) if ss_tot > 0 else float("nan")


def fit_linear(x, y) -> LinearFit:
    """
    Ordinary least squares linear fit: y = a*x + b
    Returns slope/intercept and R^2. Non-finite pairs are ignored.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    ok = np.isfinite(x) & np.isfinite(y)
    x = x[ok]
    y = y[ok]
    if x.size < 2:
        raise LinearFitError(f"need at least 2 finite points, got {x.size}")
    if float(np.ptp(x)) <= 0.0:
        raise LinearFitError("x has zero variance")

    a, b = np.polyfit(x, y, 1)
    yhat = a * x + b
    return LinearFit(
        slope=float(a),
        intercept=float(b),
        r2=r_squared(y, yhat),
        n=int(x.size),
        x_min=float(np.min(x)),
        x_max=float(np.max(x)),
    )
