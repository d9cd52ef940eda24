# src/reef_stress_pipeline/dose_response.py
"""
Three-parameter log-logistic (LL.3) dose-response fitting with influence-based refinement.

Model (response vs stressor level x, e.g. Fv/Fm vs temperature):
    f(x) = d / (1 + exp(b * (ln x - ln e)))
    b = steepness, d = asymptote (upper plateau), e = threshold (ED50)

Per biological unit (group) the fit runs twice:
  1) initial bounded fit;
  2) Cook's distance per point, flag D_i > cooks_multiplier / n, replace at most
     floor(max_replace_fraction * n) flagged points (largest D first) with their
     first-pass fitted value, and refit.
If nothing is flagged the initial fit is returned as-is.
A fit that fails (too few points, no convergence) becomes DoseResponseFit.no_model()
in batch mode; it never aborts the batch.
"""
from __future__ import annotations

import math
import warnings
from dataclasses import dataclass, replace
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import OptimizeWarning, curve_fit

from .schemas import DOSE_RESPONSE_COLUMNS, DoseResponseFit


# (lower, upper) per parameter, in order steepness, asymptote, threshold
DEFAULT_BOUNDS: Tuple[Tuple[float, float], ...] = (
    (-np.inf, np.inf),
    (0.3, 0.7),
    (30.0, 40.0),
)
N_PARAMS = 3


class DoseResponseFitError(RuntimeError):
    """Raised when a single LL.3 fit cannot be obtained."""


def ll3(x, steepness: float, asymptote: float, threshold: float) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    with np.errstate(divide="ignore", over="ignore", invalid="ignore"):
        z = steepness * (np.log(x) - np.log(threshold))
        return asymptote / (1.0 + np.exp(z))


def ll3_jacobian(x, steepness: float, asymptote: float, threshold: float) -> np.ndarray:
    """Analytical d f / d(b, d, e), shape (n, 3). x <= 0 rows are zero (flat limit)."""
    x = np.asarray(x, dtype=float)
    b, d, e = float(steepness), float(asymptote), float(threshold)
    with np.errstate(divide="ignore", over="ignore", invalid="ignore"):
        lx = np.log(x) - np.log(e)
        ez = np.exp(b * lx)
        denom = (1.0 + ez) ** 2
        jb = -d * ez * lx / denom
        jd = 1.0 / (1.0 + ez)
        je = d * ez * b / (e * denom)
    jac = np.column_stack([jb, jd, je])
    return np.nan_to_num(jac, nan=0.0, posinf=0.0, neginf=0.0)


def effective_dose(steepness: float, threshold: float, reduction_percent: float) -> float:
    """
    Stressor level at which the response is reduced by ``reduction_percent`` % of the asymptote.
    ED50 == threshold; ED5 < ED50 < ED95 for decreasing curves (steepness > 0).
    """
    p = 1.0 - float(reduction_percent) / 100.0
    if not (0.0 < p < 1.0) or not np.isfinite(steepness) or steepness == 0.0:
        return float("nan")
    return float(threshold * (1.0 / p - 1.0) ** (1.0 / steepness))


def _normalize_bounds(bounds: Optional[Sequence[Sequence[Optional[float]]]]) -> Tuple[np.ndarray, np.ndarray]:
    if bounds is None:
        bounds = DEFAULT_BOUNDS
    if len(bounds) != N_PARAMS:
        raise ValueError(f"bounds must have {N_PARAMS} (low, high) pairs")
    lo = np.array([-np.inf if b[0] is None else float(b[0]) for b in bounds], dtype=float)
    hi = np.array([np.inf if b[1] is None else float(b[1]) for b in bounds], dtype=float)
    if np.any(lo >= hi):
        raise ValueError(f"Invalid bounds: {bounds}")
    return lo, hi


def _inside(val: float, lo: float, hi: float) -> float:
    if np.isfinite(lo) and np.isfinite(hi):
        margin = 1e-6 * (hi - lo)
        return float(min(max(val, lo + margin), hi - margin))
    if np.isfinite(lo):
        return float(max(val, lo + 1e-6))
    if np.isfinite(hi):
        return float(min(val, hi - 1e-6))
    return float(val)


def _initial_guess(x: np.ndarray, y: np.ndarray, lo: np.ndarray, hi: np.ndarray) -> List[float]:
    order = np.argsort(x)
    xs, ys = x[order], y[order]
    d0 = float(np.max(ys)) if ys.size else 0.5
    d0 = _inside(d0 * 1.02, lo[1], hi[1])

    # log-logit linearization on points strictly inside (0, d0)
    ok = (xs > 0) & (ys > 0) & (ys < d0)
    b0 = float("nan")
    e0 = float("nan")
    if int(np.count_nonzero(ok)) >= 2 and float(np.ptp(np.log(xs[ok]))) > 0:
        logit = np.log(d0 / ys[ok] - 1.0)
        slope, icpt = np.polyfit(np.log(xs[ok]), logit, 1)
        if np.isfinite(slope) and slope != 0:
            b0 = float(slope)
            e0 = float(np.exp(-icpt / slope))
    if not np.isfinite(b0):
        b0 = 10.0
    if not np.isfinite(e0) or e0 <= 0:
        e0 = float(np.median(xs[xs > 0])) if np.any(xs > 0) else 1.0
    return [_inside(b0, lo[0], hi[0]), d0, _inside(e0, lo[2], hi[2])]


def _clean_xy(x, y) -> Tuple[np.ndarray, np.ndarray]:
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.shape != y.shape:
        raise ValueError(f"x and y differ in shape: {x.shape} vs {y.shape}")
    ok = np.isfinite(x) & np.isfinite(y) & (x >= 0)
    return x[ok], y[ok]


def fit_ll3(
    x,
    y,
    *,
    bounds: Optional[Sequence[Sequence[Optional[float]]]] = None,
    min_points: int = 4,
    maxfev: int = 20_000,
) -> DoseResponseFit:
    """
    Bounded nonlinear least-squares LL.3 fit. Raises DoseResponseFitError on failure.
    Non-finite pairs and negative x are ignored.
    """
    x, y = _clean_xy(x, y)
    n = int(x.size)
    if n < max(int(min_points), N_PARAMS + 1):
        raise DoseResponseFitError(f"too few points ({n})")
    if np.unique(x).size < N_PARAMS:
        raise DoseResponseFitError(f"need at least {N_PARAMS} distinct stressor levels")

    lo, hi = _normalize_bounds(bounds)
    p0 = _initial_guess(x, y, lo, hi)
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", OptimizeWarning)
            popt, _ = curve_fit(
                ll3,
                x,
                y,
                p0=p0,
                bounds=(lo, hi),
                method="trf",
                jac=ll3_jacobian,
                maxfev=maxfev,
            )
    except (RuntimeError, ValueError) as e:
        raise DoseResponseFitError(f"no convergence: {e}") from e

    b, d, e = (float(v) for v in popt)
    if not all(np.isfinite([b, d, e])) or e <= 0:
        raise DoseResponseFitError(f"non-finite parameters {popt!r}")
    yhat = ll3(x, b, d, e)
    rss = float(np.sum((y - yhat) ** 2))
    if not np.isfinite(rss):
        raise DoseResponseFitError("non-finite residuals")
    return DoseResponseFit(
        model="LL.3",
        steepness=b,
        asymptote=d,
        threshold=e,
        ed5=effective_dose(b, e, 5.0),
        ed95=effective_dose(b, e, 95.0),
        rss=rss,
        n=n,
        converged=True,
    )


def predict(fit: DoseResponseFit, x) -> np.ndarray:
    if not fit.converged:
        return np.full(np.shape(x), np.nan, dtype=float)
    return ll3(x, *fit.params)


def cooks_distance(x, y, params: Sequence[float]) -> np.ndarray:
    """
    Cook's distance from the linearized model at ``params``:
        D_i = e_i^2 / (p * s^2) * h_i / (1 - h_i)^2
    with leverage h_i = diag(J (J'J)^+ J')_i and s^2 = RSS / (n - p).
    A numerically perfect fit (RSS below 1e-20 of the total sum of squares) gives all zeros.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    n = int(x.size)
    p = N_PARAMS
    resid = y - ll3(x, *params)
    rss = float(np.sum(resid**2))
    ss_tot = float(np.sum((y - float(np.mean(y))) ** 2)) if n else 0.0
    if n <= p or rss <= 1e-20 * max(ss_tot, 1.0):
        return np.zeros(n, dtype=float)
    s2 = rss / (n - p)
    jac = ll3_jacobian(x, *params)
    hat = jac @ np.linalg.pinv(jac.T @ jac) @ jac.T
    h = np.clip(np.diag(hat), 0.0, 1.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        d = (resid**2) / (p * s2) * h / (1.0 - h) ** 2
    d = np.where(np.isnan(d), 0.0, d)
    return d


@dataclass(frozen=True)
class RefinedFit:
    initial: DoseResponseFit
    final: DoseResponseFit
    cooks: np.ndarray
    cooks_threshold: float
    replaced_index: Tuple[int, ...]
    y_adjusted: np.ndarray


def max_replacements(n: int, max_replace_fraction: float = 0.2) -> int:
    return int(math.floor(float(max_replace_fraction) * int(n) + 1e-9))


def refine_fit(
    x,
    y,
    *,
    bounds: Optional[Sequence[Sequence[Optional[float]]]] = None,
    cooks_multiplier: float = 4.0,
    max_replace_fraction: float = 0.2,
    min_points: int = 4,
) -> RefinedFit:
    """
    Initial fit -> Cook's distance flags -> replace top flagged points with
    first-pass fitted values (capped) -> refit. Raises DoseResponseFitError only
    if the initial fit fails; a failing refit yields a no_model() final.
    """
    x, y = _clean_xy(x, y)
    initial = fit_ll3(x, y, bounds=bounds, min_points=min_points)
    n = int(x.size)
    cooks = cooks_distance(x, y, initial.params)
    threshold = float(cooks_multiplier) / n
    flagged = np.flatnonzero(cooks > threshold)
    cap = max_replacements(n, max_replace_fraction)

    if flagged.size == 0 or cap == 0:
        return RefinedFit(initial, initial, cooks, threshold, (), y.copy())

    ranked = flagged[np.argsort(-cooks[flagged], kind="stable")]
    chosen = np.sort(ranked[:cap])
    y_adj = y.copy()
    y_adj[chosen] = ll3(x[chosen], *initial.params)
    try:
        final = fit_ll3(x, y_adj, bounds=bounds, min_points=min_points)
        final = replace(final, n_replaced=int(chosen.size))
    except DoseResponseFitError as e:
        final = DoseResponseFit.no_model(n=n, message=f"refit failed: {e}")
    return RefinedFit(initial, final, cooks, threshold, tuple(int(i) for i in chosen), y_adj)


def iter_groups(df: pd.DataFrame, group_cols: Sequence[str]) -> Iterator[Tuple[dict, pd.DataFrame]]:
    group_cols = list(group_cols)
    if not group_cols:
        yield {}, df
        return
    for key, g in df.groupby(group_cols, sort=True, dropna=False):
        if not isinstance(key, tuple):
            key = (key,)
        yield dict(zip(group_cols, key)), g


@dataclass(frozen=True)
class DoseResponseBatch:
    params: pd.DataFrame  # group cols + DOSE_RESPONSE_COLUMNS + *_initial
    points: pd.DataFrame  # input rows + fitted, cooks_d, flagged, replaced, y_adjusted

    @property
    def failed(self) -> pd.DataFrame:
        return self.params[~self.params["converged"].astype(bool)]


def fit_groups(
    df: pd.DataFrame,
    *,
    group_cols: Sequence[str],
    x_col: str,
    y_col: str,
    refine: bool = True,
    bounds: Optional[Sequence[Sequence[Optional[float]]]] = None,
    cooks_multiplier: float = 4.0,
    max_replace_fraction: float = 0.2,
    min_points: int = 4,
) -> DoseResponseBatch:
    """
    Fit one LL.3 curve per group. Failed groups get a sentinel row
    (converged=False, NaN parameters) and are warned about; nothing is raised.
    """
    for c in list(group_cols) + [x_col, y_col]:
        if c not in df.columns:
            raise KeyError(f"fit_groups requires column '{c}'")

    rows: List[dict] = []
    point_parts: List[pd.DataFrame] = []
    failed: List[str] = []
    for key, g in iter_groups(df, group_cols):
        g = g.copy()
        g[x_col] = pd.to_numeric(g[x_col], errors="coerce")
        g[y_col] = pd.to_numeric(g[y_col], errors="coerce")
        g = g[np.isfinite(g[x_col]) & np.isfinite(g[y_col]) & (g[x_col] >= 0)].sort_values(x_col)
        x = g[x_col].to_numpy(dtype=float)
        y = g[y_col].to_numpy(dtype=float)

        initial = final = None
        try:
            if refine:
                res = refine_fit(
                    x,
                    y,
                    bounds=bounds,
                    cooks_multiplier=cooks_multiplier,
                    max_replace_fraction=max_replace_fraction,
                    min_points=min_points,
                )
                initial, final = res.initial, res.final
                g["cooks_d"] = res.cooks
                g["flagged"] = res.cooks > res.cooks_threshold
                g["replaced"] = False
                g.iloc[list(res.replaced_index), g.columns.get_loc("replaced")] = True
                g["y_adjusted"] = res.y_adjusted
            else:
                initial = final = fit_ll3(x, y, bounds=bounds, min_points=min_points)
        except DoseResponseFitError as e:
            final = DoseResponseFit.no_model(n=int(x.size), message=str(e))
        if not final.converged:
            failed.append(", ".join(f"{k}={v}" for k, v in key.items()) or "all")

        g["fitted"] = predict(final, x) if final.converged else np.nan
        point_parts.append(g)

        row = {**key, **final.as_row()}
        for name in ("steepness", "asymptote", "threshold"):
            row[f"{name}_initial"] = getattr(initial, name) if initial is not None else np.nan
        rows.append(row)

    extra = [f"{n}_initial" for n in ("steepness", "asymptote", "threshold")]
    params = pd.DataFrame(rows, columns=list(group_cols) + DOSE_RESPONSE_COLUMNS + extra)
    points = pd.concat(point_parts, ignore_index=True) if point_parts else df.iloc[0:0].copy()
    if failed:
        warnings.warn(f"No dose-response model for {len(failed)} group(s): {failed}", UserWarning)
    return DoseResponseBatch(params=params, points=points)


def curve_grid(params: pd.DataFrame, group_cols: Sequence[str], x_min: float, x_max: float, n: int = 200) -> pd.DataFrame:
    """Evaluate each converged curve on an even grid (for plots / downstream tables)."""
    grid = np.linspace(float(x_min), float(x_max), int(n))
    parts = []
    for _, r in params.iterrows():
        if not bool(r["converged"]):
            continue
        part = pd.DataFrame({"x": grid, "fitted": ll3(grid, r["steepness"], r["asymptote"], r["threshold"])})
        for c in group_cols:
            part[c] = r[c]
        parts.append(part)
    if not parts:
        return pd.DataFrame(columns=list(group_cols) + ["x", "fitted"])
    return pd.concat(parts, ignore_index=True)[list(group_cols) + ["x", "fitted"]]
