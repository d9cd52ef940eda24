# src/reef_stress_pipeline/plotting.py
"""
Figures for calibration, dose-response and daily profiles.

All figures share one paper-grade style; wrap drawing in
``with plt.rc_context(apply_paper_style()):`` and save with ``paper_savefig``.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from matplotlib import font_manager as fm

from .dose_response import ll3


PAPER_FIGSIZE_SINGLE = (3.5, 2.6)
PAPER_FIGSIZE_WIDE = (5.0, 2.6)
PAPER_FIGSIZE_SQUARE = (3.0, 3.0)


def apply_paper_style() -> dict:
    """
    matplotlib rcParams for paper-grade figures.

    Font priority: Arial > Helvetica > Liberation Sans > DejaVu Sans
    Font size 6-7 pt, line width 0.6-0.8 pt, PNG at 600 dpi.
    """
    available = {f.name for f in fm.fontManager.ttflist}
    font_priority = ["Arial", "Helvetica", "Liberation Sans", "DejaVu Sans"]
    chosen = next((f for f in font_priority if f in available), "DejaVu Sans")

    return {
        "font.family": "sans-serif",
        "font.sans-serif": [chosen] + [f for f in font_priority if f != chosen],
        "font.size": 7,
        "axes.titlesize": 8,
        "axes.labelsize": 7,
        "xtick.labelsize": 6,
        "ytick.labelsize": 6,
        "legend.fontsize": 6,
        "lines.linewidth": 0.7,
        "lines.markersize": 3,
        "axes.linewidth": 0.6,
        "axes.edgecolor": "0.3",
        "axes.labelcolor": "0.15",
        "xtick.major.width": 0.5,
        "ytick.major.width": 0.5,
        "xtick.direction": "out",
        "ytick.direction": "out",
        "axes.grid": False,
        "legend.frameon": True,
        "legend.framealpha": 0.9,
        "legend.edgecolor": "0.7",
        "figure.facecolor": "white",
        "savefig.dpi": 600,
        "savefig.bbox": "tight",
        "savefig.pad_inches": 0.02,
        "savefig.format": "png",
    }


def paper_savefig(fig, path, **kwargs) -> Path:
    """Save PNG at 600 dpi with tight bbox; creates the parent directory."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    defaults = {
        "dpi": 600,
        "bbox_inches": "tight",
        "pad_inches": 0.02,
        "facecolor": "white",
        "edgecolor": "white",
    }
    defaults.update(kwargs)
    fig.savefig(path, **defaults)
    return path


def _panel_grid(n: int, max_cols: int = 4):
    ncols = max(1, min(max_cols, n))
    nrows = int(np.ceil(n / ncols)) if n else 1
    fig, axes = plt.subplots(nrows, ncols, figsize=(1.9 * ncols, 1.7 * nrows), squeeze=False)
    return fig, axes.ravel()


def plot_calibration(pairs: pd.DataFrame, params: pd.DataFrame, out_path: Path, *, unit: str = "") -> Path:
    """Reference vs raw per logger with the fitted line; one panel per logger."""
    loggers = sorted(params["logger_id"].astype(str).unique())
    with plt.rc_context(apply_paper_style()):
        fig, axes = _panel_grid(len(loggers))
        for ax, logger_id in zip(axes, loggers):
            d = pairs[pairs["logger_id"] == logger_id]
            p = params[params["logger_id"] == logger_id].iloc[0]
            ax.scatter(d["value"], d["reference"], s=3, color="0.4", linewidths=0)
            xs = np.linspace(float(d["value"].min()), float(d["value"].max()), 50)
            ax.plot(xs, p["coefficient"] * xs + p["intercept"], color="#d62728")
            ax.set_title(f"{logger_id}  R²={float(p['r2']):.3f}")
            ax.set_xlabel(f"raw {unit}".strip())
            ax.set_ylabel(f"reference {unit}".strip())
        for ax in axes[len(loggers):]:
            ax.set_visible(False)
        fig.tight_layout()
        out = paper_savefig(fig, out_path)
        plt.close(fig)
    return out


def plot_dose_response(
    points: pd.DataFrame,
    params: pd.DataFrame,
    out_path: Path,
    *,
    group_cols: Sequence[str],
    x_col: str,
    y_col: str,
    x_label: Optional[str] = None,
    y_label: Optional[str] = None,
) -> Path:
    """
    One panel per group: observations, replaced points (open red circles),
    fitted LL.3 curve and ED50 marker. Groups without a model show points only.
    """
    group_cols = list(group_cols)
    keys = params[group_cols].drop_duplicates().itertuples(index=False, name=None)
    keys = list(keys)
    with plt.rc_context(apply_paper_style()):
        fig, axes = _panel_grid(len(keys))
        x_all = pd.to_numeric(points[x_col], errors="coerce")
        grid = np.linspace(float(x_all.min()), float(x_all.max()), 200) if x_all.notna().any() else np.array([])
        for ax, key in zip(axes, keys):
            sel_p = np.ones(len(points), dtype=bool)
            sel_f = np.ones(len(params), dtype=bool)
            for c, v in zip(group_cols, key):
                # NaN keys from groupby(dropna=False) never compare equal
                sel_p &= ((points[c] == v) | (pd.isna(v) & points[c].isna())).to_numpy()
                sel_f &= ((params[c] == v) | (pd.isna(v) & params[c].isna())).to_numpy()
            d = points[sel_p]
            r = params[sel_f].iloc[0]
            ax.scatter(d[x_col], d[y_col], s=4, color="0.3", linewidths=0)
            if "replaced" in d.columns:
                rep = d[d["replaced"].fillna(False).astype(bool)]
                ax.scatter(rep[x_col], rep[y_col], s=10, facecolors="none", edgecolors="#d62728", linewidths=0.5)
            label = " / ".join(str(v) for v in key)
            if bool(r["converged"]) and grid.size:
                ax.plot(grid, ll3(grid, r["steepness"], r["asymptote"], r["threshold"]), color="#1f77b4")
                ax.axvline(float(r["threshold"]), color="0.6", linestyle="--", linewidth=0.5)
                label += f"\nED50={float(r['threshold']):.2f}"
            else:
                label += "\nno model"
            ax.set_title(label)
            ax.set_xlabel(x_label or x_col)
            ax.set_ylabel(y_label or y_col)
        for ax in axes[len(keys):]:
            ax.set_visible(False)
        fig.tight_layout()
        out = paper_savefig(fig, out_path)
        plt.close(fig)
    return out


def plot_daily_profile(summary: pd.DataFrame, out_path: Path, *, group_col: str = "tank", value_label: str = "") -> Path:
    """Daily mean with min-max band, one line per group."""
    with plt.rc_context(apply_paper_style()):
        fig, ax = plt.subplots(figsize=PAPER_FIGSIZE_WIDE)
        for name, g in summary.groupby(group_col, sort=True):
            g = g.sort_values("day")
            line = ax.plot(g["day"], g["mean"], label=str(name))[0]
            if {"min", "max"}.issubset(g.columns):
                ax.fill_between(g["day"], g["min"], g["max"], color=line.get_color(), alpha=0.15, linewidth=0)
        ax.set_ylabel(value_label)
        ax.legend(loc="best", ncol=2)
        fig.autofmt_xdate()
        fig.tight_layout()
        out = paper_savefig(fig, out_path)
        plt.close(fig)
    return out
