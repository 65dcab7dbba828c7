"""Figures for model checking and reporting. Every function returns the Figure; save_plot writes it."""

import logging
from pathlib import Path
from typing import Mapping, Optional

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats
from statsmodels.nonparametric.smoothers_lowess import lowess

from . import config
from .diagnostics import flag_influential, residual_table
from .marginal import MarginalGrid
from .models import FittedModel
from .ordination import Ordination

logger = logging.getLogger(__name__)

sns.set_theme(style="whitegrid")
sns.set_context("notebook", font_scale=1.1)

LABELS = {
    "zoo_density": "Zooplankton density (ind/m³)",
    "shannon": "Shannon diversity (H)",
    "temp": "Temperature (°C)",
    "salinity": "Salinity (ppt)",
    "turbidity": "Turbidity (NTU)",
    "chl": "Chlorophyll a (µg/L)",
    "do_sat": "Dissolved oxygen (% sat)",
    "herring": "River herring catch",
}


def _label(name: str) -> str:
    return LABELS.get(name, name)


def save_plot(fig, filename, outdir=config.OUTPUT_DIR, dpi=config.DEFAULT_DPI) -> Path:
    output_dir = Path(outdir)
    output_dir.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    path = output_dir / filename
    fig.savefig(path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    logger.debug("Saved %s", path)
    return path


# --- residual diagnostics
def plot_residual_diagnostics(fitted: FittedModel, label_flagged: bool = True):
    table = residual_table(fitted)
    flagged = flag_influential(fitted).index if label_flagged else []

    fig, axes = plt.subplots(2, 2, figsize=(12, 10))
    fig.suptitle(fitted.spec.label, fontsize=12)

    ax = axes[0, 0]
    ax.scatter(table["fitted"], table["residual"], alpha=0.6, edgecolors="black", linewidth=0.3)
    ax.axhline(0, color="red", linestyle="--", alpha=0.8)
    smoothed = lowess(table["residual"], table["fitted"], frac=0.6)
    ax.plot(smoothed[:, 0], smoothed[:, 1], color="tab:blue", linewidth=2)
    ax.set_xlabel("Fitted values")
    ax.set_ylabel("Residuals")
    ax.set_title("Residuals vs Fitted")

    ax = axes[0, 1]
    root = np.sqrt(table["std_resid"].abs())
    ax.scatter(table["fitted"], root, alpha=0.6, edgecolors="black", linewidth=0.3)
    smoothed = lowess(root, table["fitted"], frac=0.6)
    ax.plot(smoothed[:, 0], smoothed[:, 1], color="tab:blue", linewidth=2)
    ax.set_xlabel("Fitted values")
    ax.set_ylabel("√|Standardized residuals|")
    ax.set_title("Scale-Location")

    ax = axes[1, 0]
    stats.probplot(table["std_resid"], dist="norm", plot=ax)
    ax.set_title("Normal Q-Q")

    ax = axes[1, 1]
    ax.scatter(table["leverage"], table["std_resid"], alpha=0.6, edgecolors="black", linewidth=0.3)
    ax.axhline(0, color="grey", linewidth=0.8)
    for idx in flagged:
        ax.annotate(str(idx), (table.at[idx, "leverage"], table.at[idx, "std_resid"]),
                    textcoords="offset points", xytext=(4, 4), fontsize=8, color="tab:red")
    ax.set_xlabel("Leverage")
    ax.set_ylabel("Standardized residuals")
    ax.set_title("Residuals vs Leverage")
    return fig


# --- marginal curves
def _draw_marginal(ax, grid: MarginalGrid, color, label, data: Optional[pd.DataFrame]):
    if data is not None and grid.focal in data.columns and grid.response in data.columns:
        points = data[[grid.focal, grid.response]].dropna()
        if grid.categorical:
            sns.stripplot(x=points[grid.focal].astype(str), y=points[grid.response], ax=ax,
                          color="grey", alpha=0.4, size=4, order=[str(v) for v in grid.values])
        else:
            ax.scatter(points[grid.focal], points[grid.response], s=14, color="grey", alpha=0.45)

    if grid.categorical:
        positions = np.arange(len(grid.values))
        ax.errorbar(positions, grid.predicted,
                    yerr=[grid.predicted - grid.lower, grid.upper - grid.predicted],
                    fmt="o", color=color, capsize=4, label=label)
        ax.set_xticks(positions)
        ax.set_xticklabels([str(v) for v in grid.values])
    else:
        ax.plot(grid.values, grid.predicted, color=color, linewidth=2, label=label)
        ax.fill_between(grid.values, grid.lower, grid.upper, color=color, alpha=0.18)
    ax.set_xlabel(_label(grid.focal))
    ax.set_ylabel(_label(grid.response))


def plot_marginal(grid: MarginalGrid, data: Optional[pd.DataFrame] = None, title: Optional[str] = None):
    fig, ax = plt.subplots(figsize=(8, 5))
    color = sns.color_palette(config.PALETTE, n_colors=1)[0]
    _draw_marginal(ax, grid, color, None, data)
    ax.set_title(title or f"Predicted {_label(grid.response)} vs {_label(grid.focal)}")
    return fig


def plot_family_comparison(grids: Mapping[str, MarginalGrid], data: Optional[pd.DataFrame] = None,
                           title: Optional[str] = None):
    """Marginal curves of several fits for the same focal predictor on one axis."""
    fig, ax = plt.subplots(figsize=(8, 5))
    palette = sns.color_palette(config.PALETTE, n_colors=len(grids))
    for idx, (name, grid) in enumerate(grids.items()):
        _draw_marginal(ax, grid, palette[idx], name, data if idx == 0 else None)
    first = next(iter(grids.values()))
    ax.set_title(title or f"{_label(first.response)} vs {_label(first.focal)}")
    ax.legend(title="Model")
    return fig


def plot_marginal_facets(grids: Mapping[str, MarginalGrid], data: Optional[pd.DataFrame] = None,
                         ncols: int = 2, title: Optional[str] = None):
    """One panel per grid (e.g. per focal predictor or per taxon)."""
    nrows = int(np.ceil(len(grids) / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(6 * ncols, 4.5 * nrows), squeeze=False)
    palette = sns.color_palette(config.PALETTE, n_colors=len(grids))
    for idx, (name, grid) in enumerate(grids.items()):
        ax = axes.flat[idx]
        _draw_marginal(ax, grid, palette[idx], None, data)
        ax.set_title(str(name))
    for ax in list(axes.flat)[len(grids):]:
        ax.set_visible(False)
    if title:
        fig.suptitle(title)
    return fig


# --- sensitivity and ordination
def plot_leave_one_out(changes: pd.DataFrame, term: str):
    fig, ax = plt.subplots(figsize=(10, 4))
    ax.stem(np.arange(len(changes)), changes[term].to_numpy(), basefmt=" ")
    ax.axhline(0, color="grey", linewidth=0.8)
    ax.set_xlabel("Excluded row (order in fit)")
    ax.set_ylabel(f"Change in {term}")
    ax.set_title(f"Leave-one-out change in {term}")
    return fig


def plot_ordination(ordination: Ordination, data: pd.DataFrame, hue: str = "season",
                    vectors: Optional[pd.DataFrame] = None, max_p: float = 0.05):
    scores = ordination.scores.join(data[[hue]]) if hue in data.columns else ordination.scores
    fig, ax = plt.subplots(figsize=(8, 7))
    sns.scatterplot(data=scores, x="NMDS1", y="NMDS2", hue=hue if hue in scores.columns else None,
                    palette=config.PALETTE, ax=ax, s=45, alpha=0.8)
    for taxon, row in ordination.species.iterrows():
        ax.text(row["NMDS1"], row["NMDS2"], taxon, fontsize=9, style="italic", color="dimgrey")

    if vectors is not None and not vectors.empty:
        span = np.abs(ordination.scores[["NMDS1", "NMDS2"]].to_numpy()).max()
        for _, vec in vectors.loc[vectors["p_value"] <= max_p].iterrows():
            length = np.sqrt(vec["r2"]) * span
            dx, dy = vec["NMDS1"] * length, vec["NMDS2"] * length
            ax.arrow(0, 0, dx, dy, color="tab:red", width=0.002 * span, head_width=0.03 * span)
            ax.text(dx * 1.1, dy * 1.1, _label(vec["predictor"]), color="tab:red", fontsize=9)

    ax.set_title(f"NMDS of taxa (Bray-Curtis, stress = {ordination.stress:.3f})")
    return fig
