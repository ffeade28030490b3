"""
Visualisation module for dexanno.

Generates publication-quality plots from DE results and annotations:
  • Volcano plot (log fold-change vs −log10 p)
  • MA / mean-difference plot
  • Library-size bar chart
  • Feature-type bar chart for genome annotations

Every plot is saved as **both PNG (raster) and PDF (vector)**.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import matplotlib

matplotlib.use("Agg")  # non-interactive backend

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from dexanno.config import DexAnnoConfig
from dexanno.de import DEResult, neg_log10
from dexanno.utils import get_logger


# ---------------------------------------------------------------------------
# Global style
# ---------------------------------------------------------------------------

_STYLE_APPLIED = False

_RC_PARAMS = {
    "font.family": "sans-serif",
    "font.sans-serif": ["Arial", "Helvetica", "DejaVu Sans"],
    "font.size": 11,
    "axes.titlesize": 14,
    "axes.titleweight": "bold",
    "axes.labelsize": 12,
    "legend.fontsize": 10,
    "legend.frameon": False,
    "figure.dpi": 150,
    "savefig.dpi": 300,
    "savefig.bbox": "tight",
    "savefig.facecolor": "white",
    "axes.spines.top": False,
    "axes.spines.right": False,
}


def _apply_style() -> None:
    """Set the shared rcParams the first time a plot is drawn."""
    global _STYLE_APPLIED
    if not _STYLE_APPLIED:
        plt.rcParams.update(_RC_PARAMS)
        _STYLE_APPLIED = True


PLOT_FORMATS = ("png", "pdf", "svg")

DE_COLORS = {"up": "#c5221f", "down": "#1a73e8", "ns": "#bdbdbd"}


def _save(fig: plt.Figure, path: Path, dpi: int = 300, fmt: str = "png") -> list[Path]:
    """
    Write *fig* next to *path* and close it.

    *fmt* (png or svg) is written together with a vector PDF; ``"pdf"``
    writes the PDF alone.
    """
    if fmt not in PLOT_FORMATS:
        raise ValueError(f"Unknown plot format '{fmt}'. Choose from: {PLOT_FORMATS}")
    path.parent.mkdir(parents=True, exist_ok=True)
    log = get_logger()
    saved = []
    for suffix in dict.fromkeys([fmt, "pdf"]):
        out = path.with_suffix(f".{suffix}")
        kwargs = {"format": suffix} if suffix != "png" else {"dpi": dpi}
        fig.savefig(out, bbox_inches="tight", facecolor="white", **kwargs)
        log.info(f"Saved plot → {out}")
        saved.append(out)
    plt.close(fig)
    return saved


def _de_status(table: pd.DataFrame, fdr: float, min_abs_lfc: float) -> pd.Series:
    sig = (table["fdr"] < fdr) & (table["log_fc"].abs() >= min_abs_lfc)
    status = pd.Series("ns", index=table.index)
    status[sig & (table["log_fc"] > 0)] = "up"
    status[sig & (table["log_fc"] < 0)] = "down"
    return status


# ---------------------------------------------------------------------------
# 1. Volcano
# ---------------------------------------------------------------------------


def plot_volcano(
    result: DEResult,
    output_path: Path,
    *,
    label_top: Optional[int] = None,
    cfg: Optional[DexAnnoConfig] = None,
) -> list[Path]:
    """
    Volcano plot coloured by significance.

    The first *label_top* significant genes by p-value are labelled;
    it defaults to ``cfg.top_n``.
    """
    _apply_style()
    if cfg is None:
        cfg = DexAnnoConfig()
    if label_top is None:
        label_top = cfg.top_n

    t = result.table.copy()
    t["status"] = _de_status(t, cfg.fdr, cfg.min_abs_lfc)
    t["neglog10p"] = neg_log10(t["p_value"])

    fig, ax = plt.subplots(figsize=(8, 7))
    for status in ("ns", "down", "up"):
        sub = t[t["status"] == status]
        ax.scatter(
            sub["log_fc"],
            sub["neglog10p"],
            s=10 if status == "ns" else 16,
            c=DE_COLORS[status],
            alpha=0.6 if status == "ns" else 0.85,
            linewidths=0,
            label=f"{status} ({len(sub):,})",
        )

    for _, row in t[t["status"] != "ns"].head(label_top).iterrows():
        ax.annotate(row["gene_id"], (row["log_fc"], row["neglog10p"]), fontsize=9, xytext=(3, 3), textcoords="offset points")

    if cfg.min_abs_lfc > 0:
        for x in (-cfg.min_abs_lfc, cfg.min_abs_lfc):
            ax.axvline(x, color="#757575", linestyle="--", linewidth=0.8)
    ax.set_xlabel("log₂ fold change")
    ax.set_ylabel("−log₁₀ p-value")
    ax.set_title(f"{result.treatment} vs {result.reference} ({result.method})", pad=12)
    ax.legend(frameon=False, loc="upper left")
    fig.tight_layout()

    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)


# ---------------------------------------------------------------------------
# 2. MA / mean-difference
# ---------------------------------------------------------------------------


def plot_ma(
    result: DEResult,
    output_path: Path,
    *,
    cfg: Optional[DexAnnoConfig] = None,
) -> list[Path]:
    """Mean expression vs log fold change (edgeR plotMD / DESeq2 plotMA)."""
    _apply_style()
    if cfg is None:
        cfg = DexAnnoConfig()

    t = result.table.copy()
    t["status"] = _de_status(t, cfg.fdr, cfg.min_abs_lfc)
    x = t["mean_expr"]
    xlabel = "Average log-expression"
    if result.method == "deseq2":
        # baseMean is on the count scale
        x = np.log10(x + 1)
        xlabel = "log₁₀(base mean + 1)"

    fig, ax = plt.subplots(figsize=(8, 6))
    for status in ("ns", "down", "up"):
        mask = t["status"] == status
        ax.scatter(x[mask], t.loc[mask, "log_fc"], s=8, c=DE_COLORS[status], alpha=0.7, linewidths=0, label=status)
    ax.axhline(0, color="#424242", linewidth=0.8)
    ax.set_xlabel(xlabel)
    ax.set_ylabel("log₂ fold change")
    ax.set_title(f"Mean-difference: {result.treatment} vs {result.reference}", pad=12)
    ax.legend(frameon=False)
    fig.tight_layout()

    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)


# ---------------------------------------------------------------------------
# 3. Library sizes
# ---------------------------------------------------------------------------


def plot_library_sizes(
    lib_size: pd.Series,
    output_path: Path,
    *,
    groups: Optional[pd.Series] = None,
    title: str = "Library Sizes",
    cfg: Optional[DexAnnoConfig] = None,
) -> list[Path]:
    """Bar chart of per-sample library sizes, coloured by group."""
    _apply_style()
    if cfg is None:
        cfg = DexAnnoConfig()

    n = len(lib_size)
    fig, ax = plt.subplots(figsize=(max(6, n * 0.5), 5))
    if groups is not None:
        levels = sorted(groups.astype(str).unique())
        palette = dict(zip(levels, sns.color_palette("husl", len(levels))))
        colors = [palette[str(groups[s])] for s in lib_size.index]
    else:
        colors = sns.color_palette("viridis", n)
    ax.bar(lib_size.index.astype(str), lib_size.values / 1e6, color=colors, edgecolor="white")
    ax.set_ylabel("Library size (millions)")
    ax.set_title(title, pad=12)
    ax.tick_params(axis="x", rotation=60)
    fig.tight_layout()

    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)


# ---------------------------------------------------------------------------
# 4. Annotation feature types
# ---------------------------------------------------------------------------


def plot_feature_types(
    summary: pd.DataFrame,
    output_path: Path,
    *,
    title: str = "Annotated Features",
    cfg: Optional[DexAnnoConfig] = None,
) -> list[Path]:
    """Horizontal bar chart of feature counts per type, stacked by tool."""
    _apply_style()
    if cfg is None:
        cfg = DexAnnoConfig()

    matrix = summary.pivot_table(index="type", columns="source", values="count", aggfunc="sum", fill_value=0)
    matrix = matrix.loc[matrix.sum(axis=1).sort_values().index]

    fig, ax = plt.subplots(figsize=(9, max(3, len(matrix) * 0.5)))
    colors = sns.color_palette("husl", len(matrix.columns))
    matrix.plot(kind="barh", stacked=True, ax=ax, color=colors, edgecolor="white", linewidth=0.5)
    for i, total in enumerate(matrix.sum(axis=1)):
        ax.text(total, i, f" {total:,}", va="center", fontsize=11, color="#333333")
    ax.set_xlabel("Number of features")
    ax.set_ylabel("")
    ax.set_title(title, pad=12)
    ax.legend(bbox_to_anchor=(1.02, 1), loc="upper left", frameon=False)
    fig.tight_layout()

    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)


# ---------------------------------------------------------------------------
# Convenience: generate all default plots
# ---------------------------------------------------------------------------


def generate_de_plots(
    result: DEResult,
    output_dir: Path,
    *,
    lib_size: Optional[pd.Series] = None,
    groups: Optional[pd.Series] = None,
    cfg: Optional[DexAnnoConfig] = None,
) -> list[Path]:
    """Volcano, MA and (optionally) library-size plots for one contrast."""
    _apply_style()
    if cfg is None:
        cfg = DexAnnoConfig()

    output_dir = Path(output_dir) / "plots"
    output_dir.mkdir(parents=True, exist_ok=True)
    stem = f"{result.method}_{result.contrast}"

    paths: list[Path] = []
    paths.extend(plot_volcano(result, output_dir / f"volcano_{stem}.png", cfg=cfg))
    paths.extend(plot_ma(result, output_dir / f"ma_{stem}.png", cfg=cfg))
    if lib_size is not None:
        paths.extend(plot_library_sizes(lib_size, output_dir / "library_sizes.png", groups=groups, cfg=cfg))
    return paths
