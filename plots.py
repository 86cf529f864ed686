"""Diagnostic and result plots for the differential binding analysis."""
from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Dict, Sequence

import numpy as np
import pandas as pd
import plotly.express as px
import seaborn as sns
from matplotlib import pyplot as plt

from dgelist import DGEList
from external_tools import ensure_directory
from ql_test import QLFit

LOGGER = logging.getLogger(__name__)

DECISION_PALETTE = {"Up": "firebrick", "Down": "royalblue", "NotSig": "grey"}


def save_plot(fig: plt.Figure, path: Path) -> None:
    ensure_directory(path.parent)
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)


def _decision_labels(table: pd.DataFrame, fdr_threshold: float) -> pd.Series:
    significant = table["FDR"] < fdr_threshold
    labels = np.where(~significant, "NotSig", np.where(table["logFC"] > 0, "Up", "Down"))
    return pd.Series(labels, index=table.index, name="Decision")


def _neg_log10(pvalues: pd.Series) -> pd.Series:
    nonzero = pvalues[pvalues > 0]
    floor = nonzero.min() / 10 if not nonzero.empty else 1e-300
    return -np.log10(pvalues.clip(lower=floor))


def mds_coordinates(logcpm: pd.DataFrame, *, top: int = 500, ndim: int = 2) -> pd.DataFrame:
    """Classical MDS on leading log-fold-change distances.

    The distance between two samples is the root mean square of their
    ``top`` largest absolute log2 differences.
    """

    values = logcpm.to_numpy(dtype=float)
    n_samples = values.shape[1]
    if n_samples < 3:
        raise ValueError("MDS needs at least three samples")
    top = min(top, values.shape[0])
    dist = np.zeros((n_samples, n_samples))
    for i in range(n_samples):
        for j in range(i + 1, n_samples):
            sq = np.sort((values[:, i] - values[:, j]) ** 2)[::-1][:top]
            dist[i, j] = dist[j, i] = math.sqrt(sq.mean())

    centering = np.eye(n_samples) - np.full((n_samples, n_samples), 1.0 / n_samples)
    gram = -0.5 * centering @ (dist ** 2) @ centering
    eigvals, eigvecs = np.linalg.eigh(gram)
    order = np.argsort(eigvals)[::-1][:ndim]
    coords = eigvecs[:, order] * np.sqrt(np.maximum(eigvals[order], 0.0))
    columns = [f"Leading logFC dim {k + 1}" for k in range(len(order))]
    return pd.DataFrame(coords, index=logcpm.columns, columns=columns)


def plot_mds(logcpm: pd.DataFrame, groups: pd.Series, output: Path, *, top: int = 500) -> None:
    coords = mds_coordinates(logcpm, top=top)
    coords["group"] = groups.reindex(coords.index).astype(str).to_numpy()
    dim1, dim2 = coords.columns[:2]
    fig, ax = plt.subplots(figsize=(6, 6))
    sns.scatterplot(data=coords, x=dim1, y=dim2, hue="group", s=80, ax=ax)
    for sample, row in coords.iterrows():
        ax.annotate(sample, (row[dim1], row[dim2]), textcoords="offset points", xytext=(4, 4), fontsize=8)
    ax.set_title("MDS plot")
    save_plot(fig, output)


def plot_bcv(y: DGEList, output: Path) -> None:
    """Biological coefficient of variation against abundance."""

    if y.ave_log_cpm is None or y.trended_dispersion is None:
        raise ValueError("Dispersions must be estimated before plotting the BCV")
    abundance = np.asarray(y.ave_log_cpm, dtype=float)
    fig, ax = plt.subplots(figsize=(6, 5))
    if y.tagwise_dispersion is not None:
        ax.scatter(abundance, np.sqrt(y.tagwise_dispersion), s=4, color="black", alpha=0.5, label="Tagwise")
    order = np.argsort(abundance)
    ax.plot(abundance[order], np.sqrt(y.trended_dispersion[order]), color="steelblue", label="Trend")
    if y.common_dispersion is not None and math.isfinite(y.common_dispersion):
        ax.axhline(math.sqrt(y.common_dispersion), color="firebrick", label="Common")
    ax.set_xlabel("Average log CPM")
    ax.set_ylabel("Biological coefficient of variation")
    ax.legend(loc="upper right", frameon=False)
    ax.set_title("BCV plot")
    save_plot(fig, output)


def plot_ql_disp(fit: QLFit, output: Path) -> None:
    """Quarter-root QL dispersions before and after squeezing."""

    abundance = np.asarray(fit.ave_log_cpm, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        raw = np.where(fit.df_residual_zeros > 0, fit.deviance / fit.df_residual_zeros, np.nan)
    fig, ax = plt.subplots(figsize=(6, 5))
    ax.scatter(abundance, np.sqrt(np.sqrt(raw)), s=4, color="black", alpha=0.5, label="Raw")
    ax.scatter(abundance, np.sqrt(np.sqrt(fit.var_post)), s=4, color="firebrick", alpha=0.5, label="Squeezed")
    order = np.argsort(abundance)
    ax.plot(abundance[order], np.sqrt(np.sqrt(fit.var_prior[order])), color="steelblue", label="Trend")
    ax.set_xlabel("Average log2 CPM")
    ax.set_ylabel("Quarter-root mean deviance")
    ax.legend(loc="upper right", frameon=False)
    ax.set_title("QL dispersion plot")
    save_plot(fig, output)


def plot_md(table: pd.DataFrame, output: Path, *, fdr_threshold: float = 0.05) -> None:
    data = table.assign(Decision=_decision_labels(table, fdr_threshold))
    fig, ax = plt.subplots(figsize=(6, 6))
    sns.scatterplot(data=data, x="logCPM", y="logFC", hue="Decision", palette=DECISION_PALETTE,
                    s=8, linewidth=0, ax=ax)
    ax.axhline(0, color="black", linestyle="--", linewidth=0.8)
    ax.set_xlabel("Average log CPM")
    ax.set_ylabel("log2 Fold Change")
    ax.set_title("MD plot")
    save_plot(fig, output)


def plot_volcano(table: pd.DataFrame, output: Path, *, fdr_threshold: float = 0.05) -> None:
    data = table.assign(
        Decision=_decision_labels(table, fdr_threshold),
        neg_log10_p=_neg_log10(table["PValue"]),
    )
    fig, ax = plt.subplots(figsize=(6, 6))
    sns.scatterplot(data=data, x="logFC", y="neg_log10_p", hue="Decision", palette=DECISION_PALETTE,
                    s=8, linewidth=0, ax=ax)
    significant = data.loc[data["FDR"] < fdr_threshold, "neg_log10_p"]
    if not significant.empty:
        ax.axhline(significant.min(), color="black", linestyle="--", linewidth=0.8)
    ax.set_xlabel("log2 Fold Change")
    ax.set_ylabel("-log10 p-value")
    ax.set_title("Volcano plot")
    save_plot(fig, output)


def plot_top_heatmap(logcpm: pd.DataFrame, table: pd.DataFrame, output: Path, top_n: int = 50) -> None:
    top = table.sort_values("PValue").head(top_n).index
    data = logcpm.loc[top]
    norm = data.sub(data.mean(axis=1), axis=0)
    fig = plt.figure(figsize=(8, max(4, len(top) * 0.2)))
    sns.heatmap(norm, cmap="RdBu_r", center=0)
    plt.title(f"Top {len(top)} differential regions")
    plt.ylabel("Regions")
    plt.xlabel("Samples")
    save_plot(fig, output)


def _hover_columns(table: pd.DataFrame) -> Sequence[str]:
    candidates = ["Chromosome", "Start", "End", "Gene Name", "Annotation", "Distance to TSS", "FDR"]
    return [col for col in candidates if col in table.columns]


def write_interactive_md(table: pd.DataFrame, output: Path, *, fdr_threshold: float = 0.05) -> None:
    data = table.assign(Decision=_decision_labels(table, fdr_threshold)).reset_index()
    fig = px.scatter(
        data,
        x="logCPM",
        y="logFC",
        color="Decision",
        color_discrete_map=DECISION_PALETTE,
        hover_name=data.columns[0],
        hover_data=list(_hover_columns(table)),
        title="MD plot",
    )
    fig.update_traces(marker={"size": 4})
    ensure_directory(output.parent)
    fig.write_html(str(output), include_plotlyjs="cdn", full_html=True)


def write_interactive_volcano(table: pd.DataFrame, output: Path, *, fdr_threshold: float = 0.05) -> None:
    data = table.assign(
        Decision=_decision_labels(table, fdr_threshold),
        neg_log10_p=_neg_log10(table["PValue"]),
    ).reset_index()
    fig = px.scatter(
        data,
        x="logFC",
        y="neg_log10_p",
        color="Decision",
        color_discrete_map=DECISION_PALETTE,
        hover_name=data.columns[0],
        hover_data=list(_hover_columns(table)),
        labels={"neg_log10_p": "-log10 p-value"},
        title="Volcano plot",
    )
    fig.update_traces(marker={"size": 4})
    ensure_directory(output.parent)
    fig.write_html(str(output), include_plotlyjs="cdn", full_html=True)


def generate_plots(
    y: DGEList,
    fit: QLFit,
    table: pd.DataFrame,
    logcpm: pd.DataFrame,
    output_dir: Path,
    *,
    fdr_threshold: float = 0.05,
    interactive: bool = True,
) -> Dict[str, Path]:
    """Produce every diagnostic and result plot; returns their paths."""

    ensure_directory(output_dir)
    outputs: Dict[str, Path] = {}

    if y.n_samples >= 3:
        outputs["mds"] = output_dir / "mds.png"
        plot_mds(logcpm, y.group.astype(str), outputs["mds"])
    else:
        LOGGER.warning("Skipping MDS plot: fewer than three samples")

    outputs["bcv"] = output_dir / "bcv.png"
    plot_bcv(y, outputs["bcv"])
    outputs["ql_dispersion"] = output_dir / "ql_dispersion.png"
    plot_ql_disp(fit, outputs["ql_dispersion"])
    outputs["md"] = output_dir / "md_plot.png"
    plot_md(table, outputs["md"], fdr_threshold=fdr_threshold)
    outputs["volcano"] = output_dir / "volcano.png"
    plot_volcano(table, outputs["volcano"], fdr_threshold=fdr_threshold)
    outputs["top_heatmap"] = output_dir / "top_regions_heatmap.png"
    plot_top_heatmap(logcpm, table, outputs["top_heatmap"])

    if interactive:
        outputs["md_html"] = output_dir / "md_plot.html"
        write_interactive_md(table, outputs["md_html"], fdr_threshold=fdr_threshold)
        outputs["volcano_html"] = output_dir / "volcano.html"
        write_interactive_volcano(table, outputs["volcano_html"], fdr_threshold=fdr_threshold)

    LOGGER.info("Wrote %d plots to %s", len(outputs), output_dir)
    return outputs
