from __future__ import annotations

import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .analytics import samples_dataframe
from .models import STAGES, LatencyReport

LOGGER = logging.getLogger("nodescale.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 300
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

QUANTILE_COLORS = {
    "p50": "#2E86AB",
    "p95": "#F18F01",
    "p99": "#C73E1D",
}

STAGE_NAMES = {
    "MachineCreation": "Machine created",
    "MachineReady": "Machine ready",
    "NodeCreation": "Node created",
    "NodeReady": "Node ready",
}


def render_latency_charts(report: LatencyReport, output_dir: Path) -> list[Path]:
    """Render the latency distribution and quantile charts for a run."""
    if not report.samples:
        LOGGER.warning("No latency samples available for charts")
        return []

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    df = samples_dataframe(report.samples)
    long_df = df.melt(
        id_vars=["machine_id", "owner_group"],
        value_vars=list(STAGES),
        var_name="stage",
        value_name="latency_ms",
    )
    long_df["latency_s"] = long_df["latency_ms"].astype(float) / 1000.0

    boxplot_path = output_dir / "node_latency_boxplot.png"
    _render_stage_boxplot(long_df, boxplot_path)
    quantiles_path = output_dir / "node_latency_quantiles.png"
    _render_quantile_bars(report, quantiles_path)
    return [boxplot_path, quantiles_path]


def _render_stage_boxplot(df: pd.DataFrame, chart_path: Path) -> None:
    fig, ax = plt.subplots(figsize=(12, 6))
    sns.boxplot(
        data=df,
        x="stage",
        y="latency_s",
        hue="owner_group",
        order=list(STAGES),
        ax=ax,
        linewidth=1.5,
        width=0.7,
    )
    ax.set_xticks(range(len(STAGES)))
    ax.set_xticklabels([STAGE_NAMES[stage] for stage in STAGES])
    ax.set_xlabel("Stage", fontweight="semibold", labelpad=12)
    ax.set_ylabel("Latency since scale event (seconds)", fontweight="semibold", labelpad=12)
    ax.set_title("Node Bring-up Latency by Stage & MachineSet", fontweight="bold", pad=15)
    ax.legend(loc="upper left", frameon=True, title="MachineSet", fontsize=9)
    ax.grid(True, alpha=0.3, linestyle="--", linewidth=0.5, axis="y")
    ax.set_axisbelow(True)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)

    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)


def _render_quantile_bars(report: LatencyReport, chart_path: Path) -> None:
    fig, ax = plt.subplots(figsize=(10, 6))

    metrics = ("p50", "p95", "p99")
    positions = np.arange(len(report.quantiles))
    width = 0.25
    for offset, metric in enumerate(metrics):
        values = [getattr(summary, metric) / 1000.0 for summary in report.quantiles]
        bars = ax.bar(
            positions + (offset - 1) * width,
            values,
            width,
            label=metric.upper(),
            color=QUANTILE_COLORS[metric],
            alpha=0.85,
            edgecolor="white",
            linewidth=1.5,
        )
        for bar in bars:
            height = bar.get_height()
            ax.text(
                bar.get_x() + bar.get_width() / 2.0,
                height,
                f"{height:.0f}",
                ha="center",
                va="bottom",
                fontsize=8,
            )

    ax.set_xticks(positions)
    ax.set_xticklabels([STAGE_NAMES.get(s.stage_name, s.stage_name) for s in report.quantiles])
    ax.set_ylabel("Latency (seconds)", fontweight="semibold")
    ax.set_title("Node Bring-up Latency Quantiles", fontweight="bold", pad=15)
    ax.legend(loc="upper left", frameon=True)
    ax.grid(True, alpha=0.3, axis="y", linestyle="--")

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
