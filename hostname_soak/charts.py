from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

LOGGER = logging.getLogger("hostname_soak.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 200
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13

QPS_COLOR = "#2E86AB"
MISSING_COLOR = "#C73E1D"
UNRESPONSIVE_COLOR = "#F18F01"


def render_soak_chart(df: pd.DataFrame, chart_path: Path) -> Path | None:
    """Plot per-iteration throughput above missing responses and silent pods."""
    if df.empty:
        LOGGER.warning("No iterations recorded, skipping chart %s", chart_path)
        return None

    chart_path.parent.mkdir(parents=True, exist_ok=True)
    iterations = df["iteration"].to_numpy()

    fig, (ax_qps, ax_missing) = plt.subplots(
        2, 1, figsize=(12, 7), sharex=True, gridspec_kw={"height_ratios": [2, 1]}
    )

    ax_qps.plot(iterations, df["qps"], color=QPS_COLOR, marker="o", markersize=3, linewidth=1.5)
    mean_qps = float(np.mean(df["qps"]))
    ax_qps.axhline(mean_qps, color=QPS_COLOR, linestyle="--", linewidth=1, alpha=0.6)
    ax_qps.annotate(
        f"mean {mean_qps:.1f} QPS",
        xy=(iterations[-1], mean_qps),
        xytext=(-5, 5),
        textcoords="offset points",
        ha="right",
        color=QPS_COLOR,
        fontsize=9,
    )
    ax_qps.set_ylabel("Successful queries / s", fontweight="semibold")
    ax_qps.set_title("Soak Throughput per Iteration", fontweight="bold", pad=12)
    ax_qps.set_ylim(bottom=0)

    width = 0.4
    ax_missing.bar(iterations - width / 2, df["missing"], width=width, color=MISSING_COLOR, label="missing responses")
    ax_missing.bar(
        iterations + width / 2,
        df["unresponsive"],
        width=width,
        color=UNRESPONSIVE_COLOR,
        label="unresponsive pods",
    )
    ax_missing.set_xlabel("Iteration", fontweight="semibold")
    ax_missing.set_ylabel("Count", fontweight="semibold")
    ax_missing.legend(loc="upper right", frameon=True)

    sns.despine(fig=fig)
    fig.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white", edgecolor="none")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path
