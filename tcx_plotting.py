from __future__ import annotations

import logging
from typing import List, Sequence

from tcx_stats import ActivityStats, chart_series


PACE_COLOR = "tab:blue"
HR_COLOR = "tab:red"

_MATPLOTLIB_STYLE_READY = False


def _ensure_matplotlib_style(plt) -> None:
    global _MATPLOTLIB_STYLE_READY
    if not _MATPLOTLIB_STYLE_READY:
        try:
            plt.style.use("ggplot")
        except OSError:
            pass
        _MATPLOTLIB_STYLE_READY = True


def plot_pace_vs_hr(stats: Sequence[ActivityStats], out_png: str) -> None:
    """Dual-axis line chart: pace (s/mi) on the left, heart rate on the right."""
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except Exception as e:  # pragma: no cover
        raise RuntimeError("matplotlib is required for plotting. Install with: pip install matplotlib") from e

    _ensure_matplotlib_style(plt)

    pace, hr = chart_series(stats)
    xs: List[int] = [i for i, _ in pace]

    fig, ax = plt.subplots(figsize=(10.24, 7.68), dpi=100)
    ax.plot(xs, [v for _, v in pace], linewidth=1.8, color=PACE_COLOR, label="Seconds per mile")
    ax.set_xlabel("Activity number")
    ax.set_ylabel("Pace (seconds per mile)", color=PACE_COLOR)
    ax.grid(False)
    if xs:
        ax.set_xlim(0, max(1, len(xs) - 1))

    ax2 = ax.twinx()
    ax2.plot(xs, [v for _, v in hr], linewidth=1.8, color=HR_COLOR, label="Heart rate")
    ax2.set_ylabel("Heart rate", color=HR_COLOR)
    ax2.grid(False)

    ax.set_title("Avg pace vs. Avg heart rate", fontsize=20)

    lines, labels = ax.get_legend_handles_labels()
    lines2, labels2 = ax2.get_legend_handles_labels()
    ax.legend(lines + lines2, labels + labels2, loc="upper right", facecolor="#808080")

    fig.tight_layout()
    try:
        fig.savefig(out_png, dpi=100)
    finally:
        plt.close(fig)
    logging.info("Chart has been saved to %s", out_png)
