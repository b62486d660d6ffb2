# comtrade_MultiFileAnalyzer/core/plotting.py
from __future__ import annotations
import logging
import re
from pathlib import Path
from typing import Sequence

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np

from .deltas import ChartSeries

_LOG = logging.getLogger(__name__)

# spine offset (points) of each extra right-hand axis beyond the first twin
_EXTRA_AXIS_OFFSET = 60


def _sanitize(name: str) -> str:
    s = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("_")
    return s[:120] if len(s) > 120 else s


def _thin_xy(x, y, max_points: int):
    """Light decimator: keep at most max_points evenly spaced points."""
    n = len(x)
    if n <= max_points or max_points <= 0:
        return x, y
    idx = np.linspace(0, n - 1, max_points).astype(int)
    return x[idx], y[idx]


def _axes_for(ax, max_axes: int) -> list:
    """Slot 0 is the left axis; further slots are right-hand twins, all reserved up front."""
    axes = [ax]
    for k in range(1, max(1, max_axes)):
        twin = ax.twinx()
        if k > 1:
            twin.spines["right"].set_position(("outward", _EXTRA_AXIS_OFFSET * (k - 1)))
        axes.append(twin)
    return axes


def save_group_plot(chart: ChartSeries, max_axes: int, out_path: Path, title: str,
                    cursors: Sequence[float] = (), max_points: int = 20000, legend_ncol: int = 4) -> bool:
    """One PNG for one chart group; every chart reserves ``max_axes`` Y axes so plot areas line up."""
    if chart is None or not chart.series:
        print(f"[INFO] {title}: no series; skipping plot.")
        return False
    out_path.parent.mkdir(parents=True, exist_ok=True)

    fig, ax = plt.subplots(figsize=(11, 6))
    axes = _axes_for(ax, max_axes)
    x_all = np.asarray(chart.time, dtype=float)
    unit_by_slot: dict[int, str] = {}
    handles = []
    for j, y in enumerate(chart.series):
        slot = chart.axis_slots[j] if j < len(chart.axis_slots) else 0
        slot = min(max(slot, 0), len(axes) - 1)
        y = np.asarray(y, dtype=float)
        mask = np.isfinite(y)
        if not mask.any():
            continue
        x, yy = _thin_xy(x_all[mask], y[mask], max_points)
        label = chart.labels[j] if j < len(chart.labels) else f"Series {j + 1}"
        color = chart.colors[j] if j < len(chart.colors) and chart.colors[j] else None
        (line,) = axes[slot].plot(x, yy, label=label, color=color, linewidth=0.9)
        handles.append(line)
        unit = chart.units[j] if j < len(chart.units) else ""
        unit_by_slot.setdefault(slot, unit)

    if not handles:
        plt.close(fig)
        print(f"[INFO] {title}: series contain no finite data; skipping plot.")
        return False

    for slot, a in enumerate(axes):
        a.set_ylabel(unit_by_slot.get(slot, ""))
    for x in cursors or ():
        ax.axvline(float(x), color="#3b82f6", linestyle="--", linewidth=0.8)
    ax.set_xlabel("time [s]")
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    ax.legend(handles=handles, labels=[h.get_label() for h in handles], fontsize=8, ncol=legend_ncol,
              loc="upper center", bbox_to_anchor=(0.5, -0.12), frameon=False)
    fig.tight_layout(rect=[0, 0.12, 1, 1])
    fig.savefig(out_path, dpi=160)
    plt.close(fig)
    print(f"[OK] {title}: {len(handles)} series → {out_path}")
    return True


def save_group_plots(charts: Sequence[ChartSeries], max_axes: int, out_dir: Path,
                     cursors: Sequence[float] = (), prefix: str = "", max_points: int = 20000) -> list[Path]:
    written = []
    for chart in charts:
        gid = chart.group_id or "group"
        name = _sanitize(f"{prefix}_{gid}" if prefix else gid) or "group"
        out_path = out_dir / f"{name}.png"
        title = f"{prefix} — {gid}" if prefix else gid
        if save_group_plot(chart, max_axes, out_path, title, cursors, max_points=max_points):
            written.append(out_path)
    _LOG.debug("wrote %d group plot(s) to %s", len(written), out_dir)
    return written
