# comtrade_MultiFileAnalyzer/core/reports.py
from __future__ import annotations
import logging
from pathlib import Path
from typing import Literal, Sequence
import numpy as np
import pandas as pd
from scipy.io import savemat

from .deltas import TIME_ROW
from .merge import MergeResult, merge_summary
from .model import Recording

ReportFormat = Literal["csv", "mat", "both"]

_LOG = logging.getLogger(__name__)


def delta_frame(table_rows: Sequence[dict]) -> pd.DataFrame:
    """Wide delta table: one row per channel (time row first), columns v*, delta*, percentage*."""
    if not table_rows:
        return pd.DataFrame(columns=["channel"])
    keys: list[str] = []
    for row in table_rows:
        for k in row:
            if k not in keys:
                keys.append(k)
    lead = [k for k in ("channel", "color") if k in keys]
    values = sorted((k for k in keys if k.startswith("v") and k[1:].isdigit()), key=lambda k: int(k[1:]))
    pairs = sorted((k for k in keys if k.startswith("delta") and k[5:].isdigit()), key=lambda k: int(k[5:]))
    pct = [f"percentage{k[5:]}" for k in pairs if f"percentage{k[5:]}" in keys]
    cols = lead + values + [c for pair in zip(pairs, pct) for c in pair]
    df = pd.DataFrame(list(table_rows), columns=cols)
    df["channel"] = df["channel"].replace({TIME_ROW: "time"})
    return df


def computed_frame(recording: Recording) -> pd.DataFrame:
    """Time column plus one column per computed channel (NaN past a channel's own length)."""
    n = recording.sample_count
    cols = {"time": np.asarray(recording.time, dtype=float)}
    for comp in recording.computed_channels:
        vals = np.full(n, np.nan)
        src = recording.computed_values.get(comp.id)
        if src is not None:
            vals[: min(n, len(src))] = src[:n]
        cols[comp.name] = vals
    return pd.DataFrame(cols)


def computed_meta_frame(recording: Recording) -> pd.DataFrame:
    rows = []
    for comp in recording.computed_channels:
        rows.append({
            "id": comp.id, "name": comp.name, "equation": comp.equation,
            "expression": comp.math_expression, "unit": comp.unit, "group": comp.group,
            "made_from": comp.made_from, "samples": comp.sample_count,
            "min": comp.stats.min, "max": comp.stats.max, "mean": comp.stats.mean,
            "count": comp.stats.count, "valid_count": comp.stats.valid_count,
        })
    cols = ["id", "name", "equation", "expression", "unit", "group", "made_from", "samples",
            "min", "max", "mean", "count", "valid_count"]
    return pd.DataFrame(rows, columns=cols)


def _write_csv(df_out: pd.DataFrame, out_csv: Path, title: str) -> None:
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    df_out.to_csv(out_csv, index=False, encoding="utf-8")
    print(f"[OK] wrote report: {title} → {out_csv}")


def _to_mat_cellstr(seq: list[str]) -> np.ndarray:
    """Make a MATLAB column cell array from a list of strings."""
    seq2 = [("" if s is None else str(s)) for s in seq]
    arr = np.empty((len(seq2), 1), dtype=object)
    arr[:, 0] = seq2
    return arr


def _mat_field(name: str) -> str:
    """MATLAB field names: letters first, then letters/digits/underscores."""
    s = "".join(c if c.isalnum() or c == "_" else "_" for c in str(name))
    if not s or not s[0].isalpha():
        s = f"f_{s}"
    return s[:63]


def _write_mat(df_out: pd.DataFrame, out_mat: Path, varname: str, title: str) -> None:
    """
    Save a MATLAB struct with fields matching the CSV columns.
    Strings become cell arrays (Nx1), numerics become double (Nx1).
    """
    out_mat.parent.mkdir(parents=True, exist_ok=True)
    mat_struct: dict[str, np.ndarray] = {}
    for col in df_out.columns:
        series = df_out[col]
        if pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series):
            mat_struct[_mat_field(col)] = series.to_numpy(dtype=float).reshape(-1, 1)
        else:
            mat_struct[_mat_field(col)] = _to_mat_cellstr(series.astype(str).replace("nan", "", regex=False).tolist())
    savemat(out_mat, {varname: mat_struct})
    print(f"[OK] wrote report: {title} → {out_mat}")


def _write(df_out: pd.DataFrame, out_base: Path, title: str, fmt: ReportFormat, mat_variable: str) -> None:
    if fmt not in ("csv", "mat", "both"):
        raise ValueError(f"unknown report format {fmt!r}")
    if fmt in ("csv", "both"):
        _write_csv(df_out, out_base.with_suffix(".csv"), title)
    if fmt in ("mat", "both"):
        _write_mat(df_out, out_base.with_suffix(".mat"), mat_variable, title)


def write_delta_report(table_rows: Sequence[dict], out_base: Path, title: str = "cursor deltas",
                       fmt: ReportFormat = "csv", mat_variable: str = "deltas") -> None:
    """
    Write the cursor delta table.
    - out_base is a *base path without extension* (e.g., .../deltas)
    - fmt: "csv" | "mat" | "both"
    """
    if not table_rows:
        _LOG.info("no delta rows; skipping %s", title)
        return
    _write(delta_frame(table_rows), out_base, title, fmt, mat_variable)


def write_computed_report(recording: Recording, out_base: Path, title: str = "computed channels",
                          fmt: ReportFormat = "csv", mat_variable: str = "computed") -> None:
    """Samples to ``<out_base>``, per-channel metadata and stats to ``<out_base>_meta``."""
    if recording is None or not recording.computed_channels:
        _LOG.info("no computed channels; skipping %s", title)
        return
    _write(computed_frame(recording), out_base, title, fmt, mat_variable)
    meta_base = out_base.with_name(f"{out_base.name}_meta")
    _write(computed_meta_frame(recording), meta_base, f"{title} (meta)", fmt, f"{mat_variable}_meta")


def write_merge_report(result: MergeResult, out_base: Path, title: str = "merge summary",
                       fmt: ReportFormat = "csv", mat_variable: str = "merge") -> None:
    _write(merge_summary(result), out_base, title, fmt, mat_variable)
