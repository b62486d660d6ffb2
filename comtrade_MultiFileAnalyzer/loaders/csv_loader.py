# comtrade_MultiFileAnalyzer/loaders/csv_loader.py
from __future__ import annotations
import io
import logging
import re
from pathlib import Path

import numpy as np
import pandas as pd

from ..core import timebase
from ..core.errors import InvalidInput
from ..core.model import ChannelDescriptor, ParsedFileSet

_LOG = logging.getLogger(__name__)

DIGITAL_PREFIX = "D:"
_HEADER_RE = re.compile(r"^\s*(?P<name>.*?)\s*(?:\((?P<unit>[^()]*)\))?\s*$")


# ---------- filename helpers ----------
def _station_from_name(path: Path) -> str:
    """Station between the first and second '=' if present, else the folder name."""
    parts = path.stem.split("=")
    if len(parts) >= 2 and parts[1].strip():
        return parts[1].strip()
    return path.parent.name


def infer_station_from_path(path: Path) -> str:
    return _station_from_name(path)


def split_header(header: str) -> tuple[str, str]:
    """``"IA (kA)"`` -> ``("IA", "kA")``; headers without parentheses have no unit."""
    m = _HEADER_RE.match(str(header))
    name = (m.group("name") if m else str(header)).strip()
    unit = ((m.group("unit") if m else "") or "").strip()
    return name, unit


def _is_binary(col: pd.Series) -> bool:
    vals = col.dropna().unique()
    return len(vals) > 0 and all(v in (0, 1) for v in vals)


# ---------- CSV normalization ----------
def _file_set_from_frame(df: pd.DataFrame, filename: str, station: str | None) -> ParsedFileSet:
    if df.shape[1] < 2:
        raise InvalidInput(f"{filename}: need a time column and at least one channel")
    time = pd.to_numeric(df.iloc[:, 0], errors="coerce")
    keep = time.notna()
    df = df.loc[keep].reset_index(drop=True)
    time = time.loc[keep].to_numpy(dtype=float)

    analog, digital = [], []
    analog_data, digital_data = [], []
    for col in df.columns[1:]:
        header = str(col)
        values = pd.to_numeric(df[col], errors="coerce")
        if header.startswith(DIGITAL_PREFIX):
            name, unit = split_header(header[len(DIGITAL_PREFIX):])
            if _is_binary(values):
                digital.append(ChannelDescriptor(channel_id=name, name=name, unit=unit))
                digital_data.append(values.fillna(0).to_numpy(dtype=float))
                continue
            _LOG.warning("%s: %s is marked digital but is not 0/1; loading it as analog", filename, name)
        else:
            name, unit = split_header(header)
        analog.append(ChannelDescriptor(channel_id=name, name=name, unit=unit))
        analog_data.append(values.to_numpy(dtype=float))

    rate = None
    if len(time) > 1:
        spacing = timebase.detect_uniform_spacing(time)
        if spacing.is_uniform:
            step = spacing.avg_interval
        else:
            _LOG.info("%s: non-uniform sampling (max deviation %.3g s)", filename, spacing.max_deviation)
            step = float(np.median(spacing.intervals))
        rate = 1.0 / step if step > 0 else None
    return ParsedFileSet(
        analog_channels=analog,
        digital_channels=digital,
        time=time,
        analog_data=analog_data,
        digital_data=digital_data,
        filename=filename,
        station_name=station,
        sample_rate=rate,
    )


# ---------- public loader ----------
def load(path: Path, cfg: dict | None = None) -> list[ParsedFileSet]:
    """One columnar CSV export -> one ParsedFileSet."""
    csv_cfg = (cfg or {}).get("input", {}).get("csv", {}) if cfg else {}
    sep = csv_cfg.get("sep", ",")
    decimal = csv_cfg.get("decimal", ".")
    df = pd.read_csv(io.BytesIO(path.read_bytes()), sep=sep, decimal=decimal, low_memory=False)
    return [_file_set_from_frame(df, path.name, _station_from_name(path))]
