# comtrade_MultiFileAnalyzer/loaders/record_loader.py
from __future__ import annotations
import json
import logging
from pathlib import Path

import numpy as np
import yaml

from ..core import timebase
from ..core.errors import InvalidInput
from ..core.model import ChannelDescriptor, ParsedFileSet

_LOG = logging.getLogger(__name__)


def _pick(d: dict, *keys, default=None):
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return default


def _read_any(path: Path):
    """YAML for .yaml/.yml, JSON otherwise."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        return yaml.safe_load(text)
    return json.loads(text)


def _channel(raw: dict, i: int, kind: str) -> ChannelDescriptor:
    if not isinstance(raw, dict):
        raise InvalidInput(f"{kind} channel {i} must be a mapping")
    cid = str(_pick(raw, "id", "channel_id", "name", default=f"{kind[0]}{i}"))
    name = str(_pick(raw, "name", "id", default=cid))
    return ChannelDescriptor(
        channel_id=cid,
        name=name,
        unit=str(_pick(raw, "unit", default="") or ""),
        group_id=_pick(raw, "group", "groupId", "group_id"),
        color=_pick(raw, "color"),
        invert=bool(_pick(raw, "invert", default=False)),
        scale=float(_pick(raw, "scale", default=1.0)),
        start=float(_pick(raw, "start", default=0.0)),
        duration=_pick(raw, "duration"),
        ph=str(_pick(raw, "ph", default="") or ""),
    )


def _rows(raw, count: int, label: str) -> list[np.ndarray]:
    rows = list(raw or [])
    if len(rows) != count:
        raise InvalidInput(f"{label}: {len(rows)} data row(s) for {count} channel(s)")
    return [np.asarray(r, dtype=float) for r in rows]


def _derive_time(time, rates: list[timebase.SamplingRate], sample_rate, rows: list[np.ndarray]):
    """Time column as given, else rebuilt from the sampling rate segments (or a single rate)."""
    n = len(rows[0]) if rows else 0
    if time is not None:
        t = np.asarray(time, dtype=float)
        if rates and t.size:
            cmp = timebase.compare_timestamps(t, timebase.uniform_time_array(t.size, rates))
            if cmp.has_gaps:
                _LOG.warning("time column departs from the sampling rates by up to %.6f s", cmp.max_gap)
        return t
    if not rates and sample_rate is not None and n:
        rates = [timebase.SamplingRate(rate=float(sample_rate), end_sample=n - 1)]
    if not rates or not n:
        return None
    _LOG.debug("deriving %d time stamp(s) from %d sampling rate segment(s)", n, len(rates))
    return timebase.uniform_time_array(n, rates)


def file_set_from_dict(rec: dict, filename_hint: str | None = None) -> ParsedFileSet:
    """Build a ParsedFileSet from one record mapping (camelCase or snake_case keys)."""
    if not isinstance(rec, dict):
        raise InvalidInput("record must be a mapping")
    analog = [_channel(c, i, "analog") for i, c in enumerate(_pick(rec, "analogChannels", "analog_channels", default=[]))]
    digital = [_channel(c, i, "digital") for i, c in enumerate(_pick(rec, "digitalChannels", "digital_channels", default=[]))]
    analog_data = _rows(_pick(rec, "analogData", "analog_data"), len(analog), "analogData")
    digital_data = _rows(_pick(rec, "digitalData", "digital_data"), len(digital), "digitalData")
    rates = timebase.parse_sampling_rates(_pick(rec, "samplingRates", "sampling_rates", default=[]))
    sample_rate = _pick(rec, "sampleRate", "sample_rate")
    time = _derive_time(_pick(rec, "time"), rates, sample_rate, analog_data + digital_data)
    if sample_rate is None and rates:
        sample_rate = timebase.rate_for_sample(0, rates)
    return ParsedFileSet(
        analog_channels=analog,
        digital_channels=digital,
        time=time,
        analog_data=analog_data,
        digital_data=digital_data,
        filename=_pick(rec, "filename", "fileName", default=filename_hint),
        station_name=_pick(rec, "stationName", "station_name"),
        sample_rate=None if sample_rate is None else float(sample_rate),
    )


def infer_station_from_path(path: Path) -> str:
    """Station name from the first record in the dump, else the parent folder name."""
    try:
        obj = _read_any(path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        _LOG.warning("cannot read %s for station lookup: %s", path.name, e)
        return path.parent.name
    first = obj[0] if isinstance(obj, list) and obj else obj
    if isinstance(first, dict) and isinstance(first.get("records"), list) and first["records"]:
        first = first["records"][0]
    station = _pick(first, "stationName", "station_name") if isinstance(first, dict) else None
    return str(station) if station else path.parent.name


def load(path: Path, cfg: dict | None = None) -> list[ParsedFileSet]:
    """
    Accepts: one record mapping, a list of records, or ``{"records": [...]}``.
    Returns one ParsedFileSet per record, in file order.
    """
    if cfg is not None:
        timebase.configure_from_config(cfg)
    obj = _read_any(path)
    if isinstance(obj, dict) and isinstance(obj.get("records"), list):
        records = obj["records"]
    elif isinstance(obj, list):
        records = obj
    else:
        records = [obj]

    out: list[ParsedFileSet] = []
    for k, rec in enumerate(records):
        hint = path.name if len(records) == 1 else f"{path.stem}_{k + 1}{path.suffix}"
        out.append(file_set_from_dict(rec, filename_hint=hint))
    _LOG.debug("%s: %d record(s)", path.name, len(out))
    return out
