# comtrade_MultiFileAnalyzer/core/timebase.py
"""
Time axis from sampling-rate segments.

A record may carry its sampling layout instead of (or next to) a time column:
a list of ``(rate, end_sample)`` segments, each covering the samples up to and
including ``end_sample`` (0-based). Time runs continuously across segment
boundaries: every sample after a boundary is spaced by the new rate, starting
from the time of the boundary sample.
"""
from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from typing import Sequence
import numpy as np

from .errors import InvalidInput

# ----- defaults (used if configure_from_config isn't called) -----
_UNIFORM_TOLERANCE_US: float = 1.0
_GAP_THRESHOLD_S: float = 1e-4

_LOG = logging.getLogger(__name__)


def configure_from_config(cfg: dict) -> None:
    global _UNIFORM_TOLERANCE_US, _GAP_THRESHOLD_S
    _UNIFORM_TOLERANCE_US, _GAP_THRESHOLD_S = 1.0, 1e-4
    tcfg = (cfg or {}).get("timebase", {}) or {}
    _UNIFORM_TOLERANCE_US = float(tcfg.get("uniform_tolerance_us", _UNIFORM_TOLERANCE_US))
    _GAP_THRESHOLD_S = float(tcfg.get("gap_threshold_s", _GAP_THRESHOLD_S))


@dataclass(frozen=True)
class SamplingRate:
    rate: float
    end_sample: int


@dataclass(frozen=True)
class UniformSpacing:
    is_uniform: bool
    intervals: np.ndarray
    avg_interval: float
    max_deviation: float


@dataclass(frozen=True)
class TimestampComparison:
    differences: np.ndarray
    has_gaps: bool
    max_gap: float
    total_difference: float


def _finite(x) -> float | None:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return None
    return v if math.isfinite(v) else None


def parse_sampling_rates(raw) -> list[SamplingRate]:
    """
    Accepts ``SamplingRate`` items, mappings (``rate`` + ``endSample``/``end_sample``)
    or ``(rate, end_sample)`` pairs. Entries with neither value readable are
    dropped; a single unreadable field defaults to 0.
    """
    out: list[SamplingRate] = []
    for item in raw or []:
        if isinstance(item, SamplingRate):
            out.append(item)
            continue
        if isinstance(item, dict):
            rate = _finite(item.get("rate"))
            end = _finite(item.get("endSample", item.get("end_sample")))
        elif isinstance(item, (list, tuple)) and len(item) >= 2:
            rate, end = _finite(item[0]), _finite(item[1])
        else:
            raise InvalidInput(f"unreadable sampling rate entry: {item!r}")
        if rate is None and end is None:
            continue
        out.append(SamplingRate(rate=rate or 0.0, end_sample=int(end or 0)))
    return out


def _checked(rates: Sequence[SamplingRate]) -> list[SamplingRate]:
    rates = parse_sampling_rates(rates)
    if not rates:
        raise InvalidInput("no sampling rates given")
    bad = [sr.rate for sr in rates if sr.rate <= 0]
    if bad:
        raise InvalidInput(f"sampling rate must be positive, got {bad[0]}")
    return rates


def rate_for_sample(sample: int, rates: Sequence[SamplingRate]) -> float:
    """Rate of the first segment whose end covers ``sample``; past the last end, the last rate."""
    rates = _checked(rates)
    for sr in rates:
        if sample <= sr.end_sample:
            return sr.rate
    return rates[-1].rate


def time_from_sample_number(sample: int, rates: Sequence[SamplingRate]) -> float:
    rates = _checked(rates)
    anchor_sample, anchor_time = 0, 0.0
    for k, sr in enumerate(rates):
        if sample <= sr.end_sample or k == len(rates) - 1:
            return anchor_time + (sample - anchor_sample) / sr.rate
        end = max(sr.end_sample, anchor_sample)
        anchor_time += (end - anchor_sample) / sr.rate
        anchor_sample = end
    return anchor_time


def uniform_time_array(total_samples: int, rates: Sequence[SamplingRate]) -> np.ndarray:
    """Seconds for samples ``0 .. total_samples - 1``."""
    rates = _checked(rates)
    n = np.arange(max(int(total_samples), 0), dtype=float)
    t = np.empty_like(n)
    anchor_sample, anchor_time = 0, 0.0
    lower = np.ones(n.shape, dtype=bool)
    for k, sr in enumerate(rates):
        last = k == len(rates) - 1
        mask = lower if last else lower & (n <= sr.end_sample)
        t[mask] = anchor_time + (n[mask] - anchor_sample) / sr.rate
        if last:
            break
        end = max(sr.end_sample, anchor_sample)
        anchor_time += (end - anchor_sample) / sr.rate
        anchor_sample = end
        lower = n > anchor_sample
    return t


def linear_interpolate(x1: float, y1: float, x2: float, y2: float, x: float) -> float:
    if x2 == x1:
        return y1
    return y1 + (x - x1) * (y2 - y1) / (x2 - x1)


def interpolate_data(times, data, new_times) -> np.ndarray:
    """Linear resampling onto ``new_times``; points outside the range take the edge value."""
    t = np.asarray(times, dtype=float)
    y = np.asarray(data, dtype=float)
    if t.size != y.size:
        raise InvalidInput(f"{t.size} time(s) for {y.size} value(s)")
    if t.size == 0:
        raise InvalidInput("nothing to interpolate")
    return np.interp(np.asarray(new_times, dtype=float), t, y)


def compare_timestamps(file_times, calculated_times, gap_threshold: float | None = None) -> TimestampComparison:
    a = np.asarray(file_times, dtype=float)
    b = np.asarray(calculated_times, dtype=float)
    n = min(a.size, b.size)
    diff = np.abs(a[:n] - b[:n])
    threshold = _GAP_THRESHOLD_S if gap_threshold is None else float(gap_threshold)
    gaps = diff[diff > threshold]
    return TimestampComparison(
        differences=diff,
        has_gaps=bool(gaps.size),
        max_gap=float(gaps.max()) if gaps.size else 0.0,
        total_difference=float(diff.sum()),
    )


def detect_uniform_spacing(times, tolerance_us: float | None = None) -> UniformSpacing:
    t = np.asarray(times, dtype=float)
    if t.size < 2:
        return UniformSpacing(True, np.zeros(0), 0.0, 0.0)
    intervals = np.diff(t)
    avg = float(intervals.mean())
    deviation = float(np.abs(intervals - avg).max())
    tolerance = (_UNIFORM_TOLERANCE_US if tolerance_us is None else float(tolerance_us)) / 1e6
    return UniformSpacing(deviation <= tolerance, intervals, avg, deviation)
