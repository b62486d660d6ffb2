# comtrade_MultiFileAnalyzer/core/deltas.py
from __future__ import annotations
import logging
import math
import numbers
from dataclasses import dataclass, field
from typing import Literal, Sequence
import numpy as np

_LOG = logging.getLogger(__name__)

TimeUnit = Literal["seconds", "milliseconds", "microseconds"]

# ----- defaults (used if configure_from_config isn't called) -----
_TIME_UNIT: TimeUnit = "microseconds"
_TOGGLE_TOLERANCE: float = 0.02     # fraction of the x-range
_COALESCE_TOLERANCE: float = 0.005

_TIME_SUFFIX = {"seconds": " s", "milliseconds": " ms", "microseconds": " μs"}

_SI_PREFIXES: tuple[tuple[float, str], ...] = (
    (1e9, "G"), (1e6, "M"), (1e3, "k"), (1.0, ""),
    (1e-3, "m"), (1e-6, "μ"), (1e-9, "n"), (1e-12, "p"),
)

TIME_ROW = "__TIME_ROW__"


def configure_from_config(cfg: dict) -> None:
    global _TIME_UNIT, _TOGGLE_TOLERANCE, _COALESCE_TOLERANCE
    _TIME_UNIT = "microseconds"
    _TOGGLE_TOLERANCE = 0.02
    _COALESCE_TOLERANCE = 0.005
    ccfg = (cfg or {}).get("cursors", {}) or {}
    unit = str(ccfg.get("time_unit", _TIME_UNIT)).lower().strip()
    if unit in _TIME_SUFFIX:
        _TIME_UNIT = unit
    else:
        _LOG.warning("unknown cursors.time_unit %r; keeping %s", unit, _TIME_UNIT)
    _TOGGLE_TOLERANCE = float(ccfg.get("toggle_tolerance", _TOGGLE_TOLERANCE))
    _COALESCE_TOLERANCE = float(ccfg.get("coalesce_tolerance", _COALESCE_TOLERANCE))


def default_time_unit() -> TimeUnit:
    return _TIME_UNIT


@dataclass
class ChartSeries:
    """What a chart hands to the delta engine: x data, y series and their display options."""
    time: np.ndarray
    series: list[np.ndarray]
    axes_scales: list[float] = field(default_factory=list)   # [x, y1, y2, ...]
    units: list[str] = field(default_factory=list)
    colors: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    axis_slots: list[int] = field(default_factory=list)
    group_id: str | None = None


# ---------- lookup / formatting ----------

def nearest_index(time, x: float) -> int:
    """argmin |time[j] - x|; binary search when time is monotone. -1 for empty input."""
    t = np.asarray(time, dtype=float)
    n = t.size
    if n == 0 or x is None or not math.isfinite(float(x)):
        return -1
    if n == 1:
        return 0
    if np.all(np.diff(t) >= 0):
        j = int(np.searchsorted(t, x, side="left"))
        if j <= 0:
            return 0
        if j >= n:
            return n - 1
        return j - 1 if (x - t[j - 1]) <= (t[j] - x) else j
    return int(np.nanargmin(np.abs(t - x)))


def format_scaled_value(value: float, scale: float = 1.0, unit: str = "") -> str:
    scaled = float(value) * (scale or 1.0)
    if not math.isfinite(scaled):
        return f"{scaled} {unit}".rstrip()
    mag = abs(scaled)
    prefix, divisor = "", 1.0
    for threshold, p in _SI_PREFIXES:
        if mag >= threshold:
            prefix, divisor = p, threshold
            break
    return f"{scaled / divisor:.2f} {prefix}{unit}"


def format_delta_time(dt: float, time_unit: TimeUnit | None = None) -> str:
    unit = time_unit or _TIME_UNIT
    return f"{dt:.2f}{_TIME_SUFFIX.get(unit, ' μs')}"


def _numeric(v) -> float | None:
    if v is None or isinstance(v, bool) or not isinstance(v, numbers.Real):
        return None
    f = float(v)
    return None if math.isnan(f) else f


def _series_meta(chart: ChartSeries, j: int) -> tuple[str, str, str, float]:
    name = chart.labels[j] if j < len(chart.labels) and chart.labels[j] else f"Series {j + 1}"
    color = chart.colors[j] if j < len(chart.colors) and chart.colors[j] else "black"
    unit = chart.units[j] if j < len(chart.units) and chart.units[j] else ""
    scale = chart.axes_scales[j + 1] if j + 1 < len(chart.axes_scales) and chart.axes_scales[j + 1] else 1.0
    return name, color, unit, float(scale)


def collect_chart_deltas(cursors: Sequence[float], chart: ChartSeries,
                         time_unit: TimeUnit | None = None) -> list[dict]:
    """
    One section for a single cursor (values at that cursor), otherwise one
    section per consecutive cursor pair.
    """
    sections: list[dict] = []
    xs = list(cursors or [])
    if not xs or chart is None or chart.time is None or len(chart.time) == 0 or not chart.series:
        return sections
    t = np.asarray(chart.time, dtype=float)

    if len(xs) == 1:
        idx = nearest_index(t, xs[0])
        if idx < 0:
            return sections
        section = {"deltaTime": f"Line 1: {t[idx]:.2f}", "pair_index": 0, "series": []}
        for j, s in enumerate(chart.series):
            if s is None or idx >= len(s):
                continue
            value = _numeric(s[idx])
            if value is None:
                continue
            name, color, unit, scale = _series_meta(chart, j)
            formatted = format_scaled_value(value, scale, unit)
            section["series"].append({
                "name": name, "color": color, "v1": value, "v2": value,
                "deltaY": 0.0, "percentage": 0.0,
                "v1Formatted": formatted, "v2Formatted": formatted,
                "deltaFormatted": f"0.00 {unit}", "unit": unit,
            })
        sections.append(section)
        return sections

    for i in range(len(xs) - 1):
        j1 = nearest_index(t, xs[i])
        j2 = nearest_index(t, xs[i + 1])
        if j1 < 0 or j2 < 0:
            continue
        section = {"deltaTime": format_delta_time(t[j2] - t[j1], time_unit), "pair_index": i, "series": []}
        for j, s in enumerate(chart.series):
            if s is None or max(j1, j2) >= len(s):
                continue
            v1, v2 = _numeric(s[j1]), _numeric(s[j2])
            if v1 is None or v2 is None:
                continue
            name, color, unit, scale = _series_meta(chart, j)
            dy = v2 - v1
            pct = 0.0 if v1 == 0 else round((dy / abs(v1)) * 100.0, 1)
            section["series"].append({
                "name": name, "color": color, "v1": v1, "v2": v2,
                "deltaY": dy, "percentage": pct,
                "v1Formatted": format_scaled_value(v1, scale, unit),
                "v2Formatted": format_scaled_value(v2, scale, unit),
                "deltaFormatted": format_scaled_value(dy, scale, unit),
                "unit": unit,
            })
        sections.append(section)
    return sections


def format_table_data(sections: Sequence[dict], cursor_count: int,
                      cursor_times: Sequence[float] = ()) -> list[dict]:
    """
    Wide per-channel table: ``v0..v{n-1}`` values at each cursor, ``delta{i}`` and
    ``percentage{i}`` per pair, preceded by a time row.
    """
    channels: dict[str, dict] = {}
    pair_times: dict[int, str] = {}
    single = cursor_count <= 1

    for section in sections:
        pair = int(section.get("pair_index", 0))
        pair_times.setdefault(pair, section.get("deltaTime", ""))
        for row in section.get("series") or []:
            name = row.get("name") or "Unknown"
            entry = channels.setdefault(name, {"channel": name, "color": row.get("color") or "#6b7280"})
            if single:
                entry["v0"] = row.get("v1Formatted") or "N/A"
                continue
            if pair == 0 and "v0" not in entry:
                entry["v0"] = row.get("v1Formatted") or "N/A"
            entry[f"v{pair + 1}"] = row.get("v2Formatted") or "N/A"
            entry[f"delta{pair}"] = row.get("deltaFormatted") or "N/A"
            entry[f"percentage{pair}"] = float(row.get("percentage") or 0.0)

    pairs = 0 if single else max(cursor_count - 1, 0)
    for entry in channels.values():
        for i in range(max(cursor_count, 1)):
            entry.setdefault(f"v{i}", "N/A")
        for i in range(pairs):
            if f"delta{i}" not in entry:
                entry[f"delta{i}"] = "N/A"
                entry[f"percentage{i}"] = 0.0

    time_row: dict = {"channel": TIME_ROW, "color": "#3b82f6"}
    for i, tv in enumerate(cursor_times):
        time_row[f"v{i}"] = tv
    for i in range(pairs):
        time_row[f"delta{i}"] = pair_times.get(i, "N/A")
        time_row[f"percentage{i}"] = 0.0
    return [time_row] + list(channels.values())


# ---------- cursor set ----------

class CursorSet:
    """Insertion-ordered time cursors with a navigable 'current' cursor."""

    def __init__(self, positions: Sequence[float] = ()):
        self._xs: list[float] = [float(x) for x in positions]
        self.current: int | None = len(self._xs) - 1 if self._xs else None

    def __len__(self) -> int:
        return len(self._xs)

    def __iter__(self):
        return iter(list(self._xs))

    def as_list(self) -> list[float]:
        return list(self._xs)

    @staticmethod
    def _span(x_range: tuple[float, float] | None) -> float:
        if not x_range:
            return 0.0
        return abs(float(x_range[1]) - float(x_range[0]))

    def add(self, x: float, x_range: tuple[float, float] | None = None) -> bool:
        """Append unless an existing cursor lies within the coalesce tolerance."""
        tol = _COALESCE_TOLERANCE * self._span(x_range)
        for i, existing in enumerate(self._xs):
            if abs(existing - x) <= tol:
                self.current = i
                return False
        self._xs.append(float(x))
        self.current = len(self._xs) - 1
        return True

    def toggle(self, x: float, x_range: tuple[float, float]) -> Literal["added", "removed", "kept"]:
        """Click semantics: remove the first cursor within the toggle tolerance, otherwise add."""
        tol = _TOGGLE_TOLERANCE * self._span(x_range)
        for i, existing in enumerate(self._xs):
            if abs(existing - x) <= tol:
                self._remove_at(i)
                return "removed"
        return "added" if self.add(x, x_range) else "kept"

    def _remove_at(self, i: int) -> float:
        x = self._xs.pop(i)
        if not self._xs:
            self.current = None
        elif self.current is not None:
            if self.current > i or self.current >= len(self._xs):
                self.current = max(0, self.current - 1)
        return x

    def clear(self) -> None:
        self._xs.clear()
        self.current = None

    def previous(self) -> float | None:
        if not self._xs:
            return None
        self.current = max(0, (self.current if self.current is not None else 0) - 1)
        return self._xs[self.current]

    def next(self) -> float | None:
        if not self._xs:
            return None
        cur = self.current if self.current is not None else -1
        self.current = min(len(self._xs) - 1, cur + 1)
        return self._xs[self.current]

    def delete_current(self) -> float | None:
        if not self._xs or self.current is None:
            return None
        return self._remove_at(self.current)


# ---------- keyboard / zoom surface ----------

@dataclass(frozen=True)
class KeyEvent:
    key: str = ""
    alt: bool = False
    shift: bool = False
    ctrl: bool = False
    meta: bool = False
    delta_y: float = 0.0        # wheel events only
    is_wheel: bool = False


def handle_cursor_shortcut(event: KeyEvent, cursors: CursorSet, pointer_x: float | None = None,
                           x_range: tuple[float, float] | None = None) -> str | None:
    """Alt+0..4 cursor commands; returns the action taken or None."""
    if not event.alt or event.is_wheel:
        return None
    if event.key == "0":
        cursors.clear()
        return "clear"
    if event.key == "1":
        if pointer_x is None:
            return None
        cursors.add(pointer_x, x_range)
        return "add"
    if event.key == "2":
        return "previous" if cursors.previous() is not None else None
    if event.key == "3":
        return "next" if cursors.next() is not None else None
    if event.key == "4":
        return "delete" if cursors.delete_current() is not None else None
    return None


def zoom_pan_range(x_min: float, x_max: float, mode: Literal["zoom", "pan"],
                   direction: Literal["in", "out", "left", "right"],
                   anchor: float | None = None) -> tuple[float, float]:
    span = x_max - x_min
    if mode == "zoom":
        factor = 0.8 if direction == "in" else 1.25
        new_span = span * factor
        pivot = anchor if anchor is not None else (x_min + x_max) / 2.0
        rel = (pivot - x_min) / span if span else 0.5
        return pivot - rel * new_span, pivot + (1.0 - rel) * new_span
    if mode == "pan":
        shift = span * 0.2 * (1.0 if direction == "right" else -1.0)
        return x_min + shift, x_max + shift
    raise ValueError(f"unknown zoom/pan mode {mode!r}")


_LEFT_KEYS = ("<", ",", "ArrowLeft")
_RIGHT_KEYS = (">", ".", "ArrowRight")


def handle_zoom_key(event: KeyEvent, x_range: tuple[float, float],
                    pointer_x: float | None = None) -> tuple[float, float] | None:
    """Shift zooms, Alt pans; keys and wheel both. Returns the new x-range or None."""
    if event.ctrl or event.meta or not (event.shift or event.alt):
        return None
    x_min, x_max = x_range
    if event.is_wheel:
        if event.shift:
            return zoom_pan_range(x_min, x_max, "zoom", "in" if event.delta_y < 0 else "out", pointer_x)
        return zoom_pan_range(x_min, x_max, "pan", "left" if event.delta_y < 0 else "right")
    if event.key in _LEFT_KEYS:
        back = True
    elif event.key in _RIGHT_KEYS:
        back = False
    else:
        return None
    if event.shift:
        return zoom_pan_range(x_min, x_max, "zoom", "in" if back else "out", pointer_x)
    return zoom_pan_range(x_min, x_max, "pan", "left" if back else "right")
