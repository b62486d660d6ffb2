# comtrade_MultiFileAnalyzer/core/axes.py
from __future__ import annotations
import logging
from typing import Callable, Iterable, Sequence

from .units import axis_slot_for, classify_unit

_LOG = logging.getLogger(__name__)


def _unit_of(channel) -> str:
    if channel is None:
        return ""
    if isinstance(channel, str):
        return channel
    if isinstance(channel, dict):
        return channel.get("unit") or channel.get("units") or ""
    return getattr(channel, "unit", "") or ""


def axis_count_for_group(channels: Iterable) -> int:
    """Number of distinct axis slots used by a group (unique count, not max)."""
    slots = {axis_slot_for(classify_unit(_unit_of(c))) for c in channels}
    return len(slots)


def global_max_axes(groups: Iterable[Iterable]) -> int:
    counts = [axis_count_for_group(g) for g in groups]
    return max([1] + counts)


def group_axis_info(channels: Sequence) -> dict:
    types = sorted({classify_unit(_unit_of(c)) for c in channels})
    slots = {axis_slot_for(t) for t in types}
    return {
        "required_axes": len(slots),
        "types": types,
        "type_count": len(types),
        "max_axis": max(slots) if slots else 0,
    }


def did_axis_count_change(old: int | None, new: int) -> bool:
    return old != new


class MaxAxesCell:
    """Single-writer, many-reader cell holding the published global axis count."""

    def __init__(self, initial: int = 1):
        self._value = max(1, int(initial))
        self._listeners: list[Callable[[int], None]] = []

    @property
    def value(self) -> int:
        return self._value

    def get(self) -> int:
        return self._value

    def set(self, value: int) -> bool:
        try:
            v = int(value)
        except (TypeError, ValueError):
            _LOG.warning("rejecting non-integer axis count %r", value)
            return False
        if v < 1:
            _LOG.warning("rejecting axis count %d (< 1)", v)
            return False
        if v == self._value:
            return True
        self._value = v
        for fn in list(self._listeners):
            try:
                fn(v)
            except Exception:
                _LOG.exception("max-axes listener failed")
        return True

    def reset(self) -> None:
        self.set(1)

    def subscribe(self, fn: Callable[[int], None]) -> Callable[[], None]:
        self._listeners.append(fn)

        def _unsubscribe():
            if fn in self._listeners:
                self._listeners.remove(fn)
        return _unsubscribe


def _group_key(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and value < 0:
        return None
    s = str(value).strip()
    if not s or s == "-1":
        return None
    return s


def analyze_groups_and_publish(groups_assignment: Sequence | None,
                               analog_channels: Sequence,
                               computed_channels: Sequence | None,
                               cell: MaxAxesCell) -> int:
    """
    Rebuild groups from the analog group assignment list, let computed channels
    join the group named by their ``group`` field, then publish the max axis count.
    Any failure publishes 1.
    """
    try:
        by_group: dict[str, list] = {}
        assignment = list(groups_assignment or [])
        for i, ch in enumerate(analog_channels):
            key = _group_key(assignment[i]) if i < len(assignment) else None
            if key is None:
                continue
            by_group.setdefault(key, []).append(_unit_of(ch))

        for comp in computed_channels or []:
            key = _group_key(comp.get("group") if isinstance(comp, dict) else getattr(comp, "group", None))
            if key is not None and key in by_group:
                by_group[key].append(_unit_of(comp))

        result = global_max_axes(by_group.values())
        _LOG.debug("axis plan: %d group(s) -> max %d axes", len(by_group), result)
    except Exception:
        _LOG.exception("axis planning failed; publishing 1")
        result = 1
    cell.set(result)
    return result
