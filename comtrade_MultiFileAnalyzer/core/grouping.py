from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Callable, Literal, Sequence, Union
import numpy as np

from .axes import axis_count_for_group
from .deltas import ChartSeries
from .model import ChannelDescriptor, ChartGroup, Recording
from .units import axis_slot_for_unit, classify_unit

_LOG = logging.getLogger(__name__)

AutoGrouper = Callable[[Sequence[ChannelDescriptor]], list[dict]]

_FAMILY_ORDER = ("voltage", "current", "power", "frequency", "unknown")
_FAMILY_NAMES = {
    "voltage": "Voltages",
    "current": "Currents",
    "power": "Power",
    "frequency": "Frequency",
    "unknown": "Other",
}
_DEFAULT_COLORS = ("#1f77b4", "#ff7f0e", "#2ca02c", "#d62728", "#9467bd",
                   "#8c564b", "#e377c2", "#7f7f7f", "#bcbd22", "#17becf")


# ---------- channel resolution ----------

@dataclass(frozen=True)
class ByID:
    id: str


@dataclass(frozen=True)
class ByAlias:
    kind: Literal["analog", "digital"]
    index: int


@dataclass(frozen=True)
class ByIndex:
    index: int


Resolver = Union[ByID, ByAlias, ByIndex]


def resolve(resolver: Resolver, recording: Recording, kind: Literal["analog", "digital"] = "analog") -> int | None:
    channels = recording.channels(kind)
    if isinstance(resolver, ByID):
        for i, ch in enumerate(channels):
            if ch.channel_id == resolver.id:
                return i
        return None
    if isinstance(resolver, ByAlias):
        if resolver.kind != kind:
            return None
        return resolver.index if 0 <= resolver.index < len(channels) else None
    if isinstance(resolver, ByIndex):
        return resolver.index if 0 <= resolver.index < len(channels) else None
    return None


def parse_reference(token: str) -> Resolver:
    """'a3' / 'd0' are positional aliases, anything else is a channel id."""
    if len(token) > 1 and token[0] in ("a", "d") and token[1:].isdigit():
        return ByAlias("analog" if token[0] == "a" else "digital", int(token[1:]))
    return ByID(token)


# ---------- group building ----------

def _assigned_group(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and value < 0:
        return None
    s = str(value).strip()
    return s if s and s != "-1" else None


def auto_group_by_unit(channels: Sequence[ChannelDescriptor]) -> list[dict]:
    """Default auto-grouper: one group per unit family, in a fixed family order."""
    buckets: dict[str, list[int]] = {}
    for i, ch in enumerate(channels):
        buckets.setdefault(classify_unit(ch.unit), []).append(i)
    out = []
    for family in _FAMILY_ORDER:
        indices = buckets.get(family)
        if not indices:
            continue
        colors = [channels[i].color or _DEFAULT_COLORS[n % len(_DEFAULT_COLORS)]
                  for n, i in enumerate(indices)]
        out.append({"name": _FAMILY_NAMES[family], "indices": indices, "colors": colors})
    return out


def build_groups_with_user_assignments(assignments: Sequence | None,
                                       channels: Sequence[ChannelDescriptor],
                                       auto_grouper: AutoGrouper | None = None) -> list[dict]:
    """
    Channels with an assigned group land in that group; the rest are handed to
    the auto-grouper. Members are ``(channel_id, index_fallback)`` pairs.
    """
    assignments = list(assignments or [])
    explicit: dict[str, list[tuple[str, int]]] = {}
    unassigned: list[int] = []
    for i, ch in enumerate(channels):
        key = _assigned_group(assignments[i]) if i < len(assignments) else None
        if key is None:
            unassigned.append(i)
        else:
            explicit.setdefault(key, []).append((ch.channel_id, i))

    groups = [{"group_id": gid, "name": gid, "members": members, "colors": None}
              for gid, members in explicit.items()]
    if unassigned:
        groups.extend(build_groups_with_auto_grouping(channels, auto_grouper, subset=unassigned))
    return groups


def build_groups_with_auto_grouping(channels: Sequence[ChannelDescriptor],
                                    auto_grouper: AutoGrouper | None = None,
                                    subset: Sequence[int] | None = None) -> list[dict]:
    grouper = auto_grouper or auto_group_by_unit
    idx_map = list(subset) if subset is not None else list(range(len(channels)))
    local = [channels[i] for i in idx_map]
    groups = []
    for g in grouper(local) or []:
        members = []
        for li in g.get("indices") or []:
            if 0 <= li < len(idx_map):
                ri = idx_map[li]
                members.append((channels[ri].channel_id, ri))
        groups.append({"group_id": None, "name": g.get("name") or "Group",
                       "members": members, "colors": g.get("colors")})
    return groups


def resolve_group_indices(members: Sequence[tuple[str | None, int | None]], channel_ids: Sequence[str]) -> list[int]:
    """Prefer the id; the stored index is used when the id is absent or no longer present."""
    position = {cid: i for i, cid in enumerate(channel_ids)}
    out: list[int] = []
    for cid, fallback in members:
        if cid and cid in position:
            out.append(position[cid])
        elif fallback is not None:
            out.append(int(fallback))
    return out


def filter_valid_indices(indices: Sequence[int], count: int) -> list[int]:
    seen: set[int] = set()
    out = []
    for i in indices:
        if 0 <= i < count and i not in seen:
            seen.add(i)
            out.append(i)
    return out


def filter_groups_with_channels(groups: Sequence[ChartGroup]) -> list[ChartGroup]:
    return [g for g in groups if g.channel_indices]


def _free_group_ids(taken: set[str]):
    k = 0
    while True:
        gid = f"G{k}"
        if gid not in taken:
            taken.add(gid)
            yield gid
        k += 1


def build_chart_groups(recording: Recording,
                       assignments: Sequence | None = None,
                       auto_grouper: AutoGrouper | None = None,
                       claimed: Sequence[str] = ()) -> list[ChartGroup]:
    channels = recording.analog_channels
    if assignments is None:
        assignments = [ch.group_id for ch in channels]
    raw = build_groups_with_user_assignments(assignments, channels, auto_grouper)

    taken = {g["group_id"] for g in raw if g["group_id"]} | set(claimed)
    fresh = _free_group_ids(taken)
    ids = recording.channel_ids("analog")

    groups = []
    for g in raw:
        indices = filter_valid_indices(resolve_group_indices(g["members"], ids), len(channels))
        if not indices:
            _LOG.debug("dropping empty group %s", g["name"])
            continue
        gid = g["group_id"] or next(fresh)
        groups.append(ChartGroup(
            group_id=gid,
            channel_indices=indices,
            channel_ids=[ids[i] for i in indices],
            axis_count=axis_count_for_group([channels[i] for i in indices]),
            name=g["name"],
            colors=g["colors"],
        ))
    return filter_groups_with_channels(groups)


def group_assignment_list(recording: Recording, groups: Sequence[ChartGroup]) -> list[str]:
    """Per analog channel, the id of the chart group it was placed in (``-1`` if none)."""
    out: list = [-1] * len(recording.analog_channels)
    for g in groups:
        for i in g.channel_indices:
            out[i] = g.group_id
    return out


def build_chart_data(recording: Recording, group: ChartGroup, include_computed: bool = True) -> ChartSeries:
    """Series arrays plus the option record a renderer needs for one group."""
    labels, colors, units, scales, slots = [], [], [], [1.0], []
    series: list[np.ndarray] = []
    for n, i in enumerate(group.channel_indices):
        ch = recording.analog_channels[i]
        series.append(np.asarray(recording.analog_data[i], dtype=float))
        labels.append(ch.label)
        color = (group.colors[n] if group.colors and n < len(group.colors) else None) or ch.color
        colors.append(color or _DEFAULT_COLORS[n % len(_DEFAULT_COLORS)])
        units.append(ch.unit or "")
        scales.append(float(ch.scale or 1.0))
        slots.append(axis_slot_for_unit(ch.unit))
    if include_computed:
        n_time = recording.sample_count
        for comp in recording.computed_channels:
            if comp.group != group.group_id:
                continue
            vals = np.full(n_time, np.nan)
            src = recording.computed_values.get(comp.id)
            if src is not None:
                vals[: min(n_time, len(src))] = src[:n_time]
            series.append(vals)
            labels.append(comp.name)
            colors.append(comp.color)
            units.append(comp.unit or "")
            scales.append(1.0)
            slots.append(axis_slot_for_unit(comp.unit))
    return ChartSeries(
        time=np.asarray(recording.time, dtype=float),
        series=series,
        axes_scales=scales,
        units=units,
        colors=colors,
        labels=labels,
        axis_slots=slots,
        group_id=group.group_id,
    )
