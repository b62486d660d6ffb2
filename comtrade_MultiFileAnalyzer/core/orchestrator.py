# comtrade_MultiFileAnalyzer/core/orchestrator.py
"""
Owns the loaded Recording and wires the pipeline around it:

    file sets -> merge -> channel state -> chart groups -> axis plan
    expression -> prepare -> worker -> result processor -> computed channel

Public methods never raise; failures come back as ``ErrorDescriptor`` and are
also kept in ``errors``.
"""
from __future__ import annotations
import logging
from typing import Sequence
import numpy as np

from . import deltas as deltas_mod
from . import merge as merge_mod
from . import timebase
from .axes import MaxAxesCell, analyze_groups_and_publish
from .charts import ChartMetadataRegistry
from .deltas import ChartSeries, CursorSet, collect_chart_deltas, format_table_data
from .errors import (ErrorDescriptor, ErrorKind, InvalidInput, ResourceMissing,
                     ValidationFailure, WorkerFailure, describe)
from .events import COMPUTED_CHANNEL_SAVED, Envelope, EventBus, computed_channel_saved_payload
from .grouping import AutoGrouper, build_chart_data, build_chart_groups, group_assignment_list
from .model import ChartGroup, ParsedFileSet, Recording
from .sidebars import PanelWidthPreferences, SidebarCoordinator
from .state import FrameScheduler, ObservableStore
from .storage import KeyValueStore, MemoryKeyValueStore
from ..computed import results as results_mod
from ..computed.expression import process_equation
from ..computed.prepare import build_worker_task, extract_used_channels, validate_recording
from ..computed.worker import CompleteMessage, ErrorMessage, ProgressMessage, WorkerHost

_LOG = logging.getLogger(__name__)

_ENVELOPE_FIELDS = {
    "callback_color": "lineColors",
    "callback_channelName": "yLabels",
    "callback_group": "groups",
    "callback_scale": "scales",
    "callback_start": "starts",
    "callback_duration": "durations",
    "callback_invert": "inverts",
}
_UPDATE_FIELD_ALIASES = {
    "group": "groups", "color": "lineColors", "name": "yLabels", "label": "yLabels",
    "unit": "yUnits", "scale": "scales", "start": "starts", "duration": "durations",
    "invert": "inverts",
}


def configure_from_config(cfg: dict) -> None:
    merge_mod.configure_from_config(cfg)
    deltas_mod.configure_from_config(cfg)
    results_mod.configure_from_config(cfg)
    timebase.configure_from_config(cfg)


def _section(channels) -> dict:
    return {
        "channelIDs": [c.channel_id for c in channels],
        "yLabels": [c.label for c in channels],
        "lineColors": [c.color for c in channels],
        "yUnits": [c.unit or "" for c in channels],
        "groups": [c.group_id if c.group_id else -1 for c in channels],
        "axesScales": [1.0] + [float(c.scale or 1.0) for c in channels],
        "scales": [float(c.scale or 1.0) for c in channels],
        "starts": [float(c.start or 0.0) for c in channels],
        "durations": [c.duration for c in channels],
        "inverts": [bool(c.invert) for c in channels],
        "xLabel": "time",
        "xUnit": "s",
    }


def empty_channel_state() -> dict:
    computed = _section([])
    computed["equations"] = []
    return {"analog": _section([]), "digital": _section([]), "computed": computed}


def _computed_section(recording: Recording) -> dict:
    comps = recording.computed_channels
    return {
        "channelIDs": [c.id for c in comps],
        "yLabels": [c.name for c in comps],
        "lineColors": [c.color for c in comps],
        "yUnits": [c.unit for c in comps],
        "groups": [c.group for c in comps],
        "axesScales": [1.0] + [1.0 for _ in comps],
        "scales": [1.0 for _ in comps],
        "starts": [0.0 for _ in comps],
        "durations": [None for _ in comps],
        "inverts": [False for _ in comps],
        "equations": [c.equation for c in comps],
        "xLabel": "time",
        "xUnit": "s",
    }


class Orchestrator:
    def __init__(self, config: dict | None = None, kv_store: KeyValueStore | None = None,
                 scheduler: FrameScheduler | None = None, auto_grouper: AutoGrouper | None = None,
                 max_workers: int = 2):
        self.config = config or {}
        configure_from_config(self.config)
        self.kv_store = kv_store if kv_store is not None else MemoryKeyValueStore()
        self.scheduler = scheduler or FrameScheduler()
        self.auto_grouper = auto_grouper

        self.recording: Recording | None = None
        self.merge_result: merge_mod.MergeResult | None = None
        self.groups: list[ChartGroup] = []
        self.errors: list[ErrorDescriptor] = []

        self.channel_state = ObservableStore(empty_channel_state(), scheduler=self.scheduler,
                                             history_store=self.kv_store)
        self.charts = ChartMetadataRegistry()
        self.max_axes = MaxAxesCell()
        self.sidebars = SidebarCoordinator()
        self.panel_widths = PanelWidthPreferences(self.kv_store)
        self.events = EventBus()
        self.workers = WorkerHost(max_workers=max_workers)

        self._requests: dict[str, dict] = {}
        self._start_order: list[str] = []
        self._finished: dict[str, object] = {}
        self.handled: list[str] = []
        self.progress: dict[str, float] = {}
        self._optimistic: dict[str, dict] = {}

        self.channel_state.subscribe(self._on_grouping_input, {"path": "analog.groups", "descendants": True})
        self.channel_state.subscribe(self._on_grouping_input, {"path": "analog.yUnits", "descendants": True})
        self.channel_state.subscribe(self._on_grouping_input, {"path": "computed.groups", "descendants": True})

    # ---------- error boundary ----------

    def _fail(self, exc: BaseException, **context) -> ErrorDescriptor:
        desc = describe(exc, **context)
        if desc.kind in (ErrorKind.RESOURCE_MISSING, ErrorKind.PERSISTENCE_FAILURE):
            _LOG.warning("%s: %s %s", desc.kind.value, desc.message, context)
        elif desc.kind == ErrorKind.UNEXPECTED:
            _LOG.error("unexpected failure in %s", context.get("op", "?"), exc_info=exc)
        else:
            _LOG.error("%s: %s %s", desc.kind.value, desc.message, context)
        self.errors.append(desc)
        return desc

    # ---------- load ----------

    def load_file_sets(self, file_sets: Sequence[ParsedFileSet]):
        """Merge, install the recording, rebuild state, groups and the axis plan."""
        try:
            result = merge_mod.merge_file_sets(list(file_sets))
            result.recording.validate()
        except Exception as e:
            return self._fail(e, op="load_file_sets", files=len(file_sets or []))

        previous = self.recording
        self.recording = result.recording
        self.merge_result = result
        try:
            self.charts.reset_for_file_reload()
            self.groups = build_chart_groups(self.recording, auto_grouper=self.auto_grouper,
                                             claimed=self.charts.used_group_ids())
            self._sync_chart_registry()
            self._install_channel_state()
            self._plan_axes()
        except Exception as e:
            return self._fail(e, op="load_file_sets")
        if previous is not None and previous.computed_channels:
            self._carry_computed(previous)
        _LOG.info("recording loaded: %d samples, %d analog, %d digital, %d group(s), max axes %d",
                  self.recording.sample_count, len(self.recording.analog_channels),
                  len(self.recording.digital_channels), len(self.groups), self.max_axes.value)
        return result

    def _install_channel_state(self) -> None:
        rec = self.recording
        analog = _section(rec.analog_channels)
        analog["groups"] = group_assignment_list(rec, self.groups)
        state = {
            "analog": analog,
            "digital": _section(rec.digital_channels),
            "computed": _computed_section(rec),
        }
        # a fresh load is not an undoable edit
        self.channel_state.without_history(lambda: self.channel_state.update(state))
        self.channel_state.flush()

    def _carry_computed(self, previous: Recording) -> None:
        """Re-evaluate earlier computed channels whose inputs exist in the new recording."""
        known = set(self.recording.channel_ids("analog")) | set(self.recording.channel_ids("digital"))
        known |= {f"a{i}" for i in range(len(self.recording.analog_channels))}
        known |= {f"d{i}" for i in range(len(self.recording.digital_channels))}
        for comp in previous.computed_channels:
            missing = extract_used_channels(comp.math_expression) - known
            if missing:
                _LOG.warning("dropping computed channel %s: %s not in the new recording",
                             comp.name, ", ".join(sorted(missing)))
                for rec in self.charts.get_by_type("computed"):
                    if rec.meta.get("channel_id") == comp.id:
                        self.charts.remove_chart(rec.user_group_id)
                continue
            self.submit_computed(comp.equation, unit=comp.unit, group=comp.group, name=comp.name)

    def _sync_chart_registry(self) -> None:
        current = {g.group_id for g in self.groups}
        for rec in self.charts.get_by_type("analog"):
            if rec.user_group_id not in current:
                self.charts.remove_chart(rec.user_group_id)
        registered = set(self.charts.used_group_ids())
        for g in self.groups:
            if g.group_id not in registered:
                self.charts.add_chart("analog", user_group_id=g.group_id, name=g.name,
                                      channel_ids=list(g.channel_ids))
        if self.recording is not None and self.recording.digital_channels and not self.charts.get_by_type("digital"):
            self.charts.add_chart("digital", user_group_id="digital", name="Digital",
                                  channel_ids=self.recording.channel_ids("digital"))

    # ---------- axis planning ----------

    def _plan_axes(self) -> int:
        rec = self.recording
        computed = [{"group": g, "unit": u} for g, u in zip(self.channel_state.get("computed.groups") or [],
                                                           self.channel_state.get("computed.yUnits") or [])]
        channels = []
        units = self.channel_state.get("analog.yUnits") or []
        for i, ch in enumerate(rec.analog_channels if rec else []):
            channels.append({"unit": units[i] if i < len(units) else ch.unit})
        return analyze_groups_and_publish(self.channel_state.get("analog.groups"), channels, computed, self.max_axes)

    def _on_grouping_input(self, change) -> None:
        if self.recording is None:
            return
        try:
            assignments = self.channel_state.get("analog.groups") or []
            self.groups = build_chart_groups(self.recording, assignments=assignments,
                                             auto_grouper=self.auto_grouper,
                                             claimed=[c.user_group_id for c in self.charts.get_by_type("computed")])
            self._sync_chart_registry()
        except Exception as e:
            self._fail(e, op="regroup", path=change.dotted)
        self._plan_axes()

    # ---------- computed channels ----------

    def submit_computed(self, expression: str, unit: str | None = None, group: str | None = None,
                        name: str | None = None):
        """Validate and dispatch an expression; returns the request id or an ErrorDescriptor."""
        try:
            validate_recording(self.recording)
            parsed = process_equation(expression)
            if not parsed.valid:
                raise ValidationFailure(parsed.error or "invalid expression", expression=expression)
            task = build_worker_task(parsed.internal, self.recording)
        except Exception as e:
            return self._fail(e, op="submit_computed", expression=expression)

        ctx = {
            "equation": expression,
            "internal": parsed.internal,
            "name": name or parsed.name,
            "unit": unit,
            "group": group,
        }
        holder: dict = {}

        def on_progress(msg: ProgressMessage):
            self.progress[holder["rid"]] = msg.percent

        def on_complete(msg: CompleteMessage):
            self._finish(holder["rid"], msg)

        def on_error(msg: ErrorMessage):
            self._finish(holder["rid"], msg)

        try:
            rid = self.workers.start(task, on_progress=on_progress, on_complete=on_complete, on_error=on_error)
        except Exception as e:
            return self._fail(e, op="submit_computed", expression=expression)
        holder["rid"] = rid
        self._requests[rid] = ctx
        self._start_order.append(rid)
        self.progress[rid] = 0.0
        return rid

    def _finish(self, rid: str, msg) -> None:
        self._finished[rid] = msg
        # apply in start order so appends keep a monotone handled sequence
        while self._start_order and self._start_order[0] in self._finished:
            head = self._start_order.pop(0)
            self._apply(head, self._finished.pop(head))
            self.progress.pop(head, None)
            self.handled.append(head)

    def _apply(self, rid: str, msg) -> None:
        ctx = self._requests.pop(rid, {})
        if isinstance(msg, ErrorMessage):
            self._fail(WorkerFailure(msg.message), op="evaluate", request=rid, expression=ctx.get("equation"))
            return
        try:
            if self.recording is None:
                raise ResourceMissing("recording was unloaded before the result arrived")
            buffer = msg.results_buffer.transfer()
            chart_groups = [g.group_id for g in self.groups] + self.charts.used_group_ids()
            prior = next((c for c in self.recording.computed_channels if c.id == ctx.get("name")), None)
            meta, values = results_mod.build_channel_data(
                ctx.get("equation", ""), ctx.get("internal", ""), buffer, self.recording,
                name=ctx.get("name"), unit=ctx.get("unit"),
                group=ctx.get("group") or (prior.group if prior else None),
                chart_groups=chart_groups,
            )
            if any(c.id == meta.id for c in self.recording.computed_channels):
                _LOG.info("replacing computed channel %s", meta.id)
                self._drop_computed(meta.id)
                meta.index = len(self.recording.computed_channels)
            self.recording.append_computed(meta, values)
            if meta.group not in {g.group_id for g in self.groups} and self.charts.get_by_group_id(meta.group) is None:
                self.charts.add_chart("computed", user_group_id=meta.group, channel_id=meta.id)
            self.channel_state.set("computed", _computed_section(self.recording))
        except Exception as e:
            self._fail(e, op="append_computed", request=rid)
            return
        self.events.emit(COMPUTED_CHANNEL_SAVED, computed_channel_saved_payload(meta, values))
        _LOG.info("computed channel %s (%s, %d samples) added to %s", meta.name, meta.made_from,
                  meta.sample_count, meta.group)

    def _drop_computed(self, channel_id: str) -> bool:
        removed = self.recording.remove_computed(channel_id)
        for rec in self.charts.get_by_type("computed"):
            if rec.meta.get("channel_id") == channel_id:
                self.charts.remove_chart(rec.user_group_id)
        return removed

    def delete_computed(self, channel_id: str):
        try:
            validate_recording(self.recording)
            if not self._drop_computed(channel_id):
                raise InvalidInput(f"no computed channel {channel_id!r}", id=channel_id)
            self.channel_state.set("computed", _computed_section(self.recording))
            self._plan_axes()
            return True
        except Exception as e:
            return self._fail(e, op="delete_computed", id=channel_id)

    def poll(self, timeout: float = 0.0) -> int:
        """Deliver worker messages and drain one frame of store notifications."""
        handled = self.workers.pump(timeout)
        self.scheduler.tick()
        return handled

    def wait(self, request_id: str | None = None, timeout: float | None = None) -> list[str]:
        targets = [request_id] if request_id else list(self._start_order)
        for rid in targets:
            self.workers.wait(rid, timeout)
        self.scheduler.tick()
        return list(self.handled)

    def terminate(self, request_id: str) -> bool:
        return self.workers.terminate(request_id)

    # ---------- cross-window messages ----------

    def _resolve_channel(self, payload: dict) -> tuple[str, int] | None:
        cid = payload.get("channelID") or (payload.get("row") or {}).get("channelID")
        if cid:
            for kind in ("analog", "digital", "computed"):
                ids = self.channel_state.get(f"{kind}.channelIDs") or []
                if cid in ids:
                    return kind, ids.index(cid)
            return None
        row = payload.get("row") or {}
        kind = str(row.get("type") or "").lower()
        idx = row.get("originalIndex", row.get("idx"))
        if kind in ("analog", "digital", "computed") and idx is not None:
            try:
                i = int(idx)
            except (TypeError, ValueError):
                return None
            count = len(self.channel_state.get(f"{kind}.channelIDs") or [])
            if 0 <= i < count:
                return kind, i
        return None

    def _update_field(self, payload: dict, field: str):
        target = self._resolve_channel(payload)
        if target is None:
            raise InvalidInput("channel not found", payload=payload)
        kind, idx = target
        value = payload.get("newValue")
        if value is None:
            value = payload.get("color", payload.get("newName", payload.get("group")))
        if field == "inverts":
            value = bool(value)
        elif field in ("scales", "starts", "durations") and value is not None:
            value = float(value)
        self.channel_state.set((kind, field, idx), value)
        if field == "scales":
            self.channel_state.set((kind, "axesScales", idx + 1), value)
        if kind == "computed" and field in ("groups", "yUnits", "yLabels", "lineColors"):
            comp = self.recording.computed_channels[idx]
            attr = {"groups": "group", "yUnits": "unit", "yLabels": "name", "lineColors": "color"}[field]
            setattr(comp, attr, value)
        return {"kind": kind, "index": idx, "field": field, "value": value}

    def handle_envelope(self, envelope):
        try:
            env = envelope if isinstance(envelope, Envelope) else Envelope.from_dict(envelope)
            payload = env.payload
            if env.type in _ENVELOPE_FIELDS:
                return self._update_field(payload, _ENVELOPE_FIELDS[env.type])
            if env.type == "callback_update":
                field = _UPDATE_FIELD_ALIASES.get(str(payload.get("field") or "").lower())
                if field is None:
                    raise InvalidInput(f"unsupported update field {payload.get('field')!r}")
                return self._update_field(payload, field)
            if env.type == "callback_addChannel":
                temp_id = payload.get("tempClientId")
                rid = self.submit_computed(payload.get("equation") or payload.get("expression") or "",
                                           unit=payload.get("unit"), group=payload.get("group"))
                if isinstance(rid, ErrorDescriptor):
                    return rid
                if temp_id:
                    self._optimistic[str(temp_id)] = {"request": rid}
                return {"request": rid, "tempClientId": temp_id}
            if env.type == "ack_addChannel":
                temp_id = str(payload.get("tempClientId") or "")
                row = self._optimistic.pop(temp_id, None)
                if row is None:
                    raise InvalidInput(f"no optimistic row {temp_id!r}", tempClientId=temp_id)
                row.update(channelID=payload.get("channelID"), assignedIndex=payload.get("assignedIndex"))
                return row
            if env.type == "callback_delete":
                target = self._resolve_channel(payload)
                if target is None or target[0] != "computed":
                    raise InvalidInput("only computed channels can be deleted", payload=payload)
                cid = self.channel_state.get(("computed", "channelIDs", target[1]))
                result = self.delete_computed(cid)
                return result if isinstance(result, ErrorDescriptor) else {"deleted": cid}
            # computedChannelEvaluated / COMPUTED_CHANNEL_STATE_UPDATED: resync from the recording
            validate_recording(self.recording)
            self.channel_state.set("computed", _computed_section(self.recording))
            return {"synced": len(self.recording.computed_channels)}
        except Exception as e:
            return self._fail(e, op="handle_envelope",
                              type=envelope.get("type") if isinstance(envelope, dict) else getattr(envelope, "type", None))

    # ---------- renderer-facing data ----------

    def chart_series(self, group: ChartGroup) -> ChartSeries:
        """Series for one group with the user's edits (labels, colors, scales, inverts) applied."""
        cs = build_chart_data(self.recording, group)
        analog = self.channel_state.get("analog") or {}
        for n, i in enumerate(group.channel_indices):
            if i < len(analog.get("yLabels", [])) and analog["yLabels"][i]:
                cs.labels[n] = analog["yLabels"][i]
            if i < len(analog.get("lineColors", [])) and analog["lineColors"][i]:
                cs.colors[n] = analog["lineColors"][i]
            if i < len(analog.get("yUnits", [])):
                cs.units[n] = analog["yUnits"][i] or ""
            if i < len(analog.get("scales", [])) and analog["scales"][i]:
                cs.axes_scales[n + 1] = float(analog["scales"][i])
            if i < len(analog.get("inverts", [])) and analog["inverts"][i]:
                cs.series[n] = -np.asarray(cs.series[n])
        return cs

    def digital_series(self) -> ChartSeries | None:
        rec = self.recording
        if rec is None or not rec.digital_channels:
            return None
        return ChartSeries(
            time=np.asarray(rec.time, dtype=float),
            series=[np.asarray(r, dtype=float) for r in rec.digital_data],
            axes_scales=[1.0] * (len(rec.digital_channels) + 1),
            units=["" for _ in rec.digital_channels],
            colors=[c.color or "#6b7280" for c in rec.digital_channels],
            labels=[c.label for c in rec.digital_channels],
            group_id="digital",
        )

    def computed_only_series(self) -> list[ChartSeries]:
        """Charts for computed channels whose group has no analog members."""
        if self.recording is None:
            return []
        known = {g.group_id for g in self.groups}
        gids = dict.fromkeys(c.group for c in self.recording.computed_channels if c.group not in known)
        return [build_chart_data(self.recording, ChartGroup(gid, [], [], 1, gid)) for gid in gids]

    def cursor_deltas(self, cursors, time_unit: str | None = None):
        """Delta sections for every chart group; each section notes its group id."""
        try:
            validate_recording(self.recording)
            xs = cursors.as_list() if isinstance(cursors, CursorSet) else list(cursors or [])
            sections = []
            for g in self.groups:
                for s in collect_chart_deltas(xs, self.chart_series(g), time_unit):
                    s["group_id"] = g.group_id
                    sections.append(s)
            for cs in self.computed_only_series():
                for s in collect_chart_deltas(xs, cs, time_unit):
                    s["group_id"] = cs.group_id
                    sections.append(s)
            return sections
        except Exception as e:
            return self._fail(e, op="cursor_deltas")

    def delta_table(self, cursors, time_unit: str | None = None):
        xs = cursors.as_list() if isinstance(cursors, CursorSet) else list(cursors or [])
        sections = self.cursor_deltas(xs, time_unit)
        if isinstance(sections, ErrorDescriptor):
            return sections
        times = []
        if self.recording is not None:
            t = self.recording.time
            times = [float(t[deltas_mod.nearest_index(t, x)]) for x in xs if deltas_mod.nearest_index(t, x) >= 0]
        return format_table_data(sections, len(xs), times)

    def close(self) -> None:
        self.workers.shutdown(wait=False)
        self.channel_state.close()
