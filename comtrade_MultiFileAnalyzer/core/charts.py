# comtrade_MultiFileAnalyzer/core/charts.py
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field

from .state import ObservableStore

_LOG = logging.getLogger(__name__)

GROUP_PREFIX = "G"
_GROUP_RE = re.compile(rf"^{GROUP_PREFIX}(\d+)$")
_COMPUTED_INSTANCE_RE = re.compile(r"C(\d+)")


@dataclass
class ChartRecord:
    user_group_id: str
    instance_id: str
    chart_type: str              # analog | digital | computed | ...
    auto_assigned: bool = False
    meta: dict = field(default_factory=dict)


def group_index(group_id) -> int | None:
    if not isinstance(group_id, str):
        return None
    m = _GROUP_RE.match(group_id.strip())
    return int(m.group(1)) if m else None


class ChartMetadataRegistry:
    """
    Chart records keyed by stable group id. Group ids recycle the smallest free
    ``G{k}``; instance ids count per chart type (``A{n}``, ``D{n}``, ``C{n}``).
    """

    def __init__(self):
        self._store = ObservableStore({
            "charts": [],
            "nextUserGroupId": 0,
            "nextAnalogId": 0,
            "nextDigitalId": 0,
            "nextComputedId": 0,
        }, batch=False)

    @property
    def store(self) -> ObservableStore:
        return self._store

    @property
    def charts(self) -> list[ChartRecord]:
        return list(self._store.get("charts"))

    def used_group_indices(self) -> set[int]:
        return {k for k in (group_index(c.user_group_id) for c in self.charts) if k is not None}

    def used_group_ids(self) -> list[str]:
        return [c.user_group_id for c in self.charts]

    def _next_free_index(self) -> int:
        used = self.used_group_indices()
        k = 0
        while k in used:
            k += 1
        return k

    def _assign_group(self, requested) -> tuple[str, bool]:
        if isinstance(requested, str) and requested.strip():
            gid = requested.strip()
            parsed = group_index(gid)
            if parsed is not None:
                self._store.set("nextUserGroupId",
                                max(self._store.get("nextUserGroupId"), parsed + 1, self._next_free_index()))
            return gid, False
        k = self._next_free_index()
        self._store.set("nextUserGroupId", max(self._store.get("nextUserGroupId"), k + 1))
        return f"{GROUP_PREFIX}{k}", True

    def _next_instance(self, chart_type: str) -> str:
        counter, prefix = {
            "analog": ("nextAnalogId", "A"),
            "digital": ("nextDigitalId", "D"),
            "computed": ("nextComputedId", "C"),
        }.get(chart_type, ("nextComputedId", "X"))
        n = self._store.get(counter)
        self._store.set(counter, n + 1)
        return f"{prefix}{n}"

    def add_chart(self, chart_type: str = "unknown", user_group_id: str | None = None, **meta) -> ChartRecord:
        gid, auto = self._assign_group(user_group_id)
        record = ChartRecord(
            user_group_id=gid,
            instance_id=self._next_instance(chart_type or "unknown"),
            chart_type=chart_type or "unknown",
            auto_assigned=auto,
            meta=dict(meta),
        )
        self._store.set("charts", self.charts + [record])
        self._store.set("nextUserGroupId", self._next_free_index())
        _LOG.debug("chart added: %s %s (%s)", record.user_group_id, record.instance_id, record.chart_type)
        return record

    def remove_chart(self, user_group_id: str) -> ChartRecord | None:
        charts = self.charts
        for i, c in enumerate(charts):
            if c.user_group_id == user_group_id:
                removed = charts.pop(i)
                self._store.set("charts", charts)
                self._store.set("nextUserGroupId", self._next_free_index())
                return removed
        _LOG.warning("attempted to remove missing chart %s", user_group_id)
        return None

    def get_by_group_id(self, user_group_id: str) -> ChartRecord | None:
        return next((c for c in self.charts if c.user_group_id == user_group_id), None)

    def get_by_instance(self, instance_id: str) -> ChartRecord | None:
        return next((c for c in self.charts if c.instance_id == instance_id), None)

    def get_by_type(self, chart_type: str) -> list[ChartRecord]:
        return [c for c in self.charts if c.chart_type == chart_type]

    def clear(self) -> None:
        self._store.update({
            "charts": [],
            "nextUserGroupId": 0,
            "nextAnalogId": 0,
            "nextDigitalId": 0,
            "nextComputedId": 0,
        })

    def reset_for_file_reload(self) -> list[ChartRecord]:
        """Keep computed charts only; analog/digital counters restart at 0."""
        kept = [ChartRecord(c.user_group_id, c.instance_id, c.chart_type, c.auto_assigned, dict(c.meta))
                for c in self.charts if c.chart_type == "computed"]
        next_computed = 0
        for c in kept:
            m = _COMPUTED_INSTANCE_RE.search(c.instance_id or "")
            if m:
                next_computed = max(next_computed, int(m.group(1)) + 1)
        self._store.set("charts", kept)
        self._store.update({
            "nextUserGroupId": self._next_free_index(),
            "nextAnalogId": 0,
            "nextDigitalId": 0,
            "nextComputedId": next_computed,
        })
        _LOG.info("chart registry reset for reload: %d computed chart(s) kept", len(kept))
        return kept

    @property
    def counters(self) -> dict[str, int]:
        return {k: self._store.get(k) for k in ("nextUserGroupId", "nextAnalogId", "nextDigitalId", "nextComputedId")}
