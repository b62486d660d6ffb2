# comtrade_MultiFileAnalyzer/core/events.py
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import InvalidInput
from .sidebars import panel_width_key  # noqa: F401  (persisted key helper lives with the panels)
from .state import HISTORY_KEY  # noqa: F401

_LOG = logging.getLogger(__name__)

COMPUTED_CHANNEL_SAVED = "computedChannelSaved"

ENVELOPE_TYPES: frozenset[str] = frozenset({
    "callback_update", "callback_color", "callback_channelName", "callback_group",
    "callback_scale", "callback_start", "callback_duration", "callback_invert",
    "callback_addChannel", "callback_delete", "ack_addChannel",
    "computedChannelEvaluated", "COMPUTED_CHANNEL_STATE_UPDATED",
})


class EventBus:
    def __init__(self):
        self._handlers: dict[str, list[Callable[[Any], None]]] = {}

    def on(self, event: str, handler: Callable[[Any], None]) -> Callable[[], None]:
        self._handlers.setdefault(event, []).append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Callable[[Any], None]) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, payload: Any = None) -> int:
        delivered = 0
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(payload)
                delivered += 1
            except Exception:
                _LOG.exception("handler for %s failed", event)
        return delivered


def computed_channel_saved_payload(meta, values) -> dict:
    return {
        "channelId": meta.id,
        "channelName": meta.name,
        "equation": meta.equation,
        "samples": int(meta.sample_count),
        "unit": meta.unit,
        "stats": meta.stats.to_dict(),
        "fullData": values,
    }


@dataclass(frozen=True)
class Envelope:
    source: str
    type: str
    payload: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict) -> "Envelope":
        if not isinstance(raw, dict):
            raise InvalidInput("envelope must be a mapping")
        etype = raw.get("type")
        if etype not in ENVELOPE_TYPES:
            raise InvalidInput(f"unknown envelope type {etype!r}", type=etype)
        payload = raw.get("payload")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise InvalidInput(f"{etype}: payload must be a mapping", type=etype)
        return cls(source=str(raw.get("source") or ""), type=etype, payload=payload)

    def to_dict(self) -> dict:
        return {"source": self.source, "type": self.type, "payload": dict(self.payload)}
