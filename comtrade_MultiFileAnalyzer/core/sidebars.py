# comtrade_MultiFileAnalyzer/core/sidebars.py
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Callable

from .storage import KeyValueStore

_LOG = logging.getLogger(__name__)

MIN_PANEL_WIDTH = 280
MAX_PANEL_WIDTH = 800


@dataclass
class _Panel:
    show: Callable[[], None]
    hide: Callable[[], None]
    is_open: Callable[[], bool]
    closed_by_default: bool = True


class SidebarCoordinator:
    """At most one overlay panel open at a time."""

    def __init__(self):
        self._panels: dict[str, _Panel] = {}
        self.active: str | None = None

    def register(self, panel_id: str, show: Callable[[], None], hide: Callable[[], None],
                 is_open: Callable[[], bool], closed_by_default: bool = True) -> None:
        if not (callable(show) and callable(hide) and callable(is_open)):
            raise TypeError(f"panel {panel_id!r} needs show, hide and is_open callables")
        self._panels[panel_id] = _Panel(show, hide, is_open, closed_by_default)

    def unregister(self, panel_id: str) -> bool:
        if self._panels.pop(panel_id, None) is None:
            return False
        if self.active == panel_id:
            self.active = None
        return True

    def registered(self) -> list[str]:
        return list(self._panels)

    def show(self, panel_id: str) -> bool:
        target = self._panels.get(panel_id)
        if target is None:
            _LOG.warning("show: unknown panel %s", panel_id)
            return False
        for pid, panel in self._panels.items():
            if pid != panel_id and panel.is_open():
                panel.hide()
        target.show()
        self.active = panel_id
        return True

    def hide(self, panel_id: str) -> bool:
        panel = self._panels.get(panel_id)
        if panel is None:
            _LOG.warning("hide: unknown panel %s", panel_id)
            return False
        panel.hide()
        if self.active == panel_id:
            self.active = None
        return True

    def hide_all(self) -> None:
        for panel in self._panels.values():
            if panel.is_open():
                panel.hide()
        self.active = None

    def toggle(self, panel_id: str) -> bool:
        """Returns True when the panel ends up open."""
        if self.is_open(panel_id):
            self.hide(panel_id)
            return False
        return self.show(panel_id)

    def is_open(self, panel_id: str) -> bool:
        panel = self._panels.get(panel_id)
        return bool(panel and panel.is_open())

    def initialize_defaults(self) -> None:
        for pid, panel in self._panels.items():
            if panel.closed_by_default and panel.is_open():
                panel.hide()
            if panel.closed_by_default and self.active == pid:
                self.active = None


def panel_width_key(panel_id: str) -> str:
    return f"{panel_id}-width"


class PanelWidthPreferences:
    def __init__(self, store: KeyValueStore):
        self.store = store

    @staticmethod
    def clamp(width: float) -> int:
        return int(max(MIN_PANEL_WIDTH, min(MAX_PANEL_WIDTH, round(width))))

    def load(self, panel_id: str, default: int | None = None) -> int | None:
        raw = self.store.get_item(panel_width_key(panel_id))
        if raw is None:
            return default
        try:
            return self.clamp(float(raw))
        except (TypeError, ValueError):
            _LOG.warning("ignoring unreadable width %r for %s", raw, panel_id)
            return default

    def save(self, panel_id: str, width: float) -> bool:
        try:
            self.store.set_item(panel_width_key(panel_id), str(int(round(width))))
            return True
        except Exception as e:
            _LOG.warning("could not persist width for %s: %s", panel_id, e)
            return False
