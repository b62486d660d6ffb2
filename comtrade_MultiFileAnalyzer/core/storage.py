# comtrade_MultiFileAnalyzer/core/storage.py
from __future__ import annotations
import json
import logging
import time
from pathlib import Path
from typing import Callable, Protocol

from .errors import PersistenceFailure

_LOG = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get_item(self, key: str) -> str | None: ...
    def set_item(self, key: str, value: str) -> None: ...
    def remove_item(self, key: str) -> None: ...


class MemoryKeyValueStore:
    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileKeyValueStore:
    """All keys live in one JSON document on disk; every write rewrites it."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: dict[str, str] = {}
        if self.path.is_file():
            try:
                with self.path.open("r", encoding="utf-8") as f:
                    loaded = json.load(f)
            except (OSError, ValueError) as e:
                _LOG.warning("could not read key-value file %s: %s", self.path, e)
                loaded = {}
            if isinstance(loaded, dict):
                self._data = {str(k): str(v) for k, v in loaded.items()}

    def _flush(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False, indent=2)
            tmp.replace(self.path)
        except OSError as e:
            raise PersistenceFailure(f"could not write {self.path}: {e}", path=str(self.path)) from e

    def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = str(value)
        self._flush()

    def remove_item(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()


class Debouncer:
    """
    Run ``fn`` once, ``delay`` seconds after the last ``call()``.

    Nothing fires on its own: the owner calls ``poll()`` from its own loop and
    ``fn`` runs there once the deadline has passed.
    """

    def __init__(self, delay: float, fn: Callable[[], None], clock: Callable[[], float] = time.monotonic):
        self.delay = float(delay)
        self.fn = fn
        self._clock = clock
        self._deadline: float | None = None

    @property
    def pending(self) -> bool:
        return self._deadline is not None

    def call(self) -> None:
        self._deadline = self._clock() + self.delay

    def poll(self) -> bool:
        if self._deadline is None or self._clock() < self._deadline:
            return False
        self._deadline = None
        self.fn()
        return True

    def flush(self) -> None:
        if self._deadline is not None:
            self._deadline = None
            self.fn()

    def cancel(self) -> None:
        self._deadline = None
