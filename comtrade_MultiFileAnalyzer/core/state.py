# comtrade_MultiFileAnalyzer/core/state.py
"""
Path-scoped observable state container.

Writes go through ``set(path, value)`` (or item assignment on the views the
store hands out), run through the middleware chain, land in the plain nested
dict/list state and are queued for notification. Queued changes are drained
once per frame tick; writes to the same path inside one cycle collapse into a
single notification.
"""
from __future__ import annotations
import copy
import itertools
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

import numpy as np

from .errors import PersistenceFailure
from .storage import Debouncer, KeyValueStore

_LOG = logging.getLogger(__name__)

HISTORY_KEY = "__uplot_history__"
HISTORY_DEBOUNCE_S = 0.1

# leading path segments that produce undoable history entries
HISTORY_RELEVANT_KEYS: frozenset[str] = frozenset({
    "analog", "digital", "yLabels", "lineColors", "yUnits", "axesScales",
    "xLabel", "xUnit", "title", "scales", "verticalLinesX",
})

_PRIMITIVES = (str, int, float, bool, type(None), np.generic)


class _Cancel:
    def __repr__(self) -> str:
        return "CANCEL"


CANCEL = _Cancel()


@dataclass
class Change:
    path: tuple
    new_value: Any
    old_value: Any

    @property
    def prop(self):
        return self.path[-1] if self.path else None

    @property
    def dotted(self) -> str:
        return ".".join(str(p) for p in self.path)


@dataclass
class HistoryEntry:
    path: tuple
    old_value: Any
    new_value: Any
    timestamp: float
    action_type: str

    def to_dict(self) -> dict:
        return {
            "path": list(self.path),
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "timestamp": self.timestamp,
            "actionType": self.action_type,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "HistoryEntry":
        return cls(
            path=tuple(d.get("path") or ()),
            old_value=d.get("oldValue"),
            new_value=d.get("newValue"),
            timestamp=float(d.get("timestamp") or 0.0),
            action_type=str(d.get("actionType") or "state_update"),
        )


class FrameScheduler:
    """Stand-in for an animation frame: callbacks run on the next ``tick()``."""

    def __init__(self):
        self._pending: list[Callable[[], None]] = []

    def request(self, fn: Callable[[], None]) -> None:
        if fn not in self._pending:
            self._pending.append(fn)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def tick(self) -> int:
        callbacks, self._pending = self._pending, []
        for fn in callbacks:
            fn()
        return len(callbacks)


def parse_path(path) -> tuple:
    if path is None:
        return ()
    if isinstance(path, str):
        if not path:
            return ()
        return tuple(int(p) if p.isdigit() else p for p in path.split("."))
    if isinstance(path, (list, tuple)):
        return tuple(path)
    return (path,)


def action_type_for(path: Sequence) -> str:
    segs = [str(p) for p in path]
    if "lineColors" in segs:
        return "color_change"
    if "title" in segs:
        return "title_change"
    if "data" in segs or "time" in segs:
        return "data_change"
    if segs and segs[0] in ("analog", "digital", "yLabels", "yUnits"):
        return "channel_update"
    return "state_update"


def _same(a, b) -> bool:
    if a is b:
        return True
    if isinstance(a, _PRIMITIVES) and isinstance(b, _PRIMITIVES):
        try:
            return bool(a == b) and type(a) is type(b)
        except (TypeError, ValueError):
            return False
    return False


def _json_default(value):
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def _resolve_key(container, seg, create: bool = False):
    if isinstance(container, dict):
        if seg in container:
            return seg
        alt = str(seg) if not isinstance(seg, str) else (int(seg) if seg.isdigit() else None)
        if alt is not None and alt in container:
            return alt
        if create:
            return seg
        raise KeyError(seg)
    if isinstance(container, list):
        idx = int(seg)
        if not create and not (-len(container) <= idx < len(container)):
            raise KeyError(seg)
        return idx
    raise KeyError(seg)


@dataclass(eq=False)
class Subscription:
    fn: Callable
    path: tuple | None = None
    descendants: bool = False
    selector: Callable | None = None
    seq: int = 0
    last: Any = None
    active: bool = field(default=True)


class _TrieNode:
    __slots__ = ("children", "exact", "deep")

    def __init__(self):
        self.children: dict[str, _TrieNode] = {}
        self.exact: list[Subscription] = []
        self.deep: list[Subscription] = []

    def walk(self) -> Iterable[Subscription]:
        yield from self.exact
        yield from self.deep
        for child in self.children.values():
            yield from child.walk()


class _SubscriberTrie:
    def __init__(self):
        self.root = _TrieNode()

    def add(self, sub: Subscription) -> None:
        node = self.root
        for seg in sub.path or ():
            node = node.children.setdefault(str(seg), _TrieNode())
        (node.deep if sub.descendants else node.exact).append(sub)

    def remove(self, sub: Subscription) -> None:
        node = self.root
        for seg in sub.path or ():
            node = node.children.get(str(seg))
            if node is None:
                return
        bucket = node.deep if sub.descendants else node.exact
        if sub in bucket:
            bucket.remove(sub)

    def match(self, path: Sequence) -> list[Subscription]:
        """Subscribers at the path, descendant subscribers above it, and anything below it."""
        found: list[Subscription] = list(self.root.deep)
        node = self.root
        for seg in path:
            node = node.children.get(str(seg))
            if node is None:
                return sorted(found, key=lambda s: s.seq)
            found.extend(node.deep)
        found.extend(node.exact)
        for child in node.children.values():
            found.extend(child.walk())
        seen: set[int] = set()
        unique = []
        for s in found:
            if id(s) not in seen:
                seen.add(id(s))
                unique.append(s)
        return sorted(unique, key=lambda s: s.seq)


class _View:
    """Reactive handle on a nested dict/list of the store; writes notify."""

    __slots__ = ("_store", "_path")

    def __init__(self, store: "ObservableStore", path: tuple):
        self._store = store
        self._path = path

    def _raw(self):
        return self._store._lookup(self._path)

    def __getitem__(self, key):
        return self._store._wrap(self._path + (key,))

    def __setitem__(self, key, value):
        self._store.set(self._path + (key,), value)

    def __contains__(self, key):
        raw = self._raw()
        if isinstance(raw, list):
            return key in raw
        try:
            _resolve_key(raw, key)
            return True
        except KeyError:
            return False

    def __len__(self):
        return len(self._raw())

    def __iter__(self):
        raw = self._raw()
        if isinstance(raw, dict):
            return iter(list(raw.keys()))
        return iter([self._store._wrap(self._path + (i,)) for i in range(len(raw))])

    def __eq__(self, other):
        other_raw = other._raw() if isinstance(other, _View) else other
        return self._raw() == other_raw

    def __repr__(self):
        return f"View({'.'.join(str(p) for p in self._path)}={self._raw()!r})"

    def get(self, key, default=None):
        try:
            return self[key]
        except KeyError:
            return default

    def keys(self):
        return list(self._raw().keys())

    def items(self):
        return [(k, self._store._wrap(self._path + (k,))) for k in self._raw().keys()]

    def append(self, value) -> None:
        self._store.set(self._path + (len(self._raw()),), value)

    def to_python(self):
        return copy.deepcopy(self._raw())


class ObservableStore:
    def __init__(self, initial=None, batch: bool = True,
                 scheduler: FrameScheduler | None = None,
                 history_store: KeyValueStore | None = None,
                 history_key: str = HISTORY_KEY,
                 history_limit: int | None = None,
                 restore_history: bool = True):
        if isinstance(initial, (dict, list)):
            self._state = copy.deepcopy(initial)
        elif initial is None:
            self._state = {}
        else:
            self._state = {"value": initial}

        self.batch = batch
        self.scheduler = scheduler or FrameScheduler()
        self._seq = itertools.count()
        self._trie = _SubscriberTrie()
        self._selectors: list[Subscription] = []
        self._middleware: list[Callable[[Change], Any]] = []
        self._pending: dict[tuple, Change] = {}
        self._scheduled = False

        self._computed: dict[str, dict] = {}

        self._history: deque[HistoryEntry] = deque(maxlen=history_limit)
        self._redo: list[HistoryEntry] = []
        self._history_suspended = 0
        self._history_store = history_store
        self._history_key = history_key
        self._persist = Debouncer(HISTORY_DEBOUNCE_S, self._persist_history) if history_store else None
        if history_store is not None and restore_history:
            self._restore_history()

    # ---------- read / write ----------

    @property
    def state(self):
        return self._state

    def snapshot(self):
        return copy.deepcopy(self._state)

    def _lookup(self, path: tuple):
        node = self._state
        for seg in path:
            node = node[_resolve_key(node, seg)]
        return node

    def _wrap(self, path: tuple):
        value = self._lookup(path)
        if isinstance(value, (dict, list)):
            return _View(self, path)
        return value

    def get(self, path=None, default=None):
        try:
            return self._lookup(parse_path(path))
        except (KeyError, IndexError, TypeError, ValueError):
            return default

    def has(self, path) -> bool:
        try:
            self._lookup(parse_path(path))
            return True
        except (KeyError, IndexError, TypeError, ValueError):
            return False

    def __getitem__(self, key):
        return self._wrap((key,))

    def __setitem__(self, key, value):
        self.set((key,), value)

    def __contains__(self, key):
        return self.has((key,))

    def _write_raw(self, path: tuple, value) -> None:
        if not path:
            if not isinstance(value, (dict, list)):
                raise TypeError("root state must be a dict or list")
            self._state = value
            return
        parent = self._state
        for i, seg in enumerate(path[:-1]):
            key = _resolve_key(parent, seg, create=isinstance(parent, dict))
            if isinstance(parent, dict) and key not in parent:
                parent[key] = [] if isinstance(path[i + 1], int) else {}
            parent = parent[key]
        last = path[-1]
        if isinstance(parent, list):
            idx = int(last)
            if idx == len(parent):
                parent.append(value)
            elif -len(parent) <= idx < len(parent):
                parent[idx] = value
            else:
                raise IndexError(f"list index {idx} out of range for {'.'.join(map(str, path))}")
        elif isinstance(parent, dict):
            parent[_resolve_key(parent, last, create=True)] = value
        else:
            raise TypeError(f"cannot assign into {type(parent).__name__} at {'.'.join(map(str, path))}")

    def set(self, path, value) -> bool:
        """Write ``value`` at ``path``. Returns False when middleware cancelled the write."""
        p = parse_path(path)
        old = self.get(p)
        if self.has(p) and _same(old, value):
            return True
        change = Change(path=p, new_value=value, old_value=old)
        for mw in list(self._middleware):
            result = mw(change)
            if result is CANCEL:
                _LOG.debug("middleware cancelled write to %s", change.dotted)
                return False
            if isinstance(result, Change):
                change = result
        self._write_raw(change.path, change.new_value)
        self._record_history(change)
        self._mark_computed_dirty(change.path)
        self._enqueue(change)
        return True

    def update(self, values: dict) -> None:
        for path, value in values.items():
            self.set(path, value)

    def use(self, middleware: Callable[[Change], Any]) -> Callable[[], None]:
        self._middleware.append(middleware)

        def _remove():
            if middleware in self._middleware:
                self._middleware.remove(middleware)
        return _remove

    # ---------- subscriptions ----------

    def subscribe(self, fn: Callable, target=None) -> Subscription:
        """
        target: None (every change), a dotted / list path, ``{"path": p, "descendants": True}``,
        ``{"selector": callable}`` or a bare callable taking the store.
        Path subscribers get ``fn(change)``; selector subscribers get ``fn(new, old)``.
        """
        seq = next(self._seq)
        if target is None:
            sub = Subscription(fn=fn, path=(), descendants=True, seq=seq)
            self._trie.add(sub)
            return sub
        selector = None
        if callable(target):
            selector = target
        elif isinstance(target, dict) and callable(target.get("selector")):
            selector = target["selector"]
        if selector is not None:
            sub = Subscription(fn=fn, selector=selector, seq=seq)
            sub.last = self._select(sub)
            self._selectors.append(sub)
            return sub
        if isinstance(target, dict):
            sub = Subscription(fn=fn, path=parse_path(target.get("path")),
                               descendants=bool(target.get("descendants", False)), seq=seq)
        else:
            sub = Subscription(fn=fn, path=parse_path(target), seq=seq)
        self._trie.add(sub)
        return sub

    def unsubscribe(self, fn_or_token) -> int:
        targets: list[Subscription] = []
        if isinstance(fn_or_token, Subscription):
            targets = [fn_or_token]
        else:
            targets = [s for s in self._trie.root.walk() if s.fn is fn_or_token]
            targets += [s for s in self._selectors if s.fn is fn_or_token]
        for sub in targets:
            sub.active = False
            if sub.selector is not None:
                if sub in self._selectors:
                    self._selectors.remove(sub)
            else:
                self._trie.remove(sub)
        return len(targets)

    def _select(self, sub: Subscription):
        try:
            return sub.selector(self)
        except Exception:
            _LOG.exception("selector raised")
            return None

    # ---------- dispatch ----------

    def _enqueue(self, change: Change) -> None:
        if not self.batch:
            self._dispatch([change])
            return
        key = tuple(str(p) for p in change.path)
        prior = self._pending.get(key)
        if prior is not None:
            # keep the first old value and queue position, deliver the latest value
            prior.new_value = change.new_value
        else:
            self._pending[key] = Change(change.path, change.new_value, change.old_value)
        if not self._scheduled:
            self._scheduled = True
            self.scheduler.request(self.flush)

    def flush(self) -> int:
        """Drain queued notifications now (what a frame tick does)."""
        self._scheduled = False
        if not self._pending:
            return 0
        changes = list(self._pending.values())
        self._pending = {}
        self._dispatch(changes)
        return len(changes)

    @property
    def pending_changes(self) -> int:
        return len(self._pending)

    def _call(self, sub: Subscription, *args) -> None:
        if not sub.active:
            return
        try:
            sub.fn(*args)
        except Exception:
            _LOG.exception("subscriber %r failed", getattr(sub.fn, "__name__", sub.fn))

    def _dispatch(self, changes: list[Change]) -> None:
        for change in changes:
            for sub in self._trie.match(change.path):
                self._call(sub, change)
        for sub in list(self._selectors):
            new = self._select(sub)
            old = sub.last
            if not _same(new, old):
                sub.last = new
                self._call(sub, new, old)

    # ---------- computed cells ----------

    def computed(self, name: str, deps: Sequence, fn: Callable[["ObservableStore"], Any]) -> None:
        if name in self.__dict__ or hasattr(type(self), name):
            raise ValueError(f"computed name {name!r} collides with a store attribute")
        self._computed[name] = {"deps": [parse_path(d) for d in deps], "fn": fn,
                                "dirty": True, "value": None}

    def _mark_computed_dirty(self, path: tuple) -> None:
        spath = [str(p) for p in path]
        for cell in self._computed.values():
            for dep in cell["deps"]:
                sdep = [str(p) for p in dep]
                n = min(len(spath), len(sdep))
                if spath[:n] == sdep[:n]:
                    cell["dirty"] = True
                    break

    def get_computed(self, name: str):
        cell = self._computed[name]
        if cell["dirty"]:
            cell["value"] = cell["fn"](self)
            cell["dirty"] = False
        return cell["value"]

    def __getattr__(self, name):
        computed = self.__dict__.get("_computed")
        if computed is not None and name in computed:
            return self.get_computed(name)
        raise AttributeError(name)

    def __setattr__(self, name, value):
        computed = self.__dict__.get("_computed")
        if computed is not None and name in computed:
            raise AttributeError(f"computed attribute {name!r} is read-only")
        object.__setattr__(self, name, value)

    # ---------- history ----------

    def _record_history(self, change: Change) -> None:
        if self._history_suspended or not change.path:
            return
        if str(change.path[0]) not in HISTORY_RELEVANT_KEYS:
            return
        entry = HistoryEntry(
            path=change.path,
            old_value=copy.deepcopy(change.old_value),
            new_value=copy.deepcopy(change.new_value),
            timestamp=time.time() * 1000.0,
            action_type=action_type_for(change.path),
        )
        self._history.append(entry)
        self._redo.clear()
        self._schedule_persist()

    def suspend_history(self) -> None:
        self._history_suspended += 1

    def resume_history(self) -> None:
        self._history_suspended = max(0, self._history_suspended - 1)

    def without_history(self, fn: Callable[[], Any]):
        self.suspend_history()
        try:
            return fn()
        finally:
            self.resume_history()

    def get_history(self) -> list[HistoryEntry]:
        return list(self._history)

    def get_redo_stack(self) -> list[HistoryEntry]:
        return list(self._redo)

    def clear_history(self) -> None:
        self._history.clear()
        self._redo.clear()
        self._schedule_persist()

    def _replay(self, source, target: list | deque, value_of: Callable[[HistoryEntry], Any]) -> bool:
        if not source:
            return False
        entry = source.pop()
        try:
            old = self.get(entry.path)
            value = copy.deepcopy(value_of(entry))
            self._write_raw(entry.path, value)
        except Exception:
            _LOG.exception("replay of %s failed; history restored", entry.path)
            source.append(entry)
            return False
        target.append(entry)
        self._mark_computed_dirty(entry.path)
        self._enqueue(Change(path=entry.path, new_value=value, old_value=old))
        self._schedule_persist()
        return True

    def undo_last(self) -> bool:
        """Restore the newest entry's old value (middleware is not consulted)."""
        return self._replay(self._history, self._redo, lambda e: e.old_value)

    def redo_last(self) -> bool:
        return self._replay(self._redo, self._history, lambda e: e.new_value)

    def _schedule_persist(self) -> None:
        if self._persist is not None:
            self._persist.call()
            self.scheduler.request(self._poll_persist)

    def _poll_persist(self) -> None:
        # runs from scheduler ticks, so the save happens on the host thread
        if not self._persist.poll() and self._persist.pending:
            self.scheduler.request(self._poll_persist)

    def flush_history(self) -> None:
        if self._persist is not None:
            self._persist.flush()

    def close(self) -> None:
        self.flush_history()

    def _persist_history(self) -> None:
        if self._history_store is None:
            return
        try:
            payload = json.dumps([e.to_dict() for e in self._history], default=_json_default)
            self._history_store.set_item(self._history_key, payload)
        except Exception as e:
            err = e if isinstance(e, PersistenceFailure) else PersistenceFailure(str(e), key=self._history_key)
            _LOG.warning("history write failed (%s); keeping in-memory history", err.message)

    def _restore_history(self) -> None:
        try:
            raw = self._history_store.get_item(self._history_key)
        except Exception as e:
            _LOG.warning("history read failed: %s", e)
            return
        if not raw:
            return
        try:
            entries = json.loads(raw)
        except ValueError:
            _LOG.warning("discarding unreadable history under %s", self._history_key)
            return
        for d in entries if isinstance(entries, list) else []:
            if isinstance(d, dict):
                self._history.append(HistoryEntry.from_dict(d))

    # ---------- sink binding ----------

    def bind(self, path, sink, two_way: bool = False, event: str | None = None) -> Callable[[], None]:
        """
        Keep ``sink.update(value)`` in step with ``path``; with ``two_way`` the sink's
        ``on(event, handler)`` feeds values back into the store.
        """
        p = parse_path(path)

        def _push(*_):
            sink.update(self.get(p))

        _push()
        sub = self.subscribe(_push, {"path": p, "descendants": True})
        detach = None
        if two_way:
            if not hasattr(sink, "on"):
                raise TypeError("two-way binding needs a sink with on(event, handler)")

            def _pull(value):
                self.set(p, value)
            detach = sink.on(event or "change", _pull)

        def _unbind():
            self.unsubscribe(sub)
            if callable(detach):
                detach()
        return _unbind
