# comtrade_MultiFileAnalyzer/computed/worker.py
"""
Background evaluation of computed-channel expressions.

The worker runs on a pool thread and only produces messages; the host drains
them with ``pump()`` on its own thread, so every callback (and every mutation
those callbacks make) happens on the host side.
"""
from __future__ import annotations
import logging
import queue
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Union

import numpy as np

from .expression import base_scope, compile_expression
from .prepare import TransferBuffer, WorkerTask

_LOG = logging.getLogger(__name__)

PROGRESS_INTERVAL_S = 0.1
PROGRESS_STEP_PERCENT = 1.0


@dataclass(frozen=True)
class ProgressMessage:
    percent: float
    processed: int
    total: int
    type: str = "progress"

    def to_dict(self) -> dict:
        return {"type": self.type, "percent": self.percent, "processed": self.processed, "total": self.total}


@dataclass(frozen=True)
class CompleteMessage:
    results_buffer: TransferBuffer
    result_count: int
    elapsed_ms: float
    type: str = "complete"

    def to_dict(self) -> dict:
        return {"type": self.type, "resultsBuffer": self.results_buffer,
                "resultCount": self.result_count, "elapsedMs": self.elapsed_ms}


@dataclass(frozen=True)
class ErrorMessage:
    message: str
    type: str = "error"

    def to_dict(self) -> dict:
        return {"type": self.type, "message": self.message}


WorkerMessage = Union[ProgressMessage, CompleteMessage, ErrorMessage]


def _to_float(value) -> float:
    if isinstance(value, (complex, np.complexfloating)):
        return float(value.real) if value.imag == 0 else float("nan")
    return float(value)


class EvaluationWorker:
    def __init__(self, task: WorkerTask, post: Callable[[WorkerMessage], None],
                 stop: threading.Event | None = None,
                 progress_interval: float = PROGRESS_INTERVAL_S):
        self.task = task
        self.post = post
        self.stop = stop or threading.Event()
        self.progress_interval = progress_interval
        self.result_handle: TransferBuffer | None = None

    def _bindings(self) -> list[tuple[tuple[str, ...], np.ndarray]]:
        out = []
        for prefix, buffers, meta in (
            ("a", self.task.analog_buffers, self.task.analog_channels),
            ("d", self.task.digital_buffers, self.task.digital_channels),
        ):
            for idx, buf in enumerate(buffers):
                if buf is None:
                    continue
                names = [f"{prefix}{idx}"]
                if idx < len(meta) and meta[idx].get("id"):
                    names.append(str(meta[idx]["id"]))
                out.append((tuple(names), buf.array))
        return out

    def run(self) -> None:
        t0 = time.perf_counter()
        try:
            code = compile_expression(self.task.math_expr)
            scope = base_scope()
            bindings = self._bindings()
            n = int(self.task.sample_count)
            results = np.empty(n, dtype=np.float64)

            last_emit = time.monotonic()
            last_percent = 0.0
            with np.errstate(all="ignore"):
                for i in range(n):
                    if self.stop.is_set():
                        _LOG.debug("worker stopped at sample %d/%d", i, n)
                        return
                    for names, arr in bindings:
                        v = arr[i]
                        for name in names:
                            scope[name] = v
                    try:
                        results[i] = _to_float(eval(code, scope))
                    except ZeroDivisionError:
                        results[i] = float("nan")
                    except OverflowError:
                        results[i] = float("inf")

                    processed = i + 1
                    percent = processed * 100.0 / n
                    now = time.monotonic()
                    if (now - last_emit >= self.progress_interval
                            or percent - last_percent >= PROGRESS_STEP_PERCENT):
                        self.post(ProgressMessage(percent=round(percent, 2), processed=processed, total=n))
                        last_emit, last_percent = now, percent

            self.result_handle = TransferBuffer.wrap(results)
            elapsed = (time.perf_counter() - t0) * 1000.0
            self.post(CompleteMessage(results_buffer=self.result_handle.transfer(),
                                      result_count=n, elapsed_ms=elapsed))
        except NameError as e:
            missing = str(e).split("'")[1] if "'" in str(e) else str(e)
            self.post(ErrorMessage(message=f"Undefined symbol {missing}"))
        except Exception as e:
            self.post(ErrorMessage(message=f"{type(e).__name__}: {e}"))


@dataclass
class _Request:
    id: str
    on_progress: Callable | None
    on_complete: Callable | None
    on_error: Callable | None
    stop: threading.Event
    status: str = "running"      # running | completed | failed
    started: float = field(default_factory=time.monotonic)
    future: Future | None = None
    worker: EvaluationWorker | None = None


class WorkerHost:
    def __init__(self, max_workers: int = 2, progress_interval: float = PROGRESS_INTERVAL_S):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="eval-worker")
        self._queue: queue.Queue = queue.Queue()
        self._requests: dict[str, _Request] = {}
        self.progress_interval = progress_interval

    def post(self, task: WorkerTask) -> WorkerTask:
        """Hand the task's buffers over; the caller's handles are detached afterwards."""
        return task.detach()

    def start(self, task: WorkerTask,
              on_progress: Callable[[ProgressMessage], None] | None = None,
              on_complete: Callable[[CompleteMessage], None] | None = None,
              on_error: Callable[[ErrorMessage], None] | None = None) -> str:
        rid = f"eval_{uuid.uuid4().hex[:8]}"
        req = _Request(id=rid, on_progress=on_progress, on_complete=on_complete,
                       on_error=on_error, stop=threading.Event())
        moved = self.post(task)
        req.worker = EvaluationWorker(moved, post=lambda m: self._queue.put((rid, m)),
                                      stop=req.stop, progress_interval=self.progress_interval)
        self._requests[rid] = req
        req.future = self._executor.submit(req.worker.run)
        _LOG.info("started worker %s for %r (%d samples)", rid, task.math_expr, task.sample_count)
        return rid

    def status(self, request_id: str) -> str | None:
        req = self._requests.get(request_id)
        return req.status if req else None

    def worker(self, request_id: str) -> EvaluationWorker | None:
        req = self._requests.get(request_id)
        return req.worker if req else None

    @property
    def active(self) -> list[str]:
        return [r.id for r in self._requests.values() if r.status == "running"]

    def _release(self, req: _Request) -> None:
        # the worker still references the moved input buffers
        req.worker = None
        req.future = None

    def _invoke(self, fn: Callable | None, msg: WorkerMessage, rid: str) -> None:
        if fn is None:
            return
        try:
            fn(msg)
        except Exception:
            _LOG.exception("%s handler for %s failed", msg.type, rid)

    def pump(self, timeout: float = 0.0) -> int:
        """Deliver queued worker messages on the calling (host) thread."""
        handled = 0
        block = timeout > 0
        while True:
            try:
                rid, msg = self._queue.get(block=block, timeout=timeout if block else None)
            except queue.Empty:
                return handled
            block = False
            req = self._requests.get(rid)
            if req is None or req.status != "running":
                continue
            handled += 1
            if isinstance(msg, ProgressMessage):
                self._invoke(req.on_progress, msg, rid)
            elif isinstance(msg, CompleteMessage):
                req.status = "completed"
                _LOG.info("worker %s complete: %d samples in %.1f ms", rid, msg.result_count, msg.elapsed_ms)
                self._invoke(req.on_complete, msg, rid)
                self._release(req)
            elif isinstance(msg, ErrorMessage):
                req.status = "failed"
                _LOG.warning("worker %s failed: %s", rid, msg.message)
                self._invoke(req.on_error, msg, rid)
                self._release(req)

    def wait(self, request_id: str, timeout: float | None = None) -> str | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.status(request_id) == "running":
            if deadline is not None and time.monotonic() >= deadline:
                break
            self.pump(0.05)
        return self.status(request_id)

    def terminate(self, request_id: str) -> bool:
        req = self._requests.get(request_id)
        if req is None or req.status != "running":
            return False
        req.stop.set()
        req.status = "failed"
        _LOG.warning("worker %s terminated", request_id)
        self._invoke(req.on_error, ErrorMessage(message="Worker terminated"), request_id)
        self._release(req)
        return True

    def shutdown(self, wait: bool = True) -> None:
        for req in self._requests.values():
            req.stop.set()
        self._executor.shutdown(wait=wait)
