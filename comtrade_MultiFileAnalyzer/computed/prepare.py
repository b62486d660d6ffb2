# comtrade_MultiFileAnalyzer/computed/prepare.py
from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from ..core.errors import ResourceMissing, WorkerFailure
from ..core.model import ChannelDescriptor, Recording
from .expression import BUILTINS

_LOG = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class DetachedBufferError(WorkerFailure):
    pass


class TransferBuffer:
    """
    Single-owner float64 buffer. ``transfer()`` hands the same memory to a new
    handle and detaches this one; a detached handle can no longer be read.
    """

    __slots__ = ("_array",)

    def __init__(self, array):
        # packaging copies once; the recording keeps its own rows
        self._array = np.array(array, dtype=np.float64, copy=True).reshape(-1)

    @classmethod
    def wrap(cls, array: np.ndarray) -> "TransferBuffer":
        """Take ownership of an existing float64 array without copying it."""
        buf = cls.__new__(cls)
        buf._array = array
        return buf

    @property
    def detached(self) -> bool:
        return self._array is None

    @property
    def array(self) -> np.ndarray:
        if self._array is None:
            raise DetachedBufferError("buffer was transferred and is no longer owned by this handle")
        return self._array

    @property
    def nbytes(self) -> int:
        return 0 if self._array is None else int(self._array.nbytes)

    def __len__(self) -> int:
        return len(self.array)

    def transfer(self) -> "TransferBuffer":
        arr = self.array
        self._array = None
        return TransferBuffer.wrap(arr)


def extract_used_channels(expr: str) -> set[str]:
    return {tok for tok in _TOKEN_RE.findall(expr or "") if tok not in BUILTINS}


def _included(channels: list[ChannelDescriptor], tokens: set[str], alias: str) -> list[bool]:
    return [(ch.channel_id in tokens) or (f"{alias}{i}" in tokens) for i, ch in enumerate(channels)]


def convert_to_transferable_buffers(recording: Recording, expr: str
                                    ) -> tuple[list[TransferBuffer | None], list[TransferBuffer | None]]:
    """One buffer per referenced channel; unused slots stay None so indices keep their meaning."""
    tokens = extract_used_channels(expr)
    analog = [TransferBuffer(row) if use else None
              for row, use in zip(recording.analog_data, _included(recording.analog_channels, tokens, "a"))]
    digital = [TransferBuffer(row) if use else None
               for row, use in zip(recording.digital_data, _included(recording.digital_channels, tokens, "d"))]
    return analog, digital


def serialize_channel_metadata(recording: Recording) -> dict[str, list[dict]]:
    def meta(channels):
        return [{"id": ch.channel_id, "ph": ch.ph or "", "units": ch.unit or ""} for ch in channels]
    return {"analog": meta(recording.analog_channels), "digital": meta(recording.digital_channels)}


@dataclass
class WorkerTask:
    math_expr: str
    analog_buffers: list[TransferBuffer | None]
    digital_buffers: list[TransferBuffer | None]
    analog_channels: list[dict]
    digital_channels: list[dict]
    sample_count: int
    analog_count: int
    digital_count: int

    def transferables(self) -> list[TransferBuffer]:
        return [b for b in list(self.analog_buffers) + list(self.digital_buffers) if b is not None]

    def transferred_bytes(self) -> int:
        return sum(b.nbytes for b in self.transferables())

    def detach(self) -> "WorkerTask":
        """Move every buffer into a new task; this task's handles become unreadable."""
        def move(bufs: Iterable[TransferBuffer | None]):
            return [b.transfer() if b is not None else None for b in bufs]
        return WorkerTask(
            math_expr=self.math_expr,
            analog_buffers=move(self.analog_buffers),
            digital_buffers=move(self.digital_buffers),
            analog_channels=list(self.analog_channels),
            digital_channels=list(self.digital_channels),
            sample_count=self.sample_count,
            analog_count=self.analog_count,
            digital_count=self.digital_count,
        )

    def to_dict(self) -> dict:
        return {
            "mathJsExpr": self.math_expr,
            "analogBuffers": self.analog_buffers,
            "digitalBuffers": self.digital_buffers,
            "analogChannels": self.analog_channels,
            "digitalChannels": self.digital_channels,
            "sampleCount": self.sample_count,
            "analogCount": self.analog_count,
            "digitalCount": self.digital_count,
        }


def validate_recording(recording: Recording | None) -> None:
    if recording is None:
        raise ResourceMissing("no recording loaded")
    if not recording.analog_channels and not recording.digital_channels:
        raise ResourceMissing("recording has no channels")


def validate_sample_data(recording: Recording | None) -> None:
    validate_recording(recording)
    if recording.time is None or recording.sample_count == 0:
        raise ResourceMissing("recording has no samples")
    if not recording.analog_data and not recording.digital_data:
        raise ResourceMissing("recording has no channel data")


def build_worker_task(expr: str, recording: Recording) -> WorkerTask:
    validate_sample_data(recording)
    analog, digital = convert_to_transferable_buffers(recording, expr)
    meta = serialize_channel_metadata(recording)
    task = WorkerTask(
        math_expr=expr,
        analog_buffers=analog,
        digital_buffers=digital,
        analog_channels=meta["analog"],
        digital_channels=meta["digital"],
        sample_count=recording.sample_count,
        analog_count=len(recording.analog_channels),
        digital_count=len(recording.digital_channels),
    )
    _LOG.debug("worker task: %d of %d analog, %d of %d digital buffers (%d bytes)",
               sum(b is not None for b in analog), len(analog),
               sum(b is not None for b in digital), len(digital), task.transferred_bytes())
    return task
