# comtrade_MultiFileAnalyzer/core/model.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Literal
import numpy as np
import pandas as pd

from .errors import InvalidInput
from .units import classify_unit

ChannelKind = Literal["analog", "digital", "computed"]


@dataclass
class ChannelDescriptor:
    channel_id: str           # stable id, unique within a Recording
    name: str                 # display name
    unit: str = ""
    group_id: str | None = None
    color: str | None = None
    invert: bool = False
    scale: float = 1.0
    start: float = 0.0
    duration: float | None = None
    ph: str = ""
    # set by the merger
    original_name: str | None = None
    display_name: str | None = None
    source_file_index: int = 0
    source_channel_index: int | None = None
    global_channel_index: int | None = None

    @property
    def physical_type(self) -> str:
        return classify_unit(self.unit)

    @property
    def label(self) -> str:
        return self.display_name or self.name

    def to_dict(self) -> dict:
        return {
            "channelID": self.channel_id,
            "id": self.channel_id,
            "name": self.label,
            "unit": self.unit,
            "ph": self.ph,
            "group": self.group_id,
            "color": self.color,
            "originalName": self.original_name,
            "sourceFileIndex": self.source_file_index,
        }


@dataclass
class ParsedFileSet:
    """One parsed CFG/DAT pair as delivered by the external parser."""
    analog_channels: list[ChannelDescriptor]
    digital_channels: list[ChannelDescriptor]
    time: np.ndarray | None
    analog_data: list[np.ndarray]
    digital_data: list[np.ndarray]
    filename: str | None = None
    station_name: str | None = None
    sample_rate: float | None = None


@dataclass(frozen=True)
class FileOffset:
    file_index: int
    start_time: float
    end_time: float
    sample_count: int
    time_offset: float
    duration: float

    def to_dict(self) -> dict:
        return {
            "fileIndex": self.file_index,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "sampleCount": self.sample_count,
            "timeOffset": self.time_offset,
            "duration": self.duration,
        }


@dataclass(frozen=True)
class ComputedStats:
    min: float
    max: float
    mean: float
    count: int
    valid_count: int

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max, "mean": self.mean,
                "count": self.count, "validCount": self.valid_count}


@dataclass
class ComputedChannel:
    id: str
    name: str
    equation: str
    math_expression: str
    unit: str
    group: str
    color: str
    made_from: Literal["analog", "digital"]
    stats: ComputedStats
    sample_count: int
    created_at: float         # epoch milliseconds
    index: int = 0
    type: str = "Computed"

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "id": self.id,
            "channelID": self.id,
            "name": self.name,
            "equation": self.equation,
            "mathJsExpression": self.math_expression,
            "unit": self.unit,
            "group": self.group,
            "color": self.color,
            "type": self.type,
            "madeFrom": self.made_from,
            "stats": self.stats.to_dict(),
            "sampleCount": self.sample_count,
            "createdAt": self.created_at,
        }


@dataclass
class Recording:
    analog_channels: list[ChannelDescriptor]
    digital_channels: list[ChannelDescriptor]
    time: np.ndarray
    analog_data: list[np.ndarray]
    digital_data: list[np.ndarray]
    file_offsets: list[FileOffset] | None = None
    is_merged: bool = False
    source_files: tuple[str, ...] = ()
    computed_channels: list[ComputedChannel] = field(default_factory=list)
    computed_values: dict[str, np.ndarray] = field(default_factory=dict)
    station_name: str | None = None

    @property
    def sample_count(self) -> int:
        return int(len(self.time))

    def validate(self) -> None:
        n = self.sample_count
        if len(self.analog_data) != len(self.analog_channels):
            raise InvalidInput("analog data/channel count mismatch",
                               channels=len(self.analog_channels), rows=len(self.analog_data))
        if len(self.digital_data) != len(self.digital_channels):
            raise InvalidInput("digital data/channel count mismatch",
                               channels=len(self.digital_channels), rows=len(self.digital_data))
        for kind, rows in (("analog", self.analog_data), ("digital", self.digital_data)):
            for i, row in enumerate(rows):
                if len(row) != n:
                    raise InvalidInput(f"{kind} row {i} has {len(row)} samples, expected {n}",
                                       kind=kind, index=i)

    def channels(self, kind: ChannelKind) -> list[ChannelDescriptor]:
        if kind == "analog":
            return self.analog_channels
        if kind == "digital":
            return self.digital_channels
        raise InvalidInput(f"no descriptor list for channel kind {kind!r}")

    def data(self, kind: ChannelKind) -> list[np.ndarray]:
        if kind == "analog":
            return self.analog_data
        if kind == "digital":
            return self.digital_data
        raise InvalidInput(f"no data matrix for channel kind {kind!r}")

    def channel_ids(self, kind: ChannelKind) -> list[str]:
        if kind == "computed":
            return [c.id for c in self.computed_channels]
        return [c.channel_id for c in self.channels(kind)]

    def append_computed(self, meta: ComputedChannel, values: np.ndarray) -> None:
        if meta.id in self.computed_values or any(c.id == meta.id for c in self.computed_channels):
            raise InvalidInput(f"computed channel id {meta.id!r} already exists", id=meta.id)
        values = np.asarray(values, dtype=float)
        if meta.sample_count != len(values):
            raise InvalidInput("computed sample count does not match values",
                               id=meta.id, sample_count=meta.sample_count, values=len(values))
        if meta.made_from == "digital" and not np.all(np.isin(values, (0.0, 1.0))):
            raise InvalidInput("digital computed channel holds non-binary values", id=meta.id)
        self.computed_channels.append(meta)
        self.computed_values[meta.id] = values

    def remove_computed(self, channel_id: str) -> bool:
        before = len(self.computed_channels)
        self.computed_channels = [c for c in self.computed_channels if c.id != channel_id]
        self.computed_values.pop(channel_id, None)
        return len(self.computed_channels) != before

    def to_frame(self) -> pd.DataFrame:
        """Columnar view: one column per analog, digital and computed channel, indexed by time."""
        n = self.sample_count
        cols: dict[str, np.ndarray] = {}
        for ch, row in zip(self.analog_channels, self.analog_data):
            cols[ch.label] = np.asarray(row, dtype=float)
        for ch, row in zip(self.digital_channels, self.digital_data):
            cols[ch.label] = np.asarray(row, dtype=float)
        for ch in self.computed_channels:
            vals = np.full(n, np.nan)
            src = self.computed_values.get(ch.id)
            if src is not None:
                vals[: min(n, len(src))] = src[:n]
            cols[ch.name] = vals
        df = pd.DataFrame(cols, index=pd.Index(np.asarray(self.time, dtype=float), name="time"))
        return df


@dataclass
class ChartGroup:
    group_id: str
    channel_indices: list[int]
    channel_ids: list[str]
    axis_count: int
    name: str
    colors: list[str] | None = None
