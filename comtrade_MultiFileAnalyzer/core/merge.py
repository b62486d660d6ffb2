# comtrade_MultiFileAnalyzer/core/merge.py
from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from pathlib import PurePath
from typing import Literal, Sequence
import numpy as np
import pandas as pd

from .errors import InvalidInput
from .model import ChannelDescriptor, FileOffset, ParsedFileSet, Recording

# ----- defaults (used if configure_from_config isn't called) -----
_BOUNDARY_EPSILON: float = 1e-9

_LOG = logging.getLogger(__name__)


def configure_from_config(cfg: dict) -> None:
    global _BOUNDARY_EPSILON
    _BOUNDARY_EPSILON = 1e-9
    mcfg = (cfg or {}).get("merge", {}) or {}
    _BOUNDARY_EPSILON = float(mcfg.get("boundary_epsilon", _BOUNDARY_EPSILON))


@dataclass(frozen=True)
class MergeResult:
    recording: Recording
    is_merged: bool
    file_count: int


@dataclass(frozen=True)
class _Segment:
    file_index: int
    first_row: int      # row in the merged time axis
    skip: int           # leading samples of the source that were elided
    length: int         # samples kept


def _file_prefix(file_set: ParsedFileSet, file_index: int) -> str:
    if file_set.filename:
        stem = PurePath(str(file_set.filename).replace("\\", "/")).stem
        if stem:
            return stem
    return f"File{file_index + 1}"


def _needs_prefix(file_set: ParsedFileSet, file_index: int) -> bool:
    return file_index > 0 or bool(file_set.filename)


def _as_time(raw) -> np.ndarray | None:
    if raw is None:
        return None
    t = np.asarray(raw, dtype=float).reshape(-1)
    return t if t.size else None


def _check_file(file_set: ParsedFileSet, file_index: int, time: np.ndarray) -> None:
    n = len(time)
    for kind, channels, rows in (
        ("analog", file_set.analog_channels, file_set.analog_data),
        ("digital", file_set.digital_channels, file_set.digital_data),
    ):
        if len(channels) != len(rows):
            raise InvalidInput(f"file {file_index}: {len(channels)} {kind} channels but {len(rows)} data rows",
                               file_index=file_index, kind=kind)
        for i, row in enumerate(rows):
            if len(row) != n:
                raise InvalidInput(f"file {file_index}: {kind} row {i} has {len(row)} samples, expected {n}",
                                   file_index=file_index, kind=kind, index=i)
    if n > 1 and np.any(np.diff(time) < 0):
        raise InvalidInput(f"file {file_index}: time sequence is not monotone", file_index=file_index)


def merge_time_sequential(times: Sequence) -> tuple[np.ndarray, list[FileOffset], list[_Segment]]:
    """
    Concatenate per-file time sequences, each shifted so it starts where the
    previous file ended. A leading sample that coincides with the last emitted
    one (within the boundary epsilon) is dropped.
    """
    parts: list[np.ndarray] = []
    offsets: list[FileOffset] = []
    segments: list[_Segment] = []
    time_offset = 0.0
    rows = 0
    last: float | None = None

    for k, raw in enumerate(times):
        t = _as_time(raw)
        if t is None:
            _LOG.warning("file %d has no time sequence; skipped", k)
            continue
        start, end = float(t[0]), float(t[-1])
        duration = end - start
        shifted = t - start + time_offset

        skip = 0
        if last is not None and abs(shifted[0] - last) <= _BOUNDARY_EPSILON:
            skip = 1
        kept = shifted[skip:]

        offsets.append(FileOffset(
            file_index=k,
            start_time=start,
            end_time=end,
            sample_count=int(len(t)),
            time_offset=time_offset,
            duration=duration,
        ))
        segments.append(_Segment(file_index=k, first_row=rows, skip=skip, length=int(len(kept))))
        if kept.size:
            parts.append(kept)
            last = float(kept[-1])
        rows += int(len(kept))
        time_offset += duration

    merged = np.concatenate(parts) if parts else np.zeros(0, dtype=float)
    return merged, offsets, segments


def _unique_id(candidate: str, taken: set[str]) -> str:
    cid = candidate
    n = 2
    while cid in taken:
        cid = f"{candidate}_{n}"
        n += 1
    taken.add(cid)
    return cid


def merge_channels(file_sets: Sequence[ParsedFileSet],
                   kind: Literal["analog", "digital"],
                   segments: Sequence[_Segment] | None = None,
                   total_rows: int | None = None) -> tuple[list[ChannelDescriptor], list[np.ndarray]]:
    """
    Concatenate channel descriptors of ``kind`` in file order, renaming them
    ``<prefix>_<name>``. With ``segments`` each channel's samples are placed on
    the merged time axis (NaN outside its own file's segment).
    """
    seg_by_file = {s.file_index: s for s in (segments or [])}
    out_channels: list[ChannelDescriptor] = []
    out_rows: list[np.ndarray] = []
    taken: set[str] = set()

    for k, fs in enumerate(file_sets):
        if segments is not None and k not in seg_by_file:
            continue
        channels = fs.analog_channels if kind == "analog" else fs.digital_channels
        data = fs.analog_data if kind == "analog" else fs.digital_data
        prefix = _file_prefix(fs, k) if _needs_prefix(fs, k) else None

        for i, ch in enumerate(channels):
            original = ch.original_name or ch.name
            display = f"{prefix}_{original}" if prefix else original
            base_id = f"{prefix}_{ch.channel_id}" if prefix else ch.channel_id
            merged_ch = replace(
                ch,
                channel_id=_unique_id(base_id, taken),
                name=display,
                original_name=original,
                display_name=display,
                source_file_index=k,
                source_channel_index=i,
                global_channel_index=len(out_channels),
            )
            out_channels.append(merged_ch)

            src = np.asarray(data[i], dtype=float)
            if segments is None:
                out_rows.append(src)
                continue
            seg = seg_by_file[k]
            row = np.full(int(total_rows or 0), np.nan)
            row[seg.first_row: seg.first_row + seg.length] = src[seg.skip: seg.skip + seg.length]
            out_rows.append(row)

    return out_channels, out_rows


def _passthrough(fs: ParsedFileSet) -> MergeResult:
    time = _as_time(fs.time)
    if time is None:
        raise InvalidInput("the only input file has no time sequence")
    _check_file(fs, 0, time)

    def _annotate(channels):
        out = []
        for i, ch in enumerate(channels):
            original = ch.original_name or ch.name
            out.append(replace(ch, original_name=original, display_name=ch.display_name or ch.name,
                               source_file_index=0, source_channel_index=i, global_channel_index=i))
        return out

    rec = Recording(
        analog_channels=_annotate(fs.analog_channels),
        digital_channels=_annotate(fs.digital_channels),
        time=time,
        analog_data=[np.asarray(r, dtype=float) for r in fs.analog_data],
        digital_data=[np.asarray(r, dtype=float) for r in fs.digital_data],
        file_offsets=None,
        is_merged=False,
        source_files=(fs.filename,) if fs.filename else (),
        station_name=fs.station_name,
    )
    return MergeResult(recording=rec, is_merged=False, file_count=1)


def merge_file_sets(file_sets: Sequence[ParsedFileSet]) -> MergeResult:
    if not file_sets:
        raise InvalidInput("no files to merge")
    for k, fs in enumerate(file_sets):
        if not isinstance(fs, ParsedFileSet):
            raise InvalidInput(f"file {k} is not a parsed file set", file_index=k)
    if len(file_sets) == 1:
        return _passthrough(file_sets[0])

    for k, fs in enumerate(file_sets):
        t = _as_time(fs.time)
        if t is not None:
            _check_file(fs, k, t)

    time, offsets, segments = merge_time_sequential([fs.time for fs in file_sets])
    if not offsets:
        raise InvalidInput("none of the input files has a time sequence")
    total = len(time)
    analog, analog_rows = merge_channels(file_sets, "analog", segments, total)
    digital, digital_rows = merge_channels(file_sets, "digital", segments, total)

    _LOG.info("merged %d file(s): %d samples, %d analog, %d digital",
              len(offsets), total, len(analog), len(digital))
    rec = Recording(
        analog_channels=analog,
        digital_channels=digital,
        time=time,
        analog_data=analog_rows,
        digital_data=digital_rows,
        file_offsets=offsets,
        is_merged=True,
        source_files=tuple(fs.filename or f"File{k + 1}" for k, fs in enumerate(file_sets)),
        station_name=file_sets[0].station_name,
    )
    return MergeResult(recording=rec, is_merged=True, file_count=len(file_sets))


# ---------- lookups on merged recordings ----------

def file_index_for_time(offsets: Sequence[FileOffset] | None, t: float) -> int | None:
    for off in offsets or []:
        if off.time_offset <= t <= off.time_offset + off.duration:
            return off.file_index
    return None


def sample_index_in_file(offsets: Sequence[FileOffset] | None, global_index: int) -> tuple[int, int] | None:
    """Map a merged sample index to ``(file_index, index within that file)``."""
    if global_index < 0:
        return None
    first_row = 0
    prev_last: float | None = None
    for off in offsets or []:
        # the leading sample of a file is elided when it lands on the previous tail
        skip = 1 if prev_last is not None and abs(off.time_offset - prev_last) <= _BOUNDARY_EPSILON else 0
        kept = off.sample_count - skip
        if global_index < first_row + kept:
            return off.file_index, global_index - first_row + skip
        first_row += kept
        prev_last = off.time_offset + off.duration
    return None


def channel_by_display_name(recording: Recording, name: str) -> tuple[str, int] | None:
    for kind, channels in (("analog", recording.analog_channels), ("digital", recording.digital_channels)):
        for i, ch in enumerate(channels):
            if ch.label == name:
                return kind, i
    return None


def channels_for_file(recording: Recording, file_index: int) -> dict[str, list[int]]:
    return {
        "analog": [i for i, c in enumerate(recording.analog_channels) if c.source_file_index == file_index],
        "digital": [i for i, c in enumerate(recording.digital_channels) if c.source_file_index == file_index],
    }


def merge_summary(result: MergeResult) -> pd.DataFrame:
    rec = result.recording
    cols = ["file_index", "source", "start_time", "end_time", "sample_count",
            "time_offset", "duration", "analog_channels", "digital_channels"]
    offsets = rec.file_offsets
    if not offsets:
        n = rec.sample_count
        t0 = float(rec.time[0]) if n else 0.0
        t1 = float(rec.time[-1]) if n else 0.0
        offsets = [FileOffset(0, t0, t1, n, 0.0, t1 - t0)]
    rows = []
    for off in offsets:
        per_file = channels_for_file(rec, off.file_index)
        source = rec.source_files[off.file_index] if off.file_index < len(rec.source_files) else ""
        rows.append({
            "file_index": off.file_index,
            "source": source,
            "start_time": off.start_time,
            "end_time": off.end_time,
            "sample_count": off.sample_count,
            "time_offset": off.time_offset,
            "duration": off.duration,
            "analog_channels": len(per_file["analog"]),
            "digital_channels": len(per_file["digital"]),
        })
    return pd.DataFrame(rows, columns=cols)
