# comtrade_MultiFileAnalyzer/computed/results.py
from __future__ import annotations
import logging
import re
import time
from typing import Iterable, Sequence

import numpy as np

from ..core.model import ComputedChannel, ComputedStats, Recording
from .expression import BUILTINS
from .prepare import TransferBuffer

# ----- defaults (used if configure_from_config isn't called) -----
DEFAULT_PALETTE: tuple[str, ...] = (
    "#dc2626", "#2563eb", "#16a34a", "#9333ea",
    "#ea580c", "#0d9488", "#b45309", "#be185d",
)
_PALETTE: tuple[str, ...] = DEFAULT_PALETTE
_BINARY_CHECK_LIMIT: int = 1000

_LITERAL_WORDS = frozenset({"true", "false", "null", "undefined"})
_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_GROUP_RE = re.compile(r"^G(\d+)$")

_LOG = logging.getLogger(__name__)


def configure_from_config(cfg: dict) -> None:
    global _PALETTE, _BINARY_CHECK_LIMIT
    _PALETTE = DEFAULT_PALETTE
    _BINARY_CHECK_LIMIT = 1000
    ccfg = (cfg or {}).get("computed", {}) or {}
    palette = ccfg.get("palette")
    if isinstance(palette, (list, tuple)) and palette:
        _PALETTE = tuple(str(c) for c in palette)
    _BINARY_CHECK_LIMIT = int(ccfg.get("binary_check_limit", _BINARY_CHECK_LIMIT))


def convert_results_to_array(results) -> np.ndarray:
    if isinstance(results, TransferBuffer):
        return results.array
    return np.asarray(results, dtype=np.float64).reshape(-1)


def calculate_statistics(values: np.ndarray) -> ComputedStats:
    """Stats over finite, nonzero samples; ``count`` is the full length."""
    values = np.asarray(values, dtype=np.float64)
    valid = values[np.isfinite(values) & (values != 0)]
    if valid.size == 0:
        return ComputedStats(min=0.0, max=0.0, mean=0.0, count=int(values.size), valid_count=0)
    return ComputedStats(
        min=float(valid.min()),
        max=float(valid.max()),
        mean=float(valid.mean()),
        count=int(values.size),
        valid_count=int(valid.size),
    )


def _referenced_tokens(expr: str) -> list[str]:
    return [t for t in _TOKEN_RE.findall(expr or "")
            if t not in BUILTINS and t.lower() not in _LITERAL_WORDS]


def detect_made_from(expr: str, recording: Recording | None) -> str:
    if recording is None:
        return "analog"
    analog_ids: set[str] = set()
    for i, ch in enumerate(recording.analog_channels):
        analog_ids.update({ch.channel_id, ch.label, f"a{i}"})
    digital_ids: set[str] = set()
    for i, ch in enumerate(recording.digital_channels):
        digital_ids.update({ch.channel_id, ch.label, f"d{i}"})

    analog_hits = digital_hits = 0
    for tok in _referenced_tokens(expr):
        if tok in analog_ids:
            analog_hits += 1
        elif tok in digital_ids:
            digital_hits += 1
    if digital_hits > 0 and analog_hits == 0:
        return "digital"
    return "analog"


def are_binary_values(values: np.ndarray, limit: int | None = None) -> bool:
    """Only the first ``limit`` samples are inspected."""
    n = _BINARY_CHECK_LIMIT if limit is None else int(limit)
    head = np.asarray(values, dtype=np.float64)[:n]
    return bool(np.all((head == 0) | (head == 1)))


def coerce_binary(values: np.ndarray) -> np.ndarray:
    return (np.asarray(values, dtype=np.float64) > 0).astype(np.float64)


def generate_channel_name(custom: str | None = None, now_ms: float | None = None) -> str:
    if custom and str(custom).strip():
        return str(custom).strip()
    ms = int(now_ms if now_ms is not None else time.time() * 1000)
    return f"computed_{ms}"


def pick_color(existing_count: int) -> str:
    return _PALETTE[int(existing_count) % len(_PALETTE)]


def group_index(value) -> int | None:
    if not isinstance(value, str):
        return None
    m = _GROUP_RE.match(value.strip())
    return int(m.group(1)) if m else None


def next_free_group(*claimed: Iterable) -> str:
    """Smallest ``G{k}`` not claimed by any of the given group-id collections."""
    used: set[int] = set()
    for source in claimed:
        for g in source or ():
            k = group_index(g)
            if k is not None:
                used.add(k)
    k = 0
    while k in used:
        k += 1
    return f"G{k}"


def build_channel_data(equation: str,
                       internal: str,
                       results,
                       recording: Recording,
                       name: str | None = None,
                       unit: str | None = None,
                       group: str | None = None,
                       chart_groups: Sequence[str] = (),
                       now_ms: float | None = None) -> tuple[ComputedChannel, np.ndarray]:
    """Turn a finished worker result into ``(metadata, values)``; metadata carries no samples."""
    values = convert_results_to_array(results)
    existing = list(recording.computed_channels)

    stats = calculate_statistics(values)
    made_from = detect_made_from(internal, recording)
    if made_from == "digital" and not are_binary_values(values):
        _LOG.info("digital expression produced non-binary values; coercing v > 0 -> 1")
        values = coerce_binary(values)
    elif made_from == "digital" and not np.all((values == 0) | (values == 1)):
        # binary head, non-binary tail: still a digital channel, the tail is coerced too
        values = coerce_binary(values)

    created = float(now_ms if now_ms is not None else time.time() * 1000)
    channel_name = generate_channel_name(name, created)
    resolved_group = group.strip() if isinstance(group, str) and group.strip() else \
        next_free_group(chart_groups, [c.group for c in existing])

    meta = ComputedChannel(
        id=channel_name,
        name=channel_name,
        equation=equation,
        math_expression=internal,
        unit=unit or "",
        group=resolved_group,
        color=pick_color(len(existing)),
        made_from=made_from,
        stats=stats,
        sample_count=int(values.size),
        created_at=created,
        index=len(existing),
    )
    return meta, values
