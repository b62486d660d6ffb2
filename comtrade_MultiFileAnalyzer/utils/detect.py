# comtrade_MultiFileAnalyzer/utils/detect.py
from __future__ import annotations
from pathlib import Path
from dataclasses import dataclass
from typing import Literal

DetectedKind = Literal["json", "yaml", "csv", "unknown"]

_SUFFIX_KIND = {
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".csv": "csv",
}


@dataclass(frozen=True)
class DetectedItem:
    path: Path        # actual path on disk
    kind: DetectedKind


def detect_kind(p: Path) -> DetectedKind:
    """
    Classify a single path.
    - .json        -> 'json'  (parsed-record dump)
    - .yaml / .yml -> 'yaml'  (parsed-record dump)
    - .csv         -> 'csv'   (columnar export)
    else           -> 'unknown'
    """
    return _SUFFIX_KIND.get(p.suffix.lower(), "unknown")


def discover_inputs(root: Path, recurse: bool = True) -> list[DetectedItem]:
    """
    If 'root' is a file -> return that one item (if known).
    If 'root' is a folder -> walk (optionally recursively) and collect known kinds.
    """
    items: list[DetectedItem] = []
    if root.is_file():
        kind = detect_kind(root)
        if kind != "unknown":
            items.append(DetectedItem(root.resolve(), kind))
        return items

    it = root.rglob("*") if recurse else root.glob("*")
    for p in it:
        if not p.is_file():
            continue
        kind = detect_kind(p)
        if kind != "unknown":
            items.append(DetectedItem(p.resolve(), kind))

    # deterministic ordering; file order is merge order
    items.sort(key=lambda x: str(x.path))
    return items
