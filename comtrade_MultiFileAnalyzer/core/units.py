# comtrade_MultiFileAnalyzer/core/units.py
from __future__ import annotations
import re
from typing import Literal

PhysicalType = Literal["voltage", "current", "power", "frequency", "unknown"]

# keys are already upper-cased: lookups normalise the unit the same way
_UNIT_TO_TYPE: dict[str, PhysicalType] = {
    "V": "voltage", "MV": "voltage", "KV": "voltage",
    "A": "current", "MA": "current", "KA": "current",
    "W": "power", "KW": "power", "MW": "power",
    "VA": "power", "KVA": "power", "VAR": "power", "KVAR": "power",
    "HZ": "frequency",
}

_TYPE_TO_SLOT: dict[str, int] = {
    "voltage": 0,
    "current": 1,
    "power": 1,
    "frequency": 1,
}

_UNIT_IN_LABEL = re.compile(r"\(([^)]+)\)")


def classify_unit(unit) -> PhysicalType:
    if not unit or not isinstance(unit, str):
        return "unknown"
    return _UNIT_TO_TYPE.get(unit.strip().upper(), "unknown")


def axis_slot_for(tag: str) -> int:
    return _TYPE_TO_SLOT.get(tag, 0)


def axis_slot_for_unit(unit) -> int:
    return axis_slot_for(classify_unit(unit))


def extract_unit(label) -> str:
    """'IA (kA)' -> 'kA'; labels without parentheses have no unit."""
    if not label:
        return ""
    m = _UNIT_IN_LABEL.search(str(label))
    return m.group(1).strip() if m else ""
