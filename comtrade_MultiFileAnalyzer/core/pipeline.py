# comtrade_MultiFileAnalyzer/core/pipeline.py
from __future__ import annotations
import logging
from pathlib import Path

from .errors import ErrorDescriptor
from .model import ParsedFileSet
from .orchestrator import Orchestrator
from .plotting import save_group_plots
from .reports import write_computed_report, write_delta_report, write_merge_report
from .storage import JsonFileKeyValueStore, MemoryKeyValueStore

_LOG = logging.getLogger(__name__)


def _expressions(cfg: dict) -> list[dict]:
    """``computed.expressions`` entries: a bare string or ``{equation, unit, group}``."""
    out = []
    for item in (cfg.get("computed", {}) or {}).get("expressions", []) or []:
        if isinstance(item, str):
            out.append({"equation": item})
        elif isinstance(item, dict) and item.get("equation"):
            out.append(item)
        else:
            _LOG.warning("ignoring computed expression entry %r", item)
    return out


def _kv_store(cfg: dict, out_root: Path):
    path = (cfg.get("storage", {}) or {}).get("path")
    if not path:
        return MemoryKeyValueStore()
    p = Path(path)
    return JsonFileKeyValueStore(p if p.is_absolute() else out_root / p)


def run_pipeline(file_sets: list[ParsedFileSet], cfg: dict, out_root: Path, station: str = "station") -> Orchestrator | None:
    """Merge one station's file sets, evaluate configured expressions, write reports and plots."""
    verbose = bool(cfg.get("logging", {}).get("verbose", True))
    station_dir = out_root / station
    station_dir.mkdir(parents=True, exist_ok=True)

    orch = Orchestrator(config=cfg, kv_store=_kv_store(cfg, out_root),
                        max_workers=int((cfg.get("computed", {}) or {}).get("workers", 2)))
    try:
        merged = orch.load_file_sets(file_sets)
        if isinstance(merged, ErrorDescriptor):
            print(f"[WARN] {station}: merge failed: {merged.message}")
            return None
        rec = orch.recording
        if verbose:
            print(f"[merge] {station}: {len(file_sets)} file(s) → {rec.sample_count} samples, "
                  f"{len(rec.analog_channels)} analog / {len(rec.digital_channels)} digital, "
                  f"{len(orch.groups)} group(s), max axes {orch.max_axes.value}")

        # computed channels
        requests = []
        for item in _expressions(cfg):
            rid = orch.submit_computed(item["equation"], unit=item.get("unit"), group=item.get("group"))
            if isinstance(rid, ErrorDescriptor):
                print(f"[WARN] {station}: {item['equation']!r}: {rid.message}")
                continue
            requests.append(rid)
        timeout = (cfg.get("computed", {}) or {}).get("timeout_s")
        for rid in requests:
            orch.wait(rid, timeout=float(timeout) if timeout else None)
            if orch.workers.status(rid) == "running":
                orch.terminate(rid)
        orch.poll()
        if verbose and requests:
            print(f"[computed] {station}: {len(rec.computed_channels)} of {len(requests)} channel(s) added")

        # reports
        rep = cfg.get("reports", {}) or {}
        fmt = str(rep.get("format", "csv")).lower()
        write_merge_report(merged, station_dir / "merge", f"{station} merge", fmt=fmt,
                           mat_variable=str(rep.get("mat_variable", "merge")))
        write_computed_report(rec, station_dir / "computed", f"{station} computed", fmt=fmt)

        cursors = [float(c) for c in (cfg.get("cursors", {}) or {}).get("positions", []) or []]
        if cursors:
            table = orch.delta_table(cursors)
            if isinstance(table, ErrorDescriptor):
                print(f"[WARN] {station}: cursor deltas failed: {table.message}")
            else:
                write_delta_report(table, station_dir / "deltas", f"{station} deltas", fmt=fmt)

        # plots
        plots = cfg.get("plots", {}) or {}
        if bool(plots.get("enabled", True)):
            charts = [orch.chart_series(g) for g in orch.groups] + orch.computed_only_series()
            digital = orch.digital_series()
            if digital is not None:
                charts.append(digital)
            save_group_plots(charts, orch.max_axes.value, station_dir / "plots", cursors,
                             prefix=station, max_points=int(plots.get("max_points", 20000)))

        for desc in orch.errors:
            _LOG.debug("%s: recorded error %s", station, desc.to_dict())
        return orch
    finally:
        orch.close()
