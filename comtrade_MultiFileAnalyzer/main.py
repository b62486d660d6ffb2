# comtrade_MultiFileAnalyzer/main.py
from __future__ import annotations
from pathlib import Path
import logging
import sys
import yaml

# --- direct runs (python main.py) need the package's parent on the path ---
here = Path(__file__).resolve().parent
if str(here.parent) not in sys.path:
    sys.path.insert(0, str(here.parent))

from comtrade_MultiFileAnalyzer.loaders import csv_loader, record_loader
from comtrade_MultiFileAnalyzer.utils.detect import discover_inputs
from comtrade_MultiFileAnalyzer.core.pipeline import run_pipeline


def load_config(cfg_path: Path) -> dict:
    with cfg_path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _setup_logging(cfg: dict) -> None:
    level = str(cfg.get("logging", {}).get("level", "WARNING")).upper()
    logging.basicConfig(level=getattr(logging, level, logging.WARNING),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def main(argv: list[str] | None = None):
    # ---------- config ----------
    argv = sys.argv[1:] if argv is None else argv
    here = Path(__file__).resolve().parent
    cfg_path = Path(argv[0]) if argv else here / "config.yaml"
    cfg = load_config(cfg_path)
    _setup_logging(cfg)

    in_path = Path(cfg["input"]["path"]).resolve()
    recurse = bool(cfg["input"].get("recurse", True))
    out_root = Path(cfg["output"]["root"]).resolve()
    out_root.mkdir(parents=True, exist_ok=True)

    verbose = bool(cfg.get("logging", {}).get("verbose", True))
    if verbose:
        print(f"[cfg] input={in_path} (recurse={recurse})")
        print(f"[cfg] output={out_root}")

    # ---------- discover ----------
    detected = discover_inputs(in_path, recurse=recurse)
    if not detected:
        print(f"[INFO] No JSON/YAML/CSV inputs found under: {in_path}")
        return 0
    if verbose:
        kinds = {}
        for d in detected:
            kinds.setdefault(d.kind, 0)
            kinds[d.kind] += 1
        print(f"[detector] found {sum(kinds.values())} inputs → {kinds}")

    # ---------- loader registry ----------
    registry = {
        "json": record_loader.load,
        "yaml": record_loader.load,
        "csv":  csv_loader.load,
    }
    station_resolver = {
        "json": record_loader.infer_station_from_path,
        "yaml": record_loader.infer_station_from_path,
        "csv":  csv_loader.infer_station_from_path,
    }

    # files of one station are merged into one recording, in discovery order
    items_by_station: dict[str, list] = {}
    for item in detected:
        resolver = station_resolver.get(item.kind)
        if resolver is None:
            if verbose:
                print(f"[skip] no loader for {item.kind}: {item.path.name}")
            continue
        items_by_station.setdefault(resolver(item.path) or "station", []).append(item)

    if verbose:
        print(f"[grouping] {len(detected)} item(s) across {len(items_by_station)} station(s): "
              f"{', '.join(sorted(items_by_station))}")

    processed = 0
    for station, items in sorted(items_by_station.items()):
        file_sets = []
        if verbose:
            print(f"[station] {station}: loading {len(items)} item(s)")
        for item in items:
            if verbose:
                print(f"  [load] {item.kind:5} {item.path.name}")
            try:
                file_sets.extend(registry[item.kind](item.path, cfg))
            except Exception as e:
                print(f"[WARN] loader failed for {item.path.name}: {e}")

        if not file_sets:
            if verbose:
                print(f"[station] {station}: nothing loaded; skipping pipeline.")
            continue

        if run_pipeline(file_sets, cfg, out_root, station) is not None:
            processed += 1
        if verbose:
            print(f"[summary] finished station {station} with {len(file_sets)} file set(s)")
    return 0 if processed else 1


if __name__ == "__main__":
    sys.exit(main())
