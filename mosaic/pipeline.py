from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import requests

from common.errors import MosaicError
from common.logging_setup import setup_logging
from common.types import CenteredMosaic, SkyPosition
from mosaic.assembler import MosaicAssembler, ProgressCallback
from mosaic.config import MosaicConfig, load_config
from mosaic.render import save_mosaic
from mosaic.report import write_report
from tile_store.cache import TileCache
from tile_store.fetcher import TileFetcher


log = logging.getLogger(__name__)


@dataclass
class MosaicOutputs:
    mosaic: CenteredMosaic
    image_path: Path
    report_path: Path
    manifest_path: Path


def build_assembler(
    P: Dict[str, Any],
    *,
    session: Optional[requests.Session] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> MosaicAssembler:
    """Wire cache, fetcher and config from a loaded params dict."""
    cfg = MosaicConfig.from_dict(P)
    c = P.get("cache", {})
    f = P.get("fetch", {})
    cache = TileCache(str(c.get("root", "data/tile_cache")), min_size=int(c.get("min_size_bytes", 1024)))
    fetcher = TileFetcher(
        session,
        timeout=float(f.get("timeout_s", cfg.fetch_timeout_s)),
        user_agent=str(f.get("user_agent") or "SkyMosaic/1.0 (HiPS tile mosaic builder)"),
    )
    return MosaicAssembler(cfg, cache=cache, fetcher=fetcher, on_progress=on_progress)


def run_mosaic(
    assembler: MosaicAssembler,
    target: SkyPosition,
    out_dir: str,
    *,
    order: Optional[int] = None,
    output_size: Optional[int] = None,
    annotated: bool = True,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> MosaicOutputs:
    """
    Run one mosaic and write its outputs. The report and manifest are written
    even when the run fails, then the error is re-raised.
    """
    try:
        mosaic = assembler.run(target, order, output_size=output_size, should_cancel=should_cancel)
    except MosaicError:
        txt, js = write_report(assembler.report, out_dir)
        log.info("Failure report written", extra={"extra": {"report": str(txt)}})
        raise

    png = save_mosaic(mosaic, out_dir, annotated=annotated)
    txt, js = write_report(assembler.report, out_dir)
    log.info("Outputs written", extra={"extra": {"image": str(png), "report": str(txt), "manifest": str(js)}})
    return MosaicOutputs(mosaic=mosaic, image_path=png, report_path=txt, manifest_path=js)


def _progress(done: int, total: int, cell) -> None:
    print(f"[{done}/{total}] ({cell.grid_x},{cell.grid_y}) pixel {cell.pixel.value}: {cell.source}", file=sys.stderr)


def main(argv: Optional[list] = None) -> int:
    ap = argparse.ArgumentParser(description="Target-centred HiPS 3x3 mosaic builder")
    ap.add_argument("--ra", type=float, required=True, help="Right ascension (deg)")
    ap.add_argument("--dec", type=float, required=True, help="Declination (deg)")
    ap.add_argument("--name", default="", help="Target name (used for file names and labels)")
    ap.add_argument("--description", default="User-defined coordinates")
    ap.add_argument("--order", type=int, default=None, help="Override HEALPix order")
    ap.add_argument("--survey", default=None, help="Survey key, e.g. DSS2_Color")
    ap.add_argument("--output-size", type=int, default=None, help="Output edge length (px)")
    ap.add_argument("--config", default=None, help="params YAML (default config/params.yaml)")
    ap.add_argument("--out", default=None, help="Output directory")
    ap.add_argument("--no-annotate", action="store_true", help="Skip crosshair and labels")
    args = ap.parse_args(argv)

    P = load_config(args.config)
    lg = P.get("logging", {})
    setup_logging(lg.get("level"), lg.get("file"))
    if args.survey:
        P["mosaic"]["survey"] = args.survey

    try:
        target = SkyPosition(args.ra, args.dec, name=args.name, description=args.description)
        assembler = build_assembler(P, on_progress=_progress)
    except ValueError as e:
        log.error("Invalid input: %s", e)
        return 1

    out_dir = args.out or P["mosaic"].get("output_dir", "data/mosaics")
    annotated = bool(P["mosaic"].get("annotate", True)) and not args.no_annotate
    try:
        res = run_mosaic(assembler, target, out_dir, order=args.order,
                         output_size=args.output_size, annotated=annotated)
    except (MosaicError, ValueError) as e:
        log.error("Mosaic failed: %s", e)
        return 1
    finally:
        assembler.fetcher.close()
        assembler.cache.close()

    print(res.image_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
