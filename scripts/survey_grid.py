#!/usr/bin/env python3
"""
Build centred mosaics for a batch of positions.

Modes:
  grid     size x size positions around --ra/--dec, --spacing degrees apart
           (RA steps are cos(dec)-corrected)
  targets  a fixed list of well-known objects spread over declination

Examples:
  python scripts/survey_grid.py grid --ra 202.47 --dec 47.20 --size 5 --spacing 0.5
  python scripts/survey_grid.py targets --order 8 --out data/mosaics/targets
"""
from __future__ import annotations

import argparse
import os
import sys
from typing import List

# Add the project root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.errors import AssemblyFailure, MosaicError
from common.logging_setup import get_logger, setup_logging
from common.types import SkyPosition
from mosaic.batch import common_targets, grid_positions
from mosaic.config import load_config
from mosaic.pipeline import build_assembler, run_mosaic


def main() -> int:
    ap = argparse.ArgumentParser(description="Batch mosaic runs over a position grid or target list")
    ap.add_argument("mode", choices=["grid", "targets"])
    ap.add_argument("--ra", type=float, default=None, help="Grid centre RA (deg)")
    ap.add_argument("--dec", type=float, default=None, help="Grid centre Dec (deg)")
    ap.add_argument("--size", type=int, default=3, help="Grid size (NxN)")
    ap.add_argument("--spacing", type=float, default=1.0, help="Grid spacing (deg)")
    ap.add_argument("--order", type=int, default=None, help="Override HEALPix order")
    ap.add_argument("--config", default=None)
    ap.add_argument("--out", default=None, help="Output directory")
    args = ap.parse_args()

    P = load_config(args.config)
    setup_logging(P.get("logging", {}).get("level"), P.get("logging", {}).get("file"))
    log = get_logger("survey_grid")

    if args.mode == "grid":
        if args.ra is None or args.dec is None:
            print("Error: --ra and --dec are required for grid mode")
            print("Example: survey_grid.py grid --ra 202.47 --dec 47.20 --size 5 --spacing 0.5")
            return 1
        positions: List[SkyPosition] = grid_positions(SkyPosition(args.ra, args.dec, name="center"),
                                                      args.size, args.spacing)
    else:
        positions = common_targets()

    out_dir = args.out or P["mosaic"].get("output_dir", "data/mosaics")
    assembler = build_assembler(P)
    ok, failed = 0, 0
    try:
        for i, pos in enumerate(positions, start=1):
            print(f"[{i}/{len(positions)}] {pos.name}: RA={pos.ra_deg:.4f} Dec={pos.dec_deg:.4f}")
            try:
                res = run_mosaic(assembler, pos, out_dir, order=args.order)
                print(f"    -> {res.image_path} ({res.mosaic.tiles_used}/9 tiles)")
                ok += 1
            except AssemblyFailure as e:
                print(f"    -> no tiles: {e}")
                failed += 1
            except MosaicError as e:
                log.error("Mosaic run failed", extra={"extra": {"target": pos.name, "error": str(e)}})
                failed += 1
    finally:
        assembler.fetcher.close()
        assembler.cache.close()

    print(f"Done: {ok} succeeded, {failed} failed")
    print("Cache:", assembler.cache.stats())
    return 0 if failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
