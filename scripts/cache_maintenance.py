#!/usr/bin/env python3
"""
Inspect and prune the on-disk tile cache.

Examples:
  python scripts/cache_maintenance.py stats
  python scripts/cache_maintenance.py evict --max-age-hours 720
  python scripts/cache_maintenance.py clear --root data/tile_cache
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import timedelta

# Add the project root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.logging_setup import setup_logging
from mosaic.config import load_config
from tile_store.cache import TileCache


def main() -> int:
    ap = argparse.ArgumentParser(description="Tile cache maintenance")
    ap.add_argument("command", choices=["stats", "evict", "clear"])
    ap.add_argument("--max-age-hours", type=float, default=None,
                    help="evict: drop entries not accessed for this long (default from config)")
    ap.add_argument("--root", default=None, help="Cache root (default from config)")
    ap.add_argument("--config", default=None)
    args = ap.parse_args()

    P = load_config(args.config)
    setup_logging(P.get("logging", {}).get("level"))
    c = P.get("cache", {})
    root = args.root or c.get("root", "data/tile_cache")

    with TileCache(root, min_size=int(c.get("min_size_bytes", 1024))) as cache:
        if args.command == "stats":
            print(json.dumps(cache.stats(), indent=2))
        elif args.command == "evict":
            hours = args.max_age_hours if args.max_age_hours is not None else float(c.get("max_age_hours", 720))
            if hours < 0:
                print("Error: --max-age-hours must be >= 0")
                return 1
            removed = cache.evict_older_than(timedelta(hours=hours))
            print(f"Evicted {len(removed)} entries older than {hours:g} h")
        else:
            n = cache.clear()
            print(f"Cleared {n} entries from {root}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
