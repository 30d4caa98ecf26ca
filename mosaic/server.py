from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from common.errors import AssemblyFailure, IndexingError, NeighborAmbiguity
from common.logging_setup import setup_logging
from common.types import SkyPosition
from mosaic.assembler import MosaicAssembler
from mosaic.config import MosaicConfig, load_config
from mosaic.render import annotate, encode_png
from tile_store.cache import TileCache
from tile_store.fetcher import TileFetcher


log = logging.getLogger(__name__)


def create_app(
    P: Optional[Dict[str, Any]] = None,
    *,
    assembler_factory: Optional[Callable[[], MosaicAssembler]] = None,
) -> FastAPI:
    """
    Build the HTTP surface. Each request gets its own MosaicAssembler; the
    tile cache and fetcher are shared (the cache serializes writers per key).
    """
    P = P if P is not None else load_config()
    lg = P.get("logging", {})
    setup_logging(lg.get("level"), lg.get("file"))
    cfg = MosaicConfig.from_dict(P)
    annotated = bool(P.get("mosaic", {}).get("annotate", True))

    if assembler_factory is None:
        c = P.get("cache", {})
        f = P.get("fetch", {})
        cache = TileCache(str(c.get("root", "data/tile_cache")), min_size=int(c.get("min_size_bytes", 1024)))
        fetcher = TileFetcher(timeout=float(f.get("timeout_s", cfg.fetch_timeout_s)),
                              user_agent=str(f.get("user_agent") or "SkyMosaic/1.0 (HiPS tile mosaic builder)"))

        def assembler_factory() -> MosaicAssembler:
            return MosaicAssembler(cfg, cache=cache, fetcher=fetcher)

    make = assembler_factory

    app = FastAPI(title="SkyMosaic API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _target(ra: float, dec: float, name: str = "") -> SkyPosition:
        try:
            return SkyPosition(ra, dec, name=name, description="User-defined coordinates")
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "survey": cfg.survey.key,
            "order": cfg.order,
            "tile_size": cfg.tile_size,
            "output_size": cfg.output_size,
        }

    @app.get("/cache/stats")
    def cache_stats():
        return {"cache": make().cache.stats()}

    @app.get("/grid")
    def grid(ra: float = Query(...), dec: float = Query(...), order: Optional[int] = Query(None)):
        """3x3 layout (pixels, centres, URLs) for a target without fetching anything."""
        target = _target(ra, dec)
        asm = make()
        try:
            g = asm.begin(target, order)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except (IndexingError, NeighborAmbiguity) as e:
            return JSONResponse({"error": type(e).__name__, "detail": str(e)}, status_code=500)
        return {
            "target": target.to_dict(),
            "order": g.order,
            "center_pixel": g.center.pixel.value,
            "rows": g.pixel_rows(),
            "cells": [{k: v for k, v in c.items() if k != "image_size"} for c in g.to_meta()],
        }

    @app.get("/mosaic")
    def mosaic(
        ra: float = Query(...),
        dec: float = Query(...),
        name: str = Query(""),
        order: Optional[int] = Query(None),
    ):
        """
        Return the centred mosaic as PNG with an `X-Mosaic-Metadata` header (JSON).
        502 when no tile could be downloaded, 500 on indexing/neighbour defects.
        """
        target = _target(ra, dec, name)
        asm = make()
        try:
            out = asm.run(target, order)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except AssemblyFailure as e:
            log.warning("Mosaic request failed: %s", e, extra={"extra": e.context})
            return JSONResponse({"error": "assembly_failed", "detail": str(e),
                                 "cells": asm.report.cells}, status_code=502)
        except (IndexingError, NeighborAmbiguity) as e:
            log.error("Grid defect: %s", e, extra={"extra": e.context})
            return JSONResponse({"error": type(e).__name__, "detail": str(e)}, status_code=500)

        img = annotate(out) if annotated else out.image
        meta = {
            **out.to_meta(),
            "order": asm.report.order,
            "survey": asm.report.survey,
            "arcsec_per_pixel": asm.report.arcsec_per_pixel,
            "warnings": asm.report.warnings,
            "sources": [c["source"] for c in asm.report.cells],
        }
        headers = {
            "X-Mosaic-Metadata": json.dumps(meta),
            "Cache-Control": "no-store",
        }
        return Response(content=encode_png(img), media_type="image/png", headers=headers)

    return app


# -------- local dev entrypoint --------
# uvicorn --factory mosaic.server:create_app
if __name__ == "__main__":
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
