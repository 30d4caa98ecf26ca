from __future__ import annotations

"""
MosaicAssembler: builds a target-centred mosaic from a 3x3 HEALPix tile grid.

States:
    IDLE -> GRID_BUILT -> FETCHING -> ALL_RESOLVED -> RAW_ASSEMBLED -> CENTERED -> DONE
    FAILED is entered on unrecoverable conditions (indexing/neighbour defects,
    zero tiles, cancellation). A failed tile only degrades its own cell.

Tiles are resolved sequentially in row-major order (NW ... SE); each tile's
cache-check -> fetch -> put runs under the cache's per-key lock.
"""

import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import cv2
import numpy as np

from common.errors import (
    AssemblyFailure,
    CacheCorruption,
    CropOutOfBounds,
    MosaicError,
    RunCancelled,
    TileFetchFailure,
)
from common.geo import angular_distance, cos_corrected_offset_arcsec, offset_to_pixels
from common.types import CenteredMosaic, SkyPosition, TileCell, TileGrid
from common.utils import Stopwatch, clamp_int, iso_now_ms
from mosaic.config import MosaicConfig
from mosaic.report import RunReport
from sky_index.indexer import SkyIndexer
from sky_index.neighbors import NeighborResolver
from tile_store.cache import TileCache, TileQuery
from tile_store.fetcher import TileFetcher


log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, TileCell], None]


class MosaicState(str, Enum):
    IDLE = "idle"
    GRID_BUILT = "grid_built"
    FETCHING = "fetching"
    ALL_RESOLVED = "all_resolved"
    RAW_ASSEMBLED = "raw_assembled"
    CENTERED = "centered"
    DONE = "done"
    FAILED = "failed"


class MosaicAssembler:
    def __init__(
        self,
        config: MosaicConfig,
        *,
        cache: TileCache,
        fetcher: TileFetcher,
        indexer: Optional[SkyIndexer] = None,
        resolver: Optional[NeighborResolver] = None,
        on_progress: Optional[ProgressCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.cache = cache
        self.fetcher = fetcher
        self.indexer = indexer or SkyIndexer()
        self.resolver = resolver or NeighborResolver(self.indexer)
        self.on_progress = on_progress
        self._sleep = sleep
        self._reset()

    def _reset(self) -> None:
        self._state = MosaicState.IDLE
        self._cfg = self.config
        self._target: Optional[SkyPosition] = None
        self._grid: Optional[TileGrid] = None
        self._raw: Optional[np.ndarray] = None
        self._target_px: Optional[Tuple[int, int]] = None
        self._attempted: Dict[str, TileCell] = {}
        self.report = RunReport()

    # ----------------------------
    # State / accessors
    # ----------------------------
    @property
    def state(self) -> MosaicState:
        return self._state

    @property
    def grid(self) -> TileGrid:
        if self._grid is None:
            raise RuntimeError("no grid yet; call begin() first")
        return self._grid

    @property
    def raw(self) -> np.ndarray:
        if self._raw is None:
            raise RuntimeError("raw mosaic not assembled yet")
        return self._raw

    @property
    def target(self) -> SkyPosition:
        if self._target is None:
            raise RuntimeError("no target; call begin() first")
        return self._target

    def _require(self, *states: MosaicState) -> None:
        if self._state not in states:
            allowed = ", ".join(s.value for s in states)
            raise RuntimeError(f"invalid transition from {self._state.value} (expected {allowed})")

    def _enter(self, state: MosaicState) -> None:
        log.debug("State %s -> %s", self._state.value, state.value)
        self._state = state
        self.report.state = state.value

    def _fail(self, err: MosaicError) -> None:
        self._enter(MosaicState.FAILED)
        self.report.error = str(err)
        self.report.finished_at = iso_now_ms()
        if self._grid is not None:
            self.report.snapshot_grid(self._grid)
        log.error("Mosaic run failed: %s", err, extra={"extra": err.context})

    # ----------------------------
    # Pipeline steps
    # ----------------------------
    def begin(self, target: SkyPosition, order: Optional[int] = None) -> TileGrid:
        """Index the target, build the 3x3 grid and each cell's URL + cache key."""
        self._require(MosaicState.IDLE, MosaicState.DONE, MosaicState.FAILED)
        self._reset()
        cfg = self.config if order is None else self.config.with_order(order)
        self._cfg = cfg
        self._target = target
        self.report.target = target
        self.report.order = cfg.order
        self.report.survey = cfg.survey.key
        self.report.arcsec_per_pixel = cfg.pixel_scale()
        if not cfg.survey.covers(target):
            self.report.warn(f"survey {cfg.survey.key} covers {', '.join(cfg.survey.coverage)}; "
                             f"target at dec {target.dec_deg:+.2f} may have no tiles")
            log.warning("Target outside survey footprint",
                        extra={"extra": {"survey": cfg.survey.key, "coverage": list(cfg.survey.coverage),
                                         "dec": target.dec_deg}})
        sw = Stopwatch()

        try:
            center = self.indexer.index_for(target, cfg.order)
            grid = self.resolver.build_3x3(center)
        except MosaicError as e:
            self._fail(e)
            raise

        source = cfg.survey.source_id(cfg.order)
        for cell in grid:
            cell.url = cfg.survey.tile_url(cell.pixel)
            cell.cache_key = self.cache.key_for(self._query_for(cell, source))
            dist_arcsec = np.degrees(angular_distance(target, cell.sky)) * 3600.0
            log.debug(
                "Grid cell",
                extra={"extra": {
                    "grid": [cell.grid_x, cell.grid_y],
                    "pixel": cell.pixel.value,
                    "direction": cell.direction.value if cell.direction else "C",
                    "fallback": cell.is_edge_fallback,
                    "dist_arcsec": round(float(dist_arcsec), 1),
                }},
            )

        self._grid = grid
        self.report.center_pixel = center.value
        self.report.timings_ms["grid"] = sw.ms
        self._enter(MosaicState.GRID_BUILT)
        log.info(
            "Tile grid built",
            extra={"extra": {"target": target.name, "ra": target.ra_deg, "dec": target.dec_deg,
                             "order": cfg.order, "center_pixel": center.value, "rows": grid.pixel_rows()}},
        )
        return grid

    def resolve_tiles(self, should_cancel: Optional[Callable[[], bool]] = None) -> TileGrid:
        """
        Visit all nine cells once: cache hit, else one fetch. Failures are
        recorded on the cell and the run continues. `should_cancel` is polled
        before every attempt; a True aborts with RunCancelled (tiles already
        cached stay cached).
        """
        self._require(MosaicState.GRID_BUILT)
        self._enter(MosaicState.FETCHING)
        sw = Stopwatch()
        cells = list(self.grid)
        for i, cell in enumerate(cells):
            if should_cancel is not None and should_cancel():
                err = RunCancelled("run cancelled", completed=i, total=len(cells))
                self._fail(err)
                raise err
            fetched = self._resolve_cell(cell)
            if self.on_progress is not None:
                self.on_progress(i + 1, len(cells), cell)
            if fetched and self._cfg.inter_tile_delay_s > 0 and i + 1 < len(cells):
                self._sleep(self._cfg.inter_tile_delay_s)

        self.report.timings_ms["fetch"] = sw.ms
        self.report.snapshot_grid(self.grid)
        self._enter(MosaicState.ALL_RESOLVED)
        log.info("All tiles resolved",
                 extra={"extra": {"downloaded": self.grid.downloaded_count,
                                  "failed": len(self.report.failed_cells)}})
        return self.grid

    def assemble_raw(self) -> np.ndarray:
        """Blit every downloaded tile onto a (3*tile)^2 canvas pre-filled with the sentinel colour."""
        self._require(MosaicState.ALL_RESOLVED)
        ts = int(self._cfg.tile_size)  # type: ignore[arg-type]
        used = [c for c in self.grid if c.downloaded and c.image is not None and not c.is_edge_fallback]
        if not used:
            err = AssemblyFailure("no tiles downloaded", target=self.target.name,
                                  ra_deg=self.target.ra_deg, dec_deg=self.target.dec_deg,
                                  order=self._cfg.order, survey=self._cfg.survey.key)
            self._fail(err)
            raise err

        size = self._cfg.canvas_size
        canvas = np.empty((size, size, 3), dtype=np.uint8)
        canvas[:] = np.asarray(self._cfg.fill_color, dtype=np.uint8)
        for c in used:
            x0, y0 = c.grid_x * ts, c.grid_y * ts
            canvas[y0:y0 + ts, x0:x0 + ts] = c.image
            log.debug("Placed tile", extra={"extra": {"grid": [c.grid_x, c.grid_y], "at": [x0, y0]}})
        for c in self.grid:
            if c not in used:
                log.debug("Cell left blank", extra={"extra": {"grid": [c.grid_x, c.grid_y], "source": c.source}})

        self._raw = canvas
        self.report.tiles_used = len(used)
        self._enter(MosaicState.RAW_ASSEMBLED)
        return canvas

    def locate_target_pixel(self) -> Tuple[int, int]:
        """
        Canvas (x, y) of the exact target. Uses the non-fallback cell whose
        centre is angularly nearest the target, offsets from that cell's pixel
        centre by the cos(dec)-corrected angular offset, clamps to the canvas.
        """
        self._require(MosaicState.RAW_ASSEMBLED)
        target = self.target
        ts = int(self._cfg.tile_size)  # type: ignore[arg-type]
        size = self._cfg.canvas_size

        nearest = min(self.grid.real_cells(), key=lambda c: angular_distance(target, c.sky))
        if not nearest.downloaded:
            self.report.warn(f"tile containing the target ({nearest.grid_x},{nearest.grid_y}) "
                             f"pixel {nearest.pixel.value} was not downloaded")

        d_ra, d_dec = cos_corrected_offset_arcsec(nearest.sky, target)
        dx, dy = offset_to_pixels(d_ra, d_dec, self._cfg.pixel_scale())
        cx = nearest.grid_x * ts + ts // 2
        cy = nearest.grid_y * ts + ts // 2
        x = clamp_int(cx + int(round(dx)), 0, size - 1)
        y = clamp_int(cy + int(round(dy)), 0, size - 1)
        if (x, y) != (cx + int(round(dx)), cy + int(round(dy))):
            self.report.warn(f"target pixel clamped to canvas at ({x},{y})")

        log.info(
            "Target located",
            extra={"extra": {"cell": [nearest.grid_x, nearest.grid_y], "pixel": nearest.pixel.value,
                             "offset_arcsec": [round(d_ra, 2), round(d_dec, 2)],
                             "offset_px": [round(dx, 1), round(dy, 1)], "raw_px": [x, y]}},
        )
        self._target_px = (x, y)
        self.report.raw_target_px = (x, y)
        self._enter(MosaicState.CENTERED)
        return x, y

    def crop_centered(self, target_pixel: Tuple[int, int], output_size: Optional[int] = None) -> CenteredMosaic:
        """
        Square crop centred on `target_pixel`, slid back inside the canvas
        when it would overhang: origin = clamp(t - size//2, 0, canvas - size).
        """
        self._require(MosaicState.CENTERED)
        raw = self.raw
        h, w = raw.shape[:2]
        requested = int(output_size or self._cfg.output_size)
        try:
            size = fit_output_size(requested, min(w, h))
        except CropOutOfBounds as e:
            log.warning("%s", e, extra={"extra": e.context})
            self.report.warn(str(e))
            size = e.available

        tx, ty = int(target_pixel[0]), int(target_pixel[1])
        ox = clamp_int(tx - size // 2, 0, w - size)
        oy = clamp_int(ty - size // 2, 0, h - size)
        if (ox, oy) != (tx - size // 2, ty - size // 2):
            log.info("Crop slid to stay inside canvas",
                     extra={"extra": {"naive": [tx - size // 2, ty - size // 2], "origin": [ox, oy]}})

        img = raw[oy:oy + size, ox:ox + size].copy()
        result = CenteredMosaic(
            image=img,
            target=self.target,
            raw_target_px=(tx, ty),
            crop_origin=(ox, oy),
            tiles_used=self.report.tiles_used,
        )
        self.report.crop_origin = (ox, oy)
        self.report.output_size = size
        self.report.finished_at = iso_now_ms()
        self._enter(MosaicState.DONE)
        return result

    def run(
        self,
        target: SkyPosition,
        order: Optional[int] = None,
        *,
        output_size: Optional[int] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> CenteredMosaic:
        """begin -> resolve_tiles -> assemble_raw -> locate_target_pixel -> crop_centered."""
        sw = Stopwatch()
        self.begin(target, order)
        self.resolve_tiles(should_cancel)
        self.assemble_raw()
        px = self.locate_target_pixel()
        out = self.crop_centered(px, output_size)
        self.report.timings_ms["total"] = sw.ms
        log.info("Mosaic complete",
                 extra={"extra": {"target": target.name, "size": out.size, "tiles_used": out.tiles_used,
                                  "raw_px": list(px), "crop_origin": list(out.crop_origin)}})
        return out

    # ----------------------------
    # Per-tile resolution
    # ----------------------------
    def _query_for(self, cell: TileCell, source: str) -> TileQuery:
        ts = int(self._cfg.survey.tile_width)
        return TileQuery(cell.sky.ra_deg, cell.sky.dec_deg, ts, ts, source, self._cfg.survey.fmt)

    def _resolve_cell(self, cell: TileCell) -> bool:
        """Returns True when a network fetch was attempted."""
        ctx = {"grid": [cell.grid_x, cell.grid_y], "pixel": cell.pixel.value}
        if cell.is_edge_fallback:
            cell.source = "fallback"
            log.info("Skipping edge-fallback cell", extra={"extra": ctx})
            return False

        earlier = self._attempted.get(cell.cache_key)
        if earlier is not None:
            cell.downloaded, cell.image, cell.nbytes = earlier.downloaded, earlier.image, earlier.nbytes
            cell.source, cell.error = earlier.source, earlier.error
            return False
        self._attempted[cell.cache_key] = cell

        with self.cache.lock_for(cell.cache_key):
            data = self.cache.get(cell.cache_key)
            if data is not None:
                try:
                    self._accept(cell, data, "cache")
                    log.info("Reusing cached tile", extra={"extra": ctx})
                    return False
                except TileFetchFailure as e:
                    log.warning("Cached tile undecodable; refetching: %s", e, extra={"extra": ctx})

            sw = Stopwatch()
            try:
                data = self.fetcher.fetch(cell.url, timeout=self._cfg.fetch_timeout_s)
                self._accept(cell, data, "download")
            except TileFetchFailure as e:
                cell.source = "failed"
                cell.error = str(e)
                self.report.warn(f"tile ({cell.grid_x},{cell.grid_y}) pixel {cell.pixel.value}: {e}")
                log.warning("Tile download failed: %s", e, extra={"extra": {**ctx, "url": cell.url}})
                return True

            try:
                self.cache.put(cell.cache_key, data, self._query_for(cell, self._cfg.survey.source_id(self._cfg.order)),
                               object_name=self.target.name)
            except (CacheCorruption, OSError) as e:
                self.report.warn(f"tile ({cell.grid_x},{cell.grid_y}) not cached: {e}")
                log.warning("Tile not cached: %s", e, extra={"extra": ctx})

        log.info("Tile downloaded",
                 extra={"extra": {**ctx, "bytes": len(data), "latency_ms": sw.ms,
                                  "size": [int(cell.image.shape[1]), int(cell.image.shape[0])]}})
        return True

    def _accept(self, cell: TileCell, data: bytes, source: str) -> None:
        cell.image = decode_tile(data, int(self._cfg.tile_size), url=cell.url)  # type: ignore[arg-type]
        cell.nbytes = len(data)
        cell.downloaded = True
        cell.source = source
        cell.error = None


def decode_tile(data: bytes, tile_size: int, *, url: str = "") -> np.ndarray:
    """Decode an image payload to BGR uint8 at tile_size x tile_size."""
    arr = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR) if arr.size else None
    if img is None or img.size == 0 or img.shape[0] == 0 or img.shape[1] == 0:
        raise TileFetchFailure("payload is not a decodable image", url=url or None, bytes=len(data))
    if img.shape[0] != tile_size or img.shape[1] != tile_size:
        log.debug("Resizing tile", extra={"extra": {"from": [int(img.shape[1]), int(img.shape[0])], "to": tile_size}})
        img = cv2.resize(img, (tile_size, tile_size), interpolation=cv2.INTER_AREA)
    return img


def fit_output_size(requested: int, available: int) -> int:
    """`requested` if it fits in `available`, else CropOutOfBounds (caller clamps)."""
    if requested <= 0:
        raise ValueError("output size must be > 0")
    if requested > available:
        raise CropOutOfBounds(requested, available)
    return requested
