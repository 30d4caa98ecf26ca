from __future__ import annotations

"""
NeighborResolver: the eight HEALPix neighbours of a pixel, labelled by
compass octant, and the 3x3 TileGrid built from them.

HEALPix pixels are diamonds and the native neighbour slots do not follow a
universal compass order, so every neighbour's direction is re-derived from
its actual bearing (position angle from the centre pixel's centroid, valid
at any separation including order 0), then matched one-to-one against the
8 octants.
"""

import logging
from typing import Dict, List, Optional, Tuple

from common.errors import NeighborAmbiguity
from common.geo import angular_gap_deg, position_angle_deg
from common.types import (
    Direction,
    DirectionalNeighbors,
    PixelIndex,
    TileCell,
    TileGrid,
)
from sky_index.indexer import SkyIndexer


log = logging.getLogger(__name__)


class NeighborResolver:
    def __init__(self, indexer: Optional[SkyIndexer] = None):
        self.indexer = indexer or SkyIndexer()

    # ----------------------------
    # Public API
    # ----------------------------
    def bearings(self, center: PixelIndex) -> List[Tuple[PixelIndex, float]]:
        """(neighbour, bearing east of north in degrees) for every existing neighbour."""
        c_pos = self.indexer.center_of(center)
        out: List[Tuple[PixelIndex, float]] = []
        for raw in self.indexer.native_neighbours(center):
            if raw < 0:
                continue
            if raw == center.value:
                raise NeighborAmbiguity("pixel listed as its own neighbour",
                                        pixel=center.value, order=center.order)
            nb = PixelIndex(raw, center.order)
            out.append((nb, position_angle_deg(c_pos, self.indexer.center_of(nb))))
        return out

    def neighbors_of(self, center: PixelIndex) -> DirectionalNeighbors:
        """
        Up to 8 neighbours keyed by Direction.

        Assignment is greedy on angular gap: the (neighbour, octant) pair with
        the smallest gap is taken first, and neither side is reused. A
        neighbour therefore lands in its nearest octant unless a closer
        neighbour already claimed it; octants left over stay absent.
        """
        candidates = self.bearings(center)
        pairs: List[Tuple[float, int, Direction, PixelIndex]] = []
        for nb, bearing in candidates:
            for d in Direction:
                pairs.append((angular_gap_deg(bearing, d.bearing_deg), nb.value, d, nb))
        pairs.sort(key=lambda p: (p[0], p[1], p[2].bearing_deg))

        result: DirectionalNeighbors = {}
        used = set()
        for gap, value, d, nb in pairs:
            if d in result or value in used:
                continue
            result[d] = nb
            used.add(value)
            if gap > 45.0:
                log.debug("Neighbour placed far from its bearing",
                          extra={"extra": {"pixel": value, "direction": d.value, "gap_deg": round(gap, 1)}})

        missing = [d.value for d in Direction if d not in result]
        if missing:
            log.info("Pixel has missing neighbours",
                     extra={"extra": {"pixel": center.value, "order": center.order, "missing": missing}})
        return result

    def build_3x3(self, center: PixelIndex) -> TileGrid:
        """
        Centre at (1,1); each octant at its grid cell. An absent octant gets a
        copy of the centre index with is_edge_fallback=True.
        Raises NeighborAmbiguity if two non-fallback cells share a pixel.
        """
        neighbours = self.neighbors_of(center)
        center_pos = self.indexer.center_of(center)

        cells: List[TileCell] = [
            TileCell(grid_x=1, grid_y=1, pixel=center, sky=center_pos, direction=None)
        ]
        for d in Direction:
            gx, gy = d.grid_xy
            nb = neighbours.get(d)
            if nb is None:
                cells.append(TileCell(grid_x=gx, grid_y=gy, pixel=center, sky=center_pos,
                                      direction=d, is_edge_fallback=True, source="fallback"))
            else:
                cells.append(TileCell(grid_x=gx, grid_y=gy, pixel=nb,
                                      sky=self.indexer.center_of(nb), direction=d))

        grid = TileGrid(cells)
        check_unique(grid)

        if log.isEnabledFor(logging.DEBUG):
            for label, row in zip(("North", "Center", "South"), grid.pixel_rows()):
                log.debug("Grid row %s: %s", label, row)
        return grid


def check_unique(grid: TileGrid) -> None:
    """Raise NeighborAmbiguity when a non-fallback pixel appears more than once."""
    seen: Dict[int, Tuple[int, int]] = {}
    for c in grid.real_cells():
        prev = seen.get(c.pixel.value)
        if prev is not None:
            raise NeighborAmbiguity(
                "duplicate pixel in 3x3 grid",
                pixel=c.pixel.value, order=c.pixel.order,
                cells=f"{prev} and {(c.grid_x, c.grid_y)}",
            )
        seen[c.pixel.value] = (c.grid_x, c.grid_y)
