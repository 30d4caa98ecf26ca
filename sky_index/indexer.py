from __future__ import annotations

"""
SkyIndexer: sky position <-> NESTED HEALPix pixel at a given order.

Backed by astropy-healpix. One HEALPix object is kept per order; the order
must stay fixed for a whole mosaic (adjacency and pixel scale are only
meaningful within one order).
"""

import logging
import math
from typing import Dict, List

import numpy as np
import astropy.units as u
from astropy_healpix import HEALPix

from common.errors import IndexingError
from common.geo import angular_distance as _angular_distance
from common.types import MAX_ORDER, PixelIndex, SkyPosition


log = logging.getLogger(__name__)


class SkyIndexer:
    def __init__(self) -> None:
        self._hp: Dict[int, HEALPix] = {}

    # ----------------------------
    # Public API
    # ----------------------------
    def healpix(self, order: int) -> HEALPix:
        order = int(order)
        if not (0 <= order <= MAX_ORDER):
            raise ValueError(f"order must be in [0, {MAX_ORDER}]")
        hp = self._hp.get(order)
        if hp is None:
            hp = HEALPix(nside=1 << order, order="nested")
            self._hp[order] = hp
        return hp

    def index_for(self, position: SkyPosition, order: int) -> PixelIndex:
        """Pixel containing `position` at `order`. Raises IndexingError on numerical failure."""
        hp = self.healpix(order)
        try:
            raw = hp.lonlat_to_healpix(position.ra_deg * u.deg, position.dec_deg * u.deg)
            value = int(np.asarray(raw).reshape(-1)[0])
            return PixelIndex(value=value, order=order)
        except (ValueError, TypeError, OverflowError, IndexError) as e:
            raise IndexingError(
                "forward pixel mapping failed",
                ra_deg=position.ra_deg, dec_deg=position.dec_deg, order=order, cause=str(e),
            ) from e

    def center_of(self, index: PixelIndex) -> SkyPosition:
        """Centroid of a pixel as a SkyPosition named HEALPix_<pix>."""
        hp = self.healpix(index.order)
        try:
            lon, lat = hp.healpix_to_lonlat(index.value)
            ra = float(np.asarray(lon.to_value(u.deg)).reshape(-1)[0])
            dec = float(np.asarray(lat.to_value(u.deg)).reshape(-1)[0])
        except (ValueError, TypeError, IndexError) as e:
            raise IndexingError(
                "inverse pixel mapping failed", pixel=index.value, order=index.order, cause=str(e)
            ) from e
        if not (math.isfinite(ra) and math.isfinite(dec)):
            raise IndexingError("inverse pixel mapping returned non-finite angles",
                                pixel=index.value, order=index.order)
        return SkyPosition(
            ra_deg=ra,
            dec_deg=max(-90.0, min(90.0, dec)),
            name=f"HEALPix_{index.value}",
            description=f"Order {index.order} pixel {index.value}",
        )

    def native_neighbours(self, index: PixelIndex) -> List[int]:
        """
        The library's 8-neighbour enumeration (SW, W, NW, N, NE, E, SE, S slots
        for a typical pixel); -1 marks a missing neighbour. Slot order is not a
        reliable compass mapping, see NeighborResolver.
        """
        hp = self.healpix(index.order)
        try:
            arr = np.asarray(hp.neighbours(index.value)).reshape(-1)
        except (ValueError, TypeError) as e:
            raise IndexingError("neighbour enumeration failed",
                                pixel=index.value, order=index.order, cause=str(e)) from e
        return [int(v) for v in arr]

    @staticmethod
    def angular_distance(a: SkyPosition, b: SkyPosition) -> float:
        """Great-circle distance in radians."""
        return _angular_distance(a, b)
