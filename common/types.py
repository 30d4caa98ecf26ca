from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple
import math

import numpy as np

from common.utils import safe_filename

# Highest HEALPix order representable with 64-bit NESTED indices.
MAX_ORDER = 29


@dataclass(frozen=True, slots=True)
class SkyPosition:
    """
    A point on the celestial sphere (ICRS degrees).

    Attributes:
        ra_deg: right ascension, normalized into [0, 360).
        dec_deg: declination in [-90, 90].
        name: display / file name of the target.
        description: free text (catalog entry, "User-defined coordinates", ...).
    """
    ra_deg: float
    dec_deg: float
    name: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        ra = float(self.ra_deg)
        dec = float(self.dec_deg)
        if not (math.isfinite(ra) and math.isfinite(dec)):
            raise ValueError("ra/dec must be finite")
        if not (-90.0 <= dec <= 90.0):
            raise ValueError(f"dec out of range: {dec}")
        ra = ra % 360.0
        # -1e-17 % 360.0 rounds to 360.0
        if ra >= 360.0:
            ra = 0.0
        object.__setattr__(self, "ra_deg", ra)
        object.__setattr__(self, "dec_deg", dec)

    @property
    def safe_name(self) -> str:
        return safe_filename(self.name or f"ra{self.ra_deg:.4f}_dec{self.dec_deg:+.4f}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ra_deg": self.ra_deg,
            "dec_deg": self.dec_deg,
            "name": self.name,
            "description": self.description,
        }


@dataclass(frozen=True, slots=True)
class PixelIndex:
    """NESTED HEALPix pixel number; only meaningful together with its order."""
    value: int
    order: int

    def __post_init__(self) -> None:
        if not (0 <= int(self.order) <= MAX_ORDER):
            raise ValueError(f"order must be in [0, {MAX_ORDER}]")
        npix = 12 * 4 ** int(self.order)
        if not (0 <= int(self.value) < npix):
            raise ValueError(f"pixel {self.value} out of range for order {self.order} (npix={npix})")
        object.__setattr__(self, "value", int(self.value))
        object.__setattr__(self, "order", int(self.order))

    @property
    def directory(self) -> int:
        """HiPS directory bucket: Dir{(pix // 10000) * 10000}."""
        return (self.value // 10000) * 10000


class Direction(str, Enum):
    """Compass octants, ordered clockwise from north (45° apart)."""
    N = "N"
    NE = "NE"
    E = "E"
    SE = "SE"
    S = "S"
    SW = "SW"
    W = "W"
    NW = "NW"

    @property
    def bearing_deg(self) -> float:
        return 45.0 * _DIRECTION_ORDER.index(self)

    @property
    def grid_xy(self) -> Tuple[int, int]:
        """(column, row) of this direction in the 3x3 grid; row 0 is north, column 0 is west."""
        return _GRID_XY[self]


_DIRECTION_ORDER: List[Direction] = [
    Direction.N, Direction.NE, Direction.E, Direction.SE,
    Direction.S, Direction.SW, Direction.W, Direction.NW,
]

_GRID_XY: Dict[Direction, Tuple[int, int]] = {
    Direction.NW: (0, 0), Direction.N: (1, 0), Direction.NE: (2, 0),
    Direction.W: (0, 1), Direction.E: (2, 1),
    Direction.SW: (0, 2), Direction.S: (1, 2), Direction.SE: (2, 2),
}

# Partial mapping: directions without a neighbour are simply absent.
DirectionalNeighbors = Dict[Direction, PixelIndex]


@dataclass(slots=True)
class TileCell:
    """
    One cell of the 3x3 grid.

    `is_edge_fallback` marks cells whose neighbour was missing and that carry
    a copy of the centre index; they are never fetched, blitted or used for
    offset math.
    """
    grid_x: int
    grid_y: int
    pixel: PixelIndex
    sky: SkyPosition
    direction: Optional[Direction] = None
    is_edge_fallback: bool = False
    url: str = ""
    cache_key: str = ""
    downloaded: bool = False
    source: str = "pending"   # pending|cache|download|failed|fallback|skipped
    nbytes: int = 0
    error: Optional[str] = None
    image: Optional[np.ndarray] = field(default=None, repr=False)

    def to_meta(self) -> Dict[str, Any]:
        """Metadata without image bytes (safe to log/serialize)."""
        return {
            "grid_x": self.grid_x,
            "grid_y": self.grid_y,
            "pixel": self.pixel.value,
            "order": self.pixel.order,
            "ra_deg": self.sky.ra_deg,
            "dec_deg": self.sky.dec_deg,
            "direction": self.direction.value if self.direction else "C",
            "is_edge_fallback": self.is_edge_fallback,
            "downloaded": self.downloaded,
            "source": self.source,
            "bytes": self.nbytes,
            "image_size": None if self.image is None else [int(self.image.shape[1]), int(self.image.shape[0])],
            "url": self.url,
            "cache_key": self.cache_key,
            "error": self.error,
        }


class TileGrid:
    """
    3x3 arrangement of TileCells, indexed [row][col] internally.

    Row 0 = north edge, row 2 = south; column 0 = west, column 2 = east.
    Iteration visits cells row-major (NW ... SE), which is also the fetch order.
    """

    def __init__(self, cells: List[TileCell]):
        if len(cells) != 9:
            raise ValueError("a TileGrid needs exactly 9 cells")
        self._rows: List[List[Optional[TileCell]]] = [[None] * 3 for _ in range(3)]
        for c in cells:
            if not (0 <= c.grid_x <= 2 and 0 <= c.grid_y <= 2):
                raise ValueError(f"cell outside grid: ({c.grid_x},{c.grid_y})")
            if self._rows[c.grid_y][c.grid_x] is not None:
                raise ValueError(f"duplicate cell at ({c.grid_x},{c.grid_y})")
            self._rows[c.grid_y][c.grid_x] = c

    def __iter__(self) -> Iterator[TileCell]:
        for row in self._rows:
            for c in row:
                yield c  # type: ignore[misc]

    def __len__(self) -> int:
        return 9

    def cell(self, x: int, y: int) -> TileCell:
        return self._rows[y][x]  # type: ignore[return-value]

    @property
    def center(self) -> TileCell:
        return self.cell(1, 1)

    @property
    def order(self) -> int:
        return self.center.pixel.order

    def pixel_rows(self) -> List[List[int]]:
        return [[c.pixel.value for c in row] for row in self._rows]  # type: ignore[union-attr]

    def real_cells(self) -> List[TileCell]:
        return [c for c in self if not c.is_edge_fallback]

    @property
    def downloaded_count(self) -> int:
        return sum(1 for c in self if c.downloaded and c.image is not None)

    def to_meta(self) -> List[Dict[str, Any]]:
        return [c.to_meta() for c in self]


@dataclass(slots=True)
class CacheEntry:
    """Metadata record of one cached blob (owned by TileCache)."""
    key: str
    path: str
    created_at: str
    last_access_at: str
    access_count: int
    size_bytes: int
    query: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "created": self.created_at,
            "lastAccess": self.last_access_at,
            "accessCount": self.access_count,
            "size": self.size_bytes,
            **self.query,
        }

    @classmethod
    def from_dict(cls, key: str, d: Dict[str, Any]) -> "CacheEntry":
        reserved = ("path", "created", "lastAccess", "accessCount", "size")
        return cls(
            key=key,
            path=str(d["path"]),
            created_at=str(d["created"]),
            last_access_at=str(d.get("lastAccess", d["created"])),
            access_count=int(d.get("accessCount", 0)),
            size_bytes=int(d.get("size", 0)),
            query={k: v for k, v in d.items() if k not in reserved},
        )


@dataclass(slots=True)
class CenteredMosaic:
    """
    Final crop of the raw canvas.

    Attributes:
        image: (S,S,3) uint8 BGR.
        target: the requested position.
        raw_target_px: (x, y) of the target in the raw 3x3 canvas.
        crop_origin: (x, y) top-left of the crop inside the raw canvas.
        tiles_used: number of tiles blitted into the raw canvas.
    """
    image: np.ndarray = field(repr=False)
    target: SkyPosition
    raw_target_px: Tuple[int, int]
    crop_origin: Tuple[int, int]
    tiles_used: int

    @property
    def size(self) -> int:
        return int(self.image.shape[0])

    @property
    def target_px(self) -> Tuple[int, int]:
        """Where the target lands inside the cropped image."""
        return (self.raw_target_px[0] - self.crop_origin[0], self.raw_target_px[1] - self.crop_origin[1])

    @property
    def center_px(self) -> Tuple[int, int]:
        return (self.image.shape[1] // 2, self.image.shape[0] // 2)

    def to_meta(self) -> Dict[str, Any]:
        return {
            "target": self.target.to_dict(),
            "size": [int(self.image.shape[1]), int(self.image.shape[0])],
            "raw_target_px": list(self.raw_target_px),
            "crop_origin": list(self.crop_origin),
            "target_px": list(self.target_px),
            "center_px": list(self.center_px),
            "tiles_used": self.tiles_used,
        }
