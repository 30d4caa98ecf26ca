"""
Sky indexing: HEALPix addressing for the mosaic grid

- SkyIndexer: sky position <-> NESTED pixel index at a resolution order,
  great-circle distance
- NeighborResolver: compass-labelled neighbours and the 3x3 TileGrid
"""
from .indexer import SkyIndexer
from .neighbors import NeighborResolver, check_unique

__all__ = ["SkyIndexer", "NeighborResolver", "check_unique"]
