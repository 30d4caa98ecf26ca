"""
Tile store: HiPS survey registry, payload sniffing, on-disk tile cache and
the single-shot tile fetcher.

- TileCache: content-addressed blobs + metadata.json (access stats, eviction)
- TileFetcher: one bounded-time GET per tile URL
"""
from .cache import TileCache, TileQuery
from .fetcher import TileFetcher
from .surveys import DEFAULT_SURVEY, SURVEYS, HipsSurvey, get_survey, make_registry

__all__ = [
    "TileCache",
    "TileQuery",
    "TileFetcher",
    "HipsSurvey",
    "SURVEYS",
    "DEFAULT_SURVEY",
    "get_survey",
    "make_registry",
]
