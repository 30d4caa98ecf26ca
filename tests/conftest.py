"""
Shared fixtures: synthetic tiles, a mocked fetcher and an assembler wired to
a temporary cache.
"""

import os
import sys
from unittest.mock import Mock

import cv2
import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(project_root)

from common.types import SkyPosition
from mosaic.assembler import MosaicAssembler
from mosaic.config import MosaicConfig
from tile_store.cache import TileCache
from tile_store.fetcher import TileFetcher


M31 = SkyPosition(10.6847, 41.2687, name="M31", description="Andromeda Galaxy")


def make_jpeg(size: int = 512, seed: int = 0) -> bytes:
    """Noise JPEG; incompressible enough to stay well above the 1 KiB floor."""
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 255, (size, size, 3), dtype=np.uint8)
    ok, buf = cv2.imencode(".jpg", img)
    assert ok
    return buf.tobytes()


@pytest.fixture
def jpeg_tile() -> bytes:
    return make_jpeg()


@pytest.fixture
def tile_cache(tmp_path) -> TileCache:
    return TileCache(str(tmp_path / "cache"))


@pytest.fixture
def mock_fetcher(jpeg_tile) -> Mock:
    fetcher = Mock(spec=TileFetcher)
    fetcher.fetch.return_value = jpeg_tile
    return fetcher


@pytest.fixture
def make_assembler(tile_cache, mock_fetcher):
    def _make(config=None, **kw) -> MosaicAssembler:
        return MosaicAssembler(config or MosaicConfig(), cache=tile_cache, fetcher=mock_fetcher, **kw)
    return _make


@pytest.fixture
def m31() -> SkyPosition:
    return M31
