"""
Unit tests for the HTTP surface (FastAPI TestClient, fetcher mocked)
"""

import copy
import importlib
import json
import os
import sys
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import FetchTimeout, NeighborAmbiguity
from common.types import SkyPosition
from mosaic.config import DEFAULTS
from mosaic.server import create_app
from sky_index.indexer import SkyIndexer


@pytest.fixture
def client(make_assembler):
    P = copy.deepcopy(DEFAULTS)
    return TestClient(create_app(P, assembler_factory=make_assembler))


class TestServer:
    """Endpoints and status codes"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "ok"
        assert body["order"] == 8
        assert body["survey"] == "DSS2_Color"

    def test_grid_does_not_fetch(self, client, mock_fetcher):
        r = client.get("/grid", params={"ra": 10.6847, "dec": 41.2687})
        assert r.status_code == 200
        body = r.json()
        assert len(body["rows"]) == 3 and all(len(row) == 3 for row in body["rows"])
        assert body["rows"][1][1] == body["center_pixel"]
        assert len(body["cells"]) == 9
        mock_fetcher.fetch.assert_not_called()

    def test_grid_bad_dec(self, client):
        assert client.get("/grid", params={"ra": 10, "dec": 95}).status_code == 422

    def test_grid_bad_order(self, client):
        assert client.get("/grid", params={"ra": 10, "dec": 10, "order": 15}).status_code == 422

    def test_mosaic_png(self, client):
        idx = SkyIndexer()
        c = idx.center_of(idx.index_for(SkyPosition(10.6847, 41.2687), 8))
        r = client.get("/mosaic", params={"ra": c.ra_deg, "dec": c.dec_deg, "name": "M31"})
        assert r.status_code == 200
        assert r.headers["content-type"] == "image/png"
        assert r.content.startswith(b"\x89PNG")
        meta = json.loads(r.headers["X-Mosaic-Metadata"])
        assert meta["size"] == [1200, 1200]
        assert meta["tiles_used"] == 9
        assert meta["target_px"] == meta["center_px"]
        assert meta["target"]["name"] == "M31"

    def test_mosaic_no_tiles_is_502(self, client, mock_fetcher):
        mock_fetcher.fetch.side_effect = FetchTimeout("u", 15.0)
        r = client.get("/mosaic", params={"ra": 10.6847, "dec": 41.2687})
        assert r.status_code == 502
        assert r.json()["error"] == "assembly_failed"

    def test_mosaic_neighbour_defect_is_500(self, client, monkeypatch):
        from sky_index.neighbors import NeighborResolver

        def boom(self, center):
            raise NeighborAmbiguity("duplicate pixel in 3x3 grid", pixel=center.value)

        monkeypatch.setattr(NeighborResolver, "build_3x3", boom)
        r = client.get("/mosaic", params={"ra": 10.6847, "dec": 41.2687})
        assert r.status_code == 500
        assert r.json()["error"] == "NeighborAmbiguity"

    def test_cache_stats(self, client):
        client.get("/mosaic", params={"ra": 10.6847, "dec": 41.2687})
        r = client.get("/cache/stats")
        assert r.status_code == 200
        assert r.json()["cache"]["entries"] == 9


class TestImport:
    def test_import_builds_nothing(self):
        import mosaic.server as server

        try:
            with patch("mosaic.config.load_config") as load, patch("common.logging_setup.setup_logging") as setup:
                importlib.reload(server)
            load.assert_not_called()
            setup.assert_not_called()
            assert not hasattr(server, "app")
        finally:
            importlib.reload(server)
