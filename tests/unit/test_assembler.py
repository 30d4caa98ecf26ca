"""
Unit tests for MosaicAssembler (no network; fetcher is mocked)
"""

import math
import os
import sys
from dataclasses import replace
from unittest.mock import Mock

import cv2
import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import AssemblyFailure, CropOutOfBounds, FetchHttpStatus, FetchTimeout, RunCancelled
from common.types import SkyPosition
from mosaic.assembler import MosaicState, decode_tile, fit_output_size
from mosaic.config import MosaicConfig
from sky_index.indexer import SkyIndexer
from tile_store.surveys import SURVEYS


def _centroid(target: SkyPosition, order: int = 8) -> SkyPosition:
    idx = SkyIndexer()
    c = idx.center_of(idx.index_for(target, order))
    return SkyPosition(c.ra_deg, c.dec_deg, name="centroid")


class TestMosaicAssembler:
    """Grid -> fetch -> raw canvas -> target pixel -> centred crop"""

    def test_full_run(self, make_assembler, mock_fetcher, m31):
        progress = Mock()
        asm = make_assembler(on_progress=progress)
        out = asm.run(m31)

        assert asm.state is MosaicState.DONE
        assert out.image.shape == (1200, 1200, 3)
        assert out.image.dtype == np.uint8
        assert out.tiles_used == 9
        assert mock_fetcher.fetch.call_count == 9
        assert progress.call_count == 9
        assert progress.call_args_list[-1][0][:2] == (9, 9)
        assert all(c["source"] == "download" for c in asm.report.cells)
        assert asm.report.center_pixel == asm.grid.center.pixel.value

    def test_urls_follow_hips_layout(self, make_assembler, m31):
        asm = make_assembler()
        grid = asm.begin(m31)
        for c in grid:
            assert c.url.endswith(f"/Norder8/Dir{c.pixel.directory}/Npix{c.pixel.value}.jpg")
            assert len(c.cache_key) == 64
        assert asm.state is MosaicState.GRID_BUILT

    def test_target_lands_on_output_centre(self, make_assembler, m31):
        c = _centroid(m31)
        # 0.01 deg north of the centre tile's centroid
        target = SkyPosition(c.ra_deg, c.dec_deg + 0.01, name="offset")
        asm = make_assembler()
        out = asm.run(target)

        x, y = out.raw_target_px
        assert x == 768
        assert y == 768 - round(36.0 / asm.config.pixel_scale())
        tx, ty = out.target_px
        cx, cy = out.center_px
        assert abs(tx - cx) <= 1 and abs(ty - cy) <= 1

    def test_centroid_target_maps_to_canvas_centre(self, make_assembler, m31):
        asm = make_assembler()
        out = asm.run(_centroid(m31))
        assert out.raw_target_px == (768, 768)
        assert out.crop_origin == (168, 168)

    def test_crop_clamped_at_canvas_edge(self, make_assembler, m31):
        c = _centroid(m31)
        target = SkyPosition(c.ra_deg, c.dec_deg + 0.05, name="edge")
        # tiny pixel scale pushes the target far north of the canvas
        asm = make_assembler(replace(MosaicConfig(), arcsec_per_pixel=0.1))
        out = asm.run(target)

        assert out.raw_target_px[1] == 0
        assert out.crop_origin[1] == 0
        assert out.target_px[1] == 0
        assert out.image.shape == (1200, 1200, 3)
        assert any("clamped" in w for w in asm.report.warnings)

    @pytest.mark.parametrize("d_east,d_north,origin,target_px", [
        (0.0, -0.05, (168, 336), (600, 1199)),    # pushed south: bottom edge
        (0.05, 0.0, (336, 168), (1199, 600)),     # pushed east: right edge
    ])
    def test_crop_clamped_at_far_canvas_edge(self, make_assembler, m31, d_east, d_north, origin, target_px):
        c = _centroid(m31)
        d_ra = d_east / math.cos(math.radians(c.dec_deg))
        target = SkyPosition(c.ra_deg + d_ra, c.dec_deg + d_north, name="edge")
        asm = make_assembler(replace(MosaicConfig(), arcsec_per_pixel=0.1))
        out = asm.run(target)

        assert out.raw_target_px == (origin[0] + target_px[0], origin[1] + target_px[1])
        assert out.crop_origin == origin
        assert out.crop_origin[0] <= 1536 - 1200 and out.crop_origin[1] <= 1536 - 1200
        assert out.target_px == target_px
        assert out.image.shape == (1200, 1200, 3)

    def test_order_zero_run(self, make_assembler, mock_fetcher, m31):
        asm = make_assembler()
        grid = asm.begin(m31, order=0)
        assert grid.order == 0
        assert asm.state is MosaicState.GRID_BUILT
        assert all(c.url.startswith(asm.config.survey.base_url + "/Norder0/Dir0/") for c in grid.real_cells())

    def test_target_outside_survey_footprint_warns(self, make_assembler, m31):
        asm = make_assembler(MosaicConfig(survey=SURVEYS["SDSS_DR12"]))
        asm.begin(SkyPosition(83.82, -5.39, name="M42"))
        assert any("may have no tiles" in w for w in asm.report.warnings)

        asm = make_assembler(MosaicConfig(survey=SURVEYS["SDSS_DR12"]))
        asm.begin(m31)
        assert not asm.report.warnings

    def test_output_larger_than_canvas_is_clamped(self, make_assembler, m31):
        asm = make_assembler()
        out = asm.run(m31, output_size=2000)
        assert out.size == 1536
        assert out.crop_origin == (0, 0)
        assert any("exceeds canvas" in w for w in asm.report.warnings)

    def test_partial_failure_keeps_going(self, make_assembler, mock_fetcher, jpeg_tile, m31):
        asm = make_assembler(replace(MosaicConfig(), fill_color=(10, 20, 30)))
        grid = asm.begin(m31)
        bad_url = grid.cell(2, 0).url

        def fetch(url, timeout=None):
            if url == bad_url:
                raise FetchHttpStatus(url, 404)
            return jpeg_tile

        mock_fetcher.fetch.side_effect = fetch
        asm.resolve_tiles()
        raw = asm.assemble_raw()

        assert asm.report.tiles_used == 8
        ne = grid.cell(2, 0)
        assert ne.source == "failed" and not ne.downloaded
        assert "404" in ne.error
        # blank cell keeps the fill colour
        assert tuple(raw[100, 1024 + 100]) == (10, 20, 30)
        out = asm.crop_centered(asm.locate_target_pixel())
        assert out.tiles_used == 8
        assert len(asm.report.failed_cells) == 1

    def test_zero_tiles_is_assembly_failure(self, make_assembler, mock_fetcher, m31):
        mock_fetcher.fetch.side_effect = FetchTimeout("u", 15.0)
        asm = make_assembler()
        with pytest.raises(AssemblyFailure):
            asm.run(m31)
        assert asm.state is MosaicState.FAILED
        assert mock_fetcher.fetch.call_count == 9
        assert len(asm.report.failed_cells) == 9
        assert asm.report.error

    def test_second_run_served_from_cache(self, make_assembler, mock_fetcher, m31):
        make_assembler().run(m31)
        assert mock_fetcher.fetch.call_count == 9

        asm = make_assembler()
        asm.run(m31)
        assert mock_fetcher.fetch.call_count == 9
        assert all(c["source"] == "cache" for c in asm.report.cells)

    def test_cancellation(self, make_assembler, mock_fetcher, m31):
        calls = {"n": 0}

        def should_cancel():
            calls["n"] += 1
            return calls["n"] > 3

        asm = make_assembler()
        with pytest.raises(RunCancelled):
            asm.run(m31, should_cancel=should_cancel)
        assert asm.state is MosaicState.FAILED
        assert mock_fetcher.fetch.call_count == 3

    def test_inter_tile_delay(self, make_assembler, m31):
        sleep = Mock()
        asm = make_assembler(replace(MosaicConfig(), inter_tile_delay_s=0.5), sleep=sleep)
        asm.run(m31)
        assert sleep.call_count == 8
        sleep.assert_called_with(0.5)

    def test_undecodable_payload_fails_cell(self, make_assembler, mock_fetcher, m31):
        mock_fetcher.fetch.return_value = b"\xff\xd8\xff" + b"\0" * 4096
        asm = make_assembler()
        with pytest.raises(AssemblyFailure):
            asm.run(m31)
        assert not asm.cache.entries()

    def test_order_override(self, make_assembler, m31):
        asm = make_assembler()
        grid = asm.begin(m31, order=6)
        assert grid.order == 6
        assert asm.report.order == 6

    def test_out_of_order_transition(self, make_assembler):
        asm = make_assembler()
        with pytest.raises(RuntimeError):
            asm.assemble_raw()


class TestHelpers:
    def test_decode_resizes(self):
        ok, buf = cv2.imencode(".png", np.full((256, 256, 3), 128, dtype=np.uint8))
        img = decode_tile(buf.tobytes(), 512)
        assert img.shape == (512, 512, 3)

    def test_fit_output_size(self):
        assert fit_output_size(1200, 1536) == 1200
        with pytest.raises(CropOutOfBounds) as ei:
            fit_output_size(2000, 1536)
        assert ei.value.available == 1536
        with pytest.raises(ValueError):
            fit_output_size(0, 1536)
