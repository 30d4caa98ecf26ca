"""
Unit tests for run reports, rendering and the pipeline entry point
"""

import json
import os
import sys

import cv2
import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import AssemblyFailure, FetchHttpStatus
from common.types import CenteredMosaic, SkyPosition
from mosaic import pipeline
from mosaic.render import annotate, encode_png, save_mosaic
from mosaic.report import grid_csv, render_text, write_report


class TestRunReport:
    """Text report with CSV grid section, JSON manifest"""

    def test_write_report_after_run(self, make_assembler, m31, tmp_path):
        asm = make_assembler()
        asm.run(m31)
        txt, js = write_report(asm.report, str(tmp_path))

        assert txt.name == "m31_centered_report.txt"
        assert js.name == "m31_manifest.json"
        text = txt.read_text()
        assert "M31 Coordinate-Centered Mosaic Report" in text
        assert "Tiles used: 9/9" in text
        assert "3x3 Tile Grid Used:" in text

        manifest = json.loads(js.read_text())
        assert manifest["state"] == "done"
        assert manifest["tiles_used"] == 9
        assert len(manifest["cells"]) == 9
        assert manifest["target"]["name"] == "M31"

    def test_grid_csv_rows(self, make_assembler, m31):
        asm = make_assembler()
        asm.run(m31)
        lines = grid_csv(asm.report).strip().split("\n")
        assert lines[0].startswith("Grid_X,Grid_Y,HEALPix_Pixel,Direction")
        assert len(lines) == 10
        center_row = [l for l in lines[1:] if l.startswith("1,1,")][0]
        assert f",{asm.grid.center.pixel.value},C," in center_row
        assert "512x512" in center_row

    def test_failure_text_lists_warnings(self, make_assembler, mock_fetcher, m31):
        mock_fetcher.fetch.side_effect = FetchHttpStatus("u", 503)
        asm = make_assembler()
        with pytest.raises(AssemblyFailure):
            asm.run(m31)
        text = render_text(asm.report)
        assert "State: failed" in text
        assert "Error: no tiles downloaded" in text
        assert "HTTP 503" in text


class TestRender:
    """Crosshair overlay and PNG output"""

    def _mosaic(self):
        img = np.zeros((200, 200, 3), dtype=np.uint8)
        return CenteredMosaic(image=img, target=SkyPosition(10.0, 20.0, name="Test Target"),
                              raw_target_px=(400, 400), crop_origin=(300, 300), tiles_used=9)

    def test_annotate_draws_crosshair(self):
        m = self._mosaic()
        out = annotate(m)
        assert out.shape == m.image.shape
        assert not np.array_equal(out, m.image)
        assert tuple(out[100, 110]) == (0, 255, 255)
        assert not m.image.any()

    def test_save_mosaic(self, tmp_path):
        path = save_mosaic(self._mosaic(), str(tmp_path), annotated=False)
        assert path.name == "test_target_centered_mosaic.png"
        img = cv2.imread(str(path))
        assert img.shape == (200, 200, 3)

    def test_encode_png_signature(self):
        assert encode_png(np.zeros((8, 8, 3), dtype=np.uint8)).startswith(b"\x89PNG")


class TestPipeline:
    """Output writing and CLI exit codes"""

    def test_run_mosaic_writes_outputs(self, make_assembler, m31, tmp_path):
        res = pipeline.run_mosaic(make_assembler(), m31, str(tmp_path))
        assert res.image_path.exists()
        assert res.report_path.exists()
        assert res.manifest_path.exists()
        assert res.mosaic.size == 1200

    def test_failure_still_writes_report(self, make_assembler, mock_fetcher, m31, tmp_path):
        mock_fetcher.fetch.side_effect = FetchHttpStatus("u", 404)
        with pytest.raises(AssemblyFailure):
            pipeline.run_mosaic(make_assembler(), m31, str(tmp_path))
        assert (tmp_path / "m31_centered_report.txt").exists()
        assert not (tmp_path / "m31_centered_mosaic.png").exists()

    def test_cli_invalid_dec(self, tmp_path):
        assert pipeline.main(["--ra", "10", "--dec", "95", "--out", str(tmp_path)]) == 1

    def test_cli_success(self, make_assembler, tmp_path, monkeypatch):
        asm = make_assembler()
        monkeypatch.setattr(pipeline, "build_assembler", lambda P, **kw: asm)
        code = pipeline.main(["--ra", "10.6847", "--dec", "41.2687", "--name", "M31",
                              "--out", str(tmp_path), "--no-annotate"])
        assert code == 0
        assert (tmp_path / "m31_centered_mosaic.png").exists()
