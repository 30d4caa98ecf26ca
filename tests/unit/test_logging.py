"""
Unit tests for JSON logging and the error taxonomy
"""

import json
import logging
import os
import sys

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import AssemblyFailure, CacheCorruption, CropOutOfBounds, IndexingError, MosaicError
from common.logging_setup import JsonFormatter


class TestJsonFormatter:
    def _record(self, **extra):
        rec = logging.LogRecord("mosaic.assembler", logging.INFO, __file__, 1, "Tile downloaded", None, None)
        for k, v in extra.items():
            setattr(rec, k, v)
        return rec

    def test_payload(self):
        out = json.loads(JsonFormatter().format(self._record(extra={"grid": [1, 1], "pixel": 42})))
        assert out["lvl"] == "INFO"
        assert out["name"] == "mosaic.assembler"
        assert out["msg"] == "Tile downloaded"
        assert out["extra"] == {"grid": [1, 1], "pixel": 42}
        assert isinstance(out["t"], int)

    def test_non_json_values_stringified(self):
        out = json.loads(JsonFormatter().format(self._record(extra={"path": object()})))
        assert isinstance(out["extra"]["path"], str)


class TestErrors:
    def test_context_in_message(self):
        e = IndexingError("forward pixel mapping failed", ra_deg=10.0, order=8, cause=None)
        assert e.context == {"ra_deg": 10.0, "order": 8}
        assert str(e) == "forward pixel mapping failed (ra_deg=10.0, order=8)"

    def test_recoverability(self):
        assert CacheCorruption("x").recoverable
        assert CropOutOfBounds(2000, 1536).recoverable
        assert not AssemblyFailure("x").recoverable
        assert isinstance(AssemblyFailure("x"), MosaicError)
        assert isinstance(AssemblyFailure("x"), RuntimeError)
