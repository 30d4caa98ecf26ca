from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from tile_store.surveys import DEFAULT_SURVEY, SURVEYS, HipsSurvey, get_survey, make_registry


DEFAULT_CONFIG_PATH = "config/params.yaml"

DEFAULTS: Dict[str, Any] = {
    "mosaic": {
        "order": 8,
        "survey": DEFAULT_SURVEY,
        "tile_size": None,          # None -> survey tile width
        "output_size": 1200,
        "arcsec_per_pixel": None,   # None -> derived from order and tile size
        "fill_color": [0, 0, 0],
        "annotate": True,
        "output_dir": "data/mosaics",
        "inter_tile_delay_s": 0.0,
    },
    "fetch": {
        "timeout_s": 15.0,
        "user_agent": "SkyMosaic/1.0 (HiPS tile mosaic builder)",
    },
    "cache": {
        "root": "data/tile_cache",
        "min_size_bytes": 1024,
        "max_age_hours": 720,
    },
    "logging": {"level": "INFO", "file": None},
    "surveys": {},
}


def _deep_merge(base: Dict[str, Any], over: Mapping[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in over.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load params YAML over the built-in defaults. A missing file yields the
    defaults. Environment overrides:
      SKYMOSAIC_CONFIG (path), SKYMOSAIC_CACHE_DIR, SKYMOSAIC_OUTPUT_DIR
    """
    path = path or os.environ.get("SKYMOSAIC_CONFIG") or DEFAULT_CONFIG_PATH
    P = copy.deepcopy(DEFAULTS)
    if Path(path).exists():
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, Mapping):
            raise ValueError(f"{path}: top level must be a mapping")
        P = _deep_merge(P, loaded)

    cache_dir = os.environ.get("SKYMOSAIC_CACHE_DIR")
    if cache_dir:
        P["cache"]["root"] = cache_dir
    out_dir = os.environ.get("SKYMOSAIC_OUTPUT_DIR")
    if out_dir:
        P["mosaic"]["output_dir"] = out_dir
    return P


@dataclass(frozen=True)
class MosaicConfig:
    """
    Immutable per-run settings injected into MosaicAssembler.

    tile_size is the edge length every tile is blitted at (tiles of another
    size are resized); arcsec_per_pixel, when None, is derived from the
    survey's HEALPix pixel size at `order` spread over tile_size pixels.
    """
    order: int = 8
    survey: HipsSurvey = field(default_factory=lambda: SURVEYS[DEFAULT_SURVEY])
    tile_size: Optional[int] = None
    output_size: int = 1200
    arcsec_per_pixel: Optional[float] = None
    fill_color: Tuple[int, int, int] = (0, 0, 0)
    fetch_timeout_s: float = 15.0
    inter_tile_delay_s: float = 0.0

    def __post_init__(self) -> None:
        self.survey.check_order(self.order)
        if self.tile_size is None:
            object.__setattr__(self, "tile_size", int(self.survey.tile_width))
        if int(self.tile_size) <= 0:  # type: ignore[arg-type]
            raise ValueError("tile_size must be > 0")
        if int(self.output_size) <= 0:
            raise ValueError("output_size must be > 0")
        if self.arcsec_per_pixel is not None and float(self.arcsec_per_pixel) <= 0:
            raise ValueError("arcsec_per_pixel must be > 0")
        fc = tuple(int(c) for c in self.fill_color)
        if len(fc) != 3 or any(not (0 <= c <= 255) for c in fc):
            raise ValueError("fill_color must be three 0..255 values")
        object.__setattr__(self, "fill_color", fc)
        if self.fetch_timeout_s <= 0:
            raise ValueError("fetch_timeout_s must be > 0")
        if self.inter_tile_delay_s < 0:
            raise ValueError("inter_tile_delay_s must be >= 0")

    @property
    def canvas_size(self) -> int:
        return 3 * int(self.tile_size)  # type: ignore[arg-type]

    def pixel_scale(self, order: Optional[int] = None) -> float:
        """Arcsec per canvas pixel at `order` (defaults to the configured order)."""
        if self.arcsec_per_pixel is not None:
            return float(self.arcsec_per_pixel)
        o = self.order if order is None else int(order)
        native = self.survey.arcsec_per_pixel(o)
        return native * self.survey.tile_width / float(self.tile_size)  # type: ignore[arg-type]

    def with_order(self, order: int) -> "MosaicConfig":
        return replace(self, order=int(order))

    @classmethod
    def from_dict(cls, P: Mapping[str, Any]) -> "MosaicConfig":
        m = P.get("mosaic", {})
        registry = make_registry(overrides=P.get("surveys") or {})
        survey = get_survey(str(m.get("survey", DEFAULT_SURVEY)), registry)
        aps = m.get("arcsec_per_pixel")
        ts = m.get("tile_size")
        return cls(
            order=int(m.get("order", 8)),
            survey=survey,
            tile_size=None if ts is None else int(ts),
            output_size=int(m.get("output_size", 1200)),
            arcsec_per_pixel=None if aps is None else float(aps),
            fill_color=tuple(m.get("fill_color", (0, 0, 0))),  # type: ignore[arg-type]
            fetch_timeout_s=float(P.get("fetch", {}).get("timeout_s", 15.0)),
            inter_tile_delay_s=float(m.get("inter_tile_delay_s", 0.0)),
        )
