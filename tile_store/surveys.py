from __future__ import annotations

"""
HiPS survey registry.

Tile path layout (HiPS standard):
    {base_url}/Norder{order}/Dir{(pix // 10000) * 10000}/Npix{pix}.{fmt}

The registry is an immutable mapping; callers that need other surveys build
their own with `make_registry(...)` and inject it.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from common.geo import ARCSEC_PER_DEG, healpix_pixel_size_deg
from common.types import PixelIndex, SkyPosition


@dataclass(frozen=True)
class HipsSurvey:
    key: str
    name: str
    base_url: str
    fmt: str = "jpg"
    description: str = ""
    max_order: int = 11
    tile_width: int = 512
    coverage: Tuple[str, ...] = field(default=("full_sky",))

    def __post_init__(self) -> None:
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(f"survey {self.key}: base_url must be http(s)")
        if self.tile_width <= 0:
            raise ValueError(f"survey {self.key}: tile_width must be > 0")
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))
        object.__setattr__(self, "fmt", self.fmt.lower().lstrip("."))

    def check_order(self, order: int) -> None:
        if not (0 <= int(order) <= self.max_order):
            raise ValueError(f"survey {self.key} supports orders 0..{self.max_order}, got {order}")

    def covers(self, pos: SkyPosition) -> bool:
        """Coarse footprint check from the coverage tags; unknown tags are not judged."""
        tags = set(self.coverage)
        if not tags or "full_sky" in tags:
            return True
        if "northern_sky" in tags and pos.dec_deg >= 0.0:
            return True
        if "southern_sky" in tags and pos.dec_deg <= 0.0:
            return True
        return not tags & {"northern_sky", "southern_sky"}

    def tile_url(self, pixel: PixelIndex) -> str:
        self.check_order(pixel.order)
        return f"{self.base_url}/Norder{pixel.order}/Dir{pixel.directory}/Npix{pixel.value}.{self.fmt}"

    def source_id(self, order: int) -> str:
        """Identifier used in cache keys: one per survey and order."""
        return f"{self.key}/Norder{int(order)}"

    def arcsec_per_pixel(self, order: int) -> float:
        """
        Linear scale of one tile pixel: the HEALPix characteristic pixel size
        spread over tile_width image pixels (order 8 @ 512 px ~= 1.61"/px).
        """
        return healpix_pixel_size_deg(order) * ARCSEC_PER_DEG / float(self.tile_width)

    @classmethod
    def from_dict(cls, key: str, d: Mapping[str, Any]) -> "HipsSurvey":
        return cls(
            key=key,
            name=str(d.get("name", key)),
            base_url=str(d["base_url"]),
            fmt=str(d.get("fmt", d.get("format", "jpg"))),
            description=str(d.get("description", "")),
            max_order=int(d.get("max_order", 11)),
            tile_width=int(d.get("tile_width", 512)),
            coverage=tuple(d.get("coverage", ("full_sky",))),
        )


_ALASKY = "http://alasky.u-strasbg.fr"

_BUILTIN = (
    HipsSurvey("DSS2_Color", "DSS2 Color", f"{_ALASKY}/DSS/DSSColor", "jpg",
               "Digital Sky Survey 2 color composite", 11),
    HipsSurvey("DSS2_Red", "DSS2 Red", f"{_ALASKY}/DSS/DSS2-red", "jpg",
               "DSS2 red band", 11),
    HipsSurvey("2MASS_Color", "2MASS Color", f"{_ALASKY}/2MASS/Color", "jpg",
               "2MASS near-infrared color", 9),
    HipsSurvey("2MASS_J", "2MASS J-band", f"{_ALASKY}/2MASS/J", "jpg",
               "2MASS J-band (1.25 micron)", 9),
    HipsSurvey("Mellinger_Color", "Mellinger Color", f"{_ALASKY}/Mellinger/Mellinger_color", "jpg",
               "Mellinger all-sky optical mosaic", 8),
    HipsSurvey("Gaia_DR3", "Gaia DR3", f"{_ALASKY}/Gaia/Gaia-DR3", "png",
               "Gaia Data Release 3 density map", 13),
    HipsSurvey("SDSS_DR12", "SDSS DR12", f"{_ALASKY}/SDSS/DR12/color", "jpg",
               "Sloan Digital Sky Survey DR12 color", 12, coverage=("northern_sky",)),
)

DEFAULT_SURVEY = "DSS2_Color"


def make_registry(
    surveys: Iterable[HipsSurvey] = _BUILTIN,
    overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> Mapping[str, HipsSurvey]:
    """Read-only key -> HipsSurvey mapping; `overrides` (config dicts) add or replace entries."""
    reg: Dict[str, HipsSurvey] = {s.key: s for s in surveys}
    for key, d in (overrides or {}).items():
        reg[key] = HipsSurvey.from_dict(key, d)
    return MappingProxyType(reg)


SURVEYS: Mapping[str, HipsSurvey] = make_registry()


def get_survey(key: str, registry: Mapping[str, HipsSurvey] = SURVEYS) -> HipsSurvey:
    try:
        return registry[key]
    except KeyError:
        raise ValueError(f"unknown survey {key!r}; available: {sorted(registry)}") from None
