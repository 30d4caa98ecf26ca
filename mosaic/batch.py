from __future__ import annotations

import math
from typing import List, Tuple

from common.types import SkyPosition


# Well-known targets spread over declination (north pole to southern sky).
COMMON_TARGETS: List[Tuple[str, float, float]] = [
    ("M31_Andromeda", 10.6847, 41.2687),
    ("M42_Orion", 83.8221, -5.3911),
    ("M51_Whirlpool", 202.4696, 47.1952),
    ("M81_Bodes", 148.8884, 69.0653),
    ("Polaris", 37.9546, 89.2641),
    ("Vega", 279.2346, 38.7837),
    ("Sirius", 101.2872, -16.7161),
    ("Betelgeuse", 88.7929, 7.4070),
]


def common_targets() -> List[SkyPosition]:
    return [SkyPosition(ra, dec, name=name, description="Common test target") for name, ra, dec in COMMON_TARGETS]


def grid_positions(center: SkyPosition, size: int = 3, spacing_deg: float = 1.0) -> List[SkyPosition]:
    """
    size x size positions around `center`, row-major, named grid_<x>_<y>.

    Columns step `spacing_deg` of true angle along RA (divided by cos(dec) of
    the centre), rows step `spacing_deg` in Dec. RA is folded into [0, 360)
    and Dec clamped to [-90, 90]. At the poles the RA spread collapses.
    """
    if size <= 0:
        raise ValueError("size must be > 0")
    if spacing_deg <= 0:
        raise ValueError("spacing_deg must be > 0")

    cos_dec = math.cos(math.radians(center.dec_deg))
    half = size // 2
    out: List[SkyPosition] = []
    for y in range(size):
        for x in range(size):
            off_x = (x - half) * spacing_deg
            off_y = (y - half) * spacing_deg
            ra = center.ra_deg + (off_x / cos_dec if cos_dec > 1e-9 else 0.0)
            dec = max(-90.0, min(90.0, center.dec_deg + off_y))
            out.append(SkyPosition(ra % 360.0, dec, name=f"grid_{x}_{y}",
                                   description=f"Grid cell ({x},{y}) around {center.name or 'center'}"))
    return out
