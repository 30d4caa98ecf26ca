from __future__ import annotations

from typing import Tuple
import math

from common.types import SkyPosition


ARCSEC_PER_DEG = 3600.0


# -------------------------
# Great-circle & bearings
# -------------------------
def angular_distance(a: SkyPosition, b: SkyPosition) -> float:
    """
    Haversine great-circle distance between two sky positions (radians, 0..pi).
    Symmetric; RA wraparound is handled by the sine terms.
    """
    ra1, dec1 = math.radians(a.ra_deg), math.radians(a.dec_deg)
    ra2, dec2 = math.radians(b.ra_deg), math.radians(b.dec_deg)
    dra = ra2 - ra1
    ddec = dec2 - dec1
    h = math.sin(ddec / 2.0) ** 2 + math.cos(dec1) * math.cos(dec2) * math.sin(dra / 2.0) ** 2
    h = min(1.0, max(0.0, h))
    return 2.0 * math.atan2(math.sqrt(h), math.sqrt(1.0 - h))


def wrap_ra_delta_deg(d: float) -> float:
    """Fold an RA difference into [-180, 180)."""
    return (d + 180.0) % 360.0 - 180.0


def position_angle_deg(ref: SkyPosition, pos: SkyPosition) -> float:
    """Bearing of `pos` seen from `ref`, east of north (degrees, 0..360)."""
    a0, d0 = math.radians(ref.ra_deg), math.radians(ref.dec_deg)
    a, d = math.radians(pos.ra_deg), math.radians(pos.dec_deg)
    da = a - a0
    y = math.sin(da) * math.cos(d)
    x = math.cos(d0) * math.sin(d) - math.sin(d0) * math.cos(d) * math.cos(da)
    b = math.degrees(math.atan2(y, x))
    return (b + 360.0) % 360.0


def angular_gap_deg(a: float, b: float) -> float:
    """Smallest absolute difference between two bearings (degrees, 0..180)."""
    d = abs(a - b) % 360.0
    return 360.0 - d if d > 180.0 else d


# -------------------------
# Small-offset pixel math
# -------------------------
def cos_corrected_offset_arcsec(ref: SkyPosition, target: SkyPosition) -> Tuple[float, float]:
    """
    (dRA * cos(dec_target), dDec) from `ref` to `target`, in arcsec.
    dRA is folded across the 0/360 seam before the cosine correction.
    """
    d_ra = wrap_ra_delta_deg(target.ra_deg - ref.ra_deg) * ARCSEC_PER_DEG
    d_dec = (target.dec_deg - ref.dec_deg) * ARCSEC_PER_DEG
    d_ra *= math.cos(math.radians(target.dec_deg))
    return d_ra, d_dec


def offset_to_pixels(d_ra_arcsec: float, d_dec_arcsec: float, arcsec_per_pixel: float) -> Tuple[float, float]:
    """
    Convert an (east, north) offset into canvas (dx, dy) pixels.
    Canvas rows grow downward, so north maps to negative dy.
    """
    if arcsec_per_pixel <= 0:
        raise ValueError("arcsec_per_pixel must be > 0")
    return d_ra_arcsec / arcsec_per_pixel, -d_dec_arcsec / arcsec_per_pixel


def healpix_pixel_size_deg(order: int) -> float:
    """Characteristic HEALPix pixel size: sqrt of the pixel solid angle (degrees)."""
    npix = 12 * 4 ** int(order)
    return math.degrees(math.sqrt(4.0 * math.pi / npix))
