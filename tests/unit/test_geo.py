"""
Unit tests for sphere math helpers
"""

import math
import os
import sys

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.geo import (
    angular_distance,
    angular_gap_deg,
    cos_corrected_offset_arcsec,
    healpix_pixel_size_deg,
    offset_to_pixels,
    position_angle_deg,
    wrap_ra_delta_deg,
)
from common.types import SkyPosition


class TestAngularDistance:
    """Great-circle distance"""

    def test_zero_for_same_point(self):
        p = SkyPosition(10.0, 41.0)
        assert angular_distance(p, p) == pytest.approx(0.0, abs=1e-12)

    def test_quarter_circle(self):
        assert angular_distance(SkyPosition(0.0, 0.0), SkyPosition(0.0, 90.0)) == pytest.approx(math.pi / 2)
        assert angular_distance(SkyPosition(0.0, 0.0), SkyPosition(90.0, 0.0)) == pytest.approx(math.pi / 2)

    def test_symmetric_and_wraps_ra(self):
        a = SkyPosition(359.9, 10.0)
        b = SkyPosition(0.1, 10.0)
        assert angular_distance(a, b) == pytest.approx(angular_distance(b, a))
        expected = math.radians(0.2 * math.cos(math.radians(10.0)))
        assert angular_distance(a, b) == pytest.approx(expected, rel=1e-3)


class TestOffsets:
    """Tangent-plane and cos(dec)-corrected offsets"""

    def test_wrap_ra_delta(self):
        assert wrap_ra_delta_deg(359.0) == pytest.approx(-1.0)
        assert wrap_ra_delta_deg(-359.0) == pytest.approx(1.0)
        assert wrap_ra_delta_deg(10.0) == pytest.approx(10.0)

    def test_position_angle_east_of_north(self):
        ref = SkyPosition(50.0, 0.0)
        assert position_angle_deg(ref, SkyPosition(50.0, 1.0)) == pytest.approx(0.0, abs=1e-6)
        assert position_angle_deg(ref, SkyPosition(51.0, 0.0)) == pytest.approx(90.0, abs=1e-6)
        assert position_angle_deg(ref, SkyPosition(49.0, 0.0)) == pytest.approx(270.0, abs=1e-6)

    def test_position_angle_beyond_ninety_degrees(self):
        ref = SkyPosition(0.0, 0.0)
        assert position_angle_deg(ref, SkyPosition(120.0, 0.0)) == pytest.approx(90.0, abs=1e-6)
        assert position_angle_deg(ref, SkyPosition(0.0, -85.0)) == pytest.approx(180.0, abs=1e-6)

    def test_angular_gap(self):
        assert angular_gap_deg(350.0, 10.0) == pytest.approx(20.0)
        assert angular_gap_deg(0.0, 180.0) == pytest.approx(180.0)

    def test_cos_corrected_offset_across_seam(self):
        d_ra, d_dec = cos_corrected_offset_arcsec(SkyPosition(359.99, 60.0), SkyPosition(0.01, 60.0))
        assert d_ra == pytest.approx(0.02 * 3600.0 * 0.5, rel=1e-6)
        assert d_dec == pytest.approx(0.0)

    def test_offset_to_pixels_north_is_up(self):
        dx, dy = offset_to_pixels(16.1, 16.1, 1.61)
        assert dx == pytest.approx(10.0)
        assert dy == pytest.approx(-10.0)

    def test_offset_to_pixels_bad_scale(self):
        with pytest.raises(ValueError):
            offset_to_pixels(1.0, 1.0, 0.0)

    def test_pixel_size_order8(self):
        # ~13.7 arcmin
        assert healpix_pixel_size_deg(8) * 60.0 == pytest.approx(13.74, abs=0.05)
