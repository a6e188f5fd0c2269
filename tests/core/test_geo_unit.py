from __future__ import annotations

from atcbridge.core.geo import (
    SM_PER_NM,
    dest_point,
    distance_sm,
    haversine_nm,
    haversine_sm,
)
from atcbridge.core.models import Position

EPS_SM = 1e-3


def test_zero_distance() -> None:
    assert haversine_sm(42.36, -71.01, 42.36, -71.01) == 0.0
    p = Position(latitude=42.36, longitude=-71.01, altitude=3000.0)
    assert distance_sm(p, p) == 0.0


def test_one_degree_latitude_is_about_69_sm() -> None:
    d = haversine_sm(0.0, 0.0, 1.0, 0.0)
    assert abs(d - 69.0) < 0.15
    # 3440.065 NM sphere -> 60.04 NM per degree
    assert abs(haversine_nm(0.0, 0.0, 1.0, 0.0) - 60.041) < 1e-3
    assert abs(d - haversine_nm(0.0, 0.0, 1.0, 0.0) * SM_PER_NM) < 1e-9


def test_distance_ignores_altitude() -> None:
    a = Position(latitude=42.0, longitude=-71.0, altitude=0.0)
    b = Position(latitude=42.0, longitude=-71.0, altitude=35000.0)
    assert distance_sm(a, b) == 0.0


def test_antimeridian_crossing() -> None:
    d = haversine_sm(0.0, 179.9, 0.0, -179.9)
    expected = 0.2 * 60.041 * SM_PER_NM
    assert abs(d - expected) < 0.1


def test_dest_point_range_round_trip() -> None:
    lat0, lon0 = 42.3656, -71.0096
    for brg in (0.0, 45.0, 90.0, 200.0, 315.0):
        for rng in (1.0, 49.5, 402.0):
            lat, lon = dest_point(lat0, lon0, brg, rng)
            assert abs(haversine_sm(lat0, lon0, lat, lon) - rng) < EPS_SM
