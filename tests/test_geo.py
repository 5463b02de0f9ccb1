from __future__ import annotations

import math

import pytest

from gym_proximity.geo import Bounds, bounds_around, haversine_m, in_continental_canada, is_valid_coordinates


def test_haversine_zero_and_symmetric() -> None:
    a = (45.5017, -73.5673)
    b = (43.6532, -79.3832)
    assert haversine_m(*a, *a) == 0.0
    assert haversine_m(*a, *b) == pytest.approx(haversine_m(*b, *a))


def test_haversine_montreal_toronto() -> None:
    d = haversine_m(45.5017, -73.5673, 43.6532, -79.3832)
    assert 495_000 < d < 515_000


def test_haversine_pure_latitude_delta_is_exact_arc() -> None:
    d_lat = math.degrees(1000.0 / 6_371_000.0)
    assert haversine_m(10.0, 20.0, 10.0 + d_lat, 20.0) == pytest.approx(1000.0, abs=1e-6)


@pytest.mark.parametrize(
    ("lat", "lng", "ok"),
    [
        (45.5, -73.5, True),
        (-90, 180, True),
        (0, 0, False),
        (0.0, 10.0, True),
        (91, 0, False),
        (10, -181, False),
        (float("nan"), 1.0, False),
        (float("inf"), 1.0, False),
        ("45", "-73", False),
        (True, 1.0, False),
        (None, 1.0, False),
    ],
)
def test_is_valid_coordinates(lat: object, lng: object, ok: bool) -> None:
    assert is_valid_coordinates(lat, lng) is ok


def test_in_continental_canada() -> None:
    assert in_continental_canada(53.5, -113.5)
    assert not in_continental_canada(40.71, -74.0)
    assert not in_continental_canada(51.5, -0.12)


def test_bounds_around_contains_center() -> None:
    b = bounds_around(45.5, -73.5, 10.0)
    assert b.south < 45.5 < b.north
    assert b.west < -73.5 < b.east
    assert b.north - 45.5 == pytest.approx(10.0 / 111.32)


def test_bounds_around_clamps_at_pole() -> None:
    b = bounds_around(89.95, 0.0, 50.0)
    assert b.north == 90.0
    assert b.west >= -180.0 and b.east <= 180.0


def test_bounds_formats() -> None:
    b = Bounds(north=2.0, south=1.0, east=4.0, west=3.0)
    assert b.as_bbox() == "3.000000,1.000000,4.000000,2.000000"
    assert b.as_params()["north"] == "2.000000"
