"""Haversine distance, bearings and the bounding-box pre-filter."""

from __future__ import annotations

import pytest

from ride_stops.geo import (
    EARTH_RADIUS_M,
    bearing_degrees,
    bearing_delta,
    bounding_box,
    distance_meters,
    distances_meters,
)

POINTS = [
    (52.52, 13.405),
    (48.8566, 2.3522),
    (-33.8688, 151.2093),
    (0.0, 0.0),
    (89.9, -179.5),
]


@pytest.mark.parametrize("a", POINTS)
@pytest.mark.parametrize("b", POINTS)
def test_distance_is_symmetric(a, b):
    assert distance_meters(a, b) == distance_meters(b, a)


@pytest.mark.parametrize("point", POINTS)
def test_distance_to_self_is_zero(point):
    assert distance_meters(point, point) == 0.0


def test_one_degree_of_latitude():
    expected = 3.141592653589793 * EARTH_RADIUS_M / 180.0
    assert distance_meters((0.0, 0.0), (1.0, 0.0)) == pytest.approx(expected, rel=1e-9)


def test_berlin_to_paris_distance():
    # Roughly 878 km on the 6,371 km sphere.
    km = distance_meters((52.52, 13.405), (48.8566, 2.3522)) / 1000.0
    assert 870 < km < 885


def test_cardinal_bearings():
    assert bearing_degrees((0.0, 0.0), (1.0, 0.0)) == pytest.approx(0.0)
    assert bearing_degrees((0.0, 0.0), (0.0, 1.0)) == pytest.approx(90.0)
    assert bearing_degrees((1.0, 0.0), (0.0, 0.0)) == pytest.approx(180.0)
    assert bearing_degrees((0.0, 1.0), (0.0, 0.0)) == pytest.approx(270.0)


def test_bearing_is_normalized_and_not_symmetric():
    a, b = (52.52, 13.405), (48.8566, 2.3522)
    forward = bearing_degrees(a, b)
    back = bearing_degrees(b, a)
    assert 0.0 <= forward < 360.0
    assert 0.0 <= back < 360.0
    assert forward != pytest.approx(back)
    assert bearing_delta(forward, back) == pytest.approx(180.0, abs=10.0)


def test_bearing_delta_wraparound():
    assert bearing_delta(355, 5) == 10
    assert bearing_delta(5, 355) == 10
    assert bearing_delta(0, 180) == 180
    assert bearing_delta(90, 270) == 180
    assert bearing_delta(10, 350) == 20
    assert bearing_delta(0, 360) == 0


@pytest.mark.parametrize("x", [0.0, 15.0, 90.0, 179.5, 180.0, 270.0, 359.9])
def test_bearing_delta_of_identical_bearings_is_zero(x):
    assert bearing_delta(x, x) == 0


def test_vectorized_distances_match_scalar():
    origin = POINTS[0]
    lats = [p[0] for p in POINTS]
    lons = [p[1] for p in POINTS]
    result = distances_meters(origin, lats, lons)
    for value, point in zip(result, POINTS):
        assert value == pytest.approx(distance_meters(origin, point), rel=1e-9, abs=1e-6)


def test_vectorized_distances_handle_empty_and_mismatched_input():
    assert distances_meters((0.0, 0.0), [], []).size == 0
    with pytest.raises(ValueError):
        distances_meters((0.0, 0.0), [1.0], [])


def test_bounding_box_contains_points_on_the_radius():
    center = (52.52, 13.405)
    min_lat, max_lat, min_lon, max_lon = bounding_box(center, 10.0)
    north = (center[0] + 10.0 / 111_194.93, center[1])
    assert distance_meters(center, north) == pytest.approx(10.0, rel=1e-4)
    assert min_lat < north[0] < max_lat
    assert min_lon < center[1] < max_lon
    # Longitude span widens with latitude.
    assert (max_lon - min_lon) > (max_lat - min_lat)
