from __future__ import annotations

import math

import pytest
from mechiee.services.geo import (
    EARTH_RADIUS_KM,
    coordinates_of,
    estimate_eta_minutes,
    haversine_km,
    nearby,
    within_radius,
)

ORIGIN = {"lat": 19.0760, "lon": 72.8777}


def _north(km: float) -> dict[str, float]:
    return {"lat": ORIGIN["lat"] + math.degrees(km / EARTH_RADIUS_KM), "lon": ORIGIN["lon"]}


def test_haversine_zero_distance() -> None:
    assert haversine_km(19.0, 72.0, 19.0, 72.0) == 0.0


def test_haversine_along_meridian_matches_arc_length() -> None:
    point = _north(3.0)
    assert haversine_km(ORIGIN["lat"], ORIGIN["lon"], point["lat"], point["lon"]) == pytest.approx(3.0, abs=1e-6)


def test_radius_boundary_includes_4_9_and_excludes_5_1() -> None:
    inside = {"id": "in", **_north(4.9)}
    outside = {"id": "out", **_north(5.1)}

    assert within_radius(ORIGIN, [inside, outside], 5) == [inside]


def test_candidates_without_coordinates_are_skipped() -> None:
    good = {"id": "g", **_north(1.0)}
    candidates = [{"id": "none"}, {"id": "nan", "lat": float("nan"), "lon": 72.0}, good]

    assert within_radius(ORIGIN, candidates, 5) == [good]


def test_geojson_location_is_lon_lat() -> None:
    lat, lon = _north(2.0)["lat"], ORIGIN["lon"]
    garage = {"_id": "g1", "location": {"type": "Point", "coordinates": [lon, lat]}}

    assert coordinates_of(garage) == (lat, lon)
    [(match, distance)] = nearby(ORIGIN, [garage], 5)
    assert match is garage
    assert distance == pytest.approx(2.0, abs=1e-6)


def test_nearby_preserves_input_order_and_is_deterministic() -> None:
    candidates = [{"id": str(km), **_north(km)} for km in (3.0, 1.0, 2.0)]

    first = within_radius(ORIGIN, candidates, 5)
    second = within_radius(ORIGIN, candidates, 5)
    assert [c["id"] for c in first] == ["3.0", "1.0", "2.0"]
    assert first == second


def test_origin_without_coordinates_is_an_error() -> None:
    with pytest.raises(ValueError):
        within_radius({"name": "nowhere"}, [], 5)


def test_eta_rounds_up_to_whole_minutes() -> None:
    assert estimate_eta_minutes(2.0) == 6
    assert estimate_eta_minutes(0.01) == 1
    with pytest.raises(ValueError):
        estimate_eta_minutes(1.0, speed_kmh=0)
