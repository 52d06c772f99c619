"""Great-circle distance helpers for garage discovery and ETA estimates."""

from __future__ import annotations

import math
from typing import Any, Iterable, Mapping, Sequence, TypeVar

EARTH_RADIUS_KM = 6371.0
DEFAULT_SPEED_KMH = 20.0

Located = TypeVar("Located")


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value):
        return None
    return float(value)


def coordinates_of(candidate: Any) -> tuple[float, float] | None:
    """Return ``(lat, lon)`` for a candidate, or None when it has no usable point.

    Accepts flat ``lat``/``lon`` keys or attributes, and GeoJSON-style
    ``location.coordinates = [lon, lat]`` as garages are stored.
    """
    if isinstance(candidate, Sequence) and not isinstance(candidate, (str, bytes)):
        if len(candidate) == 2:
            lat, lon = _number(candidate[0]), _number(candidate[1])
            return (lat, lon) if lat is not None and lon is not None else None
        return None

    if isinstance(candidate, Mapping):
        lat, lon = candidate.get("lat"), candidate.get("lon")
        location = candidate.get("location")
    else:
        lat, lon = getattr(candidate, "lat", None), getattr(candidate, "lon", None)
        location = getattr(candidate, "location", None)

    lat_n, lon_n = _number(lat), _number(lon)
    if lat_n is not None and lon_n is not None:
        return lat_n, lon_n

    if isinstance(location, Mapping):
        coords = location.get("coordinates")
        if isinstance(coords, Sequence) and len(coords) == 2:
            lon_n, lat_n = _number(coords[0]), _number(coords[1])
            if lat_n is not None and lon_n is not None:
                return lat_n, lon_n
    return None


def nearby(
    origin: Any, candidates: Iterable[Located], radius_km: float
) -> list[tuple[Located, float]]:
    """Candidates within ``radius_km`` of origin, paired with their distance.

    Input order is preserved. Candidates without coordinates are skipped.
    """
    point = coordinates_of(origin)
    if point is None:
        raise ValueError("origin must have lat/lon coordinates")
    out: list[tuple[Located, float]] = []
    for candidate in candidates:
        coords = coordinates_of(candidate)
        if coords is None:
            continue
        distance = haversine_km(point[0], point[1], coords[0], coords[1])
        if distance <= radius_km:
            out.append((candidate, distance))
    return out


def within_radius(origin: Any, candidates: Iterable[Located], radius_km: float) -> list[Located]:
    return [candidate for candidate, _ in nearby(origin, candidates, radius_km)]


def estimate_eta_minutes(distance_km: float, speed_kmh: float = DEFAULT_SPEED_KMH) -> int:
    if speed_kmh <= 0:
        raise ValueError("speed_kmh must be positive")
    return max(1, math.ceil(distance_km * 60 / speed_kmh))
