"""Great-circle distance helpers."""

from __future__ import annotations

import math

from celestia.domain.profiles.models import GeoPoint

EARTH_RADIUS_KM = 6_371.0


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Return the great-circle distance between two points in kilometres."""

    phi1, phi2 = math.radians(a.lat), math.radians(b.lat)
    dphi = math.radians(b.lat - a.lat)
    dlambda = math.radians(b.lon - a.lon)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(max(0.0, 1 - h)))


def offset_north(origin: GeoPoint, distance_km: float) -> GeoPoint:
    """Point `distance_km` due north of origin along the meridian."""

    delta = math.degrees(distance_km / EARTH_RADIUS_KM)
    return GeoPoint(lat=origin.lat + delta, lon=origin.lon)
