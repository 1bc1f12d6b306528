from __future__ import annotations

import math
from dataclasses import dataclass

from ..errors import ValidationError

EARTH_RADIUS_KM = 6371.0
EARTH_RADIUS_M = EARTH_RADIUS_KM * 1000.0
METERS_PER_MILE = 1609.344

# Pads the pre-filter box so float error never drops a point sitting on the radius.
_BOX_PAD = 1.0001


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(d_lon / 2) ** 2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))
    return EARTH_RADIUS_M * c


def meters_to_km(meters: float) -> float:
    return meters / 1000.0


def meters_to_miles(meters: float) -> float:
    return meters / METERS_PER_MILE


def is_valid_coordinate(lat: float | None, lng: float | None) -> bool:
    if lat is None or lng is None:
        return False
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat_f) or math.isnan(lng_f):
        return False
    return -90.0 <= lat_f <= 90.0 and -180.0 <= lng_f <= 180.0


def ensure_point(lat: float | None, lng: float | None, label: str = "point") -> GeoPoint:
    if not is_valid_coordinate(lat, lng):
        raise ValidationError(
            f"Invalid {label} coordinates",
            details={"lat": lat, "lng": lng},
        )
    return GeoPoint(lat=float(lat), lng=float(lng))


def destination_point(lat: float, lng: float, bearing_deg: float, distance_m: float) -> GeoPoint:
    """Point reached travelling ``distance_m`` from (lat, lng) along an initial bearing."""
    angular = distance_m / EARTH_RADIUS_M
    bearing = math.radians(bearing_deg)
    lat1 = math.radians(lat)
    lng1 = math.radians(lng)

    lat2 = math.asin(
        math.sin(lat1) * math.cos(angular) + math.cos(lat1) * math.sin(angular) * math.cos(bearing)
    )
    lng2 = lng1 + math.atan2(
        math.sin(bearing) * math.sin(angular) * math.cos(lat1),
        math.cos(angular) - math.sin(lat1) * math.sin(lat2),
    )
    lng2_deg = (math.degrees(lng2) + 540.0) % 360.0 - 180.0
    return GeoPoint(lat=math.degrees(lat2), lng=lng2_deg)


def longitude_spans(west: float, east: float) -> list[tuple[float, float]]:
    """Split a west->east longitude range into non-wrapping spans.

    A west edge numerically greater than the east edge means the range crosses
    the antimeridian.
    """
    if west <= east:
        return [(west, east)]
    return [(west, 180.0), (-180.0, east)]


@dataclass(frozen=True)
class RadiusBox:
    min_lat: float
    max_lat: float
    lng_spans: tuple[tuple[float, float], ...]


def radius_box(center: GeoPoint, radius_m: float) -> RadiusBox:
    """Smallest lat/lng box containing every point within ``radius_m`` of center."""
    angular = (radius_m / EARTH_RADIUS_M) * _BOX_PAD
    d_lat = math.degrees(angular)
    min_lat = center.lat - d_lat
    max_lat = center.lat + d_lat

    if max_lat >= 90.0 or min_lat <= -90.0:
        return RadiusBox(
            min_lat=max(-90.0, min_lat),
            max_lat=min(90.0, max_lat),
            lng_spans=((-180.0, 180.0),),
        )

    ratio = math.sin(angular) / math.cos(math.radians(center.lat))
    d_lng = math.degrees(math.asin(min(1.0, ratio)))
    west = center.lng - d_lng
    east = center.lng + d_lng
    if d_lng >= 180.0:
        spans: tuple[tuple[float, float], ...] = ((-180.0, 180.0),)
    elif west < -180.0:
        spans = ((west + 360.0, 180.0), (-180.0, east))
    elif east > 180.0:
        spans = ((west, 180.0), (-180.0, east - 360.0))
    else:
        spans = ((west, east),)
    return RadiusBox(min_lat=min_lat, max_lat=max_lat, lng_spans=spans)
