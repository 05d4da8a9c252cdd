from collections import namedtuple
from math import atan2, cos, radians, sin, sqrt

EARTH_RADIUS_KM = 6371.0

GeoPoint = namedtuple("GeoPoint", ["lat", "lng"])


def haversine_km(lat1, lon1, lat2, lon2):
    p1, p2 = radians(lat1), radians(lat2)
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)

    a = sin(dlat / 2) ** 2 + cos(p1) * cos(p2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def parse_point(raw):
    """Accept {"lat": .., "lng": ..} (or "lon") and validate the coordinate ranges."""
    if raw is None:
        return None
    try:
        lat = float(raw["lat"])
        lng = float(raw["lng"] if "lng" in raw else raw["lon"])
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError("location must have numeric lat and lng") from e
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lng <= 180.0:
        raise ValueError("location out of range")
    return GeoPoint(lat, lng)
