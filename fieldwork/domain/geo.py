import math
from dataclasses import dataclass

EARTH_RADIUS_MILES = 3959
EARTH_RADIUS_KM = 6371
METERS_PER_MILE = 1609.34


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, point: Coordinates) -> bool:
        return (
            self.min_lat <= point.lat <= self.max_lat
            and self.min_lng <= point.lng <= self.max_lng
        )


def _haversine(lat1: float, lng1: float, lat2: float, lng2: float, radius: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return radius * c


def distance_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in miles using the haversine formula."""
    return _haversine(lat1, lng1, lat2, lng2, EARTH_RADIUS_MILES)


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return _haversine(lat1, lng1, lat2, lng2, EARTH_RADIUS_KM)


def distance_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return distance_km(lat1, lng1, lat2, lng2) * 1000


def is_within_radius(center: Coordinates, point: Coordinates, radius_miles: float) -> bool:
    return distance_miles(center.lat, center.lng, point.lat, point.lng) <= radius_miles


def bounding_box(center: Coordinates, radius_miles: float) -> BoundingBox:
    """
    Approximate lat/lng box around `center`.
    Cheap pre-filter before exact distance checks; one degree of latitude is ~69 miles.
    """
    lat_delta = radius_miles / 69
    lng_delta = radius_miles / (69 * math.cos(math.radians(center.lat)))
    return BoundingBox(
        min_lat=center.lat - lat_delta,
        max_lat=center.lat + lat_delta,
        min_lng=center.lng - lng_delta,
        max_lng=center.lng + lng_delta,
    )
