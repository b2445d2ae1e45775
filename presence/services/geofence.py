from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from math import asin, cos, radians, sin, sqrt

from presence.models import CheckinType, WorkLocation

EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True, slots=True)
class WorkLocationSnapshot:
    id: int
    name: str
    address: str
    latitude: float
    longitude: float
    radius_m: float

    @classmethod
    def from_model(cls, location: WorkLocation) -> WorkLocationSnapshot:
        return cls(
            id=location.id,
            name=location.name,
            address=location.address or "",
            latitude=float(location.latitude),
            longitude=float(location.longitude),
            radius_m=float(location.radius_m),
        )


@dataclass(frozen=True, slots=True)
class GeoFenceResult:
    inside: bool
    nearest: WorkLocationSnapshot | None
    distance_m: float | None

    @property
    def classification(self) -> CheckinType:
        return CheckinType.ONSITE if self.inside else CheckinType.OFFSITE


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    # Clamp float drift so asin never sees a value above 1 for antipodal points.
    c = 2 * asin(sqrt(min(1.0, a)))
    return EARTH_RADIUS_M * c


def evaluate_geofence(
    lat: float,
    lng: float,
    locations: Iterable[WorkLocationSnapshot],
) -> GeoFenceResult:
    """Classify a point against the authorized radii.

    The first location containing the point wins. When none contains it, the
    globally nearest location is still reported so callers can tell the user
    how far away they are.
    """
    nearest: WorkLocationSnapshot | None = None
    nearest_distance: float | None = None

    for location in locations:
        location_distance = distance_m(lat, lng, location.latitude, location.longitude)

        if location_distance <= location.radius_m:
            return GeoFenceResult(inside=True, nearest=location, distance_m=location_distance)

        if nearest_distance is None or location_distance < nearest_distance:
            nearest = location
            nearest_distance = location_distance

    return GeoFenceResult(inside=False, nearest=nearest, distance_m=nearest_distance)
