import math
from typing import Literal, NamedTuple

from pydantic import BaseModel, model_validator

from backend.errors import (
    LocationPermissionDeniedError,
    LocationTimeoutError,
    LocationUnavailableError,
    OutOfRangeError,
)

EARTH_RADIUS_METERS = 6_371_000.0

# W3C GeolocationPositionError codes as reported by the browser
PERMISSION_DENIED = 1
POSITION_UNAVAILABLE = 2
TIMEOUT = 3


class Coordinates(NamedTuple):
    latitude: float
    longitude: float


class LocationFix(BaseModel):
    latitude: float
    longitude: float
    accuracy: float | None = None

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.latitude, self.longitude)


class LocationReport(BaseModel):
    """What the device sent back: either a fix or a geolocation error code."""

    fix: LocationFix | None = None
    error_code: Literal[1, 2, 3] | None = None

    @model_validator(mode="after")
    def _fix_or_error(self):
        if (self.fix is None) == (self.error_code is None):
            raise ValueError("Provide exactly one of fix or error_code.")
        return self


def distance(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance in meters (haversine)."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    dphi = math.radians(b.latitude - a.latitude)
    dlam = math.radians(b.longitude - a.longitude)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_METERS * c


def in_range(current: Coordinates, center: Coordinates, radius_meters: float) -> bool:
    return distance(current, center) <= radius_meters


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)}m"
    return f"{meters / 1000:.2f}km"


def out_of_range_error(distance_meters: float, radius_meters: float) -> OutOfRangeError:
    return OutOfRangeError(
        distance_meters,
        radius_meters,
        f"You are {format_distance(distance_meters)} away. "
        f"You must be within {format_distance(radius_meters)} of the classroom.",
    )


def location_from_report(report: LocationReport) -> LocationFix:
    """
    Turn a device report into a fix, or raise the matching location error.
    No retry; the student re-initiates.
    """
    if report.fix is not None:
        return report.fix
    if report.error_code == PERMISSION_DENIED:
        raise LocationPermissionDeniedError()
    if report.error_code == TIMEOUT:
        raise LocationTimeoutError()
    raise LocationUnavailableError()
