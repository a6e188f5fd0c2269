"""Great-circle helpers on a spherical earth.

All angles are in degrees. The sphere radius is the 3440.065 NM value used
by the coverage logic; statute miles are derived with the 1.15078 SM/NM
factor. Implementations use only the Python standard library (math).
Callers are responsible for rejecting missing coordinates before calling.
"""

from __future__ import annotations

from math import asin, atan2, cos, degrees, radians, sin, sqrt
from typing import TYPE_CHECKING, Tuple

if TYPE_CHECKING:
    from atcbridge.core.models import Position

__all__ = [
    "EARTH_RADIUS_NM",
    "SM_PER_NM",
    "haversine_nm",
    "haversine_sm",
    "distance_sm",
    "dest_point",
]


EARTH_RADIUS_NM: float = 3440.065
SM_PER_NM: float = 1.15078


def _normalize_lon_raw(lon_deg: float) -> float:
    """Normalize longitude to [-180, 180) without rounding."""
    return (lon_deg + 180.0) % 360.0 - 180.0


def haversine_nm(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance on a sphere in nautical miles.

    Args:
        lat1: Latitude of point 1 in degrees.
        lon1: Longitude of point 1 in degrees.
        lat2: Latitude of point 2 in degrees.
        lon2: Longitude of point 2 in degrees.
    Returns:
        Great-circle distance in nautical miles.
    """
    if lat1 == lat2 and lon1 == lon2:
        return 0.0

    phi1 = radians(lat1)
    phi2 = radians(lat2)
    dphi = phi2 - phi1
    dlambda = radians(_normalize_lon_raw(lon2) - _normalize_lon_raw(lon1))

    # haversine(a) = sin^2(dphi/2) + cos(phi1)cos(phi2)sin^2(dlambda/2)
    sdphi = sin(dphi * 0.5)
    sdl = sin(dlambda * 0.5)
    a = sdphi * sdphi + cos(phi1) * cos(phi2) * sdl * sdl
    # Clamp due to rounding
    a = min(1.0, max(0.0, a))
    c = 2.0 * asin(sqrt(a))
    return EARTH_RADIUS_NM * c


def haversine_sm(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in statute miles (see :func:`haversine_nm`)."""
    return haversine_nm(lat1, lon1, lat2, lon2) * SM_PER_NM


def distance_sm(p1: "Position", p2: "Position") -> float:
    """Statute-mile distance between two positions; altitude is ignored."""
    return haversine_sm(p1.latitude, p1.longitude, p2.latitude, p2.longitude)


def dest_point(
    lat: float, lon: float, bearing_deg: float, range_sm: float
) -> Tuple[float, float]:
    """Destination lat/lon from a start point, bearing and statute-mile range.

    Output longitudes are normalized to [-180, 180).
    """
    if range_sm == 0.0:
        return (lat, _normalize_lon_raw(lon))

    phi1 = radians(lat)
    lam1 = radians(_normalize_lon_raw(lon))
    theta = radians(bearing_deg % 360.0)
    delta = (range_sm / SM_PER_NM) / EARTH_RADIUS_NM

    sin_phi2 = sin(phi1) * cos(delta) + cos(phi1) * sin(delta) * cos(theta)
    phi2 = asin(max(-1.0, min(1.0, sin_phi2)))

    y = sin(theta) * sin(delta) * cos(phi1)
    x = cos(delta) - sin(phi1) * sin(phi2)
    lam2 = lam1 + atan2(y, x)
    return (degrees(phi2), _normalize_lon_raw(degrees(lam2)))
