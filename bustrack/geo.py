"""
Geodesic helpers used to derive speed and heading from consecutive fixes.

Everything here is pure and stateless.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

EARTH_RADIUS_M = 6_371_000.0
JITTER_DISTANCE_M = 3.0
MAX_SPEED_KMH = 160.0

MPS_TO_KMH = 3.6
KNOTS_TO_KMH = 1.852


@dataclass(frozen=True)
class LatLngTime:
    """A timestamped point. ``timestamp`` is epoch milliseconds."""

    latitude: float
    longitude: float
    timestamp: int


def mps_to_kmh(speed_mps: float) -> float:
    return speed_mps * MPS_TO_KMH


def knots_to_kmh(speed_knots: float) -> float:
    return speed_knots * KNOTS_TO_KMH


def haversine_distance_meters(a: LatLngTime, b: LatLngTime) -> float:
    """
    Compute the great-circle distance between two points in metres.
    """
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = math.radians(b.latitude - a.latitude)
    d_lng = math.radians(b.longitude - a.longitude)

    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_M * c


def bearing_degrees(a: LatLngTime, b: LatLngTime) -> float:
    """
    Compute the initial compass bearing from ``a`` to ``b`` in [0, 360).
    """
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)

    x = math.sin(d_lambda) * math.cos(phi2)
    y = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(
        d_lambda
    )
    bearing = (math.degrees(math.atan2(x, y)) + 360) % 360
    # (-1e-15 + 360) % 360 evaluates to 360.0 in floating point.
    return 0.0 if bearing >= 360 else bearing


def speed_kmh_from_samples(
    a: LatLngTime,
    b: LatLngTime,
    max_speed_kmh: float = MAX_SPEED_KMH,
) -> Optional[float]:
    """
    Derive the average speed between two samples in km/h.

    Returns ``None`` when no rate can be derived (non-increasing timestamps)
    or the result is implausible (non-finite, negative or above
    ``max_speed_kmh``). Movement under ``JITTER_DISTANCE_M`` is reported as
    standing still.
    """
    elapsed_ms = b.timestamp - a.timestamp
    if elapsed_ms <= 0:
        return None

    distance_m = haversine_distance_meters(a, b)
    if distance_m < JITTER_DISTANCE_M:
        return 0.0

    speed_kmh = mps_to_kmh(distance_m / (elapsed_ms / 1000.0))
    if not math.isfinite(speed_kmh) or speed_kmh < 0 or speed_kmh > max_speed_kmh:
        return None
    return speed_kmh
