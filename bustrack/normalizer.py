"""
Turn raw device location callbacks into canonical GPS fixes.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Dict, Optional

from .geo import (
    MAX_SPEED_KMH,
    LatLngTime,
    bearing_degrees,
    mps_to_kmh,
    speed_kmh_from_samples,
)


@dataclass(frozen=True)
class RawSample:
    """
    One position as delivered by the platform location service.

    Devices frequently omit speed and heading at low speed or indoors.
    """

    latitude: float
    longitude: float
    accuracy_meters: float
    timestamp: int
    speed_mps: Optional[float] = None
    heading_degrees: Optional[float] = None

    @property
    def point(self) -> LatLngTime:
        return LatLngTime(self.latitude, self.longitude, self.timestamp)


@dataclass(frozen=True)
class GPSFix:
    latitude: float
    longitude: float
    speed_kmh: Optional[float]
    heading_degrees: Optional[float]
    accuracy_meters: float
    timestamp: int

    @property
    def point(self) -> LatLngTime:
        return LatLngTime(self.latitude, self.longitude, self.timestamp)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "GPSFix":
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            speed_kmh=None if data.get("speed_kmh") is None else float(data["speed_kmh"]),
            heading_degrees=(
                None if data.get("heading_degrees") is None else float(data["heading_degrees"])
            ),
            accuracy_meters=float(data.get("accuracy_meters", 0.0)),
            timestamp=int(data["timestamp"]),
        )


def _device_speed_kmh(speed_mps: float, max_speed_kmh: float) -> Optional[float]:
    if not math.isfinite(speed_mps):
        return None
    speed_kmh = max(0.0, mps_to_kmh(speed_mps))
    if speed_kmh > max_speed_kmh:
        return None
    return speed_kmh


def _device_heading(heading: float) -> Optional[float]:
    # Some platforms report -1 or NaN when the heading is unknown.
    if not math.isfinite(heading) or heading < 0:
        return None
    heading = heading % 360
    return 0.0 if heading >= 360 else heading


def normalize_sample(
    sample: RawSample,
    previous: Optional[GPSFix] = None,
    max_speed_kmh: float = MAX_SPEED_KMH,
) -> GPSFix:
    """
    Build a ``GPSFix`` from ``sample``, backfilling speed and heading from
    ``previous`` when the device did not report them.

    Fields that neither the device nor derivation can supply stay ``None``.
    """
    if sample.speed_mps is not None:
        speed_kmh = _device_speed_kmh(sample.speed_mps, max_speed_kmh)
    elif previous is not None:
        speed_kmh = speed_kmh_from_samples(previous.point, sample.point, max_speed_kmh)
    else:
        speed_kmh = None

    heading = None
    if sample.heading_degrees is not None:
        heading = _device_heading(sample.heading_degrees)
    if heading is None and previous is not None:
        heading = bearing_degrees(previous.point, sample.point)

    return GPSFix(
        latitude=sample.latitude,
        longitude=sample.longitude,
        speed_kmh=speed_kmh,
        heading_degrees=heading,
        accuracy_meters=sample.accuracy_meters,
        timestamp=sample.timestamp,
    )
