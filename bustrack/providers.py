"""
Location providers: pluggable sources of raw device positions.

The tracking pipeline only talks to ``LocationProvider``. Implementations:
- ReplayLocationProvider: replays recorded samples (tests, field-log replay).
- RouteSimulatorProvider: drives a virtual bus along a waypoint route.
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from shapely.geometry import LineString

from .exceptions import LocationError
from .geo import LatLngTime, bearing_degrees, haversine_distance_meters
from .normalizer import RawSample

logger = logging.getLogger(__name__)

PERMISSION_GRANTED = "granted"
PERMISSION_DENIED = "denied"
PERMISSION_PROMPT = "prompt"

PositionCallback = Callable[[Optional[RawSample], Optional[LocationError]], None]


@dataclass(frozen=True)
class WatchOptions:
    high_accuracy: bool = True
    timeout_ms: int = 10000
    maximum_age_ms: int = 0


class LocationProvider:
    """
    Capability interface over a platform location service.
    """

    def check_permission(self) -> str:
        """Return the current permission state without prompting."""
        raise NotImplementedError

    def request_permission(self) -> str:
        """Prompt for location access and return the resulting state."""
        raise NotImplementedError

    def get_current_position(self, options: WatchOptions) -> RawSample:
        """Return one position or raise ``LocationError``."""
        raise NotImplementedError

    def watch_position(self, options: WatchOptions, callback: PositionCallback) -> object:
        """
        Start continuous updates. ``callback`` receives ``(sample, None)`` or
        ``(None, error)``. Returns an opaque handle for ``clear_watch``.
        """
        raise NotImplementedError

    def clear_watch(self, handle: object) -> None:
        raise NotImplementedError


class ReplayLocationProvider(LocationProvider):
    """
    Replays a fixed list of samples into every active watch.
    """

    def __init__(
        self,
        samples: Iterable[RawSample] = (),
        permission: str = PERMISSION_GRANTED,
        grant_on_request: bool = True,
        current_position_error: Optional[LocationError] = None,
        watch_errors: Sequence[LocationError] = (),
        position_errors: Sequence[LocationError] = (),
    ):
        self.samples: List[RawSample] = list(samples)
        self.permission = permission
        self.grant_on_request = grant_on_request
        self.current_position_error = current_position_error
        self.watch_errors = list(watch_errors)
        self.position_errors = list(position_errors)
        self.watches: Dict[int, PositionCallback] = {}
        self.released: List[int] = []
        self.watch_requests: List[WatchOptions] = []
        self.position_requests: List[WatchOptions] = []
        self._handles = itertools.count(1)
        self._cursor = 0

    def check_permission(self) -> str:
        return self.permission

    def request_permission(self) -> str:
        if self.grant_on_request:
            self.permission = PERMISSION_GRANTED
        else:
            self.permission = PERMISSION_DENIED
        return self.permission

    def get_current_position(self, options: WatchOptions) -> RawSample:
        self.position_requests.append(options)
        if self.position_errors:
            raise self.position_errors.pop(0)
        if self.current_position_error is not None:
            raise self.current_position_error
        if self._cursor >= len(self.samples):
            raise LocationError(LocationError.TIMEOUT, "No position available")
        sample = self.samples[self._cursor]
        self._cursor += 1
        return sample

    def watch_position(self, options: WatchOptions, callback: PositionCallback) -> int:
        self.watch_requests.append(options)
        if self.watch_errors:
            raise self.watch_errors.pop(0)
        handle = next(self._handles)
        self.watches[handle] = callback
        return handle

    def clear_watch(self, handle: object) -> None:
        self.watches.pop(handle, None)
        self.released.append(handle)

    def emit(self, sample: RawSample) -> None:
        for callback in list(self.watches.values()):
            callback(sample, None)

    def fail(self, error: LocationError) -> None:
        for callback in list(self.watches.values()):
            callback(None, error)

    def play(self) -> int:
        """Deliver the remaining samples in order. Returns how many were sent."""
        delivered = 0
        while self._cursor < len(self.samples):
            sample = self.samples[self._cursor]
            self._cursor += 1
            self.emit(sample)
            delivered += 1
        return delivered


ROUTE_DEFINITIONS: Sequence[Dict[str, object]] = [
    {
        "id": "ojota-cms",
        "name": "Ojota → CMS",
        "average_speed_kmh": 32.0,
        "waypoints": [
            (6.5870, 3.3790),
            (6.5580, 3.3760),
            (6.5244, 3.3792),
            (6.5095, 3.3711),
            (6.4780, 3.3830),
            (6.4531, 3.3958),
        ],
    },
    {
        "id": "ikeja-obalende",
        "name": "Ikeja Along → Obalende",
        "average_speed_kmh": 38.0,
        "waypoints": [
            (6.6018, 3.3515),
            (6.5720, 3.3670),
            (6.5440, 3.3750),
            (6.5010, 3.3860),
            (6.4660, 3.4020),
            (6.4490, 3.4070),
        ],
    },
]


def route_by_id(route_id: str) -> Dict[str, object]:
    for definition in ROUTE_DEFINITIONS:
        if definition["id"] == route_id:
            return definition
    raise KeyError(route_id)


class RouteSimulatorProvider(LocationProvider):
    """
    Moves a virtual bus along ``waypoints`` at ``speed_kmh`` and emits a
    sample to every watch on each ``tick``. The bus stops at the last
    waypoint.

    With ``report_motion=False`` the samples omit speed and heading, like a
    handset that is indoors or moving slowly.
    """

    def __init__(
        self,
        waypoints: Sequence[Tuple[float, float]],
        speed_kmh: float = 35.0,
        start_ms: int = 0,
        accuracy_meters: float = 8.0,
        report_motion: bool = False,
    ):
        if len(waypoints) < 2:
            raise ValueError("A route needs at least two waypoints.")
        # Shapely works in (x, y) order.
        self.line = LineString([(lng, lat) for lat, lng in waypoints])
        self.length_m = sum(
            haversine_distance_meters(LatLngTime(a[0], a[1], 0), LatLngTime(b[0], b[1], 0))
            for a, b in zip(waypoints[:-1], waypoints[1:])
        )
        self.speed_kmh = speed_kmh
        self.start_ms = start_ms
        self.accuracy_meters = accuracy_meters
        self.report_motion = report_motion
        self.watches: Dict[int, PositionCallback] = {}
        self._handles = itertools.count(1)
        self._last_ms = start_ms

    @classmethod
    def from_route(cls, route_id: str, **kwargs) -> "RouteSimulatorProvider":
        definition = route_by_id(route_id)
        kwargs.setdefault("speed_kmh", definition["average_speed_kmh"])
        return cls(definition["waypoints"], **kwargs)

    def progress(self, at_ms: int) -> float:
        travelled_m = max(at_ms - self.start_ms, 0) / 1000.0 * self.speed_kmh / 3.6
        if self.length_m <= 0:
            return 1.0
        return min(travelled_m / self.length_m, 1.0)

    def position_at(self, at_ms: int) -> RawSample:
        fraction = self.progress(at_ms)
        point = self.line.interpolate(fraction, normalized=True)
        speed_mps = None
        heading = None
        if self.report_motion:
            speed_mps = 0.0 if fraction >= 1.0 else self.speed_kmh / 3.6
            ahead = self.line.interpolate(min(fraction + 0.001, 1.0), normalized=True)
            if ahead.equals(point):
                heading = None
            else:
                heading = bearing_degrees(
                    LatLngTime(point.y, point.x, at_ms), LatLngTime(ahead.y, ahead.x, at_ms)
                )
        return RawSample(
            latitude=point.y,
            longitude=point.x,
            accuracy_meters=self.accuracy_meters,
            timestamp=at_ms,
            speed_mps=speed_mps,
            heading_degrees=heading,
        )

    def check_permission(self) -> str:
        return PERMISSION_GRANTED

    def request_permission(self) -> str:
        return PERMISSION_GRANTED

    def get_current_position(self, options: WatchOptions) -> RawSample:
        return self.position_at(self._last_ms)

    def watch_position(self, options: WatchOptions, callback: PositionCallback) -> int:
        handle = next(self._handles)
        self.watches[handle] = callback
        logger.debug("Simulated watch %s started", handle)
        return handle

    def clear_watch(self, handle: object) -> None:
        self.watches.pop(handle, None)

    def tick(self, now_ms: int) -> RawSample:
        self._last_ms = now_ms
        sample = self.position_at(now_ms)
        for callback in list(self.watches.values()):
            callback(sample, None)
        return sample

    @property
    def finished(self) -> bool:
        return self.progress(self._last_ms) >= 1.0
