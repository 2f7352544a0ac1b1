"""
Rate-limited, fire-and-forget delivery of normalized fixes to the ingestion
endpoint.

A failed send is logged and forgotten: the next fix, one interval later, is
the retry.
"""
from __future__ import annotations

import logging
import math
import time
from concurrent.futures import Executor
from typing import TYPE_CHECKING, Callable, Dict, Optional

import requests

from .exceptions import IngestionRejected, TransmissionError
from .normalizer import GPSFix

if TYPE_CHECKING:
    from .session import TrackingSession

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL_MS = 15000

SEND_PENDING = "pending"
SEND_SUCCESS = "success"
SEND_ERROR = "error"

ResultCallback = Callable[[str, int, Optional[str]], None]


def now_ms() -> int:
    return int(time.time() * 1000)


def build_payload(bus_id: str, trip_id: Optional[str], fix: GPSFix) -> Dict:
    """
    Serialize a fix into the canonical wire format: km/h with two decimals,
    whole degrees, decimal-degree coordinates.
    """
    speed = None if fix.speed_kmh is None else round(fix.speed_kmh, 2)
    heading = None
    if fix.heading_degrees is not None:
        heading = int(math.floor(fix.heading_degrees + 0.5)) % 360
    return {
        "busId": str(bus_id),
        "tripId": str(trip_id) if trip_id else None,
        "latitude": fix.latitude,
        "longitude": fix.longitude,
        "speed": speed,
        "heading": heading,
    }


class LocationClient:
    """
    Thin ``requests`` wrapper around the location ingestion endpoint.
    """

    def __init__(
        self,
        endpoint_url: str,
        timeout_seconds: float = 5.0,
        token: Optional[str] = None,
        http: Optional[requests.Session] = None,
    ):
        self.endpoint_url = endpoint_url
        self.timeout_seconds = timeout_seconds
        self.http = http or requests.Session()
        if token:
            self.http.headers["Authorization"] = f"Bearer {token}"

    def send(self, payload: Dict) -> Dict:
        try:
            response = self.http.post(
                self.endpoint_url, json=payload, timeout=self.timeout_seconds
            )
        except requests.exceptions.RequestException as error:
            raise TransmissionError(f"Could not reach ingestion endpoint: {error}") from error

        if response.status_code == 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            raise IngestionRejected(
                body.get("details") or [], body.get("error") or "Payload rejected"
            )

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as error:
            raise TransmissionError(str(error), status_code=response.status_code) from error

        try:
            return response.json()
        except ValueError:
            return {}


class Transmitter:
    def __init__(
        self,
        client: LocationClient,
        min_interval_ms: int = DEFAULT_MIN_INTERVAL_MS,
        clock: Optional[Callable[[], int]] = None,
        executor: Optional[Executor] = None,
    ):
        self.client = client
        self.min_interval_ms = min_interval_ms
        self.clock = clock or now_ms
        self.executor = executor

    def transmit(
        self,
        session: "TrackingSession",
        fix: GPSFix,
        on_result: Optional[ResultCallback] = None,
    ) -> bool:
        """
        Send ``fix`` for ``session`` unless the minimum interval has not yet
        elapsed since the previous send. Returns whether a send was started.
        """
        if not session.bus_id:
            logger.info("No bus assigned, skipping location update")
            return False

        now = self.clock()
        last_sent = session.last_sent_at_ms
        if last_sent is not None and now - last_sent < self.min_interval_ms:
            logger.debug("Throttled location update for bus %s", session.bus_id)
            return False
        # Claimed before sending so a slow request cannot let a burst through.
        session.last_sent_at_ms = now

        payload = build_payload(session.bus_id, session.trip_id, fix)
        if on_result is not None:
            on_result(SEND_PENDING, now, None)

        if self.executor is None:
            self._send(payload, now, on_result)
        else:
            self.executor.submit(self._send, payload, now, on_result)
        return True

    def _send(self, payload: Dict, sent_at_ms: int, on_result: Optional[ResultCallback]) -> None:
        try:
            self.client.send(payload)
        except IngestionRejected as error:
            logger.error(
                "Ingestion endpoint rejected location for bus %s: %s (payload=%s)",
                payload["busId"],
                error,
                payload,
            )
            outcome, message = SEND_ERROR, str(error)
        except TransmissionError as error:
            logger.warning("Failed to send location for bus %s: %s", payload["busId"], error)
            outcome, message = SEND_ERROR, str(error)
        else:
            logger.debug("Location sent for bus %s", payload["busId"])
            outcome, message = SEND_SUCCESS, None

        if on_result is not None:
            on_result(outcome, sent_at_ms, message)
