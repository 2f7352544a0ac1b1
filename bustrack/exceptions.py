"""
Exception types shared by the tracking pipeline.
"""
from __future__ import annotations

from typing import Dict, List, Optional


class TrackingError(Exception):
    """Base class for tracking pipeline failures."""


class LocationError(TrackingError):
    """
    Raised (or passed to watch callbacks) by a location provider.

    ``code`` mirrors the geolocation error codes exposed by browsers and the
    native plugins.
    """

    PERMISSION_DENIED = "PERMISSION_DENIED"
    POSITION_UNAVAILABLE = "POSITION_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code
        self.message = message or code

    @property
    def is_transient(self) -> bool:
        return self.code in (self.POSITION_UNAVAILABLE, self.TIMEOUT)


class TransmissionError(TrackingError):
    """The ingestion endpoint could not be reached or answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class IngestionRejected(TransmissionError):
    """The ingestion endpoint rejected the payload with field-level errors."""

    def __init__(self, details: List[Dict[str, str]], message: str = "Payload rejected"):
        super().__init__(message, status_code=400)
        self.details = details

    def __str__(self) -> str:
        fields = ", ".join(
            f"{item.get('field')}: {item.get('message')}" for item in self.details
        )
        return f"{self.args[0]} ({fields})" if fields else self.args[0]
