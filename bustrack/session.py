"""
Driver-side tracking lifecycle.

``TrackingController`` owns one ``TrackingSession`` and moves it through
idle -> acquiring -> tracking -> (error | idle). Every fix delivered by the
location provider is normalized against the previous one and handed to the
transmitter.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .exceptions import LocationError
from .geo import MAX_SPEED_KMH
from .normalizer import GPSFix, RawSample, normalize_sample
from .providers import PERMISSION_DENIED, PERMISSION_GRANTED, LocationProvider, WatchOptions
from .storage import LastKnownFixStore
from .transmitter import Transmitter, now_ms

logger = logging.getLogger(__name__)

STAGE_IDLE = "idle"
STAGE_ACQUIRING = "acquiring"
STAGE_TRACKING = "tracking"
STAGE_ERROR = "error"

PROVIDER_CACHED = "cached"
PROVIDER_LOW_ACCURACY = "low_accuracy"
PROVIDER_HIGH_ACCURACY = "high_accuracy"

DEFAULT_ACQUIRE_TIMEOUT_MS = 10000
WATCH_TIMEOUT_MS = 60000
REFRESH_TIMEOUT_MS = 30000
FRESH_FIX_TIMEOUT_MS = 20000
CACHED_FIX_MAX_AGE_MS = 120000
LOW_ACCURACY_MAX_AGE_MS = 30000
# Fixes that must have arrived before a low-accuracy watch is upgraded.
UPGRADE_MIN_FIXES = 2


@dataclass
class TrackingSession:
    bus_id: Optional[str] = None
    trip_id: Optional[str] = None
    last_fix: Optional[GPSFix] = None
    last_sent_at_ms: Optional[int] = None
    stage: str = STAGE_IDLE
    watch_handle: Optional[object] = None


@dataclass(frozen=True)
class GPSDiagnostics:
    stage: str
    permission_status: str
    last_fix_age_seconds: Optional[int]
    fix_count: int
    last_send_result: str
    last_send_at_ms: Optional[int]
    last_error: Optional[str]
    watch_attempts: int
    provider: str


def _acquisition_message(error: LocationError) -> str:
    if error.code == LocationError.TIMEOUT:
        return "GPS acquiring signal..."
    return error.message


class TrackingController:
    """
    Drives a location provider for one bus and feeds the transmitter.

    Only one watch subscription exists at a time; ``start`` while one is open
    does nothing. ``stop`` is safe from any state and discards callbacks that
    arrive after it returns. Use the controller as a context manager to make
    sure the subscription is released on every exit path.
    """

    def __init__(
        self,
        provider: LocationProvider,
        transmitter: Transmitter,
        bus_id: Optional[str] = None,
        trip_id: Optional[str] = None,
        acquire_timeout_ms: int = DEFAULT_ACQUIRE_TIMEOUT_MS,
        max_speed_kmh: float = MAX_SPEED_KMH,
        clock: Optional[Callable[[], int]] = None,
        notify: Optional[Callable[[str], None]] = None,
        on_stage_change: Optional[Callable[[str, str], None]] = None,
        fix_store: Optional[LastKnownFixStore] = None,
    ):
        self.provider = provider
        self.transmitter = transmitter
        self.session = TrackingSession(bus_id=bus_id, trip_id=trip_id)
        self.acquire_timeout_ms = acquire_timeout_ms
        self.max_speed_kmh = max_speed_kmh
        self.clock = clock or now_ms
        self.notify = notify
        self.on_stage_change = on_stage_change
        self.fix_store = fix_store
        self.last_known_fix = fix_store.load() if fix_store is not None else None

        self._enabled = False
        self._generation = 0
        self._permission_status = "unknown"
        self._fix_count = 0
        self._watch_high_accuracy = False
        self._watch_attempts = 0
        self._provider_label = PROVIDER_CACHED
        self._last_send_result = "none"
        self._last_send_at_ms: Optional[int] = None
        self._last_error: Optional[str] = None

    def __enter__(self) -> "TrackingController":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    @property
    def stage(self) -> str:
        return self.session.stage

    @property
    def is_tracking(self) -> bool:
        return self.session.watch_handle is not None

    @property
    def diagnostics(self) -> GPSDiagnostics:
        last_fix = self.session.last_fix
        age = None
        if last_fix is not None:
            age = max(0, round((self.clock() - last_fix.timestamp) / 1000))
        return GPSDiagnostics(
            stage=self.session.stage,
            permission_status=self._permission_status,
            last_fix_age_seconds=age,
            fix_count=self._fix_count,
            last_send_result=self._last_send_result,
            last_send_at_ms=self._last_send_at_ms,
            last_error=self._last_error,
            watch_attempts=self._watch_attempts,
            provider=self._provider_label,
        )

    def set_enabled(self, enabled: bool) -> None:
        """
        Follow an external on/off flag (e.g. "an active trip is assigned").
        Only transitions of the flag start or stop tracking.
        """
        enabled = bool(enabled)
        if enabled == self._enabled:
            return
        self._enabled = enabled
        if enabled:
            self.start()
        else:
            self.stop()

    def start(self) -> None:
        if self.session.watch_handle is not None:
            logger.debug("Tracking already active for bus %s", self.session.bus_id)
            return

        if not self.session.bus_id:
            logger.warning("Starting GPS tracking without a bus assignment; fixes will not be sent")

        self._generation += 1
        self._fix_count = 0
        self._watch_attempts = 0
        self._last_error = None
        self._set_stage(STAGE_ACQUIRING)

        if not self._ensure_permission():
            self._fail("Location permission denied. Please enable location access.")
            return

        self._warm_up()

        if not self._subscribe(False, True):
            return
        # Without a fix yet the session keeps acquiring until the watch delivers one.
        if self._fix_count:
            self._set_stage(STAGE_TRACKING)
        logger.info(
            "GPS tracking started for bus %s (watch %s)",
            self.session.bus_id,
            self.session.watch_handle,
        )

    def stop(self) -> None:
        if self._release_watch():
            logger.info("GPS tracking stopped for bus %s", self.session.bus_id)
        self._set_stage(STAGE_IDLE)

    def upgrade_accuracy(self) -> bool:
        """
        Replace a low-accuracy watch with a high-accuracy one once fixes are
        flowing. The host calls this on its own timer, typically 30 s after
        ``start``. Returns whether a high-accuracy watch is now active.
        """
        if self.session.watch_handle is None or self._watch_high_accuracy:
            return False
        if self._fix_count < UPGRADE_MIN_FIXES:
            logger.debug("Not upgrading GPS accuracy yet (%s fixes)", self._fix_count)
            return False

        logger.info("Upgrading GPS watch to high accuracy for bus %s", self.session.bus_id)
        self._release_watch()
        if not self._subscribe(True, False):
            return False
        return self._watch_high_accuracy

    def refresh_position(self) -> Optional[GPSFix]:
        """
        Ask for a single fresh position, high accuracy first.
        """
        for high_accuracy in (True, False):
            options = WatchOptions(
                high_accuracy=high_accuracy,
                timeout_ms=REFRESH_TIMEOUT_MS,
                maximum_age_ms=0 if high_accuracy else LOW_ACCURACY_MAX_AGE_MS,
            )
            try:
                sample = self.provider.get_current_position(options)
            except LocationError as error:
                logger.info("Position request failed (high_accuracy=%s): %s", high_accuracy, error)
                self._last_error = error.message
                continue
            label = PROVIDER_HIGH_ACCURACY if high_accuracy else PROVIDER_LOW_ACCURACY
            return self._handle_sample(sample, label)
        return None

    def _ensure_permission(self) -> bool:
        try:
            status = self.provider.check_permission()
        except LocationError as error:
            logger.error("Error checking location permission: %s", error)
            status = "unknown"
        self._permission_status = status
        if status == PERMISSION_GRANTED:
            return True

        try:
            status = self.provider.request_permission()
        except LocationError as error:
            logger.error("Error requesting location permission: %s", error)
            status = PERMISSION_DENIED
        self._permission_status = status
        return status == PERMISSION_GRANTED

    def _warm_up(self) -> bool:
        """
        Try a cached fix, then a fresh low-accuracy one. A miss on both is
        surfaced through ``last_error`` but does not stop tracking.
        """
        attempts = (
            (PROVIDER_CACHED, self.acquire_timeout_ms, CACHED_FIX_MAX_AGE_MS),
            (PROVIDER_LOW_ACCURACY, FRESH_FIX_TIMEOUT_MS, 0),
        )
        for label, timeout_ms, maximum_age_ms in attempts:
            options = WatchOptions(
                high_accuracy=False, timeout_ms=timeout_ms, maximum_age_ms=maximum_age_ms
            )
            try:
                sample = self.provider.get_current_position(options)
            except LocationError as error:
                logger.info("No %s fix during warm-up: %s", label, error)
                self._last_error = _acquisition_message(error)
                continue
            self._handle_sample(sample, label)
            return True
        return False

    def _subscribe(self, *accuracies: bool) -> bool:
        """
        Open a watch, trying each accuracy in turn. Returns False when no
        watch could be installed; the session is then in ``error``.
        """
        generation = self._generation
        for high_accuracy in accuracies:
            handle = self._open_watch(high_accuracy)
            if generation != self._generation or self.session.stage == STAGE_ERROR:
                # A fatal error was delivered before the handle came back.
                if handle is not None:
                    self._clear_handle(handle)
                return False
            if handle is not None:
                self.session.watch_handle = handle
                self._watch_high_accuracy = high_accuracy
                return True
        self._fail("Failed to start GPS watch")
        return False

    def _release_watch(self) -> bool:
        # Invalidate callbacks from the current watch before releasing it.
        self._generation += 1
        handle = self.session.watch_handle
        self.session.watch_handle = None
        self._watch_high_accuracy = False
        if handle is None:
            return False
        self._clear_handle(handle)
        return True

    def _clear_handle(self, handle: object) -> None:
        try:
            self.provider.clear_watch(handle)
        except LocationError as error:
            logger.warning("Error clearing watch %s: %s", handle, error)

    def _open_watch(self, high_accuracy: bool) -> Optional[object]:
        self._watch_attempts += 1
        generation = self._generation
        label = PROVIDER_HIGH_ACCURACY if high_accuracy else PROVIDER_LOW_ACCURACY
        options = WatchOptions(
            high_accuracy=high_accuracy,
            timeout_ms=WATCH_TIMEOUT_MS,
            maximum_age_ms=0 if high_accuracy else LOW_ACCURACY_MAX_AGE_MS,
        )

        def on_position(sample: Optional[RawSample], error: Optional[LocationError]) -> None:
            self._on_watch_event(generation, label, sample, error)

        try:
            return self.provider.watch_position(options, on_position)
        except LocationError as error:
            logger.error("Failed to start watch (high_accuracy=%s): %s", high_accuracy, error)
            self._last_error = error.message
            return None

    def _on_watch_event(
        self,
        generation: int,
        label: str,
        sample: Optional[RawSample],
        error: Optional[LocationError],
    ) -> None:
        if generation != self._generation or self.session.stage in (STAGE_IDLE, STAGE_ERROR):
            logger.debug("Discarding location callback from a stopped watch")
            return
        if error is not None:
            self._on_watch_error(error)
        elif sample is not None:
            self._handle_sample(sample, label)

    def _on_watch_error(self, error: LocationError) -> None:
        if error.is_transient:
            logger.info("Transient location error: %s", error)
            self._last_error = _acquisition_message(error)
            self._set_stage(STAGE_ACQUIRING)
            return

        if error.code == LocationError.PERMISSION_DENIED:
            self._permission_status = PERMISSION_DENIED
        self._release_watch()
        self._fail(error.message)

    def _handle_sample(self, sample: RawSample, label: str) -> GPSFix:
        fix = normalize_sample(sample, self.session.last_fix, self.max_speed_kmh)
        self.session.last_fix = fix
        self._fix_count += 1
        self._provider_label = label
        self._last_error = None
        logger.debug("Position update #%s for bus %s: %s", self._fix_count, self.session.bus_id, fix)

        if self.fix_store is not None:
            self.fix_store.save(fix)
        if self.session.stage == STAGE_ACQUIRING and self.session.watch_handle is not None:
            self._set_stage(STAGE_TRACKING)

        self.transmitter.transmit(self.session, fix, on_result=self._record_send)
        return fix

    def _record_send(self, outcome: str, at_ms: int, message: Optional[str]) -> None:
        self._last_send_result = outcome
        self._last_send_at_ms = at_ms
        if message:
            self._last_error = message

    def _fail(self, message: str) -> None:
        logger.error("GPS tracking failed for bus %s: %s", self.session.bus_id, message)
        self._last_error = message
        self._set_stage(STAGE_ERROR)
        if self.notify is not None:
            self.notify(message)

    def _set_stage(self, stage: str) -> None:
        previous = self.session.stage
        if previous == stage:
            return
        self.session.stage = stage
        logger.debug("GPS stage %s -> %s", previous, stage)
        if self.on_stage_change is not None:
            self.on_stage_change(previous, stage)
