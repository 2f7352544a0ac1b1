import json
import tempfile
import uuid
from datetime import timedelta
from io import StringIO
from pathlib import Path
from unittest import mock

import requests
from django.core.management import call_command
from django.test import Client, SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from . import geo
from .exceptions import IngestionRejected, LocationError, TransmissionError
from .health import classify_average_age, fleet_gps_health
from .models import Bus, BusLocation, Trip
from .normalizer import GPSFix, RawSample, normalize_sample
from .providers import (
    PERMISSION_DENIED,
    PERMISSION_PROMPT,
    ReplayLocationProvider,
    RouteSimulatorProvider,
)
from .session import TrackingController, TrackingSession
from .storage import LastKnownFixStore
from .transmitter import LocationClient, Transmitter, build_payload


LAGOS = geo.LatLngTime(6.5244, 3.3792, 0)


class FakeClock:
    def __init__(self, now=0):
        self.now = now

    def __call__(self):
        return self.now


class RecordingClient:
    def __init__(self, error=None):
        self.payloads = []
        self.error = error

    def send(self, payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return {"success": True}


class SynchronousWatchProvider(ReplayLocationProvider):
    """Delivers one callback from inside ``watch_position``, before the handle is returned."""

    def __init__(self, event, **kwargs):
        super().__init__(**kwargs)
        self.event = event

    def watch_position(self, options, callback):
        handle = super().watch_position(options, callback)
        sample, error = self.event
        callback(sample, error)
        return handle


def make_fix(lat=6.5244, lng=3.3792, timestamp=0, speed=None, heading=None):
    return GPSFix(lat, lng, speed, heading, 5.0, timestamp)


def make_sample(lat, lng, timestamp, speed_mps=None, heading=None):
    return RawSample(lat, lng, 5.0, timestamp, speed_mps, heading)


class GeoMathTests(SimpleTestCase):
    POINTS = [
        geo.LatLngTime(6.5244, 3.3792, 0),
        geo.LatLngTime(6.5246, 3.3795, 0),
        geo.LatLngTime(-33.8688, 151.2093, 0),
        geo.LatLngTime(51.5074, -0.1278, 0),
        geo.LatLngTime(89.9, 179.9, 0),
        geo.LatLngTime(-89.9, -179.9, 0),
    ]

    def test_haversine_is_symmetric(self):
        for a in self.POINTS:
            for b in self.POINTS:
                self.assertAlmostEqual(
                    geo.haversine_distance_meters(a, b),
                    geo.haversine_distance_meters(b, a),
                    places=6,
                )

    def test_haversine_of_identical_points_is_zero(self):
        for point in self.POINTS:
            self.assertEqual(geo.haversine_distance_meters(point, point), 0.0)

    def test_one_degree_of_latitude(self):
        distance = geo.haversine_distance_meters(
            geo.LatLngTime(0, 0, 0), geo.LatLngTime(1, 0, 0)
        )
        self.assertAlmostEqual(distance, 111_194.9, delta=1.0)

    def test_bearing_is_within_compass_range(self):
        for a in self.POINTS:
            for b in self.POINTS:
                if a == b:
                    continue
                bearing = geo.bearing_degrees(a, b)
                self.assertGreaterEqual(bearing, 0.0)
                self.assertLess(bearing, 360.0)

    def test_bearing_cardinal_directions(self):
        origin = geo.LatLngTime(0, 0, 0)
        self.assertAlmostEqual(geo.bearing_degrees(origin, geo.LatLngTime(1, 0, 0)), 0.0)
        self.assertAlmostEqual(geo.bearing_degrees(origin, geo.LatLngTime(0, 1, 0)), 90.0)
        self.assertAlmostEqual(geo.bearing_degrees(origin, geo.LatLngTime(-1, 0, 0)), 180.0)
        self.assertAlmostEqual(geo.bearing_degrees(origin, geo.LatLngTime(0, -1, 0)), 270.0)

    def test_speed_requires_increasing_timestamps(self):
        a = geo.LatLngTime(6.5244, 3.3792, 10000)
        b = geo.LatLngTime(6.5344, 3.3792, 10000)
        c = geo.LatLngTime(6.5344, 3.3792, 5000)
        self.assertIsNone(geo.speed_kmh_from_samples(a, b))
        self.assertIsNone(geo.speed_kmh_from_samples(a, c))

    def test_speed_treats_jitter_as_standing_still(self):
        a = geo.LatLngTime(6.5244, 3.3792, 0)
        b = geo.LatLngTime(6.5244 + 0.000009, 3.3792, 5000)  # ~1 m north
        self.assertLess(geo.haversine_distance_meters(a, b), geo.JITTER_DISTANCE_M)
        self.assertEqual(geo.speed_kmh_from_samples(a, b), 0.0)

    def test_speed_rejects_implausible_values(self):
        a = geo.LatLngTime(6.5244, 3.3792, 0)
        b = geo.LatLngTime(6.5344, 3.3792, 8000)  # ~1112 m in 8 s, ~500 km/h
        self.assertIsNone(geo.speed_kmh_from_samples(a, b))

    def test_speed_bound_is_configurable(self):
        a = geo.LatLngTime(6.5244, 3.3792, 0)
        b = geo.LatLngTime(6.5344, 3.3792, 8000)
        speed = geo.speed_kmh_from_samples(a, b, max_speed_kmh=600)
        self.assertAlmostEqual(speed, 500.4, delta=0.5)

    def test_speed_from_plausible_samples(self):
        a = geo.LatLngTime(6.5244, 3.3792, 0)
        b = geo.LatLngTime(6.5344, 3.3792, 100000)
        expected = geo.haversine_distance_meters(a, b) / 100 * 3.6
        self.assertAlmostEqual(geo.speed_kmh_from_samples(a, b), expected)

    def test_unit_conversions(self):
        self.assertAlmostEqual(geo.mps_to_kmh(10), 36.0)
        self.assertAlmostEqual(geo.knots_to_kmh(10), 18.52)


class NormalizerTests(SimpleTestCase):
    def test_first_fix_without_device_motion_has_no_speed_or_heading(self):
        fix = normalize_sample(make_sample(6.5244, 3.3792, 0))
        self.assertIsNone(fix.speed_kmh)
        self.assertIsNone(fix.heading_degrees)
        self.assertEqual(fix.accuracy_meters, 5.0)
        self.assertEqual(fix.timestamp, 0)

    def test_missing_motion_is_derived_from_previous_fix(self):
        previous = make_fix(6.5244, 3.3792, timestamp=0)
        sample = make_sample(6.5244 + 0.000899, 3.3792, 10000)  # ~100 m north
        fix = normalize_sample(sample, previous)

        self.assertIsNotNone(fix.speed_kmh)
        self.assertIsNotNone(fix.heading_degrees)
        self.assertAlmostEqual(
            fix.speed_kmh, geo.speed_kmh_from_samples(previous.point, sample.point)
        )
        self.assertAlmostEqual(
            fix.heading_degrees, geo.bearing_degrees(previous.point, sample.point)
        )
        self.assertAlmostEqual(fix.speed_kmh, 36.0, delta=0.1)

    def test_device_speed_is_converted_and_floored(self):
        fix = normalize_sample(make_sample(6.5244, 3.3792, 0, speed_mps=10.0))
        self.assertAlmostEqual(fix.speed_kmh, 36.0)

        fix = normalize_sample(make_sample(6.5244, 3.3792, 0, speed_mps=-1.0))
        self.assertEqual(fix.speed_kmh, 0.0)

    def test_device_values_take_precedence_over_derivation(self):
        previous = make_fix(6.5244, 3.3792, timestamp=0)
        sample = make_sample(6.5344, 3.3792, 100000, speed_mps=5.0, heading=42.0)
        fix = normalize_sample(sample, previous)
        self.assertAlmostEqual(fix.speed_kmh, 18.0)
        self.assertEqual(fix.heading_degrees, 42.0)

    def test_implausible_device_speed_becomes_null(self):
        fix = normalize_sample(make_sample(6.5244, 3.3792, 0, speed_mps=100.0))
        self.assertIsNone(fix.speed_kmh)

    def test_unknown_device_heading_falls_back_to_bearing(self):
        previous = make_fix(6.5244, 3.3792, timestamp=0)
        sample = make_sample(6.5244, 3.3892, 60000, heading=-1.0)
        fix = normalize_sample(sample, previous)
        self.assertAlmostEqual(fix.heading_degrees, 90.0, delta=0.1)

    def test_non_monotonic_timestamps_leave_speed_null(self):
        previous = make_fix(6.5244, 3.3792, timestamp=10000)
        fix = normalize_sample(make_sample(6.5254, 3.3792, 10000), previous)
        self.assertIsNone(fix.speed_kmh)
        self.assertIsNotNone(fix.heading_degrees)


class PayloadTests(SimpleTestCase):
    def test_payload_uses_canonical_units(self):
        bus_id = uuid.uuid4()
        payload = build_payload(bus_id, None, make_fix(speed=14.34567, heading=45.5))
        self.assertEqual(
            payload,
            {
                "busId": str(bus_id),
                "tripId": None,
                "latitude": 6.5244,
                "longitude": 3.3792,
                "speed": 14.35,
                "heading": 46,
            },
        )

    def test_heading_rounding_wraps_to_zero(self):
        payload = build_payload("bus", "trip", make_fix(heading=359.7))
        self.assertEqual(payload["heading"], 0)
        self.assertEqual(payload["tripId"], "trip")

    def test_missing_motion_is_sent_as_null(self):
        payload = build_payload("bus", None, make_fix())
        self.assertIsNone(payload["speed"])
        self.assertIsNone(payload["heading"])


class TransmitterTests(SimpleTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.client = RecordingClient()
        self.transmitter = Transmitter(self.client, min_interval_ms=15000, clock=self.clock)
        self.session = TrackingSession(bus_id=str(uuid.uuid4()))

    def test_sends_within_interval_are_suppressed(self):
        self.clock.now = 1000
        self.assertTrue(self.transmitter.transmit(self.session, make_fix(timestamp=1000)))
        self.clock.now = 5000
        self.assertFalse(
            self.transmitter.transmit(self.session, make_fix(6.53, 3.38, timestamp=5000))
        )
        self.assertEqual(len(self.client.payloads), 1)

    def test_sends_resume_after_interval(self):
        self.clock.now = 0
        self.transmitter.transmit(self.session, make_fix(timestamp=0))
        self.clock.now = 16000
        self.transmitter.transmit(self.session, make_fix(timestamp=16000))
        self.assertEqual(len(self.client.payloads), 2)

    def test_skipped_sends_do_not_move_the_window(self):
        self.transmitter.transmit(self.session, make_fix())
        self.clock.now = 10000
        self.transmitter.transmit(self.session, make_fix())
        self.assertEqual(self.session.last_sent_at_ms, 0)
        self.clock.now = 15000
        self.transmitter.transmit(self.session, make_fix())
        self.assertEqual(len(self.client.payloads), 2)
        self.assertEqual(self.session.last_sent_at_ms, 15000)

    def test_send_time_is_claimed_before_sending(self):
        session = self.session
        seen = []

        class InspectingClient:
            def send(self, payload):
                seen.append(session.last_sent_at_ms)

        self.clock.now = 42000
        Transmitter(InspectingClient(), clock=self.clock).transmit(session, make_fix())
        self.assertEqual(seen, [42000])

    def test_without_bus_nothing_is_sent(self):
        session = TrackingSession(bus_id=None)
        with self.assertLogs("bustrack.transmitter", level="INFO"):
            self.assertFalse(self.transmitter.transmit(session, make_fix()))
        self.assertEqual(self.client.payloads, [])
        self.assertIsNone(session.last_sent_at_ms)

    def test_network_failure_is_logged_not_raised(self):
        client = RecordingClient(error=TransmissionError("connection refused"))
        transmitter = Transmitter(client, clock=self.clock)
        outcomes = []
        with self.assertLogs("bustrack.transmitter", level="WARNING"):
            sent = transmitter.transmit(
                self.session, make_fix(), on_result=lambda *args: outcomes.append(args)
            )
        self.assertTrue(sent)
        self.assertEqual([outcome for outcome, _, _ in outcomes], ["pending", "error"])
        self.assertIn("connection refused", outcomes[-1][2])

    def test_rejected_payload_is_logged_with_details(self):
        details = [{"field": "latitude", "message": "Ensure this value is less than or equal to 90."}]
        transmitter = Transmitter(RecordingClient(error=IngestionRejected(details)), clock=self.clock)
        with self.assertLogs("bustrack.transmitter", level="ERROR") as logs:
            transmitter.transmit(self.session, make_fix())
        self.assertIn("latitude", logs.output[0])

    def test_successful_send_reports_success(self):
        outcomes = []
        self.clock.now = 7000
        self.transmitter.transmit(self.session, make_fix(), on_result=lambda *args: outcomes.append(args))
        self.assertEqual(outcomes, [("pending", 7000, None), ("success", 7000, None)])

    def test_executor_receives_the_send(self):
        executor = mock.Mock()
        transmitter = Transmitter(self.client, clock=self.clock, executor=executor)
        self.assertTrue(transmitter.transmit(self.session, make_fix()))
        executor.submit.assert_called_once()
        self.assertEqual(self.client.payloads, [])


def _response(status_code, body):
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(body).encode("utf-8")
    response.url = "http://testserver/api/locations/"
    return response


class LocationClientTests(SimpleTestCase):
    def setUp(self):
        self.http = mock.Mock()
        self.client = LocationClient("http://testserver/api/locations/", timeout_seconds=3, http=self.http)

    def test_posts_json_with_timeout(self):
        self.http.post.return_value = _response(201, {"success": True, "id": 1})
        self.assertEqual(self.client.send({"busId": "x"}), {"success": True, "id": 1})
        self.http.post.assert_called_once_with(
            "http://testserver/api/locations/", json={"busId": "x"}, timeout=3
        )

    def test_validation_errors_raise_ingestion_rejected(self):
        details = [{"field": "busId", "message": "Must be a UUID v4."}]
        self.http.post.return_value = _response(400, {"error": "Invalid location payload", "details": details})
        with self.assertRaises(IngestionRejected) as ctx:
            self.client.send({})
        self.assertEqual(ctx.exception.details, details)

    def test_server_errors_raise_transmission_error(self):
        self.http.post.return_value = _response(500, {"error": "boom"})
        with self.assertRaises(TransmissionError) as ctx:
            self.client.send({})
        self.assertEqual(ctx.exception.status_code, 500)

    def test_connection_errors_raise_transmission_error(self):
        self.http.post.side_effect = requests.exceptions.ConnectionError("refused")
        with self.assertRaises(TransmissionError):
            self.client.send({})


class TrackingControllerTests(SimpleTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.client = RecordingClient()
        self.transmitter = Transmitter(self.client, min_interval_ms=15000, clock=self.clock)
        self.notifications = []
        self.transitions = []

    def make_controller(self, provider, bus_id="bus-1", **kwargs):
        return TrackingController(
            provider,
            self.transmitter,
            bus_id=bus_id,
            clock=self.clock,
            notify=self.notifications.append,
            on_stage_change=lambda old, new: self.transitions.append((old, new)),
            **kwargs
        )

    def quiet_provider(self, **kwargs):
        # No warm-up fix, so only explicitly emitted samples are processed.
        return ReplayLocationProvider(
            current_position_error=LocationError(LocationError.TIMEOUT, "timeout"), **kwargs
        )

    def test_starts_idle(self):
        controller = self.make_controller(self.quiet_provider())
        self.assertEqual(controller.stage, "idle")
        self.assertEqual(controller.diagnostics.last_send_result, "none")
        self.assertIsNone(controller.diagnostics.last_fix_age_seconds)

    def test_start_opens_a_single_watch(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider)
        controller.start()
        controller.start()

        self.assertTrue(controller.is_tracking)
        self.assertEqual(controller.stage, "acquiring")
        self.assertEqual(len(provider.watch_requests), 1)
        self.assertEqual(len(provider.watches), 1)

        controller.stop()
        self.assertEqual(provider.released, [1])
        self.assertEqual(controller.stage, "idle")

    def test_stop_is_idempotent(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider)
        controller.stop()
        controller.start()
        controller.stop()
        controller.stop()
        self.assertEqual(provider.released, [1])
        self.assertEqual(controller.stage, "idle")

    def test_end_to_end_derivation(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider)
        controller.start()

        p1 = make_sample(6.5244, 3.3792, 0)
        p2 = make_sample(6.5246, 3.3795, 10000)
        self.clock.now = 0
        provider.emit(p1)
        first = controller.session.last_fix
        self.clock.now = 10000
        provider.emit(p2)
        second = controller.session.last_fix

        self.assertIsNone(first.speed_kmh)
        self.assertIsNone(first.heading_degrees)
        expected_speed = geo.haversine_distance_meters(p1.point, p2.point) / 10 * 3.6
        expected_heading = geo.bearing_degrees(p1.point, p2.point)
        self.assertAlmostEqual(second.speed_kmh, expected_speed, delta=0.01)
        self.assertAlmostEqual(second.heading_degrees, expected_heading, delta=0.01)

        # The second fix falls inside the send interval.
        self.assertEqual(len(self.client.payloads), 1)
        self.assertEqual(controller.diagnostics.fix_count, 2)
        self.assertEqual(controller.diagnostics.last_send_result, "success")

    def test_permission_denied(self):
        provider = ReplayLocationProvider(permission=PERMISSION_PROMPT, grant_on_request=False)
        controller = self.make_controller(provider)
        controller.start()

        self.assertEqual(self.transitions, [("idle", "acquiring"), ("acquiring", "error")])
        self.assertEqual(provider.watch_requests, [])
        self.assertIsNone(controller.session.watch_handle)
        self.assertEqual(controller.diagnostics.permission_status, PERMISSION_DENIED)
        self.assertEqual(len(self.notifications), 1)

    def test_permission_can_be_granted_on_request(self):
        provider = ReplayLocationProvider(permission=PERMISSION_PROMPT)
        controller = self.make_controller(provider)
        controller.start()
        self.assertEqual(controller.stage, "acquiring")
        self.assertEqual(controller.diagnostics.permission_status, "granted")

    def test_retry_after_error_requires_explicit_start(self):
        provider = ReplayLocationProvider(permission=PERMISSION_DENIED, grant_on_request=False)
        controller = self.make_controller(provider)
        controller.start()
        self.assertEqual(controller.stage, "error")

        provider.grant_on_request = True
        controller.start()
        self.assertEqual(controller.stage, "acquiring")

    def test_callbacks_after_stop_are_discarded(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider)
        controller.start()
        callback = provider.watches[1]
        controller.stop()

        callback(make_sample(6.5244, 3.3792, 1000), None)
        self.assertEqual(controller.diagnostics.fix_count, 0)
        self.assertIsNone(controller.session.last_fix)
        self.assertEqual(self.client.payloads, [])

    def test_callbacks_from_previous_watch_are_discarded_after_restart(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider)
        controller.start()
        stale_callback = provider.watches[1]
        controller.stop()
        controller.start()

        stale_callback(make_sample(6.5244, 3.3792, 1000), None)
        self.assertEqual(controller.diagnostics.fix_count, 0)

    def test_enabled_flag_transitions_drive_tracking(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider)

        controller.set_enabled(True)
        controller.set_enabled(True)
        self.assertEqual(controller.stage, "acquiring")
        self.assertEqual(len(provider.watch_requests), 1)

        controller.set_enabled(False)
        controller.set_enabled(False)
        self.assertEqual(controller.stage, "idle")
        self.assertEqual(provider.released, [1])

    def test_transient_errors_keep_the_watch(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider)
        controller.start()

        provider.fail(LocationError(LocationError.TIMEOUT, "Timeout expired"))
        self.assertEqual(controller.stage, "acquiring")
        self.assertEqual(controller.diagnostics.last_error, "GPS acquiring signal...")
        self.assertEqual(len(provider.watches), 1)
        self.assertEqual(self.notifications, [])

        provider.emit(make_sample(6.5244, 3.3792, 1000))
        self.assertEqual(controller.stage, "tracking")
        self.assertIsNone(controller.diagnostics.last_error)

    def test_permission_revoked_while_watching(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider)
        controller.start()

        provider.fail(LocationError(LocationError.PERMISSION_DENIED, "User denied Geolocation"))
        self.assertEqual(controller.stage, "error")
        self.assertEqual(provider.released, [1])
        self.assertEqual(controller.diagnostics.permission_status, PERMISSION_DENIED)
        self.assertEqual(self.notifications, ["User denied Geolocation"])

        provider.emit(make_sample(6.5244, 3.3792, 1000))
        self.assertEqual(controller.diagnostics.fix_count, 0)

    def test_falls_back_to_high_accuracy_watch(self):
        provider = self.quiet_provider(
            watch_errors=[LocationError(LocationError.POSITION_UNAVAILABLE, "unavailable")]
        )
        controller = self.make_controller(provider)
        controller.start()

        self.assertEqual(controller.stage, "acquiring")
        self.assertEqual([opts.high_accuracy for opts in provider.watch_requests], [False, True])
        self.assertEqual(controller.diagnostics.watch_attempts, 2)

    def test_watch_failure_is_an_error(self):
        provider = self.quiet_provider(
            watch_errors=[
                LocationError(LocationError.POSITION_UNAVAILABLE, "unavailable"),
                LocationError(LocationError.POSITION_UNAVAILABLE, "unavailable"),
            ]
        )
        controller = self.make_controller(provider)
        controller.start()
        self.assertEqual(controller.stage, "error")
        self.assertEqual(self.notifications, ["Failed to start GPS watch"])

    def test_warm_up_fix_is_processed(self):
        provider = ReplayLocationProvider([make_sample(6.5244, 3.3792, 0)])
        controller = self.make_controller(provider)
        controller.start()

        self.assertEqual(controller.diagnostics.fix_count, 1)
        self.assertEqual(controller.diagnostics.provider, "cached")
        self.assertEqual(len(self.client.payloads), 1)
        self.assertEqual(provider.watch_requests[0].high_accuracy, False)
        self.assertEqual(controller.stage, "tracking")

    def test_fresh_fix_is_tried_after_a_cached_miss(self):
        provider = ReplayLocationProvider(
            [make_sample(6.5244, 3.3792, 0)],
            position_errors=[LocationError(LocationError.TIMEOUT, "timeout")],
        )
        controller = self.make_controller(provider)
        controller.start()

        cached, fresh = provider.position_requests
        self.assertEqual((cached.timeout_ms, cached.maximum_age_ms), (10000, 120000))
        self.assertEqual((fresh.high_accuracy, fresh.timeout_ms, fresh.maximum_age_ms), (False, 20000, 0))
        self.assertEqual(controller.diagnostics.provider, "low_accuracy")
        self.assertEqual(controller.diagnostics.fix_count, 1)
        self.assertEqual(controller.stage, "tracking")

    def test_warm_up_timeout_is_surfaced_while_acquiring(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider)
        controller.start()

        self.assertEqual(controller.stage, "acquiring")
        self.assertTrue(controller.is_tracking)
        self.assertEqual(controller.diagnostics.last_error, "GPS acquiring signal...")
        self.assertEqual(len(provider.position_requests), 2)
        self.assertEqual(self.notifications, [])

        provider.emit(make_sample(6.5244, 3.3792, 1000))
        self.assertEqual(controller.stage, "tracking")
        self.assertIsNone(controller.diagnostics.last_error)

    def test_fatal_error_while_opening_the_watch(self):
        denied = LocationError(LocationError.PERMISSION_DENIED, "User denied Geolocation")
        provider = SynchronousWatchProvider(
            (None, denied), current_position_error=LocationError(LocationError.TIMEOUT, "timeout")
        )
        controller = self.make_controller(provider)
        controller.start()

        self.assertEqual(controller.stage, "error")
        self.assertNotIn(("acquiring", "tracking"), self.transitions)
        self.assertIsNone(controller.session.watch_handle)
        self.assertEqual(provider.released, [1])
        self.assertEqual(len(provider.watch_requests), 1)
        self.assertEqual(self.notifications, ["User denied Geolocation"])

    def test_fix_while_opening_the_watch(self):
        provider = SynchronousWatchProvider(
            (make_sample(6.5244, 3.3792, 0), None),
            current_position_error=LocationError(LocationError.TIMEOUT, "timeout"),
        )
        controller = self.make_controller(provider)
        controller.start()

        self.assertEqual(controller.stage, "tracking")
        self.assertEqual(controller.session.watch_handle, 1)
        self.assertEqual(controller.diagnostics.fix_count, 1)
        self.assertIsNone(controller.diagnostics.last_error)

    def test_upgrade_accuracy_replaces_the_watch(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider)
        controller.start()
        self.assertFalse(controller.upgrade_accuracy())
        self.assertEqual(len(provider.watch_requests), 1)

        provider.emit(make_sample(6.5244, 3.3792, 0))
        provider.emit(make_sample(6.5246, 3.3795, 10000))
        low_accuracy_callback = provider.watches[1]

        self.assertTrue(controller.upgrade_accuracy())
        self.assertEqual(provider.released, [1])
        self.assertTrue(provider.watch_requests[-1].high_accuracy)
        self.assertEqual(controller.session.watch_handle, 2)
        self.assertEqual(controller.stage, "tracking")

        low_accuracy_callback(make_sample(6.5248, 3.3798, 20000), None)
        self.assertEqual(controller.diagnostics.fix_count, 2)

        provider.emit(make_sample(6.5248, 3.3798, 20000))
        self.assertEqual(controller.diagnostics.fix_count, 3)
        self.assertEqual(controller.diagnostics.provider, "high_accuracy")
        self.assertFalse(controller.upgrade_accuracy())

        controller.stop()
        self.assertEqual(provider.released, [1, 2])

    def test_upgrade_accuracy_falls_back_to_low_accuracy(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider)
        controller.start()
        provider.emit(make_sample(6.5244, 3.3792, 0))
        provider.emit(make_sample(6.5246, 3.3795, 10000))

        provider.watch_errors = [LocationError(LocationError.POSITION_UNAVAILABLE, "unavailable")]
        self.assertFalse(controller.upgrade_accuracy())
        self.assertTrue(controller.is_tracking)
        self.assertEqual([opts.high_accuracy for opts in provider.watch_requests[1:]], [True, False])
        self.assertEqual(controller.stage, "tracking")

    def test_refresh_position_runs_the_pipeline(self):
        provider = ReplayLocationProvider([make_sample(6.5244, 3.3792, 0)])
        controller = self.make_controller(provider)
        fix = controller.refresh_position()
        self.assertEqual(fix, controller.session.last_fix)
        self.assertEqual(controller.diagnostics.provider, "high_accuracy")

        self.assertIsNone(controller.refresh_position())
        self.assertIsNotNone(controller.diagnostics.last_error)

    def test_context_manager_releases_the_watch(self):
        provider = self.quiet_provider()
        with self.make_controller(provider) as controller:
            controller.start()
        self.assertEqual(provider.released, [1])
        self.assertEqual(controller.stage, "idle")

    def test_fix_age_is_computed_on_read(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider)
        controller.start()
        provider.emit(make_sample(6.5244, 3.3792, 10000))
        self.clock.now = 25000
        self.assertEqual(controller.diagnostics.last_fix_age_seconds, 15)

    def test_tracking_without_bus_sends_nothing(self):
        provider = self.quiet_provider()
        controller = self.make_controller(provider, bus_id=None)
        controller.start()
        provider.emit(make_sample(6.5244, 3.3792, 0))
        self.assertEqual(controller.diagnostics.fix_count, 1)
        self.assertEqual(self.client.payloads, [])

    def test_last_known_fix_is_persisted(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = LastKnownFixStore(Path(tmp) / "last_fix.json")
            provider = self.quiet_provider()
            controller = self.make_controller(provider, fix_store=store)
            controller.start()
            provider.emit(make_sample(6.5244, 3.3792, 1000, speed_mps=2.0))
            controller.stop()

            restored = self.make_controller(self.quiet_provider(), fix_store=store)
            self.assertEqual(restored.last_known_fix, controller.session.last_fix)
            self.assertIsNone(restored.session.last_fix)


class LastKnownFixStoreTests(SimpleTestCase):
    def test_missing_or_corrupt_file_loads_nothing(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "fix.json"
            store = LastKnownFixStore(path)
            self.assertIsNone(store.load())

            path.write_text("{not json", encoding="utf-8")
            with self.assertLogs("bustrack.storage", level="WARNING"):
                self.assertIsNone(store.load())


class RouteSimulatorTests(SimpleTestCase):
    def test_moves_along_route_without_device_motion(self):
        provider = RouteSimulatorProvider.from_route("ojota-cms", start_ms=0)
        start = provider.position_at(0)
        self.assertAlmostEqual(start.latitude, 6.5870, places=6)
        self.assertAlmostEqual(start.longitude, 3.3790, places=6)

        later = provider.position_at(60000)
        self.assertLess(later.latitude, start.latitude)
        self.assertIsNone(later.speed_mps)
        self.assertIsNone(later.heading_degrees)

    def test_stops_at_the_last_waypoint(self):
        provider = RouteSimulatorProvider([(6.5, 3.3), (6.51, 3.3)], speed_kmh=36.0)
        received = []
        provider.watch_position(None, lambda sample, error: received.append(sample))
        provider.tick(10 ** 7)
        self.assertTrue(provider.finished)
        self.assertAlmostEqual(received[0].latitude, 6.51, places=6)

    def test_reports_motion_when_asked(self):
        provider = RouteSimulatorProvider([(6.5, 3.3), (6.51, 3.3)], speed_kmh=36.0, report_motion=True)
        sample = provider.position_at(10000)
        self.assertAlmostEqual(sample.speed_mps, 10.0)
        self.assertAlmostEqual(sample.heading_degrees, 0.0, delta=0.01)

    def test_simulated_fixes_derive_plausible_speed(self):
        provider = RouteSimulatorProvider([(6.5, 3.3), (6.51, 3.3)], speed_kmh=36.0)
        first = normalize_sample(provider.position_at(0))
        second = normalize_sample(provider.position_at(10000), first)
        self.assertAlmostEqual(second.speed_kmh, 36.0, delta=0.5)

    def test_route_needs_two_waypoints(self):
        with self.assertRaises(ValueError):
            RouteSimulatorProvider([(6.5, 3.3)])


class HealthTests(SimpleTestCase):
    def test_classification_thresholds(self):
        self.assertEqual(classify_average_age(10), "excellent")
        self.assertEqual(classify_average_age(45), "good")
        self.assertEqual(classify_average_age(90), "fair")
        self.assertEqual(classify_average_age(200), "poor")
        self.assertEqual(classify_average_age(600), "offline")
        self.assertEqual(classify_average_age(None), "offline")

    def test_empty_fleet_is_offline(self):
        summary = fleet_gps_health([], timezone.now())
        self.assertEqual(summary["active_buses"], 0)
        self.assertEqual(summary["status"], "offline")


class LocationIngestAPITests(TestCase):
    def setUp(self):
        self.client = Client()
        self.bus = Bus.objects.create(registration_number="LAG-101-XY")
        self.trip = Trip.objects.create(bus=self.bus, status="in_progress")

    def post(self, payload):
        return self.client.post("/api/locations/", data=json.dumps(payload), content_type="application/json")

    def payload(self, **overrides):
        data = {
            "busId": str(self.bus.pk),
            "tripId": str(self.trip.pk),
            "latitude": 6.5244,
            "longitude": 3.3792,
            "speed": 14.35,
            "heading": 56,
        }
        data.update(overrides)
        return data

    def test_valid_update_is_stored(self):
        response = self.post(self.payload())
        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()["success"])

        location = BusLocation.objects.get(pk=response.json()["id"])
        self.assertEqual(location.bus, self.bus)
        self.assertEqual(location.trip, self.trip)
        self.assertEqual(location.speed, 14.35)
        self.assertEqual(location.heading, 56)
        self.assertEqual(location.source, "driver_app")

    def test_updates_are_never_deduplicated(self):
        self.post(self.payload())
        self.post(self.payload())
        self.assertEqual(BusLocation.objects.filter(bus=self.bus).count(), 2)

    def test_trip_and_motion_are_optional(self):
        response = self.post(self.payload(tripId=None, speed=None, heading=None))
        self.assertEqual(response.status_code, 201)
        location = BusLocation.objects.get()
        self.assertIsNone(location.trip)
        self.assertIsNone(location.speed)

    def test_zero_speed_is_kept(self):
        self.post(self.payload(speed=0))
        self.assertEqual(BusLocation.objects.get().speed, 0.0)

    def test_field_errors_are_reported(self):
        with self.assertLogs("bustrack.views", level="WARNING"):
            response = self.post(self.payload(busId="not-a-uuid", latitude=95, speed=350, heading=361))
        self.assertEqual(response.status_code, 400)
        fields = {item["field"] for item in response.json()["details"]}
        self.assertEqual(fields, {"busId", "latitude", "speed", "heading"})
        self.assertFalse(BusLocation.objects.exists())

    def test_only_uuid4_identifiers_are_accepted(self):
        response = self.post(self.payload(tripId=str(uuid.uuid1())))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["details"][0]["field"], "tripId")

    def test_missing_coordinates_are_rejected(self):
        payload = self.payload()
        del payload["longitude"]
        response = self.post(payload)
        self.assertEqual(response.status_code, 400)
        self.assertIn("longitude", {item["field"] for item in response.json()["details"]})

    def test_unknown_bus_is_not_found(self):
        response = self.post(self.payload(busId=str(uuid.uuid4()), tripId=None))
        self.assertEqual(response.status_code, 404)

    def test_invalid_json(self):
        response = self.client.post("/api/locations/", data="{", content_type="application/json")
        self.assertEqual(response.status_code, 400)


@override_settings(GPS_TRACKING={"WEBHOOK_TOKEN": "tracker-secret"})
class TrackerWebhookAPITests(TestCase):
    def setUp(self):
        self.client = Client()
        self.bus = Bus.objects.create(registration_number="LAG-202-XY", tracker_device_id=17)

    def post(self, payload, token="tracker-secret"):
        headers = {"HTTP_AUTHORIZATION": f"Bearer {token}"} if token else {}
        return self.client.post(
            "/api/tracker/webhook/", data=json.dumps(payload), content_type="application/json", **headers
        )

    def test_vendor_units_are_converted(self):
        response = self.post(
            {"deviceId": 17, "latitude": 6.5244, "longitude": 3.3792, "speed": 10, "course": 370.4}
        )
        self.assertEqual(response.status_code, 201)
        location = BusLocation.objects.get()
        self.assertEqual(location.bus, self.bus)
        self.assertIsNone(location.trip)
        self.assertAlmostEqual(location.speed, 18.52)
        self.assertEqual(location.heading, 10)
        self.assertEqual(location.source, "tracker")

    def test_nested_device_and_device_time(self):
        response = self.post(
            {"device": {"id": 17}, "lat": 6.5, "lon": 3.3, "deviceTime": "2024-05-01T08:30:00Z"}
        )
        self.assertEqual(response.status_code, 201)
        location = BusLocation.objects.get()
        self.assertEqual(location.recorded_at.isoformat(), "2024-05-01T08:30:00+00:00")
        self.assertIsNone(location.speed)

    def test_unmapped_device_is_rejected(self):
        with self.assertLogs("bustrack.views", level="WARNING"):
            response = self.post({"deviceId": 99, "latitude": 6.5, "longitude": 3.3})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["deviceId"], 99)
        self.assertFalse(BusLocation.objects.exists())

    def test_missing_fields(self):
        response = self.post({"deviceId": 17, "latitude": 6.5})
        self.assertEqual(response.status_code, 400)

    def test_out_of_range_coordinates(self):
        with self.assertLogs("bustrack.views", level="WARNING"):
            response = self.post({"deviceId": 17, "latitude": 91, "longitude": 3.3})
        self.assertEqual(response.status_code, 400)

    def test_coordinates_are_checked_before_device_lookup(self):
        with self.assertLogs("bustrack.views", level="WARNING"):
            response = self.post({"deviceId": 99, "latitude": 91, "longitude": 3.3})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid coordinates"})

    def test_requires_bearer_token(self):
        self.assertEqual(self.post({"deviceId": 17}, token=None).status_code, 401)
        self.assertEqual(self.post({"deviceId": 17}, token="wrong").status_code, 401)

    @override_settings(GPS_TRACKING={})
    def test_unconfigured_webhook(self):
        with self.assertLogs("bustrack.views", level="ERROR"):
            response = self.post({"deviceId": 17, "latitude": 6.5, "longitude": 3.3})
        self.assertEqual(response.status_code, 503)


class LocationFeedAPITests(TestCase):
    def setUp(self):
        self.client = Client()
        now = timezone.now()
        self.fresh = Bus.objects.create(registration_number="LAG-001")
        self.stale = Bus.objects.create(registration_number="LAG-002")
        BusLocation.objects.create(bus=self.fresh, latitude=6.50, longitude=3.30, recorded_at=now - timedelta(seconds=40))
        BusLocation.objects.create(bus=self.fresh, latitude=6.51, longitude=3.31, recorded_at=now - timedelta(seconds=10))
        BusLocation.objects.create(bus=self.stale, latitude=6.60, longitude=3.40, recorded_at=now - timedelta(seconds=200))

    def test_latest_location_per_bus(self):
        response = self.client.get("/api/locations/latest/")
        self.assertEqual(response.status_code, 200)
        locations = response.json()["locations"]
        self.assertEqual([entry["registration_number"] for entry in locations], ["LAG-001", "LAG-002"])
        self.assertEqual(locations[0]["latitude"], 6.51)

    def test_fleet_health_summary(self):
        summary = self.client.get("/api/locations/health/").json()
        self.assertEqual(summary["active_buses"], 2)
        self.assertEqual(summary["recent_updates"], 1)
        self.assertEqual(summary["status"], "fair")

    @override_settings(MAPBOX_ACCESS_TOKEN="pk.test-token")
    def test_map_token(self):
        response = self.client.get("/api/map-token/")
        self.assertEqual(response.json(), {"token": "pk.test-token"})

    @override_settings(MAPBOX_ACCESS_TOKEN="")
    def test_map_token_not_configured(self):
        with self.assertLogs("bustrack.views", level="ERROR"):
            response = self.client.get("/api/map-token/")
        self.assertEqual(response.status_code, 503)


class DjangoTestClientAdapter:
    """Routes transmitter sends through the test client instead of the network."""

    def __init__(self, client):
        self.client = client

    def send(self, payload):
        response = self.client.post("/api/locations/", data=json.dumps(payload), content_type="application/json")
        if response.status_code == 400:
            raise IngestionRejected(response.json().get("details", []))
        if response.status_code >= 300:
            raise TransmissionError(f"HTTP {response.status_code}", status_code=response.status_code)
        return response.json()


class DriverPipelineIntegrationTests(TestCase):
    def test_fixes_flow_into_the_location_store(self):
        bus = Bus.objects.create(registration_number="LAG-303-XY")
        trip = Trip.objects.create(bus=bus, status="in_progress")
        clock = FakeClock()
        provider = ReplayLocationProvider(
            current_position_error=LocationError(LocationError.TIMEOUT, "timeout")
        )
        transmitter = Transmitter(DjangoTestClientAdapter(Client()), clock=clock)

        with TrackingController(provider, transmitter, bus_id=str(bus.pk), trip_id=str(trip.pk), clock=clock) as controller:
            controller.start()
            for step in range(4):
                clock.now = step * 10000
                provider.emit(make_sample(6.5244 + step * 0.0005, 3.3792, clock.now))
            diagnostics = controller.diagnostics

        # Sent at t=0 and t=20000; t=10000 and t=30000 fall inside the interval.
        locations = list(BusLocation.objects.order_by("id"))
        self.assertEqual(len(locations), 2)
        self.assertIsNone(locations[0].speed)
        self.assertAlmostEqual(locations[1].speed, 20.0, delta=0.1)
        self.assertEqual(locations[1].heading, 0)
        self.assertEqual(locations[1].trip, trip)
        self.assertEqual(diagnostics.last_send_result, "success")
        self.assertEqual(provider.released, [1])


class SimulateDriverCommandTests(SimpleTestCase):
    @mock.patch("bustrack.transmitter.LocationClient.send", return_value={"success": True})
    def test_fast_simulation_sends_throttled_fixes(self, send):
        out = StringIO()
        call_command(
            "simulate_driver",
            "--fast",
            "--duration", "60",
            "--bus", str(uuid.uuid4()),
            stdout=out,
            stderr=StringIO(),
        )
        # Warm-up fix plus one send every 15 simulated seconds.
        self.assertEqual(send.call_count, 5)
        self.assertIn("Done: 13 fixes processed", out.getvalue())
        self.assertIn("Switched to high-accuracy GPS watch", out.getvalue())
