import time

from django.core.management.base import BaseCommand, CommandError

from bustrack.conf import tracking_setting
from bustrack.providers import ROUTE_DEFINITIONS, RouteSimulatorProvider
from bustrack.session import TrackingController
from bustrack.storage import LastKnownFixStore
from bustrack.transmitter import LocationClient, Transmitter, now_ms

UPGRADE_AFTER_MS = 30000


class Command(BaseCommand):
    help = "Drives a simulated bus along a route through the driver GPS pipeline and posts fixes to the ingestion endpoint."

    def add_arguments(self, parser):
        parser.add_argument("--bus", help="Bus UUID the fixes are reported for.")
        parser.add_argument("--trip", help="Optional trip UUID.")
        parser.add_argument(
            "--route",
            default=ROUTE_DEFINITIONS[0]["id"],
            choices=[route["id"] for route in ROUTE_DEFINITIONS],
        )
        parser.add_argument("--url", default=None, help="Ingestion endpoint (defaults to GPS_TRACKING['INGEST_URL']).")
        parser.add_argument("--tick-ms", type=int, default=5000, help="Milliseconds between simulated device fixes.")
        parser.add_argument("--duration", type=float, default=None, help="Stop after this many simulated seconds.")
        parser.add_argument("--speed", type=float, default=None, help="Override the route's average speed (km/h).")
        parser.add_argument("--report-motion", action="store_true", help="Let the device report speed and heading.")
        parser.add_argument("--fast", action="store_true", help="Run on a simulated clock without sleeping.")
        parser.add_argument("--state-file", default=None, help="Persist the last known fix to this JSON file.")

    def handle(self, *args, **opts):
        tick_ms = opts["tick_ms"]
        if tick_ms <= 0:
            raise CommandError("--tick-ms must be positive.")

        start_ms = now_ms()
        simulated_now = [start_ms]
        clock = (lambda: simulated_now[0]) if opts["fast"] else now_ms

        provider_kwargs = {"start_ms": start_ms, "report_motion": opts["report_motion"]}
        if opts["speed"] is not None:
            provider_kwargs["speed_kmh"] = opts["speed"]
        provider = RouteSimulatorProvider.from_route(opts["route"], **provider_kwargs)

        client = LocationClient(
            opts["url"] or tracking_setting("INGEST_URL"),
            timeout_seconds=tracking_setting("REQUEST_TIMEOUT_SECONDS"),
        )
        transmitter = Transmitter(
            client,
            min_interval_ms=tracking_setting("MIN_SEND_INTERVAL_MS"),
            clock=clock,
        )
        fix_store = LastKnownFixStore(opts["state_file"]) if opts["state_file"] else None
        controller = TrackingController(
            provider,
            transmitter,
            bus_id=opts["bus"],
            trip_id=opts["trip"],
            acquire_timeout_ms=tracking_setting("ACQUIRE_TIMEOUT_MS"),
            max_speed_kmh=tracking_setting("MAX_DERIVED_SPEED_KMH"),
            clock=clock,
            notify=lambda message: self.stderr.write(self.style.ERROR(message)),
            fix_store=fix_store,
        )

        deadline_ms = None
        if opts["duration"] is not None:
            deadline_ms = start_ms + int(opts["duration"] * 1000)

        self.stdout.write(self.style.NOTICE(
            f"Simulating route {opts['route']} ({provider.length_m / 1000:.2f} km) for bus {opts['bus'] or '-'}"
        ))

        with controller:
            controller.set_enabled(True)
            if controller.stage == "error":
                raise CommandError("GPS tracking could not be started.")

            now = start_ms
            upgrade_pending = True
            try:
                while not provider.finished:
                    now += tick_ms
                    if deadline_ms is not None and now > deadline_ms:
                        break
                    if opts["fast"]:
                        simulated_now[0] = now
                    else:
                        time.sleep(tick_ms / 1000.0)
                    provider.tick(now)
                    if upgrade_pending and now - start_ms >= UPGRADE_AFTER_MS:
                        upgrade_pending = False
                        if controller.upgrade_accuracy():
                            self.stdout.write("Switched to high-accuracy GPS watch")
                    self._report(controller)
            except KeyboardInterrupt:
                self.stdout.write("Interrupted, stopping tracking...")

        diag = controller.diagnostics
        self.stdout.write(self.style.SUCCESS(
            f"Done: {diag.fix_count} fixes processed, last send {diag.last_send_result}."
        ))

    def _report(self, controller):
        fix = controller.session.last_fix
        diag = controller.diagnostics
        speed = "-" if fix.speed_kmh is None else f"{fix.speed_kmh:.1f} km/h"
        heading = "-" if fix.heading_degrees is None else f"{fix.heading_degrees:.0f}°"
        self.stdout.write(
            f"[{diag.stage}] #{diag.fix_count} {fix.latitude:.5f},{fix.longitude:.5f} "
            f"speed={speed} heading={heading} send={diag.last_send_result}"
        )
