from __future__ import annotations

import json
import logging
import math
from datetime import timezone as dt_timezone

from django.conf import settings
from django.db.models import OuterRef, Subquery
from django.http import JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from django.views.generic import View

from .conf import tracking_setting
from .forms import LocationUpdateForm
from .geo import knots_to_kmh
from .health import fleet_gps_health
from .models import Bus, BusLocation, Trip

logger = logging.getLogger(__name__)


def _invalid_payload(form, source):
    details = form.error_details()
    logger.warning("Rejected %s location update: %s", source, details)
    return JsonResponse({'error': 'Invalid location payload', 'details': details}, status=400)


def _latest_locations():
    latest_id = (
        BusLocation.objects.filter(bus=OuterRef('bus'))
        .order_by('-recorded_at', '-id')
        .values('id')[:1]
    )
    return (
        BusLocation.objects.filter(id=Subquery(latest_id))
        .select_related('bus')
        .order_by('bus__registration_number')
    )


@method_decorator(csrf_exempt, name='dispatch')
class LocationIngestView(View):
    """
    Single write path for driver-app fixes. Every accepted update becomes a
    new BusLocation row.
    """

    def post(self, request, *args, **kwargs):
        try:
            payload = json.loads(request.body)
        except json.JSONDecodeError:
            return JsonResponse({'error': 'Invalid JSON'}, status=400)
        if not isinstance(payload, dict):
            return JsonResponse({'error': 'Invalid JSON'}, status=400)

        form = LocationUpdateForm.from_payload(payload)
        if not form.is_valid():
            return _invalid_payload(form, 'driver app')
        data = form.cleaned_data

        try:
            bus = Bus.objects.get(pk=data['bus_id'])
            trip = Trip.objects.get(pk=data['trip_id']) if data.get('trip_id') else None
        except Bus.DoesNotExist:
            return JsonResponse({'error': 'Bus not found'}, status=404)
        except Trip.DoesNotExist:
            return JsonResponse({'error': 'Trip not found'}, status=404)

        location = BusLocation.objects.create(
            bus=bus,
            trip=trip,
            latitude=data['latitude'],
            longitude=data['longitude'],
            speed=data.get('speed'),
            heading=data.get('heading'),
            source='driver_app',
            recorded_at=timezone.now(),
        )
        logger.info(f"Recorded location {location.pk} for bus {bus}: {location.latitude}, {location.longitude}")
        return JsonResponse({'success': True, 'id': location.pk}, status=201)


@method_decorator(csrf_exempt, name='dispatch')
class TrackerWebhookView(View):
    """
    Receives position forwards from a Traccar server. Speeds arrive in knots
    and are converted to km/h before validation.
    """

    def post(self, request, *args, **kwargs):
        expected_token = tracking_setting("WEBHOOK_TOKEN")
        if not expected_token:
            logger.error("Tracker webhook called but no WEBHOOK_TOKEN is configured")
            return JsonResponse({'error': 'Webhook not configured'}, status=503)
        auth_header = request.headers.get('Authorization', '')
        if not auth_header.startswith('Bearer ') or auth_header[7:] != expected_token:
            return JsonResponse({'error': 'Unauthorized'}, status=401)

        try:
            body = json.loads(request.body)
        except json.JSONDecodeError:
            return JsonResponse({'error': 'Invalid JSON'}, status=400)
        if not isinstance(body, dict):
            return JsonResponse({'error': 'Invalid JSON'}, status=400)

        device = body.get('device') if isinstance(body.get('device'), dict) else {}
        device_id = body.get('deviceId', device.get('id'))
        lat = _first_present(body, 'latitude', 'lat')
        lng = _first_present(body, 'longitude', 'lng', 'lon')
        if device_id is None or not _is_number(lat) or not _is_number(lng):
            return JsonResponse({'error': 'Missing deviceId, latitude, or longitude'}, status=400)
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            logger.warning(f"Invalid coordinates from tracker device {device_id}: {lat}, {lng}")
            return JsonResponse({'error': 'Invalid coordinates'}, status=400)

        try:
            bus = Bus.objects.get(tracker_device_id=int(device_id))
        except (Bus.DoesNotExist, TypeError, ValueError):
            logger.warning(f"No bus mapped for tracker device {device_id}")
            return JsonResponse({'error': 'Bus not mapped for this device', 'deviceId': device_id}, status=404)

        speed_knots = body.get('speed')
        course = _first_present(body, 'course', 'heading')
        form = LocationUpdateForm({
            'bus_id': bus.pk,
            'latitude': lat,
            'longitude': lng,
            'speed': knots_to_kmh(speed_knots) if _is_number(speed_knots) else None,
            'heading': int(math.floor(float(course) + 0.5)) % 360 if _is_number(course) else None,
        })
        if not form.is_valid():
            return _invalid_payload(form, 'tracker')
        data = form.cleaned_data

        device_time = _first_present(body, 'deviceTime', 'fixTime', 'serverTime')
        try:
            recorded_at = parse_datetime(device_time) if isinstance(device_time, str) else None
        except ValueError:
            recorded_at = None
        if recorded_at is not None and timezone.is_naive(recorded_at):
            recorded_at = timezone.make_aware(recorded_at, dt_timezone.utc)

        location = BusLocation.objects.create(
            bus=bus,
            trip=None,
            latitude=data['latitude'],
            longitude=data['longitude'],
            speed=data.get('speed'),
            heading=data.get('heading'),
            source='tracker',
            recorded_at=recorded_at or timezone.now(),
        )
        return JsonResponse({'success': True, 'id': location.pk}, status=201)


def _first_present(body, *keys):
    for key in keys:
        if body.get(key) is not None:
            return body[key]
    return None


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


class LatestLocationsAPIView(View):
    def get(self, request, *args, **kwargs):
        locations = []
        for location in _latest_locations():
            entry = location.as_dict()
            entry['registration_number'] = location.bus.registration_number
            locations.append(entry)
        return JsonResponse({'timestamp': timezone.now().isoformat(), 'locations': locations})


class FleetHealthAPIView(View):
    def get(self, request, *args, **kwargs):
        stamps = [location.recorded_at for location in _latest_locations()]
        return JsonResponse(fleet_gps_health(stamps, timezone.now()))


class MapTokenView(View):
    def get(self, request, *args, **kwargs):
        token = getattr(settings, 'MAPBOX_ACCESS_TOKEN', '') or ''
        if not token:
            logger.error("MAPBOX_ACCESS_TOKEN is not configured")
            return JsonResponse({'error': 'Map token not configured'}, status=503)
        return JsonResponse({'token': token})
