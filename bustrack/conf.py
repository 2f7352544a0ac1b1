from django.conf import settings

DEFAULTS = {
    "MIN_SEND_INTERVAL_MS": 15000,
    "ACQUIRE_TIMEOUT_MS": 10000,
    "MAX_DERIVED_SPEED_KMH": 160.0,
    "MAX_INGEST_SPEED_KMH": 300.0,
    "INGEST_URL": "http://127.0.0.1:8000/api/locations/",
    "REQUEST_TIMEOUT_SECONDS": 5.0,
    "WEBHOOK_TOKEN": "",
}


def tracking_setting(name):
    """Look up ``name`` in ``settings.GPS_TRACKING``, falling back to the app default."""
    config = getattr(settings, "GPS_TRACKING", {}) or {}
    return config.get(name, DEFAULTS[name])
