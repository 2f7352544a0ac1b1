import os
from pathlib import Path

from environ import Env

BASE_DIR = Path(__file__).resolve().parent.parent

env = Env()
Env.read_env(os.path.join(BASE_DIR, ".env"))

SECRET_KEY = env("SECRET_KEY", default="dev-secret-key-change-me")

DEBUG = env.bool("DEBUG", default=False)

ALLOWED_HOSTS = env.list("ALLOWED_HOSTS", default=["localhost", "127.0.0.1", "testserver"])

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "django.contrib.staticfiles",
    "bustrack.apps.BustrackConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "fleetops.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
            ],
        },
    },
]

WSGI_APPLICATION = "fleetops.wsgi.application"

DATABASES = {
    "default": env.db("DATABASE_URL", default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}"),
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = env("TIME_ZONE", default="Africa/Lagos")
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

MAPBOX_ACCESS_TOKEN = env("MAPBOX_ACCESS_TOKEN", default="")

# Driver client tunables. MAX_DERIVED_SPEED_KMH applies to client-side
# derivation, MAX_INGEST_SPEED_KMH to the ingestion endpoint.
GPS_TRACKING = {
    "MIN_SEND_INTERVAL_MS": env.int("GPS_MIN_SEND_INTERVAL_MS", default=15000),
    "ACQUIRE_TIMEOUT_MS": env.int("GPS_ACQUIRE_TIMEOUT_MS", default=10000),
    "MAX_DERIVED_SPEED_KMH": env.float("GPS_MAX_DERIVED_SPEED_KMH", default=160.0),
    "MAX_INGEST_SPEED_KMH": env.float("GPS_MAX_INGEST_SPEED_KMH", default=300.0),
    "INGEST_URL": env("GPS_INGEST_URL", default="http://127.0.0.1:8000/api/locations/"),
    "REQUEST_TIMEOUT_SECONDS": env.float("GPS_REQUEST_TIMEOUT_SECONDS", default=5.0),
    "WEBHOOK_TOKEN": env("TRACKER_WEBHOOK_TOKEN", default=""),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "simple",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": env("LOG_LEVEL", default="WARNING"),
    },
    "loggers": {
        "bustrack": {
            "handlers": ["console"],
            "level": env("LOG_LEVEL", default="INFO"),
            "propagate": False,
        },
    },
}
