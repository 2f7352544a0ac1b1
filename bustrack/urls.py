from django.urls import path
from .views import (
    FleetHealthAPIView, LatestLocationsAPIView, LocationIngestView,
    MapTokenView, TrackerWebhookView,
)

app_name = "bustrack"

urlpatterns = [
    path("api/locations/", LocationIngestView.as_view(), name="location-ingest"),
    path("api/locations/latest/", LatestLocationsAPIView.as_view(), name="latest-locations"),
    path("api/locations/health/", FleetHealthAPIView.as_view(), name="fleet-health"),
    path("api/tracker/webhook/", TrackerWebhookView.as_view(), name="tracker-webhook"),
    path("api/map-token/", MapTokenView.as_view(), name="map-token"),
]
