import uuid

from django.db import models
from django.utils import timezone


class Bus(models.Model):
    STATUS_CHOICES = [
        ('active', 'Active'),
        ('maintenance', 'Maintenance'),
        ('inactive', 'Inactive'),
    ]
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    registration_number = models.CharField(max_length=20, unique=True)
    model = models.CharField(max_length=50, blank=True, default='')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='active')
    # Vendor tracker (Traccar) device id; unmapped devices are rejected.
    tracker_device_id = models.PositiveIntegerField(null=True, blank=True, unique=True)

    def __str__(self):
        return self.registration_number


class Trip(models.Model):
    STATUS_CHOICES = [
        ('scheduled', 'Scheduled'),
        ('in_progress', 'In Progress'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    bus = models.ForeignKey(Bus, on_delete=models.CASCADE, related_name='trips')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='scheduled')
    started_at = models.DateTimeField(null=True, blank=True)

    def __str__(self):
        return f"{self.bus} ({self.status})"


class BusLocation(models.Model):
    SOURCE_CHOICES = [
        ('driver_app', 'Driver App'),
        ('tracker', 'Vendor Tracker'),
    ]
    bus = models.ForeignKey(Bus, on_delete=models.CASCADE, related_name='locations')
    trip = models.ForeignKey(Trip, on_delete=models.SET_NULL, null=True, blank=True, related_name='locations')
    latitude = models.FloatField()
    longitude = models.FloatField()
    speed = models.FloatField(null=True, blank=True)  # km/h
    heading = models.IntegerField(null=True, blank=True)  # degrees
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES, default='driver_app')
    recorded_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ['-recorded_at']
        indexes = [models.Index(fields=['bus', 'recorded_at'])]

    def __str__(self):
        return f"{self.bus} @ {self.latitude:.5f},{self.longitude:.5f}"

    def as_dict(self):
        return {
            "id": self.pk,
            "bus_id": str(self.bus_id),
            "trip_id": str(self.trip_id) if self.trip_id else None,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "speed": self.speed,
            "heading": self.heading,
            "source": self.source,
            "recorded_at": self.recorded_at.isoformat(),
        }
