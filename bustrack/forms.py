from django import forms

from .conf import tracking_setting


def _validate_uuid4(value):
    if value is not None and value.version != 4:
        raise forms.ValidationError("Must be a UUID v4.")
    return value


class LocationUpdateForm(forms.Form):
    """
    Validates one canonical location update (km/h, whole degrees).
    """
    bus_id = forms.UUIDField()
    trip_id = forms.UUIDField(required=False)
    latitude = forms.FloatField(min_value=-90, max_value=90)
    longitude = forms.FloatField(min_value=-180, max_value=180)
    speed = forms.FloatField(required=False, min_value=0)
    heading = forms.IntegerField(required=False, min_value=0, max_value=360)

    # Wire names used by the driver client and in error details.
    WIRE_FIELDS = {
        'busId': 'bus_id',
        'tripId': 'trip_id',
        'latitude': 'latitude',
        'longitude': 'longitude',
        'speed': 'speed',
        'heading': 'heading',
    }

    @classmethod
    def from_payload(cls, payload):
        data = {
            field: payload.get(wire_name)
            for wire_name, field in cls.WIRE_FIELDS.items()
            if payload.get(wire_name) is not None
        }
        return cls(data)

    def clean_bus_id(self):
        return _validate_uuid4(self.cleaned_data.get('bus_id'))

    def clean_trip_id(self):
        return _validate_uuid4(self.cleaned_data.get('trip_id'))

    def clean_speed(self):
        speed = self.cleaned_data.get('speed')
        max_speed = tracking_setting("MAX_INGEST_SPEED_KMH")
        if speed is not None and speed > max_speed:
            raise forms.ValidationError(f"Ensure this value is less than or equal to {max_speed:g}.")
        return speed

    def error_details(self):
        field_names = {field: wire_name for wire_name, field in self.WIRE_FIELDS.items()}
        return [
            {"field": field_names.get(field, field), "message": str(message)}
            for field, messages in self.errors.items()
            for message in messages
        ]
