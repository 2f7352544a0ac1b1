from django.apps import AppConfig


class BustrackConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "bustrack"
    verbose_name = "Bus tracking"
