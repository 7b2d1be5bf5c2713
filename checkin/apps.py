"""
App configuration for the check-in app.

Django discovers this configuration when the app is included in the
``INSTALLED_APPS`` list in the project's settings.
"""

from django.apps import AppConfig


class CheckinConfig(AppConfig):
    """Configuration class for the check-in app."""

    name = "checkin"
    verbose_name = "Face check-in"
    default_auto_field = "django.db.models.BigAutoField"
