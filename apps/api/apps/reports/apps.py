"""Reports app configuration."""
from django.apps import AppConfig


class ReportsConfig(AppConfig):
    """Patient reports, amendments and version history."""
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.reports'
    verbose_name = 'Patient Reports'
