from django.apps import AppConfig


class MarketplaceConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'marketplace'
    verbose_name = 'Vehicle Marketplace'

    def ready(self):
        # Register the logging receivers for outbound events
        from . import signals  # noqa: F401
