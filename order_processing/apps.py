from django.apps import AppConfig


class OrderProcessingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'order_processing'
    verbose_name = 'Order processing'

    def ready(self):
        # Import signal handlers
        from . import signals  # noqa: F401
