from django.apps import AppConfig


class ClientPortalConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'clientportal'
    verbose_name = 'Client portal'

    def ready(self):
        from . import signals  # noqa: F401
