from django.apps import AppConfig


class BillingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'billing'
    verbose_name = 'Allocation Billing'

    def ready(self):
        # Connect rename fan-out receivers
        from billing import signals  # noqa: F401
