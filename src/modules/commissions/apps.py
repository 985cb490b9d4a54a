from django.apps import AppConfig


class CommissionsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "modules.commissions"
    label = "commissions"

    def ready(self) -> None:
        from modules.commissions.handlers import commission_handler
        from modules.orders.events import PaymentSuccessful
        from shared.infrastructure.bus import event_bus

        event_bus.subscribe(PaymentSuccessful, commission_handler)
