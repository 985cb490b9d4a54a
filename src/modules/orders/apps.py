from django.apps import AppConfig


class OrdersConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "modules.orders"
    label = "orders"

    def ready(self) -> None:
        # Registers the event types so outbox rows can be decoded.
        from modules.orders import events  # noqa: F401
