from django.apps import AppConfig


class ShippingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "modules.shipping"
    label = "shipping"

    def ready(self) -> None:
        from modules.orders.events import OrderStatusChanged
        from modules.shipping.handlers import shipment_creation_handler
        from shared.infrastructure.bus import event_bus

        event_bus.subscribe(OrderStatusChanged, shipment_creation_handler)
