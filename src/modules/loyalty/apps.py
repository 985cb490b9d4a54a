from django.apps import AppConfig


class LoyaltyConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "modules.loyalty"
    label = "loyalty"

    def ready(self) -> None:
        from modules.loyalty.handlers import (
            loyalty_earn_handler,
            loyalty_refund_handler,
            loyalty_return_handler,
        )
        from modules.orders.events import (
            OrderCancelled,
            OrderStatusChanged,
            PaymentSuccessful,
        )
        from shared.infrastructure.bus import event_bus

        event_bus.subscribe(PaymentSuccessful, loyalty_earn_handler)
        event_bus.subscribe(OrderCancelled, loyalty_refund_handler)
        event_bus.subscribe(OrderStatusChanged, loyalty_return_handler)
