"""Order notifications, one per delivered outbox event."""

from __future__ import annotations

from typing import Callable, Dict, Tuple, Type

from modules.notifications.services import NotificationService
from modules.orders.events import (
    OrderCancelled,
    OrderEvent,
    OrderPlaced,
    OrderStatusChanged,
    PaymentRefundRequired,
    PaymentSuccessful,
)
from shared.domain.bus import IEventHandler

_MESSAGES: Dict[Type[OrderEvent], Callable[[OrderEvent], Tuple[str, str]]] = {
    OrderPlaced: lambda e: (
        "Order placed",
        f"Your order {e.order_number} was placed. Total: {e.total_amount}.",
    ),
    PaymentSuccessful: lambda e: (
        "Payment received",
        f"We received your payment of {e.amount}.",
    ),
    OrderCancelled: lambda e: (
        "Order cancelled",
        f"Your order was cancelled: {e.reason}.",
    ),
    OrderStatusChanged: lambda e: (
        "Order updated",
        f"Your order is now {e.new_status.lower()}.",
    ),
    PaymentRefundRequired: lambda e: (
        "Refund in progress",
        f"Your payment of {e.amount} arrived after the order was cancelled "
        "and will be refunded.",
    ),
}

NOTIFIED_EVENTS = tuple(_MESSAGES)


class OrderNotificationHandler(IEventHandler[OrderEvent]):
    def __init__(self, service: NotificationService | None = None) -> None:
        self._service = service or NotificationService()

    def handle(self, event: OrderEvent) -> None:
        title, message = _MESSAGES[type(event)](event)
        self._service.notify(
            event.user_id,
            title,
            message,
            type=event.event_name,
            dedupe_key=f"{event.event_id}:{event.event_name}",
            tenant_id=event.tenant_id,
            link=f"/orders/{event.aggregate_id}",
        )


order_notification_handler = OrderNotificationHandler()
