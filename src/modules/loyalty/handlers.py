"""Event handlers for the loyalty module."""

from __future__ import annotations

from modules.loyalty.services import LoyaltyService
from modules.orders.constants import OrderStatus
from modules.orders.events import OrderCancelled, OrderStatusChanged, PaymentSuccessful
from shared.domain.bus import IEventHandler


class LoyaltyEarnHandler(IEventHandler[PaymentSuccessful]):
    def __init__(self, service: LoyaltyService | None = None) -> None:
        self._service = service or LoyaltyService()

    def handle(self, event: PaymentSuccessful) -> None:
        self._service.earn_from_order(event.aggregate_id)


class LoyaltyRefundHandler(IEventHandler[OrderCancelled]):
    def __init__(self, service: LoyaltyService | None = None) -> None:
        self._service = service or LoyaltyService()

    def handle(self, event: OrderCancelled) -> None:
        self._service.refund_for_order(event.aggregate_id)


class LoyaltyReturnHandler(IEventHandler[OrderStatusChanged]):
    """Returned orders give their points back like cancelled ones."""

    def __init__(self, service: LoyaltyService | None = None) -> None:
        self._service = service or LoyaltyService()

    def handle(self, event: OrderStatusChanged) -> None:
        if event.new_status == OrderStatus.RETURNED:
            self._service.refund_for_order(event.aggregate_id)


loyalty_earn_handler = LoyaltyEarnHandler()
loyalty_refund_handler = LoyaltyRefundHandler()
loyalty_return_handler = LoyaltyReturnHandler()
