"""Event handlers for the commissions module."""

from __future__ import annotations

from modules.commissions.services import CommissionCalculator
from modules.orders.events import PaymentSuccessful
from shared.domain.bus import IEventHandler


class CommissionHandler(IEventHandler[PaymentSuccessful]):
    def __init__(self, calculator: CommissionCalculator | None = None) -> None:
        self._calculator = calculator or CommissionCalculator()

    def handle(self, event: PaymentSuccessful) -> None:
        self._calculator.calculate_for_order(event.aggregate_id)


commission_handler = CommissionHandler()
