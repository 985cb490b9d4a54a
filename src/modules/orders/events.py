"""Domain events for the Orders bounded context."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from shared.domain.events import DomainEvent


@dataclass(frozen=True, kw_only=True)
class OrderEvent(DomainEvent):
    aggregate_type = "Order"

    tenant_id: str
    user_id: int


@dataclass(frozen=True, kw_only=True)
class OrderPlaced(OrderEvent):
    """Raised when an order is placed and its stock reserved."""

    event_type = "ORDER_PLACED"

    order_number: str
    total_amount: str
    payment_method: str


@dataclass(frozen=True, kw_only=True)
class PaymentSuccessful(OrderEvent):
    """Raised once per order when its payment is confirmed."""

    event_type = "PAYMENT_SUCCESSFUL"

    amount: str
    payment_method: str
    provider_transaction_id: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class OrderCancelled(OrderEvent):
    """Raised when an order is cancelled."""

    event_type = "ORDER_CANCELLED"

    reason: str
    was_paid: bool
    stock_was_finalized: bool


@dataclass(frozen=True, kw_only=True)
class OrderStatusChanged(OrderEvent):
    """Raised on every status change other than cancellation."""

    event_type = "ORDER_STATUS_CHANGED"

    old_status: str
    new_status: str


@dataclass(frozen=True, kw_only=True)
class PaymentRefundRequired(OrderEvent):
    """A payment succeeded for an order that had already been cancelled."""

    event_type = "PAYMENT_REFUND_REQUIRED"

    amount: str
    payment_method: str
    provider_transaction_id: Optional[str] = None
