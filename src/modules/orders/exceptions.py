"""Order domain exceptions.

Raised by the aggregate and ``OrderOrchestrator`` when business rules are
violated.  Views translate them into HTTP responses.
"""

from __future__ import annotations


class OrderNotFound(Exception):
    """The requested order does not exist or has been soft-deleted."""


class EmptyCart(Exception):
    """None of the selected cart lines resolved to a purchasable line."""


class InvalidStateTransition(Exception):
    """The transition is not in the state machine table."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition order from {current} to {target}.")


class PaymentRequired(Exception):
    """PROCESSING requires a paid order unless it is cash on delivery."""


class CancellationReasonRequired(Exception):
    """A cancellation must carry a non-empty reason."""


class CarrierCancelFailed(Exception):
    """The carrier refused to cancel the shipment; the order is unchanged."""


class PaymentNotRetryable(Exception):
    """Payment can only be retried for pending, unpaid gateway orders."""
