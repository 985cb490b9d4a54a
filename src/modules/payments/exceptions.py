"""Payment exceptions."""

from __future__ import annotations


class SignatureVerificationFailed(Exception):
    """A gateway notification failed authenticity checks; nothing was changed."""


class UnsupportedPaymentMethod(Exception):
    """No strategy is registered for the payment method."""


class PaymentInitiationFailed(Exception):
    """The gateway did not return a payment URL."""
