"""Payment attempts.

An order has at most one current payment and any number of historical
attempts.  ``(payment_method, provider_transaction_id)`` is unique so a
gateway transaction can be recorded only once.
"""

from __future__ import annotations

from django.db import models

from modules.core.models import BaseModel
from modules.orders.constants import PaymentMethod, PaymentStatus


class Payment(BaseModel):
    order = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="payments",
    )
    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.PROTECT,
        related_name="payments",
    )
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    payment_method = models.CharField(max_length=20, choices=PaymentMethod.choices)
    status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
    )
    provider_transaction_id = models.CharField(  # noqa: DJ01
        max_length=100, null=True, blank=True, default=None
    )
    provider_reference = models.CharField(max_length=100, blank=True, default="")
    pay_url = models.URLField(max_length=2000, blank=True, default="")
    provider_payload = models.JSONField(default=dict, blank=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "payments"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["payment_method", "provider_transaction_id"],
                name="payments_provider_txn_uniq",
            ),
        ]
        indexes = [
            models.Index(fields=["order", "status"], name="payments_order_status_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.payment_method} {self.amount} [{self.status}]"
