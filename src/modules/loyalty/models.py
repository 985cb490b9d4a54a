"""Loyalty point transactions, one EARN and at most one REFUND per order."""

from __future__ import annotations

from django.conf import settings
from django.db import models

from modules.core.models import BaseModel


class LoyaltyTransactionType(models.TextChoices):
    EARN = "EARN", "Earn"
    REFUND = "REFUND", "Refund"


class LoyaltyTransaction(BaseModel):
    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.PROTECT,
        related_name="loyalty_transactions",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="loyalty_transactions",
    )
    order = models.ForeignKey(
        "orders.Order",
        on_delete=models.PROTECT,
        related_name="loyalty_transactions",
    )
    points = models.IntegerField()
    type = models.CharField(max_length=10, choices=LoyaltyTransactionType.choices)

    class Meta:
        db_table = "loyalty_transactions"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["order", "type"], name="loyalty_txn_order_type_uniq"
            ),
        ]

    def __str__(self) -> str:
        return f"{self.type} {self.points} for {self.order_id}"
