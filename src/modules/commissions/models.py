"""Affiliates and the commission ledger.

``CommissionTransaction`` is unique per ``(order, type)``: an order yields
at most one platform fee, one direct referral commission and one tier-2
commission, whatever the number of times its payment event is delivered.
"""

from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.db import models

from modules.core.models import BaseModel


class CommissionType(models.TextChoices):
    PLATFORM_FEE = "PLATFORM_FEE", "Platform fee"
    DIRECT_REFERRAL = "DIRECT_REFERRAL", "Direct referral"
    TIER_2_REFERRAL = "TIER_2_REFERRAL", "Tier 2 referral"


class Affiliate(BaseModel):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="affiliate",
    )
    referral_code = models.CharField(max_length=32, unique=True)
    referred_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="referred_affiliates",
    )
    commission_balance = models.DecimalField(
        max_digits=14, decimal_places=2, default=Decimal("0.00")
    )

    class Meta:
        db_table = "affiliates"

    def __str__(self) -> str:
        return f"{self.referral_code} ({self.commission_balance})"


class CommissionTransaction(BaseModel):
    order = models.ForeignKey(
        "orders.Order",
        on_delete=models.PROTECT,
        related_name="commission_transactions",
    )
    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.PROTECT,
        related_name="commission_transactions",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="commission_transactions",
        help_text="Credited affiliate; empty for the platform fee.",
    )
    type = models.CharField(max_length=20, choices=CommissionType.choices)
    amount = models.DecimalField(max_digits=14, decimal_places=2)

    class Meta:
        db_table = "commission_transactions"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["order", "type"], name="commission_txn_order_type_uniq"
            ),
        ]

    def __str__(self) -> str:
        return f"{self.type} {self.amount} for {self.order_id}"
