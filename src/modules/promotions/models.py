"""Promotion (coupon) and its per-order redemptions."""

from __future__ import annotations

from decimal import Decimal

from django.db import models

from modules.core.models import BaseModel


class DiscountType(models.TextChoices):
    PERCENT = "PERCENT", "Percent"
    FIXED = "FIXED", "Fixed amount"


class Promotion(BaseModel):
    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.CASCADE,
        related_name="promotions",
    )
    code = models.CharField(max_length=50)
    discount_type = models.CharField(max_length=10, choices=DiscountType.choices)
    value = models.DecimalField(max_digits=14, decimal_places=2)
    max_discount = models.DecimalField(
        max_digits=14, decimal_places=2, null=True, blank=True
    )
    min_order_amount = models.DecimalField(
        max_digits=14, decimal_places=2, default=Decimal("0.00")
    )
    usage_limit = models.PositiveIntegerField(null=True, blank=True)
    used_count = models.PositiveIntegerField(default=0)
    starts_at = models.DateTimeField(null=True, blank=True)
    ends_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "promotions"
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "code"], name="promotions_tenant_code_uniq"
            ),
        ]

    def __str__(self) -> str:
        return self.code


class PromotionRedemption(BaseModel):
    """One row per order that used a promotion; makes usage counting idempotent."""

    promotion = models.ForeignKey(
        "promotions.Promotion",
        on_delete=models.CASCADE,
        related_name="redemptions",
    )
    order = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="promotion_redemptions",
    )

    class Meta:
        db_table = "promotion_redemptions"
        constraints = [
            models.UniqueConstraint(
                fields=["promotion", "order"], name="promotion_redemption_uniq"
            ),
        ]
