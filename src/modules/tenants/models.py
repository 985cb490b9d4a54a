"""Tenant (storefront) model.

A tenant carries the commercial settings the order pipeline reads:
the platform fee percentage of its plan, the fallback shipping fee and
the free-shipping threshold.
"""

from __future__ import annotations

from decimal import Decimal

from django.db import models

from modules.core.models import BaseModel


class Tenant(BaseModel):
    name = models.CharField(max_length=200)
    slug = models.SlugField(max_length=100, unique=True)
    is_active = models.BooleanField(default=True)
    plan_fee_percent = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Platform fee (%) charged on paid orders; empty uses the default.",
    )
    default_shipping_fee = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        null=True,
        blank=True,
    )
    free_shipping_threshold = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        null=True,
        blank=True,
    )

    class Meta:
        db_table = "tenants"
        ordering = ["name"]

    def qualifies_for_free_shipping(self, amount: Decimal) -> bool:
        threshold = self.free_shipping_threshold
        return threshold is not None and threshold > 0 and amount >= threshold

    def __str__(self) -> str:
        return self.slug
