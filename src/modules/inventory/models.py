"""Sku stock counters and the append-only inventory log.

``Sku.stock`` is the number of units owned; ``Sku.reserved`` the part of it
held for unpaid orders.  Both columns are mutated only by ``StockLedger``
and are guarded at the database level by ``0 <= reserved <= stock``.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models

from modules.core.models import BaseModel
from modules.inventory.constants import LedgerOperation, SkuStatus


class Sku(BaseModel):
    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.PROTECT,
        related_name="skus",
    )
    sku_code = models.CharField(max_length=64)
    product_name = models.CharField(max_length=255)
    image_url = models.URLField(max_length=500, blank=True, default="")
    price = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        validators=[MinValueValidator(Decimal("0.00"))],
    )
    status = models.CharField(
        max_length=20,
        choices=SkuStatus.choices,
        default=SkuStatus.ACTIVE,
    )
    stock = models.PositiveIntegerField(default=0)
    reserved = models.PositiveIntegerField(default=0)
    commission_rate = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Affiliate commission (%) for this SKU; empty uses the default.",
    )

    class Meta:
        db_table = "skus"
        ordering = ["sku_code"]
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "sku_code"], name="skus_tenant_code_uniq"
            ),
            models.CheckConstraint(
                check=models.Q(reserved__gte=0), name="skus_reserved_non_negative"
            ),
            models.CheckConstraint(
                check=models.Q(reserved__lte=models.F("stock")),
                name="skus_reserved_within_stock",
            ),
        ]

    @property
    def available(self) -> int:
        return self.stock - self.reserved

    @property
    def is_active(self) -> bool:
        return self.status == SkuStatus.ACTIVE

    def __str__(self) -> str:
        return f"{self.sku_code} (stock={self.stock}, reserved={self.reserved})"


class InventoryLogEntry(BaseModel):
    """Immutable record of one ledger mutation.

    ``change_amount`` is the signed quantity of the operation: negative when
    units leave the available pool or physical stock, positive when they come
    back.  ``operation_id`` (unique per SKU) makes replays of the same logical
    operation detectable.
    """

    sku = models.ForeignKey(
        "inventory.Sku",
        on_delete=models.CASCADE,
        related_name="log_entries",
    )
    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.PROTECT,
        related_name="+",
    )
    operation = models.CharField(max_length=20, choices=LedgerOperation.choices)
    change_amount = models.IntegerField()
    previous_stock = models.PositiveIntegerField()
    new_stock = models.PositiveIntegerField()
    previous_reserved = models.PositiveIntegerField()
    new_reserved = models.PositiveIntegerField()
    reason = models.CharField(max_length=255, blank=True, default="")
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    operation_id = models.CharField(  # noqa: DJ01
        max_length=200, null=True, blank=True, default=None
    )

    class Meta:
        db_table = "inventory_log_entries"
        ordering = ["created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["sku", "operation_id"], name="inventory_log_operation_uniq"
            ),
        ]
        indexes = [
            models.Index(fields=["sku", "created_at"], name="inventory_log_sku_idx"),
        ]

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise ValueError("Inventory log entries are append-only.")
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.operation} {self.change_amount:+d} on {self.sku_id}"
