"""Shopping cart: one per (tenant, user), lines unique per SKU."""

from __future__ import annotations

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models

from modules.core.models import BaseModel


class Cart(BaseModel):
    tenant = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.CASCADE,
        related_name="carts",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="carts",
    )

    class Meta:
        db_table = "carts"
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "user"], name="carts_tenant_user_uniq"
            ),
        ]

    def __str__(self) -> str:
        return f"Cart {self.user_id}@{self.tenant_id}"


class CartItem(BaseModel):
    cart = models.ForeignKey(
        "carts.Cart",
        on_delete=models.CASCADE,
        related_name="items",
    )
    sku = models.ForeignKey(
        "inventory.Sku",
        on_delete=models.CASCADE,
        related_name="cart_items",
    )
    quantity = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1)],
    )

    class Meta:
        db_table = "cart_items"
        ordering = ["created_at"]
        constraints = [
            models.UniqueConstraint(fields=["cart", "sku"], name="cart_items_sku_uniq"),
            models.CheckConstraint(
                check=models.Q(quantity__gte=1),
                name="cart_items_quantity_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.sku_id} x{self.quantity}"
