"""Order, OrderItem, and OrderStatusHistory models.

Business rules implemented:
- Status changes go through ``Order.transition_to`` (state machine table).
- ``check_guards`` holds the rules the table does not encode: PROCESSING
  needs a paid order unless it is cash on delivery, CANCELLED needs a reason.
- ``stock_finalized`` records whether the reservation was already turned
  into a deduction; release on cancel/return reads it, never infers it.
- OrderItem snapshots name/price/image/commission rate and is immutable.
- Each status change generates an append-only history record.
- Soft delete via ``deleted_at`` (inherited from SoftDeleteModel).
"""

from __future__ import annotations

import secrets
from decimal import Decimal
from typing import Any, List

import structlog
from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone

from modules.core.models import BaseModel, SoftDeleteModel
from modules.inventory.services import LedgerLine
from modules.orders.constants import (
    ORDER_NUMBER_MAX_RETRIES,
    TERMINAL_PAYMENT_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from modules.orders.exceptions import (
    CancellationReasonRequired,
    InvalidStateTransition,
    PaymentRequired,
)
from shared.domain.events import DomainEventMixin

logger = structlog.get_logger(__name__)

MONEY = {"max_digits": 14, "decimal_places": 2}


class Order(DomainEventMixin, SoftDeleteModel):
    """Order aggregate root.

    ``order_number`` is a human-readable identifier generated on first save
    (format: ``ORD-YYYYMMDD-XXXXXX``).  The UUIDv7 ``id`` is used for all
    internal references, gateway references and API lookups.

    ``idempotency_key`` is nullable: only placements through the public API
    carry a client-provided key.
    """

    order_number: models.CharField = models.CharField(
        max_length=20, unique=True, editable=False
    )
    tenant: models.ForeignKey = models.ForeignKey(
        "tenants.Tenant",
        on_delete=models.PROTECT,
        related_name="orders",
    )
    user: models.ForeignKey = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="orders",
    )
    status: models.CharField = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
        default=OrderStatus.PENDING,
    )
    payment_status: models.CharField = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
    )
    payment_method: models.CharField = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
    )
    stock_finalized: models.BooleanField = models.BooleanField(default=False)

    subtotal_amount = models.DecimalField(default=Decimal("0.00"), **MONEY)
    discount_amount = models.DecimalField(default=Decimal("0.00"), **MONEY)
    shipping_fee = models.DecimalField(default=Decimal("0.00"), **MONEY)
    total_amount = models.DecimalField(default=Decimal("0.00"), **MONEY)

    coupon_code: models.CharField = models.CharField(
        max_length=50, blank=True, default=""
    )
    promotion: models.ForeignKey = models.ForeignKey(
        "promotions.Promotion",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="orders",
    )
    shipping_address: models.JSONField = models.JSONField(default=dict)
    tracking_code: models.CharField = models.CharField(
        max_length=64, blank=True, default=""
    )
    cancellation_reason: models.TextField = models.TextField(blank=True, default="")
    notes: models.TextField = models.TextField(blank=True, default="")

    referred_by: models.ForeignKey = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="referred_orders",
    )
    platform_fee_amount = models.DecimalField(default=Decimal("0.00"), **MONEY)
    affiliate_commission_amount = models.DecimalField(
        default=Decimal("0.00"), **MONEY
    )
    paid_at: models.DateTimeField = models.DateTimeField(null=True, blank=True)

    idempotency_key: models.CharField = models.CharField(
        max_length=255,
        unique=True,
        null=True,
        blank=True,
    )

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["tenant", "status"], name="orders_tenant_status_idx"),
            models.Index(fields=["user", "-created_at"], name="orders_user_created_idx"),
            models.Index(fields=["tracking_code"], name="orders_tracking_idx"),
            models.Index(
                fields=["status", "payment_status", "created_at"],
                name="orders_unpaid_idx",
            ),
        ]

    # ------------------------------------------------------------------
    # State Machine
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` if the order is in a terminal state."""
        return self.status in TERMINAL_STATES

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    @property
    def is_cod(self) -> bool:
        return self.payment_method == PaymentMethod.COD

    @property
    def payment_is_terminal(self) -> bool:
        return self.payment_status in TERMINAL_PAYMENT_STATES

    def can_transition_to(self, new_status: str) -> bool:
        """Check whether the state machine table allows *new_status*."""
        allowed = VALID_TRANSITIONS.get(self.status, set())
        return new_status in allowed

    def check_guards(self, new_status: str, reason: str = "") -> None:
        """Rules outside the table.

        Raises:
            PaymentRequired: PROCESSING on an unpaid, non-COD order.
            CancellationReasonRequired: CANCELLED without a reason.
        """
        if new_status == OrderStatus.PROCESSING and not (self.is_paid or self.is_cod):
            raise PaymentRequired(
                f"Order {self.order_number} must be paid before processing."
            )
        if new_status == OrderStatus.CANCELLED and not (reason or "").strip():
            raise CancellationReasonRequired("A cancellation reason is required.")

    def transition_to(self, new_status: str, reason: str = "") -> str:
        """Move to *new_status* in memory and return the previous status.

        Raises:
            InvalidStateTransition: the table does not allow the transition.
        """
        if not self.can_transition_to(new_status):
            logger.warning(
                "order.invalid_transition",
                order_id=str(self.id),
                current_status=self.status,
                new_status=new_status,
            )
            raise InvalidStateTransition(self.status, new_status)
        self.check_guards(new_status, reason)

        old_status = self.status
        self.status = new_status
        if new_status == OrderStatus.CANCELLED:
            self.cancellation_reason = reason.strip()
        return old_status

    def mark_paid(self, when=None) -> None:
        self.payment_status = PaymentStatus.PAID
        self.paid_at = when or timezone.now()

    def ledger_lines(self) -> List[LedgerLine]:
        return [
            LedgerLine(sku_id=item.sku_id, quantity=item.quantity)
            for item in self.items.all()
        ]

    def stock_operation_prefix(self, operation: str) -> str:
        return f"order:{self.id}:{operation}"

    # ------------------------------------------------------------------
    # Order number generation
    # ------------------------------------------------------------------

    @staticmethod
    def generate_order_number() -> str:
        """Generate a human-readable order number: ``ORD-YYYYMMDD-XXXXXX``."""
        now = timezone.now()
        suffix = secrets.token_hex(3).upper()
        return f"ORD-{now:%Y%m%d}-{suffix}"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self.order_number:
            for _attempt in range(ORDER_NUMBER_MAX_RETRIES):
                candidate = self.generate_order_number()
                if not Order.objects.filter(order_number=candidate).exists():
                    self.order_number = candidate
                    break
            else:
                raise RuntimeError(
                    f"Failed to generate unique order_number after "
                    f"{ORDER_NUMBER_MAX_RETRIES} attempts"
                )
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.order_number} ({self.status})"


class OrderItem(BaseModel):
    """Line item of an order.

    ``price_at_purchase``, ``product_name_snapshot``, ``image_url_snapshot``
    and ``commission_rate`` are copied from the SKU at placement and never
    change afterwards.  Rows are immutable once written.
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="items",
    )
    sku: models.ForeignKey = models.ForeignKey(
        "inventory.Sku",
        on_delete=models.PROTECT,
        related_name="order_items",
    )
    quantity: models.PositiveIntegerField = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
    )
    price_at_purchase = models.DecimalField(**MONEY)
    subtotal = models.DecimalField(editable=False, **MONEY)
    product_name_snapshot: models.CharField = models.CharField(max_length=255)
    sku_code_snapshot: models.CharField = models.CharField(max_length=64)
    image_url_snapshot: models.CharField = models.CharField(
        max_length=500, blank=True, default=""
    )
    commission_rate = models.DecimalField(
        max_digits=5, decimal_places=2, null=True, blank=True
    )

    class Meta:
        db_table = "order_items"
        ordering = ["created_at"]
        constraints = [
            models.CheckConstraint(
                check=models.Q(quantity__gte=1),
                name="order_items_quantity_positive",
            ),
        ]

    def clean(self) -> None:
        super().clean()
        if self.quantity is not None and self.quantity < 1:
            raise ValidationError({"quantity": "Quantity must be at least 1."})

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise ValueError("Order items are immutable after placement.")
        self.subtotal = self.quantity * self.price_at_purchase
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.sku_code_snapshot} x{self.quantity} ({self.subtotal})"


class OrderStatusHistory(BaseModel):
    """Append-only audit trail for order status transitions.

    ``user`` is nullable: ``None`` means the change was performed by the
    system (gateway webhook, carrier webhook, payment timeout).
    """

    order: models.ForeignKey = models.ForeignKey(
        "orders.Order",
        on_delete=models.CASCADE,
        related_name="status_history",
    )
    old_status: models.CharField = models.CharField(  # noqa: DJ01
        max_length=20,
        choices=OrderStatus.choices,
        null=True,
        blank=True,
    )
    new_status: models.CharField = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
    )
    user: models.ForeignKey = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
    )
    notes: models.TextField = models.TextField(blank=True, default="")

    class Meta:
        db_table = "order_status_history"
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["order", "-created_at"],
                name="osh_order_created_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.order} : {self.old_status} -> {self.new_status}"

