"""Django ORM implementation of the Order repository.

Satisfies ``IOrderRepository`` using Django's QuerySet API.  Writes are
wrapped in ``transaction.atomic()`` so the aggregate (Order + OrderItems)
and its outbox rows are persisted together.

Concurrency control on status/payment changes uses ``select_for_update()``.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from django.core.exceptions import ValidationError
from django.db import transaction

from modules.core.outbox import write_events
from modules.orders.models import Order, OrderItem, OrderStatusHistory
from modules.orders.repositories.interfaces import IOrderRepository

logger = structlog.get_logger(__name__)

_ITEM_FIELDS = (
    "sku",
    "quantity",
    "price_at_purchase",
    "product_name_snapshot",
    "sku_code_snapshot",
    "image_url_snapshot",
    "commission_rate",
)


class OrderDjangoRepository(IOrderRepository):
    """Concrete Order repository backed by Django ORM."""

    # ------------------------------------------------------------------
    # Create (aggregate root + children)
    # ------------------------------------------------------------------

    @transaction.atomic
    def create(self, data: Dict[str, Any]) -> Order:
        """Create an order with its items; ``subtotal_amount`` is summed here."""
        values = dict(data)
        items = values.pop("items", [])
        order = Order(**values)
        order.save()

        subtotal = Decimal("0.00")
        for item_data in items:
            item = OrderItem(
                order=order, **{key: item_data.get(key) for key in _ITEM_FIELDS}
            )
            item.save()
            subtotal += item.subtotal

        order.subtotal_amount = subtotal
        order.total_amount = max(
            subtotal - order.discount_amount + order.shipping_fee, Decimal("0.00")
        )
        order.save(update_fields=["subtotal_amount", "total_amount", "updated_at"])

        logger.info(
            "order.persisted",
            order_id=str(order.id),
            item_count=len(items),
            total_amount=str(order.total_amount),
        )
        return order

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_by_id(self, id: str) -> Optional[Order]:
        """Retrieve an order with eager-loaded items and history.

        Returns ``None`` for non-existent or invalid IDs.
        """
        try:
            return (
                Order.objects.alive()
                .select_related("tenant")
                .prefetch_related("items", "status_history")
                .filter(id=id)
                .first()
            )
        except (ValueError, ValidationError):
            return None

    def get_for_update(self, id: str) -> Optional[Order]:
        """Retrieve an order with a row-level lock (SELECT FOR UPDATE).

        Only the order row is locked (``of=("self",)``); items are
        prefetched in a separate query.
        """
        try:
            return (
                Order.objects.select_for_update(of=("self",))
                .select_related("tenant")
                .prefetch_related("items")
                .filter(id=id, deleted_at__isnull=True)
                .first()
            )
        except (ValueError, ValidationError):
            return None

    def list(self, filters: Optional[Dict[str, Any]] = None):
        """Return a queryset of live orders, optionally filtered."""
        queryset = Order.objects.alive().select_related("tenant")
        if filters:
            queryset = queryset.filter(**filters)
        return queryset

    def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        return (
            Order.objects.prefetch_related("items", "status_history")
            .filter(idempotency_key=key)
            .first()
        )

    def get_by_tracking_code(self, tracking_code: str) -> Optional[Order]:
        if not tracking_code:
            return None
        return Order.objects.alive().filter(tracking_code=tracking_code).first()

    # ------------------------------------------------------------------
    # Save (IRepository contract)
    # ------------------------------------------------------------------

    @transaction.atomic
    def save(self, entity: Order) -> Order:
        """Persist the order and write its collected events to the outbox."""
        entity.save()

        events = entity.domain_events
        write_events(events, tenant_id=str(entity.tenant_id))
        entity.clear_domain_events()

        logger.info(
            "order.saved",
            order_id=str(entity.id),
            status=entity.status,
            payment_status=entity.payment_status,
            event_count=len(events),
        )
        return entity

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def add_history(
        self,
        order_id: UUID,
        status: str,
        notes: str = "",
        old_status: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> OrderStatusHistory:
        """Record a status change in the order's audit trail."""
        history = OrderStatusHistory.objects.create(
            order_id=order_id,
            old_status=old_status,
            new_status=status,
            notes=notes,
            user_id=user_id,
        )
        logger.info(
            "order.history_added",
            order_id=str(order_id),
            old_status=old_status,
            new_status=status,
        )
        return history
