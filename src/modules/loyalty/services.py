"""Loyalty accounting: points earned on paid orders and given back on refund.

Both operations are idempotent per order through the ``(order, type)``
unique constraint.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

import structlog
from django.conf import settings
from django.db import transaction
from django.db.models import Sum

from modules.loyalty.models import LoyaltyTransaction, LoyaltyTransactionType
from modules.orders.constants import OrderStatus
from modules.orders.exceptions import OrderNotFound
from modules.orders.models import Order

logger = structlog.get_logger(__name__)

_REVERSED_STATUSES = (OrderStatus.CANCELLED, OrderStatus.RETURNED)


class LoyaltyService:
    @staticmethod
    def points_for(amount) -> int:
        return int(amount // settings.LOYALTY_AMOUNT_PER_POINT)

    @transaction.atomic
    def earn_from_order(self, order_id: UUID) -> Optional[LoyaltyTransaction]:
        order = self._lock_order(order_id)
        if not order.is_paid:
            logger.info("loyalty.earn_skipped_unpaid", order_id=str(order_id))
            return None
        # No points for an order that was already cancelled or returned.
        if order.status in _REVERSED_STATUSES:
            logger.info(
                "loyalty.earn_skipped_reversed", order_id=str(order_id), status=order.status
            )
            return None

        points = self.points_for(order.total_amount)
        if points <= 0:
            return None
        txn, created = LoyaltyTransaction.objects.get_or_create(
            order=order,
            type=LoyaltyTransactionType.EARN,
            defaults={
                "tenant_id": order.tenant_id,
                "user_id": order.user_id,
                "points": points,
            },
        )
        if created:
            logger.info(
                "loyalty.points_earned",
                order_id=str(order_id),
                user_id=order.user_id,
                points=points,
            )
        return txn

    @transaction.atomic
    def refund_for_order(self, order_id: UUID) -> Optional[LoyaltyTransaction]:
        """Reverse the points earned by the order, if any were earned."""
        self._lock_order(order_id)
        earned = LoyaltyTransaction.objects.filter(
            order_id=order_id, type=LoyaltyTransactionType.EARN
        ).first()
        if earned is None:
            return None
        txn, created = LoyaltyTransaction.objects.get_or_create(
            order_id=order_id,
            type=LoyaltyTransactionType.REFUND,
            defaults={
                "tenant_id": earned.tenant_id,
                "user_id": earned.user_id,
                "points": -earned.points,
            },
        )
        if created:
            logger.info(
                "loyalty.points_refunded",
                order_id=str(order_id),
                user_id=earned.user_id,
                points=earned.points,
            )
        return txn

    @staticmethod
    def _lock_order(order_id: UUID) -> Order:
        order = Order.objects.select_for_update(of=("self",)).filter(id=order_id).first()
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found.")
        return order

    def balance_for(self, tenant_id: UUID, user_id: int) -> int:
        total = LoyaltyTransaction.objects.filter(
            tenant_id=tenant_id, user_id=user_id
        ).aggregate(total=Sum("points"))["total"]
        return total or 0
