"""Commission calculation for paid orders.

Runs from the outbox on ``PAYMENT_SUCCESSFUL``.  The order row is locked
and an existing commission transaction for the order makes the call a
no-op, so redelivered events never credit twice.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional
from uuid import UUID

import structlog
from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from modules.commissions.models import Affiliate, CommissionTransaction, CommissionType
from modules.orders.exceptions import OrderNotFound
from modules.orders.models import Order

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


@dataclass
class CommissionResult:
    created: bool
    platform_fee: Decimal = Decimal("0.00")
    direct_commission: Decimal = Decimal("0.00")
    tier_2_commission: Decimal = Decimal("0.00")
    transactions: List[CommissionTransaction] = field(default_factory=list)


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class CommissionCalculator:
    """Platform fee plus two-tier affiliate commission, once per order."""

    @transaction.atomic
    def calculate_for_order(self, order_id: UUID) -> CommissionResult:
        order: Optional[Order] = (
            Order.objects.select_for_update(of=("self",))
            .select_related("tenant")
            .filter(id=order_id)
            .first()
        )
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found.")
        log = logger.bind(order_id=str(order.id))

        if CommissionTransaction.objects.filter(order=order).exists():
            log.info("commission.already_calculated")
            return CommissionResult(created=False)
        if not order.is_paid:
            log.info("commission.skipped_unpaid", payment_status=order.payment_status)
            return CommissionResult(created=False)

        result = CommissionResult(created=True)

        fee_percent = order.tenant.plan_fee_percent
        if fee_percent is None:
            fee_percent = Decimal(settings.DEFAULT_PLATFORM_FEE_PERCENT)
        result.platform_fee = _money(order.total_amount * fee_percent / HUNDRED)
        result.transactions.append(
            CommissionTransaction.objects.create(
                order=order,
                tenant_id=order.tenant_id,
                type=CommissionType.PLATFORM_FEE,
                amount=result.platform_fee,
            )
        )

        if order.referred_by_id:
            result.direct_commission = self._direct_commission(order)
            if result.direct_commission > 0:
                result.transactions.append(
                    self._credit(
                        order,
                        order.referred_by_id,
                        CommissionType.DIRECT_REFERRAL,
                        result.direct_commission,
                    )
                )
                upstream_id = (
                    Affiliate.objects.filter(user_id=order.referred_by_id)
                    .values_list("referred_by_id", flat=True)
                    .first()
                )
                if upstream_id and upstream_id != order.user_id:
                    tier_ratio = Decimal(settings.AFFILIATE_TIER_2_RATE) / Decimal(
                        settings.AFFILIATE_TIER_1_RATE
                    )
                    result.tier_2_commission = _money(
                        result.direct_commission * tier_ratio
                    )
                    if result.tier_2_commission > 0:
                        result.transactions.append(
                            self._credit(
                                order,
                                upstream_id,
                                CommissionType.TIER_2_REFERRAL,
                                result.tier_2_commission,
                            )
                        )

        order.platform_fee_amount = result.platform_fee
        order.affiliate_commission_amount = (
            result.direct_commission + result.tier_2_commission
        )
        order.save(
            update_fields=["platform_fee_amount", "affiliate_commission_amount"]
        )

        log.info(
            "commission.calculated",
            platform_fee=str(result.platform_fee),
            direct=str(result.direct_commission),
            tier_2=str(result.tier_2_commission),
        )
        return result

    @staticmethod
    def _direct_commission(order: Order) -> Decimal:
        default_rate = Decimal(settings.DEFAULT_COMMISSION_RATE_PERCENT)
        total = sum(
            (
                item.subtotal
                * (item.commission_rate if item.commission_rate is not None else default_rate)
                / HUNDRED
                for item in order.items.all()
            ),
            Decimal("0"),
        )
        return _money(total)

    @staticmethod
    def _credit(
        order: Order, user_id: int, type_: str, amount: Decimal
    ) -> CommissionTransaction:
        transaction_row = CommissionTransaction.objects.create(
            order=order,
            tenant_id=order.tenant_id,
            user_id=user_id,
            type=type_,
            amount=amount,
        )
        Affiliate.objects.filter(user_id=user_id).update(
            commission_balance=F("commission_balance") + amount,
            updated_at=timezone.now(),
        )
        return transaction_row
