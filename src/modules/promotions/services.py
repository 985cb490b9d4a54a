"""Coupon validation and usage accounting.

``validate`` locks the promotion row so the usage limit holds under
concurrent checkouts; ``record_usage`` must run in the same transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence
from uuid import UUID

import structlog
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from modules.promotions.models import DiscountType, Promotion, PromotionRedemption

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class PromotionLine:
    sku_id: UUID
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class PromotionValidation:
    valid: bool
    discount_amount: Decimal = Decimal("0.00")
    promotion_id: Optional[UUID] = None
    reason: str = ""


class PromotionService:
    def validate(
        self,
        tenant_id: UUID,
        code: str,
        subtotal: Decimal,
        user_id: Optional[int] = None,
        lines: Sequence[PromotionLine] = (),
    ) -> PromotionValidation:
        """Check a coupon against ``subtotal`` and compute its discount."""
        promotion = (
            Promotion.objects.select_for_update()
            .filter(tenant_id=tenant_id, code__iexact=code.strip())
            .first()
        )
        if promotion is None or not promotion.is_active:
            return PromotionValidation(valid=False, reason="Coupon not found.")

        now = timezone.now()
        if promotion.starts_at and now < promotion.starts_at:
            return PromotionValidation(valid=False, reason="Coupon is not active yet.")
        if promotion.ends_at and now > promotion.ends_at:
            return PromotionValidation(valid=False, reason="Coupon has expired.")
        if (
            promotion.usage_limit is not None
            and promotion.used_count >= promotion.usage_limit
        ):
            return PromotionValidation(valid=False, reason="Coupon usage limit reached.")
        if subtotal < promotion.min_order_amount:
            return PromotionValidation(
                valid=False,
                reason=f"Order must be at least {promotion.min_order_amount}.",
            )

        if promotion.discount_type == DiscountType.PERCENT:
            discount = subtotal * promotion.value / Decimal("100")
        else:
            discount = promotion.value
        if promotion.max_discount is not None:
            discount = min(discount, promotion.max_discount)
        discount = min(discount, subtotal).quantize(CENT, rounding=ROUND_HALF_UP)

        logger.info(
            "promotion.validated",
            promotion_id=str(promotion.id),
            user_id=user_id,
            line_count=len(lines),
            discount=str(discount),
        )
        return PromotionValidation(
            valid=True, discount_amount=discount, promotion_id=promotion.id
        )

    @transaction.atomic
    def record_usage(self, promotion_id: UUID, order_id: UUID) -> bool:
        """Count one use of the promotion for ``order_id`` (at most once)."""
        _, created = PromotionRedemption.objects.get_or_create(
            promotion_id=promotion_id, order_id=order_id
        )
        if created:
            Promotion.objects.filter(id=promotion_id).update(
                used_count=F("used_count") + 1, updated_at=timezone.now()
            )
            logger.info(
                "promotion.usage_recorded",
                promotion_id=str(promotion_id),
                order_id=str(order_id),
            )
        return created
