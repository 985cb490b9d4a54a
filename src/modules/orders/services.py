"""Order service layer (Use Cases).

Orchestrates cart-to-order conversion, status management, cancellation
and payment expiry.  Write operations are atomic; the service defines the
unit-of-work boundary.  Network calls (shipping quote, carrier cancel,
payment initiation) are kept outside every transaction.

Business rules enforced:
- Placement reserves stock for every line or for none of them.
- Prices, names and images are read from the SKUs and snapshotted.
- A coupon is counted once per order, in the placement transaction.
- Status transitions go through the order state machine and its guards.
- Stock is finalized at most once per order (payment or shipment for COD)
  and released according to the recorded finalize state.
- Cancelling a shipped-to-carrier order needs the carrier cancel to succeed.
- History is recorded on every status change.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from uuid import UUID

import structlog
from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from modules.core.db import bounded_atomic
from modules.inventory.exceptions import InactiveSku
from modules.orders.constants import (
    PAYMENT_TIMEOUT_REASON,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from modules.orders.dtos import PlaceOrderResult
from modules.orders.events import (
    OrderCancelled,
    OrderPlaced,
    OrderStatusChanged,
    PaymentSuccessful,
)
from modules.orders.exceptions import (
    CancellationReasonRequired,
    CarrierCancelFailed,
    EmptyCart,
    InvalidStateTransition,
    OrderNotFound,
    PaymentNotRetryable,
)
from modules.payments.exceptions import PaymentInitiationFailed
from modules.payments.models import Payment
from modules.promotions.exceptions import InvalidCoupon
from modules.promotions.services import PromotionLine
from modules.shipping.exceptions import ExternalServiceUnavailable
from modules.tenants.services import get_active_tenant

if TYPE_CHECKING:
    from modules.carts.repositories import CartDjangoRepository
    from modules.inventory.services import StockLedger
    from modules.orders.dtos import PlaceOrderDTO, ShippingAddressDTO
    from modules.orders.models import Order
    from modules.orders.repositories.interfaces import IOrderRepository
    from modules.payments.services import PaymentInitiationService
    from modules.promotions.services import PromotionService
    from modules.shipping.clients import IShippingClient
    from modules.tenants.models import Tenant

logger = structlog.get_logger(__name__)


class OrderOrchestrator:
    """Application service for Order use-cases.

    Receives its collaborators via constructor injection (DIP).
    """

    def __init__(
        self,
        order_repository: IOrderRepository,
        cart_repository: CartDjangoRepository,
        ledger: StockLedger,
        promotion_service: PromotionService,
        shipping_client: IShippingClient,
        payment_initiation: PaymentInitiationService,
    ) -> None:
        self._order_repo = order_repository
        self._cart_repo = cart_repository
        self._ledger = ledger
        self._promotions = promotion_service
        self._shipping = shipping_client
        self._payments = payment_initiation

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    def place_order(self, dto: PlaceOrderDTO) -> PlaceOrderResult:
        """Turn the selected cart lines into a ``PENDING`` order.

        Steps:
        1. Quote the shipping fee (outside the transaction).
        2. In one bounded transaction: load lines, check SKUs, price,
           apply the coupon, persist order + items, reserve stock,
           count the coupon, empty the purchased cart lines, write
           ``ORDER_PLACED`` to the outbox.
        3. After commit, start the gateway payment (best effort).

        Raises:
            TenantNotFound: tenant missing or inactive.
            EmptyCart: none of the selected lines exist.
            InactiveSku: a line's SKU is not for sale.
            InvalidCoupon: the coupon was rejected.
            InsufficientStock: a line could not be reserved.
        """
        log = logger.bind(tenant_id=str(dto.tenant_id), user_id=dto.user_id)
        log.info("order.placement_started", line_count=len(dto.cart_item_ids))

        # 0. Idempotency check
        if dto.idempotency_key:
            existing = self._order_repo.get_by_idempotency_key(dto.idempotency_key)
            if existing:
                log.info(
                    "order.idempotency_hit",
                    order_id=str(existing.id),
                    key=dto.idempotency_key,
                )
                return self._result(existing, self._current_pay_url(existing))

        tenant = get_active_tenant(dto.tenant_id)
        quoted_fee = self._quote_shipping_fee(tenant, dto.shipping_address)

        try:
            order = self._place_in_transaction(dto, tenant, quoted_fee)
        except IntegrityError:
            if dto.idempotency_key:
                existing = self._order_repo.get_by_idempotency_key(dto.idempotency_key)
                if existing:
                    log.info("order.idempotency_race", order_id=str(existing.id))
                    return self._result(existing, self._current_pay_url(existing))
            raise

        log.info(
            "order.placed",
            order_id=str(order.id),
            order_number=order.order_number,
            total_amount=str(order.total_amount),
        )

        payment_url = None
        if order.payment_method != PaymentMethod.COD:
            payment = self._payments.initiate(order, client_ip=dto.client_ip)
            payment_url = payment.pay_url if payment else None
        return self._result(order, payment_url)

    def _place_in_transaction(
        self, dto: PlaceOrderDTO, tenant: Tenant, quoted_fee: Decimal
    ) -> Order:
        with bounded_atomic(settings.ORDER_PLACEMENT_TIMEOUT_SECONDS):
            # 1. Selected cart lines (SKUs joined, one query)
            lines = self._cart_repo.selected_lines(
                tenant.id, dto.user_id, dto.cart_item_ids
            )
            if not lines:
                raise EmptyCart("None of the selected cart items were found.")

            # 2. SKU checks
            for line in lines:
                if not line.sku.is_active or line.sku.tenant_id != tenant.id:
                    raise InactiveSku(f"SKU {line.sku.sku_code} is not available.")

            # 3. Pricing and coupon
            subtotal = sum(
                (line.sku.price * line.quantity for line in lines), Decimal("0.00")
            )
            discount = Decimal("0.00")
            promotion_id = None
            if dto.coupon_code:
                validation = self._promotions.validate(
                    tenant.id,
                    dto.coupon_code,
                    subtotal,
                    user_id=dto.user_id,
                    lines=[
                        PromotionLine(line.sku_id, line.quantity, line.sku.price)
                        for line in lines
                    ],
                )
                if not validation.valid:
                    raise InvalidCoupon(validation.reason)
                discount = validation.discount_amount
                promotion_id = validation.promotion_id

            # 4. Shipping (quote was taken before the transaction)
            shipping_fee = quoted_fee
            if tenant.qualifies_for_free_shipping(subtotal - discount):
                shipping_fee = Decimal("0.00")

            # 5. Persist order + items with snapshots
            order = self._order_repo.create(
                {
                    "tenant": tenant,
                    "user_id": dto.user_id,
                    "payment_method": dto.payment_method,
                    "discount_amount": discount,
                    "shipping_fee": shipping_fee,
                    "coupon_code": (dto.coupon_code or "").strip().upper(),
                    "promotion_id": promotion_id,
                    "shipping_address": dto.shipping_address.model_dump(),
                    "referred_by_id": self._resolve_referrer(
                        dto.referral_code, dto.user_id
                    ),
                    "notes": dto.notes or "",
                    "idempotency_key": dto.idempotency_key,
                    "items": [
                        {
                            "sku": line.sku,
                            "quantity": line.quantity,
                            "price_at_purchase": line.sku.price,
                            "product_name_snapshot": line.sku.product_name,
                            "sku_code_snapshot": line.sku.sku_code,
                            "image_url_snapshot": line.sku.image_url,
                            "commission_rate": line.sku.commission_rate,
                        }
                        for line in lines
                    ],
                }
            )

            # 6. Reserve every line (sorted by SKU inside the ledger)
            self._ledger.reserve_lines(
                order.ledger_lines(),
                operation_prefix=order.stock_operation_prefix("reserve"),
                reason=f"Order {order.order_number} placed",
                actor_id=dto.user_id,
            )

            if promotion_id:
                self._promotions.record_usage(promotion_id, order.id)

            # 7. Purchased lines leave the cart
            self._cart_repo.remove_lines([line.id for line in lines])

            # 8. ORDER_PLACED goes to the outbox with the order
            order.add_domain_event(
                OrderPlaced(
                    aggregate_id=order.id,
                    tenant_id=str(tenant.id),
                    user_id=dto.user_id,
                    order_number=order.order_number,
                    total_amount=str(order.total_amount),
                    payment_method=order.payment_method,
                )
            )
            self._order_repo.save(order)
            self._order_repo.add_history(
                order_id=order.id,
                status=OrderStatus.PENDING,
                notes="Order placed",
                user_id=dto.user_id,
            )
            return order

    def _quote_shipping_fee(
        self, tenant: Tenant, address: ShippingAddressDTO
    ) -> Decimal:
        fallback = (
            tenant.default_shipping_fee
            if tenant.default_shipping_fee is not None
            else Decimal(settings.DEFAULT_SHIPPING_FEE)
        )
        if not address.quotable:
            return fallback
        try:
            return self._shipping.quote_fee(address.district_id, address.ward_code)
        except ExternalServiceUnavailable as exc:
            logger.warning(
                "order.shipping_quote_failed",
                tenant_id=str(tenant.id),
                error=str(exc),
                fallback=str(fallback),
            )
            return fallback

    @staticmethod
    def _resolve_referrer(referral_code: Optional[str], user_id: int) -> Optional[int]:
        if not referral_code:
            return None
        from modules.commissions.models import Affiliate

        return (
            Affiliate.objects.filter(referral_code__iexact=referral_code.strip())
            .exclude(user_id=user_id)
            .values_list("user_id", flat=True)
            .first()
        )

    # ------------------------------------------------------------------
    # Status management
    # ------------------------------------------------------------------

    def transition_order(
        self,
        order_id: UUID,
        new_status: str,
        notes: str = "",
        actor_id: Optional[int] = None,
    ) -> Order:
        """Move an order along the state machine.

        ``CANCELLED`` is delegated to ``cancel_order`` with ``notes`` as the
        reason.  Side effects per target:
        - SHIPPED finalizes stock if payment has not already done so (COD).
        - DELIVERED settles an unpaid COD order.
        - RETURNED releases stock according to the finalize state.

        Raises:
            OrderNotFound: order does not exist.
            InvalidStateTransition: transition not in the table.
            PaymentRequired: PROCESSING on an unpaid gateway order.
        """
        if new_status == OrderStatus.CANCELLED:
            return self.cancel_order(order_id, notes, actor_id=actor_id)

        with transaction.atomic():
            order = self._order_repo.get_for_update(str(order_id))
            if not order:
                raise OrderNotFound(f"Order {order_id} not found.")
            log = logger.bind(order_id=str(order.id), new_status=new_status)

            old_status = order.transition_to(new_status)
            base = {
                "aggregate_id": order.id,
                "tenant_id": str(order.tenant_id),
                "user_id": order.user_id,
            }

            if new_status == OrderStatus.SHIPPED and not order.stock_finalized:
                self._ledger.finalize_lines(
                    order.ledger_lines(),
                    operation_prefix=order.stock_operation_prefix("finalize"),
                    reason=f"Order {order.order_number} shipped",
                    actor_id=actor_id,
                )
                order.stock_finalized = True

            if new_status == OrderStatus.DELIVERED and order.is_cod and not order.is_paid:
                now = timezone.now()
                order.mark_paid(now)
                Payment.objects.create(
                    order=order,
                    tenant_id=order.tenant_id,
                    amount=order.total_amount,
                    payment_method=PaymentMethod.COD,
                    status=PaymentStatus.PAID,
                    confirmed_at=now,
                )
                order.add_domain_event(
                    PaymentSuccessful(
                        amount=str(order.total_amount),
                        payment_method=order.payment_method,
                        **base,
                    )
                )
                log.info("order.cod_collected", amount=str(order.total_amount))

            if new_status == OrderStatus.RETURNED:
                self._ledger.release_lines(
                    order.ledger_lines(),
                    was_finalized=order.stock_finalized,
                    operation_prefix=order.stock_operation_prefix("release"),
                    reason=f"Order {order.order_number} returned",
                    actor_id=actor_id,
                )

            order.add_domain_event(
                OrderStatusChanged(old_status=old_status, new_status=new_status, **base)
            )
            self._order_repo.save(order)
            self._order_repo.add_history(
                order_id=order.id,
                status=new_status,
                notes=notes,
                old_status=old_status,
                user_id=actor_id,
            )
            log.info("order.status_updated", old_status=old_status)

        return self._order_repo.get_by_id(str(order_id))

    def cancel_order(
        self,
        order_id: UUID,
        reason: str,
        actor_id: Optional[int] = None,
    ) -> Order:
        """Cancel an order and release its stock.

        The carrier shipment, if any, is cancelled first and outside the
        transaction; a refusal leaves the order untouched.

        Raises:
            CancellationReasonRequired: ``reason`` is blank.
            OrderNotFound: order does not exist.
            InvalidStateTransition: cancellation not allowed from current status.
            CarrierCancelFailed: the carrier refused or could not be reached.
        """
        if not (reason or "").strip():
            raise CancellationReasonRequired("A cancellation reason is required.")

        order = self.get_order(str(order_id))
        if not order.can_transition_to(OrderStatus.CANCELLED):
            raise InvalidStateTransition(order.status, OrderStatus.CANCELLED)

        if order.tracking_code:
            self._cancel_shipment(order)

        with transaction.atomic():
            order = self._cancel_locked(
                order_id, reason, actor_id, cancelled_tracking_code=order.tracking_code
            )
        return self._order_repo.get_by_id(str(order.id))

    def _cancel_shipment(self, order: Order) -> None:
        log = logger.bind(order_id=str(order.id), tracking_code=order.tracking_code)
        try:
            cancelled = self._shipping.cancel_shipment(order.tracking_code)
        except ExternalServiceUnavailable as exc:
            log.error("order.carrier_cancel_unavailable", error=str(exc))
            raise CarrierCancelFailed(
                "The carrier could not cancel the shipment. Please contact support."
            ) from exc
        if not cancelled:
            log.error("order.carrier_cancel_rejected")
            raise CarrierCancelFailed(
                "The carrier could not cancel the shipment. Please contact support."
            )
        log.info("order.carrier_cancelled")

    def _cancel_locked(
        self,
        order_id: UUID,
        reason: str,
        actor_id: Optional[int],
        cancelled_tracking_code: str = "",
    ) -> Order:
        order = self._order_repo.get_for_update(str(order_id))
        if not order:
            raise OrderNotFound(f"Order {order_id} not found.")
        if order.tracking_code != cancelled_tracking_code:
            # Booked by the carrier after the shipment check above.
            raise CarrierCancelFailed(
                "The shipment was booked while cancelling. Please try again."
            )

        was_finalized = order.stock_finalized
        old_status = order.transition_to(OrderStatus.CANCELLED, reason=reason)
        self._ledger.release_lines(
            order.ledger_lines(),
            was_finalized=was_finalized,
            operation_prefix=order.stock_operation_prefix("release"),
            reason=f"Order {order.order_number} cancelled",
            actor_id=actor_id,
        )
        order.add_domain_event(
            OrderCancelled(
                aggregate_id=order.id,
                tenant_id=str(order.tenant_id),
                user_id=order.user_id,
                reason=order.cancellation_reason,
                was_paid=order.is_paid,
                stock_was_finalized=was_finalized,
            )
        )
        self._order_repo.save(order)
        self._order_repo.add_history(
            order_id=order.id,
            status=OrderStatus.CANCELLED,
            notes=order.cancellation_reason,
            old_status=old_status,
            user_id=actor_id,
        )
        logger.info(
            "order.cancelled",
            order_id=str(order.id),
            old_status=old_status,
            stock_was_finalized=was_finalized,
        )
        return order

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    def retry_payment(self, order_id: UUID, client_ip: str = "127.0.0.1") -> str:
        """Start a new gateway payment for a pending order and return its URL.

        Raises:
            OrderNotFound: order does not exist.
            PaymentNotRetryable: COD, already settled, or no longer pending.
            PaymentInitiationFailed: the gateway returned no payment URL.
        """
        order = self.get_order(str(order_id))
        if (
            order.is_cod
            or order.status != OrderStatus.PENDING
            or order.payment_status != PaymentStatus.PENDING
        ):
            raise PaymentNotRetryable(
                f"Payment cannot be retried for order {order.order_number}."
            )
        payment = self._payments.initiate(order, client_ip=client_ip)
        if payment is None or not payment.pay_url:
            raise PaymentInitiationFailed("The payment gateway is unavailable.")
        return payment.pay_url

    def expire_unpaid_orders(self, now=None) -> int:
        """Cancel gateway orders left unpaid past the payment timeout.

        Payment status stays ``PENDING`` so a late success can still be
        recorded (and flagged for refund).  Each order is cancelled in its
        own transaction and re-checked under its row lock.
        """
        now = now or timezone.now()
        cutoff = now - timedelta(minutes=settings.PAYMENT_TIMEOUT_MINUTES)
        candidate_ids = list(
            self._order_repo.list(
                {
                    "status": OrderStatus.PENDING,
                    "payment_status": PaymentStatus.PENDING,
                    "created_at__lt": cutoff,
                }
            )
            .exclude(payment_method=PaymentMethod.COD)
            .values_list("id", flat=True)
        )

        expired = 0
        for order_id in candidate_ids:
            with transaction.atomic():
                order = self._order_repo.get_for_update(str(order_id))
                if (
                    order is None
                    or order.status != OrderStatus.PENDING
                    or order.payment_status != PaymentStatus.PENDING
                ):
                    continue
                self._cancel_locked(order_id, PAYMENT_TIMEOUT_REASON, actor_id=None)
                expired += 1

        logger.info(
            "order.unpaid_expired", expired=expired, candidates=len(candidate_ids)
        )
        return expired

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, order_id: str) -> Order:
        """Retrieve a single order by ID.

        Raises:
            OrderNotFound: if the order does not exist.
        """
        order = self._order_repo.get_by_id(order_id)
        if not order:
            raise OrderNotFound(f"Order {order_id} not found.")
        return order

    def list_orders(self, filters: Optional[Dict[str, Any]] = None) -> List[Order]:
        """Return a list of orders, optionally filtered."""
        return self._order_repo.list(filters)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _current_pay_url(order: Order) -> Optional[str]:
        payment = (
            Payment.objects.filter(order=order, status=PaymentStatus.PENDING)
            .exclude(pay_url="")
            .order_by("-created_at")
            .first()
        )
        return payment.pay_url if payment else None

    @staticmethod
    def _result(order: Order, payment_url: Optional[str]) -> PlaceOrderResult:
        return PlaceOrderResult(
            order_id=order.id,
            order_number=order.order_number,
            total_amount=order.total_amount,
            payment_url=payment_url,
        )


def build_order_orchestrator() -> OrderOrchestrator:
    """Wire the orchestrator with its production collaborators."""
    from modules.carts.repositories import CartDjangoRepository
    from modules.inventory.services import StockLedger
    from modules.orders.repositories.django_repository import OrderDjangoRepository
    from modules.payments.services import PaymentInitiationService
    from modules.promotions.services import PromotionService
    from modules.shipping.clients import get_shipping_client

    return OrderOrchestrator(
        order_repository=OrderDjangoRepository(),
        cart_repository=CartDjangoRepository(),
        ledger=StockLedger(),
        promotion_service=PromotionService(),
        shipping_client=get_shipping_client(),
        payment_initiation=PaymentInitiationService(),
    )
