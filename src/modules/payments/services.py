"""Payment confirmation and initiation.

Business rules enforced by ``PaymentConfirmationGateway``:
- Gateway payloads are verified by their strategy before anything is read
  from the database; a bad signature changes nothing.
- Confirmation runs in one transaction holding the order's row lock, so two
  deliveries of the same notification serialize and the second one sees the
  terminal payment status and is acknowledged as a duplicate.
- Success: payment PAID, order PENDING -> PROCESSING, stock finalized once,
  ``PAYMENT_SUCCESSFUL`` written to the outbox.
- Failure: payment FAILED, order cancelled, reservations released.
- Success for an order already cancelled by the payment timeout is recorded
  and flagged with ``PAYMENT_REFUND_REQUIRED``; stock is not touched again.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional
from uuid import UUID

import structlog
from django.db import transaction
from django.utils import timezone

from modules.inventory.services import StockLedger
from modules.orders.constants import (
    PAYMENT_FAILED_REASON,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from modules.orders.events import (
    OrderCancelled,
    OrderStatusChanged,
    PaymentRefundRequired,
    PaymentSuccessful,
)
from modules.orders.exceptions import OrderNotFound
from modules.orders.models import Order
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.repositories.interfaces import IOrderRepository
from modules.payments.exceptions import (
    PaymentInitiationFailed,
    SignatureVerificationFailed,
)
from modules.payments.models import Payment
from modules.payments.strategies import (
    ConfirmationOutcome,
    OutcomeReason,
    PaymentNotification,
    PaymentRequest,
    PaymentStrategyRegistry,
    build_default_registry,
)

logger = structlog.get_logger(__name__)


class PaymentConfirmationGateway:
    """Idempotent application of gateway payment notifications.

    Dependencies are injected via the constructor so tests can provide
    their own registry, ledger or repository.
    """

    def __init__(
        self,
        registry: Optional[PaymentStrategyRegistry] = None,
        ledger: Optional[StockLedger] = None,
        order_repository: Optional[IOrderRepository] = None,
    ) -> None:
        self._registry = registry or build_default_registry()
        self._ledger = ledger or StockLedger()
        self._orders = order_repository or OrderDjangoRepository()

    @property
    def registry(self) -> PaymentStrategyRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def confirm(self, method: str, payload: Mapping[str, Any]) -> ConfirmationOutcome:
        """Verify a signed gateway payload and apply it.

        Raises:
            UnsupportedPaymentMethod: no strategy for ``method``.
        """
        strategy = self._registry.get(method)
        try:
            notification = strategy.parse_notification(payload)
        except SignatureVerificationFailed as exc:
            logger.warning(
                "payment.signature_rejected",
                payment_method=str(strategy.method),
                error=str(exc),
            )
            return ConfirmationOutcome(
                accepted=False, reason=OutcomeReason.SIGNATURE_INVALID
            )
        return self.apply(str(strategy.method), notification)

    def confirm_manually(
        self,
        order_id: UUID,
        success: bool,
        provider_transaction_id: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> ConfirmationOutcome:
        """Apply an operator-entered confirmation; no signature involved."""
        order = self._orders.get_by_id(str(order_id))
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found.")
        notification = PaymentNotification(
            order_id=str(order_id),
            success=success,
            amount=None,
            provider_transaction_id=provider_transaction_id,
            raw={"source": "manual", "actor_id": actor_id},
        )
        return self.apply(order.payment_method, notification, actor_id=actor_id)

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    @transaction.atomic
    def apply(
        self,
        method: str,
        notification: PaymentNotification,
        actor_id: Optional[int] = None,
    ) -> ConfirmationOutcome:
        log = logger.bind(
            order_id=notification.order_id,
            payment_method=method,
            provider_transaction_id=notification.provider_transaction_id,
        )

        order = self._orders.get_for_update(notification.order_id)
        if order is None:
            log.warning("payment.order_not_found")
            return ConfirmationOutcome(
                accepted=False, reason=OutcomeReason.ORDER_NOT_FOUND
            )
        order_id = str(order.id)

        if order.payment_method != method:
            log.warning("payment.method_mismatch", expected=order.payment_method)
            return ConfirmationOutcome(
                accepted=False, reason=OutcomeReason.METHOD_MISMATCH, order_id=order_id
            )

        if order.payment_is_terminal or self._already_recorded(method, notification):
            log.info("payment.duplicate_notification", payment_status=order.payment_status)
            return ConfirmationOutcome(
                accepted=True, reason=OutcomeReason.DUPLICATE, order_id=order_id
            )

        expected_amount = self._registry.get(method).charge_amount(order.total_amount)
        if notification.amount is not None and notification.amount != expected_amount:
            log.warning(
                "payment.amount_mismatch",
                expected=str(expected_amount),
                received=str(notification.amount),
            )
            return ConfirmationOutcome(
                accepted=False, reason=OutcomeReason.AMOUNT_MISMATCH, order_id=order_id
            )

        if notification.success:
            self._apply_success(order, notification, actor_id)
        else:
            self._apply_failure(order, notification, actor_id)

        return ConfirmationOutcome(
            accepted=True, reason=OutcomeReason.CONFIRMED, order_id=order_id
        )

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    def _apply_success(
        self,
        order: Order,
        notification: PaymentNotification,
        actor_id: Optional[int],
    ) -> None:
        now = timezone.now()
        self._record_payment(order, notification, PaymentStatus.PAID, now)
        order.mark_paid(now)

        base = {
            "aggregate_id": order.id,
            "tenant_id": str(order.tenant_id),
            "user_id": order.user_id,
        }

        if order.status == OrderStatus.CANCELLED:
            # Cancelled by the payment timeout: reservations are already gone.
            order.add_domain_event(
                PaymentRefundRequired(
                    amount=str(order.total_amount),
                    payment_method=order.payment_method,
                    provider_transaction_id=notification.provider_transaction_id,
                    **base,
                )
            )
            self._orders.save(order)
            logger.warning(
                "payment.late_success_refund_required",
                order_id=str(order.id),
                amount=str(order.total_amount),
            )
            return

        if order.status == OrderStatus.PENDING:
            old_status = order.transition_to(OrderStatus.PROCESSING)
            order.add_domain_event(
                OrderStatusChanged(
                    old_status=old_status, new_status=order.status, **base
                )
            )
            self._orders.add_history(
                order.id,
                order.status,
                notes="Payment confirmed",
                old_status=old_status,
                user_id=actor_id,
            )

        if not order.stock_finalized:
            self._ledger.finalize_lines(
                order.ledger_lines(),
                operation_prefix=order.stock_operation_prefix("finalize"),
                reason=f"Payment confirmed for {order.order_number}",
                actor_id=actor_id,
            )
            order.stock_finalized = True

        order.add_domain_event(
            PaymentSuccessful(
                amount=str(order.total_amount),
                payment_method=order.payment_method,
                provider_transaction_id=notification.provider_transaction_id,
                **base,
            )
        )
        self._orders.save(order)
        logger.info(
            "payment.confirmed",
            order_id=str(order.id),
            amount=str(order.total_amount),
            status=order.status,
        )

    def _apply_failure(
        self,
        order: Order,
        notification: PaymentNotification,
        actor_id: Optional[int],
    ) -> None:
        self._record_payment(order, notification, PaymentStatus.FAILED, timezone.now())
        order.payment_status = PaymentStatus.FAILED

        if order.status == OrderStatus.PENDING:
            was_finalized = order.stock_finalized
            old_status = order.transition_to(
                OrderStatus.CANCELLED, reason=PAYMENT_FAILED_REASON
            )
            self._ledger.release_lines(
                order.ledger_lines(),
                was_finalized=was_finalized,
                operation_prefix=order.stock_operation_prefix("release"),
                reason=f"Payment failed for {order.order_number}",
                actor_id=actor_id,
            )
            order.add_domain_event(
                OrderCancelled(
                    aggregate_id=order.id,
                    tenant_id=str(order.tenant_id),
                    user_id=order.user_id,
                    reason=PAYMENT_FAILED_REASON,
                    was_paid=False,
                    stock_was_finalized=was_finalized,
                )
            )
            self._orders.add_history(
                order.id,
                order.status,
                notes=PAYMENT_FAILED_REASON,
                old_status=old_status,
                user_id=actor_id,
            )

        self._orders.save(order)
        logger.info("payment.failed", order_id=str(order.id), status=order.status)

    # ------------------------------------------------------------------
    # Payment records
    # ------------------------------------------------------------------

    @staticmethod
    def _already_recorded(method: str, notification: PaymentNotification) -> bool:
        if not notification.provider_transaction_id:
            return False
        return Payment.objects.filter(
            payment_method=method,
            provider_transaction_id=notification.provider_transaction_id,
        ).exists()

    @staticmethod
    def _record_payment(
        order: Order,
        notification: PaymentNotification,
        status: str,
        when,
    ) -> Payment:
        payment = (
            Payment.objects.filter(order=order, status=PaymentStatus.PENDING)
            .order_by("-created_at")
            .first()
        )
        if payment is None:
            payment = Payment(
                order=order,
                tenant_id=order.tenant_id,
                amount=order.total_amount,
                payment_method=order.payment_method,
            )
        payment.status = status
        payment.provider_transaction_id = notification.provider_transaction_id
        payment.provider_payload = dict(notification.raw)
        payment.confirmed_at = when
        payment.save()
        return payment


class PaymentInitiationService:
    """Creates gateway payment sessions for placed orders.

    Runs outside the placement transaction; a gateway failure leaves the
    order ``PENDING`` and is reported by returning ``None``.
    """

    def __init__(self, registry: Optional[PaymentStrategyRegistry] = None) -> None:
        self._registry = registry or build_default_registry()

    def initiate(self, order: Order, client_ip: str = "127.0.0.1") -> Optional[Payment]:
        if order.payment_method == PaymentMethod.COD:
            return None

        strategy = self._registry.get(order.payment_method)
        request = PaymentRequest(
            order_id=order.id,
            order_number=order.order_number,
            amount=Decimal(order.total_amount),
            description=f"Payment for order {order.order_number}",
            client_ip=client_ip,
        )
        try:
            initiation = strategy.initiate(request)
        except PaymentInitiationFailed as exc:
            logger.warning(
                "payment.initiation_failed",
                order_id=str(order.id),
                payment_method=order.payment_method,
                error=str(exc),
            )
            return None

        payment = Payment.objects.create(
            order=order,
            tenant_id=order.tenant_id,
            amount=order.total_amount,
            payment_method=order.payment_method,
            pay_url=initiation.pay_url,
            provider_reference=initiation.provider_reference,
            provider_payload=initiation.raw,
        )
        logger.info(
            "payment.initiated",
            order_id=str(order.id),
            payment_method=order.payment_method,
            payment_id=str(payment.id),
        )
        return payment
