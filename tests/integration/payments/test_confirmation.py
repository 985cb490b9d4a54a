"""Integration tests for ``PaymentConfirmationGateway``.

Covers:
- Success: payment PAID, order PROCESSING, stock finalized once, event written.
- Duplicate deliveries are acknowledged without side effects.
- Failure: order cancelled, reservations released.
- Late success after the payment timeout: recorded, refund flagged.
- Rejections: bad signature, amount mismatch, unknown order, wrong method.
- Manual confirmation by an operator.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from django.utils import timezone
from freezegun import freeze_time

from modules.core.models import OutboxEvent
from modules.inventory.models import InventoryLogEntry
from modules.orders.constants import (
    PAYMENT_FAILED_REASON,
    PAYMENT_TIMEOUT_REASON,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from modules.orders.exceptions import OrderNotFound
from modules.payments.models import Payment
from modules.payments.services import PaymentConfirmationGateway
from modules.payments.strategies import OutcomeReason

pytestmark = pytest.mark.integration


@pytest.fixture()
def gateway():
    return PaymentConfirmationGateway()


@pytest.fixture()
def vnpay_ipn(gateway):
    """Build a signed VNPay notification for ``order``."""
    strategy = gateway.registry.get(PaymentMethod.VNPAY)

    def _build(order, response_code="00", txn="14000001", amount=None):
        params = {
            "vnp_TmnCode": "TESTTMN1",
            "vnp_Amount": str(int((amount or order.total_amount) * 100)),
            "vnp_BankCode": "NCB",
            "vnp_TxnRef": str(order.id),
            "vnp_OrderInfo": f"Payment for order {order.order_number}",
            "vnp_ResponseCode": response_code,
            "vnp_TransactionStatus": response_code,
            "vnp_TransactionNo": txn,
            "vnp_PayDate": "20240101120000",
        }
        params["vnp_SecureHash"] = strategy.sign(params)
        return params

    return _build


@pytest.fixture()
def vnpay_order(make_sku, place_order):
    sku = make_sku(stock=10, price="60000.00")
    return place_order([(sku, 2)], payment_method=PaymentMethod.VNPAY), sku


def _events(order, event_type):
    return OutboxEvent.objects.filter(aggregate_id=str(order.id), event_type=event_type)


class TestSuccessfulPayment:
    def test_success_confirms_order(self, gateway, vnpay_ipn, vnpay_order):
        order, sku = vnpay_order

        outcome = gateway.confirm(PaymentMethod.VNPAY, vnpay_ipn(order))

        assert outcome.accepted
        assert outcome.reason == OutcomeReason.CONFIRMED
        order.refresh_from_db()
        assert order.status == OrderStatus.PROCESSING
        assert order.payment_status == PaymentStatus.PAID
        assert order.stock_finalized
        assert order.paid_at is not None

        sku.refresh_from_db()
        assert (sku.stock, sku.reserved) == (8, 0)

        payment = Payment.objects.get(order=order)
        assert payment.status == PaymentStatus.PAID
        assert payment.provider_transaction_id == "14000001"

        assert _events(order, "PAYMENT_SUCCESSFUL").count() == 1
        changed = _events(order, "ORDER_STATUS_CHANGED").get()
        assert changed.payload["new_status"] == OrderStatus.PROCESSING

    def test_duplicate_delivery_finalizes_once(self, gateway, vnpay_ipn, vnpay_order):
        order, sku = vnpay_order
        payload = vnpay_ipn(order)

        first = gateway.confirm(PaymentMethod.VNPAY, payload)
        second = gateway.confirm(PaymentMethod.VNPAY, payload)

        assert first.reason == OutcomeReason.CONFIRMED
        assert second.accepted
        assert second.duplicate
        sku.refresh_from_db()
        assert (sku.stock, sku.reserved) == (8, 0)
        assert InventoryLogEntry.objects.filter(sku=sku, operation="FINALIZE").count() == 1
        assert _events(order, "PAYMENT_SUCCESSFUL").count() == 1
        assert Payment.objects.filter(order=order, status=PaymentStatus.PAID).count() == 1

    def test_failure_after_success_is_a_duplicate(self, gateway, vnpay_ipn, vnpay_order):
        order, _ = vnpay_order
        gateway.confirm(PaymentMethod.VNPAY, vnpay_ipn(order))

        outcome = gateway.confirm(
            PaymentMethod.VNPAY, vnpay_ipn(order, response_code="24", txn="14000002")
        )

        assert outcome.duplicate
        order.refresh_from_db()
        assert order.status == OrderStatus.PROCESSING


class TestFailedPayment:
    def test_failure_cancels_and_releases(self, gateway, vnpay_ipn, vnpay_order):
        order, sku = vnpay_order

        outcome = gateway.confirm(
            PaymentMethod.VNPAY, vnpay_ipn(order, response_code="24")
        )

        assert outcome.accepted
        order.refresh_from_db()
        assert order.status == OrderStatus.CANCELLED
        assert order.payment_status == PaymentStatus.FAILED
        assert order.cancellation_reason == PAYMENT_FAILED_REASON
        sku.refresh_from_db()
        assert (sku.stock, sku.reserved) == (10, 0)
        cancelled = _events(order, "ORDER_CANCELLED").get()
        assert cancelled.payload["was_paid"] is False
        assert not _events(order, "PAYMENT_SUCCESSFUL").exists()


class TestLateSuccess:
    def test_success_after_timeout_flags_refund(
        self, gateway, vnpay_ipn, make_sku, place_order, orchestrator
    ):
        sku = make_sku(stock=10)
        with freeze_time(timezone.now() - timedelta(minutes=30)):
            order = place_order([(sku, 2)], payment_method=PaymentMethod.VNPAY)
        assert orchestrator.expire_unpaid_orders() == 1

        outcome = gateway.confirm(PaymentMethod.VNPAY, vnpay_ipn(order))

        assert outcome.accepted
        order.refresh_from_db()
        assert order.status == OrderStatus.CANCELLED
        assert order.cancellation_reason == PAYMENT_TIMEOUT_REASON
        assert order.payment_status == PaymentStatus.PAID
        assert not order.stock_finalized
        sku.refresh_from_db()
        assert (sku.stock, sku.reserved) == (10, 0)
        assert _events(order, "PAYMENT_REFUND_REQUIRED").count() == 1
        assert not _events(order, "PAYMENT_SUCCESSFUL").exists()


class TestRejectedNotifications:
    def test_bad_signature_changes_nothing(self, gateway, vnpay_ipn, vnpay_order):
        order, sku = vnpay_order
        payload = vnpay_ipn(order)
        payload["vnp_SecureHash"] = "0" * 128

        outcome = gateway.confirm(PaymentMethod.VNPAY, payload)

        assert not outcome.accepted
        assert outcome.reason == OutcomeReason.SIGNATURE_INVALID
        order.refresh_from_db()
        assert order.payment_status == PaymentStatus.PENDING
        sku.refresh_from_db()
        assert sku.reserved == 2

    def test_amount_mismatch_rejected(self, gateway, vnpay_ipn, vnpay_order):
        order, _ = vnpay_order

        outcome = gateway.confirm(
            PaymentMethod.VNPAY, vnpay_ipn(order, amount=order.total_amount - 1)
        )

        assert not outcome.accepted
        assert outcome.reason == OutcomeReason.AMOUNT_MISMATCH
        order.refresh_from_db()
        assert order.status == OrderStatus.PENDING

    def test_unknown_order(self, gateway, vnpay_ipn, vnpay_order):
        order, _ = vnpay_order
        payload = vnpay_ipn(order)
        payload["vnp_TxnRef"] = str(uuid4())
        payload["vnp_SecureHash"] = gateway.registry.get("VNPAY").sign(payload)

        outcome = gateway.confirm(PaymentMethod.VNPAY, payload)

        assert outcome.reason == OutcomeReason.ORDER_NOT_FOUND

    def test_method_mismatch(self, gateway, vnpay_ipn, make_sku, place_order):
        cod_order = place_order([(make_sku(), 1)])

        outcome = gateway.confirm(PaymentMethod.VNPAY, vnpay_ipn(cod_order))

        assert outcome.reason == OutcomeReason.METHOD_MISMATCH
        cod_order.refresh_from_db()
        assert cod_order.payment_status == PaymentStatus.PENDING


class TestManualConfirmation:
    def test_operator_confirms_payment(self, gateway, vnpay_order, staff_user):
        order, sku = vnpay_order

        outcome = gateway.confirm_manually(
            order.id, success=True, provider_transaction_id="BANK-1", actor_id=staff_user.id
        )

        assert outcome.reason == OutcomeReason.CONFIRMED
        order.refresh_from_db()
        assert order.status == OrderStatus.PROCESSING
        history = order.status_history.order_by("-created_at", "-id").first()
        assert history.user_id == staff_user.id

    def test_unknown_order_raises(self, gateway):
        with pytest.raises(OrderNotFound):
            gateway.confirm_manually(uuid4(), success=True)
