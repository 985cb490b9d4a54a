"""Integration tests for the outbox consumers.

Covers:
- CommissionCalculator: platform fee, direct and tier-2 referral commission,
  per-SKU rates, one calculation per order, unpaid orders skipped.
- LoyaltyService: points earned on payment, refunded on cancel and return.
- Notifications deduplicated per delivered event.
- ShipmentCreationHandler booking the carrier shipment.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from modules.commissions.handlers import CommissionHandler
from modules.commissions.models import Affiliate, CommissionTransaction, CommissionType
from modules.commissions.services import CommissionCalculator
from modules.core.outbox import OutboxDispatcher
from modules.loyalty.handlers import LoyaltyReturnHandler
from modules.loyalty.models import LoyaltyTransaction, LoyaltyTransactionType
from modules.loyalty.services import LoyaltyService
from modules.notifications.handlers import OrderNotificationHandler
from modules.notifications.models import Notification
from modules.orders.constants import OrderStatus, PaymentMethod
from modules.orders.events import OrderStatusChanged, PaymentSuccessful
from modules.orders.models import Order
from modules.payments.services import PaymentConfirmationGateway
from modules.shipping.clients import Shipment
from modules.shipping.exceptions import ExternalServiceUnavailable
from modules.shipping.handlers import ShipmentCreationHandler
from shared.infrastructure.bus import event_bus

pytestmark = pytest.mark.integration


def _pay(order: Order) -> Order:
    PaymentConfirmationGateway().confirm_manually(order.id, success=True)
    order.refresh_from_db()
    return order


@pytest.fixture()
def referral_chain(make_user):
    """upstream -> referrer: the referrer was recruited by ``upstream``."""
    upstream = make_user("upstream")
    referrer = make_user("referrer")
    Affiliate.objects.create(user=upstream, referral_code="UP1")
    Affiliate.objects.create(user=referrer, referral_code="REF1", referred_by=upstream)
    return referrer, upstream


# ---------------------------------------------------------------------------
# Commissions
# ---------------------------------------------------------------------------


class TestCommissionCalculator:
    def test_platform_fee_only_without_referral(self, make_sku, place_order):
        # 2 x 100000 + 30000 shipping; tenant fee is 2 %
        order = _pay(
            place_order([(make_sku(price="100000.00"), 2)], payment_method=PaymentMethod.VNPAY)
        )

        result = CommissionCalculator().calculate_for_order(order.id)

        assert result.created
        assert result.platform_fee == Decimal("4600.00")
        assert result.direct_commission == Decimal("0.00")
        txn = CommissionTransaction.objects.get(order=order)
        assert txn.type == CommissionType.PLATFORM_FEE
        assert txn.user_id is None
        order.refresh_from_db()
        assert order.platform_fee_amount == Decimal("4600.00")
        assert order.affiliate_commission_amount == Decimal("0.00")

    def test_two_tier_referral(self, make_sku, place_order, referral_chain):
        referrer, upstream = referral_chain
        order = _pay(
            place_order(
                [(make_sku(price="100000.00"), 2)],
                payment_method=PaymentMethod.VNPAY,
                referral_code="REF1",
            )
        )

        result = CommissionCalculator().calculate_for_order(order.id)

        # direct: 5 % of the 200000 subtotal; tier 2: 2/5 of the direct amount
        assert result.direct_commission == Decimal("10000.00")
        assert result.tier_2_commission == Decimal("4000.00")
        rows = {
            row.type: row
            for row in CommissionTransaction.objects.filter(order=order)
        }
        assert set(rows) == set(CommissionType.values)
        assert rows[CommissionType.DIRECT_REFERRAL].user_id == referrer.id
        assert rows[CommissionType.TIER_2_REFERRAL].user_id == upstream.id

        assert Affiliate.objects.get(user=referrer).commission_balance == Decimal("10000.00")
        assert Affiliate.objects.get(user=upstream).commission_balance == Decimal("4000.00")
        order.refresh_from_db()
        assert order.affiliate_commission_amount == Decimal("14000.00")

    def test_sku_commission_rate_overrides_default(self, make_sku, place_order, make_user):
        referrer = make_user("solo-referrer")
        Affiliate.objects.create(user=referrer, referral_code="SOLO")
        sku = make_sku(price="100000.00", commission_rate=Decimal("10.00"))
        order = _pay(
            place_order([(sku, 1)], payment_method=PaymentMethod.VNPAY, referral_code="SOLO")
        )

        result = CommissionCalculator().calculate_for_order(order.id)

        assert result.direct_commission == Decimal("10000.00")
        assert result.tier_2_commission == Decimal("0.00")
        assert not CommissionTransaction.objects.filter(
            order=order, type=CommissionType.TIER_2_REFERRAL
        ).exists()

    def test_second_delivery_credits_nothing(self, make_sku, place_order, referral_chain):
        referrer, _ = referral_chain
        order = _pay(
            place_order(
                [(make_sku(price="100000.00"), 1)],
                payment_method=PaymentMethod.VNPAY,
                referral_code="REF1",
            )
        )
        handler = CommissionHandler()
        event = PaymentSuccessful(
            aggregate_id=order.id,
            tenant_id=str(order.tenant_id),
            user_id=order.user_id,
            amount=str(order.total_amount),
            payment_method=order.payment_method,
        )

        handler.handle(event)
        handler.handle(event)

        assert CommissionTransaction.objects.filter(order=order).count() == 3
        assert Affiliate.objects.get(user=referrer).commission_balance == Decimal("5000.00")

    def test_unpaid_order_is_skipped(self, make_sku, place_order):
        order = place_order([(make_sku(), 1)])

        result = CommissionCalculator().calculate_for_order(order.id)

        assert not result.created
        assert not CommissionTransaction.objects.exists()

    def test_tenant_without_plan_uses_default_fee(self, tenant, make_sku, place_order):
        tenant.plan_fee_percent = None
        tenant.save(update_fields=["plan_fee_percent"])
        order = _pay(
            place_order([(make_sku(price="70000.00"), 1)], payment_method=PaymentMethod.VNPAY)
        )

        result = CommissionCalculator().calculate_for_order(order.id)

        # default 1 % of 100000
        assert result.platform_fee == Decimal("1000.00")


# ---------------------------------------------------------------------------
# Loyalty
# ---------------------------------------------------------------------------


class TestLoyalty:
    def test_points_earned_once(self, make_sku, place_order):
        order = _pay(
            place_order([(make_sku(price="100000.00"), 1)], payment_method=PaymentMethod.VNPAY)
        )
        service = LoyaltyService()

        first = service.earn_from_order(order.id)
        second = service.earn_from_order(order.id)

        assert first.points == 130
        assert first.id == second.id
        assert service.balance_for(order.tenant_id, order.user_id) == 130

    def test_unpaid_order_earns_nothing(self, make_sku, place_order):
        order = place_order([(make_sku(), 1)])
        assert LoyaltyService().earn_from_order(order.id) is None
        assert not LoyaltyTransaction.objects.exists()

    def test_refund_reverses_earned_points(self, make_sku, place_order):
        order = _pay(
            place_order([(make_sku(price="100000.00"), 1)], payment_method=PaymentMethod.VNPAY)
        )
        service = LoyaltyService()
        service.earn_from_order(order.id)

        refund = service.refund_for_order(order.id)
        service.refund_for_order(order.id)

        assert refund.points == -130
        assert LoyaltyTransaction.objects.filter(
            order=order, type=LoyaltyTransactionType.REFUND
        ).count() == 1
        assert service.balance_for(order.tenant_id, order.user_id) == 0

    def test_refund_without_earn_is_noop(self, make_sku, place_order):
        order = place_order([(make_sku(), 1)])
        assert LoyaltyService().refund_for_order(order.id) is None

    def test_cancel_handled_before_earn_leaves_no_points(
        self, orchestrator, make_sku, place_order
    ):
        order = _pay(
            place_order([(make_sku(price="100000.00"), 1)], payment_method=PaymentMethod.VNPAY)
        )
        orchestrator.cancel_order(order.id, "changed my mind")
        service = LoyaltyService()

        assert service.refund_for_order(order.id) is None
        assert service.earn_from_order(order.id) is None

        assert not LoyaltyTransaction.objects.filter(order=order).exists()
        assert service.balance_for(order.tenant_id, order.user_id) == 0

    def test_return_handler_only_reacts_to_returned(self):
        service = MagicMock()
        handler = LoyaltyReturnHandler(service)

        for status in (OrderStatus.SHIPPED, OrderStatus.RETURNED):
            handler.handle(
                OrderStatusChanged(
                    aggregate_id="a1",
                    tenant_id="t1",
                    user_id=1,
                    old_status=OrderStatus.DELIVERED,
                    new_status=status,
                )
            )

        service.refund_for_order.assert_called_once_with("a1")


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class TestNotifications:
    def test_placed_order_notifies_buyer_once(self, user, make_sku, place_order):
        order = place_order([(make_sku(), 1)])
        OutboxDispatcher(event_bus).dispatch_batch()

        notification = Notification.objects.get(user=user)
        assert notification.type == "ORDER_PLACED"
        assert order.order_number in notification.message
        assert notification.link == f"/orders/{order.id}"

    def test_redelivered_event_is_deduplicated(self, tenant, user):
        event = PaymentSuccessful(
            aggregate_id="a1",
            tenant_id=str(tenant.id),
            user_id=user.id,
            amount="100000.00",
            payment_method=PaymentMethod.VNPAY,
        )
        handler = OrderNotificationHandler()

        handler.handle(event)
        handler.handle(event)

        assert Notification.objects.filter(user=user).count() == 1


# ---------------------------------------------------------------------------
# Shipment booking
# ---------------------------------------------------------------------------


class TestShipmentCreation:
    @staticmethod
    def _processing_event(order: Order) -> OrderStatusChanged:
        return OrderStatusChanged(
            aggregate_id=order.id,
            tenant_id=str(order.tenant_id),
            user_id=order.user_id,
            old_status=OrderStatus.PENDING,
            new_status=OrderStatus.PROCESSING,
        )

    @staticmethod
    def _with_quotable_address(order: Order) -> Order:
        address = {**order.shipping_address, "district_id": 1442, "ward_code": "20308"}
        Order.objects.filter(id=order.id).update(shipping_address=address)
        order.refresh_from_db()
        return order

    @pytest.fixture()
    def processing_order(self, orchestrator, make_sku, place_order):
        def _make(quantity=1, quotable=True):
            order = place_order([(make_sku(), quantity)])
            if quotable:
                order = self._with_quotable_address(order)
            return orchestrator.transition_order(order.id, OrderStatus.PROCESSING)

        return _make

    def test_cod_shipment_collects_total(self, processing_order):
        order = processing_order(quantity=3)
        client = MagicMock()
        client.create_shipment.return_value = Shipment(tracking_code="GHN123")

        ShipmentCreationHandler(lambda: client).handle(self._processing_event(order))

        request = client.create_shipment.call_args.args[0]
        assert request.cod_amount == order.total_amount
        assert request.item_count == 3
        assert request.district_id == 1442
        order.refresh_from_db()
        assert order.tracking_code == "GHN123"

    def test_paid_order_collects_nothing(self, make_sku, place_order):
        order = place_order([(make_sku(), 1)], payment_method=PaymentMethod.VNPAY)
        order = self._with_quotable_address(_pay(order))
        client = MagicMock()
        client.create_shipment.return_value = Shipment(tracking_code="GHN456")

        ShipmentCreationHandler(lambda: client).handle(self._processing_event(order))

        assert client.create_shipment.call_args.args[0].cod_amount == Decimal("0.00")

    def test_address_without_district_is_skipped(self, processing_order):
        order = processing_order(quotable=False)
        client = MagicMock()

        ShipmentCreationHandler(lambda: client).handle(self._processing_event(order))

        client.create_shipment.assert_not_called()

    def test_already_booked_is_skipped(self, processing_order):
        order = processing_order()
        Order.objects.filter(id=order.id).update(tracking_code="EXISTING")
        client = MagicMock()

        ShipmentCreationHandler(lambda: client).handle(self._processing_event(order))

        client.create_shipment.assert_not_called()

    def test_other_statuses_are_ignored(self, make_sku, place_order):
        order = self._with_quotable_address(place_order([(make_sku(), 1)]))
        client = MagicMock()
        event = OrderStatusChanged(
            aggregate_id=order.id,
            tenant_id=str(order.tenant_id),
            user_id=order.user_id,
            old_status=OrderStatus.PROCESSING,
            new_status=OrderStatus.SHIPPED,
        )

        ShipmentCreationHandler(lambda: client).handle(event)

        client.create_shipment.assert_not_called()

    def test_carrier_error_propagates(self, processing_order):
        order = processing_order()
        client = MagicMock()
        client.create_shipment.side_effect = ExternalServiceUnavailable("timeout")

        with pytest.raises(ExternalServiceUnavailable):
            ShipmentCreationHandler(lambda: client).handle(self._processing_event(order))

    def test_cancelled_before_dispatch_is_not_booked(self, orchestrator, processing_order):
        order = processing_order()
        event = self._processing_event(order)
        orchestrator.cancel_order(order.id, "changed my mind")
        client = MagicMock()

        ShipmentCreationHandler(lambda: client).handle(event)

        client.create_shipment.assert_not_called()
        order.refresh_from_db()
        assert order.status == OrderStatus.CANCELLED
        assert order.tracking_code == ""
