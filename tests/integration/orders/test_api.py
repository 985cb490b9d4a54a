"""API tests for ``/api/v1/orders/``.

Covers:
- Placement: 201 payload, validation errors, stock conflicts, idempotency header.
- Tenant and ownership scoping for list/retrieve.
- Staff-only status updates.
- Cancellation and payment retry actions.
"""

from __future__ import annotations

from uuid import uuid4

import pytest
from django.db import OperationalError
from rest_framework.test import APIClient

from modules.inventory.exceptions import LedgerInvariantViolation, SkuNotFound
from modules.orders.constants import OrderStatus, PaymentMethod
from modules.orders.models import Order
from modules.orders.services import OrderOrchestrator
from modules.tenants.models import Tenant

pytestmark = pytest.mark.integration

URL = "/api/v1/orders/"

ADDRESS = {
    "recipient_name": "Le Van C",
    "phone": "0987654321",
    "address_line": "99 Nguyen Hue, District 1",
}


def _payload(line_ids, **extra):
    data = {
        "cart_item_ids": [str(line_id) for line_id in line_ids],
        "shipping_address": ADDRESS,
        "payment_method": PaymentMethod.COD,
    }
    data.update(extra)
    return data


class TestCreateOrder:
    def test_place_order(self, auth_client, make_sku, make_cart_line):
        line = make_cart_line(make_sku(price="45000.00"), 2)

        response = auth_client.post(URL, _payload([line.id]), format="json")

        assert response.status_code == 201
        body = response.json()
        assert body["total_amount"] == "120000.00"
        assert body["order_number"].startswith("ORD-")
        assert body["payment_url"] is None
        assert Order.objects.filter(id=body["order_id"]).exists()

    def test_vnpay_order_returns_payment_url(self, auth_client, make_sku, make_cart_line):
        line = make_cart_line(make_sku(), 1)

        response = auth_client.post(
            URL, _payload([line.id], payment_method="VNPAY"), format="json"
        )

        assert response.status_code == 201
        assert "vnp_SecureHash=" in response.json()["payment_url"]

    def test_insufficient_stock_is_conflict(self, auth_client, make_sku, make_cart_line):
        line = make_cart_line(make_sku(stock=1), 3)

        response = auth_client.post(URL, _payload([line.id]), format="json")

        assert response.status_code == 409
        assert not Order.objects.exists()

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (LedgerInvariantViolation("reserved above stock"), 409),
            (SkuNotFound("SKU gone"), 409),
            (OperationalError("lock wait timeout exceeded"), 503),
        ],
    )
    def test_placement_failures_are_mapped(
        self, monkeypatch, auth_client, make_sku, make_cart_line, error, expected
    ):
        def _fail(self, dto):
            raise error

        monkeypatch.setattr(OrderOrchestrator, "place_order", _fail)
        line = make_cart_line(make_sku(), 1)

        response = auth_client.post(URL, _payload([line.id]), format="json")

        assert response.status_code == expected
        assert response.json()["detail"]

    def test_empty_selection_is_bad_request(self, auth_client):
        response = auth_client.post(URL, _payload([]), format="json")
        assert response.status_code == 400

    def test_unknown_lines_are_bad_request(self, auth_client):
        response = auth_client.post(URL, _payload([uuid4()]), format="json")
        assert response.status_code == 400

    def test_missing_tenant_header(self, api_client, user, make_sku, make_cart_line):
        api_client.force_authenticate(user=user)
        line = make_cart_line(make_sku(), 1)

        response = api_client.post(URL, _payload([line.id]), format="json")

        assert response.status_code == 400

    def test_unauthenticated(self, api_client):
        response = api_client.post(URL, _payload([uuid4()]), format="json")
        assert response.status_code == 401

    def test_idempotency_key_header(self, auth_client, make_sku, make_cart_line):
        line = make_cart_line(make_sku(stock=5), 1)
        payload = _payload([line.id])

        first = auth_client.post(URL, payload, format="json", HTTP_IDEMPOTENCY_KEY="abc-1")
        second = auth_client.post(URL, payload, format="json", HTTP_IDEMPOTENCY_KEY="abc-1")

        assert first.status_code == 201
        assert second.status_code == 201
        assert first.json()["order_id"] == second.json()["order_id"]
        assert Order.objects.count() == 1


class TestReadOrders:
    def test_customer_sees_only_own_orders(self, auth_client, make_user, make_sku, place_order):
        mine = place_order([(make_sku(), 1)])
        place_order([(make_sku(), 1)], owner=make_user())

        response = auth_client.get(URL)

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["results"][0]["id"] == str(mine.id)

    def test_staff_sees_all_tenant_orders(self, staff_client, make_user, make_sku, place_order):
        place_order([(make_sku(), 1)])
        place_order([(make_sku(), 1)], owner=make_user())

        response = staff_client.get(URL)

        assert response.json()["count"] == 2

    def test_other_tenant_orders_are_hidden(self, user, make_sku, place_order):
        order = place_order([(make_sku(), 1)])
        other = Tenant.objects.create(name="Shop Two", slug="shop-two")
        client = APIClient()
        client.force_authenticate(user=user)
        client.defaults["HTTP_X_TENANT_ID"] = str(other.id)

        assert client.get(URL).json()["count"] == 0
        assert client.get(f"{URL}{order.id}/").status_code == 404

    def test_filter_by_status(self, auth_client, orchestrator, make_sku, place_order):
        place_order([(make_sku(), 1)])
        cancelled = place_order([(make_sku(), 1)])
        orchestrator.cancel_order(cancelled.id, "No longer needed")

        response = auth_client.get(URL, {"status": OrderStatus.CANCELLED})

        assert [row["id"] for row in response.json()["results"]] == [str(cancelled.id)]

    def test_retrieve_includes_items_and_history(self, auth_client, make_sku, place_order):
        sku = make_sku()
        order = place_order([(sku, 2)])

        response = auth_client.get(f"{URL}{order.id}/")

        assert response.status_code == 200
        body = response.json()
        assert body["items"][0]["sku_code_snapshot"] == sku.sku_code
        assert body["items"][0]["quantity"] == 2
        assert body["status_history"][0]["new_status"] == OrderStatus.PENDING

    def test_retrieve_unknown_order(self, auth_client):
        assert auth_client.get(f"{URL}{uuid4()}/").status_code == 404

    def test_retrieve_malformed_id(self, auth_client):
        assert auth_client.get(f"{URL}not-a-uuid/").status_code == 404


class TestStatusUpdate:
    def test_staff_moves_order_forward(self, staff_client, make_sku, place_order):
        order = place_order([(make_sku(), 1)])

        response = staff_client.patch(
            f"{URL}{order.id}/", {"status": OrderStatus.PROCESSING}, format="json"
        )

        assert response.status_code == 200
        assert response.json()["status"] == OrderStatus.PROCESSING

    def test_customer_cannot_change_status(self, auth_client, make_sku, place_order):
        order = place_order([(make_sku(), 1)])

        response = auth_client.patch(
            f"{URL}{order.id}/", {"status": OrderStatus.PROCESSING}, format="json"
        )

        assert response.status_code == 403

    def test_invalid_transition(self, staff_client, make_sku, place_order):
        order = place_order([(make_sku(), 1)])

        response = staff_client.patch(
            f"{URL}{order.id}/", {"status": OrderStatus.DELIVERED}, format="json"
        )

        assert response.status_code == 400

    def test_cancel_through_patch_is_refused(self, staff_client, make_sku, place_order):
        order = place_order([(make_sku(), 1)])

        response = staff_client.patch(
            f"{URL}{order.id}/", {"status": OrderStatus.CANCELLED}, format="json"
        )

        assert response.status_code == 400
        order.refresh_from_db()
        assert order.status == OrderStatus.PENDING


class TestCancelAction:
    def test_customer_cancels_own_order(self, auth_client, make_sku, place_order):
        sku = make_sku(stock=4)
        order = place_order([(sku, 2)])

        response = auth_client.post(
            f"{URL}{order.id}/cancel/", {"reason": "Ordered by mistake"}, format="json"
        )

        assert response.status_code == 200
        assert response.json()["status"] == OrderStatus.CANCELLED
        sku.refresh_from_db()
        assert sku.reserved == 0

    def test_blank_reason(self, auth_client, make_sku, place_order):
        order = place_order([(make_sku(), 1)])

        response = auth_client.post(f"{URL}{order.id}/cancel/", {"reason": ""}, format="json")

        assert response.status_code == 400

    def test_cannot_cancel_someone_elses_order(self, auth_client, make_user, make_sku, place_order):
        order = place_order([(make_sku(), 1)], owner=make_user())

        response = auth_client.post(
            f"{URL}{order.id}/cancel/", {"reason": "x"}, format="json"
        )

        assert response.status_code == 404


class TestPayAction:
    def test_retry_gateway_payment(self, auth_client, make_sku, place_order):
        order = place_order([(make_sku(), 1)], payment_method=PaymentMethod.VNPAY)

        response = auth_client.post(f"{URL}{order.id}/pay/")

        assert response.status_code == 200
        assert "vnp_TxnRef=" in response.json()["payment_url"]

    def test_cod_order_cannot_be_paid_online(self, auth_client, make_sku, place_order):
        order = place_order([(make_sku(), 1)])

        response = auth_client.post(f"{URL}{order.id}/pay/")

        assert response.status_code == 400
