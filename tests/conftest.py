from __future__ import annotations

from decimal import Decimal
from itertools import count

import pytest
from django.contrib.auth import get_user_model
from django.core.cache import cache
from rest_framework.test import APIClient

from modules.carts.models import Cart, CartItem
from modules.inventory.models import Sku
from modules.orders.constants import PaymentMethod
from modules.orders.dtos import PlaceOrderDTO, ShippingAddressDTO
from modules.orders.models import Order
from modules.orders.services import build_order_orchestrator
from modules.tenants.models import Tenant

ADDRESS = {
    "recipient_name": "Nguyen Van A",
    "phone": "0901234567",
    "address_line": "12 Ly Thuong Kiet, Hoan Kiem, Ha Noi",
}

_sequence = count(1)


@pytest.fixture(autouse=True)
def _use_db(db):
    """Automatically use the test database for all tests."""


@pytest.fixture(autouse=True)
def _clear_cache():
    """Throttle counters live in the cache; start every test from zero."""
    cache.clear()


@pytest.fixture()
def api_client():
    """DRF APIClient for testing API endpoints."""
    return APIClient()


@pytest.fixture()
def api_client_with_correlation(api_client):
    """APIClient pre-configured with a known correlation ID header."""
    cid = "test-correlation-id-fixture"
    api_client.defaults["HTTP_X_REQUEST_ID"] = cid
    return api_client, cid


# ---------------------------------------------------------------------------
# Tenants and users
# ---------------------------------------------------------------------------


@pytest.fixture()
def tenant():
    return Tenant.objects.create(
        name="Shop One",
        slug="shop-one",
        plan_fee_percent=Decimal("2.00"),
        default_shipping_fee=Decimal("30000.00"),
    )


@pytest.fixture()
def make_user():
    def _make(username: str | None = None, **extra):
        username = username or f"user{next(_sequence)}"
        return get_user_model().objects.create_user(
            username=username, password="pass-1234", **extra
        )

    return _make


@pytest.fixture()
def user(make_user):
    return make_user("buyer")


@pytest.fixture()
def staff_user(make_user):
    return make_user("operator", is_staff=True)


@pytest.fixture()
def auth_client(api_client, user, tenant):
    api_client.force_authenticate(user=user)
    api_client.defaults["HTTP_X_TENANT_ID"] = str(tenant.id)
    return api_client


@pytest.fixture()
def staff_client(user, staff_user, tenant):
    client = APIClient()
    client.force_authenticate(user=staff_user)
    client.defaults["HTTP_X_TENANT_ID"] = str(tenant.id)
    return client


# ---------------------------------------------------------------------------
# Catalog and carts
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_sku(tenant):
    def _make(stock: int = 10, price: str = "50000.00", **extra):
        n = next(_sequence)
        defaults = {
            "tenant": tenant,
            "sku_code": f"SKU-{n:04d}",
            "product_name": f"Product {n}",
            "image_url": f"https://cdn.example.com/p{n}.jpg",
            "price": Decimal(price),
            "stock": stock,
        }
        defaults.update(extra)
        return Sku.objects.create(**defaults)

    return _make


@pytest.fixture()
def make_cart_line(tenant, user):
    def _make(sku: Sku, quantity: int = 1, owner=None) -> CartItem:
        cart, _ = Cart.objects.get_or_create(tenant=tenant, user=owner or user)
        return CartItem.objects.create(cart=cart, sku=sku, quantity=quantity)

    return _make


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@pytest.fixture()
def orchestrator():
    return build_order_orchestrator()


@pytest.fixture()
def place_order(orchestrator, tenant, user, make_cart_line):
    """Put ``(sku, quantity)`` pairs in the cart and place them as one order."""

    def _place(items, payment_method=PaymentMethod.COD, owner=None, **extra) -> Order:
        buyer = owner or user
        line_ids = [make_cart_line(sku, qty, owner=buyer).id for sku, qty in items]
        result = orchestrator.place_order(
            PlaceOrderDTO(
                tenant_id=tenant.id,
                user_id=buyer.id,
                cart_item_ids=line_ids,
                shipping_address=ShippingAddressDTO(**ADDRESS),
                payment_method=payment_method,
                **extra,
            )
        )
        return Order.objects.get(id=result.order_id)

    return _place
