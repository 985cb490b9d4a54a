"""Integration tests for throttling on the orders API."""

from __future__ import annotations

import pytest
from rest_framework.throttling import ScopedRateThrottle

pytestmark = pytest.mark.integration

URL = "/api/v1/orders/"


@pytest.fixture()
def tight_rates(monkeypatch):
    monkeypatch.setattr(
        ScopedRateThrottle,
        "THROTTLE_RATES",
        {
            **ScopedRateThrottle.THROTTLE_RATES,
            "order_placement": "2/minute",
            "order_listing": "5/minute",
        },
    )


def _payload(line):
    return {
        "cart_item_ids": [str(line.id)],
        "shipping_address": {
            "recipient_name": "Tran Thi B",
            "phone": "0912345678",
            "address_line": "5 Hai Ba Trung",
        },
        "payment_method": "COD",
    }


def test_order_placement_is_throttled(tight_rates, auth_client, make_sku, make_cart_line):
    sku = make_sku(stock=10)

    for _ in range(2):
        response = auth_client.post(URL, _payload(make_cart_line(sku, 1)), format="json")
        assert response.status_code == 201

    response = auth_client.post(URL, _payload(make_cart_line(sku, 1)), format="json")
    assert response.status_code == 429


def test_order_listing_has_higher_limit(tight_rates, auth_client):
    for _ in range(5):
        assert auth_client.get(URL).status_code == 200

    assert auth_client.get(URL).status_code == 429
