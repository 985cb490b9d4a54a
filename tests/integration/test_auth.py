"""Integration tests for JWT authentication.

Validates:
  - /health is public (plain Django view, no DRF).
  - Order endpoints return 401 without, or with a bad, bearer token.
  - A token from /api/v1/auth/token/ opens the orders API.
  - Payment and carrier webhooks need no user credentials.
"""

import pytest

pytestmark = pytest.mark.integration

ORDERS_URL = "/api/v1/orders/"
TOKEN_URL = "/api/v1/auth/token/"


class TestPublicEndpoints:
    def test_health_is_public(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_vnpay_ipn_is_public(self, api_client):
        response = api_client.get("/api/v1/payments/vnpay/ipn/")
        assert response.status_code == 200


class TestProtectedEndpoints:
    """Everything under the API requires a valid JWT by default."""

    def test_no_token_returns_401(self, api_client):
        assert api_client.get(ORDERS_URL).status_code == 401

    def test_invalid_token_returns_401(self, api_client):
        api_client.credentials(HTTP_AUTHORIZATION="Bearer invalid.token.here")
        assert api_client.get(ORDERS_URL).status_code == 401

    def test_malformed_auth_header_returns_401(self, api_client):
        api_client.credentials(HTTP_AUTHORIZATION="Token some-token")
        assert api_client.get(ORDERS_URL).status_code == 401

    def test_401_includes_www_authenticate_header(self, api_client):
        response = api_client.get(ORDERS_URL)
        assert response.status_code == 401
        assert "Bearer" in response.get("WWW-Authenticate", "")


class TestTokenFlow:
    def test_obtained_token_opens_orders(self, api_client, user, tenant):
        response = api_client.post(
            TOKEN_URL, {"username": "buyer", "password": "pass-1234"}, format="json"
        )
        assert response.status_code == 200

        api_client.credentials(
            HTTP_AUTHORIZATION=f"Bearer {response.json()['access']}",
            HTTP_X_TENANT_ID=str(tenant.id),
        )
        assert api_client.get(ORDERS_URL).status_code == 200

    def test_wrong_password(self, api_client, user):
        response = api_client.post(
            TOKEN_URL, {"username": "buyer", "password": "nope"}, format="json"
        )
        assert response.status_code == 401
