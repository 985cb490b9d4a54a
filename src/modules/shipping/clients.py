"""Shipping carrier clients.

``IShippingClient`` is the boundary the order pipeline depends on.
``GHNShippingClient`` talks to the GHN public API over ``httpx``;
``NullShippingClient`` is used when no carrier token is configured.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx
import structlog
from django.conf import settings

from modules.shipping.exceptions import ExternalServiceUnavailable

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ShipmentRequest:
    order_number: str
    recipient_name: str
    recipient_phone: str
    address_line: str
    district_id: int
    ward_code: str
    cod_amount: Decimal
    item_count: int
    note: str = ""


@dataclass(frozen=True)
class Shipment:
    tracking_code: str
    fee: Optional[Decimal] = None


class IShippingClient(Protocol):
    def quote_fee(self, district_id: int, ward_code: str) -> Decimal: ...

    def create_shipment(self, request: ShipmentRequest) -> Optional[Shipment]: ...

    def cancel_shipment(self, tracking_code: str) -> bool: ...


class NullShippingClient:
    """No carrier configured: quotes fail over to defaults, nothing is shipped."""

    def quote_fee(self, district_id: int, ward_code: str) -> Decimal:
        raise ExternalServiceUnavailable("No shipping carrier configured.")

    def create_shipment(self, request: ShipmentRequest) -> Optional[Shipment]:
        logger.info("shipping.carrier_not_configured", order_number=request.order_number)
        return None

    def cancel_shipment(self, tracking_code: str) -> bool:
        return True


class GHNShippingClient:
    """GHN (Giao Hang Nhanh) carrier client."""

    def __init__(
        self,
        base_url: str,
        token: str,
        shop_id: str,
        timeout: float = 5.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._client = http_client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={"Token": token, "ShopId": str(shop_id)},
        )

    # ------------------------------------------------------------------
    # IShippingClient
    # ------------------------------------------------------------------

    def quote_fee(self, district_id: int, ward_code: str) -> Decimal:
        data = self._post(
            "/v2/shipping-order/fee",
            {
                "service_type_id": 2,
                "to_district_id": district_id,
                "to_ward_code": ward_code,
                "weight": settings.SHIPPING_DEFAULT_WEIGHT_GRAMS,
            },
        )
        try:
            return Decimal(str(data["data"]["total"]))
        except (KeyError, TypeError) as exc:
            raise ExternalServiceUnavailable("Unexpected fee response.") from exc

    def create_shipment(self, request: ShipmentRequest) -> Optional[Shipment]:
        data = self._post(
            "/v2/shipping-order/create",
            {
                "payment_type_id": 2,
                "required_note": "KHONGCHOXEMHANG",
                "client_order_code": request.order_number,
                "to_name": request.recipient_name,
                "to_phone": request.recipient_phone,
                "to_address": request.address_line,
                "to_district_id": request.district_id,
                "to_ward_code": request.ward_code,
                "cod_amount": int(request.cod_amount),
                "weight": settings.SHIPPING_DEFAULT_WEIGHT_GRAMS * request.item_count,
                "service_type_id": 2,
                "note": request.note,
            },
        )
        try:
            payload = data["data"]
            fee = payload.get("total_fee")
            return Shipment(
                tracking_code=payload["order_code"],
                fee=Decimal(str(fee)) if fee is not None else None,
            )
        except (KeyError, TypeError) as exc:
            raise ExternalServiceUnavailable("Unexpected create response.") from exc

    def cancel_shipment(self, tracking_code: str) -> bool:
        try:
            data = self._post(
                "/v2/switch-status/cancel", {"order_codes": [tracking_code]}
            )
        except ExternalServiceUnavailable:
            return False
        results = data.get("data") or []
        return bool(results) and all(item.get("result") for item in results)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        log = logger.bind(path=path)
        try:
            response = self._client.post(path, json=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("shipping.request_failed", error=str(exc))
            raise ExternalServiceUnavailable(str(exc)) from exc

        if data.get("code") != 200:
            log.warning(
                "shipping.request_rejected",
                code=data.get("code"),
                message=data.get("message"),
            )
            raise ExternalServiceUnavailable(data.get("message") or "Carrier error.")
        return data


def get_shipping_client() -> IShippingClient:
    if not settings.SHIPPING_API_TOKEN:
        return NullShippingClient()
    return GHNShippingClient(
        base_url=settings.SHIPPING_API_URL,
        token=settings.SHIPPING_API_TOKEN,
        shop_id=settings.SHIPPING_SHOP_ID,
        timeout=settings.SHIPPING_TIMEOUT_SECONDS,
    )
