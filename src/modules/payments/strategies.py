"""Payment strategies, one per payment method.

Each strategy owns its gateway's canonicalization and signing rules:

- ``CashOnDeliveryStrategy``: nothing to initiate, no webhooks.
- ``VNPayStrategy``: HMAC-SHA512 over the sorted, URL-encoded ``vnp_*``
  query parameters; amounts travel in minor units (x100).
- ``MoMoStrategy``: HMAC-SHA256 over a fixed-order ``key=value`` string;
  payment creation is a JSON POST through ``httpx``.

``PaymentStrategyRegistry`` selects a strategy by method name.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Tuple
from urllib.parse import quote_plus
from uuid import UUID

import httpx
import structlog
from django.conf import settings
from django.utils import timezone

from modules.orders.constants import PaymentMethod
from modules.payments.exceptions import (
    PaymentInitiationFailed,
    SignatureVerificationFailed,
    UnsupportedPaymentMethod,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentRequest:
    order_id: UUID
    order_number: str
    amount: Decimal
    description: str
    client_ip: str = "127.0.0.1"


@dataclass(frozen=True)
class PaymentInitiation:
    pay_url: str = ""
    provider_reference: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentNotification:
    """A verified gateway notification, reduced to what confirmation needs."""

    order_id: str
    success: bool
    amount: Optional[Decimal]
    provider_transaction_id: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


class OutcomeReason(str, Enum):
    CONFIRMED = "confirmed"
    DUPLICATE = "duplicate"
    SIGNATURE_INVALID = "signature_invalid"
    ORDER_NOT_FOUND = "order_not_found"
    AMOUNT_MISMATCH = "amount_mismatch"
    METHOD_MISMATCH = "method_mismatch"


@dataclass(frozen=True)
class ConfirmationOutcome:
    accepted: bool
    reason: OutcomeReason
    order_id: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return self.reason == OutcomeReason.DUPLICATE


class PaymentStrategy(Protocol):
    method: str

    def charge_amount(self, total: Decimal) -> Decimal:
        """The amount the gateway is asked to collect for ``total``."""
        ...

    def initiate(self, request: PaymentRequest) -> PaymentInitiation: ...

    def parse_notification(self, payload: Mapping[str, Any]) -> PaymentNotification: ...

    def build_ack(
        self, outcome: ConfirmationOutcome
    ) -> Tuple[int, Optional[Dict[str, Any]]]: ...


def _hmac_hex(secret: str, message: str, digestmod) -> str:
    return hmac.new(secret.encode(), message.encode(), digestmod).hexdigest()


CENTS = Decimal("0.01")
WHOLE_UNITS = Decimal("1")


def _parse_amount(value: Any, divisor: int = 1) -> Optional[Decimal]:
    try:
        return Decimal(str(value)) / divisor
    except (InvalidOperation, TypeError):
        return None


# ---------------------------------------------------------------------------
# Cash on delivery
# ---------------------------------------------------------------------------


class CashOnDeliveryStrategy:
    method = PaymentMethod.COD

    def charge_amount(self, total: Decimal) -> Decimal:
        return total.quantize(CENTS)

    def initiate(self, request: PaymentRequest) -> PaymentInitiation:
        return PaymentInitiation()

    def parse_notification(self, payload: Mapping[str, Any]) -> PaymentNotification:
        raise UnsupportedPaymentMethod("Cash on delivery has no gateway notifications.")

    def build_ack(self, outcome: ConfirmationOutcome):
        return (200 if outcome.accepted else 400), {"accepted": outcome.accepted}


# ---------------------------------------------------------------------------
# VNPay
# ---------------------------------------------------------------------------


class VNPayStrategy:
    method = PaymentMethod.VNPAY

    SUCCESS_CODE = "00"
    _HASH_FIELDS_EXCLUDED = {"vnp_SecureHash", "vnp_SecureHashType"}
    _ACK_CODES = {
        OutcomeReason.CONFIRMED: ("00", "Confirm Success"),
        OutcomeReason.DUPLICATE: ("02", "Order already confirmed"),
        OutcomeReason.ORDER_NOT_FOUND: ("01", "Order not found"),
        OutcomeReason.AMOUNT_MISMATCH: ("04", "Invalid amount"),
        OutcomeReason.SIGNATURE_INVALID: ("97", "Invalid signature"),
        OutcomeReason.METHOD_MISMATCH: ("99", "Unknown error"),
    }

    def __init__(self, tmn_code: str, hash_secret: str, pay_url: str, return_url: str):
        self._tmn_code = tmn_code
        self._hash_secret = hash_secret
        self._pay_url = pay_url
        self._return_url = return_url

    @staticmethod
    def canonical_query(params: Mapping[str, Any]) -> str:
        """Sorted ``key=value`` pairs, values URL-encoded (spaces as ``+``)."""
        return "&".join(
            f"{key}={quote_plus(str(params[key]))}"
            for key in sorted(params)
            if params[key] not in (None, "")
        )

    def sign(self, params: Mapping[str, Any]) -> str:
        signed = {
            k: v
            for k, v in params.items()
            if k.startswith("vnp_") and k not in self._HASH_FIELDS_EXCLUDED
        }
        return _hmac_hex(self._hash_secret, self.canonical_query(signed), hashlib.sha512)

    def charge_amount(self, total: Decimal) -> Decimal:
        return total.quantize(CENTS)

    def initiate(self, request: PaymentRequest) -> PaymentInitiation:
        created = timezone.localtime()
        params = {
            "vnp_Version": "2.1.0",
            "vnp_Command": "pay",
            "vnp_TmnCode": self._tmn_code,
            "vnp_Amount": int(self.charge_amount(request.amount) * 100),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": str(request.order_id),
            "vnp_OrderInfo": request.description,
            "vnp_OrderType": "other",
            "vnp_Locale": "vn",
            "vnp_ReturnUrl": self._return_url,
            "vnp_IpAddr": request.client_ip,
            "vnp_CreateDate": created.strftime("%Y%m%d%H%M%S"),
        }
        query = self.canonical_query(params)
        url = f"{self._pay_url}?{query}&vnp_SecureHash={self.sign(params)}"
        return PaymentInitiation(pay_url=url, provider_reference=str(request.order_id))

    def parse_notification(self, payload: Mapping[str, Any]) -> PaymentNotification:
        received = str(payload.get("vnp_SecureHash") or "")
        expected = self.sign(payload)
        if not received or not hmac.compare_digest(expected.lower(), received.lower()):
            raise SignatureVerificationFailed("VNPay checksum mismatch.")

        response_code = payload.get("vnp_ResponseCode")
        transaction_status = payload.get("vnp_TransactionStatus", self.SUCCESS_CODE)
        return PaymentNotification(
            order_id=str(payload.get("vnp_TxnRef") or ""),
            success=response_code == self.SUCCESS_CODE
            and transaction_status == self.SUCCESS_CODE,
            amount=_parse_amount(payload.get("vnp_Amount"), 100),
            provider_transaction_id=payload.get("vnp_TransactionNo")
            or payload.get("vnp_BankTranNo")
            or None,
            raw=dict(payload),
        )

    def build_ack(self, outcome: ConfirmationOutcome):
        code, message = self._ACK_CODES[outcome.reason]
        return 200, {"RspCode": code, "Message": message}


# ---------------------------------------------------------------------------
# MoMo
# ---------------------------------------------------------------------------


class MoMoStrategy:
    method = PaymentMethod.MOMO

    REQUEST_TYPE = "captureWallet"
    _IPN_SIGNED_FIELDS = (
        "accessKey",
        "amount",
        "extraData",
        "message",
        "orderId",
        "orderInfo",
        "partnerCode",
        "requestId",
        "responseTime",
        "resultCode",
        "transId",
    )

    def __init__(
        self,
        partner_code: str,
        access_key: str,
        secret_key: str,
        api_url: str,
        redirect_url: str,
        ipn_url: str,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self._partner_code = partner_code
        self._access_key = access_key
        self._secret_key = secret_key
        self._api_url = api_url
        self._redirect_url = redirect_url
        self._ipn_url = ipn_url
        self._http = http_client or httpx.Client(timeout=timeout)

    @staticmethod
    def encode_extra_data(order_id: UUID) -> str:
        return base64.b64encode(json.dumps({"order_id": str(order_id)}).encode()).decode()

    @staticmethod
    def decode_extra_data(extra_data: str) -> Optional[str]:
        try:
            return json.loads(base64.b64decode(extra_data)).get("order_id")
        except (ValueError, TypeError, AttributeError):
            return None

    def ipn_signature(self, payload: Mapping[str, Any]) -> str:
        raw = "&".join(
            f"{key}={self._access_key if key == 'accessKey' else payload.get(key, '')}"
            for key in self._IPN_SIGNED_FIELDS
        )
        return _hmac_hex(self._secret_key, raw, hashlib.sha256)

    def charge_amount(self, total: Decimal) -> Decimal:
        # MoMo only accepts whole VND.
        return total.quantize(WHOLE_UNITS, rounding=ROUND_HALF_UP)

    def initiate(self, request: PaymentRequest) -> PaymentInitiation:
        # MoMo rejects a reused orderId, so every attempt gets its own suffix.
        momo_order_id = f"{request.order_id}-{int(time.time() * 1000)}"
        body = {
            "partnerCode": self._partner_code,
            "requestId": momo_order_id,
            "amount": int(self.charge_amount(request.amount)),
            "orderId": momo_order_id,
            "orderInfo": request.description,
            "redirectUrl": self._redirect_url,
            "ipnUrl": self._ipn_url,
            "extraData": self.encode_extra_data(request.order_id),
            "requestType": self.REQUEST_TYPE,
            "lang": "vi",
        }
        raw = (
            f"accessKey={self._access_key}&amount={body['amount']}"
            f"&extraData={body['extraData']}&ipnUrl={body['ipnUrl']}"
            f"&orderId={body['orderId']}&orderInfo={body['orderInfo']}"
            f"&partnerCode={body['partnerCode']}&redirectUrl={body['redirectUrl']}"
            f"&requestId={body['requestId']}&requestType={body['requestType']}"
        )
        body["signature"] = _hmac_hex(self._secret_key, raw, hashlib.sha256)

        try:
            response = self._http.post(self._api_url, json=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PaymentInitiationFailed(f"MoMo request failed: {exc}") from exc

        if data.get("resultCode") != 0 or not data.get("payUrl"):
            raise PaymentInitiationFailed(
                f"MoMo rejected the request: {data.get('message', 'unknown error')}"
            )
        return PaymentInitiation(
            pay_url=data["payUrl"], provider_reference=momo_order_id, raw=data
        )

    def parse_notification(self, payload: Mapping[str, Any]) -> PaymentNotification:
        received = str(payload.get("signature") or "")
        if not received or not hmac.compare_digest(self.ipn_signature(payload), received):
            raise SignatureVerificationFailed("MoMo signature mismatch.")

        order_id = self.decode_extra_data(str(payload.get("extraData") or ""))
        if not order_id:
            order_id = str(payload.get("orderId") or "")[:36]
        trans_id = payload.get("transId")
        return PaymentNotification(
            order_id=order_id,
            success=str(payload.get("resultCode")) == "0",
            amount=_parse_amount(payload.get("amount")),
            provider_transaction_id=str(trans_id) if trans_id not in (None, "") else None,
            raw=dict(payload),
        )

    def build_ack(self, outcome: ConfirmationOutcome):
        if outcome.accepted:
            return 204, None
        return 400, {"message": outcome.reason.value}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class PaymentStrategyRegistry:
    def __init__(self, strategies: Iterable[PaymentStrategy]) -> None:
        self._by_method: Dict[str, PaymentStrategy] = {
            str(strategy.method): strategy for strategy in strategies
        }

    def get(self, method: str) -> PaymentStrategy:
        strategy = self._by_method.get(str(method).upper())
        if strategy is None:
            raise UnsupportedPaymentMethod(f"Unsupported payment method: {method}.")
        return strategy

    def methods(self) -> list[str]:
        return sorted(self._by_method)


def build_default_registry(http_client: Optional[httpx.Client] = None) -> PaymentStrategyRegistry:
    return PaymentStrategyRegistry(
        [
            CashOnDeliveryStrategy(),
            VNPayStrategy(
                tmn_code=settings.VNPAY_TMN_CODE,
                hash_secret=settings.VNPAY_HASH_SECRET,
                pay_url=settings.VNPAY_URL,
                return_url=settings.VNPAY_RETURN_URL,
            ),
            MoMoStrategy(
                partner_code=settings.MOMO_PARTNER_CODE,
                access_key=settings.MOMO_ACCESS_KEY,
                secret_key=settings.MOMO_SECRET_KEY,
                api_url=settings.MOMO_API_URL,
                redirect_url=settings.MOMO_REDIRECT_URL,
                ipn_url=settings.MOMO_IPN_URL,
                http_client=http_client,
                timeout=settings.PAYMENT_HTTP_TIMEOUT_SECONDS,
            ),
        ]
    )
