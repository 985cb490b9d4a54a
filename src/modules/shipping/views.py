"""Carrier status webhook.

The carrier authenticates with a shared token in ``X-Shipping-Token``.
Known carrier statuses are mapped onto order transitions; anything the
state machine rejects (out-of-order or repeated callbacks) is acknowledged
without changes so the carrier stops retrying.
"""

from __future__ import annotations

import hmac

import structlog
from django.conf import settings
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.views import APIView

from modules.orders.constants import OrderStatus
from modules.orders.exceptions import InvalidStateTransition, OrderNotFound, PaymentRequired
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.services import build_order_orchestrator

logger = structlog.get_logger(__name__)

CARRIER_STATUS_MAP = {
    "picked": OrderStatus.SHIPPED,
    "delivering": OrderStatus.SHIPPED,
    "delivered": OrderStatus.DELIVERED,
    "returned": OrderStatus.RETURNED,
}


class CarrierWebhookView(APIView):
    """POST /api/v1/shipping/webhook/"""

    authentication_classes: list = []
    permission_classes = [AllowAny]
    throttle_scope = "payment_webhook"

    def post(self, request: Request) -> Response:
        token = request.headers.get("X-Shipping-Token", "")
        expected = settings.SHIPPING_WEBHOOK_TOKEN
        if not expected or not hmac.compare_digest(token, expected):
            logger.warning("shipping.webhook_rejected")
            return Response({"detail": "Invalid token."}, status=status.HTTP_403_FORBIDDEN)

        data = request.data if isinstance(request.data, dict) else {}
        tracking_code = str(data.get("OrderCode") or "")
        carrier_status = str(data.get("Status") or "").lower()
        log = logger.bind(tracking_code=tracking_code, carrier_status=carrier_status)

        target = CARRIER_STATUS_MAP.get(carrier_status)
        if target is None:
            log.info("shipping.webhook_ignored")
            return Response({"handled": False})

        order = OrderDjangoRepository().get_by_tracking_code(tracking_code)
        if order is None:
            log.warning("shipping.webhook_unknown_order")
            return Response({"detail": "Order not found."}, status=status.HTTP_404_NOT_FOUND)
        if order.status == target:
            return Response({"handled": False})

        try:
            build_order_orchestrator().transition_order(
                order.id, target, notes=f"Carrier status: {carrier_status}"
            )
        except (InvalidStateTransition, PaymentRequired) as exc:
            log.warning("shipping.webhook_transition_rejected", error=str(exc))
            return Response({"handled": False})
        except OrderNotFound:
            return Response({"detail": "Order not found."}, status=status.HTTP_404_NOT_FOUND)

        log.info("shipping.webhook_applied", order_id=str(order.id), new_status=target)
        return Response({"handled": True})
