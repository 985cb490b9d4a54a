"""Payment gateway webhooks and the manual confirmation endpoint.

Webhooks are unauthenticated: the gateway signature is the credential.
Each endpoint answers in the shape its gateway expects so that a processed
or duplicate notification stops the gateway's retries.
"""

from __future__ import annotations

import structlog
from rest_framework import serializers, status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.views import APIView

from modules.orders.constants import PaymentMethod
from modules.orders.exceptions import (
    InvalidStateTransition,
    OrderNotFound,
    PaymentRequired,
)
from modules.payments.services import PaymentConfirmationGateway

logger = structlog.get_logger(__name__)


class _GatewayWebhookView(APIView):
    """Base for gateway notification endpoints."""

    authentication_classes: list = []
    permission_classes = [AllowAny]
    throttle_scope = "payment_webhook"
    payment_method: str = ""

    def acknowledge(self, payload) -> Response:
        gateway = PaymentConfirmationGateway()
        outcome = gateway.confirm(self.payment_method, payload)
        http_status, body = gateway.registry.get(self.payment_method).build_ack(outcome)
        logger.info(
            "payment.webhook_handled",
            payment_method=self.payment_method,
            accepted=outcome.accepted,
            reason=outcome.reason.value,
            order_id=outcome.order_id,
        )
        return Response(body, status=http_status)


class VNPayIPNView(_GatewayWebhookView):
    """GET /api/v1/payments/vnpay/ipn/

    VNPay sends the signed result as query parameters and expects
    ``{"RspCode", "Message"}`` back with HTTP 200.
    """

    payment_method = PaymentMethod.VNPAY

    def get(self, request: Request) -> Response:
        return self.acknowledge(request.query_params.dict())


class MoMoIPNView(_GatewayWebhookView):
    """POST /api/v1/payments/momo/ipn/

    MoMo posts a signed JSON body and expects 204 once it is accepted.
    """

    payment_method = PaymentMethod.MOMO

    def post(self, request: Request) -> Response:
        payload = request.data if isinstance(request.data, dict) else {}
        return self.acknowledge(payload)


class ManualConfirmationSerializer(serializers.Serializer):
    order_id = serializers.UUIDField()
    success = serializers.BooleanField()
    provider_transaction_id = serializers.CharField(
        max_length=100, required=False, allow_blank=True, default=""
    )


@api_view(["POST"])
@permission_classes([IsAdminUser])
def confirm_manually(request: Request) -> Response:
    """POST /api/v1/payments/confirm/

    Operator entry point for payments settled outside the gateways.
    """
    serializer = ManualConfirmationSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    try:
        outcome = PaymentConfirmationGateway().confirm_manually(
            data["order_id"],
            success=data["success"],
            provider_transaction_id=data["provider_transaction_id"] or None,
            actor_id=request.user.id,
        )
    except OrderNotFound:
        return Response({"detail": "Order not found."}, status=status.HTTP_404_NOT_FOUND)
    except (InvalidStateTransition, PaymentRequired) as exc:
        return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

    return Response(
        {
            "accepted": outcome.accepted,
            "duplicate": outcome.duplicate,
            "reason": outcome.reason.value,
        },
        status=status.HTTP_200_OK if outcome.accepted else status.HTTP_400_BAD_REQUEST,
    )
