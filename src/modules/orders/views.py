"""Order API views.

Exposes the ``OrderOrchestrator`` via HTTP using DRF ViewSets.
Domain exceptions are caught and translated into appropriate
HTTP status codes; the view never swallows generic exceptions.

Every request is scoped to the tenant in ``X-Tenant-ID``.  Customers see
and cancel their own orders; staff users see every order of the tenant
and are the only ones allowed to move orders along the state machine.
"""

from __future__ import annotations

from uuid import UUID

import structlog
from django.db import OperationalError
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import status
from rest_framework.decorators import action
from rest_framework.filters import OrderingFilter, SearchFilter
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.throttling import BaseThrottle
from rest_framework.viewsets import GenericViewSet

from modules.core.pagination import StandardResultsSetPagination
from modules.inventory.exceptions import (
    InactiveSku,
    InsufficientStock,
    LedgerInvariantViolation,
    SkuNotFound,
)
from modules.orders.constants import OrderStatus
from modules.orders.dtos import PlaceOrderDTO, ShippingAddressDTO
from modules.orders.exceptions import (
    CancellationReasonRequired,
    CarrierCancelFailed,
    EmptyCart,
    InvalidStateTransition,
    OrderNotFound,
    PaymentNotRetryable,
    PaymentRequired,
)
from modules.orders.filters import OrderFilter
from modules.orders.models import Order
from modules.orders.repositories.django_repository import OrderDjangoRepository
from modules.orders.serializers import (
    CancelOrderSerializer,
    OrderListSerializer,
    OrderSerializer,
    PlaceOrderResultSerializer,
    PlaceOrderSerializer,
    StatusUpdateSerializer,
)
from modules.orders.services import build_order_orchestrator
from modules.payments.exceptions import PaymentInitiationFailed
from modules.promotions.exceptions import InvalidCoupon
from modules.tenants.exceptions import TenantNotFound
from modules.tenants.services import get_active_tenant

logger = structlog.get_logger(__name__)


def _detail(message: str, http_status: int) -> Response:
    return Response({"detail": message}, status=http_status)


def _client_ip(request: Request) -> str:
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR") or "127.0.0.1"


class OrderViewSet(GenericViewSet):
    """ViewSet for Order operations.

    Does **not** extend ``ModelViewSet``: all ORM access goes through
    the service/repository layer.
    """

    queryset = Order.objects.all()
    filterset_class = OrderFilter
    search_fields = ["order_number", "tracking_code"]
    ordering_fields = ["created_at", "total_amount", "status"]
    ordering = ["-created_at", "-id"]
    filter_backends = [DjangoFilterBackend, SearchFilter, OrderingFilter]

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._service = build_order_orchestrator()

    def get_throttles(self) -> list[BaseThrottle]:
        """Throttle scope per action."""
        throttle_scope: str | None
        if self.action == "create":
            throttle_scope = "order_placement"
        elif self.action in {"list", "retrieve"}:
            throttle_scope = "order_listing"
        else:
            throttle_scope = None
        self.throttle_scope = throttle_scope
        return super().get_throttles()

    # ------------------------------------------------------------------
    # Scoping
    # ------------------------------------------------------------------

    def get_queryset(self):
        filters = {"tenant_id": get_active_tenant(self.request.tenant_id).id}
        if not self.request.user.is_staff:
            filters["user_id"] = self.request.user.id
        return OrderDjangoRepository().list(filters)

    def _get_scoped_order(self, pk: str | None) -> Order:
        if pk is None:
            raise OrderNotFound("Order not found.")
        try:
            order_id = UUID(pk)
        except ValueError as exc:
            raise OrderNotFound("Order not found.") from exc
        if not self.get_queryset().filter(id=order_id).exists():
            raise OrderNotFound("Order not found.")
        return self._service.get_order(str(order_id))

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, request: Request) -> Response:
        """POST /api/v1/orders/

        Converts the selected cart lines into an order.  Supports
        idempotency via the ``Idempotency-Key`` header.
        """
        serializer = PlaceOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            tenant = get_active_tenant(request.tenant_id)
            dto = PlaceOrderDTO(
                tenant_id=tenant.id,
                user_id=request.user.id,
                cart_item_ids=data["cart_item_ids"],
                shipping_address=ShippingAddressDTO(**data["shipping_address"]),
                payment_method=data["payment_method"],
                coupon_code=data.get("coupon_code") or None,
                referral_code=data.get("referral_code") or None,
                notes=data.get("notes", ""),
                idempotency_key=request.headers.get("Idempotency-Key"),
                client_ip=_client_ip(request),
            )
            result = self._service.place_order(dto)
        except TenantNotFound as exc:
            return _detail(str(exc), status.HTTP_400_BAD_REQUEST)
        except (EmptyCart, InactiveSku, InvalidCoupon) as exc:
            return _detail(str(exc), status.HTTP_400_BAD_REQUEST)
        except (InsufficientStock, SkuNotFound, LedgerInvariantViolation) as exc:
            return _detail(str(exc), status.HTTP_409_CONFLICT)
        except OperationalError as exc:
            logger.error("order.placement_timed_out", error=str(exc))
            return _detail(
                "Order placement timed out. Please try again.",
                status.HTTP_503_SERVICE_UNAVAILABLE,
            )

        out = PlaceOrderResultSerializer(result.model_dump())
        return Response(out.data, status=status.HTTP_201_CREATED)

    # ------------------------------------------------------------------
    # List / Retrieve
    # ------------------------------------------------------------------

    def list(self, request: Request) -> Response:
        """GET /api/v1/orders/

        Filtering (status, payment status, date range, total range) is
        handled by ``OrderFilter``.  Results are paginated.
        """
        try:
            queryset = self.filter_queryset(self.get_queryset())
        except TenantNotFound as exc:
            return _detail(str(exc), status.HTTP_400_BAD_REQUEST)

        paginator = StandardResultsSetPagination()
        page = paginator.paginate_queryset(queryset, request)
        serializer = OrderListSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)

    def retrieve(self, request: Request, pk: str | None = None) -> Response:
        """GET /api/v1/orders/{pk}/"""
        try:
            order = self._get_scoped_order(pk)
        except TenantNotFound as exc:
            return _detail(str(exc), status.HTTP_400_BAD_REQUEST)
        except OrderNotFound:
            return _detail("Order not found.", status.HTTP_404_NOT_FOUND)
        return Response(OrderSerializer(order).data)

    # ------------------------------------------------------------------
    # Status Update
    # ------------------------------------------------------------------

    def partial_update(self, request: Request, pk: str | None = None) -> Response:
        """PATCH /api/v1/orders/{pk}/

        Moves the order along the state machine (staff only).
        Cancellations go through ``POST /orders/{id}/cancel/``.
        """
        if not request.user.is_staff:
            return _detail(
                "Only staff can change order status.", status.HTTP_403_FORBIDDEN
            )
        serializer = StatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        new_status = serializer.validated_data["status"]
        if new_status == OrderStatus.CANCELLED:
            return _detail(
                "Use the /cancel/ endpoint for cancellations.",
                status.HTTP_400_BAD_REQUEST,
            )

        try:
            order = self._get_scoped_order(pk)
            order = self._service.transition_order(
                order_id=order.id,
                new_status=new_status,
                notes=serializer.validated_data.get("notes", ""),
                actor_id=request.user.id,
            )
        except TenantNotFound as exc:
            return _detail(str(exc), status.HTTP_400_BAD_REQUEST)
        except OrderNotFound:
            return _detail("Order not found.", status.HTTP_404_NOT_FOUND)
        except (InvalidStateTransition, PaymentRequired) as exc:
            return _detail(str(exc), status.HTTP_400_BAD_REQUEST)

        return Response(OrderSerializer(order).data)

    # ------------------------------------------------------------------
    # Cancel (dedicated action)
    # ------------------------------------------------------------------

    @action(detail=True, methods=["post"])
    def cancel(self, request: Request, pk: str | None = None) -> Response:
        """POST /api/v1/orders/{pk}/cancel/

        Cancels an order and releases its stock.  A carrier refusal
        leaves the order unchanged and answers 502.
        """
        serializer = CancelOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            order = self._get_scoped_order(pk)
            order = self._service.cancel_order(
                order_id=order.id,
                reason=serializer.validated_data["reason"],
                actor_id=request.user.id,
            )
        except TenantNotFound as exc:
            return _detail(str(exc), status.HTTP_400_BAD_REQUEST)
        except OrderNotFound:
            return _detail("Order not found.", status.HTTP_404_NOT_FOUND)
        except (InvalidStateTransition, CancellationReasonRequired) as exc:
            return _detail(str(exc), status.HTTP_400_BAD_REQUEST)
        except CarrierCancelFailed as exc:
            return _detail(str(exc), status.HTTP_502_BAD_GATEWAY)

        return Response(OrderSerializer(order).data)

    # ------------------------------------------------------------------
    # Payment retry
    # ------------------------------------------------------------------

    @action(detail=True, methods=["post"])
    def pay(self, request: Request, pk: str | None = None) -> Response:
        """POST /api/v1/orders/{pk}/pay/

        Starts a new gateway payment for a pending order.
        """
        try:
            order = self._get_scoped_order(pk)
            pay_url = self._service.retry_payment(order.id, client_ip=_client_ip(request))
        except TenantNotFound as exc:
            return _detail(str(exc), status.HTTP_400_BAD_REQUEST)
        except OrderNotFound:
            return _detail("Order not found.", status.HTTP_404_NOT_FOUND)
        except PaymentNotRetryable as exc:
            return _detail(str(exc), status.HTTP_400_BAD_REQUEST)
        except PaymentInitiationFailed as exc:
            return _detail(str(exc), status.HTTP_502_BAD_GATEWAY)

        return Response({"payment_url": pay_url})
