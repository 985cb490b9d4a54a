"""Order DTOs for the Service Layer.

Framework-agnostic data transfer objects using Pydantic v2.
These are the contracts between the API layer (DRF Serializers)
and the Service layer.  DTOs are immutable (``frozen=True``).

- ``ShippingAddressDTO``: delivery target, snapshotted on the order.
- ``PlaceOrderDTO``: input for cart-to-order conversion.
- ``PlaceOrderResult``: what placement returns to the client.
- ``OrderItemOutputDTO`` / ``StatusHistoryDTO`` / ``OrderOutputDTO``: output.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator

from modules.orders.constants import PaymentMethod

if TYPE_CHECKING:
    from modules.orders.models import Order, OrderStatusHistory


# ---------------------------------------------------------------------------
# Input DTOs
# ---------------------------------------------------------------------------


class ShippingAddressDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    recipient_name: str
    phone: str
    address_line: str
    district_id: Optional[int] = None
    ward_code: Optional[str] = None

    @property
    def quotable(self) -> bool:
        return bool(self.district_id and self.ward_code)


class PlaceOrderDTO(BaseModel):
    """Immutable DTO for order placement.

    ``cart_item_ids`` selects the subset of the user's cart being bought.
    Prices always come from the SKUs, never from the client.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: UUID
    user_id: int
    cart_item_ids: List[UUID]
    shipping_address: ShippingAddressDTO
    payment_method: PaymentMethod
    coupon_code: Optional[str] = None
    referral_code: Optional[str] = None
    notes: Optional[str] = ""
    idempotency_key: Optional[str] = None
    client_ip: str = "127.0.0.1"

    @field_validator("cart_item_ids")
    @classmethod
    def cart_items_must_not_be_empty(cls, v: List[UUID]) -> List[UUID]:
        if not v:
            raise ValueError("Select at least one cart item.")
        if len(v) != len(set(v)):
            raise ValueError("Duplicate cart items are not allowed.")
        return v


class PlaceOrderResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: UUID
    order_number: str
    total_amount: Decimal
    payment_url: Optional[str] = None


# ---------------------------------------------------------------------------
# Output DTOs
# ---------------------------------------------------------------------------


class OrderItemOutputDTO(BaseModel):
    """Immutable DTO for order item API responses."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    sku_id: UUID
    sku_code: str
    product_name: str
    image_url: str
    quantity: int
    price_at_purchase: Decimal
    subtotal: Decimal


class StatusHistoryDTO(BaseModel):
    """Immutable DTO for order status history API responses."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    old_status: Optional[str]
    new_status: str
    notes: str
    created_at: datetime

    @classmethod
    def from_entity(cls, history: OrderStatusHistory) -> StatusHistoryDTO:
        return cls(
            id=history.id,
            old_status=history.old_status,
            new_status=history.new_status,
            notes=history.notes,
            created_at=history.created_at,
        )


class OrderOutputDTO(BaseModel):
    """Immutable DTO for order API responses."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    order_number: str
    tenant_id: UUID
    user_id: int
    status: str
    payment_status: str
    payment_method: str
    subtotal_amount: Decimal
    discount_amount: Decimal
    shipping_fee: Decimal
    total_amount: Decimal
    coupon_code: str
    tracking_code: str
    cancellation_reason: str
    shipping_address: dict
    notes: str
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemOutputDTO]
    history: List[StatusHistoryDTO]

    @classmethod
    def from_entity(cls, order: Order) -> OrderOutputDTO:
        """Build an output DTO from an Order model instance.

        Assumes ``items`` and ``status_history`` are prefetched.
        """
        items = [
            OrderItemOutputDTO(
                id=item.id,
                sku_id=item.sku_id,
                sku_code=item.sku_code_snapshot,
                product_name=item.product_name_snapshot,
                image_url=item.image_url_snapshot,
                quantity=item.quantity,
                price_at_purchase=item.price_at_purchase,
                subtotal=item.subtotal,
            )
            for item in order.items.all()
        ]
        history = [StatusHistoryDTO.from_entity(h) for h in order.status_history.all()]
        return cls(
            id=order.id,
            order_number=order.order_number,
            tenant_id=order.tenant_id,
            user_id=order.user_id,
            status=order.status,
            payment_status=order.payment_status,
            payment_method=order.payment_method,
            subtotal_amount=order.subtotal_amount,
            discount_amount=order.discount_amount,
            shipping_fee=order.shipping_fee,
            total_amount=order.total_amount,
            coupon_code=order.coupon_code,
            tracking_code=order.tracking_code,
            cancellation_reason=order.cancellation_reason,
            shipping_address=order.shipping_address,
            notes=order.notes,
            created_at=order.created_at,
            updated_at=order.updated_at,
            items=items,
            history=history,
        )
