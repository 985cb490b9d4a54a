"""Order DRF serializers for API input/output.

The serializer operates at the Interface layer (API Views).
Business logic lives in the Service Layer, which receives
Pydantic DTOs from ``dtos.py``.
"""

from __future__ import annotations

from rest_framework import serializers

from modules.orders.constants import OrderStatus, PaymentMethod
from modules.orders.models import Order, OrderItem, OrderStatusHistory

# ---------------------------------------------------------------------------
# Input Serializers
# ---------------------------------------------------------------------------


class ShippingAddressSerializer(serializers.Serializer):
    recipient_name = serializers.CharField(max_length=200)
    phone = serializers.CharField(max_length=20)
    address_line = serializers.CharField(max_length=500)
    district_id = serializers.IntegerField(required=False, allow_null=True)
    ward_code = serializers.CharField(
        max_length=20, required=False, allow_null=True, allow_blank=True
    )


class PlaceOrderSerializer(serializers.Serializer):
    """Validates the order placement request payload."""

    cart_item_ids = serializers.ListField(
        child=serializers.UUIDField(), allow_empty=False
    )
    shipping_address = ShippingAddressSerializer()
    payment_method = serializers.ChoiceField(choices=PaymentMethod.choices)
    coupon_code = serializers.CharField(
        max_length=50, required=False, allow_blank=True, default=""
    )
    referral_code = serializers.CharField(
        max_length=32, required=False, allow_blank=True, default=""
    )
    notes = serializers.CharField(required=False, default="", allow_blank=True)


class StatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=OrderStatus.choices)
    notes = serializers.CharField(required=False, default="", allow_blank=True)


class CancelOrderSerializer(serializers.Serializer):
    reason = serializers.CharField(allow_blank=True, trim_whitespace=True)


class PlaceOrderResultSerializer(serializers.Serializer):
    order_id = serializers.UUIDField()
    order_number = serializers.CharField()
    total_amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    payment_url = serializers.CharField(allow_null=True)


# ---------------------------------------------------------------------------
# Output Serializers (Read)
# ---------------------------------------------------------------------------


class OrderItemSerializer(serializers.ModelSerializer):
    """Read serializer for order items (purchase-time snapshots)."""

    class Meta:
        model = OrderItem
        fields = [
            "id",
            "sku_id",
            "sku_code_snapshot",
            "product_name_snapshot",
            "image_url_snapshot",
            "quantity",
            "price_at_purchase",
            "subtotal",
        ]
        read_only_fields = fields


class StatusHistorySerializer(serializers.ModelSerializer):
    """Read serializer for order status history records."""

    class Meta:
        model = OrderStatusHistory
        fields = [
            "id",
            "old_status",
            "new_status",
            "notes",
            "created_at",
        ]
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    """Read serializer for orders with nested items and history."""

    items = OrderItemSerializer(many=True, read_only=True)
    status_history = StatusHistorySerializer(many=True, read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "tenant_id",
            "user_id",
            "status",
            "payment_status",
            "payment_method",
            "subtotal_amount",
            "discount_amount",
            "shipping_fee",
            "total_amount",
            "coupon_code",
            "shipping_address",
            "tracking_code",
            "cancellation_reason",
            "notes",
            "paid_at",
            "created_at",
            "updated_at",
            "items",
            "status_history",
        ]
        read_only_fields = fields


class OrderListSerializer(serializers.ModelSerializer):
    """Lightweight serializer for order list (no nested relations)."""

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "status",
            "payment_status",
            "payment_method",
            "total_amount",
            "created_at",
        ]
        read_only_fields = fields
