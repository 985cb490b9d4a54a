"""Order domain constants.

Status choices and the legal transitions of the order state machine.
"""

from django.db import models


class OrderStatus(models.TextChoices):
    PENDING = "PENDING", "Pending"
    PROCESSING = "PROCESSING", "Processing"
    SHIPPED = "SHIPPED", "Shipped"
    DELIVERED = "DELIVERED", "Delivered"
    COMPLETED = "COMPLETED", "Completed"
    CANCELLED = "CANCELLED", "Cancelled"
    RETURNED = "RETURNED", "Returned"


class PaymentStatus(models.TextChoices):
    PENDING = "PENDING", "Pending"
    PAID = "PAID", "Paid"
    FAILED = "FAILED", "Failed"


class PaymentMethod(models.TextChoices):
    COD = "COD", "Cash on delivery"
    VNPAY = "VNPAY", "VNPay"
    MOMO = "MOMO", "MoMo"


VALID_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.RETURNED},
    OrderStatus.DELIVERED: {OrderStatus.RETURNED, OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.RETURNED: set(),
}

TERMINAL_STATES: set[str] = {
    OrderStatus.CANCELLED,
    OrderStatus.COMPLETED,
    OrderStatus.RETURNED,
}

TERMINAL_PAYMENT_STATES: set[str] = {PaymentStatus.PAID, PaymentStatus.FAILED}

ORDER_NUMBER_MAX_RETRIES = 5

PAYMENT_TIMEOUT_REASON = "Payment timeout"
PAYMENT_FAILED_REASON = "Payment failed"
