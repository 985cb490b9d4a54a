"""Event handlers for the shipping module."""

from __future__ import annotations

from decimal import Decimal
from typing import Callable, Optional

import structlog
from django.db import transaction
from django.utils import timezone

from modules.orders.constants import OrderStatus
from modules.orders.events import OrderStatusChanged
from modules.orders.models import Order
from modules.shipping.clients import IShippingClient, ShipmentRequest, get_shipping_client
from shared.domain.bus import IEventHandler

logger = structlog.get_logger(__name__)


class ShipmentCreationHandler(IEventHandler[OrderStatusChanged]):
    """Books the carrier shipment once an order enters PROCESSING.

    Carrier errors propagate so the outbox retries the event.  An order
    that already has a tracking code is left alone.
    """

    def __init__(
        self, client_factory: Callable[[], IShippingClient] = get_shipping_client
    ) -> None:
        self._client_factory = client_factory

    def handle(self, event: OrderStatusChanged) -> None:
        if event.new_status != OrderStatus.PROCESSING:
            return
        log = logger.bind(order_id=str(event.aggregate_id))

        with transaction.atomic():
            # Locked until the tracking code is written.
            order: Optional[Order] = (
                Order.objects.select_for_update(of=("self",))
                .prefetch_related("items")
                .filter(id=event.aggregate_id)
                .first()
            )
            if order is None or order.tracking_code:
                log.info("shipping.shipment_skipped", reason="missing_or_booked")
                return
            if order.status != OrderStatus.PROCESSING:
                log.info(
                    "shipping.shipment_skipped", reason="not_processing", status=order.status
                )
                return
            self._book(order, log)

    def _book(self, order: Order, log) -> None:
        address = order.shipping_address or {}
        if not (address.get("district_id") and address.get("ward_code")):
            log.info("shipping.shipment_skipped", reason="unquotable_address")
            return

        cod_amount = order.total_amount if order.is_cod and not order.is_paid else Decimal("0.00")
        shipment = self._client_factory().create_shipment(
            ShipmentRequest(
                order_number=order.order_number,
                recipient_name=address.get("recipient_name", ""),
                recipient_phone=address.get("phone", ""),
                address_line=address.get("address_line", ""),
                district_id=int(address["district_id"]),
                ward_code=str(address["ward_code"]),
                cod_amount=cod_amount,
                item_count=sum(item.quantity for item in order.items.all()),
                note=order.notes,
            )
        )
        if shipment is None:
            return

        Order.objects.filter(id=order.id, tracking_code="").update(
            tracking_code=shipment.tracking_code, updated_at=timezone.now()
        )
        log.info("shipping.shipment_created", tracking_code=shipment.tracking_code)


shipment_creation_handler = ShipmentCreationHandler()
