"""Cart access used by order placement."""

from __future__ import annotations

from typing import Iterable, List
from uuid import UUID

from django.core.exceptions import ValidationError

from modules.carts.models import CartItem


class CartDjangoRepository:
    def selected_lines(
        self, tenant_id: UUID, user_id: int, line_ids: Iterable[UUID]
    ) -> List[CartItem]:
        """Cart lines of the user's cart matching ``line_ids`` (with SKUs)."""
        ids = list(line_ids)
        if not ids:
            return []
        try:
            return list(
                CartItem.objects.select_related("sku")
                .filter(cart__tenant_id=tenant_id, cart__user_id=user_id, id__in=ids)
                .order_by("sku_id")
            )
        except (ValueError, ValidationError):
            return []

    def remove_lines(self, line_ids: Iterable[UUID]) -> int:
        deleted, _ = CartItem.objects.filter(id__in=list(line_ids)).delete()
        return deleted
