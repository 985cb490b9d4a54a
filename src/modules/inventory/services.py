"""Stock ledger (use cases over the per-SKU counters).

Business rules enforced:
- ``reserve`` never grants more than ``stock - reserved`` (row lock on the SKU).
- ``finalize`` consumes a reservation: ``stock`` and ``reserved`` both drop.
- ``release`` branches on the caller-supplied finalize state: an unfinalized
  reservation only gives back ``reserved``; a finalized one restocks ``stock``.
- Every operation carrying an ``operation_id`` is applied at most once per SKU.
- ``0 <= reserved <= stock`` is asserted after every mutation.
- One ``InventoryLogEntry`` is appended per applied mutation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional
from uuid import UUID

import structlog
from django.core.exceptions import ValidationError
from django.db import transaction

from modules.inventory.constants import LedgerOperation
from modules.inventory.exceptions import (
    InsufficientStock,
    LedgerInvariantViolation,
    SkuNotFound,
)
from modules.inventory.models import InventoryLogEntry, Sku

logger = structlog.get_logger(__name__)

_LOG_EVENTS = {
    LedgerOperation.RESERVE: "stock.reserved",
    LedgerOperation.FINALIZE: "stock.finalized",
    LedgerOperation.RELEASE: "stock.released",
    LedgerOperation.RESTOCK: "stock.restocked",
}


@dataclass(frozen=True)
class LedgerLine:
    sku_id: UUID
    quantity: int


def operation_key(prefix: str, sku_id: UUID) -> str:
    """Build the per-SKU operation id, e.g. ``order:<id>:reserve:<sku>``."""
    return f"{prefix}:{sku_id}"


class StockLedger:
    """Atomic reserve / finalize / release over ``Sku`` counters.

    Each public method runs in its own ``transaction.atomic`` block (a
    savepoint when nested in the caller's unit of work), so a failure rolls
    back the counter update and its log entry together.
    """

    # ------------------------------------------------------------------
    # Single-SKU operations
    # ------------------------------------------------------------------

    @transaction.atomic
    def reserve(
        self,
        sku_id: UUID,
        quantity: int,
        *,
        operation_id: Optional[str] = None,
        reason: str = "",
        actor_id: Optional[int] = None,
    ) -> InventoryLogEntry:
        """Hold ``quantity`` units for an unpaid order.

        Raises:
            SkuNotFound: the SKU does not exist.
            InsufficientStock: ``quantity`` exceeds ``stock - reserved``.
        """
        _check_quantity(quantity)
        sku = self._lock(sku_id)
        replayed = self._replayed(sku, operation_id)
        if replayed:
            return replayed

        if quantity > sku.available:
            logger.info(
                "stock.insufficient",
                sku_id=str(sku.id),
                sku_code=sku.sku_code,
                requested=quantity,
                available=sku.available,
            )
            raise InsufficientStock(sku.sku_code, quantity, sku.available)

        return self._apply(
            sku,
            LedgerOperation.RESERVE,
            stock_delta=0,
            reserved_delta=quantity,
            change_amount=-quantity,
            operation_id=operation_id,
            reason=reason,
            actor_id=actor_id,
        )

    @transaction.atomic
    def finalize(
        self,
        sku_id: UUID,
        quantity: int,
        *,
        operation_id: Optional[str] = None,
        reason: str = "",
        actor_id: Optional[int] = None,
    ) -> InventoryLogEntry:
        """Turn a reservation into a permanent deduction (payment confirmed)."""
        _check_quantity(quantity)
        sku = self._lock(sku_id)
        replayed = self._replayed(sku, operation_id)
        if replayed:
            return replayed

        if sku.reserved < quantity:
            raise LedgerInvariantViolation(
                f"SKU {sku.sku_code}: cannot finalize {quantity}, "
                f"only {sku.reserved} reserved."
            )

        return self._apply(
            sku,
            LedgerOperation.FINALIZE,
            stock_delta=-quantity,
            reserved_delta=-quantity,
            change_amount=-quantity,
            operation_id=operation_id,
            reason=reason,
            actor_id=actor_id,
        )

    @transaction.atomic
    def release(
        self,
        sku_id: UUID,
        quantity: int,
        *,
        was_finalized: bool,
        operation_id: Optional[str] = None,
        reason: str = "",
        actor_id: Optional[int] = None,
    ) -> InventoryLogEntry:
        """Give units back after a cancellation or a return.

        ``was_finalized`` must come from the order's own bookkeeping: ``False``
        returns reserved units to the available pool, ``True`` restocks units
        that had already left physical inventory.
        """
        _check_quantity(quantity)
        sku = self._lock(sku_id)
        replayed = self._replayed(sku, operation_id)
        if replayed:
            return replayed

        if was_finalized:
            return self._apply(
                sku,
                LedgerOperation.RELEASE,
                stock_delta=quantity,
                reserved_delta=0,
                change_amount=quantity,
                operation_id=operation_id,
                reason=reason,
                actor_id=actor_id,
            )

        if sku.reserved < quantity:
            raise LedgerInvariantViolation(
                f"SKU {sku.sku_code}: cannot release {quantity}, "
                f"only {sku.reserved} reserved."
            )
        return self._apply(
            sku,
            LedgerOperation.RELEASE,
            stock_delta=0,
            reserved_delta=-quantity,
            change_amount=quantity,
            operation_id=operation_id,
            reason=reason,
            actor_id=actor_id,
        )

    @transaction.atomic
    def restock(
        self,
        sku_id: UUID,
        quantity: int,
        *,
        operation_id: Optional[str] = None,
        reason: str = "",
        actor_id: Optional[int] = None,
    ) -> InventoryLogEntry:
        """Add newly received units to physical stock."""
        _check_quantity(quantity)
        sku = self._lock(sku_id)
        replayed = self._replayed(sku, operation_id)
        if replayed:
            return replayed
        return self._apply(
            sku,
            LedgerOperation.RESTOCK,
            stock_delta=quantity,
            reserved_delta=0,
            change_amount=quantity,
            operation_id=operation_id,
            reason=reason,
            actor_id=actor_id,
        )

    # ------------------------------------------------------------------
    # Multi-line helpers (sorted by SKU id to avoid deadlocks)
    # ------------------------------------------------------------------

    @transaction.atomic
    def reserve_lines(
        self,
        lines: Iterable[LedgerLine],
        *,
        operation_prefix: str,
        reason: str = "",
        actor_id: Optional[int] = None,
    ) -> List[InventoryLogEntry]:
        """Reserve every line or none of them."""
        return [
            self.reserve(
                line.sku_id,
                line.quantity,
                operation_id=operation_key(operation_prefix, line.sku_id),
                reason=reason,
                actor_id=actor_id,
            )
            for line in _sorted(lines)
        ]

    @transaction.atomic
    def finalize_lines(
        self,
        lines: Iterable[LedgerLine],
        *,
        operation_prefix: str,
        reason: str = "",
        actor_id: Optional[int] = None,
    ) -> List[InventoryLogEntry]:
        return [
            self.finalize(
                line.sku_id,
                line.quantity,
                operation_id=operation_key(operation_prefix, line.sku_id),
                reason=reason,
                actor_id=actor_id,
            )
            for line in _sorted(lines)
        ]

    @transaction.atomic
    def release_lines(
        self,
        lines: Iterable[LedgerLine],
        *,
        was_finalized: bool,
        operation_prefix: str,
        reason: str = "",
        actor_id: Optional[int] = None,
    ) -> List[InventoryLogEntry]:
        return [
            self.release(
                line.sku_id,
                line.quantity,
                was_finalized=was_finalized,
                operation_id=operation_key(operation_prefix, line.sku_id),
                reason=reason,
                actor_id=actor_id,
            )
            for line in _sorted(lines)
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock(self, sku_id: UUID) -> Sku:
        try:
            sku = Sku.objects.select_for_update().filter(id=sku_id).first()
        except (ValueError, ValidationError):
            sku = None
        if sku is None:
            raise SkuNotFound(f"SKU {sku_id} not found.")
        return sku

    def _replayed(
        self, sku: Sku, operation_id: Optional[str]
    ) -> Optional[InventoryLogEntry]:
        if not operation_id:
            return None
        entry = InventoryLogEntry.objects.filter(
            sku=sku, operation_id=operation_id
        ).first()
        if entry:
            logger.info(
                "stock.operation_replayed",
                sku_id=str(sku.id),
                operation_id=operation_id,
                operation=entry.operation,
            )
        return entry

    def _apply(
        self,
        sku: Sku,
        operation: LedgerOperation,
        *,
        stock_delta: int,
        reserved_delta: int,
        change_amount: int,
        operation_id: Optional[str],
        reason: str,
        actor_id: Optional[int],
    ) -> InventoryLogEntry:
        previous_stock, previous_reserved = sku.stock, sku.reserved
        new_stock = previous_stock + stock_delta
        new_reserved = previous_reserved + reserved_delta

        if not 0 <= new_reserved <= new_stock:
            logger.error(
                "stock.invariant_violation",
                sku_id=str(sku.id),
                operation=operation,
                stock=new_stock,
                reserved=new_reserved,
            )
            raise LedgerInvariantViolation(
                f"SKU {sku.sku_code}: {operation} would leave "
                f"stock={new_stock}, reserved={new_reserved}."
            )

        sku.stock, sku.reserved = new_stock, new_reserved
        sku.save(update_fields=["stock", "reserved", "updated_at"])

        entry = InventoryLogEntry.objects.create(
            sku=sku,
            tenant_id=sku.tenant_id,
            operation=operation,
            change_amount=change_amount,
            previous_stock=previous_stock,
            new_stock=new_stock,
            previous_reserved=previous_reserved,
            new_reserved=new_reserved,
            reason=reason[:255],
            actor_id=actor_id,
            operation_id=operation_id,
        )

        logger.info(
            _LOG_EVENTS[operation],
            sku_id=str(sku.id),
            sku_code=sku.sku_code,
            change_amount=change_amount,
            stock=new_stock,
            reserved=new_reserved,
            operation_id=operation_id,
        )
        return entry


def _check_quantity(quantity: int) -> None:
    if quantity < 1:
        raise ValueError(f"Quantity must be at least 1, got {quantity}.")


def _sorted(lines: Iterable[LedgerLine]) -> List[LedgerLine]:
    return sorted(lines, key=lambda line: str(line.sku_id))
