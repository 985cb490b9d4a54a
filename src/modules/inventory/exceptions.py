"""Inventory domain exceptions.

Raised by ``StockLedger``.  Every one of them aborts the enclosing
transaction; callers never catch them to continue a partial operation.
"""

from __future__ import annotations


class SkuNotFound(Exception):
    """The SKU does not exist."""


class InactiveSku(Exception):
    """The SKU is not for sale."""


class InsufficientStock(Exception):
    """Not enough available units to reserve.

    ``available`` is ``stock - reserved`` at the moment the row was locked.
    """

    def __init__(self, sku_code: str, requested: int, available: int) -> None:
        self.sku_code = sku_code
        self.requested = requested
        self.available = available
        super().__init__(
            f"SKU {sku_code}: requested {requested}, available {available}."
        )


class LedgerInvariantViolation(Exception):
    """A ledger operation would break ``0 <= reserved <= stock``."""
