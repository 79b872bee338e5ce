"""
Domain errors for stock and order operations.

These are raised inside a unit of work to force a rollback and are turned
into result objects (success=False, error, error_code) at the public service
boundary. They never escape a public service function.
"""
from __future__ import annotations


NOT_FOUND = "NOT_FOUND"
INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
INVALID_TRANSITION = "INVALID_TRANSITION"
INVALID_INPUT = "INVALID_INPUT"
STORE_FAILURE = "STORE_FAILURE"


class StockError(Exception):
    """Base class for stock domain errors."""
    code = "STOCK_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class StockNotFoundError(StockError):
    """Referenced product or variant does not exist."""
    code = NOT_FOUND


class InsufficientStockError(StockError):
    """A decrease asked for more units than are on hand."""
    code = INSUFFICIENT_STOCK

    def __init__(self, entity_label: str, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for {entity_label}. Available: {available}, Requested: {requested}",
            details={
                "entity": entity_label,
                "available": available,
                "requested": requested,
            },
        )


class InvalidTransitionError(StockError):
    """Order status change not permitted from the current status."""
    code = INVALID_TRANSITION
