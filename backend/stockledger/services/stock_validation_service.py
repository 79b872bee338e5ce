# Overview: Read-only stock availability checks for carts and pending orders.

"""
Stock validation is a point-in-time pre-check, not a reservation.

- Never writes, never locks; safe to call on every cart render.
- Results can be stale by the time a mutation runs. The guarantee against
  overselling is enforced by inventory_service at mutation time.
- A missing product or variant is reported as an invalid line
  (available_stock=0), never raised. So is a malformed line, which also
  carries an `error` message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from sqlalchemy.orm import Session

from ..models import Product, Variant
from ..validation import StockItem, ValidationError, coerce_stock_item, raw_item_ids


PRODUCT_NOT_FOUND = "Product not found"
VARIANT_NOT_FOUND = "Variant not found"
INVALID_ITEM = "Invalid item"


@dataclass
class StockValidationResult:
    product_id: int
    requested_quantity: int
    available_stock: int
    product_name: str
    variant_id: int | None = None
    variant_name: str | None = None
    # Set when the line itself is malformed (INVALID_INPUT)
    error: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.error is None and self.available_stock >= self.requested_quantity

    @property
    def display_name(self) -> str:
        if self.variant_name:
            return f"{self.product_name} ({self.variant_name})"
        return self.product_name

    def describe(self) -> str:
        """Per-line message, e.g. 'Mug (Blue): requested 10, available 3'."""
        return f"{self.display_name}: requested {self.requested_quantity}, available {self.available_stock}"

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "available_stock": self.available_stock,
            "requested_quantity": self.requested_quantity,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "product_name": self.product_name,
            "variant_name": self.variant_name,
            "error": self.error,
        }


@dataclass
class CartStockValidation:
    invalid_items: list[StockValidationResult] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.invalid_items

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "invalid_items": [
                {
                    "product_id": r.product_id,
                    "variant_id": r.variant_id,
                    "product_name": r.product_name,
                    "variant_name": r.variant_name,
                    "requested_quantity": r.requested_quantity,
                    "available_stock": r.available_stock,
                    "error": r.error,
                }
                for r in self.invalid_items
            ],
        }


def _invalid_line(raw: Any, exc: ValidationError) -> StockValidationResult:
    product_id, variant_id = raw_item_ids(raw)
    quantity = raw.get("quantity") if isinstance(raw, Mapping) else getattr(raw, "quantity", None)
    return StockValidationResult(
        product_id=product_id,
        variant_id=variant_id,
        requested_quantity=quantity if isinstance(quantity, int) else 0,
        available_stock=0,
        product_name=INVALID_ITEM,
        error=str(exc),
    )


def _validate_item(session: Session, item: StockItem) -> StockValidationResult:
    product = session.get(Product, item.product_id)
    if product is None:
        return StockValidationResult(
            product_id=item.product_id,
            variant_id=item.variant_id,
            requested_quantity=item.quantity,
            available_stock=0,
            product_name=PRODUCT_NOT_FOUND,
            variant_name=VARIANT_NOT_FOUND if item.variant_id is not None else None,
        )

    if item.variant_id is None:
        return StockValidationResult(
            product_id=item.product_id,
            requested_quantity=item.quantity,
            available_stock=product.stock,
            product_name=product.name,
        )

    variant = session.get(Variant, item.variant_id)
    if variant is None or variant.product_id != product.id:
        # Never fall back to product-level stock for an unknown variant
        return StockValidationResult(
            product_id=item.product_id,
            variant_id=item.variant_id,
            requested_quantity=item.quantity,
            available_stock=0,
            product_name=product.name,
            variant_name=VARIANT_NOT_FOUND,
        )

    return StockValidationResult(
        product_id=item.product_id,
        variant_id=item.variant_id,
        requested_quantity=item.quantity,
        available_stock=variant.stock,
        product_name=product.name,
        variant_name=variant.name,
    )


def validate_stock_availability(
    session: Session,
    items: Iterable[StockItem | Mapping[str, Any]],
) -> list[StockValidationResult]:
    """
    One result per input item, in input order.

    Items are checked independently: two lines for the same product are each
    compared against the full available stock. A malformed line (quantity
    not a positive integer, missing product_id) yields an invalid result
    carrying `error`; the other lines are still checked.
    """
    if items is None:
        raise ValidationError("items are required")

    results = []
    for raw in items:
        try:
            item = coerce_stock_item(raw)
        except ValidationError as exc:
            results.append(_invalid_line(raw, exc))
            continue
        results.append(_validate_item(session, item))
    return results


def validate_cart_stock(
    session: Session,
    items: Iterable[StockItem | Mapping[str, Any]],
) -> CartStockValidation:
    results = validate_stock_availability(session, items)
    return CartStockValidation(invalid_items=[r for r in results if not r.is_valid])


def format_stock_error_message(result: StockValidationResult) -> str:
    """Customer-facing message for one invalid line."""
    name = result.display_name
    if result.error is not None:
        return f"{name}: {result.error}."
    if result.available_stock == 0:
        return f'"{name}" is currently out of stock.'
    units = "unit" if result.available_stock == 1 else "units"
    return (
        f'Only {result.available_stock} {units} of "{name}" available. '
        f"You requested {result.requested_quantity}."
    )
