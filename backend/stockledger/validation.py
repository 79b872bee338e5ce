from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from stockledger.models.orders import VALID_ORDER_STATUSES
from stockledger.models.stock import VALID_STOCK_CHANGE_TYPES


# Largest single stock movement accepted; keeps counts well inside 32-bit columns
MAX_STOCK_QUANTITY = 1_000_000

# Change types an admin may record by hand; PURCHASE/REFUND come from orders only
ADMIN_ADJUSTMENT_TYPES = {"ADJUSTMENT", "RESTOCK", "DAMAGE"}


class ValidationError(ValueError):
    """Malformed input (bad quantity, unknown type or status)."""


@dataclass(frozen=True)
class StockItem:
    """One (product, variant?, quantity) line used by validation and batch processing."""
    product_id: int
    quantity: int
    variant_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
        }


def coerce_int(name: str, value: Any) -> int:
    """
    Strict integer coercion.

    Accepts ints and plain digit strings; rejects bools, floats, decimals
    and scientific notation.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal")
    raise ValidationError(f"{name} must be an integer")


def coerce_quantity(value: Any, name: str = "quantity") -> int:
    quantity = coerce_int(name, value)
    if quantity <= 0:
        raise ValidationError(f"{name} must be > 0")
    if quantity > MAX_STOCK_QUANTITY:
        raise ValidationError(f"{name} cannot exceed {MAX_STOCK_QUANTITY}")
    return quantity


def coerce_stock_item(raw: StockItem | Mapping[str, Any]) -> StockItem:
    if isinstance(raw, StockItem):
        return StockItem(
            product_id=coerce_int("product_id", raw.product_id),
            variant_id=coerce_int("variant_id", raw.variant_id) if raw.variant_id is not None else None,
            quantity=coerce_quantity(raw.quantity),
        )
    if not isinstance(raw, Mapping):
        raise ValidationError("item must be a mapping with product_id and quantity")

    missing = [f for f in ("product_id", "quantity") if raw.get(f) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    variant_id = raw.get("variant_id")
    return StockItem(
        product_id=coerce_int("product_id", raw["product_id"]),
        variant_id=coerce_int("variant_id", variant_id) if variant_id not in (None, "") else None,
        quantity=coerce_quantity(raw["quantity"]),
    )


def raw_item_ids(raw: Any) -> tuple[Any, Any]:
    """(product_id, variant_id) as given, for reporting a line that failed coercion."""
    if isinstance(raw, StockItem):
        return raw.product_id, raw.variant_id
    if isinstance(raw, Mapping):
        return raw.get("product_id"), raw.get("variant_id")
    return None, None


def coerce_stock_items(items: Iterable[StockItem | Mapping[str, Any]]) -> list[StockItem]:
    if items is None:
        raise ValidationError("items are required")
    return [coerce_stock_item(raw) for raw in items]


def validate_change_type(change_type: str) -> None:
    if change_type not in VALID_STOCK_CHANGE_TYPES:
        raise ValidationError(
            f"Invalid stock change type '{change_type}'. "
            f"Must be one of: {', '.join(sorted(VALID_STOCK_CHANGE_TYPES))}"
        )


def validate_order_status(status: str) -> None:
    if status not in VALID_ORDER_STATUSES:
        raise ValidationError(
            f"Invalid order status '{status}'. Must be one of: {', '.join(sorted(VALID_ORDER_STATUSES))}"
        )


def validate_reason(reason: Any) -> str:
    if reason is None or str(reason).strip() == "":
        raise ValidationError("reason is required")
    reason = str(reason).strip()
    if len(reason) > 255:
        raise ValidationError("reason exceeds max length 255")
    return reason


def enforce_rules_stock_adjust(adjustment: Any, change_type: str) -> int:
    """Admin adjustment: signed, non-zero, and restricted to manual change types."""
    if change_type not in ADMIN_ADJUSTMENT_TYPES:
        raise ValidationError(
            f"Invalid type. Must be {', '.join(sorted(ADMIN_ADJUSTMENT_TYPES))}"
        )
    amount = coerce_int("adjustment", adjustment)
    if amount == 0:
        raise ValidationError("Adjustment amount cannot be zero")
    if abs(amount) > MAX_STOCK_QUANTITY:
        raise ValidationError(f"adjustment cannot exceed {MAX_STOCK_QUANTITY}")
    return amount
