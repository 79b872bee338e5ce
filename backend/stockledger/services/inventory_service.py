# Overview: Service-layer operations for inventory; atomic stock mutation with audit history.

# backend/stockledger/services/inventory_service.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import (
    INVALID_INPUT,
    STORE_FAILURE,
    InsufficientStockError,
    StockError,
)
from ..models.stock import STOCK_PURCHASE, STOCK_REFUND, StockChangeType
from ..validation import (
    StockItem,
    ValidationError,
    coerce_int,
    coerce_quantity,
    coerce_stock_item,
    enforce_rules_stock_adjust,
    raw_item_ids,
    validate_change_type,
    validate_reason,
)
from .concurrency import atomic
from .ledger_service import append_stock_history, load_stock_target
"""
Stock Mutation Invariants (authoritative)

Atomicity:
- Each increase/decrease is one DB transaction: locked re-read of the target,
  sufficiency check, stock write, StockHistory insert, commit.
- Any exception inside the transaction rolls back both writes; a stock change
  without its history row (or the reverse) is never observable.

Business invariants:
- Stock never goes negative. A decrease larger than the current stock fails
  with no ledger change and no history row.
- history.quantity is signed: negative for decreases, positive for increases.
- history.new_stock = history.previous_stock + history.quantity, and equals
  the stock value committed with it.

Error contract:
- Domain errors (not found, insufficient stock, bad input) and store errors
  are returned as StockChangeResult(success=False, ...), never raised.
- No retries here; a store failure is reported once, with the store's message.

Batch policy (process_order_stock_changes):
- Items run sequentially, each in its own transaction.
- No cross-item rollback: earlier successes stay committed, later items are
  still attempted. success is True only when every item succeeded.
- A malformed line is recorded as INVALID_INPUT and the rest still run.

Order batches (apply_order_stock_changes):
- Same per-line outcomes, but every line runs inside the caller's
  transaction, so the caller commits or rolls back the order as a whole.
"""

logger = logging.getLogger(__name__)


BatchDirection = Literal["PURCHASE", "REFUND"]
VALID_BATCH_DIRECTIONS = {STOCK_PURCHASE, STOCK_REFUND}

ROLLED_BACK_MESSAGE = "Not applied: the order's stock change was rolled back"


@dataclass(frozen=True)
class StockChangeOptions:
    """Metadata recorded with a stock change."""
    reason: str
    type: StockChangeType
    order_id: int | None = None
    user_id: int | None = None

    def __post_init__(self):
        validate_change_type(self.type)
        validate_reason(self.reason)


@dataclass
class StockChangeResult:
    success: bool
    new_stock: int | None = None
    error: str | None = None
    error_code: str | None = None
    history_id: int | None = None

    @classmethod
    def failure(cls, error: str, error_code: str) -> "StockChangeResult":
        return cls(success=False, error=error, error_code=error_code)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "new_stock": self.new_stock,
            "error": self.error,
            "error_code": self.error_code,
            "history_id": self.history_id,
        }


@dataclass
class ItemStockChange:
    product_id: int
    success: bool
    variant_id: int | None = None
    error: str | None = None
    error_code: str | None = None
    new_stock: int | None = None

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "success": self.success,
            "error": self.error,
            "error_code": self.error_code,
            "new_stock": self.new_stock,
        }


@dataclass
class BatchStockResult:
    results: list[ItemStockChange] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def failed(self) -> list[ItemStockChange]:
        return [r for r in self.results if not r.success]

    def mark_rolled_back(self) -> None:
        """After the enclosing transaction rolled back, no line is applied."""
        for r in self.results:
            if r.success:
                r.success = False
                r.new_stock = None
                r.error = ROLLED_BACK_MESSAGE

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class StockStatus:
    status: str
    label: str
    color: str
    can_purchase: bool

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "label": self.label,
            "color": self.color,
            "can_purchase": self.can_purchase,
        }


def _write_stock_change(
    session: Session,
    product_id: int,
    quantity: int,
    variant_id: int | None,
    options: StockChangeOptions,
    *,
    sign: int,
):
    """
    Locked re-read, sufficiency check, stock write and history row.

    Caller owns the transaction. Domain errors are raised before anything is
    written, so a caller may record them and keep going in the same transaction.
    Returns (target, previous_stock, history record).
    """
    # Re-read inside the transaction; never trust an earlier read
    target = load_stock_target(session, product_id, variant_id, lock=True)
    previous_stock = target.stock

    if sign < 0 and previous_stock < quantity:
        raise InsufficientStockError(target.label, previous_stock, quantity)

    new_stock = previous_stock + sign * quantity
    target.entity.stock = new_stock

    record = append_stock_history(
        session,
        product_id=product_id,
        variant_id=variant_id,
        change_type=options.type,
        quantity=sign * quantity,
        previous_stock=previous_stock,
        new_stock=new_stock,
        reason=options.reason,
        order_id=options.order_id,
        user_id=options.user_id,
    )
    return target, previous_stock, record


def _apply_stock_change(
    session: Session,
    product_id: Any,
    quantity: Any,
    variant_id: Any,
    options: StockChangeOptions,
    *,
    sign: int,
) -> StockChangeResult:
    """
    Shared body of reduce/increase.

    sign=-1 decreases, sign=+1 increases. Raising inside atomic() is the
    rollback trigger; every exception is turned into a result below.
    """
    try:
        product_id = coerce_int("product_id", product_id)
        variant_id = coerce_int("variant_id", variant_id) if variant_id is not None else None
        quantity = coerce_quantity(quantity)
    except ValidationError as exc:
        return StockChangeResult.failure(str(exc), INVALID_INPUT)

    try:
        with atomic(session):
            target, previous_stock, record = _write_stock_change(
                session, product_id, quantity, variant_id, options, sign=sign
            )
            history_id = record.id
            new_stock = record.new_stock
            label = target.label
    except StockError as exc:
        logger.warning(
            "Stock %s rejected for product=%s variant=%s qty=%s: %s",
            options.type, product_id, variant_id, quantity, exc,
        )
        return StockChangeResult.failure(str(exc), exc.code)
    except SQLAlchemyError as exc:
        logger.exception(
            "Stock %s failed in store for product=%s variant=%s qty=%s",
            options.type, product_id, variant_id, quantity,
        )
        return StockChangeResult.failure(str(exc), STORE_FAILURE)

    logger.info(
        "Stock %s on %s: %s -> %s (order=%s, history=%s)",
        options.type, label, previous_stock, new_stock, options.order_id, history_id,
    )
    return StockChangeResult(success=True, new_stock=new_stock, history_id=history_id)


def reduce_stock_with_history(
    session: Session,
    product_id: int,
    quantity: int,
    variant_id: int | None = None,
    options: StockChangeOptions | None = None,
) -> StockChangeResult:
    """
    Decrease a product's (or variant's) stock and append a history row, atomically.

    Fails without side effects when the target is missing or holds fewer
    than `quantity` units.
    """
    if options is None:
        options = StockChangeOptions(reason="Stock reduction", type=STOCK_PURCHASE)
    return _apply_stock_change(session, product_id, quantity, variant_id, options, sign=-1)


def increase_stock_with_history(
    session: Session,
    product_id: int,
    quantity: int,
    variant_id: int | None = None,
    options: StockChangeOptions | None = None,
) -> StockChangeResult:
    """Increase a product's (or variant's) stock and append a history row, atomically."""
    if options is None:
        options = StockChangeOptions(reason="Stock increase", type="RESTOCK")
    return _apply_stock_change(session, product_id, quantity, variant_id, options, sign=1)


def _invalid_line(raw: Any, exc: ValidationError) -> ItemStockChange:
    product_id, variant_id = raw_item_ids(raw)
    return ItemStockChange(
        product_id=product_id,
        variant_id=variant_id,
        success=False,
        error=str(exc),
        error_code=INVALID_INPUT,
    )


def _batch_options(order_id, direction, reason, user_id) -> StockChangeOptions:
    if direction not in VALID_BATCH_DIRECTIONS:
        raise ValidationError(f"direction must be PURCHASE or REFUND, got {direction!r}")
    return StockChangeOptions(reason=reason, type=direction, order_id=order_id, user_id=user_id)


def process_order_stock_changes(
    session: Session,
    order_id: int | None,
    items: Iterable[StockItem | Mapping[str, Any]],
    direction: BatchDirection,
    reason: str,
    *,
    user_id: int | None = None,
) -> BatchStockResult:
    """
    Apply one order's stock changes line by line.

    PURCHASE decreases each line's target, REFUND increases it. Each line is
    its own transaction and its outcome is recorded independently; a failed
    line does not undo earlier lines and does not stop later ones. Callers
    must treat success=False as "order stock is partially applied".
    """
    options = _batch_options(order_id, direction, reason, user_id)
    mutate = reduce_stock_with_history if direction == STOCK_PURCHASE else increase_stock_with_history
    if items is None:
        raise ValidationError("items are required")

    batch = BatchStockResult()
    for raw in items:
        try:
            item = coerce_stock_item(raw)
        except ValidationError as exc:
            batch.results.append(_invalid_line(raw, exc))
            continue

        result = mutate(session, item.product_id, item.quantity, item.variant_id, options)
        batch.results.append(
            ItemStockChange(
                product_id=item.product_id,
                variant_id=item.variant_id,
                success=result.success,
                error=result.error,
                error_code=result.error_code,
                new_stock=result.new_stock,
            )
        )

    if not batch.success:
        logger.error(
            "Order %s %s applied partially: %d of %d line(s) failed",
            order_id, direction, len(batch.failed), len(batch.results),
        )
    return batch


def apply_order_stock_changes(
    session: Session,
    order_id: int,
    items: Iterable[StockItem | Mapping[str, Any]],
    direction: BatchDirection,
    reason: str,
    *,
    user_id: int | None = None,
) -> BatchStockResult:
    """
    Apply every line of an order inside the caller's transaction.

    Per-line outcomes are recorded as in process_order_stock_changes. Nothing
    is committed here: the caller commits when the batch succeeded and rolls
    back otherwise (then calls BatchStockResult.mark_rolled_back). Store
    errors are raised, since the transaction can no longer be used.
    """
    options = _batch_options(order_id, direction, reason, user_id)
    sign = -1 if direction == STOCK_PURCHASE else 1

    batch = BatchStockResult()
    for raw in items:
        try:
            item = coerce_stock_item(raw)
        except ValidationError as exc:
            batch.results.append(_invalid_line(raw, exc))
            continue

        try:
            _, _, record = _write_stock_change(
                session, item.product_id, item.quantity, item.variant_id, options, sign=sign
            )
        except StockError as exc:
            logger.warning("Order %s %s line rejected: %s", order_id, direction, exc)
            batch.results.append(
                ItemStockChange(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    success=False,
                    error=str(exc),
                    error_code=exc.code,
                )
            )
            continue

        batch.results.append(
            ItemStockChange(
                product_id=item.product_id,
                variant_id=item.variant_id,
                success=True,
                new_stock=record.new_stock,
            )
        )
    return batch


def adjust_stock(
    session: Session,
    product_id: int,
    adjustment: int,
    variant_id: int | None = None,
    *,
    reason: str,
    change_type: StockChangeType = "ADJUSTMENT",
    user_id: int | None = None,
) -> StockChangeResult:
    """
    Manual admin adjustment by a signed amount.

    Positive amounts increase stock, negative amounts decrease it by their
    absolute value. Only ADJUSTMENT, RESTOCK and DAMAGE may be recorded here.
    """
    try:
        amount = enforce_rules_stock_adjust(adjustment, change_type)
        options = StockChangeOptions(
            reason=f"Admin adjustment: {validate_reason(reason)}",
            type=change_type,
            user_id=user_id,
        )
    except ValidationError as exc:
        return StockChangeResult.failure(str(exc), INVALID_INPUT)

    if amount > 0:
        return increase_stock_with_history(session, product_id, amount, variant_id, options)
    return reduce_stock_with_history(session, product_id, abs(amount), variant_id, options)


def get_stock_status(stock: int) -> StockStatus:
    """
    Display label for a stock count.

    0 -> out_of_stock, 1-5 -> low_stock, 6-10 -> limited_stock, >10 -> in_stock.
    """
    if stock <= 0:
        return StockStatus(status="out_of_stock", label="Out of Stock", color="red", can_purchase=False)
    if stock <= 5:
        return StockStatus(status="low_stock", label=f"Only {stock} left", color="orange", can_purchase=True)
    if stock <= 10:
        return StockStatus(status="limited_stock", label=f"{stock} in stock", color="yellow", can_purchase=True)
    return StockStatus(status="in_stock", label="In Stock", color="green", can_purchase=True)
