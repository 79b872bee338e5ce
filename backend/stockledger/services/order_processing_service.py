"""
Order Processing Service - order lifecycle events that move stock

WHY: Payment and refund are the only order events that change stock. This
module maps status transitions onto inventory_service batches and persists
the new order status in the same transaction as the stock changes.

STATE MACHINE:
    PENDING -> PAID -> {SHIPPED, DELIVERED}
    PENDING -> CANCELLED
    {PAID, PROCESSING, REFUND_REQUESTED} -> REFUNDED

    PENDING -> PAID       validate all lines, decrement stock, then mark PAID
    refundable -> REFUNDED  restore stock, then mark REFUNDED
    anything else         persist the new status, no stock effect

GUARDS:
- Payment and refund lock the order row, re-check its status, apply every
  line and write the new status in one transaction. Two payments of the
  same order cannot both decrement stock: the second one sees PAID.
- If any line fails, the whole transaction rolls back. The order keeps its
  old status and every line is reported as not applied.
- REFUNDED is rejected when the order is already REFUNDED.
- DELIVERED, CANCELLED and REFUNDED are final; no further status change is
  accepted from them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import (
    INSUFFICIENT_STOCK,
    INVALID_INPUT,
    INVALID_TRANSITION,
    NOT_FOUND,
    STORE_FAILURE,
    InvalidTransitionError,
    StockError,
    StockNotFoundError,
)
from ..models import Order, OrderItem
from ..models.orders import (
    ORDER_CANCELLED,
    ORDER_PAID,
    ORDER_PENDING,
    ORDER_REFUNDED,
    REFUNDABLE_ORDER_STATUSES,
    TERMINAL_ORDER_STATUSES,
    OrderStatus,
)
from ..models.stock import STOCK_PURCHASE, STOCK_REFUND
from ..time_utils import utcnow
from ..validation import StockItem, ValidationError, coerce_stock_items, validate_order_status
from .concurrency import atomic, lock_for_update
from .inventory_service import BatchDirection, BatchStockResult, ItemStockChange, apply_order_stock_changes
from .ledger_service import load_stock_target
from .stock_validation_service import validate_stock_availability

logger = logging.getLogger(__name__)


@dataclass
class OrderProcessingResult:
    success: bool
    order_id: int
    message: str
    error_code: str | None = None
    stock_changes: list[ItemStockChange] | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "order_id": self.order_id,
            "message": self.message,
            "error_code": self.error_code,
            "stock_changes": (
                [c.to_dict() for c in self.stock_changes] if self.stock_changes is not None else None
            ),
        }


def _failure(order_id: int, message: str, error_code: str, stock_changes=None) -> OrderProcessingResult:
    return OrderProcessingResult(
        success=False,
        order_id=order_id,
        message=message,
        error_code=error_code,
        stock_changes=stock_changes,
    )


def _order_stock_items(order: Order) -> list[StockItem]:
    return [
        StockItem(product_id=item.product_id, variant_id=item.variant_id, quantity=item.quantity)
        for item in order.items
    ]


def _set_order_status(
    session: Session,
    order_id: int,
    status: OrderStatus,
    *,
    expected: set[str] | None = None,
) -> Order:
    """Persist a status change in its own unit of work, re-reading the order under lock."""
    with atomic(session):
        order = lock_for_update(session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise StockNotFoundError("Order not found")
        if expected is not None and order.status not in expected:
            raise InvalidTransitionError(
                f"Order {order_id} moved to {order.status} while being processed"
            )
        order.status = status
    return order


class _OrderStockAborted(StockError):
    """A line of an order's stock change failed; the transaction is rolled back."""

    def __init__(self, message: str, batch: BatchStockResult):
        super().__init__(message)
        self.code = batch.failed[0].error_code
        self.batch = batch


def _apply_order_transition(
    session: Session,
    order_id: int,
    *,
    direction: BatchDirection,
    reason: str,
    expected: set[str],
    new_status: OrderStatus,
    rejection: str,
    user_id: int | None,
) -> BatchStockResult:
    """
    Lock the order, re-check its status, move stock for every line and write
    the new status, all in one transaction.

    `rejection` is formatted with the status found under lock when it is not
    in `expected`.
    """
    with atomic(session):
        order = lock_for_update(session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise StockNotFoundError("Order not found")
        if order.status not in expected:
            raise InvalidTransitionError(rejection.format(status=order.status))

        batch = apply_order_stock_changes(
            session, order_id, _order_stock_items(order), direction, reason, user_id=user_id
        )
        if not batch.success:
            raise _OrderStockAborted(
                "Failed to update stock levels" if direction == STOCK_PURCHASE
                else "Failed to restore stock levels",
                batch,
            )
        order.status = new_status
    return batch


def _aborted(order_id: int, exc: _OrderStockAborted) -> OrderProcessingResult:
    exc.batch.mark_rolled_back()
    return _failure(order_id, str(exc), exc.code, exc.batch.results)


def process_order_payment(session: Session, order_id: int, *, user_id: int | None = None) -> OrderProcessingResult:
    """
    Confirm payment: validate, decrement stock for every line, then mark PAID.

    Either every line is decremented and the order is PAID, or nothing
    changes.
    """
    logger.info("Processing payment for order %s", order_id)
    try:
        order = session.get(Order, order_id)
        if order is None:
            return _failure(order_id, "Order not found", NOT_FOUND)

        if order.status != ORDER_PENDING:
            return _failure(
                order_id,
                f"Order has already been processed (status {order.status})",
                INVALID_TRANSITION,
            )

        items = _order_stock_items(order)
        if not items:
            return _failure(order_id, "Order has no items", INVALID_INPUT)

        invalid = [r for r in validate_stock_availability(session, items) if not r.is_valid]
        if invalid:
            return _failure(
                order_id,
                f"Insufficient stock for items: {', '.join(r.describe() for r in invalid)}",
                INSUFFICIENT_STOCK,
            )

        batch = _apply_order_transition(
            session,
            order_id,
            direction=STOCK_PURCHASE,
            reason=f"Order payment confirmed - Order #{order_id}",
            expected={ORDER_PENDING},
            new_status=ORDER_PAID,
            rejection="Order has already been processed (status {status})",
            user_id=user_id,
        )
    except _OrderStockAborted as exc:
        logger.error("Order %s payment rolled back: %s", order_id, exc.batch.failed[0].error)
        return _aborted(order_id, exc)
    except StockError as exc:
        logger.error("Order %s payment could not be finalised: %s", order_id, exc)
        return _failure(order_id, str(exc), exc.code)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Error processing order payment %s", order_id)
        return _failure(order_id, str(exc), STORE_FAILURE)

    logger.info("Order %s payment processed successfully", order_id)
    return OrderProcessingResult(
        success=True,
        order_id=order_id,
        message="Order payment processed and stock updated successfully",
        stock_changes=batch.results,
    )


def process_order_refund(session: Session, order_id: int, *, user_id: int | None = None) -> OrderProcessingResult:
    """Refund: restore stock for every line, then mark REFUNDED."""
    logger.info("Processing refund for order %s", order_id)
    try:
        order = session.get(Order, order_id)
        if order is None:
            return _failure(order_id, "Order not found", NOT_FOUND)

        if order.status not in REFUNDABLE_ORDER_STATUSES:
            return _failure(
                order_id,
                f"Order cannot be refunded from {order.status} status",
                INVALID_TRANSITION,
            )

        batch = _apply_order_transition(
            session,
            order_id,
            direction=STOCK_REFUND,
            reason=f"Order refund processed - Order #{order_id}",
            expected=REFUNDABLE_ORDER_STATUSES,
            new_status=ORDER_REFUNDED,
            rejection="Order cannot be refunded from {status} status",
            user_id=user_id,
        )
    except _OrderStockAborted as exc:
        logger.error("Order %s refund rolled back: %s", order_id, exc.batch.failed[0].error)
        return _aborted(order_id, exc)
    except StockError as exc:
        logger.error("Order %s refund could not be finalised: %s", order_id, exc)
        return _failure(order_id, str(exc), exc.code)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Error processing order refund %s", order_id)
        return _failure(order_id, str(exc), STORE_FAILURE)

    logger.info("Order %s refund processed successfully", order_id)
    return OrderProcessingResult(
        success=True,
        order_id=order_id,
        message="Order refund processed and stock restored successfully",
        stock_changes=batch.results,
    )


def handle_order_status_change(
    session: Session,
    order_id: int,
    new_status: OrderStatus,
    user_id: int | None = None,
) -> OrderProcessingResult:
    """Route a requested status change to payment, refund, or a plain status update."""
    try:
        validate_order_status(new_status)
    except ValidationError as exc:
        return _failure(order_id, str(exc), INVALID_INPUT)

    try:
        order = session.get(Order, order_id)
        if order is None:
            return _failure(order_id, "Order not found", NOT_FOUND)
        current_status = order.status

        if new_status == ORDER_PAID:
            if current_status != ORDER_PENDING:
                return _failure(
                    order_id,
                    f"Order has already been processed (status {current_status})",
                    INVALID_TRANSITION,
                )
            return process_order_payment(session, order_id, user_id=user_id)

        if new_status == ORDER_REFUNDED:
            if current_status == ORDER_REFUNDED:
                return _failure(order_id, "Order has already been refunded", INVALID_TRANSITION)
            if current_status in REFUNDABLE_ORDER_STATUSES:
                return process_order_refund(session, order_id, user_id=user_id)

        if current_status in TERMINAL_ORDER_STATUSES:
            return _failure(
                order_id,
                f"Order is {current_status} and can no longer change status",
                INVALID_TRANSITION,
            )

        # No stock side effect
        _set_order_status(session, order_id, new_status, expected={current_status})
    except StockError as exc:
        return _failure(order_id, str(exc), exc.code)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Error handling order status change %s", order_id)
        return _failure(order_id, str(exc), STORE_FAILURE)

    logger.info("Order %s status %s -> %s (user=%s)", order_id, current_status, new_status, user_id)
    return OrderProcessingResult(
        success=True,
        order_id=order_id,
        message=f"Order status updated to {new_status}",
    )


def create_pending_order(
    session: Session,
    items: Iterable[StockItem | Mapping[str, Any]],
    user_id: int | None = None,
) -> Order:
    """
    Create an order in PENDING with its line items. No stock effect.

    Raises ValidationError for malformed lines and StockNotFoundError for
    unknown products or variants that do not belong to their product.
    """
    lines = coerce_stock_items(items)
    if not lines:
        raise ValidationError("Order must contain at least one item")

    with atomic(session):
        for line in lines:
            load_stock_target(session, line.product_id, line.variant_id)

        order = Order(status=ORDER_PENDING, user_id=user_id)
        order.items = [
            OrderItem(product_id=line.product_id, variant_id=line.variant_id, quantity=line.quantity)
            for line in lines
        ]
        session.add(order)

    logger.info("Created pending order %s with %d line(s)", order.id, len(lines))
    return order


def cancel_stale_pending_orders(session: Session, older_than: timedelta) -> int:
    """
    Move PENDING orders created before now - older_than to CANCELLED.

    PENDING orders never decremented stock, so nothing is restored.
    """
    cutoff = utcnow() - older_than
    with atomic(session):
        stale = (
            lock_for_update(
                session.query(Order).filter(
                    Order.status == ORDER_PENDING,
                    Order.created_at < cutoff,
                )
            )
            .all()
        )
        for order in stale:
            order.status = ORDER_CANCELLED

    if stale:
        logger.info("Cancelled %d stale pending order(s) created before %s", len(stale), cutoff)
    return len(stale)
