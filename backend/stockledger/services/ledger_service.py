# Overview: Stock ledger storage: current stock reads, locked targets, and the append-only history log.

from __future__ import annotations

import logging
from dataclasses import dataclass
from math import ceil

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import Product, Variant, StockHistory
from ..models.stock import StockChangeType
from ..errors import StockNotFoundError
from .concurrency import lock_for_update
"""
Stock Ledger Invariants (authoritative)

- Product.stock and Variant.stock are the current counts; they are
  independent and never reconciled with each other.
- Every change to a count appends exactly one StockHistory row in the same
  DB transaction, with new_stock = previous_stock + quantity and new_stock
  equal to the count written.
- StockHistory is append-only (no updates/deletes).
- No business rules here (sufficiency checks live in inventory_service).
"""

logger = logging.getLogger(__name__)

MAX_HISTORY_PAGE_SIZE = 200


@dataclass
class StockTarget:
    """The row whose stock a mutation reads and writes: a variant if given, else the product."""
    product: Product
    variant: Variant | None = None

    @property
    def entity(self) -> Product | Variant:
        return self.variant if self.variant is not None else self.product

    @property
    def stock(self) -> int:
        return self.entity.stock

    @property
    def label(self) -> str:
        if self.variant is not None:
            return f"variant {self.variant.name}"
        return f"product {self.product.name}"


def load_stock_target(
    session: Session,
    product_id: int,
    variant_id: int | None = None,
    *,
    lock: bool = False,
) -> StockTarget:
    """
    Resolve the stock target for a line item.

    A variant that exists but belongs to another product is treated as not
    found; there is no fallback to the product's own stock.
    """
    if variant_id is not None:
        query = session.query(Variant).filter_by(id=variant_id)
        if lock:
            query = lock_for_update(query)
        variant = query.first()
        if variant is None:
            raise StockNotFoundError(f"Variant {variant_id} not found")
        if variant.product_id != product_id:
            raise StockNotFoundError(
                f"Variant {variant_id} not found for product {product_id}",
                details={"variant_product_id": variant.product_id},
            )
        return StockTarget(product=variant.product, variant=variant)

    query = session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise StockNotFoundError(f"Product {product_id} not found")
    return StockTarget(product=product)


def get_current_stock(session: Session, product_id: int, variant_id: int | None = None) -> int:
    """
    Current stock for a product or one of its variants.

    Missing product, missing variant, or a variant of another product -> 0.
    Reads the column directly so the answer is never a cached ORM value.
    """
    if variant_id is not None:
        stock = (
            session.query(Variant.stock)
            .filter(Variant.id == variant_id, Variant.product_id == product_id)
            .scalar()
        )
    else:
        stock = session.query(Product.stock).filter(Product.id == product_id).scalar()
    return int(stock or 0)


def append_stock_history(
    session: Session,
    *,
    product_id: int,
    variant_id: int | None,
    change_type: StockChangeType,
    quantity: int,
    previous_stock: int,
    new_stock: int,
    reason: str,
    order_id: int | None = None,
    user_id: int | None = None,
) -> StockHistory:
    """
    Append one history row. Caller owns the transaction.

    - No updates/deletes of existing rows anywhere in this package.
    - flush() assigns the id without committing.
    """
    if new_stock != previous_stock + quantity:
        raise ValueError(
            f"history snapshot mismatch: {previous_stock} + {quantity} != {new_stock}"
        )

    record = StockHistory(
        product_id=product_id,
        variant_id=variant_id,
        type=change_type,
        quantity=quantity,
        previous_stock=previous_stock,
        new_stock=new_stock,
        reason=reason,
        order_id=order_id,
        user_id=user_id,
    )
    session.add(record)
    session.flush()
    return record


def _apply_history_filters(
    q,
    *,
    product_id: int | None = None,
    variant_id: int | None = None,
    change_type: StockChangeType | None = None,
    order_id: int | None = None,
):
    if product_id is not None:
        q = q.filter(StockHistory.product_id == product_id)
    if variant_id is not None:
        q = q.filter(StockHistory.variant_id == variant_id)
    if change_type is not None:
        q = q.filter(StockHistory.type == change_type)
    if order_id is not None:
        q = q.filter(StockHistory.order_id == order_id)
    return q


@dataclass
class StockHistoryPage:
    records: list[StockHistory]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> dict:
        return {
            "history": [r.to_dict() for r in self.records],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "pages": self.pages,
            },
        }


def list_stock_history(
    session: Session,
    *,
    product_id: int | None = None,
    variant_id: int | None = None,
    change_type: StockChangeType | None = None,
    order_id: int | None = None,
    page: int = 1,
    limit: int = 50,
) -> StockHistoryPage:
    """History rows matching the filters, newest first."""
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), MAX_HISTORY_PAGE_SIZE)

    q = _apply_history_filters(
        session.query(StockHistory),
        product_id=product_id,
        variant_id=variant_id,
        change_type=change_type,
        order_id=order_id,
    )
    total = q.count()
    records = (
        q.order_by(StockHistory.created_at.desc(), StockHistory.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return StockHistoryPage(records=records, total=total, page=page, limit=limit)


def summarize_stock_history(
    session: Session,
    *,
    product_id: int | None = None,
    variant_id: int | None = None,
    change_type: StockChangeType | None = None,
    order_id: int | None = None,
) -> dict[str, dict]:
    """Per change type: number of rows and net signed quantity."""
    q = session.query(
        StockHistory.type,
        func.count(StockHistory.id).label("count"),
        func.coalesce(func.sum(StockHistory.quantity), 0).label("total_quantity"),
    )
    q = _apply_history_filters(
        q,
        product_id=product_id,
        variant_id=variant_id,
        change_type=change_type,
        order_id=order_id,
    )

    rows = q.group_by(StockHistory.type).all()
    return {
        row.type: {"count": int(row.count), "total_quantity": int(row.total_quantity)}
        for row in rows
    }


def audit_stock_history(session: Session, product_id: int, variant_id: int | None = None) -> list[str]:
    """
    Verify the history chain of one stock target against the ledger.

    Checks, oldest to newest:
    - each row satisfies new_stock = previous_stock + quantity
    - each row starts where the previous one ended
    - the newest row's new_stock equals the current count

    Returns discrepancy descriptions; empty means consistent. A target with no
    history is consistent by definition (initial stock is set at catalog time).
    """
    target = load_stock_target(session, product_id, variant_id)

    q = session.query(StockHistory).filter(StockHistory.product_id == product_id)
    if variant_id is not None:
        q = q.filter(StockHistory.variant_id == variant_id)
    else:
        q = q.filter(StockHistory.variant_id.is_(None))
    records = q.order_by(StockHistory.id.asc()).all()

    problems: list[str] = []
    previous: StockHistory | None = None
    for record in records:
        if record.new_stock != record.previous_stock + record.quantity:
            problems.append(
                f"history {record.id}: {record.previous_stock} + {record.quantity} != {record.new_stock}"
            )
        if previous is not None and record.previous_stock != previous.new_stock:
            problems.append(
                f"history {record.id}: previous_stock {record.previous_stock} "
                f"does not follow history {previous.id} new_stock {previous.new_stock}"
            )
        previous = record

    current = get_current_stock(session, product_id, variant_id)
    if previous is not None and previous.new_stock != current:
        problems.append(
            f"{target.label}: ledger stock {current} != last history new_stock {previous.new_stock}"
        )

    if problems:
        logger.warning("Stock history audit found %d problem(s) for %s", len(problems), target.label)
    return problems
