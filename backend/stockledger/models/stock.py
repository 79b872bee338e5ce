from __future__ import annotations

from typing import Literal

from ..extensions import db
from stockledger.time_utils import to_utc_z


STOCK_PURCHASE = "PURCHASE"
STOCK_REFUND = "REFUND"
STOCK_ADJUSTMENT = "ADJUSTMENT"
STOCK_RESTOCK = "RESTOCK"
STOCK_DAMAGE = "DAMAGE"

StockChangeType = Literal["PURCHASE", "REFUND", "ADJUSTMENT", "RESTOCK", "DAMAGE"]

VALID_STOCK_CHANGE_TYPES = {
    STOCK_PURCHASE,
    STOCK_REFUND,
    STOCK_ADJUSTMENT,
    STOCK_RESTOCK,
    STOCK_DAMAGE,
}


class StockHistory(db.Model):
    """
    One stock change, with before/after snapshots.

    Append-only: rows are inserted in the same transaction as the stock write
    they describe and are never updated or deleted afterwards.
    quantity is signed (negative for decreases).
    """
    __tablename__ = "stock_history"
    __table_args__ = (
        db.CheckConstraint(
            "new_stock = previous_stock + quantity",
            name="ck_stock_history_delta",
        ),
        db.Index("ix_stock_history_product_created", "product_id", "created_at"),
        db.Index("ix_stock_history_variant_created", "variant_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=True, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=False)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )

    product = db.relationship("Product")
    variant = db.relationship("Variant")

    def __repr__(self) -> str:
        return (
            f"<StockHistory id={self.id} product_id={self.product_id} variant_id={self.variant_id} "
            f"type={self.type} quantity={self.quantity} {self.previous_stock}->{self.new_stock}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "type": self.type,
            "quantity": self.quantity,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "reason": self.reason,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }
