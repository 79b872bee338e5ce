from __future__ import annotations

from typing import Literal

from ..extensions import db
from stockledger.time_utils import to_utc_z


ORDER_PENDING = "PENDING"
ORDER_PAID = "PAID"
ORDER_PROCESSING = "PROCESSING"
ORDER_SHIPPED = "SHIPPED"
ORDER_DELIVERED = "DELIVERED"
ORDER_CANCELLED = "CANCELLED"
ORDER_REFUND_REQUESTED = "REFUND_REQUESTED"
ORDER_REFUNDED = "REFUNDED"

OrderStatus = Literal[
    "PENDING",
    "PAID",
    "PROCESSING",
    "SHIPPED",
    "DELIVERED",
    "CANCELLED",
    "REFUND_REQUESTED",
    "REFUNDED",
]

VALID_ORDER_STATUSES = {
    ORDER_PENDING,
    ORDER_PAID,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_REFUND_REQUESTED,
    ORDER_REFUNDED,
}

# Statuses from which a refund restores stock
REFUNDABLE_ORDER_STATUSES = {ORDER_PAID, ORDER_PROCESSING, ORDER_REFUND_REQUESTED}

TERMINAL_ORDER_STATUSES = {ORDER_DELIVERED, ORDER_CANCELLED, ORDER_REFUNDED}


class Order(db.Model):
    """
    Customer order.

    Status is written only by services.order_processing_service, and only
    after any stock change the transition requires has committed.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(32), nullable=False, default=ORDER_PENDING, index=True)

    # Users live outside this service; the id is kept for attribution only
    user_id = db.Column(db.Integer, nullable=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    items = db.relationship(
        "OrderItem",
        back_populates="order",
        lazy=True,
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "user_id": self.user_id,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "items": [item.to_dict() for item in self.items],
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=True, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product")
    variant = db.relationship("Variant")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
        }
