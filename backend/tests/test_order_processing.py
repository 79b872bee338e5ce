from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from stockledger.errors import (
    INSUFFICIENT_STOCK,
    INVALID_INPUT,
    INVALID_TRANSITION,
    NOT_FOUND,
    STORE_FAILURE,
    StockNotFoundError,
)
from stockledger.models import Order, StockHistory
from stockledger.services import inventory_service
from stockledger.services.inventory_service import ROLLED_BACK_MESSAGE, reduce_stock_with_history
from stockledger.services.ledger_service import get_current_stock
from stockledger.services.order_processing_service import (
    cancel_stale_pending_orders,
    create_pending_order,
    handle_order_status_change,
    process_order_payment,
    process_order_refund,
)
from stockledger.time_utils import utcnow
from stockledger.validation import ValidationError


def _status(db_session, order_id):
    return db_session.query(Order.status).filter_by(id=order_id).scalar()


def test_payment_decrements_stock_and_marks_paid(db_session, product, make_order):
    order = make_order([(product.id, 5)])

    result = process_order_payment(db_session, order.id, user_id=3)

    assert result.success, result.message
    assert result.message == "Order payment processed and stock updated successfully"
    assert _status(db_session, order.id) == "PAID"
    assert get_current_stock(db_session, product.id) == 45

    [record] = db_session.query(StockHistory).all()
    assert record.type == "PURCHASE"
    assert record.order_id == order.id
    assert record.user_id == 3
    assert record.reason == f"Order payment confirmed - Order #{order.id}"


def test_refund_after_payment_restores_every_target(db_session, product, variant, make_order):
    order = make_order([(product.id, 5), (product.id, 7, variant.id)])
    assert process_order_payment(db_session, order.id).success
    assert get_current_stock(db_session, product.id) == 45
    assert get_current_stock(db_session, product.id, variant.id) == 23

    result = process_order_refund(db_session, order.id)

    assert result.success, result.message
    assert _status(db_session, order.id) == "REFUNDED"
    assert get_current_stock(db_session, product.id) == 50
    assert get_current_stock(db_session, product.id, variant.id) == 30

    refunds = db_session.query(StockHistory).filter_by(type="REFUND", order_id=order.id).all()
    assert sorted(r.quantity for r in refunds) == [5, 7]


def test_paying_twice_only_decrements_once(db_session, product, make_order):
    order = make_order([(product.id, 5)])

    first = handle_order_status_change(db_session, order.id, "PAID")
    second = handle_order_status_change(db_session, order.id, "PAID")

    assert first.success
    assert second.success is False
    assert second.error_code == INVALID_TRANSITION
    assert "already been processed" in second.message
    assert get_current_stock(db_session, product.id) == 45
    assert db_session.query(StockHistory).count() == 1


def test_payment_with_insufficient_stock_changes_nothing(db_session, product, other_product, make_order):
    order = make_order([(product.id, 5), (other_product.id, 10)])

    result = process_order_payment(db_session, order.id)

    assert result.success is False
    assert result.error_code == INSUFFICIENT_STOCK
    assert "Insufficient stock for items" in result.message
    assert "Enamel Mug: requested 10, available 3" in result.message
    assert _status(db_session, order.id) == "PENDING"
    assert get_current_stock(db_session, product.id) == 50
    assert db_session.query(StockHistory).count() == 0


def test_payment_mutation_failure_rolls_back_every_line(db_session, product, other_product, make_order, monkeypatch):
    """A line that passes validation but fails at mutation time leaves stock and order untouched."""
    order = make_order([(product.id, 5), (other_product.id, 2)])

    from stockledger.services import order_processing_service
    real_validate = order_processing_service.validate_stock_availability

    def validate_then_race(session, items):
        results = real_validate(session, items)
        # Another checkout takes the mug stock between validation and mutation
        reduce_stock_with_history(session, other_product.id, 3)
        return results

    monkeypatch.setattr(order_processing_service, "validate_stock_availability", validate_then_race)

    result = process_order_payment(db_session, order.id)

    assert result.success is False
    assert result.message == "Failed to update stock levels"
    assert result.error_code == INSUFFICIENT_STOCK
    assert [c.success for c in result.stock_changes] == [False, False]
    assert result.stock_changes[0].error == ROLLED_BACK_MESSAGE
    assert result.stock_changes[0].new_stock is None
    assert result.stock_changes[1].error_code == INSUFFICIENT_STOCK
    assert _status(db_session, order.id) == "PENDING"
    assert get_current_stock(db_session, product.id) == 50
    # Only the competing checkout's reduction is recorded
    assert db_session.query(StockHistory).count() == 1


def test_payment_history_write_failure_is_store_failure(db_session, product, make_order, monkeypatch):
    order = make_order([(product.id, 5)])

    def broken_append(*args, **kwargs):
        raise OperationalError("INSERT INTO stock_history", {}, Exception("disk I/O error"))

    monkeypatch.setattr(inventory_service, "append_stock_history", broken_append)

    result = process_order_payment(db_session, order.id)

    assert result.success is False
    assert result.error_code == STORE_FAILURE
    assert _status(db_session, order.id) == "PENDING"
    assert get_current_stock(db_session, product.id) == 50
    assert db_session.query(StockHistory).count() == 0


def test_payment_commit_failure_is_store_failure(db_session, product, make_order, monkeypatch):
    order = make_order([(product.id, 5)])

    def broken_commit():
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "commit", broken_commit)
    result = process_order_payment(db_session, order.id)
    monkeypatch.undo()

    assert result.success is False
    assert result.error_code == STORE_FAILURE
    assert _status(db_session, order.id) == "PENDING"
    assert get_current_stock(db_session, product.id) == 50
    assert db_session.query(StockHistory).count() == 0


def test_plain_status_write_failure_keeps_old_status(db_session, product, make_order, monkeypatch):
    order = make_order([(product.id, 5)], status="PAID")

    def broken_commit():
        raise OperationalError("UPDATE orders", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "commit", broken_commit)
    result = handle_order_status_change(db_session, order.id, "SHIPPED")
    monkeypatch.undo()

    assert result.success is False
    assert result.error_code == STORE_FAILURE
    assert _status(db_session, order.id) == "PAID"


def test_payment_for_missing_order(db_session):
    result = process_order_payment(db_session, 424242)

    assert result.success is False
    assert result.error_code == NOT_FOUND
    assert result.message == "Order not found"


def test_payment_for_empty_order(db_session, make_order):
    order = make_order([])

    result = process_order_payment(db_session, order.id)

    assert result.error_code == INVALID_INPUT


@pytest.mark.parametrize("status", ["PENDING", "CANCELLED", "SHIPPED", "DELIVERED", "REFUNDED"])
def test_refund_rejected_from_non_refundable_status(db_session, product, make_order, status):
    order = make_order([(product.id, 5)], status=status)

    result = process_order_refund(db_session, order.id)

    assert result.success is False
    assert result.error_code == INVALID_TRANSITION
    assert get_current_stock(db_session, product.id) == 50
    assert _status(db_session, order.id) == status


@pytest.mark.parametrize("status", ["PROCESSING", "REFUND_REQUESTED"])
def test_refund_from_other_refundable_statuses(db_session, product, make_order, status):
    order = make_order([(product.id, 5)], status=status)

    result = handle_order_status_change(db_session, order.id, "REFUNDED", user_id=9)

    assert result.success
    assert _status(db_session, order.id) == "REFUNDED"
    assert get_current_stock(db_session, product.id) == 55


def test_refund_twice_is_rejected(db_session, product, make_order):
    order = make_order([(product.id, 5)])
    process_order_payment(db_session, order.id)
    handle_order_status_change(db_session, order.id, "REFUNDED")

    again = handle_order_status_change(db_session, order.id, "REFUNDED")

    assert again.success is False
    assert again.message == "Order has already been refunded"
    assert get_current_stock(db_session, product.id) == 50


def test_plain_status_change_has_no_stock_effect(db_session, product, make_order):
    order = make_order([(product.id, 5)], status="PAID")

    result = handle_order_status_change(db_session, order.id, "SHIPPED")

    assert result.success
    assert result.message == "Order status updated to SHIPPED"
    assert result.stock_changes is None
    assert _status(db_session, order.id) == "SHIPPED"
    assert get_current_stock(db_session, product.id) == 50
    assert db_session.query(StockHistory).count() == 0


def test_refunded_order_cannot_be_paid_again(db_session, product, make_order):
    order = make_order([(product.id, 5)])
    assert process_order_payment(db_session, order.id).success
    assert process_order_refund(db_session, order.id).success

    reopened = handle_order_status_change(db_session, order.id, "PENDING")
    repaid = handle_order_status_change(db_session, order.id, "PAID")

    assert reopened.success is False
    assert reopened.error_code == INVALID_TRANSITION
    assert reopened.message == "Order is REFUNDED and can no longer change status"
    assert repaid.error_code == INVALID_TRANSITION
    assert _status(db_session, order.id) == "REFUNDED"
    assert get_current_stock(db_session, product.id) == 50
    assert db_session.query(StockHistory).count() == 2


@pytest.mark.parametrize("status", ["CANCELLED", "DELIVERED", "REFUNDED"])
@pytest.mark.parametrize("new_status", ["PENDING", "SHIPPED", "PROCESSING"])
def test_final_statuses_reject_further_changes(db_session, product, make_order, status, new_status):
    order = make_order([(product.id, 5)], status=status)

    result = handle_order_status_change(db_session, order.id, new_status)

    assert result.success is False
    assert result.error_code == INVALID_TRANSITION
    assert _status(db_session, order.id) == status
    assert get_current_stock(db_session, product.id) == 50


def test_status_change_rejects_unknown_status(db_session, make_order, product):
    order = make_order([(product.id, 1)])

    result = handle_order_status_change(db_session, order.id, "LOST")

    assert result.error_code == INVALID_INPUT
    assert _status(db_session, order.id) == "PENDING"


def test_status_change_for_missing_order(db_session):
    assert handle_order_status_change(db_session, 5150, "SHIPPED").error_code == NOT_FOUND


def test_create_pending_order(db_session, product, variant):
    order = create_pending_order(
        db_session,
        [{"product_id": product.id, "quantity": 2}, {"product_id": product.id, "variant_id": variant.id, "quantity": 1}],
        user_id=4,
    )

    assert order.status == "PENDING"
    assert order.user_id == 4
    assert [(i.product_id, i.variant_id, i.quantity) for i in order.items] == [
        (product.id, None, 2),
        (product.id, variant.id, 1),
    ]
    assert get_current_stock(db_session, product.id) == 50


def test_create_pending_order_rejects_bad_lines(db_session, product, variant, other_product):
    with pytest.raises(ValidationError):
        create_pending_order(db_session, [])
    with pytest.raises(ValidationError):
        create_pending_order(db_session, [{"product_id": product.id, "quantity": 0}])
    with pytest.raises(StockNotFoundError):
        create_pending_order(db_session, [{"product_id": other_product.id, "variant_id": variant.id, "quantity": 1}])

    assert db_session.query(Order).count() == 0


def test_cancel_stale_pending_orders(db_session, product, make_order):
    stale = make_order([(product.id, 1)])
    fresh = make_order([(product.id, 1)])
    paid = make_order([(product.id, 1)], status="PAID")

    old = utcnow() - timedelta(hours=48)
    stale.created_at = old
    paid.created_at = old
    db_session.commit()

    cancelled = cancel_stale_pending_orders(db_session, older_than=timedelta(hours=24))

    assert cancelled == 1
    assert _status(db_session, stale.id) == "CANCELLED"
    assert _status(db_session, fresh.id) == "PENDING"
    assert _status(db_session, paid.id) == "PAID"
    assert get_current_stock(db_session, product.id) == 50
