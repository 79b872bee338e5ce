import pytest
from sqlalchemy.exc import OperationalError

from stockledger.errors import INSUFFICIENT_STOCK, INVALID_INPUT, NOT_FOUND, STORE_FAILURE
from stockledger.models import StockHistory
from stockledger.services import inventory_service
from stockledger.services.inventory_service import (
    StockChangeOptions,
    adjust_stock,
    get_stock_status,
    increase_stock_with_history,
    process_order_stock_changes,
    reduce_stock_with_history,
)
from stockledger.services.ledger_service import get_current_stock
from stockledger.validation import ValidationError


def _history(db_session, **filters):
    return db_session.query(StockHistory).filter_by(**filters).order_by(StockHistory.id).all()


def test_reduce_writes_stock_and_history(db_session, product):
    result = reduce_stock_with_history(
        db_session, product.id, 10, None, StockChangeOptions(reason="t", type="PURCHASE")
    )

    assert result.success is True
    assert result.new_stock == 40
    assert get_current_stock(db_session, product.id) == 40

    [record] = _history(db_session, product_id=product.id)
    assert record.id == result.history_id
    assert record.quantity == -10
    assert record.previous_stock == 50
    assert record.new_stock == 40
    assert record.type == "PURCHASE"
    assert record.reason == "t"


def test_reduce_more_than_available_has_no_side_effects(db_session, product):
    result = reduce_stock_with_history(
        db_session, product.id, 100, None, StockChangeOptions(reason="t", type="PURCHASE")
    )

    assert result.success is False
    assert result.new_stock is None
    assert result.error_code == INSUFFICIENT_STOCK
    assert "Insufficient stock" in result.error
    assert "Available: 50, Requested: 100" in result.error
    assert get_current_stock(db_session, product.id) == 50
    assert _history(db_session) == []


def test_reduce_to_exactly_zero(db_session, product):
    result = reduce_stock_with_history(db_session, product.id, 50)

    assert result.success
    assert result.new_stock == 0
    assert _history(db_session)[0].reason == "Stock reduction"


def test_increase_variant_leaves_product_stock_alone(db_session, product, variant):
    options = StockChangeOptions(reason="Supplier delivery", type="RESTOCK", user_id=7)
    result = increase_stock_with_history(db_session, product.id, 5, variant.id, options)

    assert result.success
    assert result.new_stock == 35
    assert get_current_stock(db_session, product.id, variant.id) == 35
    assert get_current_stock(db_session, product.id) == 50

    [record] = _history(db_session)
    assert record.variant_id == variant.id
    assert record.quantity == 5
    assert (record.previous_stock, record.new_stock) == (30, 35)
    assert record.user_id == 7


def test_missing_targets_report_not_found(db_session, product, variant, other_product):
    missing_product = reduce_stock_with_history(db_session, 9999, 1)
    missing_variant = reduce_stock_with_history(db_session, product.id, 1, 9999)
    foreign_variant = increase_stock_with_history(db_session, other_product.id, 1, variant.id)

    for result in (missing_product, missing_variant, foreign_variant):
        assert result.success is False
        assert result.error_code == NOT_FOUND

    assert get_current_stock(db_session, product.id, variant.id) == 30
    assert _history(db_session) == []


@pytest.mark.parametrize("quantity", [0, -3, 1.5, "abc", True])
def test_bad_quantity_is_invalid_input(db_session, product, quantity):
    result = reduce_stock_with_history(db_session, product.id, quantity)

    assert result.success is False
    assert result.error_code == INVALID_INPUT
    assert get_current_stock(db_session, product.id) == 50


def test_options_reject_unknown_type_and_blank_reason():
    with pytest.raises(ValidationError):
        StockChangeOptions(reason="x", type="GIFT")
    with pytest.raises(ValidationError):
        StockChangeOptions(reason="  ", type="PURCHASE")


def test_history_snapshot_matches_ledger_after_each_change(db_session, product):
    reduce_stock_with_history(db_session, product.id, 7)
    increase_stock_with_history(db_session, product.id, 3)
    reduce_stock_with_history(db_session, product.id, 46)

    records = _history(db_session, product_id=product.id)
    assert [r.quantity for r in records] == [-7, 3, -46]
    for before, after in zip(records, records[1:]):
        assert after.previous_stock == before.new_stock
    assert records[-1].new_stock == get_current_stock(db_session, product.id) == 0


def test_batch_purchase_applies_every_line(db_session, product, variant):
    batch = process_order_stock_changes(
        db_session,
        order_id=None,
        items=[
            {"product_id": product.id, "quantity": 4},
            {"product_id": product.id, "variant_id": variant.id, "quantity": 6},
        ],
        direction="PURCHASE",
        reason="Batch",
    )

    assert batch.success
    assert [r.new_stock for r in batch.results] == [46, 24]
    assert {r.type for r in _history(db_session)} == {"PURCHASE"}


def test_batch_partial_failure_keeps_earlier_lines_and_tries_later_ones(db_session, product, other_product):
    batch = process_order_stock_changes(
        db_session,
        None,
        [
            {"product_id": product.id, "quantity": 5},
            {"product_id": other_product.id, "quantity": 10},
            {"product_id": product.id, "quantity": 5},
        ],
        "PURCHASE",
        "Batch",
    )

    assert batch.success is False
    assert [r.success for r in batch.results] == [True, False, True]
    assert batch.failed[0].product_id == other_product.id
    assert batch.failed[0].error_code == INSUFFICIENT_STOCK
    assert get_current_stock(db_session, product.id) == 40
    assert get_current_stock(db_session, other_product.id) == 3
    assert len(_history(db_session)) == 2


def test_batch_records_malformed_line_and_continues(db_session, product):
    batch = process_order_stock_changes(
        db_session,
        None,
        [
            {"product_id": product.id, "quantity": 5},
            {"product_id": product.id, "quantity": 0},
            {"quantity": 1},
            {"product_id": product.id, "quantity": 5},
        ],
        "PURCHASE",
        "Batch",
    )

    assert [r.success for r in batch.results] == [True, False, False, True]
    assert [r.error_code for r in batch.failed] == [INVALID_INPUT, INVALID_INPUT]
    assert batch.failed[0].product_id == product.id
    assert batch.failed[1].product_id is None
    assert get_current_stock(db_session, product.id) == 40
    assert len(_history(db_session)) == 2


def test_history_write_failure_rolls_back_stock(db_session, product, monkeypatch):
    def broken_append(*args, **kwargs):
        raise OperationalError("INSERT INTO stock_history", {}, Exception("disk I/O error"))

    monkeypatch.setattr(inventory_service, "append_stock_history", broken_append)

    result = reduce_stock_with_history(db_session, product.id, 5)

    assert result.success is False
    assert result.error_code == STORE_FAILURE
    assert result.new_stock is None
    assert get_current_stock(db_session, product.id) == 50
    assert _history(db_session) == []


def test_commit_failure_rolls_back_stock(db_session, product, monkeypatch):
    def broken_commit():
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "commit", broken_commit)
    result = increase_stock_with_history(db_session, product.id, 5)
    monkeypatch.undo()

    assert result.error_code == STORE_FAILURE
    assert get_current_stock(db_session, product.id) == 50
    assert _history(db_session) == []


def test_batch_rejects_unknown_direction(db_session, product):
    with pytest.raises(ValidationError):
        process_order_stock_changes(db_session, None, [], "ADJUSTMENT", "x")


def test_adjust_stock_signed_amounts(db_session, product):
    up = adjust_stock(db_session, product.id, 12, reason="Cycle count", change_type="RESTOCK")
    down = adjust_stock(db_session, product.id, -2, reason="Broken in transit", change_type="DAMAGE")

    assert (up.success, up.new_stock) == (True, 62)
    assert (down.success, down.new_stock) == (True, 60)

    records = _history(db_session)
    assert [r.type for r in records] == ["RESTOCK", "DAMAGE"]
    assert records[1].quantity == -2
    assert records[1].reason == "Admin adjustment: Broken in transit"


@pytest.mark.parametrize("adjustment,change_type,reason", [
    (0, "ADJUSTMENT", "x"),
    (5, "PURCHASE", "x"),
    (5, "ADJUSTMENT", ""),
])
def test_adjust_stock_rejects_invalid_requests(db_session, product, adjustment, change_type, reason):
    result = adjust_stock(db_session, product.id, adjustment, reason=reason, change_type=change_type)

    assert result.success is False
    assert result.error_code == INVALID_INPUT
    assert _history(db_session) == []


def test_adjust_stock_cannot_go_negative(db_session, other_product):
    result = adjust_stock(db_session, other_product.id, -4, reason="Shrinkage")

    assert result.success is False
    assert result.error_code == INSUFFICIENT_STOCK
    assert get_current_stock(db_session, other_product.id) == 3


def test_current_stock_for_missing_targets_is_zero(db_session, product, variant, other_product):
    assert get_current_stock(db_session, 9999) == 0
    assert get_current_stock(db_session, product.id, 9999) == 0
    assert get_current_stock(db_session, other_product.id, variant.id) == 0


@pytest.mark.parametrize("stock,status,label,color,can_purchase", [
    (0, "out_of_stock", "Out of Stock", "red", False),
    (1, "low_stock", "Only 1 left", "orange", True),
    (3, "low_stock", "Only 3 left", "orange", True),
    (5, "low_stock", "Only 5 left", "orange", True),
    (6, "limited_stock", "6 in stock", "yellow", True),
    (8, "limited_stock", "8 in stock", "yellow", True),
    (10, "limited_stock", "10 in stock", "yellow", True),
    (11, "in_stock", "In Stock", "green", True),
    (20, "in_stock", "In Stock", "green", True),
])
def test_stock_status_thresholds(stock, status, label, color, can_purchase):
    result = get_stock_status(stock)

    assert result.status == status
    assert result.label == label
    assert result.color == color
    assert result.can_purchase is can_purchase
    assert inventory_service.get_stock_status(stock).to_dict()["can_purchase"] is can_purchase
