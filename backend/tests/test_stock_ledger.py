"""Stock ledger: every counter change is explained by exactly one movement."""

import pytest

from salesflow.extensions import db
from salesflow.models import ImmutableRowError, MovementDirection, MovementReason, Product, StockMovement
from salesflow.services import stock_ledger_service
from salesflow.services.stock_ledger_service import InsufficientStock, StockLedgerError

from conftest import fresh


def test_inbound_movement_updates_counter_and_brackets_stock(make_product):
    product = make_product(stock=10)

    movement = stock_ledger_service.append_movement(
        product.id, "in", 5, MovementReason.stock_entry, None, "ana", notes="supplier delivery"
    )

    assert movement.previous_stock == 10
    assert movement.new_stock == 15
    assert movement.direction == MovementDirection.inbound
    assert fresh(Product, product.id).stock == 15


def test_outbound_movement_records_order_reference(make_product):
    product = make_product(stock=10)

    movement = stock_ledger_service.append_movement(
        product.id, MovementDirection.outbound, 4, MovementReason.sale, 42, "ana"
    )

    assert movement.reference_id == "42"
    assert movement.new_stock == 6
    assert fresh(Product, product.id).stock == 6


def test_insufficient_stock_fails_closed(make_product):
    product = make_product(stock=4)
    before = db.session.query(StockMovement).count()

    with pytest.raises(InsufficientStock) as exc_info:
        stock_ledger_service.append_movement(
            product.id, "out", 10, MovementReason.sale, 1, "ana"
        )

    assert exc_info.value.available == 4
    assert exc_info.value.requested == 10
    assert fresh(Product, product.id).stock == 4
    assert db.session.query(StockMovement).count() == before


@pytest.mark.parametrize("quantity", [0, -3, 2.5, True])
def test_quantity_must_be_positive_integer(make_product, quantity):
    product = make_product(stock=4)

    with pytest.raises(StockLedgerError):
        stock_ledger_service.append_movement(
            product.id, "in", quantity, MovementReason.stock_entry, None, "ana"
        )


def test_unknown_product_is_rejected(db_session):
    with pytest.raises(StockLedgerError):
        stock_ledger_service.append_movement(999, "in", 1, MovementReason.stock_entry, None, "ana")


def test_actor_is_required(make_product):
    product = make_product()

    with pytest.raises(StockLedgerError):
        stock_ledger_service.receive_stock(product.id, 3, "  ")


def test_adjust_stock_to_records_difference_in_right_direction(make_product):
    product = make_product(stock=10)

    down = stock_ledger_service.adjust_stock_to(product.id, 7, "ana", notes="shelf count")
    up = stock_ledger_service.adjust_stock_to(product.id, 12, "ana")

    assert (down.direction, down.quantity, down.reason) == (
        MovementDirection.outbound, 3, MovementReason.manual_adjustment
    )
    assert (up.direction, up.quantity) == (MovementDirection.inbound, 5)
    assert fresh(Product, product.id).stock == 12


def test_adjust_stock_to_current_value_is_rejected(make_product):
    product = make_product(stock=10)

    with pytest.raises(StockLedgerError):
        stock_ledger_service.adjust_stock_to(product.id, 10, "ana")


def test_receive_stock_rejects_non_entry_reason(make_product):
    product = make_product()

    with pytest.raises(StockLedgerError):
        stock_ledger_service.receive_stock(product.id, 3, "ana", reason=MovementReason.sale)


def test_bulk_entry_is_all_or_nothing(make_product):
    first = make_product(name="First")
    second = make_product(name="Second")

    with pytest.raises(StockLedgerError):
        stock_ledger_service.receive_stock_bulk(
            [
                {"product_id": first.id, "quantity": 5},
                {"product_id": second.id, "quantity": 0},
            ],
            "ana",
        )

    assert fresh(Product, first.id).stock == 0
    assert db.session.query(StockMovement).count() == 0

    movements = stock_ledger_service.receive_stock_bulk(
        [
            {"product_id": first.id, "quantity": 5},
            {"product_id": second.id, "quantity": 2, "notes": "pallet 7"},
        ],
        "ana",
    )
    assert [m.reason for m in movements] == [MovementReason.bulk_entry] * 2
    assert fresh(Product, second.id).stock == 2


def test_list_movements_newest_first_with_filters(make_product):
    product = make_product(stock=10)
    other = make_product(name="Other", stock=3)
    stock_ledger_service.append_movement(product.id, "out", 2, MovementReason.sale, 5, "ana")

    movements = stock_ledger_service.list_movements(product_id=product.id)
    assert [m.new_stock for m in movements] == [8, 10]

    by_reference = stock_ledger_service.list_movements(reference_id=5)
    assert len(by_reference) == 1
    assert by_reference[0].product_id == product.id
    assert all(m.product_id == other.id for m in stock_ledger_service.list_movements(product_id=other.id))


def test_movements_cannot_be_edited_or_deleted_through_the_orm(make_product):
    product = make_product(stock=5)
    movement = db.session.query(StockMovement).filter_by(product_id=product.id).one()

    movement.notes = "rewritten"
    with pytest.raises(ImmutableRowError):
        db.session.flush()
    db.session.rollback()

    movement = db.session.query(StockMovement).filter_by(product_id=product.id).one()
    db.session.delete(movement)
    with pytest.raises(ImmutableRowError):
        db.session.flush()
    db.session.rollback()

    assert db.session.query(StockMovement).filter_by(product_id=product.id).count() == 1


def test_no_sequence_of_movements_goes_negative(make_product):
    product = make_product(stock=3)
    for quantity in (2, 2, 1, 5):
        try:
            stock_ledger_service.append_movement(product.id, "out", quantity, MovementReason.sale, 1, "ana")
        except InsufficientStock:
            pass

    stocks = [m.new_stock for m in db.session.query(StockMovement).all()]
    assert min(stocks) >= 0
    assert fresh(Product, product.id).stock == 0
