# Overview: Service-layer operations for orders; creation from a quote and item edits with their ledger effects.

"""
Orders and the stock ledger

- Creating an order debits every item (reason 'sale', reference = order id).
- Item edits debit or credit only the difference ('sale_edit',
  'sale_item_removal').
- Deleting an order with restock credits every item back
  ('sale_cancellation'). Deleting without restock leaves the sale
  movements pointing at a missing order; those are the orphans the
  reconciler reports.
- Items can be edited while the order is in separation or attention only,
  and an order always keeps at least one item.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import (
    MovementDirection,
    MovementReason,
    Order,
    OrderItem,
    SeparationProgress,
    Stage,
    StatusLogKind,
    VerificationProgress,
)
from .concurrency import lock_for_update, run_in_transaction
from .stock_ledger_service import _append_movement
from . import history_service


EDITABLE_STAGES = {Stage.separation, Stage.attention}


class OrderNotFound(LookupError):
    def __init__(self, order_id):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class OrderEditError(ValueError):
    """Raised when an order or its items cannot be changed as requested."""
    pass


def load_order(order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise OrderNotFound(order_id)
    return order


def _int_field(data: dict, field: str, *, minimum: int, default=None) -> int:
    value = data.get(field, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise OrderEditError(f"{field} must be an integer")
    if value < minimum:
        raise OrderEditError(f"{field} must be >= {minimum}")
    return value


def _normalize_item(data) -> dict:
    if not isinstance(data, dict):
        raise OrderEditError("Each item must be an object")
    if data.get("product_id") is None:
        raise OrderEditError("product_id is required")
    return {
        "product_id": data["product_id"],
        "quantity": _int_field(data, "quantity", minimum=1),
        "unit_price_cents": _int_field(data, "unit_price_cents", minimum=0, default=0),
        "discount_cents": _int_field(data, "discount_cents", minimum=0, default=0),
    }


def _require_editable(order: Order) -> None:
    if order.stage not in EDITABLE_STAGES:
        raise OrderEditError(
            f"Order {order.id} items can only be edited in separation or attention "
            f"(current stage: {order.stage.value})"
        )


def _find_item(order: Order, item_id: int) -> OrderItem:
    for item in order.items:
        if item.id == item_id:
            return item
    raise OrderEditError(f"Item {item_id} does not belong to order {order.id}")


def create_order(
    created_by: str,
    items,
    budget_id: str | None = None,
    notes: str | None = None,
) -> Order:
    """
    Convert an accepted quote into an order in separation.

    All items are debited in one transaction; any InsufficientStock aborts the
    whole conversion and nothing is written.
    """
    if not created_by or not str(created_by).strip():
        raise OrderEditError("created_by is required")
    normalized = [_normalize_item(data) for data in (items or [])]
    if not normalized:
        raise OrderEditError("An order needs at least one item")

    def _op():
        order = Order(
            created_by=created_by,
            budget_id=budget_id,
            notes=notes,
            stage=Stage.separation,
        )
        db.session.add(order)
        db.session.flush()

        for position, data in enumerate(normalized, start=1):
            _append_movement(
                data["product_id"],
                MovementDirection.outbound,
                data["quantity"],
                MovementReason.sale,
                order.id,
                created_by,
                notes=f"Order {order.id}",
            )
            item = OrderItem(position=position, **data)
            item.recompute_total()
            order.items.append(item)

        history_service.append(
            order.id,
            None,
            Stage.separation,
            created_by,
            reason="Order created" + (f" from quote {budget_id}" if budget_id else ""),
            kind=StatusLogKind.created,
        )
        return order

    order = run_in_transaction(_op)
    current_app.logger.info("Order %s created by %s with %d items", order.id, created_by, len(normalized))
    return order


def update_item_quantity(order_id: int, item_id: int, quantity: int, actor: str) -> OrderItem:
    """Change an item quantity and move stock by the difference only."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise OrderEditError("quantity must be a positive integer")

    def _op():
        from .progress_service import refresh_percentages, sync_expected_quantity

        order = load_order(order_id, lock=True)
        _require_editable(order)
        item = _find_item(order, item_id)

        delta = quantity - item.quantity
        if delta == 0:
            return item
        direction = MovementDirection.outbound if delta > 0 else MovementDirection.inbound
        _append_movement(
            item.product_id,
            direction,
            abs(delta),
            MovementReason.sale_edit,
            order.id,
            actor,
            notes=f"Order {order.id} item {item.id}: {item.quantity} -> {quantity}",
        )
        item.quantity = quantity
        item.recompute_total()
        sync_expected_quantity(order, item)
        refresh_percentages(order)
        return item

    return run_in_transaction(_op)


def add_item(
    order_id: int,
    product_id: int,
    quantity: int,
    unit_price_cents: int,
    actor: str,
    discount_cents: int = 0,
) -> OrderItem:
    data = _normalize_item({
        "product_id": product_id,
        "quantity": quantity,
        "unit_price_cents": unit_price_cents,
        "discount_cents": discount_cents,
    })

    def _op():
        from .progress_service import refresh_percentages

        order = load_order(order_id, lock=True)
        _require_editable(order)
        _append_movement(
            data["product_id"],
            MovementDirection.outbound,
            data["quantity"],
            MovementReason.sale_edit,
            order.id,
            actor,
            notes=f"Order {order.id}: item added",
        )
        position = max((item.position for item in order.items), default=0) + 1
        item = OrderItem(position=position, **data)
        item.recompute_total()
        order.items.append(item)
        db.session.flush()
        refresh_percentages(order)
        return item

    return run_in_transaction(_op)


def remove_item(order_id: int, item_id: int, actor: str) -> Order:
    """Drop an item, credit its stock back and forget its progress."""
    def _op():
        from .progress_service import refresh_percentages

        order = load_order(order_id, lock=True)
        _require_editable(order)
        item = _find_item(order, item_id)
        if len(order.items) <= 1:
            raise OrderEditError("An order must keep at least one item")

        _append_movement(
            item.product_id,
            MovementDirection.inbound,
            item.quantity,
            MovementReason.sale_item_removal,
            order.id,
            actor,
            notes=f"Order {order.id}: item {item.id} removed",
        )
        for model in (SeparationProgress, VerificationProgress):
            db.session.query(model).filter(
                model.order_id == order.id,
                model.order_item_id == item.id,
            ).delete(synchronize_session=False)
        order.items.remove(item)
        db.session.flush()
        refresh_percentages(order)
        return order

    return run_in_transaction(_op)


def delete_order(order_id: int, actor: str, *, restock: bool = True) -> dict:
    """
    Delete an order with its items, progress rows and volumes.

    History and ledger rows are kept. restock=True credits every item back
    with 'sale_cancellation' movements first.
    """
    def _op():
        order = load_order(order_id, lock=True)
        credited = 0
        if restock:
            for item in order.items:
                _append_movement(
                    item.product_id,
                    MovementDirection.inbound,
                    item.quantity,
                    MovementReason.sale_cancellation,
                    order.id,
                    actor,
                    notes=f"Order {order.id} deleted",
                )
                credited += item.quantity

        for model in (SeparationProgress, VerificationProgress):
            db.session.query(model).filter(model.order_id == order.id).delete(synchronize_session=False)
        db.session.delete(order)
        return {"order_id": order_id, "restocked": restock, "restocked_quantity": credited}

    result = run_in_transaction(_op)
    if restock:
        current_app.logger.info("Order %s deleted by %s; %d units restocked", order_id, actor, result["restocked_quantity"])
    else:
        current_app.logger.warning("Order %s deleted by %s without restock", order_id, actor)
    return result
