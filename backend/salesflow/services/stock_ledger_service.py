# Overview: Service-layer operations for the stock ledger; every counter change goes through here.

"""
Stock ledger invariants (authoritative)

- products.stock is a denormalized counter; stock_movements is the ledger.
- Every counter change appends exactly one StockMovement in the same DB
  transaction, with previous_stock/new_stock bracketing the change.
- new_stock = previous_stock + quantity (in) or - quantity (out); never < 0.
- An outbound movement that would go negative raises InsufficientStock and
  writes nothing.
- Movements are never edited. Orphan cleanup (reconciliation_service) is the
  only delete path.
"""

from __future__ import annotations

from ..extensions import db
from ..models import MovementDirection, MovementReason, Product, StockMovement
from .concurrency import lock_for_update, run_in_transaction


RECEIVE_REASONS = {MovementReason.stock_entry, MovementReason.bulk_entry}


class StockLedgerError(ValueError):
    """Raised for invalid ledger requests (bad quantity, unknown product, no-op adjust)."""
    pass


class InsufficientStock(StockLedgerError):
    def __init__(self, product_id: int, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: available {available}, requested {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested
        self.details = {
            "product_id": product_id,
            "available": available,
            "requested": requested,
        }


def _require_positive_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise StockLedgerError(f"{field} must be an integer")
    if value <= 0:
        raise StockLedgerError(f"{field} must be greater than zero")
    return value


def _require_actor(actor) -> str:
    if not actor or not str(actor).strip():
        raise StockLedgerError("actor is required")
    return str(actor).strip()


def _load_product(product_id: int, *, lock: bool = True) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise StockLedgerError(f"Product {product_id} not found")
    return product


def _append_movement(
    product_id: int,
    direction,
    quantity: int,
    reason,
    reference_id,
    actor: str,
    notes: str | None = None,
) -> StockMovement:
    """
    Append one movement and move the counter, without committing.

    Shared by the order service so that debiting several items is a single
    transaction: the first InsufficientStock aborts all of them.
    """
    quantity = _require_positive_int(quantity, "quantity")
    actor = _require_actor(actor)
    try:
        direction = MovementDirection(direction)
        reason = MovementReason(reason)
    except ValueError as exc:
        raise StockLedgerError(str(exc)) from exc

    product = _load_product(product_id, lock=True)
    previous_stock = product.stock

    if direction == MovementDirection.outbound:
        new_stock = previous_stock - quantity
        if new_stock < 0:
            raise InsufficientStock(product.id, previous_stock, quantity)
    else:
        new_stock = previous_stock + quantity

    product.stock = new_stock
    movement = StockMovement(
        product_id=product.id,
        direction=direction,
        quantity=quantity,
        previous_stock=previous_stock,
        new_stock=new_stock,
        reason=reason,
        reference_id=str(reference_id) if reference_id is not None else None,
        notes=notes,
        created_by=actor,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def append_movement(
    product_id: int,
    direction,
    quantity: int,
    reason,
    reference_id,
    actor: str,
    notes: str | None = None,
) -> StockMovement:
    """Append a movement and update the product counter atomically."""
    return run_in_transaction(
        lambda: _append_movement(product_id, direction, quantity, reason, reference_id, actor, notes)
    )


def adjust_stock_to(product_id: int, new_stock: int, actor: str, notes: str | None = None) -> StockMovement:
    """
    Manual stock edit expressed as the absolute quantity counted on the shelf.

    Records a manual_adjustment movement for the difference. Asking for the
    current quantity is rejected, since it would write an empty movement.
    """
    if isinstance(new_stock, bool) or not isinstance(new_stock, int):
        raise StockLedgerError("new_stock must be an integer")
    if new_stock < 0:
        raise StockLedgerError("new_stock cannot be negative")

    def _op():
        product = _load_product(product_id, lock=True)
        delta = new_stock - product.stock
        if delta == 0:
            raise StockLedgerError(f"Product {product_id} already has stock {new_stock}")
        direction = MovementDirection.inbound if delta > 0 else MovementDirection.outbound
        return _append_movement(
            product.id,
            direction,
            abs(delta),
            MovementReason.manual_adjustment,
            None,
            actor,
            notes,
        )

    return run_in_transaction(_op)


def receive_stock(
    product_id: int,
    quantity: int,
    actor: str,
    notes: str | None = None,
    reason=MovementReason.stock_entry,
) -> StockMovement:
    reason = MovementReason(reason)
    if reason not in RECEIVE_REASONS:
        raise StockLedgerError(f"'{reason.value}' is not a stock entry reason")
    return append_movement(product_id, MovementDirection.inbound, quantity, reason, None, actor, notes)


def receive_stock_bulk(entries, actor: str) -> list[StockMovement]:
    """
    Receive several products at once (bulk_entry). All-or-nothing.

    entries: iterable of {"product_id", "quantity", "notes"?} dicts.
    """
    entries = list(entries or [])
    if not entries:
        raise StockLedgerError("At least one entry is required")

    def _op():
        movements = []
        for entry in entries:
            if not isinstance(entry, dict) or "product_id" not in entry:
                raise StockLedgerError("Each entry needs product_id and quantity")
            movements.append(
                _append_movement(
                    entry["product_id"],
                    MovementDirection.inbound,
                    entry.get("quantity"),
                    MovementReason.bulk_entry,
                    None,
                    actor,
                    entry.get("notes"),
                )
            )
        return movements

    return run_in_transaction(_op)


def list_movements(
    product_id: int | None = None,
    reference_id=None,
    limit: int = 200,
) -> list[StockMovement]:
    """Stock history, newest first."""
    query = db.session.query(StockMovement)
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    if reference_id is not None:
        query = query.filter(StockMovement.reference_id == str(reference_id))
    limit = max(1, min(int(limit), 1000))
    return (
        query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(limit)
        .all()
    )
