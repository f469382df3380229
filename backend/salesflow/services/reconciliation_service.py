# Overview: Service-layer operations for auditing the stock counter against the movement ledger.

"""
Stock integrity audit

- calculated_stock = sum(in) - sum(out) over every ledger row of a product.
- difference = system_stock (products.stock) - calculated_stock.
- An orphaned movement is a sale-related row (sale, sale_edit,
  sale_item_removal, sale_cancellation) whose reference_id does not name an
  existing order and was not reversed: the rows of that order and product
  do not net to zero. A deletion with restock writes sale_cancellation
  credits that cancel the sale rows, so it leaves no orphans.
- The audit only reads. Orphan cleanup deletes ledger rows and never writes
  products.stock; run the audit again afterwards, since removing rows moves
  calculated_stock.
- Aligning the counter to the ledger is a separate, explicit, justified call.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import String, and_, case, cast, exists, func, or_, select
from sqlalchemy.orm import aliased

from ..extensions import db
from ..models import ORDER_REASONS, MovementDirection, Order, Product, StockMovement
from .concurrency import lock_for_update, run_in_transaction
from .stock_ledger_service import StockLedgerError


@dataclass(frozen=True)
class StockIntegrityRow:
    product_id: int
    product_name: str
    system_stock: int
    calculated_stock: int
    difference: int
    total_entries: int
    total_exits: int
    orphaned_movement_count: int

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "system_stock": self.system_stock,
            "calculated_stock": self.calculated_stock,
            "difference": self.difference,
            "total_entries": self.total_entries,
            "total_exits": self.total_exits,
            "orphaned_movements": self.orphaned_movement_count,
        }


@dataclass(frozen=True)
class OrphanCleanupResult:
    deleted_count: int
    total_quantity: int

    def to_dict(self) -> dict:
        return {"deleted_count": self.deleted_count, "total_quantity": self.total_quantity}


def _signed_quantity(model):
    return case((model.direction == MovementDirection.inbound, model.quantity), else_=-model.quantity)


def orphan_filter():
    """
    SQL criterion matching orphaned movements.

    Rows of a missing order are grouped per product; a group whose signed
    quantities sum to zero was compensated and is not orphaned.
    """
    sibling = aliased(StockMovement)
    net = (
        select(func.coalesce(func.sum(_signed_quantity(sibling)), 0))
        .where(
            sibling.product_id == StockMovement.product_id,
            sibling.reference_id == StockMovement.reference_id,
            sibling.reason.in_(list(ORDER_REASONS)),
        )
        .correlate(StockMovement)
        .scalar_subquery()
    )
    order_exists = exists().where(cast(Order.id, String) == StockMovement.reference_id)
    return and_(
        StockMovement.reason.in_(list(ORDER_REASONS)),
        or_(
            StockMovement.reference_id.is_(None),
            and_(~order_exists, net != 0),
        ),
    )


def _ledger_totals(product_id: int | None = None) -> dict[int, tuple[int, int]]:
    entries = func.coalesce(
        func.sum(case((StockMovement.direction == MovementDirection.inbound, StockMovement.quantity), else_=0)),
        0,
    )
    exits = func.coalesce(
        func.sum(case((StockMovement.direction == MovementDirection.outbound, StockMovement.quantity), else_=0)),
        0,
    )
    query = db.session.query(StockMovement.product_id, entries, exits)
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    return {
        pid: (int(total_in or 0), int(total_out or 0))
        for pid, total_in, total_out in query.group_by(StockMovement.product_id).all()
    }


def _orphan_counts() -> dict[int, int]:
    rows = (
        db.session.query(StockMovement.product_id, func.count(StockMovement.id))
        .filter(orphan_filter())
        .group_by(StockMovement.product_id)
        .all()
    )
    return {pid: int(count) for pid, count in rows}


def calculated_stock(product_id: int) -> int:
    total_in, total_out = _ledger_totals(product_id).get(product_id, (0, 0))
    return total_in - total_out


def compute_integrity() -> list[StockIntegrityRow]:
    """Products whose counter disagrees with the ledger or that carry orphaned movements."""
    totals = _ledger_totals()
    orphans = _orphan_counts()

    report = []
    for product in db.session.query(Product).order_by(Product.id).all():
        total_in, total_out = totals.get(product.id, (0, 0))
        calculated = total_in - total_out
        difference = product.stock - calculated
        orphaned = orphans.get(product.id, 0)
        if difference == 0 and orphaned == 0:
            continue
        report.append(
            StockIntegrityRow(
                product_id=product.id,
                product_name=product.name,
                system_stock=product.stock,
                calculated_stock=calculated,
                difference=difference,
                total_entries=total_in,
                total_exits=total_out,
                orphaned_movement_count=orphaned,
            )
        )
    return report


def clean_orphaned_movements() -> OrphanCleanupResult:
    """Delete orphaned movements. products.stock is left as it is."""
    def _op():
        orphaned = db.session.query(StockMovement.id, StockMovement.quantity).filter(orphan_filter()).all()
        if not orphaned:
            return OrphanCleanupResult(0, 0)
        ids = [movement_id for movement_id, _ in orphaned]
        db.session.query(StockMovement).filter(StockMovement.id.in_(ids)).delete(
            synchronize_session="fetch"
        )
        return OrphanCleanupResult(len(ids), sum(quantity for _, quantity in orphaned))

    result = run_in_transaction(_op)
    if result.deleted_count:
        current_app.logger.warning(
            "Deleted %d orphaned stock movement(s) totalling %d unit(s)",
            result.deleted_count, result.total_quantity,
        )
    return result


def align_stock_to_ledger(product_id: int, actor: str, justification: str) -> dict:
    """
    Set a product's counter to its calculated stock.

    Never called automatically. Requires a justification; the change is logged
    but, unlike ledger writes, leaves no movement: the ledger already explains
    the target value.
    """
    if not actor or not str(actor).strip():
        raise StockLedgerError("actor is required")
    justification = (justification or "").strip()
    if not justification:
        raise StockLedgerError("A justification is required to align stock to the ledger")

    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None:
            raise StockLedgerError(f"Product {product_id} not found")
        target = calculated_stock(product.id)
        if target < 0:
            raise StockLedgerError(
                f"Ledger for product {product_id} sums to {target}; clean orphaned movements first"
            )
        previous = product.stock
        if previous == target:
            raise StockLedgerError(f"Product {product_id} already matches its ledger ({target})")
        product.stock = target
        return {"product_id": product.id, "previous_stock": previous, "new_stock": target}

    result = run_in_transaction(_op)
    current_app.logger.warning(
        "Stock of product %s aligned to ledger by %s: %s -> %s (%s)",
        product_id, actor, result["previous_stock"], result["new_stock"], justification,
    )
    return result
