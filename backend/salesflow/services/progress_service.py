# Overview: Service-layer operations for picking (separation) and verification progress per order item.

"""
Item progress

- One SeparationProgress / VerificationProgress row per (order, item); no row
  means the item was not touched yet. Recording again overwrites the row, and
  recording the same quantity twice leaves the row untouched.
- Separation is correct when confirmed == expected; verification stores
  is_correct. A wrong verification count does not undo other items: the
  whole-order guard in fulfillment_service decides the regression.
- Percentage = items with a row / items on the order, rounded half-up and
  persisted on the order for display.
- Progress never touches the stock ledger.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import set_committed_value

from ..extensions import db
from ..models import Order, OrderItem, SeparationProgress, Stage, VerificationProgress
from salesflow.time_utils import utcnow
from .concurrency import run_in_transaction
from .order_service import load_order


class ProgressError(ValueError):
    """Raised when progress cannot be recorded (wrong stage, unknown item, bad quantity)."""
    pass


@dataclass(frozen=True)
class QuantityMismatch:
    """A confirmed count that differs from the ordered quantity. Data, not an error."""
    order_item_id: int
    product_id: int
    product_name: str | None
    expected: int
    confirmed: int

    @property
    def difference(self) -> int:
        return self.confirmed - self.expected

    def describe(self) -> str:
        label = self.product_name or f"product {self.product_id}"
        if self.difference < 0:
            gap = f"short by {-self.difference}"
        else:
            gap = f"over by {self.difference}"
        return f"item {self.order_item_id} ({label}): expected {self.expected}, confirmed {self.confirmed} ({gap})"

    def to_dict(self) -> dict:
        return {
            "order_item_id": self.order_item_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "expected": self.expected,
            "confirmed": self.confirmed,
            "difference": self.difference,
        }


@dataclass
class ProgressResult:
    progress: object | None
    percentage: int
    mismatch: QuantityMismatch | None = None

    def to_dict(self) -> dict:
        return {
            "progress": self.progress.to_dict() if self.progress is not None else None,
            "percentage": self.percentage,
            "mismatch": self.mismatch.to_dict() if self.mismatch else None,
        }


@dataclass
class CodeLookupResult:
    status: str  # found | not_found | ambiguous
    item: OrderItem | None = None
    candidates: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "item": self.item.to_dict() if self.item is not None else None,
            "candidates": [item.to_dict() for item in self.candidates],
        }


def progress_percentage(done: int, total: int) -> int:
    """Integer percentage, rounded half-up. Zero items means 0%."""
    if total <= 0:
        return 0
    done = max(0, min(done, total))
    return (done * 200 + total) // (2 * total)


def rows_by_item(model, order_id: int) -> dict:
    rows = db.session.query(model).filter(model.order_id == order_id).all()
    return {row.order_item_id: row for row in rows}


def _count_rows(model, order: Order) -> int:
    item_ids = {item.id for item in order.items}
    return sum(1 for item_id in rows_by_item(model, order.id) if item_id in item_ids)


def refresh_percentages(order: Order) -> tuple[int, int]:
    """
    Recompute and persist both percentages.

    Written with a plain UPDATE so that progress on different items of the
    same order does not trip the order's version counter.
    """
    total = len(order.items)
    separation = progress_percentage(_count_rows(SeparationProgress, order), total)
    verification = progress_percentage(_count_rows(VerificationProgress, order), total)
    db.session.query(Order).filter(Order.id == order.id).update(
        {
            Order.separation_percentage: separation,
            Order.verification_percentage: verification,
        },
        synchronize_session=False,
    )
    set_committed_value(order, "separation_percentage", separation)
    set_committed_value(order, "verification_percentage", verification)
    return separation, verification


def sync_expected_quantity(order: Order, item: OrderItem) -> None:
    """Carry an item quantity edit into its existing progress rows."""
    for model in (SeparationProgress, VerificationProgress):
        row = (
            db.session.query(model)
            .filter(model.order_id == order.id, model.order_item_id == item.id)
            .first()
        )
        if row is None:
            continue
        row.expected_quantity = item.quantity
        if model is VerificationProgress:
            row.is_correct = row.confirmed_quantity == item.quantity


def _find_item(order: Order, item_id: int) -> OrderItem:
    for item in order.items:
        if item.id == item_id:
            return item
    raise ProgressError(f"Item {item_id} does not belong to order {order.id}")


def _load_in_stage(order_id: int, stage: Stage) -> Order:
    """
    Load the order under its row lock and check the stage.

    Transitions take the same lock, so a progress write either finishes
    before a transition reads the progress rows or sees the new stage.
    FOR UPDATE rather than a shared lock: refresh_percentages writes the row.
    """
    order = load_order(order_id, lock=True)
    if order.stage != stage:
        raise ProgressError(
            f"Order {order.id} is in {order.stage.value}; {stage.value} progress can only be recorded in {stage.value}"
        )
    return order


def _validate_quantity(confirmed_quantity) -> int:
    if isinstance(confirmed_quantity, bool) or not isinstance(confirmed_quantity, int):
        raise ProgressError("confirmed_quantity must be an integer")
    if confirmed_quantity < 0:
        raise ProgressError("confirmed_quantity cannot be negative")
    return confirmed_quantity


def _mismatch(item: OrderItem, confirmed: int) -> QuantityMismatch | None:
    if confirmed == item.quantity:
        return None
    return QuantityMismatch(
        order_item_id=item.id,
        product_id=item.product_id,
        product_name=item.product.name if item.product is not None else None,
        expected=item.quantity,
        confirmed=confirmed,
    )


def _upsert(model, order: Order, item: OrderItem, confirmed: int, actor: str, **extra):
    row = (
        db.session.query(model)
        .filter(model.order_id == order.id, model.order_item_id == item.id)
        .first()
    )
    if row is None:
        row = model(
            order_id=order.id,
            order_item_id=item.id,
            expected_quantity=item.quantity,
            confirmed_quantity=confirmed,
            confirmed_by=actor,
            confirmed_at=utcnow(),
            **extra,
        )
        try:
            with db.session.begin_nested():
                db.session.add(row)
        except IntegrityError:
            # Another writer inserted the same item first; overwrite theirs.
            row = (
                db.session.query(model)
                .filter(model.order_id == order.id, model.order_item_id == item.id)
                .one()
            )
        else:
            return row

    unchanged = (
        row.confirmed_quantity == confirmed
        and row.expected_quantity == item.quantity
        and all(getattr(row, key) == value for key, value in extra.items())
    )
    if unchanged:
        return row

    row.expected_quantity = item.quantity
    row.confirmed_quantity = confirmed
    row.confirmed_by = actor
    row.confirmed_at = utcnow()
    for key, value in extra.items():
        setattr(row, key, value)
    db.session.flush()
    return row


def record_separation(order_id: int, item_id: int, confirmed_quantity: int, actor: str) -> ProgressResult:
    confirmed = _validate_quantity(confirmed_quantity)

    def _op():
        order = _load_in_stage(order_id, Stage.separation)
        item = _find_item(order, item_id)
        row = _upsert(SeparationProgress, order, item, confirmed, actor)
        separation, _ = refresh_percentages(order)
        return ProgressResult(row, separation, _mismatch(item, confirmed))

    return run_in_transaction(_op)


def record_verification(order_id: int, item_id: int, confirmed_quantity: int, actor: str) -> ProgressResult:
    confirmed = _validate_quantity(confirmed_quantity)

    def _op():
        order = _load_in_stage(order_id, Stage.verification)
        item = _find_item(order, item_id)
        row = _upsert(
            VerificationProgress,
            order,
            item,
            confirmed,
            actor,
            is_correct=confirmed == item.quantity,
        )
        _, verification = refresh_percentages(order)
        return ProgressResult(row, verification, _mismatch(item, confirmed))

    return run_in_transaction(_op)


def clear_separation(order_id: int, item_id: int, actor: str) -> ProgressResult:
    """Toggle an item back to "not picked". Picking never moved stock, so there is nothing to undo."""
    def _op():
        order = _load_in_stage(order_id, Stage.separation)
        item = _find_item(order, item_id)
        db.session.query(SeparationProgress).filter(
            SeparationProgress.order_id == order.id,
            SeparationProgress.order_item_id == item.id,
        ).delete(synchronize_session="fetch")
        separation, _ = refresh_percentages(order)
        return ProgressResult(None, separation)

    return run_in_transaction(_op)


def summarize_progress(order_id: int) -> dict:
    order = load_order(order_id)
    separation_rows = rows_by_item(SeparationProgress, order.id)
    verification_rows = rows_by_item(VerificationProgress, order.id)

    items = []
    for item in order.items:
        picked = separation_rows.get(item.id)
        verified = verification_rows.get(item.id)
        items.append({
            "order_item_id": item.id,
            "product_id": item.product_id,
            "product_name": item.product.name if item.product is not None else None,
            "quantity": item.quantity,
            "separation": picked.to_dict() if picked else None,
            "verification": verified.to_dict() if verified else None,
        })

    total = len(order.items)
    picked_count = sum(1 for item in order.items if item.id in separation_rows)
    verified_count = sum(1 for item in order.items if item.id in verification_rows)
    return {
        "order_id": order.id,
        "stage": order.stage.value,
        "total_items": total,
        "separation": {
            "done": picked_count,
            "percentage": progress_percentage(picked_count, total),
        },
        "verification": {
            "done": verified_count,
            "percentage": progress_percentage(verified_count, total),
        },
        "items": items,
    }


def lookup_item_by_code(order_id: int, code: str) -> CodeLookupResult:
    """
    Match a scanned or typed code against the order's items.

    Matches internal code, barcode, or the exact product name ignoring case.
    Several items matching the same code are reported as ambiguous with the
    candidates, never silently resolved to the first one.
    """
    needle = (code or "").strip()
    if not needle:
        raise ProgressError("code is required")
    lowered = needle.lower()

    order = load_order(order_id)
    matches = []
    for item in order.items:
        product = item.product
        if product is None:
            continue
        if (
            (product.internal_code and product.internal_code.strip() == needle)
            or (product.barcode and product.barcode.strip() == needle)
            or (product.name and product.name.strip().lower() == lowered)
        ):
            matches.append(item)

    if not matches:
        return CodeLookupResult(status="not_found")
    if len(matches) > 1:
        return CodeLookupResult(status="ambiguous", candidates=matches)
    return CodeLookupResult(status="found", item=matches[0], candidates=matches)
