from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from salesflow.time_utils import to_utc_z, utcnow
from .enums import MovementDirection, MovementReason, enum_column_type


class ImmutableRowError(RuntimeError):
    """Raised when an append-only row is updated or deleted through the ORM."""


class Product(db.Model):
    """
    Product master data (owned by the catalog) plus the denormalized stock
    counter this package keeps in step with the movement ledger.

    The counter is only written by services.stock_ledger_service, and the
    version_id column turns a concurrent counter write into StaleDataError.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_products_stock_nonneg"),
        db.Index("ix_products_internal_code", "internal_code"),
        db.Index("ix_products_barcode", "barcode"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    internal_code = db.Column(db.String(64), nullable=True)
    barcode = db.Column(db.String(64), nullable=True)
    stock_unit = db.Column(db.String(16), nullable=False, default="un")

    stock = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.internal_code!r} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "internal_code": self.internal_code,
            "barcode": self.barcode,
            "stock_unit": self.stock_unit,
            "stock": self.stock,
            "version_id": self.version_id,
        }


class StockMovement(db.Model):
    """
    Append-only stock ledger entry.

    new_stock = previous_stock +/- quantity, and equals the product counter
    at the moment the row was written. Rows are never updated; the only
    delete path is the orphan cleanup in services.reconciliation_service,
    which issues a bulk DELETE.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_qty_pos"),
        db.CheckConstraint("new_stock >= 0", name="ck_stock_movements_new_stock_nonneg"),
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        db.Index("ix_stock_movements_reason_reference", "reason", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    direction = db.Column(enum_column_type(MovementDirection, length=8), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    reason = db.Column(enum_column_type(MovementReason), nullable=False, index=True)
    # Order id (as text) for sale-related reasons; free reference otherwise
    reference_id = db.Column(db.String(64), nullable=True, index=True)
    notes = db.Column(db.String(255), nullable=True)

    created_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product", lazy=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "direction": self.direction.value,
            "quantity": self.quantity,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "reason": self.reason.value,
            "reference_id": self.reference_id,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(StockMovement, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise ImmutableRowError(f"StockMovement {target.id} is immutable")


@event.listens_for(StockMovement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise ImmutableRowError(
        f"StockMovement {target.id} cannot be deleted; only orphan cleanup removes ledger rows"
    )
