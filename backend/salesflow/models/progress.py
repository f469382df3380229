from __future__ import annotations

from ..extensions import db
from salesflow.time_utils import to_utc_z, utcnow


class SeparationProgress(db.Model):
    """
    Picking progress for one order item.

    One row per (order, item). A missing row means the item was not touched;
    re-confirming overwrites the row in place.
    """
    __tablename__ = "separation_progress"
    __table_args__ = (
        db.UniqueConstraint("order_id", "order_item_id", name="uq_separation_progress_order_item"),
        db.CheckConstraint("confirmed_quantity >= 0", name="ck_separation_progress_qty_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False)

    expected_quantity = db.Column(db.Integer, nullable=False)
    confirmed_quantity = db.Column(db.Integer, nullable=False)
    confirmed_by = db.Column(db.String(64), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def is_complete(self) -> bool:
        return self.confirmed_quantity == self.expected_quantity

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "order_item_id": self.order_item_id,
            "expected_quantity": self.expected_quantity,
            "confirmed_quantity": self.confirmed_quantity,
            "is_complete": self.is_complete,
            "confirmed_by": self.confirmed_by,
            "confirmed_at": to_utc_z(self.confirmed_at),
        }


class VerificationProgress(db.Model):
    """Verification (conference) result for one order item."""
    __tablename__ = "verification_progress"
    __table_args__ = (
        db.UniqueConstraint("order_id", "order_item_id", name="uq_verification_progress_order_item"),
        db.CheckConstraint("confirmed_quantity >= 0", name="ck_verification_progress_qty_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False)

    expected_quantity = db.Column(db.Integer, nullable=False)
    confirmed_quantity = db.Column(db.Integer, nullable=False)
    is_correct = db.Column(db.Boolean, nullable=False, default=False)
    confirmed_by = db.Column(db.String(64), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "order_item_id": self.order_item_id,
            "expected_quantity": self.expected_quantity,
            "confirmed_quantity": self.confirmed_quantity,
            "is_correct": self.is_correct,
            "confirmed_by": self.confirmed_by,
            "confirmed_at": to_utc_z(self.confirmed_at),
        }
