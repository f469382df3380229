from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from salesflow.time_utils import to_utc_z, utcnow
from .enums import Stage, StatusLogKind, enum_column_type
from .inventory import ImmutableRowError


class OrderStatusLog(db.Model):
    """
    Append-only audit trail of stage changes.

    order_id is not a foreign key: the history of an order
    outlives the order row itself.
    """
    __tablename__ = "order_status_logs"
    __table_args__ = (
        db.Index("ix_order_status_logs_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, nullable=False)

    previous_stage = db.Column(enum_column_type(Stage), nullable=True)
    new_stage = db.Column(enum_column_type(Stage), nullable=False)
    kind = db.Column(enum_column_type(StatusLogKind, length=16), nullable=False)

    actor = db.Column(db.String(64), nullable=False)
    reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "previous_stage": self.previous_stage.value if self.previous_stage else None,
            "new_stage": self.new_stage.value,
            "kind": self.kind.value,
            "actor": self.actor,
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(OrderStatusLog, "before_update")
def _reject_log_update(mapper, connection, target):
    raise ImmutableRowError(f"OrderStatusLog {target.id} is append-only")


@event.listens_for(OrderStatusLog, "before_delete")
def _reject_log_delete(mapper, connection, target):
    raise ImmutableRowError(f"OrderStatusLog {target.id} is append-only")
