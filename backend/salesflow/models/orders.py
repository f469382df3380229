from __future__ import annotations

from ..extensions import db
from salesflow.time_utils import to_utc_z, utcnow
from .enums import Stage, enum_column_type


# Completion marker column prefix for each stage that can be "done".
# Delivered has no marker of its own: reaching it completes delivery.
MARKER_PREFIXES = {
    Stage.separation: "separation",
    Stage.verification: "verification",
    Stage.invoicing: "invoicing",
    Stage.awaiting_delivery: "delivery",
}


class Order(db.Model):
    """
    Sale born from an accepted quote, pushed through the fulfillment pipeline.

    Stage changes go through services.fulfillment_service only; the
    version_id column makes two writers racing on the same order fail
    with StaleDataError instead of silently overwriting each other.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_stage_created", "stage", "created_at"),
        db.CheckConstraint(
            "separation_percentage >= 0 AND separation_percentage <= 100",
            name="ck_orders_separation_pct",
        ),
        db.CheckConstraint(
            "verification_percentage >= 0 AND verification_percentage <= 100",
            name="ck_orders_verification_pct",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    budget_id = db.Column(db.String(64), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    created_by = db.Column(db.String(64), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    stage = db.Column(
        enum_column_type(Stage),
        nullable=False,
        default=Stage.separation,
        index=True,
    )

    # Completion markers (actor, timestamp); null means pending
    separation_by = db.Column(db.String(64), nullable=True)
    separation_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verification_by = db.Column(db.String(64), nullable=True)
    verification_at = db.Column(db.DateTime(timezone=True), nullable=True)
    invoicing_by = db.Column(db.String(64), nullable=True)
    invoicing_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivery_by = db.Column(db.String(64), nullable=True)
    delivery_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Denormalized for cheap display
    separation_percentage = db.Column(db.Integer, nullable=False, default=0)
    verification_percentage = db.Column(db.Integer, nullable=False, default=0)

    invoice_number = db.Column(db.String(64), nullable=True)
    delivery_note = db.Column(db.Text, nullable=True)
    total_volumes = db.Column(db.Integer, nullable=True)
    total_weight_kg = db.Column(db.Numeric(10, 3), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
        lazy=True,
    )
    volumes = db.relationship(
        "ShipmentVolume",
        order_by="ShipmentVolume.volume_number",
        cascade="all, delete-orphan",
        lazy=True,
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} stage={self.stage.value if self.stage else None}>"

    @property
    def total_cents(self) -> int:
        return sum(item.total_cents for item in self.items)

    def marker(self, stage: Stage) -> tuple[str | None, object]:
        prefix = MARKER_PREFIXES[stage]
        return getattr(self, f"{prefix}_by"), getattr(self, f"{prefix}_at")

    def set_marker(self, stage: Stage, actor: str, at) -> None:
        prefix = MARKER_PREFIXES[stage]
        setattr(self, f"{prefix}_by", actor)
        setattr(self, f"{prefix}_at", at)

    def clear_marker(self, stage: Stage) -> None:
        prefix = MARKER_PREFIXES[stage]
        setattr(self, f"{prefix}_by", None)
        setattr(self, f"{prefix}_at", None)

    def has_marker(self, stage: Stage) -> bool:
        by, at = self.marker(stage)
        return by is not None and at is not None

    def to_dict(self, *, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "budget_id": self.budget_id,
            "stage": self.stage.value,
            "created_at": to_utc_z(self.created_at),
            "created_by": self.created_by,
            "notes": self.notes,
            "markers": {
                stage.value: {
                    "by": self.marker(stage)[0],
                    "at": to_utc_z(self.marker(stage)[1]),
                }
                for stage in MARKER_PREFIXES
            },
            "separation_percentage": self.separation_percentage,
            "verification_percentage": self.verification_percentage,
            "invoice_number": self.invoice_number,
            "delivery_note": self.delivery_note,
            "total_volumes": self.total_volumes,
            "total_weight_kg": float(self.total_weight_kg) if self.total_weight_kg is not None else None,
            "total_cents": self.total_cents,
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_qty_pos"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_order_items_price_nonneg"),
        db.CheckConstraint("discount_cents >= 0", name="ck_order_items_discount_nonneg"),
        db.Index("ix_order_items_order_position", "order_id", "position"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product", lazy="joined")

    def recompute_total(self) -> int:
        """quantity x unit price, net of the line discount (never below zero)."""
        self.total_cents = max(0, self.quantity * self.unit_price_cents - (self.discount_cents or 0))
        return self.total_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "position": self.position,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
        }


class ShipmentVolume(db.Model):
    """Package captured at the end of verification (count + weight)."""
    __tablename__ = "shipment_volumes"
    __table_args__ = (
        db.UniqueConstraint("order_id", "volume_number", name="uq_shipment_volumes_order_number"),
        db.CheckConstraint("weight_kg > 0", name="ck_shipment_volumes_weight_pos"),
        db.CheckConstraint("volume_number > 0", name="ck_shipment_volumes_number_pos"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    volume_number = db.Column(db.Integer, nullable=False)
    weight_kg = db.Column(db.Numeric(10, 3), nullable=False)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "volume_number": self.volume_number,
            "weight_kg": float(self.weight_kg),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
