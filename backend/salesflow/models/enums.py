from __future__ import annotations

import enum

from ..extensions import db


class Stage(str, enum.Enum):
    separation = "separation"
    verification = "verification"
    invoicing = "invoicing"
    awaiting_delivery = "awaiting_delivery"
    delivered = "delivered"
    attention = "attention"


# Pipeline order; attention is a side state outside it.
PIPELINE = (
    Stage.separation,
    Stage.verification,
    Stage.invoicing,
    Stage.awaiting_delivery,
    Stage.delivered,
)


class MovementDirection(str, enum.Enum):
    inbound = "in"
    outbound = "out"


class MovementReason(str, enum.Enum):
    sale = "sale"
    sale_edit = "sale_edit"
    sale_item_removal = "sale_item_removal"
    sale_cancellation = "sale_cancellation"
    manual_adjustment = "manual_adjustment"
    stock_entry = "stock_entry"
    bulk_entry = "bulk_entry"


# Reasons whose reference_id points at an order
ORDER_REASONS = frozenset({
    MovementReason.sale,
    MovementReason.sale_edit,
    MovementReason.sale_item_removal,
    MovementReason.sale_cancellation,
})


class StatusLogKind(str, enum.Enum):
    created = "created"
    transition = "transition"
    regression = "regression"
    override = "override"


def enum_column_type(enum_cls, length: int = 32):
    """String-backed enum column storing member values (no native DB enum)."""
    return db.Enum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=length,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )
