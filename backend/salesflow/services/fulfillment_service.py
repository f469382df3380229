# Overview: Service-layer operations for the order fulfillment state machine.

"""
Order fulfillment state machine

================================================================================
PIPELINE
================================================================================

    separation -> verification -> invoicing -> awaiting_delivery -> delivered

    plus:
    - verification -> separation   automatic regression when any verified
                                   count is wrong
    - any stage -> any other       manual override (privileged, justified)
    - attention                    side stage, reachable by override only

Every guarded edge lives in TRANSITIONS as (stage, event) -> Transition, so the
guards and the marker each edge completes can be audited in one place.

RULES:
1. A guard failure raises PreconditionNotMet and writes nothing.
2. Every stage change appends exactly one OrderStatusLog entry.
3. The order row is loaded FOR UPDATE and carries a version counter; a lost
   race raises ConcurrencyConflict. Nothing is retried here.
4. Override forward backfills every skipped marker with (actor, now);
   override backward clears the target's marker and every later one.
================================================================================
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Callable

from flask import current_app

from ..extensions import db
from ..models import (
    MARKER_PREFIXES,
    PIPELINE,
    Order,
    SeparationProgress,
    ShipmentVolume,
    Stage,
    StatusLogKind,
    VerificationProgress,
)
from salesflow.time_utils import utcnow
from . import history_service
from .concurrency import run_in_transaction
from .order_service import OrderNotFound, load_order
from .progress_service import QuantityMismatch, refresh_percentages, rows_by_item


MAX_VOLUMES = 50


class PreconditionNotMet(Exception):
    """A transition guard is not satisfied. Recoverable by the caller; never retried."""
    def __init__(self, guard: str, message: str, details: dict | None = None):
        super().__init__(message)
        self.guard = guard
        self.details = details or {}


class TransitionError(ValueError):
    """
    Raised for requests the state machine rejects outright: an edge that does
    not exist, an unprivileged or unjustified override, missing invoice or
    delivery text.
    """
    pass


class TransitionEvent(str, enum.Enum):
    finalize_separation = "finalize_separation"
    finalize_verification = "finalize_verification"
    regress_verification = "regress_verification"
    confirm_invoice = "confirm_invoice"
    confirm_delivery = "confirm_delivery"


@dataclass(frozen=True)
class Transition:
    target: Stage
    guard: Callable | None
    completes: Stage | None
    kind: StatusLogKind = StatusLogKind.transition


@dataclass(frozen=True)
class MarkerPlan:
    backfill: tuple = ()
    clear: tuple = ()


@dataclass
class VerificationOutcome:
    order: Order
    regressed: bool
    mismatches: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "regressed": self.regressed,
            "mismatches": [m.to_dict() for m in self.mismatches],
        }


# ---------------------------------------------------------------------------
# Guards: guard(order, context) raises PreconditionNotMet or TransitionError
# ---------------------------------------------------------------------------

def _guard_all_picked(order: Order, context: dict) -> None:
    rows = rows_by_item(SeparationProgress, order.id)
    missing = [item.id for item in order.items if item.id not in rows]
    wrong = [
        {
            "order_item_id": item.id,
            "expected": item.quantity,
            "confirmed": rows[item.id].confirmed_quantity,
        }
        for item in order.items
        if item.id in rows and rows[item.id].confirmed_quantity != item.quantity
    ]
    pending = len(missing) + len(wrong)
    if pending:
        raise PreconditionNotMet(
            "all_items_picked",
            f"{pending} of {len(order.items)} items not yet picked",
            details={"missing_item_ids": missing, "wrong_quantities": wrong},
        )


def _guard_all_verified(order: Order, context: dict) -> None:
    rows = rows_by_item(VerificationProgress, order.id)
    missing = [item.id for item in order.items if item.id not in rows]
    if missing:
        raise PreconditionNotMet(
            "all_items_verified",
            f"{len(missing)} of {len(order.items)} items not yet verified",
            details={"missing_item_ids": missing},
        )


def _guard_verified_and_packed(order: Order, context: dict) -> None:
    _guard_all_verified(order, context)
    rows = rows_by_item(VerificationProgress, order.id)
    incorrect = [item.id for item in order.items if not rows[item.id].is_correct]
    if incorrect:
        raise PreconditionNotMet(
            "all_items_correct",
            f"{len(incorrect)} of {len(order.items)} items verified with a wrong quantity",
            details={"incorrect_item_ids": incorrect},
        )
    if not order.volumes:
        raise PreconditionNotMet(
            "shipment_volumes_captured",
            "Shipment volumes and weights must be captured before finishing verification",
        )


def _guard_invoice_number(order: Order, context: dict) -> None:
    if not (context.get("invoice_number") or "").strip():
        raise TransitionError("invoice_number is required")


def _guard_delivery_note(order: Order, context: dict) -> None:
    if not (context.get("delivery_note") or "").strip():
        raise TransitionError("delivery_note is required")


TRANSITIONS = {
    (Stage.separation, TransitionEvent.finalize_separation): Transition(
        target=Stage.verification,
        guard=_guard_all_picked,
        completes=Stage.separation,
    ),
    (Stage.verification, TransitionEvent.finalize_verification): Transition(
        target=Stage.invoicing,
        guard=_guard_verified_and_packed,
        completes=Stage.verification,
    ),
    (Stage.verification, TransitionEvent.regress_verification): Transition(
        target=Stage.separation,
        guard=_guard_all_verified,
        completes=None,
        kind=StatusLogKind.regression,
    ),
    (Stage.invoicing, TransitionEvent.confirm_invoice): Transition(
        target=Stage.awaiting_delivery,
        guard=_guard_invoice_number,
        completes=Stage.invoicing,
    ),
    (Stage.awaiting_delivery, TransitionEvent.confirm_delivery): Transition(
        target=Stage.delivered,
        guard=_guard_delivery_note,
        completes=Stage.awaiting_delivery,
    ),
}


def _require_actor(actor) -> str:
    if not actor or not str(actor).strip():
        raise TransitionError("actor is required")
    return str(actor).strip()


def _fire(order: Order, event: TransitionEvent, actor: str, reason: str, context: dict | None = None) -> Transition:
    transition = TRANSITIONS.get((order.stage, event))
    if transition is None:
        raise TransitionError(f"Cannot {event.value} an order in {order.stage.value}")
    if transition.guard is not None:
        transition.guard(order, context or {})

    previous = order.stage
    order.stage = transition.target
    if transition.completes is not None:
        order.set_marker(transition.completes, actor, utcnow())
    history_service.append(order.id, previous, transition.target, actor, reason, transition.kind)
    return transition


def finalize_separation(order_id: int, actor: str) -> Order:
    actor = _require_actor(actor)

    def _op():
        order = load_order(order_id, lock=True)
        _fire(order, TransitionEvent.finalize_separation, actor, "Separation completed")
        return order

    return run_in_transaction(_op)


def _parse_weights(weights_kg) -> list[Decimal]:
    weights = list(weights_kg or [])
    if not 1 <= len(weights) <= MAX_VOLUMES:
        raise TransitionError(f"Between 1 and {MAX_VOLUMES} volumes are required")
    parsed = []
    for number, raw in enumerate(weights, start=1):
        if isinstance(raw, bool):
            raise TransitionError(f"Volume {number}: weight must be a number")
        try:
            weight = Decimal(str(raw))
        except (InvalidOperation, ValueError):
            raise TransitionError(f"Volume {number}: weight must be a number")
        if not weight.is_finite() or weight <= 0:
            raise TransitionError(f"Volume {number}: weight must be greater than zero")
        parsed.append(weight.quantize(Decimal("0.001")))
    return parsed


def _replace_volumes(order: Order, weights: list[Decimal], actor: str) -> None:
    order.volumes.clear()
    db.session.flush()
    for number, weight in enumerate(weights, start=1):
        order.volumes.append(
            ShipmentVolume(volume_number=number, weight_kg=weight, created_by=actor)
        )
    order.total_volumes = len(weights)
    order.total_weight_kg = sum(weights, Decimal("0"))
    db.session.flush()


def record_shipment_volumes(order_id: int, weights_kg, actor: str) -> Order:
    """Capture (or recapture) the packed volumes and their weights during verification."""
    actor = _require_actor(actor)
    weights = _parse_weights(weights_kg)

    def _op():
        order = load_order(order_id, lock=True)
        if order.stage != Stage.verification:
            raise TransitionError(
                f"Volumes can only be captured in verification (current stage: {order.stage.value})"
            )
        _replace_volumes(order, weights, actor)
        return order

    return run_in_transaction(_op)


def _discrepancy_summary(mismatches: list[QuantityMismatch]) -> str:
    return "Verification discrepancies: " + "; ".join(m.describe() for m in mismatches)


def finalize_verification(order_id: int, actor: str, volume_weights_kg=None) -> VerificationOutcome:
    """
    Close verification.

    Every item must have been verified. If any count is wrong the order goes
    back to separation: verification rows, volumes and the separation and
    verification markers are cleared, picking rows are kept. Otherwise the
    shipment volumes (already captured, or passed here) are required and the
    order moves to invoicing.
    """
    actor = _require_actor(actor)
    weights = _parse_weights(volume_weights_kg) if volume_weights_kg is not None else None

    def _op():
        order = load_order(order_id, lock=True)
        if order.stage != Stage.verification:
            raise TransitionError(
                f"Cannot {TransitionEvent.finalize_verification.value} an order in {order.stage.value}"
            )

        rows = rows_by_item(VerificationProgress, order.id)
        mismatches = [
            QuantityMismatch(
                order_item_id=item.id,
                product_id=item.product_id,
                product_name=item.product.name if item.product is not None else None,
                expected=item.quantity,
                confirmed=rows[item.id].confirmed_quantity,
            )
            for item in order.items
            if item.id in rows and not rows[item.id].is_correct
        ]

        if mismatches:
            _fire(order, TransitionEvent.regress_verification, actor, _discrepancy_summary(mismatches))
            db.session.query(VerificationProgress).filter(
                VerificationProgress.order_id == order.id
            ).delete(synchronize_session="fetch")
            order.volumes.clear()
            order.total_volumes = None
            order.total_weight_kg = None
            order.clear_marker(Stage.separation)
            order.clear_marker(Stage.verification)
            db.session.flush()
            refresh_percentages(order)
            return VerificationOutcome(order, True, mismatches)

        if weights is not None:
            _replace_volumes(order, weights, actor)
        _fire(order, TransitionEvent.finalize_verification, actor, "Verification completed")
        return VerificationOutcome(order, False, [])

    outcome = run_in_transaction(_op)
    if outcome.regressed:
        current_app.logger.info(
            "Order %s regressed to separation by %s: %d item(s) with wrong counts",
            order_id, actor, len(outcome.mismatches),
        )
    return outcome


def confirm_invoice(order_id: int, invoice_number: str, actor: str) -> Order:
    actor = _require_actor(actor)
    invoice_number = (invoice_number or "").strip()

    def _op():
        order = load_order(order_id, lock=True)
        _fire(
            order,
            TransitionEvent.confirm_invoice,
            actor,
            f"Invoice {invoice_number} issued",
            {"invoice_number": invoice_number},
        )
        order.invoice_number = invoice_number
        return order

    return run_in_transaction(_op)


def confirm_delivery(order_id: int, delivery_note: str, actor: str) -> Order:
    actor = _require_actor(actor)
    delivery_note = (delivery_note or "").strip()

    def _op():
        order = load_order(order_id, lock=True)
        _fire(
            order,
            TransitionEvent.confirm_delivery,
            actor,
            delivery_note,
            {"delivery_note": delivery_note},
        )
        order.delivery_note = delivery_note
        return order

    return run_in_transaction(_op)


def plan_marker_changes(order: Order, target) -> MarkerPlan:
    """
    Markers an override to target must backfill and clear.

    Stages before the target that lack a marker are backfilled; the target's
    own marker and every later one are cleared. attention sits outside the
    pipeline and leaves markers alone.
    """
    target = Stage(target)
    if target == Stage.attention:
        return MarkerPlan()

    position = PIPELINE.index(target)
    backfill = []
    clear = []
    for stage in MARKER_PREFIXES:
        if PIPELINE.index(stage) < position:
            if not order.has_marker(stage):
                backfill.append(stage)
        elif order.has_marker(stage):
            clear.append(stage)
    return MarkerPlan(backfill=tuple(backfill), clear=tuple(clear))


def override_stage(order_id: int, target, actor, justification: str) -> Order:
    """
    Move an order to any other stage, bypassing the guards.

    actor is an ActorContext; only privileged actors may override, and only
    with a justification, which becomes the history reason.
    """
    if actor is None or not getattr(actor, "is_privileged", False):
        raise TransitionError("Only privileged users can override the order stage")
    actor_id = _require_actor(actor.actor_id)
    justification = (justification or "").strip()
    if not justification:
        raise TransitionError("A justification is required to override the stage")
    try:
        target = Stage(target)
    except ValueError:
        raise TransitionError(f"Unknown stage '{target}'")

    def _op():
        order = load_order(order_id, lock=True)
        if order.stage == target:
            raise TransitionError(f"Order {order.id} is already in {target.value}")

        plan = plan_marker_changes(order, target)
        now = utcnow()
        for stage in plan.backfill:
            order.set_marker(stage, actor_id, now)
        for stage in plan.clear:
            order.clear_marker(stage)

        previous = order.stage
        order.stage = target
        history_service.append(order.id, previous, target, actor_id, justification, StatusLogKind.override)
        return order, previous, plan

    order, previous, plan = run_in_transaction(_op)
    current_app.logger.warning(
        "Order %s stage overridden %s -> %s by %s (backfilled: %s, cleared: %s)",
        order_id,
        previous.value,
        target.value,
        actor_id,
        ",".join(s.value for s in plan.backfill) or "-",
        ",".join(s.value for s in plan.clear) or "-",
    )
    return order


def repair_completion_markers(order_id: int | None = None) -> list[dict]:
    """
    Backfill markers missing on orders that are already past a stage, using
    the order's creator and creation time. Not a transition: no history entry.
    Orders in attention are skipped since their position is unknown.
    """
    def _op():
        query = db.session.query(Order).filter(Order.stage != Stage.attention)
        if order_id is not None:
            query = query.filter(Order.id == order_id)
            if query.first() is None and db.session.get(Order, order_id) is None:
                raise OrderNotFound(order_id)
        repaired = []
        for order in query.order_by(Order.id).all():
            position = PIPELINE.index(order.stage)
            fixed = []
            for stage in MARKER_PREFIXES:
                if PIPELINE.index(stage) < position and not order.has_marker(stage):
                    order.set_marker(stage, order.created_by, order.created_at)
                    fixed.append(stage.value)
            if fixed:
                repaired.append({"order_id": order.id, "stages": fixed})
        return repaired

    repaired = run_in_transaction(_op)
    if repaired:
        current_app.logger.info("Repaired completion markers on %d order(s)", len(repaired))
    return repaired
