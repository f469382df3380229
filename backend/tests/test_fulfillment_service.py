"""Order fulfillment state machine: guards, regression, overrides and history."""

from decimal import Decimal

import pytest
from sqlalchemy import text

from salesflow.decorators import ActorContext
from salesflow.extensions import db
from salesflow.models import (
    Order,
    OrderStatusLog,
    SeparationProgress,
    Stage,
    StatusLogKind,
    VerificationProgress,
)
from salesflow.services import fulfillment_service, history_service, order_service, progress_service
from salesflow.services.concurrency import ConcurrencyConflict
from salesflow.services.fulfillment_service import (
    TRANSITIONS,
    PreconditionNotMet,
    TransitionError,
    TransitionEvent,
    plan_marker_changes,
)
from salesflow.services.order_service import OrderNotFound

from conftest import fresh


BOSS = ActorContext(actor_id="boss", roles=frozenset({"manager"}), is_privileged=True)
CLERK = ActorContext(actor_id="clerk", roles=frozenset({"seller"}), is_privileged=False)


@pytest.fixture
def order(make_product, make_order):
    a = make_product(name="Hex Bolt", stock=10)
    b = make_product(name="Wing Nut", stock=10)
    return make_order([(a, 3), (b, 5)])


def _pick_all(order):
    for item in order.items:
        progress_service.record_separation(order.id, item.id, item.quantity, "picker")
    return fulfillment_service.finalize_separation(order.id, "picker")


def _verify(order, counts):
    for item, count in zip(order.items, counts):
        progress_service.record_verification(order.id, item.id, count, "checker")


def _history(order_id):
    return history_service.list_for(order_id)


def test_transition_table_covers_the_pipeline():
    assert TRANSITIONS[(Stage.separation, TransitionEvent.finalize_separation)].target == Stage.verification
    assert TRANSITIONS[(Stage.verification, TransitionEvent.finalize_verification)].target == Stage.invoicing
    regression = TRANSITIONS[(Stage.verification, TransitionEvent.regress_verification)]
    assert regression.target == Stage.separation
    assert regression.kind == StatusLogKind.regression
    assert TRANSITIONS[(Stage.invoicing, TransitionEvent.confirm_invoice)].target == Stage.awaiting_delivery
    assert TRANSITIONS[(Stage.awaiting_delivery, TransitionEvent.confirm_delivery)].target == Stage.delivered
    assert not any(stage == Stage.attention for stage, _ in TRANSITIONS)


def test_finalize_separation_names_the_unpicked_items(order):
    first, second = order.items
    progress_service.record_separation(order.id, first.id, 3, "picker")
    progress_service.record_separation(order.id, second.id, 4, "picker")

    with pytest.raises(PreconditionNotMet) as exc_info:
        fulfillment_service.finalize_separation(order.id, "picker")

    assert exc_info.value.guard == "all_items_picked"
    assert "1 of 2 items not yet picked" in str(exc_info.value)
    assert exc_info.value.details["wrong_quantities"][0]["order_item_id"] == second.id
    assert fresh(Order, order.id).stage == Stage.separation
    assert len(_history(order.id)) == 1


def test_finalize_separation_sets_marker_and_logs(order):
    moved = _pick_all(order)

    assert moved.stage == Stage.verification
    assert moved.separation_by == "picker"
    assert moved.separation_at is not None
    last = _history(order.id)[-1]
    assert (last.previous_stage, last.new_stage, last.kind) == (
        Stage.separation, Stage.verification, StatusLogKind.transition
    )


def test_wrong_stage_is_a_transition_error(order):
    with pytest.raises(TransitionError):
        fulfillment_service.confirm_invoice(order.id, "NF-1", "billing")


def test_verification_requires_every_item(order):
    _pick_all(order)
    first, _ = order.items
    progress_service.record_verification(order.id, first.id, 3, "checker")

    with pytest.raises(PreconditionNotMet) as exc_info:
        fulfillment_service.finalize_verification(order.id, "checker", volume_weights_kg=[2.5])

    assert exc_info.value.guard == "all_items_verified"


def test_verification_mismatch_regresses_to_separation(order):
    _pick_all(order)
    _verify(order, [3, 4])
    fulfillment_service.record_shipment_volumes(order.id, [1.2], "checker")

    outcome = fulfillment_service.finalize_verification(order.id, "checker")

    assert outcome.regressed is True
    assert [m.order_item_id for m in outcome.mismatches] == [order.items[1].id]

    reloaded = fresh(Order, order.id)
    assert reloaded.stage == Stage.separation
    assert not reloaded.has_marker(Stage.separation)
    assert not reloaded.has_marker(Stage.verification)
    assert reloaded.verification_percentage == 0
    assert reloaded.separation_percentage == 100
    assert reloaded.volumes == []
    assert db.session.query(VerificationProgress).filter_by(order_id=order.id).count() == 0
    assert db.session.query(SeparationProgress).filter_by(order_id=order.id).count() == 2

    last = _history(order.id)[-1]
    assert last.kind == StatusLogKind.regression
    assert (last.previous_stage, last.new_stage) == (Stage.verification, Stage.separation)
    assert "Wing Nut" in last.reason
    assert "expected 5, confirmed 4" in last.reason
    assert "short by 1" in last.reason


def test_verification_requires_volumes(order):
    _pick_all(order)
    _verify(order, [3, 5])

    with pytest.raises(PreconditionNotMet) as exc_info:
        fulfillment_service.finalize_verification(order.id, "checker")

    assert exc_info.value.guard == "shipment_volumes_captured"
    assert fresh(Order, order.id).stage == Stage.verification


def test_verification_with_volumes_moves_to_invoicing(order):
    _pick_all(order)
    _verify(order, [3, 5])

    outcome = fulfillment_service.finalize_verification(
        order.id, "checker", volume_weights_kg=[2.5, "1.25"]
    )

    assert outcome.regressed is False
    reloaded = fresh(Order, order.id)
    assert reloaded.stage == Stage.invoicing
    assert reloaded.verification_by == "checker"
    assert reloaded.total_volumes == 2
    assert reloaded.total_weight_kg == Decimal("3.750")
    assert [v.volume_number for v in reloaded.volumes] == [1, 2]


@pytest.mark.parametrize("weights", [[], [0], [-1], ["heavy"], [1.0] * 51])
def test_volume_capture_is_validated(order, weights):
    _pick_all(order)

    with pytest.raises(TransitionError):
        fulfillment_service.record_shipment_volumes(order.id, weights, "checker")


def test_volume_capture_replaces_previous_capture(order):
    _pick_all(order)
    fulfillment_service.record_shipment_volumes(order.id, [1, 2, 3], "checker")
    fulfillment_service.record_shipment_volumes(order.id, [4], "checker")

    reloaded = fresh(Order, order.id)
    assert reloaded.total_volumes == 1
    assert [v.weight_kg for v in reloaded.volumes] == [Decimal("4.000")]


def test_invoice_and_delivery_complete_the_pipeline(order):
    _pick_all(order)
    _verify(order, [3, 5])
    fulfillment_service.finalize_verification(order.id, "checker", volume_weights_kg=[3])

    with pytest.raises(TransitionError):
        fulfillment_service.confirm_invoice(order.id, "   ", "billing")

    invoiced = fulfillment_service.confirm_invoice(order.id, "NF-1234", "billing")
    assert invoiced.stage == Stage.awaiting_delivery
    assert invoiced.invoice_number == "NF-1234"
    assert invoiced.invoicing_by == "billing"

    with pytest.raises(TransitionError):
        fulfillment_service.confirm_delivery(order.id, "", "driver")

    delivered = fulfillment_service.confirm_delivery(order.id, "Received by J. Silva", "driver")
    assert delivered.stage == Stage.delivered
    assert delivered.delivery_by == "driver"
    assert delivered.delivery_note == "Received by J. Silva"

    stages = [(e.previous_stage, e.new_stage) for e in _history(order.id)]
    assert stages == [
        (None, Stage.separation),
        (Stage.separation, Stage.verification),
        (Stage.verification, Stage.invoicing),
        (Stage.invoicing, Stage.awaiting_delivery),
        (Stage.awaiting_delivery, Stage.delivered),
    ]
    assert history_service.find_history_violations(order.id) == []


def test_override_forward_backfills_skipped_markers(order):
    moved = fulfillment_service.override_stage(order.id, Stage.awaiting_delivery, BOSS, "Customer picked up at counter")

    assert moved.stage == Stage.awaiting_delivery
    for stage in (Stage.separation, Stage.verification, Stage.invoicing):
        by, at = moved.marker(stage)
        assert by == "boss"
        assert at is not None
    assert not moved.has_marker(Stage.awaiting_delivery)

    last = _history(order.id)[-1]
    assert last.kind == StatusLogKind.override
    assert last.reason == "Customer picked up at counter"
    assert history_service.find_history_violations(order.id) == []


def test_override_keeps_existing_markers_when_backfilling(order):
    _pick_all(order)

    moved = fulfillment_service.override_stage(order.id, "invoicing", BOSS, "Checked by phone")

    assert moved.separation_by == "picker"
    assert moved.verification_by == "boss"


def test_override_backward_clears_target_and_later_markers(order):
    fulfillment_service.override_stage(order.id, Stage.delivered, BOSS, "Legacy order")

    moved = fulfillment_service.override_stage(order.id, Stage.verification, BOSS, "Wrong box shipped")

    assert moved.has_marker(Stage.separation)
    for stage in (Stage.verification, Stage.invoicing, Stage.awaiting_delivery):
        assert not moved.has_marker(stage)


def test_override_to_attention_leaves_markers(order):
    _pick_all(order)

    moved = fulfillment_service.override_stage(order.id, Stage.attention, BOSS, "Customer complaint")

    assert moved.stage == Stage.attention
    assert moved.separation_by == "picker"
    assert plan_marker_changes(moved, Stage.attention).backfill == ()


def test_plan_marker_changes(order):
    plan = plan_marker_changes(order, Stage.delivered)

    assert plan.backfill == (Stage.separation, Stage.verification, Stage.invoicing, Stage.awaiting_delivery)
    assert plan.clear == ()


@pytest.mark.parametrize("actor,justification,target", [
    (CLERK, "Because", "delivered"),
    (None, "Because", "delivered"),
    (BOSS, "   ", "delivered"),
    (BOSS, "Because", "separation"),
    (BOSS, "Because", "shipped"),
])
def test_override_rejections(order, actor, justification, target):
    with pytest.raises(TransitionError):
        fulfillment_service.override_stage(order.id, target, actor, justification)

    assert fresh(Order, order.id).stage == Stage.separation
    assert len(_history(order.id)) == 1


def test_lost_race_raises_concurrency_conflict(order):
    loaded = db.session.get(Order, order.id)
    assert loaded.version_id is not None
    # another writer bumps the row behind this session's back
    db.session.execute(
        text("UPDATE orders SET version_id = version_id + 1 WHERE id = :id"),
        {"id": order.id},
    )

    with pytest.raises(ConcurrencyConflict):
        fulfillment_service.override_stage(order.id, Stage.attention, BOSS, "Escalated")

    reloaded = fresh(Order, order.id)
    assert reloaded.stage == Stage.separation
    assert db.session.query(OrderStatusLog).filter_by(order_id=order.id).count() == 1


def test_history_violations_are_reported(order):
    db.session.add(OrderStatusLog(
        order_id=order.id,
        previous_stage=Stage.separation,
        new_stage=Stage.delivered,
        kind=StatusLogKind.transition,
        actor="intruder",
    ))
    db.session.add(OrderStatusLog(
        order_id=order.id,
        previous_stage=Stage.invoicing,
        new_stage=Stage.attention,
        kind=StatusLogKind.override,
        actor="boss",
        reason="",
    ))
    db.session.commit()

    problems = [v.problem for v in history_service.find_history_violations(order.id)]

    assert problems == [
        "transition is not a forward pipeline edge",
        "previous_stage does not match the preceding entry",
    ]


def test_repair_backfills_markers_with_creator(order, make_product, make_order):
    db.session.execute(
        text("UPDATE orders SET stage = 'invoicing' WHERE id = :id"),
        {"id": order.id},
    )
    db.session.commit()
    untouched = make_order([(make_product(name="Spare", stock=2), 1)])

    repaired = fulfillment_service.repair_completion_markers()

    assert repaired == [{"order_id": order.id, "stages": ["separation", "verification"]}]
    reloaded = fresh(Order, order.id)
    assert reloaded.separation_by == "seller"
    assert reloaded.separation_at == reloaded.created_at
    assert fulfillment_service.repair_completion_markers(untouched.id) == []
    assert len(_history(order.id)) == 1


def test_unknown_order(db_session):
    with pytest.raises(OrderNotFound):
        order_service.load_order(123)
    with pytest.raises(OrderNotFound):
        fulfillment_service.repair_completion_markers(123)
