# Overview: Service-layer operations for the order status history (append-only audit trail).

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..models import OrderStatusLog, PIPELINE, Stage, StatusLogKind


@dataclass(frozen=True)
class HistoryViolation:
    log_id: int
    problem: str
    previous_stage: str | None
    new_stage: str
    kind: str

    def to_dict(self) -> dict:
        return {
            "log_id": self.log_id,
            "problem": self.problem,
            "previous_stage": self.previous_stage,
            "new_stage": self.new_stage,
            "kind": self.kind,
        }


def append(
    order_id: int,
    previous_stage,
    new_stage,
    actor: str,
    reason: str | None = None,
    kind=StatusLogKind.transition,
) -> OrderStatusLog:
    """Add one history entry in the caller's transaction (flush, no commit)."""
    entry = OrderStatusLog(
        order_id=order_id,
        previous_stage=Stage(previous_stage) if previous_stage is not None else None,
        new_stage=Stage(new_stage),
        kind=StatusLogKind(kind),
        actor=actor,
        reason=reason,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def list_for(order_id: int) -> list[OrderStatusLog]:
    return (
        db.session.query(OrderStatusLog)
        .filter(OrderStatusLog.order_id == order_id)
        .order_by(OrderStatusLog.created_at.asc(), OrderStatusLog.id.asc())
        .all()
    )


def _is_forward_edge(previous: Stage, new: Stage) -> bool:
    if previous == Stage.attention or new == Stage.attention:
        return False
    return PIPELINE.index(new) == PIPELINE.index(previous) + 1


def find_history_violations(order_id: int) -> list[HistoryViolation]:
    """
    Replay an order's history and report entries the state machine could not
    have produced.

    Accepted entries: a single leading 'created' entry into separation, forward
    pipeline edges, the verification -> separation regression, and overrides
    that carry a reason. Each entry's previous_stage must equal the stage the
    previous entry moved to.
    """
    violations = []
    current = None
    for index, entry in enumerate(list_for(order_id)):
        problem = None
        if entry.kind == StatusLogKind.created:
            if index != 0:
                problem = "created entry is not the first entry"
            elif entry.previous_stage is not None or entry.new_stage != Stage.separation:
                problem = "order must be created in separation"
        elif index == 0:
            problem = "history does not start with a created entry"
        elif entry.previous_stage != current:
            problem = "previous_stage does not match the preceding entry"
        elif entry.kind == StatusLogKind.transition:
            if not _is_forward_edge(entry.previous_stage, entry.new_stage):
                problem = "transition is not a forward pipeline edge"
        elif entry.kind == StatusLogKind.regression:
            if (entry.previous_stage, entry.new_stage) != (Stage.verification, Stage.separation):
                problem = "regression must go from verification to separation"
        elif entry.kind == StatusLogKind.override:
            if not (entry.reason or "").strip():
                problem = "override without justification"
            elif entry.previous_stage == entry.new_stage:
                problem = "override does not change the stage"

        if problem:
            violations.append(
                HistoryViolation(
                    log_id=entry.id,
                    problem=problem,
                    previous_stage=entry.previous_stage.value if entry.previous_stage else None,
                    new_stage=entry.new_stage.value,
                    kind=entry.kind.value,
                )
            )
        current = entry.new_stage
    return violations
