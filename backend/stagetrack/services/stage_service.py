# Overview: Moves orders and items through the pipeline and appends StatusEvents for each move.

"""
Stage Advancement

RULES:
1. Target must be a pipeline stage (ValidationError otherwise)
2. Same stage is a no-op: no event, no audit entry
3. Forward: one step, or any later stage with allow_fast_forward
4. Backward: only with allow_backward; recorded as a correction
5. Not gated by the order lock

Every accepted move appends one StatusEvent and one audit entry in the
same transaction as the stage write. The order row is re-read under
lock_for_update first, so two concurrent moves cannot both pass the
"current stage is X" check.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..extensions import db
from ..models import OrderItem, StatusEvent
from ..validation import IllegalTransitionError, NotFoundError, ValidationError
from . import audit_service
from .concurrency import run_atomic
from .lock_service import get_order_for_update
from .stage_pipeline import get_pipeline, label

logger = logging.getLogger(__name__)


def _resolve_move(current: str, target_raw, *, allow_fast_forward: bool, allow_backward: bool):
    """
    Returns (target, is_correction, is_fast_forward) or raises.
    target == current means no-op.
    """
    pipeline = get_pipeline()
    target = pipeline.normalize(target_raw)
    if target is None:
        raise ValidationError(f"Invalid stage: {target_raw}")

    if pipeline.can_advance(current, target, allow_fast_forward=allow_fast_forward):
        fast_forward = target != current and target != pipeline.next_stage(current)
        return target, False, fast_forward

    if pipeline.can_move_backward(current, target):
        if allow_backward:
            return target, True, False
        raise IllegalTransitionError(current, target, "moving backward requires an explicit correction")

    if pipeline.is_terminal(current):
        raise IllegalTransitionError(current, target, f"{current} is the final stage")
    raise IllegalTransitionError(
        current, target,
        f"only the next stage ({pipeline.next_stage(current)}) is allowed without fast-forward",
    )


def _event_note(note: Optional[str], current: str, target: str, correction: bool) -> Optional[str]:
    cleaned = (note or "").strip() or None
    if not correction:
        return cleaned
    prefix = f"Correction: moved back from {label(current)} to {label(target)}"
    return f"{prefix}. {cleaned}" if cleaned else prefix


def advance_order_stage(
    order_id: str,
    next_stage,
    actor,
    *,
    note: Optional[str] = None,
    allow_fast_forward: bool = False,
    allow_backward: bool = False,
):
    """
    Move an order to next_stage.

    Returns (order, status_event); status_event is None for a same-stage
    request.
    """
    def _op():
        order = get_order_for_update(order_id)
        current = order.current_stage
        target, correction, fast_forward = _resolve_move(
            current, next_stage, allow_fast_forward=allow_fast_forward, allow_backward=allow_backward,
        )
        if target == current:
            return order, None

        event_note = _event_note(note, current, target, correction)
        order.current_stage = target
        event = StatusEvent(
            order_id=order.id,
            stage=target,
            note=event_note,
            performed_by_user_id=actor.user_id,
            performed_by_name=actor.name,
        )
        db.session.add(event)

        audit_service.record(
            entity_type=audit_service.ENTITY_ORDER,
            entity_id=order.id,
            action=audit_service.STAGE_CHANGED,
            actor=actor,
            changes=[audit_service.FieldChange.of("current_stage", current, target)],
            metadata=audit_service.StageChangeMetadata(
                from_stage=current,
                to_stage=target,
                note=event_note,
                correction=correction,
                fast_forward=fast_forward,
            ),
        )
        db.session.commit()
        if correction:
            logger.warning("Order %s moved back from %s to %s by %s", order.id, current, target, actor.name)
        return order, event

    return run_atomic(_op)


def advance_item_stage(
    order_id: str,
    item_id: str,
    next_stage,
    actor,
    *,
    note: Optional[str] = None,
    allow_fast_forward: bool = False,
    allow_backward: bool = False,
):
    """
    Move one item independently of its order. The item's baseline is its
    effective stage, so an item with no override starts from the order's.
    """
    def _op():
        order = get_order_for_update(order_id)
        item = db.session.query(OrderItem).filter_by(id=item_id, order_id=order.id).first()
        if item is None:
            raise NotFoundError(f"Item {item_id} not found on order {order_id}")

        current = get_pipeline().effective_stage(item, order)
        target, correction, fast_forward = _resolve_move(
            current, next_stage, allow_fast_forward=allow_fast_forward, allow_backward=allow_backward,
        )
        if target == current:
            return item, None

        event_note = _event_note(note, current, target, correction)
        previous_override = item.current_stage
        item.current_stage = target
        event = StatusEvent(
            order_id=order.id,
            order_item_id=item.id,
            stage=target,
            note=event_note,
            performed_by_user_id=actor.user_id,
            performed_by_name=actor.name,
        )
        db.session.add(event)

        audit_service.record(
            entity_type=audit_service.ENTITY_ITEM,
            entity_id=item.id,
            parent_entity_id=order.id,
            action=audit_service.ITEM_STAGE_CHANGED,
            actor=actor,
            changes=[audit_service.FieldChange.of("current_stage", previous_override, target)],
            metadata=audit_service.StageChangeMetadata(
                from_stage=current,
                to_stage=target,
                note=event_note,
                correction=correction,
                fast_forward=fast_forward,
            ),
        )
        db.session.commit()
        if correction:
            logger.warning("Item %s moved back from %s to %s by %s", item.id, current, target, actor.name)
        return item, event

    return run_atomic(_op)
