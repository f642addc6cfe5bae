# Overview: Order lock/unlock state machine and the field-tier gate every edit passes through.

"""
Order Lock Gate

================================================================================
STATE MACHINE:
    UNLOCKED --lock (any staff)--> LOCKED
    LOCKED --unlock (admin + reason >= 10 chars)--> UNLOCKED
================================================================================

FIELD TIERS:
1. Always editable: item measurements, archived_at, order customer_docs_link.
   Procurement fields (item_price, private_item_note) are always editable
   but only by admins.
2. Frozen while locked: the descriptive item and order fields below. A
   request touching any of them is rejected whole and the attempt is
   audited (EDIT_ATTEMPTED_WHILE_LOCKED), committed even though the edit
   itself is not.
3. Deletes of a locked order, or of an item on one, are rejected and
   audited (DELETE_ATTEMPTED_WHILE_LOCKED).

Stage moves are not gated by the lock; see stage_service.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from ..extensions import db
from ..models import Order
from ..validation import (
    AuthorizationError,
    NotFoundError,
    OrderLockedError,
    PolicyError,
    ValidationError,
    require_reason,
)
from . import audit_service
from .concurrency import lock_for_update, run_atomic
from stagetrack.time_utils import utcnow

logger = logging.getLogger(__name__)


UNLOCK_REASON_MIN_LENGTH = 10

MEASUREMENT_FIELDS = frozenset({
    "height", "width", "length", "weight", "measurement_unit", "weight_unit",
})
PROCUREMENT_FIELDS = frozenset({"item_price", "private_item_note"})

ITEM_ALWAYS_FIELDS = MEASUREMENT_FIELDS | {"archived_at"}
ITEM_LOCKED_FIELDS = frozenset({
    "product_code", "qty", "serial_number", "model_number", "voltage", "laser_wattage", "notes",
})
ITEM_EDITABLE_FIELDS = ITEM_ALWAYS_FIELDS | PROCUREMENT_FIELDS | ITEM_LOCKED_FIELDS

ORDER_ALWAYS_FIELDS = frozenset({"customer_docs_link"})
ORDER_LOCKED_FIELDS = frozenset({
    "account_id", "po_number", "sales_rep", "shipping_address", "shipping_method",
})
ORDER_EDITABLE_FIELDS = ORDER_ALWAYS_FIELDS | ORDER_LOCKED_FIELDS


def get_order_for_update(order_id: str) -> Order:
    """Re-read the order row inside the current transaction, locked when the backend supports it."""
    order = lock_for_update(db.session.query(Order).filter(Order.id == order_id)).first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def check_fields(fields: Iterable[str], *, editable: frozenset, actor) -> list[str]:
    """
    Validate requested field names against the editable set and the
    actor's role. Raised errors here record nothing.
    """
    names = sorted(set(fields))
    if "current_stage" in names:
        raise ValidationError("current_stage cannot be edited directly; use a stage move")
    unknown = [f for f in names if f not in editable]
    if unknown:
        raise ValidationError(f"Unknown or read-only fields: {', '.join(unknown)}")
    if not getattr(actor, "is_admin", False):
        restricted = [f for f in names if f in PROCUREMENT_FIELDS]
        if restricted:
            raise AuthorizationError(f"Only admins can edit {', '.join(restricted)}")
    return names


def blocked_fields(order: Order, fields: Iterable[str], *, locked_tier: frozenset) -> list[str]:
    if not order.is_locked:
        return []
    return sorted(f for f in set(fields) if f in locked_tier)


def reject_locked_edit(
    order: Order,
    attempted: list[str],
    actor,
    *,
    entity_type: str,
    entity_id,
    parent_entity_id=None,
) -> None:
    """
    Record the blocked attempt, commit it, and raise OrderLockedError.

    Must be called inside the unit of work before anything is mutated, so
    the commit carries only the audit entry.
    """
    audit_service.record(
        entity_type=entity_type,
        entity_id=entity_id,
        parent_entity_id=parent_entity_id,
        action=audit_service.EDIT_ATTEMPTED_WHILE_LOCKED,
        actor=actor,
        metadata=audit_service.LockViolationMetadata(
            message=f"Attempted to edit {', '.join(attempted)} while order is locked",
            attempted_fields=tuple(attempted),
        ),
    )
    db.session.commit()
    logger.warning("Blocked edit of %s on locked order %s by %s", attempted, order.id, actor.name)
    raise OrderLockedError(
        f"Order is locked; cannot edit {', '.join(attempted)}. An admin must unlock it first."
    )


def reject_locked_delete(order: Order, actor, *, entity_type: str, entity_id, parent_entity_id=None) -> None:
    what = "order" if entity_type == audit_service.ENTITY_ORDER else "item"
    audit_service.record(
        entity_type=entity_type,
        entity_id=entity_id,
        parent_entity_id=parent_entity_id,
        action=audit_service.DELETE_ATTEMPTED_WHILE_LOCKED,
        actor=actor,
        metadata=audit_service.LockViolationMetadata(
            message=f"Attempted to delete {what} while order is locked",
        ),
    )
    db.session.commit()
    logger.warning("Blocked delete of %s %s on locked order %s by %s", what, entity_id, order.id, actor.name)
    raise OrderLockedError(f"Cannot delete {what} while the order is locked")


def lock_order(order_id: str, actor, reason: Optional[str] = None) -> Order:
    """Lock an order. Rejected when already locked; the existing lock stamp is kept."""
    note = (reason or "").strip() or None

    def _op():
        order = get_order_for_update(order_id)
        if order.is_locked:
            raise PolicyError(f"Order is already locked (by {order.locked_by or 'unknown'})")

        before = {"is_locked": order.is_locked, "locked_at": order.locked_at, "locked_by": order.locked_by}
        order.is_locked = True
        order.locked_at = utcnow()
        order.locked_by = actor.name

        audit_service.record(
            entity_type=audit_service.ENTITY_ORDER,
            entity_id=order.id,
            action=audit_service.LOCKED,
            actor=actor,
            changes=audit_service.diff_fields(before, {
                "is_locked": order.is_locked,
                "locked_at": order.locked_at,
                "locked_by": order.locked_by,
            }),
            metadata=audit_service.ReasonMetadata(message=note or "Order locked"),
        )
        db.session.commit()
        return order

    return run_atomic(_op)


def unlock_order(order_id: str, actor, reason: Optional[str]) -> Order:
    """Admin-only unlock with a written justification."""
    if not getattr(actor, "is_admin", False):
        raise AuthorizationError("Only admins can unlock orders")
    cleaned = require_reason(reason, min_length=UNLOCK_REASON_MIN_LENGTH, action="unlocking an order")

    def _op():
        order = get_order_for_update(order_id)
        if not order.is_locked:
            raise PolicyError("Order is not locked")

        before = {"is_locked": order.is_locked, "locked_at": order.locked_at, "locked_by": order.locked_by}
        order.is_locked = False
        order.locked_at = None
        order.locked_by = None

        audit_service.record(
            entity_type=audit_service.ENTITY_ORDER,
            entity_id=order.id,
            action=audit_service.UNLOCKED,
            actor=actor,
            changes=audit_service.diff_fields(before, {
                "is_locked": order.is_locked,
                "locked_at": order.locked_at,
                "locked_by": order.locked_by,
            }),
            metadata=audit_service.ReasonMetadata(message=cleaned),
        )
        db.session.commit()
        return order

    order = run_atomic(_op)
    logger.info("Order %s unlocked by %s", order.id, actor.name)
    return order
