# Overview: Accounts, orders and items: creation, gated edits, measurements, procurement, deletes and read snapshots.

"""
Order Service

Every mutation here follows one shape:

    def _op():
        order = get_order_for_update(order_id)   # re-read under lock
        ... check lock tier / preconditions ...
        ... mutate ...
        audit_service.record(...)                # same transaction
        db.session.commit()
    run_atomic(_op)

Field names and values are validated before the unit of work starts, so a
validation failure records nothing. A lock violation is the one failure
that leaves a trace: its audit entry is committed before the error is
raised.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from ..extensions import db
from ..models import Account, Order, OrderItem, StatusEvent
from ..validation import (
    AccountInUseError,
    AuthorizationError,
    FieldPolicy,
    NotFoundError,
    PolicyError,
    ValidationError,
    enforce_rules_item,
    require_reason,
    validate_payload,
)
from . import audit_service, risk_service, threshold_service
from .concurrency import run_atomic
from .lock_service import (
    ITEM_EDITABLE_FIELDS,
    ITEM_LOCKED_FIELDS,
    MEASUREMENT_FIELDS,
    ORDER_EDITABLE_FIELDS,
    ORDER_LOCKED_FIELDS,
    PROCUREMENT_FIELDS,
    blocked_fields,
    check_fields,
    get_order_for_update,
    reject_locked_delete,
    reject_locked_edit,
)
from .stage_pipeline import get_pipeline, label
from stagetrack.time_utils import to_utc_z, utcnow

logger = logging.getLogger(__name__)


ACCOUNT_POLICY = FieldPolicy(
    writable_fields=frozenset({"name", "contact_email"}),
    required_on_create=frozenset({"name"}),
)

ORDER_CREATE_POLICY = FieldPolicy(
    writable_fields=ORDER_EDITABLE_FIELDS,
    required_on_create=frozenset({"account_id"}),
)
ORDER_EDIT_POLICY = FieldPolicy(writable_fields=ORDER_EDITABLE_FIELDS)

ITEM_CREATE_POLICY = FieldPolicy(
    writable_fields=ITEM_LOCKED_FIELDS | PROCUREMENT_FIELDS | MEASUREMENT_FIELDS,
    required_on_create=frozenset({"product_code"}),
)
ITEM_EDIT_POLICY = FieldPolicy(writable_fields=ITEM_EDITABLE_FIELDS)
MEASUREMENT_POLICY = FieldPolicy(writable_fields=MEASUREMENT_FIELDS)

UNORDER_REASON_MIN_LENGTH = 10


def _require_admin(actor, action: str) -> None:
    if not getattr(actor, "is_admin", False):
        raise AuthorizationError(f"Only admins can {action}")


def _get_item(order: Order, item_id: str) -> OrderItem:
    item = db.session.query(OrderItem).filter_by(id=item_id, order_id=order.id).first()
    if item is None:
        raise NotFoundError(f"Item {item_id} not found on order {order.id}")
    return item


def _require_account(account_id: str) -> Account:
    account = db.session.get(Account, account_id)
    if account is None:
        raise NotFoundError(f"Account {account_id} not found")
    return account


def _snapshot_fields(obj, fields: Iterable[str]) -> dict:
    return {f: getattr(obj, f) for f in fields}


def _clean_item_payload(raw, actor) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError("Each item must be an object")
    check_fields(raw.keys(), editable=ITEM_CREATE_POLICY.writable_fields, actor=actor)
    patch = validate_payload(model=OrderItem, payload=raw, policy=ITEM_CREATE_POLICY, partial=False)
    patch.setdefault("qty", 1)
    enforce_rules_item(patch)
    return patch


def _item_summary(item: OrderItem) -> dict:
    return {"id": item.id, "product_code": item.product_code, "qty": item.qty}


# ================================================================================
# ACCOUNTS
# ================================================================================

def create_account(payload: dict, actor) -> Account:
    patch = validate_payload(model=Account, payload=payload, policy=ACCOUNT_POLICY, partial=False)

    def _op():
        account = Account(
            name=patch["name"],
            contact_email=patch.get("contact_email"),
            created_by_user_id=actor.user_id,
        )
        db.session.add(account)
        db.session.flush()
        audit_service.record(
            entity_type=audit_service.ENTITY_ACCOUNT,
            entity_id=account.id,
            action=audit_service.ACCOUNT_CREATED,
            actor=actor,
            metadata=audit_service.SnapshotMetadata(
                message=f"Account {account.name} created",
                data={"name": account.name, "contact_email": account.contact_email},
            ),
        )
        db.session.commit()
        return account

    return run_atomic(_op)


def list_accounts() -> list[Account]:
    return db.session.query(Account).order_by(Account.name.asc()).all()


def delete_account(account_id: str, actor) -> None:
    """
    Delete an account that has no orders. An account with orders is
    rejected with the blocking orders listed; nothing is recorded.
    """
    def _op():
        account = _require_account(account_id)
        orders = (
            db.session.query(Order)
            .filter(Order.account_id == account.id)
            .order_by(Order.created_at.asc())
            .all()
        )
        if orders:
            raise AccountInUseError(account.name, [
                {"id": o.id, "po_number": o.po_number, "current_stage": o.current_stage}
                for o in orders
            ])

        audit_service.record(
            entity_type=audit_service.ENTITY_ACCOUNT,
            entity_id=account.id,
            action=audit_service.ACCOUNT_DELETED,
            actor=actor,
            metadata=audit_service.SnapshotMetadata(
                message=f"Account {account.name} deleted",
                data={"name": account.name, "contact_email": account.contact_email},
            ),
        )
        db.session.delete(account)
        db.session.commit()

    run_atomic(_op)
    logger.info("Account %s deleted by %s", account_id, actor.name)


# ================================================================================
# ORDERS
# ================================================================================

def create_order(payload: dict, actor) -> Order:
    """
    Create an order, its initial StatusEvent and any items given under
    "items". The starting stage defaults to the first pipeline stage.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    payload = dict(payload)
    raw_items = payload.pop("items", None) or []
    raw_stage = payload.pop("current_stage", None)

    pipeline = get_pipeline()
    stage = pipeline.first
    if raw_stage is not None:
        stage = pipeline.normalize(raw_stage)
        if stage is None:
            raise ValidationError(f"Invalid stage: {raw_stage}")

    check_fields(payload.keys(), editable=ORDER_CREATE_POLICY.writable_fields, actor=actor)
    patch = validate_payload(model=Order, payload=payload, policy=ORDER_CREATE_POLICY, partial=False)
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list")
    item_patches = [_clean_item_payload(raw, actor) for raw in raw_items]

    def _op():
        _require_account(patch["account_id"])
        now = utcnow()
        order = Order(current_stage=stage, created_by_user_id=actor.user_id, created_at=now, **patch)
        order.eta_date = threshold_service.estimate_eta(now)
        db.session.add(order)
        db.session.flush()

        db.session.add(StatusEvent(
            order_id=order.id,
            stage=stage,
            note="Order created",
            performed_by_user_id=actor.user_id,
            performed_by_name=actor.name,
            created_at=now,
        ))
        items = []
        for item_patch in item_patches:
            item = OrderItem(order_id=order.id, **item_patch)
            db.session.add(item)
            items.append(item)
        db.session.flush()

        audit_service.record(
            entity_type=audit_service.ENTITY_ORDER,
            entity_id=order.id,
            action=audit_service.ORDER_CREATED,
            actor=actor,
            metadata=audit_service.SnapshotMetadata(
                message=f"Order created at {label(stage)}",
                data={
                    "account_id": order.account_id,
                    "po_number": order.po_number,
                    "current_stage": stage,
                    "items": [_item_summary(i) for i in items],
                },
            ),
        )
        db.session.commit()
        return order

    order = run_atomic(_op)
    logger.info("Order %s created by %s with %d items", order.id, actor.name, len(item_patches))
    return order


def get_order(order_id: str) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def order_summary(order: Order, *, as_of=None) -> dict:
    data = order.to_dict()
    data["stage_label"] = label(order.current_stage)
    data["item_count"] = len(order.items)
    data["risk"] = risk_service.assess_order(order, as_of=as_of).to_dict()
    return data


def list_orders(*, stage: Optional[str] = None, account_id: Optional[str] = None, as_of=None) -> list[dict]:
    q = db.session.query(Order)
    if stage:
        s = get_pipeline().normalize(stage)
        if s is None:
            raise ValidationError(f"Invalid stage: {stage}")
        q = q.filter(Order.current_stage == s)
    if account_id:
        q = q.filter(Order.account_id == account_id)
    orders = q.order_by(Order.created_at.desc()).all()
    return [order_summary(o, as_of=as_of) for o in orders]


def get_order_snapshot(order_id: str, *, include_private: bool = False, as_of=None) -> dict:
    """Order with items, per-entity risk and stage history, for the staff detail view."""
    order = get_order(order_id)
    data = order_summary(order, as_of=as_of)
    items = []
    for item in order.items:
        item_data = item.to_dict(include_private=include_private)
        item_data["risk"] = risk_service.assess_item(item, order, as_of=as_of).to_dict()
        items.append(item_data)
    data["items"] = items
    data["status_events"] = [
        ev.to_dict()
        for ev in sorted(order.status_events, key=lambda e: (e.created_at, e.id))
    ]
    return data


def edit_order_fields(order_id: str, fields: dict, actor):
    """
    Apply a field patch to an order.

    Returns (order, changed_field_names). A patch touching a locked-tier
    field on a locked order is rejected whole.
    """
    if not isinstance(fields, dict):
        raise ValidationError("Invalid JSON payload")
    names = check_fields(fields.keys(), editable=ORDER_EDITABLE_FIELDS, actor=actor)
    patch = validate_payload(model=Order, payload=fields, policy=ORDER_EDIT_POLICY, partial=True)

    def _op():
        order = get_order_for_update(order_id)
        blocked = blocked_fields(order, names, locked_tier=ORDER_LOCKED_FIELDS)
        if blocked:
            reject_locked_edit(
                order, blocked, actor,
                entity_type=audit_service.ENTITY_ORDER, entity_id=order.id,
            )
        if "account_id" in patch:
            _require_account(patch["account_id"])

        before = _snapshot_fields(order, patch.keys())
        for key, value in patch.items():
            setattr(order, key, value)
        changes = audit_service.diff_fields(before, patch, patch.keys())
        if not changes:
            db.session.rollback()
            return order, []

        audit_service.record(
            entity_type=audit_service.ENTITY_ORDER,
            entity_id=order.id,
            action=audit_service.ORDER_UPDATED,
            actor=actor,
            changes=changes,
        )
        db.session.commit()
        return order, [c.field for c in changes]

    return run_atomic(_op)


def delete_order(order_id: str, actor) -> None:
    def _op():
        order = get_order_for_update(order_id)
        if order.is_locked:
            reject_locked_delete(order, actor, entity_type=audit_service.ENTITY_ORDER, entity_id=order.id)

        audit_service.record(
            entity_type=audit_service.ENTITY_ORDER,
            entity_id=order.id,
            action=audit_service.ORDER_DELETED,
            actor=actor,
            metadata=audit_service.SnapshotMetadata(
                message="Order deleted",
                data={
                    "account_id": order.account_id,
                    "po_number": order.po_number,
                    "current_stage": order.current_stage,
                    "items": [_item_summary(i) for i in order.items],
                },
            ),
        )
        db.session.delete(order)
        db.session.commit()

    run_atomic(_op)
    logger.info("Order %s deleted by %s", order_id, actor.name)


# ================================================================================
# ITEMS
# ================================================================================

def add_items(order_id: str, items: list, actor) -> list[OrderItem]:
    """
    Add items to an existing order. Adding to a locked order changes what
    is being built, so it is gated like a locked-tier edit.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    patches = [_clean_item_payload(raw, actor) for raw in items]

    def _op():
        order = get_order_for_update(order_id)
        if order.is_locked:
            reject_locked_edit(
                order, ["items"], actor,
                entity_type=audit_service.ENTITY_ORDER, entity_id=order.id,
            )
        created = []
        for patch in patches:
            item = OrderItem(order_id=order.id, **patch)
            db.session.add(item)
            created.append(item)
        db.session.flush()

        audit_service.record(
            entity_type=audit_service.ENTITY_ORDER,
            entity_id=order.id,
            action=audit_service.ITEMS_ADDED,
            actor=actor,
            metadata=audit_service.SnapshotMetadata(
                message=f"Added {len(created)} item(s)",
                data={"items": [_item_summary(i) for i in created]},
            ),
        )
        db.session.commit()
        return created

    return run_atomic(_op)


def edit_item_fields(order_id: str, item_id: str, fields: dict, actor):
    """
    Apply a field patch to one item.

    Returns (item, changed_field_names). Measurement changes stamp
    measured_at/measured_by; a patch that only changes measurements is
    recorded as MEASUREMENTS_UPDATED rather than ORDERITEM_UPDATED.
    """
    if not isinstance(fields, dict):
        raise ValidationError("Invalid JSON payload")
    names = check_fields(fields.keys(), editable=ITEM_EDITABLE_FIELDS, actor=actor)
    patch = validate_payload(model=OrderItem, payload=fields, policy=ITEM_EDIT_POLICY, partial=True)
    enforce_rules_item(patch)

    def _op():
        order = get_order_for_update(order_id)
        item = _get_item(order, item_id)
        blocked = blocked_fields(order, names, locked_tier=ITEM_LOCKED_FIELDS)
        if blocked:
            reject_locked_edit(
                order, blocked, actor,
                entity_type=audit_service.ENTITY_ITEM, entity_id=item.id, parent_entity_id=order.id,
            )

        before = _snapshot_fields(item, patch.keys())
        for key, value in patch.items():
            setattr(item, key, value)
        changes = audit_service.diff_fields(before, patch, patch.keys())
        if not changes:
            db.session.rollback()
            return item, []

        if all(c.field in MEASUREMENT_FIELDS for c in changes):
            _record_measurements(order, item, changes, actor)
        else:
            if any(c.field in MEASUREMENT_FIELDS for c in changes):
                item.measured_at = utcnow()
                item.measured_by = actor.name
            audit_service.record(
                entity_type=audit_service.ENTITY_ITEM,
                entity_id=item.id,
                parent_entity_id=order.id,
                action=audit_service.ORDERITEM_UPDATED,
                actor=actor,
                changes=changes,
            )
        db.session.commit()
        return item, [c.field for c in changes]

    return run_atomic(_op)


def set_item_archived(order_id: str, item_id: str, archived: bool, actor):
    """Archive or restore an item. Permitted on locked orders."""
    return edit_item_fields(order_id, item_id, {"archived_at": utcnow() if archived else None}, actor)


def _clean_measurements(measurements, actor) -> dict:
    if not isinstance(measurements, dict) or not measurements:
        raise ValidationError("No measurement fields provided")
    check_fields(measurements.keys(), editable=MEASUREMENT_FIELDS, actor=actor)
    patch = validate_payload(model=OrderItem, payload=measurements, policy=MEASUREMENT_POLICY, partial=True)
    enforce_rules_item(patch)
    return patch


def _apply_measurements(item: OrderItem, patch: dict) -> list:
    before = _snapshot_fields(item, patch.keys())
    for key, value in patch.items():
        setattr(item, key, value)
    return audit_service.diff_fields(before, patch, patch.keys())


def _record_measurements(order: Order, item: OrderItem, changes: list, actor) -> list[str]:
    """Stamp the item and add its MEASUREMENTS_UPDATED entry. Caller commits."""
    item.measured_at = utcnow()
    item.measured_by = actor.name
    changed = [c.field for c in changes]
    audit_service.record(
        entity_type=audit_service.ENTITY_MEASUREMENT,
        entity_id=item.id,
        parent_entity_id=order.id,
        action=audit_service.MEASUREMENTS_UPDATED,
        actor=actor,
        changes=changes,
        metadata=audit_service.MeasurementMetadata(
            message=f"Measurements updated for {item.product_code}",
            updated_fields=tuple(changed),
        ),
    )
    return changed


def update_measurements(order_id: str, item_id: str, measurements: dict, actor):
    """
    Record physical measurements for an item. Never blocked by the lock.

    Returns (item, changed_field_names).
    """
    patch = _clean_measurements(measurements, actor)

    def _op():
        order = get_order_for_update(order_id)
        item = _get_item(order, item_id)

        changes = _apply_measurements(item, patch)
        if not changes:
            db.session.rollback()
            return item, []

        changed = _record_measurements(order, item, changes, actor)
        db.session.commit()
        return item, changed

    return run_atomic(_op)


def bulk_update_measurements(order_id: str, updates: list, actor) -> list[OrderItem]:
    """
    Measurements for several items of one order in a single unit of work.

    Each update is {"id": <item id>, <measurement field>: value, ...}. Every
    id must belong to the order or nothing is applied. Returns the items
    that actually changed.
    """
    if not isinstance(updates, list) or not updates:
        raise ValidationError("No items provided")

    patches: dict[str, dict] = {}
    for raw in updates:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise ValidationError("Each measurement update needs an item id")
        fields = {k: v for k, v in raw.items() if k != "id"}
        item_id = str(raw["id"])
        if item_id in patches:
            raise ValidationError(f"Item {item_id} appears more than once")
        patches[item_id] = _clean_measurements(fields, actor)

    def _op():
        order = get_order_for_update(order_id)
        items = (
            db.session.query(OrderItem)
            .filter(OrderItem.order_id == order.id, OrderItem.id.in_(list(patches)))
            .all()
        )
        missing = sorted(set(patches) - {i.id for i in items})
        if missing:
            raise NotFoundError(f"Items not found on order {order.id}: {', '.join(missing)}")

        updated = []
        for item in items:
            changes = _apply_measurements(item, patches[item.id])
            if changes:
                _record_measurements(order, item, changes, actor)
                updated.append(item)
        if not updated:
            db.session.rollback()
            return []
        db.session.commit()
        return updated

    updated = run_atomic(_op)
    logger.info("Measurements updated on %d item(s) of order %s by %s", len(updated), order_id, actor.name)
    return updated


def measurement_history(order_id: str, item_id: str, *, limit: Optional[int] = 50) -> list[dict]:
    """MEASUREMENTS_UPDATED entries for one item, newest first."""
    item = db.session.query(OrderItem).filter_by(id=item_id, order_id=order_id).first()
    if item is None:
        raise NotFoundError(f"Item {item_id} not found on order {order_id}")
    return audit_service.history(item.id, actions=[audit_service.MEASUREMENTS_UPDATED], limit=limit)


def delete_item(order_id: str, item_id: str, actor) -> None:
    def _op():
        order = get_order_for_update(order_id)
        item = _get_item(order, item_id)
        if order.is_locked:
            reject_locked_delete(
                order, actor,
                entity_type=audit_service.ENTITY_ITEM, entity_id=item.id, parent_entity_id=order.id,
            )

        audit_service.record(
            entity_type=audit_service.ENTITY_ITEM,
            entity_id=item.id,
            parent_entity_id=order.id,
            action=audit_service.ITEM_DELETED,
            actor=actor,
            metadata=audit_service.SnapshotMetadata(
                message=f"Item {item.product_code} deleted",
                data=_item_summary(item),
            ),
        )
        db.session.delete(item)
        db.session.commit()

    run_atomic(_op)


# ================================================================================
# PROCUREMENT
# ================================================================================

def mark_item_ordered(order_id: str, item_id: str, actor) -> OrderItem:
    _require_admin(actor, "mark items as ordered")

    def _op():
        order = get_order_for_update(order_id)
        item = _get_item(order, item_id)
        if item.is_ordered:
            raise PolicyError("Item is already marked as ordered")

        before = _snapshot_fields(item, ("is_ordered", "ordered_at", "ordered_by"))
        item.is_ordered = True
        item.ordered_at = utcnow()
        item.ordered_by = actor.name

        audit_service.record(
            entity_type=audit_service.ENTITY_ITEM,
            entity_id=item.id,
            parent_entity_id=order.id,
            action=audit_service.ITEM_ORDERED,
            actor=actor,
            changes=audit_service.diff_fields(before, _snapshot_fields(item, before.keys())),
            metadata=audit_service.ProcurementMetadata(
                message="Item marked as ordered",
                item_name=item.product_code,
                performed_by=actor.name,
            ),
        )
        db.session.commit()
        return item

    return run_atomic(_op)


def unmark_item_ordered(order_id: str, item_id: str, actor, reason: Optional[str]) -> OrderItem:
    _require_admin(actor, "unmark ordered items")
    cleaned = require_reason(reason, min_length=UNORDER_REASON_MIN_LENGTH, action="unmarking an ordered item")

    def _op():
        order = get_order_for_update(order_id)
        item = _get_item(order, item_id)
        if not item.is_ordered:
            raise PolicyError("Item is not marked as ordered")

        before = _snapshot_fields(item, ("is_ordered", "ordered_at", "ordered_by"))
        item.is_ordered = False
        item.ordered_at = None
        item.ordered_by = None

        audit_service.record(
            entity_type=audit_service.ENTITY_ITEM,
            entity_id=item.id,
            parent_entity_id=order.id,
            action=audit_service.ITEM_UNORDERED,
            actor=actor,
            changes=audit_service.diff_fields(before, _snapshot_fields(item, before.keys())),
            metadata=audit_service.ProcurementMetadata(
                message=cleaned,
                item_name=item.product_code,
                performed_by=actor.name,
            ),
        )
        db.session.commit()
        return item

    return run_atomic(_op)


# ================================================================================
# PUBLIC TRACKING
# ================================================================================

def get_public_order(token: str) -> dict:
    """
    Customer-facing view of an order by its tracking token. Leaves out
    pricing, private notes and staff names.
    """
    order = None
    if token:
        order = db.session.query(Order).filter_by(tracking_token=token).first()
    if order is None:
        raise NotFoundError("Order not found")

    pipeline = get_pipeline()
    order_events = sorted(
        (ev for ev in order.status_events if ev.order_item_id is None),
        key=lambda e: (e.created_at, e.id),
    )
    reached = pipeline.reached(order_events)
    return {
        "po_number": order.po_number,
        "account_name": order.account.name if order.account else None,
        "current_stage": order.current_stage,
        "stage_label": label(order.current_stage),
        "stages": [{"stage": s, "label": label(s)} for s in pipeline.stages],
        "reached_stages": [s for s in pipeline.stages if s in reached],
        "eta_date": to_utc_z(order.eta_date),
        "customer_docs_link": order.customer_docs_link,
        "items": [
            {
                "product_code": item.product_code,
                "qty": item.qty,
                "serial_number": item.serial_number,
                "model_number": item.model_number,
                "stage": pipeline.effective_stage(item, order),
            }
            for item in order.items
            if item.archived_at is None
        ],
        "status_events": [
            {"stage": ev.stage, "note": ev.note, "created_at": to_utc_z(ev.created_at)}
            for ev in order_events
        ],
    }
