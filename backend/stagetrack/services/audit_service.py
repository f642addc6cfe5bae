# Overview: Append-only audit trail with field-level diffs and action-typed metadata.

"""
Audit Trail Invariants (authoritative)

- Append-only. Entries are never updated or deleted.
- record() writes inside the caller's transaction (flush, no commit), so the
  mutation and its audit entry commit or roll back together.
- Diff values are stored as text; an absent value is the literal "null".
  serialize_value() is the only place that representation is produced.
- Fields whose serialized value did not change are never recorded.
- Each action code owns one metadata shape (METADATA_TYPES).
- history() matches entity_id OR parent_entity_id, newest first.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from ..extensions import db
from ..models import AuditLog
from stagetrack.time_utils import to_utc_z

logger = logging.getLogger(__name__)


NULL_TOKEN = "null"

# Entity types
ENTITY_ORDER = "Order"
ENTITY_ITEM = "OrderItem"
ENTITY_MEASUREMENT = "Measurement"
ENTITY_ACCOUNT = "Account"
ENTITY_USER = "User"
ENTITY_THRESHOLD = "StageThreshold"
ENTITY_SETTING = "SystemSetting"
ENTITY_SYSTEM = "System"

# Action codes
ORDER_CREATED = "ORDER_CREATED"
ORDER_UPDATED = "ORDER_UPDATED"
ORDER_DELETED = "ORDER_DELETED"
ITEMS_ADDED = "ITEMS_ADDED"
ORDERITEM_UPDATED = "ORDERITEM_UPDATED"
ITEM_DELETED = "ITEM_DELETED"
MEASUREMENTS_UPDATED = "MEASUREMENTS_UPDATED"
ITEM_ORDERED = "ITEM_ORDERED"
ITEM_UNORDERED = "ITEM_UNORDERED"
STAGE_CHANGED = "STAGE_CHANGED"
ITEM_STAGE_CHANGED = "ITEM_STAGE_CHANGED"
LOCKED = "LOCKED"
UNLOCKED = "UNLOCKED"
EDIT_ATTEMPTED_WHILE_LOCKED = "EDIT_ATTEMPTED_WHILE_LOCKED"
DELETE_ATTEMPTED_WHILE_LOCKED = "DELETE_ATTEMPTED_WHILE_LOCKED"
ACCOUNT_CREATED = "ACCOUNT_CREATED"
ACCOUNT_DELETED = "ACCOUNT_DELETED"
USER_CREATED = "USER_CREATED"
THRESHOLD_UPDATED = "THRESHOLD_UPDATED"
SYSTEM_SETTING_UPDATED = "SYSTEM_SETTING_UPDATED"
ETAS_RECALCULATED = "ETAS_RECALCULATED"


# ================================================================================
# METADATA (one shape per action family)
# ================================================================================

@dataclass(frozen=True)
class ReasonMetadata:
    message: str


@dataclass(frozen=True)
class LockViolationMetadata:
    message: str
    attempted_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class StageChangeMetadata:
    from_stage: Optional[str]
    to_stage: str
    note: Optional[str] = None
    correction: bool = False
    fast_forward: bool = False


@dataclass(frozen=True)
class SnapshotMetadata:
    message: str
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class MeasurementMetadata:
    message: str
    updated_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProcurementMetadata:
    message: str
    item_name: str
    performed_by: str


@dataclass(frozen=True)
class SettingMetadata:
    key: str
    message: str


METADATA_TYPES: dict[str, Optional[type]] = {
    ORDER_CREATED: SnapshotMetadata,
    ORDER_UPDATED: None,
    ORDER_DELETED: SnapshotMetadata,
    ITEMS_ADDED: SnapshotMetadata,
    ORDERITEM_UPDATED: None,
    ITEM_DELETED: SnapshotMetadata,
    MEASUREMENTS_UPDATED: MeasurementMetadata,
    ITEM_ORDERED: ProcurementMetadata,
    ITEM_UNORDERED: ProcurementMetadata,
    STAGE_CHANGED: StageChangeMetadata,
    ITEM_STAGE_CHANGED: StageChangeMetadata,
    LOCKED: ReasonMetadata,
    UNLOCKED: ReasonMetadata,
    EDIT_ATTEMPTED_WHILE_LOCKED: LockViolationMetadata,
    DELETE_ATTEMPTED_WHILE_LOCKED: LockViolationMetadata,
    ACCOUNT_CREATED: SnapshotMetadata,
    ACCOUNT_DELETED: SnapshotMetadata,
    USER_CREATED: SnapshotMetadata,
    THRESHOLD_UPDATED: SettingMetadata,
    SYSTEM_SETTING_UPDATED: SettingMetadata,
    ETAS_RECALCULATED: SnapshotMetadata,
}


# ================================================================================
# FIELD DIFFS
# ================================================================================

def serialize_value(value: Any) -> str:
    """Text form of a field value for audit diffs; absent or empty is "null"."""
    if value is None:
        return NULL_TOKEN
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return to_utc_z(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    s = str(value)
    return s if s != "" else NULL_TOKEN


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: str
    new_value: str

    @classmethod
    def of(cls, field_name: str, old: Any, new: Any) -> "FieldChange":
        return cls(field_name, serialize_value(old), serialize_value(new))

    @property
    def is_noop(self) -> bool:
        return self.old_value == self.new_value

    def to_dict(self) -> dict:
        return {"field": self.field, "old_value": self.old_value, "new_value": self.new_value}


def diff_fields(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    fields: Optional[Iterable[str]] = None,
) -> list[FieldChange]:
    """Changes between two field maps, in field order, skipping unchanged values."""
    keys = list(fields) if fields is not None else list(after.keys())
    changes = []
    for key in keys:
        change = FieldChange.of(key, before.get(key), after.get(key))
        if not change.is_noop:
            changes.append(change)
    return changes


# ================================================================================
# WRITE
# ================================================================================

def record(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor,
    parent_entity_id=None,
    changes: Optional[Iterable[FieldChange]] = None,
    metadata=None,
) -> AuditLog:
    """
    Append one audit entry to the current transaction.

    The caller commits. If the commit fails the entry is rolled back with
    the mutation it describes.
    """
    if action not in METADATA_TYPES:
        raise ValueError(f"Unknown audit action {action!r}")

    expected = METADATA_TYPES[action]
    if metadata is not None:
        if expected is None or not isinstance(metadata, expected):
            raise TypeError(
                f"{action} expects {expected.__name__ if expected else 'no'} metadata, "
                f"got {type(metadata).__name__}"
            )

    change_list = [c for c in (changes or []) if not c.is_noop]

    entry = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        parent_entity_id=str(parent_entity_id) if parent_entity_id is not None else None,
        action=action,
        changes=json.dumps([c.to_dict() for c in change_list]) if change_list else None,
        metadata_json=json.dumps(asdict(metadata), default=str) if metadata is not None else None,
        performed_by_user_id=actor.user_id,
        performed_by_name=actor.name,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


# ================================================================================
# READ
# ================================================================================

def _parse_json(raw: Optional[str], default, *, entry_id: int, column: str):
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Unparseable %s on audit entry %s; returning empty", column, entry_id)
        return default
    if not isinstance(value, type(default)):
        logger.warning("Unexpected %s shape on audit entry %s; returning empty", column, entry_id)
        return default
    return value


def entry_to_dict(entry: AuditLog) -> dict:
    metadata = _parse_json(entry.metadata_json, {}, entry_id=entry.id, column="metadata")
    changes = _parse_json(entry.changes, [], entry_id=entry.id, column="changes")
    return {
        "id": entry.id,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "parent_entity_id": entry.parent_entity_id,
        "action": entry.action,
        "changes": changes,
        "metadata": metadata,
        "message": metadata.get("message"),
        "data": metadata.get("data"),
        "performed_by_user_id": entry.performed_by_user_id,
        "performed_by_name": entry.performed_by_name,
        "created_at": to_utc_z(entry.created_at),
    }


def history_entries(entity_id, *, actions: Optional[Iterable[str]] = None, limit: Optional[int] = None) -> list[AuditLog]:
    key = str(entity_id)
    q = db.session.query(AuditLog).filter(
        db.or_(AuditLog.entity_id == key, AuditLog.parent_entity_id == key)
    )
    if actions:
        q = q.filter(AuditLog.action.in_(list(actions)))
    q = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def history(entity_id, *, actions: Optional[Iterable[str]] = None, limit: Optional[int] = None) -> list[dict]:
    """
    All audit entries for an entity and everything nested beneath it,
    newest first.
    """
    return [entry_to_dict(e) for e in history_entries(entity_id, actions=actions, limit=limit)]
