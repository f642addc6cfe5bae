from __future__ import annotations

from ..extensions import db
from stagetrack.time_utils import utcnow


class AuditLog(db.Model):
    """
    Field-level audit trail for orders, items, measurements, accounts and settings.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.

    parent_entity_id lets an order's history include the entries of
    everything nested beneath it (items, measurements).
    changes holds a JSON list of {field, old_value, new_value}; metadata
    holds a JSON object whose shape is fixed by the action code.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_entity_created", "entity_id", "created_at"),
        db.Index("ix_audit_logs_parent_created", "parent_entity_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    entity_type = db.Column(db.String(32), nullable=False, index=True)
    entity_id = db.Column(db.String(64), nullable=False)
    parent_entity_id = db.Column(db.String(64), nullable=True)

    action = db.Column(db.String(64), nullable=False, index=True)
    changes = db.Column(db.Text, nullable=True)
    metadata_json = db.Column("metadata", db.Text, nullable=True)

    # No FK: entries must survive deletion of the user they name
    performed_by_user_id = db.Column(db.Integer, nullable=True, index=True)
    performed_by_name = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
