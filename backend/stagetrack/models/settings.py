from __future__ import annotations

from ..extensions import db
from stagetrack.time_utils import to_utc_z


class StageThreshold(db.Model):
    """
    Per-stage dwell-time thresholds (days). Absent rows fall back to the
    built-in defaults in threshold_service.
    """
    __tablename__ = "stage_thresholds"
    __table_args__ = (
        db.CheckConstraint("warning_days >= 0", name="ck_stage_thresholds_warning_nonneg"),
        db.CheckConstraint("warning_days < critical_days", name="ck_stage_thresholds_warning_lt_critical"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    stage = db.Column(db.String(32), nullable=False, unique=True, index=True)
    warning_days = db.Column(db.Integer, nullable=False)
    critical_days = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, nullable=True)

    updated_by = db.Column(db.String(120), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "warning_days": self.warning_days,
            "critical_days": self.critical_days,
            "description": self.description,
            "updated_by": self.updated_by,
            "updated_at": to_utc_z(self.updated_at),
        }


class SystemSetting(db.Model):
    """Key-value system settings (holiday season window and buffer)."""
    __tablename__ = "system_settings"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(128), nullable=False, unique=True, index=True)
    value = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=True)

    updated_by = db.Column(db.String(120), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value": self.value,
            "description": self.description,
            "updated_by": self.updated_by,
            "updated_at": to_utc_z(self.updated_at),
        }
