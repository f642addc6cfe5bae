# Overview: Stage dwell thresholds, holiday-season settings and the ETA estimate built on them.

"""
Threshold Registry

================================================================================
PURPOSE: Publish warning/critical day counts per stage
================================================================================

RESOLUTION ORDER (per stage):
    persisted StageThreshold row -> DEFAULT_THRESHOLDS -> FALLBACK_THRESHOLD

SEASONAL ADJUSTMENT:
    Inside the holiday season window, HOLIDAY_BUFFER_DAYS is added to both
    MANUFACTURING thresholds. No other stage is adjusted; later stages start
    later and absorb the delay on their own.

EDITS:
    Admin only. Every edit appends THRESHOLD_UPDATED / SYSTEM_SETTING_UPDATED
    in the same transaction.
================================================================================
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union

from ..extensions import db
from ..models import Order, StageThreshold, SystemSetting
from ..validation import AuthorizationError, ValidationError, parse_month_day
from . import audit_service
from .concurrency import run_atomic
from .stage_pipeline import get_pipeline
from stagetrack.time_utils import add_days, as_datetime, to_utc_z

logger = logging.getLogger(__name__)


MAX_THRESHOLD_DAYS = 365
MAX_BUFFER_DAYS = 100

SEASONAL_STAGE = "MANUFACTURING"

DEFAULT_THRESHOLDS: dict[str, tuple[int, int, str]] = {
    "MANUFACTURING": (50, 90, "Manufacturing & Assembly phase"),
    "TESTING": (10, 15, "Testing, calibration & export preparation"),
    "SHIPPING": (45, 60, "Ocean freight transit"),
    "AT_SEA": (45, 60, "Ocean freight transit (on vessel)"),
    "SMT": (14, 21, "Customs clearance and domestic routing"),
    "QC": (7, 14, "Quality control inspection"),
    "DELIVERED": (3, 7, "Delivered to customer location"),
    "ONSITE": (10, 15, "On-site installation and training"),
    "COMPLETED": (5, 10, "Awaiting final documentation"),
    "FOLLOW_UP": (14, 30, "Post-delivery follow-up"),
}
FALLBACK_THRESHOLD = (30, 60)

# Stages that make up the customer-facing delivery estimate
ETA_STAGES = ("MANUFACTURING", "TESTING", "SHIPPING", "SMT", "QC", "DELIVERED", "ONSITE")

HOLIDAY_SEASON_START = "HOLIDAY_SEASON_START"
HOLIDAY_SEASON_END = "HOLIDAY_SEASON_END"
HOLIDAY_BUFFER_DAYS = "HOLIDAY_BUFFER_DAYS"

DEFAULT_SETTINGS: dict[str, tuple[str, str]] = {
    HOLIDAY_SEASON_START: ("10-01", "Start date for holiday season (MM-DD format)"),
    HOLIDAY_SEASON_END: ("12-31", "End date for holiday season (MM-DD format)"),
    HOLIDAY_BUFFER_DAYS: ("25", "Additional days added to MANUFACTURING during holiday season"),
}


@dataclass(frozen=True)
class Threshold:
    stage: str
    warning_days: int
    critical_days: int
    description: Optional[str] = None
    is_default: bool = True
    updated_by: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "warning_days": self.warning_days,
            "critical_days": self.critical_days,
            "description": self.description,
            "is_default": self.is_default,
            "updated_by": self.updated_by,
        }


@dataclass(frozen=True)
class SeasonSettings:
    start: str
    end: str
    buffer_days: int


@dataclass(frozen=True)
class EffectiveThreshold:
    stage: str
    base_warning_days: int
    base_critical_days: int
    warning_days: int
    critical_days: int
    in_season: bool
    buffer_applied: int
    as_of: datetime

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "base_warning_days": self.base_warning_days,
            "base_critical_days": self.base_critical_days,
            "warning_days": self.warning_days,
            "critical_days": self.critical_days,
            "is_holiday_season": self.in_season,
            "holiday_buffer_applied": self.buffer_applied,
            "as_of": to_utc_z(self.as_of),
        }


def _require_admin(actor, action: str) -> None:
    if not getattr(actor, "is_admin", False):
        raise AuthorizationError(f"Only admins can {action}")


def _require_stage(stage) -> str:
    s = get_pipeline().normalize(stage)
    if s is None:
        raise ValidationError(f"Invalid stage: {stage}")
    return s


def _default_threshold(stage: str) -> Threshold:
    warning, critical, description = DEFAULT_THRESHOLDS.get(
        stage, (*FALLBACK_THRESHOLD, f"{stage} stage")
    )
    return Threshold(stage=stage, warning_days=warning, critical_days=critical, description=description)


def _from_row(row: StageThreshold) -> Threshold:
    return Threshold(
        stage=row.stage,
        warning_days=row.warning_days,
        critical_days=row.critical_days,
        description=row.description,
        is_default=False,
        updated_by=row.updated_by,
    )


# ================================================================================
# THRESHOLDS
# ================================================================================

def get_threshold(stage) -> Threshold:
    """
    Base (unadjusted) threshold for a stage.

    Unknown stage tokens get FALLBACK_THRESHOLD rather than an error; risk
    reads must never fail on odd historical data.
    """
    s = get_pipeline().normalize(stage) or str(stage or "").strip().upper()
    row = db.session.query(StageThreshold).filter_by(stage=s).first()
    if row is not None:
        return _from_row(row)
    return _default_threshold(s)


def list_thresholds() -> list[Threshold]:
    rows = {r.stage: r for r in db.session.query(StageThreshold).all()}
    return [
        _from_row(rows[stage]) if stage in rows else _default_threshold(stage)
        for stage in get_pipeline().stages
    ]


def initialize_thresholds(actor) -> list[Threshold]:
    """Persist defaults for every stage (and system setting) not yet stored."""
    _require_admin(actor, "initialize thresholds")

    def _op():
        created = []
        existing = {s for (s,) in db.session.query(StageThreshold.stage).all()}
        for stage in get_pipeline().stages:
            if stage in existing:
                continue
            default = _default_threshold(stage)
            db.session.add(StageThreshold(
                stage=stage,
                warning_days=default.warning_days,
                critical_days=default.critical_days,
                description=default.description,
                updated_by=actor.name,
            ))
            audit_service.record(
                entity_type=audit_service.ENTITY_THRESHOLD,
                entity_id=stage,
                action=audit_service.THRESHOLD_UPDATED,
                actor=actor,
                changes=audit_service.diff_fields(
                    {},
                    {"warning_days": default.warning_days, "critical_days": default.critical_days},
                ),
                metadata=audit_service.SettingMetadata(key=stage, message="Initialized from defaults"),
            )
            created.append(stage)

        existing_keys = {k for (k,) in db.session.query(SystemSetting.key).all()}
        for key, (value, description) in DEFAULT_SETTINGS.items():
            if key not in existing_keys:
                db.session.add(SystemSetting(key=key, value=value, description=description, updated_by=actor.name))

        db.session.commit()
        return created

    created = run_atomic(_op)
    if created:
        logger.info("Initialized %d stage thresholds", len(created))
    return [get_threshold(s) for s in created]


def _check_days(label: str, value) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be an integer")
    try:
        days = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be an integer")
    if days != value and not isinstance(value, str):
        raise ValidationError(f"{label} must be an integer")
    if days < 0 or days > MAX_THRESHOLD_DAYS:
        raise ValidationError(f"{label} must be between 0 and {MAX_THRESHOLD_DAYS}")
    return days


def update_threshold(
    stage,
    actor,
    *,
    warning_days=None,
    critical_days=None,
    description: Optional[str] = None,
) -> Threshold:
    """
    Upsert a stage threshold.

    Either day count may be omitted; the merged result (new values over the
    current ones) must still satisfy warning < critical.
    """
    _require_admin(actor, "edit stage thresholds")
    s = _require_stage(stage)

    new_warning = _check_days("Warning days", warning_days) if warning_days is not None else None
    new_critical = _check_days("Critical days", critical_days) if critical_days is not None else None

    def _op():
        row = db.session.query(StageThreshold).filter_by(stage=s).first()
        current = _from_row(row) if row is not None else _default_threshold(s)

        merged_warning = new_warning if new_warning is not None else current.warning_days
        merged_critical = new_critical if new_critical is not None else current.critical_days
        if merged_warning >= merged_critical:
            raise ValidationError("Warning days must be less than critical days")

        before = {
            "warning_days": row.warning_days if row else None,
            "critical_days": row.critical_days if row else None,
            "description": row.description if row else None,
        }

        if row is None:
            row = StageThreshold(stage=s)
            db.session.add(row)
        row.warning_days = merged_warning
        row.critical_days = merged_critical
        if description is not None:
            row.description = description.strip() or None
        elif row.description is None:
            row.description = current.description
        row.updated_by = actor.name

        audit_service.record(
            entity_type=audit_service.ENTITY_THRESHOLD,
            entity_id=s,
            action=audit_service.THRESHOLD_UPDATED,
            actor=actor,
            changes=audit_service.diff_fields(before, {
                "warning_days": row.warning_days,
                "critical_days": row.critical_days,
                "description": row.description,
            }),
            metadata=audit_service.SettingMetadata(key=s, message=f"Threshold for {s} updated"),
        )
        db.session.commit()
        return _from_row(row)

    return run_atomic(_op)


# ================================================================================
# SYSTEM SETTINGS
# ================================================================================

def get_system_settings() -> dict[str, dict]:
    """All system settings keyed by name, with defaults filled in for unset keys."""
    out = {}
    for row in db.session.query(SystemSetting).order_by(SystemSetting.key.asc()).all():
        out[row.key] = row.to_dict()
    for key, (value, description) in DEFAULT_SETTINGS.items():
        if key not in out:
            out[key] = {"key": key, "value": value, "description": description, "updated_by": None, "updated_at": None}
    return out


def _setting_value(key: str) -> str:
    row = db.session.query(SystemSetting).filter_by(key=key).first()
    if row is not None and row.value:
        return row.value
    return DEFAULT_SETTINGS[key][0]


def get_season_settings() -> SeasonSettings:
    start = _setting_value(HOLIDAY_SEASON_START)
    end = _setting_value(HOLIDAY_SEASON_END)
    raw_buffer = _setting_value(HOLIDAY_BUFFER_DAYS)
    try:
        buffer_days = int(raw_buffer)
    except ValueError:
        logger.warning("Ignoring malformed %s=%r; using default", HOLIDAY_BUFFER_DAYS, raw_buffer)
        buffer_days = int(DEFAULT_SETTINGS[HOLIDAY_BUFFER_DAYS][0])
    return SeasonSettings(start=start, end=end, buffer_days=buffer_days)


def _validate_setting(key: str, value) -> str:
    if value is None or str(value).strip() == "":
        raise ValidationError("Value is required")
    s = str(value).strip()
    if key in (HOLIDAY_SEASON_START, HOLIDAY_SEASON_END):
        parse_month_day(s)
    elif key == HOLIDAY_BUFFER_DAYS:
        try:
            days = int(s)
        except ValueError:
            raise ValidationError(f"Buffer days must be between 0 and {MAX_BUFFER_DAYS}")
        if days < 0 or days > MAX_BUFFER_DAYS:
            raise ValidationError(f"Buffer days must be between 0 and {MAX_BUFFER_DAYS}")
        s = str(days)
    return s


def update_system_setting(key: str, value, actor, *, description: Optional[str] = None) -> dict:
    _require_admin(actor, "edit system settings")
    key = (key or "").strip()
    if not key:
        raise ValidationError("Setting key is required")
    cleaned = _validate_setting(key, value)

    def _op():
        row = db.session.query(SystemSetting).filter_by(key=key).first()
        before = {"value": row.value if row else None, "description": row.description if row else None}
        if row is None:
            default_description = DEFAULT_SETTINGS.get(key, (None, f"System setting: {key}"))[1]
            row = SystemSetting(key=key, description=description or default_description)
            db.session.add(row)
        elif description:
            row.description = description
        row.value = cleaned
        row.updated_by = actor.name

        audit_service.record(
            entity_type=audit_service.ENTITY_SETTING,
            entity_id=key,
            action=audit_service.SYSTEM_SETTING_UPDATED,
            actor=actor,
            changes=audit_service.diff_fields(before, {"value": row.value, "description": row.description}),
            metadata=audit_service.SettingMetadata(key=key, message=f"{key} set to {cleaned}"),
        )
        db.session.commit()
        return row.to_dict()

    return run_atomic(_op)


# ================================================================================
# SEASONAL ADJUSTMENT
# ================================================================================

def is_in_season(as_of: Union[date, datetime], start: str, end: str) -> bool:
    """
    Whether a calendar day falls in the MM-DD window [start, end].

    Both ends are inclusive. start > end wraps across the new year
    (11-01..02-28 contains 01-15). Within one month, start day after end day
    also wraps.
    """
    start_month, start_day = parse_month_day(start)
    end_month, end_day = parse_month_day(end)
    month, day = as_of.month, as_of.day

    if start_month < end_month:
        if month < start_month or month > end_month:
            return False
        if month == start_month and day < start_day:
            return False
        if month == end_month and day > end_day:
            return False
        return True

    if start_month > end_month:
        if month > start_month or month < end_month:
            return True
        if month == start_month and day >= start_day:
            return True
        if month == end_month and day <= end_day:
            return True
        return False

    if start_day <= end_day:
        return month == start_month and start_day <= day <= end_day
    # 11-20..11-05 wraps the whole year
    return month != start_month or day >= start_day or day <= end_day


def effective_threshold(stage, as_of: Union[date, datetime, None] = None) -> EffectiveThreshold:
    moment = as_datetime(as_of)
    base = get_threshold(stage)
    season = get_season_settings()

    in_season = is_in_season(moment, season.start, season.end)
    buffer = season.buffer_days if (in_season and base.stage == SEASONAL_STAGE) else 0

    return EffectiveThreshold(
        stage=base.stage,
        base_warning_days=base.warning_days,
        base_critical_days=base.critical_days,
        warning_days=base.warning_days + buffer,
        critical_days=base.critical_days + buffer,
        in_season=in_season,
        buffer_applied=buffer,
        as_of=moment,
    )


# ================================================================================
# ETA
# ================================================================================

def expected_cycle_days() -> int:
    """Rounded sum of mean(warning, critical) over the delivery stages."""
    total = 0.0
    for stage in ETA_STAGES:
        t = get_threshold(stage)
        total += (t.warning_days + t.critical_days) / 2
    # Half rounds up: 180.5 days is 181
    return int(math.floor(total + 0.5))


def estimate_eta(created_at: Union[date, datetime, None]) -> datetime:
    return add_days(as_datetime(created_at), expected_cycle_days())


def recalculate_etas(actor) -> int:
    """Rewrite every order's eta_date from the current thresholds."""
    _require_admin(actor, "recalculate ETAs")

    def _op():
        cycle_days = expected_cycle_days()
        orders = db.session.query(Order).all()
        for order in orders:
            order.eta_date = add_days(as_datetime(order.created_at), cycle_days)
        audit_service.record(
            entity_type=audit_service.ENTITY_SYSTEM,
            entity_id="eta",
            action=audit_service.ETAS_RECALCULATED,
            actor=actor,
            metadata=audit_service.SnapshotMetadata(
                message=f"Recalculated {len(orders)} order ETAs",
                data={"orders_updated": len(orders), "cycle_days": cycle_days},
            ),
        )
        db.session.commit()
        return len(orders)

    updated = run_atomic(_op)
    logger.info("Recalculated ETA for %d orders", updated)
    return updated
