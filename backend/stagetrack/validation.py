from __future__ import annotations
import math
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from stagetrack.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, Float, Numeric, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta


MONTH_DAY_RE = re.compile(r"^(0[1-9]|1[0-2])-(0[1-9]|[12][0-9]|3[01])$")

# Maximum procurement price: 9,999,999.99
MAX_ITEM_PRICE = Decimal("9999999.99")


class StageTrackError(Exception):
    """Base class for domain failures surfaced to callers as kind + message."""
    kind = "error"
    http_status = 500

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": str(self)}


class ValidationError(StageTrackError, ValueError):
    """400-level input problem. Raised before any mutation; nothing is recorded."""
    kind = "validation"
    http_status = 400


class PolicyError(StageTrackError):
    """409-level business rule conflict (e.g., order already locked)."""
    kind = "policy"
    http_status = 409


class IllegalTransitionError(PolicyError):
    def __init__(self, current: str | None, target: str, reason: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move from {current or 'unknown'} to {target}: {reason}")


class AuthorizationError(PolicyError):
    """Actor lacks the elevated role the operation requires."""
    http_status = 403


class OrderLockedError(PolicyError):
    """Edit or delete blocked by the order lock. The attempt has been audited."""
    http_status = 403


class AccountInUseError(PolicyError):
    """Account still has orders; they are listed so staff can delete or reassign them."""

    def __init__(self, account_name: str, orders: list[dict]):
        self.orders = orders
        super().__init__(
            f'Cannot delete account "{account_name}" because it has {len(orders)} associated order(s). '
            "Delete or reassign the orders first."
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["order_count"] = len(self.orders)
        data["orders"] = self.orders
        return data


class NotFoundError(StageTrackError):
    kind = "not_found"
    http_status = 404


class StorageError(StageTrackError):
    """Backing store failed mid-operation; the unit was rolled back."""
    kind = "storage"
    http_status = 503


@dataclass(frozen=True)
class FieldPolicy:
    """
    Central policy layer for patch payloads:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for create
    """
    writable_fields: frozenset[str]
    required_on_create: frozenset[str] = frozenset()


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, float):
            if value.is_integer():
                return int(value)
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        raise ValidationError(f"{col.key} must be an integer")

    # Money
    if isinstance(coltype, Numeric) and not isinstance(coltype, Float):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be a number")
        if isinstance(value, str) and not value.strip():
            return None
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"{col.key} must be a number")
        if not amount.is_finite():
            raise ValidationError(f"{col.key} must be a finite number")
        try:
            return amount.quantize(Decimal("0.01"))
        except InvalidOperation:
            raise ValidationError(f"{col.key} is out of range")

    # Measurements ("" clears the value)
    if isinstance(coltype, Float):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be a number")
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return None
            try:
                number = float(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be a number")
        else:
            raise ValidationError(f"{col.key} must be a number")
        if not math.isfinite(number):
            raise ValidationError(f"{col.key} must be a finite number")
        return number

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            if not value.strip():
                return None
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    # Strings / Text ("" clears nullable text)
    if isinstance(coltype, (String, Text)):
        s = str(value).strip()
        if s == "" and col.nullable:
            return None
        return s

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: FieldPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if not partial:
        missing = sorted(f for f in policy.required_on_create if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]
        val = _coerce_value(col, raw)

        if val is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be blank")
            patch[k] = None
            continue

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_item(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    """
    if "qty" in patch:
        if patch["qty"] is None or patch["qty"] <= 0:
            raise ValidationError("qty must be a positive number")

    price = patch.get("item_price")
    if price is not None:
        if price < 0:
            raise ValidationError("item_price must be >= 0")
        if price > MAX_ITEM_PRICE:
            raise ValidationError(f"item_price cannot exceed {MAX_ITEM_PRICE}")

    for field in ("height", "width", "length", "weight"):
        value = patch.get(field)
        if value is not None and value < 0:
            raise ValidationError(f"{field} must be >= 0")


def require_reason(reason: str | None, *, min_length: int = 10, action: str = "this action") -> str:
    cleaned = (reason or "").strip()
    if len(cleaned) < min_length:
        raise ValidationError(
            f"A reason with at least {min_length} characters is required for {action}"
        )
    return cleaned


def parse_month_day(value: str) -> tuple[int, int]:
    """Parse 'MM-DD' into (month, day)."""
    if not isinstance(value, str) or not MONTH_DAY_RE.match(value.strip()):
        raise ValidationError("Date must be in MM-DD format")
    month, day = value.strip().split("-")
    return int(month), int(day)
