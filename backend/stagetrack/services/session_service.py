# Overview: Bearer-token sessions and the authenticated Actor passed to every service call.

"""
Session Token Management

WHY: Every mutation must be attributable to a staff member. Tokens are
issued out of band (CLI) and resolved per request to an Actor.

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage (fast, one-way)
- Absolute expiry (Config.SESSION_TTL_HOURS)
- Revocable
"""

import secrets
import hashlib
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import ROLE_AGENT, VALID_ROLES, SessionToken, User
from ..validation import NotFoundError, ValidationError
from . import audit_service
from .concurrency import run_atomic
from stagetrack.time_utils import to_naive_utc, utcnow


@dataclass(frozen=True)
class Actor:
    """Authenticated caller: id and display name for attribution, elevated flag for policy."""
    user_id: int | None
    name: str
    is_admin: bool = False

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, name=user.name, is_admin=user.is_admin)


SYSTEM_ACTOR = Actor(user_id=None, name="System", is_admin=True)


def generate_token() -> str:
    """64-character hex string (32 bytes of entropy). Never stored in plaintext."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_session(user_id: int, *, ttl_hours: int | None = None) -> tuple[SessionToken, str]:
    """
    Create a session token for an active user.

    Returns (session_record, plaintext_token).
    """
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError(f"User {user_id} not found")
    if not user.is_active:
        raise NotFoundError(f"User {user_id} is not active")

    if ttl_hours is None:
        ttl_hours = current_app.config.get("SESSION_TTL_HOURS", 720)

    plaintext_token = generate_token()
    now = utcnow()

    session = SessionToken(
        user_id=user.id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        last_used_at=now,
        expires_at=now + timedelta(hours=ttl_hours),
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()

    return session, plaintext_token


def validate_session(token: str) -> Actor | None:
    """
    Resolve a plaintext token to an Actor.

    Returns None if the token is unknown, expired or revoked, or the user
    is inactive.
    """
    if not token:
        return None

    session = db.session.query(SessionToken).filter_by(token_hash=hash_token(token)).first()
    if not session or session.is_revoked:
        return None

    now = utcnow()
    if to_naive_utc(session.expires_at) <= now:
        return None

    user = session.user
    if not user or not user.is_active:
        return None

    session.last_used_at = now
    db.session.commit()

    return Actor.from_user(user)


def revoke_session(token: str) -> bool:
    session = db.session.query(SessionToken).filter_by(token_hash=hash_token(token)).first()
    if not session or session.is_revoked:
        return False
    session.is_revoked = True
    session.revoked_at = utcnow()
    db.session.commit()
    return True


def create_user(name: str, email: str, role: str = ROLE_AGENT, *, actor: Actor = SYSTEM_ACTOR) -> User:
    """Create a staff user. Accounts are provisioned from the CLI."""
    name = (name or "").strip()
    email = (email or "").strip().lower()
    role = (role or "").strip().upper()
    if not name:
        raise ValidationError("name is required")
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")
    if role not in VALID_ROLES:
        raise ValidationError(f"role must be one of {', '.join(sorted(VALID_ROLES))}")
    if db.session.query(User).filter_by(email=email).first():
        raise ValidationError(f"A user with email {email} already exists")

    def _op():
        user = User(name=name, email=email, role=role, is_active=True)
        db.session.add(user)
        db.session.flush()
        audit_service.record(
            entity_type=audit_service.ENTITY_USER,
            entity_id=user.id,
            action=audit_service.USER_CREATED,
            actor=actor,
            metadata=audit_service.SnapshotMetadata(
                message=f"User {name} created",
                data={"email": email, "role": role},
            ),
        )
        db.session.commit()
        return user

    return run_atomic(_op)


def list_users() -> list[User]:
    return db.session.query(User).order_by(User.id.asc()).all()
