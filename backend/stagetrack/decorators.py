# Overview: Request authentication decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service


def _is_authenticated() -> bool:
    return hasattr(g, 'actor') and hasattr(g, 'current_user_id')


def require_auth(f):
    """
    Require a valid bearer token.

    Sets the following Flask g attributes:
    - g.actor: session_service.Actor (id, display name, admin flag)
    - g.current_user_id: the authenticated user's id

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, expired or revoked token
    - User account deactivated

    The actor is always taken from the token, never from the request body,
    so audit attribution cannot be spoofed.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "unauthenticated", "message": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()

        actor = session_service.validate_session(token)

        if not actor:
            return jsonify({"error": "unauthenticated", "message": "Invalid or expired token"}), 401

        g.actor = actor
        g.current_user_id = actor.user_id

        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """Require the ADMIN role. Must be applied after @require_auth."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _is_authenticated():
            return jsonify({"error": "unauthenticated", "message": "Authentication required"}), 401

        if not g.actor.is_admin:
            return jsonify({"error": "policy", "message": "Admin access required"}), 403

        return f(*args, **kwargs)

    return decorated_function
