# backend/stagetrack/routes/auth.py
"""
Session routes.

Staff sessions are issued from the CLI (flask users issue-token); the API only
ends them.

- POST /api/auth/logout  revoke the bearer token
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import session_service


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/logout")
def logout_route():
    """
    Revoke the session token sent as Authorization: Bearer <token>.
    A token that is unknown or already revoked gets 401.
    """
    try:
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "unauthenticated", "message": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        if not session_service.revoke_session(token):
            return jsonify({"error": "unauthenticated", "message": "Invalid or expired token"}), 401

        return jsonify({"message": "Logout successful"}), 200
    except Exception:
        current_app.logger.exception("Failed to logout")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500
