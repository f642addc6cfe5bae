# backend/stagetrack/routes/audit.py
"""
Audit history route.

GET /api/audit/<entity_id>
    Entries for the entity and for everything nested under it (items,
    measurements), newest first. Optional ?action=A&action=B filter and
    ?limit=N.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import audit_service
from ..decorators import require_auth


audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit")


@audit_bp.get("/<entity_id>")
@require_auth
def history_route(entity_id: str):
    actions = request.args.getlist("action") or None
    limit = request.args.get("limit", type=int)
    if limit is not None and limit <= 0:
        return jsonify({"error": "validation", "message": "limit must be positive"}), 400
    try:
        entries = audit_service.history(entity_id, actions=actions, limit=limit)
        return jsonify({"entity_id": entity_id, "entries": entries}), 200
    except Exception:
        current_app.logger.exception("Failed to load audit history")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500
