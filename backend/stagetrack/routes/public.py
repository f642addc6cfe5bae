# backend/stagetrack/routes/public.py
"""
Customer tracking route.

GET /api/public/orders/<token>

No authentication; the tracking token is the credential. Read-only, and
the payload leaves out pricing, private notes and staff names.
"""

from flask import Blueprint, jsonify, current_app

from ..services import order_service
from ..validation import StageTrackError


public_bp = Blueprint("public", __name__, url_prefix="/api/public")


@public_bp.get("/orders/<token>")
def public_order_route(token: str):
    try:
        data = order_service.get_public_order(token)
        response = jsonify({"order": data})
        response.headers["Cache-Control"] = "no-store"
        return response, 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load public order")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500
