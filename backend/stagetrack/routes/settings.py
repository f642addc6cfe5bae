# backend/stagetrack/routes/settings.py
"""
Threshold and system settings routes.

- GET   /api/settings/thresholds                       all stages (persisted or default)
- POST  /api/settings/thresholds/initialize            persist defaults (admin)
- PATCH /api/settings/thresholds/<stage>               edit one stage (admin)
- GET   /api/settings/thresholds/effective/<stage>     seasonal-adjusted threshold (?date=YYYY-MM-DD)
- GET   /api/settings/system                           holiday season settings
- PATCH /api/settings/system/<key>                     edit one setting (admin)
- POST  /api/settings/recalculate-etas                 rewrite every order ETA (admin)

SECURITY: edits are admin-only; the services enforce it as well.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import threshold_service
from ..validation import StageTrackError, ValidationError
from ..decorators import require_auth, require_admin
from stagetrack.time_utils import parse_iso_datetime


settings_bp = Blueprint("settings", __name__, url_prefix="/api/settings")


@settings_bp.get("/thresholds")
@require_auth
def list_thresholds_route():
    try:
        thresholds = threshold_service.list_thresholds()
        return jsonify({"thresholds": [t.to_dict() for t in thresholds]}), 200
    except Exception:
        current_app.logger.exception("Failed to list thresholds")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@settings_bp.post("/thresholds/initialize")
@require_auth
@require_admin
def initialize_thresholds_route():
    try:
        created = threshold_service.initialize_thresholds(g.actor)
        return jsonify({
            "message": f"Initialized {len(created)} stage thresholds",
            "created": [t.to_dict() for t in created],
        }), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to initialize thresholds")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@settings_bp.patch("/thresholds/<stage>")
@require_auth
@require_admin
def update_threshold_route(stage: str):
    """
    Request body (all optional):
        {"warning_days": 40, "critical_days": 80, "description": "..."}
    """
    data = request.get_json(silent=True) or {}
    try:
        threshold = threshold_service.update_threshold(
            stage,
            g.actor,
            warning_days=data.get("warning_days"),
            critical_days=data.get("critical_days"),
            description=data.get("description"),
        )
        return jsonify({"threshold": threshold.to_dict()}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update threshold")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@settings_bp.get("/thresholds/effective/<stage>")
@require_auth
def effective_threshold_route(stage: str):
    try:
        raw_date = request.args.get("date")
        try:
            as_of = parse_iso_datetime(raw_date) if raw_date else None
        except ValueError:
            raise ValidationError("date must be ISO-8601 (YYYY-MM-DD)")
        effective = threshold_service.effective_threshold(stage, as_of)
        return jsonify({"threshold": effective.to_dict()}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to compute effective threshold")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@settings_bp.get("/system")
@require_auth
def system_settings_route():
    try:
        return jsonify({"settings": threshold_service.get_system_settings()}), 200
    except Exception:
        current_app.logger.exception("Failed to load system settings")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@settings_bp.patch("/system/<key>")
@require_auth
@require_admin
def update_system_setting_route(key: str):
    """
    Request body:
        {"value": "11-01", "description": "..."}
    """
    data = request.get_json(silent=True) or {}
    try:
        setting = threshold_service.update_system_setting(
            key, data.get("value"), g.actor, description=data.get("description"),
        )
        return jsonify({"setting": setting}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update system setting")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@settings_bp.post("/recalculate-etas")
@require_auth
@require_admin
def recalculate_etas_route():
    try:
        updated = threshold_service.recalculate_etas(g.actor)
        return jsonify({
            "message": f"Recalculated {updated} order ETAs",
            "orders_updated": updated,
        }), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to recalculate ETAs")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500
