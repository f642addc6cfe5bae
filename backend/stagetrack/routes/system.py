# backend/stagetrack/routes/system.py
"""
System health endpoint.

Checks the database and reports the configured pipeline, for deployment
debugging.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Order, SessionToken, User
from ..services.stage_pipeline import get_pipeline
from stagetrack.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        order_count = db.session.query(Order).count()
        user_count = db.session.query(User).count()
        active_sessions = db.session.query(SessionToken).filter_by(is_revoked=False).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "orders": order_count,
                "users": user_count,
                "active_sessions": active_sessions,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: Database reachable
    - 503: Database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()

    http_status = 200 if database_health["status"] == "healthy" else 503

    response = {
        "status": database_health["status"],
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "pipeline": list(get_pipeline().stages),
        "checks": {
            "database": database_health,
        }
    }

    return response, http_status
