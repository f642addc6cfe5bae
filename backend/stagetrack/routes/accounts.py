# backend/stagetrack/routes/accounts.py
"""
Customer account routes.

- GET    /api/accounts       list accounts
- POST   /api/accounts       create an account
- DELETE /api/accounts/<id>  delete an account that has no orders
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import order_service
from ..validation import StageTrackError
from ..decorators import require_auth


accounts_bp = Blueprint("accounts", __name__, url_prefix="/api/accounts")


@accounts_bp.get("")
@require_auth
def list_accounts_route():
    try:
        accounts = order_service.list_accounts()
        return jsonify({"accounts": [a.to_dict() for a in accounts]}), 200
    except Exception:
        current_app.logger.exception("Failed to list accounts")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@accounts_bp.post("")
@require_auth
def create_account_route():
    """
    Request body:
        {"name": "Acme Fabrication", "contact_email": "ops@acme.test"}
    """
    try:
        account = order_service.create_account(request.get_json(silent=True) or {}, g.actor)
        return jsonify({"account": account.to_dict()}), 201
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create account")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@accounts_bp.delete("/<account_id>")
@require_auth
def delete_account_route(account_id: str):
    """Rejected with 409 and the blocking orders while the account has any."""
    try:
        order_service.delete_account(account_id, g.actor)
        return jsonify({"deleted": True, "id": account_id}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete account")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500
