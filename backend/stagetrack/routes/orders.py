# backend/stagetrack/routes/orders.py
"""
Order and item API routes.

- GET    /api/orders                                   list (filters: stage, account_id)
- POST   /api/orders                                   create (optional "items" list)
- GET    /api/orders/<id>                              snapshot with items, risk, stage history
- PATCH  /api/orders/<id>                              edit order fields (lock-gated)
- DELETE /api/orders/<id>                              delete (rejected while locked)
- POST   /api/orders/<id>/lock                         lock
- POST   /api/orders/<id>/unlock                       unlock (admin, reason >= 10 chars)
- POST   /api/orders/<id>/stage                        stage move
- POST   /api/orders/<id>/items                        add items
- PATCH  /api/orders/<id>/items/<item_id>              edit item fields (lock-gated)
- DELETE /api/orders/<id>/items/<item_id>              delete item (rejected while locked)
- PATCH  /api/orders/<id>/items/<item_id>/measurements measurements (never gated)
- GET    /api/orders/<id>/items/<item_id>/measurements/history  measurement history
- PATCH  /api/orders/<id>/measurements                 measurements for several items at once
- POST   /api/orders/<id>/items/<item_id>/stage        item stage move
- POST   /api/orders/<id>/items/<item_id>/ordered      mark ordered (admin)
- DELETE /api/orders/<id>/items/<item_id>/ordered      unmark ordered (admin, reason)

SECURITY:
- All routes require authentication
- The acting user comes from the bearer token (g.actor), never from the body
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import order_service, stage_service, lock_service
from ..validation import StageTrackError
from ..decorators import require_auth


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _bool_arg(data: dict, key: str) -> bool:
    return data.get(key) is True


def _item_response(item):
    return item.to_dict(include_private=g.actor.is_admin)


@orders_bp.get("")
@require_auth
def list_orders_route():
    try:
        orders = order_service.list_orders(
            stage=request.args.get("stage"),
            account_id=request.args.get("account_id"),
        )
        return jsonify({"orders": orders}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.post("")
@require_auth
def create_order_route():
    """
    Create an order.

    Request body:
        {
            "account_id": "...",               // required
            "po_number": "PO-1001",
            "sales_rep": "...",
            "current_stage": "MANUFACTURING",  // optional, defaults to first stage
            "items": [{"product_code": "...", "qty": 1}, ...]
        }
    """
    try:
        order = order_service.create_order(request.get_json(silent=True) or {}, g.actor)
        snapshot = order_service.get_order_snapshot(order.id, include_private=g.actor.is_admin)
        return jsonify({"order": snapshot}), 201
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.get("/<order_id>")
@require_auth
def get_order_route(order_id: str):
    try:
        snapshot = order_service.get_order_snapshot(order_id, include_private=g.actor.is_admin)
        return jsonify({"order": snapshot}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.patch("/<order_id>")
@require_auth
def edit_order_route(order_id: str):
    """
    Edit order fields. While the order is locked, any of account_id,
    po_number, sales_rep, shipping_address or shipping_method rejects the
    whole request with 403 and the attempt is recorded.
    """
    try:
        order, changed = order_service.edit_order_fields(order_id, request.get_json(silent=True) or {}, g.actor)
        return jsonify({"order": order.to_dict(), "changed_fields": changed}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to edit order")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.delete("/<order_id>")
@require_auth
def delete_order_route(order_id: str):
    try:
        order_service.delete_order(order_id, g.actor)
        return jsonify({"deleted": True, "id": order_id}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete order")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.post("/<order_id>/lock")
@require_auth
def lock_order_route(order_id: str):
    data = request.get_json(silent=True) or {}
    try:
        order = lock_service.lock_order(order_id, g.actor, reason=data.get("reason"))
        return jsonify({"order": order.to_dict()}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to lock order")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.post("/<order_id>/unlock")
@require_auth
def unlock_order_route(order_id: str):
    """
    Unlock an order.

    Request body:
        {"reason": "Customer changed shipping address"}  // >= 10 characters

    Error responses:
        400: Reason missing or too short
        403: Caller is not an admin
        409: Order is not locked
    """
    data = request.get_json(silent=True) or {}
    try:
        order = lock_service.unlock_order(order_id, g.actor, data.get("reason"))
        return jsonify({"order": order.to_dict()}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to unlock order")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.post("/<order_id>/stage")
@require_auth
def advance_order_stage_route(order_id: str):
    """
    Move an order to another stage.

    Request body:
        {
            "stage": "TESTING",
            "note": "...",
            "allow_fast_forward": false,
            "allow_backward": false
        }

    A request for the current stage succeeds with "event": null.
    """
    data = request.get_json(silent=True) or {}
    try:
        order, event = stage_service.advance_order_stage(
            order_id,
            data.get("stage"),
            g.actor,
            note=data.get("note"),
            allow_fast_forward=_bool_arg(data, "allow_fast_forward"),
            allow_backward=_bool_arg(data, "allow_backward"),
        )
        return jsonify({
            "order": order.to_dict(),
            "event": event.to_dict() if event is not None else None,
        }), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to change order stage")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.post("/<order_id>/items")
@require_auth
def add_items_route(order_id: str):
    data = request.get_json(silent=True) or {}
    try:
        items = order_service.add_items(order_id, data.get("items"), g.actor)
        return jsonify({"items": [_item_response(i) for i in items]}), 201
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to add items")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.patch("/<order_id>/items/<item_id>")
@require_auth
def edit_item_route(order_id: str, item_id: str):
    try:
        item, changed = order_service.edit_item_fields(
            order_id, item_id, request.get_json(silent=True) or {}, g.actor,
        )
        return jsonify({"item": _item_response(item), "changed_fields": changed}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to edit item")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.delete("/<order_id>/items/<item_id>")
@require_auth
def delete_item_route(order_id: str, item_id: str):
    try:
        order_service.delete_item(order_id, item_id, g.actor)
        return jsonify({"deleted": True, "id": item_id}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete item")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.patch("/<order_id>/items/<item_id>/measurements")
@require_auth
def update_measurements_route(order_id: str, item_id: str):
    try:
        item, changed = order_service.update_measurements(
            order_id, item_id, request.get_json(silent=True) or {}, g.actor,
        )
        return jsonify({"item": _item_response(item), "changed_fields": changed}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update measurements")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.get("/<order_id>/items/<item_id>/measurements/history")
@require_auth
def measurement_history_route(order_id: str, item_id: str):
    try:
        entries = order_service.measurement_history(order_id, item_id)
        return jsonify({"item_id": item_id, "entries": entries}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load measurement history")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.patch("/<order_id>/measurements")
@require_auth
def bulk_update_measurements_route(order_id: str):
    """
    Request body:
        {"items": [{"id": "<item id>", "height": 120, "measurement_unit": "cm"}, ...]}
    """
    try:
        data = request.get_json(silent=True) or {}
        raw_items = data.get("items") if isinstance(data, dict) else None
        items = order_service.bulk_update_measurements(order_id, raw_items, g.actor)
        return jsonify({"updated": len(items), "items": [_item_response(i) for i in items]}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update measurements")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.post("/<order_id>/items/<item_id>/stage")
@require_auth
def advance_item_stage_route(order_id: str, item_id: str):
    data = request.get_json(silent=True) or {}
    try:
        item, event = stage_service.advance_item_stage(
            order_id,
            item_id,
            data.get("stage"),
            g.actor,
            note=data.get("note"),
            allow_fast_forward=_bool_arg(data, "allow_fast_forward"),
            allow_backward=_bool_arg(data, "allow_backward"),
        )
        return jsonify({
            "item": _item_response(item),
            "event": event.to_dict() if event is not None else None,
        }), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to change item stage")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.post("/<order_id>/items/<item_id>/ordered")
@require_auth
def mark_item_ordered_route(order_id: str, item_id: str):
    try:
        item = order_service.mark_item_ordered(order_id, item_id, g.actor)
        return jsonify({"item": _item_response(item)}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to mark item as ordered")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500


@orders_bp.delete("/<order_id>/items/<item_id>/ordered")
@require_auth
def unmark_item_ordered_route(order_id: str, item_id: str):
    data = request.get_json(silent=True) or {}
    try:
        item = order_service.unmark_item_ordered(order_id, item_id, g.actor, data.get("reason"))
        return jsonify({"item": _item_response(item)}), 200
    except StageTrackError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to unmark item as ordered")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500
