"""
Authorization tests for the StageTrack API.

Verifies:
- Unauthenticated requests return 401
- Agents are denied admin-only operations (403)
- Admins can perform privileged operations
- The public tracking route needs no token
"""

import pytest

from stagetrack.services import session_service


# =============================================================================
# UNAUTHENTICATED ACCESS - 401
# =============================================================================


class TestUnauthenticatedAccess:
    """All staff endpoints return 401 without a token."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/orders"),
            ("POST", "/api/orders"),
            ("GET", "/api/orders/abc"),
            ("PATCH", "/api/orders/abc"),
            ("POST", "/api/orders/abc/lock"),
            ("POST", "/api/orders/abc/unlock"),
            ("POST", "/api/orders/abc/stage"),
            ("PATCH", "/api/orders/abc/items/def/measurements"),
            ("GET", "/api/orders/abc/items/def/measurements/history"),
            ("PATCH", "/api/orders/abc/measurements"),
            ("GET", "/api/accounts"),
            ("DELETE", "/api/accounts/abc"),
            ("POST", "/api/auth/logout"),
            ("GET", "/api/audit/abc"),
            ("GET", "/api/settings/thresholds"),
            ("PATCH", "/api/settings/thresholds/QC"),
            ("GET", "/api/settings/system"),
            ("POST", "/api/settings/recalculate-etas"),
        ],
    )
    def test_requires_auth(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"
        assert resp.get_json()["error"] == "unauthenticated"

    def test_unknown_token(self, client, db_session):
        resp = client.get("/api/orders", headers={"Authorization": "Bearer not-a-real-token"})
        assert resp.status_code == 401

    def test_revoked_token(self, client, db_session, agent_user):
        _, token = session_service.create_session(agent_user.id)
        session_service.revoke_session(token)
        resp = client.get("/api/orders", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_logout_revokes_token(self, client, db_session, agent_user):
        _, token = session_service.create_session(agent_user.id)
        headers = {"Authorization": f"Bearer {token}"}
        assert client.get("/api/orders", headers=headers).status_code == 200

        resp = client.post("/api/auth/logout", headers=headers)
        assert resp.status_code == 200
        assert client.get("/api/orders", headers=headers).status_code == 401
        assert client.post("/api/auth/logout", headers=headers).status_code == 401

    def test_inactive_user(self, client, db_session, agent_user):
        _, token = session_service.create_session(agent_user.id)
        agent_user.is_active = False
        db_session.commit()
        resp = client.get("/api/orders", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401


# =============================================================================
# AGENT DENIED ADMIN OPERATIONS - 403
# =============================================================================


class TestAgentDeniedAdminOperations:
    """Agents cannot unlock, change thresholds or touch procurement."""

    def test_cannot_unlock(self, client, order_with_items, agent_headers):
        order_id = order_with_items.id
        assert client.post(f"/api/orders/{order_id}/lock", headers=agent_headers).status_code == 200
        resp = client.post(
            f"/api/orders/{order_id}/unlock",
            json={"reason": "I need to fix the serial"},
            headers=agent_headers,
        )
        assert resp.status_code == 403
        assert resp.get_json()["error"] == "policy"

    def test_cannot_update_threshold(self, client, db_session, agent_headers):
        resp = client.patch("/api/settings/thresholds/QC", json={"warning_days": 1}, headers=agent_headers)
        assert resp.status_code == 403

    def test_cannot_update_setting(self, client, db_session, agent_headers):
        resp = client.patch("/api/settings/system/HOLIDAY_BUFFER_DAYS", json={"value": "5"}, headers=agent_headers)
        assert resp.status_code == 403

    def test_cannot_recalculate_etas(self, client, db_session, agent_headers):
        assert client.post("/api/settings/recalculate-etas", headers=agent_headers).status_code == 403

    def test_cannot_mark_ordered(self, client, order_with_items, agent_headers):
        item_id = order_with_items.items[0].id
        resp = client.post(f"/api/orders/{order_with_items.id}/items/{item_id}/ordered", headers=agent_headers)
        assert resp.status_code == 403

    def test_cannot_set_price(self, client, order_with_items, agent_headers):
        item_id = order_with_items.items[0].id
        resp = client.patch(
            f"/api/orders/{order_with_items.id}/items/{item_id}",
            json={"item_price": "10.00"},
            headers=agent_headers,
        )
        assert resp.status_code == 403

    def test_agent_view_hides_private_fields(self, client, order_with_items, agent_headers):
        resp = client.get(f"/api/orders/{order_with_items.id}", headers=agent_headers)
        assert resp.status_code == 200
        for item in resp.get_json()["order"]["items"]:
            assert "item_price" not in item
            assert "private_item_note" not in item


# =============================================================================
# ADMIN ALLOWED
# =============================================================================


class TestAdminAllowed:

    def test_unlock_with_reason(self, client, order_with_items, agent_headers, admin_headers):
        order_id = order_with_items.id
        client.post(f"/api/orders/{order_id}/lock", headers=agent_headers)

        resp = client.post(f"/api/orders/{order_id}/unlock", json={"reason": "short"}, headers=admin_headers)
        assert resp.status_code == 400

        resp = client.post(f"/api/orders/{order_id}/unlock", json={"reason": "valid reason!"}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()["order"]["is_locked"] is False

    def test_update_threshold(self, client, db_session, admin_headers):
        resp = client.patch(
            "/api/settings/thresholds/QC",
            json={"warning_days": 5, "critical_days": 9},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        body = resp.get_json()["threshold"]
        assert (body["warning_days"], body["critical_days"]) == (5, 9)

    def test_initialize_thresholds(self, client, db_session, admin_headers):
        resp = client.post("/api/settings/thresholds/initialize", headers=admin_headers)
        assert resp.status_code == 200
        assert len(resp.get_json()["created"]) == 10

    def test_recalculate_etas(self, client, order_with_items, admin_headers):
        resp = client.post("/api/settings/recalculate-etas", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()["orders_updated"] == 1

    def test_admin_view_shows_private_fields(self, client, order_with_items, admin_headers):
        resp = client.get(f"/api/orders/{order_with_items.id}", headers=admin_headers)
        assert all("item_price" in item for item in resp.get_json()["order"]["items"])


# =============================================================================
# PUBLIC ROUTES
# =============================================================================


class TestPublicAccess:

    def test_tracking_page_without_token(self, client, order_with_items):
        resp = client.get(f"/api/public/orders/{order_with_items.tracking_token}")
        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "no-store"
        body = resp.get_json()["order"]
        assert body["po_number"] == "PO-1001"
        assert body["reached_stages"] == ["MANUFACTURING"]
        assert "tracking_token" not in body
        assert "sales_rep" not in body

    def test_unknown_tracking_token(self, client, db_session):
        assert client.get("/api/public/orders/nope").status_code == 404

    def test_health(self, client, db_session):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "healthy"
        assert body["pipeline"][0] == "MANUFACTURING"
        assert body["pipeline"][-1] == "FOLLOW_UP"
