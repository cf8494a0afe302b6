"""
tests/test_api_users.py -- Integration tests for /api/v1/users routes.

Coverage:
  - GET /users needs users.read and reports each user's active role names
  - PATCH /users/{id}: 404, empty body 400, self-deactivation 400,
    email conflict 409, deactivation ends sessions, unlock clears lockout
"""

from __future__ import annotations

from datetime import timedelta

from auth.sessions import utcnow


class TestListUsers:
    def test_list_with_roles(self, api_client, login_as):
        client, headers, admin_id = api_client
        _, uid = login_as("Teacher")

        resp = client.get("/api/v1/users", headers=headers)

        assert resp.status_code == 200
        by_id = {u["id"]: u for u in resp.json()}
        assert by_id[admin_id]["roles"] == ["Super Admin"]
        assert by_id[uid]["roles"] == ["Teacher"]
        assert "password_hash" not in by_id[uid]

    def test_teacher_cannot_list(self, api_client, login_as):
        client, _, _ = api_client
        headers, _ = login_as("Teacher")
        assert client.get("/api/v1/users", headers=headers).status_code == 403


class TestPatchUser:
    def test_update_profile(self, api_client, login_as):
        client, headers, _ = api_client
        _, uid = login_as()

        resp = client.patch(f"/api/v1/users/{uid}", json={"full_name": "Ms Rivera"}, headers=headers)

        assert resp.status_code == 200, resp.text
        assert resp.json()["full_name"] == "Ms Rivera"

    def test_unknown_user(self, api_client):
        client, headers, _ = api_client
        assert client.patch("/api/v1/users/99999", json={"full_name": "X"}, headers=headers).status_code == 404

    def test_empty_body(self, api_client, login_as):
        client, headers, _ = api_client
        _, uid = login_as()
        resp = client.patch(f"/api/v1/users/{uid}", json={}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_changes"

    def test_cannot_deactivate_self(self, api_client):
        client, headers, admin_id = api_client
        resp = client.patch(f"/api/v1/users/{admin_id}", json={"is_active": False}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_deactivation"

    def test_email_conflict(self, api_client, login_as):
        client, headers, _ = api_client
        _, uid = login_as()
        resp = client.patch(f"/api/v1/users/{uid}", json={"email": "testadmin@school.test"}, headers=headers)
        assert resp.status_code == 409

    def test_deactivation_ends_sessions(self, api_client, login_as):
        client, headers, _ = api_client
        user_headers, uid = login_as("Viewer")
        assert client.get("/api/v1/auth/me", headers=user_headers).status_code == 200

        resp = client.patch(f"/api/v1/users/{uid}", json={"is_active": False}, headers=headers)

        assert resp.status_code == 200
        assert resp.json()["is_active"] is False
        assert client.get("/api/v1/auth/me", headers=user_headers).status_code == 401

    def test_unlock(self, api_client, login_as):
        client, headers, _ = api_client
        store = client.app.state.auth_store
        _, uid = login_as()
        for _ in range(5):
            store.record_failed_login(uid, utcnow(), 5, timedelta(minutes=15))
        assert store.get_user(uid).is_locked(utcnow())

        resp = client.patch(f"/api/v1/users/{uid}", json={"unlock": True}, headers=headers)

        assert resp.status_code == 200
        assert resp.json()["failed_login_attempts"] == 0
        assert resp.json()["locked_until"] is None

    def test_viewer_cannot_patch(self, api_client, login_as):
        client, _, _ = api_client
        headers, _ = login_as("Viewer")
        _, uid = login_as()
        assert client.patch(f"/api/v1/users/{uid}", json={"full_name": "X"}, headers=headers).status_code == 403
