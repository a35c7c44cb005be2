"""Integration tests for the HTTP auth surface.

Tests the complete flow:
- Registration and login
- Mandatory and optional guards on routes
- Logout revocation
- Profile and admin routes
- Error envelopes and rate limiting
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from csaccess import app as app_module
from csaccess.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "a@b.com"


@pytest.fixture
def test_user_password():
    return "secret1"


def _register(client, email="a@b.com", name="Ann", password="secret1"):
    return client.post(
        "/api/auth/register", json={"email": email, "name": name, "password": password}
    )


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _make_admin(client, email="admin@b.com") -> str:
    response = _register(client, email=email, name="Admin")
    user_id = response.json()["data"]["user"]["id"]
    asyncio.run(get_runtime().auth.set_role(user_id, "admin"))
    login = client.post("/api/auth/login", json={"email": email, "password": "secret1"})
    return login.json()["data"]["token"]


class TestRegisterAndLogin:
    def test_register_then_login(self, client, test_user_email, test_user_password):
        response = _register(client, test_user_email, "Ann", test_user_password)
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["email"] == "a@b.com"
        assert body["data"]["token"]
        assert "password_hash" not in body["data"]["user"]
        user_id = body["data"]["user"]["id"]

        login = client.post(
            "/api/auth/login",
            json={"email": test_user_email, "password": test_user_password},
        )
        assert login.status_code == 200
        token = login.json()["data"]["token"]
        verify = client.get("/api/auth/verify", headers=_auth(token))
        assert verify.status_code == 200
        assert verify.json()["data"] == {
            "valid": True,
            "user": {"id": user_id, "email": "a@b.com", "role": "user"},
        }

    def test_duplicate_registration_is_400_conflict(self, client):
        _register(client)
        response = _register(client, email="A@B.COM")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert error["message"] == "User already exists with this email address"

    def test_invalid_registration_is_400_with_field_details(self, client):
        response = _register(client, email="bad", name="A", password="123")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert set(error["details"]["fields"]) == {"email", "name", "password"}

    def test_missing_body_fields_is_400(self, client):
        response = client.post("/api/auth/register", json={"email": "a@b.com"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_wrong_password_is_generic_401(self, client):
        _register(client)
        wrong = client.post("/api/auth/login", json={"email": "a@b.com", "password": "nope123"})
        unknown = client.post(
            "/api/auth/login", json={"email": "x@b.com", "password": "secret1"}
        )
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["message"] == "Invalid email or password"

    def test_registration_records_client_origin(self, client):
        token = _register(client).json()["data"]["token"]
        response = client.get(
            "/api/auth/sessions", headers={**_auth(token), "User-Agent": "pytest-agent"}
        )
        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert len(items) == 1
        assert items[0]["ip_address"] == "testclient"
        assert "token_hash" not in items[0]


class TestGuards:
    def test_me_requires_token(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "Access token required",
            "details": None,
        }

    def test_me_returns_profile(self, client):
        token = _register(client).json()["data"]["token"]
        response = client.get("/api/auth/me", headers=_auth(token))
        assert response.status_code == 200
        assert response.json()["data"]["user"]["name"] == "Ann"

    def test_garbage_token_is_403_invalid_token(self, client):
        response = client.get("/api/auth/me", headers=_auth("not.a.token"))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "invalid_token"

    def test_expired_token_is_401_token_expired(self, client):
        token = _register(client).json()["data"]["token"]
        runtime = get_runtime()
        real_clock = runtime.tokens._clock
        runtime.tokens._clock = lambda: real_clock() + 8 * 24 * 3600
        response = client.get("/api/auth/me", headers=_auth(token))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_expired"

    def test_me_of_deactivated_user_is_404(self, client):
        body = _register(client).json()["data"]
        asyncio.run(get_runtime().auth.deactivate_user(body["user"]["id"]))
        response = client.get("/api/auth/me", headers=_auth(body["token"]))
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "User not found"

    def test_status_is_anonymous_without_or_with_bad_token(self, client):
        anonymous = client.get("/api/auth/status")
        assert anonymous.status_code == 200
        assert anonymous.json()["data"] == {"authenticated": False, "user": None}
        bad = client.get("/api/auth/status", headers=_auth("garbage"))
        assert bad.status_code == 200
        assert bad.json()["data"]["authenticated"] is False

    def test_status_with_valid_token(self, client):
        token = _register(client).json()["data"]["token"]
        response = client.get("/api/auth/status", headers=_auth(token))
        assert response.json()["data"]["authenticated"] is True
        assert response.json()["data"]["user"]["email"] == "a@b.com"


class TestLogout:
    def test_logout_revokes_token(self, client):
        token = _register(client).json()["data"]["token"]
        response = client.post("/api/auth/logout", headers=_auth(token))
        assert response.status_code == 200
        assert response.json()["data"]["revoked"] >= 1

        after = client.get("/api/auth/me", headers=_auth(token))
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "token_revoked"

        status = client.get("/api/auth/status", headers=_auth(token))
        assert status.json()["data"]["authenticated"] is False

    def test_logout_requires_token(self, client):
        assert client.post("/api/auth/logout").status_code == 401


class TestProfileRoutes:
    def test_update_profile(self, client):
        token = _register(client).json()["data"]["token"]
        response = client.put(
            "/api/users/profile",
            headers=_auth(token),
            json={"name": "Annie", "profile_image_url": "https://img.example.com/a.png"},
        )
        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["name"] == "Annie"
        assert user["profile_image_url"] == "https://img.example.com/a.png"
        assert client.get("/api/users/profile", headers=_auth(token)).json()["data"]["user"][
            "name"
        ] == "Annie"

    def test_empty_profile_update_is_400(self, client):
        token = _register(client).json()["data"]["token"]
        response = client.put("/api/users/profile", headers=_auth(token), json={})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "No valid fields to update"


class TestAdminRoutes:
    def test_regular_user_is_forbidden(self, client):
        token = _register(client).json()["data"]["token"]
        response = client.get("/api/admin/users", headers=_auth(token))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert response.json()["error"]["message"] == "Insufficient permissions"

    def test_admin_lists_promotes_and_deactivates(self, client):
        user_id = _register(client).json()["data"]["user"]["id"]
        admin_token = _make_admin(client)

        listed = client.get("/api/admin/users", headers=_auth(admin_token))
        assert listed.status_code == 200
        emails = {item["email"] for item in listed.json()["data"]["items"]}
        assert emails == {"a@b.com", "admin@b.com"}

        promoted = client.post(
            f"/api/admin/users/{user_id}/role",
            headers=_auth(admin_token),
            json={"role": "admin"},
        )
        assert promoted.status_code == 200
        assert promoted.json()["data"]["user"]["role"] == "admin"

        deactivated = client.post(
            f"/api/admin/users/{user_id}/deactivate", headers=_auth(admin_token)
        )
        assert deactivated.status_code == 200
        assert deactivated.json()["data"]["user"]["is_active"] is False

        login = client.post("/api/auth/login", json={"email": "a@b.com", "password": "secret1"})
        assert login.status_code == 401

    def test_unknown_user_is_404(self, client):
        admin_token = _make_admin(client)
        response = client.post(
            "/api/admin/users/missing/deactivate", headers=_auth(admin_token)
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestAmbient:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["environment"] == "test"
        assert body["checks"]["database"]["type"] == "memory"

    def test_request_id_is_echoed(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_auth_routes_are_rate_limited(self, client):
        get_runtime().settings.auth_rate_limit = 2
        payload = {"email": "a@b.com", "password": "wrong12"}
        statuses = [client.post("/api/auth/login", json=payload).status_code for _ in range(3)]
        assert statuses == [401, 401, 429]
        assert client.post("/api/auth/login", json=payload).json()["error"]["code"] == "rate_limited"
