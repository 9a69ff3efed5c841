"""Integration tests for the authentication endpoints.

Tests the complete auth flow including:
- Signup
- Login for super-admins and org members
- Token refresh from body and from cookie; a failed refresh clears cookies
- Logout
- /auth/me in token mode and session mode
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import PASSWORD
from tenantgate import app as app_module
from tenantgate.service.runtime import reset_runtime_for_tests
from tenantgate.storage.models import Role


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def member(seed):
    org = seed.org("Acme")
    user = seed.user("member@example.com", name="Member")
    seed.member(user, org)
    return user, org


def login(client, email, password=PASSWORD, org_id=None):
    body = {"email": email, "password": password}
    if org_id:
        body["org_id"] = org_id
    return client.post("/auth/login", json=body)


def bearer(data):
    return {"Authorization": f"Bearer {data['access_token']}"}


def assert_auth_cookies_cleared(response):
    cookies = response.headers.get_list("set-cookie")
    for name in ("refresh_token", "access_token", "session"):
        cleared = [c for c in cookies if c.startswith(f"{name}=")]
        assert cleared, name
        assert "max-age=0" in cleared[0].lower()


class TestSignupFlow:
    """Tests for user registration."""

    def test_signup_creates_user(self, client):
        response = client.post(
            "/auth/signup",
            json={"email": "New@Example.com", "password": PASSWORD, "name": "New"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ok"
        assert data["data"]["email"] == "new@example.com"
        assert data["data"]["is_super_admin"] is False

    def test_signup_rejects_duplicate_email(self, client):
        client.post("/auth/signup", json={"email": "new@example.com", "password": PASSWORD})
        response = client.post(
            "/auth/signup", json={"email": "new@example.com", "password": PASSWORD}
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_signup_rejects_short_password(self, client):
        response = client.post(
            "/auth/signup", json={"email": "new@example.com", "password": "short"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_signed_up_user_has_no_org(self, client):
        """A bare signup cannot log in until it is invited somewhere."""
        client.post("/auth/signup", json={"email": "new@example.com", "password": PASSWORD})
        response = login(client, "new@example.com")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "no_membership"


class TestLoginFlow:
    def test_member_login_returns_org_scoped_tokens(self, client, member):
        user, org = member
        response = login(client, "MEMBER@example.com")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user_id"] == user.id
        assert data["org_id"] == org.id
        assert data["role"] == Role.USER.value
        assert data["is_super"] is False
        assert data["token_type"] == "bearer"
        assert data["access_token"]
        assert data["refresh_token"]

    def test_login_sets_httponly_cookies(self, client, member):
        response = login(client, "member@example.com")

        cookies = response.headers.get_list("set-cookie")
        refresh = next(c for c in cookies if c.startswith("refresh_token="))
        access = next(c for c in cookies if c.startswith("access_token="))
        for cookie in (refresh, access):
            assert "HttpOnly" in cookie
            assert "samesite=lax" in cookie.lower()
        assert not any(c.startswith("session=") for c in cookies)

    def test_super_admin_login(self, client, seed):
        seed.user("root@example.com", super_admin=True)
        response = login(client, "root@example.com")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["is_super"] is True
        assert data["org_id"] is None

    def test_super_admin_login_with_org_rejected(self, client, seed, member):
        _, org = member
        seed.user("root@example.com", super_admin=True)
        response = login(client, "root@example.com", org_id=org.id)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "super_admin_org"

    def test_bad_credentials(self, client, member):
        response = login(client, "member@example.com", "WrongPassword1")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_disabled_account(self, client, runtime, member):
        user, _ = member
        runtime.store.set_user_disabled(user.id, True)
        response = login(client, "member@example.com")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_disabled"


class TestRefreshFlow:
    def test_refresh_rotates_and_old_token_dies(self, client, member):
        first = login(client, "member@example.com").json()["data"]

        response = client.post("/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert response.status_code == 200
        second = response.json()["data"]
        assert second["refresh_token"] != first["refresh_token"]
        assert second["org_id"] == first["org_id"]
        assert second["user_id"] == first["user_id"]

        replay = client.post("/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_token"

    def test_refresh_from_cookie(self, client, member):
        first = login(client, "member@example.com").json()["data"]
        assert client.cookies.get("refresh_token") == first["refresh_token"]

        response = client.post("/auth/refresh")
        assert response.status_code == 200
        assert client.cookies.get("refresh_token") == response.json()["data"]["refresh_token"]

    def test_refresh_without_token(self, client):
        response = client.post("/auth/refresh", json={})
        assert response.status_code == 401

    def test_dead_refresh_token_clears_cookies(self, client, member):
        login(client, "member@example.com")
        assert client.cookies.get("refresh_token")

        response = client.post("/auth/refresh", json={"refresh_token": "0" * 96})

        assert response.status_code == 401
        assert_auth_cookies_cleared(response)
        assert client.cookies.get("refresh_token") is None
        assert client.cookies.get("access_token") is None

    def test_revoked_org_refresh_clears_cookies(self, client, runtime, member):
        _, org = member
        login(client, "member@example.com")
        asyncio.run(runtime.tokens.mark_org_disabled(org.id))

        response = client.post("/auth/refresh")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "org_revoked"
        assert_auth_cookies_cleared(response)


class TestMeAndLogout:
    def test_me_reports_org_and_role(self, client, member):
        user, org = member
        data = login(client, "member@example.com").json()["data"]

        response = client.get("/auth/me", headers=bearer(data))

        assert response.status_code == 200
        me = response.json()["data"]
        assert me["user"]["id"] == user.id
        assert me["org_id"] == org.id
        assert me["role"] == "USER"

    def test_me_from_access_cookie(self, client, member):
        login(client, "member@example.com")
        assert client.get("/auth/me").status_code == 200

    def test_me_requires_credentials(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_logout_revokes_refresh_token(self, client, member):
        data = login(client, "member@example.com").json()["data"]

        response = client.post("/auth/logout", json={"refresh_token": data["refresh_token"]})
        assert response.status_code == 200
        assert response.json()["data"] == {"logged_out": True}

        replay = client.post("/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert replay.status_code == 401


class TestSessionMode:
    """Opaque session ids presented via header or cookie."""

    @pytest.fixture
    def session_client(self, monkeypatch):
        monkeypatch.setenv("SESSION_MODE", "session")
        reset_runtime_for_tests()
        return TestClient(app_module.app)

    def _seed(self):
        from tenantgate.service.runtime import get_runtime

        runtime = get_runtime()
        user = runtime.store.create_user(
            "member@example.com",
            password_hash=runtime.hasher.hash(PASSWORD),
            password_algo=runtime.hasher.algorithm,
        )
        org = runtime.store.create_org("Acme", "acme")
        runtime.store.create_membership(user.id, org.id, Role.USER)
        return user, org

    def test_session_header_and_cookie(self, session_client):
        user, _ = self._seed()
        response = login(session_client, "member@example.com")
        session_id = response.json()["data"]["refresh_token"]
        assert session_client.cookies.get("session") == session_id

        me = session_client.get("/auth/me", headers={"X-Session-ID": session_id})
        assert me.status_code == 200
        assert me.json()["data"]["user"]["id"] == user.id
        assert session_client.get("/auth/me").status_code == 200

    def test_logout_ends_session(self, session_client):
        self._seed()
        session_id = login(session_client, "member@example.com").json()["data"]["refresh_token"]

        session_client.post("/auth/logout", json={"refresh_token": session_id})

        response = session_client.get("/auth/me", headers={"X-Session-ID": session_id})
        assert response.status_code == 401
