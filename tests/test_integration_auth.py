"""Integration tests for the HTTP authentication flow.

Tests the complete flow including:
- Login with password
- Session introspection
- Token refresh (body and legacy header)
- Logout
- Error envelopes and response headers
"""

import time

import pytest
from fastapi.testclient import TestClient

from shield import app as app_module
from shield.service.runtime import get_runtime
from shield.service.tokens import TokenCodec


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


@pytest.fixture
def test_user_password():
    return "TestPassword123!"


@pytest.fixture
def test_user(test_user_email, test_user_password):
    runtime = get_runtime()
    user = runtime.store.create_user(test_user_email)
    runtime.store.save_password(
        user.id, runtime.verifier.hash(test_user_password), runtime.verifier.algo
    )
    return user


@pytest.fixture
def tokens(client, test_user, test_user_email, test_user_password):
    response = client.post(
        "/v1/login", json={"email": test_user_email, "password": test_user_password}
    )
    assert response.status_code == 200
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestLoginFlow:
    """Tests for POST /v1/login."""

    def test_login_returns_token_pair(self, client, test_user, test_user_email, test_user_password):
        response = client.post(
            "/v1/login", json={"email": test_user_email, "password": test_user_password}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["data"]["access_token"]
        assert data["data"]["refresh_token"]
        assert data["data"]["token_type"] == "bearer"

    def test_login_rejects_wrong_password(self, client, test_user, test_user_email):
        response = client.post(
            "/v1/login", json={"email": test_user_email, "password": "wrong"}
        )

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "invalid_credentials"
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert get_runtime().store.sessions == {}

    def test_login_unknown_user_looks_the_same(self, client, test_user):
        response = client.post(
            "/v1/login", json={"email": "nobody@example.com", "password": "wrong"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_login_rejects_malformed_email(self, client):
        response = client.post(
            "/v1/login", json={"email": "not-an-email", "password": "x"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestSessionEndpoint:
    """Tests for GET /v1/session."""

    def test_session_returns_claims(self, client, tokens, test_user, test_user_email):
        response = client.get("/v1/session", headers=_bearer(tokens["access_token"]))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == test_user_email
        assert data["user_id"] == test_user.id
        assert data["session_id"]

    def test_session_requires_bearer(self, client):
        response = client.get("/v1/session")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_session_rejects_garbage_token(self, client):
        response = client.get("/v1/session", headers=_bearer("garbage"))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"


class TestRefreshFlow:
    """Tests for POST /v1/refresh."""

    def test_refresh_with_body(self, client, tokens):
        response = client.post(
            "/v1/refresh", json={"refresh_token": tokens["refresh_token"]}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["refresh_token"] == tokens["refresh_token"]
        assert data["access_token"] != tokens["access_token"]

    def test_refresh_with_legacy_header(self, client, tokens):
        response = client.post(
            "/v1/refresh", headers={"refreshToken": tokens["refresh_token"]}
        )

        assert response.status_code == 200
        new_access = response.json()["data"]["access_token"]
        session = client.get("/v1/session", headers=_bearer(new_access))
        assert session.status_code == 200

    def test_refresh_requires_token(self, client):
        response = client.post("/v1/refresh", json={})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_refresh_rejects_garbage(self, client):
        response = client.post("/v1/refresh", json={"refresh_token": "garbage"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"


    def test_expired_refresh_revokes_session(self, client, tokens):
        session = client.get("/v1/session", headers=_bearer(tokens["access_token"]))
        sid = session.json()["data"]["session_id"]
        codec = get_runtime().codec
        stale = TokenCodec.from_settings(
            get_runtime().settings,
            clock=lambda: time.time() - codec.refresh_ttl_seconds - 60,
        ).sign_refresh(sid)

        refresh = client.post("/v1/refresh", json={"refresh_token": stale})
        assert refresh.status_code == 401
        assert refresh.json()["error"]["code"] == "token_expired"

        after = client.get("/v1/session", headers=_bearer(tokens["access_token"]))
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "session_not_found"


class TestLogoutFlow:
    """Tests for POST /v1/logout."""

    def test_logout_revokes_session(self, client, tokens):
        response = client.post("/v1/logout", headers=_bearer(tokens["access_token"]))
        assert response.status_code == 204

        session = client.get("/v1/session", headers=_bearer(tokens["access_token"]))
        assert session.status_code == 401
        assert session.json()["error"]["code"] == "session_not_found"

        refresh = client.post(
            "/v1/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refresh.status_code == 401
        assert refresh.json()["error"]["code"] == "session_not_found"

    def test_logout_twice_succeeds(self, client, tokens):
        first = client.post("/v1/logout", headers=_bearer(tokens["access_token"]))
        second = client.post("/v1/logout", headers=_bearer(tokens["access_token"]))

        assert first.status_code == 204
        assert second.status_code == 204

    def test_logout_requires_bearer(self, client):
        response = client.post("/v1/logout")

        assert response.status_code == 401


class TestEnvelopeAndHeaders:
    """Cross-cutting response behaviour."""

    def test_request_id_is_echoed(self, client, test_user):
        response = client.post(
            "/v1/login",
            json={"email": "nobody@example.com", "password": "wrong"},
            headers={"X-Request-ID": "req-123"},
        )

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_wrong_method_is_method_not_allowed(self, client):
        response = client.get("/v1/login")

        assert response.status_code == 405
        assert response.json()["error"]["code"] == "method_not_allowed"

    def test_security_headers(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"] == "no-store"

    def test_healthz_reports_store(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["type"] == "memory"
