"""Integration tests for the authentication flow.

Tests the complete flow through the HTTP API:
- Login and token issuance
- Bearer-protected endpoints
- Re-login invalidating earlier tokens
- Password change
- Logout
"""

import uuid

import pytest
from fastapi.testclient import TestClient

from jobinow import app as app_module
from jobinow.service.runtime import get_runtime
from jobinow.storage.models import Role, UserStatus

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.create_app())


def _create_user(role: Role = Role.JOB_SEEKER, password: str = PASSWORD):
    runtime = get_runtime()
    user = runtime.store.create_user(f"user-{uuid.uuid4().hex[:12]}@example.com", role=role)
    digest, algo = runtime.sessions.verifier.hash(password)
    runtime.store.save_password(user.id, digest, algo)
    return user


def _login(client, email, password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user():
    return _create_user()


@pytest.fixture
def token(client, user):
    response = _login(client, user.email)
    assert response.status_code == 200
    return response.json()["data"]["access_token"]


class TestLogin:
    """Tests for POST /v1/auth/login."""

    def test_login_returns_bearer_token(self, client, user):
        response = _login(client, user.email)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["token_type"] == "bearer"
        assert body["data"]["user_id"] == user.id
        assert body["data"]["role"] == "JOB_SEEKER"
        assert body["data"]["access_token"].count(".") == 2
        assert body["data"]["expires_at"]

    def test_login_marks_user_online(self, client, user):
        _login(client, user.email)
        assert get_runtime().store.get_user(user.id).status == UserStatus.ONLINE

    def test_login_email_is_case_insensitive(self, client, user):
        response = _login(client, user.email.upper())
        assert response.status_code == 200

    def test_wrong_password_is_unauthorized(self, client, user):
        response = _login(client, user.email, "WrongPassword!")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.parametrize("email", ["nobody@example.com", "not-an-email"])
    def test_unknown_or_malformed_email_fails_like_wrong_password(self, client, user, email):
        wrong = _login(client, user.email, "WrongPassword!")
        unknown = _login(client, email)

        assert unknown.status_code == 401
        assert unknown.json()["error"]["message"] == wrong.json()["error"]["message"]

    def test_missing_fields_are_validation_errors(self, client):
        response = client.post("/v1/auth/login", json={"email": "a@example.com"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_relogin_invalidates_previous_token(self, client, user, token):
        second = _login(client, user.email).json()["data"]["access_token"]

        assert client.get("/v1/me", headers=_auth(token)).status_code == 401
        assert client.get("/v1/me", headers=_auth(second)).status_code == 200
        assert len(get_runtime().store.find_all_valid_tokens(user.id)) == 1


class TestCurrentUser:
    """Tests for GET /v1/me and the bearer filter."""

    def test_me_returns_profile(self, client, user, token):
        response = client.get("/v1/me", headers=_auth(token))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == user.id
        assert data["email"] == user.email
        assert data["status"] == "ONLINE"

    def test_me_without_token_is_unauthorized(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    @pytest.mark.parametrize("header", ["Bearer garbage", "Basic abc", "Bearer a.b.c"])
    def test_bad_authorization_header_is_unauthorized(self, client, header):
        response = client.get("/v1/me", headers={"Authorization": header})
        assert response.status_code == 401


class TestPasswordChange:
    """Tests for POST /v1/auth/password/change."""

    def test_change_password_revokes_and_allows_new_login(self, client, user, token):
        new_password = "NewPassword456!"
        response = client.post(
            "/v1/auth/password/change",
            json={
                "current_password": PASSWORD,
                "new_password": new_password,
                "confirmation_password": new_password,
            },
            headers=_auth(token),
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "changed"
        assert client.get("/v1/me", headers=_auth(token)).status_code == 401
        assert _login(client, user.email).status_code == 401
        assert _login(client, user.email, new_password).status_code == 200

    def test_wrong_current_password_is_unauthorized(self, client, token):
        response = client.post(
            "/v1/auth/password/change",
            json={
                "current_password": "WrongPassword!",
                "new_password": "NewPassword456!",
                "confirmation_password": "NewPassword456!",
            },
            headers=_auth(token),
        )
        assert response.status_code == 401
        assert client.get("/v1/me", headers=_auth(token)).status_code == 200

    def test_confirmation_mismatch_is_rejected(self, client, token):
        response = client.post(
            "/v1/auth/password/change",
            json={
                "current_password": PASSWORD,
                "new_password": "NewPassword456!",
                "confirmation_password": "Different789!",
            },
            headers=_auth(token),
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["message"] == "passwords are not the same"

    def test_short_new_password_is_rejected(self, client, token):
        response = client.post(
            "/v1/auth/password/change",
            json={
                "current_password": PASSWORD,
                "new_password": "short",
                "confirmation_password": "short",
            },
            headers=_auth(token),
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "new_password"}

    def test_wrong_current_password_wins_over_short_new_password(self, client, token):
        response = client.post(
            "/v1/auth/password/change",
            json={
                "current_password": "WrongPassword!",
                "new_password": "short",
                "confirmation_password": "other",
            },
            headers=_auth(token),
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_change_password_requires_authentication(self, client):
        response = client.post(
            "/v1/auth/password/change",
            json={
                "current_password": PASSWORD,
                "new_password": "NewPassword456!",
                "confirmation_password": "NewPassword456!",
            },
        )
        assert response.status_code == 401


class TestLogout:
    """Tests for POST /v1/auth/logout."""

    def test_logout_revokes_token_and_marks_offline(self, client, user, token):
        response = client.post("/v1/auth/logout", headers=_auth(token))

        assert response.status_code == 200
        assert response.json()["data"] == {"status": "logged_out", "revoked": 1}
        assert client.get("/v1/me", headers=_auth(token)).status_code == 401
        assert get_runtime().store.get_user(user.id).status == UserStatus.OFFLINE

    def test_logout_requires_authentication(self, client):
        assert client.post("/v1/auth/logout").status_code == 401
