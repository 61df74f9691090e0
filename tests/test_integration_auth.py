"""Integration tests for the HTTP authentication flow.

Tests the complete flow including:
- Registration and signup resumption
- Challenge issuance
- Login with password and challenge code
- Identity lookup with a bearer token
- Token refresh
- Error envelopes
"""

import pytest
from fastapi.testclient import TestClient

from keeper import app as app_module
from keeper.service.runtime import get_runtime
from keeper.storage.models import AccountType

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, username="alice", password=PASSWORD):
    response = client.post(
        "/api/v1/register", json={"username": username, "password": password}
    )
    assert response.status_code == 201
    return response.json()["data"]["challenge"]


def _login(client, username="alice", password=PASSWORD, challenge=None):
    return client.post(
        "/api/v1/login",
        json={"username": username, "password": password, "challenge": challenge},
    )


class TestHealth:
    def test_healthcheck(self, client):
        response = client.get("/healthcheck")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"] == {"status": "healthy"}

    def test_correlation_id_echoed(self, client):
        response = client.get("/healthcheck", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/healthcheck")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"


class TestLifespan:
    def test_shutdown_closes_runtime(self):
        with TestClient(app_module.app) as client:
            assert client.get("/healthcheck").status_code == 200
        assert get_runtime().lifecycle.closing

    def test_failed_startup_still_releases_resources(self, monkeypatch):
        runtime = get_runtime()
        closed = []
        runtime.lifecycle.register("cache", lambda: closed.append("cache"))

        async def broken_start():
            raise RuntimeError("schema creation failed")

        monkeypatch.setattr(runtime, "start", broken_start)
        with pytest.raises(RuntimeError):
            with TestClient(app_module.app):
                pass

        assert closed == ["cache"]
        assert runtime.lifecycle.closing


class TestRegister:
    def test_register_returns_challenge(self, client):
        challenge = _register(client)
        assert len(challenge) == 42
        assert challenge[36:].isdigit()

    def test_register_again_resumes(self, client):
        _register(client)
        _register(client, password="some other password")
        store = get_runtime().store
        assert list(store.accounts) == ["alice"]

    def test_username_normalized(self, client):
        _register(client, username="  ａｌｉｃｅ  ")
        response = client.post("/api/v1/challenge", json={"username": "alice"})
        assert response.status_code == 200

    @pytest.mark.parametrize(
        "body",
        [
            {"username": "", "password": PASSWORD},
            {"username": "alice"},
            {"username": "alice", "password": ""},
            {"username": "bad\x00name", "password": PASSWORD},
        ],
    )
    def test_invalid_body_is_validation_error(self, client, body):
        response = client.post("/api/v1/register", json=body)
        assert response.status_code == 400
        payload = response.json()
        assert payload["status"] == "error"
        assert payload["error"]["code"] == "validation_error"


class TestChallenge:
    def test_unknown_username(self, client):
        response = client.post("/api/v1/challenge", json={"username": "ghost"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_challenge_for_existing_account(self, client):
        first = _register(client)
        response = client.post("/api/v1/challenge", json={"username": "alice"})
        assert response.status_code == 200
        second = response.json()["data"]["challenge"]
        assert second != first
        assert second[36:] == first[36:]


class TestLogin:
    def test_login_issues_tokens_and_promotes(self, client):
        challenge = _register(client)
        response = _login(client, challenge=challenge)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token"].count(".") == 2
        assert data["refresh_token"].count(".") == 2
        assert data["token_type"] == "bearer"
        assert data["expires_at"]

        me = client.get("/api/v1/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert me.status_code == 200
        account = me.json()["data"]
        assert account["username"] == "alice"
        assert account["account_type"] == AccountType.AUTHORIZED.value
        assert account["role"] == "authorized user"
        assert account["role_changed_at"] is not None
        assert "secret" not in account

    def test_wrong_password_and_unknown_user_look_the_same(self, client):
        challenge = _register(client)
        wrong = _login(client, password="not the password", challenge=challenge)
        unknown = _login(client, username="ghost", challenge=challenge)

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["message"] == "authentication failed"
        assert wrong.headers["WWW-Authenticate"] == "Bearer"

    def test_malformed_challenge(self, client):
        _register(client)
        response = _login(client, challenge="abc")
        assert response.status_code == 401

    def test_failed_login_does_not_promote(self, client):
        challenge = _register(client)
        _login(client, password="not the password", challenge=challenge)
        store = get_runtime().store
        assert store.accounts["alice"].account_type == AccountType.UNAUTHORIZED


class TestMe:
    def test_missing_token(self, client):
        response = client.get("/api/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    @pytest.mark.parametrize("header", ["Bearer", "Basic abc", "Bearer not.a.token"])
    def test_bad_token(self, client, header):
        response = client.get("/api/v1/me", headers={"Authorization": header})
        assert response.status_code == 401

    def test_refresh_token_rejected_as_bearer(self, client):
        challenge = _register(client)
        tokens = _login(client, challenge=challenge).json()["data"]
        response = client.get(
            "/api/v1/me", headers={"Authorization": f"Bearer {tokens['refresh_token']}"}
        )
        assert response.status_code == 401


class TestRefresh:
    def test_refresh_issues_new_pair(self, client):
        challenge = _register(client)
        tokens = _login(client, challenge=challenge).json()["data"]

        response = client.post(
            "/api/v1/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert response.status_code == 200
        fresh = response.json()["data"]
        me = client.get("/api/v1/me", headers={"Authorization": f"Bearer {fresh['token']}"})
        assert me.status_code == 200

    def test_access_token_cannot_refresh(self, client):
        challenge = _register(client)
        tokens = _login(client, challenge=challenge).json()["data"]
        response = client.post("/api/v1/refresh", json={"refresh_token": tokens["token"]})
        assert response.status_code == 401


def _bearer(client, username):
    challenge = _register(client, username=username)
    token = _login(client, username=username, challenge=challenge).json()["data"]["token"]
    return {"Authorization": f"Bearer {token}"}


class TestAccountLookup:
    def test_owner_reads_own_account(self, client):
        headers = _bearer(client, "alice")
        response = client.get("/api/v1/accounts/alice", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["username"] == "alice"

    def test_other_user_forbidden(self, client):
        _bearer(client, "alice")
        headers = _bearer(client, "bob")
        response = client.get("/api/v1/accounts/alice", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_reads_any_account(self, client):
        _bearer(client, "alice")
        _register(client, username="root")
        get_runtime().store.accounts["root"].account_type = AccountType.ADMIN
        challenge = client.post("/api/v1/challenge", json={"username": "root"}).json()["data"][
            "challenge"
        ]
        token = _login(client, username="root", challenge=challenge).json()["data"]["token"]
        headers = {"Authorization": f"Bearer {token}"}

        response = client.get("/api/v1/accounts/alice", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "authorized user"

        missing = client.get("/api/v1/accounts/ghost", headers=headers)
        assert missing.status_code == 404

    def test_requires_token(self, client):
        assert client.get("/api/v1/accounts/alice").status_code == 401
