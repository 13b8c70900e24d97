import pyotp
import pytest
from fastapi.testclient import TestClient

from gatehouse import app as app_module
from gatehouse.service.runtime import get_runtime

PASSWORD = "Password123"


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


def _make_user(username, *roles, **kwargs):
    runtime = get_runtime()
    user = runtime.store.create_user(
        username, f"{username}@example.com", runtime.codec.hash_password(PASSWORD), **kwargs
    )
    for name in roles:
        runtime.store.assign_role(user.id, runtime.store.get_role_by_name(name).id)
    return user


def _login(client, username="alice", password=PASSWORD):
    return client.post("/v1/auth/login", json={"username": username, "password": password})


def _error(response):
    body = response.json()
    assert body["status"] == "error"
    return body["error"]


def test_health_and_headers(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cache-Control"].startswith("no-store")


def test_allowed_origins(monkeypatch):
    from gatehouse.config import reset_settings_cache

    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reset_settings_cache()
    assert "http://localhost:3000" in app_module._allowed_origins()
    assert "*" not in app_module._allowed_origins()

    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://example.com, https://admin.example.com")
    reset_settings_cache()
    assert app_module._allowed_origins() == ["https://example.com", "https://admin.example.com"]


def test_login_sets_cookie_and_profile(client):
    user = _make_user("alice", "user")
    response = _login(client)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["redirect"] == "/panel"
    assert data["session_token"]
    assert client.cookies.get("session") == data["session_token"]

    profile = client.get("/v1/me")
    assert profile.status_code == 200
    me = profile.json()["data"]
    assert me["id"] == user.id
    assert me["roles"] == ["user"]
    assert "password_hash" not in me


def test_bearer_token_without_cookie(client):
    _make_user("alice")
    token = _login(client).json()["data"]["session_token"]
    client.cookies.clear()
    response = client.get("/v1/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["data"]["username"] == "alice"


def test_unauthenticated_request(client):
    response = client.get("/v1/me")
    assert response.status_code == 401
    assert _error(response)["code"] == "unauthorized"


def test_bad_credentials_envelope(client):
    _make_user("alice")
    wrong = _login(client, password="WrongPassword1")
    unknown = _login(client, username="mallory")
    for response in (wrong, unknown):
        assert response.status_code == 400
        error = _error(response)
        assert error["code"] == "invalid_credentials"
        assert error["message"] == "Incorrect username or password"


def test_request_validation_envelope(client):
    response = client.post("/v1/auth/login", json={"username": "alice"})
    assert response.status_code == 400
    assert _error(response)["code"] == "validation_error"


def test_forced_password_change(client):
    _make_user("alice", require_password_change=True)
    assert _login(client).json()["data"]["redirect"] == "/profile/password"

    blocked = client.get("/v1/me/sessions")
    assert blocked.status_code == 403
    assert _error(blocked)["code"] == "password_change_required"

    changed = client.post(
        "/v1/me/password",
        json={"current_password": PASSWORD, "new_password": "NewPassword456"},
    )
    assert changed.status_code == 200
    sessions = client.get("/v1/me/sessions")
    assert sessions.status_code == 200
    assert [s["current"] for s in sessions.json()["data"]] == [True]


def test_permission_checks(client):
    _make_user("alice", "user")
    _make_user("root", "admin")

    _login(client)
    denied = client.get("/v1/admin/users")
    assert denied.status_code == 403
    assert _error(denied)["code"] == "forbidden"

    client.post("/v1/auth/logout")
    _login(client, username="root")
    allowed = client.get("/v1/admin/users")
    assert allowed.status_code == 200
    assert {u["username"] for u in allowed.json()["data"]} == {"alice", "root"}


def test_logout_ends_session(client):
    _make_user("alice")
    _login(client)
    response = client.post("/v1/auth/logout")
    assert response.json()["data"]["redirect"] == "/login"
    assert client.get("/v1/me").status_code == 401


def test_register(client):
    response = client.post(
        "/v1/auth/register",
        json={"username": "newbie", "email": "new@example.com", "password": PASSWORD},
    )
    assert response.status_code == 201
    assert client.get("/v1/me").json()["data"]["roles"] == ["user"]

    duplicate = client.post(
        "/v1/auth/register",
        json={"username": "newbie", "email": "other@example.com", "password": PASSWORD},
    )
    assert duplicate.status_code == 409
    assert _error(duplicate)["details"] == {"field": "username"}


def test_admin_config_update_drives_rate_limit(client):
    _make_user("root", "super-admin")
    _login(client, username="root")

    unknown = client.put("/v1/admin/config/no.such.key", json={"value": 1})
    assert unknown.status_code == 404
    invalid = client.put("/v1/admin/config/rate_limit.login.max_attempts", json={"value": "abc"})
    assert invalid.status_code == 400

    updated = client.put("/v1/admin/config/rate_limit.login.max_attempts", json={"value": 1})
    assert updated.status_code == 200
    assert updated.json()["data"] == {"key": "rate_limit.login.max_attempts", "value": 1}

    listed = {item["key"]: item for item in client.get("/v1/admin/config").json()["data"]}
    assert listed["rate_limit.login.max_attempts"]["is_default"] is False

    limited = _login(client, username="root")
    assert limited.status_code == 429
    assert _error(limited)["code"] == "rate_limited"
    assert int(limited.headers["Retry-After"]) > 0


def test_admin_lock_ends_sessions(client):
    _make_user("root", "admin")
    target = _make_user("bob", "user")

    bob_token = _login(client, username="bob").json()["data"]["session_token"]
    client.cookies.clear()
    _login(client, username="root")

    locked = client.post(f"/v1/admin/users/{target.id}/lock", json={"permanent": True})
    assert locked.status_code == 200
    assert locked.json()["data"]["permanent"] is True
    assert client.get("/v1/me", headers={"Authorization": f"Bearer {bob_token}"}).status_code == 401

    listed = client.get("/v1/admin/locked-accounts").json()["data"]
    assert [u["username"] for u in listed] == ["bob"]

    relogin = _login(client, username="bob")
    assert relogin.status_code == 403
    assert _error(relogin)["code"] == "account_locked"


def test_two_factor_over_http(client):
    _make_user("alice")
    _login(client)
    setup = client.post("/v1/me/2fa/setup", json={"password": PASSWORD}).json()["data"]
    totp = pyotp.TOTP(setup["secret"])
    confirmed = client.post("/v1/me/2fa/confirm", json={"code": totp.now()})
    assert confirmed.status_code == 200
    assert len(confirmed.json()["data"]["backup_codes"]) == 10

    client.post("/v1/auth/logout")
    challenge = _login(client).json()["data"]
    assert challenge["redirect"] == "/login/verify-2fa"
    assert "session_token" not in challenge
    assert client.get("/v1/me").status_code == 401

    done = client.post("/v1/auth/2fa/verify", json={"code": totp.now()})
    assert done.status_code == 200
    assert done.json()["data"]["redirect"] == "/panel"
    assert client.get("/v1/me").json()["data"]["two_factor_enabled"] is True


def test_two_factor_without_challenge(client):
    response = client.post("/v1/auth/2fa/verify", json={"code": "123456"})
    assert response.status_code == 200
    assert response.json()["data"]["redirect"] == "/login"


def test_role_description_update_keeps_permissions(client):
    _make_user("root", "super-admin")
    _login(client, username="root")
    created = client.post("/v1/admin/roles", json={"name": "editors", "permissions": ["read"]})
    assert created.status_code == 201
    role_id = created.json()["data"]["id"]

    updated = client.put(f"/v1/admin/roles/{role_id}", json={"description": "Content editors"})
    assert updated.status_code == 200
    assert updated.json()["data"]["permissions"] == ["read"]
    assert updated.json()["data"]["description"] == "Content editors"


def test_token_endpoints_are_rate_limited(client):
    _make_user("root", "super-admin")
    _login(client, username="root")
    updated = client.put("/v1/admin/config/rate_limit.api_general.max_attempts", json={"value": 1})
    assert updated.status_code == 200

    for path, body in (
        ("/v1/auth/verify-email", {"token": "not-a-real-token"}),
        ("/v1/auth/password-reset/confirm", {"token": "not-a-real-token", "new_password": PASSWORD}),
    ):
        response = client.post(path, json=body)
        assert response.status_code == 429
        assert _error(response)["code"] == "rate_limited"


def test_profile_and_email_changes(client):
    _make_user("alice", "user", email_verified=True)
    _login(client)

    updated = client.patch("/v1/me", json={"first_name": "Alice"})
    assert updated.status_code == 200
    assert updated.json()["data"]["user"]["first_name"] == "Alice"
    invalid = client.patch("/v1/me", json={"username": "a!"})
    assert invalid.status_code == 400
    assert _error(invalid)["details"] == {"field": "username"}

    wrong = client.post("/v1/me/email", json={"new_email": "new@example.com", "password": "nope-nope"})
    assert wrong.status_code == 400
    assert _error(wrong)["code"] == "invalid_password"
    moved = client.post("/v1/me/email", json={"new_email": "new@example.com", "password": PASSWORD})
    assert moved.status_code == 200
    me = client.get("/v1/me").json()["data"]
    assert me["email"] == "new@example.com"
    assert me["email_verified"] is False


def test_admin_creates_and_updates_users(client):
    _make_user("root", "admin")
    _login(client, username="root")

    created = client.post(
        "/v1/admin/users",
        json={"username": "newbie", "email": "new@example.com", "password": PASSWORD},
    )
    assert created.status_code == 201
    user = created.json()["data"]
    assert user["require_password_change"] is True
    assert "password_hash" not in user
    duplicate = client.post(
        "/v1/admin/users",
        json={"username": "newbie", "email": "other@example.com", "password": PASSWORD},
    )
    assert duplicate.status_code == 409

    renamed = client.patch(f"/v1/admin/users/{user['id']}", json={"username": "renamed"})
    assert renamed.status_code == 200
    assert renamed.json()["data"]["username"] == "renamed"
    disabled = client.patch(
        f"/v1/admin/users/{user['id']}", json={"disabled": True, "disabled_reason": "Left"}
    )
    assert disabled.json()["data"]["is_disabled"] is True
    missing = client.patch("/v1/admin/users/missing", json={"username": "ghost"})
    assert missing.status_code == 404


def test_user_management_requires_permission(client):
    _make_user("alice", "user")
    _login(client)
    denied = client.post(
        "/v1/admin/users",
        json={"username": "newbie", "email": "new@example.com", "password": PASSWORD},
    )
    assert denied.status_code == 403
