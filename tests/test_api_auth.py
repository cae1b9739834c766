import pytest
from fastapi.testclient import TestClient

from conftest import STRONG_PASSWORD
from fakes import BrokenRedis
from listeners.service.runtime import reset_runtime_for_tests
from listeners.service.tokens import blacklist_key, refresh_pointer_key


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _login(client, login="listener", password=STRONG_PASSWORD, **extra):
    return client.post(
        "/api/auth/login", json={"emailOrUsername": login, "password": password, **extra}
    )


def test_register_verify_and_duplicate(client, runtime):
    body = {
        "username": "newfan",
        "email": "newfan@example.com",
        "password": STRONG_PASSWORD,
        "confirmPassword": STRONG_PASSWORD,
    }
    resp = client.post("/api/auth/register", json=body)

    assert resp.status_code == 201
    data = resp.json()
    assert data["accessToken"] and data["refreshToken"]
    assert data["expiresIn"] == "15m"
    assert data["user"]["isVerified"] is False
    assert data["emailSent"] is False

    verify = client.get("/api/auth/verify-email", params={"token": data["verificationToken"]})
    assert verify.status_code == 200
    assert verify.json()["code"] == "EMAIL_VERIFIED"
    assert runtime.users.get_user(data["user"]["id"]).is_verified

    again = client.post("/api/auth/register", json=body)
    assert again.status_code == 409
    assert again.json()["code"] == "USER_EXISTS"
    assert again.json()["field"] == "email"


def test_register_rejects_weak_password(client):
    resp = client.post(
        "/api/auth/register",
        json={
            "username": "newfan",
            "email": "newfan@example.com",
            "password": "weakpass",
            "confirmPassword": "weakpass",
        },
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["message"] == "Validation failed"
    assert body["code"] == "VALIDATION_ERROR"
    assert any(err["field"] == "password" for err in body["errors"])


def test_verify_email_requires_token(client):
    resp = client.get("/api/auth/verify-email")

    assert resp.status_code == 400
    assert resp.json()["code"] == "TOKEN_REQUIRED"


def test_login_sets_rate_limit_headers_and_refunds(client, make_user, fake_redis):
    make_user()

    resp = _login(client)

    assert resp.status_code == 200
    assert resp.headers["RateLimit-Limit"] == "8"
    login_counters = [k for k in fake_redis.data if k.startswith("rl:auth_login:")]
    assert login_counters
    assert all(fake_redis.data[k] == "0" for k in login_counters)


def test_remember_me_login_extends_refresh_pointer(client, make_user, fake_redis):
    user = make_user()

    resp = _login(client, rememberMe=True)

    assert resp.status_code == 200
    assert resp.json()["expiresIn"] == "30d"
    assert fake_redis.data[refresh_pointer_key(user.id)] == resp.json()["refreshToken"]
    assert fake_redis.expiry[refresh_pointer_key(user.id)] - fake_redis.clock() == 2_592_000


def test_invalid_credentials(client, make_user):
    make_user()

    resp = _login(client, password="Wrong!Pass1")

    assert resp.status_code == 401
    assert resp.json() == {"message": "Invalid credentials", "code": "INVALID_CREDENTIALS"}


def test_failed_logins_tighten_then_lock(client, make_user, clock):
    make_user()
    for _ in range(5):
        assert _login(client, password="Wrong!Pass1").status_code == 401

    limited = _login(client)
    assert limited.status_code == 429
    assert "multiple failed attempts" in limited.json()["error"]

    clock.advance(15 * 60 + 1)
    locked = _login(client)
    assert locked.status_code == 423
    assert locked.json()["code"] == "ACCOUNT_LOCKED"
    assert locked.json()["lockUntil"]


def test_me_requires_valid_token(client, make_user, runtime):
    user = make_user()

    missing = client.get("/api/auth/me")
    assert missing.status_code == 401
    assert missing.json()["code"] == "TOKEN_MISSING"

    bad = client.get("/api/auth/me", headers=_auth("garbage"))
    assert bad.json()["code"] == "TOKEN_INVALID"

    token = runtime.tokens.issue_access_token(user.id)
    me = client.get("/api/auth/me", headers=_auth(token))
    assert me.status_code == 200
    assert me.json()["user"]["username"] == "listener"


def test_non_ascii_tokens_are_rejected_cleanly(client, make_user, runtime):
    user = make_user()
    header, payload, _ = runtime.tokens.issue_access_token(user.id).split(".")
    forged = f"{header}.{payload}.éé"
    # Clients can send latin-1 header bytes
    raw_auth = {"Authorization": f"Bearer {forged}".encode("latin-1")}

    me = client.get("/api/auth/me", headers=raw_auth)
    assert me.status_code == 401
    assert me.json()["code"] == "TOKEN_INVALID"

    trending = client.get("/api/songs/trending", headers=raw_auth)
    assert trending.status_code == 200

    refreshed = client.post("/api/auth/refresh-token", json={"refreshToken": forged})
    assert refreshed.status_code == 401
    assert refreshed.json()["code"] == "REFRESH_TOKEN_INVALID"


def test_logout_blacklists_for_remaining_lifetime(client, make_user, runtime, fake_redis):
    user = make_user()
    token = runtime.tokens.issue_access_token(user.id, "10m")

    resp = client.post("/api/auth/logout", headers=_auth(token))

    assert resp.status_code == 200
    assert resp.json()["code"] == "LOGOUT_SUCCESS"
    remaining = fake_redis.expiry[blacklist_key(token)] - fake_redis.clock()
    assert 595 <= remaining <= 600

    after = client.get("/api/auth/me", headers=_auth(token))
    assert after.status_code == 401
    assert after.json()["code"] == "TOKEN_REVOKED"


def test_logout_with_refresh_token_blocks_refresh(client, make_user):
    make_user()
    tokens = _login(client).json()

    client.post(
        "/api/auth/logout",
        headers=_auth(tokens["accessToken"]),
        json={"refreshToken": tokens["refreshToken"]},
    )
    resp = client.post("/api/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]})

    assert resp.status_code == 401
    assert resp.json()["code"] == "REFRESH_TOKEN_REVOKED"


def test_refresh_rotates_tokens(client, make_user):
    make_user()
    tokens = _login(client).json()

    rotated = client.post("/api/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]})
    assert rotated.status_code == 200
    assert rotated.json()["refreshToken"] != tokens["refreshToken"]

    reused = client.post("/api/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]})
    assert reused.status_code == 401
    assert reused.json()["code"] == "REFRESH_TOKEN_REVOKED"

    missing = client.post("/api/auth/refresh-token", json={})
    assert missing.json()["code"] == "REFRESH_TOKEN_MISSING"


def test_password_reset_over_http(client, make_user):
    make_user()

    forgot = client.post("/api/auth/forgot-password", json={"email": "listener@example.com"})
    assert forgot.status_code == 200
    token = forgot.json()["resetToken"]

    unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert unknown.json()["code"] == "RESET_EMAIL_SENT"
    assert "resetToken" not in unknown.json()

    new_password = "N3w!Password"
    reset = client.post(
        "/api/auth/reset-password",
        json={"token": token, "password": new_password, "confirmPassword": new_password},
    )
    assert reset.status_code == 200
    assert reset.json()["code"] == "PASSWORD_RESET_SUCCESS"

    assert _login(client, password=new_password).status_code == 200

    replay = client.post(
        "/api/auth/reset-password",
        json={"token": token, "password": new_password, "confirmPassword": new_password},
    )
    assert replay.status_code == 400
    assert replay.json()["code"] == "INVALID_RESET_TOKEN"


def test_strict_limit_on_password_reset(client):
    for _ in range(5):
        client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})

    resp = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})

    assert resp.status_code == 429
    assert resp.json()["retryAfter"] == 15 * 60 * 1000
    assert resp.headers["Retry-After"] == "900"


@pytest.fixture
def broken_client():
    rt = reset_runtime_for_tests(redis_client=BrokenRedis())
    user = rt.users.create_user("listener@example.com", "listener", is_verified=True)
    rt.auth.save_password(user.id, STRONG_PASSWORD)
    from listeners.app import app

    with TestClient(app) as test_client:
        yield test_client


def test_auth_keeps_working_while_store_is_down(broken_client):
    login = _login(broken_client)
    assert login.status_code == 200
    tokens = login.json()

    me = broken_client.get("/api/auth/me", headers=_auth(tokens["accessToken"]))
    assert me.status_code == 200

    for _ in range(30):
        assert broken_client.get("/api/search", params={"q": "x"}).status_code == 200

    refresh = broken_client.post(
        "/api/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]}
    )
    assert refresh.status_code == 401
    assert refresh.json()["code"] == "REFRESH_TOKEN_INVALID"

    health = broken_client.get("/api/health")
    assert health.status_code == 200
    assert health.json()["cache"]["status"] == "unhealthy"
