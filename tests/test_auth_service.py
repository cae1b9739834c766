import pytest

from conftest import STRONG_PASSWORD
from listeners.service.auth import password_reset_key
from listeners.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ValidationError,
)
from listeners.service.tokens import refresh_pointer_key


async def test_register_issues_tokens_and_verification_token(runtime):
    result = await runtime.auth.register("fan@example.com", "fan", STRONG_PASSWORD)

    assert result.tokens["accessToken"]
    assert result.verification_token
    assert not result.user.is_verified
    assert runtime.auth.verify_password(result.user.id, STRONG_PASSWORD)


async def test_register_duplicate_email_or_username(runtime):
    await runtime.auth.register("fan@example.com", "fan", STRONG_PASSWORD)

    with pytest.raises(ConflictError) as excinfo:
        await runtime.auth.register("FAN@example.com", "other", STRONG_PASSWORD)
    assert excinfo.value.error_code == "USER_EXISTS"
    assert excinfo.value.status_code == 409
    assert excinfo.value.detail == {"field": "email"}

    with pytest.raises(ConflictError) as excinfo:
        await runtime.auth.register("other@example.com", "Fan", STRONG_PASSWORD)
    assert excinfo.value.message == "Username already taken"


async def test_login_by_email_or_username(runtime, make_user):
    user = make_user()

    by_email = await runtime.auth.login("listener@example.com", STRONG_PASSWORD)
    by_username = await runtime.auth.login("LISTENER", STRONG_PASSWORD)

    assert by_email.user.id == by_username.user.id == user.id
    assert runtime.users.get_user(user.id).last_login is not None
    assert (await runtime.auth.sessions.fetch(user.id))["userId"] == user.id


async def test_unknown_login_is_invalid_credentials(runtime):
    with pytest.raises(AuthenticationError) as excinfo:
        await runtime.auth.login("nobody@example.com", STRONG_PASSWORD)
    assert excinfo.value.error_code == "INVALID_CREDENTIALS"


async def test_repeated_failures_lock_the_account(runtime, make_user):
    user = make_user()
    for _ in range(5):
        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.auth.login("listener", "Wrong!Pass1")
        assert excinfo.value.error_code == "INVALID_CREDENTIALS"

    locked = runtime.users.get_user(user.id)
    assert locked.is_locked

    with pytest.raises(AccountLockedError) as excinfo:
        await runtime.auth.login("listener", STRONG_PASSWORD)
    assert excinfo.value.status_code == 423
    assert excinfo.value.detail["lockUntil"]


async def test_successful_login_resets_failed_attempts(runtime, make_user):
    user = make_user()
    for _ in range(3):
        with pytest.raises(AuthenticationError):
            await runtime.auth.login("listener", "Wrong!Pass1")
    assert runtime.users.get_user(user.id).login_attempts == 3

    await runtime.auth.login("listener", STRONG_PASSWORD)

    assert runtime.users.get_user(user.id).login_attempts == 0


async def test_logout_revokes_and_evicts_session(runtime, make_user, fake_redis):
    user = make_user()
    result = await runtime.auth.login("listener", STRONG_PASSWORD)

    await runtime.auth.logout(user, result.tokens["accessToken"], result.tokens["refreshToken"])

    assert await runtime.auth.sessions.fetch(user.id) is None
    assert await fake_redis.exists(refresh_pointer_key(user.id)) == 0
    with pytest.raises(AuthenticationError) as excinfo:
        await runtime.auth.refresh(result.tokens["refreshToken"])
    assert excinfo.value.error_code == "REFRESH_TOKEN_REVOKED"


def test_verify_email(runtime):
    user = runtime.users.create_user("fan@example.com", "fan")
    runtime.users.set_email_verification_token(user.id, "abc123")

    with pytest.raises(ValidationError) as excinfo:
        runtime.auth.verify_email(None)
    assert excinfo.value.error_code == "TOKEN_REQUIRED"
    with pytest.raises(ValidationError) as excinfo:
        runtime.auth.verify_email("wrong")
    assert excinfo.value.error_code == "INVALID_TOKEN"

    runtime.auth.verify_email("abc123")

    verified = runtime.users.get_user(user.id)
    assert verified.is_verified
    assert verified.email_verification_token is None


async def test_password_reset_flow(runtime, make_user, fake_redis):
    user = make_user()
    await runtime.auth.login("listener", STRONG_PASSWORD)

    token = await runtime.auth.initiate_password_reset("listener@example.com")
    assert await fake_redis.ttl(password_reset_key(token)) == 60 * 60

    await runtime.auth.complete_password_reset(token, "N3w!Password")

    assert runtime.auth.verify_password(user.id, "N3w!Password")
    assert not runtime.auth.verify_password(user.id, STRONG_PASSWORD)
    assert await fake_redis.exists(password_reset_key(token)) == 0
    assert await fake_redis.exists(refresh_pointer_key(user.id)) == 0

    with pytest.raises(AuthenticationError) as excinfo:
        await runtime.auth.complete_password_reset(token, "An0ther!Pass")
    assert excinfo.value.error_code == "INVALID_RESET_TOKEN"
    assert excinfo.value.status_code == 400


async def test_password_reset_for_unknown_email(runtime):
    assert await runtime.auth.initiate_password_reset("ghost@example.com") is None


async def test_reset_token_expires(runtime, make_user, clock):
    make_user()
    token = await runtime.auth.initiate_password_reset("listener@example.com")
    clock.advance(60 * 60 + 1)

    with pytest.raises(AuthenticationError):
        await runtime.auth.complete_password_reset(token, "N3w!Password")
