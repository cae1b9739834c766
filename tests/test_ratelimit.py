from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from fakes import BrokenRedis
from listeners.service.errors import RateLimitedError
from listeners.service.ratelimit import (
    POLICIES,
    AdaptiveRateLimiter,
    RateLimitRequest,
    RateLimitStore,
    Requester,
    RouteClass,
    Tier,
    account_bucket,
    counter_key,
    fingerprint,
    progressive_login_quota,
    quota_for,
)
from listeners.storage.kv import KeyValueStore
from listeners.storage.models import Subscription, User, utcnow


@pytest.fixture
def limiter(fake_redis):
    return AdaptiveRateLimiter(RateLimitStore(KeyValueStore(client=fake_redis)))


def _request(path="/api/search", ip="10.0.0.1", user=None, **kwargs):
    return RateLimitRequest(path=path, ip=ip, user_agent="pytest", user=user, **kwargs)


def _user(premium=False):
    subscription = Subscription()
    if premium:
        subscription = Subscription(type="premium", expires_at=utcnow() + timedelta(days=30))
    return User(id="u1", email="u1@example.com", username="u1", subscription=subscription)


@pytest.mark.parametrize(
    "route_class,anonymous,authenticated,premium",
    [
        (RouteClass.STRICT, 5, 5, 5),
        (RouteClass.AUTH, 10, 10, 10),
        (RouteClass.AUTH_LOGIN, 8, 8, 8),
        (RouteClass.AUTH_OAUTH_CALLBACK, 20, 20, 20),
        (RouteClass.API, 500, 1000, 2000),
        (RouteClass.SEARCH, 20, 50, 100),
        (RouteClass.UPLOAD, 10, 10, 100),
    ],
)
def test_quota_table(route_class, anonymous, authenticated, premium):
    assert quota_for(route_class, Requester()) == anonymous
    assert quota_for(route_class, Requester(user_id="u", tier=Tier.AUTHENTICATED)) == authenticated
    assert quota_for(route_class, Requester(user_id="u", tier=Tier.PREMIUM)) == premium


@pytest.mark.parametrize("failures,quota", [(0, 20), (1, 20), (2, 8), (3, 5), (9, 5)])
def test_progressive_login_quota_tightens(failures, quota):
    assert progressive_login_quota(failures) == quota
    assert quota_for(RouteClass.LOGIN_PROGRESSIVE, Requester(failed_login_attempts=failures)) == quota


def test_windows():
    assert POLICIES[RouteClass.SEARCH].window_seconds == 60
    assert POLICIES[RouteClass.UPLOAD].window_seconds == 60 * 60
    assert POLICIES[RouteClass.API].window_ms == 15 * 60 * 1000


def test_requester_tier_from_user():
    assert Requester.from_user(None).tier is Tier.ANONYMOUS
    assert Requester.from_user(_user()).tier is Tier.AUTHENTICATED
    assert Requester.from_user(_user(premium=True)).tier is Tier.PREMIUM


def test_fingerprint_is_stable_and_scoped_to_user():
    anonymous = fingerprint("10.0.0.1", "ua", "en", "gzip")
    assert anonymous == fingerprint("10.0.0.1", "ua", "en", "gzip")
    assert anonymous.endswith(":anonymous")
    assert len(anonymous.split(":")[0]) == 16
    assert fingerprint("10.0.0.2", "ua", "en", "gzip") != anonymous
    assert fingerprint("10.0.0.1", "ua", "en", "gzip", "u1").endswith(":u1")
    assert "10.0.0.1" not in anonymous


def test_account_bucket_ignores_case_and_whitespace():
    assert account_bucket("Listener@Example.com ") == account_bucket("listener@example.com")
    assert account_bucket("a").startswith("account:")


def test_counter_key_layout():
    assert counter_key(RouteClass.SEARCH, "abc:anonymous") == "rl:search:abc:anonymous"


async def test_window_expiry_is_set_only_on_first_hit():
    kv = AsyncMock()
    kv.incr.side_effect = [1, 2, 3]
    kv.ttl.return_value = 40
    store = RateLimitStore(kv)

    first = await store.increment("rl:search:k", 60)
    second = await store.increment("rl:search:k", 60)
    await store.increment("rl:search:k", 60)

    kv.expire.assert_awaited_once_with("rl:search:k", 60)
    assert first.hits == 1 and first.ttl_seconds == 60
    assert second.hits == 2 and second.ttl_seconds == 40


async def test_counter_without_ttl_is_healed(fake_redis):
    await fake_redis.set("rl:api:k", "4")
    store = RateLimitStore(KeyValueStore(client=fake_redis))

    state = await store.increment("rl:api:k", 900)

    assert state.hits == 5
    assert await fake_redis.ttl("rl:api:k") == 900


async def test_search_limit_then_retry_after(limiter, fake_redis, clock):
    request = _request()
    for attempt in range(1, 21):
        decision = await limiter.check(RouteClass.SEARCH, request)
        assert decision.headers["RateLimit-Remaining"] == str(20 - attempt)

    with pytest.raises(RateLimitedError) as excinfo:
        await limiter.check(RouteClass.SEARCH, request)
    assert excinfo.value.retry_after_ms == 60_000
    assert excinfo.value.message == "Search rate limit exceeded. Please slow down."
    assert excinfo.value.detail["headers"]["RateLimit-Remaining"] == "0"

    clock.advance(61)
    decision = await limiter.check(RouteClass.SEARCH, request)
    assert decision.hits == 1


async def test_api_quota_boundary_for_anonymous_client(limiter):
    request = _request(path="/api/songs/trending")
    for _ in range(500):
        await limiter.check(RouteClass.API, request)

    with pytest.raises(RateLimitedError):
        await limiter.check(RouteClass.API, request)


async def test_route_classes_count_separately(limiter):
    request = _request()
    for _ in range(5):
        await limiter.check(RouteClass.STRICT, request)

    decision = await limiter.check(RouteClass.SEARCH, request)
    assert decision.hits == 1


async def test_clients_count_separately(limiter):
    for _ in range(20):
        await limiter.check(RouteClass.SEARCH, _request(ip="10.0.0.1"))

    decision = await limiter.check(RouteClass.SEARCH, _request(ip="10.0.0.2"))
    assert decision.hits == 1


async def test_store_outage_fails_open():
    limiter = AdaptiveRateLimiter(RateLimitStore(KeyValueStore(client=BrokenRedis())))
    request = _request()

    for _ in range(50):
        decision = await limiter.check(RouteClass.SEARCH, request)

    assert decision.hits == 0
    assert decision.headers["RateLimit-Remaining"] == "20"


async def test_skip_conditions(limiter, fake_redis):
    premium = _user(premium=True)

    assert (await limiter.check(RouteClass.API, _request(path="/api/health"))).skipped
    assert (await limiter.check(RouteClass.API, _request(skip_rate_limit=True))).skipped
    assert (
        await limiter.check(RouteClass.API, _request(path="/api/music/s1/url", user=premium))
    ).skipped
    assert not (
        await limiter.check(RouteClass.API, _request(path="/api/music/s1/url", user=_user()))
    ).skipped
    assert not (
        await limiter.check(RouteClass.API, _request(path="/api/songs/s1", user=premium))
    ).skipped


async def test_premium_music_requests_never_touch_counters(limiter, fake_redis):
    premium = _user(premium=True)
    for _ in range(2500):
        await limiter.check(RouteClass.API, _request(path="/api/music/s1/url", user=premium))

    assert not [key for key in fake_redis.data if key.startswith("rl:")]


async def test_bucket_override_shares_counter_across_clients(limiter):
    bucket = account_bucket("listener@example.com")
    requester = Requester(failed_login_attempts=3)
    for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.4", "10.0.0.5"):
        await limiter.check(
            RouteClass.LOGIN_PROGRESSIVE, _request(path="/api/auth/login", ip=ip),
            requester=requester, bucket=bucket,
        )

    with pytest.raises(RateLimitedError) as excinfo:
        await limiter.check(
            RouteClass.LOGIN_PROGRESSIVE, _request(path="/api/auth/login", ip="10.0.0.6"),
            requester=requester, bucket=bucket,
        )
    assert "multiple failed attempts" in excinfo.value.message


async def test_exceeding_auth_limit_reports_suspicious_activity(limiter):
    request = _request(path="/api/auth/forgot-password")
    for _ in range(5):
        await limiter.check(RouteClass.STRICT, request)

    with patch("listeners.service.ratelimit.logger") as mock_logger:
        with pytest.raises(RateLimitedError):
            await limiter.check(RouteClass.STRICT, request)

    mock_logger.warning.assert_called_once()
    assert mock_logger.warning.call_args.args[0] == "rate_limit_exceeded"
    mock_logger.error.assert_called_once()
    assert mock_logger.error.call_args.args[0] == "suspicious_activity_detected"


async def test_exceeding_non_auth_limit_is_not_suspicious(limiter):
    request = _request()
    for _ in range(20):
        await limiter.check(RouteClass.SEARCH, request)

    with patch("listeners.service.ratelimit.logger") as mock_logger:
        with pytest.raises(RateLimitedError):
            await limiter.check(RouteClass.SEARCH, request)

    mock_logger.error.assert_not_called()


async def test_refund_gives_back_a_hit(limiter, fake_redis):
    request = _request()
    await limiter.check(RouteClass.AUTH, request)
    decision = await limiter.check(RouteClass.AUTH, request)

    await limiter.refund(decision)

    assert await fake_redis.get(decision.key) == "1"
    await limiter.refund(None)


async def test_admin_reset_decrement_and_inspect(limiter, fake_redis):
    bucket = fingerprint("10.0.0.1", "pytest")
    request = _request()
    for _ in range(3):
        await limiter.check(RouteClass.AUTH, request)

    state = await limiter.inspect(RouteClass.AUTH, bucket)
    assert state.hits == 3
    assert state.ttl_seconds == 15 * 60

    assert await limiter.decrement(RouteClass.AUTH, bucket) == 2
    assert await limiter.reset(RouteClass.AUTH, bucket) is True
    assert await limiter.inspect(RouteClass.AUTH, bucket) is None
    assert await limiter.reset(RouteClass.AUTH, bucket) is False


async def test_admin_operations_degrade_when_store_is_down():
    limiter = AdaptiveRateLimiter(RateLimitStore(KeyValueStore(client=BrokenRedis())))

    assert await limiter.inspect(RouteClass.AUTH, "b") is None
    assert await limiter.decrement(RouteClass.AUTH, "b") == 0
    assert await limiter.reset(RouteClass.AUTH, "b") is False
