from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from listeners.logging import get_logger
from listeners.service.errors import RateLimitedError
from listeners.storage.kv import KeyValueStore, StoreUnavailableError
from listeners.storage.models import User
from listeners.storage.soft import try_store_op

logger = get_logger(__name__)

KEY_PREFIX = "rl"


class RouteClass(str, Enum):
    STRICT = "strict"
    AUTH = "auth"
    AUTH_LOGIN = "auth_login"
    AUTH_OAUTH_CALLBACK = "auth_oauth_callback"
    API = "api"
    SEARCH = "search"
    UPLOAD = "upload"
    LOGIN_PROGRESSIVE = "login_progressive"


class Tier(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    PREMIUM = "premium"


@dataclass(frozen=True)
class RateLimitPolicy:
    window_seconds: int
    message: str

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


_AUTH_MESSAGE = "Too many authentication attempts, please try again later."

POLICIES: Dict[RouteClass, RateLimitPolicy] = {
    RouteClass.STRICT: RateLimitPolicy(
        15 * 60, "Too many requests from this IP, please try again later."
    ),
    RouteClass.AUTH: RateLimitPolicy(15 * 60, _AUTH_MESSAGE),
    RouteClass.AUTH_LOGIN: RateLimitPolicy(15 * 60, _AUTH_MESSAGE),
    RouteClass.AUTH_OAUTH_CALLBACK: RateLimitPolicy(15 * 60, _AUTH_MESSAGE),
    RouteClass.API: RateLimitPolicy(
        15 * 60, "API rate limit exceeded. Upgrade to Premium for higher limits."
    ),
    RouteClass.SEARCH: RateLimitPolicy(60, "Search rate limit exceeded. Please slow down."),
    RouteClass.UPLOAD: RateLimitPolicy(
        60 * 60, "Upload limit exceeded. Upgrade to Premium for more uploads."
    ),
    RouteClass.LOGIN_PROGRESSIVE: RateLimitPolicy(
        15 * 60, "Account temporarily restricted due to multiple failed attempts."
    ),
}


@dataclass(frozen=True)
class Requester:
    user_id: Optional[str] = None
    tier: Tier = Tier.ANONYMOUS
    failed_login_attempts: int = 0

    @classmethod
    def from_user(cls, user: Optional[User]) -> "Requester":
        if user is None:
            return cls()
        tier = Tier.PREMIUM if user.is_premium else Tier.AUTHENTICATED
        return cls(user_id=user.id, tier=tier, failed_login_attempts=user.login_attempts)


def progressive_login_quota(failed_attempts: int) -> int:
    if failed_attempts >= 3:
        return 5
    if failed_attempts >= 2:
        return 8
    return 20


def quota_for(route_class: RouteClass, requester: Requester) -> int:
    """Requests allowed per window for ``route_class`` and the requester's tier."""

    tier = requester.tier
    if route_class is RouteClass.STRICT:
        return 5
    if route_class is RouteClass.AUTH:
        return 10
    if route_class is RouteClass.AUTH_LOGIN:
        return 8
    if route_class is RouteClass.AUTH_OAUTH_CALLBACK:
        return 20
    if route_class is RouteClass.API:
        return {Tier.ANONYMOUS: 500, Tier.AUTHENTICATED: 1000, Tier.PREMIUM: 2000}[tier]
    if route_class is RouteClass.SEARCH:
        return {Tier.ANONYMOUS: 20, Tier.AUTHENTICATED: 50, Tier.PREMIUM: 100}[tier]
    if route_class is RouteClass.UPLOAD:
        return 100 if tier is Tier.PREMIUM else 10
    if route_class is RouteClass.LOGIN_PROGRESSIVE:
        return progressive_login_quota(requester.failed_login_attempts)
    raise ValueError(f"unknown route class: {route_class!r}")


def fingerprint(
    ip: Optional[str],
    user_agent: Optional[str] = None,
    accept_language: Optional[str] = None,
    accept_encoding: Optional[str] = None,
    user_id: Optional[str] = None,
) -> str:
    """One-way client fingerprint suffixed with the user id or ``anonymous``."""

    material = "".join(part or "" for part in (ip, user_agent, accept_language, accept_encoding))
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]
    return f"{digest}:{user_id or 'anonymous'}"


def account_bucket(login_identifier: str) -> str:
    """Bucket for per-account limits, independent of the client fingerprint."""

    normalized = login_identifier.strip().lower().encode("utf-8")
    return f"account:{hashlib.sha256(normalized).hexdigest()[:16]}"


def counter_key(route_class: RouteClass, bucket: str) -> str:
    return f"{KEY_PREFIX}:{route_class.value}:{bucket}"


@dataclass
class RateLimitRequest:
    """What the limiter needs to know about an incoming request."""

    path: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    accept_language: Optional[str] = None
    accept_encoding: Optional[str] = None
    user: Optional[User] = None
    skip_rate_limit: bool = False

    @property
    def fingerprint(self) -> str:
        return fingerprint(
            self.ip,
            self.user_agent,
            self.accept_language,
            self.accept_encoding,
            self.user.id if self.user else None,
        )


@dataclass
class CounterState:
    hits: int
    ttl_seconds: int


@dataclass
class RateLimitDecision:
    route_class: RouteClass
    key: Optional[str] = None
    limit: int = 0
    hits: int = 0
    reset_seconds: int = 0
    skipped: bool = False
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.hits)


class RateLimitStore:
    """Fixed-window counters anchored on the first hit of each window."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def _increment(self, key: str, window_seconds: int) -> CounterState:
        window = math.ceil(window_seconds)
        hits = await self.store.incr(key)
        if hits == 1:
            await self.store.expire(key, window)
            return CounterState(hits=hits, ttl_seconds=window)
        ttl = await self.store.ttl(key)
        if ttl == -1:
            logger.warning("rate_limit_counter_missing_ttl", key=key, hits=hits)
            await self.store.expire(key, window)
            ttl = window
        return CounterState(hits=hits, ttl_seconds=max(ttl, 0))

    async def increment(self, key: str, window_seconds: int) -> CounterState:
        """Count one hit; a store failure counts as zero hits (fail-open)."""

        return await try_store_op(
            lambda: self._increment(key, window_seconds),
            CounterState(hits=0, ttl_seconds=window_seconds),
            event="rate_limit_store_failed",
            key=key,
        )

    async def decrement(self, key: str) -> int:
        current = await try_store_op(
            lambda: self.store.decr(key), 0, event="rate_limit_decrement_failed", key=key
        )
        return max(0, current)

    async def reset_key(self, key: str) -> bool:
        deleted = await try_store_op(
            lambda: self.store.delete(key), 0, event="rate_limit_reset_failed", key=key
        )
        return deleted > 0

    async def inspect(self, key: str) -> Optional[CounterState]:
        """Current counter state for administrative views; raises if the store is down."""

        raw = await self.store.get(key)
        if raw is None:
            return None
        return CounterState(hits=int(raw), ttl_seconds=await self.store.ttl(key))


class AdaptiveRateLimiter:
    def __init__(self, store: RateLimitStore, *, health_check_path: str = "/api/health"):
        self.store = store
        self.health_check_path = health_check_path

    def should_skip(self, request: RateLimitRequest) -> bool:
        if request.path == self.health_check_path:
            return True
        if request.skip_rate_limit:
            return True
        if request.user is not None and request.user.is_premium and "/music/" in request.path:
            return True
        return False

    async def check(
        self,
        route_class: RouteClass,
        request: RateLimitRequest,
        *,
        requester: Optional[Requester] = None,
        bucket: Optional[str] = None,
    ) -> RateLimitDecision:
        """Count the request against its bucket and raise once over quota.

        ``bucket`` overrides the client fingerprint, which is how per-account
        limits share this code path.
        """

        if self.should_skip(request):
            return RateLimitDecision(route_class=route_class, skipped=True)

        requester = requester or Requester.from_user(request.user)
        policy = POLICIES[route_class]
        limit = quota_for(route_class, requester)
        key = counter_key(route_class, bucket or request.fingerprint)
        state = await self.store.increment(key, policy.window_seconds)
        decision = RateLimitDecision(
            route_class=route_class,
            key=key,
            limit=limit,
            hits=state.hits,
            reset_seconds=state.ttl_seconds,
        )
        decision.headers = {
            "RateLimit-Limit": str(limit),
            "RateLimit-Remaining": str(decision.remaining),
            "RateLimit-Reset": str(decision.reset_seconds),
        }
        if state.hits > limit:
            self._report_limit_reached(route_class, request, key, limit)
            raise RateLimitedError(
                policy.message,
                retry_after_ms=policy.window_ms,
                detail={"headers": decision.headers},
            )
        return decision

    def _report_limit_reached(
        self, route_class: RouteClass, request: RateLimitRequest, key: str, limit: int
    ) -> None:
        user_id = request.user.id if request.user else "anonymous"
        logger.warning(
            "rate_limit_exceeded",
            key=key,
            route_class=route_class.value,
            path=request.path,
            ip=request.ip,
            user_agent=request.user_agent,
            user_id=user_id,
        )
        if "/auth/" in request.path or "/admin/" in request.path:
            logger.error(
                "suspicious_activity_detected",
                key=key,
                path=request.path,
                ip=request.ip,
                attempts=limit,
            )

    async def refund(self, decision: Optional[RateLimitDecision]) -> None:
        """Give back the hit of a request that turned out successful."""

        if decision is None or decision.skipped or not decision.key or decision.hits == 0:
            return
        await self.store.decrement(decision.key)

    async def decrement(self, route_class: RouteClass, bucket: str) -> int:
        return await self.store.decrement(counter_key(route_class, bucket))

    async def reset(self, route_class: RouteClass, bucket: str) -> bool:
        logger.info("rate_limit_reset", route_class=route_class.value, bucket=bucket)
        return await self.store.reset_key(counter_key(route_class, bucket))

    async def inspect(self, route_class: RouteClass, bucket: str) -> Optional[CounterState]:
        try:
            return await self.store.inspect(counter_key(route_class, bucket))
        except StoreUnavailableError as exc:
            logger.warning("rate_limit_inspect_failed", bucket=bucket, error=str(exc))
            return None


__all__ = [
    "AdaptiveRateLimiter",
    "CounterState",
    "POLICIES",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimitRequest",
    "RateLimitStore",
    "Requester",
    "RouteClass",
    "Tier",
    "account_bucket",
    "counter_key",
    "fingerprint",
    "progressive_login_quota",
    "quota_for",
]
