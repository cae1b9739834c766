from __future__ import annotations

import threading
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from listeners.config import Settings, get_settings, reset_settings_cache
from listeners.logging import get_logger
from listeners.service.auth import AuthService
from listeners.service.cache import CacheService, Namespace, ttl_for
from listeners.service.cache_facades import (
    AudioStorage,
    AudioUrlCache,
    PopularCache,
    RecentlyPlayedCache,
    S3CheckCache,
    SearchCache,
    SongCache,
    TrendingCache,
)
from listeners.service.ratelimit import AdaptiveRateLimiter, RateLimitStore
from listeners.service.tokens import TokenManager
from listeners.storage.audio import SignedUrlAudioStorage
from listeners.storage.kv import KeyValueStore
from listeners.storage.memory import MemoryStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the single process-wide instance of every component.

    The key-value store connection is created once here and handed to each
    component through its constructor.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        redis_client: Any = None,
        users: Optional[MemoryStore] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            redis_url=_mask_url_password(self.settings.redis_url),
            environment=self.settings.environment.value,
            test_mode=self.settings.test_mode,
        )

        self.kv = KeyValueStore(
            self.settings.redis_url,
            operation_timeout=self.settings.store_operation_timeout_seconds,
            client=redis_client,
        )
        self.users = users or MemoryStore(
            max_login_attempts=self.settings.max_login_attempts,
            lock_minutes=self.settings.account_lock_minutes,
        )

        self.cache = CacheService(self.kv)
        self.song_cache = SongCache(self.cache)
        self.search_cache = SearchCache(self.cache)
        self.s3_check_cache = S3CheckCache(self.cache)
        self.trending_cache = TrendingCache(self.cache)
        self.popular_cache = PopularCache(self.cache)
        self.recently_played_cache = RecentlyPlayedCache(self.cache)

        # Signed links outlive the cache entry that serves them
        self.audio_storage: AudioStorage = SignedUrlAudioStorage(
            self.settings.audio_base_url,
            self.users,
            signing_key=self.settings.jwt_secret,
            url_ttl_seconds=2 * ttl_for(Namespace.AUDIO),
        )
        self.audio_url_cache = AudioUrlCache(self.cache, self.audio_storage)

        self.rate_limiter = AdaptiveRateLimiter(
            RateLimitStore(self.kv), health_check_path=self.settings.health_check_path
        )
        self.tokens = TokenManager(self.kv, self.settings, self.users)
        self.auth = AuthService(
            self.users, self.tokens, self.kv, self.settings, cache=self.cache
        )
        logger.info("runtime_init_complete")

    async def close(self) -> None:
        await self.kv.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, redis_client: Any = None) -> Runtime:
    """Rebuild the runtime around ``redis_client`` for an isolated test."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, redis_client=redis_client)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
