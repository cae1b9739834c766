from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from listeners.logging import get_logger
from listeners.storage.kv import KeyValueStore, StoreUnavailableError

logger = get_logger(__name__)

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR


class Namespace(str, Enum):
    """Cache namespaces; the value is the key prefix before ``:``."""

    USER = "user"
    SONG = "song"
    PLAYLIST = "playlist"
    TRENDING = "trending"
    POPULAR = "popular"
    SEARCH = "search"
    SESSION = "session"
    RECENTLY_PLAYED = "recently_played"
    SPOTIFY = "spotify"
    S3_CHECK = "s3_check"
    DB_SONGS = "db_songs"
    AUDIO = "audio"
    PRELOAD = "preload"
    METADATA = "metadata"


DEFAULT_TTLS: Dict[Namespace, int] = {
    Namespace.USER: 30 * MINUTE,
    Namespace.SONG: DAY,
    Namespace.PLAYLIST: HOUR,
    Namespace.TRENDING: 30 * MINUTE,
    Namespace.POPULAR: HOUR,
    Namespace.SEARCH: 15 * MINUTE,
    Namespace.SESSION: DAY,
    Namespace.RECENTLY_PLAYED: DAY,
    Namespace.SPOTIFY: 15 * MINUTE,
    Namespace.S3_CHECK: HOUR,
    Namespace.DB_SONGS: 30 * MINUTE,
    Namespace.AUDIO: HOUR,
    Namespace.PRELOAD: 30 * MINUTE,
    Namespace.METADATA: DAY,
}

DEFAULT_TTL = HOUR

# Prefixes owned by the rate limiter and token manager, swept with the caches.
AUXILIARY_PREFIXES = ("rl", "blacklist", "refreshToken", "passwordReset")


def ttl_for(namespace: Namespace | str) -> int:
    try:
        return DEFAULT_TTLS[Namespace(namespace)]
    except ValueError:
        return DEFAULT_TTL


def generate_key(namespace: Namespace | str, identifier: Any, *qualifiers: Any) -> str:
    """Build ``namespace:identifier[:qualifier...]``."""

    prefix = namespace.value if isinstance(namespace, Namespace) else str(namespace)
    parts = [prefix, str(identifier), *(str(q) for q in qualifiers)]
    return ":".join(parts)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CacheService:
    """JSON read-through cache on top of the shared key-value store.

    Reads never raise: an absent key, a store failure and an undecodable
    value all come back as ``None``. Writes raise so callers can decide;
    :meth:`set_best_effort` is the non-raising variant used by the facades.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    generate_key = staticmethod(generate_key)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = ttl if ttl is not None else DEFAULT_TTL
        try:
            await self.store.set(key, json.dumps(value, default=str), ex=ttl)
        except (StoreUnavailableError, TypeError, ValueError) as exc:
            logger.warning("cache_set_failed", key=key, ttl=ttl, error=str(exc))
            raise
        logger.debug("cache_set", key=key, ttl=ttl)

    async def set_best_effort(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            await self.set(key, value, ttl)
        except (StoreUnavailableError, TypeError, ValueError):
            return False
        return True

    async def get(self, key: str) -> Any:
        try:
            raw = await self.store.get(key)
        except StoreUnavailableError as exc:
            logger.warning("cache_get_failed", key=key, error=str(exc))
            return None
        if raw is None:
            logger.debug("cache_miss", key=key)
            return None
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            logger.warning("cache_entry_corrupted", key=key)
            return None
        logger.debug("cache_hit", key=key)
        return value

    async def delete(self, *keys: str) -> int:
        try:
            return await self.store.delete(*keys)
        except StoreUnavailableError as exc:
            logger.warning("cache_delete_failed", keys=list(keys), error=str(exc))
            return 0

    async def delete_by_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern`` in one batch; 0 on failure."""

        try:
            keys = await self.store.keys(pattern)
            if not keys:
                return 0
            deleted = await self.store.delete(*keys)
        except StoreUnavailableError as exc:
            logger.warning("cache_pattern_delete_failed", pattern=pattern, error=str(exc))
            return 0
        logger.info("cache_pattern_deleted", pattern=pattern, count=deleted)
        return deleted

    async def exists(self, key: str) -> bool:
        try:
            return await self.store.exists(key)
        except StoreUnavailableError as exc:
            logger.warning("cache_exists_failed", key=key, error=str(exc))
            return False

    async def expire(self, key: str, ttl: int) -> bool:
        try:
            return await self.store.expire(key, ttl)
        except StoreUnavailableError as exc:
            logger.warning("cache_expire_failed", key=key, error=str(exc))
            return False

    async def mget(self, keys: Iterable[str]) -> List[Any]:
        keys = list(keys)
        try:
            raw_values = await self.store.mget(keys)
        except StoreUnavailableError as exc:
            logger.warning("cache_mget_failed", count=len(keys), error=str(exc))
            return [None] * len(keys)
        values: List[Any] = []
        for key, raw in zip(keys, raw_values):
            if raw is None:
                values.append(None)
                continue
            try:
                values.append(json.loads(raw))
            except (json.JSONDecodeError, TypeError):
                logger.warning("cache_entry_corrupted", key=key)
                values.append(None)
        return values

    async def mset(self, items: Dict[str, Any], ttl: Optional[int] = None) -> bool:
        ttl = ttl if ttl is not None else DEFAULT_TTL
        try:
            encoded = {key: json.dumps(value, default=str) for key, value in items.items()}
            await self.store.mset(encoded, ex=ttl)
        except (StoreUnavailableError, TypeError, ValueError) as exc:
            logger.warning("cache_mset_failed", count=len(items), error=str(exc))
            return False
        return True

    # -- invalidation ------------------------------------------------------

    async def invalidate_song_caches(self, song_id: str) -> int:
        deleted = 0
        for pattern in (
            generate_key(Namespace.SONG, song_id),
            generate_key(Namespace.SONG, song_id, "*"),
            generate_key(Namespace.S3_CHECK, song_id),
            generate_key(Namespace.AUDIO, song_id, "*"),
            generate_key(Namespace.PRELOAD, song_id, "*"),
            generate_key(Namespace.METADATA, song_id),
        ):
            deleted += await self.delete_by_pattern(pattern)
        deleted += await self.invalidate_search_caches()
        logger.info("song_caches_invalidated", song_id=song_id, count=deleted)
        return deleted

    async def invalidate_search_caches(self) -> int:
        deleted = 0
        for namespace in (
            Namespace.SEARCH,
            Namespace.SPOTIFY,
            Namespace.DB_SONGS,
            Namespace.POPULAR,
            Namespace.TRENDING,
        ):
            deleted += await self.delete_by_pattern(generate_key(namespace, "*"))
        return deleted

    async def invalidate_ranking_caches(self) -> int:
        """Drop the aggregates ranked by play count."""

        deleted = 0
        for namespace in (Namespace.POPULAR, Namespace.TRENDING):
            deleted += await self.delete_by_pattern(generate_key(namespace, "*"))
        return deleted

    async def invalidate_user_caches(self, user_id: str) -> int:
        deleted = 0
        for namespace in (Namespace.USER, Namespace.SESSION, Namespace.RECENTLY_PLAYED):
            deleted += await self.delete_by_pattern(generate_key(namespace, user_id))
            deleted += await self.delete_by_pattern(generate_key(namespace, user_id, "*"))
        return deleted

    async def invalidate_playlist_caches(
        self, playlist_id: str, owner_id: Optional[str] = None
    ) -> int:
        deleted = await self.delete_by_pattern(generate_key(Namespace.PLAYLIST, playlist_id))
        deleted += await self.delete_by_pattern(
            generate_key(Namespace.PLAYLIST, playlist_id, "*")
        )
        if owner_id:
            deleted += await self.delete_by_pattern(
                generate_key(Namespace.USER, owner_id, "playlists*")
            )
        return deleted

    async def clear_namespace(self, namespace: Namespace | str) -> int:
        return await self.delete_by_pattern(generate_key(namespace, "*"))

    # -- maintenance -------------------------------------------------------

    async def get_stats(self) -> Dict[str, Any]:
        try:
            key_counts = {
                namespace.value: len(await self.store.keys(generate_key(namespace, "*")))
                for namespace in Namespace
            }
            memory = await self.store.info("memory")
        except StoreUnavailableError as exc:
            logger.warning("cache_stats_failed", error=str(exc))
            return {"error": str(exc), "timestamp": _now_iso()}
        return {
            "keyCounts": key_counts,
            "totalKeys": sum(key_counts.values()),
            "memory": {
                "usedMemory": memory.get("used_memory"),
                "usedMemoryHuman": memory.get("used_memory_human"),
            },
            "timestamp": _now_iso(),
        }

    async def health_check(self) -> Dict[str, Any]:
        probe_key = f"health_check:{uuid.uuid4().hex}"
        probe = {"nonce": uuid.uuid4().hex}
        try:
            await self.set(probe_key, probe, 10)
            healthy = (await self.get(probe_key)) == probe
            await self.store.delete(probe_key)
        except StoreUnavailableError as exc:
            return {
                "status": "unhealthy",
                "service": "redis_cache",
                "error": str(exc),
                "timestamp": _now_iso(),
            }
        return {
            "status": "healthy" if healthy else "unhealthy",
            "service": "redis_cache",
            "timestamp": _now_iso(),
        }

    async def cleanup_orphaned_keys(self) -> int:
        """Delete keys under owned prefixes that were stored without a TTL."""

        prefixes = [namespace.value for namespace in Namespace] + list(AUXILIARY_PREFIXES)
        cleaned = 0
        for prefix in prefixes:
            try:
                keys = await self.store.keys(f"{prefix}:*")
                orphaned = [key for key in keys if await self.store.ttl(key) == -1]
                if orphaned:
                    cleaned += await self.store.delete(*orphaned)
            except StoreUnavailableError as exc:
                logger.warning("cache_cleanup_failed", prefix=prefix, error=str(exc))
        if cleaned:
            logger.info("cache_orphaned_keys_cleaned", count=cleaned)
        return cleaned


__all__ = [
    "AUXILIARY_PREFIXES",
    "CacheService",
    "DEFAULT_TTL",
    "DEFAULT_TTLS",
    "Namespace",
    "generate_key",
    "ttl_for",
]
