"""Typed cache facades: fixed key prefix and TTL over :class:`CacheService`.

Facade writes are best-effort; a failed write is logged by the cache service
and reported as ``False`` rather than raised.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from listeners.logging import get_logger
from listeners.service.cache import CacheService, Namespace, generate_key, ttl_for

logger = get_logger(__name__)


def _stamp(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {**payload, "cachedAt": datetime.now(timezone.utc).isoformat()}


class _Facade:
    namespace: Namespace

    def __init__(self, cache: CacheService, ttl: Optional[int] = None):
        self.cache = cache
        self.ttl = ttl if ttl is not None else ttl_for(self.namespace)

    def key(self, identifier: Any, *qualifiers: Any) -> str:
        return generate_key(self.namespace, identifier, *qualifiers)


class SongCache(_Facade):
    namespace = Namespace.SONG

    async def put(self, song_id: str, song: Dict[str, Any]) -> bool:
        return await self.cache.set_best_effort(self.key(song_id), _stamp(song), self.ttl)

    async def fetch(self, song_id: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get(self.key(song_id))

    async def evict(self, song_id: str) -> int:
        return await self.cache.delete(self.key(song_id))


class SearchCache(_Facade):
    """Catalog search pages plus external provider results."""

    namespace = Namespace.SEARCH

    def catalog_key(self, query: str, page: int = 1, limit: int = 20) -> str:
        return self.key("db", query.strip().lower(), page, limit)

    def external_key(self, query: str) -> str:
        return generate_key(Namespace.SPOTIFY, "search", query.strip().lower())

    async def put_catalog(
        self, query: str, page_data: Dict[str, Any], *, page: int = 1, limit: int = 20
    ) -> bool:
        payload = _stamp({**page_data, "query": query})
        return await self.cache.set_best_effort(
            self.catalog_key(query, page, limit), payload, self.ttl
        )

    async def fetch_catalog(
        self, query: str, *, page: int = 1, limit: int = 20
    ) -> Optional[Dict[str, Any]]:
        return await self.cache.get(self.catalog_key(query, page, limit))

    async def put_external(self, query: str, results: List[Dict[str, Any]]) -> bool:
        payload = _stamp({"results": results, "query": query, "count": len(results)})
        return await self.cache.set_best_effort(
            self.external_key(query), payload, ttl_for(Namespace.SPOTIFY)
        )

    async def fetch_external(self, query: str) -> Optional[List[Dict[str, Any]]]:
        cached = await self.cache.get(self.external_key(query))
        return cached.get("results") if isinstance(cached, dict) else None


class S3CheckCache(_Facade):
    namespace = Namespace.S3_CHECK

    async def put(self, song_id: str, exists: bool) -> bool:
        payload = {
            "exists": exists,
            "songId": song_id,
            "checkedAt": datetime.now(timezone.utc).isoformat(),
        }
        return await self.cache.set_best_effort(self.key(song_id), payload, self.ttl)

    async def fetch(self, song_id: str) -> Optional[bool]:
        cached = await self.cache.get(self.key(song_id))
        return cached.get("exists") if isinstance(cached, dict) else None


class AudioStorage(Protocol):
    """Opaque audio object storage (S3 or similar)."""

    async def exists(self, song_id: str) -> bool: ...

    async def get_url(self, song_id: str, quality: str = "high") -> str: ...


class AudioUrlCache(_Facade):
    namespace = Namespace.AUDIO

    def __init__(
        self,
        cache: CacheService,
        storage: AudioStorage,
        ttl: Optional[int] = None,
    ):
        super().__init__(cache, ttl)
        self.storage = storage

    async def get_url(self, song_id: str, quality: str = "high") -> str:
        """Return the cached signed URL, generating and caching it on a miss."""

        key = self.key(song_id, quality)
        cached = await self.cache.get(key)
        if isinstance(cached, str):
            return cached
        url = await self.storage.get_url(song_id, quality)
        await self.cache.set_best_effort(key, url, self.ttl)
        logger.debug("audio_url_cached", song_id=song_id, quality=quality)
        return url

    async def put_metadata(self, song_id: str, metadata: Dict[str, Any]) -> bool:
        return await self.cache.set_best_effort(
            generate_key(Namespace.METADATA, song_id),
            _stamp(metadata),
            ttl_for(Namespace.METADATA),
        )

    async def fetch_metadata(self, song_id: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get(generate_key(Namespace.METADATA, song_id))

    async def mark_preloaded(self, song_id: str, quality: str = "high") -> bool:
        return await self.cache.set_best_effort(
            generate_key(Namespace.PRELOAD, song_id, quality), True, ttl_for(Namespace.PRELOAD)
        )

    async def is_preloaded(self, song_id: str, quality: str = "high") -> bool:
        return bool(await self.cache.get(generate_key(Namespace.PRELOAD, song_id, quality)))


class _ListCache(_Facade):
    async def put(self, songs: List[Dict[str, Any]], variant: str = "songs") -> bool:
        payload = _stamp({"songs": songs, "count": len(songs)})
        return await self.cache.set_best_effort(self.key(variant), payload, self.ttl)

    async def fetch(self, variant: str = "songs") -> Optional[List[Dict[str, Any]]]:
        cached = await self.cache.get(self.key(variant))
        return cached.get("songs") if isinstance(cached, dict) else None


class TrendingCache(_ListCache):
    namespace = Namespace.TRENDING


class PopularCache(_ListCache):
    namespace = Namespace.POPULAR


class SessionCache(_Facade):
    namespace = Namespace.SESSION

    async def put(self, user_id: str, session: Dict[str, Any]) -> bool:
        return await self.cache.set_best_effort(self.key(user_id), _stamp(session), self.ttl)

    async def fetch(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get(self.key(user_id))

    async def evict(self, user_id: str) -> int:
        return await self.cache.delete(self.key(user_id))


class RecentlyPlayedCache(_Facade):
    namespace = Namespace.RECENTLY_PLAYED

    async def put(self, user_id: str, songs: List[Dict[str, Any]]) -> bool:
        payload = _stamp({"songs": songs, "count": len(songs)})
        return await self.cache.set_best_effort(self.key(user_id), payload, self.ttl)

    async def fetch(self, user_id: str) -> Optional[List[Dict[str, Any]]]:
        cached = await self.cache.get(self.key(user_id))
        return cached.get("songs") if isinstance(cached, dict) else None


__all__ = [
    "AudioStorage",
    "AudioUrlCache",
    "PopularCache",
    "RecentlyPlayedCache",
    "S3CheckCache",
    "SearchCache",
    "SessionCache",
    "SongCache",
    "TrendingCache",
]
