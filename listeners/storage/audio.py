from __future__ import annotations

import hashlib
import hmac
import time
from typing import Callable, Optional
from urllib.parse import urlencode

from listeners.storage.memory import MemoryStore


class SignedUrlAudioStorage:
    """Audio objects addressed by song id, served from a base URL with signed links.

    Object storage itself is outside this service; existence is answered from
    the catalog and links carry an expiry plus an HMAC over path and expiry.
    """

    def __init__(
        self,
        base_url: str,
        catalog: MemoryStore,
        *,
        signing_key: Optional[str] = None,
        url_ttl_seconds: int = 2 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.catalog = catalog
        self.signing_key = (signing_key or "").encode()
        self.url_ttl_seconds = url_ttl_seconds
        self.clock = clock

    async def exists(self, song_id: str) -> bool:
        return self.catalog.get_song(song_id) is not None

    async def get_url(self, song_id: str, quality: str = "high") -> str:
        path = f"/{song_id}/{quality}.mp3"
        expires = int(self.clock()) + self.url_ttl_seconds
        signature = hmac.new(
            self.signing_key, f"{path}:{expires}".encode(), hashlib.sha256
        ).hexdigest()
        return f"{self.base_url}{path}?{urlencode({'expires': expires, 'sig': signature})}"
