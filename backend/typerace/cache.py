from __future__ import annotations

import logging
from typing import List, Optional

from redis.asyncio import Redis

from .db import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "race:"


def cache_key(room_id: str) -> str:
    return f"{KEY_PREFIX}{room_id}"


class RaceCache:
    """Redis mirror of live race sessions, used only for crash recovery."""

    def __init__(self, url: Optional[str], ttl: int, timeout: float | None = None):
        self.url = url
        self.ttl = ttl
        self.timeout = timeout
        self._client: Redis | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def _get_client(self) -> Redis:
        if self._client is None:
            if not self.url:
                raise RuntimeError("Redis cache is not configured")
            self._client = Redis.from_url(
                self.url,
                decode_responses=True,
                socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout,
            )
        return self._client

    async def set(self, room_id: str, payload: str) -> None:
        if not self.enabled:
            return
        await self._get_client().set(cache_key(room_id), payload, ex=self.ttl)

    async def delete(self, room_id: str) -> None:
        if not self.enabled:
            return
        await self._get_client().delete(cache_key(room_id))

    async def load_all(self) -> List[tuple[str, str]]:
        """Return ``(room_id, payload)`` for every cached session."""
        if not self.enabled:
            return []
        client = self._get_client()
        entries = []
        async for key in client.scan_iter(f"{KEY_PREFIX}*"):
            payload = await client.get(key)
            if payload is not None:
                entries.append((key[len(KEY_PREFIX):], payload))
        return entries

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


cache = RaceCache(settings.REDIS_URL, settings.SESSION_TTL_SEC, settings.CACHE_TIMEOUT_SEC)
