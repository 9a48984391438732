"""Redis-backed cache for read-heavy thread queries.

Values are JSON-encoded result envelopes. Keys are deterministic functions of
query parameters so that identical queries hit the cache and writes can
invalidate precisely, either by key or by wildcard pattern.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

from redis import asyncio as aioredis

from forum_stage.core.settings import Settings

logger = logging.getLogger(__name__)

SCAN_BATCH_SIZE = 100


class CacheService:
    """Get/set-with-TTL/delete/delete-by-pattern over an async Redis client."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._redis = client

    @classmethod
    def from_settings(cls, settings: Settings) -> CacheService:
        """Build a cache service connected to the configured Redis URL."""
        client = aioredis.from_url(settings.effective_cache_url, decode_responses=True)
        return cls(client)

    async def get(self, key: str) -> Any | None:
        """Return the decoded value stored at ``key`` or None."""
        raw = await self._redis.get(key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            await self._redis.delete(key)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store ``value`` as JSON under ``key`` with an expiry."""
        await self._redis.set(key, json.dumps(value, default=str), ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        """Remove a single key."""
        await self._redis.delete(key)

    async def delete_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob-style ``pattern``.

        Returns:
            Number of keys removed.
        """
        batch: list[str] = []
        removed = 0
        async for key in self._redis.scan_iter(match=pattern, count=SCAN_BATCH_SIZE):
            batch.append(key)
            if len(batch) >= SCAN_BATCH_SIZE:
                removed += await self._redis.delete(*batch)
                batch = []
        if batch:
            removed += await self._redis.delete(*batch)
        logger.debug("Invalidated %d cache keys matching %s", removed, pattern)
        return removed

    async def close(self) -> None:
        """Close the underlying connection pool."""
        await self._redis.aclose()


def _part(value: object | None) -> str:
    if value is None or value == "":
        return "all"
    return quote(str(value).strip().lower(), safe="")


class ThreadCacheKeys:
    """Key and pattern builders for thread queries."""

    PREFIX = "threads"

    @classmethod
    def list_key(cls, status: str | None, tag: str | None, page: int, limit: int) -> str:
        return f"{cls.PREFIX}:list:{_part(status)}:{_part(tag)}:{page}:{limit}"

    @classmethod
    def author_list_key(
        cls, author_id: str, status: str | None, page: int, limit: int
    ) -> str:
        return f"{cls.PREFIX}:author:{author_id}:{_part(status)}:{page}:{limit}"

    @classmethod
    def search_key(
        cls, query: str | None, tag: str | None, status: str | None, page: int, limit: int
    ) -> str:
        return f"{cls.PREFIX}:search:{_part(query)}:{_part(tag)}:{_part(status)}:{page}:{limit}"

    @classmethod
    def detail_key(cls, thread_id: str, page: int, limit: int) -> str:
        return f"{cls.PREFIX}:detail:{thread_id}:{page}:{limit}"

    @classmethod
    def list_pattern(cls) -> str:
        return f"{cls.PREFIX}:list:*"

    @classmethod
    def search_pattern(cls) -> str:
        return f"{cls.PREFIX}:search:*"

    @classmethod
    def author_list_pattern(cls, author_id: str) -> str:
        return f"{cls.PREFIX}:author:{author_id}:*"

    @classmethod
    def detail_pattern(cls, thread_id: str) -> str:
        return f"{cls.PREFIX}:detail:{thread_id}:*"
