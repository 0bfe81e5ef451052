import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from loguru import logger
from redis import asyncio as aioredis

from nichefeed.services.text import stable_hash


def cache_key(namespace: str, *parts) -> str:
    """Content-addressed key: namespace + sha1 of the joined parts."""
    raw = "|".join(str(p).strip().lower() for p in parts)
    return f"{namespace}:{stable_hash(raw)}"


@dataclass
class CacheHit:
    value: Any
    expired: bool
    expires_at: datetime


class CacheStore:
    """
    Key -> JSON value with a logical TTL, stored in Redis.

    An entry is written as {"value", "expiresAt"} and Redis keeps the key
    for ttl + stale_retention. get() hides entries past expiresAt;
    get_including_expired() returns them flagged so callers can opt into a
    stale fallback explicitly.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        stale_retention: timedelta = timedelta(days=60),
        clock: Callable[[], datetime] | None = None,
        prefix: str = "nichefeed:cache:",
    ):
        self.redis = redis
        self.stale_retention = stale_retention
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "CacheStore":
        return cls(aioredis.from_url(url), **kwargs)

    async def close(self):
        await self.redis.aclose()

    async def _read(self, key: str) -> CacheHit | None:
        raw = await self.redis.get(self.prefix + key)
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
            expires_at = datetime.fromisoformat(envelope["expiresAt"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Corrupt cache entry {key}: {e}")
            return None
        return CacheHit(
            value=envelope.get("value"),
            expired=expires_at <= self.clock(),
            expires_at=expires_at,
        )

    async def get(self, key: str) -> Any | None:
        hit = await self._read(key)
        if hit is None or hit.expired:
            return None
        return hit.value

    async def get_including_expired(self, key: str) -> CacheHit | None:
        return await self._read(key)

    async def set(self, key: str, value: Any, ttl: timedelta):
        expires_at = self.clock() + ttl
        envelope = json.dumps(
            {"value": value, "expiresAt": expires_at.isoformat()},
            ensure_ascii=False,
            default=str,
        )
        retain = ttl + self.stale_retention
        await self.redis.set(self.prefix + key, envelope, ex=max(1, int(retain.total_seconds())))
