from __future__ import annotations

import math
from datetime import datetime
from typing import Callable

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authcore.logging import get_logger
from authcore.storage.errors import StoreUnavailable
from authcore.storage.models import as_utc, utcnow

logger = get_logger(__name__)

_DENYLIST_PREFIX = "auth:access:denylist:"


def ttl_seconds(expires_at: datetime, now: datetime) -> int:
    """Seconds until ``expires_at``, rounded up; zero or less when already past.

    Rounding up keeps a revocation alive at least as long as the token it names.
    """
    return math.ceil((as_utc(expires_at) - now).total_seconds())


class RedisCache:
    """Redis denylist of revoked access tokens, relying on native key expiry."""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._clock = clock

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def add(self, token_id: str, user_id: str, expires_at: datetime) -> bool:
        ttl = ttl_seconds(expires_at, self._clock())
        if ttl <= 0:
            return False
        try:
            await self.client.set(f"{_DENYLIST_PREFIX}{token_id}", user_id, ex=ttl)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("redis_denylist_add_failed", token_id=token_id, error=str(exc))
            raise StoreUnavailable("redis", "revocation_add", exc) from exc
        return True

    async def contains(self, token_id: str) -> bool:
        try:
            return bool(await self.client.exists(f"{_DENYLIST_PREFIX}{token_id}"))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("redis_denylist_check_failed", token_id=token_id, error=str(exc))
            raise StoreUnavailable("redis", "revocation_contains", exc) from exc

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same awaitable methods as ``RedisCache``.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._clock = clock

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def add(self, token_id: str, user_id: str, expires_at: datetime) -> bool:
        ttl = ttl_seconds(expires_at, self._clock())
        if ttl <= 0:
            return False
        try:
            self._sync_client.set(f"{_DENYLIST_PREFIX}{token_id}", user_id, ex=ttl)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("redis", "revocation_add", exc) from exc
        return True

    async def contains(self, token_id: str) -> bool:
        try:
            return bool(self._sync_client.exists(f"{_DENYLIST_PREFIX}{token_id}"))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("redis", "revocation_contains", exc) from exc

    async def close(self) -> None:
        self._sync_client.close()
