from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from harmonia.logging import get_logger
from harmonia.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisKeyValueStore:
    """Thin Redis wrapper backing refresh-token sessions and OTP codes."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived sync client keeps the async client off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        except RedisError as exc:
            raise StoreUnavailable("redis unreachable", {"error": str(exc)}) from exc
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        # SET with EX writes value and expiry in one command.
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> bool:
        # DEL is atomic per key: exactly one concurrent caller observes 1.
        removed = await self.client.delete(key)
        return bool(removed)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            logger.warning("redis_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        """Close the Redis connection pool on shutdown."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
