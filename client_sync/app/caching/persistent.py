"""
Persistent cache tier backed by Redis.
"""

from typing import Any, Optional, Protocol

import redis.asyncio as redis

from shared.errors import StorageError
from shared.logging import get_logger


class PersistentTier(Protocol):
    """Slow key/value tier that survives restarts."""

    async def read(self, key: str) -> Optional[str]:
        ...

    async def write(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def delete_matching(self, pattern: str) -> int:
        ...


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters in a literal key fragment."""
    escaped = []
    for char in value:
        if char in "*?[]\\":
            escaped.append("\\")
        escaped.append(char)
    return "".join(escaped)


class RedisPersistentTier:
    """Redis implementation of the persistent tier; every key expires via SETEX."""

    def __init__(self, redis_url: str, key_prefix: str = "sync", client: Optional[Any] = None):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("sync.cache.redis")
        self.redis: Optional[Any] = client

    async def start(self):
        """Connect to Redis."""
        try:
            if self.redis is None:
                self.redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )

            await self.redis.ping()
            self.logger.info("Redis persistent tier started")

        except Exception as e:
            self.logger.warning("Failed to start Redis persistent tier", error=str(e))
            raise StorageError("Redis unavailable", details={"error": str(e)})

    async def stop(self):
        """Close the Redis connection."""
        if self.redis:
            await self.redis.close()
            self.logger.info("Redis persistent tier stopped")

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def _client(self) -> Any:
        if self.redis is None:
            raise StorageError("Redis persistent tier not started")
        return self.redis

    async def read(self, key: str) -> Optional[str]:
        try:
            cached = await self._client().get(self._make_key(key))
        except StorageError:
            raise
        except Exception as e:
            raise StorageError("Redis read failed", details={"key": key, "error": str(e)})

        if cached is None:
            return None
        return cached.decode("utf-8") if isinstance(cached, bytes) else cached

    async def write(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client().setex(self._make_key(key), max(1, int(ttl_seconds)), value)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError("Redis write failed", details={"key": key, "error": str(e)})

    async def delete(self, key: str) -> None:
        try:
            await self._client().delete(self._make_key(key))
        except StorageError:
            raise
        except Exception as e:
            raise StorageError("Redis delete failed", details={"key": key, "error": str(e)})

    async def delete_matching(self, pattern: str) -> int:
        """Delete keys matching a glob pattern (relative to the key prefix)."""
        client = self._client()
        try:
            keys = [key async for key in client.scan_iter(match=self._make_key(pattern))]
            if keys:
                await client.delete(*keys)
        except Exception as e:
            raise StorageError("Redis pattern delete failed", details={"pattern": pattern, "error": str(e)})

        self.logger.debug("Deleted persisted keys", pattern=pattern, count=len(keys))
        return len(keys)
