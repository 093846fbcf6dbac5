from __future__ import annotations

import contextlib
from typing import AsyncIterator, List, Optional, Protocol

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from hyreauth.logging import get_logger
from hyreauth.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

_GLOB_SPECIALS = frozenset("*?[]\\")


def escape_glob(value: str) -> str:
    """Escape glob metacharacters so ``value`` only matches itself in a key pattern."""

    return "".join(f"\\{ch}" if ch in _GLOB_SPECIALS else ch for ch in value)


class TTLStore(Protocol):
    """Key-value capability with per-key expiry, as consumed by the auth core.

    ``ttl_remaining`` follows Redis conventions: seconds left, ``-1`` when the
    key has no expiry and ``-2`` when it does not exist.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set_with_ttl(self, key: str, value: str, seconds: int) -> None: ...

    async def delete(self, key: str) -> int: ...

    async def ttl_remaining(self, key: str) -> int: ...

    async def keys_matching(self, pattern: str) -> List[str]: ...

    async def ping(self) -> bool: ...


class RedisCache:
    """Thin Redis wrapper implementing the TTL store capability."""

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0
    SCAN_BATCH_SIZE = 500

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT, client=None):
        self.redis_url = redis_url
        # Timeouts are owned by the client; callers decide whether to retry
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.warning("redis_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailableError(operation, exc) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        async with self._guard("ping"):
            return bool(await self.client.ping())

    async def get(self, key: str) -> Optional[str]:
        async with self._guard("get"):
            return await self.client.get(key)

    async def set_with_ttl(self, key: str, value: str, seconds: int) -> None:
        if seconds <= 0:
            raise ValueError(f"TTL must be positive, got {seconds}")
        async with self._guard("set"):
            await self.client.set(key, value, ex=int(seconds))

    async def delete(self, key: str) -> int:
        async with self._guard("delete"):
            return int(await self.client.delete(key))

    async def ttl_remaining(self, key: str) -> int:
        async with self._guard("ttl"):
            return int(await self.client.ttl(key))

    async def keys_matching(self, pattern: str) -> List[str]:
        """Collect keys matching ``pattern`` with SCAN rather than a blocking KEYS."""
        async with self._guard("scan"):
            return [
                key
                async for key in self.client.scan_iter(match=pattern, count=self.SCAN_BATCH_SIZE)
            ]

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache", "TTLStore", "escape_glob"]
