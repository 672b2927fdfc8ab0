from __future__ import annotations

from typing import Any, Awaitable, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from chatcoord.logging import get_logger
from chatcoord.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisKeyValueStore:
    """Key-value store backed by a shared redis instance."""

    backend = "redis"

    # Release only if the key still carries our owner token
    _COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._compare_and_delete = self.client.register_script(
            self._COMPARE_AND_DELETE_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            logger.warning(
                "store_operation_failed",
                operation=operation,
                redis_url=self.redis_url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(
                f"shared store unavailable during {operation}",
                detail={"operation": operation},
            ) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(key))

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl_seconds: Optional[int] = None,
        ttl_ms: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        kwargs: dict[str, Any] = {"nx": nx}
        if ttl_ms is not None:
            kwargs["px"] = max(1, int(ttl_ms))
        elif ttl_seconds is not None:
            kwargs["ex"] = max(1, int(ttl_seconds))
        result = await self._call("set", self.client.set(key, value, **kwargs))
        return bool(result)

    async def delete(self, key: str) -> bool:
        return bool(await self._call("delete", self.client.delete(key)))

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        result = await self._call(
            "compare_and_delete",
            self._compare_and_delete(keys=[key], args=[expected]),
        )
        return int(result) == 1

    async def scan(self, prefix: str) -> List[str]:
        async def _collect() -> List[str]:
            # SCAN rather than KEYS so large keyspaces do not block the server
            return [key async for key in self.client.scan_iter(match=f"{prefix}*", count=100)]

        return await self._call("scan", _collect())

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", self.client.ping()))
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
