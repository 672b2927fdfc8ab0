"""Named mutual-exclusion locks over the shared key-value store.

Acquisition is a single ``SET lock:{name} <owner token> PX ttl NX``; release
deletes the key only if it still holds our token, so a holder whose TTL ran
out can never release a lock that a later owner has since acquired.

The lock protects a critical section, not the resource itself. If the
protected function runs longer than the TTL, the lock expires and another
caller may enter; choose a TTL at least as long as the worst-case duration
and keep critical sections short. Nothing cancels a running function.
"""

from __future__ import annotations

import asyncio
import inspect
import random
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar, Union

from chatcoord.logging import get_logger
from chatcoord.service.errors import LockTimeoutError, StoreUnavailableError
from chatcoord.storage.kv import LOCK_PREFIX, KeyValueStore, lock_key
from chatcoord.storage.models import LockHandle

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_TTL_MS = 10000
DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_BASE_MS = 100
DEFAULT_RETRY_MAX_MS = 1000
JITTER_RATIO = 0.25


class DistributedLock:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        default_ttl_ms: int = DEFAULT_LOCK_TTL_MS,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_ms: int = DEFAULT_RETRY_BASE_MS,
        retry_max_ms: int = DEFAULT_RETRY_MAX_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.default_ttl_ms = default_ttl_ms
        self.default_max_retries = default_max_retries
        self.retry_base_ms = retry_base_ms
        self.retry_max_ms = retry_max_ms
        self._sleep = sleep
        self._counters: Dict[str, int] = {
            "acquired": 0,
            "contended": 0,
            "store_errors": 0,
            "timeouts": 0,
            "released": 0,
            "lost_releases": 0,
        }

    def backoff_ms(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), with jitter."""
        base = min(self.retry_base_ms * (2 ** attempt), self.retry_max_ms)
        return base + random.uniform(0, base * JITTER_RATIO)

    async def acquire(self, name: str, ttl_ms: Optional[int] = None) -> Optional[LockHandle]:
        """Try once to take the lock. Returns None if another owner holds it.

        Raises StoreUnavailableError if the store cannot be reached.
        """
        ttl = ttl_ms or self.default_ttl_ms
        token = uuid.uuid4().hex
        key = lock_key(name)
        acquired = await self.store.set(key, token, ttl_ms=ttl, nx=True)
        if not acquired:
            self._counters["contended"] += 1
            logger.debug("lock_busy", key=key)
            return None
        self._counters["acquired"] += 1
        logger.debug("lock_acquired", key=key, ttl_ms=ttl)
        return LockHandle(key=key, owner_token=token, ttl_ms=ttl, acquired_at=time.monotonic())

    async def release(self, handle: LockHandle) -> bool:
        """Release the lock if we still own it. Never raises."""
        try:
            released = await self.store.compare_and_delete(handle.key, handle.owner_token)
        except StoreUnavailableError as exc:
            # The TTL will reclaim the key once the store is back
            logger.error("lock_release_failed", key=handle.key, error=exc.message)
            return False
        held_ms = int((time.monotonic() - handle.acquired_at) * 1000)
        if released:
            self._counters["released"] += 1
            logger.debug("lock_released", key=handle.key, held_ms=held_ms)
        else:
            self._counters["lost_releases"] += 1
            logger.warning(
                "lock_expired_before_release",
                key=handle.key,
                held_ms=held_ms,
                ttl_ms=handle.ttl_ms,
            )
        return released

    async def acquire_with_retries(
        self, name: str, ttl_ms: int, max_retries: int
    ) -> LockHandle:
        """Take the lock within ``max_retries`` attempts or raise LockTimeoutError.

        The caller owns the returned handle and must ``release`` it.
        """
        attempts = max(1, max_retries)
        last_error: Optional[StoreUnavailableError] = None
        for attempt in range(attempts):
            try:
                handle = await self.acquire(name, ttl_ms)
            except StoreUnavailableError as exc:
                self._counters["store_errors"] += 1
                last_error = exc
                handle = None
            if handle is not None:
                return handle
            if attempt + 1 < attempts:
                delay = self.backoff_ms(attempt + 1)
                logger.debug("lock_retry_wait", name=name, attempt=attempt + 1, delay_ms=int(delay))
                await self._sleep(delay / 1000.0)

        self._counters["timeouts"] += 1
        logger.warning(
            "lock_acquire_exhausted",
            name=name,
            attempts=attempts,
            store_error=last_error.message if last_error else None,
        )
        error = LockTimeoutError(
            name,
            attempts,
            detail={"store_unavailable": last_error is not None},
        )
        if last_error is not None:
            raise error from last_error
        raise error

    @asynccontextmanager
    async def hold(
        self,
        name: str,
        *,
        ttl_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
    ) -> AsyncIterator[LockHandle]:
        """Async context manager form of ``with_lock``."""
        handle = await self.acquire_with_retries(
            name,
            ttl_ms or self.default_ttl_ms,
            max_retries if max_retries is not None else self.default_max_retries,
        )
        try:
            yield handle
        finally:
            await self.release(handle)

    async def with_lock(
        self,
        name: str,
        fn: Callable[[], Union[T, Awaitable[T]]],
        *,
        ttl_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
    ) -> T:
        """Run ``fn`` while holding the lock ``name`` and return its result.

        ``max_retries`` is the number of acquisition attempts; 1 means a single
        try. Raises LockTimeoutError once attempts are exhausted. Fallback
        policy is the caller's decision.
        """
        async with self.hold(name, ttl_ms=ttl_ms, max_retries=max_retries):
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result

    async def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"type": self.store.backend, **self._counters}
        try:
            keys = await self.store.scan(LOCK_PREFIX)
            stats["active_locks"] = len(keys)
            stats["keys"] = sorted(key[len(LOCK_PREFIX):] for key in keys)
        except StoreUnavailableError as exc:
            stats["error"] = exc.message
        return stats
