"""Per-user conversation state shared across stateless workers.

The cache reads and writes through the shared store. When the store is
unreachable it falls back to a worker-local ``MemoryKeyValueStore`` with the
same TTL semantics. That fallback is not shared between workers, so in
degraded mode a user's next turn may land on a worker that does not see the
state written here. Treat the cache as best effort: never use it as the
source of truth for irreversible actions.

Writes are last-writer-wins; there is no coordination between concurrent
requests for the same user.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from chatcoord.logging import get_logger
from chatcoord.service.errors import SerializationError, StoreUnavailableError
from chatcoord.storage.kv import SESSION_PREFIX, KeyValueStore, dumps, loads, session_key
from chatcoord.storage.memory import MemoryKeyValueStore
from chatcoord.storage.models import Session

logger = get_logger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 3600


@dataclass
class CacheWriteResult:
    success: bool
    degraded: bool = False
    error: Optional[str] = None


class SessionCache:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        local: Optional[MemoryKeyValueStore] = None,
        default_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.local = local if local is not None else MemoryKeyValueStore()
        self.default_ttl_seconds = default_ttl_seconds
        self.degraded = False

    def _enter_degraded(self, operation: str, exc: Exception) -> None:
        if not self.degraded:
            logger.warning(
                "session_store_degraded",
                operation=operation,
                error=str(exc),
                message="shared store unreachable; sessions are worker-local until it recovers",
            )
        self.degraded = True

    def _leave_degraded(self) -> None:
        if self.degraded:
            logger.info("session_store_recovered")
        self.degraded = False

    async def load(self, user_id: str) -> Optional[Session]:
        """Return the full session record, or None when absent or expired."""
        key = session_key(user_id)
        try:
            raw = await self.store.get(key)
            self._leave_degraded()
        except StoreUnavailableError as exc:
            self._enter_degraded("get", exc)
            raw = await self.local.get(key)
        data = loads(raw)
        if not isinstance(data, dict) or "userId" not in data:
            return None
        return Session.from_dict(data)

    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        session = await self.load(user_id)
        return session.state if session else None

    async def set(
        self,
        user_id: str,
        state: Dict[str, Any],
        ttl_seconds: Optional[int] = None,
        *,
        tenant_id: Optional[str] = None,
    ) -> CacheWriteResult:
        """Overwrite the user's session and refresh its TTL.

        Never raises for unrepresentable state: the result carries the error so
        the caller can decide to continue without persisting.
        """
        ttl = ttl_seconds or self.default_ttl_seconds
        session = Session(
            user_id=str(user_id),
            tenant_id=tenant_id,
            state=state,
            updated_at=int(time.time() * 1000),
        )
        try:
            raw = dumps(session.to_dict())
        except SerializationError as exc:
            logger.error("session_serialization_failed", user_id=user_id, error=exc.message)
            return CacheWriteResult(success=False, error=exc.message)

        key = session_key(user_id)
        try:
            await self.store.set(key, raw, ttl_seconds=ttl)
            self._leave_degraded()
            logger.debug("session_saved", user_id=user_id, ttl_seconds=ttl)
            return CacheWriteResult(success=True)
        except StoreUnavailableError as exc:
            self._enter_degraded("set", exc)
            await self.local.set(key, raw, ttl_seconds=ttl)
            logger.debug("session_saved_local", user_id=user_id, ttl_seconds=ttl)
            return CacheWriteResult(success=True, degraded=True)

    async def delete(self, user_id: str) -> bool:
        key = session_key(user_id)
        # Drop any degraded-mode copy so it cannot resurface later
        local_deleted = await self.local.delete(key)
        try:
            deleted = await self.store.delete(key)
            self._leave_degraded()
        except StoreUnavailableError as exc:
            self._enter_degraded("delete", exc)
            return local_deleted
        return deleted or local_deleted

    def cleanup_local(self) -> int:
        """Purge expired fallback entries; returns the number removed."""
        cleaned = self.local.purge_expired()
        if cleaned:
            logger.info("session_local_cleanup", cleaned=cleaned)
        return cleaned

    async def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "type": self.store.backend,
            "connected": not self.degraded,
            "fallback_mode": self.degraded,
            "local_entries": len(self.local),
        }
        try:
            stats["active_sessions"] = len(await self.store.scan(SESSION_PREFIX))
        except StoreUnavailableError as exc:
            self._enter_degraded("scan", exc)
            stats.update(
                connected=False,
                fallback_mode=True,
                active_sessions=len(await self.local.scan(SESSION_PREFIX)),
                error=exc.message,
            )
        return stats
