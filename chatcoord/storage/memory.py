from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from chatcoord.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ENTRIES = 10000


@dataclass
class _Entry:
    value: str
    expires_at: Optional[float]
    written: int


class MemoryKeyValueStore:
    """Worker-local key-value store with TTL expiry and a size bound.

    Used as the degraded-mode cache behind SessionCache and as the whole
    store for single-process runs and tests. Entries are never shared with
    other worker processes, so nothing stored here may be relied on for
    cross-worker correctness.

    When full, roughly 10% of entries are evicted, soonest-to-expire first
    and then least recently written. Entries without expiry go last.
    """

    backend = "memory"

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expiry(self, ttl_seconds: Optional[int], ttl_ms: Optional[int]) -> Optional[float]:
        if ttl_ms is not None:
            return self._clock() + ttl_ms / 1000.0
        if ttl_seconds is not None:
            return self._clock() + float(ttl_seconds)
        return None

    def _live(self, key: str, now: float) -> Optional[_Entry]:
        # caller holds self._lock
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= now:
            del self._entries[key]
            return None
        return entry

    def _make_room(self, now: float) -> None:
        # caller holds self._lock
        if len(self._entries) < self.max_entries:
            return
        self._purge_expired_locked(now)
        if len(self._entries) < self.max_entries:
            return
        evict_count = max(1, self.max_entries // 10)
        victims = sorted(
            self._entries.items(),
            key=lambda item: (
                item[1].expires_at if item[1].expires_at is not None else float("inf"),
                item[1].written,
            ),
        )[:evict_count]
        for key, _ in victims:
            del self._entries[key]
        logger.debug("local_cache_evicted", evicted=len(victims), max_entries=self.max_entries)

    def _purge_expired_locked(self, now: float) -> int:
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.expires_at is not None and entry.expires_at <= now
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry.value if entry else None

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl_seconds: Optional[int] = None,
        ttl_ms: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        with self._lock:
            now = self._clock()
            existing = self._live(key, now)
            if nx and existing is not None:
                return False
            if existing is None:
                self._make_room(now)
            self._entries[key] = _Entry(
                value=value,
                expires_at=self._expiry(ttl_seconds, ttl_ms),
                written=next(self._seq),
            )
            return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            existing = self._live(key, self._clock())
            if existing is None:
                return False
            del self._entries[key]
            return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            existing = self._live(key, self._clock())
            if existing is None or existing.value != expected:
                return False
            del self._entries[key]
            return True

    async def scan(self, prefix: str) -> List[str]:
        with self._lock:
            now = self._clock()
            return [
                key for key in list(self._entries) if key.startswith(prefix) and self._live(key, now)
            ]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        """Drop expired entries eagerly; returns how many were removed."""
        with self._lock:
            return self._purge_expired_locked(self._clock())
