"""Key-value store contract shared by the redis and in-process backends.

The coordination layer relies on exactly these primitives: plain get/set/delete
with optional expiry, atomic set-if-absent (``nx=True``) and atomic
compare-and-delete. Nothing else is assumed to be atomic.
"""

from __future__ import annotations

import json
from typing import Any, List, Optional, Protocol, runtime_checkable

from chatcoord.service.errors import SerializationError

SESSION_PREFIX = "session:"
BATCH_PREFIX = "batch:"
LOCK_PREFIX = "lock:"
JOB_PREFIX = "job:"
RATE_LIMIT_PREFIX = "ratelimit:"


@runtime_checkable
class KeyValueStore(Protocol):
    backend: str

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl_seconds: Optional[int] = None,
        ttl_ms: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        """Store ``value``; with ``nx`` only when the key is absent.

        Returns False when ``nx`` was requested and the key already exists.
        """
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete ``key`` only if it currently holds ``expected``."""
        ...

    async def scan(self, prefix: str) -> List[str]:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


def session_key(user_id: str) -> str:
    return f"{SESSION_PREFIX}{user_id}"


def batch_key(user_id: str, batch_id: str) -> str:
    return f"{BATCH_PREFIX}{user_id}:{batch_id}"


def lock_key(name: str) -> str:
    return f"{LOCK_PREFIX}{name}"


def job_key(queue: str, job_id: str) -> str:
    return f"{JOB_PREFIX}{queue}:{job_id}"


def job_claim_key(queue: str, job_id: str) -> str:
    return f"{JOB_PREFIX}{queue}:{job_id}:claim"


def job_notified_key(queue: str, job_id: str) -> str:
    return f"{JOB_PREFIX}{queue}:{job_id}:notified"


def rate_limit_key(user_id: str, operation: str) -> str:
    return f"{RATE_LIMIT_PREFIX}{user_id}:{operation}"


def dumps(value: Any) -> str:
    """Serialize to the UTF-8 JSON wire format, raising SerializationError."""
    try:
        return json.dumps(value, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise SerializationError(
            f"value is not JSON representable: {exc}",
            detail={"value_type": type(value).__name__},
        ) from exc


def loads(raw: Optional[str]) -> Optional[Any]:
    """Decode a stored value; corrupted entries read as a cache miss."""
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
