"""Ephemeral state for multi-step, multi-document workflows.

A batch (for example "upload N files, confirm, generate invoices") may be
served by a different worker on every step, so its state lives in the shared
store under ``batch:{user_id}:{batch_id}`` with a fixed TTL that bounds the
cost of abandoned workflows. There is no worker-local fallback: a store
outage fails the call rather than splitting a batch across workers.

``update`` is a plain read-modify-write. Its precondition is a single writer
per batch, which holds because a batch is driven by one user's sequential
interactions; concurrent updates to the same batch can lose writes.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Dict, Optional

from chatcoord.logging import get_logger
from chatcoord.service.errors import StaleBatchReferenceError
from chatcoord.storage.kv import KeyValueStore, batch_key, dumps, loads
from chatcoord.storage.models import BatchState

logger = get_logger(__name__)

BATCH_EXPIRATION_SECONDS = 900


class BatchStateStore:
    def __init__(
        self, store: KeyValueStore, *, ttl_seconds: int = BATCH_EXPIRATION_SECONDS
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def generate_batch_id() -> str:
        return str(uuid.uuid4())

    async def save(
        self, user_id: str, batch_id: str, payload: Dict[str, Any]
    ) -> BatchState:
        state = BatchState(
            batch_id=batch_id,
            user_id=str(user_id),
            timestamp=int(time.time() * 1000),
            payload=payload,
        )
        # SerializationError propagates: there is nothing sensible to store
        raw = dumps(state.to_dict())
        await self.store.set(batch_key(user_id, batch_id), raw, ttl_seconds=self.ttl_seconds)
        logger.info("batch_saved", user_id=user_id, batch_id=batch_id, ttl=self.ttl_seconds)
        return state

    async def get(self, user_id: str, batch_id: str) -> Optional[BatchState]:
        data = loads(await self.store.get(batch_key(user_id, batch_id)))
        if not isinstance(data, dict) or "batchId" not in data:
            logger.warning("batch_not_found", user_id=user_id, batch_id=batch_id)
            return None
        return BatchState.from_dict(data)

    async def require(self, user_id: str, batch_id: str) -> BatchState:
        """Like ``get`` but raises StaleBatchReferenceError when the batch is gone."""
        state = await self.get(user_id, batch_id)
        if state is None:
            raise StaleBatchReferenceError(str(user_id), batch_id)
        return state

    async def update(
        self, user_id: str, batch_id: str, partial_payload: Dict[str, Any]
    ) -> BatchState:
        """Merge ``partial_payload`` into the batch and restart its TTL."""
        current = await self.require(user_id, batch_id)
        merged = {**current.payload, **partial_payload}
        updated = await self.save(user_id, batch_id, merged)
        logger.info("batch_updated", user_id=user_id, batch_id=batch_id, keys=sorted(partial_payload))
        return updated

    async def delete(self, user_id: str, batch_id: str) -> bool:
        deleted = await self.store.delete(batch_key(user_id, batch_id))
        logger.info("batch_deleted", user_id=user_id, batch_id=batch_id, existed=deleted)
        return deleted
