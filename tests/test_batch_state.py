"""BatchStateStore: shared ephemeral state for multi-step document batches."""

import uuid

import pytest

from chatcoord.service.batch_state import BATCH_EXPIRATION_SECONDS, BatchStateStore
from chatcoord.service.errors import (
    SerializationError,
    StaleBatchReferenceError,
    StoreUnavailableError,
)


class TestBatchLifecycle:
    async def test_save_then_get(self, store):
        batches = BatchStateStore(store)
        batch_id = batches.generate_batch_id()
        await batches.save("u1", batch_id, {"files": ["a.pdf", "b.pdf"]})

        state = await batches.get("u1", batch_id)

        assert state.batch_id == batch_id
        assert state.user_id == "u1"
        assert state.payload == {"files": ["a.pdf", "b.pdf"]}

    def test_batch_ids_are_uuids(self):
        batch_id = BatchStateStore.generate_batch_id()
        assert str(uuid.UUID(batch_id)) == batch_id
        assert batch_id != BatchStateStore.generate_batch_id()

    async def test_batches_are_scoped_per_user(self, store):
        batches = BatchStateStore(store)
        await batches.save("u1", "b1", {"x": 1})
        assert await batches.get("u2", "b1") is None

    async def test_expires_after_fixed_ttl(self, store, clock):
        batches = BatchStateStore(store)
        await batches.save("u1", "b1", {"x": 1})
        clock.advance(BATCH_EXPIRATION_SECONDS - 1)
        assert await batches.get("u1", "b1") is not None
        clock.advance(2)
        assert await batches.get("u1", "b1") is None

    async def test_update_merges_and_restarts_ttl(self, store, clock):
        batches = BatchStateStore(store, ttl_seconds=100)
        await batches.save("u1", "b1", {"files": ["a"], "confirmed": False})
        clock.advance(90)

        updated = await batches.update("u1", "b1", {"confirmed": True})

        assert updated.payload == {"files": ["a"], "confirmed": True}
        clock.advance(90)
        assert (await batches.get("u1", "b1")).payload["confirmed"] is True

    async def test_update_of_expired_batch_raises_stale_reference(self, store, clock):
        batches = BatchStateStore(store, ttl_seconds=10)
        await batches.save("u1", "b1", {})
        clock.advance(11)

        with pytest.raises(StaleBatchReferenceError) as excinfo:
            await batches.update("u1", "b1", {"confirmed": True})

        assert excinfo.value.status_code == 410
        assert excinfo.value.error_code == "batch_expired"

    async def test_require_missing_batch(self, store):
        batches = BatchStateStore(store)
        with pytest.raises(StaleBatchReferenceError):
            await batches.require("u1", "missing")

    async def test_delete(self, store):
        batches = BatchStateStore(store)
        await batches.save("u1", "b1", {})
        assert await batches.delete("u1", "b1") is True
        assert await batches.delete("u1", "b1") is False


class TestBatchFailures:
    async def test_unserializable_payload_raises(self, store):
        batches = BatchStateStore(store)
        with pytest.raises(SerializationError):
            await batches.save("u1", "b1", {"file": b"raw-bytes"})

    async def test_store_outage_propagates(self, failing_store):
        batches = BatchStateStore(failing_store)
        with pytest.raises(StoreUnavailableError):
            await batches.save("u1", "b1", {})
        with pytest.raises(StoreUnavailableError):
            await batches.get("u1", "b1")
