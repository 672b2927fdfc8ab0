"""Tests for the worker-local key-value store and key/codec helpers."""

import pytest

from chatcoord.service.errors import SerializationError
from chatcoord.storage.kv import (
    KeyValueStore,
    batch_key,
    dumps,
    job_claim_key,
    job_key,
    loads,
    lock_key,
    session_key,
)
from chatcoord.storage.memory import MemoryKeyValueStore


class TestMemoryStoreBasics:
    async def test_set_get_delete(self, store):
        assert await store.set("a", "1") is True
        assert await store.get("a") == "1"
        assert await store.delete("a") is True
        assert await store.get("a") is None
        assert await store.delete("a") is False

    async def test_satisfies_protocol(self, store):
        assert isinstance(store, KeyValueStore)
        assert store.backend == "memory"
        assert await store.ping() is True

    async def test_ttl_expiry_uses_injected_clock(self, store, clock):
        await store.set("k", "v", ttl_seconds=10)
        clock.advance(9.9)
        assert await store.get("k") == "v"
        clock.advance(0.2)
        assert await store.get("k") is None

    async def test_ttl_ms(self, store, clock):
        await store.set("k", "v", ttl_ms=500)
        clock.advance(0.4)
        assert await store.get("k") == "v"
        clock.advance(0.2)
        assert await store.get("k") is None

    async def test_nx_only_sets_absent_keys(self, store, clock):
        assert await store.set("k", "first", ttl_seconds=1, nx=True) is True
        assert await store.set("k", "second", nx=True) is False
        assert await store.get("k") == "first"
        clock.advance(2)
        # expired keys count as absent
        assert await store.set("k", "third", nx=True) is True

    async def test_compare_and_delete_requires_matching_value(self, store):
        await store.set("lock", "owner-a")
        assert await store.compare_and_delete("lock", "owner-b") is False
        assert await store.get("lock") == "owner-a"
        assert await store.compare_and_delete("lock", "owner-a") is True
        assert await store.get("lock") is None

    async def test_scan_by_prefix_skips_expired(self, store, clock):
        await store.set("session:1", "x")
        await store.set("session:2", "x", ttl_seconds=1)
        await store.set("lock:1", "x")
        clock.advance(5)
        assert await store.scan("session:") == ["session:1"]

    async def test_close_clears_entries(self, store):
        await store.set("a", "1")
        await store.close()
        assert len(store) == 0


class TestMemoryStoreBounds:
    async def test_evicts_soonest_expiring_first(self, clock):
        store = MemoryKeyValueStore(10, clock=clock)
        for i in range(9):
            await store.set(f"long:{i}", "x", ttl_seconds=1000)
        await store.set("short", "x", ttl_seconds=5)
        await store.set("new", "x", ttl_seconds=1000)
        assert await store.get("short") is None
        assert await store.get("new") == "x"
        assert len(store) == 10

    async def test_expired_entries_purged_before_eviction(self, clock):
        store = MemoryKeyValueStore(3, clock=clock)
        await store.set("a", "x", ttl_seconds=1)
        await store.set("b", "x")
        await store.set("c", "x")
        clock.advance(2)
        await store.set("d", "x")
        assert sorted(await store.scan("")) == ["b", "c", "d"]

    async def test_purge_expired_returns_count(self, store, clock):
        await store.set("a", "x", ttl_seconds=1)
        await store.set("b", "x", ttl_seconds=1)
        await store.set("c", "x")
        clock.advance(2)
        assert store.purge_expired() == 2
        assert len(store) == 1

    def test_rejects_non_positive_bound(self):
        with pytest.raises(ValueError):
            MemoryKeyValueStore(0)


class TestKeysAndCodec:
    def test_key_builders(self):
        assert session_key("42") == "session:42"
        assert batch_key("42", "b1") == "batch:42:b1"
        assert lock_key("folio:t1:A") == "lock:folio:t1:A"
        assert job_key("reports", "j1") == "job:reports:j1"
        assert job_claim_key("reports", "j1") == "job:reports:j1:claim"

    def test_dumps_rejects_unrepresentable_values(self):
        with pytest.raises(SerializationError):
            dumps({"when": object()})
        with pytest.raises(SerializationError):
            dumps({"ratio": float("nan")})

    def test_loads_tolerates_missing_and_corrupt(self):
        assert loads(None) is None
        assert loads("") is None
        assert loads("{not json") is None
        assert loads(dumps({"a": "ñ"})) == {"a": "ñ"}
