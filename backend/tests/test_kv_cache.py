from __future__ import annotations

from datetime import UTC, datetime

import pytest

from sharegate.cache import AccessCache
from sharegate.errors import TransientStoreError
from sharegate.kv import MemoryKeyValueStore
from sharegate.schemas.grants import GrantSnapshot


class Ticker:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


class BrokenStore(MemoryKeyValueStore):
    async def get(self, key):
        raise TransientStoreError("cache")

    async def set(self, key, value, ttl=None):
        raise TransientStoreError("cache")

    async def delete(self, key):
        raise TransientStoreError("cache")


def _grant(**kw) -> GrantSnapshot:
    base = dict(
        token="tok-123456789",
        blob_key="alice/1_a_report.pdf",
        display_name="report.pdf",
        mime="application/pdf",
        size_bytes=10,
        created_at=datetime(2026, 1, 1, tzinfo=UTC),
        download_cap=3,
    )
    base.update(kw)
    return GrantSnapshot(**base)


@pytest.mark.asyncio
async def test_memory_store_ttl_and_add():
    tick = Ticker()
    kv = MemoryKeyValueStore(clock=tick)
    assert await kv.add("k", "v1", ttl=10)
    assert not await kv.add("k", "v2", ttl=10)
    assert await kv.get("k") == "v1"
    tick.t = 10
    assert await kv.get("k") is None
    assert await kv.add("k", "v3")


@pytest.mark.asyncio
async def test_memory_store_compare_and_set():
    kv = MemoryKeyValueStore()
    await kv.set("k", "a")
    assert not await kv.compare_and_set("k", "b", "c")
    assert await kv.compare_and_set("k", "a", "c")
    assert await kv.get("k") == "c"
    assert await kv.compare_and_set("k", "c", None)
    assert await kv.get("k") is None


@pytest.mark.asyncio
async def test_cache_round_trip_and_invalidate():
    cache = AccessCache(MemoryKeyValueStore(), ttl_seconds=60)
    g = _grant()
    await cache.put(g)
    assert await cache.get(g.token) == g
    await cache.invalidate(g.token)
    assert await cache.get(g.token) is None


@pytest.mark.asyncio
async def test_undecodable_entry_is_a_miss_and_dropped():
    kv = MemoryKeyValueStore()
    cache = AccessCache(kv, ttl_seconds=60)
    await kv.set("grant:bad", "{not json")
    assert await cache.get("bad") is None
    assert await kv.get("grant:bad") is None


@pytest.mark.asyncio
async def test_cache_failures_are_misses_but_evict_propagates():
    cache = AccessCache(BrokenStore(), ttl_seconds=60)
    g = _grant()
    await cache.put(g)
    assert await cache.get(g.token) is None
    await cache.invalidate(g.token)
    with pytest.raises(TransientStoreError):
        await cache.evict(g.token)


def test_snapshot_quota_helpers():
    g = _grant(download_count=2)
    assert g.remaining_downloads == 1
    assert not g.quota_spent
    assert g.remaining_label() == "1"
    unlimited = _grant(download_cap=None, download_count=50)
    assert unlimited.unlimited
    assert unlimited.remaining_downloads is None
    assert unlimited.remaining_label() == "∞"
    assert not unlimited.quota_spent
