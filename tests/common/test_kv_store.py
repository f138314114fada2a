from datetime import datetime, timedelta, timezone

import pytest

from hns_sync.common.db import create_schema, dispose_engines
from hns_sync.common.kv_store import MemoryKeyValueStore, SqlKeyValueStore


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_sql_store_put_get_delete_and_namespaces(sqlite_url):
    await create_schema(sqlite_url)
    try:
        hns = SqlKeyValueStore(sqlite_url, "hns")
        trips = SqlKeyValueStore(sqlite_url, "trips")

        await hns.put("hns:db:u1", '{"1": {}}')
        await hns.put("hns:db:u1", '{"2": {}}')
        await trips.put("hns:db:u1", "other namespace")

        assert await hns.get("hns:db:u1") == '{"2": {}}'
        assert await trips.get("hns:db:u1") == "other namespace"

        await hns.delete("hns:db:u1")
        assert await hns.get("hns:db:u1") is None
        assert await trips.get("hns:db:u1") == "other namespace"
        assert await hns.get("missing") is None
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_sql_store_ttl_and_purge(sqlite_url):
    await create_schema(sqlite_url)
    clock = _Clock(datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc))
    try:
        store = SqlKeyValueStore(sqlite_url, "hns", clock=clock)
        await store.put("hns:lock:u1", "lock", ttl_seconds=30)
        await store.put("hns:session:u1", "cookie")

        assert await store.get("hns:lock:u1") == "lock"
        clock.now += timedelta(seconds=31)
        assert await store.get("hns:lock:u1") is None
        assert await store.list_keys("hns:") == ["hns:session:u1"]

        assert await store.purge_expired() == 1
        assert await store.get("hns:session:u1") == "cookie"
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_sql_store_list_keys_escapes_prefix(sqlite_url):
    await create_schema(sqlite_url)
    try:
        store = SqlKeyValueStore(sqlite_url, "trips")
        for key in ("trip:u_1:a", "trip:u_1:b", "trip:ux1:c", "mileage:u_1:a"):
            await store.put(key, "{}")

        assert await store.list_keys("trip:u_1:") == ["trip:u_1:a", "trip:u_1:b"]
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_memory_store_expires_entries():
    now = [1000.0]
    store = MemoryKeyValueStore(clock=lambda: now[0])
    await store.put("a", "1", ttl_seconds=10)
    await store.put("b", "2")

    assert await store.list_keys() == ["a", "b"]
    now[0] += 10
    assert await store.get("a") is None
    assert await store.list_keys() == ["b"]
    assert store.snapshot() == {"b": "2"}
