import asyncio
import json
from datetime import timedelta

import pytest

from hns_sync.common.kv_store import MemoryKeyValueStore
from hns_sync.hughesnet.lock import LockManager

from portal_fakes import FixedClock, quiet_logger


async def _yield_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def _manager(store, clock=None, **kwargs) -> LockManager:
    return LockManager(store, logger=quiet_logger(), clock=clock or FixedClock(), sleep=_yield_sleep, **kwargs)


@pytest.mark.asyncio
async def test_acquire_and_release_roundtrip():
    store = MemoryKeyValueStore()
    locks = _manager(store)

    assert await locks.acquire("hns:lock:u1", "run-a") is True
    stored = json.loads(await store.get("hns:lock:u1"))
    assert stored["owner_id"] == "run-a"
    assert stored["lock_id"]

    assert await locks.release("hns:lock:u1", "run-a") is True
    assert await store.get("hns:lock:u1") is None


@pytest.mark.asyncio
async def test_acquire_refuses_unexpired_lock_of_other_owner():
    store = MemoryKeyValueStore()
    locks = _manager(store)

    assert await locks.acquire("hns:lock:u1", "run-a")
    assert await locks.acquire("hns:lock:u1", "run-b") is False
    assert json.loads(await store.get("hns:lock:u1"))["owner_id"] == "run-a"


@pytest.mark.asyncio
async def test_release_by_non_owner_keeps_lock():
    store = MemoryKeyValueStore()
    locks = _manager(store)
    await locks.acquire("hns:lock:u1", "run-a")

    assert await locks.release("hns:lock:u1", "run-b") is False
    assert json.loads(await store.get("hns:lock:u1"))["owner_id"] == "run-a"


@pytest.mark.asyncio
async def test_expired_lock_is_taken_over():
    store = MemoryKeyValueStore()
    clock = FixedClock()
    locks = _manager(store, clock=clock)
    await locks.acquire("hns:lock:u1", "run-a")

    clock.advance(seconds=301)

    assert await locks.acquire("hns:lock:u1", "run-b") is True
    assert json.loads(await store.get("hns:lock:u1"))["owner_id"] == "run-b"


@pytest.mark.asyncio
async def test_wait_for_lock_gives_up_after_max_retries():
    store = MemoryKeyValueStore()
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    holder = _manager(store)
    await holder.acquire("hns:lock:u1", "run-a")
    waiter = LockManager(store, logger=quiet_logger(), clock=FixedClock(), sleep=record_sleep)

    assert await waiter.wait_for_lock("hns:lock:u1", "run-b", max_retries=4) is False
    assert sleeps == [1.0, 1.0, 1.0]


@pytest.mark.asyncio
async def test_wait_for_lock_clears_expired_lock_between_attempts():
    store = MemoryKeyValueStore()
    clock = FixedClock()
    holder = _manager(store, clock=clock)
    await holder.acquire("hns:lock:u1", "run-a")

    async def expire_then_sleep(_seconds: float) -> None:
        clock.advance(minutes=6)

    waiter = LockManager(store, logger=quiet_logger(), clock=clock, sleep=expire_then_sleep)

    assert await waiter.wait_for_lock("hns:lock:u1", "run-b", max_retries=3) is True


@pytest.mark.asyncio
async def test_concurrent_waiters_only_one_acquires():
    store = MemoryKeyValueStore()
    clock = FixedClock()
    first = _manager(store, clock=clock)
    second = _manager(store, clock=clock)

    results = await asyncio.gather(
        first.wait_for_lock("hns:lock:u1", "run-a", max_retries=5),
        second.wait_for_lock("hns:lock:u1", "run-b", max_retries=5),
    )

    assert sorted(results) == [False, True]
    winner = "run-a" if results[0] else "run-b"
    assert json.loads(await store.get("hns:lock:u1"))["owner_id"] == winner


@pytest.mark.asyncio
async def test_storage_error_reports_not_acquired():
    class BrokenStore(MemoryKeyValueStore):
        async def put(self, key, value, *, ttl_seconds=None):
            raise ConnectionError("store unavailable")

    locks = _manager(BrokenStore())

    assert await locks.acquire("hns:lock:u1", "run-a") is False


@pytest.mark.asyncio
async def test_lock_record_expiry_matches_ttl():
    store = MemoryKeyValueStore()
    clock = FixedClock()
    locks = _manager(store, clock=clock, ttl_seconds=120)
    await locks.acquire("hns:lock:u1", "run-a")

    stored = json.loads(await store.get("hns:lock:u1"))
    assert stored["expires_at"] == (clock.now + timedelta(seconds=120)).isoformat()
