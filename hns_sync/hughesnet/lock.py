from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from hns_sync.common.json_logger import JsonLogger, log_event
from hns_sync.common.kv_store import KeyValueStore

from .constants import LOCK_MAX_RETRIES, LOCK_RETRY_DELAY_SECONDS, LOCK_TTL_SECONDS
from .dates import utc_now
from .models import SyncLock


class LockManager:
    """Cooperative per-user mutex over a store without compare-and-swap.

    A lock is written and then read back; the caller owns it only if the
    stored owner is still the caller. Storage failures count as "not
    acquired" / "not released".
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        logger: JsonLogger,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        ttl_seconds: int = LOCK_TTL_SECONDS,
        retry_delay_seconds: float = LOCK_RETRY_DELAY_SECONDS,
    ) -> None:
        self.store = store
        self.logger = logger
        self.clock = clock
        self.sleep = sleep
        self.ttl_seconds = ttl_seconds
        self.retry_delay_seconds = retry_delay_seconds

    async def _read(self, key: str) -> SyncLock | None:
        raw = await self.store.get(key)
        if not raw:
            return None
        try:
            return SyncLock.from_dict(json.loads(raw))
        except (ValueError, TypeError):
            log_event(logger=self.logger, phase="lock", status="warn", message="Discarding unreadable lock record", key=key)
            return None

    async def acquire(self, key: str, owner_id: str) -> bool:
        try:
            existing = await self._read(key)
            if existing is not None and existing.owner_id != owner_id and existing.expires_at > self.clock():
                return False
            lock = SyncLock(
                lock_id=uuid.uuid4().hex,
                owner_id=owner_id,
                expires_at=self.clock() + timedelta(seconds=self.ttl_seconds),
            )
            await self.store.put(key, json.dumps(lock.to_dict()), ttl_seconds=self.ttl_seconds)
            stored = await self._read(key)
        except Exception as exc:
            log_event(
                logger=self.logger,
                phase="lock",
                status="warn",
                message="Lock acquire failed on storage error",
                key=key,
                owner_id=owner_id,
                error=str(exc),
            )
            return False
        return stored is not None and stored.owner_id == owner_id and stored.lock_id == lock.lock_id

    async def release(self, key: str, owner_id: str) -> bool:
        try:
            existing = await self._read(key)
            if existing is None or existing.owner_id != owner_id:
                log_event(
                    logger=self.logger,
                    phase="lock",
                    status="warn",
                    message="Skipping release of a lock held by another owner",
                    key=key,
                    owner_id=owner_id,
                    holder=existing.owner_id if existing else None,
                )
                return False
            await self.store.delete(key)
        except Exception as exc:
            log_event(
                logger=self.logger,
                phase="lock",
                status="warn",
                message="Lock release failed on storage error",
                key=key,
                owner_id=owner_id,
                error=str(exc),
            )
            return False
        log_event(logger=self.logger, phase="lock", message="Lock released", key=key, owner_id=owner_id)
        return True

    async def _clear_if_expired(self, key: str) -> None:
        try:
            existing = await self._read(key)
            if existing is not None and existing.expires_at <= self.clock():
                await self.store.delete(key)
                log_event(
                    logger=self.logger,
                    phase="lock",
                    status="warn",
                    message="Removed expired lock",
                    key=key,
                    holder=existing.owner_id,
                )
        except Exception as exc:
            log_event(logger=self.logger, phase="lock", status="warn", message="Expired-lock check failed", key=key, error=str(exc))

    async def wait_for_lock(self, key: str, owner_id: str, max_retries: int = LOCK_MAX_RETRIES) -> bool:
        for attempt in range(1, max_retries + 1):
            if await self.acquire(key, owner_id):
                log_event(logger=self.logger, phase="lock", message="Lock acquired", key=key, owner_id=owner_id, attempt=attempt)
                return True
            if attempt < max_retries:
                await self._clear_if_expired(key)
                await self.sleep(self.retry_delay_seconds)
        log_event(
            logger=self.logger,
            phase="lock",
            status="error",
            message="Gave up waiting for lock",
            key=key,
            owner_id=owner_id,
            attempts=max_retries,
        )
        return False
