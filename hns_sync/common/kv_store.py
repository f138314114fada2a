"""Key-value persistence with optional TTL and no compare-and-swap.

Every piece of sync state (order snapshots, sessions, locks, trips, geocode
cache) lives behind :class:`KeyValueStore`. Writes are last-writer-wins; the
sync engine builds its own guarantees on top.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Protocol, Tuple

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from .db import session_scope
from .db_tables import kv_entries


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys(self, prefix: str = "") -> list[str]: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _make_upsert(values: Mapping[str, Any], *, use_sqlite: bool) -> sa.sql.dml.Insert:
    insert_fn = sqlite_insert if use_sqlite else pg_insert
    insert = insert_fn(kv_entries).values(**values)
    return insert.on_conflict_do_update(
        index_elements=["namespace", "key"],
        set_={column: insert.excluded[column] for column in ("value", "expires_at", "updated_at")},
    )


def _as_aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip; stored values are always UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SqlKeyValueStore:
    """KeyValueStore over the ``kv_entries`` table, scoped to one namespace."""

    def __init__(
        self,
        database_url: str,
        namespace: str,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.database_url = database_url
        self.namespace = namespace
        self._clock = clock

    def _is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    async def get(self, key: str) -> str | None:
        stmt = sa.select(kv_entries.c.value, kv_entries.c.expires_at).where(
            kv_entries.c.namespace == self.namespace, kv_entries.c.key == key
        )
        async with session_scope(self.database_url) as session:
            row = (await session.execute(stmt)).first()
        if row is None:
            return None
        expires_at = _as_aware(row.expires_at)
        if expires_at is not None and expires_at <= self._clock():
            return None
        return row.value

    async def put(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        stmt = _make_upsert(
            {
                "namespace": self.namespace,
                "key": key,
                "value": value,
                "expires_at": expires_at,
                "updated_at": now,
            },
            use_sqlite=self._is_sqlite(),
        )
        async with session_scope(self.database_url) as session:
            await session.execute(stmt)
            await session.commit()

    async def delete(self, key: str) -> None:
        stmt = sa.delete(kv_entries).where(
            kv_entries.c.namespace == self.namespace, kv_entries.c.key == key
        )
        async with session_scope(self.database_url) as session:
            await session.execute(stmt)
            await session.commit()

    async def list_keys(self, prefix: str = "") -> list[str]:
        now = self._clock()
        stmt = (
            sa.select(kv_entries.c.key, kv_entries.c.expires_at)
            .where(kv_entries.c.namespace == self.namespace)
            .where(kv_entries.c.key.startswith(prefix, autoescape=True))
            .order_by(kv_entries.c.key)
        )
        async with session_scope(self.database_url) as session:
            rows = (await session.execute(stmt)).all()
        return [
            row.key
            for row in rows
            if row.expires_at is None or _as_aware(row.expires_at) > now
        ]

    async def purge_expired(self) -> int:
        stmt = sa.delete(kv_entries).where(
            kv_entries.c.namespace == self.namespace,
            kv_entries.c.expires_at.is_not(None),
            kv_entries.c.expires_at <= self._clock(),
        )
        async with session_scope(self.database_url) as session:
            result = await session.execute(stmt)
            await session.commit()
        return int(result.rowcount or 0)


class MemoryKeyValueStore:
    """Process-local KeyValueStore used by tests and dry runs.

    Each operation yields to the event loop once so concurrent callers
    interleave the way they would against a remote store.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._data: Dict[str, Tuple[str, float | None]] = {}
        self._clock = clock

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        await asyncio.sleep(0)
        return self._live(key)

    async def put(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        await asyncio.sleep(0)
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        await asyncio.sleep(0)
        self._data.pop(key, None)

    async def list_keys(self, prefix: str = "") -> list[str]:
        await asyncio.sleep(0)
        return sorted(key for key in list(self._data) if key.startswith(prefix) and self._live(key) is not None)

    def snapshot(self) -> Dict[str, str]:
        return {key: value for key, (value, _) in self._data.items()}
