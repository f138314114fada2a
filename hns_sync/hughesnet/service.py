"""Sync orchestrator for the HughesNet work-order portal.

One call to :meth:`HughesNetService.sync` runs, under the per-user lock:

1. session: reuse the cached cookie or log in with stored credentials;
2. crawl: scan, gap-fill and backward discovery (unless ``skip_scan``);
3. resync pre-pass: recompute ``needs_resync`` and persist it;
4. download: fetch detail pages for pending/flagged orders;
5. trips: rebuild one trip per affected date, reporting user-edit conflicts.

A budget stop in any stage returns ``SyncResult(incomplete=True)`` after the
stage persisted its work. Any other failure in steps 4-5 restores the order
snapshot captured at step 1 when it is small enough.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Sequence
from zoneinfo import ZoneInfo

from hns_sync.common.json_logger import JsonLogger, log_event, timed_event
from hns_sync.common.kv_store import KeyValueStore, MemoryKeyValueStore, SqlKeyValueStore

from .constants import MAX_IMPORT_BATCH, MAX_ROLLBACK_SIZE_BYTES, lock_key
from .context import PortalUrls, SyncContext
from .crawl import CrawlDelays, CrawlEngine
from .dates import utc_now
from .errors import SessionExpiredError, SyncFailedError, SyncLockError
from .fetcher import Fetcher
from .lock import LockManager
from .models import ImportResult, OrderRecord, PayRates, StageOutcome, StageStatus, SyncResult
from .reconcile import OrderArchive, OrderMap, OrderStore, flag_resync_candidates, order_service_date
from .router import Router
from .session import SessionManager
from .summary import SyncSummary, load_last_summary, persist_summary
from .trip_builder import SettingsStore, TripBuilder, TripStore

STORE_NAMESPACES = ("hns", "hns_orders", "trips", "settings", "directions")


@dataclass(frozen=True)
class SyncStores:
    """Key-value namespaces used by the engine."""

    hns: KeyValueStore
    orders: KeyValueStore
    trips: KeyValueStore
    settings: KeyValueStore
    directions: KeyValueStore

    @classmethod
    def from_database(cls, database_url: str) -> "SyncStores":
        return cls(*(SqlKeyValueStore(database_url, namespace) for namespace in STORE_NAMESPACES))

    @classmethod
    def in_memory(cls) -> "SyncStores":
        return cls(*(MemoryKeyValueStore() for _ in STORE_NAMESPACES))


@dataclass
class _Engine:
    locks: LockManager
    sessions: SessionManager
    order_store: OrderStore
    archive: OrderArchive
    crawler: CrawlEngine
    trips: TripStore
    trip_builder: TripBuilder


class HughesNetService:
    def __init__(
        self,
        stores: SyncStores,
        fetcher: Fetcher,
        *,
        logger: JsonLogger,
        secret_key: str,
        portal_base_url: str,
        portal_timezone: str = "America/New_York",
        google_api_key: str = "",
        clock: Callable[[], datetime] = utc_now,
        delays_enabled: bool = True,
        lock_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        crawl_delays: CrawlDelays = CrawlDelays(),
    ) -> None:
        self.stores = stores
        self.fetcher = fetcher
        self.logger = logger
        self.secret_key = secret_key
        self.urls = PortalUrls(portal_base_url.rstrip("/"))
        self.portal_timezone = ZoneInfo(portal_timezone)
        self.google_api_key = google_api_key
        self.clock = clock
        self.delays_enabled = delays_enabled
        self.lock_sleep = lock_sleep
        self.crawl_delays = crawl_delays

    def _engine(self, logger: JsonLogger) -> _Engine:
        sessions = SessionManager(self.stores.hns, secret_key=self.secret_key)
        order_store = OrderStore(self.stores.hns, logger=logger)
        archive = OrderArchive(self.stores.orders, logger=logger)
        trips = TripStore(self.stores.trips, logger=logger)
        router = Router(
            cache=self.stores.directions,
            fetcher=self.fetcher,
            logger=logger,
            google_api_key=self.google_api_key,
        )
        return _Engine(
            locks=LockManager(self.stores.hns, logger=logger, clock=self.clock, sleep=self.lock_sleep),
            sessions=sessions,
            order_store=order_store,
            archive=archive,
            crawler=CrawlEngine(sessions=sessions, order_store=order_store, archive=archive, delays=self.crawl_delays),
            trips=trips,
            trip_builder=TripBuilder(router=router, trips=trips, settings=SettingsStore(self.stores.settings, logger=logger)),
        )

    def _context(self, user_id: str, logger: JsonLogger) -> SyncContext:
        return SyncContext(
            user_id=user_id,
            fetcher=self.fetcher,
            logger=logger,
            urls=self.urls,
            portal_timezone=self.portal_timezone,
            clock=self.clock,
            delays_enabled=self.delays_enabled,
        )

    # -- Account management ----------------------------------------------------

    async def connect(self, user_id: str, username: str, password: str) -> bool:
        logger = self.logger.bind(user_id=user_id)
        log_event(logger=logger, phase="session", message="Connecting portal account")
        engine = self._engine(logger)
        return await engine.sessions.connect(self._context(user_id, logger), username, password)

    async def disconnect(self, user_id: str) -> None:
        logger = self.logger.bind(user_id=user_id)
        await self._engine(logger).sessions.disconnect(user_id)
        log_event(logger=logger, phase="session", message="Portal account disconnected")

    async def get_orders(self, user_id: str) -> Dict[str, OrderRecord]:
        logger = self.logger.bind(user_id=user_id)
        return await self._engine(logger).order_store.load(user_id)

    async def last_summary(self, user_id: str) -> Dict[str, Any] | None:
        return await load_last_summary(self.stores.hns, user_id)

    async def clear_all_trips(self, user_id: str) -> int:
        logger = self.logger.bind(user_id=user_id)
        engine = self._engine(logger)
        removed = await engine.trip_builder.clear_engine_trips(user_id)
        await engine.order_store.clear(user_id)
        log_event(logger=logger, phase="trips", message="Cleared engine-created trips", removed=removed)
        return removed

    async def import_archived(self, user_id: str, order_ids: Sequence[str] | None = None) -> ImportResult:
        """Restore archived orders owned by ``user_id`` into the order snapshot.

        ``order_ids=None`` imports every archived order the user owns. Orders
        already present with an address are left alone.
        """

        logger = self.logger.bind(user_id=user_id)
        engine = self._engine(logger)
        owner = f"import:{uuid.uuid4().hex}"
        key = lock_key(user_id)
        if not await engine.locks.wait_for_lock(key, owner):
            raise SyncLockError(user_id)
        try:
            candidates = list(order_ids) if order_ids is not None else await engine.archive.owned_ids(user_id)
            result = ImportResult()
            if len(candidates) > MAX_IMPORT_BATCH:
                result.truncated = True
                candidates = candidates[:MAX_IMPORT_BATCH]
            orders = await engine.order_store.load(user_id)
            now = self.clock()
            dates: set[str] = set()
            for order_id in candidates:
                entry = await engine.archive.get(str(order_id))
                if entry is None:
                    result.skipped.append(str(order_id))
                    continue
                owner_id, order = entry
                existing = orders.get(order.id)
                if owner_id != user_id or (existing is not None and existing.address):
                    result.skipped.append(order.id)
                    continue
                order.restored_from_archive = True
                order.status = None
                order.last_sync_timestamp = now
                orders[order.id] = order
                result.imported.append(order.id)
                service_date = order_service_date(order)
                if service_date is not None:
                    dates.add(service_date.isoformat())
            if result.imported:
                await engine.order_store.save(user_id, orders)
            result.imported_dates = sorted(dates)
        finally:
            await engine.locks.release(key, owner)
        log_event(
            logger=logger,
            phase="sync",
            message="Imported archived orders",
            imported=len(result.imported),
            skipped=len(result.skipped),
            truncated=result.truncated,
        )
        return result

    # -- Sync ------------------------------------------------------------------

    async def sync(
        self,
        user_id: str,
        pay_rates: PayRates | Mapping[str, Any],
        *,
        skip_scan: bool = False,
        recent_only: bool = False,
        force_dates: Iterable[str] = (),
    ) -> SyncResult:
        """Run one resumable sync batch for ``user_id``.

        Raises ``pydantic.ValidationError`` for invalid pay rates,
        :class:`SyncLockError` when the lock cannot be taken,
        :class:`SessionExpiredError` when the portal session cannot be
        (re)established and :class:`SyncFailedError` after a rollback attempt.
        """

        rates = pay_rates if isinstance(pay_rates, PayRates) else PayRates.model_validate(pay_rates)
        forced = [str(value) for value in force_dates]
        logger = self.logger.bind(user_id=user_id)
        summary = SyncSummary(run_id=logger.run_id, user_id=user_id, started_at=self.clock())
        logger.attach_recorder(summary)
        engine = self._engine(logger)
        ctx = self._context(user_id, logger)

        key = lock_key(user_id)
        owner = f"{logger.run_id}:{uuid.uuid4().hex[:8]}"
        if not await engine.locks.wait_for_lock(key, owner):
            log_event(logger=logger, phase="sync", status="error", message="Sync aborted: lock held by another run")
            raise SyncLockError(user_id)

        try:
            log_event(
                logger=logger,
                phase="sync",
                message="Sync started",
                skip_scan=skip_scan,
                recent_only=recent_only,
                force_dates=forced,
            )
            result = await self._sync_locked(ctx, engine, rates, skip_scan=skip_scan, recent_only=recent_only, force_dates=forced)
            summary.finish("incomplete" if result.incomplete else "complete")
            log_event(
                logger=logger,
                phase="sync",
                status="warn" if result.incomplete else "ok",
                message="Sync paused; run again to continue" if result.incomplete else "Sync finished",
                orders=len(result.orders),
                conflicts=len(result.conflicts),
                trips_written=len(result.trips_written),
                requests=ctx.budget.count,
            )
            return result
        except Exception:
            summary.finish("error")
            raise
        finally:
            await engine.locks.release(key, owner)
            try:
                await persist_summary(self.stores.hns, summary, finished_at=self.clock())
            except Exception as exc:
                log_event(logger=logger, phase="sync", status="warn", message="Could not store sync summary", error=str(exc))

    async def _sync_locked(
        self,
        ctx: SyncContext,
        engine: _Engine,
        rates: PayRates,
        *,
        skip_scan: bool,
        recent_only: bool,
        force_dates: List[str],
    ) -> SyncResult:
        cookie = await engine.sessions.ensure_session_cookie(ctx)
        if not cookie:
            log_event(logger=ctx.logger, phase="session", status="error", message="Could not log in; reconnect required")
            raise SessionExpiredError()

        snapshot = await engine.order_store.load_raw(ctx.user_id)
        orders = engine.order_store.decode(snapshot) if snapshot else {}
        log_event(logger=ctx.logger, phase="sync", message="Loaded order snapshot", orders=len(orders))

        if not skip_scan:
            for stage in (engine.crawler.scan, engine.crawler.gap_fill, engine.crawler.backward_discovery):
                outcome = await stage(ctx, orders)
                if not outcome.is_ok:
                    return self._stop_early(outcome, orders)

        changed = flag_resync_candidates(orders, ctx.now())
        if changed:
            await engine.order_store.save(ctx.user_id, orders)
        log_event(logger=ctx.logger, phase="resync", message="Resync flags updated", changed=len(changed))

        try:
            outcome = await engine.crawler.download(ctx, orders, recent_only=recent_only)
            if not outcome.is_ok:
                return self._stop_early(outcome, orders)
            with timed_event(logger=ctx.logger, phase="trips", message="Trip pass", orders=len(orders)):
                trip_pass = await engine.trip_builder.build_all(
                    ctx,
                    orders,
                    rates,
                    recent_only=recent_only,
                    force_dates=force_dates,
                )
        except (SessionExpiredError, SyncLockError):
            raise
        except Exception as exc:
            rolled_back = await self._rollback(ctx, engine, snapshot)
            raise SyncFailedError(f"Sync failed: {exc}", rolled_back=rolled_back) from exc

        return SyncResult(
            orders=list(orders.values()),
            incomplete=trip_pass.outcome.budget_exhausted,
            conflicts=trip_pass.conflicts,
            trips_written=trip_pass.written,
        )

    @staticmethod
    def _stop_early(outcome: StageOutcome, orders: OrderMap) -> SyncResult:
        if outcome.status is StageStatus.FATAL and outcome.error is not None:
            raise outcome.error
        return SyncResult(orders=list(orders.values()), incomplete=True)

    async def _rollback(self, ctx: SyncContext, engine: _Engine, snapshot: str | None) -> bool:
        size = len(snapshot.encode("utf-8")) if snapshot else 0
        if size > MAX_ROLLBACK_SIZE_BYTES:
            log_event(
                logger=ctx.logger,
                phase="rollback",
                status="warn",
                message="Snapshot too large; rollback disabled, partial changes remain",
                size_bytes=size,
                limit_bytes=MAX_ROLLBACK_SIZE_BYTES,
            )
            return False
        try:
            await engine.order_store.restore_raw(ctx.user_id, snapshot)
        except Exception as exc:
            log_event(logger=ctx.logger, phase="rollback", status="error", message="Rollback write failed", error=str(exc))
            return False
        log_event(logger=ctx.logger, phase="rollback", status="warn", message="Order snapshot restored", size_bytes=size)
        return True
