from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, List

from hns_sync.common.json_logger import log_event

from .constants import (
    DELAY_BETWEEN_BACKWARD_SCANS,
    DELAY_BETWEEN_DOWNLOADS,
    DELAY_BETWEEN_GAP_FILLS,
    DELAY_BETWEEN_SCANS,
    DISCOVERY_GAP_MAX_SIZE,
    DISCOVERY_MAX_CHECKS,
    DISCOVERY_MAX_FAILURES,
    SCAN_MAX_PAGES_PER_LINK,
)
from .context import SyncContext
from .errors import HardLimitExceeded, SessionExpiredError
from .models import OrderRecord, StageOutcome
from .parser import extract_frame_sources, extract_ids, extract_menu_links, extract_next_link, parse_order_page
from .reconcile import OrderArchive, OrderMap, OrderStore, merge_parsed_order, orders_needing_download
from .session import SessionManager

PRIORITY_LINK_MARKERS = ("SoSearch", "forms/")
# Detail pages are fetched by the download stage, not walked as listings.
ORDER_DETAIL_MARKER = "viewservice.jsp"


@dataclass(frozen=True)
class CrawlDelays:
    scan: float = DELAY_BETWEEN_SCANS
    gap_fill: float = DELAY_BETWEEN_GAP_FILLS
    backward: float = DELAY_BETWEEN_BACKWARD_SCANS
    download: float = DELAY_BETWEEN_DOWNLOADS


@dataclass
class StageProgress:
    dirty: bool = False
    probes: int = 0
    found: List[str] = field(default_factory=list)
    payment_updates: List[str] = field(default_factory=list)


StageBody = Callable[[StageProgress], Awaitable[bool]]


def _numeric_ids(orders: Iterable[str]) -> List[int]:
    return sorted(int(order_id) for order_id in orders if order_id.isdigit())


class CrawlEngine:
    """Scan, discovery and download stages over a user's order snapshot.

    Every stage mutates the in-memory ``orders`` map, persists it before it
    returns, and reports how it ended as a :class:`StageOutcome`.
    """

    def __init__(
        self,
        *,
        sessions: SessionManager,
        order_store: OrderStore,
        archive: OrderArchive,
        delays: CrawlDelays = CrawlDelays(),
    ) -> None:
        self.sessions = sessions
        self.order_store = order_store
        self.archive = archive
        self.delays = delays

    async def _run_stage(self, ctx: SyncContext, orders: OrderMap, phase: str, body: StageBody) -> StageOutcome:
        progress = StageProgress()
        start_count = ctx.budget.count
        try:
            finished = await body(progress)
            outcome = StageOutcome.ok() if finished else StageOutcome.soft_limit()
        except HardLimitExceeded as exc:
            log_event(logger=ctx.logger, phase=phase, status="warn", message="Hard request limit reached", error=str(exc))
            outcome = StageOutcome.hard_limit()
        except SessionExpiredError as exc:
            log_event(logger=ctx.logger, phase=phase, status="error", message=str(exc))
            outcome = StageOutcome.fatal(exc)
        if progress.dirty:
            await self.order_store.save(ctx.user_id, orders)
        log_event(
            logger=ctx.logger,
            phase=phase,
            status="warn" if outcome.budget_exhausted else "ok",
            message=f"Stage finished: {outcome.status.value}",
            outcome=outcome.status.value,
            requests=ctx.budget.count - start_count,
            probes=progress.probes,
            found=len(progress.found),
            payment_updates=len(progress.payment_updates),
            persisted=progress.dirty,
        )
        return outcome

    def _soft_stop(self, ctx: SyncContext, phase: str) -> bool:
        if not ctx.budget.soft_exhausted:
            return False
        log_event(
            logger=ctx.logger,
            phase=phase,
            status="warn",
            message="Soft request limit reached; pausing for the next batch",
            requests=ctx.budget.count,
            soft_limit=ctx.budget.soft_limit,
        )
        return True

    @staticmethod
    def _add_pending(orders: OrderMap, ids: Iterable[str], progress: StageProgress) -> None:
        for order_id in ids:
            if order_id not in orders:
                orders[order_id] = OrderRecord.pending(order_id)
                progress.dirty = True
                progress.found.append(order_id)

    # -- Stage 1: scan ---------------------------------------------------------

    async def scan(self, ctx: SyncContext, orders: OrderMap) -> StageOutcome:
        async def body(progress: StageProgress) -> bool:
            if self._soft_stop(ctx, "scan"):
                return False
            home = await self.sessions.fetch_page(ctx, ctx.urls.home)
            self._add_pending(orders, extract_ids(home.text), progress)

            links = [
                link.url
                for link in extract_menu_links(home.text, ctx.urls.base_url)
                if any(marker in link.url for marker in PRIORITY_LINK_MARKERS) and ORDER_DETAIL_MARKER not in link.url
            ]
            links.append(ctx.urls.manual_search)
            for url in dict.fromkeys(links):
                if not await self._scan_link(ctx, orders, url, progress):
                    return False
                await ctx.pause(self.delays.scan)
            return True

        return await self._run_stage(ctx, orders, "scan", body)

    async def _scan_link(self, ctx: SyncContext, orders: OrderMap, url: str, progress: StageProgress) -> bool:
        current: str | None = url
        page = 0
        while current and page < SCAN_MAX_PAGES_PER_LINK:
            if self._soft_stop(ctx, "scan"):
                return False
            try:
                response = await self.sessions.fetch_page(ctx, current)
            except (HardLimitExceeded, SessionExpiredError):
                raise
            except Exception as exc:
                log_event(logger=ctx.logger, phase="scan", status="warn", message="Scan page failed", url=current, error=str(exc))
                return True
            self._add_pending(orders, extract_ids(response.text), progress)
            if page == 0:
                for frame_url in extract_frame_sources(response.text, current):
                    if self._soft_stop(ctx, "scan"):
                        return False
                    try:
                        frame = await self.sessions.fetch_page(ctx, frame_url)
                    except (HardLimitExceeded, SessionExpiredError):
                        raise
                    except Exception as exc:
                        log_event(logger=ctx.logger, phase="scan", status="warn", message="Frame fetch failed", url=frame_url, error=str(exc))
                        continue
                    self._add_pending(orders, extract_ids(frame.text), progress)
            next_url = extract_next_link(response.text, current)
            if not next_url or next_url == current:
                break
            current = next_url
            page += 1
            await ctx.pause(self.delays.scan)
        return True

    # -- Stage 2/3: discovery --------------------------------------------------

    async def _probe(self, ctx: SyncContext, orders: OrderMap, order_id: str, phase: str, progress: StageProgress) -> bool:
        if order_id in orders:
            return True
        progress.probes += 1
        try:
            response = await self.sessions.fetch_page(ctx, ctx.urls.order(order_id))
            parsed = parse_order_page(response.text, order_id)
        except (HardLimitExceeded, SessionExpiredError):
            raise
        except Exception as exc:
            log_event(logger=ctx.logger, phase=phase, status="warn", message="Probe failed", order_id=order_id, error=str(exc))
            return False
        if not response.ok or not parsed.address:
            return False
        now = ctx.now()
        merge_parsed_order(orders, parsed, now)
        await self.archive.put(ctx.user_id, parsed, now)
        progress.dirty = True
        progress.found.append(order_id)
        log_event(logger=ctx.logger, phase=phase, message="Discovered unlisted order", order_id=order_id)
        return True

    async def gap_fill(self, ctx: SyncContext, orders: OrderMap) -> StageOutcome:
        async def body(progress: StageProgress) -> bool:
            known = _numeric_ids(orders)
            for current, following in zip(known, known[1:]):
                gap = following - current
                if not 1 < gap < DISCOVERY_GAP_MAX_SIZE:
                    continue
                for candidate in range(current + 1, following):
                    if str(candidate) in orders:
                        continue
                    if self._soft_stop(ctx, "gap_fill"):
                        return False
                    await self._probe(ctx, orders, str(candidate), "gap_fill", progress)
                    await ctx.pause(self.delays.gap_fill)
            return True

        return await self._run_stage(ctx, orders, "gap_fill", body)

    async def backward_discovery(self, ctx: SyncContext, orders: OrderMap) -> StageOutcome:
        async def body(progress: StageProgress) -> bool:
            known = _numeric_ids(orders)
            if not known:
                return True
            candidate = known[0] - 1
            failures = 0
            checks = 0
            while failures < DISCOVERY_MAX_FAILURES and checks < DISCOVERY_MAX_CHECKS and candidate > 0:
                if self._soft_stop(ctx, "backward"):
                    return False
                found = await self._probe(ctx, orders, str(candidate), "backward", progress)
                failures = 0 if found else failures + 1
                candidate -= 1
                checks += 1
                await ctx.pause(self.delays.backward)
            log_event(logger=ctx.logger, phase="backward", message="Backward scan finished", checks=checks, misses=failures)
            return True

        return await self._run_stage(ctx, orders, "backward", body)

    # -- Stage 4: detail download ----------------------------------------------

    async def download(self, ctx: SyncContext, orders: OrderMap, *, recent_only: bool = False) -> StageOutcome:
        async def body(progress: StageProgress) -> bool:
            targets = orders_needing_download(orders, recent_only=recent_only, today=ctx.portal_today())
            log_event(logger=ctx.logger, phase="download", message="Downloading order details", targets=len(targets))
            for order_id in targets:
                if self._soft_stop(ctx, "download"):
                    return False
                try:
                    response = await self.sessions.fetch_page(ctx, ctx.urls.order(order_id))
                    if not response.ok:
                        raise RuntimeError(f"HTTP {response.status}")
                    parsed = parse_order_page(response.text, order_id)
                except (HardLimitExceeded, SessionExpiredError):
                    raise
                except Exception as exc:
                    log_event(
                        logger=ctx.logger,
                        phase="download",
                        status="warn",
                        message="Order download failed; keeping previous state",
                        order_id=order_id,
                        error=str(exc),
                    )
                    await ctx.pause(self.delays.download)
                    continue
                now = ctx.now()
                result = merge_parsed_order(orders, parsed, now)
                progress.dirty = True
                if result.stored:
                    await self.archive.put(ctx.user_id, orders[order_id], now)
                    progress.found.append(order_id)
                    if result.payment_update:
                        progress.payment_updates.append(order_id)
                        log_event(logger=ctx.logger, phase="download", message="Order moved to complete; earnings will be recalculated", order_id=order_id)
                else:
                    log_event(logger=ctx.logger, phase="download", status="warn", message="Order page had no address", order_id=order_id)
                await ctx.pause(self.delays.download)
            return True

        return await self._run_stage(ctx, orders, "download", body)
