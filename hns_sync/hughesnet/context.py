from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable
from urllib.parse import urljoin
from zoneinfo import ZoneInfo

from hns_sync.common.json_logger import JsonLogger

from .constants import HOME_PATH, LOGIN_PATH, MANUAL_SEARCH_PATH, ORDER_PATH_TEMPLATE
from .dates import utc_now
from .fetcher import Fetcher, RequestBudget


@dataclass(frozen=True)
class PortalUrls:
    base_url: str

    @property
    def home(self) -> str:
        return self.base_url + HOME_PATH

    @property
    def login(self) -> str:
        return self.base_url + LOGIN_PATH

    @property
    def manual_search(self) -> str:
        return self.base_url + MANUAL_SEARCH_PATH

    def order(self, order_id: str | int) -> str:
        return self.base_url + ORDER_PATH_TEMPLATE.format(order_id=order_id)

    def absolute(self, href: str, *, relative_to: str | None = None) -> str:
        return urljoin(relative_to or self.base_url + "/", href)


@dataclass
class SyncContext:
    """State owned by a single sync invocation.

    Session timers and the request budget live here so concurrent syncs for
    different users never share them.
    """

    user_id: str
    fetcher: Fetcher
    logger: JsonLogger
    urls: PortalUrls
    portal_timezone: ZoneInfo
    clock: Callable[[], datetime] = utc_now
    delays_enabled: bool = True
    cookie: str | None = None
    session_verified_at: datetime | None = None
    session_request_mark: int = 0

    @property
    def budget(self) -> RequestBudget:
        return self.fetcher.budget

    def now(self) -> datetime:
        return self.clock()

    def portal_today(self) -> date:
        return self.clock().astimezone(self.portal_timezone).date()

    def mark_session_verified(self, cookie: str) -> None:
        self.cookie = cookie
        self.session_verified_at = self.clock()
        self.session_request_mark = self.budget.count

    async def pause(self, seconds: float) -> None:
        if self.delays_enabled and seconds > 0:
            await asyncio.sleep(seconds)
