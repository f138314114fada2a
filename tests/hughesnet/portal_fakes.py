"""Scripted portal and clock used across the sync engine tests."""
from __future__ import annotations

import io
import json
import re
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Mapping, Tuple
from urllib.parse import parse_qs, urlparse
from zoneinfo import ZoneInfo

from hns_sync.common.json_logger import JsonLogger
from hns_sync.hughesnet.context import PortalUrls, SyncContext
from hns_sync.hughesnet.fetcher import FetchResponse, RequestBudget

BASE_URL = "https://portal.test"
COOKIE = "JSESSIONID=abc123"
NOW = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)

LOGIN_HTML = (
    '<html><body><form action="/start/login.jsp?UsrAction=submit" method="post">'
    '<input name="User"><input type="password" name="Password"></form></body></html>'
)
MISSING_ORDER_HTML = "<html><body><p>No service order found.</p></body></html>"

_ORDER_ID_RE = re.compile(r"viewservice\.jsp\?.*\bid=(\d+)")


def quiet_logger(run_id: str = "test-run") -> JsonLogger:
    return JsonLogger(run_id=run_id, stream=io.StringIO(), log_file_path=None)


def logged_events(logger: JsonLogger) -> List[Dict[str, object]]:
    return [json.loads(line) for line in logger.stream.getvalue().splitlines() if line.strip()]


async def no_sleep(_seconds: float) -> None:
    return None


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def home_page(order_ids: List[str], *, menu: Mapping[str, str] | None = None) -> str:
    links = "".join(
        f'<a href="/forms/viewservice.jsp?snb=SO_EST_SCHD&amp;id={order_id}">SO {order_id}</a>' for order_id in order_ids
    )
    menu_links = "".join(f'<a href="{href}">{text}</a>' for href, text in (menu or {}).items())
    return f"<html><body><div id='menu'>{menu_links}</div><div id='orders'>{links}</div></body></html>"


def order_page(
    *,
    address: str = "123 Main St",
    city: str = "Springfield",
    state: str = "IL",
    zip_code: str = "62701",
    scheduled: str = "10/16/2026",
    begin_time: str = "09:00 AM",
    job_type: str = "Install",
    arrival: str | None = None,
    complete: str | None = None,
    incomplete: str | None = None,
    extra: str = "",
) -> str:
    events = []
    for label, value in (
        ("Arrival On Site", arrival),
        ("Departure Complete", complete),
        ("Departure Incomplete", incomplete),
    ):
        if value:
            events.append(f'<tr><td class="SearchUtilData">{label} {value}</td></tr>')
    return (
        "<html><body>"
        f'<input name="FLD_SO_Address1" value="{address}">'
        f'<input name="f_city" value="{city}">'
        f'<input name="f_state" value="{state}">'
        f'<input name="f_zip" value="{zip_code}">'
        f'<input name="f_sched_date" value="{scheduled}">'
        f'<input name="f_begin_time" value="{begin_time}">'
        f"<div>Order Type: {job_type}</div>"
        f"<table>{''.join(events)}</table>"
        f"{extra}"
        "</body></html>"
    )


class FakePortal:
    """Fetcher double that behaves like the portal plus the public geo services.

    Requests are charged to ``budget`` exactly like ``PortalFetcher``. Portal
    pages require the current ``session_cookie``; anything else gets the login
    form back.
    """

    def __init__(self, *, soft_limit: int = 1000, hard_limit: int = 2000) -> None:
        self.budget = RequestBudget(soft_limit=soft_limit, hard_limit=hard_limit)
        self.urls = PortalUrls(BASE_URL)
        self.pages: Dict[str, str] = {self.urls.home: home_page([])}
        self.orders: Dict[str, str] = {}
        self.failing_orders: set[str] = set()
        self.requests: List[Tuple[str, str]] = []
        self.session_cookie = COOKIE
        self.accept_login = True
        self.redirect_only_login = False
        self.reject_all_cookies = False
        self.routing = False
        self.leg_meters = 16093.4
        self.leg_seconds = 1800.0
        self.logins = 0

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        body: str | Mapping[str, str] | None = None,
        follow_redirects: bool = True,
        budgeted: bool = True,
    ) -> FetchResponse:
        if budgeted:
            self.budget.charge()
        self.requests.append((method, url))
        if not url.startswith(BASE_URL):
            return self._external(url)
        if url == self.urls.login and method == "POST":
            return self._login(url, body)
        if "after_login=1" in url:
            return FetchResponse(
                status=200,
                url=url,
                text=self.pages[self.urls.home],
                set_cookies=[f"{self.session_cookie}; Path=/", "lang=en; Path=/"],
            )
        cookie = (headers or {}).get("Cookie", "")
        if self.reject_all_cookies or self.session_cookie not in cookie:
            return FetchResponse(status=200, url=url, text=LOGIN_HTML)
        if url in self.pages:
            return FetchResponse(status=200, url=url, text=self.pages[url])
        match = _ORDER_ID_RE.search(url)
        if match:
            order_id = match.group(1)
            if order_id in self.failing_orders:
                raise RuntimeError("connection reset by peer")
            return FetchResponse(status=200, url=url, text=self.orders.get(order_id, MISSING_ORDER_HTML))
        return FetchResponse(status=404, url=url, text="")

    def _login(self, url: str, body: str | Mapping[str, str] | None) -> FetchResponse:
        self.logins += 1
        form = dict(body) if isinstance(body, Mapping) else {}
        if not self.accept_login or not form.get("Password"):
            return FetchResponse(status=200, url=url, text=LOGIN_HTML)
        if self.redirect_only_login:
            return FetchResponse(status=302, url=url, text="", headers={"location": "/start/Home.jsp?after_login=1"})
        return FetchResponse(
            status=302,
            url=url,
            text="",
            headers={"location": "/start/Home.jsp"},
            set_cookies=[f"{self.session_cookie}; Path=/; HttpOnly"],
        )

    def _external(self, url: str) -> FetchResponse:
        if not self.routing:
            return FetchResponse(status=404, url=url, text="")
        parsed = urlparse(url)
        if "nominatim" in parsed.netloc:
            query = parse_qs(parsed.query).get("q", [""])[0]
            payload = [{"lat": "39.78", "lon": "-89.65", "display_name": query}]
            return FetchResponse(status=200, url=url, text=json.dumps(payload))
        if "osrm" in parsed.netloc:
            payload = {"routes": [{"distance": self.leg_meters, "duration": self.leg_seconds}]}
            return FetchResponse(status=200, url=url, text=json.dumps(payload))
        return FetchResponse(status=404, url=url, text="")

    def order_requests(self) -> List[str]:
        found: List[str] = []
        for _method, url in self.requests:
            match = _ORDER_ID_RE.search(url)
            if match:
                found.append(match.group(1))
        return found


def make_context(portal: FakePortal, *, user_id: str = "u1", clock: FixedClock | None = None, logger: JsonLogger | None = None) -> SyncContext:
    return SyncContext(
        user_id=user_id,
        fetcher=portal,
        logger=logger or quiet_logger(),
        urls=portal.urls,
        portal_timezone=ZoneInfo("America/New_York"),
        clock=clock or FixedClock(),
        delays_enabled=False,
    )
