from __future__ import annotations

import json
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Protocol

from playwright.async_api import APIRequestContext, async_playwright

from hns_sync.common.json_logger import JsonLogger, log_event

from .constants import USER_AGENTS
from .errors import HardLimitExceeded

DEFAULT_TIMEOUT_MS = 30_000


class RequestBudget:
    """Per-invocation request counter with a soft and a hard ceiling.

    ``soft_exhausted`` tells a stage to stop scheduling work; ``charge`` raises
    :class:`HardLimitExceeded` once ``hard_limit`` requests were issued.
    """

    def __init__(self, *, soft_limit: int, hard_limit: int) -> None:
        if soft_limit > hard_limit:
            raise ValueError("soft_limit cannot exceed hard_limit")
        self.soft_limit = soft_limit
        self.hard_limit = hard_limit
        self.count = 0

    @property
    def soft_exhausted(self) -> bool:
        return self.count >= self.soft_limit

    @property
    def remaining(self) -> int:
        return max(0, self.hard_limit - self.count)

    def charge(self) -> None:
        if self.count >= self.hard_limit:
            raise HardLimitExceeded(self.count, self.hard_limit)
        self.count += 1


@dataclass
class FetchResponse:
    status: int
    url: str
    text: str
    headers: Dict[str, str] = field(default_factory=dict)
    set_cookies: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_redirect(self) -> bool:
        return self.status in (301, 302, 303, 307, 308)

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    @property
    def set_cookie_header(self) -> str | None:
        """All ``Set-Cookie`` values comma-joined, the way a fetch API exposes them."""

        if self.set_cookies:
            return ", ".join(self.set_cookies)
        return self.header("set-cookie")

    def json(self) -> Any:
        return json.loads(self.text)


class Fetcher(Protocol):
    budget: RequestBudget

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        body: str | Mapping[str, str] | None = None,
        follow_redirects: bool = True,
        budgeted: bool = True,
    ) -> FetchResponse: ...


class PortalFetcher:
    """HTTP transport over a Playwright ``APIRequestContext`` (no browser)."""

    def __init__(
        self,
        request_context: APIRequestContext,
        *,
        budget: RequestBudget,
        user_agent: str | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self._request = request_context
        self.budget = budget
        self.user_agent = user_agent or random.choice(USER_AGENTS)
        self.timeout_ms = timeout_ms

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
        request_headers = {"User-Agent": self.user_agent, **(headers or {})}
        kwargs: Dict[str, Any] = {
            "method": method,
            "headers": request_headers,
            "timeout": self.timeout_ms,
            "fail_on_status_code": False,
        }
        if body is not None:
            if isinstance(body, Mapping):
                kwargs["form"] = dict(body)
            else:
                kwargs["data"] = body
        if not follow_redirects:
            kwargs["max_redirects"] = 0
        response = await self._request.fetch(url, **kwargs)
        try:
            text = await response.text()
            set_cookies = [
                entry["value"] for entry in response.headers_array if entry["name"].lower() == "set-cookie"
            ]
            return FetchResponse(
                status=response.status,
                url=response.url,
                text=text,
                headers={name.lower(): value for name, value in response.headers.items()},
                set_cookies=set_cookies,
            )
        finally:
            await response.dispose()


@asynccontextmanager
async def open_portal_fetcher(
    *,
    budget: RequestBudget,
    logger: JsonLogger,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> AsyncIterator[PortalFetcher]:
    user_agent = random.choice(USER_AGENTS)
    async with async_playwright() as playwright:
        request_context = await playwright.request.new_context(user_agent=user_agent)
        log_event(
            logger=logger,
            phase="session",
            message="Opened portal request context",
            transport="api_request_context",
            soft_limit=budget.soft_limit,
            hard_limit=budget.hard_limit,
        )
        try:
            yield PortalFetcher(request_context, budget=budget, user_agent=user_agent, timeout_ms=timeout_ms)
        finally:
            await request_context.dispose()
