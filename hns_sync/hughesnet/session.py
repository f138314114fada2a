from __future__ import annotations

import re

from hns_sync.common.json_logger import log_event
from hns_sync.common.kv_store import KeyValueStore
from hns_sync.crypto import decrypt_credentials, encrypt_credentials

from .constants import (
    LOGIN_FORM_DEFAULTS,
    SESSION_REFRESH_AFTER_REQUESTS,
    SESSION_REFRESH_AFTER_SECONDS,
    SESSION_TTL_SECONDS,
    credentials_key,
    db_key,
    session_key,
)
from .context import SyncContext
from .errors import SessionExpiredError
from .fetcher import FetchResponse
from .parser import is_login_page

_COOKIE_SPLIT_RE = re.compile(r",(?=[^;]+=)")


def combine_set_cookie(header: str | None) -> str | None:
    """Collapse a (possibly comma-joined) ``Set-Cookie`` value into a ``Cookie`` header."""

    if not header:
        return None
    pairs = [part.split(";", 1)[0].strip() for part in _COOKIE_SPLIT_RE.split(header)]
    # Commas inside Expires dates also split; those fragments carry no "=".
    cookie = "; ".join(pair for pair in pairs if "=" in pair)
    return cookie or None


class SessionManager:
    def __init__(self, store: KeyValueStore, *, secret_key: str) -> None:
        self.store = store
        self.secret_key = secret_key

    async def _load_credentials(self, ctx: SyncContext) -> dict[str, str] | None:
        encrypted = await self.store.get(credentials_key(ctx.user_id))
        if not encrypted:
            return None
        try:
            return decrypt_credentials(self.secret_key, encrypted)
        except ValueError as exc:
            log_event(
                logger=ctx.logger,
                phase="session",
                status="error",
                message="Stored credentials could not be decrypted",
                error=str(exc),
            )
            return None

    async def login(self, ctx: SyncContext, username: str, password: str) -> str | None:
        form = {"User": username, "Password": password, **LOGIN_FORM_DEFAULTS}
        response = await ctx.fetcher.fetch(
            ctx.urls.login,
            method="POST",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            body=form,
            follow_redirects=False,
        )
        cookie = combine_set_cookie(response.set_cookie_header)
        if not cookie and response.status == 302:
            location = response.header("location")
            next_url = ctx.urls.absolute(location) if location else ctx.urls.home
            followed = await ctx.fetcher.fetch(
                next_url,
                headers={"Referer": ctx.urls.login},
                follow_redirects=False,
            )
            cookie = combine_set_cookie(followed.set_cookie_header)
        if cookie:
            await self.store.put(session_key(ctx.user_id), cookie, ttl_seconds=SESSION_TTL_SECONDS)
            log_event(logger=ctx.logger, phase="session", message="Portal login succeeded", status_code=response.status)
        else:
            log_event(
                logger=ctx.logger,
                phase="session",
                status="warn",
                message="Portal login returned no session cookie",
                status_code=response.status,
            )
        return cookie

    async def verify(self, ctx: SyncContext, cookie: str) -> bool:
        response = await ctx.fetcher.fetch(ctx.urls.home, headers={"Cookie": cookie})
        return response.ok and not is_login_page(response.text)

    async def ensure_session_cookie(self, ctx: SyncContext) -> str | None:
        cached = await self.store.get(session_key(ctx.user_id))
        if cached:
            ctx.mark_session_verified(cached)
            return cached
        credentials = await self._load_credentials(ctx)
        if credentials is None:
            log_event(logger=ctx.logger, phase="session", status="warn", message="No stored credentials for user")
            return None
        cookie = await self.login(ctx, credentials["username"], credentials["password"])
        if cookie:
            ctx.mark_session_verified(cookie)
        return cookie

    def should_refresh(self, ctx: SyncContext) -> bool:
        if ctx.session_verified_at is None:
            return True
        elapsed = (ctx.now() - ctx.session_verified_at).total_seconds()
        requests_since = ctx.budget.count - ctx.session_request_mark
        return elapsed >= SESSION_REFRESH_AFTER_SECONDS or requests_since >= SESSION_REFRESH_AFTER_REQUESTS

    async def refresh_if_needed(self, ctx: SyncContext, *, force: bool = False) -> str:
        """Return a verified cookie, logging in again when due or forced.

        Raises :class:`SessionExpiredError` when a fresh login cannot be
        established or verified.
        """

        if ctx.cookie and not force and not self.should_refresh(ctx):
            return ctx.cookie
        credentials = await self._load_credentials(ctx)
        if credentials is None:
            raise SessionExpiredError()
        cookie = await self.login(ctx, credentials["username"], credentials["password"])
        if not cookie:
            raise SessionExpiredError()
        if not await self.verify(ctx, cookie):
            await self.store.delete(session_key(ctx.user_id))
            raise SessionExpiredError()
        ctx.mark_session_verified(cookie)
        log_event(logger=ctx.logger, phase="session", message="Session refreshed", forced=force)
        return cookie

    async def proactive_refresh(self, ctx: SyncContext) -> None:
        if not self.should_refresh(ctx):
            return
        try:
            await self.refresh_if_needed(ctx, force=True)
        except SessionExpiredError as exc:
            # One attempt per refresh window.
            ctx.mark_session_verified(ctx.cookie or "")
            log_event(
                logger=ctx.logger,
                phase="session",
                status="warn",
                message="Proactive refresh failed; continuing with current cookie",
                error=str(exc),
            )

    async def fetch_page(self, ctx: SyncContext, url: str) -> FetchResponse:
        """GET an authenticated page, retrying once through a forced refresh on a login page."""

        await self.proactive_refresh(ctx)
        response = await ctx.fetcher.fetch(url, headers={"Cookie": ctx.cookie or ""})
        if not is_login_page(response.text):
            return response
        log_event(logger=ctx.logger, phase="session", status="warn", message="Login page returned mid-crawl", url=url)
        cookie = await self.refresh_if_needed(ctx, force=True)
        response = await ctx.fetcher.fetch(url, headers={"Cookie": cookie})
        if is_login_page(response.text):
            raise SessionExpiredError()
        return response

    async def connect(self, ctx: SyncContext, username: str, password: str) -> bool:
        encrypted = encrypt_credentials(
            self.secret_key,
            username=username,
            password=password,
            login_url=ctx.urls.login,
            created_at=ctx.now().isoformat(),
        )
        await self.store.put(credentials_key(ctx.user_id), encrypted)
        cookie = await self.login(ctx, username, password)
        if not cookie:
            return False
        if not await self.verify(ctx, cookie):
            log_event(logger=ctx.logger, phase="session", status="warn", message="Session did not verify after login")
            return False
        ctx.mark_session_verified(cookie)
        return True

    async def disconnect(self, user_id: str) -> None:
        for key in (session_key(user_id), credentials_key(user_id), db_key(user_id)):
            await self.store.delete(key)
