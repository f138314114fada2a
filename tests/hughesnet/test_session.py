import pytest

from hns_sync.common.kv_store import MemoryKeyValueStore
from hns_sync.crypto import encrypt_credentials
from hns_sync.hughesnet.constants import credentials_key, db_key, session_key
from hns_sync.hughesnet.errors import SessionExpiredError
from hns_sync.hughesnet.session import SessionManager, combine_set_cookie

from portal_fakes import BASE_URL, COOKIE, FakePortal, make_context

SECRET = "unit-test-secret"


async def _store_credentials(store, user_id="u1"):
    await store.put(
        credentials_key(user_id),
        encrypt_credentials(
            SECRET,
            username="tech",
            password="hunter2",
            login_url=BASE_URL + "/start/login.jsp?UsrAction=submit",
            created_at="2026-10-01T00:00:00+00:00",
        ),
    )


def test_combine_set_cookie_joins_pairs_and_drops_attributes():
    header = "JSESSIONID=abc; Path=/; HttpOnly, lang=en; Expires=Wed, 21 Oct 2026 07:28:00 GMT, BIGip=1"
    assert combine_set_cookie(header) == "JSESSIONID=abc; lang=en; BIGip=1"
    assert combine_set_cookie(None) is None
    assert combine_set_cookie("") is None


@pytest.mark.asyncio
async def test_connect_stores_encrypted_credentials_and_session():
    store = MemoryKeyValueStore()
    portal = FakePortal()
    sessions = SessionManager(store, secret_key=SECRET)
    ctx = make_context(portal)

    assert await sessions.connect(ctx, "tech", "hunter2") is True

    encrypted = await store.get(credentials_key("u1"))
    assert encrypted and "hunter2" not in encrypted
    assert await store.get(session_key("u1")) == COOKIE
    assert ctx.cookie == COOKIE


@pytest.mark.asyncio
async def test_connect_reports_failure_when_portal_rejects_login():
    store = MemoryKeyValueStore()
    portal = FakePortal()
    portal.accept_login = False
    sessions = SessionManager(store, secret_key=SECRET)

    assert await sessions.connect(make_context(portal), "tech", "wrong") is False
    assert await store.get(session_key("u1")) is None


@pytest.mark.asyncio
async def test_login_follows_single_redirect_for_cookie():
    store = MemoryKeyValueStore()
    portal = FakePortal()
    portal.redirect_only_login = True
    sessions = SessionManager(store, secret_key=SECRET)

    cookie = await sessions.login(make_context(portal), "tech", "hunter2")

    assert cookie == f"{COOKIE}; lang=en"
    assert [method for method, _ in portal.requests] == ["POST", "GET"]
    assert portal.requests[1][1] == BASE_URL + "/start/Home.jsp?after_login=1"


@pytest.mark.asyncio
async def test_ensure_session_cookie_prefers_cache_then_logs_in():
    store = MemoryKeyValueStore()
    portal = FakePortal()
    sessions = SessionManager(store, secret_key=SECRET)
    await _store_credentials(store)

    ctx = make_context(portal)
    assert await sessions.ensure_session_cookie(ctx) == COOKIE
    assert portal.logins == 1

    second = make_context(portal)
    assert await sessions.ensure_session_cookie(second) == COOKIE
    assert portal.logins == 1
    assert second.session_verified_at is not None


@pytest.mark.asyncio
async def test_ensure_session_cookie_without_credentials_returns_none():
    sessions = SessionManager(MemoryKeyValueStore(), secret_key=SECRET)
    assert await sessions.ensure_session_cookie(make_context(FakePortal())) is None


@pytest.mark.asyncio
async def test_tampered_credentials_are_treated_as_missing():
    store = MemoryKeyValueStore()
    await store.put(credentials_key("u1"), "not-a-valid-token")
    sessions = SessionManager(store, secret_key=SECRET)

    assert await sessions.ensure_session_cookie(make_context(FakePortal())) is None


@pytest.mark.asyncio
async def test_should_refresh_after_request_threshold_or_age():
    portal = FakePortal()
    sessions = SessionManager(MemoryKeyValueStore(), secret_key=SECRET)
    ctx = make_context(portal)
    assert sessions.should_refresh(ctx) is True

    ctx.mark_session_verified(COOKIE)
    assert sessions.should_refresh(ctx) is False

    portal.budget.count += 20
    assert sessions.should_refresh(ctx) is True

    ctx.mark_session_verified(COOKIE)
    ctx.clock.advance(minutes=10)
    assert sessions.should_refresh(ctx) is True


@pytest.mark.asyncio
async def test_fetch_page_recovers_from_login_page_with_one_refresh():
    store = MemoryKeyValueStore()
    portal = FakePortal()
    sessions = SessionManager(store, secret_key=SECRET)
    await _store_credentials(store)
    await store.put(session_key("u1"), "JSESSIONID=stale")
    ctx = make_context(portal)
    await sessions.ensure_session_cookie(ctx)
    portal.pages[BASE_URL + "/forms/list.jsp"] = "<html>orders</html>"

    response = await sessions.fetch_page(ctx, BASE_URL + "/forms/list.jsp")

    assert response.text == "<html>orders</html>"
    assert portal.logins == 1
    assert ctx.cookie == COOKIE
    assert await store.get(session_key("u1")) == COOKIE


@pytest.mark.asyncio
async def test_fetch_page_raises_when_session_cannot_be_restored():
    store = MemoryKeyValueStore()
    portal = FakePortal()
    portal.reject_all_cookies = True
    sessions = SessionManager(store, secret_key=SECRET)
    await _store_credentials(store)
    await store.put(session_key("u1"), COOKIE)
    ctx = make_context(portal)
    await sessions.ensure_session_cookie(ctx)

    with pytest.raises(SessionExpiredError, match="Please reconnect"):
        await sessions.fetch_page(ctx, BASE_URL + "/forms/list.jsp")


@pytest.mark.asyncio
async def test_failed_proactive_refresh_keeps_current_cookie():
    store = MemoryKeyValueStore()
    portal = FakePortal()
    sessions = SessionManager(store, secret_key=SECRET)
    ctx = make_context(portal)
    ctx.mark_session_verified(COOKIE)
    ctx.clock.advance(minutes=11)
    portal.pages[BASE_URL + "/forms/list.jsp"] = "<html>orders</html>"

    response = await sessions.fetch_page(ctx, BASE_URL + "/forms/list.jsp")

    assert response.text == "<html>orders</html>"
    assert ctx.cookie == COOKIE


@pytest.mark.asyncio
async def test_failed_proactive_refresh_logs_in_once_per_window():
    store = MemoryKeyValueStore()
    portal = FakePortal()
    portal.accept_login = False
    sessions = SessionManager(store, secret_key=SECRET)
    await _store_credentials(store)
    await store.put(session_key("u1"), COOKIE)
    ctx = make_context(portal)
    await sessions.ensure_session_cookie(ctx)
    ctx.clock.advance(minutes=11)
    portal.pages[BASE_URL + "/forms/list.jsp"] = "<html>orders</html>"

    for _ in range(5):
        await sessions.fetch_page(ctx, BASE_URL + "/forms/list.jsp")

    assert portal.logins == 1
    assert len(portal.requests) == 6
    assert await store.get(session_key("u1")) == COOKIE

    ctx.clock.advance(minutes=11)
    await sessions.fetch_page(ctx, BASE_URL + "/forms/list.jsp")
    assert portal.logins == 2


@pytest.mark.asyncio
async def test_disconnect_removes_session_credentials_and_orders():
    store = MemoryKeyValueStore()
    await _store_credentials(store)
    await store.put(session_key("u1"), COOKIE)
    await store.put(db_key("u1"), "{}")
    sessions = SessionManager(store, secret_key=SECRET)

    await sessions.disconnect("u1")

    assert store.snapshot() == {}
