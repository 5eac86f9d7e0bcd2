"""Tests for the page controller (attach) and PageHandle."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tests.conftest import FakePage, make_session, new_page
from veil._controller import PageHandle, attach
from veil._cursor import HumanCursor
from veil._patches import DIALOG_PATCH, EARLY_SCRIPT, NAVIGATION_BUNDLE

INTERVAL = 0.01


@pytest.fixture(autouse=True)
def no_real_kill():
    with patch("veil._supervisor.kill_process_tree") as tree:
        yield tree


async def stop_pollers(session):
    for handle in list(session.pages):
        handle.stop_solving()
        if handle.poller is not None:
            await handle.poller.task


# ---------------------------------------------------------------------------
# Patch installation
# ---------------------------------------------------------------------------


class TestPatchSteps:
    @pytest.mark.asyncio
    async def test_all_steps_once(self):
        session = make_session()
        page = new_page(session)
        handle = await attach(page, session)

        assert page.cdp.methods() == [
            "Page.enable",
            "Page.addScriptToEvaluateOnNewDocument",
        ]
        assert page.cdp.sent[1][1] == {"source": EARLY_SCRIPT}
        assert page.init_scripts == [NAVIGATION_BUNDLE]
        assert page.evaluated == [DIALOG_PATCH]
        assert isinstance(handle.cursor, HumanCursor)
        assert handle.real_click == handle.cursor.click

    @pytest.mark.asyncio
    async def test_cdp_patch_before_navigation_bundle(self):
        session = make_session()
        page = new_page(session)
        await attach(page, session)

        kinds = [entry[1] if entry[0] == "cdp" else entry[0] for entry in page.log]
        assert kinds == [
            "Page.enable",
            "Page.addScriptToEvaluateOnNewDocument",
            "init_script",
            "evaluate",
        ]

    @pytest.mark.asyncio
    async def test_current_document_failure_swallowed(self):
        session = make_session()
        page = new_page(session)
        page.evaluate_error = RuntimeError("Cannot evaluate on chrome:// page")
        handle = await attach(page, session)
        assert page.init_scripts == [NAVIGATION_BUNDLE]
        assert handle.cursor is not None

    @pytest.mark.asyncio
    async def test_cdp_failure_still_registers_bundle(self):
        session = make_session()
        page = new_page(session)
        session.context.new_cdp_session = AsyncMock(
            side_effect=RuntimeError("target closed")
        )
        handle = await attach(page, session)
        assert handle.cdp is None
        assert page.init_scripts == [NAVIGATION_BUNDLE]
        assert page.evaluated == [DIALOG_PATCH]

    @pytest.mark.asyncio
    async def test_closed_page_skipped(self):
        session = make_session()
        page = new_page(session)
        page._closed = True
        handle = await attach(page, session)
        assert handle.cursor is None
        assert page.init_scripts == []
        assert session.pages == []


# ---------------------------------------------------------------------------
# Proxy auth and plugins
# ---------------------------------------------------------------------------


class TestProxyAuth:
    @pytest.mark.asyncio
    async def test_no_credentials_no_fetch(self):
        session = make_session(proxy={"host": "127.0.0.1", "port": 8080})
        page = new_page(session)
        await attach(page, session)
        assert "Fetch.enable" not in page.cdp.methods()

    @pytest.mark.asyncio
    async def test_credentials_before_patches(self):
        session = make_session(
            proxy={"host": "h", "port": 1, "username": "u", "password": "p"}
        )
        page = new_page(session)
        await attach(page, session)
        methods = page.cdp.methods()
        assert methods[0] == "Fetch.enable"
        assert page.cdp.sent[0][1]["handleAuthRequests"] is True
        assert methods.index("Fetch.enable") < methods.index("Page.enable")

    @pytest.mark.asyncio
    async def test_answers_auth_challenge(self):
        session = make_session(
            proxy={"host": "h", "port": 1, "username": "u", "password": "p"}
        )
        page = new_page(session)
        await attach(page, session)

        await page.cdp.emit("Fetch.authRequired", {"requestId": "r1"})
        await page.cdp.emit("Fetch.requestPaused", {"requestId": "r2"})

        method, params = page.cdp.sent[-2]
        assert method == "Fetch.continueWithAuth"
        assert params == {
            "requestId": "r1",
            "authChallengeResponse": {
                "response": "ProvideCredentials",
                "username": "u",
                "password": "p",
            },
        }
        assert page.cdp.sent[-1] == ("Fetch.continueRequest", {"requestId": "r2"})


class TestPlugins:
    @pytest.mark.asyncio
    async def test_called_in_order_with_handle(self):
        calls = []

        class Recorder:
            def __init__(self, name):
                self.name = name

            def on_page_created(self, page):
                calls.append((self.name, page))

        session = make_session(plugins=[Recorder("a"), Recorder("b")])
        page = new_page(session)
        handle = await attach(page, session)
        assert calls == [("a", handle), ("b", handle)]

    @pytest.mark.asyncio
    async def test_failing_plugin_does_not_stop_attach(self):
        bad = MagicMock()
        bad.on_page_created.side_effect = ValueError("boom")
        good = MagicMock()
        session = make_session(plugins=[bad, good])
        page = new_page(session)
        await attach(page, session)
        good.on_page_created.assert_called_once()
        assert page.init_scripts == [NAVIGATION_BUNDLE]


# ---------------------------------------------------------------------------
# Session-level listeners
# ---------------------------------------------------------------------------


class TestSessionListeners:
    @pytest.mark.asyncio
    async def test_installed_once(self):
        session = make_session()
        await attach(new_page(session), session, kill_process=True)
        await attach(new_page(session), session)
        await attach(new_page(session), session)
        assert session.browser.listener_count("disconnected") == 1
        assert session.context.listener_count("page") == 1

    @pytest.mark.asyncio
    async def test_popup_check_once_per_target(self):
        session = make_session()
        await attach(new_page(session), session, kill_process=True)
        await attach(new_page(session), session)

        first = await session.context.new_page("https://example.com/")
        second = await session.context.new_page("https://example.org/")
        assert first.opener_calls == 1
        assert second.opener_calls == 1

    @pytest.mark.asyncio
    async def test_blank_popup_with_opener_closed(self):
        session = make_session()
        opener = new_page(session)
        await attach(opener, session, kill_process=True)

        popup = await session.context.new_page("about:blank", opener=opener)
        assert popup.is_closed()
        assert session.popups_blocked == 1

    @pytest.mark.asyncio
    async def test_user_opened_page_kept(self):
        session = make_session()
        await attach(new_page(session), session, kill_process=True)

        page = await session.context.new_page("https://example.com/", opener=None)
        assert not page.is_closed()
        assert page.close_calls == 0
        assert session.popups_blocked == 0

    @pytest.mark.asyncio
    async def test_benign_popup_kept(self):
        session = make_session()
        opener = new_page(session)
        await attach(opener, session, kill_process=True)

        page = await session.context.new_page("https://example.com/help", opener=opener)
        assert not page.is_closed()

    @pytest.mark.asyncio
    async def test_popup_close_failure_swallowed(self):
        session = make_session()
        opener = new_page(session)
        await attach(opener, session, kill_process=True)

        popup = FakePage(session.context, url="https://x.test/track", opener=opener)
        popup.close_error = RuntimeError("already gone")
        await session.context.emit("page", popup)
        assert popup.close_calls == 1


# ---------------------------------------------------------------------------
# Challenge solving and teardown
# ---------------------------------------------------------------------------


class TestChallengeSolving:
    @pytest.mark.asyncio
    async def test_disabled_by_default(self):
        session = make_session()
        handle = await attach(new_page(session), session)
        assert handle.solving is False
        assert handle.poller is None

    @pytest.mark.asyncio
    async def test_poller_uses_resolver(self):
        resolver = AsyncMock()
        session = make_session(
            challenge_solving=True, resolver=resolver, poll_interval=INTERVAL
        )
        page = new_page(session)
        handle = await attach(page, session)
        await asyncio.sleep(INTERVAL / 2)
        resolver.assert_awaited_with(page)
        assert handle.poller.active
        await stop_pollers(session)

    @pytest.mark.asyncio
    async def test_close_stops_polling(self):
        resolver = AsyncMock()
        session = make_session(
            challenge_solving=True, resolver=resolver, poll_interval=INTERVAL
        )
        page = new_page(session)
        handle = await attach(page, session)
        await asyncio.sleep(INTERVAL * 2)

        await page.close()
        assert handle.solving is False
        calls = resolver.await_count
        await asyncio.sleep(INTERVAL * 2)
        assert resolver.await_count == calls
        assert handle.poller.task.done()
        assert handle not in session.pages

    @pytest.mark.asyncio
    async def test_disconnect_stops_every_page(self):
        session = make_session(
            challenge_solving=True, resolver=AsyncMock(), poll_interval=INTERVAL
        )
        first = await attach(new_page(session), session, kill_process=True)
        second = await attach(new_page(session), session)
        await session.browser.disconnect()
        assert first.solving is False
        assert second.solving is False
        await asyncio.sleep(INTERVAL * 2)
        assert first.poller.task.done()
        assert second.poller.task.done()


class TestDisconnectTeardown:
    @pytest.mark.asyncio
    async def test_owner_tears_down_once(self, no_real_kill):
        session = make_session()
        await attach(new_page(session), session, kill_process=True)
        await attach(new_page(session), session)

        await session.browser.disconnect()
        await session.browser.disconnect()

        assert session.launched.kill.call_count == 1
        assert session.display.stop.call_count == 1
        no_real_kill.assert_called_once_with(session.launched.pid)

    @pytest.mark.asyncio
    async def test_non_owner_never_kills(self, no_real_kill):
        session = make_session()
        await attach(new_page(session), session)
        await session.browser.disconnect()
        session.launched.kill.assert_not_called()
        session.display.stop.assert_not_called()
        no_real_kill.assert_not_called()

    @pytest.mark.asyncio
    async def test_kill_failure_not_raised(self):
        session = make_session()
        session.launched.kill.side_effect = ProcessLookupError()
        await attach(new_page(session), session, kill_process=True)
        await session.browser.disconnect()
        await session.browser.disconnect()
        session.display.stop.assert_called_once()


# ---------------------------------------------------------------------------
# PageHandle
# ---------------------------------------------------------------------------


class TestPageHandle:
    def test_forwards_page_attributes(self):
        page = FakePage(url="https://example.com/")
        handle = PageHandle(page)
        assert handle.url == "https://example.com/"
        assert handle.mouse is page.mouse

    def test_own_attributes_win(self):
        page = MagicMock()
        handle = PageHandle(page)
        assert handle.solving is False
        assert handle.page is page

    def test_missing_attribute(self):
        handle = PageHandle(FakePage())
        with pytest.raises(AttributeError):
            handle.no_such_thing

    @pytest.mark.asyncio
    async def test_forwarded_coroutine(self):
        page = FakePage()
        handle = PageHandle(page)
        await handle.goto("https://example.com/")
        assert page.url == "https://example.com/"

    def test_repr(self):
        handle = PageHandle(FakePage(url="https://a.test/"))
        assert "https://a.test/" in repr(handle)


# ---------------------------------------------------------------------------
# Ownership and per-context hooks
# ---------------------------------------------------------------------------


class TestClosedOwnerPage:
    @pytest.mark.asyncio
    async def test_closed_owner_still_arms(self, no_real_kill):
        session = make_session()
        page = new_page(session)
        page._closed = True
        await attach(page, session, kill_process=True)

        assert session.supervisor.armed
        assert session.browser.listener_count("disconnected") == 1
        await session.browser.disconnect()
        session.launched.kill.assert_called_once()
        session.launched.aclose.assert_awaited_once()
        session.display.stop.assert_called_once()
        no_real_kill.assert_called_once_with(session.launched.pid)

    @pytest.mark.asyncio
    async def test_closed_non_owner_does_not_arm(self):
        session = make_session()
        page = new_page(session)
        page._closed = True
        await attach(page, session)
        assert not session.supervisor.armed


class TestPerContextGuard:
    @pytest.mark.asyncio
    async def test_each_context_guarded_once(self):
        session = make_session()
        await attach(new_page(session), session, kill_process=True)
        other = await session.browser.new_context()
        second = FakePage(other)
        await attach(second, session)
        await attach(FakePage(other), session)

        assert session.context.listener_count("page") == 1
        assert other.listener_count("page") == 1

        popup = await other.new_page("about:blank", opener=second)
        assert popup.is_closed()
        assert session.popups_blocked == 1


class TestAdBlockingStep:
    @pytest.mark.asyncio
    async def test_blocker_enabled_before_patches(self):
        session = make_session()
        session.blocker = MagicMock()
        order = []

        async def enable(page):
            order.append(("blocker", list(page.log)))

        session.blocker.enable = AsyncMock(side_effect=enable)
        page = new_page(session)
        await attach(page, session)

        session.blocker.enable.assert_awaited_once_with(page)
        # nothing else had touched the page yet
        assert order == [("blocker", [])]

    @pytest.mark.asyncio
    async def test_after_proxy_auth(self):
        session = make_session(
            proxy={"host": "h", "port": 1, "username": "u", "password": "p"}
        )
        seen = []
        session.blocker = MagicMock()
        session.blocker.enable = AsyncMock(
            side_effect=lambda page: seen.append(page.cdp.methods())
        )
        await attach(new_page(session), session)
        assert seen == [["Fetch.enable"]]

    @pytest.mark.asyncio
    async def test_blocker_failure_swallowed(self):
        session = make_session()
        session.blocker = MagicMock()
        session.blocker.enable = AsyncMock(side_effect=RuntimeError("route"))
        page = new_page(session)
        handle = await attach(page, session)
        assert page.init_scripts == [NAVIGATION_BUNDLE]
        assert handle.cursor is not None

    @pytest.mark.asyncio
    async def test_no_blocker_no_route(self):
        session = make_session()
        page = new_page(session)
        await attach(page, session)
        assert page.routes == []
