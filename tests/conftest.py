"""Shared fakes for veil tests: event-emitting Playwright stand-ins."""

import inspect
from collections import defaultdict
from unittest.mock import AsyncMock, MagicMock

from veil._config import ConnectOptions
from veil._session import BrowserSession

# ---------------------------------------------------------------------------
# Mock Playwright objects
# ---------------------------------------------------------------------------


class FakeEmitter:
    """Minimal ``.on()`` / ``emit`` with awaitable handler results awaited."""

    def __init__(self):
        self._handlers = defaultdict(list)

    def on(self, event, handler):
        self._handlers[event].append(handler)

    def listener_count(self, event) -> int:
        return len(self._handlers[event])

    async def emit(self, event, *args):
        for handler in list(self._handlers[event]):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result


class FakeCDPSession(FakeEmitter):
    def __init__(self, log: list):
        super().__init__()
        self.log = log
        self.sent: list[tuple[str, dict | None]] = []

    async def send(self, method, params=None):
        self.sent.append((method, params))
        self.log.append(("cdp", method))
        return {}

    def methods(self) -> list[str]:
        return [m for m, _ in self.sent]


class FakeMouse:
    def __init__(self):
        self.move = AsyncMock()
        self.down = AsyncMock()
        self.up = AsyncMock()
        self.click = AsyncMock()


class FakePage(FakeEmitter):
    def __init__(self, context=None, url="about:blank", opener=None):
        super().__init__()
        self.context = context
        self.url = url
        self.mouse = FakeMouse()
        self.frames = []
        self.log: list[tuple] = []
        self.init_scripts: list[str] = []
        self.evaluated: list[str] = []
        self.evaluate_error: Exception | None = None
        self.close_error: Exception | None = None
        self.opener_calls = 0
        self.close_calls = 0
        self.cdp: FakeCDPSession | None = None
        self.routes: list[tuple] = []
        self.add_style_tag = AsyncMock()
        self._opener = opener
        self._closed = False

    def is_closed(self) -> bool:
        return self._closed

    async def opener(self):
        self.opener_calls += 1
        return self._opener

    async def add_init_script(self, script):
        self.log.append(("init_script", None))
        self.init_scripts.append(script)

    async def evaluate(self, expression, arg=None):
        self.log.append(("evaluate", None))
        if self.evaluate_error is not None:
            raise self.evaluate_error
        self.evaluated.append(expression)

    async def route(self, pattern, handler):
        self.log.append(("route", pattern))
        self.routes.append((pattern, handler))

    async def goto(self, url):
        self.url = url

    async def close(self):
        self.close_calls += 1
        if self.close_error is not None:
            raise self.close_error
        if self._closed:
            return
        self._closed = True
        await self.emit("close", self)


class FakeContext(FakeEmitter):
    def __init__(self):
        super().__init__()
        self.pages: list[FakePage] = []

    async def new_cdp_session(self, page):
        page.cdp = FakeCDPSession(page.log)
        return page.cdp

    async def new_page(self, url="about:blank", opener=None):
        page = FakePage(self, url=url, opener=opener)
        self.pages.append(page)
        await self.emit("page", page)
        return page


class FakeBrowser(FakeEmitter):
    def __init__(self):
        super().__init__()
        self.contexts = [FakeContext()]
        self._connected = True
        self.close_calls = 0
        self.context_kwargs: list[dict] = []

    def is_connected(self) -> bool:
        return self._connected

    async def disconnect(self):
        """Simulate the browser going away (crash, kill, close)."""
        self._connected = False
        await self.emit("disconnected", self)

    async def new_context(self, **kwargs):
        self.context_kwargs.append(kwargs)
        context = FakeContext()
        self.contexts.append(context)
        return context

    async def close(self):
        self.close_calls += 1
        await self.disconnect()


class FakePlaywright:
    def __init__(self, browser: FakeBrowser):
        self.browser = browser
        self.chromium = MagicMock()
        self.chromium.connect_over_cdp = AsyncMock(return_value=browser)
        self.stop = AsyncMock()


class FakePlaywrightStarter:
    """Stands in for ``async_playwright()``."""

    def __init__(self, playwright: FakePlaywright):
        self.start = AsyncMock(return_value=playwright)


class FakeLaunched:
    def __init__(self, pid=4242, port=9333):
        self.pid = pid
        self.port = port
        self.cdp_url = f"http://127.0.0.1:{port}"
        self.kill = MagicMock()
        self.aclose = AsyncMock()


# ---------------------------------------------------------------------------
# Session factory
# ---------------------------------------------------------------------------


def make_session(**options) -> BrowserSession:
    """A BrowserSession over fakes, without launching anything."""
    options.setdefault("headless", False)
    browser = FakeBrowser()
    context = browser.contexts[0]
    return BrowserSession(
        ConnectOptions(**options),
        (),
        FakeLaunched(),
        MagicMock(),
        FakePlaywright(browser),
        browser,
        context,
    )


def new_page(session: BrowserSession, url="about:blank", opener=None) -> FakePage:
    """A page in the session's context, created without emitting events."""
    page = FakePage(session.context, url=url, opener=opener)
    session.context.pages.append(page)
    return page
