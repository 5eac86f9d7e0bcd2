"""Connection bootstrap: launch, connect, attach.

``connect()`` is the package entry point.  It starts the browser
process itself, connects patchright to it over CDP and hands back a
``BrowserSession`` whose initial page is already fully patched.
"""

import logging
import platform

from patchright.async_api import async_playwright

from veil._config import DEFAULT_POLL_INTERVAL, DEFAULT_READY_TIMEOUT, ConnectOptions
from veil._blocker import shared_blocker
from veil._controller import PageHandle, attach, guard_context
from veil._errors import LaunchError
from veil._flags import build_launch_flags
from veil._launcher import launch_browser, start_virtual_display
from veil._supervisor import ProcessSupervisor

logger = logging.getLogger("veil")


class BrowserSession:
    """One launched browser and every page veil has attached to.

    Usable as an async context manager; leaving the block closes the
    browser and releases the process, display and driver.
    """

    def __init__(
        self,
        options: ConnectOptions,
        flags: tuple[str, ...],
        launched,
        display,
        playwright,
        browser,
        context,
        blocker=None,
    ):
        self.options = options
        self.flags = flags
        self.launched = launched
        self.display = display
        self.playwright = playwright
        self.browser = browser
        self.context = context
        self.blocker = blocker
        self.supervisor = ProcessSupervisor(launched, display)
        self.pages: list[PageHandle] = []
        self.page: PageHandle | None = None
        self.installed: set[str] = set()
        self.popups_blocked = 0
        self._closed = False

    def __repr__(self) -> str:
        return (
            f"BrowserSession(pid={self.pid}, port={self.port}, "
            f"pages={len(self.pages)})"
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    @property
    def pid(self) -> int | None:
        return getattr(self.launched, "pid", None)

    @property
    def port(self) -> int | None:
        return getattr(self.launched, "port", None)

    @property
    def is_connected(self) -> bool:
        try:
            return bool(self.browser.is_connected())
        except Exception:
            return False

    def handle_for(self, page) -> PageHandle | None:
        """The handle veil attached to *page*, if it is still open."""
        for handle in self.pages:
            if handle.page is page:
                return handle
        return None

    def watch(self, context) -> None:
        """Patch and popup-guard every page *context* opens from now on.

        The default context is watched by ``connect()``; contexts made
        through ``new_context()`` are watched automatically.
        """
        guard_context(self, context)
        key = f"reattach:{id(context)}"
        if key in self.installed:
            return
        self.installed.add(key)
        context.on("page", self._on_new_page)

    async def new_context(self, **kwargs):
        """Create a browser context whose pages are all patched.

        Keyword arguments go to ``Browser.new_context``; the real window
        size is kept unless a viewport is given.
        """
        if "viewport" not in kwargs:
            kwargs.setdefault("no_viewport", True)
        context = await self.browser.new_context(**kwargs)
        self.watch(context)
        return context

    def _forget(self, handle: PageHandle) -> None:
        try:
            self.pages.remove(handle)
        except ValueError:
            pass

    async def _on_new_page(self, page) -> None:
        if self.handle_for(page) is not None:
            return
        try:
            await attach(page, self)
        except Exception as exc:
            logger.warning("Attach to new page failed: %s", exc)

    async def close(self) -> None:
        """Close the browser and release every owned resource."""
        if self._closed:
            return
        self._closed = True
        for handle in list(self.pages):
            handle.stop_solving()
        try:
            await self.browser.close()
        except Exception as exc:
            logger.debug("Browser close failed: %s", exc)
        self.supervisor.teardown()
        await self.supervisor.reap()
        try:
            await self.playwright.stop()
        except Exception as exc:
            logger.debug("Playwright stop failed: %s", exc)
        logger.info("Session closed")


def _wants_virtual_display(options: ConnectOptions) -> bool:
    if options.disable_virtual_display or platform.system() != "Linux":
        return False
    # headless needs no X server
    return options.headless is False


async def _abort_launch(launched, display, playwright) -> None:
    """Release whatever a failed ``connect()`` already started."""
    if launched is not None:
        try:
            await launched.aclose()
        except Exception as exc:
            logger.debug("Kill after failed launch: %s", exc)
    if display is not None:
        try:
            display.stop()
        except Exception as exc:
            logger.debug("Display stop after failed launch: %s", exc)
    if playwright is not None:
        try:
            await playwright.stop()
        except Exception as exc:
            logger.debug("Playwright stop after failed launch: %s", exc)


async def _load_blocker(options: ConnectOptions):
    """The blocker for this session, or None; a load failure only warns."""
    if not options.block_ads:
        return None
    if options.blocker is not None:
        return options.blocker
    try:
        return await shared_blocker()
    except Exception as exc:
        logger.warning("Ad blocking disabled: %s", exc)
        return None


async def connect(
    args=(),
    headless: bool | str | None = None,
    proxy=None,
    challenge_solving: bool = False,
    disable_virtual_display: bool = False,
    plugins=(),
    ignore_default_flags: bool = False,
    executable_path: str | None = None,
    connect_options: dict | None = None,
    resolver=None,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    ready_timeout: float = DEFAULT_READY_TIMEOUT,
    block_ads: bool = True,
    blocker=None,
) -> BrowserSession:
    """Launch a stealth-patched browser and return its session.

    ``session.page`` is the initial page, already patched.  Every page
    opened later is patched by the session's new-page listener before
    that listener returns.

    Args:
        args: extra browser flags, appended after the defaults.
        headless: ``None`` reads ``HEADLESS`` from the environment;
            ``True`` or a mode string runs headless; ``False`` shows a
            window.
        proxy: ``{"host", "port", "username", "password"}`` or
            ``ProxyConfig``.  Credentials are answered per page.
        challenge_solving: poll every page for Cloudflare Turnstile.
        disable_virtual_display: never start Xvfb (Linux only).
        plugins: objects with ``on_page_created(page)``, called in
            order for each page.
        ignore_default_flags: start from an empty flag list.
        executable_path: browser binary; discovered when omitted.
        connect_options: extra keyword arguments for
            ``connect_over_cdp``.
        resolver: async ``(page) -> Any`` used instead of the built-in
            Turnstile clicker.
        poll_interval: seconds between challenge attempts.
        ready_timeout: seconds to wait for the debugging port.
        block_ads: filter ad/tracker requests and hide ad elements on
            every page.  Lists are downloaded on first use and cached.
        blocker: an ``AdBlocker`` to use instead of the shared one
            built from the default lists.

    Raises:
        LaunchError: the browser did not start or could not be
            connected to.  Nothing is left running.
    """
    options = ConnectOptions(
        args=args,
        headless=headless,
        proxy=proxy,
        challenge_solving=challenge_solving,
        disable_virtual_display=disable_virtual_display,
        plugins=plugins,
        ignore_default_flags=ignore_default_flags,
        executable_path=executable_path,
        connect_options=dict(connect_options or {}),
        resolver=resolver,
        poll_interval=poll_interval,
        ready_timeout=ready_timeout,
        block_ads=block_ads,
        blocker=blocker,
    )
    flags = build_launch_flags(
        options.args,
        options.headless,
        options.proxy,
        options.ignore_default_flags,
    )

    ad_blocker = await _load_blocker(options)

    display = None
    if _wants_virtual_display(options):
        display = start_virtual_display()

    launched = None
    playwright = None
    try:
        launched = await launch_browser(
            flags, options.executable_path, options.ready_timeout
        )
        playwright = await async_playwright().start()
        browser = await playwright.chromium.connect_over_cdp(
            launched.cdp_url, **options.connect_options
        )
        if browser.contexts:
            context = browser.contexts[0]
        else:
            context = await browser.new_context(no_viewport=True)
        if context.pages:
            page = context.pages[0]
        else:
            page = await context.new_page()
    except BaseException as exc:
        await _abort_launch(launched, display, playwright)
        # cancellation and LaunchError pass through unchanged
        if isinstance(exc, LaunchError) or not isinstance(exc, Exception):
            raise
        raise LaunchError(f"{type(exc).__name__}: {exc}") from exc

    session = BrowserSession(
        options,
        flags,
        launched,
        display,
        playwright,
        browser,
        context,
        blocker=ad_blocker,
    )
    try:
        session.page = await attach(page, session, kill_process=True)
        session.watch(context)
    except BaseException:
        await session.close()
        raise
    logger.info(
        "Connected (pid=%d, headless=%s, challenge_solving=%s)",
        launched.pid,
        options.headless,
        options.challenge_solving,
    )
    return session
