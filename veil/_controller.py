"""Page controller: the per-page stealth setup.

``attach()`` runs for the initial page and for every page the browser
creates afterwards.  Its steps run in a fixed order because the
detection-evasion scripts only work if they are registered before the
page's own scripts execute.

The disconnect cleanup is installed once per session and the popup
guard once per browser context, no matter how many pages attach.
"""

import logging

from veil._cursor import HumanCursor
from veil._errors import AttachPatchError
from veil._patches import DIALOG_PATCH, EARLY_SCRIPT, NAVIGATION_BUNDLE, is_ad_popup_url
from veil._poller import ChallengePoller
from veil._turnstile import check_turnstile

logger = logging.getLogger("veil")

_DISCONNECT_HOOK = "disconnect"
_POPUP_GUARD = "popup-guard"


class PageHandle:
    """A Playwright page plus the state veil keeps for it.

    Attribute lookups the handle does not know are forwarded to the
    wrapped page, so a handle can be used wherever a ``Page`` is
    expected (``await handle.goto(url)``).
    """

    def __init__(self, page, session=None):
        self.page = page
        self.session = session
        self.solving = False
        self.cdp = None
        self.cursor: HumanCursor | None = None
        self.real_click = None
        self.poller: ChallengePoller | None = None

    def __getattr__(self, name):
        page = self.__dict__.get("page")
        if page is None:
            raise AttributeError(name)
        return getattr(page, name)

    def __repr__(self) -> str:
        try:
            url = self.page.url
        except Exception:
            url = "?"
        return f"PageHandle(url={url!r}, solving={self.solving})"

    def stop_solving(self) -> None:
        self.solving = False

    def _on_close(self, *_args) -> None:
        # Synchronous with the close event: no poll starts after this.
        self.solving = False
        if self.session is not None:
            self.session._forget(self)


def _is_closed(page) -> bool:
    try:
        return bool(page.is_closed())
    except Exception:
        return False


async def _run_step(handle: PageHandle, step: str, action) -> bool:
    """Await ``action()``; a failure is logged, never raised."""
    try:
        await action()
    except Exception as exc:
        logger.debug("%s (%r)", AttachPatchError(step, exc), handle)
        return False
    return True


async def _cdp_session(handle: PageHandle):
    if handle.cdp is None:
        page = handle.page
        handle.cdp = await page.context.new_cdp_session(page)
    return handle.cdp


# ---------------------------------------------------------------------------
# Session-level hooks
# ---------------------------------------------------------------------------


def _install_once(session, key: str, install) -> bool:
    """Run *install* unless this session already did *key*.

    The key is recorded before installing, so attaches that interleave
    on the event loop cannot both pass the check.
    """
    if key in session.installed:
        return False
    session.installed.add(key)
    install()
    return True


def _on_disconnected(session):
    logger.info("Browser disconnected")
    for handle in list(session.pages):
        handle.stop_solving()
    session.supervisor.teardown()
    # the emitter schedules the returned coroutine; reaping waits for exit
    return session.supervisor.reap()


def guard_context(session, context) -> None:
    """Close ad popups opened in *context*; installs once per context."""
    _install_once(
        session,
        f"{_POPUP_GUARD}:{id(context)}",
        lambda: context.on(
            "page", lambda new_page: _guard_popup(session, new_page)
        ),
    )


async def _guard_popup(session, page) -> None:
    """Close script-opened tabs that look like ads."""
    try:
        opener = await page.opener()
        if opener is None:
            return
        url = page.url
        if not is_ad_popup_url(url):
            return
        try:
            await page.close()
        except Exception:
            pass
        session.popups_blocked += 1
        logger.info("Blocked popup ad: %s", (url or "")[:50])
    except Exception as exc:
        logger.debug("Popup check failed: %s", exc)


# ---------------------------------------------------------------------------
# Per-page steps
# ---------------------------------------------------------------------------


async def _authenticate_proxy(handle: PageHandle, proxy) -> None:
    """Answer proxy auth challenges for this page through CDP Fetch."""
    cdp = await _cdp_session(handle)
    credentials = {
        "response": "ProvideCredentials",
        "username": proxy.username,
        "password": proxy.password,
    }

    async def on_auth_required(event):
        try:
            await cdp.send(
                "Fetch.continueWithAuth",
                {
                    "requestId": event["requestId"],
                    "authChallengeResponse": credentials,
                },
            )
        except Exception as exc:
            logger.debug("Proxy auth response failed: %s", exc)

    async def on_request_paused(event):
        try:
            await cdp.send(
                "Fetch.continueRequest", {"requestId": event["requestId"]}
            )
        except Exception as exc:
            logger.debug("Continue paused request failed: %s", exc)

    cdp.on("Fetch.authRequired", on_auth_required)
    cdp.on("Fetch.requestPaused", on_request_paused)
    await cdp.send(
        "Fetch.enable",
        {"handleAuthRequests": True, "patterns": [{"urlPattern": "*"}]},
    )


async def _inject_early_script(handle: PageHandle) -> None:
    cdp = await _cdp_session(handle)
    await cdp.send("Page.enable")
    await cdp.send(
        "Page.addScriptToEvaluateOnNewDocument", {"source": EARLY_SCRIPT}
    )


def _run_plugins(handle: PageHandle, plugins) -> None:
    for plugin in plugins:
        try:
            plugin.on_page_created(handle)
        except Exception as exc:
            step = f"plugin {type(plugin).__name__}"
            logger.warning("%s", AttachPatchError(step, exc))


async def attach(page, session, kill_process: bool = False) -> PageHandle:
    """Install the full stealth setup on *page* and return its handle.

    Args:
        page: Playwright page.
        session: owning ``BrowserSession``.
        kill_process: True only for the attach that owns the browser
            process; it arms teardown on disconnect.

    Steps after the session hooks are best-effort: a failing step is
    logged and the rest still run, since later navigations re-apply the
    persistent scripts anyway.
    """
    handle = PageHandle(page, session)
    options = session.options

    # 1. disconnect cleanup, once per session; ownership does not depend
    # on the page still being open
    if kill_process:
        session.supervisor.arm()
    _install_once(
        session,
        _DISCONNECT_HOOK,
        lambda: session.browser.on(
            "disconnected", lambda *_: _on_disconnected(session)
        ),
    )

    if _is_closed(page):
        logger.debug("Page closed before attach, skipping")
        return handle
    session.pages.append(handle)

    # 2. challenge flag, dropped synchronously on close
    handle.solving = bool(options.challenge_solving)
    page.on("close", handle._on_close)

    # 3. challenge poller
    if handle.solving:
        handle.poller = ChallengePoller(
            handle,
            options.resolver or check_turnstile,
            options.poll_interval,
        )
        handle.poller.start()

    # 4. proxy credentials, before any navigation
    if options.proxy.has_credentials:
        await _run_step(
            handle,
            "proxy auth",
            lambda: _authenticate_proxy(handle, options.proxy),
        )

    # 4a. network ad/tracker filter, before any navigation
    blocker = getattr(session, "blocker", None)
    if blocker is not None:
        await _run_step(handle, "ad blocking", lambda: blocker.enable(page))

    # 5. plugins, in registration order
    _run_plugins(handle, options.plugins)

    # 6. popup closing, once per context
    guard_context(session, page.context)

    # 7. earliest injection: CDP, ahead of any page script
    await _run_step(
        handle, "early script", lambda: _inject_early_script(handle)
    )

    # 8. persistent per-navigation bundle
    await _run_step(
        handle,
        "navigation bundle",
        lambda: page.add_init_script(NAVIGATION_BUNDLE),
    )

    # 9. init scripts skip the current document; patch it directly
    await _run_step(
        handle, "current document", lambda: page.evaluate(DIALOG_PATCH)
    )

    # 10. human-like pointer
    handle.cursor = HumanCursor(page)
    handle.real_click = handle.cursor.click

    logger.debug("Attached to %r", handle)
    return handle
