"""Ad/tracker blocking for attached pages, on Brave's adblock-rust engine.

Filter lists (EasyList, EasyPrivacy, uBlock Origin) are downloaded once,
cached on disk for a week and compiled into one ``adblock.Engine``.
Each page then gets a request route that aborts matching network
requests, plus element hiding for the cosmetic rules of the page's URL.
"""

import asyncio
import datetime
import hashlib
import logging
import os
import time
from pathlib import Path

import adblock
import rnet
from rnet import Method

from veil._errors import FilterListError

logger = logging.getLogger("veil")

DEFAULT_FILTER_LISTS = (
    "https://easylist.to/easylist/easylist.txt",
    "https://easylist.to/easylist/easyprivacy.txt",
    "https://raw.githubusercontent.com/uBlockOrigin/uAssets/master/filters/filters.txt",
    "https://raw.githubusercontent.com/uBlockOrigin/uAssets/master/filters/badware.txt",
    "https://raw.githubusercontent.com/uBlockOrigin/uAssets/master/filters/privacy.txt",
    "https://raw.githubusercontent.com/uBlockOrigin/uAssets/master/filters/quick-fixes.txt",
)
DEFAULT_CACHE_TTL = 7 * 24 * 60 * 60
DEFAULT_FETCH_TIMEOUT = 30.0

# Playwright resource types -> adblock request types
_REQUEST_TYPES = {
    "document": "document",
    "stylesheet": "stylesheet",
    "image": "image",
    "media": "media",
    "texttrack": "media",
    "font": "font",
    "script": "script",
    "xhr": "xmlhttprequest",
    "fetch": "xmlhttprequest",
    "websocket": "websocket",
    "ping": "ping",
}

_NETWORK_SCHEMES = ("http://", "https://", "ws://", "wss://")

_COLLECT_CLASSES_AND_IDS = """
() => {
    const classes = new Set();
    const ids = new Set();
    document.querySelectorAll('[class], [id]').forEach(function (el) {
        if (el.id) ids.add(el.id);
        el.classList.forEach(function (c) { classes.add(c); });
    });
    return [Array.from(classes), Array.from(ids)];
}
"""


def default_cache_dir() -> Path:
    """``VEIL_CACHE_DIR``, else ``~/.cache/veil``."""
    override = os.getenv("VEIL_CACHE_DIR")
    if override:
        return Path(override)
    return Path.home() / ".cache" / "veil"


# ---------------------------------------------------------------------------
# Filter list download and cache
# ---------------------------------------------------------------------------


async def _fetch_list(client, url: str) -> str:
    """One list's text, or "" when it cannot be fetched."""
    try:
        resp = await client.request(Method.GET, url)
        status = resp.status.as_int()
        if status != 200:
            raise FilterListError(url, f"HTTP {status}")
        text = await resp.text()
    except Exception as exc:
        err = exc if isinstance(exc, FilterListError) else FilterListError(url, exc)
        logger.warning("%s", err)
        return ""
    logger.debug("Fetched filter list %s (%d bytes)", url, len(text))
    return text


async def fetch_filter_lists(
    urls=DEFAULT_FILTER_LISTS,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
) -> str:
    """Download *urls* in parallel and join them; failed lists are skipped."""
    client = rnet.Client(timeout=datetime.timedelta(seconds=timeout))
    texts = await asyncio.gather(*(_fetch_list(client, url) for url in urls))
    return "\n".join(text for text in texts if text)


def _cache_path(cache_dir: Path, urls) -> Path:
    digest = hashlib.sha1("\n".join(urls).encode("utf-8")).hexdigest()[:12]
    return cache_dir / f"filters-{digest}.txt"


async def load_filter_rules(
    urls=DEFAULT_FILTER_LISTS,
    cache_dir: Path | str | None = None,
    ttl: float = DEFAULT_CACHE_TTL,
    force: bool = False,
) -> str:
    """Filter rules for *urls*, from the disk cache while it is fresh.

    An expired cache is refreshed; if every download fails the stale
    copy is still used.

    Raises:
        FilterListError: nothing could be downloaded and there is no
            cached copy.
    """
    urls = tuple(urls)
    path = _cache_path(Path(cache_dir) if cache_dir else default_cache_dir(), urls)
    cached = path.is_file()
    if cached and not force and time.time() - path.stat().st_mtime < ttl:
        logger.debug("Using cached filter lists %s", path)
        return path.read_text(encoding="utf-8")

    rules = await fetch_filter_lists(urls)
    if rules:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(rules, encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not cache filter lists at %s: %s", path, exc)
        return rules
    if cached:
        logger.warning("Filter list refresh failed; using stale cache %s", path)
        return path.read_text(encoding="utf-8")
    raise FilterListError(", ".join(urls), "no list could be downloaded")


# ---------------------------------------------------------------------------
# Blocker
# ---------------------------------------------------------------------------


class AdBlocker:
    """Compiled filter engine plus the per-page hooks that apply it.

    One instance is safe to share between pages and sessions.
    """

    def __init__(self, engine, cosmetic: bool = True):
        self.engine = engine
        self.cosmetic = cosmetic
        self.blocked = 0

    @classmethod
    def from_rules(cls, rules: str, cosmetic: bool = True) -> "AdBlocker":
        """Compile ABP/uBlock-syntax *rules* into a blocker."""
        filter_set = adblock.FilterSet()
        filter_set.add_filter_list(rules)
        engine = adblock.Engine(filter_set=filter_set, optimize=True)
        return cls(engine, cosmetic=cosmetic)

    @classmethod
    async def load(
        cls,
        urls=DEFAULT_FILTER_LISTS,
        cache_dir: Path | str | None = None,
        cosmetic: bool = True,
    ) -> "AdBlocker":
        """Fetch (or read cached) lists and compile them off the event loop."""
        rules = await load_filter_rules(urls, cache_dir)
        blocker = await asyncio.to_thread(cls.from_rules, rules, cosmetic)
        logger.info("Ad blocker ready (%d bytes of rules)", len(rules))
        return blocker

    def should_block(
        self, url: str, source_url: str | None, resource_type: str
    ) -> bool:
        """Whether a request for *url* made by *source_url* is filtered."""
        if not url.startswith(_NETWORK_SCHEMES):
            return False
        request_type = _REQUEST_TYPES.get(resource_type, "other")
        if not source_url or not source_url.startswith(_NETWORK_SCHEMES):
            source_url = url
        try:
            result = self.engine.check_network_urls(url, source_url, request_type)
        except Exception as exc:
            logger.debug("Filter check failed for %s: %s", url[:80], exc)
            return False
        return bool(result.matched)

    def hide_selectors(self, url: str, classes=(), ids=()) -> list[str]:
        """CSS selectors the cosmetic rules hide on *url*."""
        resources = self.engine.url_cosmetic_resources(url)
        selectors = set(resources.hide_selectors)
        if not resources.generichide and (classes or ids):
            selectors.update(
                self.engine.hidden_class_id_selectors(
                    list(classes), list(ids), set(resources.exceptions)
                )
            )
        return sorted(selectors)

    # -- per-page hooks ----------------------------------------------------

    async def enable(self, page) -> None:
        """Route *page*'s requests through the filter and hide ad elements."""

        async def on_route(route):
            request = route.request
            try:
                block = not _is_top_navigation(request) and self.should_block(
                    request.url, page.url, request.resource_type
                )
            except Exception as exc:
                logger.debug("Route check failed: %s", exc)
                block = False
            if block:
                self.blocked += 1
                await route.abort("blockedbyclient")
            else:
                await route.fallback()

        await page.route("**/*", on_route)
        if self.cosmetic:
            page.on("domcontentloaded", self._on_dom_ready)

    async def _on_dom_ready(self, page) -> None:
        try:
            await self.apply_cosmetics(page)
        except Exception as exc:
            logger.debug("Cosmetic filtering failed on %s: %s", page.url, exc)

    async def apply_cosmetics(self, page) -> int:
        """Insert hiding rules for the current document; returns the count."""
        url = page.url
        if not url.startswith(("http://", "https://")):
            return 0
        classes, ids = await page.evaluate(_COLLECT_CLASSES_AND_IDS)
        selectors = self.hide_selectors(url, classes, ids)
        if not selectors:
            return 0
        # one rule per selector: an unsupported selector only drops itself
        css = "\n".join(f"{s} {{ display: none !important; }}" for s in selectors)
        await page.add_style_tag(content=css)
        return len(selectors)


def _is_top_navigation(request) -> bool:
    if not request.is_navigation_request():
        return False
    return request.frame.parent_frame is None


_shared: AdBlocker | None = None


async def shared_blocker() -> AdBlocker:
    """The process-wide blocker over the default lists, built on first use."""
    global _shared
    if _shared is None:
        blocker = await AdBlocker.load()
        if _shared is None:
            _shared = blocker
    return _shared
