"""Background challenge polling for one page."""

import asyncio
import logging

from veil._config import DEFAULT_POLL_INTERVAL
from veil._errors import PollAttemptError

logger = logging.getLogger("veil")


def _page_url(page) -> str:
    try:
        return page.url
    except Exception:
        return "<unknown>"


class ChallengePoller:
    """Repeatedly runs *resolver* against a page while its handle solves.

    The handle's ``solving`` flag is the only stop signal.  It is read
    before every attempt, never mid-attempt, so the loop exits at most one
    interval after the flag drops and makes no attempt after that.
    """

    def __init__(self, handle, resolver, interval: float = DEFAULT_POLL_INTERVAL):
        self._handle = handle
        self._resolver = resolver
        self.interval = interval
        self.attempts = 0
        self._task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return bool(self._handle.solving)

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop (once)."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name="veil-challenge-poller"
            )
        return self._task

    async def _run(self) -> None:
        page = self._handle.page
        logger.debug("Challenge poller started for %s", _page_url(page))
        while self._handle.solving:
            self.attempts += 1
            try:
                await self._resolver(page)
            except Exception as exc:
                logger.debug("%s", PollAttemptError(_page_url(page), exc))
            await asyncio.sleep(self.interval)
        logger.debug(
            "Challenge poller stopped after %d attempts", self.attempts
        )
