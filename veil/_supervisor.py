"""One-shot teardown of the process-level resources behind a session."""

import asyncio
import logging
import signal

import psutil

from veil._errors import TeardownError

logger = logging.getLogger("veil")


_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


def kill_process_tree(pid: int, sig: int = _SIGKILL) -> int:
    """Signal *pid* and all of its descendants.

    Returns the number of processes signalled.  Processes that vanish
    mid-walk are skipped.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return 0
    try:
        procs = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        procs = []
    procs.append(parent)

    signalled = 0
    for proc in procs:
        try:
            proc.send_signal(sig)
            signalled += 1
        except psutil.NoSuchProcess:
            continue
    return signalled


class ProcessSupervisor:
    """Owns the browser process, its PID and the virtual display.

    Only an *armed* supervisor tears anything down; arming is done by
    the single process-owning attach.  ``teardown()`` runs its body at
    most once.
    """

    def __init__(self, launched=None, display=None, pid: int | None = None):
        self.launched = launched
        self.display = display
        self.pid = pid if pid is not None else getattr(launched, "pid", None)
        self.armed = False
        self.torn_down = False
        self._reaping: asyncio.Future | None = None

    def arm(self) -> None:
        self.armed = True

    def teardown(self) -> list[TeardownError]:
        """Stop the display, SIGKILL the PID tree, kill the process.

        Each action is attempted regardless of the others.  Failures are
        logged and returned, never raised.
        """
        if not self.armed or self.torn_down:
            return []
        self.torn_down = True

        errors: list[TeardownError] = []
        actions = [
            ("virtual display", self._stop_display),
            # tree before the parent dies, while children are still
            # reachable through it
            ("pid tree", self._kill_pid),
            ("browser process", self._kill_launched),
        ]
        for resource, action in actions:
            try:
                action()
            except Exception as exc:
                err = TeardownError(resource, exc)
                logger.warning("%s", err)
                errors.append(err)

        logger.info("Session resources released (pid=%s)", self.pid)
        return errors

    async def reap(self) -> None:
        """Wait for the killed process and remove its profile directory.

        Runs once after ``teardown()``; concurrent callers share the
        same wait.
        """
        if not self.torn_down or self.launched is None:
            return
        if self._reaping is None:
            self._reaping = asyncio.ensure_future(self._reap())
        await self._reaping

    async def _reap(self) -> None:
        try:
            await self.launched.aclose()
        except Exception as exc:
            logger.warning("%s", TeardownError("browser profile", exc))

    def _stop_display(self) -> None:
        if self.display is not None:
            self.display.stop()

    def _kill_launched(self) -> None:
        if self.launched is not None:
            self.launched.kill()

    def _kill_pid(self) -> None:
        if self.pid:
            kill_process_tree(self.pid)
