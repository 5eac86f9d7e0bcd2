"""Browser process launch: executable discovery, spawn, readiness wait.

The process is started directly (not through Playwright's launcher) so
no ``--enable-automation`` style switches leak in; the client attaches
afterwards over CDP.
"""

import asyncio
import logging
import os
import platform
import shutil
import socket
import subprocess
import tempfile
from dataclasses import dataclass, field

from pyvirtualdisplay import Display

from veil._config import DEFAULT_DISPLAY_SIZE, DEFAULT_READY_TIMEOUT
from veil._errors import BrowserNotFound, LaunchError

logger = logging.getLogger("veil")

_READY_POLL_INTERVAL = 0.5
DEFAULT_EXIT_TIMEOUT = 5.0

# Brave first, then stock Chrome/Chromium.  Names are PATH lookups,
# absolute paths are checked directly.
_LINUX_CANDIDATES = [
    "brave-browser",
    "brave-browser-stable",
    "brave",
    "/opt/brave.com/brave/brave",
    "/snap/bin/brave",
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
]

_MAC_CANDIDATES = [
    "/Applications/Brave Browser.app/Contents/MacOS/Brave Browser",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
]


def _windows_candidates() -> list[str]:
    roots = [
        os.environ.get("PROGRAMFILES", r"C:\Program Files"),
        os.environ.get("PROGRAMFILES(X86)", r"C:\Program Files (x86)"),
        os.environ.get("LOCALAPPDATA", ""),
    ]
    suffixes = [
        r"BraveSoftware\Brave-Browser\Application\brave.exe",
        r"Google\Chrome\Application\chrome.exe",
        r"Chromium\Application\chrome.exe",
    ]
    return [
        os.path.join(root, suffix)
        for suffix in suffixes
        for root in roots
        if root
    ]


def _platform_candidates() -> list[str]:
    system = platform.system()
    if system == "Windows":
        return _windows_candidates()
    if system == "Darwin":
        return list(_MAC_CANDIDATES)
    return list(_LINUX_CANDIDATES)


def find_browser_executable(explicit: str | None = None) -> str:
    """Resolve the browser binary.

    Order: *explicit*, ``VEIL_BROWSER_PATH``, then platform candidates.
    """
    candidates = [explicit, os.getenv("VEIL_BROWSER_PATH")]
    candidates.extend(_platform_candidates())
    searched = []
    for candidate in candidates:
        if not candidate:
            continue
        searched.append(candidate)
        if os.path.isfile(candidate):
            return candidate
        resolved = shutil.which(candidate)
        if resolved:
            return resolved
    raise BrowserNotFound(searched)


def get_free_port() -> int:
    """Get a free port by binding to port 0."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@dataclass
class LaunchedBrowser:
    """A running browser process and its throwaway profile directory."""

    pid: int
    port: int
    process: asyncio.subprocess.Process
    user_data_dir: str
    executable_path: str
    _killed: bool = field(default=False, repr=False)

    @property
    def killed(self) -> bool:
        return self._killed

    @property
    def cdp_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def kill(self) -> None:
        """SIGKILL the process once.

        Later calls are no-ops: a reaped PID may already belong to
        another process.  The profile directory is left for ``aclose()``,
        which removes it after the process has exited.
        """
        if self._killed:
            return
        self._killed = True
        try:
            if self.process.returncode is None:
                self.process.kill()
                logger.debug("Killed browser pid %d", self.pid)
        except ProcessLookupError:
            pass

    async def aclose(self, timeout: float = DEFAULT_EXIT_TIMEOUT) -> None:
        """Kill, wait for the process to exit, then delete the profile."""
        self.kill()
        try:
            await asyncio.wait_for(self.process.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Browser pid %d still running after %.0fs", self.pid, timeout
            )
        except ProcessLookupError:
            pass
        finally:
            shutil.rmtree(self.user_data_dir, ignore_errors=True)


def _process_flags(port: int, user_data_dir: str) -> list[str]:
    flags = [
        f"--remote-debugging-port={port}",
        f"--user-data-dir={user_data_dir}",
    ]
    # Chromium refuses to start sandboxed as root
    if platform.system() == "Linux" and hasattr(os, "geteuid"):
        if os.geteuid() == 0:
            flags.append("--no-sandbox")
    return flags


async def wait_until_ready(
    launched: LaunchedBrowser,
    timeout: float = DEFAULT_READY_TIMEOUT,
) -> None:
    """Poll the debugging port until it accepts a TCP connection."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        code = launched.process.returncode
        if code is not None:
            raise LaunchError(
                f"browser exited with code {code} before the debugger "
                f"was ready on port {launched.port}"
            )
        try:
            _, writer = await asyncio.open_connection(
                "127.0.0.1", launched.port
            )
        except OSError:
            if loop.time() >= deadline:
                raise LaunchError(
                    f"debugger not reachable on port {launched.port} "
                    f"after {timeout:.0f}s"
                ) from None
            await asyncio.sleep(_READY_POLL_INTERVAL)
            continue
        writer.close()
        return


async def launch_browser(
    flags,
    executable_path: str | None = None,
    ready_timeout: float = DEFAULT_READY_TIMEOUT,
) -> LaunchedBrowser:
    """Spawn the browser with *flags* and wait for its debugging port.

    Raises:
        LaunchError: the process could not be started or never became
            reachable.  A started process is killed before raising.
    """
    exe = find_browser_executable(executable_path)
    port = get_free_port()
    user_data_dir = tempfile.mkdtemp(prefix="veil_profile_")
    cmd = [exe, *_process_flags(port, user_data_dir), *flags, "about:blank"]
    logger.debug("Launching browser: %s", " ".join(cmd))

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            # own process group so the whole tree can be signalled
            start_new_session=os.name != "nt",
        )
    except OSError as exc:
        shutil.rmtree(user_data_dir, ignore_errors=True)
        raise LaunchError(f"could not start {exe}: {exc}") from exc

    launched = LaunchedBrowser(
        pid=process.pid,
        port=port,
        process=process,
        user_data_dir=user_data_dir,
        executable_path=exe,
    )
    try:
        await wait_until_ready(launched, ready_timeout)
    except BaseException:
        await launched.aclose()
        raise

    logger.info("Browser running (pid=%d, port=%d)", launched.pid, port)
    return launched


def start_virtual_display(size: tuple[int, int] = DEFAULT_DISPLAY_SIZE):
    """Start an Xvfb display for headful runs without a real screen.

    Returns the started ``Display`` or None when Xvfb is unavailable.
    """
    try:
        display = Display(visible=False, size=size)
        display.start()
    except Exception as exc:
        logger.warning(
            "Virtual display unavailable (%s: %s); install xvfb "
            "(apt-get install xvfb) or pass disable_virtual_display=True",
            type(exc).__name__,
            exc,
        )
        return None
    logger.info("Virtual display started (%dx%d)", size[0], size[1])
    return display
