"""veil -- stealth page controller for Chromium-family browsers."""

import logging
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("veil-browser")
except PackageNotFoundError:
    __version__ = "0.0.0"

from veil._blocker import AdBlocker
from veil._config import ConnectOptions, Plugin, ProxyConfig
from veil._controller import PageHandle, attach
from veil._cursor import HumanCursor
from veil._errors import (
    AttachPatchError,
    BrowserNotFound,
    FilterListError,
    LaunchError,
    PollAttemptError,
    TeardownError,
    VeilError,
)
from veil._flags import DEFAULT_FLAGS, build_launch_flags
from veil._session import BrowserSession, connect
from veil._turnstile import check_turnstile

__all__ = [
    "__version__",
    "connect",
    "attach",
    "BrowserSession",
    "PageHandle",
    "ConnectOptions",
    "ProxyConfig",
    "Plugin",
    "HumanCursor",
    "AdBlocker",
    "check_turnstile",
    "build_launch_flags",
    "DEFAULT_FLAGS",
    "VeilError",
    "LaunchError",
    "BrowserNotFound",
    "AttachPatchError",
    "PollAttemptError",
    "TeardownError",
    "FilterListError",
]

# Silent by default; callers opt in via logging.getLogger("veil").setLevel(...)
logging.getLogger("veil").addHandler(logging.NullHandler())
