"""Connection options and environment-derived defaults."""

import logging
import os
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger("veil")

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_READY_TIMEOUT = 25.0
DEFAULT_DISPLAY_SIZE = (1920, 1080)


class Plugin(Protocol):
    """Extension hook invoked once for every page veil attaches to."""

    def on_page_created(self, page: Any) -> None: ...


Resolver = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True)
class ProxyConfig:
    """Upstream proxy. Credentials are answered via CDP auth challenges."""

    host: str | None = None
    port: int | str | None = None
    username: str | None = None
    password: str | None = None

    @classmethod
    def from_value(cls, value) -> "ProxyConfig":
        """Accept a ProxyConfig, a ``{host, port, username, password}``
        dict, or None."""
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            return cls(
                host=value.get("host"),
                port=value.get("port"),
                username=value.get("username"),
                password=value.get("password"),
            )
        raise TypeError(
            f"proxy must be a dict or ProxyConfig, got {type(value).__name__}"
        )

    @property
    def server(self) -> str | None:
        """``host:port`` when both are present, else None."""
        if self.host and self.port:
            return f"{self.host}:{self.port}"
        return None

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


def default_headless() -> bool:
    """Resolve the headless default from ``HEADLESS`` (``.env`` honoured).

    Only the literal ``true`` (any case) enables headless; anything else
    means a visible window.
    """
    load_dotenv(find_dotenv(filename=".env", usecwd=True), override=False)
    return os.getenv("HEADLESS", "").strip().lower() == "true"


@dataclass
class ConnectOptions:
    """Everything ``connect()`` needs, gathered into one value."""

    args: Sequence[str] = ()
    headless: bool | str | None = None
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    challenge_solving: bool = False
    disable_virtual_display: bool = False
    plugins: Sequence[Plugin] = ()
    ignore_default_flags: bool = False
    executable_path: str | None = None
    connect_options: dict = field(default_factory=dict)
    resolver: Resolver | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    ready_timeout: float = DEFAULT_READY_TIMEOUT
    block_ads: bool = True
    blocker: Any = None

    def __post_init__(self):
        self.proxy = ProxyConfig.from_value(self.proxy)
        self.args = tuple(self.args or ())
        self.plugins = tuple(self.plugins or ())
        if self.headless is None:
            self.headless = default_headless()
            logger.debug("Headless resolved from environment: %s", self.headless)
