"""Launch flag computation.

``build_launch_flags`` is pure: same inputs, same tuple, no I/O.  The
launcher adds the process-specific flags (debugging port, profile dir)
on top of what this returns.
"""

from collections.abc import Sequence

from veil._config import ProxyConfig

# Chromium's stock automation-friendly defaults (chrome-launcher set).
DEFAULT_FLAGS: tuple[str, ...] = (
    "--disable-features="
    "Translate,OptimizationHints,MediaRouter,DialMediaRouteProvider,"
    "CalculateNativeWinOcclusion,InterestFeedContentSuggestions,"
    "CertificateTransparencyComponentUpdater,AutofillServerCommunication,"
    "PrivacySandboxSettings4",
    "--disable-component-extensions-with-background-pages",
    "--disable-background-networking",
    "--disable-component-update",
    "--disable-client-side-phishing-detection",
    "--disable-sync",
    "--metrics-recording-only",
    "--disable-default-apps",
    "--mute-audio",
    "--no-default-browser-check",
    "--no-first-run",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-background-timer-throttling",
    "--disable-ipc-flooding-protection",
    "--password-store=basic",
    "--use-mock-keychain",
    "--force-fieldtrials=*BackgroundTracing/default/",
    "--disable-hang-monitor",
    "--disable-prompt-on-repost",
    "--disable-domain-reliability",
    "--propagate-iph-for-testing",
)

# Appended to --disable-features; hides the automation infobar signal
# that reCAPTCHA v3 scores against.
AUTOMATION_FEATURE = "AutomationControlled"


def headless_mode(headless: bool | str | None) -> str | None:
    """Map the ``headless`` option to a ``--headless=`` value.

    ``False``/``None`` means headful.  ``True`` selects the new headless
    mode; a string is passed through (``"new"``, ``"old"``).
    """
    if headless is None or headless is False:
        return None
    if headless is True:
        return "new"
    return str(headless)


def _with_automation_feature(flags: list[str]) -> list[str]:
    for i, flag in enumerate(flags):
        if flag.startswith("--disable-features"):
            flags[i] = f"{flag},{AUTOMATION_FEATURE}"
            break
    return flags


def build_launch_flags(
    args: Sequence[str] = (),
    headless: bool | str | None = False,
    proxy: ProxyConfig | dict | None = None,
    ignore_default_flags: bool = False,
    defaults: Sequence[str] = DEFAULT_FLAGS,
) -> tuple[str, ...]:
    """Compute the ordered browser flag list.

    Order: defaults (with ``AutomationControlled`` disabled), caller
    ``args``, ``--headless=<mode>``, ``--proxy-server=host:port``.
    """
    if ignore_default_flags:
        flags: list[str] = []
    else:
        flags = _with_automation_feature(list(defaults))

    flags.extend(args)

    mode = headless_mode(headless)
    if mode is not None:
        flags.append(f"--headless={mode}")

    server = ProxyConfig.from_value(proxy).server
    if server:
        flags.append(f"--proxy-server={server}")

    return tuple(flags)
