"""Typed exceptions for veil."""


class VeilError(Exception):
    """Base exception for all veil errors."""


class LaunchError(VeilError):
    """The browser process failed to start or the client failed to connect."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Browser launch failed: {reason}")


class BrowserNotFound(LaunchError):
    """No Brave/Chrome/Chromium executable could be located."""

    def __init__(self, searched: list[str]):
        self.searched = searched
        super().__init__(
            "no Chromium-family browser found "
            f"(searched {len(searched)} locations); "
            "set VEIL_BROWSER_PATH or pass executable_path"
        )


class AttachPatchError(VeilError):
    """One page-controller step failed on a page.

    Never raised to callers; built for logging so the remaining steps
    still run and the page handle is still returned.
    """

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(
            f"Patch step {step!r} failed: {type(cause).__name__}: {cause}"
        )


class PollAttemptError(VeilError):
    """A single challenge-resolution attempt failed."""

    def __init__(self, url: str, cause: BaseException):
        self.url = url
        self.cause = cause
        super().__init__(
            f"Challenge attempt at {url} failed: "
            f"{type(cause).__name__}: {cause}"
        )


class TeardownError(VeilError):
    """Cleanup of one process-level resource failed."""

    def __init__(self, resource: str, cause: BaseException):
        self.resource = resource
        self.cause = cause
        super().__init__(
            f"Teardown of {resource} failed: {type(cause).__name__}: {cause}"
        )


class FilterListError(VeilError):
    """An ad/tracker filter list could not be fetched or compiled."""

    def __init__(self, source: str, cause: BaseException | str):
        self.source = source
        self.cause = cause
        detail = (
            cause if isinstance(cause, str)
            else f"{type(cause).__name__}: {cause}"
        )
        super().__init__(f"Filter list {source} unavailable: {detail}")
