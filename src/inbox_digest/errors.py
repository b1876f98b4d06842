"""
Exception hierarchy for inbox-digest.
"""


class InboxDigestError(Exception):
    """Base class for all inbox-digest errors."""


class GatewayError(InboxDigestError):
    """The source gateway command failed, timed out or could not be started."""

    def __init__(self, message: str, args_preview: str = "", returncode: int | None = None):
        super().__init__(message)
        self.args_preview = args_preview
        self.returncode = returncode


class SyncError(InboxDigestError):
    """Synchronization of one account was aborted for this cycle."""

    def __init__(self, account: str, message: str):
        super().__init__(f"{account}: {message}")
        self.account = account


class InvalidRequestError(InboxDigestError):
    """A consumer-facing request had invalid parameters."""
