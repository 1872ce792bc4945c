"""Exception types shared across the access notification plugins."""

from __future__ import annotations


class AccessNotifyError(Exception):
    """Base class for errors raised by the notification plugins."""


class ConnectionProblemError(AccessNotifyError):
    """Raised when the event stream cannot be established or synchronised."""


class StreamClosedError(AccessNotifyError):
    """Raised when the event stream ends without being asked to."""


class NotFoundError(AccessNotifyError):
    """Raised when a requested resource does not exist."""


class CompareFailedError(AccessNotifyError):
    """Raised when a compare-and-swap plugin data update loses a race."""


class MessageFormatError(AccessNotifyError):
    """Raised when a message template cannot be rendered."""


class ServerVersionError(AccessNotifyError):
    """Raised when the access API server is older than the plugin supports."""


class ConfigError(RuntimeError):
    """Raised when the plugin configuration is missing or malformed."""


class BotApiError(AccessNotifyError):
    """Raised when a chat platform API call fails."""

    def __init__(self, message: str, *, status_code: int | None = None, error_code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
