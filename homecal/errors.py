"""
Error taxonomy for the sync engine.

Errors that carry an HTTP status embed it as ``HTTP <status>`` in the message
so the retry classifier can inspect any error uniformly.
"""

from typing import Any, Optional


class CalendarError(Exception):
    """Base class for all engine errors."""


class ValidationError(CalendarError):
    """Bad input shape. Never retried."""


class WriteNotAllowedError(CalendarError):
    """Global write switch is off or the source's write policy forbids it."""


class QuotaExceededError(CalendarError):
    """The source's write bucket is empty."""

    def __init__(self, source_id: str, remaining: float = 0.0):
        super().__init__(f"Write quota exceeded for source {source_id}")
        self.source_id = source_id
        self.remaining = remaining


class ConflictError(CalendarError):
    """
    Remote optimistic-concurrency failure (HTTP 412).

    Attributes:
        before: the locally known state of the event before the write
        attempted: the changes that were being written
        remote_summary: human-readable description of the conflict
    """

    def __init__(
        self,
        message: str,
        before: Optional[dict[str, Any]] = None,
        attempted: Optional[dict[str, Any]] = None,
        remote_summary: str = "",
    ):
        super().__init__(message)
        self.before = before or {}
        self.attempted = attempted or {}
        self.remote_summary = remote_summary


class NotFoundError(CalendarError):
    """Unknown source, event or todo id."""


class FetchError(CalendarError):
    """Reading a remote feed or calendar failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RemoteWriteError(CalendarError):
    """A CalDAV PUT/DELETE came back with an unexpected status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


AUTH_MARKERS = ("401", "invalid_grant", "unauthorized", "authorizationerror")


def is_auth_message(text: Optional[str]) -> bool:
    if not text:
        return False
    text = text.lower()
    return any(marker in text for marker in AUTH_MARKERS)


def is_auth_error(exc: BaseException) -> bool:
    """True for 401 / invalid_grant / AuthorizationError-style failures."""
    if type(exc).__name__ == "AuthorizationError":
        return True
    if getattr(exc, "status", None) == 401:
        return True
    return is_auth_message(str(exc))
