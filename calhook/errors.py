from __future__ import annotations


class CalhookError(RuntimeError):
    """Base class for connector failures scoped to a single invocation."""


class GoogleCalendarError(CalhookError):
    """Base class for Calendar API failures."""


class GoogleCalendarNotConfiguredError(GoogleCalendarError):
    """Raised when the API access token or base URL is missing."""


class GoogleCalendarRequestError(GoogleCalendarError):
    """Raised when the Calendar API answers with an unexpected status or the transport fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SyncProtocolError(CalhookError):
    """Raised when the change feed ends without handing out a sync token."""
