"""Exception taxonomy for the ingestion / enrichment / notification pipeline."""

from __future__ import annotations


class OneboxError(Exception):
    """Base class for all pipeline errors."""


class MailboxConnectionError(OneboxError):
    """The remote mailbox is unreachable, rejected the login, or dropped the session."""


class ParseError(OneboxError):
    """Raw message bytes could not be turned into a structured message."""


class ClassificationError(OneboxError):
    """The classification capability failed or returned an unusable answer."""


class RateLimitedError(ClassificationError):
    """The classification capability asked us to slow down (HTTP 429)."""

    def __init__(self, message: str = "rate limited", *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class NotificationError(OneboxError):
    """An outbound webhook could not be delivered."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SearchIndexError(OneboxError):
    """The search index rejected or could not perform an operation."""
