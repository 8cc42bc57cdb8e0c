"""Onebox: multi-account IMAP ingestion with classification, search and webhooks.

Public API re-exported here for convenience::

    from onebox import Onebox, OneboxConfig
"""

from .config import OneboxConfig
from .errors import (
    ClassificationError,
    MailboxConnectionError,
    NotificationError,
    OneboxError,
    ParseError,
    RateLimitedError,
    SearchIndexError,
)
from .logging import account_context, setup_logging
from .models import (
    AccountCredentials,
    Address,
    BatchOutcome,
    BulkSummary,
    DeliveryResult,
    DocumentType,
    EnrichmentOutcome,
    EnrichmentResult,
    KnowledgeMatch,
    Label,
    ReplySuggestion,
    SyncResult,
    SyncStatus,
)
from .retry import with_retry
from .service import Onebox

__all__ = [
    "AccountCredentials",
    "Address",
    "BatchOutcome",
    "BulkSummary",
    "ClassificationError",
    "DeliveryResult",
    "DocumentType",
    "EnrichmentOutcome",
    "EnrichmentResult",
    "KnowledgeMatch",
    "Label",
    "MailboxConnectionError",
    "NotificationError",
    "Onebox",
    "OneboxConfig",
    "OneboxError",
    "ParseError",
    "RateLimitedError",
    "ReplySuggestion",
    "SearchIndexError",
    "SyncResult",
    "SyncStatus",
    "account_context",
    "setup_logging",
    "with_retry",
]
