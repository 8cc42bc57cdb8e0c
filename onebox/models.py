"""Data models shared across the onebox pipeline."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0


class SyncStatus(str, Enum):
    """Per-account sync state machine: idle -> syncing -> idle | error."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class Label(str, Enum):
    """Closed set of classification labels."""

    INTERESTED = "Interested"
    MEETING_BOOKED = "Meeting Booked"
    NOT_INTERESTED = "Not Interested"
    SPAM = "Spam"
    OUT_OF_OFFICE = "Out of Office"

    @classmethod
    def parse(cls, value: str) -> Label:
        """Accept the wire form (``"Meeting Booked"``) as well as
        ``MeetingBooked`` / ``meeting_booked`` spellings.
        """
        key = "".join(ch for ch in value.lower() if ch.isalnum())
        for label in cls:
            if key == "".join(ch for ch in label.value.lower() if ch.isalnum()):
                return label
        raise ValueError(f"Unknown label: {value!r}")


NOTABLE_LABEL = Label.INTERESTED


class ServiceStatus(str, Enum):
    """Lifecycle state of the running service."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class Address(BaseModel):
    """A mailbox address with an optional display name."""

    name: str | None = Field(default=None, description="Display name")
    address: str = Field(description="RFC 5322 addr-spec")


class AttachmentInfo(BaseModel):
    """Attachment metadata; payloads are never stored."""

    filename: str
    content_type: str
    size: int = Field(ge=0)


class AccountCredentials(BaseModel):
    """IMAP connection credentials for one account."""

    host: str
    port: int = 993
    use_ssl: bool = True
    username: str
    password: SecretStr


class EnrichmentResult(BaseModel):
    """Classification output written back onto a message."""

    label: Label
    confidence: float
    reasoning: str | None = None

    @field_validator("label", mode="before")
    @classmethod
    def _coerce_label(cls, value: Any) -> Any:
        if isinstance(value, str) and not isinstance(value, Label):
            return Label.parse(value)
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, float(value)))


class SyncResult(BaseModel):
    """Outcome of one sync pass for one account."""

    account_id: uuid.UUID
    mode: str = Field(description="initial or incremental")
    fetched: int = 0
    stored: int = 0
    duplicates: int = 0
    failed: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class EnrichmentOutcome(BaseModel):
    """Outcome of classifying a single message."""

    message_id: uuid.UUID
    result: EnrichmentResult | None = None
    error: str | None = None
    rate_limited: bool = False
    notified: bool = False

    @property
    def ok(self) -> bool:
        return self.result is not None and self.error is None


class BatchOutcome(BaseModel):
    """Aggregate of a batch enrichment run."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    results: list[EnrichmentOutcome] = Field(default_factory=list)


class DeliveryResult(BaseModel):
    """Outcome of delivering one webhook (after retries)."""

    url: str
    event: str
    success: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None
    record_id: uuid.UUID | None = None


class BulkSummary(BaseModel):
    """Summary payload aggregating many messages into one notification."""

    total: int
    by_category: dict[str, int]
    by_account: dict[str, int]
    processed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DocumentType(str, Enum):
    """Kinds of knowledge-base documents used as reply context."""

    PRODUCT = "product"
    OUTREACH = "outreach"
    TEMPLATE = "template"
    KNOWLEDGE = "knowledge"


class KnowledgeMatch(BaseModel):
    """A knowledge-base document scored against a query."""

    id: uuid.UUID
    content: str
    doc_type: DocumentType
    category: str | None = None
    similarity: float


class ReplySource(BaseModel):
    content: str = Field(description="First 100 characters of the document")
    doc_type: DocumentType
    similarity: float


class ReplySuggestion(BaseModel):
    """A drafted reply plus the context it was grounded on."""

    reply: str
    confidence: float
    reasoning: str
    sources: list[ReplySource] = Field(default_factory=list)


class HealthStatus(BaseModel):
    """Response model for the /health probe."""

    service: str
    status: ServiceStatus
    uptime_seconds: float
    accounts: dict[str, str] = Field(
        default_factory=dict,
        description="Account email -> sync status of every supervised worker",
    )
    details: dict[str, Any] = Field(default_factory=dict)
