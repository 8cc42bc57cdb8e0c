"""SQLAlchemy ORM models: accounts, messages, the webhook delivery log and
the knowledge base used for reply suggestions.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from onebox.models import AccountCredentials, Address, Label, SyncStatus


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    imap_host: Mapped[str] = mapped_column(Text, nullable=False)
    imap_port: Mapped[int] = mapped_column(Integer, nullable=False, default=993)
    imap_use_ssl: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    imap_username: Mapped[str] = mapped_column(Text, nullable=False)
    imap_password: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SyncStatus.IDLE.value
    )
    last_sync_at: Mapped[datetime | None] = mapped_column()
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow, onupdate=_utcnow)

    messages: Mapped[list[Message]] = relationship(
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def credentials(self) -> AccountCredentials:
        return AccountCredentials(
            host=self.imap_host,
            port=self.imap_port,
            use_ssl=self.imap_use_ssl,
            username=self.imap_username,
            password=self.imap_password,
        )


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_account_folder_date", "account_id", "folder", "date"),
        Index("ix_messages_ai_label", "ai_label"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    account_email: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    from_name: Mapped[str | None] = mapped_column(Text)
    from_address: Mapped[str | None] = mapped_column(Text)
    to_addresses: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    cc_addresses: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    date: Mapped[datetime] = mapped_column(nullable=False)
    body_text: Mapped[str | None] = mapped_column(Text)
    body_html: Mapped[str | None] = mapped_column(Text)
    folder: Mapped[str] = mapped_column(String(255), nullable=False, default="INBOX")
    flags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    uid: Mapped[int] = mapped_column(Integer, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attachments: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    ai_label: Mapped[str | None] = mapped_column(String(32))
    ai_confidence: Mapped[float | None] = mapped_column(Float)
    ai_reasoning: Mapped[str | None] = mapped_column(Text)
    enriched_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow, onupdate=_utcnow)

    account: Mapped[Account] = relationship(back_populates="messages")

    @property
    def sender(self) -> Address | None:
        if not self.from_address:
            return None
        return Address(name=self.from_name, address=self.from_address)

    @property
    def label(self) -> Label | None:
        return Label(self.ai_label) if self.ai_label else None

    def classification_text(self, max_body_chars: int = 2000) -> str:
        """Render the fields the classifier looks at."""
        sender = self.from_address or "unknown"
        if self.from_name:
            sender = f"{self.from_name} <{sender}>"
        body = (self.body_text or "")[:max_body_chars]
        return f"From: {sender}\nSubject: {self.subject}\n\n{body}"

    def to_document(self) -> dict[str, Any]:
        """Search-index projection of this message."""
        return {
            "messageId": self.message_id,
            "accountId": str(self.account_id),
            "accountEmail": self.account_email,
            "subject": self.subject,
            "from": {"name": self.from_name, "address": self.from_address},
            "to": self.to_addresses,
            "cc": self.cc_addresses,
            "body_text": self.body_text,
            "folder": self.folder,
            "flags": self.flags,
            "uid": self.uid,
            "isRead": self.is_read,
            "aiCategory": self.ai_label,
            "aiConfidence": self.ai_confidence,
            "date": self.date.isoformat(),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class NotificationRecord(Base):
    __tablename__ = "notification_records"
    __table_args__ = (
        Index("ix_notification_records_status_sent", "status", "sent_at"),
        Index("ix_notification_records_event_sent", "event", "sent_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    event: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status_code: Mapped[int | None] = mapped_column(Integer)
    error_message: Mapped[str | None] = mapped_column(Text)
    response_time_ms: Mapped[float | None] = mapped_column(Float)
    sent_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow, onupdate=_utcnow)


class KnowledgeDocument(Base):
    __tablename__ = "knowledge_documents"
    __table_args__ = (
        Index("ix_knowledge_documents_type", "doc_type"),
        Index("ix_knowledge_documents_category", "category"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(JSON, nullable=False)
    doc_type: Mapped[str] = mapped_column(String(16), nullable=False)
    category: Mapped[str | None] = mapped_column(String(64))
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow, onupdate=_utcnow)
