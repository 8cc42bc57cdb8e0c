"""Repositories over the primary store.

Each repository receives the session factory at construction time; all
writes are per-row and never span several messages in one transaction.
"""

from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from onebox.models import (
    AccountCredentials,
    DocumentType,
    EnrichmentResult,
    NotificationStatus,
    SyncStatus,
)
from onebox.parser import ParsedMessage

from .models import Account, KnowledgeDocument, Message, NotificationRecord

logger = structlog.get_logger()

SessionFactory = async_sessionmaker[AsyncSession]


class AccountStore:
    """Accounts and their sync-status transitions."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session = session_factory

    async def create(
        self,
        email: str,
        credentials: AccountCredentials,
        *,
        is_active: bool = True,
    ) -> Account:
        account = Account(
            email=email,
            imap_host=credentials.host,
            imap_port=credentials.port,
            imap_use_ssl=credentials.use_ssl,
            imap_username=credentials.username,
            imap_password=credentials.password.get_secret_value(),
            is_active=is_active,
            sync_status=SyncStatus.IDLE.value,
        )
        async with self._session() as session:
            session.add(account)
            await session.commit()
        return account

    async def get(self, account_id: uuid.UUID) -> Account | None:
        async with self._session() as session:
            return await session.get(Account, account_id)

    async def list_active(self) -> list[Account]:
        async with self._session() as session:
            result = await session.execute(
                select(Account).where(Account.is_active.is_(True)).order_by(Account.email)
            )
            return list(result.scalars().all())

    async def set_active(self, account_id: uuid.UUID, active: bool) -> Account | None:
        async with self._session() as session:
            account = await session.get(Account, account_id)
            if account is None:
                return None
            account.is_active = active
            await session.commit()
            return account

    async def mark_syncing(self, account_id: uuid.UUID) -> None:
        await self._set_status(account_id, sync_status=SyncStatus.SYNCING.value)

    async def mark_idle(self, account_id: uuid.UUID) -> None:
        await self._set_status(
            account_id,
            sync_status=SyncStatus.IDLE.value,
            last_sync_at=datetime.now(UTC),
            error_message=None,
        )

    async def mark_error(self, account_id: uuid.UUID, error: str) -> None:
        await self._set_status(
            account_id,
            sync_status=SyncStatus.ERROR.value,
            error_message=error,
        )

    async def _set_status(self, account_id: uuid.UUID, **values: Any) -> None:
        async with self._session() as session:
            await session.execute(update(Account).where(Account.id == account_id).values(**values))
            await session.commit()

    async def delete(self, account_id: uuid.UUID) -> bool:
        """Delete an account and every message it owns."""
        async with self._session() as session:
            await session.execute(delete(Message).where(Message.account_id == account_id))
            result = await session.execute(delete(Account).where(Account.id == account_id))
            await session.commit()
            return result.rowcount > 0


@dataclass
class FeedPage:
    """One page of the merged multi-account feed."""

    messages: list[Message]
    page: int
    per_account: int
    total: int
    has_more: bool
    per_account_totals: dict[str, int] = field(default_factory=dict)


class MessageStore:
    """Messages, keyed for dedup on ``message_id``."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session = session_factory

    async def exists(self, message_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                select(Message.id).where(Message.message_id == message_id).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def insert(
        self,
        account: Account,
        parsed: ParsedMessage,
        *,
        uid: int,
        flags: list[str],
        folder: str = "INBOX",
    ) -> Message | None:
        """Persist *parsed*; returns ``None`` when ``message_id`` already exists."""
        message = Message(
            message_id=parsed.message_id,
            account_id=account.id,
            account_email=account.email,
            subject=parsed.subject,
            from_name=parsed.from_address.name if parsed.from_address else None,
            from_address=parsed.from_address.address if parsed.from_address else None,
            to_addresses=[a.model_dump() for a in parsed.to],
            cc_addresses=[a.model_dump() for a in parsed.cc],
            date=parsed.date,
            body_text=parsed.body_text,
            body_html=parsed.body_html,
            folder=folder,
            flags=list(flags),
            uid=uid,
            is_read="\\Seen" in flags,
            attachments=[a.model_dump() for a in parsed.attachments],
        )
        async with self._session() as session:
            session.add(message)
            try:
                await session.commit()
            except IntegrityError:
                # Lost the race against a concurrent insert of the same message.
                await session.rollback()
                return None
        return message

    async def get(self, message_pk: uuid.UUID) -> Message | None:
        async with self._session() as session:
            return await session.get(Message, message_pk)

    async def get_many(self, message_pks: list[uuid.UUID]) -> list[Message]:
        if not message_pks:
            return []
        async with self._session() as session:
            result = await session.execute(select(Message).where(Message.id.in_(message_pks)))
            return list(result.scalars().all())

    async def mark_read(self, message_pk: uuid.UUID) -> Message | None:
        async with self._session() as session:
            message = await session.get(Message, message_pk)
            if message is None:
                return None
            if not message.is_read:
                message.is_read = True
                await session.commit()
            return message

    async def set_enrichment(
        self,
        message_pk: uuid.UUID,
        result: EnrichmentResult,
    ) -> Message | None:
        """Overwrite label / confidence / reasoning of one message."""
        async with self._session() as session:
            message = await session.get(Message, message_pk)
            if message is None:
                return None
            message.ai_label = result.label.value
            message.ai_confidence = result.confidence
            message.ai_reasoning = result.reasoning
            message.enriched_at = datetime.now(UTC)
            await session.commit()
            return message

    async def unenriched_ids(self, limit: int | None = None) -> list[uuid.UUID]:
        stmt = (
            select(Message.id)
            .where(Message.ai_label.is_(None))
            .order_by(Message.date.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count(self, **filters: Any) -> int:
        stmt = select(func.count(Message.id))
        for clause in _filter_clauses(**filters):
            stmt = stmt.where(clause)
        async with self._session() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def list_for_account(
        self,
        account_id: uuid.UUID,
        *,
        offset: int = 0,
        limit: int = 20,
        **filters: Any,
    ) -> list[Message]:
        stmt = select(Message).where(Message.account_id == account_id)
        for clause in _filter_clauses(**filters):
            stmt = stmt.where(clause)
        stmt = stmt.order_by(Message.date.desc()).offset(offset).limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def feed(
        self,
        account_ids: list[uuid.UUID],
        *,
        page: int = 1,
        per_account: int = 5,
        **filters: Any,
    ) -> FeedPage:
        """Merged newest-first feed taking ``per_account`` messages per account.

        ``total`` is the true aggregate count across accounts, and
        ``has_more`` is set when any account still has messages beyond
        this page.
        """
        page = max(page, 1)
        offset = (page - 1) * per_account
        messages: list[Message] = []
        totals: dict[str, int] = {}

        for account_id in account_ids:
            messages.extend(
                await self.list_for_account(
                    account_id, offset=offset, limit=per_account, **filters
                )
            )
            totals[str(account_id)] = await self.count(account_id=account_id, **filters)

        messages.sort(key=lambda m: m.date, reverse=True)
        return FeedPage(
            messages=messages,
            page=page,
            per_account=per_account,
            total=sum(totals.values()),
            has_more=any(count > page * per_account for count in totals.values()),
            per_account_totals=totals,
        )

    async def overview(self) -> dict[str, Any]:
        """Totals by read state, label and account."""
        async with self._session() as session:
            total = (await session.execute(select(func.count(Message.id)))).scalar_one()
            unread = (
                await session.execute(
                    select(func.count(Message.id)).where(Message.is_read.is_(False))
                )
            ).scalar_one()
            by_label = (
                await session.execute(
                    select(Message.ai_label, func.count(Message.id)).group_by(Message.ai_label)
                )
            ).all()
            by_account = (
                await session.execute(
                    select(Message.account_email, func.count(Message.id)).group_by(
                        Message.account_email
                    )
                )
            ).all()
        return {
            "total": int(total),
            "unread": int(unread),
            "by_label": {(label or "Uncategorized"): int(n) for label, n in by_label},
            "by_account": {account: int(n) for account, n in by_account},
        }


def _filter_clauses(
    *,
    account_id: uuid.UUID | None = None,
    folder: str | None = None,
    label: str | None = None,
    is_read: bool | None = None,
) -> list:
    clauses = []
    if account_id is not None:
        clauses.append(Message.account_id == account_id)
    if folder:
        clauses.append(Message.folder == folder)
    if label:
        clauses.append(Message.ai_label == label)
    if is_read is not None:
        clauses.append(Message.is_read.is_(is_read))
    return clauses


class NotificationLog:
    """Delivery log of outbound webhook attempts."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session = session_factory

    async def create(self, url: str, event: str, payload: dict[str, Any]) -> NotificationRecord:
        record = NotificationRecord(
            url=url,
            event=event,
            payload=payload,
            status=NotificationStatus.PENDING.value,
            attempts=0,
        )
        async with self._session() as session:
            session.add(record)
            await session.commit()
        return record

    async def update(
        self,
        record_id: uuid.UUID,
        *,
        status: NotificationStatus,
        attempts: int,
        status_code: int | None = None,
        error_message: str | None = None,
        response_time_ms: float | None = None,
    ) -> None:
        async with self._session() as session:
            await session.execute(
                update(NotificationRecord)
                .where(NotificationRecord.id == record_id)
                .values(
                    status=status.value,
                    attempts=attempts,
                    status_code=status_code,
                    error_message=error_message,
                    response_time_ms=response_time_ms,
                )
            )
            await session.commit()

    async def get(self, record_id: uuid.UUID) -> NotificationRecord | None:
        async with self._session() as session:
            return await session.get(NotificationRecord, record_id)

    async def stats(self, *, recent_errors: int = 5) -> dict[str, Any]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(NotificationRecord.status, func.count(NotificationRecord.id)).group_by(
                        NotificationRecord.status
                    )
                )
            ).all()
            last_sent = (
                await session.execute(select(func.max(NotificationRecord.sent_at)))
            ).scalar_one_or_none()
            errors = (
                await session.execute(
                    select(NotificationRecord.error_message)
                    .where(NotificationRecord.status == NotificationStatus.FAILED.value)
                    .order_by(NotificationRecord.sent_at.desc())
                    .limit(recent_errors)
                )
            ).scalars().all()

        counts = Counter({status: int(n) for status, n in rows})
        finished = counts[NotificationStatus.SUCCESS.value] + counts[NotificationStatus.FAILED.value]
        return {
            "total_sent": sum(counts.values()),
            "successful": counts[NotificationStatus.SUCCESS.value],
            "failed": counts[NotificationStatus.FAILED.value],
            "pending": counts[NotificationStatus.PENDING.value],
            "success_rate": (counts[NotificationStatus.SUCCESS.value] / finished) if finished else 0.0,
            "last_sent": last_sent,
            "errors": [e for e in errors if e],
        }


class KnowledgeStore:
    """Knowledge-base documents together with their embeddings."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session = session_factory

    async def add(
        self,
        content: str,
        embedding: list[float],
        doc_type: DocumentType,
        *,
        category: str | None = None,
        tags: list[str] | None = None,
        priority: int = 1,
    ) -> KnowledgeDocument:
        document = KnowledgeDocument(
            content=content,
            embedding=list(embedding),
            doc_type=doc_type.value,
            category=category,
            tags=list(tags or []),
            priority=priority,
        )
        async with self._session() as session:
            session.add(document)
            await session.commit()
        return document

    async def get(self, document_id: uuid.UUID) -> KnowledgeDocument | None:
        async with self._session() as session:
            return await session.get(KnowledgeDocument, document_id)

    async def update(
        self,
        document_id: uuid.UUID,
        content: str,
        embedding: list[float],
        **metadata: Any,
    ) -> KnowledgeDocument | None:
        """Replace content and embedding; *metadata* overwrites the given columns only."""
        async with self._session() as session:
            document = await session.get(KnowledgeDocument, document_id)
            if document is None:
                return None
            document.content = content
            document.embedding = list(embedding)
            for key in ("category", "tags", "priority"):
                if key in metadata:
                    setattr(document, key, metadata[key])
            if "doc_type" in metadata:
                document.doc_type = DocumentType(metadata["doc_type"]).value
            await session.commit()
            return document

    async def delete(self, document_id: uuid.UUID) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(KnowledgeDocument).where(KnowledgeDocument.id == document_id)
            )
            await session.commit()
            return result.rowcount > 0

    async def list_documents(self, doc_type: DocumentType | None = None) -> list[KnowledgeDocument]:
        """Documents ordered by priority, newest first within a priority."""
        stmt = select(KnowledgeDocument).order_by(
            KnowledgeDocument.priority.desc(), KnowledgeDocument.created_at.desc()
        )
        if doc_type is not None:
            stmt = stmt.where(KnowledgeDocument.doc_type == doc_type.value)
        async with self._session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count(self) -> int:
        async with self._session() as session:
            result = await session.execute(select(func.count(KnowledgeDocument.id)))
            return int(result.scalar_one())
