"""Onebox service: wires the pipeline together and runs it until shutdown."""

from __future__ import annotations

import asyncio
import signal
import time
import uuid
from collections import Counter
from typing import Any

import structlog
import uvicorn

from .classifier import ClassifierClient, ModelClient
from .config import OneboxConfig
from .connection import ClientFactory, ConnectionManager
from .db import (
    Account,
    AccountStore,
    Database,
    FeedPage,
    KnowledgeDocument,
    KnowledgeStore,
    Message,
    MessageStore,
    NotificationLog,
)
from .enrichment import EnrichmentScheduler
from .errors import SearchIndexError
from .health import create_health_app
from .imap_client import AsyncImapClient
from .index import IndexWriter
from .knowledge import KnowledgeBase, ReplyAssistant
from .logging import setup_logging
from .models import (
    AccountCredentials,
    BatchOutcome,
    BulkSummary,
    DeliveryResult,
    DocumentType,
    KnowledgeMatch,
    ReplySuggestion,
    ServiceStatus,
)
from .notifications import NotificationDispatcher
from .sync import SyncEngine

logger = structlog.get_logger()


class Onebox:
    """The whole pipeline behind one object.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the connection supervisor (one worker per active account)
    * a task connecting every active account at startup
    * the FastAPI health server

    The remaining methods are the administrative and read operations an
    HTTP layer would call.
    """

    def __init__(
        self,
        config: OneboxConfig,
        *,
        database: Database | None = None,
        index: IndexWriter | None = None,
        classifier: ModelClient | None = None,
        client_factory: ClientFactory = AsyncImapClient,
    ) -> None:
        self.config = config
        self.status: ServiceStatus = ServiceStatus.STARTING
        self.start_time: float = time.monotonic()
        self.counters: Counter[str] = Counter()

        self.db = database or Database(config.database)
        self.accounts = AccountStore(self.db.session)
        self.messages = MessageStore(self.db.session)
        self.notification_log = NotificationLog(self.db.session)
        self.index = index or IndexWriter(config.elasticsearch)

        self._owned_classifier = ClassifierClient(config.classifier) if classifier is None else None
        self.classifier: ModelClient = classifier or self._owned_classifier

        self.knowledge_store = KnowledgeStore(self.db.session)
        self.knowledge = KnowledgeBase(self.knowledge_store, self.classifier, config.knowledge)
        self.replies = ReplyAssistant(self.messages, self.knowledge, self.classifier, config.knowledge)

        self.dispatcher = NotificationDispatcher(config.notifications, self.notification_log)
        self.enrichment = EnrichmentScheduler(
            self.messages,
            self.classifier,
            config.enrichment,
            dispatcher=self.dispatcher,
            index=self.index,
            max_body_chars=config.classifier.max_body_chars,
        )
        self.sync = SyncEngine(
            self.accounts,
            self.messages,
            config.sync,
            index=self.index,
            enrichment=self.enrichment,
        )
        self.connections = ConnectionManager(
            self.sync,
            self.accounts,
            config.sync,
            client_factory=client_factory,
        )
        self.connections.on_new_messages(self._on_new_messages)
        self.connections.on_connection_ended(self._on_connection_ended)

        self._shutdown_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def startup(self) -> None:
        """Create the schema and open every outbound client."""
        await self.db.create_schema()
        try:
            await self.index.ensure_index()
        except SearchIndexError as exc:
            logger.warning("search_index_unavailable", error=str(exc))
        if self._owned_classifier is not None:
            await self._owned_classifier.start()
        await self.dispatcher.start()

    async def shutdown(self) -> None:
        self.status = ServiceStatus.STOPPING
        await self.connections.stop()
        await self.sync.aclose()
        await self.enrichment.aclose()
        await self.dispatcher.stop()
        if self._owned_classifier is not None:
            await self._owned_classifier.stop()
        await self.index.close()
        await self.db.close()
        self.status = ServiceStatus.STOPPED

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def _handle(sig: signal.Signals) -> None:
            logger.info("shutdown_signal_received", signal=sig.name)
            self._shutdown_event.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _handle, sig)

    async def run(self) -> None:
        """Start all subsystems and run until SIGTERM / SIGINT.

        The single entry point::

            asyncio.run(Onebox(OneboxConfig()).run())
        """
        setup_logging(service=self.config.name, json=self.config.log_json, level=self.config.log_level)
        self._install_signal_handlers()
        self.start_time = time.monotonic()
        logger.info("onebox_starting", service=self.config.name)

        await self.startup()
        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self.connections.run())
                tg.create_task(self._connect_active_accounts())
                tg.create_task(self._run_health_server())
                tg.create_task(self._stop_on_shutdown())
        except* Exception:
            self.status = ServiceStatus.DEGRADED
            logger.exception("onebox_task_group_error", service=self.config.name)
        finally:
            await self.shutdown()
            logger.info("onebox_stopped", service=self.config.name)

    async def _connect_active_accounts(self) -> None:
        accounts = await self.accounts.list_active()
        for account in accounts:
            await self.connections.connect(account)
        self.status = ServiceStatus.RUNNING
        logger.info("onebox_running", accounts=len(accounts))

    async def _stop_on_shutdown(self) -> None:
        await self._shutdown_event.wait()
        self.status = ServiceStatus.STOPPING
        await self.connections.stop()

    async def _run_health_server(self) -> None:
        """Start the FastAPI health server and shut it down on signal."""
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Connection events
    # ------------------------------------------------------------------

    def _on_new_messages(self, account_id: uuid.UUID, count: int) -> None:
        self.counters["new_mail_events"] += 1
        self.counters["new_mail_announced"] += count

    def _on_connection_ended(self, account_id: uuid.UUID, reason: str) -> None:
        self.counters["connection_drops"] += 1

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def add_account(
        self,
        email: str,
        credentials: AccountCredentials,
        *,
        is_active: bool = True,
    ) -> Account:
        account = await self.accounts.create(email, credentials, is_active=is_active)
        logger.info("account_added", account=email, active=is_active)
        if is_active and self.connections.running:
            await self.connections.connect(account)
        return account

    async def set_account_active(self, account_id: uuid.UUID, active: bool) -> Account | None:
        """Enable or disable ingestion for one account.

        Disabling stops the account's worker; enrichment and
        notifications already scheduled for its messages still complete.
        """
        account = await self.accounts.set_active(account_id, active)
        if account is None:
            return None
        if self.connections.running:
            if active:
                await self.connections.connect(account)
            else:
                await self.connections.disconnect(account_id)
        logger.info("account_active_changed", account=account.email, active=active)
        return account

    async def delete_account(self, account_id: uuid.UUID) -> bool:
        """Stop the worker, then remove the account's documents and rows."""
        if self.connections.running:
            await self.connections.disconnect(account_id)
        try:
            await self.index.delete_account(account_id)
        except SearchIndexError as exc:
            logger.warning("index_account_delete_failed", account_id=str(account_id), error=str(exc))
        deleted = await self.accounts.delete(account_id)
        logger.info("account_deleted", account_id=str(account_id), deleted=deleted)
        return deleted

    async def force_sync(self, account_id: uuid.UUID) -> bool:
        """Reconnect the account now; the fresh session runs an initial sync."""
        account = await self.accounts.get(account_id)
        if account is None or not account.is_active or not self.connections.running:
            return False
        await self.connections.connect(account)
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def open_message(self, message_pk: uuid.UUID) -> Message | None:
        """Return a message and mark it read in the store and the index."""
        message = await self.messages.mark_read(message_pk)
        if message is None:
            return None
        try:
            await self.index.update_message(message, {"isRead": True})
        except SearchIndexError as exc:
            logger.warning("index_update_failed", message_pk=str(message_pk), error=str(exc))
        return message

    async def feed(self, *, page: int = 1, per_account: int = 5, **filters: Any) -> FeedPage:
        accounts = await self.accounts.list_active()
        return await self.messages.feed(
            [a.id for a in accounts],
            page=page,
            per_account=per_account,
            **filters,
        )

    async def search(self, q: str | None = None, **filters: Any) -> dict[str, Any]:
        return await self.index.search(q, **filters)

    async def overview(self) -> dict[str, Any]:
        overview = await self.messages.overview()
        try:
            overview["index"] = await self.index.stats()
        except SearchIndexError as exc:
            logger.warning("index_stats_failed", error=str(exc))
            overview["index"] = None
        return overview

    # ------------------------------------------------------------------
    # Enrichment and notifications
    # ------------------------------------------------------------------

    async def enrich_batch(self, message_pks: list[uuid.UUID]) -> BatchOutcome:
        return await self.enrichment.enrich_batch(message_pks)

    async def recategorize_all(self) -> BatchOutcome:
        return await self.enrichment.recategorize_unenriched()

    async def bulk_notify(
        self,
        message_pks: list[uuid.UUID],
        event: str = "bulk_email_processed",
    ) -> BulkSummary:
        messages = await self.messages.get_many(message_pks)
        return await self.dispatcher.send_bulk_notification(messages, event=event)

    async def send_test_notification(self, url: str | None = None) -> DeliveryResult:
        return await self.dispatcher.send_test(url)

    # ------------------------------------------------------------------
    # Knowledge base and replies
    # ------------------------------------------------------------------

    async def add_knowledge(
        self,
        content: str,
        doc_type: DocumentType,
        **metadata: Any,
    ) -> KnowledgeDocument:
        return await self.knowledge.add_document(content, doc_type, **metadata)

    async def search_knowledge(
        self,
        query: str,
        *,
        doc_type: DocumentType | None = None,
        limit: int = 5,
    ) -> list[KnowledgeMatch]:
        return await self.knowledge.search_similar(query, doc_type=doc_type, limit=limit)

    async def seed_knowledge(self) -> int:
        return await self.knowledge.seed_defaults()

    async def suggest_reply(
        self,
        message_pk: uuid.UUID,
        *,
        user_context: str | None = None,
    ) -> ReplySuggestion | None:
        return await self.replies.suggest_reply(message_pk, user_context=user_context)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> tuple[dict[str, str], dict[str, Any]]:
        """Per-account sync status and service details for the probe."""
        accounts = await self.accounts.list_active()
        workers = self.connections.workers
        details = {
            "workers": len(workers),
            "connected": sum(1 for w in workers.values() if w.connected),
            "pending_enrichment": self.enrichment.pending,
            "index_available": await self.index.ping(),
            **self.counters,
        }
        return {a.email: a.sync_status for a in accounts}, details
