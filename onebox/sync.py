"""Sync engine: pulls a bounded window of messages and persists new ones."""

from __future__ import annotations

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .config import SyncConfig
from .db.models import Account, Message
from .db.store import AccountStore, MessageStore
from .enrichment import EnrichmentScheduler
from .errors import MailboxConnectionError, ParseError, SearchIndexError
from .imap_client import FetchedMessage, MailboxClient
from .index import IndexWriter
from .models import SyncResult
from .parser import MimeParser
from .tasks import TaskTracker

logger = structlog.get_logger()

INITIAL = "initial"
INCREMENTAL = "incremental"


class SyncEngine:
    """Runs initial and incremental sync passes for one account at a time.

    Status moves ``idle -> syncing -> idle | error``.  Each fetched
    message is handled on its own: a parse failure or a duplicate never
    aborts the rest of the batch.  Index writes and enrichment are
    detached from the pass.
    """

    def __init__(
        self,
        accounts: AccountStore,
        messages: MessageStore,
        config: SyncConfig,
        *,
        parser: MimeParser | None = None,
        index: IndexWriter | None = None,
        enrichment: EnrichmentScheduler | None = None,
        tasks: TaskTracker | None = None,
    ) -> None:
        self._accounts = accounts
        self._messages = messages
        self._config = config
        self._parser = parser or MimeParser()
        self._index = index
        self._enrichment = enrichment
        self._tasks = tasks or TaskTracker("indexing")

    async def initial_sync(self, account: Account, client: MailboxClient) -> SyncResult:
        """Process the most recent ``initial_window`` messages of the mailbox."""
        return await self._run(account, client, INITIAL, "ALL", self._config.initial_window)

    async def incremental_sync(self, account: Account, client: MailboxClient, count: int) -> SyncResult:
        """Process up to ``min(count, incremental_cap)`` of the newest unseen messages."""
        cap = self._config.incremental_cap
        limit = min(count, cap) if count > 0 else cap
        return await self._run(account, client, INCREMENTAL, "UNSEEN", limit)

    async def _run(
        self,
        account: Account,
        client: MailboxClient,
        mode: str,
        criteria: str,
        limit: int,
    ) -> SyncResult:
        log = logger.bind(mode=mode)
        result = SyncResult(account_id=account.id, mode=mode)
        await self._accounts.mark_syncing(account.id)

        try:
            uids = await client.search(criteria)
            fetched = await client.fetch(uids[-limit:] if limit > 0 else [])
        except MailboxConnectionError as exc:
            result.error = str(exc)
            await self._accounts.mark_error(account.id, result.error)
            log.error("sync_fetch_failed", error=result.error)
            return result

        result.fetched = len(fetched)
        for item in fetched:
            await self._ingest(account, item, result)

        await self._accounts.mark_idle(account.id)
        log.info(
            "sync_complete",
            fetched=result.fetched,
            stored=result.stored,
            duplicates=result.duplicates,
            failed=result.failed,
        )
        return result

    async def _ingest(self, account: Account, item: FetchedMessage, result: SyncResult) -> None:
        try:
            parsed = self._parser.parse(item.raw_bytes, arrived_at=item.internal_date)
        except ParseError as exc:
            result.failed += 1
            logger.warning("message_parse_failed", uid=item.uid, error=str(exc))
            return

        try:
            if await self._messages.exists(parsed.message_id):
                result.duplicates += 1
                return
            message = await self._messages.insert(
                account,
                parsed,
                uid=item.uid,
                flags=item.flags,
                folder=self._config.mailbox,
            )
        except SQLAlchemyError as exc:
            result.failed += 1
            logger.error("message_store_failed", uid=item.uid, error=str(exc))
            return

        if message is None:
            result.duplicates += 1
            return

        result.stored += 1
        logger.debug(
            "message_stored",
            uid=item.uid,
            message_id=parsed.message_id,
            synthesized_id=parsed.synthesized_id,
        )
        self._detach(message)

    def _detach(self, message: Message) -> None:
        if self._index is not None and self._index.enabled:
            self._tasks.spawn(self._index_message(message), name=f"index-{message.id}")
        if self._enrichment is not None:
            self._enrichment.submit(message.id)

    async def _index_message(self, message: Message) -> None:
        try:
            await self._index.index_message(message)
        except SearchIndexError as exc:
            logger.warning("index_write_failed", message_pk=str(message.id), error=str(exc))

    async def drain(self) -> None:
        await self._tasks.drain()

    async def aclose(self) -> None:
        await self._tasks.cancel()
