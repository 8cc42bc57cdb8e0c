"""Tests for onebox.sync."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.conftest import FakeClassifier, FakeMailbox, RecordingSleep, build_plain_email, numbered_email

from onebox.config import SyncConfig
from onebox.db import AccountStore, MessageStore
from onebox.enrichment import EnrichmentScheduler
from onebox.errors import SearchIndexError
from onebox.models import SyncStatus
from onebox.sync import SyncEngine


def _mailbox(count: int, *, seen: frozenset[int] = frozenset()) -> FakeMailbox:
    box = FakeMailbox()
    for n in range(1, count + 1):
        box.add(n, numbered_email(n), ["\\Seen"] if n in seen else [])
    return box


@pytest.fixture
def engine(account_store: AccountStore, message_store: MessageStore, sync_config: SyncConfig) -> SyncEngine:
    return SyncEngine(account_store, message_store, sync_config)


class TestInitialSync:
    @pytest.mark.asyncio
    async def test_fetches_most_recent_window(self, engine: SyncEngine, message_store: MessageStore, account):
        box = _mailbox(15)

        result = await engine.initial_sync(account, box)

        assert result.ok
        assert result.mode == "initial"
        assert box.searches == ["ALL"]
        assert box.fetched == [list(range(6, 16))]
        assert result.fetched == 10
        assert result.stored == 10
        assert await message_store.count() == 10
        assert not await message_store.exists("<msg-5@example.com>")

    @pytest.mark.asyncio
    async def test_status_returns_to_idle(self, engine: SyncEngine, account_store: AccountStore, account):
        await engine.initial_sync(account, _mailbox(2))

        loaded = await account_store.get(account.id)
        assert loaded.sync_status == SyncStatus.IDLE.value
        assert loaded.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_seen_flag_maps_to_read(self, engine: SyncEngine, message_store: MessageStore, account):
        await engine.initial_sync(account, _mailbox(2, seen={1}))

        page = await message_store.feed([account.id])
        read = {m.message_id: m.is_read for m in page.messages}
        assert read == {"<msg-1@example.com>": True, "<msg-2@example.com>": False}

    @pytest.mark.asyncio
    async def test_same_message_twice_is_stored_once(
        self, engine: SyncEngine, message_store: MessageStore, account
    ):
        box = _mailbox(3)

        first = await engine.initial_sync(account, box)
        second = await engine.initial_sync(account, box)

        assert first.stored == 3
        assert second.stored == 0
        assert second.duplicates == 3
        assert await message_store.count() == 3

    @pytest.mark.asyncio
    async def test_missing_message_id_is_synthesized_and_stored(
        self, engine: SyncEngine, message_store: MessageStore, account
    ):
        box = FakeMailbox()
        box.add(1, build_plain_email(message_id=None, body="first"))
        box.add(2, build_plain_email(message_id=None, body="second"))

        result = await engine.initial_sync(account, box)

        assert result.stored == 2
        page = await message_store.feed([account.id])
        assert all(m.message_id.startswith("<generated-") for m in page.messages)

    @pytest.mark.asyncio
    async def test_message_without_id_is_stored_once_across_reconnects(
        self, engine: SyncEngine, message_store: MessageStore, account
    ):
        box = FakeMailbox()
        box.add(
            1,
            build_plain_email(message_id=None, date=None, body="no headers"),
            internal_date=datetime(2025, 6, 2, 12, 0, tzinfo=UTC),
        )

        first = await engine.initial_sync(account, box)
        await asyncio.sleep(0.01)
        second = await engine.initial_sync(account, box)

        assert first.stored == 1
        assert second.duplicates == 1
        assert await message_store.count() == 1

    @pytest.mark.asyncio
    async def test_message_without_id_or_arrival_time_uses_date_header(
        self, engine: SyncEngine, message_store: MessageStore, account
    ):
        box = FakeMailbox()
        box.add(1, build_plain_email(message_id=None))

        await engine.initial_sync(account, box)
        await asyncio.sleep(0.01)
        await engine.initial_sync(account, box)

        assert await message_store.count() == 1

    @pytest.mark.asyncio
    async def test_parse_failure_does_not_abort_batch(
        self, engine: SyncEngine, message_store: MessageStore, account
    ):
        box = FakeMailbox()
        box.add(1, numbered_email(1))
        box.add(2, b"")
        box.add(3, numbered_email(3))

        result = await engine.initial_sync(account, box)

        assert result.fetched == 3
        assert result.stored == 2
        assert result.failed == 1
        assert result.ok

    @pytest.mark.asyncio
    async def test_fetch_failure_sets_error_status(
        self, engine: SyncEngine, account_store: AccountStore, account
    ):
        box = _mailbox(3)
        box.fail_fetch = True

        result = await engine.initial_sync(account, box)

        assert not result.ok
        assert result.error == "socket closed"
        loaded = await account_store.get(account.id)
        assert loaded.sync_status == SyncStatus.ERROR.value
        assert loaded.error_message == "socket closed"


class TestIncrementalSync:
    @pytest.mark.asyncio
    async def test_fetches_unseen_up_to_cap(self, engine: SyncEngine, message_store: MessageStore, account):
        box = _mailbox(10, seen={1, 2})

        result = await engine.incremental_sync(account, box, count=8)

        assert box.searches == ["UNSEEN"]
        assert box.fetched == [[6, 7, 8, 9, 10]]
        assert result.mode == "incremental"
        assert result.stored == 5

    @pytest.mark.asyncio
    async def test_small_count_limits_fetch(self, engine: SyncEngine, account):
        box = _mailbox(10)

        await engine.incremental_sync(account, box, count=2)

        assert box.fetched == [[9, 10]]

    @pytest.mark.asyncio
    async def test_unknown_count_uses_cap(self, engine: SyncEngine, account):
        box = _mailbox(10)

        await engine.incremental_sync(account, box, count=0)

        assert box.fetched == [[6, 7, 8, 9, 10]]


class TestDetachedWork:
    @pytest.mark.asyncio
    async def test_stored_messages_are_indexed_and_enriched(
        self,
        account_store: AccountStore,
        message_store: MessageStore,
        sync_config: SyncConfig,
        enrichment_config,
        account,
    ):
        index = MagicMock()
        index.enabled = True
        index.index_message = AsyncMock(side_effect=[None, SearchIndexError("down")])
        enrichment = EnrichmentScheduler(
            message_store, FakeClassifier(), enrichment_config, sleep=RecordingSleep()
        )
        engine = SyncEngine(account_store, message_store, sync_config, index=index, enrichment=enrichment)

        result = await engine.initial_sync(account, _mailbox(2))
        await engine.drain()
        await enrichment.drain()

        assert result.stored == 2
        assert index.index_message.await_count == 2
        assert await message_store.unenriched_ids() == []

    @pytest.mark.asyncio
    async def test_duplicates_are_not_re_enriched(
        self,
        account_store: AccountStore,
        message_store: MessageStore,
        sync_config: SyncConfig,
        enrichment_config,
        account,
    ):
        classifier = FakeClassifier()
        enrichment = EnrichmentScheduler(message_store, classifier, enrichment_config, sleep=RecordingSleep())
        engine = SyncEngine(account_store, message_store, sync_config, enrichment=enrichment)
        box = _mailbox(2)

        await engine.initial_sync(account, box)
        await enrichment.drain()
        await engine.initial_sync(account, box)
        await enrichment.drain()

        assert len(classifier.calls) == 2
