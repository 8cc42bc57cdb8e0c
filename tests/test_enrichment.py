"""Tests for onebox.enrichment."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.conftest import FakeClassifier, RecordingSleep, numbered_email

from onebox.config import EnrichmentConfig
from onebox.db import MessageStore
from onebox.enrichment import EnrichmentScheduler
from onebox.errors import ClassificationError, RateLimitedError, SearchIndexError
from onebox.models import EnrichmentResult, Label
from onebox.parser import MimeParser

parser = MimeParser()


async def _store_many(message_store: MessageStore, account, count: int) -> list[uuid.UUID]:
    pks = []
    for n in range(1, count + 1):
        message = await message_store.insert(account, parser.parse(numbered_email(n, day=1)), uid=n, flags=[])
        pks.append(message.id)
    return pks


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def dispatcher() -> MagicMock:
    d = MagicMock()
    d.notify_interested = AsyncMock(return_value=[])
    return d


def _scheduler(message_store, classifier, config, sleep, dispatcher=None, index=None) -> EnrichmentScheduler:
    return EnrichmentScheduler(
        message_store,
        classifier,
        config,
        dispatcher=dispatcher,
        index=index,
        sleep=sleep,
    )


class TestClassifyMessage:
    @pytest.mark.asyncio
    async def test_success_writes_label(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep, dispatcher
    ):
        [pk] = await _store_many(message_store, account, 1)
        classifier = FakeClassifier(EnrichmentResult(label="Spam", confidence=0.7, reasoning="bulk"))
        scheduler = _scheduler(message_store, classifier, enrichment_config, sleep, dispatcher)

        outcome = await scheduler.classify_message(pk)

        assert outcome.ok
        assert outcome.notified is False
        stored = await message_store.get(pk)
        assert stored.label == Label.SPAM
        assert stored.ai_reasoning == "bulk"
        assert classifier.calls[0].startswith("From: Alice Sender <sender@example.com>\nSubject: Message 1")
        dispatcher.notify_interested.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_interested_triggers_notification(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep, dispatcher
    ):
        [pk] = await _store_many(message_store, account, 1)
        classifier = FakeClassifier(EnrichmentResult(label="Interested", confidence=0.95))
        scheduler = _scheduler(message_store, classifier, enrichment_config, sleep, dispatcher)

        outcome = await scheduler.classify_message(pk)

        assert outcome.notified is True
        dispatcher.notify_interested.assert_awaited_once()
        notified = dispatcher.notify_interested.await_args.args[0]
        assert notified.id == pk
        assert notified.ai_label == "Interested"

    @pytest.mark.asyncio
    async def test_rate_limit_then_success_waits_cooldown(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep
    ):
        [pk] = await _store_many(message_store, account, 1)
        classifier = FakeClassifier(RateLimitedError(), EnrichmentResult(label="Spam", confidence=0.6))
        scheduler = _scheduler(message_store, classifier, enrichment_config, sleep)

        outcome = await scheduler.classify_message(pk)

        assert outcome.ok
        assert len(classifier.calls) == 2
        assert sleep.delays == [120.0]
        assert (await message_store.get(pk)).ai_label == "Spam"

    @pytest.mark.asyncio
    async def test_longer_retry_after_extends_cooldown(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep
    ):
        [pk] = await _store_many(message_store, account, 1)
        classifier = FakeClassifier(RateLimitedError(retry_after=300.0), EnrichmentResult(label="Spam", confidence=0.6))
        scheduler = _scheduler(message_store, classifier, enrichment_config, sleep)

        assert (await scheduler.classify_message(pk)).ok
        assert sleep.delays == [300.0]

    @pytest.mark.asyncio
    async def test_shorter_retry_after_keeps_cooldown(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep
    ):
        [pk] = await _store_many(message_store, account, 1)
        classifier = FakeClassifier(RateLimitedError(retry_after=5.0), EnrichmentResult(label="Spam", confidence=0.6))
        scheduler = _scheduler(message_store, classifier, enrichment_config, sleep)

        assert (await scheduler.classify_message(pk)).ok
        assert sleep.delays == [120.0]

    @pytest.mark.asyncio
    async def test_interested_after_rate_limit_notifies_once(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep, dispatcher
    ):
        [pk] = await _store_many(message_store, account, 1)
        classifier = FakeClassifier(RateLimitedError(), EnrichmentResult(label="Interested", confidence=0.9))
        scheduler = _scheduler(message_store, classifier, enrichment_config, sleep, dispatcher)

        outcome = await scheduler.classify_message(pk)

        assert outcome.notified is True
        assert len(classifier.calls) == 2
        dispatcher.notify_interested.assert_awaited_once()
        assert dispatcher.notify_interested.await_args.args[0].id == pk

    @pytest.mark.asyncio
    async def test_spam_after_rate_limit_notifies_nobody(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep, dispatcher
    ):
        [pk] = await _store_many(message_store, account, 1)
        classifier = FakeClassifier(RateLimitedError(), EnrichmentResult(label="Spam", confidence=0.9))
        scheduler = _scheduler(message_store, classifier, enrichment_config, sleep, dispatcher)

        outcome = await scheduler.classify_message(pk)

        assert outcome.ok
        assert outcome.notified is False
        dispatcher.notify_interested.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_rate_limit_leaves_message_unenriched(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep
    ):
        [pk] = await _store_many(message_store, account, 1)
        classifier = FakeClassifier(RateLimitedError(), RateLimitedError())
        scheduler = _scheduler(message_store, classifier, enrichment_config, sleep)

        outcome = await scheduler.classify_message(pk)

        assert not outcome.ok
        assert outcome.rate_limited is True
        assert len(classifier.calls) == 2
        assert (await message_store.get(pk)).ai_label is None

    @pytest.mark.asyncio
    async def test_classification_error_is_not_retried(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep
    ):
        [pk] = await _store_many(message_store, account, 1)
        classifier = FakeClassifier(ClassificationError("bad json"))
        scheduler = _scheduler(message_store, classifier, enrichment_config, sleep)

        outcome = await scheduler.classify_message(pk)

        assert outcome.error == "bad json"
        assert len(classifier.calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unknown_message(self, message_store: MessageStore, enrichment_config: EnrichmentConfig, sleep):
        classifier = FakeClassifier()
        scheduler = _scheduler(message_store, classifier, enrichment_config, sleep)

        outcome = await scheduler.classify_message(uuid.uuid4())

        assert outcome.error == "message not found"
        assert classifier.calls == []

    @pytest.mark.asyncio
    async def test_index_failure_does_not_fail_enrichment(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep
    ):
        [pk] = await _store_many(message_store, account, 1)
        index = MagicMock()
        index.update_message = AsyncMock(side_effect=SearchIndexError("down"))
        scheduler = _scheduler(message_store, FakeClassifier(), enrichment_config, sleep, index=index)

        outcome = await scheduler.classify_message(pk)

        assert outcome.ok
        index.update_message.assert_awaited_once()
        assert index.update_message.await_args.args[0].id == pk
        assert index.update_message.await_args.args[1]["aiCategory"] == "Not Interested"

    @pytest.mark.asyncio
    async def test_calls_are_spaced(self, message_store: MessageStore, account, sleep):
        config = EnrichmentConfig(call_spacing_seconds=3.0)
        pks = await _store_many(message_store, account, 3)
        scheduler = _scheduler(message_store, FakeClassifier(), config, sleep)

        for pk in pks:
            await scheduler.classify_message(pk)

        # The recording sleep returns at once, so slots keep accumulating.
        assert len(sleep.delays) == 2
        assert 2.0 < sleep.delays[0] <= 3.0
        assert 5.0 < sleep.delays[1] <= 6.0


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_runs_in_background(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep
    ):
        pks = await _store_many(message_store, account, 2)
        scheduler = _scheduler(message_store, FakeClassifier(), enrichment_config, sleep)

        for pk in pks:
            scheduler.submit(pk)
        assert scheduler.pending == 2
        await scheduler.drain()

        assert scheduler.pending == 0
        assert await message_store.unenriched_ids() == []


class TestBatches:
    @pytest.mark.asyncio
    async def test_batch_over_limit_rejected(
        self, message_store: MessageStore, enrichment_config: EnrichmentConfig, sleep
    ):
        scheduler = _scheduler(message_store, FakeClassifier(), enrichment_config, sleep)
        with pytest.raises(ValueError):
            await scheduler.enrich_batch([uuid.uuid4() for _ in range(51)])

    @pytest.mark.asyncio
    async def test_sub_batches_pause_between_chunks(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep
    ):
        pks = await _store_many(message_store, account, 25)
        classifier = FakeClassifier()
        scheduler = _scheduler(message_store, classifier, enrichment_config, sleep)

        outcome = await scheduler.enrich_batch(pks)

        assert outcome.processed == 25
        assert outcome.successful == 25
        assert outcome.failed == 0
        assert sleep.delays == [0.5, 0.5]
        assert len(classifier.calls) == 25

    @pytest.mark.asyncio
    async def test_batch_reports_individual_failures(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep
    ):
        pks = await _store_many(message_store, account, 2)
        scheduler = _scheduler(message_store, FakeClassifier(), enrichment_config, sleep)

        outcome = await scheduler.enrich_batch([*pks, uuid.uuid4()])

        assert outcome.processed == 3
        assert outcome.successful == 2
        assert outcome.failed == 1

    @pytest.mark.asyncio
    async def test_recategorize_only_targets_unlabelled(
        self, message_store: MessageStore, account, enrichment_config: EnrichmentConfig, sleep
    ):
        pks = await _store_many(message_store, account, 3)
        await message_store.set_enrichment(pks[0], EnrichmentResult(label="Spam", confidence=0.9))
        classifier = FakeClassifier()
        scheduler = _scheduler(message_store, classifier, enrichment_config, sleep)

        outcome = await scheduler.recategorize_unenriched()

        assert outcome.processed == 2
        assert {r.message_id for r in outcome.results} == set(pks[1:])
        assert (await message_store.get(pks[0])).ai_label == "Spam"
        assert await message_store.unenriched_ids() == []
