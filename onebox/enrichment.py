"""Enrichment scheduler: rate-limited classification of stored messages."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable

import structlog

from .classifier import Classifier
from .config import EnrichmentConfig
from .db.models import Message
from .db.store import MessageStore
from .errors import ClassificationError, RateLimitedError, SearchIndexError
from .index import IndexWriter
from .models import NOTABLE_LABEL, BatchOutcome, EnrichmentOutcome, EnrichmentResult
from .notifications import NotificationDispatcher
from .tasks import TaskTracker
from .throttle import IntervalScheduler

logger = structlog.get_logger()


class EnrichmentScheduler:
    """Classifies messages in the background and writes the result back.

    Calls to the classifier are spaced by an :class:`IntervalScheduler`.
    A rate-limit answer triggers one retry after a cooldown; anything
    else leaves the message unenriched for a later sweep.
    """

    def __init__(
        self,
        messages: MessageStore,
        classifier: Classifier,
        config: EnrichmentConfig,
        *,
        dispatcher: NotificationDispatcher | None = None,
        index: IndexWriter | None = None,
        max_body_chars: int = 2000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._messages = messages
        self._classifier = classifier
        self._config = config
        self._dispatcher = dispatcher
        self._index = index
        self._max_body_chars = max_body_chars
        self._sleep = sleep
        self._throttle = IntervalScheduler(config.call_spacing_seconds, sleep=sleep)
        self._tasks = TaskTracker("enrichment")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, message_pk: uuid.UUID) -> asyncio.Task[EnrichmentOutcome]:
        """Schedule classification of one message and return immediately."""
        return self._tasks.spawn(self.classify_message(message_pk), name=f"enrich-{message_pk}")

    async def drain(self) -> None:
        await self._tasks.drain()

    async def aclose(self) -> None:
        await self._tasks.cancel()

    # ------------------------------------------------------------------
    # Single message
    # ------------------------------------------------------------------

    async def classify_message(self, message_pk: uuid.UUID) -> EnrichmentOutcome:
        message = await self._messages.get(message_pk)
        if message is None:
            return EnrichmentOutcome(message_id=message_pk, error="message not found")

        text = message.classification_text(self._max_body_chars)
        try:
            result = await self._classify_with_cooldown(message_pk, text)
        except RateLimitedError as exc:
            logger.warning("enrichment_rate_limited_twice", message_pk=str(message_pk))
            return EnrichmentOutcome(message_id=message_pk, error=str(exc), rate_limited=True)
        except ClassificationError as exc:
            logger.warning("enrichment_failed", message_pk=str(message_pk), error=str(exc))
            return EnrichmentOutcome(message_id=message_pk, error=str(exc))

        updated = await self._messages.set_enrichment(message_pk, result)
        if updated is None:
            # Deleted while the classifier was running.
            return EnrichmentOutcome(message_id=message_pk, error="message not found")

        logger.info(
            "message_enriched",
            message_pk=str(message_pk),
            label=result.label.value,
            confidence=result.confidence,
        )
        await self._update_index(updated, result)

        notified = False
        if result.label == NOTABLE_LABEL and self._dispatcher is not None:
            await self._dispatcher.notify_interested(updated)
            notified = True

        return EnrichmentOutcome(message_id=message_pk, result=result, notified=notified)

    async def _classify_with_cooldown(self, message_pk: uuid.UUID, text: str) -> EnrichmentResult:
        await self._throttle.acquire()
        try:
            return await self._classifier.classify(text)
        except RateLimitedError as exc:
            cooldown = max(self._config.rate_limit_cooldown_seconds, exc.retry_after or 0.0)
            logger.warning(
                "enrichment_rate_limited",
                message_pk=str(message_pk),
                cooldown_seconds=cooldown,
                retry_after=exc.retry_after,
            )
        await self._sleep(cooldown)
        await self._throttle.acquire()
        return await self._classifier.classify(text)

    async def _update_index(self, message: Message, result: EnrichmentResult) -> None:
        if self._index is None:
            return
        try:
            await self._index.update_message(
                message,
                {"aiCategory": result.label.value, "aiConfidence": result.confidence},
            )
        except SearchIndexError as exc:
            logger.warning("index_update_failed", message_pk=str(message.id), error=str(exc))

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def enrich_batch(self, message_pks: list[uuid.UUID]) -> BatchOutcome:
        """Classify up to ``batch_max`` messages in concurrent sub-batches."""
        if len(message_pks) > self._config.batch_max:
            raise ValueError(
                f"batch of {len(message_pks)} exceeds the maximum of {self._config.batch_max}"
            )

        size = max(1, self._config.sub_batch_size)
        chunks = [message_pks[i : i + size] for i in range(0, len(message_pks), size)]
        results: list[EnrichmentOutcome] = []

        for n, chunk in enumerate(chunks):
            outcomes = await asyncio.gather(
                *(self.classify_message(pk) for pk in chunk),
                return_exceptions=True,
            )
            for pk, outcome in zip(chunk, outcomes, strict=True):
                if isinstance(outcome, Exception):
                    logger.error("enrichment_item_error", message_pk=str(pk), error=str(outcome))
                    outcome = EnrichmentOutcome(message_id=pk, error=str(outcome))
                elif isinstance(outcome, BaseException):
                    raise outcome
                results.append(outcome)
            if n < len(chunks) - 1:
                await self._sleep(self._config.sub_batch_pause_seconds)

        successful = sum(1 for r in results if r.ok)
        return BatchOutcome(
            processed=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )

    async def recategorize_unenriched(self) -> BatchOutcome:
        """Sweep every message without a label through the batch path."""
        pending = await self._messages.unenriched_ids()
        total = BatchOutcome()
        step = self._config.batch_max
        for start in range(0, len(pending), step):
            outcome = await self.enrich_batch(pending[start : start + step])
            total.processed += outcome.processed
            total.successful += outcome.successful
            total.failed += outcome.failed
            total.results.extend(outcome.results)

        logger.info(
            "recategorize_complete",
            processed=total.processed,
            successful=total.successful,
            failed=total.failed,
        )
        return total
