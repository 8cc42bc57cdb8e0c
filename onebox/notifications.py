"""Outbound webhook notifications: signing, retrying delivery, Slack formatting."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog
from pydantic_core import to_jsonable_python

from .config import NotificationConfig
from .db.models import Message
from .db.store import NotificationLog
from .errors import NotificationError
from .models import BulkSummary, DeliveryResult, NotificationStatus
from .retry import with_retry

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-Webhook-Signature"
UNCATEGORIZED = "Uncategorized"
PREVIEW_CHARS = 300
SLACK_PREVIEW_CHARS = 200

CATEGORY_COLORS = {
    "Interested": "#28a745",
    "Meeting Booked": "#007bff",
    "Not Interested": "#dc3545",
    "Spam": "#fd7e14",
    "Out of Office": "#6f42c1",
}
DEFAULT_COLOR = "#6c757d"
SUMMARY_COLOR = "#36a64f"


def canonical_json(data: Any) -> bytes:
    """Sorted-key, compact JSON encoding used as the signing input."""
    return json.dumps(
        to_jsonable_python(data),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode()


def sign(secret: str, data: Any) -> str:
    return hmac.new(secret.encode(), canonical_json(data), hashlib.sha256).hexdigest()


def truncate(text: str | None, limit: int) -> str:
    if not text or len(text) <= limit:
        return text or ""
    return text[:limit] + "..."


def category_color(label: str | None) -> str:
    return CATEGORY_COLORS.get(label or "", DEFAULT_COLOR)


def build_bulk_summary(messages: Iterable[Message]) -> BulkSummary:
    messages = list(messages)
    return BulkSummary(
        total=len(messages),
        by_category=dict(Counter(m.ai_label or UNCATEGORIZED for m in messages)),
        by_account=dict(Counter(m.account_email or "Unknown" for m in messages)),
    )


# ----------------------------------------------------------------------
# Payload builders
# ----------------------------------------------------------------------


def interested_payload(message: Message) -> dict[str, Any]:
    return {
        "emailId": str(message.id),
        "messageId": message.message_id,
        "from": {"name": message.from_name, "address": message.from_address},
        "to": message.to_addresses,
        "subject": message.subject,
        "accountEmail": message.account_email,
        "date": message.date.isoformat(),
        "aiCategory": message.ai_label,
        "aiConfidence": message.ai_confidence,
        "preview": truncate(message.body_text, PREVIEW_CHARS),
        "isRead": message.is_read,
        "folder": message.folder,
    }


def categorized_payload(message: Message) -> dict[str, Any]:
    return {
        "id": str(message.id),
        "subject": message.subject,
        "from": message.from_address,
        "category": message.ai_label,
        "confidence": message.ai_confidence,
        "account": message.account_email,
    }


def format_slack_message(message: Message) -> dict[str, Any]:
    label = message.ai_label
    sender = message.from_address or "unknown"
    return {
        "text": f"New {label or 'categorized'} email received",
        "username": "Email Onebox",
        "icon_emoji": ":email:",
        "attachments": [
            {
                "color": category_color(label),
                "title": f"New {label or 'Categorized'} Email",
                "text": message.subject,
                "fields": [
                    {"title": "From", "value": f"{message.from_name or sender} <{sender}>", "short": True},
                    {"title": "Account", "value": message.account_email, "short": True},
                    {
                        "title": "AI Confidence",
                        "value": f"{round((message.ai_confidence or 0) * 100)}%",
                        "short": True,
                    },
                    {"title": "Date", "value": message.date.isoformat(), "short": True},
                    {
                        "title": "Preview",
                        "value": truncate(message.body_text, SLACK_PREVIEW_CHARS),
                        "short": False,
                    },
                ],
                "footer": "Email Onebox",
                "ts": int(time.time()),
            }
        ],
    }


def format_slack_summary(summary: BulkSummary) -> dict[str, Any]:
    by_category = "\n".join(f"{k}: {v}" for k, v in summary.by_category.items())
    by_account = "\n".join(f"{k}: {v}" for k, v in summary.by_account.items())
    return {
        "text": "Bulk Email Processing Summary",
        "attachments": [
            {
                "color": SUMMARY_COLOR,
                "title": f"Processed {summary.total} emails",
                "fields": [
                    {"title": "By Category", "value": by_category, "short": True},
                    {"title": "By Account", "value": by_account, "short": True},
                ],
                "footer": "Email Onebox",
                "ts": int(time.time()),
            }
        ],
    }


class NotificationDispatcher:
    """Delivers signed webhook payloads with bounded exponential retry.

    Every attempt is written to the delivery log when one is supplied.
    Delivery never raises on sink failure; the outcome is returned as a
    :class:`DeliveryResult`.
    """

    def __init__(
        self,
        config: NotificationConfig,
        log: NotificationLog | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._log = log
        self._sleep = sleep
        self._secret = config.webhook_secret.get_secret_value()
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._config.timeout_seconds))
        logger.info(
            "notification_dispatcher_started",
            slack=bool(self._config.slack_webhook_url),
            external=bool(self._config.external_webhook_url),
            additional=len(self._config.additional_webhook_urls),
        )

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("notification_dispatcher_stopped")

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign(self, data: Any) -> str:
        return sign(self._secret, data)

    def verify(self, data: bytes | str | Mapping[str, Any], signature: str) -> bool:
        """Check *signature* against *data* in constant time.

        Raw bytes / str are taken as the already-serialized signing input;
        mappings are canonicalized first.
        """
        if isinstance(data, str):
            data = data.encode()
        if isinstance(data, bytes):
            expected = hmac.new(self._secret.encode(), data, hashlib.sha256).hexdigest()
        else:
            expected = self.sign(data)
        return hmac.compare_digest(expected, signature)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        url: str,
        event: str,
        data: Any,
        headers: Mapping[str, str] | None = None,
    ) -> DeliveryResult:
        """Send ``{event, timestamp, data, signature}`` to *url*."""
        data = to_jsonable_python(data)
        signature = self.sign(data)
        payload = {
            "event": event,
            "timestamp": datetime.now(UTC).isoformat(),
            "data": data,
            "signature": signature,
        }
        return await self._deliver(url, event, payload, {SIGNATURE_HEADER: signature, **(headers or {})})

    async def _deliver(
        self,
        url: str,
        event: str,
        payload: dict[str, Any],
        headers: Mapping[str, str],
    ) -> DeliveryResult:
        if self._client is None:
            raise AssertionError("Dispatcher not started")

        request_headers = {
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
            **headers,
        }
        record = await self._log.create(url, event, payload) if self._log else None
        attempts = 0

        @with_retry(
            self._config.retry,
            retryable_exceptions=(NotificationError,),
            sleep=self._sleep,
        )
        async def _send() -> httpx.Response:
            nonlocal attempts
            attempts += 1
            started = time.monotonic()
            try:
                response = await self._client.post(url, json=payload, headers=request_headers)
            except httpx.HTTPError as exc:
                await self._record(record, NotificationStatus.PENDING, attempts, error=str(exc), started=started)
                logger.warning("webhook_attempt_failed", url=url, event=event, attempt=attempts, error=str(exc))
                raise NotificationError(f"{type(exc).__name__}: {exc}") from exc

            if response.is_error:
                error = f"HTTP {response.status_code}"
                await self._record(
                    record,
                    NotificationStatus.PENDING,
                    attempts,
                    status_code=response.status_code,
                    error=error,
                    started=started,
                )
                logger.warning(
                    "webhook_attempt_failed",
                    url=url,
                    event=event,
                    attempt=attempts,
                    status_code=response.status_code,
                )
                raise NotificationError(error, status_code=response.status_code)

            await self._record(
                record,
                NotificationStatus.SUCCESS,
                attempts,
                status_code=response.status_code,
                started=started,
            )
            return response

        try:
            response = await _send()
        except NotificationError as exc:
            await self._record(
                record,
                NotificationStatus.FAILED,
                attempts,
                status_code=exc.status_code,
                error=str(exc),
            )
            logger.error("webhook_delivery_failed", url=url, event=event, attempts=attempts, error=str(exc))
            return DeliveryResult(
                url=url,
                event=event,
                success=False,
                attempts=attempts,
                status_code=exc.status_code,
                error=str(exc),
                record_id=record.id if record else None,
            )

        logger.info("webhook_delivered", url=url, event=event, attempts=attempts)
        return DeliveryResult(
            url=url,
            event=event,
            success=True,
            attempts=attempts,
            status_code=response.status_code,
            record_id=record.id if record else None,
        )

    async def _record(
        self,
        record,
        status: NotificationStatus,
        attempts: int,
        *,
        status_code: int | None = None,
        error: str | None = None,
        started: float | None = None,
    ) -> None:
        if record is None or self._log is None:
            return
        await self._log.update(
            record.id,
            status=status,
            attempts=attempts,
            status_code=status_code,
            error_message=error,
            response_time_ms=(time.monotonic() - started) * 1000 if started is not None else None,
        )

    # ------------------------------------------------------------------
    # Notification flows
    # ------------------------------------------------------------------

    async def notify_interested(self, message: Message) -> list[DeliveryResult]:
        """Fan a newly ``Interested`` message out to every configured sink.

        Sinks are attempted concurrently; one failing sink never stops
        the others.
        """
        jobs: list[tuple[str, str, Awaitable[DeliveryResult]]] = []
        slack_url = self._config.slack_webhook_url
        if slack_url:
            slack_body = format_slack_message(message)
            jobs.append((slack_url, "slack_notification", self._deliver(slack_url, "slack_notification", slack_body, {})))
        external_url = self._config.external_webhook_url
        if external_url:
            data = interested_payload(message)
            jobs.append((external_url, "email_interested", self.dispatch(external_url, "email_interested", data)))
        for url in filter(None, (u.strip() for u in self._config.additional_webhook_urls)):
            data = categorized_payload(message)
            jobs.append((url, "email_categorized", self.dispatch(url, "email_categorized", data)))

        if not jobs:
            logger.debug("no_notification_sinks_configured", message_pk=str(message.id))
            return []

        outcomes = await asyncio.gather(*(job for _, _, job in jobs), return_exceptions=True)
        results: list[DeliveryResult] = []
        for (url, event, _), outcome in zip(jobs, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("notification_sink_error", url=url, event=event, error=str(outcome))
                results.append(DeliveryResult(url=url, event=event, success=False, attempts=0, error=str(outcome)))
            else:
                results.append(outcome)

        logger.info(
            "interested_notification_sent",
            message_pk=str(message.id),
            sinks=len(results),
            delivered=sum(r.success for r in results),
        )
        return results

    async def send_bulk_notification(
        self,
        messages: Iterable[Message],
        event: str = "bulk_email_processed",
    ) -> BulkSummary:
        """Send one summary (label and account counts) for many messages."""
        summary = build_bulk_summary(messages)
        jobs: list[Awaitable[DeliveryResult]] = []
        if self._config.slack_webhook_url:
            jobs.append(
                self._deliver(
                    self._config.slack_webhook_url,
                    "slack_bulk_summary",
                    format_slack_summary(summary),
                    {},
                )
            )
        if self._config.external_webhook_url:
            jobs.append(self.dispatch(self._config.external_webhook_url, event, summary.model_dump(mode="json")))

        for outcome in await asyncio.gather(*jobs, return_exceptions=True):
            if isinstance(outcome, BaseException):
                logger.error("bulk_notification_error", event=event, error=str(outcome))
        logger.info("bulk_notification_sent", event=event, total=summary.total)
        return summary

    async def send_test(self, url: str | None = None) -> DeliveryResult:
        target = url or self._config.external_webhook_url
        if not target:
            raise NotificationError("No webhook URL provided")
        return await self.dispatch(
            target,
            "test_webhook",
            {"message": "This is a test webhook from Email Onebox", "version": "1.0.0", "test": True},
        )

    async def stats(self) -> dict[str, Any]:
        if self._log is None:
            return {
                "total_sent": 0,
                "successful": 0,
                "failed": 0,
                "pending": 0,
                "success_rate": 0.0,
                "last_sent": None,
                "errors": [],
            }
        return await self._log.stats()
