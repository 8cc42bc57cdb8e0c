"""Shared test fixtures for the onebox test suite."""

from __future__ import annotations

import asyncio
from datetime import datetime
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import pytest

from onebox.config import (
    DatabaseConfig,
    EnrichmentConfig,
    NotificationConfig,
    RetryConfig,
    SyncConfig,
)
from onebox.db import AccountStore, Database, KnowledgeStore, MessageStore, NotificationLog
from onebox.errors import MailboxConnectionError
from onebox.imap_client import FetchedMessage
from onebox.models import AccountCredentials, EnrichmentResult

# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def build_plain_email(
    *,
    subject: str | None = "Test Subject",
    from_addr: str = "Alice Sender <sender@example.com>",
    to_addr: str = "recipient@example.com",
    body: str = "Hello, World!",
    message_id: str | None = "<test-001@example.com>",
    date: str | None = "Mon, 02 Jun 2025 12:00:00 +0000",
    cc: str | None = None,
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    if subject is not None:
        msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    if message_id is not None:
        msg["Message-ID"] = message_id
    if date is not None:
        msg["Date"] = date
    if cc:
        msg["Cc"] = cc
    return msg.as_bytes()


def build_html_email(*, body_html: str = "<p>Hello <b>there</b></p>") -> bytes:
    msg = MIMEText(body_html, "html")
    msg["Subject"] = "HTML Email"
    msg["From"] = "sender@example.com"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<html-001@example.com>"
    msg["Date"] = "Mon, 02 Jun 2025 12:00:00 +0000"
    return msg.as_bytes()


def build_multipart_email(
    *,
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with text, HTML, and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Multipart Email"
    msg["From"] = "sender@example.com"
    msg["To"] = "recipient@example.com, Bob <bob@example.com>"
    msg["Message-ID"] = "<multi-001@example.com>"
    msg["Date"] = "Mon, 02 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


def numbered_email(n: int, *, day: int | None = None) -> bytes:
    """Plain email with a distinct Message-ID and date for position *n*."""
    day = day if day is not None else n
    return build_plain_email(
        subject=f"Message {n}",
        message_id=f"<msg-{n}@example.com>",
        date=f"{day:02d} Jun 2025 12:00:00 +0000",
        body=f"Body of message {n}",
    )


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return build_plain_email()


@pytest.fixture
def html_eml_bytes() -> bytes:
    return build_html_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return build_multipart_email(
        attachments=[
            ("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("data.csv", "text/csv", b"col1,col2\na,b\n"),
        ],
    )


# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays and yields once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeMailbox:
    """In-memory mailbox implementing the MailboxClient protocol.

    ``new_mail`` is a queue of counts returned by ``wait_for_new_mail``;
    the call blocks until a count is pushed.  ``waits`` counts how often a
    worker has gone back to waiting, i.e. finished its previous sync.
    """

    def __init__(
        self,
        messages: list[tuple[int, bytes, list[str]]] | None = None,
        *,
        supports_idle: bool = True,
        connect_failures: int = 0,
    ) -> None:
        self.messages = list(messages or [])
        self.supports_idle = supports_idle
        self.connect_failures = connect_failures
        self.new_mail: asyncio.Queue[int] = asyncio.Queue()
        self.connects = 0
        self.disconnects = 0
        self.searches: list[str] = []
        self.fetched: list[list[int]] = []
        self.selected: list[tuple[str, bool]] = []
        self.internal_dates: dict[int, datetime] = {}
        self.fail_fetch = False
        self.waits = 0

    def add(
        self,
        uid: int,
        raw: bytes,
        flags: list[str] | None = None,
        *,
        internal_date: datetime | None = None,
    ) -> None:
        self.messages.append((uid, raw, flags or []))
        if internal_date is not None:
            self.internal_dates[uid] = internal_date

    async def connect(self) -> None:
        self.connects += 1
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise MailboxConnectionError("connection refused")

    async def select(self, folder: str, *, readonly: bool = False) -> int:
        self.selected.append((folder, readonly))
        return len(self.messages)

    async def search(self, criteria: str) -> list[int]:
        self.searches.append(criteria)
        if criteria == "UNSEEN":
            return [uid for uid, _, flags in self.messages if "\\Seen" not in flags]
        return [uid for uid, _, _ in self.messages]

    async def fetch(self, uids: list[int]) -> list[FetchedMessage]:
        if self.fail_fetch:
            raise MailboxConnectionError("socket closed")
        self.fetched.append(list(uids))
        by_uid = {uid: (raw, flags) for uid, raw, flags in self.messages}
        return [
            FetchedMessage(
                uid=uid,
                raw_bytes=by_uid[uid][0],
                flags=by_uid[uid][1],
                internal_date=self.internal_dates.get(uid),
            )
            for uid in uids
        ]

    async def wait_for_new_mail(self, timeout: float) -> int:
        self.waits += 1
        return await self.new_mail.get()

    async def disconnect(self) -> None:
        self.disconnects += 1


# Fixed vocabulary for FakeClassifier.embed: a text's vector counts each word.
EMBED_VOCABULARY = ("pricing", "demo", "trial", "meeting", "integration", "thanks")


class FakeClassifier:
    """Model client returning scripted results (or raising scripted errors).

    ``embed`` maps text to keyword counts over :data:`EMBED_VOCABULARY`;
    ``complete`` returns :attr:`completion` and records each prompt.
    """

    def __init__(self, *responses: EnrichmentResult | Exception, default: EnrichmentResult | None = None) -> None:
        self.responses = list(responses)
        self.default = default or EnrichmentResult(label="Not Interested", confidence=0.8)
        self.calls: list[str] = []
        self.completion = "Reply: Thanks for reaching out.\nReasoning: Polite default."
        self.completions: list[dict] = []
        self.embed_error: Exception | None = None

    async def classify(self, text: str) -> EnrichmentResult:
        self.calls.append(text)
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return response

    async def embed(self, text: str) -> list[float]:
        if self.embed_error is not None:
            raise self.embed_error
        lowered = text.lower()
        return [float(lowered.count(word)) for word in EMBED_VOCABULARY]

    async def complete(self, system: str, prompt: str, *, temperature: float = 0.7, max_tokens: int = 500) -> str:
        self.completions.append(
            {"system": system, "prompt": prompt, "temperature": temperature, "max_tokens": max_tokens}
        )
        return self.completion


# ------------------------------------------------------------------
# Configs and stores
# ------------------------------------------------------------------


@pytest.fixture
def credentials() -> AccountCredentials:
    return AccountCredentials(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
    )


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(
        initial_window=10,
        incremental_cap=5,
        reconnect_delay_seconds=5.0,
        poll_interval_seconds=1.0,
    )


@pytest.fixture
def enrichment_config() -> EnrichmentConfig:
    return EnrichmentConfig(
        call_spacing_seconds=0.0,
        rate_limit_cooldown_seconds=120.0,
        batch_max=50,
        sub_batch_size=10,
        sub_batch_pause_seconds=0.5,
    )


@pytest.fixture
def notification_config() -> NotificationConfig:
    return NotificationConfig(
        webhook_secret="test-secret",
        slack_webhook_url="https://hooks.slack.test/services/T000",
        external_webhook_url="https://crm.test/webhooks/onebox",
        additional_webhook_urls=["https://extra.test/hook"],
        timeout_seconds=5.0,
        retry=RetryConfig(max_attempts=3, initial_wait_seconds=1.0, max_wait_seconds=60.0),
    )


@pytest.fixture
async def database(tmp_path) -> Database:
    db = Database(DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'onebox.db'}"))
    await db.create_schema()
    yield db
    await db.close()


@pytest.fixture
def account_store(database: Database) -> AccountStore:
    return AccountStore(database.session)


@pytest.fixture
def message_store(database: Database) -> MessageStore:
    return MessageStore(database.session)


@pytest.fixture
def notification_log(database: Database) -> NotificationLog:
    return NotificationLog(database.session)


@pytest.fixture
async def account(account_store: AccountStore, credentials: AccountCredentials):
    return await account_store.create("inbox@example.com", credentials)


@pytest.fixture
def knowledge_store(database: Database) -> KnowledgeStore:
    return KnowledgeStore(database.session)
