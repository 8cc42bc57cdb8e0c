"""MIME parser: walks a raw RFC 822 message and extracts headers,
addresses, body variants, and attachment metadata.
"""

from __future__ import annotations

import email
import email.message
import email.policy
import email.utils
import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime

from bs4 import BeautifulSoup

from .errors import ParseError
from .models import Address, AttachmentInfo

DEFAULT_SUBJECT = "No Subject"


@dataclass
class ParsedMessage:
    """Structured representation of a fully parsed email."""

    message_id: str
    subject: str
    from_address: Address | None
    to: list[Address]
    cc: list[Address]
    date: datetime
    body_text: str | None
    body_html: str | None
    attachments: list[AttachmentInfo] = field(default_factory=list)
    synthesized_id: bool = False


def html_to_text(html: str) -> str:
    """Strip markup from an HTML body, keeping readable text."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup.get_text(separator=" ", strip=True)


def synthesize_message_id(raw_bytes: bytes, arrived_at: datetime) -> str:
    """Build a fallback Message-ID from arrival time and a content digest.

    Two different messages arriving in the same millisecond still get
    distinct ids; the same bytes at the same arrival time get the same id.
    """
    digest = hashlib.sha256(raw_bytes).hexdigest()[:16]
    millis = int(arrived_at.timestamp() * 1000)
    return f"<generated-{millis}-{digest}@onebox.local>"


class MimeParser:
    """Stateless parser: raw RFC 822 bytes -> ParsedMessage."""

    def parse(self, raw_bytes: bytes, *, arrived_at: datetime | None = None) -> ParsedMessage:
        if not raw_bytes or not raw_bytes.strip():
            raise ParseError("empty message")

        try:
            msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
            body_text, body_html = self._extract_bodies(msg)
            attachments = self._extract_attachments(msg)
            from_list = self._parse_address_list(msg.get_all("From"))
            to_list = self._parse_address_list(msg.get_all("To"))
            cc_list = self._parse_address_list(msg.get_all("Cc"))
            subject = str(msg.get("Subject") or "").strip()
            message_id = str(msg.get("Message-ID") or "").strip()
            header_date = self._parse_date(_header(msg, "Date"))
        except (LookupError, ValueError, TypeError, AttributeError) as exc:
            raise ParseError(f"unparseable message: {exc}") from exc

        # Arrival anchor: server INTERNALDATE, else the Date header, else now.
        arrived_at = arrived_at or header_date or datetime.now(UTC)
        date = header_date or arrived_at

        if body_text is None and body_html is not None:
            body_text = html_to_text(body_html)

        synthesized = not message_id
        if synthesized:
            message_id = synthesize_message_id(raw_bytes, arrived_at)

        return ParsedMessage(
            message_id=message_id,
            subject=subject or DEFAULT_SUBJECT,
            from_address=from_list[0] if from_list else None,
            to=to_list,
            cc=cc_list,
            date=date,
            body_text=body_text,
            body_html=body_html,
            attachments=attachments,
            synthesized_id=synthesized,
        )

    def _extract_bodies(self, msg: email.message.Message) -> tuple[str | None, str | None]:
        """Walk MIME parts and return (plain_text, html_text)."""
        body_text: str | None = None
        body_html: str | None = None

        for part in msg.walk():
            # Skip multipart containers; they have no content of their own
            if part.get_content_maintype() == "multipart":
                continue
            if part.get_content_disposition() == "attachment":
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue

            payload = part.get_content()
            if not isinstance(payload, str):
                continue
            if content_type == "text/plain" and body_text is None:
                body_text = payload
            elif content_type == "text/html" and body_html is None:
                body_html = payload

        return body_text, body_html

    def _extract_attachments(self, msg: email.message.Message) -> list[AttachmentInfo]:
        """Collect filename / content type / size of every attachment part."""
        attachments: list[AttachmentInfo] = []

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            filename = part.get_filename()
            if part.get_content_disposition() != "attachment" and not filename:
                continue

            payload = part.get_payload(decode=True) or b""
            attachments.append(
                AttachmentInfo(
                    filename=filename or "unnamed",
                    content_type=part.get_content_type(),
                    size=len(payload),
                )
            )

        return attachments

    def _parse_address_list(self, header_values: list | None) -> list[Address]:
        if not header_values:
            return []
        addresses: list[Address] = []
        for name, addr in email.utils.getaddresses([str(v) for v in header_values]):
            addr = addr.strip()
            if not addr or "@" not in addr:
                continue
            addresses.append(Address(name=name.strip() or None, address=addr))
        return addresses

    @staticmethod
    def _parse_date(header_value: object) -> datetime | None:
        if not header_value:
            return None
        try:
            dt = email.utils.parsedate_to_datetime(str(header_value))
        except (TypeError, ValueError):
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt.astimezone(UTC)


def _header(msg: email.message.Message, name: str) -> object:
    """Header value, or None when the header registry rejects it."""
    try:
        return msg.get(name)
    except (TypeError, ValueError):
        return None
