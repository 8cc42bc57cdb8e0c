"""Knowledge lookup and reply suggestions.

Documents are embedded once on write and ranked by cosine similarity at
query time; the store is small enough that a full scan per lookup is
fine.  :class:`ReplyAssistant` pulls the best matches per document type
into a chat prompt and drafts a reply to a stored message.
"""

from __future__ import annotations

import math
import re
import uuid
from collections.abc import Sequence
from typing import Any

import structlog

from .classifier import Completer, Embedder
from .config import KnowledgeConfig
from .db import KnowledgeDocument, KnowledgeStore, Message, MessageStore
from .errors import ClassificationError
from .models import DocumentType, KnowledgeMatch, ReplySource, ReplySuggestion

logger = structlog.get_logger()

REPLY_SYSTEM_PROMPT = (
    "You are an expert email assistant. Generate professional, contextually "
    "appropriate replies using the provided information."
)

IMPROVE_SYSTEM_PROMPT = "You are an expert email assistant. Improve email replies based on user feedback."

_REPLY_RE = re.compile(r"Reply:(.*?)(?:Reasoning:|$)", re.DOTALL)
_REASONING_RE = re.compile(r"Reasoning:(.*)$", re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")

MAX_EMAIL_CHARS = 1500
SOURCE_PREVIEW_CHARS = 100

DEFAULT_DOCUMENTS: tuple[tuple[DocumentType, str, int, str], ...] = (
    (
        DocumentType.PRODUCT,
        "overview",
        5,
        "Our AI-powered email management platform helps businesses organize and respond "
        "to emails efficiently. Key features include automatic categorization, smart "
        "replies, and multi-account support.",
    ),
    (
        DocumentType.PRODUCT,
        "pricing",
        4,
        "Pricing starts at $29/month for the basic plan with up to 5 email accounts. "
        "Professional plan is $79/month with unlimited accounts and advanced AI features.",
    ),
    (
        DocumentType.PRODUCT,
        "trial",
        4,
        "We offer a 14-day free trial with no credit card required. You can upgrade or "
        "cancel anytime during the trial period.",
    ),
    (
        DocumentType.PRODUCT,
        "integration",
        3,
        "Our platform integrates with Gmail, Outlook, Yahoo Mail, and any IMAP-compatible "
        "email service. Setup takes less than 5 minutes.",
    ),
    (
        DocumentType.OUTREACH,
        "interested",
        5,
        "For interested prospects: Thank you for your interest! I'd love to show you how "
        "our platform can save you hours each week. Here's a link to book a demo: "
        "https://cal.com/demo",
    ),
    (
        DocumentType.OUTREACH,
        "meeting",
        5,
        "For meeting requests: I'd be happy to discuss this further. You can book a "
        "convenient time slot here: https://cal.com/meeting",
    ),
    (
        DocumentType.OUTREACH,
        "pricing",
        4,
        "For pricing inquiries: Our pricing is designed to be flexible and affordable. I "
        "can provide a custom quote based on your specific needs. Let's schedule a quick "
        "call to discuss.",
    ),
    (
        DocumentType.TEMPLATE,
        "follow-up",
        3,
        "Professional follow-up: I wanted to follow up on my previous email. I believe our "
        "solution could be a great fit for your needs. Would you be available for a brief "
        "call this week?",
    ),
    (
        DocumentType.TEMPLATE,
        "thank-you",
        2,
        "Thank you response: Thank you for taking the time to respond. I appreciate your "
        "feedback and would love to address any questions you might have.",
    ),
)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between *a* and *b*; 0.0 for mismatched or zero vectors."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    return dot / norm


def email_context(message: Message) -> str:
    """Subject, sender and the first part of the body, as sent to the model."""
    body = message.body_text or _TAG_RE.sub("", message.body_html or "")
    sender = f"{message.from_name or 'Unknown'} <{message.from_address or 'unknown@unknown.com'}>"
    return (
        f"Subject: {message.subject or 'No Subject'}\n"
        f"From: {sender}\n"
        f"Body: {body[:MAX_EMAIL_CHARS]}"
    )


class KnowledgeBase:
    """Embedding-backed document store with similarity search."""

    def __init__(self, store: KnowledgeStore, embedder: Embedder, config: KnowledgeConfig) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config

    async def add_document(
        self,
        content: str,
        doc_type: DocumentType,
        *,
        category: str | None = None,
        tags: list[str] | None = None,
        priority: int = 1,
    ) -> KnowledgeDocument:
        embedding = await self._embedder.embed(content)
        document = await self._store.add(
            content, embedding, doc_type, category=category, tags=tags, priority=priority
        )
        logger.info("knowledge_document_added", document_id=str(document.id), doc_type=doc_type.value)
        return document

    async def update_document(
        self,
        document_id: uuid.UUID,
        content: str,
        **metadata: Any,
    ) -> KnowledgeDocument | None:
        """Re-embed *content* and store it; ``None`` if the document is gone."""
        embedding = await self._embedder.embed(content)
        return await self._store.update(document_id, content, embedding, **metadata)

    async def delete_document(self, document_id: uuid.UUID) -> bool:
        return await self._store.delete(document_id)

    async def list_documents(self, doc_type: DocumentType | None = None) -> list[KnowledgeDocument]:
        return await self._store.list_documents(doc_type)

    async def search_similar(
        self,
        query: str,
        *,
        doc_type: DocumentType | None = None,
        limit: int = 5,
    ) -> list[KnowledgeMatch]:
        """Documents scoring above the similarity threshold, best first."""
        embedding = await self._embedder.embed(query)
        documents = await self._store.list_documents(doc_type)
        return self._rank(embedding, documents, limit)

    async def context_for(self, text: str) -> list[KnowledgeMatch]:
        """Best matches per document type, capped by ``context_limits``.

        The query is embedded once for all types.
        """
        embedding = await self._embedder.embed(text)
        documents = await self._store.list_documents()
        matches: list[KnowledgeMatch] = []
        for type_name, limit in self._config.context_limits.items():
            doc_type = DocumentType(type_name)
            of_type = [d for d in documents if d.doc_type == doc_type.value]
            matches.extend(self._rank(embedding, of_type, limit))
        return matches

    async def seed_defaults(self) -> int:
        """Load the starter documents into an empty store; returns how many were added."""
        if await self._store.count() > 0:
            return 0
        for doc_type, category, priority, content in DEFAULT_DOCUMENTS:
            await self.add_document(content, doc_type, category=category, priority=priority)
        logger.info("knowledge_base_seeded", documents=len(DEFAULT_DOCUMENTS))
        return len(DEFAULT_DOCUMENTS)

    def _rank(
        self,
        embedding: list[float],
        documents: Sequence[KnowledgeDocument],
        limit: int,
    ) -> list[KnowledgeMatch]:
        threshold = self._config.similarity_threshold
        scored = [
            KnowledgeMatch(
                id=doc.id,
                content=doc.content,
                doc_type=DocumentType(doc.doc_type),
                category=doc.category,
                similarity=cosine_similarity(embedding, doc.embedding),
            )
            for doc in documents
        ]
        relevant = [m for m in scored if m.similarity > threshold]
        relevant.sort(key=lambda m: m.similarity, reverse=True)
        return relevant[:limit]


def build_reply_prompt(
    email: str,
    context: Sequence[KnowledgeMatch],
    user_context: str | None = None,
    variation: int = 0,
) -> str:
    context_text = "\n\n".join(
        f"Context {i} ({match.doc_type.value}): {match.content}"
        for i, match in enumerate(context, start=1)
    )
    parts = [
        "Draft a reply to the email below using the context information where it helps.",
        f"Email received:\n{email}",
        f"Relevant context information:\n{context_text or 'None'}",
    ]
    if user_context:
        parts.append(f"Additional user context:\n{user_context}")
    instructions = (
        "Instructions:\n"
        "- Address the sender's specific needs or questions\n"
        "- Include pricing, features or booking links when the context mentions them\n"
        "- Keep the tone professional but friendly and end with a call to action"
    )
    if variation > 0:
        instructions += "\n- Take a different approach or tone than previous variations"
    parts.append(instructions)
    parts.append('Answer in two sections, "Reply:" followed by "Reasoning:".')
    return "\n\n".join(parts)


def parse_reply(content: str) -> tuple[str, str]:
    """Split a completion into ``(reply, reasoning)``."""
    reply_match = _REPLY_RE.search(content)
    reasoning_match = _REASONING_RE.search(content)
    reply = reply_match.group(1).strip() if reply_match else content.strip()
    reasoning = (
        reasoning_match.group(1).strip()
        if reasoning_match
        else "Generated based on email content and context"
    )
    return reply, reasoning


class ReplyAssistant:
    """Drafts replies to stored messages from knowledge-base context."""

    def __init__(
        self,
        messages: MessageStore,
        knowledge: KnowledgeBase,
        completer: Completer,
        config: KnowledgeConfig,
    ) -> None:
        self._messages = messages
        self._knowledge = knowledge
        self._completer = completer
        self._config = config

    async def suggest_reply(
        self,
        message_pk: uuid.UUID,
        *,
        user_context: str | None = None,
    ) -> ReplySuggestion | None:
        """Draft one reply; ``None`` if the message does not exist."""
        message = await self._messages.get(message_pk)
        if message is None:
            return None
        email = email_context(message)
        context = await self._context(email, message_pk)
        return await self._draft(email, context, user_context=user_context)

    async def suggest_replies(self, message_pk: uuid.UUID, count: int = 3) -> list[ReplySuggestion]:
        """Draft *count* variations, each sampled a little hotter than the last."""
        if count < 1 or count > self._config.max_suggestions:
            raise ValueError(f"count must be between 1 and {self._config.max_suggestions}")
        message = await self._messages.get(message_pk)
        if message is None:
            return []
        email = email_context(message)
        context = await self._context(email, message_pk)
        return [await self._draft(email, context, variation=i) for i in range(count)]

    async def improve_reply(
        self,
        original: str,
        feedback: str,
        *,
        message_pk: uuid.UUID | None = None,
    ) -> str:
        email = ""
        if message_pk is not None:
            message = await self._messages.get(message_pk)
            if message is not None:
                email = email_context(message)
        prompt = (
            "Improve this email reply based on the feedback provided.\n\n"
            f"Original reply:\n{original}\n\n"
            f"Feedback:\n{feedback}\n\n"
            f"Original email:\n{email or 'Not available'}\n\n"
            "Return only the improved reply."
        )
        improved = await self._completer.complete(
            IMPROVE_SYSTEM_PROMPT, prompt, temperature=0.5, max_tokens=400
        )
        return improved.strip()

    async def _context(self, email: str, message_pk: uuid.UUID) -> list[KnowledgeMatch]:
        try:
            return await self._knowledge.context_for(email)
        except ClassificationError as exc:
            logger.warning("knowledge_lookup_failed", message_pk=str(message_pk), error=str(exc))
            return []

    async def _draft(
        self,
        email: str,
        context: list[KnowledgeMatch],
        *,
        user_context: str | None = None,
        variation: int = 0,
    ) -> ReplySuggestion:
        content = await self._completer.complete(
            REPLY_SYSTEM_PROMPT,
            build_reply_prompt(email, context, user_context, variation),
            temperature=self._config.reply_temperature + variation * 0.1,
            max_tokens=self._config.reply_max_tokens,
        )
        reply, reasoning = parse_reply(content)
        avg_similarity = sum(m.similarity for m in context) / len(context) if context else 0.0
        return ReplySuggestion(
            reply=reply,
            confidence=min(0.95, 0.5 + avg_similarity * 0.5),
            reasoning=reasoning,
            sources=[
                ReplySource(
                    content=m.content[:SOURCE_PREVIEW_CHARS] + "...",
                    doc_type=m.doc_type,
                    similarity=m.similarity,
                )
                for m in context
            ],
        )
