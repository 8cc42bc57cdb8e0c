"""Elasticsearch index writer and query builders for message documents."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog
from elasticsearch import ApiError, AsyncElasticsearch, ConflictError, NotFoundError, TransportError

from .config import ElasticsearchConfig
from .db.models import Message
from .errors import SearchIndexError

logger = structlog.get_logger()

SEARCH_FIELDS = [
    "subject^3",
    "body_text^2",
    "from.name^2",
    "from.address",
    "to.name",
    "to.address",
]

INDEX_SETTINGS: dict[str, Any] = {
    "number_of_shards": 1,
    "number_of_replicas": 0,
    "analysis": {
        "analyzer": {
            "email_analyzer": {
                "type": "custom",
                "tokenizer": "standard",
                "filter": ["lowercase", "stop", "snowball"],
            }
        }
    },
}

INDEX_MAPPINGS: dict[str, Any] = {
    "properties": {
        "messageId": {"type": "keyword"},
        "accountId": {"type": "keyword"},
        "accountEmail": {"type": "keyword"},
        "subject": {
            "type": "text",
            "analyzer": "email_analyzer",
            "fields": {"keyword": {"type": "keyword"}},
        },
        "from": {
            "properties": {
                "name": {"type": "text", "analyzer": "email_analyzer"},
                "address": {"type": "keyword"},
            }
        },
        "to": {
            "properties": {
                "name": {"type": "text"},
                "address": {"type": "keyword"},
            }
        },
        "cc": {
            "properties": {
                "name": {"type": "text"},
                "address": {"type": "keyword"},
            }
        },
        "body_text": {"type": "text", "analyzer": "email_analyzer"},
        "folder": {"type": "keyword"},
        "aiCategory": {"type": "keyword"},
        "aiConfidence": {"type": "float"},
        "date": {"type": "date"},
        "isRead": {"type": "boolean"},
        "flags": {"type": "keyword"},
        "uid": {"type": "integer"},
        "createdAt": {"type": "date"},
    }
}


def build_message_search(
    *,
    q: str | None = None,
    account_id: str | None = None,
    account_email: str | None = None,
    folder: str | None = None,
    label: str | None = None,
    is_read: bool | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    """Build an ES query for the message index.

    Returns a dict ready to pass as ``body=`` to ``AsyncElasticsearch.search()``.
    """
    must: list[dict] = []
    filters: list[dict] = []

    if q and q.strip():
        must.append({
            "multi_match": {
                "query": q.strip(),
                "fields": SEARCH_FIELDS,
                "type": "best_fields",
                "fuzziness": "AUTO",
            }
        })

    if account_id:
        filters.append({"term": {"accountId": account_id}})

    if account_email:
        filters.append({"term": {"accountEmail": account_email}})

    if folder:
        filters.append({"term": {"folder": folder}})

    if label:
        filters.append({"term": {"aiCategory": label}})

    if is_read is not None:
        filters.append({"term": {"isRead": is_read}})

    if date_from or date_to:
        range_q: dict = {}
        if date_from:
            range_q["gte"] = date_from.isoformat()
        if date_to:
            range_q["lte"] = date_to.isoformat()
        filters.append({"range": {"date": range_q}})

    page = max(page, 1)
    return {
        "query": {
            "bool": {
                "must": must or [{"match_all": {}}],
                "filter": filters,
            }
        },
        "highlight": {
            "fields": {
                "subject": {},
                "body_text": {"fragment_size": 150, "number_of_fragments": 3},
            }
        },
        "sort": [{"date": {"order": "desc"}}],
        "from": (page - 1) * limit,
        "size": limit,
    }


def build_message_stats() -> dict:
    """Aggregations for the dashboard: labels, accounts, unread, per-day volume."""
    return {
        "size": 0,
        "aggs": {
            "by_category": {"terms": {"field": "aiCategory", "missing": "Uncategorized"}},
            "by_account": {"terms": {"field": "accountEmail"}},
            "unread_count": {"filter": {"term": {"isRead": False}}},
            "over_time": {
                "date_histogram": {
                    "field": "date",
                    "calendar_interval": "day",
                    "order": {"_key": "desc"},
                }
            },
        },
    }


class IndexWriter:
    """Writes message documents to the search index.

    Documents are keyed by the store's message primary key.  When the
    configured URL is empty the writer is disabled and every write is a
    no-op.  Failures raise :class:`SearchIndexError`; callers on the
    ingestion path log and move on.
    """

    def __init__(
        self,
        config: ElasticsearchConfig,
        client: AsyncElasticsearch | None = None,
    ) -> None:
        self._index = config.index_name
        if client is None and config.url:
            client = AsyncElasticsearch(hosts=[config.url], request_timeout=config.request_timeout)
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._client is not None

    @property
    def index_name(self) -> str:
        return self._index

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except (ApiError, TransportError):
            return False

    # ------------------------------------------------------------------
    # Index lifecycle
    # ------------------------------------------------------------------

    async def ensure_index(self) -> bool:
        """Create the index with analyzer and mapping; returns True if created."""
        if self._client is None:
            return False
        try:
            if await self._client.indices.exists(index=self._index):
                logger.info("search_index_exists", index=self._index)
                return False
            await self._client.indices.create(
                index=self._index,
                settings=INDEX_SETTINGS,
                mappings=INDEX_MAPPINGS,
            )
        except (ApiError, TransportError) as exc:
            raise SearchIndexError(f"cannot create index {self._index}: {exc}") from exc
        logger.info("search_index_created", index=self._index)
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def index_message(self, message: Message) -> None:
        """Create the document for a newly stored message.

        An existing document, created earlier by an upsert, is left untouched.
        """
        if self._client is None:
            return
        try:
            await self._client.index(
                index=self._index,
                id=str(message.id),
                document=message.to_document(),
                op_type="create",
            )
        except ConflictError:
            logger.debug("message_already_indexed", message_pk=str(message.id))
            return
        except (ApiError, TransportError) as exc:
            raise SearchIndexError(f"cannot index message {message.id}: {exc}") from exc
        logger.debug("message_indexed", message_pk=str(message.id))

    async def update_message(self, message: Message, fields: dict[str, Any]) -> None:
        """Apply *fields* to the message's document, creating it when missing."""
        if self._client is None:
            return
        try:
            await self._client.update(
                index=self._index,
                id=str(message.id),
                doc=fields,
                upsert=message.to_document(),
            )
        except (ApiError, TransportError) as exc:
            raise SearchIndexError(f"cannot update message {message.id}: {exc}") from exc

    async def delete_message(self, message_pk: uuid.UUID) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.delete(index=self._index, id=str(message_pk))
        except NotFoundError:
            return False
        except (ApiError, TransportError) as exc:
            raise SearchIndexError(f"cannot delete message {message_pk}: {exc}") from exc
        return True

    async def delete_account(self, account_id: uuid.UUID) -> int:
        """Remove every document of one account; returns the number deleted."""
        if self._client is None:
            return 0
        try:
            resp = await self._client.delete_by_query(
                index=self._index,
                query={"term": {"accountId": str(account_id)}},
                refresh=True,
            )
        except (ApiError, TransportError) as exc:
            raise SearchIndexError(f"cannot delete account {account_id}: {exc}") from exc
        deleted = int(resp.get("deleted", 0))
        logger.info("search_index_account_deleted", account_id=str(account_id), deleted=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(self, q: str | None = None, **filters: Any) -> dict[str, Any]:
        """Run a message search; returns ``{"total", "hits"}``.

        Each hit carries the document id, score, source and highlight.
        """
        if self._client is None:
            return {"total": 0, "hits": []}
        body = build_message_search(q=q, **filters)
        try:
            resp = await self._client.search(index=self._index, body=body)
        except (ApiError, TransportError) as exc:
            raise SearchIndexError(f"search failed: {exc}") from exc

        hits_data = resp.get("hits", {})
        return {
            "total": hits_data.get("total", {}).get("value", 0),
            "hits": [
                {
                    "id": hit["_id"],
                    "score": hit.get("_score"),
                    "source": hit.get("_source", {}),
                    "highlight": hit.get("highlight", {}),
                }
                for hit in hits_data.get("hits", [])
            ],
        }

    async def stats(self) -> dict[str, Any] | None:
        if self._client is None:
            return None
        try:
            resp = await self._client.search(index=self._index, body=build_message_stats())
        except (ApiError, TransportError) as exc:
            raise SearchIndexError(f"stats query failed: {exc}") from exc

        aggs = resp.get("aggregations", {})
        return {
            "total": resp.get("hits", {}).get("total", {}).get("value", 0),
            "by_category": {b["key"]: b["doc_count"] for b in aggs.get("by_category", {}).get("buckets", [])},
            "by_account": {b["key"]: b["doc_count"] for b in aggs.get("by_account", {}).get("buckets", [])},
            "unread": aggs.get("unread_count", {}).get("doc_count", 0),
            "over_time": [
                {"date": b.get("key_as_string", b["key"]), "count": b["doc_count"]}
                for b in aggs.get("over_time", {}).get("buckets", [])
            ],
        }
