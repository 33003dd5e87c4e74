"""Notion document client -- typed transport for project pages.

Implements RemoteDocumentAPI over ``notion_client.AsyncClient``.

Key implementation details:
- Every call is bounded by a timeout and paced by a shared TokenBucket.
- Failures are classified into the sync error taxonomy (RateLimitedError,
  TransientError, NotFoundError, PermanentError, ValidationFailure).
- No retries here: the retry scheduler owns retry policy, which keeps this
  layer a plain request/response wrapper.
- Lazy data_source_id resolution for API version 2025-09-03 databases, with
  a fallback to the classic database query endpoint.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import httpx
import structlog
from notion_client import AsyncClient
from notion_client.errors import APIResponseError, HTTPResponseError, RequestTimeoutError

from src.delivery_sync.sync.adapter import RemoteDocumentAPI
from src.delivery_sync.sync.errors import (
    NotFoundError,
    PermanentError,
    RateLimitedError,
    SyncError,
    TransientError,
    ValidationFailure,
)
from src.delivery_sync.sync.field_mapping import LINK_PROPERTY
from src.delivery_sync.sync.rate_limit import TokenBucket
from src.delivery_sync.sync.schemas import (
    Block,
    DocumentQuery,
    DocumentRef,
    RemoteDocument,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Notion error codes that are safe to retry
_TRANSIENT_CODES = frozenset(
    {
        "internal_server_error",
        "service_unavailable",
        "database_connection_unavailable",
        "gateway_timeout",
        "conflict_error",
    }
)


# ── Error Classification ───────────────────────────────────────────────────


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def classify_response(
    status: int | None,
    code: str | None,
    message: str,
    headers: Mapping[str, str] | None = None,
) -> SyncError:
    """Map an HTTP status / Notion error code to a sync error."""
    if status == 429 or code == "rate_limited":
        retry_after = parse_retry_after((headers or {}).get("Retry-After"))
        return RateLimitedError(message, retry_after=retry_after)
    if status == 404 or code == "object_not_found":
        return NotFoundError(message)
    if (status is not None and status >= 500) or code in _TRANSIENT_CODES:
        return TransientError(message)
    if status == 400 and code in (None, "validation_error", "invalid_json", "invalid_request"):
        return ValidationFailure(message)
    return PermanentError(message)


def classify_exception(exc: BaseException) -> SyncError:
    """Map any exception raised by a Notion call to a sync error."""
    if isinstance(exc, SyncError):
        return exc
    if isinstance(exc, (RequestTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return TransientError(f"Notion request timed out: {exc}")
    if isinstance(exc, APIResponseError):
        return classify_response(
            getattr(exc, "status", None),
            str(getattr(exc, "code", "") or "") or None,
            str(exc),
            getattr(exc, "headers", None),
        )
    if isinstance(exc, HTTPResponseError):
        return classify_response(getattr(exc, "status", None), None, str(exc), getattr(exc, "headers", None))
    if isinstance(exc, httpx.HTTPError):
        return TransientError(f"Notion transport error: {exc}")
    return TransientError(f"Unexpected Notion client error: {exc!r}")


# ── Response Parsing ───────────────────────────────────────────────────────


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _page_to_document(page: dict[str, Any]) -> RemoteDocument:
    return RemoteDocument(
        id=page["id"],
        properties=page.get("properties", {}),
        last_edited_time=_parse_timestamp(page.get("last_edited_time")),
        archived=bool(page.get("archived") or page.get("in_trash")),
        url=page.get("url"),
    )


def _block_text(block: dict[str, Any]) -> str:
    body = block.get(block.get("type", ""), {}) or {}
    segments = body.get("rich_text", []) if isinstance(body, dict) else []
    return "".join(s.get("plain_text") or s.get("text", {}).get("content", "") for s in segments)


def _page_title(page: dict[str, Any]) -> str:
    for prop in page.get("properties", {}).values():
        if prop.get("type") == "title":
            return "".join(s.get("plain_text", "") for s in prop.get("title", []))
    return ""


class NotionDocumentClient(RemoteDocumentAPI):
    """Notion database client for project pages.

    Args:
        token: Notion integration token (internal integration secret).
        database_id: Notion database holding one page per project.
        timeout: Upper bound in seconds for every API call.
        rate_limiter: Shared TokenBucket pacing outbound calls.
        client: Pre-built AsyncClient (tests); built from token when omitted.
    """

    def __init__(
        self,
        token: str,
        database_id: str,
        timeout: float = 10.0,
        rate_limiter: TokenBucket | None = None,
        client: AsyncClient | None = None,
    ) -> None:
        self._client = client or AsyncClient(auth=token, timeout_ms=int(timeout * 1000))
        self._database_id = database_id
        self._timeout = timeout
        self._rate_limiter = rate_limiter
        self._data_source_id: str | None = None  # Resolved lazily

    @property
    def database_id(self) -> str:
        return self._database_id

    async def _call(self, operation: str, request: Callable[[], Awaitable[T]]) -> T:
        """Run one Notion request under the rate limiter and timeout, classifying failures."""
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire()
        try:
            return await asyncio.wait_for(request(), timeout=self._timeout)
        except Exception as exc:
            error = classify_exception(exc)
            logger.warning(
                "notion.request_failed",
                operation=operation,
                error_kind=error.kind,
                error=str(error),
            )
            raise error from exc

    async def _ensure_data_source(self) -> str | None:
        """Resolve data_source_id from the database (API 2025-09-03 requirement).

        Returns:
            The data_source_id, or None when the SDK or database predates data sources.
        """
        if self._data_source_id is not None:
            return self._data_source_id or None
        if not hasattr(self._client, "data_sources"):
            self._data_source_id = ""
            return None

        db = await self._call(
            "databases.retrieve",
            lambda: self._client.databases.retrieve(database_id=self._database_id),
        )
        sources = db.get("data_sources", [])
        if sources:
            self._data_source_id = sources[0]["id"]
        else:
            logger.info("notion.data_source_fallback", database_id=self._database_id)
            self._data_source_id = ""
        return self._data_source_id or None

    async def _query_database(self, **kwargs: Any) -> dict[str, Any]:
        data_source_id = await self._ensure_data_source()
        if data_source_id:
            return await self._call(
                "data_sources.query",
                lambda: self._client.data_sources.query(data_source_id=data_source_id, **kwargs),
            )
        return await self._call(
            "databases.query",
            lambda: self._client.databases.query(database_id=self._database_id, **kwargs),
        )

    async def find_document(self, query: DocumentQuery) -> DocumentRef | None:
        """Find a live project page by Internal ID, or by exact title."""
        if query.internal_id:
            response = await self._query_database(
                filter={"property": LINK_PROPERTY, "rich_text": {"equals": query.internal_id}},
                page_size=5,
            )
            pages = response.get("results", [])
        elif query.title:
            response = await self._call(
                "search",
                lambda: self._client.search(
                    query=query.title,
                    filter={"property": "object", "value": "page"},
                    page_size=20,
                ),
            )
            pages = [p for p in response.get("results", []) if _page_title(p) == query.title]
        else:
            raise ValueError("DocumentQuery needs internal_id or title")

        for page in pages:
            if not (page.get("archived") or page.get("in_trash")):
                logger.info("notion.page_found", page_id=page["id"], query=query.model_dump(exclude_none=True))
                return DocumentRef(id=page["id"], url=page.get("url"))
        return None

    async def get_document(self, document_id: str) -> RemoteDocument:
        """Retrieve a page with its properties and last edit time."""
        page = await self._call(
            "pages.retrieve",
            lambda: self._client.pages.retrieve(page_id=document_id),
        )
        return _page_to_document(page)

    async def create_document(
        self,
        properties: dict[str, Any],
        children: list[dict[str, Any]] | None = None,
        parent_id: str | None = None,
    ) -> DocumentRef:
        """Create a page in the projects database (or under parent_id)."""
        kwargs: dict[str, Any] = {
            "parent": {"database_id": parent_id or self._database_id},
            "properties": properties,
        }
        if children:
            kwargs["children"] = children

        page = await self._call("pages.create", lambda: self._client.pages.create(**kwargs))
        logger.info("notion.page_created", page_id=page["id"], database_id=kwargs["parent"]["database_id"])
        return DocumentRef(id=page["id"], url=page.get("url"))

    async def update_properties(self, document_id: str, properties: dict[str, Any]) -> None:
        """Overwrite the given properties on a page."""
        if not properties:
            return
        await self._call(
            "pages.update",
            lambda: self._client.pages.update(page_id=document_id, properties=properties),
        )
        logger.info("notion.page_updated", page_id=document_id, properties=sorted(properties))

    async def archive_document(self, document_id: str) -> None:
        """Archive a page; Notion keeps it restorable from the trash."""
        await self._call(
            "pages.update",
            lambda: self._client.pages.update(page_id=document_id, archived=True),
        )
        logger.info("notion.page_archived", page_id=document_id)

    async def list_child_blocks(self, document_id: str) -> list[Block]:
        """List a page's top-level blocks, following pagination."""
        blocks: list[Block] = []
        cursor: str | None = None
        while True:
            kwargs: dict[str, Any] = {"block_id": document_id, "page_size": 100}
            if cursor:
                kwargs["start_cursor"] = cursor
            response = await self._call(
                "blocks.children.list",
                lambda: self._client.blocks.children.list(**kwargs),
            )
            for block in response.get("results", []):
                blocks.append(
                    Block(
                        id=block["id"],
                        type=block.get("type", "unsupported"),
                        text=_block_text(block),
                        has_children=bool(block.get("has_children")),
                    )
                )
            if not response.get("has_more"):
                return blocks
            cursor = response.get("next_cursor")
