"""Webhook receipt -- verification, deduplication and dispatch to sync tasks.

Inbound Notion events go through three steps:

1. WebhookVerifier checks authenticity against a mandatory shared secret
   (HMAC signature header, or a shared token header/body field) using
   constant-time comparison. Failures raise AuthenticationFailure, which the
   API turns into a 401 so the provider can alert.
2. EventDeduplicator drops events whose id was seen within the TTL. Ids
   live in Redis, so redeliveries are caught across restarts and across
   processes. Ids that expire are no longer deduplicated; the executor's
   idempotence covers such late replays.
3. The dispatcher turns page events into PULL tasks for the linked project.
   Event types we don't act on are logged and acknowledged, never failed.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError

from src.delivery_sync.core.monitoring import webhook_events_total
from src.delivery_sync.core.redis import redis_key
from src.delivery_sync.sync.adapter import RecordStore
from src.delivery_sync.sync.errors import (
    AuthenticationFailure,
    ConfigurationError,
    ValidationFailure,
)
from src.delivery_sync.sync.scheduler import RetryScheduler
from src.delivery_sync.sync.schemas import (
    ChangeEvent,
    ChangeEventType,
    SyncDirection,
    SyncReason,
    SyncTask,
    WebhookReceipt,
)

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-notion-signature"
TIMESTAMP_HEADER = "x-notion-timestamp"
TOKEN_HEADER = "x-webhook-token"

EVENT_TYPES: dict[str, ChangeEventType] = {
    "page.created": ChangeEventType.CREATED,
    "page.updated": ChangeEventType.UPDATED,
    "page.content_updated": ChangeEventType.UPDATED,
    "page.moved": ChangeEventType.UPDATED,
    "page.undeleted": ChangeEventType.UPDATED,
    "page.properties_updated": ChangeEventType.PROPERTY_CHANGED,
    "page.deleted": ChangeEventType.DELETED,
}


# ── Verification ─────────────────────────────────────────────────────────────


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_v1(secret: str, timestamp: str, raw_body: bytes) -> str:
    """Signature header value for the timestamped ``v1=`` scheme."""
    return "v1=" + _hmac_hex(secret, f"{timestamp}.".encode("utf-8") + raw_body)


def sign_sha256(secret: str, raw_body: bytes) -> str:
    """Signature header value for the body-only ``sha256=`` scheme."""
    return "sha256=" + _hmac_hex(secret, raw_body)


class WebhookVerifier:
    """Verifies inbound webhooks against a shared secret.

    Accepted credentials, checked in this order:
    - ``X-Notion-Signature: v1=<hmac>`` over ``"{X-Notion-Timestamp}.{body}"``
    - ``X-Notion-Signature: sha256=<hmac>`` over the raw body
    - ``X-Webhook-Token`` header or ``passcode`` body field equal to the secret

    Args:
        secret: Shared signing secret. Required.
        timestamp_tolerance: Max age in seconds of a v1 timestamp (0 disables the check).
        clock: Returns unix time in seconds (injectable for tests).

    Raises:
        ConfigurationError: If secret is empty.
    """

    def __init__(
        self,
        secret: str,
        timestamp_tolerance: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ConfigurationError(
                "Webhook secret is not configured; refusing to accept unauthenticated events"
            )
        self._secret = secret
        self._tolerance = timestamp_tolerance
        self._clock = clock

    def verify(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        payload: dict[str, Any] | None = None,
    ) -> None:
        """Raise AuthenticationFailure unless the request carries valid credentials."""
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get(SIGNATURE_HEADER)

        if signature:
            if signature.startswith("v1="):
                timestamp = lowered.get(TIMESTAMP_HEADER)
                if not timestamp:
                    raise AuthenticationFailure("missing signature timestamp")
                self._check_timestamp(timestamp)
                expected = sign_v1(self._secret, timestamp, raw_body)
            elif signature.startswith("sha256="):
                expected = sign_sha256(self._secret, raw_body)
            else:
                raise AuthenticationFailure("unsupported signature scheme")
            if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
                raise AuthenticationFailure("signature mismatch")
            return

        token = lowered.get(TOKEN_HEADER)
        if token is None and payload is not None:
            passcode = payload.get("passcode")
            token = passcode if isinstance(passcode, str) else None
        if not token:
            raise AuthenticationFailure("missing webhook credentials")
        if not hmac.compare_digest(token.encode("utf-8"), self._secret.encode("utf-8")):
            raise AuthenticationFailure("token mismatch")

    def _check_timestamp(self, timestamp: str) -> None:
        if not self._tolerance:
            return
        try:
            sent_at = float(timestamp)
        except ValueError:
            raise AuthenticationFailure("malformed signature timestamp") from None
        if abs(self._clock() - sent_at) > self._tolerance:
            raise AuthenticationFailure("signature timestamp outside tolerance")


# ── Deduplication ────────────────────────────────────────────────────────────


class EventDeduplicator:
    """Recently seen webhook event ids, kept in Redis with a TTL.

    Key pattern: {prefix}:webhook:event:{event_id}. A single SET NX EX both
    records and tests the id, so concurrent deliveries of one event to
    different processes are deduplicated too.

    Args:
        redis: Async Redis client.
        ttl_seconds: How long an id is remembered.
        prefix: Key namespace shared with the scheduler.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_seconds: int = 3600,
        prefix: str = "delivery_sync",
    ) -> None:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be at least 1")
        self._redis = redis
        self._ttl = int(ttl_seconds)
        self._prefix = prefix

    def _key(self, event_id: str) -> str:
        return redis_key(self._prefix, "webhook", "event", event_id)

    async def seen(self, event_id: str) -> bool:
        """Record event_id; return True if it was already remembered."""
        created = await self._redis.set(self._key(event_id), "1", nx=True, ex=self._ttl)
        return not created

    async def forget(self, event_id: str) -> None:
        await self._redis.delete(self._key(event_id))


# ── Parsing ──────────────────────────────────────────────────────────────────


def parse_change_event(provider: str, payload: dict[str, Any], raw_body: bytes) -> ChangeEvent:
    """Build a ChangeEvent from a webhook payload.

    Understands Notion's ``{id, type, timestamp, entity: {id}, data}`` shape
    and the older ``{type, page_id, updated_properties, updated_at}`` shape.
    Payloads without an event id get one derived from the body hash, so
    byte-identical redeliveries still deduplicate.

    Raises:
        ValidationFailure: If the payload fields have the wrong types.
    """
    raw_type = str(payload.get("type") or "")
    entity = payload.get("entity") if isinstance(payload.get("entity"), dict) else {}
    obj = payload.get("object") if isinstance(payload.get("object"), dict) else {}

    event_id = payload.get("id") if isinstance(payload.get("id"), str) else None
    if not event_id:
        event_id = "sha256:" + hashlib.sha256(raw_body).hexdigest()

    updated = payload.get("updated_properties")
    data = payload.get("data")
    if not isinstance(updated, dict) and isinstance(data, dict):
        updated = data.get("properties")

    try:
        return ChangeEvent(
            event_id=event_id,
            provider=provider,
            event_type=EVENT_TYPES.get(raw_type, ChangeEventType.UNKNOWN),
            raw_type=raw_type,
            remote_document_id=entity.get("id") or payload.get("page_id") or obj.get("id"),
            occurred_at=payload.get("timestamp") or payload.get("updated_at") or obj.get("last_edited_time"),
            updated_properties=updated if isinstance(updated, dict) else {},
        )
    except ValidationError as exc:
        raise ValidationFailure(f"Malformed webhook payload: {exc.error_count()} invalid fields") from exc


# ── Receiver ─────────────────────────────────────────────────────────────────


class WebhookReceiver:
    """Verifies, deduplicates and dispatches inbound webhooks.

    Args:
        verifiers: Verifier per provider name (the ``{provider}`` path segment).
        store: Record store used to resolve pages to projects.
        scheduler: Queue receiving the PULL tasks.
        dedup: Redis-backed event id cache.
    """

    def __init__(
        self,
        verifiers: dict[str, WebhookVerifier],
        store: RecordStore,
        scheduler: RetryScheduler,
        dedup: EventDeduplicator,
    ) -> None:
        self._verifiers = verifiers
        self._store = store
        self._scheduler = scheduler
        self._dedup = dedup

    @property
    def providers(self) -> frozenset[str]:
        return frozenset(self._verifiers)

    async def receive(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> WebhookReceipt:
        """Handle one inbound webhook.

        Raises:
            KeyError: If provider has no verifier.
            AuthenticationFailure: If credentials are missing or wrong.
            ValidationFailure: If the authenticated body is not a JSON object.
        """
        verifier = self._verifiers[provider]

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            payload = None
        if not isinstance(payload, dict):
            payload = None

        try:
            verifier.verify(raw_body, headers, payload)
        except AuthenticationFailure as exc:
            webhook_events_total.labels(provider=provider, result="rejected").inc()
            logger.warning("webhook.rejected", provider=provider, reason=str(exc))
            raise

        if payload is None:
            webhook_events_total.labels(provider=provider, result="malformed").inc()
            raise ValidationFailure("Webhook body is not a JSON object")

        event = parse_change_event(provider, payload, raw_body)
        log = logger.bind(provider=provider, event_id=event.event_id, event_type=event.raw_type)

        if await self._dedup.seen(event.event_id):
            webhook_events_total.labels(provider=provider, result="duplicate").inc()
            log.info("webhook.duplicate_event")
            return WebhookReceipt(event_id=event.event_id, duplicate=True)

        try:
            tasks, ignored_reason = await self.dispatch(event)
        except Exception:
            # Let the provider redeliver: the event has had no effect yet
            await self._dedup.forget(event.event_id)
            raise

        for task in tasks:
            await self._scheduler.schedule(task)

        result = "dispatched" if tasks else "ignored"
        webhook_events_total.labels(provider=provider, result=result).inc()
        log.info(
            "webhook.event_received",
            tasks_enqueued=len(tasks),
            ignored_reason=ignored_reason,
        )
        return WebhookReceipt(
            event_id=event.event_id,
            tasks_enqueued=len(tasks),
            ignored_reason=ignored_reason,
        )

    async def dispatch(self, event: ChangeEvent) -> tuple[list[SyncTask], str | None]:
        """Map an event to PULL tasks.

        Returns:
            (tasks, ignored_reason); ignored_reason is set when no task is issued.
        """
        if event.event_type == ChangeEventType.UNKNOWN:
            logger.info("webhook.unknown_event_type", event_type=event.raw_type, event_id=event.event_id)
            return [], "unknown_event_type"

        if event.event_type == ChangeEventType.DELETED:
            logger.warning("webhook.remote_page_deleted", remote_document_id=event.remote_document_id)
            return [], "page_deleted"

        if not event.remote_document_id:
            return [], "missing_document_id"

        entity = await self._store.get_by_remote_document_id(event.remote_document_id)
        if entity is None:
            logger.info("webhook.unlinked_page", remote_document_id=event.remote_document_id)
            return [], "unlinked_page"

        if _is_stale(event.occurred_at, entity.last_synced_at):
            logger.debug(
                "webhook.stale_event",
                entity_id=entity.id,
                occurred_at=event.occurred_at.isoformat() if event.occurred_at else None,
            )
            return [], "stale_event"

        return [
            self._scheduler.new_task(
                entity.id,
                SyncDirection.PULL,
                SyncReason.webhook,
                event_id=event.event_id,
                occurred_at=event.occurred_at,
            )
        ], None


def _is_stale(occurred_at: datetime | None, last_synced_at: datetime | None) -> bool:
    """An event that happened before the last completed sync is already reflected."""
    if occurred_at is None or last_synced_at is None:
        return False
    if occurred_at.tzinfo is None or last_synced_at.tzinfo is None:
        return False
    return occurred_at < last_synced_at
