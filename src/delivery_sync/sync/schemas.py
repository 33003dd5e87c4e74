"""Pydantic schemas for the sync engine.

Covers the unit of work (SyncTask), inbound change notifications
(ChangeEvent), remote document views, execution outcomes, dead letters and
the reconciliation DiscrepancyReport.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.delivery_sync.projects.schemas import SyncStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Tasks ────────────────────────────────────────────────────────────────────


class SyncDirection(str, Enum):
    PUSH = "PUSH"  # local -> remote
    PULL = "PULL"  # remote -> local
    ARCHIVE = "ARCHIVE"  # local row deleted -> archive the page


class SyncReason(str, Enum):
    """Why a task was created."""

    webhook = "webhook"
    manual_trigger = "manual_trigger"
    reconciliation = "reconciliation"
    local_change = "local_change"
    local_delete = "local_delete"
    recovery = "recovery"


class SyncTask(BaseModel):
    """A unit of sync work for one entity in one direction."""

    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    entity_id: str
    direction: SyncDirection
    reason: SyncReason
    attempt: int = 0
    next_attempt_at: datetime = Field(default_factory=utcnow)
    enqueued_at: datetime = Field(default_factory=utcnow)
    event_id: str | None = None
    # Webhook event time; more precise than the page's minute-rounded last_edited_time
    occurred_at: datetime | None = None
    # Page to archive once the local row is gone (ARCHIVE tasks only)
    remote_document_id: str | None = None

    @property
    def is_manual(self) -> bool:
        return self.reason == SyncReason.manual_trigger


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    RETRY = "retry"  # transient; hand back to the retry scheduler
    FAILED = "failed"  # surfaced on last_sync_error, not retried automatically
    DEAD = "dead"  # permanent failure
    SKIPPED = "skipped"  # entity missing, or DEAD and not manually re-triggered


class TaskOutcome(BaseModel):
    """Result of running one SyncTask through the executor."""

    task: SyncTask
    kind: OutcomeKind
    error: str | None = None
    error_kind: str | None = None
    retry_after: float | None = None
    remote_document_id: str | None = None
    remote_written: bool = False
    local_written: bool = False


class DeadLetter(BaseModel):
    """A task that exhausted its attempts, kept for operator replay."""

    task: SyncTask
    error: str
    error_kind: str
    dead_lettered_at: datetime = Field(default_factory=utcnow)


# ── Inbound events ───────────────────────────────────────────────────────────


class ChangeEventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    PROPERTY_CHANGED = "property_changed"
    DELETED = "deleted"
    UNKNOWN = "unknown"


class ChangeEvent(BaseModel):
    """An inbound change notification. Ephemeral; only its id is remembered."""

    event_id: str
    provider: str
    event_type: ChangeEventType
    raw_type: str
    remote_document_id: str | None = None
    occurred_at: datetime | None = None
    updated_properties: dict[str, Any] = Field(default_factory=dict)


class WebhookReceipt(BaseModel):
    """What happened to an inbound webhook; always returned with HTTP 200."""

    event_id: str | None = None
    accepted: bool = True
    duplicate: bool = False
    tasks_enqueued: int = 0
    ignored_reason: str | None = None


# ── Remote documents ─────────────────────────────────────────────────────────


class DocumentQuery(BaseModel):
    """Lookup for an existing page: by the Internal ID link property or by title."""

    internal_id: str | None = None
    title: str | None = None


class DocumentRef(BaseModel):
    id: str
    url: str | None = None


class RemoteDocument(BaseModel):
    """A Notion page as seen by the sync engine."""

    id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    last_edited_time: datetime | None = None
    archived: bool = False
    url: str | None = None


class Block(BaseModel):
    id: str
    type: str
    text: str = ""
    has_children: bool = False


# ── Reconciliation ───────────────────────────────────────────────────────────


class Resolution(str, Enum):
    push = "push"
    pull = "pull"
    manual_review = "manual_review"


class Discrepancy(BaseModel):
    entity_id: str
    field: str
    local_value: Any = None
    remote_value: Any = None
    resolution: Resolution
    healed: bool = False


class ScanError(BaseModel):
    entity_id: str
    error: str
    error_kind: str


class ScanScope(BaseModel):
    """Limits a reconciliation scan; defaults to every linked entity."""

    entity_ids: list[str] | None = None
    limit: int | None = Field(default=None, ge=1)
    auto_heal: bool = True


class DiscrepancyReport(BaseModel):
    scanned_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    total_checked: int = 0
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    errors: list[ScanError] = Field(default_factory=list)
    tasks_issued: int = 0
    cancelled: bool = False
    partial: bool = False


# ── Status indicator ─────────────────────────────────────────────────────────


class SyncIndicator(str, Enum):
    """Coarse status shown to end users of the surrounding application."""

    not_synced = "not_synced"
    syncing = "syncing"
    up_to_date = "up_to_date"
    needs_attention = "needs_attention"


_INDICATORS: dict[SyncStatus, SyncIndicator] = {
    SyncStatus.NOT_SYNCED: SyncIndicator.not_synced,
    SyncStatus.PENDING: SyncIndicator.syncing,
    SyncStatus.SYNCED: SyncIndicator.up_to_date,
    SyncStatus.FAILED: SyncIndicator.needs_attention,
    SyncStatus.DEAD: SyncIndicator.needs_attention,
}


def sync_indicator(status: SyncStatus) -> SyncIndicator:
    return _INDICATORS[status]


# ── Operator views ───────────────────────────────────────────────────────────


class AttentionItem(BaseModel):
    entity_id: str
    name: str
    sync_status: SyncStatus
    indicator: SyncIndicator
    last_sync_error: str | None = None
    last_synced_at: datetime | None = None


class SyncHealth(BaseModel):
    """Snapshot served by GET /sync/health."""

    counts: dict[SyncStatus, int]
    pending_tasks: int
    in_flight: int
    workers_running: bool
    dead_letters: list[DeadLetter] = Field(default_factory=list)
    needs_attention: list[AttentionItem] = Field(default_factory=list)
    recent_conflicts: list[Discrepancy] = Field(default_factory=list)
    scan_running: bool = False
    latest_report: DiscrepancyReport | None = None


class RemoteView(BaseModel):
    """Diagnostic view of the Notion page linked to a project."""

    entity_id: str
    remote_document_id: str
    url: str | None = None
    archived: bool = False
    last_edited_time: datetime | None = None
    values: dict[str, Any] = Field(default_factory=dict)
    mapping_errors: list[dict[str, Any]] = Field(default_factory=list)
    blocks: list[Block] = Field(default_factory=list)
