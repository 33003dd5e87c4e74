"""Pydantic schemas for client projects -- the entity kept in sync with Notion.

Provides:
- ProjectStatus, ProjectTier, PaymentStatus: closed enums for mapped fields
- SyncStatus: per-project synchronization state
- ProjectCreate / ProjectUpdate: local mutation payloads
- ProjectRead: full project record including sync bookkeeping columns
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ProjectStatus(str, Enum):
    """Delivery lifecycle stage of a client project."""

    INTAKE = "INTAKE"
    ONBOARDING = "ONBOARDING"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_FEEDBACK = "AWAITING_FEEDBACK"
    REVISIONS = "REVISIONS"
    DELIVERED = "DELIVERED"
    CLOSED = "CLOSED"


class ProjectTier(int, Enum):
    """Service tier purchased by the client."""

    SEEDLING = 1
    SPROUT = 2
    CANOPY = 3
    LEGACY = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def from_label(cls, label: str) -> ProjectTier:
        try:
            return cls[label.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown tier: {label!r}") from None


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"


class SyncStatus(str, Enum):
    """Synchronization state of a project relative to its Notion page."""

    NOT_SYNCED = "NOT_SYNCED"
    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"
    DEAD = "DEAD"


class ProjectCreate(BaseModel):
    """Payload for creating a project locally."""

    name: str = Field(min_length=1, max_length=300)
    status: ProjectStatus = ProjectStatus.INTAKE
    tier: ProjectTier = ProjectTier.SEEDLING
    project_address: str | None = None
    payment_status: PaymentStatus = PaymentStatus.pending
    budget_cents: int | None = Field(default=None, ge=0)
    due_date: date | None = None


class ProjectUpdate(BaseModel):
    """Partial local update -- only explicitly set fields are written."""

    name: str | None = Field(default=None, min_length=1, max_length=300)
    status: ProjectStatus | None = None
    tier: ProjectTier | None = None
    project_address: str | None = None
    payment_status: PaymentStatus | None = None
    budget_cents: int | None = Field(default=None, ge=0)
    due_date: date | None = None


class ProjectRead(BaseModel):
    """Full project record as stored in Postgres."""

    id: str
    name: str
    status: ProjectStatus = ProjectStatus.INTAKE
    tier: ProjectTier = ProjectTier.SEEDLING
    project_address: str | None = None
    payment_status: PaymentStatus = PaymentStatus.pending
    budget_cents: int | None = None
    due_date: date | None = None

    # Sync bookkeeping (written only by the sync state store)
    remote_document_id: str | None = None
    sync_status: SyncStatus = SyncStatus.NOT_SYNCED
    last_synced_at: datetime | None = None
    last_sync_error: str | None = None
    last_synced_payload: dict[str, Any] | None = None

    local_version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
