"""Project persistence model.

The sync bookkeeping columns (sync_status, remote_document_id, last_synced_at,
last_sync_error, last_synced_payload) live alongside the business columns, so
no separate sync table is needed.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import Date, DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.delivery_sync.core.database import Base


class ProjectModel(Base):
    """Client project, the authoritative record mirrored to a Notion page."""

    __tablename__ = "projects"
    __table_args__ = (
        Index("ix_projects_sync_status", "sync_status"),
        Index("ix_projects_remote_document_id", "remote_document_id", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    status: Mapped[str] = mapped_column(
        String(40), default="INTAKE", server_default=text("'INTAKE'")
    )
    tier: Mapped[int] = mapped_column(Integer, default=1, server_default=text("1"))
    project_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'")
    )
    budget_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # ── Sync bookkeeping ────────────────────────────────────────────────────
    remote_document_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sync_status: Mapped[str] = mapped_column(
        String(20), default="NOT_SYNCED", server_default=text("'NOT_SYNCED'")
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    local_version: Mapped[int] = mapped_column(
        Integer, default=1, server_default=text("1")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
