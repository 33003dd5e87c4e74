"""Sync state store -- the single writer of per-project sync bookkeeping.

Owns sync_status, last_synced_at, last_sync_error, last_synced_payload and
the first assignment of remote_document_id. Every change is validated
against the sync state machine and written with one compare-and-set UPDATE,
so readers never observe a partial transition.

State machine::

    NOT_SYNCED -> PENDING -> SYNCED
                  PENDING -> FAILED -> PENDING (retry)
                             FAILED -> DEAD
    SYNCED -> PENDING        (fresh change)
    DEAD -> PENDING          (manual re-trigger only)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from src.delivery_sync.projects.schemas import ProjectRead, SyncStatus
from src.delivery_sync.sync.adapter import RecordStore
from src.delivery_sync.sync.errors import (
    EntityNotFoundError,
    InvalidTransitionError,
    StaleWriteError,
)

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 2000

ALLOWED_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.NOT_SYNCED: frozenset({SyncStatus.PENDING}),
    SyncStatus.PENDING: frozenset({SyncStatus.PENDING, SyncStatus.SYNCED, SyncStatus.FAILED}),
    SyncStatus.SYNCED: frozenset({SyncStatus.PENDING}),
    SyncStatus.FAILED: frozenset({SyncStatus.PENDING, SyncStatus.DEAD}),
    SyncStatus.DEAD: frozenset({SyncStatus.PENDING}),
}


def can_transition(current: SyncStatus, target: SyncStatus, *, manual: bool = False) -> bool:
    """Whether the state machine allows current -> target."""
    if current == SyncStatus.DEAD and target == SyncStatus.PENDING and not manual:
        return False
    return target in ALLOWED_TRANSITIONS[current]


class SyncStateStore:
    """Per-project sync status persistence on top of a RecordStore.

    Args:
        store: Record store holding the projects table.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def _load(self, entity_id: str) -> ProjectRead:
        entity = await self._store.get(entity_id)
        if entity is None:
            raise EntityNotFoundError(f"Project not found: {entity_id}")
        return entity

    async def _transition(
        self,
        entity: ProjectRead,
        target: SyncStatus,
        values: dict[str, Any],
        *,
        manual: bool = False,
    ) -> None:
        current = entity.sync_status
        if not can_transition(current, target, manual=manual):
            raise InvalidTransitionError(
                f"Project {entity.id}: {current.value} -> {target.value} is not allowed"
            )

        updated = await self._store.compare_and_set_sync_state(
            entity.id,
            current,
            {"sync_status": target, **values},
        )
        if not updated:
            raise StaleWriteError(
                f"Project {entity.id}: sync status changed concurrently (expected {current.value})"
            )

        logger.debug(
            "sync.status_changed",
            entity_id=entity.id,
            from_status=current.value,
            to_status=target.value,
        )

    async def mark_pending(self, entity_id: str, *, manual: bool = False) -> None:
        """Enter PENDING. Leaving DEAD requires ``manual=True``."""
        entity = await self._load(entity_id)
        await self._transition(entity, SyncStatus.PENDING, {}, manual=manual)

    async def mark_synced(
        self,
        entity_id: str,
        remote_document_id: str,
        at: datetime,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """Record a successful sync.

        The remote document id is stored on the first successful sync only; an
        existing link is never replaced or cleared.

        Args:
            entity_id: Project id.
            remote_document_id: Notion page id the project is synced with.
            at: Sync completion time (becomes last_synced_at).
            payload: Canonical remote payload both sides now agree on.
        """
        entity = await self._load(entity_id)
        values: dict[str, Any] = {"last_synced_at": at, "last_sync_error": None}
        if payload is not None:
            values["last_synced_payload"] = payload

        if entity.remote_document_id is None:
            values["remote_document_id"] = remote_document_id
        elif entity.remote_document_id != remote_document_id:
            logger.warning(
                "sync.remote_document_id_mismatch",
                entity_id=entity_id,
                linked=entity.remote_document_id,
                reported=remote_document_id,
            )

        await self._transition(entity, SyncStatus.SYNCED, values)

    async def mark_failed(self, entity_id: str, error: str) -> None:
        """Enter FAILED and surface ``error`` on last_sync_error."""
        entity = await self._load(entity_id)
        await self._transition(
            entity,
            SyncStatus.FAILED,
            {"last_sync_error": error[:MAX_ERROR_LENGTH]},
        )

    async def mark_dead(self, entity_id: str, error: str) -> None:
        """Enter DEAD (via FAILED if needed); automatic retries stop here."""
        entity = await self._load(entity_id)
        if entity.sync_status == SyncStatus.DEAD:
            return
        if entity.sync_status != SyncStatus.FAILED:
            await self.mark_failed(entity_id, error)
            entity = await self._load(entity_id)
        await self._transition(
            entity,
            SyncStatus.DEAD,
            {"last_sync_error": error[:MAX_ERROR_LENGTH]},
        )
        logger.warning("sync.entity_dead", entity_id=entity_id, error=error)

    async def get_status(self, entity_id: str) -> SyncStatus:
        entity = await self._load(entity_id)
        return entity.sync_status

    async def counts_by_status(self) -> dict[SyncStatus, int]:
        """Project counts for every sync status (zero-filled)."""
        counts = await self._store.count_by_status()
        return {status: counts.get(status, 0) for status in SyncStatus}

    async def list_needing_attention(self, limit: int = 50) -> list[ProjectRead]:
        """FAILED and DEAD projects, with their last_sync_error."""
        return await self._store.list_by_status([SyncStatus.FAILED, SyncStatus.DEAD], limit=limit)
