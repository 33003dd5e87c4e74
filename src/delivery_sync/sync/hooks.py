"""Trigger hook: local project mutations enqueue sync work.

Call sites that create, edit or delete projects (API handlers, admin
scripts) go through ProjectService instead of the repository so every local
change is mirrored to Notion without waiting for the next reconciliation
scan. Creates and edits enqueue a PUSH; deleting a linked project enqueues an
ARCHIVE for its page.
"""

from __future__ import annotations

import structlog

from src.delivery_sync.projects.schemas import ProjectCreate, ProjectRead, ProjectUpdate
from src.delivery_sync.sync.adapter import RecordStore
from src.delivery_sync.sync.scheduler import RetryScheduler
from src.delivery_sync.sync.schemas import SyncDirection, SyncReason, SyncTask

logger = structlog.get_logger(__name__)


class ProjectSyncHook:
    """Turns a local change notification into a sync task."""

    def __init__(self, scheduler: RetryScheduler) -> None:
        self._scheduler = scheduler

    async def on_project_changed(self, project_id: str) -> SyncTask:
        task = await self._scheduler.enqueue(project_id, SyncDirection.PUSH, SyncReason.local_change)
        logger.debug("sync.local_change_enqueued", entity_id=project_id, task_id=task.task_id)
        return task

    async def on_project_deleted(self, project: ProjectRead) -> SyncTask | None:
        """Archive the deleted project's page; unlinked projects need nothing."""
        if not project.remote_document_id:
            return None
        task = await self._scheduler.enqueue(
            project.id,
            SyncDirection.ARCHIVE,
            SyncReason.local_delete,
            remote_document_id=project.remote_document_id,
        )
        logger.info(
            "sync.local_delete_enqueued",
            entity_id=project.id,
            remote_document_id=project.remote_document_id,
            task_id=task.task_id,
        )
        return task


class ProjectService:
    """Project mutations with the sync hook attached.

    Args:
        store: Record store holding projects.
        hook: Sync hook notified after each successful write; None disables sync.
    """

    def __init__(self, store: RecordStore, hook: ProjectSyncHook | None = None) -> None:
        self._store = store
        self._hook = hook

    async def create_project(self, data: ProjectCreate) -> ProjectRead:
        project = await self._store.create_project(data)
        if self._hook is not None:
            await self._hook.on_project_changed(project.id)
        return project

    async def update_project(self, project_id: str, data: ProjectUpdate) -> ProjectRead:
        project = await self._store.update_project(project_id, data)
        if self._hook is not None:
            await self._hook.on_project_changed(project.id)
        return project

    async def delete_project(self, project_id: str) -> ProjectRead:
        """Delete a project and archive its Notion page.

        Raises:
            EntityNotFoundError: If the project does not exist.
        """
        project = await self._store.delete_project(project_id)
        if self._hook is not None:
            await self._hook.on_project_deleted(project)
        return project
