"""Project repository -- async persistence for projects and their sync columns.

Provides ProjectRepository with the session_factory callable pattern: every
method opens its own session via ``async for session in self._session_factory()``
so the repository can be shared by API handlers and background sync workers.

Sync state writes are single UPDATE statements guarded by the expected
sync_status (compare-and-set), and remote patches are guarded by the
expected local_version, so concurrent writers never interleave partial
updates.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.delivery_sync.projects.models import ProjectModel
from src.delivery_sync.projects.schemas import (
    PaymentStatus,
    ProjectCreate,
    ProjectRead,
    ProjectStatus,
    ProjectTier,
    ProjectUpdate,
    SyncStatus,
)
from src.delivery_sync.sync.adapter import SYNC_STATE_COLUMNS, RecordStore
from src.delivery_sync.sync.errors import EntityNotFoundError, StaleWriteError

logger = structlog.get_logger(__name__)

# Business columns a remote patch may touch
_PATCHABLE_COLUMNS = frozenset(
    {
        "name",
        "status",
        "tier",
        "project_address",
        "payment_status",
        "budget_cents",
        "due_date",
    }
)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_project(model: ProjectModel) -> ProjectRead:
    """Convert ProjectModel to ProjectRead schema."""
    return ProjectRead(
        id=str(model.id),
        name=model.name,
        status=ProjectStatus(model.status),
        tier=ProjectTier(model.tier),
        project_address=model.project_address,
        payment_status=PaymentStatus(model.payment_status),
        budget_cents=model.budget_cents,
        due_date=model.due_date,
        remote_document_id=model.remote_document_id,
        sync_status=SyncStatus(model.sync_status),
        last_synced_at=model.last_synced_at,
        last_sync_error=model.last_sync_error,
        last_synced_payload=model.last_synced_payload,
        local_version=model.local_version,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _to_column_value(value: Any) -> Any:
    """Unwrap enums to the primitive stored in the column."""
    if isinstance(value, (ProjectStatus, PaymentStatus, SyncStatus)):
        return value.value
    if isinstance(value, ProjectTier):
        return int(value)
    return value


def _parse_id(entity_id: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(entity_id)
    except (TypeError, ValueError):
        return None


class ProjectRepository(RecordStore):
    """Async repository for projects backed by SQLAlchemy.

    Args:
        session_factory: Callable returning an async generator of AsyncSession
            (e.g. core.database.get_session).
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncGenerator[AsyncSession, None]],
    ) -> None:
        self._session_factory = session_factory

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get(self, entity_id: str) -> ProjectRead | None:
        project_uuid = _parse_id(entity_id)
        if project_uuid is None:
            return None

        async for session in self._session_factory():
            model = await session.get(ProjectModel, project_uuid)
            return _model_to_project(model) if model else None
        return None

    async def get_by_remote_document_id(self, remote_document_id: str) -> ProjectRead | None:
        async for session in self._session_factory():
            stmt = select(ProjectModel).where(
                ProjectModel.remote_document_id == remote_document_id
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_project(model) if model else None
        return None

    async def list_linked(self, after_id: str | None, limit: int) -> list[ProjectRead]:
        async for session in self._session_factory():
            stmt = (
                select(ProjectModel)
                .where(ProjectModel.remote_document_id.is_not(None))
                .order_by(ProjectModel.id)
                .limit(limit)
            )
            after_uuid = _parse_id(after_id) if after_id else None
            if after_uuid is not None:
                stmt = stmt.where(ProjectModel.id > after_uuid)
            result = await session.execute(stmt)
            return [_model_to_project(m) for m in result.scalars().all()]
        return []

    async def list_by_status(self, statuses: list[SyncStatus], limit: int = 100) -> list[ProjectRead]:
        async for session in self._session_factory():
            stmt = (
                select(ProjectModel)
                .where(ProjectModel.sync_status.in_([s.value for s in statuses]))
                .order_by(ProjectModel.updated_at.desc().nulls_last())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_project(m) for m in result.scalars().all()]
        return []

    async def count_by_status(self) -> dict[SyncStatus, int]:
        async for session in self._session_factory():
            stmt = select(ProjectModel.sync_status, func.count()).group_by(
                ProjectModel.sync_status
            )
            result = await session.execute(stmt)
            return {SyncStatus(status): count for status, count in result.all()}
        return {}

    # ── Local mutations ──────────────────────────────────────────────────────

    async def create_project(self, data: ProjectCreate) -> ProjectRead:
        async for session in self._session_factory():
            now = datetime.now(timezone.utc)
            model = ProjectModel(
                id=uuid.uuid4(),
                **{k: _to_column_value(v) for k, v in data.model_dump().items()},
                sync_status=SyncStatus.NOT_SYNCED.value,
                local_version=1,
                created_at=now,
                updated_at=now,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("project.created", project_id=str(model.id))
            return _model_to_project(model)
        raise RuntimeError("session factory yielded no session")

    async def update_project(self, entity_id: str, data: ProjectUpdate) -> ProjectRead:
        """Apply a local edit.

        Raises:
            EntityNotFoundError: If the project does not exist.
        """
        values = {k: _to_column_value(v) for k, v in data.model_dump(exclude_unset=True).items()}
        values["updated_at"] = datetime.now(timezone.utc)
        values["local_version"] = ProjectModel.local_version + 1
        return await self._update_returning(entity_id, values, ProjectModel.id == _parse_id(entity_id))

    async def delete_project(self, entity_id: str) -> ProjectRead:
        """Delete a project.

        Raises:
            EntityNotFoundError: If the project does not exist.
        """
        project_uuid = _parse_id(entity_id)
        if project_uuid is None:
            raise EntityNotFoundError(f"Project not found: {entity_id}")

        async for session in self._session_factory():
            stmt = (
                delete(ProjectModel)
                .where(ProjectModel.id == project_uuid)
                .returning(ProjectModel)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                await session.rollback()
                raise EntityNotFoundError(f"Project not found: {entity_id}")
            project = _model_to_project(model)
            await session.commit()
            logger.info("project.deleted", project_id=entity_id)
            return project
        raise RuntimeError("session factory yielded no session")

    async def apply_remote_patch(
        self,
        entity_id: str,
        patch: dict[str, Any],
        expected_version: int,
        at: datetime,
    ) -> ProjectRead:
        unknown = set(patch) - _PATCHABLE_COLUMNS
        if unknown:
            raise ValueError(f"Remote patch touches unmapped columns: {sorted(unknown)}")

        values = {k: _to_column_value(v) for k, v in patch.items()}
        values["local_version"] = ProjectModel.local_version + 1
        values["updated_at"] = func.greatest(func.coalesce(ProjectModel.updated_at, at), at)

        try:
            return await self._update_returning(
                entity_id,
                values,
                ProjectModel.id == _parse_id(entity_id),
                ProjectModel.local_version == expected_version,
            )
        except EntityNotFoundError:
            if await self.get(entity_id) is not None:
                raise StaleWriteError(
                    f"Project {entity_id} changed locally while applying remote patch"
                ) from None
            raise

    async def _update_returning(self, entity_id: str, values: dict[str, Any], *conditions: Any) -> ProjectRead:
        if _parse_id(entity_id) is None:
            raise EntityNotFoundError(f"Project not found: {entity_id}")

        async for session in self._session_factory():
            stmt = (
                update(ProjectModel)
                .where(*conditions)
                .values(**values)
                .returning(ProjectModel)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                await session.rollback()
                raise EntityNotFoundError(f"Project not found: {entity_id}")
            await session.commit()
            return _model_to_project(model)
        raise RuntimeError("session factory yielded no session")

    # ── Sync state ───────────────────────────────────────────────────────────

    async def compare_and_set_sync_state(
        self,
        entity_id: str,
        expected_status: SyncStatus,
        values: dict[str, Any],
    ) -> bool:
        unknown = set(values) - SYNC_STATE_COLUMNS
        if unknown:
            raise ValueError(f"Not sync state columns: {sorted(unknown)}")

        project_uuid = _parse_id(entity_id)
        if project_uuid is None:
            return False

        async for session in self._session_factory():
            stmt = (
                update(ProjectModel)
                .where(
                    ProjectModel.id == project_uuid,
                    ProjectModel.sync_status == expected_status.value,
                )
                .values(**{k: _to_column_value(v) for k, v in values.items()})
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1
        return False
