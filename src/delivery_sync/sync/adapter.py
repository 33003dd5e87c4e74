"""Collaborator interfaces consumed by the sync engine.

The engine talks to exactly two collaborators, both injected through
constructors so tests can substitute in-memory fakes:

- RecordStore: the authoritative relational store (ProjectRepository in
  production).
- RemoteDocumentAPI: the external document store (NotionDocumentClient in
  production).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from src.delivery_sync.projects.schemas import (
    ProjectCreate,
    ProjectRead,
    ProjectUpdate,
    SyncStatus,
)
from src.delivery_sync.sync.schemas import (
    Block,
    DocumentQuery,
    DocumentRef,
    RemoteDocument,
)

# Columns owned by the sync state store; nothing else writes them.
SYNC_STATE_COLUMNS = frozenset(
    {
        "sync_status",
        "last_synced_at",
        "last_sync_error",
        "last_synced_payload",
        "remote_document_id",
    }
)


class RecordStore(ABC):
    """Read/write access to projects and their sync bookkeeping columns.

    Methods:
        get: Fetch a project by local id.
        get_by_remote_document_id: Fetch the project linked to a Notion page.
        list_linked: Keyset-paginated projects that have a remote document.
        list_by_status: Projects currently in any of the given sync states.
        count_by_status: Number of projects per sync state.
        create_project: Create a project (local mutation).
        update_project: Apply a local edit, bumping local_version.
        delete_project: Remove a project, returning the deleted row.
        apply_remote_patch: Conditionally apply values pulled from the remote side.
        compare_and_set_sync_state: Atomic single-row sync state update.
    """

    @abstractmethod
    async def get(self, entity_id: str) -> ProjectRead | None:
        """Fetch a project by id."""
        ...

    @abstractmethod
    async def get_by_remote_document_id(self, remote_document_id: str) -> ProjectRead | None:
        """Fetch the project linked to a remote document."""
        ...

    @abstractmethod
    async def list_linked(self, after_id: str | None, limit: int) -> list[ProjectRead]:
        """Projects with a remote_document_id, ordered by id, starting after after_id."""
        ...

    @abstractmethod
    async def list_by_status(self, statuses: list[SyncStatus], limit: int = 100) -> list[ProjectRead]:
        """Projects whose sync_status is one of statuses."""
        ...

    @abstractmethod
    async def count_by_status(self) -> dict[SyncStatus, int]:
        """Count projects per sync state (states with no projects may be omitted)."""
        ...

    @abstractmethod
    async def create_project(self, data: ProjectCreate) -> ProjectRead:
        """Create a project locally."""
        ...

    @abstractmethod
    async def update_project(self, entity_id: str, data: ProjectUpdate) -> ProjectRead:
        """Apply a local edit; bumps local_version and updated_at."""
        ...

    @abstractmethod
    async def delete_project(self, entity_id: str) -> ProjectRead:
        """Delete a project locally.

        Raises:
            EntityNotFoundError: If the project does not exist.
        """
        ...

    @abstractmethod
    async def apply_remote_patch(
        self,
        entity_id: str,
        patch: dict[str, Any],
        expected_version: int,
        at: datetime,
    ) -> ProjectRead:
        """Apply pulled values only if local_version still equals expected_version.

        Raises:
            StaleWriteError: If a local edit landed since the project was read.
            EntityNotFoundError: If the project no longer exists.
        """
        ...

    @abstractmethod
    async def compare_and_set_sync_state(
        self,
        entity_id: str,
        expected_status: SyncStatus,
        values: dict[str, Any],
    ) -> bool:
        """Write sync columns in one statement iff sync_status == expected_status.

        Returns:
            True if the row was updated, False if the status no longer matched.
        """
        ...


class RemoteDocumentAPI(ABC):
    """Stateless request/response wrapper around the remote document store.

    Every method raises only SyncError subclasses (RateLimitedError,
    TransientError, NotFoundError, PermanentError, ValidationFailure) and
    never retries on its own.
    """

    @abstractmethod
    async def find_document(self, query: DocumentQuery) -> DocumentRef | None:
        """Find an existing document matching query."""
        ...

    @abstractmethod
    async def get_document(self, document_id: str) -> RemoteDocument:
        """Retrieve a document with its properties and edit timestamp."""
        ...

    @abstractmethod
    async def create_document(
        self,
        properties: dict[str, Any],
        children: list[dict[str, Any]] | None = None,
        parent_id: str | None = None,
    ) -> DocumentRef:
        """Create a document under parent_id (defaults to the configured database)."""
        ...

    @abstractmethod
    async def update_properties(self, document_id: str, properties: dict[str, Any]) -> None:
        """Overwrite the given properties on a document."""
        ...

    @abstractmethod
    async def archive_document(self, document_id: str) -> None:
        """Archive (soft-delete) a document."""
        ...

    @abstractmethod
    async def list_child_blocks(self, document_id: str) -> list[Block]:
        """List a document's top-level content blocks."""
        ...
