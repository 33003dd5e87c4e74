"""Shared test doubles and fixtures for the sync engine.

Provides:
- FakeClock: controllable UTC clock injected into scheduler, executor and store
- InMemoryProjectRepository: RecordStore with the same compare-and-set rules
  as ProjectRepository
- FakeNotion: RemoteDocumentAPI holding pages in memory, with call recording
  and scripted failures
- FakeRedis: the subset of redis.asyncio.Redis the scheduler and webhook
  dedup use (sorted sets, hashes, SET NX EX), held in memory
- Fixtures wiring these into a SyncStateStore, RetryScheduler and SyncExecutor
"""

from __future__ import annotations

import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.delivery_sync.projects.schemas import (
    ProjectCreate,
    ProjectRead,
    ProjectUpdate,
    SyncStatus,
)
from src.delivery_sync.sync.adapter import SYNC_STATE_COLUMNS, RecordStore, RemoteDocumentAPI
from src.delivery_sync.sync.errors import EntityNotFoundError, NotFoundError, StaleWriteError
from src.delivery_sync.sync.executor import SyncExecutor
from src.delivery_sync.sync.field_mapping import LINK_PROPERTY
from src.delivery_sync.sync.scheduler import RetryScheduler
from src.delivery_sync.sync.schemas import (
    Block,
    DocumentQuery,
    DocumentRef,
    RemoteDocument,
)
from src.delivery_sync.sync.state import SyncStateStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ── Clock ────────────────────────────────────────────────────────────────────


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# ── In-Memory Record Store ───────────────────────────────────────────────────


_PATCHABLE = frozenset(
    {"name", "status", "tier", "project_address", "payment_status", "budget_cents", "due_date"}
)


class InMemoryProjectRepository(RecordStore):
    """In-memory ProjectRepository for testing without a database."""

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self._projects: dict[str, ProjectRead] = {}

    def put(self, project: ProjectRead) -> ProjectRead:
        """Insert or replace a project as-is (test setup)."""
        self._projects[project.id] = project
        return project

    def seed(self, **fields: Any) -> ProjectRead:
        """Insert a project with sensible defaults."""
        defaults: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "name": "Hillside Residence",
            "created_at": self._clock(),
            "updated_at": self._clock(),
        }
        defaults.update(fields)
        return self.put(ProjectRead(**defaults))

    async def get(self, entity_id: str) -> ProjectRead | None:
        project = self._projects.get(entity_id)
        return project.model_copy(deep=True) if project else None

    async def get_by_remote_document_id(self, remote_document_id: str) -> ProjectRead | None:
        for project in self._projects.values():
            if project.remote_document_id == remote_document_id:
                return project.model_copy(deep=True)
        return None

    async def list_linked(self, after_id: str | None, limit: int) -> list[ProjectRead]:
        linked = sorted(
            (p for p in self._projects.values() if p.remote_document_id),
            key=lambda p: p.id,
        )
        if after_id is not None:
            linked = [p for p in linked if p.id > after_id]
        return [p.model_copy(deep=True) for p in linked[:limit]]

    async def list_by_status(self, statuses: list[SyncStatus], limit: int = 100) -> list[ProjectRead]:
        matches = [p for p in self._projects.values() if p.sync_status in statuses]
        return [p.model_copy(deep=True) for p in matches[:limit]]

    async def count_by_status(self) -> dict[SyncStatus, int]:
        counts: dict[SyncStatus, int] = {}
        for project in self._projects.values():
            counts[project.sync_status] = counts.get(project.sync_status, 0) + 1
        return counts

    async def create_project(self, data: ProjectCreate) -> ProjectRead:
        now = self._clock()
        project = ProjectRead(
            id=str(uuid.uuid4()),
            **data.model_dump(),
            created_at=now,
            updated_at=now,
        )
        return self.put(project).model_copy(deep=True)

    async def update_project(self, entity_id: str, data: ProjectUpdate) -> ProjectRead:
        project = self._projects.get(entity_id)
        if project is None:
            raise EntityNotFoundError(f"Project not found: {entity_id}")
        updated = project.model_copy(
            update={
                **data.model_dump(exclude_unset=True),
                "local_version": project.local_version + 1,
                "updated_at": self._clock(),
            }
        )
        return self.put(updated).model_copy(deep=True)

    async def delete_project(self, entity_id: str) -> ProjectRead:
        project = self._projects.pop(entity_id, None)
        if project is None:
            raise EntityNotFoundError(f"Project not found: {entity_id}")
        return project

    async def apply_remote_patch(
        self,
        entity_id: str,
        patch: dict[str, Any],
        expected_version: int,
        at: datetime,
    ) -> ProjectRead:
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValueError(f"Remote patch touches unmapped columns: {sorted(unknown)}")
        project = self._projects.get(entity_id)
        if project is None:
            raise EntityNotFoundError(f"Project not found: {entity_id}")
        if project.local_version != expected_version:
            raise StaleWriteError(f"Project {entity_id} changed locally while applying remote patch")
        updated_at = max(project.updated_at, at) if project.updated_at else at
        updated = project.model_copy(
            update={**patch, "local_version": project.local_version + 1, "updated_at": updated_at}
        )
        return self.put(updated).model_copy(deep=True)

    async def compare_and_set_sync_state(
        self,
        entity_id: str,
        expected_status: SyncStatus,
        values: dict[str, Any],
    ) -> bool:
        unknown = set(values) - SYNC_STATE_COLUMNS
        if unknown:
            raise ValueError(f"Not sync state columns: {sorted(unknown)}")
        project = self._projects.get(entity_id)
        if project is None or project.sync_status != expected_status:
            return False
        self.put(project.model_copy(update=values))
        return True


# ── Fake Notion ──────────────────────────────────────────────────────────────


class FakeNotion(RemoteDocumentAPI):
    """In-memory Notion database.

    ``fail(method, *errors)`` queues exceptions raised by the next calls to
    ``method``; ``calls`` records (method, args) for every call that reached
    the fake.
    """

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self.pages: dict[str, RemoteDocument] = {}
        self.children: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[tuple[str, Any]] = []
        self._failures: dict[str, list[Exception]] = {}
        self._next_id = 1

    def fail(self, method: str, *errors: Exception) -> None:
        self._failures.setdefault(method, []).extend(errors)

    def _record(self, method: str, args: Any) -> None:
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)
        self.calls.append((method, args))

    def calls_to(self, method: str) -> list[Any]:
        return [args for name, args in self.calls if name == method]

    def add_page(self, properties: dict[str, Any], **fields: Any) -> RemoteDocument:
        """Create a page directly (as a Notion user would)."""
        page_id = fields.pop("id", None) or f"page-{self._next_id}"
        self._next_id += 1
        page = RemoteDocument(
            id=page_id,
            properties=properties,
            last_edited_time=fields.pop("last_edited_time", self._clock()),
            url=f"https://www.notion.so/{page_id}",
            **fields,
        )
        self.pages[page_id] = page
        return page

    def edit_page(self, page_id: str, properties: dict[str, Any], at: datetime | None = None) -> None:
        """Simulate a human edit in the Notion UI."""
        page = self.pages[page_id]
        page.properties = {**page.properties, **properties}
        page.last_edited_time = at or self._clock()

    async def find_document(self, query: DocumentQuery) -> DocumentRef | None:
        self._record("find_document", query)
        for page in self.pages.values():
            if page.archived:
                continue
            if query.internal_id is not None:
                link = page.properties.get(LINK_PROPERTY, {}).get("rich_text", [])
                if "".join(s["text"]["content"] for s in link) == query.internal_id:
                    return DocumentRef(id=page.id, url=page.url)
        return None

    async def get_document(self, document_id: str) -> RemoteDocument:
        self._record("get_document", document_id)
        page = self.pages.get(document_id)
        if page is None:
            raise NotFoundError(f"Notion object not found: {document_id}")
        return page.model_copy(deep=True)

    async def create_document(
        self,
        properties: dict[str, Any],
        children: list[dict[str, Any]] | None = None,
        parent_id: str | None = None,
    ) -> DocumentRef:
        self._record("create_document", properties)
        page = self.add_page(dict(properties))
        self.children[page.id] = list(children or [])
        return DocumentRef(id=page.id, url=page.url)

    async def update_properties(self, document_id: str, properties: dict[str, Any]) -> None:
        self._record("update_properties", (document_id, properties))
        if document_id not in self.pages:
            raise NotFoundError(f"Notion object not found: {document_id}")
        self.edit_page(document_id, properties)

    async def archive_document(self, document_id: str) -> None:
        self._record("archive_document", document_id)
        page = self.pages.get(document_id)
        if page is None:
            raise NotFoundError(f"Notion object not found: {document_id}")
        page.archived = True
        page.last_edited_time = self._clock()

    async def list_child_blocks(self, document_id: str) -> list[Block]:
        self._record("list_child_blocks", document_id)
        return [
            Block(
                id=f"{document_id}-block-{i}",
                type=block["type"],
                text="".join(
                    s["text"]["content"] for s in block.get(block["type"], {}).get("rich_text", [])
                ),
            )
            for i, block in enumerate(self.children.get(document_id, []))
        ]


# ── Fake Redis ───────────────────────────────────────────────────────────────


class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands the sync engine issues.

    Values are str, as with decode_responses=True. ``expirations`` records
    the ``ex`` passed to SET so tests can assert TTLs without sleeping.
    """

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.expirations: dict[str, int] = {}
        self.closed = False

    # strings

    async def incr(self, name: str) -> int:
        value = int(self.strings.get(name, "0")) + 1
        self.strings[name] = str(value)
        return value

    async def set(self, name: str, value: str, ex: int | None = None, nx: bool = False) -> bool | None:
        if nx and name in self.strings:
            return None
        self.strings[name] = value
        if ex is not None:
            self.expirations[name] = ex
        return True

    async def get(self, name: str) -> str | None:
        return self.strings.get(name)

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            for bucket in (self.strings, self.zsets, self.hashes):
                if bucket.pop(name, None) is not None:
                    removed += 1
            self.expirations.pop(name, None)
        return removed

    async def exists(self, *names: str) -> int:
        return sum(
            1 for name in names if name in self.strings or name in self.zsets or name in self.hashes
        )

    # sorted sets

    def _ordered(self, name: str) -> list[tuple[str, float]]:
        members = self.zsets.get(name, {})
        return sorted(members.items(), key=lambda item: (item[1], item[0]))

    async def zadd(self, name: str, mapping: dict[str, float]) -> int:
        zset = self.zsets.setdefault(name, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        return added

    async def zrem(self, name: str, *members: str) -> int:
        zset = self.zsets.get(name, {})
        return sum(1 for member in members if zset.pop(member, None) is not None)

    async def zcard(self, name: str) -> int:
        return len(self.zsets.get(name, {}))

    async def zrange(self, name: str, start: int, end: int, withscores: bool = False) -> list:
        ordered = self._ordered(name)
        stop = None if end == -1 else end + 1
        window = ordered[start:stop]
        if withscores:
            return window
        return [member for member, _ in window]

    async def zrangebyscore(
        self,
        name: str,
        min: float | str,
        max: float | str,
        start: int | None = None,
        num: int | None = None,
    ) -> list[str]:
        low = float(min)
        high = float(max)
        matches = [member for member, score in self._ordered(name) if low <= score <= high]
        if start is not None and num is not None:
            matches = matches[start:start + num]
        return matches

    # hashes

    async def hset(self, name: str, key: str, value: str) -> int:
        bucket = self.hashes.setdefault(name, {})
        created = key not in bucket
        bucket[key] = value
        return int(created)

    async def hget(self, name: str, key: str) -> str | None:
        return self.hashes.get(name, {}).get(key)

    async def hdel(self, name: str, *keys: str) -> int:
        bucket = self.hashes.get(name, {})
        return sum(1 for key in keys if bucket.pop(key, None) is not None)

    async def hvals(self, name: str) -> list[str]:
        return list(self.hashes.get(name, {}).values())

    async def hlen(self, name: str) -> int:
        return len(self.hashes.get(name, {}))

    # connection

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryProjectRepository:
    return InMemoryProjectRepository(clock)


@pytest.fixture
def notion(clock) -> FakeNotion:
    return FakeNotion(clock)


@pytest.fixture
def state(store) -> SyncStateStore:
    return SyncStateStore(store)


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def scheduler(redis, clock) -> RetryScheduler:
    return RetryScheduler(
        redis,
        base_delay=2.0,
        max_delay=600.0,
        max_attempts=6,
        jitter=0.0,
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture
def executor(store, notion, state, clock) -> SyncExecutor:
    return SyncExecutor(store, notion, state, clock=clock)
