"""Unit tests for SyncWorkerPool and EntityLocks.

Drives the pool through process() with the fake clock, so retries are
deterministic: each loop iteration advances the clock to the next due task.
"""

from __future__ import annotations

import asyncio

import pytest

from src.delivery_sync.projects.schemas import SyncStatus
from src.delivery_sync.sync.errors import RateLimitedError, TransientError
from src.delivery_sync.sync.schemas import OutcomeKind, SyncDirection, SyncReason, SyncTask, TaskOutcome
from src.delivery_sync.sync.worker import EntityLocks, SyncWorkerPool


@pytest.fixture
def pool(scheduler, executor, state) -> SyncWorkerPool:
    return SyncWorkerPool(scheduler, executor, state, size=2)


async def _drain(pool: SyncWorkerPool, scheduler, clock, max_steps: int = 50) -> list[TaskOutcome]:
    """Run due tasks, jumping the clock to each retry, until the queue is empty."""
    outcomes = []
    for _ in range(max_steps):
        wait = await scheduler.seconds_until_next()
        if wait is None:
            return outcomes
        clock.advance(wait)
        outcomes.append(await pool.process(await scheduler.next_due()))
    raise AssertionError("queue did not drain")


class TestRetryRouting:
    """Test how outcomes are routed back to the scheduler."""

    async def test_converges_after_transient_failures(self, pool, scheduler, store, notion, clock):
        """Three transient failures then success: SYNCED on the fourth execution."""
        project = store.seed()
        notion.fail(
            "create_document",
            TransientError("502"),
            TransientError("502"),
            TransientError("timeout"),
        )
        await scheduler.enqueue(project.id, SyncDirection.PUSH, SyncReason.manual_trigger)

        outcomes = await _drain(pool, scheduler, clock)

        assert [o.kind for o in outcomes] == [OutcomeKind.RETRY] * 3 + [OutcomeKind.COMPLETED]
        assert (await store.get(project.id)).sync_status == SyncStatus.SYNCED
        assert await scheduler.dead_letters() == []

    async def test_dead_after_exactly_max_attempts(self, pool, scheduler, store, notion, clock):
        """A task failing every time runs max_attempts times, then goes DEAD."""
        project = store.seed()
        notion.fail("create_document", *[TransientError("down") for _ in range(10)])
        await scheduler.enqueue(project.id, SyncDirection.PUSH, SyncReason.manual_trigger)

        outcomes = await _drain(pool, scheduler, clock)

        assert len(outcomes) == scheduler.max_attempts
        assert outcomes[-1].kind == OutcomeKind.DEAD
        saved = await store.get(project.id)
        assert saved.sync_status == SyncStatus.DEAD
        assert "retries exhausted after 6 attempts" in saved.last_sync_error
        [letter] = await scheduler.dead_letters()
        assert letter.task.entity_id == project.id

    async def test_rate_limit_uses_retry_after(self, pool, scheduler, store, notion, clock):
        """A 429 is rescheduled after the provider's hint, not the backoff."""
        project = store.seed()
        notion.fail("find_document", RateLimitedError("slow down", retry_after=40))
        await scheduler.enqueue(project.id, SyncDirection.PUSH, SyncReason.manual_trigger)

        outcome = await pool.process(await scheduler.next_due())

        assert outcome.kind == OutcomeKind.RETRY
        assert await scheduler.seconds_until_next() == 40.0

    async def test_permanent_failure_is_dead_lettered(self, pool, scheduler, store, notion, executor, clock):
        """An archived page dead-letters immediately without retries."""
        project = store.seed()
        await executor.run(SyncTask(entity_id=project.id, direction=SyncDirection.PUSH, reason=SyncReason.manual_trigger))
        page_id = (await store.get(project.id)).remote_document_id
        notion.pages[page_id].archived = True
        await scheduler.enqueue(project.id, SyncDirection.PULL, SyncReason.webhook)

        outcomes = await _drain(pool, scheduler, clock)

        assert [o.kind for o in outcomes] == [OutcomeKind.DEAD]
        assert await scheduler.pending_count() == 0
        assert [d.error_kind for d in await scheduler.dead_letters()] == ["permanent"]

    async def test_validation_failure_is_not_retried(self, pool, scheduler, store, notion, executor, clock):
        """FAILED outcomes stay put until something new happens."""
        project = store.seed()
        await executor.run(SyncTask(entity_id=project.id, direction=SyncDirection.PUSH, reason=SyncReason.manual_trigger))
        page_id = (await store.get(project.id)).remote_document_id
        notion.edit_page(page_id, {"Tier": {"type": "select", "select": {"name": "Gold"}}})
        await scheduler.enqueue(project.id, SyncDirection.PULL, SyncReason.webhook)

        outcomes = await _drain(pool, scheduler, clock)

        assert [o.kind for o in outcomes] == [OutcomeKind.FAILED]
        assert await scheduler.pending_count() == 0
        assert (await store.get(project.id)).sync_status == SyncStatus.FAILED

    async def test_success_clears_dead_letter(self, pool, scheduler, store, clock):
        """A completed manual replay removes the entity's dead letter."""
        project = store.seed(sync_status=SyncStatus.DEAD)
        await scheduler.dead_letter(
            SyncTask(entity_id=project.id, direction=SyncDirection.PUSH, reason=SyncReason.webhook),
            TransientError("down"),
        )
        await scheduler.enqueue(project.id, SyncDirection.PUSH, SyncReason.manual_trigger)

        await _drain(pool, scheduler, clock)

        assert await scheduler.dead_letters() == []
        assert (await store.get(project.id)).sync_status == SyncStatus.SYNCED


# ── Single Flight ────────────────────────────────────────────────────────────


class _RecordingExecutor:
    """Executor double that records how many tasks per entity overlap."""

    def __init__(self) -> None:
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}
        self.max_total = 0
        self.order: list[str] = []

    async def run(self, task: SyncTask) -> TaskOutcome:
        self.active[task.entity_id] = self.active.get(task.entity_id, 0) + 1
        self.max_active[task.entity_id] = max(
            self.max_active.get(task.entity_id, 0), self.active[task.entity_id]
        )
        self.max_total = max(self.max_total, sum(self.active.values()))
        for _ in range(3):
            await asyncio.sleep(0)
        self.order.append(task.task_id)
        self.active[task.entity_id] -= 1
        return TaskOutcome(task=task, kind=OutcomeKind.COMPLETED)


class TestSingleFlight:
    """Test per-entity mutual exclusion."""

    async def test_same_entity_never_overlaps(self, scheduler, state):
        """Two tasks for one project run one after the other, in arrival order."""
        recorder = _RecordingExecutor()
        pool = SyncWorkerPool(scheduler, recorder, state, size=4)
        first = scheduler.new_task("proj-1", SyncDirection.PUSH, SyncReason.local_change)
        second = scheduler.new_task("proj-1", SyncDirection.PULL, SyncReason.webhook)

        await asyncio.gather(pool.process(first), pool.process(second))

        assert recorder.max_active["proj-1"] == 1
        assert recorder.order == [first.task_id, second.task_id]

    async def test_different_entities_run_in_parallel(self, scheduler, state):
        """Tasks for different projects overlap."""
        recorder = _RecordingExecutor()
        pool = SyncWorkerPool(scheduler, recorder, state, size=4)

        await asyncio.gather(
            pool.process(scheduler.new_task("proj-1", SyncDirection.PUSH, SyncReason.local_change)),
            pool.process(scheduler.new_task("proj-2", SyncDirection.PUSH, SyncReason.local_change)),
        )

        assert recorder.max_total == 2

    async def test_locks_are_released(self):
        """Lock entries are dropped once nobody holds or waits on them."""
        locks = EntityLocks()
        async with locks.hold("proj-1"):
            assert locks.is_locked("proj-1")
            assert len(locks) == 1
        assert not locks.is_locked("proj-1")
        assert len(locks) == 0


# ── Lifecycle ────────────────────────────────────────────────────────────────


class TestPoolLifecycle:
    """Test running the pool's background workers."""

    async def test_workers_consume_queue(self, pool, scheduler, store):
        """Started workers pick up an enqueued task without explicit process() calls."""
        project = store.seed()
        pool.start()
        assert pool.running
        try:
            await scheduler.enqueue(project.id, SyncDirection.PUSH, SyncReason.manual_trigger)
            for _ in range(200):
                if (await store.get(project.id)).sync_status == SyncStatus.SYNCED:
                    break
                await asyncio.sleep(0.01)
        finally:
            await pool.stop()

        assert (await store.get(project.id)).sync_status == SyncStatus.SYNCED
        assert not pool.running

    def test_size_must_be_positive(self, scheduler, executor, state):
        """A pool needs at least one worker."""
        with pytest.raises(ValueError):
            SyncWorkerPool(scheduler, executor, state, size=0)


# ── Busy Entities ────────────────────────────────────────────────────────────


class _GatedExecutor:
    """Executor double whose tasks for one entity block until the gate opens."""

    def __init__(self, gated_entity: str) -> None:
        self.gated_entity = gated_entity
        self.gate = asyncio.Event()
        self.started: list[str] = []
        self.finished: list[str] = []

    async def run(self, task: SyncTask) -> TaskOutcome:
        self.started.append(task.task_id)
        if task.entity_id == self.gated_entity:
            await self.gate.wait()
        self.finished.append(task.task_id)
        return TaskOutcome(task=task, kind=OutcomeKind.COMPLETED)


async def _until(condition, attempts: int = 200) -> None:
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestBusyEntity:
    """Test that a task for a busy project does not tie up a worker."""

    async def test_busy_entity_does_not_block_other_projects(self, scheduler, state):
        """With two workers, a second proj-1 task is parked and proj-2 still runs."""
        gated = _GatedExecutor("proj-1")
        pool = SyncWorkerPool(scheduler, gated, state, size=2)
        pool.start()
        try:
            first = await scheduler.enqueue("proj-1", SyncDirection.PUSH, SyncReason.local_change)
            await _until(lambda: first.task_id in gated.started)
            second = await scheduler.enqueue("proj-1", SyncDirection.PULL, SyncReason.webhook)
            other = await scheduler.enqueue("proj-2", SyncDirection.PUSH, SyncReason.local_change)

            await _until(lambda: other.task_id in gated.finished)
            assert second.task_id not in gated.started
            assert await scheduler.pending_count() == 0

            gated.gate.set()
            await _until(lambda: second.task_id in gated.finished)
        finally:
            await pool.stop()

        assert gated.finished == [other.task_id, first.task_id, second.task_id]

    async def test_stop_requeues_parked_tasks(self, scheduler, state):
        """Tasks parked behind a busy project go back to the queue on shutdown."""
        gated = _GatedExecutor("proj-1")
        pool = SyncWorkerPool(scheduler, gated, state, size=2)
        pool.start()
        first = await scheduler.enqueue("proj-1", SyncDirection.PUSH, SyncReason.local_change)
        await _until(lambda: first.task_id in gated.started)
        second = await scheduler.enqueue("proj-1", SyncDirection.PULL, SyncReason.webhook)
        for _ in range(20):
            await asyncio.sleep(0.01)
            if await scheduler.pending_count() == 0:
                break

        await pool.stop()

        assert [t.task_id for t in await scheduler.pending_tasks()] == [second.task_id]
        assert second.task_id not in gated.started
