"""Worker pool consuming sync tasks from the retry scheduler.

A fixed number of asyncio workers pull due tasks and run them through the
SyncExecutor. EntityLocks makes execution single-flight per project, while
tasks for different projects run in parallel up to the pool size. A worker
that picks up a task for a project another worker is busy with parks it and
moves on; the busy worker runs the parked tasks, in arrival order, once it
is done. Direct callers of process() wait on the lock instead (asyncio.Lock
wakes waiters in FIFO order).
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from src.delivery_sync.sync.errors import (
    PermanentError,
    RateLimitedError,
    SyncError,
    TransientError,
)
from src.delivery_sync.sync.executor import SyncExecutor
from src.delivery_sync.sync.scheduler import RetryScheduler
from src.delivery_sync.sync.schemas import OutcomeKind, SyncDirection, SyncTask, TaskOutcome
from src.delivery_sync.sync.state import SyncStateStore

logger = structlog.get_logger(__name__)

# Pause before a worker retries a failed queue read
_QUEUE_ERROR_PAUSE_SECONDS = 1.0


class EntityLocks:
    """Single-flight locks keyed by entity id, dropped once nobody holds or awaits them."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


def _error_from_outcome(outcome: TaskOutcome) -> SyncError:
    message = outcome.error or "sync failed"
    if outcome.error_kind == RateLimitedError.kind:
        return RateLimitedError(message, retry_after=outcome.retry_after)
    if outcome.kind == OutcomeKind.DEAD:
        return PermanentError(message)
    return TransientError(message)


class SyncWorkerPool:
    """Fixed-size pool of sync workers.

    Args:
        scheduler: Shared task queue.
        executor: Runs individual tasks.
        state: Sync state store (used to move exhausted entities to DEAD).
        size: Number of concurrent workers.
        locks: Per-entity single-flight locks (shared with other callers of process()).
    """

    def __init__(
        self,
        scheduler: RetryScheduler,
        executor: SyncExecutor,
        state: SyncStateStore,
        size: int = 3,
        locks: EntityLocks | None = None,
    ) -> None:
        if size < 1:
            raise ValueError("size must be at least 1")
        self._scheduler = scheduler
        self._executor = executor
        self._state = state
        self._size = size
        self._locks = locks or EntityLocks()
        self._workers: list[asyncio.Task] = []
        self._in_flight = 0
        # Entities a worker is running, with the tasks that arrived for them meanwhile
        self._parked: dict[str, deque[SyncTask]] = {}

    @property
    def running(self) -> bool:
        return any(not w.done() for w in self._workers)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def start(self) -> None:
        """Spawn the worker tasks on the running loop."""
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"sync-worker-{i}")
            for i in range(self._size)
        ]
        logger.info("sync.worker_pool_started", size=self._size)

    async def stop(self) -> None:
        """Cancel the workers and wait for them to exit.

        Parked tasks go back to the scheduler so they are not lost.
        """
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        parked = [task for queue in self._parked.values() for task in queue]
        self._parked.clear()
        for task in parked:
            await self._scheduler.schedule(task)
        logger.info("sync.worker_pool_stopped", requeued=len(parked))

    def _park(self, task: SyncTask) -> bool:
        """Hold a task back while its entity is busy, instead of blocking a worker on the lock."""
        parked = self._parked.get(task.entity_id)
        if parked is None:
            return False
        parked.append(task)
        logger.debug("sync.task_parked", task_id=task.task_id, entity_id=task.entity_id)
        return True

    async def _run_entity(self, worker_id: int, task: SyncTask) -> None:
        """Run a task, then any tasks parked for the same entity meanwhile, in arrival order."""
        entity_id = task.entity_id
        self._parked[entity_id] = deque()
        current: SyncTask | None = task
        while current is not None:
            try:
                await self.process(current)
            except asyncio.CancelledError:
                raise
            except Exception:
                # process() already turns failures into outcomes; this guards the loop itself
                logger.error("sync.worker_error", worker_id=worker_id, task_id=current.task_id, exc_info=True)
            parked = self._parked.get(entity_id)
            if parked:
                current = parked.popleft()
            else:
                self._parked.pop(entity_id, None)
                current = None

    async def _worker_loop(self, worker_id: int) -> None:
        while True:
            try:
                task = await self._scheduler.wait_due()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("sync.queue_unavailable", worker_id=worker_id, exc_info=True)
                await asyncio.sleep(_QUEUE_ERROR_PAUSE_SECONDS)
                continue
            if not self._park(task):
                await self._run_entity(worker_id, task)

    async def process(self, task: SyncTask) -> TaskOutcome:
        """Run one task under its entity lock and route the outcome."""
        async with self._locks.hold(task.entity_id):
            self._in_flight += 1
            try:
                outcome = await self._executor.run(task)
            finally:
                self._in_flight -= 1

            if outcome.kind == OutcomeKind.RETRY:
                rescheduled = await self._scheduler.retry(task, _error_from_outcome(outcome))
                if rescheduled is None:
                    # ARCHIVE tasks have no row left to mark
                    if task.direction != SyncDirection.ARCHIVE:
                        try:
                            await self._state.mark_dead(
                                task.entity_id,
                                f"retries exhausted after {task.attempt + 1} attempts: {outcome.error}",
                            )
                        except Exception:
                            logger.error("sync.mark_dead_failed", entity_id=task.entity_id, exc_info=True)
                    outcome = outcome.model_copy(update={"kind": OutcomeKind.DEAD})
            elif outcome.kind == OutcomeKind.DEAD:
                await self._scheduler.dead_letter(task, _error_from_outcome(outcome))
            elif outcome.kind == OutcomeKind.COMPLETED:
                await self._scheduler.pop_dead_letter(task.entity_id)
            return outcome
