"""Retry scheduler -- the shared sync task queue with backoff and dead-lettering.

All producers (webhook dispatcher, trigger hook, manual trigger, reconciliation
scanner, startup recovery) schedule tasks here and the worker pool consumes
them with wait_due(). Tasks are ordered by next_attempt_at, then by
enqueue order, so fresh tasks run FIFO and failed tasks move behind their
backoff delay.

Storage is Redis, so queued work and dead letters survive a restart and are
shared between worker processes:
- Queue: sorted set ``{prefix}:sync:queue`` scored by due time in epoch
  microseconds. Members are ``{sequence}|{task json}``; the zero-padded
  sequence (INCR on ``{prefix}:sync:seq``) breaks score ties in enqueue order.
- Claim: ZRANGEBYSCORE for the earliest due member, then ZREM. Only the
  caller whose ZREM removed the member runs the task.
- Dead letters: hash ``{prefix}:sync:dead_letters`` of entity_id -> DeadLetter
  json, one entry per entity (the latest failure).

Backoff: ``min(max_delay, base_delay * 2**attempt)`` reduced by up to
``jitter`` (a fraction) so entities that failed together during an outage
do not retry in lockstep. Rate-limited failures use the provider's
retry-after hint instead. After ``max_attempts`` executions a task is moved
to the dead-letter set and the caller transitions the entity to DEAD.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
import structlog

from src.delivery_sync.core.monitoring import sync_dead_letters, sync_queue_depth
from src.delivery_sync.core.redis import redis_key
from src.delivery_sync.sync.errors import RateLimitedError, SyncError
from src.delivery_sync.sync.schemas import DeadLetter, SyncDirection, SyncReason, SyncTask, utcnow

logger = structlog.get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


def _score(when: datetime) -> int:
    """Epoch microseconds as an exact integer score."""
    return (when - _EPOCH) // _MICROSECOND


def _decode_member(member: str) -> SyncTask:
    _, payload = member.split("|", 1)
    return SyncTask.model_validate_json(payload)


class RetryScheduler:
    """Time-ordered task queue with exponential backoff and a dead-letter set.

    Args:
        redis: Async Redis client (decode_responses=True).
        base_delay: Delay in seconds before the first retry.
        max_delay: Cap on the exponential delay in seconds.
        max_attempts: Executions allowed per task before it is dead-lettered.
        jitter: Fraction (0-1) of the delay that may be shaved off at random.
        prefix: Key namespace shared by every process serving the same queue.
        poll_interval: Longest sleep in wait_due(); bounds how late work
            scheduled by another process is noticed.
        clock: Returns the current UTC time (injectable for tests).
        rng: Random source for jitter (injectable for deterministic tests).
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        base_delay: float = 2.0,
        max_delay: float = 600.0,
        max_attempts: int = 6,
        jitter: float = 0.2,
        prefix: str = "delivery_sync",
        poll_interval: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0 <= jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._redis = redis
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._jitter = jitter
        self._poll_interval = poll_interval
        self._clock = clock
        self._rng = rng or random.Random()

        self._queue_key = redis_key(prefix, "sync", "queue")
        self._sequence_key = redis_key(prefix, "sync", "seq")
        self._dead_letter_key = redis_key(prefix, "sync", "dead_letters")
        self._wakeup = asyncio.Event()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    # ── Queue ────────────────────────────────────────────────────────────────

    def new_task(
        self,
        entity_id: str,
        direction: SyncDirection,
        reason: SyncReason,
        event_id: str | None = None,
        occurred_at: datetime | None = None,
        remote_document_id: str | None = None,
    ) -> SyncTask:
        """Build a first-attempt task due now by this scheduler's clock."""
        now = self._clock()
        return SyncTask(
            entity_id=entity_id,
            direction=direction,
            reason=reason,
            event_id=event_id,
            occurred_at=occurred_at,
            remote_document_id=remote_document_id,
            next_attempt_at=now,
            enqueued_at=now,
        )

    async def enqueue(
        self,
        entity_id: str,
        direction: SyncDirection,
        reason: SyncReason,
        event_id: str | None = None,
        occurred_at: datetime | None = None,
        remote_document_id: str | None = None,
    ) -> SyncTask:
        """Schedule a new task for immediate execution."""
        task = self.new_task(entity_id, direction, reason, event_id, occurred_at, remote_document_id)
        return await self.schedule(task)

    async def schedule(self, task: SyncTask) -> SyncTask:
        """Add a task; wakes any local worker sleeping in wait_due()."""
        sequence = await self._redis.incr(self._sequence_key)
        member = f"{sequence:020d}|{task.model_dump_json()}"
        await self._redis.zadd(self._queue_key, {member: _score(task.next_attempt_at)})
        sync_queue_depth.set(await self._redis.zcard(self._queue_key))
        self._wakeup.set()
        logger.debug(
            "sync.task_scheduled",
            task_id=task.task_id,
            entity_id=task.entity_id,
            direction=task.direction.value,
            reason=task.reason.value,
            attempt=task.attempt,
            next_attempt_at=task.next_attempt_at.isoformat(),
        )
        return task

    async def next_due(self) -> SyncTask | None:
        """Claim the earliest task if it is due now, without waiting."""
        now = _score(self._clock())
        while True:
            members = await self._redis.zrangebyscore(self._queue_key, "-inf", now, start=0, num=1)
            if not members:
                return None
            # Lost the race to another consumer; look again
            if not await self._redis.zrem(self._queue_key, members[0]):
                continue
            sync_queue_depth.set(await self._redis.zcard(self._queue_key))
            return _decode_member(members[0])

    async def seconds_until_next(self) -> float | None:
        """Seconds until the head task is due (0 if overdue), None if empty."""
        head = await self._redis.zrange(self._queue_key, 0, 0, withscores=True)
        if not head:
            return None
        _, score = head[0]
        return max(0.0, (int(score) - _score(self._clock())) / 1_000_000)

    async def wait_due(self) -> SyncTask:
        """Wait for the next due task.

        Sleeps until the earliest of the head task's due time, a local
        arrival, or poll_interval.
        """
        while True:
            self._wakeup.clear()
            task = await self.next_due()
            if task is not None:
                return task
            wait = await self.seconds_until_next()
            timeout = self._poll_interval if wait is None else min(wait, self._poll_interval)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    async def pending_count(self) -> int:
        return await self._redis.zcard(self._queue_key)

    async def pending_tasks(self) -> list[SyncTask]:
        """Queued tasks in due order (snapshot)."""
        members = await self._redis.zrange(self._queue_key, 0, -1)
        return [_decode_member(member) for member in members]

    # ── Backoff ──────────────────────────────────────────────────────────────

    def compute_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait before re-running a task that just failed ``attempt``."""
        if retry_after is not None:
            return max(0.0, retry_after)
        delay = min(self._max_delay, self._base_delay * (2 ** attempt))
        return delay * (1 - self._jitter * self._rng.random())

    async def retry(self, task: SyncTask, error: SyncError) -> SyncTask | None:
        """Reschedule a failed task, or dead-letter it at the attempt ceiling.

        Returns:
            The rescheduled task, or None if the task was dead-lettered.
        """
        next_attempt = task.attempt + 1
        if next_attempt >= self._max_attempts:
            await self.dead_letter(task, error)
            return None

        retry_after = error.retry_after if isinstance(error, RateLimitedError) else None
        delay = self.compute_delay(task.attempt, retry_after)
        rescheduled = task.model_copy(
            update={
                "attempt": next_attempt,
                "next_attempt_at": self._clock() + timedelta(seconds=delay),
            }
        )
        logger.info(
            "sync.task_retry_scheduled",
            task_id=task.task_id,
            entity_id=task.entity_id,
            attempt=next_attempt,
            delay_seconds=round(delay, 3),
            error_kind=error.kind,
        )
        return await self.schedule(rescheduled)

    # ── Dead Letters ─────────────────────────────────────────────────────────

    async def dead_letter(self, task: SyncTask, error: SyncError) -> DeadLetter:
        """Record a task that will not be retried, replacing the entity's previous entry."""
        entry = DeadLetter(
            task=task,
            error=str(error),
            error_kind=error.kind,
            dead_lettered_at=self._clock(),
        )
        await self._redis.hset(self._dead_letter_key, task.entity_id, entry.model_dump_json())
        sync_dead_letters.set(await self._redis.hlen(self._dead_letter_key))
        logger.error(
            "sync.task_dead_lettered",
            task_id=task.task_id,
            entity_id=task.entity_id,
            direction=task.direction.value,
            attempts=task.attempt + 1,
            error_kind=error.kind,
            error=str(error),
        )
        return entry

    async def dead_letters(self) -> list[DeadLetter]:
        raw = await self._redis.hvals(self._dead_letter_key)
        entries = [DeadLetter.model_validate_json(value) for value in raw]
        return sorted(entries, key=lambda d: d.dead_lettered_at)

    async def pop_dead_letter(self, entity_id: str) -> DeadLetter | None:
        raw = await self._redis.hget(self._dead_letter_key, entity_id)
        if raw is None:
            return None
        await self._redis.hdel(self._dead_letter_key, entity_id)
        sync_dead_letters.set(await self._redis.hlen(self._dead_letter_key))
        return DeadLetter.model_validate_json(raw)
