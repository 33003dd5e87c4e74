"""Unit tests for RetryScheduler: ordering, backoff, ceiling, dead letters and Redis storage."""

from __future__ import annotations

import asyncio
import random
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.delivery_sync.sync.errors import RateLimitedError, TransientError
from src.delivery_sync.sync.scheduler import RetryScheduler
from src.delivery_sync.sync.schemas import SyncDirection, SyncReason, SyncTask
from tests.conftest import FakeRedis


def _task(entity_id: str = "proj-1", **overrides) -> SyncTask:
    defaults = {
        "entity_id": entity_id,
        "direction": SyncDirection.PUSH,
        "reason": SyncReason.manual_trigger,
    }
    defaults.update(overrides)
    return SyncTask(**defaults)


class TestQueue:
    """Test due-time ordering."""

    async def test_fifo_for_due_tasks(self, scheduler, clock):
        """Tasks due at the same time come out in enqueue order."""
        first = await scheduler.schedule(_task("a", next_attempt_at=clock()))
        second = await scheduler.schedule(_task("b", next_attempt_at=clock()))

        assert (await scheduler.next_due()).task_id == first.task_id
        assert (await scheduler.next_due()).task_id == second.task_id
        assert await scheduler.next_due() is None

    async def test_future_tasks_wait(self, scheduler, clock):
        """A task is not handed out before its next_attempt_at."""
        await scheduler.schedule(_task(next_attempt_at=clock() + timedelta(seconds=30)))

        assert await scheduler.next_due() is None
        assert await scheduler.seconds_until_next() == 30.0

        clock.advance(30)
        assert await scheduler.next_due() is not None

    async def test_earlier_due_time_first(self, scheduler, clock):
        """Due order beats enqueue order."""
        await scheduler.schedule(_task("late", next_attempt_at=clock() + timedelta(seconds=10)))
        await scheduler.schedule(_task("early", next_attempt_at=clock() + timedelta(seconds=5)))

        assert [t.entity_id for t in await scheduler.pending_tasks()] == ["early", "late"]
        assert await scheduler.pending_count() == 2

    async def test_claimed_task_leaves_queue(self, scheduler, clock):
        """next_due() removes the task so no other consumer can claim it."""
        await scheduler.enqueue("proj-1", SyncDirection.PUSH, SyncReason.local_change)

        assert await scheduler.next_due() is not None
        assert await scheduler.pending_count() == 0

    async def test_task_fields_survive_storage(self, scheduler, clock):
        """occurred_at and remote_document_id round-trip through the queue."""
        occurred = clock() - timedelta(seconds=5)
        await scheduler.enqueue(
            "proj-1",
            SyncDirection.PULL,
            SyncReason.webhook,
            event_id="evt-1",
            occurred_at=occurred,
        )

        task = await scheduler.next_due()

        assert task.event_id == "evt-1"
        assert task.occurred_at == occurred

    async def test_wait_due_wakes_on_schedule(self):
        """A waiting worker is woken by a new task without polling."""
        scheduler = RetryScheduler(FakeRedis(), jitter=0.0, poll_interval=30.0)
        waiter = asyncio.create_task(scheduler.wait_due())
        await asyncio.sleep(0)
        assert not waiter.done()

        task = await scheduler.enqueue("proj-1", SyncDirection.PUSH, SyncReason.manual_trigger)
        got = await asyncio.wait_for(waiter, timeout=1.0)
        assert got.task_id == task.task_id

    async def test_wait_due_polls_for_other_processes(self):
        """Work added by another process is picked up within poll_interval."""
        redis = FakeRedis()
        consumer = RetryScheduler(redis, poll_interval=0.01)
        producer = RetryScheduler(redis)
        waiter = asyncio.create_task(consumer.wait_due())
        await asyncio.sleep(0)

        task = await producer.enqueue("proj-1", SyncDirection.PUSH, SyncReason.manual_trigger)
        got = await asyncio.wait_for(waiter, timeout=1.0)
        assert got.task_id == task.task_id


class TestRedisStorage:
    """Test that queue state lives in Redis rather than in the scheduler."""

    async def test_queue_survives_restart(self, redis, clock):
        """A new scheduler on the same Redis sees tasks queued before a restart."""
        before = RetryScheduler(redis, clock=clock)
        task = await before.enqueue("proj-1", SyncDirection.PULL, SyncReason.webhook)

        after = RetryScheduler(redis, clock=clock)

        assert await after.pending_count() == 1
        assert (await after.next_due()).task_id == task.task_id

    async def test_dead_letters_survive_restart(self, redis, clock):
        """Dead letters recorded by one process are listed by the next."""
        before = RetryScheduler(redis, clock=clock)
        await before.dead_letter(_task("proj-9"), TransientError("down"))

        letters = await RetryScheduler(redis, clock=clock).dead_letters()

        assert [entry.task.entity_id for entry in letters] == ["proj-9"]

    async def test_keys_are_namespaced(self, redis, clock):
        """Queue and dead-letter keys carry the configured prefix."""
        scheduler = RetryScheduler(redis, prefix="acme", clock=clock)
        await scheduler.enqueue("proj-1", SyncDirection.PUSH, SyncReason.local_change)
        await scheduler.dead_letter(_task("proj-2"), TransientError("down"))

        assert "acme:sync:queue" in redis.zsets
        assert "acme:sync:dead_letters" in redis.hashes

    async def test_schedule_writes_sorted_set(self, clock):
        """schedule() assigns a sequence and adds the task scored by due time."""
        mock_redis = AsyncMock()
        mock_redis.incr = AsyncMock(return_value=7)
        mock_redis.zcard = AsyncMock(return_value=1)
        scheduler = RetryScheduler(mock_redis, clock=clock)

        task = await scheduler.schedule(_task(next_attempt_at=clock()))

        mock_redis.incr.assert_called_once_with("delivery_sync:sync:seq")
        key, mapping = mock_redis.zadd.call_args.args
        assert key == "delivery_sync:sync:queue"
        (member, score), = mapping.items()
        assert member.startswith("00000000000000000007|")
        assert task.task_id in member
        assert score == int(clock().timestamp()) * 1_000_000

    async def test_lost_claim_race_is_skipped(self, clock):
        """A member another consumer removed first is not returned."""
        mock_redis = AsyncMock()
        first = f"{1:020d}|{_task('a', next_attempt_at=clock()).model_dump_json()}"
        second = f"{2:020d}|{_task('b', next_attempt_at=clock()).model_dump_json()}"
        mock_redis.zrangebyscore = AsyncMock(side_effect=[[first], [second]])
        mock_redis.zrem = AsyncMock(side_effect=[0, 1])
        mock_redis.zcard = AsyncMock(return_value=0)
        scheduler = RetryScheduler(mock_redis, clock=clock)

        task = await scheduler.next_due()

        assert task.entity_id == "b"


class TestBackoff:
    """Test retry delay computation."""

    def test_exponential_growth_with_cap(self, scheduler):
        """Delays double per attempt up to max_delay."""
        assert [scheduler.compute_delay(n) for n in range(4)] == [2.0, 4.0, 8.0, 16.0]
        assert scheduler.compute_delay(20) == 600.0

    def test_jitter_only_shortens(self):
        """Jitter keeps delays within [(1 - jitter) * d, d]."""
        scheduler = RetryScheduler(FakeRedis(), base_delay=10.0, jitter=0.2, rng=random.Random(1))
        delays = [scheduler.compute_delay(0) for _ in range(50)]
        assert all(8.0 <= d <= 10.0 for d in delays)
        assert len(set(delays)) > 1

    def test_retry_after_hint_wins(self, scheduler):
        """Rate-limit hints replace the exponential delay."""
        assert scheduler.compute_delay(0, retry_after=45.0) == 45.0

    async def test_retry_reschedules(self, scheduler, clock):
        """retry() increments the attempt and delays next_attempt_at."""
        task = _task()

        rescheduled = await scheduler.retry(task, TransientError("502"))

        assert rescheduled.attempt == 1
        assert rescheduled.task_id == task.task_id
        assert rescheduled.next_attempt_at == clock() + timedelta(seconds=2)
        assert await scheduler.pending_count() == 1

    async def test_rate_limited_retry_uses_hint(self, scheduler, clock):
        """A RateLimitedError reschedules after its retry_after."""
        rescheduled = await scheduler.retry(_task(attempt=2), RateLimitedError("429", retry_after=30))
        assert rescheduled.next_attempt_at == clock() + timedelta(seconds=30)


class TestAttemptCeiling:
    """Test dead-lettering at max_attempts."""

    async def test_dead_letter_after_max_attempts(self, scheduler):
        """The sixth failure of a six-attempt task is dead-lettered."""
        task = _task()
        for expected_attempt in range(1, 6):
            task = await scheduler.retry(task, TransientError("down"))
            assert task.attempt == expected_attempt

        assert await scheduler.retry(task, TransientError("still down")) is None

        letters = await scheduler.dead_letters()
        assert len(letters) == 1
        assert letters[0].task.attempt == 5
        assert letters[0].error_kind == "transient"

    async def test_single_attempt_ceiling(self):
        """max_attempts=1 dead-letters on the first failure."""
        scheduler = RetryScheduler(FakeRedis(), max_attempts=1)
        assert await scheduler.retry(_task(), TransientError("down")) is None
        assert len(await scheduler.dead_letters()) == 1

    async def test_pop_dead_letter(self, scheduler):
        """Replaying removes the dead letter."""
        await scheduler.dead_letter(_task("proj-9"), TransientError("down"))

        entry = await scheduler.pop_dead_letter("proj-9")

        assert entry is not None and entry.task.entity_id == "proj-9"
        assert await scheduler.pop_dead_letter("proj-9") is None
        assert await scheduler.dead_letters() == []

    def test_invalid_configuration(self):
        """Nonsensical settings are rejected."""
        with pytest.raises(ValueError):
            RetryScheduler(FakeRedis(), max_attempts=0)
        with pytest.raises(ValueError):
            RetryScheduler(FakeRedis(), jitter=1.5)
        with pytest.raises(ValueError):
            RetryScheduler(FakeRedis(), poll_interval=0)
