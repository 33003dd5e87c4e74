"""SyncService -- wires the sync engine together and exposes operator actions.

One instance lives on ``app.state.sync_service`` for the lifetime of the
process. It owns the retry scheduler (the single task queue), the worker
pool, the webhook receiver, the reconciliation scanner and the trigger
hook, and gives API routes a small surface:

- handle_webhook(): verify, dedupe and dispatch an inbound event
- trigger(): manual PUSH for one project
- replay_dead_letter(): manual re-trigger of a DEAD project (or of a dead
  page archive for a deleted project)
- health(): counts, queue depth, dead letters, projects needing attention
- reconcile() / start_reconcile() / cancel_reconcile(): drift scans
- remote_view(): what Notion currently holds for a project
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable, Mapping
from datetime import datetime

import redis.asyncio as aioredis
import structlog

from src.delivery_sync.config import Settings
from src.delivery_sync.projects.schemas import ProjectRead, SyncStatus
from src.delivery_sync.sync.adapter import RecordStore, RemoteDocumentAPI
from src.delivery_sync.sync.errors import EntityNotFoundError, InvalidTransitionError
from src.delivery_sync.sync.executor import SyncExecutor
from src.delivery_sync.sync.field_mapping import from_remote_properties
from src.delivery_sync.sync.hooks import ProjectSyncHook
from src.delivery_sync.sync.reconciliation import ReconciliationScanner
from src.delivery_sync.sync.scheduler import RetryScheduler
from src.delivery_sync.sync.schemas import (
    AttentionItem,
    DiscrepancyReport,
    RemoteView,
    ScanScope,
    SyncDirection,
    SyncHealth,
    SyncReason,
    SyncTask,
    WebhookReceipt,
    sync_indicator,
    utcnow,
)
from src.delivery_sync.sync.state import SyncStateStore
from src.delivery_sync.sync.webhooks import EventDeduplicator, WebhookReceiver, WebhookVerifier
from src.delivery_sync.sync.worker import EntityLocks, SyncWorkerPool

logger = structlog.get_logger(__name__)

NOTION_PROVIDER = "notion"

# Upper bound on projects re-queued by recover() at startup
RECOVERY_LIMIT = 1000


class SyncService:
    """Facade over the sync engine.

    Args:
        store: Record store holding projects.
        remote: Remote document API.
        redis: Async Redis client holding the task queue, dead letters and
            webhook event ids.
        webhook_secrets: Shared secret per webhook provider (must be non-empty).
        worker_count: Concurrent sync workers.
        retry_base: First retry delay in seconds.
        retry_max: Retry delay cap in seconds.
        max_attempts: Executions per task before dead-lettering.
        retry_jitter: Fraction of each delay that may be shaved off at random.
        dedup_ttl: Seconds a webhook event id is remembered.
        redis_prefix: Namespace for every Redis key the engine writes.
        queue_poll_interval: Longest idle sleep of a worker between queue reads.
        timestamp_tolerance: Max age of a signed webhook timestamp in seconds.
        reconcile_interval: Seconds between periodic scans (0 disables them).
        reconcile_batch_size: Projects per scan batch.
        reconcile_batch_pause: Seconds between scan batches.
        reconcile_auto_heal: Whether periodic scans enqueue healing tasks.
        clock: Returns the current UTC time.
        rng: Random source for retry jitter.
    """

    def __init__(
        self,
        store: RecordStore,
        remote: RemoteDocumentAPI,
        redis: aioredis.Redis,
        webhook_secrets: Mapping[str, str],
        *,
        worker_count: int = 3,
        retry_base: float = 2.0,
        retry_max: float = 600.0,
        max_attempts: int = 6,
        retry_jitter: float = 0.2,
        dedup_ttl: int = 3600,
        redis_prefix: str = "delivery_sync",
        queue_poll_interval: float = 1.0,
        timestamp_tolerance: float = 300.0,
        reconcile_interval: float = 3600.0,
        reconcile_batch_size: int = 25,
        reconcile_batch_pause: float = 1.0,
        reconcile_auto_heal: bool = True,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._remote = remote
        self._reconcile_interval = reconcile_interval
        self._reconcile_auto_heal = reconcile_auto_heal

        self.state = SyncStateStore(store)
        self.scheduler = RetryScheduler(
            redis,
            base_delay=retry_base,
            max_delay=retry_max,
            max_attempts=max_attempts,
            jitter=retry_jitter,
            prefix=redis_prefix,
            poll_interval=queue_poll_interval,
            clock=clock,
            rng=rng,
        )
        self.executor = SyncExecutor(store, remote, self.state, clock=clock)
        self.locks = EntityLocks()
        self.pool = SyncWorkerPool(
            self.scheduler, self.executor, self.state, size=worker_count, locks=self.locks
        )
        self.receiver = WebhookReceiver(
            {
                provider: WebhookVerifier(secret, timestamp_tolerance=timestamp_tolerance)
                for provider, secret in webhook_secrets.items()
            },
            store,
            self.scheduler,
            EventDeduplicator(redis, ttl_seconds=dedup_ttl, prefix=redis_prefix),
        )
        self.scanner = ReconciliationScanner(
            store,
            remote,
            self.scheduler,
            batch_size=reconcile_batch_size,
            batch_pause=reconcile_batch_pause,
            clock=clock,
        )
        self.hook = ProjectSyncHook(self.scheduler)

        self._periodic: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: RecordStore,
        remote: RemoteDocumentAPI,
        redis: aioredis.Redis,
    ) -> SyncService:
        """Build the service from application settings.

        Raises:
            ConfigurationError: If NOTION_WEBHOOK_SECRET is empty.
        """
        return cls(
            store,
            remote,
            redis,
            {NOTION_PROVIDER: settings.NOTION_WEBHOOK_SECRET},
            worker_count=settings.SYNC_WORKER_COUNT,
            retry_base=settings.SYNC_RETRY_BASE_SECONDS,
            retry_max=settings.SYNC_RETRY_MAX_SECONDS,
            max_attempts=settings.SYNC_MAX_ATTEMPTS,
            retry_jitter=settings.SYNC_RETRY_JITTER,
            dedup_ttl=settings.WEBHOOK_DEDUP_TTL_SECONDS,
            redis_prefix=settings.SYNC_REDIS_PREFIX,
            queue_poll_interval=settings.SYNC_QUEUE_POLL_SECONDS,
            timestamp_tolerance=settings.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS,
            reconcile_interval=settings.RECONCILE_INTERVAL_SECONDS,
            reconcile_batch_size=settings.RECONCILE_BATCH_SIZE,
            reconcile_batch_pause=settings.RECONCILE_BATCH_PAUSE_SECONDS,
            reconcile_auto_heal=settings.RECONCILE_AUTO_HEAL,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start workers, requeue interrupted work and schedule periodic scans."""
        await self.recover()
        self.pool.start()
        if self._reconcile_interval > 0 and self._periodic is None:
            self._periodic = asyncio.create_task(
                self.scanner.run_periodic(
                    self._reconcile_interval,
                    ScanScope(auto_heal=self._reconcile_auto_heal),
                ),
                name="sync-reconcile-periodic",
            )
        logger.info("sync.service_started", reconcile_interval=self._reconcile_interval)

    async def stop(self) -> None:
        """Cancel background work and wait for it to exit."""
        self.scanner.cancel()
        tasks = list(self._background)
        if self._periodic is not None:
            tasks.append(self._periodic)
            self._periodic = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        await self.pool.stop()
        logger.info("sync.service_stopped")

    async def recover(self) -> int:
        """Requeue projects left PENDING or FAILED by a previous process.

        Queued tasks survive a restart in Redis, but a task a dead process
        had already claimed is gone, and FAILED projects are not retried
        automatically. Projects that still have a queued task are skipped.

        Returns:
            Number of tasks scheduled.
        """
        entities = await self._store.list_by_status(
            [SyncStatus.PENDING, SyncStatus.FAILED], limit=RECOVERY_LIMIT
        )
        queued = {task.entity_id for task in await self.scheduler.pending_tasks()}
        scheduled = 0
        for entity in entities:
            if entity.id in queued:
                continue
            # PULL merges both directions and falls back to PUSH when unlinked
            await self.scheduler.enqueue(entity.id, SyncDirection.PULL, SyncReason.recovery)
            scheduled += 1
        if scheduled:
            logger.info("sync.recovery_scheduled", count=scheduled, already_queued=len(entities) - scheduled)
        return scheduled

    # ── Operations ───────────────────────────────────────────────────────────

    async def handle_webhook(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> WebhookReceipt:
        return await self.receiver.receive(provider, raw_body, headers)

    async def _require(self, entity_id: str) -> ProjectRead:
        entity = await self._store.get(entity_id)
        if entity is None:
            raise EntityNotFoundError(f"Project not found: {entity_id}")
        return entity

    async def trigger(self, entity_id: str) -> tuple[ProjectRead, SyncTask]:
        """Enqueue a manual PUSH for a project.

        Manual tasks may move a DEAD project back to PENDING.

        Raises:
            EntityNotFoundError: If the project does not exist.
        """
        entity = await self._require(entity_id)
        task = await self.scheduler.enqueue(entity_id, SyncDirection.PUSH, SyncReason.manual_trigger)
        logger.info("sync.manual_trigger", entity_id=entity_id, task_id=task.task_id)
        return entity, task

    async def replay_dead_letter(self, entity_id: str) -> SyncTask:
        """Re-run a dead-lettered project from attempt zero.

        A deleted project can only be replayed when its dead letter is a
        page archive.

        Raises:
            EntityNotFoundError: If the project does not exist (and has no
                dead-lettered archive).
            InvalidTransitionError: If the project is neither DEAD nor dead-lettered.
        """
        entity = await self._store.get(entity_id)
        if entity is None:
            letter = await self.scheduler.pop_dead_letter(entity_id)
            if letter is None or letter.task.direction != SyncDirection.ARCHIVE:
                raise EntityNotFoundError(f"Project not found: {entity_id}")
            task = await self.scheduler.enqueue(
                entity_id,
                SyncDirection.ARCHIVE,
                SyncReason.manual_trigger,
                remote_document_id=letter.task.remote_document_id,
            )
            logger.info("sync.dead_letter_replayed", entity_id=entity_id, direction=task.direction.value)
            return task

        letter = await self.scheduler.pop_dead_letter(entity_id)
        if letter is None and entity.sync_status != SyncStatus.DEAD:
            raise InvalidTransitionError(
                f"Project {entity_id} is {entity.sync_status.value}, not dead-lettered"
            )
        direction = letter.task.direction if letter is not None else SyncDirection.PUSH
        task = await self.scheduler.enqueue(entity_id, direction, SyncReason.manual_trigger)
        logger.info("sync.dead_letter_replayed", entity_id=entity_id, direction=direction.value)
        return task

    async def health(self, attention_limit: int = 50) -> SyncHealth:
        counts = await self.state.counts_by_status()
        attention = await self.state.list_needing_attention(limit=attention_limit)
        return SyncHealth(
            counts=counts,
            pending_tasks=await self.scheduler.pending_count(),
            in_flight=self.pool.in_flight,
            workers_running=self.pool.running,
            dead_letters=await self.scheduler.dead_letters(),
            needs_attention=[
                AttentionItem(
                    entity_id=entity.id,
                    name=entity.name,
                    sync_status=entity.sync_status,
                    indicator=sync_indicator(entity.sync_status),
                    last_sync_error=entity.last_sync_error,
                    last_synced_at=entity.last_synced_at,
                )
                for entity in attention
            ],
            recent_conflicts=self.executor.recent_conflicts(),
            scan_running=self.scanner.is_running,
            latest_report=self.scanner.latest_report,
        )

    async def reconcile(self, scope: ScanScope | None = None) -> DiscrepancyReport:
        """Run a scan now and wait for its report."""
        return await self.scanner.scan(scope)

    def start_reconcile(self, scope: ScanScope | None = None) -> bool:
        """Start a scan in the background unless one is already running."""
        if self.scanner.is_running or self._background:
            return False
        task = asyncio.create_task(self._background_scan(scope), name="sync-reconcile-on-demand")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    async def _background_scan(self, scope: ScanScope | None) -> None:
        try:
            await self.scanner.scan(scope)
        except Exception:
            logger.error("reconciliation.scan_crashed", exc_info=True)

    def cancel_reconcile(self) -> bool:
        return self.scanner.cancel()

    async def remote_view(self, entity_id: str) -> RemoteView:
        """Fetch the linked Notion page and show how it maps back.

        Raises:
            EntityNotFoundError: If the project does not exist or is not linked.
            SyncError: Remote client errors are propagated.
        """
        entity = await self._require(entity_id)
        if not entity.remote_document_id:
            raise EntityNotFoundError(f"Project {entity_id} is not linked to a Notion page")

        document = await self._remote.get_document(entity.remote_document_id)
        blocks = await self._remote.list_child_blocks(document.id)
        mapping = from_remote_properties(document.properties)
        return RemoteView(
            entity_id=entity.id,
            remote_document_id=document.id,
            url=document.url,
            archived=document.archived,
            last_edited_time=document.last_edited_time,
            values=mapping.patch,
            mapping_errors=[e.model_dump(mode="json") for e in mapping.errors],
            blocks=blocks,
        )
