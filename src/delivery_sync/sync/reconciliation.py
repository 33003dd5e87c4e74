"""Reconciliation scanner -- detects and heals drift between Postgres and Notion.

Webhooks can be lost and pushes can fail silently on the remote side, so a
periodic scan compares every linked project with its Notion page field by
field. Each differing field becomes a Discrepancy. Its resolution copies
from the side that moved away from the last synced values; when both moved,
the newer side wins (the project's updated_at against the page's
minute-rounded last_edited_time). Equal or missing timestamps are never
guessed at and are reported for manual review.

With auto-heal on, the scanner enqueues one task per drifted project: a
PULL if any field needs pulling (a PULL also pushes local-only changes),
else a PUSH. Projects with a field needing review are not healed. Tasks go
on the shared retry scheduler; the executor does the actual work under the
usual single-flight lock.

Scans walk linked projects in keyset-paginated batches and check for
cancellation between batches. A rate-limited response ends the scan early
with a partial report rather than hammering the API.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from src.delivery_sync.core.monitoring import reconciliation_discrepancies_total
from src.delivery_sync.projects.schemas import ProjectRead, SyncStatus
from src.delivery_sync.sync.adapter import RecordStore, RemoteDocumentAPI
from src.delivery_sync.sync.errors import (
    NotFoundError,
    RateLimitedError,
    SyncError,
)
from src.delivery_sync.sync.executor import REMOTE_EDIT_TIME_RESOLUTION, compare_edit_times
from src.delivery_sync.sync.field_mapping import decode_payload, from_remote_properties, local_values
from src.delivery_sync.sync.scheduler import RetryScheduler
from src.delivery_sync.sync.schemas import (
    Discrepancy,
    DiscrepancyReport,
    Resolution,
    ScanError,
    ScanScope,
    SyncDirection,
    SyncReason,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Pseudo-field used when the linked page itself is gone or archived
REMOTE_DOCUMENT_FIELD = "remote_document"


def resolve_direction(
    local_updated_at: datetime | None,
    remote_updated_at: datetime | None,
    resolution: timedelta = REMOTE_EDIT_TIME_RESOLUTION,
) -> Resolution:
    """Newer side wins; ties and unknown timestamps go to manual review.

    The page's last_edited_time is only known to ``resolution``, so edits
    in the same minute are a tie.
    """
    order = compare_edit_times(local_updated_at, remote_updated_at, resolution)
    if order == 1:
        return Resolution.push
    if order == -1:
        return Resolution.pull
    return Resolution.manual_review


def resolve_field(
    name: str,
    local: dict[str, Any],
    remote: dict[str, Any],
    baseline: dict[str, Any] | None,
    local_updated_at: datetime | None,
    remote_updated_at: datetime | None,
) -> Resolution:
    """Direction that heals one differing field.

    Against the last synced values, the side that moved is the one to copy
    from. Only when both moved (or nothing is known) do timestamps decide.
    """
    if baseline is not None and name in baseline:
        local_moved = local[name] != baseline[name]
        remote_moved = remote[name] != baseline[name]
        if local_moved and not remote_moved:
            return Resolution.push
        if remote_moved and not local_moved:
            return Resolution.pull
    return resolve_direction(local_updated_at, remote_updated_at)


class ReconciliationScanner:
    """Compares linked projects with their Notion pages.

    Args:
        store: Record store holding projects.
        remote: Remote document API.
        scheduler: Queue receiving healing tasks.
        batch_size: Projects fetched per keyset page.
        batch_pause: Seconds to sleep between batches (rate-limit headroom).
        clock: Returns the current UTC time.
        sleep: Awaitable sleep (injectable for tests).
    """

    def __init__(
        self,
        store: RecordStore,
        remote: RemoteDocumentAPI,
        scheduler: RetryScheduler,
        batch_size: int = 25,
        batch_pause: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._store = store
        self._remote = remote
        self._scheduler = scheduler
        self._batch_size = batch_size
        self._batch_pause = batch_pause
        self._clock = clock
        self._sleep = sleep

        self._lock = asyncio.Lock()
        self._cancel_event: asyncio.Event | None = None
        self._latest: DiscrepancyReport | None = None

    @property
    def latest_report(self) -> DiscrepancyReport | None:
        return self._latest

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def cancel(self) -> bool:
        """Ask the running scan to stop after its current batch.

        Returns:
            True if a scan was running.
        """
        if self._cancel_event is None or not self.is_running:
            return False
        self._cancel_event.set()
        logger.info("reconciliation.cancel_requested")
        return True

    # ── Scan ─────────────────────────────────────────────────────────────────

    async def scan(
        self,
        scope: ScanScope | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> DiscrepancyReport:
        """Run one scan; concurrent callers wait for the running scan to finish.

        Args:
            scope: Entity ids, limit and auto-heal switch. Defaults to every
                linked project with auto-heal on.
            cancel_event: External cancellation signal checked between batches.

        Returns:
            The DiscrepancyReport (also kept as latest_report).
        """
        scope = scope or ScanScope()
        async with self._lock:
            self._cancel_event = cancel_event or asyncio.Event()
            report = DiscrepancyReport(scanned_at=self._clock())
            log = logger.bind(auto_heal=scope.auto_heal, limit=scope.limit)
            log.info("reconciliation.scan_started")
            try:
                await self._scan(scope, report)
            finally:
                report.finished_at = self._clock()
                self._latest = report
                self._cancel_event = None

            log.info(
                "reconciliation.scan_finished",
                total_checked=report.total_checked,
                discrepancies=len(report.discrepancies),
                errors=len(report.errors),
                tasks_issued=report.tasks_issued,
                cancelled=report.cancelled,
                partial=report.partial,
            )
            return report

    async def _scan(self, scope: ScanScope, report: DiscrepancyReport) -> None:
        first = True
        async for batch in self._batches(scope):
            if not first and self._batch_pause:
                await self._sleep(self._batch_pause)
            first = False
            if self._cancelled():
                report.cancelled = True
                return

            for entity in batch:
                if scope.limit is not None and report.total_checked >= scope.limit:
                    return
                stop = await self._check_entity(entity, scope, report)
                if stop:
                    report.partial = True
                    return

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def _batches(self, scope: ScanScope) -> AsyncIterator[list[ProjectRead]]:
        if scope.entity_ids is not None:
            ids = list(dict.fromkeys(scope.entity_ids))
            for start in range(0, len(ids), self._batch_size):
                batch = []
                for entity_id in ids[start : start + self._batch_size]:
                    entity = await self._store.get(entity_id)
                    if entity is not None and entity.remote_document_id:
                        batch.append(entity)
                yield batch
            return

        after_id: str | None = None
        while True:
            batch = await self._store.list_linked(after_id, self._batch_size)
            if not batch:
                return
            yield batch
            if len(batch) < self._batch_size:
                return
            after_id = batch[-1].id

    async def _check_entity(
        self,
        entity: ProjectRead,
        scope: ScanScope,
        report: DiscrepancyReport,
    ) -> bool:
        """Compare one project; returns True if the scan must stop."""
        if entity.sync_status == SyncStatus.DEAD:
            logger.debug("reconciliation.entity_skipped", entity_id=entity.id, sync_status="DEAD")
            return False

        try:
            document = await self._remote.get_document(entity.remote_document_id)
        except RateLimitedError as exc:
            report.errors.append(ScanError(entity_id=entity.id, error=str(exc), error_kind=exc.kind))
            logger.warning("reconciliation.rate_limited", entity_id=entity.id, retry_after=exc.retry_after)
            return True
        except NotFoundError:
            report.total_checked += 1
            self._record(
                report,
                Discrepancy(
                    entity_id=entity.id,
                    field=REMOTE_DOCUMENT_FIELD,
                    local_value=entity.remote_document_id,
                    remote_value=None,
                    resolution=Resolution.manual_review,
                ),
            )
            return False
        except SyncError as exc:
            report.errors.append(ScanError(entity_id=entity.id, error=str(exc), error_kind=exc.kind))
            logger.warning("reconciliation.entity_error", entity_id=entity.id, error_kind=exc.kind)
            return False

        report.total_checked += 1
        if document.archived:
            self._record(
                report,
                Discrepancy(
                    entity_id=entity.id,
                    field=REMOTE_DOCUMENT_FIELD,
                    local_value=entity.remote_document_id,
                    remote_value="archived",
                    resolution=Resolution.manual_review,
                ),
            )
            return False

        mapping = from_remote_properties(document.properties)
        if not mapping.ok:
            report.errors.append(
                ScanError(
                    entity_id=entity.id,
                    error="; ".join(f"{e.property_name}: {e.message}" for e in mapping.errors),
                    error_kind="validation",
                )
            )

        local = local_values(entity)
        invalid = {e.field for e in mapping.errors}
        differing = [
            name
            for name, value in local.items()
            if name in mapping.patch and name not in invalid and mapping.patch[name] != value
        ]
        if not differing:
            return False

        baseline = decode_payload(entity.last_synced_payload) if entity.last_synced_payload else None
        resolutions = {
            name: resolve_field(
                name, local, mapping.patch, baseline, entity.updated_at, document.last_edited_time
            )
            for name in differing
        }
        healed = False
        if scope.auto_heal and Resolution.manual_review not in resolutions.values():
            pull = Resolution.pull in resolutions.values()
            direction = SyncDirection.PULL if pull else SyncDirection.PUSH
            await self._scheduler.enqueue(entity.id, direction, SyncReason.reconciliation)
            report.tasks_issued += 1
            healed = True

        for name in differing:
            self._record(
                report,
                Discrepancy(
                    entity_id=entity.id,
                    field=name,
                    local_value=_jsonable(local[name]),
                    remote_value=_jsonable(mapping.patch[name]),
                    resolution=resolutions[name],
                    healed=healed,
                ),
            )
        return False

    @staticmethod
    def _record(report: DiscrepancyReport, discrepancy: Discrepancy) -> None:
        report.discrepancies.append(discrepancy)
        reconciliation_discrepancies_total.labels(resolution=discrepancy.resolution.value).inc()
        logger.info(
            "reconciliation.discrepancy_found",
            entity_id=discrepancy.entity_id,
            field=discrepancy.field,
            resolution=discrepancy.resolution.value,
            healed=discrepancy.healed,
        )

    # ── Periodic Loop ────────────────────────────────────────────────────────

    async def run_periodic(self, interval: float, scope: ScanScope | None = None) -> None:
        """Scan forever every ``interval`` seconds; run as a background task."""
        while True:
            await self._sleep(interval)
            try:
                await self.scan(scope)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("reconciliation.scan_crashed", exc_info=True)


def _jsonable(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value
