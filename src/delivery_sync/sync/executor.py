"""Sync executor -- runs one SyncTask and drives the entity's state machine.

PUSH (local -> remote):
    Map the project to Notion properties. An unlinked project first looks for
    an orphaned page carrying its Internal ID (left behind by an attempt that
    created the page but failed before recording it) and adopts it; otherwise
    a page is created. A linked project sends only the properties that differ
    from the last synced payload, and nothing at all when none differ.

PULL (remote -> local):
    Fetch the page, map it back, and plan a merge against the last synced
    payload (the baseline). Fields changed on both sides with different
    values are conflicts, resolved last-writer-wins on the project's
    updated_at versus the remote edit time: the webhook's occurred_at when
    the task carries one, else the page's minute-rounded last_edited_time.
    On a tie the local value wins and is pushed to the page, and the
    conflict is kept for operator review. Fields changed only locally are
    pushed too.

ARCHIVE (local delete -> remote):
    The project row is already gone; archive the page it was linked to. A
    page that no longer exists counts as archived.

Every PUSH and PULL ends in a state transition recorded by the
SyncStateStore; errors never escape run().
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from src.delivery_sync.core.monitoring import sync_task_duration_seconds, sync_tasks_total
from src.delivery_sync.projects.schemas import ProjectRead, SyncStatus
from src.delivery_sync.sync.adapter import RecordStore, RemoteDocumentAPI
from src.delivery_sync.sync.errors import (
    NotFoundError,
    PermanentError,
    SyncError,
    TransientError,
    ValidationFailure,
)
from src.delivery_sync.sync.field_mapping import (
    ProjectField,
    build_page_blocks,
    decode_payload,
    diff_properties,
    encode_values,
    from_remote_properties,
    link_property,
    local_values,
    to_remote_properties,
)
from src.delivery_sync.sync.schemas import (
    Discrepancy,
    DocumentQuery,
    OutcomeKind,
    Resolution,
    SyncDirection,
    SyncTask,
    TaskOutcome,
    utcnow,
)
from src.delivery_sync.sync.state import SyncStateStore

logger = structlog.get_logger(__name__)


# ── Merge Planning ───────────────────────────────────────────────────────────

# Notion reports last_edited_time rounded down to the minute
REMOTE_EDIT_TIME_RESOLUTION = timedelta(minutes=1)

_NO_RESOLUTION = timedelta(0)


def _truncate(when: datetime, resolution: timedelta) -> datetime:
    if not resolution:
        return when
    floor = datetime(2000, 1, 1, tzinfo=when.tzinfo)
    return when - (when - floor) % resolution


def remote_edit_time(
    occurred_at: datetime | None,
    last_edited_time: datetime | None,
    resolution: timedelta = REMOTE_EDIT_TIME_RESOLUTION,
) -> tuple[datetime | None, timedelta]:
    """Best known time of the latest remote edit, with its precision.

    A webhook's occurred_at is exact; the page's last_edited_time is only
    known to ``resolution``. The later of the two is used.

    Returns:
        (timestamp, resolution of that timestamp)
    """
    if occurred_at is not None and (last_edited_time is None or occurred_at >= last_edited_time):
        return occurred_at, _NO_RESOLUTION
    return last_edited_time, resolution


def compare_edit_times(
    local: datetime | None,
    remote: datetime | None,
    resolution: timedelta = _NO_RESOLUTION,
) -> int | None:
    """Order two edit times: 1 local newer, -1 remote newer, 0 tie, None unknown.

    Both sides are truncated to ``resolution`` first, so a local edit in the
    same minute as a minute-rounded remote edit is a tie.
    """
    if local is None or remote is None:
        return None
    local = _truncate(local, resolution)
    remote = _truncate(remote, resolution)
    return (local > remote) - (local < remote)


@dataclass
class MergePlan:
    """What a PULL should write on each side."""

    remote_modified: bool
    apply_local: dict[str, Any] = field(default_factory=dict)
    push_remote: dict[str, Any] = field(default_factory=dict)
    conflicts: list[str] = field(default_factory=list)
    winner: str | None = None  # "local" | "remote" | None (no conflict)
    tied: bool = False  # conflict ordering unknown; local kept, flagged for review

    @property
    def noop(self) -> bool:
        return not self.remote_modified and not self.push_remote


def plan_merge(
    local: dict[str, Any],
    remote: dict[str, Any],
    baseline: dict[str, Any] | None,
    local_updated_at: datetime | None,
    remote_updated_at: datetime | None,
    last_synced_at: datetime | None,
    resolution: timedelta = _NO_RESOLUTION,
) -> MergePlan:
    """Decide how to reconcile pulled values with the local project.

    With a baseline (values both sides agreed on at the last sync), a side
    has changed a field when its value differs from the baseline. Without
    one, a side has changed every differing field if its timestamp is newer
    than last_synced_at.

    Fields changed on both sides to different values are conflicts. The
    strictly newer side wins; on a tie (or an unknown timestamp) the local
    side, which is authoritative, wins and the plan is marked ``tied``.
    Fields changed only locally are pushed even when the page is unchanged.

    Args:
        local: Local mapped values.
        remote: Pulled mapped values.
        baseline: Values at the last successful sync, if known.
        local_updated_at: Project updated_at.
        remote_updated_at: Best known remote edit time (see remote_edit_time).
        last_synced_at: Project last_synced_at.
        resolution: Precision of remote_updated_at.

    Returns:
        MergePlan; ``noop`` means neither side needs a write.
    """
    if baseline is not None:
        remote_changed = {f for f in remote if remote[f] != baseline.get(f)}
        local_changed = {f for f in local if local[f] != baseline.get(f)}
    else:
        differing = {f for f in remote if remote[f] != local.get(f)}
        remote_newer = last_synced_at is None or (
            compare_edit_times(last_synced_at, remote_updated_at, resolution) == -1
        )
        local_newer = last_synced_at is None or (
            local_updated_at is not None and local_updated_at > last_synced_at
        )
        remote_changed = differing if remote_newer else set()
        local_changed = differing if local_newer else set()

    plan = MergePlan(remote_modified=bool(remote_changed))
    conflicts = sorted(
        f for f in remote_changed & local_changed if remote[f] != local.get(f)
    )
    plan.conflicts = conflicts
    if conflicts:
        order = compare_edit_times(local_updated_at, remote_updated_at, resolution)
        if order == -1:
            plan.winner = "remote"
        else:
            plan.winner = "local"
            plan.tied = order != 1

    plan.apply_local = {
        f: remote[f]
        for f in sorted(remote_changed)
        if remote[f] != local.get(f) and (f not in conflicts or plan.winner == "remote")
    }
    plan.push_remote = {
        f: local[f]
        for f in sorted(local_changed)
        if f not in plan.apply_local and local.get(f) != remote.get(f)
    }
    return plan


@dataclass
class _Execution:
    remote_document_id: str
    payload: dict[str, Any]
    remote_written: bool = False
    local_written: bool = False


class SyncExecutor:
    """Executes PUSH and PULL tasks for projects.

    Args:
        store: Record store holding projects.
        remote: Remote document API (Notion).
        state: Sync state store; the only writer of sync status columns.
        clock: Returns the current UTC time (injectable for tests).
        conflict_history: How many tied conflicts to keep for review.
        remote_time_resolution: Precision of the page's last_edited_time.
    """

    def __init__(
        self,
        store: RecordStore,
        remote: RemoteDocumentAPI,
        state: SyncStateStore,
        clock: Callable[[], datetime] = utcnow,
        conflict_history: int = 200,
        remote_time_resolution: timedelta = REMOTE_EDIT_TIME_RESOLUTION,
    ) -> None:
        self._store = store
        self._remote = remote
        self._state = state
        self._clock = clock
        self._conflicts: deque[Discrepancy] = deque(maxlen=conflict_history)
        self._remote_time_resolution = remote_time_resolution

    def recent_conflicts(self) -> list[Discrepancy]:
        """Tied conflicts (kept local) awaiting operator review, newest last."""
        return list(self._conflicts)

    # ── Entry Point ──────────────────────────────────────────────────────────

    async def run(self, task: SyncTask) -> TaskOutcome:
        """Execute one task; always returns an outcome, never raises."""
        log = logger.bind(
            task_id=task.task_id,
            entity_id=task.entity_id,
            direction=task.direction.value,
            reason=task.reason.value,
            attempt=task.attempt,
        )
        start = time.perf_counter()
        try:
            outcome = await self._run(task, log)
        finally:
            sync_task_duration_seconds.labels(direction=task.direction.value).observe(
                time.perf_counter() - start
            )
        sync_tasks_total.labels(direction=task.direction.value, outcome=outcome.kind.value).inc()
        return outcome

    async def _run(self, task: SyncTask, log: Any) -> TaskOutcome:
        if task.direction == SyncDirection.ARCHIVE:
            return await self._archive(task, log)

        try:
            entity = await self._store.get(task.entity_id)
            if entity is None:
                log.warning("sync.task_skipped", skip_reason="entity_missing")
                return TaskOutcome(task=task, kind=OutcomeKind.SKIPPED, error="entity not found")
            if entity.sync_status == SyncStatus.DEAD and not task.is_manual:
                log.info("sync.task_skipped", skip_reason="entity_dead")
                return TaskOutcome(task=task, kind=OutcomeKind.SKIPPED, error="entity is DEAD")
            await self._state.mark_pending(task.entity_id, manual=task.is_manual)
        except SyncError as exc:
            log.warning("sync.mark_pending_failed", error_kind=exc.kind, error=str(exc))
            return self._retry_outcome(task, exc)
        except Exception as exc:
            log.error("sync.mark_pending_failed", exc_info=True)
            return self._retry_outcome(task, TransientError(f"store unavailable: {exc}"))

        try:
            if task.direction == SyncDirection.PUSH:
                result = await self._push(entity, log)
            else:
                result = await self._pull(entity, task, log)
            await self._state.mark_synced(
                entity.id,
                result.remote_document_id,
                self._clock(),
                payload=result.payload,
            )
        except SyncError as exc:
            return await self._handle_failure(task, exc, log)
        except Exception as exc:
            log.error("sync.task_crashed", exc_info=True)
            return await self._handle_failure(
                task, TransientError(f"unexpected error: {exc!r}"), log
            )

        log.info(
            "sync.task_completed",
            remote_document_id=result.remote_document_id,
            remote_written=result.remote_written,
            local_written=result.local_written,
        )
        return TaskOutcome(
            task=task,
            kind=OutcomeKind.COMPLETED,
            remote_document_id=result.remote_document_id,
            remote_written=result.remote_written,
            local_written=result.local_written,
        )

    # ── Failure Handling ─────────────────────────────────────────────────────

    @staticmethod
    def _retry_outcome(task: SyncTask, error: SyncError) -> TaskOutcome:
        return TaskOutcome(
            task=task,
            kind=OutcomeKind.RETRY,
            error=str(error),
            error_kind=error.kind,
            retry_after=getattr(error, "retry_after", None),
        )

    @staticmethod
    def _failure_kind(error: SyncError) -> OutcomeKind:
        if error.retryable:
            return OutcomeKind.RETRY
        if isinstance(error, PermanentError):
            return OutcomeKind.DEAD
        return OutcomeKind.FAILED

    async def _handle_failure(self, task: SyncTask, error: SyncError, log: Any) -> TaskOutcome:
        message = f"{error.kind}: {error}"
        kind = self._failure_kind(error)

        log.warning("sync.task_failed", error_kind=error.kind, error=str(error), outcome=kind.value)

        try:
            if kind == OutcomeKind.DEAD:
                await self._state.mark_dead(task.entity_id, message)
            else:
                await self._state.mark_failed(task.entity_id, message)
        except Exception:
            log.error("sync.state_write_failed", exc_info=True)

        return TaskOutcome(
            task=task,
            kind=kind,
            error=str(error),
            error_kind=error.kind,
            retry_after=getattr(error, "retry_after", None),
        )

    # ── ARCHIVE ──────────────────────────────────────────────────────────────

    async def _archive(self, task: SyncTask, log: Any) -> TaskOutcome:
        """Archive the page of a deleted project. No row is left to carry sync state."""
        document_id = task.remote_document_id
        if not document_id:
            log.warning("sync.task_skipped", skip_reason="no_remote_document")
            return TaskOutcome(task=task, kind=OutcomeKind.SKIPPED, error="no remote document to archive")

        try:
            await self._remote.archive_document(document_id)
        except NotFoundError:
            log.info("sync.page_already_gone", remote_document_id=document_id)
            return TaskOutcome(task=task, kind=OutcomeKind.COMPLETED, remote_document_id=document_id)
        except SyncError as exc:
            kind = self._failure_kind(exc)
            log.warning("sync.task_failed", error_kind=exc.kind, error=str(exc), outcome=kind.value)
            return TaskOutcome(
                task=task,
                kind=kind,
                error=str(exc),
                error_kind=exc.kind,
                retry_after=getattr(exc, "retry_after", None),
            )
        except Exception as exc:
            log.error("sync.task_crashed", exc_info=True)
            return self._retry_outcome(task, TransientError(f"unexpected error: {exc!r}"))

        log.info("sync.page_archived", remote_document_id=document_id)
        return TaskOutcome(
            task=task,
            kind=OutcomeKind.COMPLETED,
            remote_document_id=document_id,
            remote_written=True,
        )

    # ── PUSH ─────────────────────────────────────────────────────────────────

    async def _push(self, entity: ProjectRead, log: Any) -> _Execution:
        payload = to_remote_properties(entity)

        if entity.remote_document_id is None:
            ref = await self._remote.find_document(DocumentQuery(internal_id=entity.id))
            if ref is not None:
                await self._remote.update_properties(ref.id, payload)
                log.info("sync.orphan_page_adopted", remote_document_id=ref.id)
            else:
                ref = await self._remote.create_document(
                    {**payload, **link_property(entity.id)},
                    children=build_page_blocks(entity),
                )
                log.info("sync.page_created", remote_document_id=ref.id)
            return _Execution(ref.id, payload, remote_written=True)

        changed = diff_properties(payload, entity.last_synced_payload)
        if changed:
            await self._remote.update_properties(entity.remote_document_id, changed)
        else:
            log.debug("sync.push_noop")
        return _Execution(entity.remote_document_id, payload, remote_written=bool(changed))

    # ── PULL ─────────────────────────────────────────────────────────────────

    async def _pull(self, entity: ProjectRead, task: SyncTask, log: Any) -> _Execution:
        if entity.remote_document_id is None:
            log.info("sync.pull_unlinked_pushing")
            return await self._push(entity, log)

        document = await self._remote.get_document(entity.remote_document_id)
        if document.archived:
            raise PermanentError(f"Notion page {document.id} is archived; re-link required")

        mapping = from_remote_properties(document.properties)
        if not mapping.ok:
            raise ValidationFailure(
                "; ".join(f"{e.property_name}: {e.message}" for e in mapping.errors),
                details=[e.model_dump(mode="json") for e in mapping.errors],
            )
        missing = [f.value for f in ProjectField if f.value not in mapping.patch]
        if missing:
            raise ValidationFailure(f"Notion page is missing mapped properties for {missing}")

        remote = mapping.patch
        local = local_values(entity)
        baseline = decode_payload(entity.last_synced_payload) if entity.last_synced_payload else None
        remote_at, resolution = remote_edit_time(
            task.occurred_at, document.last_edited_time, self._remote_time_resolution
        )
        plan = plan_merge(
            local,
            remote,
            baseline,
            entity.updated_at,
            remote_at,
            entity.last_synced_at,
            resolution,
        )

        if plan.noop:
            log.debug("sync.pull_noop")
            payload = entity.last_synced_payload or encode_values(remote)
            return _Execution(document.id, payload)

        if plan.tied:
            for name in plan.conflicts:
                self._conflicts.append(
                    Discrepancy(
                        entity_id=entity.id,
                        field=name,
                        local_value=local.get(name),
                        remote_value=remote.get(name),
                        resolution=Resolution.manual_review,
                    )
                )
            log.warning(
                "sync.conflict_tied",
                fields=plan.conflicts,
                local_updated_at=entity.updated_at.isoformat() if entity.updated_at else None,
                remote_updated_at=remote_at.isoformat() if remote_at else None,
            )
        elif plan.conflicts:
            log.info("sync.conflict_resolved", fields=plan.conflicts, winner=plan.winner)

        if plan.apply_local:
            await self._store.apply_remote_patch(
                entity.id,
                plan.apply_local,
                expected_version=entity.local_version,
                at=remote_at or self._clock(),
            )
        if plan.push_remote:
            await self._remote.update_properties(document.id, encode_values(plan.push_remote))

        agreed = {**remote, **plan.push_remote}
        return _Execution(
            document.id,
            encode_values(agreed),
            remote_written=bool(plan.push_remote),
            local_written=bool(plan.apply_local),
        )
